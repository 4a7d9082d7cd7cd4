"""
Housekeeping over a storage root.

Three jobs live here:
1. Filtering - pick index entries by id glob, tags, type and scope
   (the selection step behind the bulk operations)
2. Expiry - find ephemeral thoughts in temporary/ that outlived their TTL
3. Sync - bring index.json and graph.json back in line with the files

The files under permanent/ and temporary/ are the source of truth; the
index and graph are repaired to match them, never the other way round.
"""

import re
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from lore.errors import LoreError
from lore.files import TEMPORARY_DIR, iter_memory_files
from lore.frontmatter import read_memory_file
from lore.graph import GraphNode, add_node, has_node, load_graph, save_graph
from lore.index import load_index, save_index
from lore.log import get_logger
from lore.models import THOUGHT_PREFIX, IndexEntry, parse_timestamp

logger = get_logger("lore.maintenance")

DEFAULT_TTL_DAYS = 7
CONCLUDED_TTL_DAYS = 1
CONCLUDED_STATUS = "concluded"


# =============================================================================
# FILTERING
# =============================================================================

def glob_to_regex(pattern: str) -> re.Pattern:
    """Compile an id glob: ``*`` is any run, ``?`` one character, the rest literal."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$")


def match_glob(pattern: str, text: str) -> bool:
    return glob_to_regex(pattern).match(text) is not None


def filter_entries(
    entries: Iterable[IndexEntry],
    pattern: Optional[str] = None,
    tags: Optional[list] = None,
    memory_type: Optional[str] = None,
    scope: Optional[str] = None,
) -> list[IndexEntry]:
    """Entries matching every given criterion. ``tags`` must all be present."""
    regex = glob_to_regex(pattern) if pattern else None
    required = set(tags or [])
    return [
        e for e in entries
        if (regex is None or regex.match(e.id))
        and required.issubset(e.tags)
        and (memory_type is None or e.type == memory_type)
        and (scope is None or e.scope == scope)
    ]


# =============================================================================
# EXPIRY
# =============================================================================

def find_expired(
    root: Path,
    ttl_days: float = DEFAULT_TTL_DAYS,
    concluded_ttl_days: float = CONCLUDED_TTL_DAYS,
    now: Optional[datetime] = None,
) -> tuple[list[str], list[str]]:
    """Ids in temporary/ whose last update is older than their TTL.

    Age is measured from ``updated``, falling back to ``created``; files
    with neither are kept. A thought whose ``meta.status`` is "concluded"
    expires after ``concluded_ttl_days`` instead.

    Returns:
        (expired ids, errors for files that could not be read)
    """
    directory = Path(root) / TEMPORARY_DIR
    if not directory.is_dir():
        return [], []
    now = now or datetime.now(timezone.utc)

    expired, errors = [], []
    for path in sorted(directory.glob("*.md")):
        try:
            memory = read_memory_file(path, lenient=True)
        except (LoreError, OSError, UnicodeDecodeError) as e:
            errors.append(f"Error processing {path.name}: {e}")
            continue

        reference = parse_timestamp(memory.updated or memory.created)
        if reference is None:
            continue
        ttl = ttl_days
        if path.stem.startswith(THOUGHT_PREFIX) and memory.meta.get("status") == CONCLUDED_STATUS:
            ttl = concluded_ttl_days
        age_days = (now - reference).total_seconds() / 86400
        if age_days > ttl:
            expired.append(path.stem)
    return expired, errors


# =============================================================================
# SYNC
# =============================================================================

def _files_on_disk(root: Path) -> dict:
    return {path.stem: path for path in iter_memory_files(root)}


def sync_memories(root: Path, dry_run: bool = False) -> dict:
    """Repair the index and graph so both agree with the memory files.

    - every readable file gets an index entry and a graph node
    - graph nodes without a file are removed with their edges
    - edges with an endpoint that has no file are removed
    - index entries without a file are dropped

    Returns:
        {changes: {addedToGraph, addedToIndex, removedGhostNodes,
        removedOrphanEdges, removedFromIndex}, summary, errors}
    """
    root = Path(root)
    files = _files_on_disk(root)
    graph = load_graph(root)
    entries = load_index(root)
    errors = []

    added_to_graph, added_to_index = [], []
    indexed = {e.id for e in entries}
    for memory_id, path in files.items():
        if has_node(graph, memory_id) and memory_id in indexed:
            continue
        try:
            memory = read_memory_file(path)
        except (LoreError, OSError, UnicodeDecodeError) as e:
            errors.append(f"Error processing {path.name}: {e}")
            continue
        if not has_node(graph, memory_id):
            added_to_graph.append(memory_id)
            graph = add_node(graph, GraphNode(memory_id, memory.type))
        if memory_id not in indexed:
            added_to_index.append(memory_id)
            memory.id = memory_id
            entries.append(IndexEntry.from_memory(memory, path.relative_to(root).as_posix()))

    ghosts = [n.id for n in graph.nodes if n.id not in files]
    dangling = [e for e in graph.edges if e.source not in files or e.target not in files]
    if ghosts or dangling:
        graph = replace(
            graph,
            nodes=tuple(n for n in graph.nodes if n.id in files),
            edges=tuple(e for e in graph.edges if e.source in files and e.target in files),
        )

    removed_from_index = [e.id for e in entries if e.id not in files]
    entries = [e for e in entries if e.id in files]

    changed = added_to_graph or added_to_index or ghosts or dangling or removed_from_index
    if changed and not dry_run:
        save_graph(root, graph)
        save_index(root, entries)
        logger.info(
            f"Synced {root}: +{len(added_to_graph)} nodes, +{len(added_to_index)} entries, "
            f"-{len(ghosts)} ghosts, -{len(removed_from_index)} stale entries"
        )

    return {
        "changes": {
            "addedToGraph": added_to_graph,
            "addedToIndex": added_to_index,
            "removedGhostNodes": ghosts,
            "removedOrphanEdges": len(dangling),
            "removedFromIndex": removed_from_index,
        },
        "summary": {
            "filesOnDisk": len(files),
            "nodesInGraph": len(graph.nodes),
            "entriesInIndex": len(entries),
        },
        "errors": errors,
    }
