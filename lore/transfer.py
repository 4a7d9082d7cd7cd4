"""
Export and import.

An export package carries memories (frontmatter + body) and, optionally,
the part of the graph that connects them:

    {
      "version": "1.0.0",
      "exportedAt": "...",
      "sourceScope": "project",
      "memories": [{"id", "frontmatter", "content"}],
      "graph": {"nodes": [...], "edges": [...]}
    }

Packages serialise to JSON or YAML. Imports keep ids, and resolve clashes
with a strategy: skip, merge (take the incoming copy only if it is newer)
or replace.
"""

import json
from pathlib import Path
from typing import Iterable, Optional

import yaml

from lore.errors import LoreError, ParseError, ValidationError
from lore.frontmatter import parse_memory, serialise_frontmatter
from lore.graph import GraphNode, add_node, has_node, load_graph, save_graph
from lore.index import load_index
from lore.link import link_memories
from lore.log import get_logger
from lore.models import DEFAULT_RELATION, now_iso, parse_timestamp
from lore.records import load_memory, memory_exists, persist_memory
from lore.slug import is_valid_id

logger = get_logger("lore.transfer")

PACKAGE_VERSION = "1.0.0"
FORMATS = ("json", "yaml")
STRATEGIES = ("skip", "merge", "replace")


def export_memories(
    root: Path,
    scope: str,
    types: Optional[Iterable[str]] = None,
    tags: Optional[Iterable[str]] = None,
    ids: Optional[Iterable[str]] = None,
    include_graph: bool = True,
) -> dict:
    """Build an export package.

    Filters combine: a memory must match the type list, carry every tag,
    and be in the id list, for each filter given. Unreadable memories are
    skipped and listed under ``skipped``.
    """
    types = set(types) if types else None
    tags = set(tags) if tags else None
    ids = set(ids) if ids else None

    memories = []
    skipped = []
    for entry in load_index(root):
        if types is not None and entry.type not in types:
            continue
        if tags is not None and not tags.issubset(entry.tags):
            continue
        if ids is not None and entry.id not in ids:
            continue
        try:
            memory = load_memory(root, entry.id)
        except (LoreError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping {entry.id} in export: {e}")
            skipped.append(entry.id)
            continue
        memories.append({"id": memory.id, "frontmatter": memory.frontmatter(), "content": memory.content})

    package = {
        "version": PACKAGE_VERSION,
        "exportedAt": now_iso(),
        "sourceScope": scope,
        "memories": memories,
    }

    if include_graph:
        exported = {m["id"] for m in memories}
        graph = load_graph(root)
        package["graph"] = {
            "nodes": [n.to_dict() for n in graph.nodes if n.id in exported],
            "edges": [e.to_dict() for e in graph.edges if e.source in exported and e.target in exported],
        }

    if skipped:
        package["skipped"] = skipped
    return package


def serialise_package(package: dict, fmt: str = "json") -> str:
    if fmt not in FORMATS:
        raise ValidationError(f"Invalid export format: {fmt}. Expected json or yaml")
    if fmt == "yaml":
        return yaml.safe_dump(package, sort_keys=False, allow_unicode=True)
    return json.dumps(package, indent=2)


def parse_package(text: str, fmt: Optional[str] = None) -> dict:
    """Parse a package from JSON or YAML text (detected when fmt is None).

    Raises:
        ParseError: unreadable text or not shaped like a package
    """
    if fmt is not None and fmt not in FORMATS:
        raise ValidationError(f"Invalid import format: {fmt}. Expected json or yaml")
    try:
        if fmt == "json":
            data = json.loads(text)
        elif fmt == "yaml":
            data = yaml.safe_load(text)
        else:
            try:
                data = json.loads(text)
            except ValueError:
                data = yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ParseError(f"Could not parse import package: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("memories"), list):
        raise ParseError("Import package must be an object with a memories list")
    return data


def _incoming_memory(item: dict, target_scope: Optional[str]):
    if not isinstance(item, dict) or not isinstance(item.get("frontmatter"), dict):
        raise ValidationError("Package entry needs a frontmatter mapping")
    frontmatter = dict(item["frontmatter"])
    memory_id = item.get("id") or frontmatter.get("id")
    if not is_valid_id(memory_id):
        raise ValidationError(f"Invalid memory id: {memory_id}")
    frontmatter["id"] = memory_id
    text = f"---\n{serialise_frontmatter(frontmatter)}---\n\n{item.get('content') or ''}\n"
    memory = parse_memory(text)
    if target_scope:
        memory.scope = target_scope
    return memory


def _is_newer(incoming: Optional[str], existing: Optional[str]) -> bool:
    new = parse_timestamp(incoming)
    old = parse_timestamp(existing)
    if new is None:
        return False
    if old is None:
        return True
    return new > old


def import_package(
    root: Path,
    package: dict,
    strategy: str = "merge",
    dry_run: bool = False,
    target_scope: Optional[str] = None,
) -> dict:
    """Import a package into root.

    Memories are written first, then graph edges between memories of this
    package are re-created with link_memories. A failure on one item is
    recorded and the rest carry on.

    Returns:
        {importedCount, mergedCount, skippedCount, replacedCount,
         edgesImported, errors, dryRun}
    """
    if strategy not in STRATEGIES:
        raise ValidationError(f"Invalid import strategy: {strategy}. Expected skip, merge or replace")

    counts = {
        "importedCount": 0,
        "mergedCount": 0,
        "skippedCount": 0,
        "replacedCount": 0,
        "edgesImported": 0,
        "errors": [],
        "dryRun": dry_run,
    }

    package_ids = set()
    for item in package.get("memories", []):
        item_id = item.get("id") if isinstance(item, dict) else None
        try:
            memory = _incoming_memory(item, target_scope)
            package_ids.add(memory.id)
            if not memory_exists(root, memory.id):
                outcome = "importedCount"
            elif strategy == "skip":
                outcome = "skippedCount"
            elif strategy == "replace":
                outcome = "replacedCount"
            else:
                current = load_memory(root, memory.id)
                outcome = "mergedCount" if _is_newer(memory.updated, current.updated) else "skippedCount"

            if outcome != "skippedCount" and not dry_run:
                persist_memory(root, memory)
            counts[outcome] += 1
        except (LoreError, OSError) as e:
            logger.warning(f"Could not import {item_id}: {e}")
            counts["errors"].append({"id": item_id, "error": str(e)})

    graph_data = package.get("graph") or {}
    if not dry_run:
        for edge in graph_data.get("edges", []):
            if not isinstance(edge, dict) or not all(
                isinstance(edge.get(end), str) and edge[end] in package_ids for end in ("source", "target")
            ):
                continue
            try:
                result = link_memories(root, edge["source"], edge["target"], edge.get("label", DEFAULT_RELATION))
                if not result["alreadyExists"]:
                    counts["edgesImported"] += 1
            except (LoreError, KeyError, TypeError) as e:
                counts["errors"].append({"edge": edge, "error": str(e)})

        # Nodes without edges still belong in the graph
        graph = load_graph(root)
        indexed = {entry.id: entry.type for entry in load_index(root)}
        added = False
        for node in graph_data.get("nodes", []):
            node_id = node.get("id") if isinstance(node, dict) else None
            if node_id in package_ids and node_id in indexed and not has_node(graph, node_id):
                graph = add_node(graph, GraphNode(node_id, indexed[node_id]))
                added = True
        if added:
            save_graph(root, graph)

    return counts
