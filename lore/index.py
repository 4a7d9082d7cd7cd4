"""
Memory index (index.json).

A flat cache of memory metadata so listing and keyword search don't have
to open every file. The index is derived state: if it is missing or
corrupt it loads as empty, and rebuild_index() regenerates it from the
memory files.

    {"version": "1.0.0", "lastUpdated": "...", "memories": [{id, type, ...}]}
"""

import json
from pathlib import Path
from typing import Iterable, Optional

from lore.errors import ParseError
from lore.files import INDEX_FILE, atomic_write_json, iter_memory_files
from lore.frontmatter import read_memory_file
from lore.log import get_logger
from lore.models import IndexEntry, now_iso

logger = get_logger("lore.index")

INDEX_VERSION = "1.0.0"


def index_path(root: Path) -> Path:
    return Path(root) / INDEX_FILE


def load_index(root: Path) -> list[IndexEntry]:
    """Load index entries. Missing or invalid files give an empty list."""
    path = index_path(root)
    if not path.exists():
        return []
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Corrupt index at {path}, treating as empty: {e}")
        return []

    if not isinstance(data, dict):
        return []
    raw_entries = data.get("memories")
    if raw_entries is None:
        raw_entries = data.get("entries")
    if not isinstance(raw_entries, list):
        return []

    entries = []
    for raw in raw_entries:
        if isinstance(raw, dict) and isinstance(raw.get("id"), str):
            entries.append(IndexEntry.from_dict(raw))
    return entries


def save_index(root: Path, entries: Iterable[IndexEntry]) -> None:
    atomic_write_json(index_path(root), {
        "version": INDEX_VERSION,
        "lastUpdated": now_iso(),
        "memories": [entry.to_dict() for entry in entries],
    })


def add_to_index(root: Path, entry: IndexEntry) -> None:
    """Insert an entry, replacing any existing entry with the same id."""
    entries = [e for e in load_index(root) if e.id != entry.id]
    entries.append(entry)
    save_index(root, entries)


def remove_from_index(root: Path, memory_id: str) -> bool:
    entries = load_index(root)
    kept = [e for e in entries if e.id != memory_id]
    if len(kept) == len(entries):
        return False
    save_index(root, kept)
    return True


def batch_remove_from_index(root: Path, memory_ids: Iterable[str]) -> int:
    doomed = set(memory_ids)
    entries = load_index(root)
    kept = [e for e in entries if e.id not in doomed]
    removed = len(entries) - len(kept)
    if removed:
        save_index(root, kept)
    return removed


def find_in_index(root: Path, memory_id: str) -> Optional[IndexEntry]:
    for entry in load_index(root):
        if entry.id == memory_id:
            return entry
    return None


def rebuild_index(root: Path) -> dict:
    """Regenerate the index from permanent/ and temporary/.

    Files that fail to parse are skipped and logged.

    Returns:
        {entriesCount, orphansRemoved, newEntriesAdded, skipped}
    """
    root = Path(root)
    previous = {e.id for e in load_index(root)}
    entries: dict[str, IndexEntry] = {}
    skipped = []

    for path in iter_memory_files(root):
        try:
            memory = read_memory_file(path)
        except (ParseError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping unreadable memory {path.name}: {e}")
            skipped.append(path.name)
            continue
        relative = path.relative_to(root).as_posix()
        entries[memory.id] = IndexEntry.from_memory(memory, relative)

    save_index(root, entries.values())
    current = set(entries)
    return {
        "entriesCount": len(entries),
        "orphansRemoved": len(previous - current),
        "newEntriesAdded": len(current - previous),
        "skipped": skipped,
    }
