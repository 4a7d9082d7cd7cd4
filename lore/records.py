"""
Memory files on disk, kept in step with the index.

    permanent/{id}.md   everything durable
    temporary/{id}.md   ephemeral thought- records
"""

from pathlib import Path

from lore.errors import NotFoundError, ValidationError
from lore.files import PERMANENT_DIR, TEMPORARY_DIR, atomic_write_text
from lore.frontmatter import read_memory_file, serialise_memory
from lore.index import add_to_index, find_in_index
from lore.models import THOUGHT_PREFIX, IndexEntry, Memory
from lore.slug import is_valid_id


def tier_for(memory_id: str) -> str:
    return TEMPORARY_DIR if memory_id.startswith(THOUGHT_PREFIX) else PERMANENT_DIR


def memory_path(root: Path, memory_id: str) -> Path:
    """Where a memory with this id lives.

    Raises:
        ValidationError: the id is not a valid memory id
    """
    if not is_valid_id(memory_id):
        raise ValidationError(f"Invalid memory id: {memory_id}")
    return Path(root) / tier_for(memory_id) / f"{memory_id}.md"


def persist_memory(root: Path, memory: Memory) -> Path:
    """Write the memory file atomically and upsert its index entry."""
    root = Path(root)
    path = memory_path(root, memory.id)
    atomic_write_text(path, serialise_memory(memory))
    add_to_index(root, IndexEntry.from_memory(memory, path.relative_to(root).as_posix()))
    memory.file_path = str(path)
    return path


def locate_memory(root: Path, memory_id: str) -> Path:
    """Find a memory's file via the index, then by conventional location.

    Raises:
        ValidationError: invalid id
        NotFoundError: no file for this id
    """
    root = Path(root)
    if not is_valid_id(memory_id):
        raise ValidationError(f"Invalid memory id: {memory_id}")

    entry = find_in_index(root, memory_id)
    if entry is not None and entry.relative_path:
        candidate = (root / entry.relative_path).resolve()
        # The index is editable by hand; never follow it outside the root
        if candidate.is_relative_to(root.resolve()) and candidate.exists():
            return candidate

    for sub in (PERMANENT_DIR, TEMPORARY_DIR):
        candidate = root / sub / f"{memory_id}.md"
        if candidate.exists():
            return candidate
    raise NotFoundError(f"Memory not found: {memory_id}")


def load_memory(root: Path, memory_id: str) -> Memory:
    """Read a memory by id.

    Raises:
        ValidationError, NotFoundError, ParseError
    """
    path = locate_memory(root, memory_id)
    memory = read_memory_file(path)
    memory.id = memory.id or memory_id
    return memory


def memory_exists(root: Path, memory_id: str) -> bool:
    try:
        locate_memory(root, memory_id)
    except (NotFoundError, ValidationError):
        return False
    return True
