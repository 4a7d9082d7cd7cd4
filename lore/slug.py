"""
Memory ids.

An id is ``{type}-{slug}``: the memory type followed by a slugified title,
e.g. ``decision-use-postgres-for-storage``. Titles that collide get a
numeric suffix (``-1``, ``-2``, ...).
"""

import re
import unicodedata
from typing import Callable, Optional

from lore.errors import ValidationError
from lore.models import MEMORY_TYPES, THOUGHT_PREFIX

MAX_SLUG_LENGTH = 80
MAX_COLLISION_SUFFIX = 1000

_ID_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lowercase, strip diacritics and punctuation, hyphenate whitespace."""
    text = unicodedata.normalize("NFD", text.lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9\s-]", "", text)
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"-+", "-", text)
    text = text.strip("-")
    if len(text) > max_length:
        text = text[:max_length].rstrip("-")
    return text


def generate_id(memory_type: str, title: str) -> str:
    slug = slugify(title)
    if not slug:
        raise ValidationError(f"Title produces an empty slug: {title!r}")
    return f"{memory_type}-{slug}"


def generate_unique_id(
    memory_type: str,
    title: str,
    exists: Callable[[str], bool],
) -> str:
    """Generate an id, appending -1, -2, ... while ``exists(id)`` is true."""
    base = generate_id(memory_type, title)
    if not exists(base):
        return base
    for n in range(1, MAX_COLLISION_SUFFIX + 1):
        candidate = f"{base}-{n}"
        if not exists(candidate):
            return candidate
    raise ValidationError(f"Too many id collisions for {base}")


def parse_id(memory_id: str) -> Optional[tuple[str, str]]:
    """Split an id into (type, slug). Returns None for invalid ids."""
    if not is_valid_id(memory_id):
        return None
    prefix, _, slug = memory_id.partition("-")
    if prefix in MEMORY_TYPES:
        return prefix, slug
    return "thought", slug


def type_from_id(memory_id: str) -> Optional[str]:
    parsed = parse_id(memory_id)
    return parsed[0] if parsed else None


def is_valid_id(memory_id) -> bool:
    """A valid id is hyphenated lowercase alphanumerics with a type prefix."""
    if not isinstance(memory_id, str) or not _ID_PATTERN.match(memory_id):
        return False
    prefix, sep, slug = memory_id.partition("-")
    if not sep or not slug:
        return False
    return prefix in MEMORY_TYPES or memory_id.startswith(THOUGHT_PREFIX)


def replace_type_prefix(memory_id: str, new_type: str) -> str:
    parsed = parse_id(memory_id)
    if parsed is None:
        raise ValidationError(f"Invalid memory id: {memory_id}")
    return f"{new_type}-{parsed[1]}"
