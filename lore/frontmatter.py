"""
Memory file format.

    ---
    id: decision-use-postgres
    title: Use Postgres
    type: decision
    ...
    ---

    Body text.

Frontmatter is YAML; the body is free text.
"""

import re
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import yaml

from lore.errors import ParseError
from lore.models import Memory, Scope
from lore.slug import generate_id

_FRONTMATTER_RE = re.compile(r"^---\n(.*?)\n---\n(.*)$", re.DOTALL)


def _as_text(value) -> str:
    # Unquoted timestamps come back from YAML as datetime objects
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return "" if value is None else str(value)


def _as_text_list(value, name: str) -> list[str]:
    """A scalar-or-list frontmatter field as a list of strings."""
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, (str, int, float)) for v in value):
        raise ParseError(f"Invalid frontmatter: {name} must be a list of strings")
    return [_as_text(v) for v in value]


def split_frontmatter(text: str) -> tuple[dict, str]:
    """Split file text into (frontmatter mapping, body)."""
    text = text.replace("\r\n", "\n")
    match = _FRONTMATTER_RE.match(text)
    if not match:
        # "---\n---\n" has an empty block that the pattern cannot see
        if text.startswith("---\n---\n"):
            return {}, text[len("---\n---\n"):].strip()
        raise ParseError("Invalid frontmatter: missing frontmatter delimiters")
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid frontmatter YAML: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Invalid frontmatter: expected a mapping")
    return data, match.group(2).strip()


def parse_memory(text: str, lenient: bool = False, file_path: Optional[Path] = None) -> Memory:
    """Parse a memory file.

    Args:
        text: full file contents
        lenient: tolerate a missing type or title
        file_path: recorded on the result, and used to infer a missing id

    Raises:
        ParseError: missing delimiters, bad YAML, or missing required fields
    """
    data, content = split_frontmatter(text)

    if not lenient:
        missing = [name for name in ("type", "title") if not data.get(name)]
        if missing:
            raise ParseError(f"Invalid frontmatter: missing required field(s) {', '.join(missing)}")

    memory_type = _as_text(data.get("type"))
    title = _as_text(data.get("title"))
    memory_id = _as_text(data.get("id"))
    if not memory_id:
        if file_path is not None:
            memory_id = Path(file_path).stem
        elif memory_type and title:
            memory_id = generate_id(memory_type, title)

    tags = _as_text_list(data.get("tags"), "tags")
    links = _as_text_list(data.get("links"), "links")
    meta = data.get("meta") or {}
    if not isinstance(meta, dict):
        raise ParseError("Invalid frontmatter: meta must be a mapping")

    return Memory(
        id=memory_id,
        title=title,
        type=memory_type,
        content=content,
        scope=_as_text(data.get("scope")) or Scope.PROJECT.value,
        created=_as_text(data.get("created")),
        updated=_as_text(data.get("updated")),
        tags=tags,
        severity=_as_text(data.get("severity")) or None,
        links=links,
        project=_as_text(data.get("project")) or None,
        source=_as_text(data.get("source")) or None,
        meta=meta,
        file_path=str(file_path) if file_path is not None else None,
    )


def serialise_frontmatter(data: dict) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)


def serialise_memory(memory: Memory) -> str:
    """Render a memory as file text."""
    return f"---\n{serialise_frontmatter(memory.frontmatter())}---\n\n{memory.content}\n"


def read_memory_file(path: Path, lenient: bool = False) -> Memory:
    """Read and parse a memory file. OSError propagates."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    return parse_memory(text, lenient=lenient, file_path=path)
