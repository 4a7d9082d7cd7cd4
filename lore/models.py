"""
Core types: memory kinds, scopes, severities, relations, and the records
that flow between the store, index and graph.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# =============================================================================
# ENUMERATIONS
# =============================================================================

class MemoryType(str, Enum):
    """Closed set of memory kinds. The value doubles as the id prefix."""
    DECISION = "decision"
    LEARNING = "learning"
    ARTIFACT = "artifact"
    GOTCHA = "gotcha"
    BREADCRUMB = "breadcrumb"
    HUB = "hub"


class Scope(str, Enum):
    """Storage tier, in precedence order."""
    ENTERPRISE = "enterprise"
    LOCAL = "local"
    PROJECT = "project"
    GLOBAL = "global"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Relation(str, Enum):
    """Edge labels."""
    RELATES_TO = "relates-to"
    INFORMED_BY = "informed-by"
    IMPLEMENTS = "implements"
    SUPERSEDES = "supersedes"
    WARNS = "warns"
    DOCUMENTS = "documents"
    EXTENDS = "extends"
    DEPENDS_ON = "depends-on"
    CONTRADICTS = "contradicts"
    AUTO_LINKED = "auto-linked-by-similarity"


MEMORY_TYPES = [t.value for t in MemoryType]
SCOPES = [s.value for s in Scope]
SEVERITIES = [s.value for s in Severity]
RELATIONS = [r.value for r in Relation]

# Ephemeral records live in temporary/ and are never suggested for linking
THOUGHT_PREFIX = "thought-"

DEFAULT_RELATION = Relation.RELATES_TO.value


def now_iso() -> str:
    """Current UTC time as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_memory_type(value) -> bool:
    return value in MEMORY_TYPES


def is_scope(value) -> bool:
    return value in SCOPES


def is_severity(value) -> bool:
    return value in SEVERITIES


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Memory:
    """A memory as stored on disk: frontmatter fields plus body."""
    id: str
    title: str
    type: str
    content: str = ""
    scope: str = Scope.PROJECT.value
    created: str = ""
    updated: str = ""
    tags: list = field(default_factory=list)
    severity: Optional[str] = None
    links: list = field(default_factory=list)
    project: Optional[str] = None
    source: Optional[str] = None
    meta: dict = field(default_factory=dict)
    file_path: Optional[str] = None

    def frontmatter(self) -> dict:
        """Frontmatter fields in on-disk key order, empty optionals dropped."""
        data = {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "scope": self.scope,
            "project": self.project,
            "created": self.created,
            "updated": self.updated,
            "tags": list(self.tags),
            "severity": self.severity,
            "links": list(self.links) if self.links else None,
            "source": self.source,
            "meta": dict(self.meta) if self.meta else None,
        }
        return {k: v for k, v in data.items() if v is not None}

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("file_path")
        data["filePath"] = self.file_path
        return data


@dataclass
class IndexEntry:
    """Denormalised projection of a memory for listing and keyword search."""
    id: str
    type: str
    title: str
    tags: list = field(default_factory=list)
    created: str = ""
    updated: str = ""
    scope: str = Scope.PROJECT.value
    relative_path: str = ""
    severity: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "tags": list(self.tags),
            "created": self.created,
            "updated": self.updated,
            "scope": self.scope,
            "relativePath": self.relative_path,
        }
        if self.severity:
            data["severity"] = self.severity
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IndexEntry":
        return cls(
            id=data["id"],
            type=data.get("type", ""),
            title=data.get("title", ""),
            tags=list(data.get("tags") or []),
            created=data.get("created", ""),
            updated=data.get("updated", ""),
            scope=data.get("scope", Scope.PROJECT.value),
            # "file" is the pre-1.0 name of the field
            relative_path=data.get("relativePath") or data.get("file") or "",
            severity=data.get("severity"),
        )

    @classmethod
    def from_memory(cls, memory: Memory, relative_path: str) -> "IndexEntry":
        return cls(
            id=memory.id,
            type=memory.type,
            title=memory.title,
            tags=list(memory.tags),
            created=memory.created,
            updated=memory.updated,
            scope=memory.scope,
            relative_path=relative_path,
            severity=memory.severity,
        )
