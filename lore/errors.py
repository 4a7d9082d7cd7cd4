"""
Errors and tagged results.

Internal modules raise the exceptions below. The public surface
(MemoryStore) never lets them escape: every operation answers with a
plain dict tagged ``status: success`` or ``status: error``.

    NotFoundError       memory / node absent
    ValidationError     bad field, bad enum value, bad id
    StructuralError     graph invariant violated
      NodeNotFoundError   edge endpoint missing
      SelfLoopError       source == target
    ParseError          malformed frontmatter or store file
    CollaboratorError   embedding / LLM service failed or timed out
"""

from typing import Any, Optional


class LoreError(Exception):
    """Base class for every error raised inside lore."""


class NotFoundError(LoreError):
    pass


class ValidationError(LoreError):
    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class StructuralError(LoreError):
    pass


class NodeNotFoundError(StructuralError):
    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class SelfLoopError(StructuralError):
    def __init__(self, node_id: str):
        super().__init__(f"Self-referencing edge not allowed: {node_id}")
        self.node_id = node_id


class ParseError(LoreError):
    pass


class CollaboratorError(LoreError):
    pass


# =============================================================================
# TAGGED RESULTS
# =============================================================================

def success(**payload: Any) -> dict:
    """Build a success result."""
    return {"status": "success", **payload}


def error_result(exc: Exception, **payload: Any) -> dict:
    """Turn an exception into an error result."""
    result = {
        "status": "error",
        "error": str(exc),
        "errorType": type(exc).__name__,
        **payload,
    }
    if isinstance(exc, ValidationError) and len(exc.errors) > 1:
        result["errors"] = exc.errors
    return result


def failure(message: str, error_type: str = "LoreError", **payload: Any) -> dict:
    """Build an error result without an exception in hand."""
    return {"status": "error", "error": message, "errorType": error_type, **payload}


def is_success(result: dict) -> bool:
    return result.get("status") == "success"
