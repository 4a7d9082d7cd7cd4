"""
Lore - Persistent Memory for Coding Assistants

Markdown memories with a link graph, keyword and semantic search, and
health and quality reports. Scoped per project, per user and optionally
per organisation.
"""

__version__ = "0.1.0"


def open_store(**kwargs):
    """Open a MemoryStore (see lore.storage.MemoryStore for arguments).

    Imported lazily so `import lore` stays cheap.
    """
    from lore.storage import MemoryStore
    return MemoryStore(**kwargs)


__all__ = ["open_store", "__version__"]
