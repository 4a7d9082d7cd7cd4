"""
Shared test fixtures - a small, realistic memory store.

The seeded memories read like notes a team would actually keep about a
web service: decisions, gotchas and learnings, a few of them linked.
Embeddings come from MockEmbeddingProvider so nothing needs a model
server.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest

from lore.embeddings import CachedEmbedder, MockEmbeddingProvider
from lore.storage import MemoryStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.lore."""
    for name in [k for k in os.environ if k.startswith("LORE_")]:
        monkeypatch.delenv(name)
    home = tmp_path / "lore-home"
    monkeypatch.setenv("LORE_HOME", str(home))
    return home


@pytest.fixture
def temp_data_dir():
    """Create a temporary directory for test data."""
    temp_dir = Path(tempfile.mkdtemp())
    yield temp_dir
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def embedder(temp_data_dir):
    """Deterministic embedder with an on-disk cache."""
    return CachedEmbedder(
        MockEmbeddingProvider(),
        cache_dir=temp_data_dir / "cache",
        evict_in_background=False,
    )


@pytest.fixture
def memory_store(temp_data_dir, embedder):
    """Fresh memory store for each test."""
    return MemoryStore(
        root=temp_data_dir / "memory",
        scope="project",
        config={"home": str(temp_data_dir / "home")},
        embedder=embedder,
        project_root=temp_data_dir,
    )


@pytest.fixture
def team_memories():
    """Notes from a team running a Postgres-backed API."""
    return [
        {
            "title": "Use Postgres for primary storage",
            "content": "We chose Postgres over MySQL for JSONB support and transactional DDL.",
            "memory_type": "decision",
            "tags": ["database", "postgres"],
        },
        {
            "title": "Connection pool exhaustion under load",
            "content": "The default pool size of 5 runs out during batch imports. Set pool size to 20.",
            "memory_type": "gotcha",
            "tags": ["database", "performance"],
            "severity": "high",
        },
        {
            "title": "Migrations must be backwards compatible",
            "content": "Deploys roll out gradually, so old code runs against the new schema for a while.",
            "memory_type": "learning",
            "tags": ["deploy", "database"],
        },
        {
            "title": "Retry idempotent requests only",
            "content": "Retrying POST requests caused duplicate orders. Only retry GET and PUT.",
            "memory_type": "gotcha",
            "tags": ["http", "retries"],
            "severity": "critical",
        },
    ]


@pytest.fixture
def populated_store(memory_store, team_memories):
    """Store with the team memories written and two of them linked."""
    ids = []
    for mem in team_memories:
        result = memory_store.write_memory(**mem)
        assert result["status"] == "success", result
        ids.append(result["id"])
    memory_store.link_memories(ids[0], ids[1], "warns")
    memory_store.link_memories(ids[2], ids[0], "extends")
    memory_store.ids = ids
    return memory_store
