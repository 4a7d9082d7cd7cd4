#!/usr/bin/env python3
"""
Foundation Tests

The small modules everything else leans on:
1. Configuration layering (defaults < env < YAML file < caller)
2. Scope resolution
3. Ids and slugs
4. Frontmatter parsing and serialisation
5. The index file (load, migrate, rebuild)
6. Tagged results
"""

import json
from pathlib import Path

import pytest
import yaml

from lore.config import (
    config_file_path,
    find_git_root,
    get_default_scope,
    get_embedding_cache_dir,
    get_scope_path,
    load_config,
)
from lore.errors import ParseError, ValidationError, error_result, failure, is_success, success
from lore.frontmatter import parse_memory, serialise_memory, split_frontmatter
from lore.index import (
    add_to_index,
    batch_remove_from_index,
    find_in_index,
    load_index,
    rebuild_index,
    remove_from_index,
)
from lore.models import IndexEntry, Memory
from lore.slug import generate_id, generate_unique_id, is_valid_id, parse_id, replace_type_prefix, slugify


class TestConfig:
    """Layered settings."""

    def test_defaults(self):
        config = load_config()

        assert config["embedding"]["model"] == "embeddinggemma"
        assert config["search"]["thresholds"]["user_prompt"] == 0.55
        assert config["enterprise"]["enabled"] is False

    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("LORE_EMBEDDING_MODEL", "nomic-embed-text")
        monkeypatch.setenv("LORE_OLLAMA_URL", "http://gpu-box:11434")

        config = load_config()

        assert config["embedding"]["model"] == "nomic-embed-text"
        assert config["embedding"]["endpoint"] == "http://gpu-box:11434"
        assert config["llm"]["endpoint"] == "http://gpu-box:11434"

    def test_file_overrides_env(self, monkeypatch, isolated_home):
        monkeypatch.setenv("LORE_LLM_MODEL", "from-env")
        path = config_file_path()
        path.parent.mkdir(parents=True)
        path.write_text(yaml.safe_dump({"llm": {"model": "from-file"}, "cache": {"max_entries": 50}}))

        config = load_config()

        assert config_file_path() == isolated_home / "config" / "lore.yaml"
        assert config["llm"]["model"] == "from-file"
        assert config["cache"]["max_entries"] == 50
        # nested merge keeps untouched siblings
        assert config["llm"]["timeout_seconds"] == 30.0

    def test_caller_wins(self):
        config = load_config({"search": {"limit": 3}})

        assert config["search"]["limit"] == 3
        assert config["search"]["thresholds"]["session_start"] == 0.4

    def test_broken_file_ignored(self):
        path = config_file_path()
        path.parent.mkdir(parents=True)
        path.write_text("llm: [unclosed")

        assert load_config()["llm"]["model"] == "llama3.2"

    def test_cache_dir_under_home(self, isolated_home):
        assert get_embedding_cache_dir() == isolated_home / "cache" / "embeddings"


class TestScopes:
    """Where each scope lives."""

    def test_project_and_local_follow_git_root(self, temp_data_dir):
        (temp_data_dir / ".git").mkdir()
        nested = temp_data_dir / "src" / "pkg"
        nested.mkdir(parents=True)
        root = temp_data_dir.resolve()

        assert find_git_root(nested) == root
        assert get_scope_path("project", nested) == root / ".lore" / "memory"
        assert get_scope_path("local", nested) == root / ".lore" / "memory" / "local"
        assert get_default_scope(nested) == "project"

    def test_global_under_home(self, isolated_home):
        assert get_scope_path("global") == isolated_home / "memory"

    def test_outside_git_defaults_to_global(self, temp_data_dir):
        assert get_default_scope(temp_data_dir) == "global"

    def test_enterprise_needs_enabling(self, temp_data_dir, monkeypatch):
        with pytest.raises(ValidationError):
            get_scope_path("enterprise")

        monkeypatch.setenv("LORE_ENTERPRISE_ENABLED", "true")
        with pytest.raises(ValidationError):
            get_scope_path("enterprise")

        monkeypatch.setenv("LORE_ENTERPRISE_PATH", str(temp_data_dir / "org"))
        assert get_scope_path("enterprise") == temp_data_dir / "org"

    def test_unknown_scope(self):
        with pytest.raises(ValidationError):
            get_scope_path("team")


class TestIds:
    """Slugs and memory ids."""

    @pytest.mark.parametrize("text,slug", [
        ("Use Postgres for storage", "use-postgres-for-storage"),
        ("  Café   crème!  ", "cafe-creme"),
        ("Don't -- repeat --- hyphens", "dont-repeat-hyphens"),
    ])
    def test_slugify(self, text, slug):
        assert slugify(text) == slug

    def test_long_titles_truncated(self):
        assert len(slugify("word " * 100)) <= 80

    def test_generate_id(self):
        assert generate_id("gotcha", "Pool exhaustion") == "gotcha-pool-exhaustion"

    def test_empty_slug_rejected(self):
        with pytest.raises(ValidationError):
            generate_id("gotcha", "!!!")

    def test_unique_id_suffixes(self):
        taken = {"learning-x", "learning-x-1"}
        assert generate_unique_id("learning", "x", taken.__contains__) == "learning-x-2"

    @pytest.mark.parametrize("memory_id,valid", [
        ("decision-use-postgres", True),
        ("thought-maybe-cache", True),
        ("note-something", False),
        ("decision", False),
        ("Decision-upper", False),
        ("decision--double", False),
        ("../decision-x", False),
        (None, False),
    ])
    def test_is_valid_id(self, memory_id, valid):
        assert is_valid_id(memory_id) is valid

    def test_parse_and_replace(self):
        assert parse_id("gotcha-pool-size") == ("gotcha", "pool-size")
        assert parse_id("thought-pool-size") == ("thought", "pool-size")
        assert parse_id("bad id") is None
        assert replace_type_prefix("thought-pool-size", "learning") == "learning-pool-size"


class TestFrontmatter:
    """File format."""

    TEXT = (
        "---\n"
        "id: gotcha-pool\n"
        "title: Pool exhaustion\n"
        "type: gotcha\n"
        "tags:\n- database\n"
        "severity: high\n"
        "created: 2025-01-02T03:04:05+00:00\n"
        "---\n\n"
        "Set the pool to 20.\n"
    )

    def test_parse(self):
        memory = parse_memory(self.TEXT)

        assert memory.id == "gotcha-pool"
        assert memory.tags == ["database"]
        assert memory.severity == "high"
        assert memory.content == "Set the pool to 20."
        # unquoted YAML timestamps come back as text
        assert memory.created.startswith("2025-01-02T03:04:05")

    def test_missing_delimiters(self):
        with pytest.raises(ParseError, match="missing frontmatter delimiters"):
            split_frontmatter("title: no fences\n")

    def test_empty_block(self):
        assert split_frontmatter("---\n---\nbody") == ({}, "body")

    def test_required_fields(self):
        with pytest.raises(ParseError):
            parse_memory("---\ntitle: only a title\n---\nbody")
        assert parse_memory("---\ntitle: only a title\n---\nbody", lenient=True).title == "only a title"

    def test_id_from_file_name(self):
        memory = parse_memory("---\ntitle: T\ntype: learning\n---\nx", file_path=Path("/m/learning-t-1.md"))
        assert memory.id == "learning-t-1"

    def test_scalar_tags_become_a_list(self):
        memory = parse_memory("---\ntitle: T\ntype: learning\ntags: database\n---\nx")
        assert memory.tags == ["database"]

    @pytest.mark.parametrize("field", ["tags: 5", "links: {a: b}", "meta: [1]", "tags:\n- {a: b}"])
    def test_malformed_fields_are_parse_errors(self, field):
        with pytest.raises(ParseError, match="Invalid frontmatter"):
            parse_memory(f"---\ntitle: T\ntype: learning\n{field}\n---\nx")

    def test_serialise_key_order(self):
        memory = Memory(
            id="decision-a", title="A", type="decision", content="Body",
            created="2025-01-01T00:00:00+00:00", updated="2025-01-01T00:00:00+00:00", tags=["x"],
        )
        text = serialise_memory(memory)
        block = text.split("---\n")[1]
        keys = [line.split(":")[0] for line in block.splitlines() if line[:1].isalpha()]

        assert keys == ["id", "title", "type", "scope", "created", "updated", "tags"]
        assert text.endswith("---\n\nBody\n")
        assert parse_memory(text).created == "2025-01-01T00:00:00+00:00"


class TestIndexFile:
    """index.json handling."""

    def test_missing_and_corrupt(self, temp_data_dir):
        assert load_index(temp_data_dir) == []
        (temp_data_dir / "index.json").write_text("{oops")
        assert load_index(temp_data_dir) == []

    def test_legacy_shape_migrates(self, temp_data_dir):
        (temp_data_dir / "index.json").write_text(json.dumps({
            "entries": [{"id": "decision-a", "type": "decision", "title": "A", "file": "permanent/decision-a.md"}],
        }))

        entry = load_index(temp_data_dir)[0]
        assert entry.relative_path == "permanent/decision-a.md"

    def test_add_replaces_by_id(self, temp_data_dir):
        add_to_index(temp_data_dir, IndexEntry("decision-a", "decision", "Old"))
        add_to_index(temp_data_dir, IndexEntry("decision-a", "decision", "New"))

        assert [e.title for e in load_index(temp_data_dir)] == ["New"]

    def test_remove(self, temp_data_dir):
        for i in range(3):
            add_to_index(temp_data_dir, IndexEntry(f"learning-{i}", "learning", str(i)))

        assert remove_from_index(temp_data_dir, "learning-0") is True
        assert remove_from_index(temp_data_dir, "learning-0") is False
        assert batch_remove_from_index(temp_data_dir, ["learning-1", "learning-2", "learning-9"]) == 2
        assert find_in_index(temp_data_dir, "learning-1") is None

    def test_rebuild(self, populated_store):
        root = populated_store.root
        add_to_index(root, IndexEntry("decision-ghost", "decision", "Ghost"))
        (root / "permanent" / "decision-broken.md").write_text("no fences")

        result = rebuild_index(root)

        assert result["entriesCount"] == 4
        assert result["orphansRemoved"] == 1
        assert result["newEntriesAdded"] == 0
        assert result["skipped"] == ["decision-broken.md"]


class TestTaggedResults:
    """Result helpers."""

    def test_success(self):
        result = success(id="decision-a")
        assert result == {"status": "success", "id": "decision-a"}
        assert is_success(result)

    def test_error_from_validation(self):
        result = error_result(ValidationError("bad", ["title is required", "type is invalid"]))

        assert result["status"] == "error"
        assert result["errorType"] == "ValidationError"
        assert result["errors"] == ["title is required", "type is invalid"]
        assert not is_success(result)

    def test_failure(self):
        assert failure("nope", "ParseError")["errorType"] == "ParseError"
