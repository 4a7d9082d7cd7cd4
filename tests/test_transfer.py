#!/usr/bin/env python3
"""
Export / Import Tests

1. Export filters and the graph slice that travels with memories
2. JSON and YAML serialisation
3. Import strategies: skip, merge (newer wins), replace, and dry runs
4. Bad packages produce errors instead of exceptions
"""

import json
from pathlib import Path

import pytest

from lore.errors import ParseError
from lore.graph import has_edge, has_node, load_graph
from lore.storage import MemoryStore
from lore.transfer import parse_package, serialise_package


@pytest.fixture
def fresh_store(temp_data_dir, embedder):
    """An empty store in another root to import into."""
    return MemoryStore(
        root=temp_data_dir / "other-memory",
        scope="project",
        config={"home": str(temp_data_dir / "home")},
        embedder=embedder,
    )


class TestExport:
    """Building packages."""

    def test_exports_everything_with_graph(self, populated_store):
        result = populated_store.export_memories()
        package = result["package"]

        assert result["count"] == 4
        assert package["version"] == "1.0.0"
        assert package["sourceScope"] == "project"
        assert len(package["graph"]["edges"]) == 2
        first = package["memories"][0]
        assert set(first) == {"id", "frontmatter", "content"}

    def test_type_filter_trims_graph(self, populated_store):
        package = populated_store.export_memories(memory_types=["gotcha"])["package"]

        assert {m["frontmatter"]["type"] for m in package["memories"]} == {"gotcha"}
        # both gotchas' edges lead to memories that weren't exported
        assert package["graph"]["edges"] == []

    def test_tag_and_id_filters(self, populated_store):
        by_tag = populated_store.export_memories(tags=["deploy"])["package"]
        by_id = populated_store.export_memories(ids=[populated_store.ids[0]])["package"]

        assert [m["id"] for m in by_tag["memories"]] == [populated_store.ids[2]]
        assert [m["id"] for m in by_id["memories"]] == [populated_store.ids[0]]

    def test_without_graph(self, populated_store):
        package = populated_store.export_memories(include_graph=False)["package"]
        assert "graph" not in package

    def test_write_yaml_file(self, populated_store, temp_data_dir):
        output = temp_data_dir / "export.yaml"
        result = populated_store.export_memories(output_path=output)

        assert result["format"] == "yaml"
        assert output.exists()
        assert parse_package(output.read_text(), "yaml")["sourceScope"] == "project"

    def test_bad_format(self, populated_store):
        assert populated_store.export_memories(fmt="xml")["errorType"] == "ValidationError"


class TestPackageParsing:
    """Text in, package out."""

    def test_json_autodetected(self):
        assert parse_package(json.dumps({"memories": []})) == {"memories": []}

    def test_yaml_autodetected(self):
        assert parse_package("memories: []\nversion: '1.0.0'\n")["version"] == "1.0.0"

    def test_not_a_package(self):
        with pytest.raises(ParseError):
            parse_package("[1, 2, 3]")

    def test_garbage(self):
        with pytest.raises(ParseError):
            parse_package("{: : :", "json")

    def test_serialise_round_trip(self, populated_store):
        package = populated_store.export_memories()["package"]

        for fmt in ("json", "yaml"):
            assert parse_package(serialise_package(package, fmt), fmt)["memories"] == package["memories"]


class TestImport:
    """Strategies and graph restoration."""

    def test_import_into_empty_store(self, populated_store, fresh_store):
        package = populated_store.export_memories()["package"]
        result = fresh_store.import_memories(package=package)

        assert result["status"] == "success"
        assert result["importedCount"] == 4
        assert result["edgesImported"] == 2
        assert result["errors"] == []
        graph = load_graph(fresh_store.root)
        assert has_edge(graph, populated_store.ids[0], populated_store.ids[1], "warns")
        read = fresh_store.read_memory(populated_store.ids[1])["memory"]
        assert read["severity"] == "high"

    def test_skip_strategy(self, populated_store, fresh_store):
        package = populated_store.export_memories()["package"]
        fresh_store.import_memories(package=package)
        result = fresh_store.import_memories(package=package, strategy="skip")

        assert result["skippedCount"] == 4
        assert result["importedCount"] == 0

    def test_merge_takes_only_newer(self, populated_store, fresh_store):
        package = populated_store.export_memories()["package"]
        fresh_store.import_memories(package=package)

        newer = populated_store.ids[0]
        for item in package["memories"]:
            if item["id"] == newer:
                item["frontmatter"]["updated"] = "2999-01-01T00:00:00+00:00"
                item["content"] = "Updated elsewhere."
        result = fresh_store.import_memories(package=package, strategy="merge")

        assert result["mergedCount"] == 1
        assert result["skippedCount"] == 3
        assert fresh_store.read_memory(newer)["memory"]["content"] == "Updated elsewhere."

    def test_replace_strategy(self, populated_store, fresh_store):
        package = populated_store.export_memories()["package"]
        fresh_store.import_memories(package=package)
        result = fresh_store.import_memories(package=package, strategy="replace")

        assert result["replacedCount"] == 4

    def test_dry_run_writes_nothing(self, populated_store, fresh_store):
        package = populated_store.export_memories()["package"]
        result = fresh_store.import_memories(package=package, dry_run=True)

        assert result["importedCount"] == 4
        assert result["dryRun"] is True
        assert fresh_store.list_memories()["total"] == 0
        assert not Path(fresh_store.root / "graph.json").exists()

    def test_bad_entries_are_counted(self, fresh_store):
        package = {"memories": [
            {"id": "Not Valid", "frontmatter": {"title": "x", "type": "learning"}, "content": "x"},
            {"id": "learning-ok", "frontmatter": {"title": "OK", "type": "learning"}, "content": "Fine."},
        ]}
        result = fresh_store.import_memories(package=package)

        assert result["importedCount"] == 1
        assert len(result["errors"]) == 1
        assert result["errors"][0]["id"] == "Not Valid"

    def test_isolated_nodes_restored(self, fresh_store):
        package = {
            "memories": [{"id": "hub-lonely", "frontmatter": {"title": "Lonely", "type": "hub"}, "content": "Index."}],
            "graph": {"nodes": [{"id": "hub-lonely", "type": "hub"}], "edges": []},
        }
        fresh_store.import_memories(package=package)

        assert has_node(load_graph(fresh_store.root), "hub-lonely")

    def test_edges_outside_package_ignored(self, populated_store):
        existing = populated_store.ids[3]
        package = {
            "memories": [{"id": "learning-new", "frontmatter": {"title": "New", "type": "learning"}, "content": "x"}],
            "graph": {
                "nodes": [{"id": "learning-new", "type": "learning"}, {"id": existing, "type": "gotcha"}],
                "edges": [{"source": "learning-new", "target": existing, "label": "relates-to"}],
            },
        }
        result = populated_store.import_memories(package=package)
        graph = load_graph(populated_store.root)

        assert result["importedCount"] == 1
        assert result["edgesImported"] == 0
        assert not has_edge(graph, "learning-new", existing)
        assert not has_node(graph, existing)

    def test_import_from_file(self, populated_store, fresh_store, temp_data_dir):
        path = temp_data_dir / "export.json"
        populated_store.export_memories(output_path=path)
        result = fresh_store.import_memories(input_path=path)

        assert result["importedCount"] == 4

    def test_bad_strategy(self, fresh_store):
        result = fresh_store.import_memories(package={"memories": []}, strategy="overwrite")
        assert result["errorType"] == "ValidationError"

    def test_unparseable_text(self, fresh_store):
        result = fresh_store.import_memories(text="- just\n- a list\n")
        assert result["errorType"] == "ParseError"

    def test_nothing_to_import(self, fresh_store):
        assert fresh_store.import_memories()["errorType"] == "ValidationError"
