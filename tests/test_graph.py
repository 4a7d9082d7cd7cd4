#!/usr/bin/env python3
"""
Graph Store and Traversal Tests

1. Invariants: no self-loops, endpoints must exist, no duplicate triples
2. Mutators return new graphs and leave their input alone
3. Persistence (corrupt graph.json loads as empty)
4. BFS/DFS, paths, components and impact analysis
"""

import json

import pytest

from lore.errors import NodeNotFoundError, SelfLoopError
from lore.graph import (
    GraphNode,
    MemoryGraph,
    add_edge,
    add_node,
    bulk_add_edges,
    create_graph,
    find_orphaned_nodes,
    get_neighbours,
    get_node_degree,
    has_edge,
    load_graph,
    remove_edge,
    remove_node,
    rename_node,
    save_graph,
    to_networkx,
)
from lore.traversal import (
    bfs_traversal,
    calculate_impact,
    dfs_traversal,
    find_connected_components,
    find_predecessors,
    find_reachable,
    find_shortest_path,
    get_subgraph,
    render_mermaid,
)


def build(nodes, edges):
    graph = create_graph()
    for node_id in nodes:
        graph = add_node(graph, GraphNode(node_id, node_id.split("-")[0]))
    for source, target, *label in edges:
        graph = add_edge(graph, source, target, *label)
    return graph


@pytest.fixture
def chain():
    """decision-a -> learning-b -> gotcha-c, plus an isolated hub-d."""
    return build(
        ["decision-a", "learning-b", "gotcha-c", "hub-d"],
        [("decision-a", "learning-b"), ("learning-b", "gotcha-c", "warns")],
    )


class TestGraphInvariants:
    """Structural rules every graph obeys."""

    def test_self_loop_rejected(self, chain):
        with pytest.raises(SelfLoopError):
            add_edge(chain, "decision-a", "decision-a")

    def test_missing_endpoint_rejected(self, chain):
        with pytest.raises(NodeNotFoundError) as exc:
            add_edge(chain, "decision-a", "learning-zzz")
        assert exc.value.node_id == "learning-zzz"

    def test_duplicate_edge_is_noop(self, chain):
        again = add_edge(chain, "decision-a", "learning-b")
        assert again.edges == chain.edges

    def test_parallel_edges_with_different_labels(self, chain):
        graph = add_edge(chain, "decision-a", "learning-b", "informed-by")

        assert has_edge(graph, "decision-a", "learning-b", "relates-to")
        assert has_edge(graph, "decision-a", "learning-b", "informed-by")
        assert len(graph.edges) == 3

    def test_mutators_do_not_touch_input(self, chain):
        before = chain.to_dict()
        add_edge(chain, "gotcha-c", "hub-d")
        remove_node(chain, "learning-b")
        add_node(chain, GraphNode("artifact-x", "artifact"))

        assert chain.to_dict() == before

    def test_add_node_replaces_same_id(self, chain):
        graph = add_node(chain, GraphNode("hub-d", "decision"))

        assert len(graph.nodes) == 4
        assert [n.type for n in graph.nodes if n.id == "hub-d"] == ["decision"]

    def test_remove_node_drops_edges(self, chain):
        graph = remove_node(chain, "learning-b")

        assert graph.edges == ()
        assert len(graph.nodes) == 3

    def test_remove_edge_by_label(self, chain):
        graph = add_edge(chain, "decision-a", "learning-b", "informed-by")
        graph = remove_edge(graph, "decision-a", "learning-b", "informed-by")

        assert has_edge(graph, "decision-a", "learning-b", "relates-to")
        assert not has_edge(graph, "decision-a", "learning-b", "informed-by")

    def test_bulk_add_reports_skipped(self, chain):
        graph, skipped = bulk_add_edges(chain, [
            {"source": "gotcha-c", "target": "hub-d"},
            {"source": "hub-d", "target": "hub-d"},
            {"source": "hub-d", "target": "nowhere-x"},
        ])

        assert has_edge(graph, "gotcha-c", "hub-d")
        assert len(skipped) == 2

    def test_rename_repoints_edges(self, chain):
        graph = rename_node(chain, "learning-b", "decision-b", "decision")

        assert has_edge(graph, "decision-a", "decision-b")
        assert has_edge(graph, "decision-b", "gotcha-c", "warns")
        assert not any(n.id == "learning-b" for n in graph.nodes)

    def test_queries(self, chain):
        assert get_neighbours(chain, "learning-b") == ["decision-a", "gotcha-c"]
        assert get_node_degree(chain, "learning-b") == 2
        assert find_orphaned_nodes(chain) == ["hub-d"]

    def test_networkx_view(self, chain):
        g = to_networkx(chain)

        assert g.number_of_nodes() == 4
        assert g.number_of_edges() == 2
        assert g.nodes["gotcha-c"]["type"] == "gotcha"


class TestGraphPersistence:
    """graph.json on disk."""

    def test_save_and_load(self, temp_data_dir, chain):
        save_graph(temp_data_dir, chain)
        loaded = load_graph(temp_data_dir)

        assert loaded == chain
        data = json.loads((temp_data_dir / "graph.json").read_text())
        assert data["version"] == 1

    def test_missing_file_is_empty(self, temp_data_dir):
        assert load_graph(temp_data_dir) == MemoryGraph()

    def test_corrupt_file_is_empty(self, temp_data_dir):
        (temp_data_dir / "graph.json").write_text("{not json")
        assert load_graph(temp_data_dir).nodes == ()

    def test_malformed_entries_are_empty(self, temp_data_dir):
        (temp_data_dir / "graph.json").write_text(json.dumps({"nodes": [{"type": "x"}], "edges": []}))
        assert load_graph(temp_data_dir).nodes == ()


class TestTraversal:
    """Walks, paths and components."""

    def test_bfs_depths(self, chain):
        result = bfs_traversal(chain, "decision-a")

        assert result["visited"] == ["decision-a", "learning-b", "gotcha-c"]
        assert result["depths"] == {"decision-a": 0, "learning-b": 1, "gotcha-c": 2}

    def test_bfs_max_depth_inclusive(self, chain):
        assert bfs_traversal(chain, "decision-a", 1)["visited"] == ["decision-a", "learning-b"]
        assert bfs_traversal(chain, "decision-a", 0)["visited"] == ["decision-a"]

    def test_bfs_unknown_start(self, chain):
        assert bfs_traversal(chain, "decision-zzz") == {"visited": [], "depths": {}}

    def test_cycles_terminate(self):
        graph = build(
            ["decision-a", "learning-b", "gotcha-c"],
            [("decision-a", "learning-b"), ("learning-b", "gotcha-c"), ("gotcha-c", "decision-a")],
        )

        assert sorted(bfs_traversal(graph, "decision-a")["visited"]) == ["decision-a", "gotcha-c", "learning-b"]
        assert len(dfs_traversal(graph, "learning-b")["visited"]) == 3

    def test_dfs_preorder(self):
        graph = build(
            ["hub-root", "decision-x", "decision-y", "learning-x1"],
            [("hub-root", "decision-x"), ("hub-root", "decision-y"), ("decision-x", "learning-x1")],
        )

        assert dfs_traversal(graph, "hub-root")["visited"] == ["hub-root", "decision-x", "learning-x1", "decision-y"]

    def test_reachable_and_predecessors(self, chain):
        assert find_reachable(chain, "learning-b") == ["learning-b", "gotcha-c"]
        assert find_predecessors(chain, "gotcha-c") == ["gotcha-c", "learning-b", "decision-a"]
        assert find_predecessors(chain, "nope-x") == []

    def test_shortest_path(self, chain):
        assert find_shortest_path(chain, "decision-a", "gotcha-c") == ["decision-a", "learning-b", "gotcha-c"]
        assert find_shortest_path(chain, "gotcha-c", "decision-a") is None
        assert find_shortest_path(chain, "hub-d", "hub-d") == ["hub-d"]

    def test_components(self, chain):
        components = find_connected_components(chain)

        assert components == [["decision-a", "learning-b", "gotcha-c"], ["hub-d"]]
        assert find_connected_components(create_graph()) == []

    def test_subgraph(self, chain):
        sub = get_subgraph(chain, "decision-a", 1)

        assert [n.id for n in sub.nodes] == ["decision-a", "learning-b"]
        assert len(sub.edges) == 1

    def test_impact(self, chain):
        impact = calculate_impact(chain, "decision-a")

        assert impact == {"orphanedNodes": ["learning-b"], "brokenEdges": 1}
        assert calculate_impact(chain, "nope-x") == {"orphanedNodes": [], "brokenEdges": 0}

    def test_components_ignore_direction(self):
        graph = build(
            ["decision-a", "learning-b", "gotcha-c", "hub-d"],
            [("learning-b", "decision-a"), ("gotcha-c", "learning-b")],
        )

        assert find_connected_components(graph) == [["decision-a", "learning-b", "gotcha-c"], ["hub-d"]]

    def test_impact_spares_nodes_with_other_parents(self):
        graph = build(
            ["decision-a", "learning-b", "gotcha-c"],
            [("decision-a", "learning-b"), ("decision-a", "gotcha-c"), ("gotcha-c", "learning-b")],
        )
        impact = calculate_impact(graph, "decision-a")

        assert impact == {"orphanedNodes": ["gotcha-c"], "brokenEdges": 2}

    def test_mermaid(self, chain):
        text = render_mermaid(chain, "learning-b", 1)

        assert text.splitlines()[0] == "graph LR"
        assert "learning_b -->|warns| gotcha_c" in text
        assert "decision_a" not in text
