"""
Graph Store - relationships between memories.

The graph is a plain value: a list of nodes and a list of edges, keyed by
memory id. Every mutator returns a NEW graph and leaves its input alone;
callers load, transform, then save.

    graph = load_graph(root)
    graph = add_node(graph, GraphNode("decision-use-postgres", "decision"))
    graph = add_edge(graph, "decision-use-postgres", "gotcha-pool-size", "warns")
    save_graph(root, graph)

Invariants:
- every edge endpoint is an existing node
- no self-loops
- no duplicate (source, target, label) triples
- parallel edges between a pair are fine when labels differ

networkx is used for analysis views (to_networkx) rather than as the
storage format, so graph.json stays a flat, versioned document.
"""

import json
from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Iterable, Optional

import networkx as nx

from lore.errors import NodeNotFoundError, SelfLoopError, StructuralError
from lore.files import GRAPH_FILE, atomic_write_json
from lore.log import get_logger
from lore.models import DEFAULT_RELATION

logger = get_logger("lore.graph")

GRAPH_VERSION = 1


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class GraphNode:
    id: str
    type: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    label: str = DEFAULT_RELATION

    def to_dict(self) -> dict:
        return asdict(self)

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id


@dataclass(frozen=True)
class MemoryGraph:
    version: int = GRAPH_VERSION
    nodes: tuple = field(default_factory=tuple)
    edges: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryGraph":
        """Build a graph from its JSON form.

        Raises:
            StructuralError: the document is not shaped like a graph
        """
        if not isinstance(data, dict):
            raise StructuralError("Graph document must be an object")
        raw_nodes = data.get("nodes", [])
        raw_edges = data.get("edges", [])
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise StructuralError("Graph nodes and edges must be lists")
        try:
            nodes = tuple(GraphNode(id=n["id"], type=n.get("type", "")) for n in raw_nodes)
            edges = tuple(
                GraphEdge(source=e["source"], target=e["target"], label=e.get("label", DEFAULT_RELATION))
                for e in raw_edges
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise StructuralError(f"Malformed graph entry: {e}") from e
        return cls(version=data.get("version", GRAPH_VERSION), nodes=nodes, edges=edges)


# =============================================================================
# PURE OPERATIONS
# =============================================================================

def create_graph() -> MemoryGraph:
    return MemoryGraph()


def add_node(graph: MemoryGraph, node: GraphNode) -> MemoryGraph:
    """Add a node, replacing any node with the same id (its type may change)."""
    nodes = tuple(n for n in graph.nodes if n.id != node.id) + (node,)
    return replace(graph, nodes=nodes)


def remove_node(graph: MemoryGraph, node_id: str) -> MemoryGraph:
    """Remove a node and every edge touching it."""
    return replace(
        graph,
        nodes=tuple(n for n in graph.nodes if n.id != node_id),
        edges=tuple(e for e in graph.edges if not e.touches(node_id)),
    )


def add_edge(
    graph: MemoryGraph,
    source: str,
    target: str,
    label: str = DEFAULT_RELATION,
) -> MemoryGraph:
    """Add a directed edge.

    Adding an edge that already exists returns the graph unchanged.

    Raises:
        SelfLoopError: source == target
        NodeNotFoundError: either endpoint is missing
    """
    if source == target:
        raise SelfLoopError(source)
    node_ids = {n.id for n in graph.nodes}
    if source not in node_ids:
        raise NodeNotFoundError(source)
    if target not in node_ids:
        raise NodeNotFoundError(target)
    edge = GraphEdge(source, target, label)
    if edge in graph.edges:
        return graph
    return replace(graph, edges=graph.edges + (edge,))


def remove_edge(
    graph: MemoryGraph,
    source: str,
    target: str,
    label: Optional[str] = None,
) -> MemoryGraph:
    """Remove source->target edges; only the one with ``label`` if given."""
    def matches(e: GraphEdge) -> bool:
        if e.source != source or e.target != target:
            return False
        return label is None or e.label == label

    return replace(graph, edges=tuple(e for e in graph.edges if not matches(e)))


def bulk_add_edges(graph: MemoryGraph, edges: Iterable) -> tuple[MemoryGraph, list[dict]]:
    """Add many edges, skipping invalid ones.

    Args:
        edges: GraphEdge values or dicts with source/target/label

    Returns:
        (new graph, [{edge, error}] for each skipped edge)
    """
    skipped = []
    for raw in edges:
        edge = raw if isinstance(raw, GraphEdge) else GraphEdge(
            raw["source"], raw["target"], raw.get("label", DEFAULT_RELATION)
        )
        try:
            graph = add_edge(graph, edge.source, edge.target, edge.label)
        except StructuralError as e:
            skipped.append({"edge": edge.to_dict(), "error": str(e)})
    return graph, skipped


def rename_node(graph: MemoryGraph, old_id: str, new_id: str, new_type: Optional[str] = None) -> MemoryGraph:
    """Give a node a new id (and optionally type), re-pointing its edges."""
    node = get_node(graph, old_id)
    if node is None:
        raise NodeNotFoundError(old_id)
    renamed = GraphNode(new_id, new_type or node.type)
    nodes = tuple(n for n in graph.nodes if n.id not in (old_id, new_id)) + (renamed,)
    edges = []
    for e in graph.edges:
        e = GraphEdge(
            new_id if e.source == old_id else e.source,
            new_id if e.target == old_id else e.target,
            e.label,
        )
        if e.source != e.target and e not in edges:
            edges.append(e)
    return replace(graph, nodes=nodes, edges=tuple(edges))


# =============================================================================
# QUERIES
# =============================================================================

def has_node(graph: MemoryGraph, node_id: str) -> bool:
    return any(n.id == node_id for n in graph.nodes)


def get_node(graph: MemoryGraph, node_id: str) -> Optional[GraphNode]:
    for n in graph.nodes:
        if n.id == node_id:
            return n
    return None


def get_all_nodes(graph: MemoryGraph, node_type: Optional[str] = None) -> list[GraphNode]:
    if node_type is None:
        return list(graph.nodes)
    return [n for n in graph.nodes if n.type == node_type]


def has_edge(graph: MemoryGraph, source: str, target: str, label: Optional[str] = None) -> bool:
    return any(
        e.source == source and e.target == target and (label is None or e.label == label)
        for e in graph.edges
    )


def get_outbound_edges(graph: MemoryGraph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.source == node_id]


def get_inbound_edges(graph: MemoryGraph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.target == node_id]


def get_edges_for_node(graph: MemoryGraph, node_id: str) -> list[GraphEdge]:
    return [e for e in graph.edges if e.touches(node_id)]


def get_neighbours(graph: MemoryGraph, node_id: str) -> list[str]:
    """Ids connected to node_id in either direction, in edge order."""
    seen = []
    for e in graph.edges:
        other = None
        if e.source == node_id:
            other = e.target
        elif e.target == node_id:
            other = e.source
        if other is not None and other not in seen:
            seen.append(other)
    return seen


def get_node_degree(graph: MemoryGraph, node_id: str) -> int:
    return len(get_edges_for_node(graph, node_id))


def find_orphaned_nodes(graph: MemoryGraph) -> list[str]:
    """Ids of nodes with no edges at all."""
    connected = set()
    for e in graph.edges:
        connected.add(e.source)
        connected.add(e.target)
    return [n.id for n in graph.nodes if n.id not in connected]


def to_networkx(graph: MemoryGraph) -> nx.MultiDiGraph:
    """View the graph as a networkx MultiDiGraph (labels kept on edges)."""
    g = nx.MultiDiGraph()
    for n in graph.nodes:
        g.add_node(n.id, type=n.type)
    for e in graph.edges:
        g.add_edge(e.source, e.target, key=e.label, label=e.label)
    return g


# =============================================================================
# PERSISTENCE
# =============================================================================

def graph_path(root: Path) -> Path:
    return Path(root) / GRAPH_FILE


def load_graph(root: Path) -> MemoryGraph:
    """Load graph.json. Missing or corrupt files give an empty graph."""
    path = graph_path(root)
    if not path.exists():
        return create_graph()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return MemoryGraph.from_dict(data)
    except (OSError, json.JSONDecodeError, StructuralError) as e:
        logger.warning(f"Corrupt graph at {path}, treating as empty: {e}")
        return create_graph()


def save_graph(root: Path, graph: MemoryGraph) -> None:
    atomic_write_json(graph_path(root), graph.to_dict())
