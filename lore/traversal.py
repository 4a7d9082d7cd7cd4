"""
Graph traversal over a MemoryGraph.

Ordered walks (BFS, DFS, shortest path) carry an explicit ``seen`` set, so
cycles are safe. Their adjacency is built once per call from the edge list,
in edge order, so ties are broken by the order edges were added. Order-free
analysis (components, removal impact) runs on the networkx view.
"""

from collections import deque
from dataclasses import replace
from typing import Optional

import networkx as nx

from lore.graph import MemoryGraph, GraphNode, has_node, to_networkx


def _adjacency(graph: MemoryGraph) -> dict:
    """Single pass over edges: outbound and inbound neighbours."""
    outbound = {n.id: [] for n in graph.nodes}
    inbound = {n.id: [] for n in graph.nodes}
    for e in graph.edges:
        if e.target not in outbound.setdefault(e.source, []):
            outbound[e.source].append(e.target)
        if e.source not in inbound.setdefault(e.target, []):
            inbound[e.target].append(e.source)
    return {"outbound": outbound, "inbound": inbound}


def _bfs(adjacent: dict, start: str, max_depth: Optional[int]) -> dict:
    visited = []
    depths = {}
    seen = set()
    queue = deque([(start, 0)])

    while queue:
        node_id, depth = queue.popleft()
        if node_id in seen or (max_depth is not None and depth > max_depth):
            continue
        seen.add(node_id)
        visited.append(node_id)
        depths[node_id] = depth
        for nxt in adjacent.get(node_id, []):
            if nxt not in seen:
                queue.append((nxt, depth + 1))

    return {"visited": visited, "depths": depths}


def bfs_traversal(graph: MemoryGraph, start: str, max_depth: Optional[int] = None) -> dict:
    """Breadth-first walk along outbound edges.

    Args:
        start: node to start from; an unknown node gives an empty result
        max_depth: inclusive depth bound, None for unbounded

    Returns:
        {"visited": [ids in visit order], "depths": {id: depth}}
    """
    if not has_node(graph, start):
        return {"visited": [], "depths": {}}
    return _bfs(_adjacency(graph)["outbound"], start, max_depth)


def dfs_traversal(graph: MemoryGraph, start: str, max_depth: Optional[int] = None) -> dict:
    """Depth-first walk along outbound edges (pre-order)."""
    if not has_node(graph, start):
        return {"visited": [], "depths": {}}

    outbound = _adjacency(graph)["outbound"]
    visited = []
    depths = {}
    seen = set()
    # Explicit stack so deep chains don't hit the recursion limit
    stack = [(start, 0)]
    while stack:
        node_id, depth = stack.pop()
        if node_id in seen or (max_depth is not None and depth > max_depth):
            continue
        seen.add(node_id)
        visited.append(node_id)
        depths[node_id] = depth
        for nxt in reversed(outbound.get(node_id, [])):
            if nxt not in seen:
                stack.append((nxt, depth + 1))

    return {"visited": visited, "depths": depths}


def find_reachable(graph: MemoryGraph, start: str) -> list[str]:
    """Every node reachable from start along outbound edges, start included."""
    return bfs_traversal(graph, start)["visited"]


def find_predecessors(graph: MemoryGraph, target: str) -> list[str]:
    """Every node that can reach target, target included."""
    if not has_node(graph, target):
        return []
    return _bfs(_adjacency(graph)["inbound"], target, None)["visited"]


def find_shortest_path(graph: MemoryGraph, source: str, target: str) -> Optional[list[str]]:
    """First path found by BFS along outbound edges, or None."""
    if source == target:
        return [source]

    outbound = _adjacency(graph)["outbound"]
    seen = {source}
    queue = deque([[source]])
    while queue:
        path = queue.popleft()
        for nxt in outbound.get(path[-1], []):
            if nxt == target:
                return path + [nxt]
            if nxt not in seen:
                seen.add(nxt)
                queue.append(path + [nxt])
    return None


def get_subgraph(graph: MemoryGraph, start: str, max_depth: int) -> MemoryGraph:
    """Nodes within max_depth of start, and the edges among them."""
    keep = set(bfs_traversal(graph, start, max_depth)["visited"])
    return replace(
        graph,
        nodes=tuple(n for n in graph.nodes if n.id in keep),
        edges=tuple(e for e in graph.edges if e.source in keep and e.target in keep),
    )


def find_connected_components(graph: MemoryGraph) -> list[list[str]]:
    """Weakly connected components (edges treated as undirected).

    networkx builds the adjacency once, so this is O(n + e). Members and
    components both follow node order.
    """
    order = {n.id: i for i, n in enumerate(graph.nodes)}

    def position(node_id: str) -> tuple:
        return (order.get(node_id, len(order)), node_id)

    components = [
        sorted(component, key=position)
        for component in nx.weakly_connected_components(to_networkx(graph))
    ]
    components.sort(key=lambda c: position(c[0]))
    return components


def calculate_impact(graph: MemoryGraph, node_id: str) -> dict:
    """What removing node_id would do.

    orphanedNodes: nodes reachable from node_id whose every inbound edge
    comes from node_id, so they would lose all incoming links.
    brokenEdges: number of edges touching node_id.
    """
    if not has_node(graph, node_id):
        return {"orphanedNodes": [], "brokenEdges": 0}
    g = to_networkx(graph)
    orphaned = []
    for dep in find_reachable(graph, node_id):
        if dep == node_id:
            continue
        sources = {source for source, _ in g.in_edges(dep)}
        if sources == {node_id}:
            orphaned.append(dep)

    broken = g.degree(node_id)
    return {"orphanedNodes": orphaned, "brokenEdges": broken}


def render_mermaid(graph: MemoryGraph, start: Optional[str] = None, max_depth: int = 2) -> str:
    """Render the graph (or the neighbourhood of start) as a Mermaid flowchart."""
    if start is not None:
        graph = get_subgraph(graph, start, max_depth)

    def node_ref(node: GraphNode) -> str:
        return node.id.replace("-", "_")

    lines = ["graph LR"]
    for node in graph.nodes:
        lines.append(f'    {node_ref(node)}["{node.id}<br/><i>{node.type}</i>"]')
    for e in graph.edges:
        lines.append(f'    {e.source.replace("-", "_")} -->|{e.label}| {e.target.replace("-", "_")}')
    return "\n".join(lines)
