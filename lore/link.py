"""
Linking memories in the graph.

Both ends must be indexed memories; nodes are created on first link with
the memory's type from the index.
"""

from pathlib import Path
from typing import Optional

from lore.errors import NotFoundError, ValidationError
from lore.graph import GraphNode, add_edge, add_node, has_edge, has_node, load_graph, remove_edge, save_graph
from lore.index import load_index
from lore.models import DEFAULT_RELATION, RELATIONS
from lore.slug import is_valid_id


def link_memories(root: Path, source: str, target: str, relation: str = DEFAULT_RELATION) -> dict:
    """Add source -relation-> target.

    Returns:
        {source, target, relation, alreadyExists}

    Raises:
        ValidationError: bad id, unknown relation, or a self-link
        NotFoundError: either memory is not in the index
    """
    for memory_id in (source, target):
        if not is_valid_id(memory_id):
            raise ValidationError(f"Invalid memory id: {memory_id}")
    if source == target:
        raise ValidationError("Cannot link a memory to itself")
    if relation not in RELATIONS:
        raise ValidationError(f"Invalid relation: {relation}. Expected one of {', '.join(RELATIONS)}")

    types = {entry.id: entry.type for entry in load_index(root)}
    for memory_id in (source, target):
        if memory_id not in types:
            raise NotFoundError(f"Memory not found in index: {memory_id}")

    graph = load_graph(root)
    if has_node(graph, source) and has_node(graph, target) and has_edge(graph, source, target, relation):
        return {"source": source, "target": target, "relation": relation, "alreadyExists": True}

    for memory_id in (source, target):
        if not has_node(graph, memory_id):
            graph = add_node(graph, GraphNode(memory_id, types[memory_id]))
    graph = add_edge(graph, source, target, relation)
    save_graph(root, graph)
    return {"source": source, "target": target, "relation": relation, "alreadyExists": False}


def unlink_memories(root: Path, source: str, target: str, relation: Optional[str] = None) -> dict:
    """Remove source->target edges (only ``relation`` if given).

    Returns:
        {source, target, removedCount}
    """
    for memory_id in (source, target):
        if not is_valid_id(memory_id):
            raise ValidationError(f"Invalid memory id: {memory_id}")

    graph = load_graph(root)
    before = len(graph.edges)
    graph = remove_edge(graph, source, target, relation)
    removed = before - len(graph.edges)
    if removed:
        save_graph(root, graph)
    return {"source": source, "target": target, "removedCount": removed}
