"""
Link suggestion - propose graph edges between memories that mean similar
things but aren't connected yet.
"""

from pathlib import Path
from typing import Optional

from lore.embeddings import CachedEmbedder, similarity_matrix
from lore.errors import StructuralError
from lore.graph import add_edge, has_node, load_graph, save_graph
from lore.index import load_index
from lore.log import get_logger
from lore.models import THOUGHT_PREFIX, Relation, Scope
from lore.semantic import similarity_items

logger = get_logger("lore.suggest")

DEFAULT_THRESHOLD = 0.75
DEFAULT_LIMIT = 20


def suggest_links(
    root: Path,
    embedder: CachedEmbedder,
    threshold: float = DEFAULT_THRESHOLD,
    limit: int = DEFAULT_LIMIT,
    auto_link: bool = False,
    scope: str = Scope.PROJECT.value,
    items: Optional[list] = None,
) -> dict:
    """Suggest (and optionally create) similarity links.

    A pair qualifies when its cosine similarity is at least ``threshold``,
    neither side is an ephemeral thought, both are graph nodes with index
    entries, and no edge joins them in either direction.

    Args:
        items: precomputed [(id, vector)]; embedded from root if omitted
        auto_link: create each suggestion as an auto-linked-by-similarity edge

    Returns:
        {suggestions, analysed, skipped, created, errors}
    """
    root = Path(root)
    if items is None:
        items = similarity_items(root, scope, embedder, exclude_prefix=THOUGHT_PREFIX)
    else:
        items = [(mid, vec) for mid, vec in items if not mid.startswith(THOUGHT_PREFIX)]

    result = {"suggestions": [], "analysed": 0, "skipped": 0, "created": 0, "errors": 0}
    if len(items) < 2:
        return result

    dims = len(items[0][1])
    items = [(mid, vec) for mid, vec in items if len(vec) == dims]
    ids = [mid for mid, _ in items]
    sims = similarity_matrix([vec for _, vec in items])

    graph = load_graph(root)
    titles = {entry.id: entry.title for entry in load_index(root)}
    linked = set()
    for e in graph.edges:
        linked.add(frozenset((e.source, e.target)))

    suggestions = []
    for i in range(len(ids)):
        for j in range(i + 1, len(ids)):
            similarity = float(sims[i, j])
            if similarity < threshold:
                continue
            source, target = ids[i], ids[j]
            result["analysed"] += 1
            if frozenset((source, target)) in linked:
                result["skipped"] += 1
                continue
            if not has_node(graph, source) or not has_node(graph, target):
                continue
            if source not in titles or target not in titles:
                continue
            suggestions.append({
                "source": source,
                "target": target,
                "similarity": round(similarity, 4),
                "sourceTitle": titles[source],
                "targetTitle": titles[target],
                "reason": f"Semantic similarity: {similarity * 100:.1f}%",
            })

    suggestions.sort(key=lambda s: s["similarity"], reverse=True)
    suggestions = suggestions[:limit]
    result["suggestions"] = suggestions

    if auto_link and suggestions:
        for s in suggestions:
            try:
                graph = add_edge(graph, s["source"], s["target"], Relation.AUTO_LINKED.value)
                result["created"] += 1
            except StructuralError as e:
                logger.warning(f"Auto-link {s['source']} -> {s['target']} failed: {e}")
                result["errors"] += 1
        if result["created"]:
            save_graph(root, graph)

    return result
