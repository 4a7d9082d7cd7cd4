"""
Semantic Search - find memories by meaning.

Each scope root keeps a precomputed index in ``.semantic-index/``:

    <scope>-index.json     {"embeddings": [[...], ...], "memory_ids": [...]}
    <scope>-manifest.json  {"memories": {id: {title, file, tags}}}

The index is a cache. It is never updated on write; instead
is_index_stale() compares its mtime to the memory files, and a stale
index is either rebuilt by the caller or bypassed:

- contexts that allow it (explicit_search) embed every memory on the fly
- latency-sensitive contexts (hooks, injection) just return nothing

That choice is made by SearchContext, never implicitly.
"""

import json
import time
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

import numpy as np

from lore.config import get_semantic_index_dir
from lore.embeddings import CachedEmbedder, cosine_similarity, is_vector, similarity_matrix
from lore.errors import ParseError
from lore.files import PERMANENT_DIR, TEMPORARY_DIR, atomic_write_json, iter_memory_files
from lore.frontmatter import read_memory_file
from lore.log import get_logger
from lore.models import Scope
from lore.slug import type_from_id

logger = get_logger("lore.semantic")

FALLBACK_CONTENT_CHARS = 1000
DUPLICATE_THRESHOLD = 0.92
LSH_MIN_ITEMS = 200
LSH_BITS = 10
LSH_TABLES = 6
LSH_SEED = 42

# Narrower scopes rank first when merging
SCOPE_ORDER = [Scope.LOCAL.value, Scope.PROJECT.value, Scope.GLOBAL.value, Scope.ENTERPRISE.value]


class SearchContext(str, Enum):
    """Who is asking. Decides the default threshold and whether a stale
    index may be bypassed by brute-force embedding."""
    SESSION_START = "session_start"
    USER_PROMPT_FIRST = "user_prompt_first"
    USER_PROMPT = "user_prompt"
    POST_TOOL_USE = "post_tool_use"
    EXPLICIT_SEARCH = "explicit_search"


DEFAULT_THRESHOLDS = {
    SearchContext.SESSION_START.value: 0.4,
    SearchContext.USER_PROMPT_FIRST.value: 0.45,
    SearchContext.USER_PROMPT.value: 0.55,
    SearchContext.POST_TOOL_USE.value: 0.5,
    SearchContext.EXPLICIT_SEARCH.value: 0.5,
}

# Only a user-triggered search may pay for embedding every file
FALLBACK_CONTEXTS = {SearchContext.EXPLICIT_SEARCH.value}


SEARCH_CONTEXTS = [c.value for c in SearchContext]


def is_search_context(value) -> bool:
    return value in SEARCH_CONTEXTS


def select_threshold(
    context: str,
    override: Optional[float] = None,
    thresholds: Optional[Dict[str, float]] = None,
) -> float:
    if override is not None:
        return float(override)
    table = {**DEFAULT_THRESHOLDS, **(thresholds or {})}
    return float(table.get(SearchContext(context).value, table[SearchContext.POST_TOOL_USE.value]))


def allows_fallback(context: str) -> bool:
    return SearchContext(context).value in FALLBACK_CONTEXTS


# =============================================================================
# INDEX FILES
# =============================================================================

def index_files(root: Path, scope: str) -> tuple[Path, Path]:
    index_dir = get_semantic_index_dir(root)
    return index_dir / f"{scope}-index.json", index_dir / f"{scope}-manifest.json"


def is_index_stale(root: Path, scope: str) -> bool:
    """True if the index is missing or older than any memory file.

    An index whose memory directories don't exist is not stale.
    """
    index_file, _ = index_files(root, scope)
    try:
        index_mtime = index_file.stat().st_mtime
    except OSError:
        return True

    memory_dirs = [Path(root) / PERMANENT_DIR, Path(root) / TEMPORARY_DIR]
    memory_dirs = [d for d in memory_dirs if d.is_dir()]
    if not memory_dirs:
        return False

    for directory in memory_dirs:
        for path in directory.rglob("*.md"):
            try:
                if path.stat().st_mtime > index_mtime:
                    return True
            except OSError:
                continue
    return False


def load_semantic_index(root: Path, scope: str) -> Optional[dict]:
    """Load index + manifest, or None if either is missing or malformed."""
    index_file, manifest_file = index_files(root, scope)
    try:
        with open(index_file, encoding="utf-8") as f:
            index_data = json.load(f)
        with open(manifest_file, encoding="utf-8") as f:
            manifest = json.load(f)
    except (OSError, ValueError):
        return None

    if not isinstance(index_data, dict) or not isinstance(manifest, dict):
        return None
    embeddings = index_data.get("embeddings") or []
    memory_ids = index_data.get("memory_ids") or []
    if not isinstance(embeddings, list) or not isinstance(memory_ids, list):
        return None
    if len(embeddings) != len(memory_ids):
        logger.warning(f"Semantic index for {scope} has mismatched arrays, ignoring it")
        return None
    if not all(isinstance(i, str) for i in memory_ids) or not all(is_vector(e) for e in embeddings):
        logger.warning(f"Semantic index for {scope} has malformed entries, ignoring it")
        return None
    if len({len(e) for e in embeddings}) > 1:
        logger.warning(f"Semantic index for {scope} mixes vector sizes, ignoring it")
        return None
    memories = manifest.get("memories")
    return {
        "embeddings": embeddings,
        "memory_ids": memory_ids,
        "manifest": memories if isinstance(memories, dict) else {},
    }


def _embedding_text(title: str, content: str, tags: Sequence[str]) -> str:
    parts = [title, content]
    if tags:
        parts.append("Tags: " + ", ".join(tags))
    return "\n\n".join(p for p in parts if p)


def build_semantic_index(root: Path, scope: str, embedder: CachedEmbedder) -> dict:
    """Embed every memory under root and write the scope's index.

    Unparseable files and embedding failures are skipped and counted.

    Returns:
        {"indexed", "skipped", "failed", "index_file"}
    """
    root = Path(root)
    embeddings = []
    memory_ids = []
    manifest = {}
    skipped = 0
    failed = 0

    for path in iter_memory_files(root):
        try:
            memory = read_memory_file(path)
        except (ParseError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Skipping {path.name} while indexing: {e}")
            skipped += 1
            continue
        vector = embedder.embed_memory(memory.id, _embedding_text(memory.title, memory.content, memory.tags))
        if vector is None:
            failed += 1
            continue
        embeddings.append(vector)
        memory_ids.append(memory.id)
        manifest[memory.id] = {
            "title": memory.title,
            "file": path.relative_to(root).as_posix(),
            "tags": list(memory.tags),
        }

    index_file, manifest_file = index_files(root, scope)
    # Manifest first, so the index file carries the newest mtime
    atomic_write_json(manifest_file, {"memories": manifest})
    atomic_write_json(index_file, {"embeddings": embeddings, "memory_ids": memory_ids})
    logger.info(f"Indexed {len(memory_ids)} memories for {scope} ({skipped} skipped, {failed} failed)")
    return {
        "indexed": len(memory_ids),
        "skipped": skipped,
        "failed": failed,
        "index_file": str(index_file),
    }


# =============================================================================
# SEARCH
# =============================================================================

def batch_similarity(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> list[float]:
    """Cosine of query against each vector, with the same zero rules as
    cosine_similarity."""
    if not vectors:
        return []
    try:
        matrix = np.asarray(vectors, dtype=np.float64)
    except ValueError:
        matrix = None
    if matrix is None or matrix.ndim != 2 or matrix.shape[1] != len(query):
        return [cosine_similarity(query, v) for v in vectors]
    q = np.asarray(query, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    norms = np.linalg.norm(matrix, axis=1)
    if q_norm == 0:
        return [0.0] * len(vectors)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = (matrix @ q) / (norms * q_norm)
    scores = np.where(norms == 0, 0.0, np.clip(scores, -1.0, 1.0))
    return [float(s) for s in scores]


def _result(memory_id: str, title: str, score: float, file: str, scope: str, tags=None) -> dict:
    return {
        "id": memory_id,
        "title": title or memory_id,
        "type": type_from_id(memory_id) or memory_id.split("-")[0],
        "score": round(score, 4),
        "file": file,
        "tags": list(tags or []),
        "scope": scope,
    }


def search_with_index(
    index: dict,
    query_vector: Sequence[float],
    scope: str,
    threshold: float,
    limit: int,
) -> list[dict]:
    scores = batch_similarity(query_vector, index["embeddings"])
    results = []
    for memory_id, score in zip(index["memory_ids"], scores):
        if score < threshold or not isinstance(memory_id, str):
            continue
        info = index["manifest"].get(memory_id) or {}
        results.append(_result(memory_id, info.get("title"), score, info.get("file", ""), scope, info.get("tags")))
    results.sort(key=lambda r: r["score"], reverse=True)
    return results[:limit]


def search_fallback(
    root: Path,
    query_vector: Sequence[float],
    embedder: CachedEmbedder,
    scope: str,
    threshold: float,
    limit: int,
) -> list[dict]:
    """Embed every memory file now and rank it. Slow; explicit search only."""
    root = Path(root)
    results = []
    for path in iter_memory_files(root):
        try:
            memory = read_memory_file(path, lenient=True)
        except (ParseError, OSError, UnicodeDecodeError):
            continue
        title = memory.title or _first_heading(memory.content) or path.stem
        text = _embedding_text(title, memory.content[:FALLBACK_CONTENT_CHARS], memory.tags)
        vector = embedder.embed_memory(memory.id, text)
        if vector is None:
            continue
        score = cosine_similarity(query_vector, vector)
        if score >= threshold:
            results.append(_result(memory.id, title, score, path.relative_to(root).as_posix(), scope, memory.tags))
    results.sort(key=lambda r: r["score"], reverse=True)
    return results[:limit]


def _first_heading(content: str) -> Optional[str]:
    for line in content.splitlines():
        if line.startswith("# "):
            return line[2:].strip()
    return None


def search_scope(
    root: Path,
    scope: str,
    query_vector: Sequence[float],
    embedder: CachedEmbedder,
    threshold: float,
    limit: int,
    allow_fallback: bool,
) -> tuple[list[dict], str]:
    """Search one scope root.

    Returns:
        (results, status) where status is indexed, fallback or stale
    """
    if not is_index_stale(root, scope):
        index = load_semantic_index(root, scope)
        if index and index["embeddings"]:
            return search_with_index(index, query_vector, scope, threshold, limit), "indexed"

    if allow_fallback:
        return search_fallback(root, query_vector, embedder, scope, threshold, limit), "fallback"
    return [], "stale"


def merge_scope_results(per_scope: Dict[str, list], limit: int) -> list[dict]:
    """Narrower scopes first (local before global), then by score."""
    def rank(scope: str) -> int:
        return SCOPE_ORDER.index(scope) if scope in SCOPE_ORDER else len(SCOPE_ORDER)

    merged = []
    for scope, results in per_scope.items():
        merged.extend(results)
    merged.sort(key=lambda r: (rank(r["scope"]), -r["score"]))
    return merged[:limit]


def semantic_search(
    query: str,
    roots: Dict[str, Path],
    embedder: CachedEmbedder,
    context: str = SearchContext.EXPLICIT_SEARCH.value,
    threshold: Optional[float] = None,
    limit: int = 10,
    thresholds: Optional[Dict[str, float]] = None,
) -> dict:
    """Search one or more scopes by meaning.

    Args:
        roots: {scope: storage root}
        context: a SearchContext value; decides threshold and fallback
        threshold: overrides the context threshold

    Returns:
        {memories, index_status, scopes, search_time_ms, threshold_used}
        index_status is no_embedding when the query could not be embedded.
    """
    start = time.perf_counter()
    threshold_used = select_threshold(context, threshold, thresholds)
    fallback_ok = allows_fallback(context)

    def elapsed() -> int:
        return int((time.perf_counter() - start) * 1000)

    query_vector = embedder.embed_query(query)
    if query_vector is None:
        return {
            "memories": [],
            "index_status": "no_embedding",
            "scopes": {},
            "search_time_ms": elapsed(),
            "threshold_used": threshold_used,
        }

    per_scope = {}
    statuses = {}
    for scope, root in roots.items():
        results, status = search_scope(root, scope, query_vector, embedder, threshold_used, limit, fallback_ok)
        per_scope[scope] = results
        statuses[scope] = status

    if "fallback" in statuses.values():
        overall = "fallback"
    elif "indexed" in statuses.values():
        overall = "indexed"
    else:
        overall = "stale"

    return {
        "memories": merge_scope_results(per_scope, limit),
        "index_status": overall,
        "scopes": statuses,
        "search_time_ms": elapsed(),
        "threshold_used": threshold_used,
    }


# =============================================================================
# DUPLICATES
# =============================================================================

def _pairs_brute_force(ids: list, matrix: np.ndarray, threshold: float) -> list[dict]:
    sims = similarity_matrix(matrix)
    pairs = []
    n = len(ids)
    for i in range(n):
        for j in range(i + 1, n):
            if sims[i, j] >= threshold:
                pairs.append({"a": ids[i], "b": ids[j], "similarity": round(float(sims[i, j]), 4)})
    return pairs


def _pairs_lsh(ids: list, matrix: np.ndarray, threshold: float) -> list[dict]:
    """Random-hyperplane LSH: only pairs sharing a bucket are compared."""
    rng = np.random.default_rng(LSH_SEED)
    candidates = set()
    for _ in range(LSH_TABLES):
        planes = rng.standard_normal((LSH_BITS, matrix.shape[1]))
        bits = (matrix @ planes.T) > 0
        buckets: Dict[bytes, list] = {}
        for i, row in enumerate(bits):
            buckets.setdefault(np.packbits(row).tobytes(), []).append(i)
        for members in buckets.values():
            for x in range(len(members)):
                for y in range(x + 1, len(members)):
                    candidates.add((members[x], members[y]))

    pairs = []
    for i, j in sorted(candidates):
        score = cosine_similarity(matrix[i], matrix[j])
        if score >= threshold:
            pairs.append({"a": ids[i], "b": ids[j], "similarity": round(score, 4)})
    return pairs


def find_potential_duplicates(
    items: Iterable[tuple[str, Sequence[float]]],
    threshold: float = DUPLICATE_THRESHOLD,
) -> list[dict]:
    """Pairs of memories whose embeddings are at least ``threshold`` similar.

    Brute force for small corpora, LSH above LSH_MIN_ITEMS items.

    Returns:
        [{"a", "b", "similarity"}] sorted by similarity descending
    """
    items = [(mid, vec) for mid, vec in items if vec is not None and len(vec) > 0]
    if len(items) < 2:
        return []
    dims = len(items[0][1])
    items = [(mid, vec) for mid, vec in items if len(vec) == dims]
    ids = [mid for mid, _ in items]
    matrix = np.asarray([vec for _, vec in items], dtype=np.float64)

    if len(items) < LSH_MIN_ITEMS:
        pairs = _pairs_brute_force(ids, matrix, threshold)
    else:
        pairs = _pairs_lsh(ids, matrix, threshold)
    pairs.sort(key=lambda p: p["similarity"], reverse=True)
    return pairs


def average_k_nearest_similarity(
    target_id: str,
    items: Iterable[tuple[str, Sequence[float]]],
    k: int = 5,
) -> float:
    """Mean similarity of a memory to its k closest neighbours.

    The memory itself is left out; 0.0 when it has no vector or no
    neighbours.
    """
    vectors = dict(items)
    target = vectors.pop(target_id, None)
    if target is None or not vectors or k <= 0:
        return 0.0
    scores = sorted(batch_similarity(target, list(vectors.values())), reverse=True)[:k]
    return float(sum(scores) / len(scores))


# =============================================================================
# INJECTION LIMITS
# =============================================================================

def apply_type_limits(
    results: Sequence[dict],
    per_type_limits: Dict[str, int],
    total_cap: Optional[int] = None,
    per_type_thresholds: Optional[Dict[str, float]] = None,
) -> list[dict]:
    """Trim ranked results for injection.

    Each type keeps at most its own limit (types without a limit keep
    everything), filtered by its own threshold if one is given. The total
    cap is applied last and keeps the highest scores regardless of type.
    """
    ranked = sorted(results, key=lambda r: r.get("score", 0.0), reverse=True)
    counts: Dict[str, int] = {}
    kept = []
    for r in ranked:
        memory_type = r.get("type", "")
        minimum = (per_type_thresholds or {}).get(memory_type)
        if minimum is not None and r.get("score", 0.0) < minimum:
            continue
        limit = per_type_limits.get(memory_type)
        if limit is not None and counts.get(memory_type, 0) >= limit:
            continue
        counts[memory_type] = counts.get(memory_type, 0) + 1
        kept.append(r)
    if total_cap is not None:
        kept = kept[:total_cap]
    return kept


def similarity_items(
    root: Path,
    scope: str,
    embedder: CachedEmbedder,
    exclude_prefix: Optional[str] = None,
) -> list[tuple]:
    """(id, vector) for every parseable memory under root.

    Uses the scope's semantic index when it is fresh, embedding files otherwise.
    """
    scope_index = None
    if not is_index_stale(root, scope):
        scope_index = load_semantic_index(root, scope)

    if scope_index and scope_index["embeddings"]:
        items = list(zip(scope_index["memory_ids"], scope_index["embeddings"]))
    else:
        items = []
        for path in iter_memory_files(root):
            try:
                memory = read_memory_file(path)
            except (ParseError, OSError, UnicodeDecodeError):
                continue
            vector = embedder.embed_memory(memory.id, _embedding_text(memory.title, memory.content, memory.tags))
            if vector is not None:
                items.append((memory.id, vector))

    if exclude_prefix:
        items = [(mid, vec) for mid, vec in items if not mid.startswith(exclude_prefix)]
    return items

