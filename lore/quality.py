"""
Memory quality - score one memory, or audit them all.

Three tiers of checks:
1. Deterministic (always): title, tags, content, graph connectivity,
   freshness, dangling file references
2. Embeddings (deep): near-duplicates of other memories
3. LLM (deep, when a completer is available): contradictions and
   outdated advice, treated as advisory

Each issue's severity subtracts from a 100-point score:

    critical -30   high -20   medium -10   low -5

    >= 90 excellent   >= 70 good   >= 50 needs_attention
    >= 25 poor        otherwise critical

A tier that can't run (provider down, timeout) is skipped and the result
reflects only the tiers that completed.
"""

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from lore.embeddings import CachedEmbedder, cosine_similarity
from lore.errors import CollaboratorError, LoreError, NotFoundError
from lore.files import PERMANENT_DIR, TEMPORARY_DIR
from lore.frontmatter import read_memory_file
from lore.graph import MemoryGraph, get_edges_for_node, get_neighbours, has_node, load_graph
from lore.llm import Completer
from lore.log import get_logger
from lore.models import Memory, MemoryType, Scope, parse_timestamp
from lore.semantic import DUPLICATE_THRESHOLD, similarity_items
from lore.slug import is_valid_id

logger = get_logger("lore.quality")

SEVERITY_PENALTIES = {"critical": 30, "high": 20, "medium": 10, "low": 5}

RATING_BANDS = [
    (90, "excellent"),
    (70, "good"),
    (50, "needs_attention"),
    (25, "poor"),
]

STALE_AFTER_DAYS = 90
MIN_CONTENT_LENGTH = 10

_FILE_REF_RE = re.compile(r"`([^`]+\.(?:ts|js|py|rs|go|md))`")

LLM_ISSUE_TYPES = {"contradiction", "superseded", "outdated", "unclear"}


def calculate_score(issues: Sequence[dict]) -> int:
    score = 100
    for issue in issues:
        score -= SEVERITY_PENALTIES.get(issue.get("severity"), 0)
    return max(0, score)


def get_rating(score: int) -> str:
    for minimum, rating in RATING_BANDS:
        if score >= minimum:
            return rating
    return "critical"


def _issue(issue_type: str, severity: str, message: str, details: Optional[str] = None) -> dict:
    issue = {"type": issue_type, "severity": severity, "message": message}
    if details is not None:
        issue["details"] = details
    return issue


def find_memory_file(root: Path, memory_id: str) -> Optional[Path]:
    """permanent/ first, then temporary/."""
    if not is_valid_id(memory_id):
        return None
    for sub in (PERMANENT_DIR, TEMPORARY_DIR):
        path = Path(root) / sub / f"{memory_id}.md"
        if path.exists():
            return path
    return None


def list_memory_ids(root: Path) -> list[str]:
    """Ids (file stems) of every .md file in permanent/ and temporary/."""
    ids = []
    for sub in (PERMANENT_DIR, TEMPORARY_DIR):
        directory = Path(root) / sub
        if directory.is_dir():
            ids.extend(sorted(p.stem for p in directory.glob("*.md")))
    return ids


# =============================================================================
# TIER 1 - DETERMINISTIC
# =============================================================================

def tier1_checks(
    memory: Memory,
    graph: MemoryGraph,
    project_root: Path,
    now: Optional[datetime] = None,
) -> list[dict]:
    issues = []

    if not memory.title or not memory.title.strip():
        issues.append(_issue("missing_title", "high", "Memory has no title"))

    if not memory.tags:
        issues.append(_issue("missing_tags", "medium", "Memory has no tags"))

    if memory.type != MemoryType.BREADCRUMB.value and len(memory.content.strip()) < MIN_CONTENT_LENGTH:
        issues.append(_issue("empty_content", "high", "Memory content is empty or very short"))

    if not has_node(graph, memory.id):
        issues.append(_issue("not_in_graph", "medium", "Memory is not in the graph"))
    elif not get_edges_for_node(graph, memory.id):
        issues.append(_issue("orphaned", "medium", "Memory has no graph connections (orphaned)"))

    updated = parse_timestamp(memory.updated)
    if updated is not None:
        now = now or datetime.now(timezone.utc)
        days = (now - updated).total_seconds() / 86400
        if days > STALE_AFTER_DAYS:
            issues.append(_issue("stale", "low", f"Memory not updated in {int(days)} days"))

    seen = set()
    for ref in _FILE_REF_RE.findall(memory.content):
        if ref in seen or not (ref.startswith("src/") or ref.startswith("./")):
            continue
        seen.add(ref)
        if not (Path(project_root) / ref).exists():
            issues.append(_issue(
                "stale_file_reference", "medium", f"References non-existent file: {ref}", details=ref,
            ))

    return issues


# =============================================================================
# TIER 2 - EMBEDDINGS
# =============================================================================

def tier2_checks(memory_id: str, items: Sequence[tuple], threshold: float = DUPLICATE_THRESHOLD) -> list[dict]:
    """Flag other memories whose embedding is nearly identical."""
    vectors = dict(items)
    mine = vectors.get(memory_id)
    if mine is None:
        return []
    issues = []
    for other_id, vector in items:
        if other_id == memory_id:
            continue
        similarity = cosine_similarity(mine, vector)
        if similarity >= threshold:
            issues.append(_issue(
                "duplicate", "medium",
                f"Near-duplicate of {other_id} ({similarity * 100:.1f}% similar)",
                details=other_id,
            ))
    return issues


# =============================================================================
# TIER 3 - LLM
# =============================================================================

TIER3_PROMPT = """You are reviewing a note from a software project's knowledge base.

Title: {title}
Type: {type}
Last updated: {updated}
Related notes: {related}

Content:
{content}

Does this note contradict itself or the related notes, look superseded,
describe something likely outdated, or read as unclear? Answer with JSON only:
{{"issues": [{{"type": "contradiction|superseded|outdated|unclear", "severity": "low|medium|high", "message": "..."}}]}}
Return {{"issues": []}} if the note is fine."""


def tier3_checks(memory: Memory, completer: Completer, related_titles: Sequence[str] = ()) -> list[dict]:
    """Ask the LLM for advisory issues.

    Raises:
        CollaboratorError: completer failed or its answer wasn't usable JSON
    """
    prompt = TIER3_PROMPT.format(
        title=memory.title,
        type=memory.type,
        updated=memory.updated or "unknown",
        related=", ".join(related_titles) or "none",
        content=memory.content[:4000],
    )
    answer = completer.complete(prompt)
    try:
        data = json.loads(answer)
    except ValueError as e:
        raise CollaboratorError(f"LLM answer is not JSON: {e}") from e
    raw_issues = data.get("issues", []) if isinstance(data, dict) else None
    if not isinstance(raw_issues, list):
        raise CollaboratorError("LLM answer has no issues list")

    issues = []
    for raw in raw_issues:
        if not isinstance(raw, dict) or raw.get("type") not in LLM_ISSUE_TYPES:
            continue
        severity = raw.get("severity") if raw.get("severity") in ("low", "medium", "high") else "low"
        issues.append(_issue(f"llm_{raw['type']}", severity, str(raw.get("message", "")).strip() or raw["type"]))
    return issues


# =============================================================================
# ASSESS / AUDIT
# =============================================================================

def assess_quality(
    root: Path,
    memory_id: str,
    deep: bool = False,
    embedder: Optional[CachedEmbedder] = None,
    completer: Optional[Completer] = None,
    project_root: Optional[Path] = None,
    graph: Optional[MemoryGraph] = None,
    items: Optional[Sequence[tuple]] = None,
    scope: str = Scope.PROJECT.value,
    now: Optional[datetime] = None,
) -> dict:
    """Score one memory.

    Args:
        deep: also run tiers 2 and 3 where their collaborators are available
        graph, items: preloaded graph / (id, vector) pairs, for audits

    Returns:
        {id, score, rating, issues, tiersCompleted}

    Raises:
        NotFoundError: no such memory file
        ParseError: the file can't be parsed
    """
    root = Path(root)
    path = find_memory_file(root, memory_id)
    if path is None:
        raise NotFoundError(f"Memory not found: {memory_id}")
    memory = read_memory_file(path, lenient=True)
    memory.id = memory_id
    graph = graph if graph is not None else load_graph(root)

    issues = tier1_checks(memory, graph, project_root or Path.cwd(), now=now)
    tiers = [1]

    if deep and (embedder is not None or items is not None):
        if items is None:
            items = similarity_items(root, scope, embedder)
        if any(mid == memory_id for mid, _ in items):
            issues.extend(tier2_checks(memory_id, items))
            tiers.append(2)
        else:
            logger.info(f"No embedding for {memory_id}; skipping duplicate check")

    if deep and completer is not None:
        related = []
        for neighbour in get_neighbours(graph, memory_id)[:5]:
            neighbour_path = find_memory_file(root, neighbour)
            if neighbour_path is None:
                continue
            try:
                related.append(read_memory_file(neighbour_path, lenient=True).title)
            except (LoreError, OSError, UnicodeDecodeError):
                continue
        try:
            issues.extend(tier3_checks(memory, completer, related))
            tiers.append(3)
        except CollaboratorError as e:
            logger.warning(f"LLM quality check unavailable for {memory_id}, using deterministic result: {e}")

    score = calculate_score(issues)
    return {
        "id": memory_id,
        "score": score,
        "rating": get_rating(score),
        "issues": issues,
        "tiersCompleted": tiers,
    }


def audit_memories(
    root: Path,
    threshold: int = 100,
    deep: bool = False,
    embedder: Optional[CachedEmbedder] = None,
    completer: Optional[Completer] = None,
    project_root: Optional[Path] = None,
    scope: str = Scope.PROJECT.value,
    now: Optional[datetime] = None,
) -> dict:
    """Assess every memory under root.

    A memory that can't be assessed becomes a critical result with a
    parse_error issue; the scan always continues.

    Returns:
        {scanned, results (score < threshold, lowest first), summary}
    """
    root = Path(root)
    ids = list_memory_ids(root)
    graph = load_graph(root)
    items = None
    if deep and embedder is not None:
        items = similarity_items(root, scope, embedder)

    summary = {"excellent": 0, "good": 0, "needsAttention": 0, "poor": 0, "critical": 0, "averageScore": 0}
    summary_keys = {"needs_attention": "needsAttention"}
    results = []
    total = 0

    for memory_id in ids:
        try:
            assessment = assess_quality(
                root, memory_id, deep=deep, embedder=embedder, completer=completer,
                project_root=project_root, graph=graph, items=items, scope=scope, now=now,
            )
        except (LoreError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not assess {memory_id}: {e}")
            summary["critical"] += 1
            results.append({
                "id": memory_id,
                "score": 0,
                "rating": "critical",
                "issueCount": 1,
                "issues": [_issue("parse_error", "critical", str(e))],
            })
            continue

        total += assessment["score"]
        rating = assessment["rating"]
        summary[summary_keys.get(rating, rating)] += 1
        if assessment["score"] < threshold:
            results.append({
                "id": memory_id,
                "score": assessment["score"],
                "rating": rating,
                "issueCount": len(assessment["issues"]),
                "issues": assessment["issues"],
            })

    results.sort(key=lambda r: r["score"])
    summary["averageScore"] = round(total / len(ids)) if ids else 0
    return {"scanned": len(ids), "results": results, "summary": summary}
