"""
Structural health of a storage root: does the index agree with the graph,
and is the graph well connected?

This is about the graph+index pair, not about individual memories (see
quality.py for that).
"""

from pathlib import Path

from lore.files import iter_memory_files
from lore.graph import find_orphaned_nodes, graph_path, load_graph
from lore.index import index_path, load_index
from lore.log import get_logger
from lore.models import now_iso

logger = get_logger("lore.health")

# Penalty per occurrence, and the most a single issue type may cost
ISSUE_PENALTIES = {
    "missing_index": 30,
    "missing_graph": 30,
    "orphaned_nodes": 3,
    "sync_mismatch": 10,
    "ghost_nodes": 5,
    "orphan_files": 5,
    "low_connectivity": 10,
}
PENALTY_CAPS = {
    "orphaned_nodes": 30,
    "sync_mismatch": 30,
    "ghost_nodes": 20,
    "orphan_files": 20,
}

LOW_CONNECTIVITY_RATIO = 0.5
LOW_CONNECTIVITY_MIN_NODES = 5
MAX_DETAILS = 10


def calculate_health_score(issues: list[dict]) -> int:
    score = 100
    for issue in issues:
        penalty = ISSUE_PENALTIES.get(issue["type"], 5) * issue.get("count", 1)
        cap = PENALTY_CAPS.get(issue["type"])
        if cap is not None:
            penalty = min(penalty, cap)
        score -= penalty
    return max(0, score)


def get_health_status(score: int) -> str:
    if score >= 90:
        return "healthy"
    if score >= 70:
        return "warning"
    return "critical"


def check_health(root: Path) -> dict:
    """Score the graph+index pair under root.

    Returns:
        {status, score, stats, issues, timestamp}
    """
    root = Path(root)
    issues = []

    has_index = index_path(root).exists()
    has_graph = graph_path(root).exists()
    if not has_index:
        issues.append({"type": "missing_index", "count": 1, "severity": "error"})
    if not has_graph:
        issues.append({"type": "missing_graph", "count": 1, "severity": "error"})

    graph = load_graph(root)
    entries = load_index(root)

    orphaned = find_orphaned_nodes(graph)
    if orphaned:
        issues.append({
            "type": "orphaned_nodes",
            "count": len(orphaned),
            "severity": "warning",
            "details": orphaned[:MAX_DETAILS],
        })

    node_ids = {n.id for n in graph.nodes}
    index_ids = {e.id for e in entries}

    missing_in_graph = [e.id for e in entries if e.id not in node_ids]
    if missing_in_graph:
        issues.append({
            "type": "sync_mismatch",
            "count": len(missing_in_graph),
            "severity": "warning",
            "details": missing_in_graph[:MAX_DETAILS],
        })

    ghosts = [n.id for n in graph.nodes if n.id not in index_ids]
    if ghosts:
        issues.append({
            "type": "ghost_nodes",
            "count": len(ghosts),
            "severity": "warning",
            "details": ghosts[:MAX_DETAILS],
        })

    if has_index:
        unindexed = [p.stem for p in iter_memory_files(root) if p.stem not in index_ids]
        if unindexed:
            issues.append({
                "type": "orphan_files",
                "count": len(unindexed),
                "severity": "warning",
                "details": unindexed[:MAX_DETAILS],
            })

    total_nodes = len(graph.nodes)
    ratio = (total_nodes - len(orphaned)) / total_nodes if total_nodes else 1.0
    if ratio < LOW_CONNECTIVITY_RATIO and total_nodes > LOW_CONNECTIVITY_MIN_NODES:
        issues.append({"type": "low_connectivity", "count": 1, "severity": "warning"})

    score = calculate_health_score(issues)
    status = get_health_status(score)
    logger.debug(f"Health check for {root}: {score} ({status}), {len(issues)} issues")

    return {
        "status": status,
        "score": score,
        "stats": {
            "totalMemories": len(entries),
            "totalNodes": total_nodes,
            "totalEdges": len(graph.edges),
            "orphanedNodes": len(orphaned),
            "connectivityRatio": ratio,
        },
        "issues": issues,
        "timestamp": now_iso(),
    }


def format_health_report(report: dict) -> str:
    """Plain-text rendering of a check_health() report."""
    marks = {"healthy": "✓", "warning": "⚠", "critical": "✗"}
    severity_marks = {"info": "ℹ", "warning": "⚠", "error": "✗"}
    stats = report["stats"]

    lines = [
        f"{marks.get(report['status'], '?')} Health: {report['status'].upper()} (Score: {report['score']}/100)",
        "",
        "Statistics:",
        f"  Memories: {stats['totalMemories']}",
        f"  Nodes: {stats['totalNodes']}",
        f"  Edges: {stats['totalEdges']}",
        f"  Connectivity: {stats['connectivityRatio'] * 100:.1f}%",
    ]

    if report["issues"]:
        lines += ["", "Issues:"]
        for issue in report["issues"]:
            lines.append(f"  {severity_marks.get(issue['severity'], '-')} {issue['type']}: {issue['count']}")
            details = issue.get("details") or []
            for detail in details[:5]:
                lines.append(f"    - {detail}")
            if len(details) > 5:
                lines.append(f"    ... and {len(details) - 5} more")

    return "\n".join(lines)
