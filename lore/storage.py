"""
Storage Layer - where memories live.

Think of a storage root as a small filing system:
1. permanent/ and temporary/ = the files themselves (frontmatter + text)
2. index.json = the card catalogue (titles, tags, dates) for quick listing
3. graph.json = the string between cards (which memory relates to which)
4. .semantic-index/ = a meaning-based catalogue, rebuilt when stale

MemoryStore is the one door into all of it. Every public method returns a
plain dict tagged with ``status`` ("success" or "error") and never raises:

    store = MemoryStore(root=Path("/tmp/memories"))
    store.write_memory("Use Postgres", "We picked Postgres for ...", "decision", tags=["db"])
    store.search_memories("postgres")
    store.semantic_search("which database did we choose?")

Each call reloads what it needs from disk, so separate calls never share
in-memory state.
"""

import functools
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from lore.config import (
    get_default_scope,
    get_embedding_cache_dir,
    get_project_root,
    get_scope_path,
    load_config,
)
from lore.embeddings import CachedEmbedder, get_embedding_provider
from lore.errors import LoreError, NotFoundError, ValidationError, error_result, success
from lore.files import PERMANENT_DIR, TEMPORARY_DIR
from lore.graph import (
    GraphNode,
    add_node,
    get_edges_for_node,
    get_node,
    has_edge,
    has_node,
    load_graph,
    remove_node,
    rename_node,
    save_graph,
)
from lore.health import check_health, format_health_report
from lore.index import find_in_index, load_index, rebuild_index, remove_from_index
from lore.link import link_memories, unlink_memories
from lore.llm import Completer, get_completer
from lore.log import get_logger
from lore.maintenance import CONCLUDED_TTL_DAYS, DEFAULT_TTL_DAYS, filter_entries, find_expired, sync_memories
from lore.models import (
    MEMORY_TYPES,
    SCOPES,
    SEVERITIES,
    THOUGHT_PREFIX,
    DEFAULT_RELATION,
    RELATIONS,
    Memory,
    MemoryType,
    is_memory_type,
    is_scope,
    is_severity,
    now_iso,
)
from lore.quality import assess_quality, audit_memories
from lore.records import locate_memory, load_memory, memory_exists, memory_path, persist_memory
from lore.semantic import (
    SEARCH_CONTEXTS,
    SearchContext,
    apply_type_limits,
    build_semantic_index,
    find_potential_duplicates,
    is_search_context,
    semantic_search,
    similarity_items,
)
from lore.slug import generate_unique_id, is_valid_id, replace_type_prefix
from lore.suggest import suggest_links
from lore.transfer import export_memories, import_package, parse_package, serialise_package
from lore.traversal import (
    bfs_traversal,
    calculate_impact,
    dfs_traversal,
    find_connected_components,
    find_predecessors,
    find_shortest_path,
    render_mermaid,
)

logger = get_logger("lore.storage")

SORT_FIELDS = ("created", "updated", "title")
SNIPPET_BEFORE = 50
SNIPPET_AFTER = 100
SNIPPET_MAX = 150


def _tagged(method):
    """Turn errors raised inside an operation into an error result.

    LoreError is expected; OSError, ValueError and TypeError are logged
    with their traceback since they point at bad data on disk or a bug.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except LoreError as e:
            logger.debug(f"{method.__name__} failed: {e}")
            return error_result(e)
        except OSError as e:
            logger.error(f"{method.__name__} hit a filesystem error: {e}")
            return error_result(e)
        except (ValueError, TypeError) as e:
            logger.exception(f"{method.__name__} failed unexpectedly")
            return error_result(e)
    return wrapper


# =============================================================================
# VALIDATION
# =============================================================================

def validate_fields(
    title: Optional[str],
    content: Optional[str],
    memory_type: Optional[str],
    tags: Any = None,
    scope: Optional[str] = None,
    severity: Optional[str] = None,
    links: Any = None,
) -> list[str]:
    """Every problem with a prospective memory; empty when it is valid."""
    errors = []
    if not isinstance(title, str) or not title.strip():
        errors.append("title is required")
    if not is_memory_type(memory_type):
        errors.append(f"type must be one of: {', '.join(MEMORY_TYPES)}")
    if memory_type != MemoryType.BREADCRUMB.value and (not isinstance(content, str) or not content.strip()):
        errors.append("content is required")
    if tags is not None and (
        not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) and t.strip() for t in tags)
    ):
        errors.append("tags must be a list of non-empty strings")
    if scope is not None and not is_scope(scope):
        errors.append(f"scope must be one of: {', '.join(SCOPES)}")
    if severity is not None and not is_severity(severity):
        errors.append(f"severity must be one of: {', '.join(SEVERITIES)}")
    if links is not None and (
        not isinstance(links, (list, tuple)) or not all(is_valid_id(link) for link in links)
    ):
        errors.append("links must be a list of valid memory ids")
    return errors


def _raise_if_invalid(errors: list[str]) -> None:
    if errors:
        raise ValidationError("; ".join(errors), errors)


def _require_tag_list(tags, allow_none: bool = False) -> None:
    if tags is None and allow_none:
        return
    if not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) and t.strip() for t in tags):
        raise ValidationError("tags must be a list of non-empty strings")


def _clean_tags(tags: Optional[Iterable[str]]) -> list[str]:
    cleaned = []
    for tag in tags or []:
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned


# =============================================================================
# KEYWORD SEARCH
# =============================================================================

def keyword_score(query: str, title: str, content: str, tags: Iterable[str]) -> float:
    q = query.lower()
    score = 0.0
    if q in title.lower():
        score += 0.5
        if title.lower() == q:
            score += 0.3
    if any(q in tag.lower() for tag in tags):
        score += 0.3
    content_lower = content.lower()
    if q in content_lower:
        score += 0.2
        score += min(content_lower.count(q) * 0.02, 0.1)
    return min(round(score, 4), 1.0)


def extract_snippet(content: str, query: str) -> Optional[str]:
    """Text around the first match: 50 characters before, 100 after."""
    index = content.lower().find(query.lower())
    if index == -1:
        return None
    start = max(0, index - SNIPPET_BEFORE)
    end = min(len(content), index + len(query) + SNIPPET_AFTER)
    snippet = content[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    if len(snippet) > SNIPPET_MAX:
        snippet = snippet[:SNIPPET_MAX - 3] + "..."
    return snippet


class MemoryStore:
    """The main memory storage system for one scope root.

    Usage:
        store = MemoryStore()                      # default scope for cwd
        store = MemoryStore(scope="global")
        store = MemoryStore(root=Path("/tmp/m"))   # explicit root
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        scope: Optional[str] = None,
        cwd: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
        embedder: Optional[CachedEmbedder] = None,
        completer: Optional[Completer] = None,
        project_root: Optional[Path] = None,
    ):
        """Set up the store.

        Args:
            root: storage root; resolved from scope (and cwd) when omitted
            scope: scope recorded on new memories; defaults to the scope
                that cwd implies (project inside git, otherwise global)
            config: overrides merged over the loaded configuration
            embedder: embedding collaborator; built from config on first use
            completer: LLM collaborator for deep quality checks
            project_root: where stale file references are resolved
        """
        self.config = load_config(config)
        self.scope = scope or get_default_scope(cwd)
        if not is_scope(self.scope):
            raise ValidationError(f"Invalid scope: {self.scope}")
        self.root = Path(root) if root is not None else get_scope_path(self.scope, cwd, self.config)
        self.project_root = Path(project_root) if project_root else get_project_root(cwd)
        self._embedder = embedder
        self._completer = completer

    @property
    def embedder(self) -> CachedEmbedder:
        """Embedding collaborator (lazy - only built when first needed)."""
        if self._embedder is None:
            self._embedder = CachedEmbedder(
                get_embedding_provider(self.config),
                cache_dir=get_embedding_cache_dir(self.config),
                max_entries=int(self.config["cache"]["max_entries"]),
            )
        return self._embedder

    @property
    def completer(self) -> Completer:
        if self._completer is None:
            self._completer = get_completer(self.config)
        return self._completer

    # =========================================================================
    # CORE CRUD
    # =========================================================================

    @_tagged
    def write_memory(
        self,
        title: str,
        content: str,
        memory_type: str,
        tags: Optional[list] = None,
        severity: Optional[str] = None,
        links: Optional[list] = None,
        project: Optional[str] = None,
        source: Optional[str] = None,
        meta: Optional[dict] = None,
        ephemeral: bool = False,
    ) -> dict:
        """Write a new memory.

        The id comes from type + title; a clash gets a -1, -2, ... suffix.
        Ephemeral memories get a ``thought-`` id and live in temporary/.
        Declared links to memories that exist are added to the graph.

        Returns:
            {status, id, filePath, memory, linkErrors}
        """
        _raise_if_invalid(validate_fields(title, content, memory_type, tags, self.scope, severity, links))

        prefix = THOUGHT_PREFIX.rstrip("-") if ephemeral else memory_type
        memory_id = generate_unique_id(prefix, title, lambda i: memory_exists(self.root, i))
        timestamp = now_iso()
        memory = Memory(
            id=memory_id,
            title=title.strip(),
            type=memory_type,
            content=(content or "").strip(),
            scope=self.scope,
            created=timestamp,
            updated=timestamp,
            tags=_clean_tags(tags),
            severity=severity,
            links=list(links or []),
            project=project,
            source=source,
            meta=dict(meta or {}),
        )
        path = persist_memory(self.root, memory)
        logger.info(f"Wrote {memory_id}")

        link_errors = []
        for target in memory.links:
            try:
                link_memories(self.root, memory_id, target, DEFAULT_RELATION)
            except LoreError as e:
                link_errors.append({"target": target, "error": str(e)})

        return success(id=memory_id, filePath=str(path), memory=memory.to_dict(), linkErrors=link_errors)

    @_tagged
    def read_memory(self, memory_id: str) -> dict:
        memory = load_memory(self.root, memory_id)
        return success(memory=memory.to_dict())

    @_tagged
    def update_memory(
        self,
        memory_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[list] = None,
        severity: Optional[str] = None,
        links: Optional[list] = None,
        meta: Optional[dict] = None,
    ) -> dict:
        """Change fields of an existing memory. The id never changes."""
        memory = load_memory(self.root, memory_id)
        if title is not None:
            memory.title = title.strip()
        if content is not None:
            memory.content = content.strip()
        if tags is not None:
            memory.tags = tags
        if severity is not None:
            memory.severity = severity
        if links is not None:
            memory.links = list(links)
        if meta is not None:
            memory.meta = {**memory.meta, **meta}

        _raise_if_invalid(validate_fields(
            memory.title, memory.content, memory.type, memory.tags, memory.scope, memory.severity, memory.links,
        ))
        memory.tags = _clean_tags(memory.tags)
        memory.updated = now_iso()
        persist_memory(self.root, memory)
        return success(id=memory.id, memory=memory.to_dict())

    @_tagged
    def delete_memory(self, memory_id: str) -> dict:
        """Delete a memory and cascade to the index and the graph."""
        path = locate_memory(self.root, memory_id)
        path.unlink()
        remove_from_index(self.root, memory_id)

        graph = load_graph(self.root)
        removed_edges = 0
        if has_node(graph, memory_id):
            removed_edges = len(get_edges_for_node(graph, memory_id))
            save_graph(self.root, remove_node(graph, memory_id))
        logger.info(f"Deleted {memory_id} ({removed_edges} edges)")
        return success(id=memory_id, removedEdges=removed_edges)

    @_tagged
    def list_memories(
        self,
        memory_type: Optional[str] = None,
        scope: Optional[str] = None,
        tag: Optional[str] = None,
        tags: Optional[list] = None,
        sort_by: str = "created",
        order: str = "desc",
        limit: Optional[int] = None,
    ) -> dict:
        if sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of: {', '.join(SORT_FIELDS)}")
        if order not in ("asc", "desc"):
            raise ValidationError("order must be asc or desc")
        _require_tag_list(tags, allow_none=True)

        required = set(tags or [])
        if tag:
            required.add(tag)
        entries = [
            e for e in load_index(self.root)
            if (memory_type is None or e.type == memory_type)
            and (scope is None or e.scope == scope)
            and required.issubset(e.tags)
        ]
        entries.sort(
            key=lambda e: (getattr(e, sort_by) or "").lower() if sort_by == "title" else getattr(e, sort_by) or "",
            reverse=(order == "desc"),
        )
        total = len(entries)
        if limit is not None:
            entries = entries[:limit]
        return success(memories=[e.to_dict() for e in entries], count=len(entries), total=total)

    @_tagged
    def search_memories(
        self,
        query: str,
        memory_type: Optional[str] = None,
        scope: Optional[str] = None,
        tags: Optional[list] = None,
        limit: int = 20,
    ) -> dict:
        """Keyword search over titles, tags and content."""
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required")
        _require_tag_list(tags, allow_none=True)
        query = query.strip()
        q = query.lower()
        required = set(tags or [])

        results = []
        for entry in load_index(self.root):
            if memory_type is not None and entry.type != memory_type:
                continue
            if scope is not None and entry.scope != scope:
                continue
            if not required.issubset(entry.tags):
                continue
            try:
                content = load_memory(self.root, entry.id).content
            except NotFoundError:
                content = ""
            except LoreError:
                continue

            title_hit = q in entry.title.lower()
            tag_hit = any(q in t.lower() for t in entry.tags)
            if not (title_hit or tag_hit or q in content.lower()):
                continue
            results.append({
                "id": entry.id,
                "type": entry.type,
                "title": entry.title,
                "tags": list(entry.tags),
                "scope": entry.scope,
                "score": keyword_score(query, entry.title, content, entry.tags),
                "snippet": extract_snippet(content, query),
            })

        results.sort(key=lambda r: r["score"], reverse=True)
        return success(results=results[:limit], total=len(results))

    # =========================================================================
    # TAGS / PROMOTION / INDEX MAINTENANCE
    # =========================================================================

    @_tagged
    def add_tags(self, memory_id: str, tags: list) -> dict:
        _require_tag_list(tags)
        memory = load_memory(self.root, memory_id)
        memory.tags = _clean_tags([*memory.tags, *tags])
        memory.updated = now_iso()
        persist_memory(self.root, memory)
        return success(id=memory_id, tags=memory.tags)

    @_tagged
    def remove_tags(self, memory_id: str, tags: list) -> dict:
        _require_tag_list(tags)
        memory = load_memory(self.root, memory_id)
        doomed = set(tags)
        memory.tags = [t for t in memory.tags if t not in doomed]
        memory.updated = now_iso()
        persist_memory(self.root, memory)
        return success(id=memory_id, tags=memory.tags)

    @_tagged
    def promote_memory(self, memory_id: str, new_type: Optional[str] = None) -> dict:
        """Change a memory's type and/or make an ephemeral thought permanent.

        When the id prefix no longer matches the type, the memory is renamed
        and its graph node and edges follow it.

        Returns:
            {status, id, previousId, type, moved, renamed}
        """
        memory = load_memory(self.root, memory_id)
        old_path = locate_memory(self.root, memory_id)
        target_type = new_type or memory.type
        if not is_memory_type(target_type):
            raise ValidationError(f"type must be one of: {', '.join(MEMORY_TYPES)}")

        new_id = replace_type_prefix(memory_id, target_type)
        if new_id != memory_id and memory_exists(self.root, new_id):
            raise ValidationError(f"Cannot promote: {new_id} already exists")
        moved = old_path.parent.name == TEMPORARY_DIR

        memory.id = new_id
        memory.type = target_type
        memory.updated = now_iso()
        new_path = persist_memory(self.root, memory)
        if new_path.resolve() != old_path.resolve():
            old_path.unlink()
        if new_id != memory_id:
            remove_from_index(self.root, memory_id)

        graph = load_graph(self.root)
        node = get_node(graph, memory_id)
        if node is not None:
            graph = rename_node(graph, memory_id, new_id, target_type)
            save_graph(self.root, graph)

        logger.info(f"Promoted {memory_id} -> {new_id} ({target_type})")
        return success(
            id=new_id,
            previousId=memory_id,
            type=target_type,
            moved=moved and new_path.parent.name == PERMANENT_DIR,
            renamed=new_id != memory_id,
        )

    @_tagged
    def rebuild_index(self) -> dict:
        return success(**rebuild_index(self.root))

    # =========================================================================
    # GRAPH
    # =========================================================================

    @_tagged
    def link_memories(self, source: str, target: str, relation: str = DEFAULT_RELATION) -> dict:
        return success(**link_memories(self.root, source, target, relation))

    @_tagged
    def unlink_memories(self, source: str, target: str, relation: Optional[str] = None) -> dict:
        return success(**unlink_memories(self.root, source, target, relation))

    @_tagged
    def ensure_node(self, memory_id: str) -> dict:
        """Add a memory to the graph without linking it."""
        entry = find_in_index(self.root, memory_id)
        if entry is None:
            raise NotFoundError(f"Memory not found in index: {memory_id}")
        graph = load_graph(self.root)
        if not has_node(graph, memory_id):
            save_graph(self.root, add_node(graph, GraphNode(memory_id, entry.type)))
        return success(id=memory_id)

    @_tagged
    def get_related(
        self,
        memory_id: str,
        max_depth: Optional[int] = None,
        direction: str = "outbound",
        strategy: str = "bfs",
    ) -> dict:
        """Walk the graph from a memory.

        direction "outbound" follows edges forwards, "inbound" finds every
        memory that leads here.
        """
        graph = load_graph(self.root)
        if not has_node(graph, memory_id):
            raise NotFoundError(f"Node not found: {memory_id}")
        if direction == "inbound":
            visited = find_predecessors(graph, memory_id)
            return success(visited=visited, depths={})
        if direction != "outbound":
            raise ValidationError("direction must be outbound or inbound")
        walk = dfs_traversal if strategy == "dfs" else bfs_traversal
        result = walk(graph, memory_id, max_depth)
        return success(visited=result["visited"], depths=result["depths"])

    @_tagged
    def find_path(self, source: str, target: str) -> dict:
        path = find_shortest_path(load_graph(self.root), source, target)
        return success(path=path, found=path is not None)

    @_tagged
    def connected_components(self) -> dict:
        components = find_connected_components(load_graph(self.root))
        return success(components=components, count=len(components))

    @_tagged
    def removal_impact(self, memory_id: str) -> dict:
        graph = load_graph(self.root)
        if not has_node(graph, memory_id):
            raise NotFoundError(f"Node not found: {memory_id}")
        return success(**calculate_impact(graph, memory_id))

    @_tagged
    def graph_diagram(self, memory_id: Optional[str] = None, max_depth: int = 2) -> dict:
        return success(mermaid=render_mermaid(load_graph(self.root), memory_id, max_depth))

    # =========================================================================
    # SEMANTIC
    # =========================================================================

    @_tagged
    def build_semantic_index(self) -> dict:
        return success(**build_semantic_index(self.root, self.scope, self.embedder))

    @_tagged
    def semantic_search(
        self,
        query: str,
        context: str = SearchContext.EXPLICIT_SEARCH.value,
        threshold: Optional[float] = None,
        limit: Optional[int] = None,
        roots: Optional[Dict[str, Path]] = None,
        keyword_fallback: bool = True,
    ) -> dict:
        """Search by meaning.

        Args:
            roots: {scope: root} to search together; this store only by default
            keyword_fallback: when the query can't be embedded, fall back to
                keyword search (index_status becomes "keyword")
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query is required")
        if not is_search_context(context):
            raise ValidationError(f"context must be one of: {', '.join(SEARCH_CONTEXTS)}")
        limit = limit or int(self.config["search"]["limit"])
        result = semantic_search(
            query,
            roots or {self.scope: self.root},
            self.embedder,
            context=context,
            threshold=threshold,
            limit=limit,
            thresholds=self.config["search"].get("thresholds"),
        )
        if result["index_status"] == "no_embedding" and keyword_fallback:
            keyword = self.search_memories(query, limit=limit)
            if keyword["status"] == "success":
                result["memories"] = [
                    {**r, "file": "", "scope": r.get("scope", self.scope)} for r in keyword["results"]
                ]
                result["index_status"] = "keyword"
        return success(**result)

    @_tagged
    def memories_for_injection(
        self,
        query: str,
        context: str = SearchContext.USER_PROMPT.value,
        roots: Optional[Dict[str, Path]] = None,
    ) -> dict:
        """Semantic search trimmed by the per-type injection limits."""
        injection = self.config["injection"]
        result = self.semantic_search(query, context=context, roots=roots, keyword_fallback=False)
        if result["status"] != "success":
            return result
        kept = apply_type_limits(
            result["memories"],
            injection.get("limits", {}),
            injection.get("total_cap"),
            injection.get("thresholds"),
        )
        return success(memories=kept, index_status=result["index_status"])

    @_tagged
    def find_duplicates(self, threshold: float = 0.92) -> dict:
        items = similarity_items(self.root, self.scope, self.embedder, exclude_prefix=THOUGHT_PREFIX)
        pairs = find_potential_duplicates(items, threshold)
        return success(duplicates=pairs, analysed=len(items))

    @_tagged
    def suggest_links(self, threshold: float = 0.75, limit: int = 20, auto_link: bool = False) -> dict:
        return success(**suggest_links(
            self.root, self.embedder, threshold=threshold, limit=limit, auto_link=auto_link, scope=self.scope,
        ))

    # =========================================================================
    # QUALITY / HEALTH
    # =========================================================================

    @_tagged
    def assess_quality(self, memory_id: str, deep: bool = False) -> dict:
        return success(**assess_quality(
            self.root,
            memory_id,
            deep=deep,
            embedder=self.embedder if deep else None,
            completer=self.completer if deep else None,
            project_root=self.project_root,
            scope=self.scope,
        ))

    @_tagged
    def audit_memories(self, threshold: int = 100, deep: bool = False) -> dict:
        return success(**audit_memories(
            self.root,
            threshold=threshold,
            deep=deep,
            embedder=self.embedder if deep else None,
            completer=self.completer if deep else None,
            project_root=self.project_root,
            scope=self.scope,
        ))

    @_tagged
    def check_health(self, formatted: bool = False) -> dict:
        report = check_health(self.root)
        if formatted:
            report["text"] = format_health_report(report)
        # "status" is the result tag; the health verdict travels as "health"
        report["health"] = report.pop("status")
        return success(**report)

    # =========================================================================
    # BULK / MAINTENANCE
    # =========================================================================

    def _select(self, pattern, tags, memory_type, scope, ids=None) -> list:
        if not (pattern or tags or memory_type or scope or ids):
            raise ValidationError("At least one filter is required (pattern, ids, tags, type or scope)")
        _require_tag_list(tags, allow_none=True)
        if ids is not None and not isinstance(ids, (list, tuple)):
            raise ValidationError("ids must be a list")
        entries = filter_entries(load_index(self.root), pattern, tags, memory_type, scope)
        if ids:
            wanted = set(ids)
            entries = [e for e in entries if e.id in wanted]
        return [e.id for e in entries]

    @_tagged
    def bulk_tag(
        self,
        add_tags: Optional[list] = None,
        remove_tags: Optional[list] = None,
        pattern: Optional[str] = None,
        ids: Optional[list] = None,
        tags: Optional[list] = None,
        memory_type: Optional[str] = None,
        scope: Optional[str] = None,
        dry_run: bool = False,
    ) -> dict:
        """Add and/or remove tags on every memory matching the filters.

        Returns:
            {status, modifiedCount, modifiedIds, failedIds, dryRun}
        """
        if not add_tags and not remove_tags:
            raise ValidationError("Provide add_tags or remove_tags")
        _require_tag_list(add_tags, allow_none=True)
        _require_tag_list(remove_tags, allow_none=True)
        matches = self._select(pattern, tags, memory_type, scope, ids)
        if dry_run:
            return success(modifiedCount=len(matches), modifiedIds=matches, failedIds=[], dryRun=True)

        modified, failed = [], []
        for memory_id in matches:
            result = success()
            if add_tags:
                result = self.add_tags(memory_id, add_tags)
            if result["status"] == "success" and remove_tags:
                result = self.remove_tags(memory_id, remove_tags)
            if result["status"] == "success":
                modified.append(memory_id)
            else:
                failed.append({"id": memory_id, "reason": result["error"]})
        logger.info(f"Bulk tag: {len(modified)} modified, {len(failed)} failed")
        return success(modifiedCount=len(modified), modifiedIds=modified, failedIds=failed, dryRun=False)

    @_tagged
    def bulk_delete(
        self,
        pattern: Optional[str] = None,
        tags: Optional[list] = None,
        memory_type: Optional[str] = None,
        scope: Optional[str] = None,
        dry_run: bool = False,
    ) -> dict:
        """Delete every memory matching the filters, cascading like delete_memory.

        Returns:
            {status, deletedCount, deletedIds, failedIds, dryRun}
        """
        matches = self._select(pattern, tags, memory_type, scope)
        if dry_run:
            return success(deletedCount=len(matches), deletedIds=matches, failedIds=[], dryRun=True)

        deleted, failed = [], []
        for memory_id in matches:
            result = self.delete_memory(memory_id)
            if result["status"] == "success":
                deleted.append(memory_id)
            else:
                failed.append({"id": memory_id, "reason": result["error"]})
        logger.info(f"Bulk delete: {len(deleted)} deleted, {len(failed)} failed")
        return success(deletedCount=len(deleted), deletedIds=deleted, failedIds=failed, dryRun=False)

    @_tagged
    def bulk_link(
        self,
        target: str,
        source_pattern: Optional[str] = None,
        source_ids: Optional[list] = None,
        relation: str = DEFAULT_RELATION,
        dry_run: bool = False,
    ) -> dict:
        """Link every matching source memory to one target.

        Sources come from an id glob, an explicit id list, or both; the
        target itself is never a source. Ids missing from the index land
        in failedLinks.

        Returns:
            {status, createdCount, createdLinks, existingCount, failedLinks, dryRun}
        """
        if not target:
            raise ValidationError("target is required")
        if not source_pattern and not source_ids:
            raise ValidationError("Provide source_pattern or source_ids")
        if source_ids is not None and not isinstance(source_ids, (list, tuple)):
            raise ValidationError("source_ids must be a list")
        if relation not in RELATIONS:
            raise ValidationError(f"Invalid relation: {relation}. Expected one of {', '.join(RELATIONS)}")
        entries = load_index(self.root)
        indexed = {e.id for e in entries}
        if target not in indexed:
            raise NotFoundError(f"Target memory not found: {target}")

        sources = []
        if source_pattern:
            sources = [e.id for e in filter_entries(entries, pattern=source_pattern)]
        for memory_id in source_ids or []:
            if memory_id not in sources:
                sources.append(memory_id)
        sources = [s for s in sources if s != target]

        graph = load_graph(self.root)
        created, failed, existing = [], [], 0
        for source in sources:
            if source not in indexed:
                failed.append({"source": source, "error": f"Memory not found in index: {source}"})
                continue
            if has_node(graph, source) and has_node(graph, target) and has_edge(graph, source, target, relation):
                existing += 1
                continue
            if not dry_run:
                try:
                    link_memories(self.root, source, target, relation)
                except LoreError as e:
                    failed.append({"source": source, "error": str(e)})
                    continue
            created.append({"source": source, "target": target, "relation": relation})
        logger.info(f"Bulk link to {target}: {len(created)} created, {existing} existing, {len(failed)} failed")
        return success(
            createdCount=len(created),
            createdLinks=created,
            existingCount=existing,
            failedLinks=failed,
            dryRun=dry_run,
        )

    @_tagged
    def prune(
        self,
        ttl_days: float = DEFAULT_TTL_DAYS,
        concluded_ttl_days: float = CONCLUDED_TTL_DAYS,
        dry_run: bool = False,
    ) -> dict:
        """Delete ephemeral thoughts in temporary/ that outlived their TTL.

        Returns:
            {status, removed, removedIds, errors} plus wouldRemove on a dry run
        """
        expired, errors = find_expired(self.root, ttl_days, concluded_ttl_days)
        if dry_run:
            return success(removed=0, removedIds=[], wouldRemove=expired, errors=errors)

        removed = []
        for memory_id in expired:
            result = self.delete_memory(memory_id)
            if result["status"] == "success":
                removed.append(memory_id)
            else:
                errors.append(f"Failed to delete {memory_id}: {result['error']}")
        if removed:
            logger.info(f"Pruned {len(removed)} expired thoughts")
        return success(removed=len(removed), removedIds=removed, errors=errors)

    @_tagged
    def sync(self, dry_run: bool = False) -> dict:
        """Repair index and graph divergence from the files on disk."""
        return success(dryRun=dry_run, **sync_memories(self.root, dry_run=dry_run))

    # =========================================================================
    # EXPORT / IMPORT
    # =========================================================================

    @_tagged
    def export_memories(
        self,
        memory_types: Optional[list] = None,
        tags: Optional[list] = None,
        ids: Optional[list] = None,
        include_graph: bool = True,
        fmt: Optional[str] = None,
        output_path: Optional[Path] = None,
    ) -> dict:
        """Export memories as a package; serialised when fmt or output_path is given."""
        package = export_memories(self.root, self.scope, memory_types, tags, ids, include_graph)
        result = {"package": package, "count": len(package["memories"])}
        if fmt or output_path:
            if fmt is None:
                fmt = "yaml" if Path(output_path).suffix in (".yaml", ".yml") else "json"
            text = serialise_package(package, fmt)
            result["format"] = fmt
            if output_path:
                Path(output_path).write_text(text, encoding="utf-8")
                result["outputPath"] = str(output_path)
            else:
                result["text"] = text
        return success(**result)

    @_tagged
    def import_memories(
        self,
        package: Optional[dict] = None,
        text: Optional[str] = None,
        input_path: Optional[Path] = None,
        fmt: Optional[str] = None,
        strategy: str = "merge",
        dry_run: bool = False,
    ) -> dict:
        """Import a package given as a dict, as text, or as a file path."""
        if package is None:
            if text is None and input_path is None:
                raise ValidationError("Provide a package, text or input_path")
            if text is None:
                text = Path(input_path).read_text(encoding="utf-8")
                if fmt is None and Path(input_path).suffix in (".yaml", ".yml"):
                    fmt = "yaml"
            package = parse_package(text, fmt)
        counts = import_package(self.root, package, strategy=strategy, dry_run=dry_run, target_scope=self.scope)
        logger.info(
            f"Import ({strategy}{', dry run' if dry_run else ''}): "
            f"{counts['importedCount']} new, {counts['mergedCount']} merged, "
            f"{counts['replacedCount']} replaced, {counts['skippedCount']} skipped"
        )
        return success(**counts)

    def memory_file(self, memory_id: str) -> Path:
        """Conventional file path for an id (the file may not exist)."""
        return memory_path(self.root, memory_id)
