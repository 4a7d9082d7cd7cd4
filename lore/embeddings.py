"""
Embeddings - vector maths, the on-disk embedding cache, and providers.

Think of it in three parts:
1. Maths: cosine similarity and normalisation (numpy)
2. Cache: one JSON array per key in a cache directory, LRU by mtime
3. Providers: something with ``generate(text) -> list[float]``

A provider that fails raises CollaboratorError. Nothing in this module lets
a cache problem escape: an unreadable cache file is just a miss.
"""

import hashlib
import json
import os
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import httpx
import numpy as np

from lore.errors import CollaboratorError
from lore.log import get_logger

logger = get_logger("lore.embeddings")

DEFAULT_MAX_CACHE_ENTRIES = 1000
MAX_EMBED_CHARS = 6000

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


# =============================================================================
# VECTOR MATHS
# =============================================================================

def _is_sequence(value) -> bool:
    return isinstance(value, (list, tuple, np.ndarray))


def is_vector(value) -> bool:
    """A non-empty flat list of real numbers."""
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value)
    )


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|).

    Returns exactly 0.0 for empty, non-numeric or mismatched vectors, or a
    zero magnitude on either side.
    """
    if not _is_sequence(a) or not _is_sequence(b) or len(a) == 0 or len(a) != len(b):
        return 0.0
    try:
        va = np.asarray(a, dtype=np.float64)
        vb = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return 0.0
    if va.ndim != 1 or vb.ndim != 1:
        return 0.0
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0 or not np.isfinite(norm):
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine similarities; zero-magnitude rows score 0."""
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        return np.zeros((0, 0))
    norms = np.linalg.norm(matrix, axis=1)
    safe = np.where(norms == 0, 1.0, norms)
    unit = matrix / safe[:, None]
    unit[norms == 0] = 0.0
    return np.clip(unit @ unit.T, -1.0, 1.0)


def normalize(vector: Sequence[float]) -> list[float]:
    v = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v.tolist()
    return (v / norm).tolist()


def content_hash(text: str) -> str:
    """Short content fingerprint (first 16 hex chars of sha256)."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def query_key(query: str) -> str:
    """Cache key for a query string."""
    return hashlib.sha256(query.encode("utf-8")).hexdigest()


def memory_key(memory_id: str, text: str) -> str:
    """Cache key for a memory: its id plus a fingerprint of what was embedded."""
    return f"{memory_id}-{content_hash(text)}"


def prepare_text(text: str, max_chars: int = MAX_EMBED_CHARS) -> str:
    """Trim text to max_chars, cutting at a word boundary and adding '...'."""
    text = text.strip()
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space]
    return cut.rstrip() + "..."


# =============================================================================
# EMBEDDING CACHE
# =============================================================================

def _cache_file(cache_dir: Path, key: str) -> Optional[Path]:
    if not _SAFE_KEY.match(key or ""):
        return None
    return Path(cache_dir) / f"{key}.json"


def load_cached(cache_dir: Path, key: str) -> Optional[list[float]]:
    """Return the cached vector for key, or None.

    Malformed JSON, a non-list, or an empty list are all misses. A hit
    bumps the file's mtime so eviction treats it as recently used.
    """
    path = _cache_file(cache_dir, key)
    if path is None or not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(data, list) or not data:
        return None
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in data):
        return None
    try:
        os.utime(path, None)
    except OSError:
        pass
    return [float(x) for x in data]


def save_cached(
    cache_dir: Path,
    key: str,
    vector: Sequence[float],
    max_entries: int = DEFAULT_MAX_CACHE_ENTRIES,
    evict: bool = True,
) -> bool:
    """Write a vector to the cache. Never raises.

    After a successful write, eviction runs on a daemon thread so the
    caller doesn't wait for it.
    """
    path = _cache_file(cache_dir, key)
    if path is None or vector is None or len(vector) == 0:
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(f".{os.getpid()}.{threading.get_ident()}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([float(x) for x in vector], f)
        os.replace(tmp, path)
    except (OSError, TypeError, ValueError) as e:
        logger.debug(f"Embedding cache write failed for {key}: {e}")
        return False

    if evict:
        threading.Thread(
            target=_evict_quietly, args=(Path(cache_dir), max_entries), daemon=True,
        ).start()
    return True


def _evict_quietly(cache_dir: Path, max_entries: int) -> None:
    try:
        evict_oldest(cache_dir, max_entries)
    except OSError as e:
        logger.debug(f"Embedding cache eviction failed: {e}")


def evict_oldest(cache_dir: Path, max_entries: int = DEFAULT_MAX_CACHE_ENTRIES) -> int:
    """Delete least recently used entries until at most max_entries remain.

    Files whose stat fails sort first (treated as oldest).

    Returns:
        number of files evicted
    """
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return 0
    files = list(cache_dir.glob("*.json"))
    if len(files) <= max_entries:
        return 0

    def mtime(path: Path) -> float:
        try:
            return path.stat().st_mtime
        except OSError:
            return 0.0

    files.sort(key=mtime)
    evicted = 0
    for path in files[:len(files) - max_entries]:
        try:
            path.unlink()
            evicted += 1
        except FileNotFoundError:
            # Another process got there first; the count still drops
            evicted += 1
        except OSError as e:
            logger.debug(f"Could not evict {path.name}: {e}")
    return evicted


# =============================================================================
# PROVIDERS
# =============================================================================

class EmbeddingProvider:
    """Collaborator contract: generate(text) -> vector, or CollaboratorError."""

    name = "base"

    def generate(self, text: str) -> list[float]:
        raise NotImplementedError


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server.

    Tries ``/api/embeddings`` first and falls back to the newer
    ``/api/embed`` route when the server answers 404. If the configured
    model is missing, the fallback models are tried in order.
    """

    name = "ollama"

    def __init__(
        self,
        endpoint: str = "http://localhost:11434",
        model: str = "embeddinggemma",
        fallback_models: Optional[Sequence[str]] = None,
        timeout_seconds: float = 10.0,
        retries: int = 2,
        backoff_seconds: float = 0.1,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.fallback_models = list(fallback_models or [])
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._client = httpx.Client(
            base_url=self.endpoint,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _post(self, path: str, payload: dict) -> httpx.Response:
        """POST with retries on transport errors and 5xx responses."""
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                response = self._client.post(path, json=payload)
                if response.status_code < 500:
                    return response
                last_error = CollaboratorError(f"Ollama returned {response.status_code}")
            except httpx.RequestError as e:
                last_error = e
            if attempt < self.retries:
                time.sleep(self.backoff_seconds * (2 ** attempt))
        raise CollaboratorError(f"Ollama request to {path} failed: {last_error}")

    def _generate_with(self, model: str, text: str) -> Optional[list[float]]:
        response = self._post("/api/embeddings", {"model": model, "prompt": text})
        if response.status_code == 404:
            response = self._post("/api/embed", {"model": model, "input": text})
            if response.status_code == 404:
                return None
            response.raise_for_status()
            embeddings = response.json().get("embeddings") or []
            vector = embeddings[0] if embeddings else []
        else:
            response.raise_for_status()
            vector = response.json().get("embedding") or []
        if not vector:
            raise CollaboratorError(f"Ollama returned an empty embedding for {model}")
        return [float(x) for x in vector]

    def generate(self, text: str) -> list[float]:
        for model in [self.model, *self.fallback_models]:
            try:
                vector = self._generate_with(model, text)
            except httpx.HTTPStatusError as e:
                raise CollaboratorError(f"Ollama error: {e}") from e
            except ValueError as e:
                raise CollaboratorError(f"Ollama sent malformed JSON: {e}") from e
            if vector is not None:
                if model != self.model:
                    logger.info(f"Embedding model {self.model} unavailable, used {model}")
                return vector
        raise CollaboratorError(f"No embedding model available (tried {self.model})")


class SentenceTransformerProvider(EmbeddingProvider):
    """Local embeddings via sentence-transformers (``pip install lore-memory[local]``)."""

    name = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None

    @property
    def model(self):
        """Load the model lazily; the first call downloads it if needed."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def generate(self, text: str) -> list[float]:
        try:
            vector = self.model.encode(text, normalize_embeddings=True)
        except ImportError as e:
            raise CollaboratorError(f"sentence-transformers is not installed: {e}") from e
        except (RuntimeError, ValueError, OSError) as e:
            raise CollaboratorError(f"sentence-transformers failed: {e}") from e
        return [float(x) for x in vector]


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic hashed bag-of-words vectors, for tests and offline use.

    Texts sharing words get similar vectors; identical texts get identical
    vectors.
    """

    name = "mock"

    def __init__(self, dimensions: int = 128):
        self.dimensions = dimensions
        self.calls = 0

    def generate(self, text: str) -> list[float]:
        self.calls += 1
        vector = np.zeros(self.dimensions)
        tokens = re.findall(r"[a-z0-9]+", text.lower()) or [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            slot = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[slot] += sign
        return normalize(vector)


# =============================================================================
# CACHED EMBEDDER
# =============================================================================

class CachedEmbedder:
    """A provider behind the embedding cache.

    embed_query/embed_memory return None (and log) when the provider
    fails, so callers can fall back to keyword search.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache_dir: Optional[Path] = None,
        max_entries: int = DEFAULT_MAX_CACHE_ENTRIES,
        evict_in_background: bool = True,
    ):
        self.provider = provider
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.max_entries = max_entries
        self.evict_in_background = evict_in_background

    def _embed(self, key: str, text: str) -> Optional[list[float]]:
        if self.cache_dir is not None:
            cached = load_cached(self.cache_dir, key)
            if cached is not None:
                return cached
        try:
            vector = self.provider.generate(prepare_text(text))
        except CollaboratorError as e:
            logger.warning(f"Embedding provider {self.provider.name} failed: {e}")
            return None
        if vector is None or len(vector) == 0:
            return None
        vector = normalize(vector)
        if self.cache_dir is not None:
            save_cached(self.cache_dir, key, vector, self.max_entries, evict=self.evict_in_background)
        return vector

    def embed_query(self, query: str) -> Optional[list[float]]:
        return self._embed(query_key(query), query)

    def embed_memory(self, memory_id: str, text: str) -> Optional[list[float]]:
        return self._embed(memory_key(memory_id, text), text)


def get_embedding_provider(config: Dict[str, Any]) -> EmbeddingProvider:
    """Build the configured provider (ollama, sentence-transformers, mock)."""
    settings = config.get("embedding", {})
    provider = settings.get("provider", "ollama")
    if provider == "mock":
        return MockEmbeddingProvider()
    if provider == "sentence-transformers":
        return SentenceTransformerProvider(settings.get("local_model", "all-MiniLM-L6-v2"))
    return OllamaEmbeddingProvider(
        endpoint=settings.get("endpoint", "http://localhost:11434"),
        model=settings.get("model", "embeddinggemma"),
        fallback_models=settings.get("fallback_models"),
        timeout_seconds=float(settings.get("timeout_seconds", 10.0)),
        retries=int(settings.get("retries", 2)),
        backoff_seconds=float(settings.get("backoff_seconds", 0.1)),
    )
