#!/usr/bin/env python3
"""
Embedding Tests

1. Cosine similarity edge cases (zero, empty, mismatched)
2. The on-disk cache: round trip, corrupt entries, LRU eviction
3. Ollama provider over httpx.MockTransport (route fallback, retries, model fallback)
4. CachedEmbedder: cache hits skip the provider, failures become None
"""

import json
import os
from unittest.mock import Mock

import httpx
import pytest

from lore.embeddings import (
    CachedEmbedder,
    EmbeddingProvider,
    MockEmbeddingProvider,
    OllamaEmbeddingProvider,
    cosine_similarity,
    evict_oldest,
    get_embedding_provider,
    is_vector,
    load_cached,
    memory_key,
    prepare_text,
    query_key,
    save_cached,
)
from lore.errors import CollaboratorError


class TestCosineSimilarity:
    """Vector maths."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_symmetric_and_bounded(self):
        a, b = [0.3, -1.2, 4.0], [2.2, 0.1, -0.7]
        score = cosine_similarity(a, b)

        assert score == pytest.approx(cosine_similarity(b, a))
        assert -1.0 <= score <= 1.0

    def test_degenerate_inputs_are_zero(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
        assert cosine_similarity(None, [1.0]) == 0.0

    def test_non_numeric_inputs_are_zero(self):
        assert cosine_similarity(5, [1.0]) == 0.0
        assert cosine_similarity(["a"], [1.0]) == 0.0
        assert cosine_similarity([[1.0, 2.0]], [[1.0, 2.0]]) == 0.0
        assert not is_vector([True, 1.0])
        assert is_vector([1, 2.5])


class TestKeysAndText:
    """Cache keys and text preparation."""

    def test_memory_key_changes_with_content(self):
        assert memory_key("decision-a", "one") != memory_key("decision-a", "two")
        assert memory_key("decision-a", "one").startswith("decision-a-")

    def test_query_key_is_stable(self):
        assert query_key("pool size") == query_key("pool size")
        assert len(query_key("pool size")) == 64

    def test_prepare_text_truncates_at_word(self):
        text = "word " * 2000
        prepared = prepare_text(text, max_chars=100)

        assert len(prepared) <= 103
        assert prepared.endswith("...")
        assert not prepared[:-3].endswith(" ")


class TestEmbeddingCache:
    """One JSON file per key, least recently used evicted first."""

    def test_round_trip(self, temp_data_dir):
        assert save_cached(temp_data_dir, "k1", [0.1, 0.2, 0.3], evict=False)
        assert load_cached(temp_data_dir, "k1") == pytest.approx([0.1, 0.2, 0.3])

    def test_miss(self, temp_data_dir):
        assert load_cached(temp_data_dir, "absent") is None

    @pytest.mark.parametrize("payload", ["{broken", "{}", "[]", '["a", "b"]', "[true, false]"])
    def test_corrupt_entries_are_misses(self, temp_data_dir, payload):
        (temp_data_dir / "bad.json").write_text(payload)
        assert load_cached(temp_data_dir, "bad") is None

    def test_unsafe_key_refused(self, temp_data_dir):
        assert save_cached(temp_data_dir, "../escape", [1.0], evict=False) is False
        assert load_cached(temp_data_dir, "../escape") is None

    def test_empty_vector_not_saved(self, temp_data_dir):
        assert save_cached(temp_data_dir, "empty", [], evict=False) is False

    def test_evicts_oldest(self, temp_data_dir):
        for i in range(5):
            save_cached(temp_data_dir, f"k{i}", [float(i)], evict=False)
            os.utime(temp_data_dir / f"k{i}.json", (1000 + i, 1000 + i))

        evicted = evict_oldest(temp_data_dir, max_entries=3)

        assert evicted == 2
        remaining = sorted(p.stem for p in temp_data_dir.glob("*.json"))
        assert remaining == ["k2", "k3", "k4"]

    def test_hit_refreshes_recency(self, temp_data_dir):
        for i in range(3):
            save_cached(temp_data_dir, f"k{i}", [float(i)], evict=False)
            os.utime(temp_data_dir / f"k{i}.json", (1000 + i, 1000 + i))

        load_cached(temp_data_dir, "k0")
        evict_oldest(temp_data_dir, max_entries=2)

        assert (temp_data_dir / "k0.json").exists()
        assert not (temp_data_dir / "k1.json").exists()

    def test_under_limit_evicts_nothing(self, temp_data_dir):
        save_cached(temp_data_dir, "only", [1.0], evict=False)
        assert evict_oldest(temp_data_dir, max_entries=10) == 0
        assert evict_oldest(temp_data_dir / "missing", max_entries=0) == 0


def ollama(handler, **kwargs):
    return OllamaEmbeddingProvider(
        endpoint="http://ollama.test",
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestOllamaProvider:
    """The HTTP adapter, without a real server."""

    def test_embeddings_route(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"embedding": [0.5, 0.5]})

        assert ollama(handler).generate("hello") == [0.5, 0.5]
        assert seen == [("/api/embeddings", {"model": "embeddinggemma", "prompt": "hello"})]

    def test_falls_back_to_embed_route(self):
        def handler(request):
            if request.url.path == "/api/embeddings":
                return httpx.Response(404, json={"error": "not found"})
            body = json.loads(request.content)
            assert body["input"] == "hello"
            return httpx.Response(200, json={"embeddings": [[1.0, 0.0]]})

        assert ollama(handler).generate("hello") == [1.0, 0.0]

    def test_falls_back_to_next_model(self):
        def handler(request):
            body = json.loads(request.content)
            if body["model"] == "missing-model":
                return httpx.Response(404, json={"error": "model not found"})
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})

        provider = ollama(handler, model="missing-model", fallback_models=["all-minilm"])
        assert provider.generate("hello") == [0.1, 0.2]

    def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"embedding": [1.0]})

        assert ollama(handler, retries=2).generate("x") == [1.0]
        assert len(calls) == 3

    def test_gives_up_after_retries(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CollaboratorError):
            ollama(handler, retries=1).generate("x")

    def test_empty_embedding_is_an_error(self):
        def handler(request):
            return httpx.Response(200, json={"embedding": []})

        with pytest.raises(CollaboratorError):
            ollama(handler).generate("x")

    def test_no_model_available(self):
        def handler(request):
            return httpx.Response(404)

        with pytest.raises(CollaboratorError):
            ollama(handler, fallback_models=["other"]).generate("x")


class FailingProvider(EmbeddingProvider):
    name = "failing"

    def generate(self, text):
        raise CollaboratorError("service down")


class TestCachedEmbedder:
    """Provider behind the cache."""

    def test_cache_hit_skips_provider(self, temp_data_dir):
        provider = MockEmbeddingProvider()
        embedder = CachedEmbedder(provider, cache_dir=temp_data_dir, evict_in_background=False)

        first = embedder.embed_query("pool size")
        second = embedder.embed_query("pool size")

        assert first == pytest.approx(second)
        assert provider.calls == 1

    def test_vectors_are_normalised(self, temp_data_dir):
        provider = Mock(spec=EmbeddingProvider)
        provider.name = "mock"
        provider.generate.return_value = [3.0, 4.0]
        embedder = CachedEmbedder(provider, cache_dir=temp_data_dir, evict_in_background=False)

        assert embedder.embed_memory("decision-a", "text") == pytest.approx([0.6, 0.8])

    def test_failure_returns_none(self, temp_data_dir):
        embedder = CachedEmbedder(FailingProvider(), cache_dir=temp_data_dir)

        assert embedder.embed_query("anything") is None
        assert list(temp_data_dir.glob("*.json")) == []

    def test_works_without_cache_dir(self):
        embedder = CachedEmbedder(MockEmbeddingProvider())
        assert len(embedder.embed_query("hello")) == 128

    def test_mock_provider_similarity_tracks_overlap(self):
        provider = MockEmbeddingProvider()
        base = provider.generate("postgres connection pool size")
        close = provider.generate("postgres connection pool limits")
        far = provider.generate("frontend button colours")

        assert cosine_similarity(base, close) > cosine_similarity(base, far)


class TestProviderSelection:
    """Config picks the provider."""

    def test_mock(self):
        assert isinstance(get_embedding_provider({"embedding": {"provider": "mock"}}), MockEmbeddingProvider)

    def test_ollama_default(self):
        provider = get_embedding_provider({"embedding": {"model": "nomic-embed-text"}})

        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.model == "nomic-embed-text"
