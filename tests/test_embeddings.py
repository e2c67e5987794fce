"""Tests for engram.embeddings — local (fastembed) and remote (httpx) providers."""

import asyncio
import json

import httpx
import numpy as np
import pytest
from fastembed import TextEmbedding

from engram.core.config import EmbeddingConfig
from engram.core.errors import EmbeddingDimensionMismatch, EmbeddingTimeout, ProviderUnavailable
from engram.embeddings import (
    GeminiEmbeddingProvider,
    LocalEmbeddingProvider,
    ModelState,
    OllamaEmbeddingProvider,
    create_embedding_provider,
)


# ---------------------------------------------------------------------------
# Local provider
# ---------------------------------------------------------------------------


class FakeTextEmbedding:
    instances = 0

    def __init__(self, model_name, cache_dir=None, dims=4):
        FakeTextEmbedding.instances += 1
        self.model_name = model_name
        self.seen = []
        self.dims = dims

    def embed(self, texts):
        for text in texts:
            self.seen.append(text)
            yield np.full(self.dims, 0.5, dtype=np.float32)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _local(clock=None, factory=None, **kwargs):
    return LocalEmbeddingProvider(
        model="intfloat/multilingual-e5-small",
        dimensions=4,
        idle_unload_seconds=300,
        model_factory=factory or FakeTextEmbedding,
        clock=clock or FakeClock(),
        **kwargs,
    )


class TestLocalProvider:
    def test_loads_lazily_and_tags_vectors(self):
        provider = _local()
        assert provider.state == ModelState.UNLOADED
        assert provider.load_count == 0

        vector = asyncio.run(provider.embed("hello"))

        assert provider.state == ModelState.LOADED
        assert provider.load_count == 1
        assert vector.dimension == 4
        assert vector.provider == "local/intfloat/multilingual-e5-small"
        assert vector.values == [0.5, 0.5, 0.5, 0.5]

    def test_passage_and_query_prefixes(self):
        provider = _local(passage_prefix="passage: ", query_prefix="query: ")
        asyncio.run(provider.embed("a note"))
        asyncio.run(provider.embed_query("a question"))
        assert provider._model.seen == ["passage: a note", "query: a question"]

    def test_idle_unload_and_reload(self):
        clock = FakeClock()
        provider = _local(clock=clock)
        asyncio.run(provider.embed("x"))

        clock.now += 100
        assert provider.unload_if_idle() is False
        assert provider.state == ModelState.LOADED

        clock.now += 300
        assert provider.unload_if_idle() is True
        assert provider.state == ModelState.UNLOADED

        asyncio.run(provider.embed("y"))
        assert provider.state == ModelState.LOADED
        assert provider.load_count == 2

    def test_idle_timer_task_unloads(self):
        clock = FakeClock()
        provider = _local(clock=clock, idle_check_interval_seconds=0.01)

        async def _scenario():
            await provider.start()
            await provider.embed("x")
            clock.now += 301
            await asyncio.sleep(0.05)
            state = provider.state
            await provider.close()
            return state

        assert asyncio.run(_scenario()) == ModelState.UNLOADED

    def test_load_failure_is_provider_unavailable(self):
        def _broken(**kwargs):
            raise OSError("model files missing")

        provider = _local(factory=_broken)
        with pytest.raises(ProviderUnavailable, match="model files missing"):
            asyncio.run(provider.embed("x"))
        assert provider.state == ModelState.UNLOADED

    def test_wrong_dimension_is_reported(self):
        def _wide(**kwargs):
            return FakeTextEmbedding(dims=6, **kwargs)

        provider = _local(factory=_wide)
        with pytest.raises(EmbeddingDimensionMismatch) as exc_info:
            asyncio.run(provider.embed("x"))
        assert exc_info.value.expected == 4
        assert exc_info.value.actual == 6


# ---------------------------------------------------------------------------
# Remote providers
# ---------------------------------------------------------------------------


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _ollama(handler, **kwargs):
    return OllamaEmbeddingProvider(
        model="nomic-embed-text",
        dimensions=3,
        http_client=_client(handler),
        retry_backoff_seconds=0,
        **kwargs,
    )


class TestOllamaProvider:
    def test_success(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

        vector = asyncio.run(_ollama(handler).embed("hello"))

        assert vector.values == pytest.approx([0.1, 0.2, 0.3])
        assert vector.provider == "ollama/nomic-embed-text"
        assert requests[0].url.path == "/api/embeddings"
        assert json.loads(requests[0].content) == {"model": "nomic-embed-text", "prompt": "hello"}

    def test_server_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503, text="warming up")
            return httpx.Response(200, json={"embedding": [1.0, 0.0, 0.0]})

        provider = _ollama(handler, max_retries=3)
        vector = asyncio.run(provider.embed("hello"))

        assert vector.values == [1.0, 0.0, 0.0]
        assert len(attempts) == 3

    def test_connection_errors_exhaust_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        provider = _ollama(handler, max_retries=2)
        with pytest.raises(ProviderUnavailable, match="after 3 attempts"):
            asyncio.run(provider.embed("hello"))
        assert len(attempts) == 3

    def test_auth_failure_is_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(401, json={"error": "unauthorized"})

        with pytest.raises(ProviderUnavailable, match="credentials"):
            asyncio.run(_ollama(handler, max_retries=3).embed("hello"))
        assert len(attempts) == 1

    def test_quota_failure_is_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(429, json={"error": "slow down"})

        with pytest.raises(ProviderUnavailable, match="quota"):
            asyncio.run(_ollama(handler, max_retries=3).embed("hello"))
        assert len(attempts) == 1

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(EmbeddingTimeout):
            asyncio.run(_ollama(handler).embed("hello"))

    def test_dimension_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"embedding": [0.1, 0.2]})

        with pytest.raises(EmbeddingDimensionMismatch):
            asyncio.run(_ollama(handler).embed("hello"))

    def test_concurrency_is_bounded(self):
        active = {"now": 0, "peak": 0}

        async def handler(request):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return httpx.Response(200, json={"embedding": [0.0, 0.0, 1.0]})

        provider = _ollama(handler, max_concurrency=2)

        async def _scenario():
            await asyncio.gather(*(provider.embed(f"t{i}") for i in range(6)))

        asyncio.run(_scenario())
        assert active["peak"] == 2


class TestGeminiProvider:
    def test_request_shape(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"embedding": {"values": [0.0, 1.0, 0.0]}})

        provider = GeminiEmbeddingProvider(
            model="gemini-embedding-001",
            dimensions=3,
            api_key="secret",
            http_client=_client(handler),
        )
        asyncio.run(provider.embed("a passage"))
        asyncio.run(provider.embed_query("a query"))

        assert requests[0].url.path.endswith("/models/gemini-embedding-001:embedContent")
        assert requests[0].headers["x-goog-api-key"] == "secret"
        passage_body = json.loads(requests[0].content)
        query_body = json.loads(requests[1].content)
        assert passage_body["taskType"] == "RETRIEVAL_DOCUMENT"
        assert query_body["taskType"] == "RETRIEVAL_QUERY"
        assert passage_body["outputDimensionality"] == 3
        assert passage_body["content"] == {"parts": [{"text": "a passage"}]}

    def test_missing_api_key(self):
        with pytest.raises(ProviderUnavailable, match="API key"):
            GeminiEmbeddingProvider(model="gemini-embedding-001", dimensions=3, api_key=None)


class TestFactory:
    def test_local(self):
        provider = create_embedding_provider(EmbeddingConfig())
        assert isinstance(provider, LocalEmbeddingProvider)
        assert provider.epoch == "local/sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2/384"

    def test_default_local_model_is_supported_by_fastembed(self):
        cfg = EmbeddingConfig()
        supported = {
            entry["model"]: entry["dim"] for entry in TextEmbedding.list_supported_models()
        }
        assert cfg.model in supported
        assert supported[cfg.model] == cfg.dimensions

    def test_ollama(self):
        cfg = EmbeddingConfig(provider="ollama", model="nomic-embed-text", dimensions=768)
        provider = create_embedding_provider(cfg, http_client=_client(lambda r: httpx.Response(200)))
        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.base_url == "http://localhost:11434"

    def test_gemini(self):
        cfg = EmbeddingConfig(
            provider="gemini", model="gemini-embedding-001", dimensions=768, gemini_api_key="k"
        )
        provider = create_embedding_provider(cfg, http_client=_client(lambda r: httpx.Response(200)))
        assert isinstance(provider, GeminiEmbeddingProvider)
