"""
Engram Remote Embeddings
------------------------
HTTP embedding backends: a local Ollama daemon and the Gemini API.

Both share one retry policy. Connection failures and 5xx responses are
retried with exponential backoff; authentication, quota and other 4xx
answers are final. A request that exceeds the configured timeout fails
immediately with EmbeddingTimeout.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from engram.core.errors import EmbeddingTimeout, ProviderUnavailable
from engram.embeddings.base import PASSAGE, EmbeddingProvider

logger = logging.getLogger("Engram.Embedding.Remote")


class _RetryableStatus(Exception):
    """Internal marker for a 5xx answer worth another attempt."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code


class RemoteEmbeddingProvider(EmbeddingProvider):
    """Shared HTTP plumbing for remote backends."""

    name = "remote"

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
        max_concurrency: int = 2,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(model=model, dimensions=dimensions, max_concurrency=max_concurrency)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(headers={"Accept": "application/json"})
        self._requests = 0
        self._failures = 0

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        """POST ``body`` as JSON with retries. Returns the decoded payload."""
        url = f"{self.base_url}{path}"
        attempt = 0
        while True:
            attempt += 1
            self._requests += 1
            try:
                response = await self._client.post(
                    url, json=body, headers=self._headers(), timeout=self.timeout
                )
                if response.status_code >= 500:
                    raise _RetryableStatus(response.status_code, response.text[:200])
            except httpx.TimeoutException as exc:
                self._failures += 1
                raise EmbeddingTimeout(
                    f"{self.identity} did not answer within {self.timeout:.0f}s"
                ) from exc
            except (httpx.TransportError, _RetryableStatus) as exc:
                self._failures += 1
                if attempt > self.max_retries:
                    raise ProviderUnavailable(
                        f"{self.identity} unavailable after {attempt} attempts: {exc}"
                    ) from exc
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s request failed (%s); retry %d/%d in %.2fs",
                    self.identity,
                    exc,
                    attempt,
                    self.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code in (401, 403):
                self._failures += 1
                raise ProviderUnavailable(
                    f"{self.identity} rejected credentials (HTTP {response.status_code})"
                )
            if response.status_code == 429:
                self._failures += 1
                raise ProviderUnavailable(f"{self.identity} quota exhausted (HTTP 429)")
            if response.status_code >= 400:
                self._failures += 1
                raise ProviderUnavailable(
                    f"{self.identity} returned HTTP {response.status_code}: {response.text[:200]}"
                )
            try:
                return response.json()
            except ValueError as exc:
                self._failures += 1
                raise ProviderUnavailable(f"{self.identity} returned invalid JSON") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update(
            {
                "base_url": self.base_url,
                "requests": self._requests,
                "failures": self._failures,
            }
        )
        return status


class OllamaEmbeddingProvider(RemoteEmbeddingProvider):
    name = "ollama"

    def __init__(self, model: str, dimensions: int, *, base_url: str = "http://localhost:11434", **kwargs):
        super().__init__(model=model, dimensions=dimensions, base_url=base_url, **kwargs)

    async def _embed_text(self, text: str, kind: str) -> List[float]:
        payload = await self._post("/api/embeddings", {"model": self.model, "prompt": text})
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not embedding:
            raise ProviderUnavailable(f"{self.identity} response has no embedding")
        return embedding


class GeminiEmbeddingProvider(RemoteEmbeddingProvider):
    name = "gemini"

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        **kwargs,
    ):
        if not api_key:
            raise ProviderUnavailable("Gemini embeddings require an API key (ENGRAM_GEMINI_API_KEY)")
        super().__init__(model=model, dimensions=dimensions, base_url=base_url, **kwargs)
        self._api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self._api_key}

    async def _embed_text(self, text: str, kind: str) -> List[float]:
        body = {
            "model": f"models/{self.model}",
            "content": {"parts": [{"text": text}]},
            "taskType": "RETRIEVAL_DOCUMENT" if kind == PASSAGE else "RETRIEVAL_QUERY",
            "outputDimensionality": self.dimension(),
        }
        payload = await self._post(f"/models/{self.model}:embedContent", body)
        try:
            return payload["embedding"]["values"]
        except (KeyError, TypeError) as exc:
            raise ProviderUnavailable(f"{self.identity} response has no embedding values") from exc
