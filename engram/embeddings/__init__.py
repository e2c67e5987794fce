"""Embedding backends and the factory that picks one from configuration."""

import logging
from typing import Optional

import httpx

from engram.core.config import EmbeddingConfig
from engram.embeddings.base import PASSAGE, QUERY, EmbeddingProvider
from engram.embeddings.local import LocalEmbeddingProvider, ModelState
from engram.embeddings.remote import (
    GeminiEmbeddingProvider,
    OllamaEmbeddingProvider,
    RemoteEmbeddingProvider,
)

logger = logging.getLogger("Engram.Embedding")

__all__ = [
    "PASSAGE",
    "QUERY",
    "EmbeddingProvider",
    "GeminiEmbeddingProvider",
    "LocalEmbeddingProvider",
    "ModelState",
    "OllamaEmbeddingProvider",
    "RemoteEmbeddingProvider",
    "create_embedding_provider",
]


def create_embedding_provider(
    config: EmbeddingConfig, http_client: Optional[httpx.AsyncClient] = None
) -> EmbeddingProvider:
    """Build the configured backend. This is the only place that branches on provider type."""
    logger.info(
        "Embedding provider: %s (model=%s, dims=%d)",
        config.provider,
        config.model,
        config.dimensions,
    )
    if config.provider == "local":
        return LocalEmbeddingProvider(
            model=config.model,
            dimensions=config.dimensions,
            cache_dir=config.cache_dir,
            passage_prefix=config.passage_prefix,
            query_prefix=config.query_prefix,
            idle_unload_seconds=config.idle_unload_seconds,
            idle_check_interval_seconds=config.idle_check_interval_seconds,
            max_concurrency=config.max_concurrency,
        )

    remote_kwargs = dict(
        timeout=config.request_timeout_seconds,
        max_retries=config.max_retries,
        retry_backoff_seconds=config.retry_backoff_seconds,
        max_concurrency=config.max_concurrency,
        http_client=http_client,
    )
    if config.provider == "ollama":
        return OllamaEmbeddingProvider(
            model=config.model,
            dimensions=config.dimensions,
            base_url=config.ollama_url,
            **remote_kwargs,
        )
    if config.provider == "gemini":
        return GeminiEmbeddingProvider(
            model=config.model,
            dimensions=config.dimensions,
            api_key=config.gemini_api_key,
            base_url=config.gemini_base_url,
            **remote_kwargs,
        )
    raise ValueError(f"Unsupported embedding provider: {config.provider}")
