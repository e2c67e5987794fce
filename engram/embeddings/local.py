"""
Engram Local Embeddings
-----------------------
In-process embeddings with fastembed (ONNX, CPU).

The model is loaded lazily on first use and released again after an
idle period by a timer task, so a quiet assistant does not hold the
weights in memory. The next call after an unload pays the load cost
once more.
"""

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastembed import TextEmbedding

from engram.core.errors import ProviderUnavailable
from engram.embeddings.base import PASSAGE, EmbeddingProvider

logger = logging.getLogger("Engram.Embedding.Local")


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"


class LocalEmbeddingProvider(EmbeddingProvider):
    name = "local"

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        cache_dir: Optional[str] = None,
        passage_prefix: str = "",
        query_prefix: str = "",
        idle_unload_seconds: float = 300.0,
        idle_check_interval_seconds: float = 60.0,
        max_concurrency: int = 2,
        model_factory: Callable[..., Any] = TextEmbedding,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(model=model, dimensions=dimensions, max_concurrency=max_concurrency)
        self.cache_dir = cache_dir
        self.passage_prefix = passage_prefix
        self.query_prefix = query_prefix
        self.idle_unload_seconds = idle_unload_seconds
        self.idle_check_interval_seconds = idle_check_interval_seconds
        self._model_factory = model_factory
        self._clock = clock
        self._model = None
        self._model_lock = threading.Lock()
        self._last_used = clock()
        self._load_count = 0
        self._idle_task: Optional[asyncio.Task] = None
        logger.info(
            "Local embedding provider ready (model=%s, lazy loading, %.0fs idle unload)",
            model,
            idle_unload_seconds,
        )

    @property
    def state(self) -> ModelState:
        return ModelState.LOADED if self._model is not None else ModelState.UNLOADED

    @property
    def load_count(self) -> int:
        return self._load_count

    def _ensure_loaded(self):
        """Return the loaded model, loading it if needed. Caller holds _model_lock."""
        if self._model is None:
            logger.info("Loading embedding model %s...", self.model)
            t0 = time.time()
            try:
                self._model = self._model_factory(model_name=self.model, cache_dir=self.cache_dir)
            except Exception as e:
                raise ProviderUnavailable(f"Failed to load embedding model {self.model}: {e}") from e
            self._load_count += 1
            logger.info("Embedding model ready in %.2fs", time.time() - t0)
        return self._model

    def _embed_blocking(self, text: str) -> List[float]:
        with self._model_lock:
            model = self._ensure_loaded()
            self._last_used = self._clock()
        # Inference runs outside the lock; an unload only drops our reference.
        results = list(model.embed([text]))
        if not results:
            raise ProviderUnavailable(f"Embedding model {self.model} returned no vector")
        return results[0]

    async def _embed_text(self, text: str, kind: str) -> List[float]:
        prefix = self.passage_prefix if kind == PASSAGE else self.query_prefix
        try:
            return await asyncio.to_thread(self._embed_blocking, f"{prefix}{text}")
        except ProviderUnavailable:
            raise
        except Exception as e:
            raise ProviderUnavailable(f"Local embedding failed: {e}") from e

    def unload_if_idle(self) -> bool:
        """Release the model when unused for idle_unload_seconds. Returns True if unloaded."""
        if not self._model_lock.acquire(blocking=False):
            return False  # loading right now
        try:
            if self._model is None:
                return False
            idle = self._clock() - self._last_used
            if idle < self.idle_unload_seconds:
                return False
            self._model = None
            logger.info("Embedding model unloaded (idle for %.0fs)", idle)
            return True
        finally:
            self._model_lock.release()

    async def _idle_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.idle_check_interval_seconds)
            except asyncio.CancelledError:
                break
            self.unload_if_idle()

    async def start(self) -> None:
        if self._idle_task is None:
            self._idle_task = asyncio.create_task(self._idle_loop(), name="engram-embedding-idle-unload")

    async def close(self) -> None:
        if self._idle_task:
            self._idle_task.cancel()
            try:
                await self._idle_task
            except asyncio.CancelledError:
                pass
            self._idle_task = None
        with self._model_lock:
            self._model = None

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update(
            {
                "state": self.state.value,
                "load_count": self._load_count,
                "idle_seconds": round(self._clock() - self._last_used, 1),
                "idle_unload_seconds": self.idle_unload_seconds,
            }
        )
        return status
