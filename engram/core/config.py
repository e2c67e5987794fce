"""
Engram Configuration
--------------------
Centralized configuration for the memory engine.
Loads from environment variables and YAML config files.
"""

import os
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field

from engram.platform import get_cache_dir, get_data_dir

logger = logging.getLogger("Engram.Config")

DEFAULT_DATA_DIR = str(get_data_dir())
DEFAULT_CACHE_DIR = str(get_cache_dir())
DEFAULT_LOCAL_MODEL = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
DEFAULT_LOCAL_DIMS = 384
DEFAULT_OLLAMA_MODEL = "nomic-embed-text"
DEFAULT_GEMINI_MODEL = "gemini-embedding-001"
DEFAULT_REMOTE_DIMS = 768
SUPPORTED_PROVIDERS = ("local", "ollama", "gemini")


def _parse_optional_float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw)
        if not 0.0 <= value <= 1.0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected a float in [0, 1]. Ignoring.",
            name,
            raw,
        )
        return None


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes", "on")


def _normalize_provider(provider: Optional[str]) -> str:
    candidate = (provider or "").strip().lower()
    if candidate in SUPPORTED_PROVIDERS:
        return candidate
    if candidate:
        logger.warning(
            "Unsupported embedding provider '%s'; expected one of %s. Falling back to 'local'.",
            candidate,
            SUPPORTED_PROVIDERS,
        )
    return "local"


def _default_model_for(provider: str) -> str:
    if provider == "ollama":
        return DEFAULT_OLLAMA_MODEL
    if provider == "gemini":
        return DEFAULT_GEMINI_MODEL
    return DEFAULT_LOCAL_MODEL


def _default_dims_for(provider: str) -> int:
    return DEFAULT_LOCAL_DIMS if provider == "local" else DEFAULT_REMOTE_DIMS


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    provider: Literal["local", "ollama", "gemini"] = "local"
    model: str = DEFAULT_LOCAL_MODEL
    dimensions: int = DEFAULT_LOCAL_DIMS
    max_concurrency: int = 2

    # Local (fastembed)
    cache_dir: str = DEFAULT_CACHE_DIR
    # e5-family models expect "passage: " and "query: "
    passage_prefix: str = ""
    query_prefix: str = ""
    idle_unload_seconds: float = 300.0
    idle_check_interval_seconds: float = 60.0

    # Remote
    ollama_url: str = "http://localhost:11434"
    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_backoff_seconds: float = 0.5


class StoreConfig(BaseModel):
    """SQLite conversation store configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "memory.db")


class IndexConfig(BaseModel):
    """Qdrant vector index configuration."""
    path: str = os.path.join(DEFAULT_DATA_DIR, "index")
    collection: str = "engram_memories"
    reduced_precision: bool = True
    # Extra candidates fetched per query so equal-score ties can be ordered
    overfetch: int = 8

    @property
    def layout(self) -> str:
        return "int8" if self.reduced_precision else "f32"


class ContextConfig(BaseModel):
    """Context assembly configuration."""
    recent_window: int = 10
    semantic_top_k: int = 5
    min_similarity: Optional[float] = None
    search_max_limit: int = 20


class ReconcileConfig(BaseModel):
    """Background reconciliation of unindexed rows."""
    enabled: bool = True
    interval_seconds: float = 300.0
    batch_size: int = 100


class EngramConfig(BaseModel):
    """Root configuration for the memory engine."""
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    data_dir: str = DEFAULT_DATA_DIR
    log_level: str = "info"

    @classmethod
    def for_data_dir(cls, data_dir: str, **overrides) -> "EngramConfig":
        """Build a config whose store and index live under ``data_dir``."""
        return cls(
            data_dir=str(data_dir),
            store=StoreConfig(path=os.path.join(str(data_dir), "memory.db")),
            index=IndexConfig(path=os.path.join(str(data_dir), "index")),
            **overrides,
        )

    @classmethod
    def from_env(cls) -> "EngramConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - ENGRAM_DATA_DIR: Base data directory
        - ENGRAM_EMBEDDING_PROVIDER: local | ollama | gemini
        - ENGRAM_EMBEDDING_MODEL / ENGRAM_EMBEDDING_DIMS: Model identity
        - ENGRAM_EMBEDDING_CONCURRENCY: Max in-flight embed calls
        - ENGRAM_IDLE_UNLOAD_SECONDS: Local model idle-unload delay
        - ENGRAM_PASSAGE_PREFIX / ENGRAM_QUERY_PREFIX: Local model text prefixes
        - ENGRAM_OLLAMA_URL / ENGRAM_GEMINI_API_KEY: Remote backends
        - ENGRAM_REDUCED_PRECISION: INT8 index storage
        - ENGRAM_RECENT_WINDOW / ENGRAM_SEMANTIC_TOP_K / ENGRAM_MIN_SIMILARITY
        - ENGRAM_RECONCILE_ENABLED / ENGRAM_RECONCILE_INTERVAL
        - ENGRAM_LOG_LEVEL
        """
        data_dir = os.environ.get("ENGRAM_DATA_DIR", DEFAULT_DATA_DIR)
        provider = _normalize_provider(os.environ.get("ENGRAM_EMBEDDING_PROVIDER"))
        model = os.environ.get("ENGRAM_EMBEDDING_MODEL", _default_model_for(provider))
        dims = int(os.environ.get("ENGRAM_EMBEDDING_DIMS", str(_default_dims_for(provider))))

        return cls(
            data_dir=data_dir,
            embedding=EmbeddingConfig(
                provider=provider,
                model=model,
                dimensions=dims,
                max_concurrency=int(os.environ.get("ENGRAM_EMBEDDING_CONCURRENCY", "2")),
                cache_dir=os.environ.get("ENGRAM_CACHE_DIR", DEFAULT_CACHE_DIR),
                passage_prefix=os.environ.get("ENGRAM_PASSAGE_PREFIX", ""),
                query_prefix=os.environ.get("ENGRAM_QUERY_PREFIX", ""),
                idle_unload_seconds=float(
                    os.environ.get("ENGRAM_IDLE_UNLOAD_SECONDS", "300")
                ),
                ollama_url=os.environ.get("ENGRAM_OLLAMA_URL", "http://localhost:11434"),
                gemini_api_key=os.environ.get("ENGRAM_GEMINI_API_KEY"),
                request_timeout_seconds=float(
                    os.environ.get("ENGRAM_EMBEDDING_TIMEOUT", "30")
                ),
                max_retries=int(os.environ.get("ENGRAM_EMBEDDING_RETRIES", "3")),
            ),
            store=StoreConfig(
                path=os.path.join(data_dir, "memory.db"),
            ),
            index=IndexConfig(
                path=os.path.join(data_dir, "index"),
                reduced_precision=_env_flag("ENGRAM_REDUCED_PRECISION", "true"),
            ),
            context=ContextConfig(
                recent_window=int(os.environ.get("ENGRAM_RECENT_WINDOW", "10")),
                semantic_top_k=int(os.environ.get("ENGRAM_SEMANTIC_TOP_K", "5")),
                min_similarity=_parse_optional_float_env("ENGRAM_MIN_SIMILARITY"),
            ),
            reconcile=ReconcileConfig(
                enabled=_env_flag("ENGRAM_RECONCILE_ENABLED", "true"),
                interval_seconds=float(os.environ.get("ENGRAM_RECONCILE_INTERVAL", "300")),
            ),
            log_level=os.environ.get("ENGRAM_LOG_LEVEL", "info"),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "EngramConfig":
        """Load configuration from a YAML file, falling back to the environment."""
        import yaml

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s, using environment", path)
            return cls.from_env()
        data_dir = data.get("data_dir")
        if data_dir:
            # Store and index follow data_dir unless placed explicitly
            data.setdefault("store", {}).setdefault("path", os.path.join(data_dir, "memory.db"))
            data.setdefault("index", {}).setdefault("path", os.path.join(data_dir, "index"))
        return cls(**data)

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)
        Path(self.store.path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.index.path).mkdir(parents=True, exist_ok=True)
        logger.info("Data directory: %s", self.data_dir)

    @property
    def lock_path(self) -> Path:
        return Path(self.data_dir) / ".engram.lock"
