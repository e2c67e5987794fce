"""
Engram: Hybrid Vector Memory for Conversational Assistants
"""

from engram.core.errors import (
    EngramError,
    MemoryOperationError,
    PermissionDenied,
    ProviderUnavailable,
    RecordNotFound,
)
from engram.core.types import Capability, ContextBlock, Fact, MemoryHit, Turn
from engram.version import __version__

__all__ = [
    "__version__",
    "MemoryManager",
    "EngramConfig",
    "Capability",
    "ContextBlock",
    "Fact",
    "MemoryHit",
    "Turn",
    "EngramError",
    "MemoryOperationError",
    "PermissionDenied",
    "ProviderUnavailable",
    "RecordNotFound",
]


def __getattr__(name):
    if name == "MemoryManager":
        from engram.core.memory import MemoryManager
        return MemoryManager
    if name == "EngramConfig":
        from engram.core.config import EngramConfig
        return EngramConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
