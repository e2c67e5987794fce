# Lazy imports to avoid pulling heavy dependencies on simple type imports
from engram.core.types import Capability, ContextBlock, Fact, MemoryHit, RecordKind, Turn

__all__ = ["MemoryManager", "Capability", "ContextBlock", "Fact", "MemoryHit", "RecordKind", "Turn"]


def __getattr__(name):
    if name == "MemoryManager":
        from engram.core.memory import MemoryManager
        return MemoryManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
