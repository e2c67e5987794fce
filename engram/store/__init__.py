# Lazy imports: VectorIndex needs qdrant_client
from engram.store.conversation_store import ConversationStore

__all__ = ["ConversationStore", "VectorIndex"]


def __getattr__(name):
    if name == "VectorIndex":
        from engram.store.vector_index import VectorIndex
        return VectorIndex
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
