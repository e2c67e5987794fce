"""
Engram Core Types
-----------------
Pydantic models and enums for the memory engine.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Capability(str, Enum):
    """Privilege of the caller issuing a memory operation."""
    OWNER = "owner"
    REGULAR = "regular"

    @classmethod
    def from_flag(cls, is_owner: bool) -> "Capability":
        return cls.OWNER if is_owner else cls.REGULAR


class RecordKind(str, Enum):
    TURN = "turn"
    FACT = "fact"


def _new_turn_id() -> str:
    return str(uuid.uuid4())


def _new_fact_id() -> str:
    # Short ids are easier to quote back in chat when deleting a fact.
    return uuid.uuid4().hex[:8]


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


class EmbeddingVector(BaseModel):
    """A vector tagged with the dimension and provider that produced it."""
    model_config = ConfigDict(frozen=True)

    values: List[float]
    dimension: int
    provider: str

    @model_validator(mode="after")
    def _check_dimension(self) -> "EmbeddingVector":
        if len(self.values) != self.dimension:
            raise ValueError(
                f"vector has {len(self.values)} components but is tagged {self.dimension}"
            )
        return self


class Turn(BaseModel):
    """One recorded exchange. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_turn_id)
    session_id: str = "default"
    author: str = "User"
    input_text: str
    response_text: str
    created_at: float = Field(default_factory=time.time)

    vector: Optional[List[float]] = None
    embedding_dim: Optional[int] = None
    embedding_model: Optional[str] = None
    indexed: bool = False

    @property
    def text(self) -> str:
        return f"{self.author}: {self.input_text}\nAssistant: {self.response_text}"

    def format_for_context(self) -> str:
        return self.text


class Fact(BaseModel):
    """A curated statement, always included in context."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_fact_id)
    text: str
    created_by: Capability = Capability.OWNER
    created_at: float = Field(default_factory=time.time)

    vector: Optional[List[float]] = None
    embedding_dim: Optional[int] = None
    embedding_model: Optional[str] = None
    indexed: bool = False


class IndexMatch(BaseModel):
    """One (id, similarity) pair returned by the vector index."""
    model_config = ConfigDict(frozen=True)

    id: str
    score: float
    kind: RecordKind = RecordKind.TURN


class MemoryHit(BaseModel):
    """A search result joined back to its store row."""
    id: str
    kind: RecordKind
    timestamp: float
    text: str
    score: float


class ContextBlock(BaseModel):
    """Assembled context: Facts, then Recent, then Related."""
    query: str
    facts: List[Fact] = Field(default_factory=list)
    recent: List[Turn] = Field(default_factory=list)
    related: List[Turn] = Field(default_factory=list)

    def render(self) -> str:
        parts: List[str] = []
        if self.facts:
            lines = "\n".join(f"- {fact.text}" for fact in self.facts)
            parts.append(f"# Important Facts\n\n{lines}")
        if self.recent:
            lines = "\n\n".join(turn.format_for_context() for turn in self.recent)
            parts.append(f"# Recent Conversations\n\n{lines}")
        if self.related:
            lines = "\n\n".join(
                f"[{format_timestamp(turn.created_at)}] {turn.format_for_context()}"
                for turn in self.related
            )
            parts.append(f"# Related Past Conversations\n\n{lines}")
        return "\n\n".join(parts)

    def __str__(self) -> str:
        return self.render()

    @property
    def is_empty(self) -> bool:
        return not (self.facts or self.recent or self.related)
