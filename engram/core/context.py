"""
Engram Context Assembly
-----------------------
Builds the context block handed to the language model for a new
exchange: every fact, the most recent turns, then turns related to the
new input by similarity. Pure: no I/O, no shared state.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from engram.core.types import ContextBlock, Fact, Turn

logger = logging.getLogger("Engram.Context")


def assemble_context(
    facts: Sequence[Fact],
    recent_turns: Sequence[Turn],
    matches: Sequence[Tuple[Turn, float]],
    new_input: str,
    *,
    recent_window: int,
    semantic_top_k: int,
    min_similarity: Optional[float] = None,
) -> ContextBlock:
    """
    Assemble Facts, Recent and Related sections.

    ``recent_turns`` must be chronological; only the last ``recent_window``
    are kept. ``matches`` are (turn, score) pairs from the index, best
    first. A matched turn already shown in Recent is dropped, as is any
    match scoring below ``min_similarity``. Related is cut at
    ``semantic_top_k`` and never padded.
    """
    recent: List[Turn] = list(recent_turns)[-recent_window:] if recent_window > 0 else []
    recent_ids = {turn.id for turn in recent}

    # sorted() is stable, so equal scores keep the index's tie order
    ranked = sorted(matches, key=lambda pair: -pair[1])
    related: List[Turn] = []
    seen = set(recent_ids)
    for turn, score in ranked:
        if len(related) >= semantic_top_k:
            break
        if turn.id in seen:
            continue
        if min_similarity is not None and score < min_similarity:
            continue
        seen.add(turn.id)
        related.append(turn)

    logger.debug(
        "Context assembled: %d facts, %d recent, %d related (of %d matches)",
        len(facts),
        len(recent),
        len(related),
        len(matches),
    )
    return ContextBlock(query=new_input, facts=list(facts), recent=recent, related=related)


class ContextAssembler:
    """assemble_context with the window sizes bound from configuration."""

    def __init__(self, recent_window: int = 10, semantic_top_k: int = 5, min_similarity: Optional[float] = None):
        self.recent_window = recent_window
        self.semantic_top_k = semantic_top_k
        self.min_similarity = min_similarity

    @classmethod
    def from_config(cls, config) -> "ContextAssembler":
        return cls(
            recent_window=config.recent_window,
            semantic_top_k=config.semantic_top_k,
            min_similarity=config.min_similarity,
        )

    def assemble(
        self,
        facts: Sequence[Fact],
        recent_turns: Sequence[Turn],
        matches: Sequence[Tuple[Turn, float]],
        new_input: str,
    ) -> ContextBlock:
        return assemble_context(
            facts,
            recent_turns,
            matches,
            new_input,
            recent_window=self.recent_window,
            semantic_top_k=self.semantic_top_k,
            min_similarity=self.min_similarity,
        )
