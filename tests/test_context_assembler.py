"""Tests for engram.core.context — Facts / Recent / Related assembly."""

from engram.core.context import ContextAssembler, assemble_context
from engram.core.types import ContextBlock, Fact, Turn


def _turns(n: int):
    return [
        Turn(input_text=f"T{i}", response_text=f"reply {i}", created_at=1_700_000_000.0 + i)
        for i in range(1, n + 1)
    ]


def test_sections_in_fixed_order_with_window_and_top_k():
    turns = _turns(7)
    facts = [Fact(text=f"F{i}") for i in range(1, 4)]
    t = {turn.input_text: turn for turn in turns}
    matches = [(t["T1"], 0.95), (t["T5"], 0.9), (t["T2"], 0.8), (t["T4"], 0.7)]

    block = assemble_context(facts, turns, matches, "hello", recent_window=5, semantic_top_k=2)

    assert [f.text for f in block.facts] == ["F1", "F2", "F3"]
    assert [x.input_text for x in block.recent] == ["T3", "T4", "T5", "T6", "T7"]
    assert [x.input_text for x in block.related] == ["T1", "T2"]


def test_turn_in_recent_and_matches_appears_once_in_recent():
    turns = _turns(3)
    matches = [(turns[2], 0.99), (turns[0], 0.5)]

    block = assemble_context([], turns, matches, "q", recent_window=2, semantic_top_k=5)

    ids = [x.id for x in block.recent + block.related]
    assert ids.count(turns[2].id) == 1
    assert turns[2] in block.recent
    assert [x.id for x in block.related] == [turns[0].id]


def test_related_is_never_padded():
    turns = _turns(4)
    matches = [(turns[0], 0.9)]

    block = assemble_context([], turns, matches, "q", recent_window=3, semantic_top_k=5)

    assert len(block.related) == 1


def test_min_similarity_filters_related():
    turns = _turns(5)
    matches = [(turns[0], 0.9), (turns[1], 0.2)]

    block = assemble_context(
        [], turns, matches, "q", recent_window=1, semantic_top_k=5, min_similarity=0.5
    )

    assert [x.id for x in block.related] == [turns[0].id]


def test_duplicate_matches_are_collapsed():
    turns = _turns(4)
    matches = [(turns[0], 0.9), (turns[0], 0.9), (turns[1], 0.8)]

    block = assemble_context([], turns, matches, "q", recent_window=1, semantic_top_k=2)

    assert [x.id for x in block.related] == [turns[0].id, turns[1].id]


def test_zero_window_and_zero_top_k():
    turns = _turns(3)
    block = assemble_context([], turns, [(turns[0], 1.0)], "q", recent_window=0, semantic_top_k=0)
    assert block.recent == []
    assert block.related == []
    assert block.is_empty


def test_render_omits_empty_sections():
    turns = _turns(2)
    block = ContextBlock(query="q", facts=[Fact(text="likes tea")], recent=turns[1:], related=[])

    rendered = block.render()

    assert rendered.startswith("# Important Facts\n\n- likes tea")
    assert "# Recent Conversations\n\nUser: T2\nAssistant: reply 2" in rendered
    assert "Related" not in rendered
    assert str(block) == rendered


def test_render_related_carries_timestamp():
    turns = _turns(1)
    block = ContextBlock(query="q", related=turns)
    rendered = block.render()
    assert rendered.startswith("# Related Past Conversations\n\n[")
    assert "] User: T1\nAssistant: reply 1" in rendered


def test_assembler_binds_configuration():
    turns = _turns(6)
    assembler = ContextAssembler(recent_window=2, semantic_top_k=1)

    block = assembler.assemble([], turns, [(turns[0], 0.9), (turns[1], 0.8)], "q")

    assert [x.input_text for x in block.recent] == ["T5", "T6"]
    assert [x.input_text for x in block.related] == ["T1"]
