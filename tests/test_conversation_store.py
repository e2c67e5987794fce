"""Tests for engram.store.conversation_store — durable turns and facts."""

from pathlib import Path

import pytest

from engram.core.errors import RecordNotFound, StoreCorruption
from engram.core.types import Capability, Fact, RecordKind, Turn
from engram.store.conversation_store import ConversationStore


def _turn(n: int, **kwargs) -> Turn:
    return Turn(input_text=f"question {n}", response_text=f"answer {n}", **kwargs)


@pytest.fixture
def store(tmp_path: Path):
    s = ConversationStore(tmp_path / "memory.db")
    yield s
    s.close()


class TestRecentTurns:
    @pytest.mark.parametrize("total,k", [(0, 3), (2, 5), (5, 5), (7, 3), (4, 0)])
    def test_returns_last_k_in_append_order(self, store, total, k):
        appended = [_turn(i) for i in range(total)]
        for turn in appended:
            store.append_turn(turn)

        recent = store.list_recent_turns(k)

        assert len(recent) == min(k, total)
        expected = [t.id for t in appended[-k:]] if k else []
        assert [t.id for t in recent] == expected

    def test_append_returns_increasing_sequence(self, store):
        seqs = [store.append_turn(_turn(i)) for i in range(3)]
        assert seqs == sorted(seqs)
        assert store.get_seq(RecordKind.TURN, store.list_recent_turns(1)[0].id) == seqs[-1]

    def test_round_trips_vector_and_tags(self, store):
        turn = _turn(1, author="alice", vector=[0.1, 0.2], embedding_dim=2, embedding_model="fake/m")
        store.append_turn(turn)

        loaded = store.get_turns([turn.id])[turn.id]

        assert loaded.author == "alice"
        assert loaded.vector == [0.1, 0.2]
        assert loaded.embedding_model == "fake/m"
        assert loaded.indexed is False
        assert loaded.text == "alice: question 1\nAssistant: answer 1"


class TestFacts:
    def test_list_is_oldest_first(self, store):
        facts = [Fact(text=f"fact {i}") for i in range(3)]
        for fact in facts:
            store.add_fact(fact)
        assert [f.id for f in store.list_facts_all()] == [f.id for f in facts]
        assert store.count_facts() == 3

    def test_delete_removes_row(self, store):
        fact = Fact(text="likes tea", created_by=Capability.OWNER)
        store.add_fact(fact)

        store.delete_fact(fact.id)

        assert store.list_facts_all() == []
        assert store.get_facts([fact.id]) == {}

    def test_delete_unknown_raises(self, store):
        with pytest.raises(RecordNotFound):
            store.delete_fact("deadbeef")

    def test_fact_ids_are_short_hex(self):
        fact = Fact(text="x")
        assert len(fact.id) == 8
        int(fact.id, 16)


class TestIndexingState:
    def test_unindexed_rows_and_marking(self, store):
        first, second = _turn(1), _turn(2)
        store.append_turn(first)
        store.append_turn(second)

        assert [t.id for t in store.list_unindexed(RecordKind.TURN)] == [first.id, second.id]
        store.mark_indexed(RecordKind.TURN, [first.id])

        assert [t.id for t in store.list_unindexed(RecordKind.TURN)] == [second.id]
        assert store.count_unindexed() == 1
        assert store.count_indexed() == 1

    def test_set_embedding_attaches_vector(self, store):
        turn = _turn(1)
        store.append_turn(turn)

        assert store.set_embedding(RecordKind.TURN, turn.id, [1.0, 0.0], 2, "fake/m")

        loaded = store.get_turns([turn.id])[turn.id]
        assert loaded.vector == [1.0, 0.0]
        assert loaded.embedding_dim == 2

    def test_iter_embedded_batches_by_model(self, store):
        for i in range(5):
            store.append_turn(_turn(i, vector=[float(i), 0.0], embedding_dim=2, embedding_model="fake/a"))
        store.append_turn(_turn(9, vector=[9.0, 0.0], embedding_dim=2, embedding_model="fake/b"))
        store.append_turn(_turn(10))

        batches = list(store.iter_embedded(RecordKind.TURN, "fake/a", batch_size=2))

        assert [len(b) for b in batches] == [2, 2, 1]
        vectors = [vec for batch in batches for _, vec, _ in batch]
        assert vectors == [[float(i), 0.0] for i in range(5)]

    def test_invalidate_embeddings(self, store):
        turn = _turn(1, vector=[1.0], embedding_dim=1, embedding_model="fake/a", indexed=True)
        fact = Fact(text="f", vector=[1.0], embedding_dim=1, embedding_model="fake/a", indexed=True)
        store.append_turn(turn)
        store.add_fact(fact)

        assert store.invalidate_embeddings() == 2

        assert store.get_turns([turn.id])[turn.id].vector is None
        assert store.get_facts([fact.id])[fact.id].indexed is False
        assert store.count_unindexed() == 2


class TestPendingRemovalsAndMeta:
    def test_pending_removal_ledger(self, store):
        store.record_pending_removal("abc", "index locked")
        store.record_pending_removal("abc", "index locked again")
        store.record_pending_removal("def", "boom")

        assert store.list_pending_removals() == ["abc", "def"]
        assert store.count_pending_removals() == 2

        store.clear_pending_removal("abc")
        assert store.list_pending_removals() == ["def"]

    def test_meta_upsert(self, store):
        assert store.get_meta("embedding_epoch") is None
        store.set_meta("embedding_epoch", "fake/a/4")
        store.set_meta("embedding_epoch", "fake/b/8")
        assert store.get_meta("embedding_epoch") == "fake/b/8"

    def test_record_ids_cover_turns_and_facts(self, store):
        turn = _turn(1)
        fact = Fact(text="f")
        store.append_turn(turn)
        store.add_fact(fact)

        assert store.record_ids() == {turn.id: RecordKind.TURN, fact.id: RecordKind.FACT}

        store.delete_fact(fact.id)
        assert store.record_ids() == {turn.id: RecordKind.TURN}

    def test_persists_across_reopen(self, tmp_path):
        path = tmp_path / "memory.db"
        first = ConversationStore(path)
        turn = _turn(1)
        first.append_turn(turn)
        first.close()

        second = ConversationStore(path)
        try:
            assert [t.id for t in second.list_recent_turns(5)] == [turn.id]
        finally:
            second.close()


class TestCorruption:
    def test_garbage_file_is_reported_as_corruption(self, tmp_path):
        path = tmp_path / "memory.db"
        path.write_bytes(b"this is not a sqlite database " * 100)

        with pytest.raises(StoreCorruption) as exc_info:
            ConversationStore(path)

        assert "engram reset" in str(exc_info.value)
