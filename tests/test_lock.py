import pytest

from engram.core.errors import StoreIOFailure
from engram.store.lock import StoreLock, get_store_lock


def test_second_holder_is_refused(tmp_path):
    first = get_store_lock(tmp_path)
    second = StoreLock(tmp_path / ".engram.lock", timeout=0.1)

    first.hold()
    try:
        with pytest.raises(StoreIOFailure, match="in use by another process"):
            second.hold()
        assert not second.is_held
    finally:
        first.release()


def test_release_allows_next_holder(tmp_path):
    first = get_store_lock(tmp_path)
    second = get_store_lock(tmp_path)

    first.hold()
    first.release()
    second.hold()

    assert second.is_held
    assert not first.is_held
    second.release()


def test_hold_is_idempotent(tmp_path):
    lock = get_store_lock(tmp_path)
    lock.hold()
    lock.hold()
    assert lock.is_held
    lock.release()
    lock.release()
    assert not lock.is_held


def test_acquire_block_conflicts_with_holder(tmp_path):
    holder = get_store_lock(tmp_path)
    holder.hold()
    try:
        with pytest.raises(StoreIOFailure):
            with StoreLock(tmp_path / ".engram.lock", timeout=0.1).acquire():
                pass
    finally:
        holder.release()

    with StoreLock(tmp_path / ".engram.lock", timeout=0.1).acquire():
        pass
