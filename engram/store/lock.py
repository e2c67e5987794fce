"""
Engram Store Locks
------------------
- StoreLock: cross-process advisory file lock (portalocker) that makes one
  process the owner of a data directory.
- AsyncRWLock: in-process single-writer / multi-reader lock used to
  serialize vector index writes against concurrent queries.
"""

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

import portalocker

from engram.core.errors import StoreIOFailure

logger = logging.getLogger("Engram.StoreLock")


class StoreLock:
    """
    Manages a cross-process advisory lock on the data directory.
    Typically placed at <data_dir>/.engram.lock.
    """

    def __init__(self, lock_file_path: Path, timeout: float = 10.0):
        self.lock_file_path = Path(lock_file_path)
        self.timeout = timeout
        self._held: Optional[portalocker.Lock] = None

    @property
    def is_held(self) -> bool:
        return self._held is not None

    def hold(self) -> None:
        """Take the exclusive lock until release() is called."""
        if self._held is not None:
            return
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = portalocker.Lock(
            str(self.lock_file_path),
            mode="a",
            timeout=self.timeout,
            flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
            fail_when_locked=True,
        )
        try:
            lock.acquire()
        except portalocker.exceptions.LockException as e:
            raise StoreIOFailure(
                f"Data directory {self.lock_file_path.parent} is in use by another process"
            ) from e
        self._held = lock
        logger.debug("Holding store lock %s", self.lock_file_path)

    def release(self) -> None:
        if self._held is None:
            return
        self._held.release()
        self._held = None
        logger.debug("Released store lock %s", self.lock_file_path)

    @contextlib.contextmanager
    def acquire(self, shared: bool = False):
        """
        Acquire the lock for the duration of a block.
        'shared=True' allows concurrent readers; writers take it exclusively.
        """
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)

        flags = portalocker.LOCK_SH if shared else portalocker.LOCK_EX
        flags |= portalocker.LOCK_NB

        try:
            with portalocker.Lock(
                str(self.lock_file_path),
                mode="a",
                timeout=self.timeout,
                flags=flags,
                fail_when_locked=False,
            ) as lock:
                yield lock
        except portalocker.exceptions.LockException as e:
            logger.error("Failed to acquire lock on %s after %.1fs: %s", self.lock_file_path, self.timeout, e)
            raise StoreIOFailure(f"Data directory lock contention: {e}") from e


def get_store_lock(data_path: Path) -> StoreLock:
    """Helper to get the standard lock for a given data directory."""
    return StoreLock(Path(data_path) / ".engram.lock")


class AsyncRWLock:
    """
    Writer-preferring reader/writer lock for asyncio tasks.

    Any number of readers may hold the lock together; a writer holds it
    alone. Once a writer is waiting, new readers queue behind it.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer

    @contextlib.asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
