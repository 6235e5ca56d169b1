"""
Named lock shared by every process using the same lock directory.
Serializes token mutation between independent instances of the session manager.
"""
import asyncio
import contextvars
import fcntl
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from uaaa_client.config import LOCK_DIR

logger = logging.getLogger(__name__)

# Lock paths held by the current task (and tasks it spawned while holding them)
_held: contextvars.ContextVar[frozenset[str]] = contextvars.ContextVar("uaaa_held_locks", default=frozenset())


class CrossInstanceLock:
    """
    asyncio.Lock for callers inside this process plus an exclusive flock on
    <lock_dir>/<name>.lock for other processes. flock is taken in a worker thread so
    waiting on another process never blocks the event loop.
    """

    def __init__(self, name: str = "tokens", lock_dir: str | Path | None = None):
        self.name = name
        self.path = Path(lock_dir or LOCK_DIR) / f"{name}.lock"
        self._local = asyncio.Lock()

    @property
    def held(self) -> bool:
        """True if the current task already holds this lock."""
        return str(self.path) in _held.get()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        if self.held:
            yield
            return
        async with self._local:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock_file = open(self.path, "a")
            try:
                await asyncio.to_thread(fcntl.flock, lock_file.fileno(), fcntl.LOCK_EX)
                logger.debug("Acquired lock %s", self.name)
                token = _held.set(_held.get() | {str(self.path)})
                try:
                    yield
                finally:
                    _held.reset(token)
                    try:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                    except OSError as e:
                        logger.debug("Unlock of %s failed, released on close: %s", self.name, e)
                    logger.debug("Released lock %s", self.name)
            finally:
                # Closing the descriptor also drops a flock granted after a cancelled wait
                lock_file.close()

    async def run(self, func, *args, **kwargs):
        """Await func(*args, **kwargs) while holding the lock."""
        async with self.hold():
            return await func(*args, **kwargs)
