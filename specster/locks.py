"""In-process advisory locks keyed by specification name.

The registry serializes read-modify-write sequences against the same
specification inside one process. It is not a filesystem lock: two
processes sharing a state directory are not protected from each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

from .errors import AcquireLockError

logger = logging.getLogger("specster.locks")


@dataclass(slots=True)
class LockEntry:
    name: str
    token: str
    acquired_at: float


class LockRegistry:
    """Polling advisory lock table owned by one component instance.

    An entry older than ``timeout`` is treated as abandoned and reclaimed by
    the next acquirer. This prevents a crashed holder from deadlocking the
    specification forever, at the cost of a possible two-writer window if
    the original holder is merely slow.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._locks: Dict[str, LockEntry] = {}

    def is_locked(self, name: str) -> bool:
        entry = self._locks.get(name)
        return entry is not None and not self._is_abandoned(entry)

    def _is_abandoned(self, entry: LockEntry) -> bool:
        return self._clock() - entry.acquired_at > self.timeout

    async def acquire(self, name: str, timeout: Optional[float] = None) -> str:
        """Wait for the lock on ``name`` and return the owner token."""
        wait_limit = self.timeout if timeout is None else timeout
        started = self._clock()
        while True:
            entry = self._locks.get(name)
            if entry is None or self._is_abandoned(entry):
                if entry is not None:
                    logger.warning(
                        f"Reclaiming abandoned lock for '{name}' held for "
                        f"{self._clock() - entry.acquired_at:.1f}s"
                    )
                token = uuid.uuid4().hex
                self._locks[name] = LockEntry(name=name, token=token, acquired_at=self._clock())
                return token
            if self._clock() - started >= wait_limit:
                raise AcquireLockError(
                    f"Could not acquire lock for specification '{name}' within {wait_limit:.1f}s",
                    spec_name=name,
                )
            await asyncio.sleep(self.poll_interval)

    def release(self, name: str, token: str) -> bool:
        """Release the lock if ``token`` still owns it."""
        entry = self._locks.get(name)
        if entry is None or entry.token != token:
            logger.debug(f"Lock for '{name}' no longer owned by releasing holder")
            return False
        del self._locks[name]
        return True

    @asynccontextmanager
    async def hold(self, name: str, timeout: Optional[float] = None) -> AsyncIterator[str]:
        token = await self.acquire(name, timeout=timeout)
        try:
            yield token
        finally:
            self.release(name, token)

    def clear(self) -> None:
        self._locks.clear()
