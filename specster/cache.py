"""Time-bounded cache in front of the state store."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import SpecificationState


@dataclass(slots=True)
class CacheEntry:
    state: SpecificationState
    stored_at: float
    expires_at: float


class StateCache:
    """TTL cache of specification states.

    ``get`` hands out deep copies so callers mutating a working copy never
    alter what is cached. Expired entries are evicted on access.
    """

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, name: str) -> Optional[SpecificationState]:
        entry = self._entries.get(name)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[name]
            return None
        return copy.deepcopy(entry.state)

    def put(self, name: str, state: SpecificationState) -> None:
        now = self._clock()
        self._entries[name] = CacheEntry(
            state=copy.deepcopy(state),
            stored_at=now,
            expires_at=now + self.ttl,
        )

    def invalidate(self, name: str) -> None:
        self._entries.pop(name, None)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = self._clock()
        expired = [name for name, entry in self._entries.items() if now > entry.expires_at]
        for name in expired:
            del self._entries[name]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        return len(self._entries)
