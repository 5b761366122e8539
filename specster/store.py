"""Key-value persistence for specification state and event history.

A store maps a specification name to a serialized state document and a
separately serialized event list. It holds no business logic.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import PersistenceError

logger = logging.getLogger("specster.store")

T = TypeVar("T")

_SPEC_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def is_valid_spec_name(name: str) -> bool:
    """Names double as file-name components, so they are restricted."""
    return bool(name) and bool(_SPEC_NAME_PATTERN.match(name))


class StateStore(ABC):
    """Raw read/write/delete of state documents and event lists."""

    @abstractmethod
    async def read_state(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the serialized state, or ``None`` if absent."""

    @abstractmethod
    async def write_state(self, name: str, data: Dict[str, Any]) -> None:
        """Overwrite the serialized state."""

    @abstractmethod
    async def delete_state(self, name: str) -> bool:
        """Delete the state document; return whether it existed."""

    @abstractmethod
    async def state_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    async def read_events(self, name: str) -> List[Dict[str, Any]]:
        """Return the serialized event list (empty if absent)."""

    @abstractmethod
    async def write_events(self, name: str, events: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def delete_events(self, name: str) -> bool:
        ...

    @abstractmethod
    async def list_names(self) -> List[str]:
        """Names of all specifications with a stored state document."""


class MemoryStateStore(StateStore):
    """Dict-backed store holding deep copies of what was written."""

    def __init__(self):
        self._states: Dict[str, Dict[str, Any]] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}

    async def read_state(self, name: str) -> Optional[Dict[str, Any]]:
        data = self._states.get(name)
        return copy.deepcopy(data) if data is not None else None

    async def write_state(self, name: str, data: Dict[str, Any]) -> None:
        self._states[name] = copy.deepcopy(data)

    async def delete_state(self, name: str) -> bool:
        return self._states.pop(name, None) is not None

    async def state_exists(self, name: str) -> bool:
        return name in self._states

    async def read_events(self, name: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._events.get(name, []))

    async def write_events(self, name: str, events: List[Dict[str, Any]]) -> None:
        self._events[name] = copy.deepcopy(events)

    async def delete_events(self, name: str) -> bool:
        return self._events.pop(name, None) is not None

    async def list_names(self) -> List[str]:
        return sorted(self._states)


class FileStateStore(StateStore):
    """JSON files under a state directory.

    Layout: ``spec-<name>.json`` for state and ``history-<name>.json`` for
    events. Writes go to a temp file in the same directory and are renamed
    into place so a crash never leaves a half-written document.
    """

    STATE_PREFIX = "spec-"
    HISTORY_PREFIX = "history-"

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def state_path(self, name: str) -> Path:
        return self.directory / f"{self.STATE_PREFIX}{self._checked(name)}.json"

    def history_path(self, name: str) -> Path:
        return self.directory / f"{self.HISTORY_PREFIX}{self._checked(name)}.json"

    @staticmethod
    def _checked(name: str) -> str:
        if not is_valid_spec_name(name):
            raise PersistenceError(f"Invalid specification name for storage: '{name}'", spec_name=name)
        return name

    # ------------------------------------------------------------------
    # Blocking helpers, run in the default executor
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _read_json(self, path: Path) -> Any:
        if not path.is_file():
            return None
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt document at {path}: {e}")
        except OSError as e:
            raise PersistenceError(f"Could not read {path}: {e}")

    def _write_json(self, path: Path, data: Any) -> None:
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_path, path)
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise PersistenceError(f"Could not write {path}: {e}")

    def _delete(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Could not delete {path}: {e}")

    def _list_names(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        names = []
        for path in self.directory.glob(f"{self.STATE_PREFIX}*.json"):
            names.append(path.stem[len(self.STATE_PREFIX):])
        return sorted(names)

    # ------------------------------------------------------------------
    # StateStore interface
    # ------------------------------------------------------------------

    async def read_state(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._read_json, self.state_path(name))

    async def write_state(self, name: str, data: Dict[str, Any]) -> None:
        path = self.state_path(name)
        await self._run(self._write_json, path, data)
        logger.debug(f"State written to {path}")

    async def delete_state(self, name: str) -> bool:
        return await self._run(self._delete, self.state_path(name))

    async def state_exists(self, name: str) -> bool:
        return await self._run(self.state_path(name).is_file)

    async def read_events(self, name: str) -> List[Dict[str, Any]]:
        data = await self._run(self._read_json, self.history_path(name))
        if data is None:
            return []
        if not isinstance(data, list):
            raise PersistenceError(f"Event history for '{name}' is not a list", spec_name=name)
        return data

    async def write_events(self, name: str, events: List[Dict[str, Any]]) -> None:
        await self._run(self._write_json, self.history_path(name), events)

    async def delete_events(self, name: str) -> bool:
        return await self._run(self._delete, self.history_path(name))

    async def list_names(self) -> List[str]:
        return await self._run(self._list_names)
