"""Runtime configuration for Specster.

Defaults can be overridden through ``SPECSTER_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .models import DEFAULT_APPROVAL_REQUIRED, Phase

STORAGE_TYPES = ("file", "memory")


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got '{raw}'.")
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got '{raw}'.")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got '{raw}'.")


@dataclass(slots=True)
class SpecsterConfig:
    """Settings shared by the state manager, workflow engine and server."""

    base_dir_name: str = ".specster"
    storage_type: str = "file"
    cache_ttl: float = 300.0
    lock_timeout: float = 30.0
    lock_poll_interval: float = 0.1
    approval_timeout: Optional[float] = None
    approval_validity: Optional[float] = None
    approval_required: Tuple[Phase, ...] = field(default=DEFAULT_APPROVAL_REQUIRED)
    enable_approval_workflow: bool = True
    require_explicit_approval: bool = True
    default_author: str = "specster"
    event_history_limit: int = 100
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.storage_type not in STORAGE_TYPES:
            raise ValueError(f"storage_type must be one of {STORAGE_TYPES}, got '{self.storage_type}'")
        if self.event_history_limit < 1:
            raise ValueError("event_history_limit must be at least 1")
        if self.lock_poll_interval <= 0 or self.lock_timeout <= 0:
            raise ValueError("lock_timeout and lock_poll_interval must be positive")
        self.approval_required = tuple(Phase(phase) for phase in self.approval_required)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SpecsterConfig":
        """Build a configuration from ``SPECSTER_*`` environment variables."""
        env = os.environ if env is None else env
        limit_raw = env.get("SPECSTER_EVENT_HISTORY_LIMIT")
        try:
            limit = int(limit_raw) if limit_raw else 100
        except ValueError:
            raise ValueError(
                f"Environment variable SPECSTER_EVENT_HISTORY_LIMIT must be an integer, got '{limit_raw}'."
            )
        log_file = env.get("SPECSTER_LOG_FILE")
        return cls(
            base_dir_name=env.get("SPECSTER_BASE_DIR") or ".specster",
            storage_type=(env.get("SPECSTER_STORAGE_TYPE") or "file").lower(),
            cache_ttl=_env_float(env, "SPECSTER_CACHE_TTL", 300.0),
            lock_timeout=_env_float(env, "SPECSTER_LOCK_TIMEOUT", 30.0),
            approval_timeout=_env_float(env, "SPECSTER_APPROVAL_TIMEOUT", None),
            approval_validity=_env_float(env, "SPECSTER_APPROVAL_VALIDITY", None),
            enable_approval_workflow=_env_bool(env, "SPECSTER_ENABLE_APPROVALS", True),
            require_explicit_approval=_env_bool(env, "SPECSTER_REQUIRE_EXPLICIT_APPROVAL", True),
            default_author=env.get("SPECSTER_DEFAULT_AUTHOR") or "specster",
            event_history_limit=limit,
            log_level=(env.get("SPECSTER_LOG_LEVEL") or "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
        )

    def base_dir(self, root: Path) -> Path:
        return root / self.base_dir_name

    def state_dir(self, root: Path) -> Path:
        return self.base_dir(root) / "state"

    def specs_dir(self, root: Path) -> Path:
        return self.base_dir(root) / "specs"

    def requires_approval(self, phase: Phase) -> bool:
        return self.enable_approval_workflow and phase in self.approval_required
