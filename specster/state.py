"""Specification state lifecycle: persistence, locking and caching.

Every mutating operation follows the same sequence:

1. acquire the per-specification advisory lock,
2. read the current state (fresh cache entry, else the store),
3. apply the mutation to a working copy and bump version/last-modified,
4. overwrite the stored document and refresh the cache,
5. release the lock, also on error paths.

The store is authoritative. The cache is only refreshed after a write
succeeded, so a failed write never leaks uncommitted state to readers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .cache import StateCache
from .config import SpecsterConfig
from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    SpecValidationError,
)
from .locks import LockRegistry
from .models import (
    ARTIFACT_PHASES,
    FileDetails,
    FileInfo,
    Phase,
    PhaseProgressDetails,
    PhaseStatus,
    PhaseTransitionDetails,
    SpecificationDetails,
    SpecificationState,
    WorkflowEvent,
    utc_now,
)
from .specster_logging import (
    ObservabilityHooks,
    log_error_with_context,
    log_operation,
    log_performance,
    observability_hooks,
)
from .store import StateStore, is_valid_spec_name

logger = logging.getLogger("specster.state")


@dataclass
class StateChange:
    """What a locked mutation produced.

    ``error`` is raised to the caller only after the change is committed,
    for mutations whose side effect must persist even though the operation
    as a whole fails (approval expiry).
    """

    result: Any = None
    events: List[WorkflowEvent] = field(default_factory=list)
    error: Optional[Exception] = None
    commit: bool = True


Mutation = Callable[[SpecificationState], Optional[StateChange]]
Precondition = Callable[[SpecificationState], Optional[str]]


class StateManager:
    """Owns the ``SpecificationState`` lifecycle for one store."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[SpecsterConfig] = None,
        *,
        cache: Optional[StateCache] = None,
        locks: Optional[LockRegistry] = None,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        self.config = config or SpecsterConfig()
        self.store = store
        self.cache = cache or StateCache(ttl=self.config.cache_ttl)
        self.locks = locks or LockRegistry(
            timeout=self.config.lock_timeout,
            poll_interval=self.config.lock_poll_interval,
        )
        self.hooks = hooks or observability_hooks

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, name: str) -> Optional[SpecificationState]:
        cached = self.cache.get(name)
        if cached is not None:
            return cached
        data = await self.store.read_state(name)
        if data is None:
            return None
        try:
            state = SpecificationState.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            raise PersistenceError(f"Stored state for '{name}' is malformed: {e}", spec_name=name)
        self.cache.put(name, state)
        return state

    async def get_specification_state(self, name: str) -> Optional[SpecificationState]:
        """Return a copy of the current state, or ``None`` if unknown."""
        return await self._load(name)

    async def require_specification_state(self, name: str) -> SpecificationState:
        state = await self._load(name)
        if state is None:
            raise NotFoundError(f"Specification '{name}' not found", spec_name=name)
        return state

    async def list_specifications(self) -> List[str]:
        return await self.store.list_names()

    async def get_workflow_history(self, name: str, limit: Optional[int] = None) -> List[WorkflowEvent]:
        """Return recorded events, oldest first."""
        raw_events = await self.store.read_events(name)
        events = [WorkflowEvent.from_dict(item) for item in raw_events]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _commit(self, name: str, state: SpecificationState, events: List[WorkflowEvent]) -> None:
        await self.store.write_state(name, state.to_dict())
        self.cache.put(name, state)
        if events:
            # History is best-effort once the state is committed.
            try:
                await self._append_events(name, events)
            except PersistenceError as e:
                log_error_with_context(
                    e,
                    {"operation": "append_events", "spec_name": name, "actions": [event.action for event in events]},
                )

    async def _append_events(self, name: str, events: List[WorkflowEvent]) -> None:
        # Caller holds the lock for ``name``.
        stored = await self.store.read_events(name)
        stored.extend(event.to_dict() for event in events)
        limit = self.config.event_history_limit
        if len(stored) > limit:
            stored = stored[-limit:]
        await self.store.write_events(name, stored)
        for event in events:
            self.hooks.log_workflow_event(
                event.action,
                spec_name=name,
                phase=event.phase.value,
                event_id=event.id,
                user_id=event.user_id,
            )

    async def mutate(self, name: str, apply: Mutation) -> Any:
        """Run ``apply`` against a fresh working copy under the lock.

        ``apply`` may return ``None`` (commit, no result) or a
        :class:`StateChange`. Exceptions raised by ``apply`` abort the
        mutation without writing anything.
        """
        async with self.locks.hold(name):
            state = await self._load(name)
            if state is None:
                raise NotFoundError(f"Specification '{name}' not found", spec_name=name)
            change = apply(state) or StateChange()
            if change.commit:
                state.touch()
                await self._commit(name, state, change.events)
        if change.error is not None:
            raise change.error
        return change.result

    @log_performance("initialize_specification_state")
    async def initialize_specification_state(
        self,
        name: str,
        description: str = "",
        author: Optional[str] = None,
    ) -> SpecificationState:
        """Create a new specification in the ``init`` phase."""
        if not is_valid_spec_name(name):
            raise SpecValidationError(
                f"Invalid specification name '{name}': use letters, digits, hyphens and underscores",
                spec_name=name,
            )
        author = author or self.config.default_author
        with log_operation("initialize_specification_state", spec_name=name):
            async with self.locks.hold(name):
                if self.cache.get(name) is not None or await self.store.state_exists(name):
                    raise ConflictError(f"Specification '{name}' already exists", spec_name=name)
                state = SpecificationState.create(name, description=description, author=author)
                event = WorkflowEvent.create(
                    name,
                    Phase.INIT,
                    "specification_initialized",
                    SpecificationDetails(description=description, author=author),
                    user_id=author,
                )
                await self._commit(name, state, [event])
        logger.info(f"Initialized specification '{name}'")
        return state

    async def update_metadata(
        self,
        name: str,
        description: Optional[str] = None,
        author: Optional[str] = None,
    ) -> SpecificationState:
        """Field-level update of descriptive metadata."""

        def apply(state: SpecificationState) -> StateChange:
            if description is not None:
                state.metadata.description = description
            if author is not None:
                state.metadata.author = author
            return StateChange(result=state)

        return await self.mutate(name, apply)

    @log_performance("update_phase_state")
    async def update_phase_state(
        self,
        name: str,
        phase: Phase,
        completed: bool,
        user_id: Optional[str] = None,
    ) -> SpecificationState:
        """Mark the current artifact phase completed or back in progress."""
        phase = Phase(phase)
        if phase not in ARTIFACT_PHASES:
            raise SpecValidationError(f"Phase '{phase.value}' has no progress to update", spec_name=name)

        def apply(state: SpecificationState) -> StateChange:
            if state.current_phase != phase:
                raise InvalidTransitionError(
                    f"Cannot update progress for '{phase.value}' while the current phase is "
                    f"'{state.current_phase.value}'",
                    spec_name=name,
                    current_phase=state.current_phase.value,
                    target_phase=phase.value,
                    missing_requirements=[f"Specification must be in the {phase.value} phase"],
                    reason_code="wrong_phase",
                )
            now = utc_now()
            info = state.phase_info(phase)
            if completed:
                info.status = PhaseStatus.COMPLETED
                info.completed_at = now
            else:
                info.status = PhaseStatus.IN_PROGRESS
                info.completed_at = None
            if info.started_at is None:
                info.started_at = now
            event = WorkflowEvent.create(
                name,
                phase,
                "phase_completed" if completed else "phase_updated",
                PhaseProgressDetails(phase=phase, completed=completed),
                user_id=user_id,
                timestamp=now,
            )
            return StateChange(result=state, events=[event])

        with log_operation("update_phase_state", spec_name=name, phase=phase.value, completed=completed):
            return await self.mutate(name, apply)

    async def record_artifact(
        self,
        name: str,
        phase: Phase,
        file_info: FileInfo,
        user_id: Optional[str] = None,
    ) -> SpecificationState:
        """Store metadata for an artifact that was actually written."""
        phase = Phase(phase)
        if phase not in ARTIFACT_PHASES:
            raise SpecValidationError(f"Phase '{phase.value}' has no artifact", spec_name=name)
        if not file_info.exists or not file_info.path:
            raise SpecValidationError(
                f"Refusing to record a {phase.value} artifact that was not written",
                spec_name=name,
            )

        def apply(state: SpecificationState) -> StateChange:
            state.files[phase] = FileInfo(
                path=file_info.path,
                size=file_info.size,
                last_modified=file_info.last_modified or utc_now(),
                exists=True,
            )
            event = WorkflowEvent.create(
                name,
                phase,
                "file_saved",
                FileDetails(file_name=f"{phase.value}.md", size=file_info.size, path=file_info.path),
                user_id=user_id,
            )
            return StateChange(result=state, events=[event])

        return await self.mutate(name, apply)

    @log_performance("transition_phase")
    async def transition_phase(
        self,
        name: str,
        target: Phase,
        approved_by: Optional[str] = None,
        precondition: Optional[Precondition] = None,
    ) -> SpecificationState:
        """Commit a phase change plus its ``phase_transition`` event.

        ``precondition`` runs against the freshly read state while the lock
        is held; raising from it aborts the transition. It may return the
        approver recorded for the gate, which takes precedence over
        ``approved_by``.
        """
        target = Phase(target)

        def apply(state: SpecificationState) -> StateChange:
            gated = precondition(state) if precondition is not None else None
            approver = gated or approved_by
            now = utc_now()
            previous = state.current_phase
            if previous in ARTIFACT_PHASES:
                leaving = state.phase_info(previous)
                leaving.status = PhaseStatus.COMPLETED
                if leaving.completed_at is None:
                    leaving.completed_at = now
            if target in ARTIFACT_PHASES:
                entering = state.phase_info(target)
                entering.status = PhaseStatus.IN_PROGRESS
                entering.started_at = now
                entering.completed_at = None
                if approver:
                    entering.approved_by = approver
                    entering.approval_timestamp = now
            state.workflow.current_phase = target
            event = WorkflowEvent.create(
                name,
                target,
                "phase_transition",
                PhaseTransitionDetails(from_phase=previous, to_phase=target, approved_by=approver),
                user_id=approver,
                timestamp=now,
            )
            return StateChange(result=state, events=[event])

        with log_operation("transition_phase", spec_name=name, target=target.value):
            state = await self.mutate(name, apply)
        logger.info(f"Specification '{name}' moved to phase '{target.value}'")
        return state

    async def record_workflow_event(self, name: str, event: WorkflowEvent) -> None:
        """Append an event to the bounded history."""
        if event.spec_name != name:
            raise SpecValidationError(
                f"Event belongs to '{event.spec_name}', not '{name}'",
                spec_name=name,
            )
        async with self.locks.hold(name):
            if await self._load(name) is None:
                raise NotFoundError(f"Specification '{name}' not found", spec_name=name)
            await self._append_events(name, [event])

    async def delete_specification(self, name: str) -> bool:
        """Destructive removal of state and history."""
        async with self.locks.hold(name):
            existed = await self.store.delete_state(name)
            await self.store.delete_events(name)
            self.cache.invalidate(name)
        if existed:
            logger.info(f"Deleted specification '{name}'")
        return existed
