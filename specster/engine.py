"""Phase-transition state machine and approval gate protocol.

The engine owns the fixed transition table, decides whether a transition
is legal and whether its approval gate is satisfied, and manages the
single pending approval request per specification. All commits go
through :class:`~specster.state.StateManager` so they happen under the
specification lock.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from .config import SpecsterConfig
from .errors import ConflictError, ExpiredError, InvalidTransitionError, NotFoundError, SpecValidationError
from .models import (
    ARTIFACT_PHASES,
    PHASE_TRANSITIONS,
    ApprovalAction,
    ApprovalDecisionDetails,
    ApprovalExpiredDetails,
    ApprovalGateResult,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalRequestedDetails,
    ApprovalStatus,
    Phase,
    SpecificationState,
    TransitionValidation,
    WorkflowEvent,
    generate_id,
    next_phase,
    utc_now,
)
from .specster_logging import log_operation, log_performance
from .state import StateChange, StateManager

logger = logging.getLogger("specster.engine")

PHASE_LABELS: Dict[Phase, str] = {
    Phase.INIT: "initialization",
    Phase.REQUIREMENTS: "requirements",
    Phase.DESIGN: "design",
    Phase.TASKS: "tasks",
    Phase.COMPLETE: "completion",
}


def _expire(state: SpecificationState, request: ApprovalRequest, now: datetime) -> WorkflowEvent:
    """Flip an overdue request to ``expired`` and drop it from the state."""
    request.status = ApprovalStatus.EXPIRED
    state.workflow.pending_approval = None
    logger.info(f"Approval request {request.id} for '{state.name}' expired")
    return WorkflowEvent.create(
        state.name,
        request.to_phase,
        "approval_expired",
        ApprovalExpiredDetails(approval_id=request.id, expires_at=request.expires_at),
        timestamp=now,
    )


class WorkflowEngine:
    """Legal phase ordering plus the approval request/response protocol."""

    def __init__(self, state_manager: StateManager, config: Optional[SpecsterConfig] = None):
        self.state_manager = state_manager
        self.config = config or state_manager.config

    # ------------------------------------------------------------------
    # Transition table
    # ------------------------------------------------------------------

    @staticmethod
    def next_phase(phase: Phase) -> Optional[Phase]:
        return next_phase(Phase(phase))

    @staticmethod
    def allowed_transitions(phase: Phase) -> List[Phase]:
        successor = PHASE_TRANSITIONS[Phase(phase)]
        return [successor] if successor else []

    def check_transition(
        self,
        state: SpecificationState,
        from_phase: Phase,
        to_phase: Phase,
    ) -> TransitionValidation:
        """Validate an edge against the table and the phase/artifact status."""
        from_phase, to_phase = Phase(from_phase), Phase(to_phase)
        allowed = self.allowed_transitions(from_phase)
        if to_phase not in allowed:
            return TransitionValidation(
                valid=False,
                from_phase=from_phase,
                to_phase=to_phase,
                reason=f"Invalid transition from '{from_phase.value}' to '{to_phase.value}'",
                missing_requirements=[
                    f"'{to_phase.value}' is not the next phase after '{from_phase.value}'"
                ],
                allowed_transitions=allowed,
            )

        missing: List[str] = []
        if state.current_phase != from_phase:
            missing.append(
                f"Specification is in the {state.current_phase.value} phase, not {from_phase.value}"
            )
        if from_phase in ARTIFACT_PHASES:
            if not state.phase_info(from_phase).is_completed:
                missing.append(f"{from_phase.value.capitalize()} phase must be completed")
            if not state.file_info(from_phase).exists:
                missing.append(f"{from_phase.value.capitalize()} file must exist")

        if missing:
            return TransitionValidation(
                valid=False,
                from_phase=from_phase,
                to_phase=to_phase,
                reason="Transition blocked",
                missing_requirements=missing,
                allowed_transitions=allowed,
            )
        return TransitionValidation(
            valid=True,
            from_phase=from_phase,
            to_phase=to_phase,
            reason=f"Transition from '{from_phase.value}' to '{to_phase.value}' is valid",
            allowed_transitions=allowed,
        )

    async def validate_transition(self, name: str, from_phase: Phase, to_phase: Phase) -> TransitionValidation:
        state = await self.state_manager.require_specification_state(name)
        return self.check_transition(state, from_phase, to_phase)

    # ------------------------------------------------------------------
    # Approval gate
    # ------------------------------------------------------------------

    def _approval_counts(self, state: SpecificationState, record: ApprovalRecord, from_phase: Phase, now: datetime) -> bool:
        if not record.is_approved:
            return False
        if from_phase in ARTIFACT_PHASES:
            written = state.file_info(from_phase).last_modified
            if written is not None and record.approved_at <= written:
                return False
        if self.config.approval_validity is not None:
            if now - record.approved_at > timedelta(seconds=self.config.approval_validity):
                return False
        return True

    def check_approval_gate(
        self,
        state: SpecificationState,
        from_phase: Phase,
        to_phase: Phase,
        now: Optional[datetime] = None,
    ) -> ApprovalGateResult:
        """Decide whether an approval satisfies the ``from → to`` transition.

        An approval only counts when it was decided after the latest write
        of the source phase's artifact; approving one revision and then
        editing it does not carry the approval over.
        """
        from_phase, to_phase = Phase(from_phase), Phase(to_phase)
        now = now or utc_now()
        if not self.config.requires_approval(to_phase):
            return ApprovalGateResult(
                valid=True,
                requires_approval=False,
                reason_code=ApprovalGateResult.NOT_REQUIRED,
                reason=f"Entering '{to_phase.value}' does not require approval",
            )

        matching = [record for record in state.workflow.approvals if record.phase == to_phase]
        for record in reversed(matching):
            if self._approval_counts(state, record, from_phase, now):
                return ApprovalGateResult(
                    valid=True,
                    requires_approval=True,
                    reason_code=ApprovalGateResult.APPROVED,
                    reason=f"Approved by {record.approved_by}",
                    approval_id=record.id,
                )

        pending = state.workflow.pending_approval
        if pending is not None and pending.to_phase == to_phase and not pending.is_expired(now):
            return ApprovalGateResult(
                valid=False,
                requires_approval=True,
                reason_code=ApprovalGateResult.PENDING,
                reason="Approval is pending",
                approval_id=pending.id,
            )

        if any(record.is_approved for record in matching):
            return ApprovalGateResult(
                valid=False,
                requires_approval=True,
                reason_code=ApprovalGateResult.STALE,
                reason=(
                    f"The {from_phase.value} document changed after it was approved; "
                    "request approval again"
                ),
            )
        return ApprovalGateResult(
            valid=False,
            requires_approval=True,
            reason_code=ApprovalGateResult.REQUIRED,
            reason="Phase transition requires approval",
        )

    async def validate_phase_transition_approval(
        self,
        name: str,
        from_phase: Phase,
        to_phase: Phase,
    ) -> ApprovalGateResult:
        state = await self.state_manager.require_specification_state(name)
        return self.check_approval_gate(state, from_phase, to_phase)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _ensure_can_transition(self, state: SpecificationState, target: Phase) -> None:
        current = state.current_phase
        validation = self.check_transition(state, current, target)
        if not validation.valid:
            raise InvalidTransitionError(
                f"Cannot transition '{state.name}' from {current.value} to {target.value}: "
                + "; ".join(validation.missing_requirements),
                spec_name=state.name,
                current_phase=current.value,
                target_phase=target.value,
                missing_requirements=validation.missing_requirements,
                reason_code="precondition_unmet" if target in validation.allowed_transitions else "illegal_edge",
            )
        gate = self.check_approval_gate(state, current, target)
        if not gate.valid:
            guidance = (
                f"Approval {gate.approval_id} is pending"
                if gate.reason_code == ApprovalGateResult.PENDING
                else f"Approval for the {target.value} phase is required"
            )
            raise InvalidTransitionError(
                f"Cannot transition '{state.name}' to {target.value}: {gate.reason}",
                spec_name=state.name,
                current_phase=current.value,
                target_phase=target.value,
                missing_requirements=[guidance],
                reason_code=gate.reason_code,
            )

    @log_performance("engine_transition_phase")
    async def transition_phase(
        self,
        name: str,
        target: Phase,
        approved_by: Optional[str] = None,
    ) -> SpecificationState:
        """Advance ``name`` to ``target`` if the edge and its gate allow it.

        Validation runs inside the state lock, so two concurrent calls
        starting from the same phase cannot both succeed.
        """
        target = Phase(target)

        def precondition(state: SpecificationState) -> Optional[str]:
            self._ensure_can_transition(state, target)
            gate = self.check_approval_gate(state, state.current_phase, target)
            for record in state.workflow.approvals:
                if record.id == gate.approval_id:
                    return record.approved_by
            return None

        return await self.state_manager.transition_phase(
            name,
            target,
            approved_by=approved_by,
            precondition=precondition,
        )

    # ------------------------------------------------------------------
    # Approval protocol
    # ------------------------------------------------------------------

    @log_performance("request_approval")
    async def request_approval(
        self,
        name: str,
        from_phase: Phase,
        to_phase: Phase,
        content: str,
        requested_by: str,
    ) -> ApprovalRequest:
        """Open the specification's single pending approval request."""
        from_phase, to_phase = Phase(from_phase), Phase(to_phase)
        if to_phase not in self.allowed_transitions(from_phase):
            raise InvalidTransitionError(
                f"Cannot request approval for invalid transition '{from_phase.value}' -> '{to_phase.value}'",
                spec_name=name,
                current_phase=from_phase.value,
                target_phase=to_phase.value,
                missing_requirements=[f"'{to_phase.value}' is not the next phase after '{from_phase.value}'"],
                reason_code="illegal_edge",
            )
        if not requested_by:
            raise SpecValidationError("requested_by is required", spec_name=name)

        def apply(state: SpecificationState) -> StateChange:
            now = utc_now()
            if state.current_phase != from_phase:
                raise InvalidTransitionError(
                    f"Specification '{name}' is in the {state.current_phase.value} phase, "
                    f"not {from_phase.value}",
                    spec_name=name,
                    current_phase=state.current_phase.value,
                    target_phase=to_phase.value,
                    missing_requirements=[f"Specification must be in the {from_phase.value} phase"],
                    reason_code="wrong_phase",
                )
            events: List[WorkflowEvent] = []
            pending = state.workflow.pending_approval
            if pending is not None:
                if not pending.is_expired(now):
                    raise ConflictError(
                        f"Approval {pending.id} for '{name}' ({pending.from_phase.value} -> "
                        f"{pending.to_phase.value}) is already pending",
                        spec_name=name,
                    )
                events.append(_expire(state, pending, now))

            expires_at = None
            if self.config.approval_timeout is not None:
                expires_at = now + timedelta(seconds=self.config.approval_timeout)
            request = ApprovalRequest(
                id=generate_id(name, to_phase.value),
                spec_name=name,
                from_phase=from_phase,
                to_phase=to_phase,
                requested_by=requested_by,
                requested_at=now,
                content=content,
                status=ApprovalStatus.PENDING,
                expires_at=expires_at,
            )
            state.workflow.pending_approval = request
            events.append(
                WorkflowEvent.create(
                    name,
                    to_phase,
                    "approval_requested",
                    ApprovalRequestedDetails(
                        approval_id=request.id,
                        from_phase=from_phase,
                        to_phase=to_phase,
                        requested_by=requested_by,
                        expires_at=expires_at,
                    ),
                    user_id=requested_by,
                    timestamp=now,
                )
            )
            return StateChange(result=request, events=events)

        with log_operation("request_approval", spec_name=name, from_phase=from_phase.value, to_phase=to_phase.value):
            request = await self.state_manager.mutate(name, apply)
        logger.info(f"Requested approval {request.id} for '{name}': {from_phase.value} -> {to_phase.value}")
        return request

    @log_performance("provide_approval")
    async def provide_approval(
        self,
        name: str,
        approval_id: str,
        approved_by: str,
        approved: bool,
        comments: Optional[str] = None,
    ) -> ApprovalRecord:
        """Resolve the pending request identified by ``approval_id``."""
        if not approved_by:
            raise SpecValidationError("approved_by is required", spec_name=name)

        def apply(state: SpecificationState) -> StateChange:
            now = utc_now()
            pending = state.workflow.pending_approval
            if pending is None or pending.id != approval_id:
                raise NotFoundError(f"No pending approval found for {approval_id}", spec_name=name)
            if pending.is_expired(now):
                event = _expire(state, pending, now)
                return StateChange(
                    events=[event],
                    error=ExpiredError(f"Approval request {approval_id} has expired", spec_name=name),
                )

            action = ApprovalAction.APPROVED if approved else ApprovalAction.REJECTED
            pending.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
            record = ApprovalRecord(
                id=generate_id(name, pending.to_phase.value, "approval"),
                spec_name=name,
                phase=pending.to_phase,
                action=action,
                approved_by=approved_by,
                approved_at=now,
                comments=comments,
                content=pending.content,
            )
            state.workflow.approvals.append(record)
            state.workflow.pending_approval = None
            event = WorkflowEvent.create(
                name,
                pending.to_phase,
                "approval_approved" if approved else "approval_rejected",
                ApprovalDecisionDetails(
                    approval_id=approval_id,
                    approved_by=approved_by,
                    approved=approved,
                    comments=comments,
                ),
                user_id=approved_by,
                timestamp=now,
            )
            return StateChange(result=record, events=[event])

        with log_operation("provide_approval", spec_name=name, approval_id=approval_id, approved=approved):
            record = await self.state_manager.mutate(name, apply)
        logger.info(f"Approval {approval_id} for '{name}' {record.action.value} by {approved_by}")
        return record

    async def get_pending_approval(self, name: str) -> Optional[ApprovalRequest]:
        """Return the pending request, expiring it first if it is overdue."""
        state = await self.state_manager.require_specification_state(name)
        pending = state.workflow.pending_approval
        if pending is None:
            return None
        if not pending.is_expired():
            return pending

        def apply(current: SpecificationState) -> StateChange:
            now = utc_now()
            request = current.workflow.pending_approval
            if request is None:
                return StateChange(commit=False)
            if not request.is_expired(now):
                return StateChange(result=request, commit=False)
            return StateChange(events=[_expire(current, request, now)])

        return await self.state_manager.mutate(name, apply)

    async def get_approval_history(self, name: str) -> List[ApprovalRecord]:
        state = await self.state_manager.require_specification_state(name)
        return list(state.workflow.approvals)

    def check_approval_requirement(self, phase: Phase) -> Tuple[bool, Optional[str]]:
        """Whether an explicit review prompt is due for ``phase``'s document."""
        if not self.config.require_explicit_approval:
            return False, None
        label = PHASE_LABELS.get(Phase(phase), Phase(phase).value)
        return True, (
            f"Please review the {label} document and provide explicit approval. "
            f"Does the {label} look good? If so, we can move on to the next phase."
        )

    # ------------------------------------------------------------------
    # Guidance
    # ------------------------------------------------------------------

    def next_action(
        self,
        state: SpecificationState,
        pending: Optional[ApprovalRequest],
    ) -> Tuple[str, Optional[str]]:
        """Suggest the next step and optional approval guidance."""
        if pending is not None:
            return (
                f"Pending approval for {pending.to_phase.value} phase",
                f"Review the {pending.from_phase.value} document and provide explicit approval "
                f"using 'provide_approval' with approval_id '{pending.id}' to proceed.",
            )
        current = state.current_phase
        if current == Phase.INIT:
            return "Enter requirements phase", None
        if current == Phase.COMPLETE:
            return "Specification is complete", None

        successor = next_phase(current)
        label = PHASE_LABELS[current]
        if not state.file_info(current).exists:
            return f"Save the {label} document", None
        if not state.phase_info(current).is_completed:
            return f"Complete the {label} phase", None
        gate = self.check_approval_gate(state, current, successor)
        if gate.valid:
            return f"Transition to {successor.value} phase", None
        return (
            f"Request approval to enter the {successor.value} phase",
            f"Before proceeding, confirm: does the {label} look good? "
            "Use 'request_approval' and then 'provide_approval'.",
        )
