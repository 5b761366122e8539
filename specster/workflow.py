"""Workflow management for Specster.

This module wires the state manager, workflow engine and artifact store
for one project root and exposes every operation as a call returning a
JSON-serializable dictionary, ready to hand back from an MCP tool.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .artifacts import ArtifactStore, ContentGenerator, skeleton_content
from .config import SpecsterConfig
from .engine import WorkflowEngine
from .errors import InvalidTransitionError, SpecsterError, SpecValidationError
from .models import (
    ARTIFACT_PHASES,
    WORKFLOW_STEPS,
    OpaqueDetails,
    Phase,
    WorkflowEvent,
    next_phase,
)
from .specster_logging import (
    log_error_with_context,
    log_performance,
    observability_hooks,
)
from .state import StateManager
from .store import FileStateStore, MemoryStateStore, StateStore

logger = logging.getLogger("specster.workflow")

RECENT_EVENT_COUNT = 5


def parse_phase(value: Phase | str, field_name: str = "phase") -> Phase:
    """Convert user input into a :class:`Phase`."""
    try:
        return Phase(str(value).strip().lower()) if not isinstance(value, Phase) else value
    except ValueError:
        allowed = ", ".join(phase.value for phase in Phase)
        raise SpecValidationError(f"Unknown {field_name} '{value}'. Expected one of: {allowed}")


def _error_response(
    error: Exception,
    operation: str,
    suggestion: str,
    next_step: Optional[str],
    **context: Any,
) -> Dict[str, Any]:
    """Translate a failure into the response shape every tool returns."""
    if isinstance(error, SpecsterError):
        logger.warning(f"{operation} refused: {error}")
        response: Dict[str, Any] = {
            "success": False,
            "error": error.message,
            **error.to_dict(),
        }
        if isinstance(error, InvalidTransitionError):
            response["missing_requirements"] = list(error.missing_requirements)
    else:
        log_error_with_context(error, {"operation": operation, **context})
        response = {
            "success": False,
            "error": f"Failed to {operation.replace('_', ' ')}: {error}",
            "code": "INTERNAL_ERROR",
            "reason": str(error),
        }
    response.update(
        {
            "suggestion": suggestion,
            "next_suggested_step": next_step,
            "message": f"Error: {response['error']}",
        }
    )
    return response


def workflow_guide(config: SpecsterConfig) -> Dict[str, Any]:
    """Describe the workflow steps in order."""
    gated = [phase.value for phase in config.approval_required] if config.enable_approval_workflow else []
    return {
        "workflow_steps": [step.to_dict() for step in WORKFLOW_STEPS],
        "phases": [phase.value for phase in Phase],
        "approval_required_for": gated,
        "total_steps": len(WORKFLOW_STEPS),
        "message": "Follow these steps in order. Phases that require approval cannot be entered without an explicit approval recorded after the latest document edit.",
    }


class WorkflowManager:
    """Manages the Specster phase workflow for one project root."""

    def __init__(
        self,
        root: Path | str,
        config: Optional[SpecsterConfig] = None,
        *,
        store: Optional[StateStore] = None,
        content_generator: Optional[ContentGenerator] = skeleton_content,
    ):
        self.root = Path(root).resolve()
        self.config = config or SpecsterConfig.from_env()
        if store is None:
            if self.config.storage_type == "memory":
                store = MemoryStateStore()
            else:
                store = FileStateStore(self.config.state_dir(self.root))
        self.state_manager = StateManager(store, self.config, hooks=observability_hooks)
        self.engine = WorkflowEngine(self.state_manager, self.config)
        self.artifacts = ArtifactStore(self.config.specs_dir(self.root))
        self.content_generator = content_generator
        logger.info(f"Workflow manager ready for {self.root} ({self.config.storage_type} storage)")

    # ------------------------------------------------------------------
    # Specification lifecycle
    # ------------------------------------------------------------------

    @log_performance("initialize_spec")
    async def initialize_spec(
        self,
        spec_name: str,
        description: str = "",
        author: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a specification in the init phase."""
        try:
            state = await self.state_manager.initialize_specification_state(
                spec_name,
                description=description,
                author=author,
            )
            return {
                "success": True,
                "spec_name": spec_name,
                "current_phase": state.current_phase.value,
                "state": state.to_dict(),
                "next_suggested_step": "transition_phase",
                "workflow_tip": f"Next: Enter the requirements phase with transition_phase(spec_name='{spec_name}', target_phase='requirements')",
                "message": f"Specification '{spec_name}' initialized",
            }
        except Exception as e:
            return _error_response(
                e,
                "initialize_spec",
                "Use a unique name made of letters, digits, hyphens and underscores",
                "list_specifications",
                spec_name=spec_name,
            )

    async def list_specifications(self) -> Dict[str, Any]:
        """List every known specification with its phase and version."""
        try:
            names = await self.state_manager.list_specifications()
            specs: List[Dict[str, Any]] = []
            for name in names:
                state = await self.state_manager.get_specification_state(name)
                if state is None:
                    continue
                specs.append(
                    {
                        "spec_name": name,
                        "description": state.metadata.description,
                        "current_phase": state.current_phase.value,
                        "version": state.metadata.version,
                        "last_modified": state.to_dict()["metadata"]["last_modified"],
                        "pending_approval": state.workflow.pending_approval is not None,
                    }
                )
            return {
                "success": True,
                "specifications": specs,
                "count": len(specs),
                "message": f"Found {len(specs)} specifications" if specs else "No specifications yet. Use initialize_spec to create one.",
            }
        except Exception as e:
            return _error_response(e, "list_specifications", "Check that the state directory is readable", None)

    async def delete_specification(self, spec_name: str, delete_files: bool = False) -> Dict[str, Any]:
        """Remove a specification's state and history, optionally its documents."""
        try:
            existed = await self.state_manager.delete_specification(spec_name)
            removed_files = self.artifacts.delete_artifacts(spec_name) if delete_files else 0
            observability_hooks.log_workflow_event(
                "specification_deleted",
                spec_name=spec_name,
                removed_files=removed_files,
            )
            return {
                "success": existed,
                "spec_name": spec_name,
                "deleted": existed,
                "removed_files": removed_files,
                "message": f"Specification '{spec_name}' deleted" if existed else f"Specification '{spec_name}' did not exist",
            }
        except Exception as e:
            return _error_response(e, "delete_specification", "Check the specification name", "list_specifications", spec_name=spec_name)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _ensure_document(self, spec_name: str, phase: Phase, description: str) -> Optional[Dict[str, Any]]:
        if self.content_generator is None or phase not in ARTIFACT_PHASES:
            return None
        if await self.artifacts.read_artifact(spec_name, phase) is not None:
            return None
        content = self.content_generator(spec_name, phase, description)
        info = await self.artifacts.write_artifact(spec_name, phase, content)
        await self.state_manager.record_artifact(spec_name, phase, info)
        return info.to_dict()

    @log_performance("transition_phase_tool")
    async def transition_phase(
        self,
        spec_name: str,
        target_phase: Phase | str,
        approved_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Advance a specification to its next phase."""
        try:
            target = parse_phase(target_phase, "target_phase")
            state = await self.engine.transition_phase(spec_name, target, approved_by=approved_by)
        except Exception as e:
            return _error_response(
                e,
                "transition_phase",
                "Check the phase requirements with validate_phase_transition and the approval gate with validate_phase_transition_approval",
                "get_spec_status",
                spec_name=spec_name,
                target_phase=str(target_phase),
            )

        # Transition is committed; document failures are reported, not raised.
        document_error = None
        try:
            document = await self._ensure_document(spec_name, target, state.metadata.description)
            if document is not None:
                state = await self.state_manager.require_specification_state(spec_name)
        except Exception as e:
            log_error_with_context(e, {"operation": "transition_phase_document", "spec_name": spec_name, "phase": target.value})
            document = None
            document_error = e.to_dict() if isinstance(e, SpecsterError) else {"code": "INTERNAL_ERROR", "reason": str(e)}

        if target == Phase.COMPLETE:
            tip = "All phases are done. Review the history with get_workflow_history."
            next_step = "get_spec_status"
        else:
            tip = (
                f"Next: Write the {target.value} document with save_specification_file, "
                f"then mark it complete with update_phase_progress"
            )
            next_step = "save_specification_file"
        response = {
            "success": True,
            "spec_name": spec_name,
            "current_phase": state.current_phase.value,
            "version": state.metadata.version,
            "document": document,
            "next_suggested_step": next_step,
            "workflow_tip": tip,
            "message": f"Specification '{spec_name}' is now in the {target.value} phase",
        }
        if document_error is not None:
            response["document_error"] = document_error
        return response

    async def update_phase_progress(
        self,
        spec_name: str,
        phase: Phase | str,
        completed: bool,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Mark the current phase complete or back in progress."""
        try:
            parsed = parse_phase(phase)
            state = await self.state_manager.update_phase_state(spec_name, parsed, completed, user_id=user_id)
            successor = next_phase(parsed)
            needs_approval = successor is not None and self.config.requires_approval(successor)
            if completed and needs_approval:
                next_step = "request_approval"
                tip = f"Next: Request approval to enter the {successor.value} phase"
            elif completed:
                next_step = "transition_phase"
                tip = f"Next: Transition to the {successor.value} phase" if successor else "Specification is complete"
            else:
                next_step = "save_specification_file"
                tip = f"Continue working on the {parsed.value} document"
            return {
                "success": True,
                "spec_name": spec_name,
                "phase": parsed.value,
                "status": state.phase_info(parsed).status.value,
                "version": state.metadata.version,
                "next_suggested_step": next_step,
                "workflow_tip": tip,
                "message": f"{parsed.value.capitalize()} phase marked {'completed' if completed else 'in progress'}",
            }
        except Exception as e:
            return _error_response(e, "update_phase_progress", "Progress can only be updated for the current phase", "get_spec_status", spec_name=spec_name)

    async def validate_phase_transition(
        self,
        spec_name: str,
        from_phase: Phase | str,
        to_phase: Phase | str,
    ) -> Dict[str, Any]:
        """Report whether a transition is legal and its preconditions hold."""
        try:
            validation = await self.engine.validate_transition(
                spec_name,
                parse_phase(from_phase, "from_phase"),
                parse_phase(to_phase, "to_phase"),
            )
            return {"success": True, "spec_name": spec_name, **validation.to_dict()}
        except Exception as e:
            return _error_response(e, "validate_phase_transition", "Check the specification name and phases", "get_spec_status", spec_name=spec_name)

    async def validate_phase_transition_approval(
        self,
        spec_name: str,
        from_phase: Phase | str,
        to_phase: Phase | str,
    ) -> Dict[str, Any]:
        """Report whether the approval gate of a transition is satisfied."""
        try:
            gate = await self.engine.validate_phase_transition_approval(
                spec_name,
                parse_phase(from_phase, "from_phase"),
                parse_phase(to_phase, "to_phase"),
            )
            return {"success": True, "spec_name": spec_name, **gate.to_dict()}
        except Exception as e:
            return _error_response(e, "validate_phase_transition_approval", "Check the specification name and phases", "get_spec_status", spec_name=spec_name)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    @log_performance("request_approval_tool")
    async def request_approval(
        self,
        spec_name: str,
        from_phase: Phase | str,
        to_phase: Phase | str,
        requested_by: str,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open an approval request, defaulting its content to the source document."""
        try:
            source = parse_phase(from_phase, "from_phase")
            target = parse_phase(to_phase, "to_phase")
            if content is None and source in ARTIFACT_PHASES:
                content = await self.artifacts.read_artifact(spec_name, source)
            request = await self.engine.request_approval(
                spec_name,
                source,
                target,
                content or "",
                requested_by,
            )
            _, prompt = self.engine.check_approval_requirement(source)
            return {
                "success": True,
                "spec_name": spec_name,
                "approval": request.to_dict(),
                "approval_id": request.id,
                "approval_prompt": prompt,
                "next_suggested_step": "provide_approval",
                "workflow_tip": f"Next: Record the reviewer's decision with provide_approval(approval_id='{request.id}')",
                "message": f"Approval requested for {source.value} -> {target.value}",
            }
        except Exception as e:
            return _error_response(
                e,
                "request_approval",
                "Only one approval can be pending per specification; resolve it with provide_approval first",
                "get_pending_approval",
                spec_name=spec_name,
            )

    @log_performance("provide_approval_tool")
    async def provide_approval(
        self,
        spec_name: str,
        approval_id: str,
        approved_by: str,
        approved: bool,
        comments: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Approve or reject the pending request."""
        try:
            record = await self.engine.provide_approval(
                spec_name,
                approval_id,
                approved_by,
                approved,
                comments=comments,
            )
            if approved:
                next_step = "transition_phase"
                tip = f"Next: Transition to the {record.phase.value} phase"
            else:
                next_step = "save_specification_file"
                tip = "Revise the document based on the feedback, then request approval again"
            return {
                "success": True,
                "spec_name": spec_name,
                "approval": record.to_dict(),
                "approved": approved,
                "next_suggested_step": next_step,
                "workflow_tip": tip,
                "message": f"Approval {approval_id} {record.action.value} by {approved_by}",
            }
        except Exception as e:
            return _error_response(
                e,
                "provide_approval",
                "Check the approval id with get_pending_approval; expired requests must be requested again",
                "get_pending_approval",
                spec_name=spec_name,
                approval_id=approval_id,
            )

    async def get_pending_approval(self, spec_name: str) -> Dict[str, Any]:
        try:
            pending = await self.engine.get_pending_approval(spec_name)
            return {
                "success": True,
                "spec_name": spec_name,
                "pending_approval": pending.to_dict() if pending else None,
                "message": f"Approval {pending.id} is pending" if pending else "No pending approval",
            }
        except Exception as e:
            return _error_response(e, "get_pending_approval", "Check the specification name", "list_specifications", spec_name=spec_name)

    def check_approval_requirement(self, phase: Phase | str) -> Dict[str, Any]:
        """Return the explicit review prompt for a phase document."""
        try:
            parsed = parse_phase(phase)
            required, message = self.engine.check_approval_requirement(parsed)
            return {
                "success": True,
                "phase": parsed.value,
                "requires_approval": required,
                "message": message,
            }
        except Exception as e:
            return _error_response(e, "check_approval_requirement", "Use one of the workflow phase names", None)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @log_performance("save_specification_file")
    async def save_specification_file(
        self,
        spec_name: str,
        phase: Phase | str,
        content: str,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write a phase document and record it on the specification."""
        try:
            parsed = parse_phase(phase)
            await self.state_manager.require_specification_state(spec_name)
            info = await self.artifacts.write_artifact(spec_name, parsed, content)
            state = await self.state_manager.record_artifact(spec_name, parsed, info, user_id=user_id)
            return {
                "success": True,
                "spec_name": spec_name,
                "phase": parsed.value,
                "file": info.to_dict(),
                "version": state.metadata.version,
                "next_suggested_step": "update_phase_progress",
                "workflow_tip": f"Next: Mark the {parsed.value} phase complete with update_phase_progress once the document is final",
                "message": f"Saved {parsed.value} document ({info.size} bytes)",
            }
        except Exception as e:
            return _error_response(e, "save_specification_file", "Initialize the specification first and use an artifact phase", "initialize_spec", spec_name=spec_name)

    async def load_specification_file(self, spec_name: str, phase: Phase | str) -> Dict[str, Any]:
        try:
            parsed = parse_phase(phase)
            content = await self.artifacts.read_artifact(spec_name, parsed)
            return {
                "success": True,
                "spec_name": spec_name,
                "phase": parsed.value,
                "content": content,
                "exists": content is not None,
                "message": f"Loaded {parsed.value} document" if content is not None else f"No {parsed.value} document saved yet",
            }
        except Exception as e:
            return _error_response(e, "load_specification_file", "Use an artifact phase: requirements, design or tasks", None, spec_name=spec_name)

    # ------------------------------------------------------------------
    # Status and history
    # ------------------------------------------------------------------

    async def get_spec_status(self, spec_name: str) -> Dict[str, Any]:
        """Current phase, pending approval, recent events and next action."""
        try:
            pending = await self.engine.get_pending_approval(spec_name)
            state = await self.state_manager.require_specification_state(spec_name)
            events = await self.state_manager.get_workflow_history(spec_name, limit=RECENT_EVENT_COUNT)
            next_action, guidance = self.engine.next_action(state, pending)
            return {
                "success": True,
                "spec_name": spec_name,
                "current_phase": state.current_phase.value,
                "state": state.to_dict(),
                "pending_approval": pending.to_dict() if pending else None,
                "recent_events": [event.to_dict() for event in events],
                "next_action": next_action,
                "approval_guidance": guidance,
                "message": f"Specification '{spec_name}' is in the {state.current_phase.value} phase",
            }
        except Exception as e:
            return _error_response(e, "get_spec_status", "Check the specification name", "list_specifications", spec_name=spec_name)

    async def get_workflow_history(self, spec_name: str, limit: Optional[int] = None) -> Dict[str, Any]:
        try:
            await self.state_manager.require_specification_state(spec_name)
            events = await self.state_manager.get_workflow_history(spec_name, limit=limit)
            return {
                "success": True,
                "spec_name": spec_name,
                "events": [event.to_dict() for event in events],
                "count": len(events),
            }
        except Exception as e:
            return _error_response(e, "get_workflow_history", "Check the specification name", "list_specifications", spec_name=spec_name)

    async def record_workflow_event(
        self,
        spec_name: str,
        action: str,
        phase: Optional[Phase | str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a caller-defined event to the specification history."""
        try:
            if not action or not action.strip():
                raise SpecValidationError("Event action cannot be empty", spec_name=spec_name)
            if phase is None:
                state = await self.state_manager.require_specification_state(spec_name)
                parsed = state.current_phase
            else:
                parsed = parse_phase(phase)
            event = WorkflowEvent.create(
                spec_name,
                parsed,
                action.strip(),
                OpaqueDetails(data=dict(details)) if details else None,
                user_id=user_id,
            )
            await self.state_manager.record_workflow_event(spec_name, event)
            return {
                "success": True,
                "spec_name": spec_name,
                "event": event.to_dict(),
                "message": f"Recorded event '{event.action}'",
            }
        except Exception as e:
            return _error_response(e, "record_workflow_event", "Check the specification name and event action", "list_specifications", spec_name=spec_name)

    def get_workflow_guide(self) -> Dict[str, Any]:
        return workflow_guide(self.config)
