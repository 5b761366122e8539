"""Data models for Specster workflow state.

This module contains the core data structures used throughout the Specster
system: the per-specification state aggregate, approval requests and
records, workflow events with their typed detail payloads, and the fixed
phase-transition table.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


class Phase(str, Enum):
    """Lifecycle stage of a specification."""

    INIT = "init"
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    TASKS = "tasks"
    COMPLETE = "complete"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# Each phase has exactly zero or one successor.
PHASE_TRANSITIONS: Dict[Phase, Optional[Phase]] = {
    Phase.INIT: Phase.REQUIREMENTS,
    Phase.REQUIREMENTS: Phase.DESIGN,
    Phase.DESIGN: Phase.TASKS,
    Phase.TASKS: Phase.COMPLETE,
    Phase.COMPLETE: None,
}

PHASE_ORDER: List[Phase] = [
    Phase.INIT,
    Phase.REQUIREMENTS,
    Phase.DESIGN,
    Phase.TASKS,
    Phase.COMPLETE,
]

# Phases that own a markdown artifact and a PhaseInfo record.
ARTIFACT_PHASES = (Phase.REQUIREMENTS, Phase.DESIGN, Phase.TASKS)

DEFAULT_APPROVAL_REQUIRED = (Phase.DESIGN, Phase.TASKS, Phase.COMPLETE)

INITIAL_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# Timestamp and identifier helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to sortable ISO-8601 text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601 text produced by :func:`format_timestamp`."""
    if value is None or value == "":
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_id(*parts: str) -> str:
    """Build a time-based identifier that is unique within the process."""
    prefix = "-".join(part for part in parts if part)
    suffix = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
    return f"{prefix}-{suffix}" if prefix else suffix


def bump_version(version: str) -> str:
    """Increment the patch component of a semantic version string."""
    parts = version.split(".")
    try:
        parts[-1] = str(int(parts[-1]) + 1)
    except ValueError:
        return f"{version}.1"
    return ".".join(parts)


def next_phase(phase: Phase) -> Optional[Phase]:
    """Return the table-defined successor of ``phase``."""
    return PHASE_TRANSITIONS[phase]


def _phase_or_none(value: Optional[str]) -> Optional[Phase]:
    return Phase(value) if value else None


# ---------------------------------------------------------------------------
# State aggregate
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PhaseInfo:
    """Per-phase progress."""

    status: PhaseStatus = PhaseStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "approved_by": self.approved_by,
            "approval_timestamp": format_timestamp(self.approval_timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseInfo":
        """Create from dictionary representation."""
        return cls(
            status=PhaseStatus(data.get("status", PhaseStatus.PENDING.value)),
            started_at=parse_timestamp(data.get("started_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            approved_by=data.get("approved_by"),
            approval_timestamp=parse_timestamp(data.get("approval_timestamp")),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == PhaseStatus.COMPLETED


@dataclass(slots=True)
class FileInfo:
    """Metadata for an externally stored phase artifact."""

    path: str = ""
    size: int = 0
    last_modified: Optional[datetime] = None
    exists: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "path": self.path,
            "size": self.size,
            "last_modified": format_timestamp(self.last_modified),
            "exists": self.exists,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileInfo":
        """Create from dictionary representation."""
        return cls(
            path=data.get("path", ""),
            size=int(data.get("size", 0)),
            last_modified=parse_timestamp(data.get("last_modified")),
            exists=bool(data.get("exists", False)),
        )


@dataclass(slots=True)
class ApprovalRequest:
    """An in-flight approval gate for a single phase transition."""

    id: str
    spec_name: str
    from_phase: Phase
    to_phase: Phase
    requested_by: str
    requested_at: datetime
    content: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "spec_name": self.spec_name,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "requested_by": self.requested_by,
            "requested_at": format_timestamp(self.requested_at),
            "content": self.content,
            "status": self.status.value,
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequest":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            spec_name=data["spec_name"],
            from_phase=Phase(data["from_phase"]),
            to_phase=Phase(data["to_phase"]),
            requested_by=data["requested_by"],
            requested_at=parse_timestamp(data["requested_at"]),
            content=data.get("content", ""),
            status=ApprovalStatus(data.get("status", ApprovalStatus.PENDING.value)),
            expires_at=parse_timestamp(data.get("expires_at")),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the request is past its expiry."""
        if self.expires_at is None:
            return False
        return (now or utc_now()) > self.expires_at


@dataclass(frozen=True, slots=True)
class ApprovalRecord:
    """Immutable approval decision."""

    id: str
    spec_name: str
    phase: Phase
    action: ApprovalAction
    approved_by: str
    approved_at: datetime
    comments: Optional[str] = None
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "spec_name": self.spec_name,
            "phase": self.phase.value,
            "action": self.action.value,
            "approved_by": self.approved_by,
            "approved_at": format_timestamp(self.approved_at),
            "comments": self.comments,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRecord":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            spec_name=data["spec_name"],
            phase=Phase(data["phase"]),
            action=ApprovalAction(data["action"]),
            approved_by=data["approved_by"],
            approved_at=parse_timestamp(data["approved_at"]),
            comments=data.get("comments"),
            content=data.get("content"),
        )

    @property
    def is_approved(self) -> bool:
        return self.action == ApprovalAction.APPROVED


@dataclass(slots=True)
class SpecificationMetadata:
    name: str
    description: str
    author: str
    created_at: datetime
    last_modified: datetime
    version: str = INITIAL_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "description": self.description,
            "author": self.author,
            "created_at": format_timestamp(self.created_at),
            "last_modified": format_timestamp(self.last_modified),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecificationMetadata":
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            author=data.get("author", "unknown"),
            created_at=parse_timestamp(data["created_at"]),
            last_modified=parse_timestamp(data["last_modified"]),
            version=data.get("version", INITIAL_VERSION),
        )


@dataclass(slots=True)
class WorkflowState:
    current_phase: Phase = Phase.INIT
    phases: Dict[Phase, PhaseInfo] = field(
        default_factory=lambda: {phase: PhaseInfo() for phase in ARTIFACT_PHASES}
    )
    approvals: List[ApprovalRecord] = field(default_factory=list)
    pending_approval: Optional[ApprovalRequest] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "current_phase": self.current_phase.value,
            "phases": {phase.value: info.to_dict() for phase, info in self.phases.items()},
            "approvals": [record.to_dict() for record in self.approvals],
            "pending_approval": self.pending_approval.to_dict() if self.pending_approval else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowState":
        """Create from dictionary representation."""
        raw_phases = data.get("phases", {})
        phases = {
            phase: PhaseInfo.from_dict(raw_phases.get(phase.value, {}))
            for phase in ARTIFACT_PHASES
        }
        pending = data.get("pending_approval")
        return cls(
            current_phase=Phase(data.get("current_phase", Phase.INIT.value)),
            phases=phases,
            approvals=[ApprovalRecord.from_dict(item) for item in data.get("approvals", [])],
            pending_approval=ApprovalRequest.from_dict(pending) if pending else None,
        )


@dataclass(slots=True)
class SpecificationState:
    """Root aggregate, one per specification name."""

    metadata: SpecificationMetadata
    workflow: WorkflowState = field(default_factory=WorkflowState)
    files: Dict[Phase, FileInfo] = field(
        default_factory=lambda: {phase: FileInfo() for phase in ARTIFACT_PHASES}
    )

    @classmethod
    def create(
        cls,
        name: str,
        description: str = "",
        author: str = "unknown",
        now: Optional[datetime] = None,
    ) -> "SpecificationState":
        """Build a fresh state in the ``init`` phase."""
        created = now or utc_now()
        metadata = SpecificationMetadata(
            name=name,
            description=description,
            author=author,
            created_at=created,
            last_modified=created,
        )
        return cls(metadata=metadata)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def current_phase(self) -> Phase:
        return self.workflow.current_phase

    def phase_info(self, phase: Phase) -> PhaseInfo:
        return self.workflow.phases[phase]

    def file_info(self, phase: Phase) -> FileInfo:
        return self.files[phase]

    def touch(self, now: Optional[datetime] = None) -> datetime:
        """Bump version and advance ``last_modified`` strictly monotonically."""
        stamp = now or utc_now()
        previous = self.metadata.last_modified
        if previous is not None and stamp <= previous:
            stamp = previous + timedelta(microseconds=1)
        self.metadata.last_modified = stamp
        self.metadata.version = bump_version(self.metadata.version)
        return stamp

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "metadata": self.metadata.to_dict(),
            "workflow": self.workflow.to_dict(),
            "files": {phase.value: info.to_dict() for phase, info in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecificationState":
        """Create from dictionary representation."""
        raw_files = data.get("files", {})
        return cls(
            metadata=SpecificationMetadata.from_dict(data["metadata"]),
            workflow=WorkflowState.from_dict(data.get("workflow", {})),
            files={
                phase: FileInfo.from_dict(raw_files.get(phase.value, {}))
                for phase in ARTIFACT_PHASES
            },
        )


# ---------------------------------------------------------------------------
# Workflow events and their detail payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PhaseTransitionDetails:
    kind: ClassVar[str] = "phase_transition"

    from_phase: Phase
    to_phase: Phase
    approved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "approved_by": self.approved_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseTransitionDetails":
        return cls(
            from_phase=Phase(data["from_phase"]),
            to_phase=Phase(data["to_phase"]),
            approved_by=data.get("approved_by"),
        )


@dataclass(frozen=True, slots=True)
class PhaseProgressDetails:
    kind: ClassVar[str] = "phase_progress"

    phase: Phase
    completed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "phase": self.phase.value, "completed": self.completed}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PhaseProgressDetails":
        return cls(phase=Phase(data["phase"]), completed=bool(data["completed"]))


@dataclass(frozen=True, slots=True)
class ApprovalRequestedDetails:
    kind: ClassVar[str] = "approval_requested"

    approval_id: str
    from_phase: Phase
    to_phase: Phase
    requested_by: str
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "approval_id": self.approval_id,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "requested_by": self.requested_by,
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRequestedDetails":
        return cls(
            approval_id=data["approval_id"],
            from_phase=Phase(data["from_phase"]),
            to_phase=Phase(data["to_phase"]),
            requested_by=data["requested_by"],
            expires_at=parse_timestamp(data.get("expires_at")),
        )


@dataclass(frozen=True, slots=True)
class ApprovalDecisionDetails:
    kind: ClassVar[str] = "approval_decision"

    approval_id: str
    approved_by: str
    approved: bool
    comments: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "approval_id": self.approval_id,
            "approved_by": self.approved_by,
            "approved": self.approved,
            "comments": self.comments,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalDecisionDetails":
        return cls(
            approval_id=data["approval_id"],
            approved_by=data["approved_by"],
            approved=bool(data["approved"]),
            comments=data.get("comments"),
        )


@dataclass(frozen=True, slots=True)
class ApprovalExpiredDetails:
    kind: ClassVar[str] = "approval_expired"

    approval_id: str
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "approval_id": self.approval_id,
            "expires_at": format_timestamp(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalExpiredDetails":
        return cls(
            approval_id=data["approval_id"],
            expires_at=parse_timestamp(data.get("expires_at")),
        )


@dataclass(frozen=True, slots=True)
class FileDetails:
    kind: ClassVar[str] = "file"

    file_name: str
    size: int
    path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "file_name": self.file_name, "size": self.size, "path": self.path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileDetails":
        return cls(file_name=data["file_name"], size=int(data.get("size", 0)), path=data.get("path", ""))


@dataclass(frozen=True, slots=True)
class SpecificationDetails:
    kind: ClassVar[str] = "specification"

    description: str
    author: str

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "description": self.description, "author": self.author}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpecificationDetails":
        return cls(description=data.get("description", ""), author=data.get("author", ""))


@dataclass(frozen=True, slots=True)
class OpaqueDetails:
    """Free-form audit payload for events without a known shape."""

    kind: ClassVar[str] = "opaque"

    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OpaqueDetails":
        if "data" in data and isinstance(data["data"], dict):
            return cls(data=dict(data["data"]))
        return cls(data={key: value for key, value in data.items() if key != "kind"})


EventDetails = Union[
    PhaseTransitionDetails,
    PhaseProgressDetails,
    ApprovalRequestedDetails,
    ApprovalDecisionDetails,
    ApprovalExpiredDetails,
    FileDetails,
    SpecificationDetails,
    OpaqueDetails,
]

_DETAIL_TYPES = {
    detail_type.kind: detail_type
    for detail_type in (
        PhaseTransitionDetails,
        PhaseProgressDetails,
        ApprovalRequestedDetails,
        ApprovalDecisionDetails,
        ApprovalExpiredDetails,
        FileDetails,
        SpecificationDetails,
        OpaqueDetails,
    )
}


def details_from_dict(data: Optional[Dict[str, Any]]) -> Optional[EventDetails]:
    """Decode a tagged details payload, falling back to :class:`OpaqueDetails`."""
    if data is None:
        return None
    detail_type = _DETAIL_TYPES.get(data.get("kind", ""))
    if detail_type is None:
        return OpaqueDetails.from_dict(data)
    return detail_type.from_dict(data)


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """Immutable audit entry."""

    id: str
    timestamp: datetime
    spec_name: str
    phase: Phase
    action: str
    details: Optional[EventDetails] = None
    user_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        spec_name: str,
        phase: Phase,
        action: str,
        details: Optional[EventDetails] = None,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "WorkflowEvent":
        """Build an event with a generated id."""
        return cls(
            id=generate_id(spec_name, action),
            timestamp=timestamp or utc_now(),
            spec_name=spec_name,
            phase=phase,
            action=action,
            details=details,
            user_id=user_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "spec_name": self.spec_name,
            "phase": self.phase.value,
            "action": self.action,
            "details": self.details.to_dict() if self.details is not None else None,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowEvent":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            spec_name=data["spec_name"],
            phase=Phase(data["phase"]),
            action=data["action"],
            details=details_from_dict(data.get("details")),
            user_id=data.get("user_id"),
        )


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TransitionValidation:
    """Outcome of checking a phase edge against the current state."""

    valid: bool
    from_phase: Phase
    to_phase: Phase
    reason: Optional[str] = None
    missing_requirements: List[str] = field(default_factory=list)
    allowed_transitions: List[Phase] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "valid": self.valid,
            "from_phase": self.from_phase.value,
            "to_phase": self.to_phase.value,
            "reason": self.reason,
            "missing_requirements": list(self.missing_requirements),
            "allowed_transitions": [phase.value for phase in self.allowed_transitions],
        }


@dataclass(slots=True)
class ApprovalGateResult:
    """Outcome of checking whether a transition's approval gate is satisfied."""

    NOT_REQUIRED: ClassVar[str] = "approval_not_required"
    APPROVED: ClassVar[str] = "approved"
    PENDING: ClassVar[str] = "approval_pending"
    REQUIRED: ClassVar[str] = "approval_required"
    STALE: ClassVar[str] = "approval_stale"

    valid: bool
    requires_approval: bool
    reason_code: str
    reason: Optional[str] = None
    approval_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "valid": self.valid,
            "requires_approval": self.requires_approval,
            "reason_code": self.reason_code,
            "reason": self.reason,
            "approval_id": self.approval_id,
        }


# ---------------------------------------------------------------------------
# Workflow guidance
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class WorkflowStep:
    """Represents a single step in the Specster workflow."""

    step_number: int
    name: str
    tool_name: str
    description: str
    purpose: str
    prerequisites: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "step": self.step_number,
            "name": self.name,
            "tool": self.tool_name,
            "description": self.description,
            "purpose": self.purpose,
            "prerequisites": list(self.prerequisites),
        }


WORKFLOW_STEPS = [
    WorkflowStep(
        step_number=1,
        name="Initialization",
        tool_name="initialize_spec",
        description="Create the specification state in the init phase",
        purpose="Register a uniquely named specification to track",
    ),
    WorkflowStep(
        step_number=2,
        name="Requirements",
        tool_name="transition_phase",
        description="Enter the requirements phase and save requirements.md",
        purpose="Capture what the feature must do",
        prerequisites=["Initialization"],
    ),
    WorkflowStep(
        step_number=3,
        name="Requirements Approval",
        tool_name="request_approval, provide_approval",
        description="Mark requirements complete and obtain explicit approval",
        purpose="Establish ground truth before design starts",
        prerequisites=["Requirements"],
    ),
    WorkflowStep(
        step_number=4,
        name="Design",
        tool_name="transition_phase",
        description="Enter the design phase and save design.md",
        purpose="Describe how the requirements will be met",
        prerequisites=["Requirements Approval"],
    ),
    WorkflowStep(
        step_number=5,
        name="Design Approval",
        tool_name="request_approval, provide_approval",
        description="Mark design complete and obtain explicit approval",
        purpose="Lock the design before breaking it into tasks",
        prerequisites=["Design"],
    ),
    WorkflowStep(
        step_number=6,
        name="Tasks",
        tool_name="transition_phase",
        description="Enter the tasks phase and save tasks.md",
        purpose="Break the design into implementation tasks",
        prerequisites=["Design Approval"],
    ),
    WorkflowStep(
        step_number=7,
        name="Completion",
        tool_name="request_approval, provide_approval, transition_phase",
        description="Approve the task list and mark the specification complete",
        purpose="Close the specification with a recorded sign-off",
        prerequisites=["Tasks"],
    ),
]
