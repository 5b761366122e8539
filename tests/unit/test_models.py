"""Unit tests for Specster models.

This module tests the core data structures, their serialization and the
small helpers the workflow relies on.
"""

from datetime import datetime, timedelta, timezone

import pytest

from specster.models import (
    PHASE_ORDER,
    ApprovalAction,
    ApprovalDecisionDetails,
    ApprovalRecord,
    ApprovalRequest,
    ApprovalStatus,
    FileDetails,
    FileInfo,
    OpaqueDetails,
    Phase,
    PhaseStatus,
    PhaseTransitionDetails,
    SpecificationState,
    WorkflowEvent,
    WORKFLOW_STEPS,
    bump_version,
    details_from_dict,
    format_timestamp,
    generate_id,
    next_phase,
    parse_timestamp,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestPhaseTable:
    """Test cases for the transition table helpers."""

    def test_next_phase_follows_order(self):
        """Each phase advances to the following one."""
        for current, expected in zip(PHASE_ORDER, PHASE_ORDER[1:]):
            assert next_phase(current) == expected

    def test_complete_is_terminal(self):
        """Complete has no successor."""
        assert next_phase(Phase.COMPLETE) is None


class TestHelpers:
    """Test cases for timestamp, id and version helpers."""

    def test_timestamp_round_trip(self):
        """Formatted timestamps parse back to the same instant."""
        assert parse_timestamp(format_timestamp(NOW)) == NOW

    def test_parse_timestamp_accepts_z_suffix(self):
        """A trailing Z is read as UTC."""
        assert parse_timestamp("2024-05-01T12:00:00Z") == NOW

    def test_naive_timestamps_are_utc(self):
        """Naive datetimes are treated as UTC."""
        assert parse_timestamp("2024-05-01T12:00:00") == NOW

    def test_generate_id_is_unique(self):
        """Ids share the prefix but differ."""
        first = generate_id("checkout", "design")
        second = generate_id("checkout", "design")

        assert first.startswith("checkout-design-")
        assert first != second

    @pytest.mark.parametrize(
        "version,expected",
        [("1.0.0", "1.0.1"), ("1.0.9", "1.0.10"), ("2", "3"), ("1.0.beta", "1.0.beta.1")],
    )
    def test_bump_version(self, version, expected):
        """The patch component is incremented."""
        assert bump_version(version) == expected


class TestSpecificationState:
    """Test cases for the SpecificationState aggregate."""

    def test_create_starts_in_init(self):
        """A new state is in init with pending phases and no artifacts."""
        state = SpecificationState.create("checkout", description="Checkout flow", author="ana", now=NOW)

        assert state.name == "checkout"
        assert state.current_phase == Phase.INIT
        assert state.metadata.version == "1.0.0"
        assert state.metadata.created_at == NOW
        assert all(info.status == PhaseStatus.PENDING for info in state.workflow.phases.values())
        assert all(not info.exists for info in state.files.values())
        assert state.workflow.pending_approval is None

    def test_touch_is_strictly_monotonic(self):
        """touch never moves last_modified backwards or leaves it unchanged."""
        state = SpecificationState.create("checkout", now=NOW)

        first = state.touch(now=NOW)
        second = state.touch(now=NOW - timedelta(seconds=5))

        assert first > NOW
        assert second > first
        assert state.metadata.version == "1.0.2"

    def test_round_trip(self):
        """A fully populated state survives to_dict/from_dict."""
        state = SpecificationState.create("checkout", description="Checkout flow", author="ana", now=NOW)
        state.workflow.current_phase = Phase.REQUIREMENTS
        requirements = state.phase_info(Phase.REQUIREMENTS)
        requirements.status = PhaseStatus.COMPLETED
        requirements.started_at = NOW
        requirements.completed_at = NOW + timedelta(minutes=5)
        state.files[Phase.REQUIREMENTS] = FileInfo(
            path="/tmp/requirements.md",
            size=120,
            last_modified=NOW,
            exists=True,
        )
        state.workflow.approvals.append(
            ApprovalRecord(
                id="checkout-design-approval-1",
                spec_name="checkout",
                phase=Phase.DESIGN,
                action=ApprovalAction.APPROVED,
                approved_by="ana",
                approved_at=NOW + timedelta(minutes=10),
                comments="ok",
            )
        )
        state.workflow.pending_approval = ApprovalRequest(
            id="checkout-design-1",
            spec_name="checkout",
            from_phase=Phase.REQUIREMENTS,
            to_phase=Phase.DESIGN,
            requested_by="bot",
            requested_at=NOW,
            content="# Requirements",
            expires_at=NOW + timedelta(hours=1),
        )

        restored = SpecificationState.from_dict(state.to_dict())

        assert restored == state

    def test_from_dict_fills_missing_sections(self):
        """Missing phases and files fall back to defaults."""
        data = SpecificationState.create("checkout", now=NOW).to_dict()
        del data["files"]
        data["workflow"]["phases"] = {}

        restored = SpecificationState.from_dict(data)

        assert restored.file_info(Phase.DESIGN) == FileInfo()
        assert restored.phase_info(Phase.TASKS).status == PhaseStatus.PENDING


class TestApprovalRequest:
    """Test cases for approval expiry."""

    def test_without_expiry_never_expires(self):
        """A request with no expiry stays valid."""
        request = ApprovalRequest(
            id="a",
            spec_name="checkout",
            from_phase=Phase.REQUIREMENTS,
            to_phase=Phase.DESIGN,
            requested_by="bot",
            requested_at=NOW,
            content="",
        )

        assert not request.is_expired(NOW + timedelta(days=365))

    def test_expiry_boundary(self):
        """The request expires strictly after expires_at."""
        request = ApprovalRequest(
            id="a",
            spec_name="checkout",
            from_phase=Phase.REQUIREMENTS,
            to_phase=Phase.DESIGN,
            requested_by="bot",
            requested_at=NOW,
            content="",
            status=ApprovalStatus.PENDING,
            expires_at=NOW + timedelta(minutes=1),
        )

        assert not request.is_expired(NOW + timedelta(minutes=1))
        assert request.is_expired(NOW + timedelta(minutes=1, seconds=1))


class TestEventDetails:
    """Test cases for tagged event details."""

    def test_known_kinds_decode_to_their_type(self):
        """Each payload decodes back to the class that produced it."""
        payloads = [
            PhaseTransitionDetails(from_phase=Phase.INIT, to_phase=Phase.REQUIREMENTS, approved_by="ana"),
            ApprovalDecisionDetails(approval_id="x", approved_by="ana", approved=False, comments="redo"),
            FileDetails(file_name="design.md", size=10, path="/tmp/design.md"),
        ]

        for details in payloads:
            assert details_from_dict(details.to_dict()) == details

    def test_unknown_kind_falls_back_to_opaque(self):
        """Unknown payloads are preserved as opaque data."""
        decoded = details_from_dict({"kind": "custom", "ticket": "ABC-1"})

        assert isinstance(decoded, OpaqueDetails)
        assert decoded.data == {"ticket": "ABC-1"}

    def test_event_round_trip(self):
        """Events keep their details after serialization."""
        event = WorkflowEvent.create(
            "checkout",
            Phase.DESIGN,
            "phase_transition",
            PhaseTransitionDetails(from_phase=Phase.REQUIREMENTS, to_phase=Phase.DESIGN),
            user_id="ana",
            timestamp=NOW,
        )

        assert WorkflowEvent.from_dict(event.to_dict()) == event


class TestWorkflowSteps:
    """Test cases for the workflow guide."""

    def test_steps_are_numbered_in_order(self):
        """Steps are numbered consecutively from 1."""
        assert [step.step_number for step in WORKFLOW_STEPS] == list(range(1, len(WORKFLOW_STEPS) + 1))

    def test_step_to_dict(self):
        """to_dict exposes the tool name."""
        data = WORKFLOW_STEPS[0].to_dict()

        assert data["step"] == 1
        assert data["tool"] == "initialize_spec"
