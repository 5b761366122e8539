"""
Integration tests driving a specification through every phase with the
file-backed store, the way the MCP tools do.
"""

import asyncio
import json

import pytest

from specster.config import SpecsterConfig
from specster.workflow import WorkflowManager


@pytest.fixture
def manager(temp_root):
    return WorkflowManager(temp_root, SpecsterConfig(lock_timeout=5.0, lock_poll_interval=0.01))


async def _finish_phase(manager, phase, content):
    saved = await manager.save_specification_file("checkout", phase, content)
    assert saved["success"], saved
    progress = await manager.update_phase_progress("checkout", phase, True)
    assert progress["success"], progress


async def _approve(manager, from_phase, to_phase):
    request = await manager.request_approval("checkout", from_phase, to_phase, "assistant")
    assert request["success"], request
    decision = await manager.provide_approval("checkout", request["approval_id"], "ana", True, comments="lgtm")
    assert decision["success"], decision


class TestCheckoutWorkflow:
    """End-to-end scenarios for the checkout specification."""

    @pytest.mark.asyncio
    async def test_design_before_requirements_complete(self, manager):
        """Transitioning to design early lists the missing requirement."""
        await manager.initialize_spec("checkout", "Checkout flow")
        await manager.transition_phase("checkout", "requirements")

        result = await manager.transition_phase("checkout", "design")

        assert result["code"] == "INVALID_TRANSITION"
        assert "Requirements phase must be completed" in result["missing_requirements"]

    @pytest.mark.asyncio
    async def test_full_workflow(self, manager, temp_root):
        """init -> requirements -> design -> tasks -> complete with approvals."""
        await manager.initialize_spec("checkout", "Checkout flow", author="ana")
        await manager.transition_phase("checkout", "requirements")

        await _finish_phase(manager, "requirements", "# Requirements\n- pay by card\n")
        await _approve(manager, "requirements", "design")
        design = await manager.transition_phase("checkout", "design")
        assert design["current_phase"] == "design"

        await _finish_phase(manager, "design", "# Design\n- payment service\n")
        await _approve(manager, "design", "tasks")
        tasks = await manager.transition_phase("checkout", "tasks")
        assert tasks["current_phase"] == "tasks"

        await _finish_phase(manager, "tasks", "# Tasks\n- [ ] integrate gateway\n")
        await _approve(manager, "tasks", "complete")
        complete = await manager.transition_phase("checkout", "complete")
        assert complete["current_phase"] == "complete"
        assert complete["next_suggested_step"] == "get_spec_status"

        status = await manager.get_spec_status("checkout")
        assert status["next_action"] == "Specification is complete"
        assert status["state"]["workflow"]["phases"]["design"]["approved_by"] == "ana"

        history = await manager.get_workflow_history("checkout")
        transitions = [event for event in history["events"] if event["action"] == "phase_transition"]
        assert [event["details"]["to_phase"] for event in transitions] == [
            "requirements",
            "design",
            "tasks",
            "complete",
        ]

        state_file = temp_root / ".specster" / "state" / "spec-checkout.json"
        stored = json.loads(state_file.read_text(encoding="utf-8"))
        assert stored["workflow"]["current_phase"] == "complete"
        assert len(stored["workflow"]["approvals"]) == 3
        assert (temp_root / ".specster" / "specs" / "checkout" / "tasks.md").is_file()

    @pytest.mark.asyncio
    async def test_rejection_keeps_requirements(self, manager):
        """A rejection leaves the phase in place and allows a new request."""
        await manager.initialize_spec("checkout", "Checkout flow")
        await manager.transition_phase("checkout", "requirements")
        await _finish_phase(manager, "requirements", "# Requirements\n")
        request = await manager.request_approval("checkout", "requirements", "design", "assistant")

        rejected = await manager.provide_approval(
            "checkout", request["approval_id"], "ana", False, comments="missing refunds"
        )
        blocked = await manager.transition_phase("checkout", "design")
        retry = await manager.request_approval("checkout", "requirements", "design", "assistant")

        assert rejected["next_suggested_step"] == "save_specification_file"
        assert blocked["code"] == "INVALID_TRANSITION"
        assert (await manager.get_spec_status("checkout"))["current_phase"] == "requirements"
        assert retry["success"]

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, manager, temp_root):
        """A new manager over the same root continues where the old one stopped."""
        await manager.initialize_spec("checkout", "Checkout flow")
        await manager.transition_phase("checkout", "requirements")
        await _finish_phase(manager, "requirements", "# Requirements\n")
        request = await manager.request_approval("checkout", "requirements", "design", "assistant")

        restarted = WorkflowManager(temp_root, SpecsterConfig(lock_timeout=5.0, lock_poll_interval=0.01))
        pending = await restarted.get_pending_approval("checkout")
        decision = await restarted.provide_approval("checkout", request["approval_id"], "ana", True)
        moved = await restarted.transition_phase("checkout", "design")

        assert pending["pending_approval"]["id"] == request["approval_id"]
        assert decision["success"]
        assert moved["current_phase"] == "design"


class TestConcurrentTransitions:
    """Concurrency scenarios across one or several specifications."""

    @pytest.mark.asyncio
    async def test_same_spec_advances_once(self, manager):
        """Racing transitions on one specification yield exactly one success."""
        await manager.initialize_spec("checkout")

        results = await asyncio.gather(
            *(manager.transition_phase("checkout", "requirements") for _ in range(3))
        )

        assert sum(1 for result in results if result["success"]) == 1
        history = await manager.get_workflow_history("checkout")
        assert [event["action"] for event in history["events"]].count("phase_transition") == 1

    @pytest.mark.asyncio
    async def test_different_specs_advance_independently(self, manager):
        """Transitions on different specifications all succeed."""
        names = ["checkout", "billing", "search"]
        for name in names:
            await manager.initialize_spec(name)

        results = await asyncio.gather(*(manager.transition_phase(name, "requirements") for name in names))

        assert all(result["success"] for result in results)
        listing = await manager.list_specifications()
        assert {spec["current_phase"] for spec in listing["specifications"]} == {"requirements"}
