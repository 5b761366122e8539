"""MCP server exposing the Specster phase workflow tools."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from specster.config import SpecsterConfig
from specster.specster_logging import setup_logging
from specster.workflow import WorkflowManager, workflow_guide

mcp = FastMCP("specster")


PROJECT_ROOT_ENV = "SPECSTER_PROJECT_ROOT"
SERVER_ROOT = Path(__file__).resolve().parent

_CONFIG: Optional[SpecsterConfig] = None
_MANAGERS: Dict[Path, WorkflowManager] = {}


def _config() -> SpecsterConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SpecsterConfig.from_env()
    return _CONFIG


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    for parent in SERVER_ROOT.parents:
        if parent not in bases:
            bases.append(parent)
    return bases


def _locate_workspace_root() -> Optional[Path]:
    marker = _config().base_dir_name
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _manager(root: Optional[str]) -> WorkflowManager:
    resolved = _resolve_root(root)
    manager = _MANAGERS.get(resolved)
    if manager is None:
        manager = WorkflowManager(resolved, _config())
        _MANAGERS[resolved] = manager
    return manager


def _manager_optional(root: Optional[str]) -> Optional[WorkflowManager]:
    try:
        return _manager(root)
    except ValueError:
        return None


@mcp.tool()
async def initialize_spec(
    spec_name: str,
    description: str = "",
    author: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Create a new specification in the init phase.
    Names may contain letters, digits, hyphens and underscores and must be unique."""

    return await _manager(root).initialize_spec(spec_name, description=description, author=author)


@mcp.tool()
async def transition_phase(
    spec_name: str,
    target_phase: str,
    approved_by: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Move a specification to its next phase (requirements, design, tasks, complete).
    Entering design, tasks and complete requires an approval recorded after the
    latest edit of the current phase document."""

    return await _manager(root).transition_phase(spec_name, target_phase, approved_by=approved_by)


@mcp.tool()
async def update_phase_progress(
    spec_name: str,
    phase: str,
    completed: bool,
    user_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark the current phase completed (or back in progress)."""

    return await _manager(root).update_phase_progress(spec_name, phase, completed, user_id=user_id)


@mcp.tool()
async def validate_phase_transition(
    spec_name: str,
    from_phase: str,
    to_phase: str,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Check whether a transition is legal and which requirements are missing."""

    return await _manager(root).validate_phase_transition(spec_name, from_phase, to_phase)


@mcp.tool()
async def validate_phase_transition_approval(
    spec_name: str,
    from_phase: str,
    to_phase: str,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Check whether the approval gate for a transition is satisfied."""

    return await _manager(root).validate_phase_transition_approval(spec_name, from_phase, to_phase)


@mcp.tool()
async def request_approval(
    spec_name: str,
    from_phase: str,
    to_phase: str,
    requested_by: str,
    content: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Open the approval request for the next phase. Only one request can be
    pending per specification. Content defaults to the current phase document."""

    return await _manager(root).request_approval(
        spec_name,
        from_phase,
        to_phase,
        requested_by,
        content=content,
    )


@mcp.tool()
async def provide_approval(
    spec_name: str,
    approval_id: str,
    approved_by: str,
    approved: bool,
    comments: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Approve or reject the pending approval request identified by approval_id.
    Only record a decision the user explicitly gave."""

    return await _manager(root).provide_approval(
        spec_name,
        approval_id,
        approved_by,
        approved,
        comments=comments,
    )


@mcp.tool()
async def get_pending_approval(spec_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the pending approval request, if any."""

    return await _manager(root).get_pending_approval(spec_name)


@mcp.tool()
def check_approval_requirement(phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the review prompt to show the user before approving a phase document."""

    return _manager(root).check_approval_requirement(phase)


@mcp.tool()
async def save_specification_file(
    spec_name: str,
    phase: str,
    content: str,
    user_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Write the requirements, design or tasks document of a specification."""

    return await _manager(root).save_specification_file(spec_name, phase, content, user_id=user_id)


@mcp.tool()
async def load_specification_file(spec_name: str, phase: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Read the requirements, design or tasks document of a specification."""

    return await _manager(root).load_specification_file(spec_name, phase)


@mcp.tool()
async def get_spec_status(spec_name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Current phase, pending approval, recent events and the suggested next action."""

    return await _manager(root).get_spec_status(spec_name)


@mcp.tool()
async def get_workflow_history(
    spec_name: str,
    limit: Optional[int] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Return recorded workflow events, oldest first."""

    return await _manager(root).get_workflow_history(spec_name, limit=limit)


@mcp.tool()
async def record_workflow_event(
    spec_name: str,
    action: str,
    phase: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Append a custom event to a specification's history."""

    return await _manager(root).record_workflow_event(
        spec_name,
        action,
        phase=phase,
        details=details,
        user_id=user_id,
    )


@mcp.tool()
async def list_specifications(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate specifications tracked in the workspace."""

    return await _manager(root).list_specifications()


@mcp.tool()
async def delete_specification(
    spec_name: str,
    delete_files: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Delete a specification's state and history. This cannot be undone."""

    return await _manager(root).delete_specification(spec_name, delete_files=delete_files)


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Get the complete Specster workflow guide with step-by-step instructions."""

    return workflow_guide(_config())


@mcp.resource("specster://specifications")
async def resource_specifications() -> str:
    """Resource view listing specifications and their phases."""

    manager = _manager_optional(None)
    if not manager:
        return (
            f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."
        )

    result = await manager.list_specifications()
    specs = result.get("specifications", [])
    if not specs:
        return "No specifications have been created yet."

    lines = ["Specster Specifications"]
    for spec in specs:
        lines.append("")
        lines.append(f"- {spec['spec_name']}: {spec['current_phase']} (v{spec['version']})")
        if spec.get("description"):
            lines.append(f"  {spec['description']}")
        if spec.get("pending_approval"):
            lines.append("  Approval pending")

    return "\n".join(lines)


if __name__ == "__main__":
    config = _config()
    setup_logging(config.log_level, config.log_file)
    mcp.run(transport="stdio")
