"""Specster MCP Server - phase workflow core package."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "WorkflowManager",
    "WorkflowEngine",
    "StateManager",
    "SpecificationState",
    "SpecsterConfig",
    "SpecsterError",
]
