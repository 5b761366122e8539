"""Typed failures raised by the Specster workflow core.

Every error carries a reason string and a stable ``code`` so the MCP
layer can report *why* an operation was refused instead of a bare
"operation failed".
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SpecsterError(Exception):
    """Base class for all Specster errors."""

    code = "SPECSTER_ERROR"

    def __init__(self, message: str, *, spec_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.spec_name = spec_name

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "code": self.code,
            "reason": self.message,
        }
        if self.spec_name:
            data["spec_name"] = self.spec_name
        return data


class NotFoundError(SpecsterError):
    """Unknown specification or approval id."""

    code = "NOT_FOUND"


class InvalidTransitionError(SpecsterError):
    """Illegal phase edge, unmet phase precondition or missing approval."""

    code = "INVALID_TRANSITION"

    def __init__(
        self,
        message: str,
        *,
        spec_name: Optional[str] = None,
        current_phase: Optional[str] = None,
        target_phase: Optional[str] = None,
        missing_requirements: Optional[List[str]] = None,
        reason_code: Optional[str] = None,
    ):
        super().__init__(message, spec_name=spec_name)
        self.current_phase = current_phase
        self.target_phase = target_phase
        self.missing_requirements = list(missing_requirements or [])
        self.reason_code = reason_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "current_phase": self.current_phase,
                "target_phase": self.target_phase,
                "missing_requirements": list(self.missing_requirements),
            }
        )
        if self.reason_code:
            data["reason_code"] = self.reason_code
        return data


class ConflictError(SpecsterError):
    """A pending approval (or specification) already exists."""

    code = "CONFLICT"


class ExpiredError(SpecsterError):
    """Approval request is past its expiry."""

    code = "EXPIRED"


class AcquireLockError(SpecsterError):
    """Timed out waiting for a specification lock."""

    code = "LOCK_TIMEOUT"


class PersistenceError(SpecsterError):
    """Underlying store I/O failure."""

    code = "PERSISTENCE_ERROR"


class SpecValidationError(SpecsterError):
    """Operation input rejected before touching state."""

    code = "VALIDATION_ERROR"
