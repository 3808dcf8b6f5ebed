"""
Error taxonomy shared by the document store, the lifecycle and the lock layer.

The scoring engine never raises these: missing data degrades to zero scores.
"""

from datetime import datetime
from typing import Optional


class AnalysisError(Exception):
    """Base error. ``code`` is a stable machine-readable reason."""

    code = "ANALYSIS_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidInput(AnalysisError):
    """Malformed id, missing field, out-of-range value, weight sum != 100."""

    code = "INVALID_INPUT"


class NotFound(AnalysisError):
    """Unknown project, lot, version, company or lock."""

    code = "NOT_FOUND"


class TransitionRejected(AnalysisError):
    """A lifecycle transition or mutation is not allowed in the current state."""

    code = "TRANSITION_REJECTED"


class LockConflict(AnalysisError):
    """The project is locked by another, still active, owner."""

    code = "LOCKED"

    def __init__(self, project_id: str, locked_by: str, locked_at: Optional[datetime]):
        super().__init__(f"Project {project_id} is locked by {locked_by}")
        self.project_id = project_id
        self.locked_by = locked_by
        self.locked_at = locked_at
