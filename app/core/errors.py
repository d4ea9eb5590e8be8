"""Failure taxonomy for progress tracking and unlock gating.

Each error carries a short machine-readable ``code`` that the HTTP layer
returns alongside the message.
"""

from __future__ import annotations


class ProgressError(Exception):
    """Base class for progress tracking failures."""

    code = "progress_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class NotFound(ProgressError):
    """Referenced module or content item does not exist (or is unpublished)."""

    code = "not_found"


class NotEnrolled(ProgressError):
    """The student is not enrolled in the course."""

    code = "not_enrolled"

    def __init__(self, message: str = "Not enrolled in this course") -> None:
        super().__init__(message)


class StoreUnavailable(ProgressError):
    """Transient I/O failure talking to the progress store or the lock backend."""

    code = "store_unavailable"

    def __init__(self, message: str = "progress store unavailable") -> None:
        super().__init__(message)


class InvalidState(ProgressError):
    """Data-integrity or state-machine violation."""

    code = "invalid_state"


class ModuleLocked(InvalidState):
    """The module is locked for this student."""

    code = "module_locked"

    def __init__(
        self,
        message: str = "Module is locked",
        *,
        prerequisite_module_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.prerequisite_module_id = prerequisite_module_id
