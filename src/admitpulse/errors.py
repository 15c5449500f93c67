"""Exception types raised by the engine and its collaborators."""

from __future__ import annotations


class AdmitPulseError(Exception):
    """Base class for engine errors."""


class InvalidStudentError(AdmitPulseError, ValueError):
    """A student snapshot is malformed and cannot be scored or dispatched."""


class StoreError(AdmitPulseError, RuntimeError):
    """Base class for persistence failures."""


class StoreUnavailableError(StoreError):
    """The store could not be reached at all."""


class StudentNotFoundError(StoreError, KeyError):
    def __init__(self, student_id: str) -> None:
        super().__init__(f"student {student_id} not found")
        self.student_id = student_id

    def __str__(self) -> str:
        return f"student {self.student_id} not found"


class VersionConflictError(StoreError):
    """A student write was conditioned on a version that is no longer current."""

    def __init__(self, student_id: str, expected: int, actual: int) -> None:
        super().__init__(f"student {student_id}: expected version {expected}, found {actual}")
        self.student_id = student_id
        self.expected = expected
        self.actual = actual


class DuplicatePendingError(StoreError):
    """A second pending ledger entry was appended for the same student and action."""

    def __init__(self, student_id: str, action_type: str) -> None:
        super().__init__(f"pending attempt already exists for student {student_id} / {action_type}")
        self.student_id = student_id
        self.action_type = action_type


class ScanAlreadyRunningError(AdmitPulseError):
    """Another scan cycle holds the engine lock."""


class ContentUnavailableError(AdmitPulseError, RuntimeError):
    """The content generator backend could not produce a payload."""
