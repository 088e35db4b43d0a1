"""Exception types shared by the inspection pipeline."""

from typing import Optional


class InspectionError(Exception):
    """Base class for all inspection failures."""


class DecodeError(InspectionError):
    """Image bytes could not be decoded as a raster image."""


class RemoteAnalysisError(InspectionError):
    """The vision model call failed (HTTP error, bad payload, transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AnalysisTimeoutError(RemoteAnalysisError, TimeoutError):
    """An analysis attempt exceeded its time limit."""


class InspectionValidationError(InspectionError, ValueError):
    """Caller supplied malformed input (feedback, scores out of range)."""


# Errors that never get retried by the batch orchestrator
PERMANENT_ERRORS = (DecodeError, InspectionValidationError, FileNotFoundError, PermissionError)


class JobTransitionError(InspectionError):
    """A batch job was asked to make a state change its lifecycle forbids."""
