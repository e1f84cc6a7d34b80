"""
Error taxonomy for the welfare-check engine.

Validation errors (``InvalidOutcome``, ``MissingRequiredNotes``,
``InvalidTiming``) are recoverable and go straight back to the submitting
responder.  ``AlreadyResolved`` is a non-fatal conflict: the caller should
refresh and read the existing report.  ``ProfileConsentMissing`` is an
actionable requirement for the profile editor.  ``UpstreamUnavailable``
marks a ledger or store failure.
"""

from __future__ import annotations

from typing import Any, Optional


class WelfareDispatchError(Exception):
    """Base class for every error raised by the engine."""

    kind: str = "WelfareDispatchError"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class ReportValidationError(WelfareDispatchError):
    """A submitted welfare-check report failed validation."""

    kind = "ValidationError"


class InvalidOutcome(ReportValidationError):
    kind = "InvalidOutcome"


class MissingRequiredNotes(ReportValidationError):
    kind = "MissingRequiredNotes"


class InvalidTiming(ReportValidationError):
    kind = "InvalidTiming"


class AlreadyResolved(WelfareDispatchError):
    """The alert was already closed by another submission or a check-in."""

    kind = "AlreadyResolved"


class InvalidTransition(WelfareDispatchError):
    """The alert is not in a state that permits the requested transition."""

    kind = "InvalidTransition"


class ProfileConsentMissing(WelfareDispatchError):
    """The profile has no recorded consent and cannot be used for dispatch.

    ``profile`` holds the version that was stored, when one was.
    """

    kind = "ProfileConsentMissing"

    def __init__(self, message: str, profile: Optional[Any] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.profile = profile


class NotFound(WelfareDispatchError):
    kind = "NotFound"


class UpstreamUnavailable(WelfareDispatchError):
    """The check-in ledger or a backing store failed."""

    kind = "UpstreamUnavailable"
