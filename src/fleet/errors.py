"""Domain errors raised by the dispatch engine.

Every failed mutation raises exactly one of these. The transport layer maps
``code`` to a status and returns ``context`` to the caller verbatim.
"""
from __future__ import annotations

from typing import Dict, Optional


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    code = "dispatch_error"

    def __init__(self, message: str, context: Optional[Dict[str, object]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, object] = dict(context or {})

    def to_dict(self) -> Dict[str, object]:
        return {"error": self.code, "detail": self.message, "context": self.context}


class NotFoundError(DispatchError):
    """Raised when an ambulance or trip id is unknown."""

    code = "not_found"


class InvalidTransitionError(DispatchError):
    """Raised when a trip status change is not allowed by the state machine."""

    code = "invalid_transition"


class ConflictError(DispatchError):
    """Raised on binding races and blocked status changes.

    Recoverable: the caller may retry with another ambulance, force the
    status, or force-complete the ambulance's trips.
    """

    code = "conflict"


class UnauthorizedError(DispatchError):
    """Raised when an actor cannot be resolved or lacks scope."""

    code = "unauthorized"


class ValidationError(DispatchError):
    """Raised on malformed input such as non-numeric coordinates."""

    code = "validation_error"
