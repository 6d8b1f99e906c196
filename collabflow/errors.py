"""Error taxonomy for the collaboration engine.

Administrative callers receive these unchanged; :meth:`EngineError.to_dict`
gives the structured form returned over the admin surface.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    kind = "EngineError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class NotFound(EngineError):
    """A referenced definition, instance, version or decision does not exist."""

    kind = "NotFound"


class NoActiveVersion(EngineError):
    """A flow was started without an active version."""

    kind = "NoActiveVersion"


class InvalidTransition(EngineError):
    """The requested state change is not allowed from the current state."""

    kind = "InvalidTransition"


class ExternalLookupFailed(EngineError):
    """A collaborator (presence detector, message/alert/task store) is unreachable."""

    kind = "ExternalLookupFailed"


class Cancelled(EngineError):
    """Cooperative cancellation of a running monitor.

    Never raised by the engine: cancellation reaches callers as a
    ``cancelled`` outcome or status. The class gives admin surfaces the
    ``Cancelled`` kind when they report one.
    """

    kind = "Cancelled"


__all__ = [
    "EngineError",
    "NotFound",
    "NoActiveVersion",
    "InvalidTransition",
    "ExternalLookupFailed",
    "Cancelled",
]
