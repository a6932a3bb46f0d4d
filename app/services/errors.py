"""
Typed errors raised by the activation services.

The REST layer maps each class to an HTTP status; nothing below the
handlers knows about HTTP.
"""
from typing import Optional


class ActivationError(Exception):
    """Base class for expected, client-attributable failures."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(ActivationError):
    """Malformed or missing required input."""


class NotFoundError(ActivationError):
    """Unknown id."""


class InvalidTransitionError(ActivationError):
    """The requested change would violate the activation state machine."""
    def __init__(self, message: str, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(message)


class VerificationFailed(ActivationError):
    """A verification attempt was refused. The attempt itself is still recorded."""
    reason = "verification_failed"

    def __init__(self, message: str, request_id: Optional[str] = None):
        self.request_id = request_id
        super().__init__(message)


class AlreadyResolved(VerificationFailed):
    reason = "already_resolved"


class Expired(VerificationFailed):
    reason = "expired"


class InvalidCode(VerificationFailed):
    reason = "invalid_code"
