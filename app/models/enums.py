"""Enums for emergency activation - the valid values for types, states and outcomes."""
from enum import Enum


class ActivationType(str, Enum):
    """How an emergency activation was initiated."""
    PANIC_BUTTON = "panic_button"
    SMS_CODE = "sms_code"
    TRUSTED_CONTACT = "trusted_contact"
    MEDICAL_PROFESSIONAL = "medical_professional"
    LEGAL_REPRESENTATIVE = "legal_representative"


class InitiatorRole(str, Enum):
    USER = "user"
    TRUSTED_CONTACT = "trusted_contact"
    MEDICAL_PROFESSIONAL = "medical_professional"
    LEGAL_REPRESENTATIVE = "legal_representative"
    SYSTEM = "system"


class UrgencyLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ActivationLevel(str, Enum):
    """Requested access scope."""
    FULL = "full"
    PARTIAL = "partial"
    LIMITED = "limited"
    VIEW_ONLY = "view_only"
    CUSTOM = "custom"


class ActivationStatus(str, Enum):
    """
    Lifecycle of an activation request.

    PENDING_VERIFICATION -> VERIFIED -> ACTIVE -> EXPIRED, with REJECTED and
    CANCELLED as the alternate terminal states.
    """
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    ActivationStatus.EXPIRED,
    ActivationStatus.CANCELLED,
    ActivationStatus.REJECTED,
})


class VerificationMethod(str, Enum):
    IN_APP = "in_app"
    SMS = "sms"
    EMAIL = "email"
    TWO_FACTOR = "two_factor"


# Methods that require the one-time code on record
CODE_METHODS = frozenset({
    VerificationMethod.SMS,
    VerificationMethod.EMAIL,
    VerificationMethod.TWO_FACTOR,
})


class VerificationOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class VerificationFailure(str, Enum):
    """Why a verification attempt did not succeed."""
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    ALREADY_RESOLVED = "already_resolved"


class PerformerType(str, Enum):
    """Who performed an audited action."""
    USER = "user"
    SYSTEM = "system"
    PROFESSIONAL = "professional"
    CONTACT = "contact"


class TokenAccessLevel(str, Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    FULL = "full"


class TokenType(str, Enum):
    TEMPORARY = "temporary"
    LONG_TERM = "long_term"
    PERMANENT = "permanent"


class AccessLogAction(str, Enum):
    """Emergency access token events."""
    CREATED = "created"
    VALIDATED = "validated"
    ACCESSED = "accessed"
    REVOKED = "revoked"
    EXPIRED = "expired"
    FAILED = "failed"
