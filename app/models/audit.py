"""
Activation audit log model.

Entries provide an immutable, append-only trail of every lifecycle and
verification event on an activation request, each carrying a risk score.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, DateTime, JSON, Enum as SQLEnum
from app.database import Base
from app.models.enums import PerformerType


class AuditAction(str, Enum):
    """Auditable actions on an activation request."""
    # Request lifecycle
    REQUEST_CREATED = "request_created"
    REQUEST_VERIFIED = "request_verified"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_ACTIVATED = "request_activated"
    REQUEST_EXPIRED = "request_expired"
    REQUEST_CANCELLED = "request_cancelled"

    # Verification
    VERIFICATION_ATTEMPTED = "verification_attempted"
    VERIFICATION_FAILED = "verification_failed"

    # Access
    ACCESS_GRANTED = "access_granted"
    ACCESS_REVOKED = "access_revoked"

    # Notifications
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"

    # Professional credentials
    CREDENTIALS_REGISTERED = "credentials_registered"
    CREDENTIALS_VERIFIED = "credentials_verified"


class AuditEntry(Base):
    """
    Immutable audit entry for an activation request.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - risk_score is computed once at creation and stored
    """
    __tablename__ = "activation_audit_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(String(32), nullable=False, index=True)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)

    performed_by_id = Column(String, nullable=False)
    performed_by_name = Column(String, nullable=False)
    performed_by_type = Column(SQLEnum(PerformerType), nullable=False)

    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    risk_score = Column(Integer, nullable=False)
    details = Column(JSON, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
