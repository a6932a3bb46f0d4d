"""Domain models - activation requests, verification attempts and emergency access tokens."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Boolean, Enum as SQLEnum, JSON
from sqlalchemy.orm import relationship
from app.database import Base
from app.models.enums import (
    ActivationType,
    InitiatorRole,
    UrgencyLevel,
    ActivationLevel,
    ActivationStatus,
    VerificationMethod,
    VerificationOutcome,
    VerificationFailure,
    TokenAccessLevel,
    TokenType,
    AccessLogAction
)


class ActivationRequest(Base):
    """
    A request for emergency access to a user's protected information.

    Invariants enforced by the store:
    - Created in PENDING_VERIFICATION with a one-time verification code
    - activated_at is set on the transition to ACTIVE and kept afterwards
    - expires_at = activated_at + grant duration for the type
    - id, type, user_id, initiator fields and created_at never change
    """
    __tablename__ = "activation_requests"

    id = Column(String(32), primary_key=True)
    type = Column(SQLEnum(ActivationType), nullable=False)

    initiator_id = Column(String, nullable=False)
    initiator_name = Column(String, nullable=False)
    initiator_role = Column(SQLEnum(InitiatorRole), nullable=False)

    user_id = Column(String, nullable=False, index=True)
    reason = Column(String, nullable=False)
    urgency_level = Column(SQLEnum(UrgencyLevel), nullable=False)
    activation_level = Column(SQLEnum(ActivationLevel), nullable=False)
    status = Column(SQLEnum(ActivationStatus), nullable=False, index=True,
                    default=ActivationStatus.PENDING_VERIFICATION)

    # Never exposed through the API
    verification_code = Column(String(6), nullable=True)
    verification_method = Column(SQLEnum(VerificationMethod), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)

    metadata_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    activated_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    resolved_at = Column(DateTime, nullable=True)

    attempts = relationship("VerificationAttempt", back_populates="request",
                            order_by="VerificationAttempt.id")


class VerificationAttempt(Base):
    """
    One submission of the verification form. Terminal as soon as it is written.
    """
    __tablename__ = "verification_attempts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(String(32), ForeignKey("activation_requests.id"), nullable=False, index=True)
    method = Column(SQLEnum(VerificationMethod), nullable=False)
    submitted_code = Column(String, nullable=True)  # None for in_app
    outcome = Column(SQLEnum(VerificationOutcome), nullable=False)
    failure_reason = Column(SQLEnum(VerificationFailure), nullable=True)
    ip_address = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    request = relationship("ActivationRequest", back_populates="attempts")


class EmergencyAccessToken(Base):
    """
    Bounded-use access grant handed to an emergency contact.

    Invariants:
    - current_uses never exceeds max_uses through record_usage
    - A revoked token stays revoked
    """
    __tablename__ = "emergency_access_tokens"

    id = Column(String(36), primary_key=True)
    activation_request_id = Column(String(32), nullable=True, index=True)
    contact_id = Column(String, nullable=False, index=True)
    contact_name = Column(String, nullable=True)
    access_level = Column(SQLEnum(TokenAccessLevel), nullable=False, default=TokenAccessLevel.VIEW)
    token_type = Column(SQLEnum(TokenType), nullable=False, default=TokenType.TEMPORARY)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoke_reason = Column(String, nullable=True)

    max_uses = Column(Integer, nullable=False)
    current_uses = Column(Integer, nullable=False, default=0)
    ip_restrictions = Column(JSON, nullable=True)
    metadata_json = Column(JSON, nullable=True)


class AccessLog(Base):
    """Append-only record of token lifecycle and usage."""
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    token_id = Column(String(36), nullable=True, index=True)
    contact_id = Column(String, nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    action = Column(SQLEnum(AccessLogAction), nullable=False)
    success = Column(Boolean, nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    file_accessed = Column(String, nullable=True)
    error = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
