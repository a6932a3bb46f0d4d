"""Pydantic schemas for request/response validation. JSON keys are camelCase."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from app.models.audit import AuditAction, AuditEntry
from app.models.domain import ActivationRequest
from app.models.enums import (
    ActivationType,
    InitiatorRole,
    UrgencyLevel,
    ActivationLevel,
    ActivationStatus,
    VerificationMethod,
    PerformerType,
    TokenAccessLevel,
    TokenType,
    AccessLogAction
)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True
    )


# Activation request schemas
class InitiatorSchema(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    role: InitiatorRole = InitiatorRole.USER


class ActivationRequestCreate(CamelModel):
    type: ActivationType
    initiator: InitiatorSchema
    user_id: str = Field(..., min_length=1)
    reason: Optional[str] = None  # Checked by the store so a blank reason gets the domain message
    urgency_level: UrgencyLevel
    activation_level: Optional[ActivationLevel] = None
    metadata: Optional[Dict[str, Any]] = None


class ActivationRequestResponse(CamelModel):
    id: str
    type: ActivationType
    initiator: InitiatorSchema
    user_id: str
    reason: str
    urgency_level: UrgencyLevel
    activation_level: ActivationLevel
    status: ActivationStatus
    verification_method: Optional[VerificationMethod]
    failed_attempts: int
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    activated_at: Optional[datetime]
    expires_at: Optional[datetime]
    resolved_at: Optional[datetime]

    @classmethod
    def from_request(cls, request: ActivationRequest) -> "ActivationRequestResponse":
        """The verification code is never part of the response."""
        return cls(
            id=request.id,
            type=request.type,
            initiator=InitiatorSchema(
                id=request.initiator_id,
                name=request.initiator_name,
                role=request.initiator_role
            ),
            user_id=request.user_id,
            reason=request.reason,
            urgency_level=request.urgency_level,
            activation_level=request.activation_level,
            status=request.status,
            verification_method=request.verification_method,
            failed_attempts=request.failed_attempts or 0,
            metadata=request.metadata_json,
            created_at=request.created_at,
            activated_at=request.activated_at,
            expires_at=request.expires_at,
            resolved_at=request.resolved_at
        )


class ActivationRequestEnvelope(CamelModel):
    success: bool = True
    request: ActivationRequestResponse


class ActivationRequestList(CamelModel):
    success: bool = True
    requests: List[ActivationRequestResponse]


class VerificationSubmit(CamelModel):
    method: VerificationMethod
    code: Optional[str] = None


class VerificationResponse(CamelModel):
    success: bool = True
    valid: bool
    status: ActivationStatus
    request: ActivationRequestResponse
    token: Optional[str] = None
    token_id: Optional[str] = None
    remaining_uses: Optional[int] = None
    expires_in: Optional[int] = None


class CancellationSubmit(CamelModel):
    reason: Optional[str] = None


class ActivationCleanupResult(CamelModel):
    expired: int


class ActivationCleanupResponse(CamelModel):
    success: bool = True
    result: ActivationCleanupResult


# Audit schemas
class PerformerSchema(CamelModel):
    id: str
    name: str
    type: PerformerType


class AuditEntryResponse(CamelModel):
    id: int
    request_id: str
    action: AuditAction
    performed_by: PerformerSchema
    timestamp: datetime
    risk_score: int
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            request_id=entry.request_id,
            action=entry.action,
            performed_by=PerformerSchema(
                id=entry.performed_by_id,
                name=entry.performed_by_name,
                type=entry.performed_by_type
            ),
            timestamp=entry.timestamp,
            risk_score=entry.risk_score,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent
        )


class AuditSummary(CamelModel):
    total_actions: int
    verification_attempts: int
    notifications_sent: int
    high_risk_actions: int
    unique_performers: int


class RiskAnalysis(CamelModel):
    average_risk_score: float
    max_risk_score: int
    risk_events: List[AuditEntryResponse]


class AuditReportResponse(CamelModel):
    success: bool = True
    request_id: str
    summary: AuditSummary
    timeline: List[AuditEntryResponse]
    risk_analysis: RiskAnalysis

    @classmethod
    def from_report(cls, report: Dict[str, Any]) -> "AuditReportResponse":
        risk = report["risk_analysis"]
        return cls(
            request_id=report["request_id"],
            summary=AuditSummary(**report["summary"]),
            timeline=[AuditEntryResponse.from_entry(e) for e in report["timeline"]],
            risk_analysis=RiskAnalysis(
                average_risk_score=risk["average_risk_score"],
                max_risk_score=risk["max_risk_score"],
                risk_events=[AuditEntryResponse.from_entry(e) for e in risk["risk_events"]]
            )
        )


class AuditEntryList(CamelModel):
    success: bool = True
    entries: List[AuditEntryResponse]
    count: int


# Emergency access token schemas
class TokenRevoke(CamelModel):
    token_id: Optional[str] = None
    reason: Optional[str] = None


class TokenValidate(CamelModel):
    token: Optional[str] = None


class TokenUsage(CamelModel):
    token_id: Optional[str] = None
    file_accessed: Optional[str] = None


class TokenResponse(CamelModel):
    id: str
    activation_request_id: Optional[str]
    contact_id: str
    contact_name: Optional[str]
    access_level: TokenAccessLevel
    token_type: TokenType
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime]
    revoked_at: Optional[datetime]
    max_uses: int
    current_uses: int


class ContactSchema(CamelModel):
    id: str
    name: Optional[str]


class TokenValidationResponse(CamelModel):
    success: bool = True
    valid: bool = True
    token: TokenResponse
    contact: ContactSchema
    remaining_uses: int
    expires_in: int


class AccessLogResponse(CamelModel):
    id: int
    token_id: Optional[str]
    contact_id: Optional[str]
    timestamp: datetime
    action: AccessLogAction
    success: bool
    ip_address: Optional[str]
    user_agent: Optional[str]
    file_accessed: Optional[str]
    error: Optional[str]
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_json")


class AccessLogList(CamelModel):
    success: bool = True
    logs: List[AccessLogResponse]


class TokenCleanupResult(CamelModel):
    cleaned: int
    errors: List[str]


class TokenCleanupResponse(CamelModel):
    success: bool = True
    result: TokenCleanupResult


class SharingStats(CamelModel):
    total_tokens: int
    active_tokens: int
    revoked_tokens: int
    expired_tokens: int
    total_uses: int
    unique_contacts: int


class SharingStatsResponse(CamelModel):
    success: bool = True
    stats: SharingStats


class MessageResponse(CamelModel):
    success: bool = True
    message: str


# Error response
class ErrorResponse(CamelModel):
    """Response when a call fails."""
    success: bool = False
    error: str
    valid: Optional[bool] = None
    reason: Optional[str] = None
