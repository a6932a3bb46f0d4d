"""API routes for emergency activation and emergency access tokens."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from app.api.dependencies import (
    get_request_context,
    get_token_service,
    get_workflow
)
from app.api.schemas import (
    AccessLogList,
    AccessLogResponse,
    ActivationCleanupResponse,
    ActivationCleanupResult,
    ActivationRequestCreate,
    ActivationRequestEnvelope,
    ActivationRequestList,
    ActivationRequestResponse,
    AuditEntryList,
    AuditEntryResponse,
    AuditReportResponse,
    CancellationSubmit,
    ContactSchema,
    ErrorResponse,
    MessageResponse,
    SharingStats,
    SharingStatsResponse,
    TokenCleanupResponse,
    TokenCleanupResult,
    TokenResponse,
    TokenRevoke,
    TokenUsage,
    TokenValidate,
    TokenValidationResponse,
    VerificationResponse,
    VerificationSubmit
)
from app.models.audit import AuditAction
from app.services.emergency_access import EmergencyAccessService
from app.services.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    VerificationFailed
)
from app.services.state_machine import ActivationWorkflow, RequestContext
from app.services.store import Initiator

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    404: {"model": ErrorResponse, "description": "Unknown id"},
    500: {"model": ErrorResponse, "description": "Unexpected failure"},
}


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    content = {"success": False, "error": message}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status_code, content=content)


def handle_error(exc: Exception, action: str) -> JSONResponse:
    """
    Map a service error to an HTTP response.

    Unclassified errors are logged with their traceback and reported to the
    client only as a generic message.
    """
    if isinstance(exc, VerificationFailed):
        logger.warning("%s refused: %s", action, exc.message)
        return error_response(status.HTTP_401_UNAUTHORIZED, exc.message, valid=False, reason=exc.reason)
    if isinstance(exc, ValidationError):
        logger.info("%s rejected: %s", action, exc.message)
        return error_response(status.HTTP_400_BAD_REQUEST, exc.message)
    if isinstance(exc, NotFoundError):
        logger.info("%s: %s", action, exc.message)
        return error_response(status.HTTP_404_NOT_FOUND, exc.message)
    if isinstance(exc, InvalidTransitionError):
        logger.info("%s conflict: %s", action, exc.message)
        return error_response(status.HTTP_409_CONFLICT, exc.message, currentStatus=exc.current_status)
    logger.exception("Failed to %s", action)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Failed to {action}")


# Activation request endpoints
@router.post("/activation/requests", response_model=ActivationRequestEnvelope,
             status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
def create_activation_request(
    body: ActivationRequestCreate,
    workflow: ActivationWorkflow = Depends(get_workflow),
    context: RequestContext = Depends(get_request_context)
):
    """Create an emergency activation request in pending_verification."""
    try:
        request = workflow.request_activation(
            body.type,
            initiator=Initiator(id=body.initiator.id, name=body.initiator.name, role=body.initiator.role),
            user_id=body.user_id,
            reason=body.reason,
            urgency_level=body.urgency_level,
            activation_level=body.activation_level,
            metadata=body.metadata,
            context=context
        )
        return ActivationRequestEnvelope(request=ActivationRequestResponse.from_request(request))
    except Exception as e:
        return handle_error(e, "create activation request")


@router.get("/activation/requests", response_model=ActivationRequestList, responses=ERROR_RESPONSES)
def list_active_requests(
    user_id: str = Query(..., alias="userId", min_length=1),
    workflow: ActivationWorkflow = Depends(get_workflow)
):
    """Non-terminal requests for a user. Clients poll this endpoint."""
    try:
        requests = workflow.list_active(user_id)
        return ActivationRequestList(requests=[ActivationRequestResponse.from_request(r) for r in requests])
    except Exception as e:
        return handle_error(e, "list activation requests")


@router.get("/activation/requests/{request_id}", response_model=ActivationRequestEnvelope, responses=ERROR_RESPONSES)
def get_activation_request(request_id: str, workflow: ActivationWorkflow = Depends(get_workflow)):
    try:
        request = workflow.get_request(request_id)
        return ActivationRequestEnvelope(request=ActivationRequestResponse.from_request(request))
    except Exception as e:
        return handle_error(e, "get activation request")


@router.post("/activation/requests/{request_id}/verify", response_model=VerificationResponse, responses={
    **ERROR_RESPONSES,
    401: {"model": ErrorResponse, "description": "Verification refused (already_resolved, expired, invalid_code)"}
})
def verify_activation_request(
    request_id: str,
    body: VerificationSubmit,
    workflow: ActivationWorkflow = Depends(get_workflow),
    context: RequestContext = Depends(get_request_context)
):
    """
    Submit a verification. On success the request becomes active and an
    emergency access token is issued to the initiator.
    """
    try:
        result = workflow.submit_verification(request_id, body.method, body.code, context=context)
        return VerificationResponse(
            valid=result.valid,
            status=result.request.status,
            request=ActivationRequestResponse.from_request(result.request),
            token=result.token,
            token_id=result.token_id,
            remaining_uses=result.remaining_uses,
            expires_in=result.expires_in
        )
    except Exception as e:
        return handle_error(e, "verify activation request")


@router.post("/activation/requests/{request_id}/cancel", response_model=ActivationRequestEnvelope, responses={
    **ERROR_RESPONSES,
    409: {"model": ErrorResponse, "description": "Request already expired or rejected"}
})
def cancel_activation_request(
    request_id: str,
    body: CancellationSubmit,
    workflow: ActivationWorkflow = Depends(get_workflow),
    context: RequestContext = Depends(get_request_context)
):
    """Cancel a live request. Cancelling twice returns the cancelled request."""
    try:
        request = workflow.cancel_activation(request_id, body.reason, context=context)
        return ActivationRequestEnvelope(request=ActivationRequestResponse.from_request(request))
    except Exception as e:
        return handle_error(e, "cancel activation request")


@router.post("/activation/cleanup", response_model=ActivationCleanupResponse, responses=ERROR_RESPONSES)
def cleanup_expired_activations(workflow: ActivationWorkflow = Depends(get_workflow)):
    """Expire active requests whose grant has ended. Safe to call on any schedule."""
    try:
        return ActivationCleanupResponse(result=ActivationCleanupResult(expired=workflow.cleanup_expired()))
    except Exception as e:
        return handle_error(e, "clean up expired activations")


@router.get("/activation/audit", responses={
    **ERROR_RESPONSES,
    200: {"description": "Audit trail, audit report, or entries in a date range"}
})
def get_activation_audit(
    request_id: Optional[str] = Query(None, alias="requestId"),
    generate_report: bool = Query(False, alias="generateReport"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    action: Optional[AuditAction] = Query(None),
    min_risk_score: Optional[int] = Query(None, alias="minRiskScore", ge=0, le=10),
    workflow: ActivationWorkflow = Depends(get_workflow)
):
    """
    - requestId + generateReport=true: summary, timeline and risk analysis
    - requestId: the request's audit trail
    - startDate + endDate: entries across requests, newest first
    """
    try:
        if request_id and generate_report:
            return AuditReportResponse.from_report(workflow.get_audit_report(request_id))

        if request_id:
            trail = workflow.get_audit_trail(request_id)
            return AuditEntryList(entries=[AuditEntryResponse.from_entry(e) for e in trail], count=len(trail))

        if start_date and end_date:
            entries = workflow.audit_entries_between(
                start_date, end_date, action=action, min_risk_score=min_risk_score
            )
            return AuditEntryList(entries=[AuditEntryResponse.from_entry(e) for e in entries], count=len(entries))

        raise ValidationError("Either requestId or startDate and endDate are required")
    except Exception as e:
        return handle_error(e, "fetch audit logs")


# Emergency access token endpoints
@router.post("/emergency/sharing/tokens/revoke", response_model=MessageResponse, responses=ERROR_RESPONSES)
def revoke_token(body: TokenRevoke, tokens: EmergencyAccessService = Depends(get_token_service)):
    try:
        if not body.token_id:
            raise ValidationError("Token ID is required")
        tokens.revoke_token(body.token_id, body.reason)
        return MessageResponse(message="Token revoked successfully")
    except Exception as e:
        return handle_error(e, "revoke token")


@router.post("/emergency/access/validate", response_model=TokenValidationResponse, responses={
    **ERROR_RESPONSES,
    401: {"model": ErrorResponse, "description": "Token invalid, expired, revoked or used up"}
})
def validate_token(
    body: TokenValidate,
    tokens: EmergencyAccessService = Depends(get_token_service),
    context: RequestContext = Depends(get_request_context)
):
    try:
        if not body.token:
            raise ValidationError("Token is required")
        validation = tokens.validate_token(body.token, ip_address=context.ip_address)
        if not validation.valid:
            return error_response(status.HTTP_401_UNAUTHORIZED, validation.error or "Invalid token", valid=False)
        return TokenValidationResponse(
            token=TokenResponse.model_validate(validation.token),
            contact=ContactSchema(**validation.contact),
            remaining_uses=validation.remaining_uses,
            expires_in=validation.expires_in
        )
    except Exception as e:
        return handle_error(e, "validate token")


@router.post("/emergency/access/record", response_model=MessageResponse, responses=ERROR_RESPONSES)
def record_token_access(
    body: TokenUsage,
    tokens: EmergencyAccessService = Depends(get_token_service),
    context: RequestContext = Depends(get_request_context)
):
    """Consume one use of a token."""
    try:
        if not body.token_id:
            raise ValidationError("Token ID is required")
        tokens.record_usage(
            body.token_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            file_accessed=body.file_accessed
        )
        return MessageResponse(message="Access recorded")
    except Exception as e:
        return handle_error(e, "record access")


@router.get("/emergency/access/logs", response_model=AccessLogList, responses=ERROR_RESPONSES)
def get_access_logs(
    token_id: Optional[str] = Query(None, alias="tokenId"),
    contact_id: Optional[str] = Query(None, alias="contactId"),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    tokens: EmergencyAccessService = Depends(get_token_service)
):
    try:
        logs = tokens.get_access_logs(token_id=token_id, contact_id=contact_id, action=action, limit=limit)
        return AccessLogList(logs=[AccessLogResponse.model_validate(log) for log in logs])
    except Exception as e:
        return handle_error(e, "get access logs")


@router.post("/emergency/access/cleanup", response_model=TokenCleanupResponse, responses=ERROR_RESPONSES)
def cleanup_expired_tokens(tokens: EmergencyAccessService = Depends(get_token_service)):
    try:
        result = tokens.cleanup_expired_tokens()
        return TokenCleanupResponse(result=TokenCleanupResult(cleaned=result.cleaned, errors=result.errors))
    except Exception as e:
        return handle_error(e, "clean up expired tokens")


@router.get("/emergency/sharing/stats", response_model=SharingStatsResponse, responses=ERROR_RESPONSES)
def get_sharing_stats(tokens: EmergencyAccessService = Depends(get_token_service)):
    try:
        return SharingStatsResponse(stats=SharingStats(**tokens.get_sharing_stats()))
    except Exception as e:
        return handle_error(e, "get sharing statistics")
