"""FastAPI dependencies wiring the services for one HTTP request."""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import get_db
from app.services.emergency_access import EmergencyAccessService
from app.services.state_machine import ActivationWorkflow, RequestContext
from app.services.store import RequestLocks


def get_request_locks(request: Request) -> RequestLocks:
    """The per-process lock registry created by the application."""
    return request.app.state.request_locks


def get_token_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> EmergencyAccessService:
    return EmergencyAccessService(db, settings)


def get_workflow(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    locks: RequestLocks = Depends(get_request_locks),
    tokens: EmergencyAccessService = Depends(get_token_service)
) -> ActivationWorkflow:
    return ActivationWorkflow(db, settings, locks=locks, token_issuer=tokens)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if request.client:
        return request.client.host
    return "unknown"


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent")
    )
