"""
Activation workflow - the only component allowed to mutate activation requests.

All state transitions MUST go through here. Each state-changing call runs
under the request's lock, appends exactly one audit entry and commits the
transition and the entry together.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import Settings
from app.models.audit import AuditAction, AuditEntry
from app.models.domain import ActivationRequest, VerificationAttempt
from app.models.enums import (
    ActivationType,
    ActivationLevel,
    ActivationStatus,
    InitiatorRole,
    PerformerType,
    VerificationFailure,
    VerificationMethod,
    VerificationOutcome,
    TERMINAL_STATUSES
)
from app.services.audit_log import AuditLog, Performer, SYSTEM
from app.services.errors import (
    AlreadyResolved,
    Expired,
    InvalidCode,
    InvalidTransitionError,
    ValidationError
)
from app.services.risk import RiskScorer
from app.services.store import (
    ActivationRequestStore,
    Initiator,
    RequestLocks,
    coerce_enum,
    generate_verification_code
)
from app.services.verification import VerificationPolicy, VerificationDecision

logger = logging.getLogger(__name__)


DEFAULT_ACTIVATION_LEVEL = {
    ActivationType.PANIC_BUTTON: ActivationLevel.FULL,
    ActivationType.SMS_CODE: ActivationLevel.FULL,
    ActivationType.TRUSTED_CONTACT: ActivationLevel.PARTIAL,
    ActivationType.MEDICAL_PROFESSIONAL: ActivationLevel.PARTIAL,
    ActivationType.LEGAL_REPRESENTATIVE: ActivationLevel.LIMITED,
}

PERFORMER_TYPE_BY_ROLE = {
    InitiatorRole.USER: PerformerType.USER,
    InitiatorRole.TRUSTED_CONTACT: PerformerType.CONTACT,
    InitiatorRole.MEDICAL_PROFESSIONAL: PerformerType.PROFESSIONAL,
    InitiatorRole.LEGAL_REPRESENTATIVE: PerformerType.PROFESSIONAL,
    InitiatorRole.SYSTEM: PerformerType.SYSTEM,
}

_FAILURE_ERRORS = {
    VerificationFailure.ALREADY_RESOLVED: AlreadyResolved,
    VerificationFailure.EXPIRED: Expired,
    VerificationFailure.INVALID_CODE: InvalidCode,
}


@dataclass
class RequestContext:
    """Where a call came from."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class VerificationResult:
    valid: bool
    request: ActivationRequest
    token: Optional[str] = None
    token_id: Optional[str] = None
    remaining_uses: Optional[int] = None
    expires_in: Optional[int] = None


class ActivationWorkflow:
    """
    Orchestrates the activation lifecycle:

        create -> PENDING_VERIFICATION -> VERIFIED -> ACTIVE -> EXPIRED
                                       -> REJECTED
        any non-terminal state         -> CANCELLED

    Verification must precede activation, cancellation is always allowed
    on a live request, and the expiry sweep is the only way from ACTIVE
    to EXPIRED.

    token_issuer is the emergency access token service (or anything with
    issue_for_activation / revoke_for_activation); without one, verified
    requests are activated but no token is handed out.
    """

    def __init__(
        self,
        db: Session,
        settings: Settings,
        locks: Optional[RequestLocks] = None,
        policy: Optional[VerificationPolicy] = None,
        scorer: Optional[RiskScorer] = None,
        token_issuer=None,
        code_generator: Callable[[], str] = generate_verification_code
    ):
        self.db = db
        self.settings = settings
        self.store = ActivationRequestStore(db, locks, code_generator)
        self.policy = policy or VerificationPolicy(settings.verification_window)
        self.scorer = scorer or RiskScorer()
        self.audit = AuditLog(db)
        self.token_issuer = token_issuer

    # Creation

    def request_activation(
        self,
        activation_type,
        initiator: Initiator,
        user_id: str,
        reason: str,
        urgency_level,
        activation_level=None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None
    ) -> ActivationRequest:
        """
        Create a request in PENDING_VERIFICATION.

        Raises ValidationError on a missing reason or unknown enum values.
        When no activation level is given the type's default is used.
        """
        now = now or datetime.utcnow()
        context = context or RequestContext()
        activation_type = coerce_enum(ActivationType, activation_type, "activation type")
        if activation_level is None:
            activation_level = DEFAULT_ACTIVATION_LEVEL[activation_type]

        try:
            request = self.store.create(
                activation_type,
                initiator=initiator,
                user_id=user_id,
                reason=reason,
                urgency_level=urgency_level,
                activation_level=activation_level,
                metadata=metadata,
                now=now
            )
            self.audit.append(
                request.id,
                AuditAction.REQUEST_CREATED,
                performed_by=self._initiator_performer(request),
                risk_score=self.scorer.score(AuditAction.REQUEST_CREATED, request),
                details={
                    "type": request.type.value,
                    "urgency_level": request.urgency_level.value,
                    "activation_level": request.activation_level.value,
                    "reason": request.reason,
                    "metadata": metadata,
                },
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                now=now
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Activation request %s created: type=%s user=%s urgency=%s",
            request.id, request.type.value, request.user_id, request.urgency_level.value
        )
        return request

    # Verification

    def submit_verification(
        self,
        request_id: str,
        method,
        code: Optional[str] = None,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None
    ) -> VerificationResult:
        """
        Verify a pending request and, on success, activate it.

        At most one verification succeeds per request: the decision and the
        transition happen under the request's lock on a freshly read row,
        so concurrent submissions after the winner see a resolved request
        and fail with AlreadyResolved.

        The attempt and its audit entry are committed before a failure is
        raised (AlreadyResolved, Expired or InvalidCode).
        """
        now = now or datetime.utcnow()
        context = context or RequestContext()
        method = self.policy.parse_method(method)

        issued = None
        with self.store.lock(request_id):
            try:
                request = self.store.get(request_id, for_update=True)
                decision = self.policy.evaluate(request, method, code, now)
                self._record_attempt(request, method, code, decision, context, now)

                if decision.accepted:
                    self._activate(request, method, context, now)
                    if self.token_issuer is not None:
                        issued = self.token_issuer.issue_for_activation(request, now=now)
                elif decision.reason != VerificationFailure.ALREADY_RESOLVED:
                    self._refuse(request, method, decision.reason, context, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        if not decision.accepted:
            raise self._failure_error(request, decision.reason)

        logger.info("Activation request %s verified via %s and activated until %s",
                    request.id, method.value, request.expires_at.isoformat())
        result = VerificationResult(valid=True, request=request)
        if issued is not None:
            result.token = issued.token
            result.token_id = issued.record.id
            result.remaining_uses = issued.record.max_uses - issued.record.current_uses
            result.expires_in = int((issued.record.expires_at - now).total_seconds())
        return result

    def _record_attempt(self, request, method, code, decision: VerificationDecision, context, now) -> None:
        if decision.accepted:
            outcome = VerificationOutcome.ACCEPTED
        elif decision.reason == VerificationFailure.EXPIRED:
            outcome = VerificationOutcome.EXPIRED
        else:
            outcome = VerificationOutcome.REJECTED
        self.db.add(VerificationAttempt(
            request_id=request.id,
            method=method,
            submitted_code=code,
            outcome=outcome,
            failure_reason=decision.reason,
            ip_address=context.ip_address,
            timestamp=now
        ))

    def _activate(self, request: ActivationRequest, method: VerificationMethod,
                  context: RequestContext, now: datetime) -> None:
        """PENDING_VERIFICATION -> VERIFIED -> ACTIVE, audited as one activation."""
        try:
            grant = self.settings.grant_duration(request.type)
        except KeyError as e:
            raise ValidationError(str(e.args[0]))

        self.store.update(request.id, {
            "status": ActivationStatus.VERIFIED,
            "verification_method": method,
        })
        self.store.update(request.id, {
            "status": ActivationStatus.ACTIVE,
            "activated_at": now,
            "expires_at": now + grant,
        })
        self.audit.append(
            request.id,
            AuditAction.REQUEST_ACTIVATED,
            performed_by=self._owner_performer(request),
            risk_score=self.scorer.score(AuditAction.REQUEST_ACTIVATED, request),
            details={
                "verification_method": method.value,
                "old_status": ActivationStatus.PENDING_VERIFICATION.value,
                "via_status": ActivationStatus.VERIFIED.value,
                "new_status": ActivationStatus.ACTIVE.value,
                "activated_at": now.isoformat(),
                "expires_at": request.expires_at.isoformat(),
                "grant_hours": grant.total_seconds() / 3600,
            },
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            now=now
        )

    def _refuse(self, request: ActivationRequest, method: VerificationMethod,
                failure: VerificationFailure, context: RequestContext, now: datetime) -> None:
        """
        Expired windows reject the request outright. A wrong code only
        rejects once MAX_VERIFICATION_ATTEMPTS wrong codes have been seen.
        """
        attempts = request.failed_attempts or 0
        patch: Dict[str, Any] = {}
        if failure == VerificationFailure.INVALID_CODE:
            attempts += 1
            patch["failed_attempts"] = attempts

        reject = (
            failure == VerificationFailure.EXPIRED
            or attempts >= self.settings.MAX_VERIFICATION_ATTEMPTS
        )
        details = {
            "verification_method": method.value,
            "failure": failure.value,
            "attempt_number": attempts,
            "attempts_remaining": max(self.settings.MAX_VERIFICATION_ATTEMPTS - attempts, 0),
        }
        if failure == VerificationFailure.EXPIRED:
            details["window_closed_at"] = self.policy.window_closes_at(request).isoformat()

        if reject:
            patch.update({"status": ActivationStatus.REJECTED, "resolved_at": now})
            action = AuditAction.REQUEST_REJECTED
            details.update({
                "old_status": ActivationStatus.PENDING_VERIFICATION.value,
                "new_status": ActivationStatus.REJECTED.value,
            })
        else:
            action = AuditAction.VERIFICATION_FAILED

        self.store.update(request.id, patch)
        self.audit.append(
            request.id,
            action,
            performed_by=self._owner_performer(request),
            risk_score=self.scorer.score(action, request, failure=failure),
            details=details,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            now=now
        )

    def _failure_error(self, request: ActivationRequest, failure: VerificationFailure):
        if failure == VerificationFailure.ALREADY_RESOLVED:
            message = f"Activation request is already {request.status.value}"
        elif failure == VerificationFailure.EXPIRED:
            message = "Verification window has expired"
        else:
            remaining = max(self.settings.MAX_VERIFICATION_ATTEMPTS - (request.failed_attempts or 0), 0)
            message = f"Invalid verification code ({remaining} attempt(s) remaining)"
        logger.warning("Verification of activation request %s failed: %s", request.id, failure.value)
        return _FAILURE_ERRORS[failure](message, request_id=request.id)

    # Cancellation

    def cancel_activation(
        self,
        request_id: str,
        reason: str,
        performed_by: Optional[Performer] = None,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None
    ) -> ActivationRequest:
        """
        Move a live request to CANCELLED and revoke its tokens.

        Cancelling an already cancelled request is a no-op that returns it
        unchanged. EXPIRED and REJECTED requests cannot be cancelled.
        """
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")
        now = now or datetime.utcnow()
        context = context or RequestContext()
        performed_by = performed_by or SYSTEM

        with self.store.lock(request_id):
            try:
                request = self.store.get(request_id, for_update=True)
                if request.status == ActivationStatus.CANCELLED:
                    logger.info("Activation request %s already cancelled; nothing to do", request_id)
                    self.db.rollback()
                    return request
                if request.status in TERMINAL_STATUSES:
                    raise InvalidTransitionError(
                        f"Cannot cancel a request that is {request.status.value}",
                        current_status=request.status.value
                    )

                old_status = request.status
                self.store.update(request_id, {"status": ActivationStatus.CANCELLED, "resolved_at": now})
                self.audit.append(
                    request_id,
                    AuditAction.REQUEST_CANCELLED,
                    performed_by=performed_by,
                    risk_score=self.scorer.score(AuditAction.REQUEST_CANCELLED, request),
                    details={
                        "old_status": old_status.value,
                        "new_status": ActivationStatus.CANCELLED.value,
                        "reason": reason.strip(),
                        "active_seconds": (
                            (now - request.activated_at).total_seconds() if request.activated_at else None
                        ),
                    },
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    now=now
                )
                if self.token_issuer is not None and old_status == ActivationStatus.ACTIVE:
                    self.token_issuer.revoke_for_activation(request_id, reason=reason.strip(), now=now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info("Activation request %s cancelled from %s", request_id, old_status.value)
        return request

    # Expiry

    def expire_overdue(self, now: Optional[datetime] = None) -> List[ActivationRequest]:
        """
        ACTIVE requests whose grant has ended -> EXPIRED.

        Each request is re-read under its lock and expired only if it is
        still ACTIVE and overdue, so repeated or concurrent sweeps never
        expire or audit the same request twice.
        """
        now = now or datetime.utcnow()
        candidate_ids = [
            row.id for row in self.db.query(ActivationRequest.id).filter(
                ActivationRequest.status == ActivationStatus.ACTIVE,
                ActivationRequest.expires_at <= now
            ).all()
        ]

        expired = []
        for request_id in candidate_ids:
            with self.store.lock(request_id):
                try:
                    request = self.store.get(request_id, for_update=True)
                    if request.status != ActivationStatus.ACTIVE or request.expires_at > now:
                        self.db.rollback()
                        continue
                    self.store.update(request_id, {"status": ActivationStatus.EXPIRED, "resolved_at": now})
                    self.audit.append(
                        request_id,
                        AuditAction.REQUEST_EXPIRED,
                        performed_by=SYSTEM,
                        risk_score=self.scorer.score(AuditAction.REQUEST_EXPIRED, request),
                        details={
                            "old_status": ActivationStatus.ACTIVE.value,
                            "new_status": ActivationStatus.EXPIRED.value,
                            "activated_at": request.activated_at.isoformat(),
                            "expires_at": request.expires_at.isoformat(),
                        },
                        now=now
                    )
                    self.db.commit()
                except InvalidTransitionError:
                    # Another process moved it first
                    self.db.rollback()
                    logger.info("Activation request %s was resolved by another sweep", request_id)
                    continue
                except Exception:
                    self.db.rollback()
                    raise
            expired.append(request)

        if expired:
            logger.info("Expired %d activation request(s)", len(expired))
        return expired

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Run the expiry sweep; returns how many requests were expired."""
        return len(self.expire_overdue(now))

    # Reads

    def get_request(self, request_id: str) -> ActivationRequest:
        return self.store.get(request_id)

    def list_active(self, user_id: str) -> List[ActivationRequest]:
        return self.store.list_active(user_id)

    def get_audit_trail(self, request_id: str) -> List[AuditEntry]:
        self.store.get(request_id)
        return self.audit.trail(request_id)

    def get_audit_report(self, request_id: str) -> Dict[str, Any]:
        """Summary, timeline and risk analysis for one request."""
        self.store.get(request_id)
        report = self.scorer.build_report(self.audit.trail(request_id))
        report["request_id"] = request_id
        return report

    def audit_entries_between(self, start: datetime, end: datetime, **filters) -> List[AuditEntry]:
        if start > end:
            raise ValidationError("startDate must not be after endDate")
        return self.audit.entries_between(start, end, **filters)

    # Helpers

    @staticmethod
    def _initiator_performer(request: ActivationRequest) -> Performer:
        return Performer(
            id=request.initiator_id,
            name=request.initiator_name,
            type=PERFORMER_TYPE_BY_ROLE.get(request.initiator_role, PerformerType.USER)
        )

    @staticmethod
    def _owner_performer(request: ActivationRequest) -> Performer:
        return Performer(id=request.user_id, name="User", type=PerformerType.USER)
