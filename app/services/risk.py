"""
Risk scoring for activation audit entries.

Scores are integers 0-10, used for display and filtering only. They never
block a transition.
"""
from typing import Any, Dict, Iterable, List, Optional

from app.models.audit import AuditAction, AuditEntry
from app.models.domain import ActivationRequest
from app.models.enums import (
    ActivationType,
    UrgencyLevel,
    ActivationLevel,
    VerificationFailure
)

MIN_RISK_SCORE = 0
MAX_RISK_SCORE = 10
HIGH_RISK_THRESHOLD = 7

BASE_SCORES = {
    AuditAction.REQUEST_CREATED: 5,
    AuditAction.REQUEST_VERIFIED: 2,
    AuditAction.REQUEST_REJECTED: 6,
    AuditAction.REQUEST_ACTIVATED: 8,
    AuditAction.REQUEST_EXPIRED: 3,
    AuditAction.REQUEST_CANCELLED: 3,
    AuditAction.VERIFICATION_ATTEMPTED: 4,
    AuditAction.VERIFICATION_FAILED: 6,
    AuditAction.ACCESS_GRANTED: 7,
    AuditAction.ACCESS_REVOKED: 2,
    AuditAction.NOTIFICATION_SENT: 1,
    AuditAction.NOTIFICATION_FAILED: 2,
    AuditAction.CREDENTIALS_REGISTERED: 3,
    AuditAction.CREDENTIALS_VERIFIED: 2,
}

# Adjustments applied to a newly created request
TYPE_ADJUSTMENT = {
    ActivationType.PANIC_BUTTON: 3,
    ActivationType.MEDICAL_PROFESSIONAL: 2,
    ActivationType.LEGAL_REPRESENTATIVE: 2,
    ActivationType.SMS_CODE: 1,
}
URGENCY_ADJUSTMENT = {
    UrgencyLevel.CRITICAL: 2,
    UrgencyLevel.HIGH: 1,
}
LEVEL_ADJUSTMENT = {
    ActivationLevel.FULL: 2,
    ActivationLevel.PARTIAL: 1,
}

ACTIVATION_SCORE_BY_URGENCY = {
    UrgencyLevel.CRITICAL: 8,
    UrgencyLevel.HIGH: 7,
    UrgencyLevel.MEDIUM: 6,
    UrgencyLevel.LOW: 5,
}

WRONG_CODE_SCORE = 7


def clamp(score: int) -> int:
    return max(MIN_RISK_SCORE, min(MAX_RISK_SCORE, int(score)))


class RiskScorer:
    """
    Assigns a risk score to an auditable action.

    The workflow writes the request lifecycle actions itself. Notification
    and credential actions come from the services that send notifications
    and register credentials, which record them through AuditLog.append;
    reports count them like any other entry.
    """

    def score(
        self,
        action: AuditAction,
        request: Optional[ActivationRequest] = None,
        failure: Optional[VerificationFailure] = None
    ) -> int:
        action = AuditAction(action)

        if action == AuditAction.REQUEST_CREATED and request is not None:
            return self._creation_score(request)

        if action == AuditAction.REQUEST_ACTIVATED and request is not None:
            return clamp(ACTIVATION_SCORE_BY_URGENCY.get(request.urgency_level, BASE_SCORES[action]))

        if action == AuditAction.VERIFICATION_FAILED and failure == VerificationFailure.INVALID_CODE:
            return WRONG_CODE_SCORE

        return clamp(BASE_SCORES[action])

    def _creation_score(self, request: ActivationRequest) -> int:
        score = BASE_SCORES[AuditAction.REQUEST_CREATED]
        score += TYPE_ADJUSTMENT.get(request.type, 0)
        score += URGENCY_ADJUSTMENT.get(request.urgency_level, 0)
        score += LEVEL_ADJUSTMENT.get(request.activation_level, 0)
        return clamp(score)

    def build_report(self, entries: Iterable[AuditEntry]) -> Dict[str, Any]:
        """
        Aggregate the audit trail of one request.

        Returns a summary, the timeline (oldest first) and a risk analysis
        with the average and maximum score plus every entry scoring 7 or more.
        """
        timeline: List[AuditEntry] = sorted(entries, key=lambda e: (e.timestamp, e.id))
        scores = [e.risk_score for e in timeline]
        risk_events = [e for e in timeline if e.risk_score >= HIGH_RISK_THRESHOLD]

        verification_attempts = sum(
            1 for e in timeline
            if e.action in (AuditAction.VERIFICATION_ATTEMPTED, AuditAction.VERIFICATION_FAILED)
            or (e.details or {}).get("verification_method") is not None
        )

        return {
            "summary": {
                "total_actions": len(timeline),
                "verification_attempts": verification_attempts,
                "notifications_sent": sum(1 for e in timeline if e.action == AuditAction.NOTIFICATION_SENT),
                "high_risk_actions": len(risk_events),
                "unique_performers": len({e.performed_by_id for e in timeline}),
            },
            "timeline": timeline,
            "risk_analysis": {
                "average_risk_score": (sum(scores) / len(scores)) if scores else 0.0,
                "max_risk_score": max(scores, default=0),
                "risk_events": risk_events,
            },
        }
