"""
Verification policy - decides whether a submitted verification succeeds.

Pure: no database access and no side effects. The workflow controller
persists the attempt, the audit entry and the resulting transition.
"""
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.models.domain import ActivationRequest
from app.models.enums import (
    ActivationStatus,
    VerificationMethod,
    VerificationFailure,
    CODE_METHODS
)
from app.services.errors import ValidationError

CODE_LENGTH = 6


@dataclass(frozen=True)
class VerificationDecision:
    accepted: bool
    reason: Optional[VerificationFailure] = None


class VerificationPolicy:
    """
    Decision table:
    - a request that is no longer pending always fails with already_resolved
    - in_app succeeds unconditionally (the initiator is already
      authenticated by the surrounding session)
    - sms, email and two_factor need the 6-character code on record,
      compared case-insensitively, inside the verification window counted
      from request creation; past the window the result is expired
      whatever the code
    """

    def __init__(self, verification_window: timedelta = timedelta(minutes=5)):
        self.verification_window = verification_window

    def window_closes_at(self, request: ActivationRequest) -> datetime:
        return request.created_at + self.verification_window

    def evaluate(
        self,
        request: ActivationRequest,
        method,
        submitted_code: Optional[str],
        now: datetime
    ) -> VerificationDecision:
        method = self.parse_method(method)

        if request.status != ActivationStatus.PENDING_VERIFICATION:
            return VerificationDecision(False, VerificationFailure.ALREADY_RESOLVED)

        if method not in CODE_METHODS:
            return VerificationDecision(True)

        if now > self.window_closes_at(request):
            return VerificationDecision(False, VerificationFailure.EXPIRED)

        if not self.codes_match(request.verification_code, submitted_code):
            return VerificationDecision(False, VerificationFailure.INVALID_CODE)

        return VerificationDecision(True)

    @staticmethod
    def parse_method(method) -> VerificationMethod:
        if isinstance(method, VerificationMethod):
            return method
        try:
            return VerificationMethod(method)
        except ValueError:
            allowed = ", ".join(m.value for m in VerificationMethod)
            raise ValidationError(f"Invalid verification method '{method}'. Expected one of: {allowed}")

    @staticmethod
    def codes_match(expected: Optional[str], submitted: Optional[str]) -> bool:
        if not expected or submitted is None:
            return False
        submitted = submitted.strip()
        if len(submitted) != CODE_LENGTH:
            return False
        return hmac.compare_digest(submitted.upper().encode(), expected.upper().encode())
