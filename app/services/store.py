"""
Activation request store.

Keyed storage for ActivationRequest records. The store validates every
patch against the state machine but never commits: the workflow controller
owns the unit of work so a transition and its audit entry land together.
"""
import logging
import secrets
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.domain import ActivationRequest
from app.models.enums import (
    ActivationType,
    InitiatorRole,
    UrgencyLevel,
    ActivationLevel,
    ActivationStatus,
    TERMINAL_STATUSES
)
from app.services.errors import ValidationError, NotFoundError, InvalidTransitionError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    ActivationStatus.PENDING_VERIFICATION: {
        ActivationStatus.VERIFIED,
        ActivationStatus.REJECTED,
        ActivationStatus.CANCELLED,
    },
    ActivationStatus.VERIFIED: {
        ActivationStatus.ACTIVE,
        ActivationStatus.CANCELLED,
    },
    ActivationStatus.ACTIVE: {
        ActivationStatus.EXPIRED,
        ActivationStatus.CANCELLED,
    },
    ActivationStatus.EXPIRED: set(),
    ActivationStatus.CANCELLED: set(),
    ActivationStatus.REJECTED: set(),
}

IMMUTABLE_FIELDS = frozenset({
    "id", "type", "user_id", "created_at",
    "initiator_id", "initiator_name", "initiator_role",
})

MUTABLE_FIELDS = frozenset({
    "status", "reason", "urgency_level", "activation_level",
    "verification_code", "verification_method", "failed_attempts",
    "metadata_json", "activated_at", "expires_at", "resolved_at",
})

# States in which activated_at must be set / must be unset
_ACTIVATED_STATES = {ActivationStatus.ACTIVE, ActivationStatus.EXPIRED}
_UNACTIVATED_STATES = {
    ActivationStatus.PENDING_VERIFICATION,
    ActivationStatus.VERIFIED,
    ActivationStatus.REJECTED,
}


def generate_verification_code() -> str:
    """Six-digit one-time code."""
    return f"{secrets.randbelow(10 ** 6):06d}"


@dataclass(frozen=True)
class Initiator:
    """Who asked for emergency access."""
    id: str
    name: str
    role: InitiatorRole = InitiatorRole.USER


class RequestLocks:
    """
    Process-wide registry of per-request mutexes.

    The activation request is the unit of mutual exclusion; requests never
    share a lock. An entry lives only while some caller holds or waits on
    it, so ids that are never seen again do not accumulate.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, request_id: str):
        with self._guard:
            lock = self._locks.setdefault(request_id, threading.Lock())
            self._holders[request_id] = self._holders.get(request_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[request_id] -= 1
                if not self._holders[request_id]:
                    del self._holders[request_id]
                    del self._locks[request_id]

    def active(self) -> int:
        """Number of request ids currently held or waited on."""
        with self._guard:
            return len(self._locks)


def coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field} '{value}'. Expected one of: {allowed}")


class ActivationRequestStore:
    """Lookup and guarded mutation of ActivationRequest records."""

    def __init__(
        self,
        db: Session,
        locks: Optional[RequestLocks] = None,
        code_generator: Callable[[], str] = generate_verification_code
    ):
        self.db = db
        self.locks = locks or RequestLocks()
        self.code_generator = code_generator

    def lock(self, request_id: str):
        """Hold the mutex for one request across a read-modify-write."""
        return self.locks.hold(request_id)

    def create(
        self,
        activation_type,
        initiator: Initiator,
        user_id: str,
        reason: str,
        urgency_level,
        activation_level,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> ActivationRequest:
        """
        Add a new request in PENDING_VERIFICATION.

        Raises ValidationError for a blank reason or user id and for values
        outside the known enums.
        """
        if not reason or not reason.strip():
            raise ValidationError("Reason is required")
        if not user_id or not str(user_id).strip():
            raise ValidationError("User ID is required")
        if initiator is None or not initiator.id:
            raise ValidationError("Initiator is required")

        request = ActivationRequest(
            id=uuid.uuid4().hex,
            type=coerce_enum(ActivationType, activation_type, "activation type"),
            initiator_id=initiator.id,
            initiator_name=initiator.name or initiator.id,
            initiator_role=coerce_enum(InitiatorRole, initiator.role, "initiator role"),
            user_id=user_id,
            reason=reason.strip(),
            urgency_level=coerce_enum(UrgencyLevel, urgency_level, "urgency level"),
            activation_level=coerce_enum(ActivationLevel, activation_level, "activation level"),
            status=ActivationStatus.PENDING_VERIFICATION,
            verification_code=self.code_generator(),
            failed_attempts=0,
            metadata_json=metadata,
            created_at=now or datetime.utcnow()
        )
        self.db.add(request)
        self.db.flush()
        return request

    def get(self, request_id: str, for_update: bool = False) -> ActivationRequest:
        """
        Fetch one request. for_update re-reads the row (and row-locks it on
        databases that support SELECT ... FOR UPDATE).
        """
        query = self.db.query(ActivationRequest).filter(ActivationRequest.id == request_id)
        if for_update:
            query = query.populate_existing().with_for_update()
        request = query.first()
        if not request:
            raise NotFoundError(f"Activation request '{request_id}' not found")
        return request

    def list_active(self, user_id: str) -> List[ActivationRequest]:
        """Requests for a user that have not reached a terminal state."""
        return self.db.query(ActivationRequest).filter(
            ActivationRequest.user_id == user_id,
            ActivationRequest.status.notin_(list(TERMINAL_STATUSES))
        ).order_by(ActivationRequest.created_at.desc()).all()

    def list_by_status(self, status) -> List[ActivationRequest]:
        status = coerce_enum(ActivationStatus, status, "status")
        return self.db.query(ActivationRequest).filter(
            ActivationRequest.status == status
        ).order_by(ActivationRequest.created_at).all()

    def update(self, request_id: str, patch: Dict[str, Any]) -> ActivationRequest:
        """
        Apply a partial update.

        The write is a compare-and-set on the status read before the patch,
        so a concurrent writer that got there first makes this call fail
        instead of silently overwriting.
        """
        request = self.get(request_id)

        frozen = IMMUTABLE_FIELDS & patch.keys()
        if frozen:
            raise InvalidTransitionError(
                f"Cannot modify immutable field(s): {', '.join(sorted(frozen))}",
                current_status=request.status.value
            )
        unknown = patch.keys() - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")

        current = request.status
        values = dict(patch)
        new_status = coerce_enum(ActivationStatus, values.get("status", current), "status")
        values["status"] = new_status

        if new_status != current and new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move activation request from {current.value} to {new_status.value}",
                current_status=current.value
            )
        if new_status == current and current in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Activation request is already {current.value}",
                current_status=current.value
            )

        self._check_timestamps(request, values, new_status)

        rows = self.db.query(ActivationRequest).filter(
            ActivationRequest.id == request_id,
            ActivationRequest.status == current
        ).update(values, synchronize_session="fetch")

        if rows != 1:
            self.db.expire(request)
            logger.warning("Lost update race on activation request %s (expected %s)", request_id, current.value)
            raise InvalidTransitionError(
                f"Activation request changed concurrently; expected status {current.value}",
                current_status=current.value
            )
        return request

    def _check_timestamps(self, request: ActivationRequest, values: Dict[str, Any], status: ActivationStatus) -> None:
        """activated_at/expires_at must agree with the target status."""
        activated_at = values.get("activated_at", request.activated_at)
        expires_at = values.get("expires_at", request.expires_at)

        if status in _ACTIVATED_STATES and activated_at is None:
            raise InvalidTransitionError(
                f"{status.value} requires activated_at", current_status=request.status.value
            )
        if status in _UNACTIVATED_STATES and activated_at is not None:
            raise InvalidTransitionError(
                f"{status.value} request cannot carry activated_at", current_status=request.status.value
            )
        if expires_at is not None and activated_at is None:
            raise InvalidTransitionError(
                "expires_at requires activated_at", current_status=request.status.value
            )
        if activated_at is not None and activated_at < request.created_at:
            raise InvalidTransitionError(
                "activated_at cannot precede created_at", current_status=request.status.value
            )
        if activated_at is not None and expires_at is not None and expires_at < activated_at:
            raise InvalidTransitionError(
                "expires_at cannot precede activated_at", current_status=request.status.value
            )
