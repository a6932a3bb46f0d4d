"""Append-only activation audit log."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.audit import AuditAction, AuditEntry
from app.models.enums import PerformerType
from app.services.risk import clamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Performer:
    """Who performed an audited action."""
    id: str
    name: str
    type: PerformerType = PerformerType.USER


SYSTEM = Performer(id="system", name="System", type=PerformerType.SYSTEM)


class AuditLog:
    """
    Writer and reader for AuditEntry rows.

    Entries are never updated or deleted; they accumulate for the
    lifetime of the request. append() flushes without committing so the
    caller can commit the entry together with the transition it records.
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        request_id: str,
        action: AuditAction,
        performed_by: Performer,
        risk_score: int,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> AuditEntry:
        entry = AuditEntry(
            request_id=request_id,
            action=AuditAction(action),
            performed_by_id=performed_by.id,
            performed_by_name=performed_by.name,
            performed_by_type=PerformerType(performed_by.type),
            timestamp=now or datetime.utcnow(),
            risk_score=clamp(risk_score),
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(
            "audit %s request=%s by=%s risk=%d",
            entry.action.value, request_id, performed_by.id, entry.risk_score
        )
        return entry

    def trail(self, request_id: str) -> List[AuditEntry]:
        """All entries for one request, oldest first."""
        return self.db.query(AuditEntry).filter(
            AuditEntry.request_id == request_id
        ).order_by(AuditEntry.timestamp, AuditEntry.id).all()

    def entries_between(
        self,
        start: datetime,
        end: datetime,
        action: Optional[AuditAction] = None,
        performed_by_type: Optional[PerformerType] = None,
        min_risk_score: Optional[int] = None
    ) -> List[AuditEntry]:
        """Entries in [start, end] across all requests, newest first."""
        query = self.db.query(AuditEntry).filter(
            AuditEntry.timestamp >= start,
            AuditEntry.timestamp <= end
        )
        if action is not None:
            query = query.filter(AuditEntry.action == AuditAction(action))
        if performed_by_type is not None:
            query = query.filter(AuditEntry.performed_by_type == PerformerType(performed_by_type))
        if min_risk_score is not None:
            query = query.filter(AuditEntry.risk_score >= min_risk_score)
        return query.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc()).all()
