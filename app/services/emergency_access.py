"""
Emergency access tokens.

Issues bounded-use, time-limited JWT access tokens for emergency contacts,
validates and revokes them, and keeps an append-only access log.
"""
import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import jwt
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import Settings
from app.models.domain import ActivationRequest, EmergencyAccessToken, AccessLog
from app.models.enums import (
    ActivationLevel,
    TokenAccessLevel,
    TokenType,
    AccessLogAction
)
from app.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PERMANENT_TOKEN_HOURS = 100 * 365 * 24
PERMANENT_TOKEN_MAX_USES = 999999
LONG_TERM_TOKEN_HOURS = 2 * 365 * 24
LONG_TERM_TOKEN_MAX_USES = 1000

ACCESS_LEVEL_BY_ACTIVATION_LEVEL = {
    ActivationLevel.FULL: TokenAccessLevel.FULL,
    ActivationLevel.PARTIAL: TokenAccessLevel.DOWNLOAD,
    ActivationLevel.LIMITED: TokenAccessLevel.VIEW,
    ActivationLevel.VIEW_ONLY: TokenAccessLevel.VIEW,
    ActivationLevel.CUSTOM: TokenAccessLevel.VIEW,
}


@dataclass
class IssuedToken:
    """A freshly signed token and its stored record."""
    token: str
    record: EmergencyAccessToken


@dataclass
class TokenValidation:
    valid: bool
    token: Optional[EmergencyAccessToken] = None
    contact: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    remaining_uses: Optional[int] = None
    expires_in: Optional[int] = None


@dataclass
class CleanupResult:
    cleaned: int = 0
    errors: List[str] = field(default_factory=list)


def _epoch(moment: datetime) -> int:
    """Naive UTC datetime -> unix seconds."""
    return calendar.timegm(moment.utctimetuple())


class EmergencyAccessService:
    """Token issuance and validation backed by the emergency_access_tokens table."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    # Issuance

    def generate_token(
        self,
        contact_id: str,
        contact_name: Optional[str] = None,
        access_level=TokenAccessLevel.VIEW,
        token_type=TokenType.TEMPORARY,
        expiration_hours: Optional[int] = None,
        max_uses: Optional[int] = None,
        ip_restrictions: Optional[List[str]] = None,
        activation_request_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        commit: bool = True
    ) -> IssuedToken:
        """
        Create and sign a token.

        Defaults depend on token_type: temporary tokens live
        TOKEN_EXPIRATION_HOURS with TOKEN_MAX_USES uses, long_term tokens
        two years with 1000 uses, permanent tokens effectively forever.
        An explicit expires_at wins over every default. With commit=False
        the record is only flushed and the caller commits.
        """
        if not contact_id:
            raise ValidationError("Contact ID is required")
        now = now or datetime.utcnow()
        token_type = TokenType(token_type)

        if token_type == TokenType.PERMANENT:
            hours = PERMANENT_TOKEN_HOURS
            default_uses = PERMANENT_TOKEN_MAX_USES
        elif token_type == TokenType.LONG_TERM:
            hours = expiration_hours or LONG_TERM_TOKEN_HOURS
            default_uses = LONG_TERM_TOKEN_MAX_USES
        else:
            hours = expiration_hours or self.settings.TOKEN_EXPIRATION_HOURS
            default_uses = self.settings.TOKEN_MAX_USES

        record = EmergencyAccessToken(
            id=str(uuid.uuid4()),
            activation_request_id=activation_request_id,
            contact_id=contact_id,
            contact_name=contact_name,
            access_level=TokenAccessLevel(access_level),
            token_type=token_type,
            created_at=now,
            expires_at=expires_at or now + timedelta(hours=hours),
            max_uses=max_uses or default_uses,
            current_uses=0,
            ip_restrictions=ip_restrictions,
            metadata_json=metadata
        )
        self.db.add(record)
        self._log_access(
            AccessLogAction.CREATED, record, success=True, now=now,
            metadata={
                "expires_at": record.expires_at.isoformat(),
                "max_uses": record.max_uses,
                "activation_request_id": activation_request_id,
            }
        )
        if commit:
            self.db.commit()
        else:
            self.db.flush()
        self.db.refresh(record)

        logger.info("Issued %s token %s for contact %s", token_type.value, record.id, contact_id)
        return IssuedToken(token=self.sign(record), record=record)

    def issue_for_activation(self, request: ActivationRequest, now: Optional[datetime] = None) -> IssuedToken:
        """
        Token for the initiator of an ACTIVE request, valid until the grant
        ends. Flushed only: committed with the activation.
        """
        return self.generate_token(
            contact_id=request.initiator_id,
            contact_name=request.initiator_name,
            access_level=ACCESS_LEVEL_BY_ACTIVATION_LEVEL.get(request.activation_level, TokenAccessLevel.VIEW),
            activation_request_id=request.id,
            expires_at=request.expires_at,
            metadata={
                "activation_type": request.type.value,
                "initiator_role": request.initiator_role.value,
                "user_id": request.user_id,
            },
            now=now,
            commit=False
        )

    def sign(self, record: EmergencyAccessToken) -> str:
        payload = {
            "tokenId": record.id,
            "contactId": record.contact_id,
            "accessLevel": record.access_level.value,
            "exp": _epoch(record.expires_at),
        }
        return jwt.encode(payload, self.settings.JWT_SECRET, algorithm=self.settings.JWT_ALGORITHM)

    # Validation and usage

    def validate_token(
        self,
        token: str,
        ip_address: Optional[str] = None,
        check_expiration: bool = True,
        check_uses: bool = True,
        check_ip_restrictions: bool = True,
        now: Optional[datetime] = None
    ) -> TokenValidation:
        """Check signature, revocation, expiry, remaining uses and IP allow-list."""
        now = now or datetime.utcnow()
        try:
            claims = jwt.decode(
                token,
                self.settings.JWT_SECRET,
                algorithms=[self.settings.JWT_ALGORITHM],
                options={"verify_exp": check_expiration}
            )
        except jwt.ExpiredSignatureError:
            return TokenValidation(valid=False, error="Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected malformed emergency token: %s", e)
            return TokenValidation(valid=False, error="Invalid token")

        record = self._find(claims.get("tokenId"))
        if record is None:
            return TokenValidation(valid=False, error="Token not found")

        if record.revoked_at is not None:
            return self._refuse(record, "Token has been revoked", AccessLogAction.FAILED, ip_address, now)

        if check_expiration and now > record.expires_at:
            return self._refuse(record, "Token has expired", AccessLogAction.EXPIRED, ip_address, now)

        if check_uses and record.current_uses >= record.max_uses:
            return self._refuse(record, "Token has reached maximum uses", AccessLogAction.FAILED, ip_address, now)

        if check_ip_restrictions and record.ip_restrictions and ip_address:
            if ip_address not in record.ip_restrictions:
                return self._refuse(record, "Access denied from this IP address", AccessLogAction.FAILED, ip_address, now)

        self._log_access(AccessLogAction.VALIDATED, record, success=True, ip_address=ip_address, now=now)
        self.db.commit()

        return TokenValidation(
            valid=True,
            token=record,
            contact={"id": record.contact_id, "name": record.contact_name},
            remaining_uses=record.max_uses - record.current_uses,
            expires_in=int((record.expires_at - now).total_seconds())
        )

    def record_usage(
        self,
        token_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        file_accessed: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> EmergencyAccessToken:
        """Consume one use. The increment is conditional so max_uses is never exceeded."""
        now = now or datetime.utcnow()
        record = self._get(token_id)
        if record.revoked_at is not None:
            raise ValidationError("Token has been revoked")

        rows = self.db.query(EmergencyAccessToken).filter(
            EmergencyAccessToken.id == token_id,
            EmergencyAccessToken.current_uses < EmergencyAccessToken.max_uses
        ).update(
            {
                EmergencyAccessToken.current_uses: EmergencyAccessToken.current_uses + 1,
                EmergencyAccessToken.used_at: now,
            },
            synchronize_session="fetch"
        )
        if rows != 1:
            self.db.rollback()
            raise ValidationError("Token has reached maximum uses")

        self._log_access(
            AccessLogAction.ACCESSED, record, success=True, ip_address=ip_address,
            user_agent=user_agent, file_accessed=file_accessed, now=now
        )
        self.db.commit()
        self.db.refresh(record)
        return record

    # Revocation

    def revoke_token(self, token_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> EmergencyAccessToken:
        """Revoke a token. Revoking twice keeps the first revocation."""
        now = now or datetime.utcnow()
        record = self._get(token_id)
        if record.revoked_at is None:
            record.revoked_at = now
            record.revoke_reason = reason
            self._log_access(AccessLogAction.REVOKED, record, success=True, now=now, metadata={"reason": reason})
            self.db.commit()
            logger.info("Revoked emergency token %s", token_id)
        return record

    def revoke_for_activation(self, activation_request_id: str, reason: Optional[str] = None,
                              now: Optional[datetime] = None) -> int:
        """Revoke every live token issued for an activation request. The caller commits."""
        now = now or datetime.utcnow()
        records = self.db.query(EmergencyAccessToken).filter(
            EmergencyAccessToken.activation_request_id == activation_request_id,
            EmergencyAccessToken.revoked_at.is_(None)
        ).all()
        for record in records:
            record.revoked_at = now
            record.revoke_reason = reason
            self._log_access(AccessLogAction.REVOKED, record, success=True, now=now, metadata={"reason": reason})
        self.db.flush()
        if records:
            logger.info("Revoked %d token(s) for activation request %s", len(records), activation_request_id)
        return len(records)

    # Reporting and maintenance

    def get_access_logs(
        self,
        token_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        action=None,
        limit: int = 100
    ) -> List[AccessLog]:
        """Access log entries, newest first."""
        query = self.db.query(AccessLog)
        if token_id:
            query = query.filter(AccessLog.token_id == token_id)
        if contact_id:
            query = query.filter(AccessLog.contact_id == contact_id)
        if action:
            try:
                action = AccessLogAction(action)
            except ValueError:
                raise ValidationError(f"Invalid access log action '{action}'")
            query = query.filter(AccessLog.action == action)
        query = query.order_by(AccessLog.timestamp.desc(), AccessLog.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> CleanupResult:
        """Delete tokens past their expiry and trim the access log."""
        now = now or datetime.utcnow()
        result = CleanupResult()

        expired = self.db.query(EmergencyAccessToken).filter(EmergencyAccessToken.expires_at < now).all()
        for record in expired:
            try:
                self._log_access(AccessLogAction.EXPIRED, record, success=True, now=now)
                self.db.delete(record)
                self.db.flush()
                result.cleaned += 1
            except Exception as e:
                logger.exception("Failed to remove expired token %s", record.id)
                result.errors.append(f"Failed to process {record.id}: {e}")

        self._trim_access_logs()
        self.db.commit()
        logger.info("Token cleanup removed %d expired token(s)", result.cleaned)
        return result

    def get_sharing_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        query = self.db.query(EmergencyAccessToken)
        live = query.filter(
            EmergencyAccessToken.revoked_at.is_(None),
            EmergencyAccessToken.expires_at >= now
        )
        return {
            "total_tokens": query.count(),
            "active_tokens": live.count(),
            "revoked_tokens": query.filter(EmergencyAccessToken.revoked_at.isnot(None)).count(),
            "expired_tokens": query.filter(
                EmergencyAccessToken.revoked_at.is_(None),
                EmergencyAccessToken.expires_at < now
            ).count(),
            "total_uses": self.db.query(func.coalesce(func.sum(EmergencyAccessToken.current_uses), 0)).scalar(),
            "unique_contacts": self.db.query(func.count(func.distinct(EmergencyAccessToken.contact_id))).scalar(),
        }

    # Internals

    def _find(self, token_id: Optional[str]) -> Optional[EmergencyAccessToken]:
        if not token_id:
            return None
        return self.db.query(EmergencyAccessToken).filter(EmergencyAccessToken.id == token_id).first()

    def _get(self, token_id: str) -> EmergencyAccessToken:
        record = self._find(token_id)
        if record is None:
            raise NotFoundError(f"Token '{token_id}' not found")
        return record

    def _refuse(self, record: EmergencyAccessToken, error: str, action: AccessLogAction,
                ip_address: Optional[str], now: datetime) -> TokenValidation:
        self._log_access(action, record, success=False, ip_address=ip_address, error=error, now=now)
        self.db.commit()
        logger.warning("Emergency token %s refused: %s", record.id, error)
        return TokenValidation(valid=False, error=error)

    def _log_access(
        self,
        action: AccessLogAction,
        record: EmergencyAccessToken,
        success: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        file_accessed: Optional[str] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> AccessLog:
        log = AccessLog(
            token_id=record.id,
            contact_id=record.contact_id,
            timestamp=now or datetime.utcnow(),
            action=action,
            success=success,
            ip_address=ip_address,
            user_agent=user_agent,
            file_accessed=file_accessed,
            error=error,
            metadata_json=metadata
        )
        self.db.add(log)
        return log

    def _trim_access_logs(self) -> None:
        """Keep only the newest ACCESS_LOG_RETENTION rows."""
        keep = self.settings.ACCESS_LOG_RETENTION
        cutoff = self.db.query(AccessLog.id).order_by(AccessLog.id.desc()).offset(keep).limit(1).scalar()
        if cutoff is not None:
            self.db.query(AccessLog).filter(AccessLog.id <= cutoff).delete(synchronize_session=False)
