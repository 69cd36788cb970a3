from __future__ import annotations

from typing import Optional, Protocol

from idcore.logging import get_logger, mask_email, mask_phone
from idcore.storage.models import AuditEvent, AuthEventType

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class AuditRecorder:
    """Writes authentication events without ever failing the caller.

    A sink failure is logged at error level (``audit_write_failed``) so
    monitoring picks it up, then swallowed.
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def record(
        self,
        kind: AuthEventType,
        *,
        success: bool,
        user_id: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            kind=kind,
            success=success,
            user_id=user_id,
            phone=phone,
            email=email,
            ip_address=ip,
            user_agent=user_agent,
            failure_reason=failure_reason,
            details=details,
        )
        try:
            self.sink.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_kind=kind.value,
                user_id=user_id,
                phone=mask_phone(phone) if phone else None,
                email=mask_email(email) if email else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
