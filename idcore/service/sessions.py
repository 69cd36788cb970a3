from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from idcore.logging import get_logger
from idcore.service.audit import AuditRecorder
from idcore.service.errors import AuthError, ErrorKind
from idcore.service.hashing import token_digest
from idcore.service.tokens import TokenService, TokenType
from idcore.storage.common import IdentityStore
from idcore.storage.models import (
    AuthEventType,
    RefreshTokenRecord,
    RevokeReason,
    User,
)

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class SessionService:
    """Owns refresh-token records: issue, rotate, revoke.

    Each refresh token is stored as a record keyed by its ``jti`` holding a
    digest of the token string. Rotation revokes the presented record before
    minting its successor; presenting a record that is already dead revokes
    every live token of the principal.
    """

    def __init__(
        self,
        store: IdentityStore,
        tokens: TokenService,
        audit: AuditRecorder,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _persist_pair(
        self,
        user: User,
        *,
        device_id: Optional[str],
        device_info: Optional[str],
        ip: Optional[str],
        now: datetime,
    ) -> TokenPair:
        token_id = str(uuid.uuid4())
        refresh_token = self.tokens.mint_refresh(user.id, token_id, device_id)
        access_token = self.tokens.mint_access(user)
        self.store.create_refresh_token(
            RefreshTokenRecord(
                id=token_id,
                user_id=user.id,
                token_hash=token_digest(refresh_token),
                expires_at=now + timedelta(seconds=self.tokens.refresh_ttl_seconds),
                device_id=device_id,
                device_info=device_info,
                ip_address=ip,
                created_at=now,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl_seconds,
        )

    def issue_session(
        self,
        user: User,
        *,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Mint and persist a session. ``user_agent`` fills in missing device info."""
        now = self._now()
        pair = self._persist_pair(
            user,
            device_id=device_id,
            device_info=device_info or user_agent,
            ip=ip,
            now=now,
        )
        self.store.touch_last_login(user.id, now)
        return pair

    def rotate(
        self,
        refresh_token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        token_id = claims.get("jti")
        record = self.store.get_refresh_token(token_id) if token_id else None
        if not record or record.user_id != claims.get("sub"):
            self.logger.warning("refresh_token_unknown", user_id=claims.get("sub"))
            raise AuthError(ErrorKind.INVALID_TOKEN)
        if not hmac.compare_digest(record.token_hash, token_digest(refresh_token)):
            self.logger.warning("refresh_token_hash_mismatch", user_id=record.user_id)
            raise AuthError(ErrorKind.INVALID_TOKEN)

        now = self._now()
        if not record.is_valid(now):
            self._revoke_for_reuse(record, ip=ip, user_agent=user_agent, now=now)
            raise AuthError(ErrorKind.INVALID_TOKEN)

        user = self.store.get_user(record.user_id)
        if not user:
            raise AuthError(ErrorKind.INVALID_TOKEN)
        if not user.is_active:
            raise AuthError(ErrorKind.ACCOUNT_DISABLED)

        if not self.store.revoke_refresh_token(record.id, RevokeReason.ROTATION, now):
            # A concurrent rotation of the same token got there first
            self._revoke_for_reuse(record, ip=ip, user_agent=user_agent, now=now)
            raise AuthError(ErrorKind.INVALID_TOKEN)

        pair = self._persist_pair(
            user,
            device_id=record.device_id,
            device_info=record.device_info,
            ip=ip,
            now=now,
        )
        self.audit.record(
            AuthEventType.TOKEN_REFRESHED,
            success=True,
            user_id=user.id,
            ip=ip,
            user_agent=user_agent,
        )
        return pair

    def _revoke_for_reuse(
        self,
        record: RefreshTokenRecord,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> None:
        revoked = self.store.revoke_user_refresh_tokens(
            record.user_id, RevokeReason.SUSPICIOUS, now
        )
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            jti=record.id,
            previous_revoke_reason=record.revoke_reason.value if record.revoke_reason else None,
            revoked_count=revoked,
            ip=ip,
        )
        self.audit.record(
            AuthEventType.TOKEN_REVOKED,
            success=False,
            user_id=record.user_id,
            ip=ip,
            user_agent=user_agent,
            failure_reason="REFRESH_TOKEN_REUSE",
            details=f"revoked {revoked} live token(s)",
        )

    def logout(
        self,
        refresh_token: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Revoke the presented refresh token; unusable tokens are ignored."""
        try:
            claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        except AuthError:
            self.logger.info(
                "logout_token_unusable",
                subject=self.tokens.unsafe_extract_subject(refresh_token),
            )
            return
        user_id = claims.get("sub")
        record = self.store.get_refresh_token(claims.get("jti") or "")
        if not record or record.user_id != user_id:
            return
        revoked = self.store.revoke_refresh_token(record.id, RevokeReason.LOGOUT, self._now())
        self.audit.record(
            AuthEventType.LOGOUT,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            details=None if revoked else "already revoked",
        )

    def logout_all(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = self.revoke_all(user_id, RevokeReason.LOGOUT_ALL)
        self.audit.record(
            AuthEventType.LOGOUT_ALL,
            success=True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            details=f"revoked {revoked} session(s)",
        )
        return revoked

    def revoke_all(self, user_id: str, reason: RevokeReason) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, reason, self._now())
        self.logger.info(
            "refresh_tokens_revoked", user_id=user_id, reason=reason.value, count=revoked
        )
        return revoked
