from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import jwt

from idcore.config import TWO_FACTOR_PENDING_TTL_SECONDS, Settings
from idcore.logging import get_logger
from idcore.service.errors import AuthError, ErrorKind
from idcore.service.permissions import permissions_for_context, permissions_for_role
from idcore.storage.models import OtpContext, User

logger = get_logger(__name__)

PHONE_SUBJECT_PREFIX = "phone:"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TEMP = "temp"
    TWO_FACTOR_PENDING = "2fa_pending"


class TokenSigner(Protocol):
    """Signs claim sets and verifies signed tokens.

    ``decode`` raises :class:`jwt.InvalidTokenError` subclasses; the claim
    shapes do not depend on the signing scheme.
    """

    def sign(self, claims: Dict[str, Any]) -> str: ...

    def decode(self, token: str, *, issuer: str) -> Dict[str, Any]: ...


class HmacSigner:
    """Shared-secret JWT signing (HS256 by default)."""

    _REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub"]

    def __init__(self, secret: str, algorithm: str = "HS256", *, leeway: int = 0) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret
        self.algorithm = algorithm
        self.leeway = leeway

    def sign(self, claims: Dict[str, Any]) -> str:
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def decode(self, token: str, *, issuer: str) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self.algorithm],
            issuer=issuer,
            leeway=self.leeway,
            options={"require": self._REQUIRED_CLAIMS},
        )


class TokenService:
    """Mints and verifies the four token kinds used by the identity core."""

    def __init__(
        self,
        signer: TokenSigner,
        *,
        issuer: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        temp_ttl_seconds: int = 900,
        pending_ttl_seconds: int = TWO_FACTOR_PENDING_TTL_SECONDS,
    ) -> None:
        self.signer = signer
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.temp_ttl_seconds = temp_ttl_seconds
        self.pending_ttl_seconds = pending_ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            HmacSigner(settings.jwt_secret, settings.jwt_algorithm),
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            temp_ttl_seconds=settings.temp_token_ttl_seconds,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _mint(self, claims: Dict[str, Any], ttl_seconds: int) -> str:
        issued_at = int(self._now().timestamp())
        payload = dict(claims)
        payload.update(
            {
                "iss": self.issuer,
                "iat": issued_at,
                "exp": issued_at + ttl_seconds,
            }
        )
        return self.signer.sign(payload)

    def mint_access(self, user: User) -> str:
        claims: Dict[str, Any] = {
            "sub": user.id,
            "type": TokenType.ACCESS.value,
            "email": user.email,
            "role": user.role.value,
            "permissions": permissions_for_role(user.role),
        }
        if user.partner_id:
            claims["partnerId"] = user.partner_id
        return self._mint(claims, self.access_ttl_seconds)

    def mint_refresh(
        self, user_id: str, token_id: str, device_id: Optional[str] = None
    ) -> str:
        claims: Dict[str, Any] = {
            "sub": user_id,
            "type": TokenType.REFRESH.value,
            "jti": token_id,
        }
        if device_id:
            claims["deviceId"] = device_id
        return self._mint(claims, self.refresh_ttl_seconds)

    def mint_temp(
        self,
        phone: str,
        context: OtpContext,
        reference_id: str,
        tracking_code: Optional[str] = None,
    ) -> str:
        context = OtpContext(context)
        claims = {
            "sub": PHONE_SUBJECT_PREFIX + phone,
            "type": TokenType.TEMP.value,
            "context": context.value,
            "referenceId": reference_id,
            "trackingCode": tracking_code,
            "permissions": permissions_for_context(context),
        }
        return self._mint(claims, self.temp_ttl_seconds)

    def mint_two_factor_pending(self, user_id: str) -> str:
        claims = {"sub": user_id, "type": TokenType.TWO_FACTOR_PENDING.value}
        return self._mint(claims, self.pending_ttl_seconds)

    def verify(
        self, token: Optional[str], expected_type: Optional[TokenType] = None
    ) -> Dict[str, Any]:
        """Check signature, issuer and expiry, and optionally the token kind."""
        if not token:
            raise AuthError(ErrorKind.INVALID_TOKEN)
        try:
            claims = self.signer.decode(token, issuer=self.issuer)
        except jwt.ExpiredSignatureError:
            raise AuthError(ErrorKind.EXPIRED_TOKEN) from None
        except jwt.InvalidTokenError as exc:
            logger.info("token_rejected", reason=type(exc).__name__)
            raise AuthError(ErrorKind.INVALID_TOKEN) from None
        if expected_type is not None and claims.get("type") != expected_type.value:
            logger.info(
                "token_type_mismatch",
                expected=expected_type.value,
                actual=claims.get("type"),
            )
            raise AuthError(ErrorKind.INVALID_TOKEN)
        return claims

    @staticmethod
    def unsafe_extract_subject(token: Optional[str]) -> Optional[str]:
        """Read ``sub`` without checking the signature. For logs only, never for access decisions."""
        if not token:
            return None
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None
        subject = claims.get("sub")
        return subject if isinstance(subject, str) else None
