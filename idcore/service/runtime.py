from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from idcore.config import get_settings, reset_settings_cache
from idcore.logging import get_logger
from idcore.service.audit import AuditRecorder
from idcore.service.auth import AuthService
from idcore.service.delivery import build_sms_gateway
from idcore.service.hashing import SecretHasher
from idcore.service.otp import OtpService
from idcore.service.sessions import SessionService
from idcore.service.tokens import TokenService
from idcore.service.two_factor import TwoFactorService
from idcore.storage.memory import MemoryCache, MemoryStore
from idcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(
            mfa_encryption_key=self.settings.mfa_secret_key or self.settings.jwt_secret
        )

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_cache:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.use_memory_cache:
                raise RuntimeError(
                    "Redis is required for OTP codes, attempt counters and rate limits; "
                    "start Redis or set TEST_MODE=true/USE_MEMORY_CACHE=true for local fallback."
                ) from redis_error
            fallback_mode = "USE_MEMORY_CACHE" if self.settings.use_memory_cache else "TEST_MODE"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "memory_cache_selected",
                message=(
                    f"Running without Redis under {fallback_mode}; OTP codes and "
                    "counters are per process and lost on restart."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.hasher = SecretHasher.from_settings(self.settings)
        self.audit = AuditRecorder(self.store)
        self.tokens = TokenService.from_settings(self.settings)
        self.sessions = SessionService(self.store, self.tokens, self.audit)
        self.two_factor = TwoFactorService(
            self.store,
            self.hasher,
            self.audit,
            issuer=self.settings.two_factor_issuer,
            recovery_code_count=self.settings.recovery_code_count,
        )
        self.gateway = build_sms_gateway(self.settings)
        self.otp = OtpService(
            self.cache,
            self.gateway,
            self.hasher,
            self.audit,
            code_length=self.settings.otp_length,
            expiry_seconds=self.settings.otp_expiry_seconds,
            max_attempts=self.settings.otp_max_attempts,
            rate_limit_per_hour=self.settings.otp_rate_limit_per_hour,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            two_factor=self.two_factor,
            hasher=self.hasher,
            audit=self.audit,
        )
        logger.info(
            "runtime_init_complete",
            cache_type="redis" if isinstance(self.cache, RedisCache) else "memory",
            sms_gateway=type(self.gateway).__name__,
        )

    async def close(self) -> None:
        """Release network clients held by the cache and the SMS gateway."""
        gateway_close = getattr(self.gateway, "close", None)
        if gateway_close is not None:
            await gateway_close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
# Thread-safe singleton creation
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path reads without the lock and the
    slow path re-checks under it before creating.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(runtime.close())
                else:
                    asyncio.run(runtime.close())
            except Exception as exc:
                # Connections may already be closed
                logger.debug("runtime_reset_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
