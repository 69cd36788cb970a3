from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from idcore.api.error_handling import register_exception_handlers
from idcore.api.routes import router
from idcore.config import get_settings
from idcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    from idcore.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title=get_settings().app_name, version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from the client's X-Request-ID header when present, generated
    otherwise, bound into structlog context and echoed back in the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        # Tokens must never sit in a shared cache
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report cache reachability and build info."""
    from idcore.service.runtime import get_runtime
    from idcore.storage.redis_cache import RedisCache

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}
    healthy = True

    if isinstance(runtime.cache, RedisCache):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["cache"] = {"status": "healthy", "type": "redis"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="cache")
            checks["cache"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            checks["cache"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
    else:
        checks["cache"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": runtime.settings.build_sha,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
