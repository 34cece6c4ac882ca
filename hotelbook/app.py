from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hotelbook.api.error_handling import register_exception_handlers
from hotelbook.api.routes import router
from hotelbook.config import Settings
from hotelbook.logging import get_logger, set_correlation_id
from hotelbook.storage.models import utcnow

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from hotelbook.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hotelbook Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # Session cookies travel cross-origin from the booking frontend
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one id.

    The id comes from the client's ``X-Request-ID`` header when present and is
    echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store and Redis reachability; 503 when a dependency is down."""
    from hotelbook.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)
