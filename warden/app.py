from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.config import Settings
from warden.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from warden.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_session_cleanup(runtime.settings.session_cleanup_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated. It is bound into the logging context and echoed back in the
    X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store connectivity and version."""
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    raw_store = runtime.raw_store

    if hasattr(raw_store, "pool"):
        def _db_probe() -> None:
            with raw_store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            db_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            db_ok = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            db_ok = False
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Background loop that purges expired session tokens."""
    from warden.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(get_runtime().sessions.cleanup)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("session_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
