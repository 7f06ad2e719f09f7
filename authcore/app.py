from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


_maintenance_task: asyncio.Task | None = None


async def _run_maintenance_loop(interval_seconds: int) -> None:
    """Periodically purge expired codes and deactivate expired sessions."""
    from authcore.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await asyncio.to_thread(get_runtime().run_maintenance)
            if result["otps_removed"] or result["sessions_expired"]:
                logger.info("maintenance_completed", **result)
        except Exception as exc:
            logger.error("maintenance_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _maintenance_task
    from authcore.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _maintenance_task = asyncio.create_task(
            _run_maintenance_loop(runtime.settings.maintenance_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_maintenance_failed", error=str(exc))

    yield

    try:
        if _maintenance_task:
            _maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _maintenance_task
            _maintenance_task = None
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthCore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID.

    A client-supplied header is reused; otherwise a UUID is generated. The
    value is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await asyncio.wait_for(asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["database"] = {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "unhealthy"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "unhealthy"}
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    healthy = all(check["status"] == "healthy" for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
