from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from xserver.api.error_handling import register_exception_handlers
from xserver.api.routes import router
from xserver.config import get_settings
from xserver.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = _settings.app_version


async def _run_maintenance(interval_seconds: int) -> None:
    """Periodically purge expired tokens/challenges and prune idle sessions."""
    from xserver.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().run_maintenance)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("maintenance_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from xserver.service.runtime import get_runtime

    runtime = get_runtime()
    task = asyncio.create_task(
        _run_maintenance(runtime.settings.maintenance_interval_seconds)
    )
    logger.info(
        "maintenance_task_started",
        interval_seconds=runtime.settings.maintenance_interval_seconds,
    )

    yield

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    logger.info("maintenance_task_stopped")


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="X Server", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-App-Version", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with X-Request-ID (client supplied or generated)."""
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
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store, private")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "healthy", "version": __version__}

    return app


app = create_app()
