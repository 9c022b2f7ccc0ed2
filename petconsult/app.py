from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from petconsult.api.error_handling import register_exception_handlers
from petconsult.api.routes import router
from petconsult.config import Settings, get_settings
from petconsult.logging import get_logger, set_correlation_id
from petconsult.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_token_purge(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop dropping stale refresh tokens and verification codes."""

    try:
        while True:
            try:
                tokens, codes = await asyncio.to_thread(runtime.purge_expired)
                if tokens or codes:
                    logger.info("token_purge_completed", tokens=tokens, codes=codes)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_purge_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("token_purge_task_cancelled")
        raise


def create_app(
    settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application.

    An injected ``runtime`` is used as-is and left open on shutdown; otherwise
    the lifespan builds one from ``settings`` and closes it when the app stops.
    """
    settings = runtime.settings if runtime is not None else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = Runtime(settings)
        purge_task = asyncio.create_task(
            _run_token_purge(app.state.runtime, settings.token_purge_interval_seconds)
        )
        logger.info("app_started", owned_runtime=owned)
        try:
            yield
        finally:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
            if owned:
                await app.state.runtime.close()
                app.state.runtime = None
            logger.info("app_stopped")

    app = FastAPI(title="Pet Consultation Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs and the response with the caller's X-Request-ID, or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # tokens travel in bodies, never cache them
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        """Report store and Redis reachability."""
        active: Runtime = request.app.state.runtime

        async def _probe(label: str, func) -> bool:
            try:
                result = await asyncio.wait_for(func(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return bool(result)
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        checks: Dict[str, Dict[str, Any]] = {}
        store_ok = await _probe("store", lambda: asyncio.to_thread(active.store.ping))
        checks["store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": "memory" if active.settings.use_memory_store else "postgres",
        }
        healthy = store_ok
        if active.cache is not None:
            redis_ok = await _probe("redis", active.cache.ping)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": checks,
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    return app


def main() -> None:
    import uvicorn

    uvicorn.run("petconsult.app:create_app", factory=True, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
