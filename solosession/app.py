from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from solosession.api.error_handling import register_exception_handlers
from solosession.api.routes import router
from solosession.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the session store on startup and release it on shutdown."""
    from solosession.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.startup()
    logger.info("runtime_started", store_type=runtime.store_type)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="solosession", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with a correlation id for log tracing.

        Taken from the X-Request-ID header when present, otherwise generated,
        and echoed back in the response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_cache_headers(request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, private")
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report session store connectivity and the running version."""
        from solosession.service.runtime import get_runtime

        runtime = get_runtime()
        try:
            await asyncio.wait_for(
                runtime.store.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            store_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            store_ok = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False

        store_check: Dict[str, Any] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": runtime.store_type,
            "cluster": runtime.store.is_cluster,
        }
        if runtime.fallback_mode:
            store_check["fallback_mode"] = runtime.fallback_mode
        return {
            "status": "healthy" if store_ok else "unhealthy",
            "checks": {"store": store_check},
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
