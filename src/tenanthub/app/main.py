"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tenanthub import __version__
from tenanthub.app.api.v1 import scheduler_router
from tenanthub.app.config import RuntimeMode, get_settings
from tenanthub.app.container import build_fleet
from tenanthub.app.logging import setup_logging
from tenanthub.app.metrics import get_metrics_response
from tenanthub.core.errors import TenantHubError
from tenanthub.core.logging_schema import LogEvent
from tenanthub.infra import (
    close_db,
    close_storage,
    get_engine,
    get_s3_client,
    get_session_factory,
    init_db,
    init_storage,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    settings.validate_runtime()

    await init_db()
    await init_storage()
    app.state.fleet = build_fleet(settings, get_session_factory())
    if settings.runtime.mode == RuntimeMode.LOCAL:
        # This process owns the local tenant processes
        await app.state.fleet.lifecycle.recover()

    logger.info(
        "Starting application",
        extra={"event": LogEvent.APP_STARTED, "runtime_mode": settings.runtime.mode.value},
    )

    yield

    logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
    await app.state.fleet.close()
    await close_storage()
    await close_db()


app = FastAPI(title="tenanthub", version=__version__, lifespan=lifespan)


@app.exception_handler(TenantHubError)
async def tenanthub_error_handler(request: Request, exc: TenantHubError) -> JSONResponse:
    """Handle TenantHubError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


app.include_router(scheduler_router, prefix="/api/v1")


async def _check_service(check_fn: callable) -> str:
    """Check service health and return status string."""
    try:
        await check_fn()
        return "connected"
    except RuntimeError:
        return "not initialized"
    except Exception as e:
        return f"error: {e}"


async def _check_postgres() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))


async def _check_s3() -> None:
    bucket = get_settings().storage.bucket_name
    async with get_s3_client() as s3:
        await s3.head_bucket(Bucket=bucket)


@app.get("/health")
async def health():
    postgres, s3 = await asyncio.gather(
        _check_service(_check_postgres),
        _check_service(_check_s3),
    )
    services = {"postgres": postgres, "s3": s3}
    is_degraded = any(s != "connected" for s in services.values())

    return {
        "status": "degraded" if is_degraded else "ok",
        "version": __version__,
        "services": services,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    if not get_settings().metrics.enabled:
        return JSONResponse(status_code=404, content={"detail": "Not Found"})
    return get_metrics_response()
