"""
FastAPI web application for the booking statistics engine.
"""
import asyncio
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, ORJSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from core.config import ConfigurationError, config, validate_config
from core.observability import get_logger, setup_logging
from core.scheduler import StatsScheduler
from core.stats_service import get_stats_service, reset_stats_service
from core.store import close_store
from web.config import VERSION
from web.middleware import RequestLoggingMiddleware, RequestTimeoutMiddleware
from web.routes import api
from web.routes.api._deps import limiter

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
log_format = os.getenv("LOG_FORMAT", "text")
log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, json_format=(log_format == "json"))
logger = get_logger(__name__)

app = FastAPI(
    title="Booking Stats",
    description="Order and evaluation statistics for dashboards, rankings and reports",
    version=VERSION,
    default_response_class=ORJSONResponse,
)

app.state.limiter = limiter
app.state.scheduler = None
app.state.readiness_task = None


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Please try again later.",
            "retry_after": exc.detail,
        }
    )


# Request logging adds correlation IDs; timeout must come after it
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestTimeoutMiddleware)

app.include_router(api.router, prefix="/api")


async def _finish_startup(service) -> None:
    """Wait for the store in the background, then start scheduled rollups."""
    await service.keep_trying_start()

    store_stats = await service.store.get_stats()
    logger.info(
        f"Store ready: {store_stats['orders']} orders, "
        f"{store_stats['evaluations']} evaluations, "
        f"{store_stats['order_stats']} rollup rows, "
        f"{store_stats['db_size_mb']} MB"
    )

    if config.scheduler.enabled:
        scheduler = StatsScheduler(service)
        await scheduler.start()
        app.state.scheduler = scheduler
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("startup")
async def startup_event():
    logger.info("Booking stats service starting...")

    try:
        validate_config()
        logger.info("Configuration validated")
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        raise SystemExit(1)

    # Queries answer "store unavailable" and health reports "starting" until this finishes
    service = await get_stats_service()
    app.state.readiness_task = asyncio.create_task(_finish_startup(service))


@app.on_event("shutdown")
async def shutdown_event():
    task = app.state.readiness_task
    if task is not None and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    app.state.readiness_task = None

    scheduler = app.state.scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        app.state.scheduler = None

    await close_store()
    reset_stats_service()
    logger.info("Booking stats service stopped")


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run("web.main:app", host=config.web.host, port=config.web.port)
