"""
Gateway HTTP surface: health and cache statistics.

Resource routes live in the route layer and call into
gateway.cache.get_orchestrator(); this module only exposes operational
endpoints and the error mapping those routes share.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from gateway.cache import get_orchestrator
from gateway.errors import BudgetExhausted, GatewayError
from gateway.preload import get_preload_scheduler

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger("gateway")

APP_VERSION = "v0.1.0"
APP_NAME = "BoxScore Gateway"

app = FastAPI(
    title=APP_NAME,
    description="Cached, budget-limited access to live sports data",
    version=APP_VERSION,
)


@app.exception_handler(GatewayError)
def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Turn fetch-path errors into classified client responses."""
    logger.error(f"Request error on {request.url.path}: {exc.code} {exc.message}")
    headers = {}
    if isinstance(exc, BudgetExhausted) and exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(max(1, int(round(exc.retry_after_seconds))))
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_client_dict(),
        headers=headers,
    )


@app.get("/health")
def health_check():
    """Health check endpoint."""
    orchestrator = get_orchestrator()
    budget = orchestrator.budget.status()
    return {
        "status": "ok",
        "version": APP_VERSION,
        "cache": "available" if orchestrator.store.is_available() else "unavailable",
        "budget": {
            "daily_remaining": budget["daily"]["remaining"],
            "minute_remaining": budget["minute"]["remaining"],
            "backoff_active": budget["backoff"]["active"],
        },
    }


@app.get("/cache/stats")
def cache_stats():
    """Get cache, coalescer, budget and preload statistics."""
    stats = get_orchestrator().get_stats()
    stats["preload"] = get_preload_scheduler().get_stats()
    return stats
