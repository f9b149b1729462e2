"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import (
    app_persistence_profile_name,
    validate_persistence_profile_guardrails,
)
from src.api.routers.automation import close_automation_runtime, get_automation_scheduler
from src.api.routers.automation import router as automation_router
from src.api.routers.automation_config import automation_store_backend_name, scheduler_enabled
from src.api.routers.automation_scheduler import router as automation_scheduler_router
from src.api.routers.orders import router as orders_router


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    scheduler = get_automation_scheduler() if scheduler_enabled() else None
    if scheduler is not None:
        await scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await close_automation_runtime()


app = FastAPI(
    title="Automated Order Generation API",
    version="0.1.0",
    description=(
        "Rule-driven order automation for relationship managers: auto-invest, rebalancing and "
        "trigger-order rules, order calculation, compliance checks and the execution log.\n\n"
        "Every execution attempt is recorded as `Success`, `Failed` or `Skipped`."
    ),
    openapi_tags=[
        {
            "name": "Automation Rules",
            "description": "Auto-invest, rebalancing and trigger-order rule management.",
        },
        {
            "name": "Automation Scheduler",
            "description": "Scheduler control and manual execution entry points.",
        },
        {
            "name": "Order Calculation",
            "description": "Switch, redemption and compliance calculators and order history.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
logger = logging.getLogger(__name__)

app.include_router(automation_router)
app.include_router(automation_scheduler_router)
app.include_router(orders_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"], summary="Service Health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live", tags=["Health"], summary="Liveness Probe")
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready", tags=["Health"], summary="Readiness Probe")
def health_ready() -> dict[str, str]:
    return {
        "status": "ready",
        "persistence_profile": app_persistence_profile_name(),
        "automation_store_backend": automation_store_backend_name(),
    }
