# =============================================================================
# main.py — FastAPI application entry point
#
# This file wires together all the pieces: logging, routing, middleware and
# error handling.
#
# ARCHITECTURE NOTE:
#   This service is stateless — no database, no sessions, no caching. Every
#   request carries its own fitted distributions, open deals and evidence,
#   and nothing outlives the request that produced it.
# =============================================================================

import logging
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from forecast import run_full_forecast
from models import ForecastRequest, ForecastResponse, HealthResponse
from simulation import SimulationTimeoutError


# ─── Logging ──────────────────────────────────────────────────────────────────

def configure_logging() -> None:
    level = logging.DEBUG if settings.debug else logging.getLevelName(settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger(__name__)


# ─── App Initialization ───────────────────────────────────────────────────────

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# ─── Global Error Handler ──────────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Always answer with JSON, never an HTML error page."""
    logger.error("unhandled_exception", path=str(request.url.path), error=str(exc), exc_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": str(exc) if settings.debug else "An unexpected error occurred.",
            "path": str(request.url.path),
        },
    )


# ─── Health Check ─────────────────────────────────────────────────────────────
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Returns 200 OK when the service is running.",
    tags=["Operations"],
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=settings.api_version,
        timestamp=datetime.now(timezone.utc),
    )


# ─── Forecast Endpoint ────────────────────────────────────────────────────────
@app.post(
    "/api/v1/forecast",
    response_model=ForecastResponse,
    summary="Run Monte Carlo Revenue Forecast",
    description=(
        "Runs the Monte Carlo revenue model over the supplied pipeline and fitted "
        "distributions. Returns P10–P90 outcomes, quota attainment probability, a "
        "histogram, per-deal risk adjustments and the top variance drivers."
    ),
    tags=["Simulation"],
)
async def forecast(request: ForecastRequest) -> ForecastResponse:
    if request.iterations is not None and request.iterations > settings.max_iterations:
        raise HTTPException(
            status_code=422,
            detail=f"iterations must not exceed {settings.max_iterations}",
        )
    if len(request.open_deals) > settings.max_open_deals:
        raise HTTPException(
            status_code=422,
            detail=f"at most {settings.max_open_deals} open deals per forecast",
        )
    try:
        return await run_full_forecast(request)
    except SimulationTimeoutError as e:
        logger.warning("forecast_timeout", iterations=request.iterations, error=str(e))
        raise HTTPException(status_code=504, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MemoryError:
        raise HTTPException(
            status_code=400,
            detail="Simulation too large. Reduce iterations or turn off include_iterations.",
        )


# ─── Local Dev Entry Point ─────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
