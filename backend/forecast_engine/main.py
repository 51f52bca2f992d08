r"""backend\forecast_engine\main.py

Main entrypoint for the FastAPI application.

The API exposes per-SKU ensemble forecasts, reorder recommendations, spike
detection, weight optimisation and the anomaly feedback loop.  A health
endpoint is also provided for readiness/liveness checks.  Configuration is
read from environment variables and YAML files in `configs/`.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

# Load .env from repo root before the routers build their services
BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(BASE_DIR / ".env")

from .api.v1 import (  # noqa: E402
    anomalies,
    configs,
    forecasts,
    health,
    optimize,
    recommendations,
    spikes,
)
from .core.config import get_settings  # noqa: E402
from .core.observability import RequestLoggingMiddleware, metrics_endpoint  # noqa: E402

logging.basicConfig(level=get_settings().log_level.upper())

app = FastAPI(title="Demand Forecast Engine API", version="0.1.0")

origins_env = os.getenv("CORS_ORIGINS", get_settings().cors_origins)
origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # In production specify the dashboard domain(s)
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# Include versioned routers
app.include_router(health.router, prefix="/api/v1")
app.include_router(forecasts.router, prefix="/api/v1")
app.include_router(recommendations.router, prefix="/api/v1")
app.include_router(spikes.router, prefix="/api/v1")
app.include_router(optimize.router, prefix="/api/v1")
app.include_router(anomalies.router, prefix="/api/v1")
app.include_router(configs.router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
def _root() -> RedirectResponse:
    """Redirect the root path to the interactive docs."""

    return RedirectResponse(url="/docs")


@app.get("/metrics", include_in_schema=False)
async def _metrics() -> Response:
    """Expose Prometheus metrics."""

    return metrics_endpoint()
