"""Routes for ensemble demand forecasts."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from ...core.exceptions import raise_http_error
from ...models import schemas
from ...services.engine_service import get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()

MIN_FORECAST_HORIZON_DAYS = 7
MAX_FORECAST_HORIZON_DAYS = 90

_engine = get_engine()


@router.get("/forecasts/{sku}", response_model=schemas.SkuReport)
def get_forecast(
    sku: str,
    horizon_days: int = Query(
        30,
        ge=MIN_FORECAST_HORIZON_DAYS,
        le=MAX_FORECAST_HORIZON_DAYS,
        description="Forecast horizon in days",
    ),
) -> schemas.SkuReport:
    """Return the daily ensemble forecast, spike status and reorder advice for a SKU."""

    LOGGER.info("Forecast request received for sku=%s horizon=%s", sku, horizon_days)
    try:
        return _engine.run_sku(sku, horizon_days=horizon_days)
    except Exception as exc:
        raise_http_error(exc, sku, "forecast_failed")


@router.get("/forecasts/{sku}/aggregate", response_model=schemas.AggregatedForecast)
def get_aggregate_forecast(
    sku: str,
    horizon_days: int = Query(
        30, ge=MIN_FORECAST_HORIZON_DAYS, le=MAX_FORECAST_HORIZON_DAYS
    ),
) -> schemas.AggregatedForecast:
    """Return totals, peak and low days for the forecast horizon."""

    try:
        report = _engine.run_sku(sku, horizon_days=horizon_days)
    except Exception as exc:
        raise_http_error(exc, sku, "forecast_failed")
    return _engine.ensemble.aggregate(sku, report.forecasts)
