r"""backend\forecast_engine\api\v1\optimize.py

Weight optimisation, backtest and accuracy routes."""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Query

from ...core.exceptions import raise_http_error
from ...models import schemas
from ...services.engine_service import get_engine
from ...services.weight_optimizer import accuracy_report

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_engine = get_engine()


@router.post("/optimize/{sku}", response_model=schemas.OptimizationResult)
def optimize_sku(sku: str) -> schemas.OptimizationResult:
    """Backtest the models for ``sku`` and persist better weights if found."""

    try:
        return _engine.reoptimize(sku)
    except Exception as exc:
        raise_http_error(exc, sku, "optimization_failed")


@router.post("/optimize", response_model=schemas.WeeklyOptimizationSummary)
def optimize_catalog() -> schemas.WeeklyOptimizationSummary:
    try:
        return _engine.run_weekly_optimization()
    except Exception as exc:
        raise_http_error(exc, "*", "optimization_failed")


@router.get("/backtest/{sku}", response_model=List[schemas.BacktestResult])
def backtest(
    sku: str,
    model: Optional[schemas.ModelName] = Query(
        None, description="Model to evaluate; all four when omitted."
    ),
) -> List[schemas.BacktestResult]:
    """Rolling 30-day-window backtest of one or all ensemble members."""

    try:
        history = _engine.ledger.history(sku)
        models = [m for m in _engine.ensemble.models if model is None or m.name == model]
        return [_engine.optimizer.backtest(sku, history, m) for m in models]
    except Exception as exc:
        raise_http_error(exc, sku, "backtest_failed")


@router.get("/accuracy", response_model=schemas.AccuracyReport)
def get_accuracy(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
) -> schemas.AccuracyReport:
    try:
        records = _engine.ledger.accuracy_records()
    except Exception as exc:
        raise_http_error(exc, "*", "accuracy_failed")
    return accuracy_report(records, start=start, end=end)
