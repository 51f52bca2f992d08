"""Anomaly scan and parameter adjustment routes.

Scanning only queues adjustments; nothing changes until a client posts the
adjustment to ``/adjustments/apply``.
"""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter

from ...core.exceptions import raise_http_error
from ...models import schemas
from ...services.engine_service import get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_engine = get_engine()


@router.post("/anomalies/scan", response_model=schemas.AnomalyScanResponse)
def scan_anomalies(request: schemas.AnomalyScanRequest) -> schemas.AnomalyScanResponse:
    try:
        events, summary = _engine.scan_catalog(skus=request.skus, as_of=request.as_of)
    except Exception as exc:
        raise_http_error(exc, "*", "anomaly_scan_failed")
    return schemas.AnomalyScanResponse(
        events=events,
        summary=summary,
        pending_adjustments=_engine.adjustments.pending(),
    )


@router.get("/adjustments", response_model=List[schemas.ParameterAdjustment])
def list_adjustments() -> List[schemas.ParameterAdjustment]:
    return _engine.adjustments.pending()


@router.post("/adjustments/apply", response_model=schemas.AdjustmentResult)
def apply_adjustment(adjustment: schemas.ParameterAdjustment) -> schemas.AdjustmentResult:
    """Apply one proposed adjustment; repeating the call is a no-op."""

    try:
        return _engine.adjustments.apply(adjustment)
    except Exception as exc:
        raise_http_error(exc, adjustment.sku, "adjustment_failed")
