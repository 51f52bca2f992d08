"""API endpoints for reading and replacing per-SKU tuning parameters."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from ...core.exceptions import error_payload
from ...models import schemas
from ...services.engine_service import get_engine

router = APIRouter()

_engine = get_engine()


@router.get("/configs/tuning/{sku}", response_model=schemas.TuningParameters)
def get_tuning(sku: str) -> schemas.TuningParameters:
    return _engine.adjustments.tuning_for(sku)


@router.put("/configs/tuning/{sku}", response_model=schemas.TuningParameters)
def put_tuning(sku: str, body: schemas.TuningParameters) -> schemas.TuningParameters:
    current = _engine.adjustments.tuning_for(sku)
    if body == current:
        return current

    try:
        return _engine.adjustments.set_tuning(sku, body)
    except OSError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_payload("write_failed", str(exc)),
        ) from exc
