r"""backend\forecast_engine\api\v1\recommendations.py

Reorder recommendation endpoint.

The stock position defaults to the ledger's inventory extract; callers may
send their own position to evaluate a what-if scenario.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from ...core.exceptions import raise_http_error
from ...models import schemas
from ...services.engine_service import get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_engine = get_engine()


@router.post("/recommendations", response_model=schemas.ReorderRecommendation)
def recommend(request: schemas.RecommendationRequest) -> schemas.ReorderRecommendation:
    sku = request.sku
    try:
        history = _engine.ledger.history(sku)
        position = request.position or _engine.ledger.position(sku)
        moq = request.moq if request.moq is not None else _engine.ledger.product(sku)["moq"]
        return _engine.decisions.recommend(
            sku,
            history,
            position,
            supplier=_engine.ledger.supplier_for(sku),
            moq=moq,
            as_of=request.as_of,
            safety_stock_days=_engine.adjustments.tuning_for(sku).safety_stock_days,
        )
    except Exception as exc:
        raise_http_error(exc, sku, "recommendation_failed")
