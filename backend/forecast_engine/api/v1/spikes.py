"""Routes exposing velocity spike detection."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from ...core.exceptions import raise_http_error
from ...models import schemas
from ...services.engine_service import get_engine

LOGGER = logging.getLogger(__name__)

router = APIRouter()

_engine = get_engine()


@router.get("/spikes", response_model=schemas.SpikeScanResponse)
def scan_spikes() -> schemas.SpikeScanResponse:
    """Detect spikes across the catalogue, largest multiplier first."""

    try:
        ledger = _engine.ledger
        skus = ledger.skus()
        spiking, alerts = _engine.spikes.detect_all(
            {sku: ledger.history(sku) for sku in skus},
            positions={sku: ledger.position(sku) for sku in skus},
            lead_times={sku: _engine.decisions.lead_time_for(ledger.supplier_for(sku)) for sku in skus},
            signals={sku: signal for sku in skus if (signal := ledger.signals(sku)) is not None},
        )
    except Exception as exc:
        raise_http_error(exc, "*", "spike_scan_failed")
    return schemas.SpikeScanResponse(spiking=spiking, alerts=alerts)


@router.get("/spikes/{sku}", response_model=schemas.SpikeDetection)
def get_spike(sku: str) -> schemas.SpikeDetection:
    try:
        ledger = _engine.ledger
        supplier = ledger.supplier_for(sku)
        return _engine.spikes.detect(
            sku,
            ledger.history(sku),
            position=ledger.position(sku),
            lead_time_days=_engine.decisions.lead_time_for(supplier),
            signals=ledger.signals(sku),
            threshold=_engine.adjustments.tuning_for(sku).spike_detection_threshold,
        )
    except Exception as exc:
        raise_http_error(exc, sku, "spike_detection_failed")
