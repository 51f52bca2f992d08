r"""backend\forecast_engine\api\v1\health.py

Liveness endpoint.

Also reports whether the sales ledger extract is present so an orchestrator
can tell "running" apart from "running with nothing to forecast".
"""

from fastapi import APIRouter

from ...services.engine_service import get_engine

router = APIRouter()

_engine = get_engine()


@router.get("/health")
async def health_check() -> dict[str, str]:
    ledger = "present" if _engine.ledger.data_files_present() else "missing"
    return {"status": "ok", "ledger": ledger}
