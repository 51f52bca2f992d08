r"""backend/tests/test_engine_api.py"""

from __future__ import annotations

import math
import shutil
import sys
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import pytest
import yaml
from fastapi import HTTPException
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.forecast_engine.core.exceptions import (  # noqa: E402
    DatasetUnavailableError,
    InsufficientHistoryError,
    SkuNotFoundError,
    raise_http_error,
)
from backend.forecast_engine.main import app  # noqa: E402
from backend.forecast_engine.services.engine_service import EngineService  # noqa: E402
from backend.forecast_engine.services.weights_repository import InMemoryWeightsRepository  # noqa: E402

ROUTERS = ("anomalies", "configs", "forecasts", "health", "optimize", "recommendations", "spikes")
AS_OF = date(2024, 4, 30)

client = TestClient(app)


def _sales_rows(sku: str, days: int, units: float) -> list[str]:
    start = AS_OF - timedelta(days=days - 1)
    return [f"{sku},{(start + timedelta(days=i)).isoformat()},{units}" for i in range(days)]


def _write_ledger(data_dir: Path) -> None:
    data_dir.mkdir()
    rows = _sales_rows("A", 120, 10) + _sales_rows("B", 30, 10) + _sales_rows("C", 60, 5)
    (data_dir / "sales.csv").write_text("sku,date,units\n" + "\n".join(rows) + "\n")
    (data_dir / "inventory.csv").write_text(
        "sku,fba_available,fba_inbound,fba_reserved,warehouse_available\n"
        "A,0,0,0,180\n"
        "B,0,0,0,500\n"
        "C,0,0,0,0\n"
    )
    (data_dir / "products.csv").write_text(
        "sku,price,cost,supplier,moq\nA,25,10,Acme,\nC,20,8,Acme,\n"
    )
    (data_dir / "suppliers.csv").write_text("name,lead_time_days\nAcme,14\n")


def _install(monkeypatch, engine: EngineService) -> EngineService:
    for name in ROUTERS:
        monkeypatch.setattr(f"backend.forecast_engine.api.v1.{name}._engine", engine)
    return engine


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    config_root = tmp_path / "configs"
    config_root.mkdir()
    for name in ("settings.yaml", "thresholds.yaml"):
        shutil.copy(ROOT / "configs" / name, config_root / name)
    return config_root


@pytest.fixture
def engine(tmp_path: Path, config_dir: Path, monkeypatch) -> EngineService:
    data_dir = tmp_path / "data"
    _write_ledger(data_dir)
    return _install(
        monkeypatch,
        EngineService(
            config_root=str(config_dir),
            data_root=str(data_dir),
            weights_repository=InMemoryWeightsRepository(),
        ),
    )


def test_health_reports_ledger(engine) -> None:
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "ledger": "present"}


def test_forecast_report(engine) -> None:
    response = client.get("/api/v1/forecasts/A", params={"horizon_days": 14})

    assert response.status_code == 200
    payload = response.json()
    assert payload["sku"] == "A"
    assert len(payload["forecasts"]) == 14
    assert payload["forecasts"][0]["date"] == (AS_OF + timedelta(days=1)).isoformat()
    assert payload["spike"]["is_spiking"] is False
    assert payload["recommendation"]["lead_time_days"] == 14
    assert payload["warnings"] == []


def test_aggregate_forecast(engine) -> None:
    response = client.get("/api/v1/forecasts/A/aggregate", params={"horizon_days": 7})

    assert response.status_code == 200
    assert response.json()["horizon_days"] == 7


def test_unknown_sku_is_404(engine) -> None:
    response = client.get("/api/v1/forecasts/NOPE")

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "sku_not_found"


def test_horizon_is_validated(engine) -> None:
    assert client.get("/api/v1/forecasts/A", params={"horizon_days": 3}).status_code == 422
    assert client.get("/api/v1/forecasts/A", params={"horizon_days": 91}).status_code == 422


def test_missing_ledger_is_503(tmp_path: Path, config_dir: Path, monkeypatch) -> None:
    _install(monkeypatch, EngineService(config_root=str(config_dir), data_root=str(tmp_path / "none")))

    response = client.get("/api/v1/forecasts/A")

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "data_unavailable"
    assert client.get("/api/v1/health").json()["ledger"] == "missing"


def test_recommendation_uses_ledger_position(engine) -> None:
    response = client.post("/api/v1/recommendations", json={"sku": "A", "as_of": AS_OF.isoformat()})

    assert response.status_code == 200
    payload = response.json()
    assert payload["recommended_order_qty"] == 1620
    assert payload["safety_stock"] == 70


def test_recommendation_position_override(engine) -> None:
    response = client.post(
        "/api/v1/recommendations",
        json={
            "sku": "A",
            "as_of": AS_OF.isoformat(),
            "position": {"fba_available": 500, "warehouse_available": 1500},
        },
    )

    assert response.status_code == 200
    assert response.json()["urgency"] == "ok"


def test_spike_routes(engine) -> None:
    scan = client.get("/api/v1/spikes")
    single = client.get("/api/v1/spikes/A")

    assert scan.status_code == 200
    assert scan.json() == {"spiking": [], "alerts": []}
    assert single.json()["is_spiking"] is False


def test_backtest_routes(engine) -> None:
    response = client.get("/api/v1/backtest/A", params={"model": "arima"})
    short = client.get("/api/v1/backtest/B")

    assert response.status_code == 200
    assert [result["model"] for result in response.json()] == ["arima"]
    assert short.status_code == 400
    assert short.json()["detail"]["error"] == "insufficient_history"


def test_optimize_is_idempotent(engine) -> None:
    first = client.post("/api/v1/optimize/A")
    second = client.post("/api/v1/optimize/A")

    assert first.status_code == 200
    assert first.json()["status"] == "persisted"
    assert second.json()["status"] == "skipped"


def test_accuracy_without_records(engine) -> None:
    response = client.get("/api/v1/accuracy")

    assert response.status_code == 200
    assert response.json()["overall_mape"] == 0.0


def test_tuning_round_trip(engine, config_dir: Path) -> None:
    default = client.get("/api/v1/configs/tuning/A").json()
    body = dict(default, safety_stock_days=21)

    updated = client.put("/api/v1/configs/tuning/A", json=body)

    assert default["safety_stock_days"] == 14
    assert updated.status_code == 200
    assert client.get("/api/v1/configs/tuning/A").json()["safety_stock_days"] == 21
    stored = yaml.safe_load((config_dir / "tuning.yaml").read_text())
    assert stored["A"]["safety_stock_days"] == 21


def test_scan_then_apply(engine) -> None:
    scan = client.post("/api/v1/anomalies/scan", json={"skus": ["C", "NOPE"], "as_of": AS_OF.isoformat()})

    assert scan.status_code == 200
    summary = scan.json()["summary"]
    assert summary["by_type"]["stockout"] == 1
    assert summary["recommended_actions"][0]["affected_skus"] == ["C"]

    adjustment = {
        "sku": "C",
        "parameter": "safety_stock_days",
        "old_value": 14,
        "new_value": 21,
        "reason": "Increase safety stock due to supplier delays",
    }
    first = client.post("/api/v1/adjustments/apply", json=adjustment)
    second = client.post("/api/v1/adjustments/apply", json=adjustment)

    assert first.json()["applied"] is True
    assert second.json()["applied"] is False
    assert client.get("/api/v1/configs/tuning/C").json()["safety_stock_days"] == 21


def test_unknown_parameter_is_rejected(engine) -> None:
    response = client.post(
        "/api/v1/adjustments/apply",
        json={"sku": "C", "parameter": "reorder_colour", "old_value": 1, "new_value": 2, "reason": "x"},
    )

    assert response.status_code == 422
    assert client.get("/api/v1/adjustments").json() == []


def test_report_recommendation_follows_forecast(engine) -> None:
    report = engine.run_sku("A", horizon_days=30)

    rate = float(np.mean([day.final_forecast for day in report.forecasts]))
    recommendation = report.recommendation
    assert rate > 10
    assert recommendation.recommended_order_qty == math.ceil(max(0.0, rate * 180 - 180))
    assert recommendation.recommended_order_qty > 1620
    assert f"Forecast {rate:.1f} units/day over the next 30 days" in recommendation.reasoning
    assert recommendation.upcoming_event == "Mother's Day"
    assert recommendation.seasonality_factor == pytest.approx(2.5)


def test_snapshot_is_truncated_to_as_of(engine) -> None:
    as_of = AS_OF - timedelta(days=30)

    snapshot = engine.snapshot("A", as_of)

    assert snapshot.history[-1].date == as_of
    assert len(snapshot.history) == 90
    assert engine.snapshot("A").history[-1].date == AS_OF


@pytest.mark.parametrize(
    "exc, status_code, code",
    [
        (SkuNotFoundError("A"), 404, "sku_not_found"),
        (DatasetUnavailableError("sales.csv"), 503, "data_unavailable"),
        (InsufficientHistoryError("too short"), 400, "insufficient_history"),
        (ValueError("bad"), 400, "invalid_request"),
        (RuntimeError("boom"), 500, "forecast_failed"),
    ],
)
def test_service_errors_map_to_http(exc, status_code, code) -> None:
    with pytest.raises(HTTPException) as excinfo:
        raise_http_error(exc, "A", "forecast_failed")

    assert excinfo.value.status_code == status_code
    assert excinfo.value.detail["error"] == code
