from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
import sys

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.forecast_engine.models.schemas import (
    InventoryPosition,
    OptimizationResult,
    ParameterAdjustment,
    PurchaseOrderArrival,
    SalesDataPoint,
    SpikeDetection,
    Supplier,
)
from backend.forecast_engine.services.adjustment_service import AdjustmentService
from backend.forecast_engine.services.anomaly_service import AnomalyDetector, SkuSnapshot
from backend.forecast_engine.services.weight_optimizer import track_accuracy

AS_OF = date(2024, 6, 30)


def _history(values) -> list[SalesDataPoint]:
    start = AS_OF - timedelta(days=len(values) - 1)
    return [SalesDataPoint(date=start + timedelta(days=i), units=float(v)) for i, v in enumerate(values)]


def _stockout_snapshot(**overrides) -> SkuSnapshot:
    values = dict(
        sku="SKU-1",
        history=_history([5] * 60),
        position=InventoryPosition(),
        unit_price=20.0,
        unit_cost=8.0,
    )
    values.update(overrides)
    return SkuSnapshot(**values)


def test_stockout_with_no_evidence_defaults_to_safety_stock(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))

    events = detector.scan_sku(_stockout_snapshot(), AS_OF)

    assert len(events) == 1
    event = events[0]
    assert event.event_type == "stockout"
    assert event.id == f"stockout-SKU-1-{AS_OF.isoformat()}"
    assert event.unit_impact == 35
    assert event.financial_impact == pytest.approx(35 * 20 * 0.3)
    assert event.start_date == AS_OF - timedelta(days=7)
    assert event.root_cause == "Insufficient safety stock"
    assert event.root_cause_confidence == pytest.approx(0.5)
    assert event.proposed_adjustments == []


def test_stockout_root_causes_are_ranked(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))
    supplier = Supplier(
        name="Acme",
        purchase_orders=[
            PurchaseOrderArrival(expected_date=AS_OF - timedelta(days=20), actual_date=AS_OF - timedelta(days=10))
        ],
    )
    spike = SpikeDetection(sku="SKU-1", is_spiking=True, spike_multiplier=1.8)
    accuracy = [
        track_accuracy("SKU-1", AS_OF - timedelta(days=day), 10, 18) for day in range(1, 5)
    ]

    event = detector.scan_sku(
        _stockout_snapshot(supplier=supplier, spike=spike, accuracy=accuracy), AS_OF
    )[0]

    assert [factor.factor for factor in event.contributing_factors] == [
        "Supplier delay",
        "Undetected sales spike",
        "Systematic under-forecasting",
    ]
    assert event.root_cause == "Supplier delay"
    assert event.root_cause_confidence == pytest.approx(0.4)
    adjustments = {item.parameter: item for item in event.proposed_adjustments}
    assert adjustments["safety_stock_days"].new_value == pytest.approx(21)
    assert adjustments["spike_detection_threshold"].new_value == pytest.approx(40)
    assert adjustments["forecast_bias_correction"].new_value == pytest.approx(1.8)


def test_no_stockout_without_recent_sales(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))

    assert detector.scan_sku(_stockout_snapshot(history=_history([0] * 60)), AS_OF) == []


def test_overstock_with_declining_sales(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))
    accuracy = [track_accuracy("SKU-1", AS_OF - timedelta(days=10 + day), 20, 10) for day in range(2)]
    snapshot = _stockout_snapshot(
        history=_history([5] * 30 + [1] * 30),
        position=InventoryPosition(warehouse_available=2000),
        unit_cost=4.0,
        accuracy=accuracy,
    )

    events = detector.scan_sku(snapshot, AS_OF)

    assert [event.event_type for event in events] == ["overstock"]
    event = events[0]
    assert event.unit_impact == 1820
    assert event.financial_impact == pytest.approx(1820 * 4.0)
    assert event.root_cause == "Systematic over-forecasting"
    assert event.contributing_factors[1].evidence == "Sales dropped 80% vs prior period"
    assert event.proposed_adjustments[0].new_value == pytest.approx(0.5)


def test_small_inventory_is_never_overstock(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))
    snapshot = _stockout_snapshot(
        history=_history([0] * 59 + [1]), position=InventoryPosition(warehouse_available=99)
    )

    assert detector.scan_sku(snapshot, AS_OF) == []


def test_repeated_misses_trigger_reoptimisation(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))
    accuracy = [track_accuracy("SKU-1", AS_OF - timedelta(days=day), 20, 10) for day in range(3)]
    snapshot = _stockout_snapshot(position=InventoryPosition(warehouse_available=50), accuracy=accuracy)

    events = detector.scan_sku(snapshot, AS_OF)

    assert [event.event_type for event in events] == ["forecast_miss"]
    event = events[0]
    assert event.start_date == AS_OF - timedelta(days=2)
    assert event.end_date == AS_OF
    assert event.unit_impact == 30
    assert event.root_cause == "Average forecast error 100%"
    assert event.proposed_adjustments[0].parameter == "model_weights"


def test_summary_and_repeat_scan_ids(tmp_path: Path) -> None:
    detector = AnomalyDetector(config_root=str(tmp_path))
    snapshots = [
        _stockout_snapshot(sku="A"),
        _stockout_snapshot(sku="B"),
        _stockout_snapshot(
            sku="C", history=_history([1] * 60), position=InventoryPosition(warehouse_available=1000)
        ),
    ]

    events, summary = detector.scan(snapshots, AS_OF)
    again, _ = detector.scan(snapshots, AS_OF)

    assert [event.id for event in events] == [event.id for event in again]
    assert summary.total_anomalies == 3
    assert summary.by_type == {"stockout": 2, "overstock": 1, "storage_fee_spike": 0, "forecast_miss": 0}
    assert [action.priority for action in summary.recommended_actions] == ["critical", "medium"]
    assert summary.recommended_actions[0].affected_skus == ["A", "B"]


# ---------------------------------------------------------------------------
# Adjustments


def _adjustments(tmp_path: Path, hook=None) -> AdjustmentService:
    (tmp_path / "settings.yaml").write_text(
        yaml.safe_dump({"decision": {"safety_stock_days": 10}, "spike": {"threshold_percent": 60}})
    )
    return AdjustmentService(config_root=str(tmp_path), reoptimize_hook=hook)


def _safety(new_value: float = 17.0) -> ParameterAdjustment:
    return ParameterAdjustment(
        sku="SKU-1",
        parameter="safety_stock_days",
        old_value=10.0,
        new_value=new_value,
        reason="Increase safety stock due to supplier delays",
    )


def test_tuning_defaults_come_from_settings(tmp_path: Path) -> None:
    tuning = _adjustments(tmp_path).tuning_for("SKU-1")

    assert tuning.safety_stock_days == 10
    assert tuning.spike_detection_threshold == 60
    assert tuning.forecast_bias_correction == 1.0


def test_apply_writes_tuning_file_once(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)

    first = service.apply(_safety())
    second = service.apply(_safety())

    assert first.applied is True
    assert first.detail == "safety_stock_days: 10.0 -> 17.0"
    assert second.applied is False
    assert second.detail == "already applied"
    stored = yaml.safe_load((tmp_path / "tuning.yaml").read_text())
    assert stored["SKU-1"]["safety_stock_days"] == 17.0
    assert service.tuning_for("SKU-1").safety_stock_days == 17.0
    assert service.tuning_for("OTHER").safety_stock_days == 10


def test_scan_only_proposes_until_applied(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)
    detector = AnomalyDetector(config_root=str(tmp_path))
    supplier = Supplier(
        name="Acme",
        purchase_orders=[
            PurchaseOrderArrival(expected_date=AS_OF - timedelta(days=30), actual_date=AS_OF - timedelta(days=15))
        ],
    )
    snapshot = _stockout_snapshot(supplier=supplier, tuning=service.tuning_for("SKU-1"))

    events, _ = detector.scan([snapshot], AS_OF)
    service.propose(events)
    service.propose(events)

    assert len(service.pending()) == 1
    assert not (tmp_path / "tuning.yaml").exists()

    results = service.apply_pending()

    assert [result.applied for result in results] == [True]
    assert service.pending() == []
    assert service.tuning_for("SKU-1").safety_stock_days == 17.0


def test_non_finite_values_are_rejected(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)

    with pytest.raises(ValueError):
        service.apply(_safety(float("nan")))


def test_model_weight_adjustment_calls_reoptimiser(tmp_path: Path) -> None:
    calls = []

    def _hook(sku: str) -> OptimizationResult:
        calls.append(sku)
        return OptimizationResult(sku=sku, status="persisted")

    adjustment = ParameterAdjustment(
        sku="SKU-1", parameter="model_weights", old_value=0, new_value=0, reason="Trigger model re-optimization"
    )

    result = _adjustments(tmp_path, hook=_hook).apply(adjustment)
    orphan = _adjustments(tmp_path).apply(adjustment)

    assert calls == ["SKU-1"]
    assert result.applied is True
    assert orphan.applied is False
    assert not (tmp_path / "tuning.yaml").exists()


def test_repeated_scans_do_not_compound_safety_stock(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)
    detector = AnomalyDetector(config_root=str(tmp_path))
    arrived = AS_OF - timedelta(days=15)
    supplier = Supplier(
        name="Acme",
        purchase_orders=[PurchaseOrderArrival(expected_date=AS_OF - timedelta(days=30), actual_date=arrived)],
    )

    def _cycle() -> list:
        snapshot = _stockout_snapshot(supplier=supplier, tuning=service.tuning_for("SKU-1"))
        events, _ = detector.scan([snapshot], AS_OF)
        service.propose(events)
        return service.apply_pending()

    first = _cycle()
    second = _cycle()

    assert [result.applied for result in first] == [True]
    assert second == []
    assert service.tuning_for("SKU-1").safety_stock_days == 17.0
    assert service.applied_evidence("SKU-1", "safety_stock_days") == arrived


def test_newer_evidence_is_applied_again(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)
    old = _safety().model_copy(update={"evidence_date": AS_OF - timedelta(days=20)})
    stale = _safety(24.0).model_copy(update={"evidence_date": AS_OF - timedelta(days=20)})
    fresh = _safety(24.0).model_copy(update={"evidence_date": AS_OF - timedelta(days=2)})

    assert service.apply(old).applied is True
    assert service.apply(stale).detail == "evidence already applied"
    assert service.apply(fresh).applied is True
    assert service.tuning_for("SKU-1").safety_stock_days == 24.0


def test_replacing_tuning_keeps_applied_evidence(tmp_path: Path) -> None:
    service = _adjustments(tmp_path)
    service.apply(_safety().model_copy(update={"evidence_date": AS_OF}))

    service.set_tuning("SKU-1", service.tuning_for("SKU-1").model_copy(update={"safety_stock_days": 30.0}))

    assert service.tuning_for("SKU-1").safety_stock_days == 30.0
    assert service.applied_evidence("SKU-1", "safety_stock_days") == AS_OF
