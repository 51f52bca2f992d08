from __future__ import annotations

import threading
from datetime import date, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.forecast_engine.core.exceptions import InsufficientHistoryError, SkuNotFoundError
from backend.forecast_engine.models.schemas import (
    ModelWeights,
    SalesDataPoint,
    clamp_daily,
    clamp_prediction,
)
from backend.forecast_engine.services.ensemble_service import EnsembleService
from backend.forecast_engine.services.forecast_models.base import ForecastModel
from backend.forecast_engine.services.weight_optimizer import (
    WeightOptimizer,
    accuracy_report,
    history_fingerprint,
    track_accuracy,
)
from backend.forecast_engine.services.weights_repository import (
    FileWeightsRepository,
    InMemoryWeightsRepository,
)


class ConstantModel(ForecastModel):
    def __init__(self, name: str, value: float) -> None:
        super().__init__(min_data_points=1)
        self.name = name
        self.value = value

    def _predict(self, series, horizon_days, events):
        return clamp_prediction(self.name, self.value, 0.8, self.value - 1, self.value + 1)

    def _predict_daily(self, series, days, events):
        return [clamp_daily(day, self.value, 0.8) for day in days]

    def _fallback(self, series, horizon_days):
        return clamp_prediction(self.name, self.value, 0.2, 0.0, self.value, is_fallback=True)

    def _fallback_daily(self, series, days):
        return [clamp_daily(day, self.value, 0.2) for day in days]


def _history(days: int, units: float = 10.0) -> list[SalesDataPoint]:
    start = date(2024, 1, 1)
    return [SalesDataPoint(date=start + timedelta(days=i), units=units) for i in range(days)]


def _optimizer(tmp_path: Path, repository=None) -> WeightOptimizer:
    ensemble = EnsembleService(
        config_root=str(tmp_path),
        models=[ConstantModel("prophet", 10.0), ConstantModel("arima", 20.0)],
        weights_repository=repository or InMemoryWeightsRepository(),
    )
    return WeightOptimizer(ensemble, config_root=str(tmp_path))


def test_short_history_is_skipped(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)

    result = optimizer.optimize_sku("SKU-1", _history(60))

    assert result.status == "skipped"
    assert "60 days" in result.reason
    assert optimizer.repository.get("SKU-1") is None
    with pytest.raises(InsufficientHistoryError):
        optimizer.backtest("SKU-1", _history(60), ConstantModel("prophet", 10.0))


def test_backtest_scores_each_window(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)

    exact = optimizer.backtest("SKU-1", _history(120), ConstantModel("prophet", 10.0))
    double = optimizer.backtest("SKU-1", _history(120), ConstantModel("arima", 20.0))

    assert len(exact.forecasts) == 90
    assert exact.mape == pytest.approx(0.0)
    assert exact.hit_rate == pytest.approx(1.0)
    assert double.mape == pytest.approx(1.0)
    assert double.mae == pytest.approx(10.0)
    assert double.period.end == date(2024, 1, 1) + timedelta(days=119)


def test_better_weights_are_persisted_then_rerun_is_skipped(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)
    history = _history(120)

    first = optimizer.optimize_sku("SKU-1", history)
    stored = optimizer.repository.get("SKU-1")
    second = optimizer.optimize_sku("SKU-1", history)

    assert first.status == "persisted"
    assert first.new_mape < first.previous_mape
    assert stored.history_fingerprint == history_fingerprint(history)
    assert stored.prophet > stored.arima
    assert sum(stored.as_dict().values()) == pytest.approx(1.0)
    assert second.status == "skipped"
    assert optimizer.repository.get("SKU-1").same_weights(stored)


def test_weights_that_do_not_improve_are_rejected(tmp_path: Path) -> None:
    perfect = ModelWeights(sku="SKU-1", prophet=1.0, lstm=0.0, exponential_smoothing=0.0, arima=0.0)
    repository = InMemoryWeightsRepository({"SKU-1": perfect})
    optimizer = _optimizer(tmp_path, repository)

    result = optimizer.optimize_sku("SKU-1", _history(120))

    assert result.status == "rejected"
    assert repository.get("SKU-1") is perfect


def test_ensemble_mape_never_regresses_after_persist(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)
    history = _history(120)
    before = optimizer.ensemble_mape(history, optimizer.ensemble.weights_for("SKU-1"))

    optimizer.optimize_sku("SKU-1", history)
    after = optimizer.ensemble_mape(history, optimizer.ensemble.weights_for("SKU-1"))

    assert after <= before


def test_propose_keeps_current_when_no_model_qualifies(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)
    bad = optimizer.backtest("SKU-1", _history(120), ConstantModel("arima", 20.0))
    current = ModelWeights(sku="SKU-1", prophet=2, lstm=1, exponential_smoothing=1, arima=0)

    proposed = WeightOptimizer.propose_weights([bad], current)

    assert proposed.prophet == pytest.approx(0.5)
    assert proposed.arima == pytest.approx(0.0)


def test_in_memory_compare_and_swap() -> None:
    repository = InMemoryWeightsRepository()
    first = ModelWeights(sku="A")
    second = ModelWeights(sku="A", prophet=0.9, lstm=0.0, exponential_smoothing=0.1, arima=0.0)

    assert repository.compare_and_swap("A", None, first) is True
    assert repository.compare_and_swap("A", None, second) is False
    assert repository.compare_and_swap("A", first, second) is True
    assert repository.get("A").prophet == pytest.approx(0.9)


def test_file_repository_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "state" / "weights.joblib"
    weights = ModelWeights(sku="A", prophet=0.4, lstm=0.1, exponential_smoothing=0.4, arima=0.1)

    assert FileWeightsRepository(path).compare_and_swap("A", None, weights) is True

    reloaded = FileWeightsRepository(path)
    assert reloaded.get("A").same_weights(weights)
    assert reloaded.get("B") is None
    assert reloaded.compare_and_swap("A", None, weights) is False


def test_weekly_run_counts_failures(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)

    def _loader(sku: str):
        if sku == "MISSING":
            raise SkuNotFoundError(sku)
        return _history(120 if sku == "LONG" else 30)

    summary = optimizer.run_weekly(["LONG", "SHORT", "MISSING"], _loader)

    assert summary.total_skus_processed == 2
    assert summary.skus_improved == 1
    assert summary.skus_skipped == 1
    assert summary.skus_failed == 1
    assert summary.average_improvement > 0
    assert summary.stopped_early is False


def test_weekly_run_honours_stop_event(tmp_path: Path) -> None:
    optimizer = _optimizer(tmp_path)
    stop = threading.Event()
    stop.set()

    summary = optimizer.run_weekly(["A", "B"], lambda sku: _history(120), stop_event=stop)

    assert summary.stopped_early is True
    assert summary.total_skus_processed == 0
    assert optimizer.repository.get("A") is None


def test_track_accuracy_and_report() -> None:
    day = date(2024, 6, 1)
    records = [
        track_accuracy("A", day, 12, 10, model_used="prophet"),
        track_accuracy("B", day, 15, 10),
        track_accuracy("C", day, 4, 0),
        track_accuracy("D", day - timedelta(days=30), 1, 10),
    ]

    assert records[0].within_confidence is True
    assert records[0].percentage_error == pytest.approx(0.2)
    assert records[2].percentage_error == 0.0

    report = accuracy_report(records, start=day - timedelta(days=7))

    assert report.overall_mape == pytest.approx(0.35)
    assert [item.model for item in report.model_performance] == ["ensemble", "prophet"]
    assert [item.sku for item in report.top_accuracy_skus] == ["A", "B"]
    assert [item.sku for item in report.worst_accuracy_skus] == ["B", "A"]


def test_report_without_positive_actuals() -> None:
    report = accuracy_report([track_accuracy("A", date(2024, 1, 1), 3, 0)])

    assert report.overall_mape == 0.0
    assert report.model_performance == []
