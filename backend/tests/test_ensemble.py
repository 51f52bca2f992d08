from __future__ import annotations

import math
from datetime import date, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.forecast_engine.core.exceptions import InsufficientHistoryError
from backend.forecast_engine.models.schemas import (
    DecayPoint,
    Deal,
    ModelWeights,
    SalesDataPoint,
    SeasonalEvent,
    SpikeDetection,
    TuningParameters,
    clamp_daily,
    clamp_prediction,
)
from backend.forecast_engine.services.ensemble_service import EnsembleService
from backend.forecast_engine.services.forecast_models.base import ForecastModel
from backend.forecast_engine.services.seasonality_service import SeasonalityService
from backend.forecast_engine.services.weights_repository import InMemoryWeightsRepository


class ConstantModel(ForecastModel):
    """Ensemble member that always predicts ``value`` units per day."""

    def __init__(self, name: str, value: float, fail: bool = False) -> None:
        super().__init__(min_data_points=1)
        self.name = name
        self.value = value
        self.fail = fail

    def _predict(self, series, horizon_days, events):
        if self.fail:
            raise RuntimeError("model crashed")
        return clamp_prediction(self.name, self.value, 0.8, self.value - 1, self.value + 1)

    def _predict_daily(self, series, days, events):
        if self.fail:
            raise RuntimeError("model crashed")
        return [clamp_daily(day, self.value, 0.8) for day in days]

    def _fallback(self, series, horizon_days):
        return clamp_prediction(self.name, 3.0, 0.2, 2.0, 4.0, is_fallback=True)

    def _fallback_daily(self, series, days):
        return [clamp_daily(day, 3.0, 0.2) for day in days]


def _history(days: int, units: float = 10.0, end: date = date(2023, 12, 29)) -> list[SalesDataPoint]:
    start = end - timedelta(days=days - 1)
    return [SalesDataPoint(date=start + timedelta(days=i), units=units) for i in range(days)]


def _service(tmp_path: Path, models, weights=None, events=(), tuning=None) -> EnsembleService:
    repository = InMemoryWeightsRepository({"SKU-1": weights} if weights else None)
    return EnsembleService(
        config_root=str(tmp_path),
        models=models,
        weights_repository=repository,
        seasonality=SeasonalityService(config_root=str(tmp_path), events=list(events)),
        tuning_provider=tuning,
    )


def test_weights_normalise_to_one() -> None:
    weights = ModelWeights(sku="A", prophet=3.0, lstm=1.0, exponential_smoothing=0.0, arima=0.0)

    normalised = weights.normalized().as_dict()

    assert sum(normalised.values()) == pytest.approx(1.0)
    assert normalised["prophet"] == pytest.approx(0.75)


def test_all_zero_weights_split_equally() -> None:
    zero = ModelWeights(sku="A", prophet=0, lstm=0, exponential_smoothing=0, arima=0)

    assert set(zero.normalized().as_dict().values()) == {0.25}


def test_default_models_produce_bounded_forecasts(tmp_path: Path) -> None:
    pattern = [1.0, 0.9, 0.95, 1.0, 1.2, 1.4, 0.8]
    history = [
        SalesDataPoint(date=date(2023, 1, 1) + timedelta(days=i), units=15 * pattern[i % 7])
        for i in range(120)
    ]
    service = EnsembleService(config_root=str(tmp_path))

    forecasts = service.forecast("SKU-1", history, horizon_days=30)

    assert len(forecasts) == 30
    for day in forecasts:
        assert day.final_forecast >= 0.0
        assert 0.0 <= day.confidence <= 1.0
        assert day.lower_bound <= day.final_forecast <= day.upper_bound
        assert day.safety_stock >= math.ceil(day.final_forecast * 7)
        assert sum(day.weights.values()) == pytest.approx(1.0)


def test_blend_uses_persisted_weights_and_bias(tmp_path: Path) -> None:
    weights = ModelWeights(sku="SKU-1", prophet=0.5, lstm=0.0, exponential_smoothing=0.5, arima=0.0)
    service = _service(
        tmp_path,
        [ConstantModel("prophet", 10.0), ConstantModel("exponential_smoothing", 20.0)],
        weights=weights,
        tuning=lambda sku: TuningParameters(forecast_bias_correction=1.2),
    )

    forecasts = service.forecast("SKU-1", _history(60), horizon_days=5)

    assert forecasts[0].base_forecast == pytest.approx(18.0)
    assert forecasts[0].final_forecast == pytest.approx(18.0)
    assert "Bias correction: 1.20x" in forecasts[0].reasoning


def test_multipliers_cross_new_year(tmp_path: Path) -> None:
    holidays = SeasonalEvent(
        name="Holiday tail",
        start_month=12,
        start_day=20,
        end_month=1,
        end_day=5,
        base_multiplier=2.0,
    )
    deal = Deal(sku="SKU-1", start_date=date(2024, 1, 2), end_date=date(2024, 1, 3), multiplier=1.5)
    service = _service(tmp_path, [ConstantModel("prophet", 10.0)], events=[holidays])

    forecasts = service.forecast("SKU-1", _history(60), horizon_days=10, deals=[deal])
    by_date = {day.date: day for day in forecasts}

    assert forecasts[0].date == date(2023, 12, 30)
    assert by_date[date(2023, 12, 31)].final_forecast == pytest.approx(20.0)
    assert by_date[date(2024, 1, 2)].final_forecast == pytest.approx(30.0)
    assert by_date[date(2024, 1, 6)].final_forecast == pytest.approx(10.0)
    for day in forecasts:
        expected = day.base_forecast * day.seasonality_multiplier * day.deal_multiplier * day.spike_multiplier
        assert day.final_forecast == pytest.approx(expected)


def test_spike_decay_scales_future_days(tmp_path: Path) -> None:
    spike = SpikeDetection(
        sku="SKU-1",
        is_spiking=True,
        spike_multiplier=1.8,
        projected_decay=[
            DecayPoint(days_from_now=0, projected_multiplier=1.8),
            DecayPoint(days_from_now=7, projected_multiplier=1.5),
            DecayPoint(days_from_now=14, projected_multiplier=1.0),
        ],
    )
    service = _service(tmp_path, [ConstantModel("prophet", 10.0)])

    forecasts = service.forecast("SKU-1", _history(60), horizon_days=20, spike=spike)

    assert forecasts[0].final_forecast == pytest.approx(18.0)
    assert forecasts[3].spike_multiplier == pytest.approx(1.5)
    assert forecasts[19].spike_multiplier == 1.0


def test_crashing_model_is_replaced_by_its_fallback(tmp_path: Path) -> None:
    service = _service(
        tmp_path,
        [ConstantModel("prophet", 10.0), ConstantModel("arima", 10.0, fail=True)],
    )

    forecasts = service.forecast("SKU-1", _history(60), horizon_days=3)

    assert forecasts[0].model_forecasts["arima"] == pytest.approx(3.0)
    assert forecasts[0].final_forecast > 0


def test_aggregate_summarises_horizon(tmp_path: Path) -> None:
    service = _service(tmp_path, [ConstantModel("prophet", 10.0)])
    forecasts = service.forecast("SKU-1", _history(60), horizon_days=14)

    summary = service.aggregate("SKU-1", forecasts)

    assert summary.total_units == 140
    assert summary.daily_average == pytest.approx(10.0)
    assert summary.horizon_days == 14
    assert summary.reasoning[0] == "Total forecasted units: 140 over 14 days"


def test_non_positive_horizon_is_rejected(tmp_path: Path) -> None:
    service = _service(tmp_path, [ConstantModel("prophet", 10.0)])

    with pytest.raises(ValueError):
        service.forecast("SKU-1", _history(30), horizon_days=0)


def test_compare_models_needs_holdout_history(tmp_path: Path) -> None:
    service = _service(tmp_path, [ConstantModel("prophet", 10.0)])

    with pytest.raises(InsufficientHistoryError):
        service.compare_models(_history(40))

    comparison = service.compare_models(_history(90))
    assert comparison[0].model == "prophet"
    assert comparison[0].mape == pytest.approx(0.0)


def test_seasonal_multiplier_resolution_order(tmp_path: Path) -> None:
    event = SeasonalEvent(
        name="Prime Day",
        start_month=7,
        start_day=10,
        end_month=7,
        end_day=20,
        base_multiplier=3.0,
        learned_multiplier=2.0,
        sku_multipliers={"VIP": 1.2},
    )
    seasonality = SeasonalityService(config_root=str(tmp_path), events=[event], learned_blend=0.6)

    assert seasonality.seasonality_multiplier("VIP", date(2024, 7, 15)) == pytest.approx(1.2)
    assert seasonality.seasonality_multiplier("OTHER", date(2024, 7, 15)) == pytest.approx(2.4)
    assert seasonality.seasonality_multiplier("OTHER", date(2024, 7, 21)) == 1.0


def test_upcoming_peak_picks_largest_multiplier(tmp_path: Path) -> None:
    seasonality = SeasonalityService(config_root=str(tmp_path))

    event, multiplier = seasonality.upcoming_peak("SKU-1", date(2024, 4, 20))

    assert [e.name for e in seasonality.upcoming(date(2024, 4, 20))] == ["Spring Sales", "Mother's Day"]
    assert event.name == "Mother's Day"
    assert multiplier == pytest.approx(2.5)
    assert seasonality.upcoming_peak("SKU-1", date(2024, 8, 1)) is None
