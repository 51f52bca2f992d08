r"""backend\forecast_engine\services\ensemble_service.py

Weighted ensemble of the four demand models.

The four models run concurrently for a SKU; their per-day values are blended
with the SKU's learned weights and the blend is then scaled by the tuned
bias correction and by the seasonal, deal and spike multipliers for each
day.  Safety stock and an uncertainty band are attached to every day along
with plain-text reasoning.
"""

from __future__ import annotations

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import load_yaml, section
from ..core.exceptions import InsufficientHistoryError
from ..models.schemas import (
    AggregatedForecast,
    DailyPrediction,
    Deal,
    DemandDay,
    EnsembleForecast,
    ModelComparison,
    ModelPrediction,
    ModelWeights,
    SalesDataPoint,
    SpikeDetection,
    Supplier,
    TuningParameters,
    normalize_history,
)
from .decision_service import calculate_safety_stock
from .forecast_models.base import ForecastModel
from .forecast_models.registry import default_models
from .seasonality_service import SeasonalityService
from .spike_service import spike_multiplier_for
from .weights_repository import InMemoryWeightsRepository, WeightsRepository

LOGGER = logging.getLogger(__name__)

DISPLAY_NAMES = {
    "prophet": "Prophet",
    "lstm": "LSTM",
    "exponential_smoothing": "Exponential Smoothing",
    "arima": "ARIMA",
}

TuningProvider = Callable[[str], TuningParameters]

ModelRun = Tuple[ModelPrediction, List[DailyPrediction]]


def _default_tuning(sku: str) -> TuningParameters:
    return TuningParameters()


class EnsembleService:
    """Blend the model forecasts for a SKU into daily ensemble forecasts."""

    def __init__(
        self,
        config_root: str = "configs",
        models: Optional[Sequence[ForecastModel]] = None,
        weights_repository: Optional[WeightsRepository] = None,
        seasonality: Optional[SeasonalityService] = None,
        tuning_provider: Optional[TuningProvider] = None,
    ) -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        cfg = section(settings, "ensemble")
        defaults = section(cfg, "default_weights")

        self.models: Tuple[ForecastModel, ...] = tuple(models) if models else default_models(settings)
        self.weights_repository = weights_repository or InMemoryWeightsRepository()
        self.seasonality = seasonality or SeasonalityService(config_root=config_root)
        self.tuning_provider = tuning_provider or _default_tuning
        self.default_weights = {
            "prophet": float(defaults.get("prophet", 0.30)),
            "lstm": float(defaults.get("lstm", 0.25)),
            "exponential_smoothing": float(defaults.get("exponential_smoothing", 0.30)),
            "arima": float(defaults.get("arima", 0.15)),
        }
        self.safety_stock_history_days = int(cfg.get("safety_stock_history_days", 30))
        self.default_lead_time_days = int(
            section(settings, "decision").get("default_lead_time_days", 30)
        )

    # ------------------------------------------------------------------
    def weights_for(self, sku: str) -> ModelWeights:
        """Persisted weights for ``sku`` (or the defaults), normalised to sum to 1."""

        stored = self.weights_repository.get(sku)
        if stored is None:
            stored = ModelWeights(sku=sku, **self.default_weights)
        return stored.normalized()

    def _active_weights(self, sku: str, names: List[str]) -> Dict[str, float]:
        """Normalised weights restricted to the models that actually ran."""

        weights = self.weights_for(sku).as_dict()
        active = {name: weights.get(name, 0.0) for name in names}
        total = sum(active.values())
        if total <= 0:
            return {name: 1.0 / len(names) for name in names}
        return {name: value / total for name, value in active.items()}

    def _run_model(
        self,
        model: ForecastModel,
        history: List[SalesDataPoint],
        horizon_days: int,
        start_date: date,
    ) -> ModelRun:
        events = self.seasonality.events
        try:
            point = model.forecast(history, horizon_days, events=events)
            daily = model.forecast_daily(history, horizon_days, start_date=start_date, events=events)
        except Exception:
            LOGGER.exception("Model %s failed; serving its fallback forecast", model.name)
            point = model.fallback(history, horizon_days)
            daily = model.fallback_daily(history, horizon_days, start_date)
        return point, daily

    def run_models(
        self, history: List[SalesDataPoint], horizon_days: int, start_date: date
    ) -> Dict[str, ModelRun]:
        """Run every model concurrently and wait for all of them."""

        with ThreadPoolExecutor(max_workers=len(self.models), thread_name_prefix="model") as pool:
            futures = {
                model.name: pool.submit(self._run_model, model, history, horizon_days, start_date)
                for model in self.models
            }
            return {name: future.result() for name, future in futures.items()}

    # ------------------------------------------------------------------
    def _safety_sigma(self, history: List[SalesDataPoint], forecast: float) -> float:
        recent = np.array([point.units for point in history[-self.safety_stock_history_days :]], dtype=float)
        if recent.size == 0:
            return forecast * 0.3
        return float(np.std(recent))

    @staticmethod
    def _reasoning(
        base: float,
        final: float,
        weights: Dict[str, float],
        bias: float,
        seasonality: float,
        deal: float,
        spike: float,
    ) -> List[str]:
        primary = max(weights, key=weights.get)
        lines = [
            f"Base forecast: {base:.1f} units/day (ensemble of {len(weights)} models)",
            f"Primary model: {DISPLAY_NAMES.get(primary, primary)} ({weights[primary] * 100:.0f}% weight)",
        ]
        if bias != 1.0:
            lines.append(f"Bias correction: {bias:.2f}x")
        if seasonality != 1.0:
            season = "peak season" if seasonality > 1 else "slow season"
            lines.append(f"Seasonality: {seasonality:.2f}x ({season})")
        if deal != 1.0:
            lines.append(f"Deal impact: {deal:.2f}x")
        if spike != 1.0:
            lines.append(f"Spike adjustment: {spike:.2f}x")
        if abs(final - base) > 0.05:
            lines.append(f"Final forecast: {final:.1f} units/day")
        return lines

    def forecast(
        self,
        sku: str,
        history: Sequence[SalesDataPoint],
        horizon_days: int,
        *,
        deals: Sequence[Deal] = (),
        spike: Optional[SpikeDetection] = None,
        supplier: Optional[Supplier] = None,
        start_date: Optional[date] = None,
    ) -> List[EnsembleForecast]:
        """Return one :class:`EnsembleForecast` per day of the horizon."""

        if horizon_days <= 0:
            raise ValueError("horizon_days must be positive")

        points = normalize_history(list(history))
        if start_date is None:
            last = points[-1].date if points else date.today()
            start_date = last + timedelta(days=1)

        runs = self.run_models(points, horizon_days, start_date)
        weights = self._active_weights(sku, list(runs))
        tuning = self.tuning_provider(sku)
        bias = tuning.forecast_bias_correction
        lead_time = (
            supplier.lead_time_days
            if supplier is not None and supplier.lead_time_days > 0
            else self.default_lead_time_days
        )

        results: List[EnsembleForecast] = []
        for offset in range(horizon_days):
            day = start_date + timedelta(days=offset)
            values: Dict[str, float] = {}
            confidences: Dict[str, float] = {}
            for name in weights:
                point, daily = runs[name]
                entry = daily[offset] if offset < len(daily) else None
                values[name] = entry.forecast if entry is not None and entry.forecast > 0 else point.forecast
                confidences[name] = entry.confidence if entry is not None else point.confidence

            base = sum(values[name] * weights[name] for name in weights) * bias
            confidence = sum(confidences[name] * weights[name] for name in weights)

            seasonality = self.seasonality.seasonality_multiplier(sku, day)
            deal = self.seasonality.deal_multiplier(deals, sku, day)
            spike_multiplier = spike_multiplier_for(spike, offset)
            final = max(0.0, base * seasonality * deal * spike_multiplier)

            safety_stock = calculate_safety_stock(self._safety_sigma(points, final), lead_time, final)

            positive = [value for value in values.values() if value > 0]
            model_sigma = float(np.std(positive)) if positive else 0.0
            spread = 1.96 * model_sigma * (1 + offset / horizon_days * 0.5)

            results.append(
                EnsembleForecast(
                    date=day,
                    base_forecast=max(0.0, base),
                    final_forecast=final,
                    confidence=min(1.0, max(0.0, confidence)),
                    model_forecasts=values,
                    weights=weights,
                    seasonality_multiplier=seasonality,
                    deal_multiplier=deal,
                    spike_multiplier=spike_multiplier,
                    safety_stock=safety_stock,
                    recommended_inventory=int(math.ceil(final + safety_stock)),
                    lower_bound=max(0.0, final - spread),
                    upper_bound=final + spread,
                    reasoning=self._reasoning(
                        max(0.0, base), final, weights, bias, seasonality, deal, spike_multiplier
                    ),
                )
            )

        LOGGER.info(
            "Ensemble forecast for sku=%s horizon=%d first_day=%.2f",
            sku,
            horizon_days,
            results[0].final_forecast if results else 0.0,
        )
        return results

    # ------------------------------------------------------------------
    @staticmethod
    def aggregate(sku: str, forecasts: Sequence[EnsembleForecast]) -> AggregatedForecast:
        """Summarise a daily forecast into totals, extremes and reasoning."""

        if not forecasts:
            return AggregatedForecast(
                sku=sku, horizon_days=0, total_units=0, daily_average=0.0, confidence=0.0
            )

        total = sum(item.final_forecast for item in forecasts)
        days = len(forecasts)
        average = total / days
        confidence = sum(item.confidence for item in forecasts) / days
        peak = max(forecasts, key=lambda item: item.final_forecast)
        low = min(forecasts, key=lambda item: item.final_forecast)

        reasoning = [
            f"Total forecasted units: {round(total)} over {days} days",
            f"Daily average: {average:.1f} units/day",
            f"Forecast confidence: {confidence * 100:.0f}%",
            f"Peak demand day: {peak.date.isoformat()} ({peak.final_forecast:.1f} units)",
            f"Lowest demand day: {low.date.isoformat()} ({low.final_forecast:.1f} units)",
        ]
        uplift = [item.seasonality_multiplier for item in forecasts if item.seasonality_multiplier > 1.1]
        if uplift:
            increase = (sum(uplift) / len(uplift) - 1) * 100
            reasoning.append(f"{len(uplift)} days with seasonal uplift ({increase:.0f}% increase)")

        return AggregatedForecast(
            sku=sku,
            horizon_days=days,
            total_units=int(round(total)),
            daily_average=average,
            confidence=min(1.0, max(0.0, confidence)),
            peak_day=DemandDay(date=peak.date, units=peak.final_forecast),
            low_day=DemandDay(date=low.date, units=low.final_forecast),
            reasoning=reasoning,
        )

    def compare_models(
        self, history: Sequence[SalesDataPoint], validation_days: int = 30
    ) -> List[ModelComparison]:
        """Holdout MAPE and bias for each model on the last ``validation_days``."""

        points = normalize_history(list(history))
        if len(points) < validation_days + 30:
            raise InsufficientHistoryError(
                f"need at least {validation_days + 30} days of history to compare models"
            )

        train, test = points[:-validation_days], points[-validation_days:]
        actual = np.array([point.units for point in test], dtype=float)
        mask = actual > 0
        runs = self.run_models(train, validation_days, test[0].date)

        comparisons = []
        for name, (_, daily) in runs.items():
            predicted = np.array([entry.forecast for entry in daily[:validation_days]], dtype=float)
            mape = (
                float(np.mean(np.abs(predicted[mask] - actual[mask]) / actual[mask])) if mask.any() else 0.0
            )
            comparisons.append(
                ModelComparison(model=name, mape=mape, bias=float(np.mean(predicted - actual)))
            )
        return comparisons
