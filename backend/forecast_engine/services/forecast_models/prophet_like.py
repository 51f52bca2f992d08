r"""backend\forecast_engine\services\forecast_models\prophet_like.py

Additive decomposition in the spirit of Prophet, built on plain numpy.

The series is split into a piecewise-linear trend, weekly and yearly Fourier
seasonality (ridge regression on the detrended values) and event effects for
known seasonal windows.  Nothing here samples or optimises a posterior; the
name only describes the shape of the model.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np

from ...models.schemas import (
    DailyPrediction,
    ModelPrediction,
    PredictionFactors,
    SeasonalEvent,
    clamp_daily,
    clamp_prediction,
)
from .base import ForecastModel, SeriesView, mean_or_zero, std_or_zero

LOGGER = logging.getLogger(__name__)

WEEKLY_PERIOD = 7.0
YEARLY_PERIOD = 365.25


def fourier_features(index: np.ndarray, period: float, order: int) -> np.ndarray:
    """Return ``[sin(kt), cos(kt)]`` columns for k = 1..order, t = 2*pi*i/period."""

    t = 2.0 * math.pi * np.asarray(index, dtype=float) / period
    columns = []
    for k in range(1, order + 1):
        columns.append(np.sin(k * t))
        columns.append(np.cos(k * t))
    return np.column_stack(columns)


def ridge_fit(features: np.ndarray, target: np.ndarray, penalty: float) -> np.ndarray:
    gram = features.T @ features + penalty * np.eye(features.shape[1])
    return np.linalg.solve(gram, features.T @ target)


@dataclass(slots=True)
class Decomposition:
    trend: np.ndarray
    slope: float
    weekly_coef: np.ndarray
    yearly_coef: Optional[np.ndarray]
    event_effects: Dict[str, float]
    fitted: np.ndarray
    residuals: np.ndarray
    r_squared: float
    components: Dict[str, np.ndarray] = field(default_factory=dict)


class ProphetLikeModel(ForecastModel):
    name = "prophet"

    def __init__(
        self,
        changepoint_prior_scale: float = 0.05,
        num_changepoints: int = 25,
        weekly_fourier_order: int = 3,
        yearly_fourier_order: int = 10,
        holiday_prior_scale: float = 10.0,
        ridge_lambda: float = 0.1,
        min_data_points: int = 30,
    ) -> None:
        self.changepoint_prior_scale = float(changepoint_prior_scale)
        self.num_changepoints = int(num_changepoints)
        self.weekly_fourier_order = int(weekly_fourier_order)
        self.yearly_fourier_order = int(yearly_fourier_order)
        self.holiday_prior_scale = float(holiday_prior_scale)
        self.ridge_lambda = float(ridge_lambda)
        super().__init__(min_data_points)

    # ------------------------------------------------------------------
    def fit_trend(self, values: np.ndarray) -> np.ndarray:
        """OLS line plus ramped change points estimated from the base residuals."""

        n = values.size
        index = np.arange(n, dtype=float)
        x_mean = (n - 1) / 2.0
        y_mean = float(np.mean(values))
        denom = float(np.sum((index - x_mean) ** 2))
        slope = float(np.sum((index - x_mean) * (values - y_mean))) / denom if denom > 0 else 0.0
        intercept = y_mean - slope * x_mean
        trend = intercept + slope * index

        k = min(self.num_changepoints, n // 10)
        if k <= 0:
            return trend

        residuals = values - trend
        window = n // (k + 1)
        for i in range(k):
            start = window * (i + 1) - window // 2
            end = min(start + window, n)
            if start <= 0 or end <= start:
                continue
            before = float(np.sum(residuals[max(0, start - window) : start])) / window
            after = float(np.sum(residuals[start:end])) / min(window, end - start)
            change = (after - before) * (1.0 - self.changepoint_prior_scale)
            ramp = (np.arange(start, n, dtype=float) - start) / (n - start)
            trend[start:] += change * ramp
        return trend

    def _event_effects(
        self, detrended: np.ndarray, dates: List[date], events: Sequence[SeasonalEvent]
    ) -> tuple[Dict[str, float], np.ndarray]:
        component = np.zeros(detrended.size)
        effects: Dict[str, float] = {}
        shrink = 1.0 - 1.0 / self.holiday_prior_scale if self.holiday_prior_scale > 0 else 0.0
        for event in events:
            if not event.is_active:
                continue
            mask = np.array([event.contains(day) for day in dates], dtype=bool)
            if not mask.any() or mask.all():
                continue
            effect = (float(np.mean(detrended[mask])) - float(np.mean(detrended[~mask]))) * shrink
            effects[event.name] = effect
            component[mask] += effect
        return effects, component

    def decompose(
        self, values: np.ndarray, dates: List[date], events: Sequence[SeasonalEvent] = ()
    ) -> Decomposition:
        n = values.size
        index = np.arange(n)
        trend = self.fit_trend(values)
        detrended = values - trend

        weekly_x = fourier_features(index, WEEKLY_PERIOD, self.weekly_fourier_order)
        weekly_coef = ridge_fit(weekly_x, detrended, self.ridge_lambda)
        weekly = weekly_x @ weekly_coef

        yearly_coef = None
        yearly = np.zeros(n)
        if n >= 365:
            yearly_x = fourier_features(index, YEARLY_PERIOD, self.yearly_fourier_order)
            yearly_coef = ridge_fit(yearly_x, detrended, self.ridge_lambda)
            yearly = yearly_x @ yearly_coef

        effects, event_component = self._event_effects(detrended, dates, events)

        fitted = trend + weekly + yearly + event_component
        residuals = values - fitted
        ss_tot = float(np.sum((values - np.mean(values)) ** 2))
        r_squared = 1.0 - float(np.sum(residuals**2)) / ss_tot if ss_tot > 0 else 0.0
        slope = float(trend[-1] - trend[-2]) if n >= 2 else 0.0

        return Decomposition(
            trend=trend,
            slope=slope,
            weekly_coef=weekly_coef,
            yearly_coef=yearly_coef,
            event_effects=effects,
            fitted=fitted,
            residuals=residuals,
            r_squared=r_squared,
            components={"weekly": weekly, "yearly": yearly, "events": event_component},
        )

    # ------------------------------------------------------------------
    def _future_components(
        self, model: Decomposition, n: int, step: int
    ) -> tuple[float, float]:
        position = np.array([n + step - 1])
        weekly = float(
            (fourier_features(position, WEEKLY_PERIOD, self.weekly_fourier_order) @ model.weekly_coef)[0]
        )
        yearly = 0.0
        if model.yearly_coef is not None:
            yearly = float(
                (fourier_features(position, YEARLY_PERIOD, self.yearly_fourier_order) @ model.yearly_coef)[0]
            )
        return weekly, yearly

    def _future_event(
        self, model: Decomposition, day: date, last_trend: float, events: Sequence[SeasonalEvent]
    ) -> float:
        for event in events:
            if not event.is_active or not event.contains(day):
                continue
            if event.name in model.event_effects:
                return model.event_effects[event.name]
            multiplier = (
                event.learned_multiplier
                if event.learned_multiplier is not None
                else event.base_multiplier
            )
            return last_trend * (multiplier - 1.0)
        return 0.0

    def _step_value(
        self,
        model: Decomposition,
        n: int,
        step: int,
        day: date,
        events: Sequence[SeasonalEvent],
    ) -> tuple[float, float, float]:
        last_trend = float(model.trend[-1])
        weekly, yearly = self._future_components(model, n, step)
        event = self._future_event(model, day, last_trend, events)
        value = max(0.0, last_trend + step * model.slope + weekly + yearly + event)
        return value, weekly, yearly

    def _confidence(self, values: np.ndarray, model: Decomposition) -> float:
        recent_residuals = model.residuals[-30:]
        recent_mean = mean_or_zero(values[-30:])
        cv = std_or_zero(recent_residuals) / recent_mean if recent_mean > 0 else 1.0
        return (
            0.3 * min(1.0, values.size / 180)
            + 0.4 * max(0.0, model.r_squared)
            + 0.3 * max(0.0, 1.0 - cv)
        )

    @staticmethod
    def _residual_rms(model: Decomposition) -> float:
        return float(math.sqrt(np.mean(model.residuals**2))) if model.residuals.size else 0.0

    # ------------------------------------------------------------------
    def _predict(
        self, series: SeriesView, horizon_days: int, events: Sequence[SeasonalEvent]
    ) -> ModelPrediction:
        values = series.values
        n = values.size
        model = self.decompose(values, series.dates, events)
        last_day = series.last_date

        steps, weeklies, yearlies = [], [], []
        for step in range(1, horizon_days + 1):
            value, weekly, yearly = self._step_value(
                model, n, step, last_day + timedelta(days=step), events
            )
            steps.append(value)
            weeklies.append(weekly)
            yearlies.append(yearly)

        average = float(np.mean(steps))
        spread = 1.96 * self._residual_rms(model) * math.sqrt(horizon_days / 7)
        last_trend = float(model.trend[-1])
        factors = PredictionFactors(
            base=last_trend,
            trend=last_trend - float(model.trend[0]),
            seasonality=1.0 + (float(np.mean(weeklies)) + float(np.mean(yearlies))) / max(last_trend, 1.0),
        )
        return clamp_prediction(
            self.name,
            average,
            self._confidence(values, model),
            average - spread,
            average + spread,
            factors=factors,
        )

    def _predict_daily(
        self, series: SeriesView, days: List[date], events: Sequence[SeasonalEvent]
    ) -> List[DailyPrediction]:
        values = series.values
        n = values.size
        model = self.decompose(values, series.dates, events)
        confidence = self._confidence(values, model)
        rms = self._residual_rms(model)

        daily = []
        for offset, day in enumerate(days):
            step = offset + 1
            value, _, _ = self._step_value(model, n, step, day, events)
            spread = 1.96 * rms * math.sqrt(step / 7)
            daily.append(clamp_daily(day, value, confidence * 0.995**offset, value - spread, value + spread))
        return daily

    # ------------------------------------------------------------------
    @staticmethod
    def _fallback_trend(values: np.ndarray) -> float:
        recent = mean_or_zero(values[-7:])
        older_window = values[-14:-7]
        if recent <= 0 or older_window.size == 0:
            return 0.0
        return (recent - mean_or_zero(older_window)) / recent

    def _fallback(self, series: SeriesView, horizon_days: int) -> ModelPrediction:
        values = series.values
        if values.size == 0:
            return clamp_prediction(self.name, 0.0, 0.0, 0.0, 0.0, is_fallback=True)

        mean = mean_or_zero(values)
        trend = self._fallback_trend(values)
        forecast = mean * (1 + trend * horizon_days / 30)
        spread = 1.96 * std_or_zero(values)
        return clamp_prediction(
            self.name,
            forecast,
            min(0.5, values.size / 60),
            forecast - spread,
            forecast + spread,
            factors=PredictionFactors(base=mean, trend=trend),
            is_fallback=True,
        )

    def _fallback_daily(self, series: SeriesView, days: List[date]) -> List[DailyPrediction]:
        values = series.values
        if values.size == 0:
            return [clamp_daily(day, 0.0, 0.0) for day in days]

        mean = mean_or_zero(values)
        trend = self._fallback_trend(values)
        spread = 1.96 * std_or_zero(values)
        confidence = min(0.5, values.size / 60)
        daily = []
        for offset, day in enumerate(days):
            value = mean * (1 + trend * (offset + 1) / 30)
            daily.append(clamp_daily(day, value, confidence * 0.99**offset, value - spread, value + spread))
        return daily
