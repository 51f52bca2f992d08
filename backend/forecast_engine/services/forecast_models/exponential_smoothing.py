r"""backend\forecast_engine\services\forecast_models\exponential_smoothing.py

Holt-Winters triple exponential smoothing with a multiplicative weekly season.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Sequence

import numpy as np

from ...models.schemas import (
    DailyPrediction,
    ModelPrediction,
    PredictionFactors,
    SalesDataPoint,
    SeasonalEvent,
    clamp_daily,
    clamp_prediction,
)
from .base import ForecastModel, SeriesView, mean_or_zero, std_or_zero, to_series

LOGGER = logging.getLogger(__name__)

ALPHA_GRID = (0.1, 0.2, 0.3, 0.4, 0.5)
BETA_GRID = (0.05, 0.1, 0.15, 0.2)
GAMMA_GRID = (0.1, 0.2, 0.3, 0.4)


@dataclass(slots=True)
class HoltWintersState:
    level: float
    trend: float
    seasonal: np.ndarray
    residuals: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def predict(self, n: int, step: int) -> float:
        """Forecast ``step`` days past a history of length ``n``."""

        period = self.seasonal.size
        index = (n + step - 1) % period
        return max(0.0, (self.level + step * self.trend) * float(self.seasonal[index]))


class ExponentialSmoothingModel(ForecastModel):
    name = "exponential_smoothing"

    def __init__(
        self,
        alpha: float = 0.3,
        beta: float = 0.1,
        gamma: float = 0.2,
        seasonal_period: int = 7,
        min_data_points: int | None = None,
    ) -> None:
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.gamma = float(gamma)
        self.seasonal_period = int(seasonal_period)
        super().__init__(min_data_points if min_data_points is not None else self.seasonal_period * 2)

    # ------------------------------------------------------------------
    def fit(self, values: np.ndarray) -> HoltWintersState:
        """Initialise from the first two seasons and run the smoothing updates."""

        p = self.seasonal_period
        n = values.size
        if n < p:
            raise ValueError("need at least one full season to initialise")

        level = float(np.mean(values[:p]))
        trend = 0.0
        if n >= 2 * p:
            trend = (float(np.mean(values[p : 2 * p])) - level) / p

        seasonal = np.ones(p, dtype=float)
        if level != 0:
            for phase in range(p):
                seasonal[phase] = float(np.mean(values[phase::p])) / level
            total = float(seasonal.sum())
            if total > 0:
                seasonal = seasonal * p / total

        residuals = []
        for i in range(p, n):
            value = float(values[i])
            phase = i % p
            prev_level = level
            prev_seasonal = float(seasonal[phase])
            residuals.append(value - (prev_level + trend) * prev_seasonal)
            divisor = prev_seasonal if prev_seasonal > 0 else 1.0

            level = self.alpha * (value / divisor) + (1 - self.alpha) * (prev_level + trend)
            trend = self.beta * (level - prev_level) + (1 - self.beta) * trend
            if level > 0:
                seasonal[phase] = self.gamma * (value / level) + (1 - self.gamma) * prev_seasonal

        return HoltWintersState(
            level=level, trend=trend, seasonal=seasonal, residuals=np.asarray(residuals, dtype=float)
        )

    def _confidence(self, values: np.ndarray, state: HoltWintersState) -> float:
        n = values.size
        mean = mean_or_zero(values)
        cv = std_or_zero(values) / mean if mean > 0 else 1.0
        data_score = min(1.0, n / 90)
        stability = max(0.0, 1.0 - cv)
        trend_score = 0.9 if abs(state.trend) < 0.1 * abs(state.level) else 0.7
        return 0.4 * data_score + 0.4 * stability + 0.2 * trend_score

    @staticmethod
    def _error_std(state: HoltWintersState) -> float:
        """Spread of the one-step-ahead errors made while fitting."""

        if state.residuals.size == 0:
            return 1.0
        return float(np.std(state.residuals))

    # ------------------------------------------------------------------
    def _predict(
        self, series: SeriesView, horizon_days: int, events: Sequence[SeasonalEvent]
    ) -> ModelPrediction:
        values = series.values
        n = values.size
        state = self.fit(values)

        steps = [state.predict(n, h) for h in range(1, horizon_days + 1)]
        average = float(np.mean(steps))
        sigma = self._error_std(state)
        spread = 1.96 * sigma * math.sqrt(horizon_days)
        seasonal_used = float(
            np.mean([state.seasonal[(n + h - 1) % self.seasonal_period] for h in range(1, horizon_days + 1)])
        )
        return clamp_prediction(
            self.name,
            average,
            self._confidence(values, state),
            average - spread,
            average + spread,
            factors=PredictionFactors(base=state.level, trend=state.trend, seasonality=seasonal_used),
        )

    def _predict_daily(
        self, series: SeriesView, days: List[date], events: Sequence[SeasonalEvent]
    ) -> List[DailyPrediction]:
        values = series.values
        n = values.size
        state = self.fit(values)
        confidence = self._confidence(values, state)
        sigma = self._error_std(state)

        daily = []
        for offset, day in enumerate(days):
            step = offset + 1
            value = state.predict(n, step)
            spread = 1.96 * sigma * math.sqrt(step)
            daily.append(
                clamp_daily(day, value, confidence * 0.995**offset, value - spread, value + spread)
            )
        return daily

    # ------------------------------------------------------------------
    def _smoothed(self, values: np.ndarray, horizon_days: int) -> float:
        smoothed = float(values[0])
        for value in values[1:]:
            smoothed = self.alpha * float(value) + (1 - self.alpha) * smoothed
        recent = values[-7:]
        prior = values[-14:-7]
        trend = (mean_or_zero(recent) - mean_or_zero(prior)) / 7 if prior.size else 0.0
        return smoothed + trend * (horizon_days / 2)

    def _fallback(self, series: SeriesView, horizon_days: int) -> ModelPrediction:
        values = series.values
        if values.size == 0:
            return clamp_prediction(self.name, 0.0, 0.0, 0.0, 0.0, is_fallback=True)

        forecast = self._smoothed(values, horizon_days)
        spread = 1.96 * std_or_zero(values)
        return clamp_prediction(
            self.name,
            forecast,
            min(0.6, values.size / 60),
            forecast - spread,
            forecast + spread,
            is_fallback=True,
        )

    def _fallback_daily(self, series: SeriesView, days: List[date]) -> List[DailyPrediction]:
        values = series.values
        if values.size == 0:
            return [clamp_daily(day, 0.0, 0.0) for day in days]

        value = self._smoothed(values, 1)
        spread = 1.96 * std_or_zero(values)
        confidence = min(0.6, values.size / 60)
        return [
            clamp_daily(day, value, confidence * 0.99**offset, value - spread, value + spread)
            for offset, day in enumerate(days)
        ]

    # ------------------------------------------------------------------
    def optimize_parameters(
        self, history: Sequence[SalesDataPoint], validation_days: int = 30
    ) -> Dict[str, float]:
        """Grid-search alpha/beta/gamma against a holdout of ``validation_days``.

        Returns the current parameters unchanged when the history is shorter
        than ``validation_days + 60``.
        """

        best: Dict[str, float] = {
            "alpha": self.alpha,
            "beta": self.beta,
            "gamma": self.gamma,
            "mape": math.inf,
        }
        values = to_series(history).values
        if values.size < validation_days + 60:
            return best

        train = values[:-validation_days]
        actual = values[-validation_days:]
        mask = actual > 0
        if not mask.any():
            return best

        for alpha, beta, gamma in itertools.product(ALPHA_GRID, BETA_GRID, GAMMA_GRID):
            candidate = ExponentialSmoothingModel(alpha, beta, gamma, self.seasonal_period)
            state = candidate.fit(train)
            predicted = np.array(
                [state.predict(train.size, h) for h in range(1, validation_days + 1)]
            )
            mape = float(np.mean(np.abs(predicted[mask] - actual[mask]) / actual[mask]))
            if mape < best["mape"]:
                best = {"alpha": alpha, "beta": beta, "gamma": gamma, "mape": mape}

        LOGGER.info(
            "Holt-Winters grid search picked alpha=%.2f beta=%.2f gamma=%.2f (MAPE %.3f)",
            best["alpha"],
            best["beta"],
            best["gamma"],
            best["mape"],
        )
        return best
