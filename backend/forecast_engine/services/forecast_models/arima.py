r"""backend\forecast_engine\services\forecast_models\arima.py

Seasonal ARIMA(p, d, q)(P, D, Q)s fitted with moment estimators.

AR terms come from Yule-Walker equations solved by Levinson-Durbin on the
differenced, centred series; MA terms from the lagged correlation of the AR
residuals.  Forecasts run recursively with future shocks set to zero and the
differencing is then undone to return to unit scale.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Sequence, Tuple

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
from .base import NUMERICAL_ERRORS, ForecastModel, SeriesView, mean_or_zero, std_or_zero, to_series

LOGGER = logging.getLogger(__name__)


def autocorrelations(centred: np.ndarray, max_lag: int, lag: int = 1) -> np.ndarray:
    """Normalised autocorrelations r_0..r_max_lag at multiples of ``lag``."""

    n = centred.size
    raw = np.zeros(max_lag + 1)
    for k in range(max_lag + 1):
        shift = k * lag
        if shift >= n:
            break
        raw[k] = float(np.dot(centred[shift:], centred[: n - shift])) / (n - shift)
    r0 = raw[0] if raw[0] != 0 else 1.0
    return raw / r0


def levinson_durbin(r: np.ndarray, order: int) -> np.ndarray:
    """Solve the Yule-Walker equations for ``order`` AR coefficients."""

    if order <= 0 or r.size < 2:
        return np.zeros(0)
    coeffs = [float(r[1])]
    error = 1.0 - float(r[1]) ** 2
    for i in range(2, min(order, r.size - 1) + 1):
        if error <= 0:
            break
        acc = sum(coeffs[j] * float(r[i - j - 1]) for j in range(i - 1))
        reflection = (float(r[i]) - acc) / error
        coeffs = [coeffs[j] - reflection * coeffs[i - j - 2] for j in range(i - 1)] + [reflection]
        error *= 1.0 - reflection**2
    return np.array(coeffs, dtype=float)


def ma_coefficients(residuals: np.ndarray, order: int, lag: int = 1) -> np.ndarray:
    if order <= 0 or residuals.size < 2 * order * lag:
        return np.zeros(0)
    centred = residuals - float(np.mean(residuals))
    coeffs = []
    for k in range(1, order + 1):
        shift = k * lag
        lagged = centred[: centred.size - shift]
        denom = float(np.dot(lagged, lagged))
        coeffs.append(float(np.dot(centred[shift:], lagged)) / denom if denom > 0 else 0.0)
    return np.array(coeffs, dtype=float)


@dataclass(slots=True)
class ArimaFit:
    intercept: float
    ar: np.ndarray
    ma: np.ndarray
    sar: np.ndarray
    sma: np.ndarray
    differenced: np.ndarray
    residuals: np.ndarray
    start: int
    stages: List[Tuple[str, np.ndarray]] = field(default_factory=list)

    @property
    def residual_rms(self) -> float:
        active = self.residuals[self.start :]
        return float(math.sqrt(np.mean(active**2))) if active.size else 0.0


class ArimaModel(ForecastModel):
    name = "arima"

    def __init__(
        self,
        p: int = 2,
        d: int = 1,
        q: int = 1,
        seasonal_p: int = 1,
        seasonal_d: int = 1,
        seasonal_q: int = 1,
        seasonal_period: int = 7,
        min_data_points: int | None = None,
    ) -> None:
        self.p, self.d, self.q = int(p), int(d), int(q)
        self.seasonal_p, self.seasonal_d, self.seasonal_q = int(seasonal_p), int(seasonal_d), int(seasonal_q)
        self.seasonal_period = int(seasonal_period)
        if min_data_points is None:
            min_data_points = max(self.p, self.q, self.seasonal_period) * 2 + 30
        super().__init__(min_data_points)

    # ------------------------------------------------------------------
    def difference(self, values: np.ndarray) -> Tuple[np.ndarray, List[Tuple[str, np.ndarray]]]:
        """Apply regular then seasonal differencing, remembering each input level."""

        stages: List[Tuple[str, np.ndarray]] = []
        series = np.asarray(values, dtype=float)
        for _ in range(self.d):
            stages.append(("regular", series))
            series = np.diff(series)
        period = self.seasonal_period
        for _ in range(self.seasonal_d):
            if series.size <= 2 * period:
                break
            stages.append(("seasonal", series))
            series = series[period:] - series[:-period]
        return series, stages

    def integrate(self, forecasts: np.ndarray, stages: List[Tuple[str, np.ndarray]]) -> np.ndarray:
        """Undo :meth:`difference` for values that follow the observed history."""

        result = np.asarray(forecasts, dtype=float)
        for kind, level in reversed(stages):
            if kind == "seasonal":
                extended = list(level)
                for value in result:
                    extended.append(float(value) + extended[-self.seasonal_period])
                result = np.array(extended[level.size :])
            else:
                result = float(level[-1]) + np.cumsum(result)
        return result

    def fit(self, values: np.ndarray) -> ArimaFit:
        differenced, stages = self.difference(values)
        n = differenced.size
        if n < max(self.p, self.q, self.seasonal_period) + 2:
            raise ValueError("not enough observations left after differencing")

        intercept = float(np.mean(differenced))
        centred = differenced - intercept

        ar = levinson_durbin(autocorrelations(centred, self.p), self.p)
        ar_residuals = np.array(
            [
                centred[t] - sum(ar[i] * centred[t - i - 1] for i in range(ar.size))
                for t in range(ar.size, n)
            ]
        )
        ma = ma_coefficients(ar_residuals, self.q)

        period = self.seasonal_period
        sar = levinson_durbin(autocorrelations(centred, self.seasonal_p, lag=period), self.seasonal_p)
        sma = ma_coefficients(ar_residuals, self.seasonal_q, lag=period)

        start = max(ar.size, period * sar.size)
        residuals = np.zeros(n)
        for t in range(start, n):
            predicted = self._one_step(t, differenced, residuals, intercept, ar, ma, sar, sma, start)
            residuals[t] = differenced[t] - predicted

        return ArimaFit(
            intercept=intercept,
            ar=ar,
            ma=ma,
            sar=sar,
            sma=sma,
            differenced=differenced,
            residuals=residuals,
            start=start,
            stages=stages,
        )

    def _one_step(
        self,
        t: int,
        series: Sequence[float],
        residuals: Sequence[float],
        intercept: float,
        ar: np.ndarray,
        ma: np.ndarray,
        sar: np.ndarray,
        sma: np.ndarray,
        start: int,
    ) -> float:
        period = self.seasonal_period
        value = intercept
        for i, phi in enumerate(ar):
            value += phi * (series[t - i - 1] - intercept)
        for i, theta in enumerate(ma):
            if t - i - 1 >= start:
                value += theta * residuals[t - i - 1]
        for i, phi in enumerate(sar):
            lagged = t - period * (i + 1)
            if lagged >= 0:
                value += phi * (series[lagged] - intercept)
        for i, theta in enumerate(sma):
            lagged = t - period * (i + 1)
            if lagged >= start:
                value += theta * residuals[lagged]
        return float(value)

    def predict_steps(self, fit: ArimaFit, steps: int) -> np.ndarray:
        """Recursive forecast of ``steps`` values in the original unit scale."""

        series = list(fit.differenced)
        residuals = list(fit.residuals)
        n = len(series)
        for h in range(steps):
            value = self._one_step(
                n + h, series, residuals, fit.intercept, fit.ar, fit.ma, fit.sar, fit.sma, fit.start
            )
            series.append(value)
            residuals.append(0.0)
        future = np.array(series[n:])
        return np.maximum(self.integrate(future, fit.stages), 0.0)

    def _confidence(self, values: np.ndarray, fit: ArimaFit) -> float:
        var_orig = float(np.var(values))
        var_diff = float(np.var(fit.differenced))
        stationarity = 1.0 - min(1.0, var_diff / var_orig) if var_orig > 0 else 0.5
        max_ar = float(np.max(np.abs(fit.ar))) if fit.ar.size else 0.0
        stability = 1.0 - 0.5 * max_ar if max_ar < 1 else 0.3
        return 0.3 * min(1.0, values.size / 180) + 0.4 * stationarity + 0.3 * stability

    # ------------------------------------------------------------------
    def _predict(
        self, series: SeriesView, horizon_days: int, events: Sequence[SeasonalEvent]
    ) -> ModelPrediction:
        values = series.values
        fit = self.fit(values)
        steps = self.predict_steps(fit, horizon_days)
        average = float(np.mean(steps))
        spread = 1.96 * math.sqrt(1 + horizon_days / 14) * fit.residual_rms
        factors = PredictionFactors(
            base=float(values[-1]),
            trend=fit.intercept,
            seasonality=1.0 + (float(fit.sar[0]) if fit.sar.size else 0.0),
        )
        return clamp_prediction(
            self.name,
            average,
            self._confidence(values, fit),
            average - spread,
            average + spread,
            factors=factors,
        )

    def _predict_daily(
        self, series: SeriesView, days: List[date], events: Sequence[SeasonalEvent]
    ) -> List[DailyPrediction]:
        values = series.values
        fit = self.fit(values)
        steps = self.predict_steps(fit, len(days))
        confidence = self._confidence(values, fit)
        rms = fit.residual_rms

        daily = []
        for offset, (day, value) in enumerate(zip(days, steps)):
            spread = 1.96 * math.sqrt(1 + (offset + 1) / 14) * rms
            daily.append(
                clamp_daily(day, float(value), confidence * 0.99**offset, value - spread, value + spread)
            )
        return daily

    # ------------------------------------------------------------------
    @staticmethod
    def _drift(values: np.ndarray) -> float:
        return (mean_or_zero(values[-7:]) - mean_or_zero(values)) / 7

    def _fallback(self, series: SeriesView, horizon_days: int) -> ModelPrediction:
        values = series.values
        if values.size == 0:
            return clamp_prediction(self.name, 0.0, 0.0, 0.0, 0.0, is_fallback=True)
        last = float(values[-1])
        drift = self._drift(values)
        forecast = last + drift * horizon_days
        spread = 1.96 * std_or_zero(values) * math.sqrt(horizon_days)
        return clamp_prediction(
            self.name,
            forecast,
            min(0.4, values.size / 90),
            forecast - spread,
            forecast + spread,
            factors=PredictionFactors(base=last, trend=drift),
            is_fallback=True,
        )

    def _fallback_daily(self, series: SeriesView, days: List[date]) -> List[DailyPrediction]:
        values = series.values
        if values.size == 0:
            return [clamp_daily(day, 0.0, 0.0) for day in days]
        last = float(values[-1])
        drift = self._drift(values)
        std = std_or_zero(values)
        confidence = min(0.4, values.size / 90)
        daily = []
        for offset, day in enumerate(days):
            step = offset + 1
            value = last + drift * step
            spread = 1.96 * std * math.sqrt(step)
            daily.append(clamp_daily(day, value, confidence * 0.98**offset, value - spread, value + spread))
        return daily

    # ------------------------------------------------------------------
    def auto_arima(self, history: Sequence[SalesDataPoint]) -> Dict[str, float]:
        """Pick (p, d, q) by AIC plus a weighted holdout MAPE on an 80/20 split."""

        best: Dict[str, float] = {"p": self.p, "d": self.d, "q": self.q, "score": math.inf}
        values = to_series(history).values
        if values.size < 60:
            return best

        split = int(values.size * 0.8)
        train, validation = values[:split], values[split:]
        mask = validation > 0

        for p, d, q in itertools.product(range(4), range(3), range(4)):
            candidate = ArimaModel(
                p, d, q, self.seasonal_p, self.seasonal_d, self.seasonal_q, self.seasonal_period
            )
            try:
                fit = candidate.fit(train)
                predicted = candidate.predict_steps(fit, validation.size)
            except NUMERICAL_ERRORS:
                continue

            active = fit.residuals[fit.start :]
            if active.size == 0:
                continue
            rss = max(float(np.sum(active**2)), 1e-12)
            params = p + q + self.seasonal_p + self.seasonal_q + 1
            aic = active.size * math.log(rss / active.size) + 2 * params
            val_error = (
                float(np.mean(np.abs(predicted[mask] - validation[mask]) / validation[mask]))
                if mask.any()
                else 0.0
            )
            score = aic + val_error * 1000
            if math.isfinite(score) and score < best["score"]:
                best = {"p": p, "d": d, "q": q, "score": score}

        LOGGER.info("auto_arima selected order (%d, %d, %d)", best["p"], best["d"], best["q"])
        return best
