r"""backend\forecast_engine\services\forecast_models\base.py

Common contract for the four demand forecasters.

Every model exposes ``forecast`` (one value for the whole horizon) and
``forecast_daily`` (one value per future day).  Both are guarded: when the
history is shorter than the model's minimum, or the fit fails numerically,
the model degrades to its own deterministic fallback estimator instead of
raising.  Outputs are always clamped so that bounds are ordered, values are
non-negative and confidence stays within ``[0, 1]``.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, ClassVar, List, Mapping, Optional, Sequence

import numpy as np

from ...core.observability import record_fallback
from ...models.schemas import (
    DailyPrediction,
    ModelPrediction,
    SalesDataPoint,
    SeasonalEvent,
)

LOGGER = logging.getLogger(__name__)

# Failures that a model fit may raise on degenerate input.
NUMERICAL_ERRORS = (
    ValueError,
    ZeroDivisionError,
    FloatingPointError,
    OverflowError,
    np.linalg.LinAlgError,
)


@dataclass(slots=True)
class SeriesView:
    """History unpacked into aligned numpy values and calendar dates."""

    values: np.ndarray
    dates: List[date]

    @property
    def size(self) -> int:
        return int(self.values.size)

    @property
    def last_date(self) -> Optional[date]:
        return self.dates[-1] if self.dates else None


def to_series(history: Sequence[SalesDataPoint]) -> SeriesView:
    values = np.array([float(point.units) for point in history], dtype=float)
    return SeriesView(values=values, dates=[point.date for point in history])


def mean_or_zero(values: np.ndarray) -> float:
    return float(np.mean(values)) if values.size else 0.0


def std_or_zero(values: np.ndarray) -> float:
    """Population standard deviation, 0 for empty input."""

    return float(np.std(values)) if values.size else 0.0


def horizon_dates(start: date, horizon_days: int) -> List[date]:
    return [start + timedelta(days=offset) for offset in range(horizon_days)]


def _check_finite(prediction: ModelPrediction | Sequence[DailyPrediction]) -> None:
    if isinstance(prediction, ModelPrediction):
        values = [prediction.forecast, prediction.lower_bound, prediction.upper_bound]
    else:
        values = [point.forecast for point in prediction]
    if not all(math.isfinite(value) for value in values):
        raise FloatingPointError("non-finite forecast value")


class ForecastModel(ABC):
    """Base class for the ensemble members."""

    name: ClassVar[str]

    def __init__(self, min_data_points: int) -> None:
        self.min_data_points = int(min_data_points)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ForecastModel":
        """Build the model from its ``settings.yaml`` section."""

        return cls(**dict(config))

    # ------------------------------------------------------------------
    def forecast(
        self,
        history: Sequence[SalesDataPoint],
        horizon_days: int,
        events: Sequence[SeasonalEvent] = (),
    ) -> ModelPrediction:
        """Return a single horizon-average forecast, degrading to the fallback."""

        if horizon_days <= 0:
            raise ValueError("horizon_days must be positive")

        series = to_series(history)
        if series.size < self.min_data_points:
            LOGGER.warning(
                "%s has %d points (< %d); using fallback",
                self.name,
                series.size,
                self.min_data_points,
            )
            record_fallback(self.name)
            return self._fallback(series, horizon_days)

        try:
            prediction = self._predict(series, horizon_days, events)
            _check_finite(prediction)
            return prediction
        except NUMERICAL_ERRORS as exc:
            LOGGER.warning("%s fit failed (%s); using fallback", self.name, exc)
            record_fallback(self.name)
            return self._fallback(series, horizon_days)

    # ------------------------------------------------------------------
    def forecast_daily(
        self,
        history: Sequence[SalesDataPoint],
        horizon_days: int,
        start_date: Optional[date] = None,
        events: Sequence[SeasonalEvent] = (),
    ) -> List[DailyPrediction]:
        """Return one prediction per day starting at ``start_date``.

        ``start_date`` defaults to the day after the last observation.
        """

        if horizon_days <= 0:
            raise ValueError("horizon_days must be positive")

        series = to_series(history)
        if start_date is None:
            last = series.last_date or date.today()
            start_date = last + timedelta(days=1)
        days = horizon_dates(start_date, horizon_days)

        if series.size < self.min_data_points:
            LOGGER.warning(
                "%s has %d points (< %d); using daily fallback",
                self.name,
                series.size,
                self.min_data_points,
            )
            record_fallback(self.name)
            return self._fallback_daily(series, days)

        try:
            daily = self._predict_daily(series, days, events)
            _check_finite(daily)
            return daily
        except NUMERICAL_ERRORS as exc:
            LOGGER.warning("%s daily fit failed (%s); using fallback", self.name, exc)
            record_fallback(self.name)
            return self._fallback_daily(series, days)

    # ------------------------------------------------------------------
    def fallback(self, history: Sequence[SalesDataPoint], horizon_days: int) -> ModelPrediction:
        """Run the fallback estimator directly, bypassing the fit."""

        return self._fallback(to_series(history), horizon_days)

    def fallback_daily(
        self, history: Sequence[SalesDataPoint], horizon_days: int, start_date: date
    ) -> List[DailyPrediction]:
        return self._fallback_daily(to_series(history), horizon_dates(start_date, horizon_days))

    # ------------------------------------------------------------------
    @abstractmethod
    def _predict(
        self, series: SeriesView, horizon_days: int, events: Sequence[SeasonalEvent]
    ) -> ModelPrediction:
        """Fit on ``series`` and forecast the horizon average."""

    @abstractmethod
    def _predict_daily(
        self, series: SeriesView, days: List[date], events: Sequence[SeasonalEvent]
    ) -> List[DailyPrediction]:
        """Fit on ``series`` and forecast each day in ``days``."""

    @abstractmethod
    def _fallback(self, series: SeriesView, horizon_days: int) -> ModelPrediction:
        """Cheap estimate used when the fit is unavailable."""

    @abstractmethod
    def _fallback_daily(self, series: SeriesView, days: List[date]) -> List[DailyPrediction]:
        """Daily version of :meth:`_fallback`."""
