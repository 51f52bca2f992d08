r"""backend\forecast_engine\services\forecast_models\pattern_match.py

Sequence pattern matching forecaster ("LSTM-like").

The model keeps a library of normalised historical windows and what followed
them, finds the windows most similar to the latest one by cosine similarity
and blends their outcomes with a recency-weighted attention score.  A weekday
profile and a decaying trend factor are applied on top.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence

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


@dataclass(slots=True)
class Pattern:
    window: np.ndarray
    outcome: float
    weight: float
    timestamp: int


@dataclass(slots=True)
class PatternAnomaly:
    is_anomalous: bool
    score: float
    reason: Optional[str] = None


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b)) / (norm_a * norm_b)


class PatternMatchModel(ForecastModel):
    name = "lstm"

    def __init__(
        self,
        sequence_length: int = 14,
        num_patterns: int = 100,
        attention_decay: float = 0.95,
        pattern_match_threshold: float = 0.7,
        min_data_points: int | None = None,
    ) -> None:
        self.sequence_length = int(sequence_length)
        self.num_patterns = int(num_patterns)
        self.attention_decay = float(attention_decay)
        self.pattern_match_threshold = float(pattern_match_threshold)
        super().__init__(min_data_points if min_data_points is not None else self.sequence_length * 2)

    # ------------------------------------------------------------------
    def _normalise(self, window: np.ndarray, mean: float, std: float) -> np.ndarray:
        if std == 0:
            return np.zeros(window.size)
        return (window - mean) / std

    def build_library(self, values: np.ndarray) -> List[Pattern]:
        """Return the ``num_patterns`` highest weighted (most recent) windows."""

        seq = self.sequence_length
        n = values.size
        mean, std = mean_or_zero(values), std_or_zero(values)
        span = max(n - seq - 1, 1)

        patterns = [
            Pattern(
                window=self._normalise(values[i - seq : i], mean, std),
                outcome=float(values[i]),
                weight=0.5 + 0.5 * (i - seq) / span,
                timestamp=i,
            )
            for i in range(seq, n - 1)
        ]
        patterns.sort(key=lambda pattern: pattern.weight, reverse=True)
        return patterns[: self.num_patterns]

    @staticmethod
    def weekday_profile(values: np.ndarray, dates: List[date]) -> Dict[int, float]:
        """Mean units per weekday relative to the mean of the weekday averages."""

        buckets: Dict[int, List[float]] = {day: [] for day in range(7)}
        for value, day in zip(values, dates):
            buckets[day.weekday()].append(float(value))
        averages = {day: (float(np.mean(items)) if items else 0.0) for day, items in buckets.items()}
        overall = float(np.mean(list(averages.values())))
        if overall == 0:
            return {day: 1.0 for day in range(7)}
        return {day: average / overall for day, average in averages.items()}

    def _match(self, values: np.ndarray) -> tuple[Optional[float], float, int]:
        """Return (attention-weighted outcome, average similarity, match count)."""

        n = values.size
        library = self.build_library(values)
        current = self._normalise(values[-self.sequence_length :], mean_or_zero(values), std_or_zero(values))

        weighted_sum = 0.0
        attention_total = 0.0
        similarities = []
        for pattern in library:
            similarity = cosine_similarity(current, pattern.window)
            if similarity < self.pattern_match_threshold:
                continue
            attention = similarity * pattern.weight * (1 + self.attention_decay ** (n - pattern.timestamp))
            weighted_sum += attention * pattern.outcome
            attention_total += attention
            similarities.append(similarity)

        if not similarities or attention_total <= 0:
            return None, 0.0, 0
        return weighted_sum / attention_total, float(np.mean(similarities)), len(similarities)

    def _trend_factor(self, values: np.ndarray) -> float:
        mean = mean_or_zero(values)
        if mean == 0:
            return 1.0
        return mean_or_zero(values[-14:]) / mean

    # ------------------------------------------------------------------
    def _fit(self, series: SeriesView) -> dict:
        values = series.values
        matched, avg_similarity, matches = self._match(values)
        trend_factor = self._trend_factor(values)
        base = matched if matched is not None else mean_or_zero(values) * trend_factor
        confidence = 0.4 * min(1.0, values.size / 180) + 0.6 * avg_similarity * min(1.0, matches / 10)
        return {
            "base": base,
            "trend_factor": trend_factor,
            "profile": self.weekday_profile(values, series.dates),
            "confidence": confidence,
        }

    @staticmethod
    def _step_value(fit: dict, day: date, step: int) -> float:
        weekday = fit["profile"].get(day.weekday(), 1.0)
        trend = 1 + (fit["trend_factor"] - 1) * 0.99**step
        return max(0.0, fit["base"] * weekday * trend)

    def _predict(
        self, series: SeriesView, horizon_days: int, events: Sequence[SeasonalEvent]
    ) -> ModelPrediction:
        values = series.values
        fit = self._fit(series)
        last_day = series.last_date
        steps = [
            self._step_value(fit, last_day + timedelta(days=step), step)
            for step in range(1, horizon_days + 1)
        ]
        average = float(np.mean(steps))
        spread = 1.96 * std_or_zero(values) * math.sqrt(1 + horizon_days / 30)

        recent = mean_or_zero(values[-7:])
        older = mean_or_zero(values[-14:-7])
        profile = list(fit["profile"].values())
        factors = PredictionFactors(
            base=fit["base"],
            trend=(recent - older) / older if older > 0 else 0.0,
            seasonality=max(profile) / max(min(profile), 0.1),
        )
        return clamp_prediction(
            self.name, average, fit["confidence"], average - spread, average + spread, factors=factors
        )

    def _predict_daily(
        self, series: SeriesView, days: List[date], events: Sequence[SeasonalEvent]
    ) -> List[DailyPrediction]:
        fit = self._fit(series)
        std = std_or_zero(series.values)
        daily = []
        for offset, day in enumerate(days):
            step = offset + 1
            value = self._step_value(fit, day, step)
            spread = 1.96 * std * math.sqrt(1 + step / 30)
            daily.append(
                clamp_daily(day, value, fit["confidence"] * 0.995**offset, value - spread, value + spread)
            )
        return daily

    # ------------------------------------------------------------------
    @staticmethod
    def _fallback_trend(values: np.ndarray) -> float:
        mean = mean_or_zero(values)
        if values.size < 7 or mean <= 0:
            return 0.0
        return (mean_or_zero(values[-7:]) - mean) / mean

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
            min(0.4, values.size / 90),
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
        confidence = min(0.4, values.size / 90)
        daily = []
        for offset, day in enumerate(days):
            value = mean * (1 + trend * (offset + 1) / 30)
            daily.append(clamp_daily(day, value, confidence * 0.99**offset, value - spread, value + spread))
        return daily

    # ------------------------------------------------------------------
    def detect_anomalous_pattern(self, history: Sequence[SalesDataPoint]) -> PatternAnomaly:
        """Flag the latest window when no historical window resembles it."""

        values = to_series(history).values
        if values.size < self.min_data_points:
            return PatternAnomaly(is_anomalous=False, score=0.0)

        mean, std = mean_or_zero(values), std_or_zero(values)
        current = self._normalise(values[-self.sequence_length :], mean, std)
        library = self.build_library(values)
        best = max((cosine_similarity(current, pattern.window) for pattern in library), default=0.0)

        if best >= self.pattern_match_threshold * 0.8:
            return PatternAnomaly(is_anomalous=False, score=max(0.0, 1 - best))

        recent = mean_or_zero(values[-7:])
        if recent > mean * 1.5:
            reason = "Unusual spike in sales"
        elif recent < mean * 0.5:
            reason = "Unusual drop in sales"
        else:
            reason = "Unusual pattern shape"
        LOGGER.info("Anomalous demand pattern detected: %s (best similarity %.2f)", reason, best)
        return PatternAnomaly(is_anomalous=True, score=1 - best, reason=reason)
