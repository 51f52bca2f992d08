r"""backend\forecast_engine\services\weight_optimizer.py

Self-tuning of the per-SKU ensemble weights.

Each model is backtested on rolling 30-day windows; models are weighted by
inverse MAPE, the proposal is smoothed against the current weights and it is
persisted only when it lowers the ensemble MAPE on the latest 30 days.  The
read-compare-write cycle runs under the repository's per-SKU lock and ends
with a compare-and-swap, so concurrent runs for one SKU cannot interleave.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from ..core.config import load_yaml, section
from ..core.exceptions import InsufficientHistoryError
from ..core.observability import record_weight_update
from ..models.schemas import (
    AccuracyReport,
    BacktestPeriod,
    BacktestPoint,
    BacktestResult,
    ForecastAccuracyRecord,
    ModelPerformance,
    ModelWeights,
    OptimizationResult,
    SalesDataPoint,
    SkuAccuracy,
    WeeklyOptimizationSummary,
    normalize_history,
)
from .ensemble_service import EnsembleService
from .forecast_models.base import ForecastModel

LOGGER = logging.getLogger(__name__)

MAPE_EPSILON = 0.01
WITHIN_CONFIDENCE_ERROR = 0.2

HistoryLoader = Callable[[str], Sequence[SalesDataPoint]]


def history_fingerprint(history: Sequence[SalesDataPoint]) -> str:
    digest = hashlib.sha1()
    for point in history:
        digest.update(f"{point.date.isoformat()}:{point.units:.6f};".encode("utf-8"))
    return digest.hexdigest()


def _mape(predicted: np.ndarray, actual: np.ndarray) -> Optional[float]:
    mask = actual > 0
    if not mask.any():
        return None
    return float(np.mean(np.abs(predicted[mask] - actual[mask]) / actual[mask]))


class WeightOptimizer:
    """Backtest the ensemble members and retune the SKU's weights."""

    def __init__(self, ensemble: EnsembleService, config_root: str = "configs") -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        cfg = section(settings, "optimizer")

        self.ensemble = ensemble
        self.repository = ensemble.weights_repository
        self.min_history_days = int(cfg.get("min_history_days", 90))
        self.window_size = int(cfg.get("window_size", 30))
        self.max_windows = int(cfg.get("max_windows", 6))
        self.min_windows = int(cfg.get("min_windows", 2))
        self.smoothing_factor = float(cfg.get("smoothing_factor", 0.3))
        self.max_workers = int(cfg.get("max_workers", 4))

    # ------------------------------------------------------------------
    def window_count(self, n: int) -> int:
        return min(self.max_windows, n // self.window_size - 1)

    def backtest(
        self, sku: str, history: Sequence[SalesDataPoint], model: ForecastModel
    ) -> BacktestResult:
        """Rolling-origin backtest of ``model`` over the most recent windows."""

        points = normalize_history(list(history))
        n = len(points)
        windows = self.window_count(n)
        if n < self.min_history_days or windows < self.min_windows:
            raise InsufficientHistoryError(
                f"backtesting needs {self.min_history_days} days and {self.min_windows} windows; "
                f"sku={sku} has {n} days"
            )

        size = self.window_size
        forecasts: List[BacktestPoint] = []
        for w in range(windows):
            train_end = n - (windows - w) * size
            train = points[:train_end]
            test = points[train_end : train_end + size]
            daily = model.forecast_daily(train, len(test), start_date=test[0].date)
            for actual_point, predicted_point in zip(test, daily):
                actual = actual_point.units
                error = abs(predicted_point.forecast - actual)
                forecasts.append(
                    BacktestPoint(
                        date=actual_point.date,
                        predicted=predicted_point.forecast,
                        actual=actual,
                        error=error,
                        percent_error=error / actual if actual > 0 else 0.0,
                    )
                )

        errors = np.array([item.error for item in forecasts])
        positive = [item.percent_error for item in forecasts if item.actual > 0]
        hits = sum(1 for item in forecasts if item.percent_error <= WITHIN_CONFIDENCE_ERROR)
        return BacktestResult(
            sku=sku,
            model=model.name,
            period=BacktestPeriod(start=points[n - windows * size].date, end=points[-1].date),
            mape=float(np.mean(positive)) if positive else 0.0,
            mae=float(np.mean(errors)) if errors.size else 0.0,
            rmse=float(np.sqrt(np.mean(errors**2))) if errors.size else 0.0,
            hit_rate=hits / len(forecasts) if forecasts else 0.0,
            forecasts=forecasts,
        )

    @staticmethod
    def propose_weights(results: Iterable[BacktestResult], current: ModelWeights) -> ModelWeights:
        """Inverse-MAPE weights for models with MAPE below 100%."""

        inverse: Dict[str, float] = {
            result.model: 1.0 / (result.mape + MAPE_EPSILON) for result in results if result.mape < 1
        }
        total = sum(inverse.values())
        if total <= 0:
            return current.normalized()
        proposed = {name: inverse.get(name, 0.0) / total for name in current.as_dict()}
        return current.model_copy(update=proposed)

    def smooth(self, proposed: ModelWeights, current: ModelWeights) -> ModelWeights:
        factor = self.smoothing_factor
        new, old = proposed.as_dict(), current.normalized().as_dict()
        blended = {name: factor * new[name] + (1 - factor) * old[name] for name in new}
        return current.model_copy(update=blended).normalized()

    # ------------------------------------------------------------------
    def _holdout(self, points: List[SalesDataPoint]) -> tuple[Dict[str, np.ndarray], np.ndarray]:
        size = self.window_size
        train, test = points[:-size], points[-size:]
        runs = self.ensemble.run_models(train, len(test), test[0].date)
        forecasts = {
            name: np.array([entry.forecast for entry in daily], dtype=float)
            for name, (_, daily) in runs.items()
        }
        return forecasts, np.array([point.units for point in test], dtype=float)

    @staticmethod
    def _weighted_mape(
        forecasts: Dict[str, np.ndarray], actual: np.ndarray, weights: ModelWeights
    ) -> float:
        values = weights.as_dict()
        total = sum(values[name] for name in forecasts)
        if total <= 0:
            return 1.0
        blended = sum(forecasts[name] * values[name] for name in forecasts) / total
        mape = _mape(blended, actual)
        return 1.0 if mape is None else mape

    def ensemble_mape(self, history: Sequence[SalesDataPoint], weights: ModelWeights) -> float:
        """Weighted ensemble MAPE over the last window, training on everything before it."""

        points = normalize_history(list(history))
        if len(points) < self.window_size * 2:
            return 1.0
        forecasts, actual = self._holdout(points)
        return self._weighted_mape(forecasts, actual, weights)

    # ------------------------------------------------------------------
    def _skipped(self, sku: str, reason: str, stored: Optional[ModelWeights]) -> OptimizationResult:
        LOGGER.warning("Skipping weight optimisation for sku=%s: %s", sku, reason)
        record_weight_update("skipped")
        return OptimizationResult(
            sku=sku, status="skipped", reason=reason, previous_weights=stored, new_weights=stored
        )

    def optimize_sku(self, sku: str, history: Sequence[SalesDataPoint]) -> OptimizationResult:
        """Backtest, propose and persist weights for ``sku`` when they improve MAPE."""

        points = normalize_history(list(history))
        with self.repository.lock(sku):
            stored = self.repository.get(sku)
            if len(points) < self.min_history_days:
                return self._skipped(sku, f"only {len(points)} days of history", stored)
            if self.window_count(len(points)) < self.min_windows:
                return self._skipped(sku, "fewer than 2 backtest windows", stored)

            fingerprint = history_fingerprint(points)
            if stored is not None and stored.history_fingerprint == fingerprint:
                LOGGER.debug("Weights for sku=%s already optimised on this history", sku)
                record_weight_update("skipped")
                return OptimizationResult(
                    sku=sku,
                    status="skipped",
                    reason="weights already optimised on this history",
                    previous_weights=stored,
                    new_weights=stored,
                    previous_mape=stored.overall_mape,
                    new_mape=stored.overall_mape,
                )

            current = stored if stored is not None else self.ensemble.weights_for(sku)
            backtests = [self.backtest(sku, points, model) for model in self.ensemble.models]
            candidate = self.smooth(self.propose_weights(backtests, current), current)

            forecasts, actual = self._holdout(points)
            previous_mape = self._weighted_mape(forecasts, actual, current)
            new_mape = self._weighted_mape(forecasts, actual, candidate)
            improvement = (previous_mape - new_mape) / previous_mape if previous_mape > 0 else 0.0

            if stored is not None and not new_mape < previous_mape:
                LOGGER.info(
                    "Rejected weights for sku=%s: MAPE %.4f does not beat %.4f",
                    sku,
                    new_mape,
                    previous_mape,
                )
                record_weight_update("rejected")
                return OptimizationResult(
                    sku=sku,
                    status="rejected",
                    reason="no improvement over persisted weights",
                    previous_weights=stored,
                    new_weights=candidate,
                    previous_mape=previous_mape,
                    new_mape=new_mape,
                    improvement=improvement,
                    backtests=backtests,
                )

            persisted = candidate.model_copy(
                update={
                    "overall_mape": new_mape,
                    "history_fingerprint": fingerprint,
                    "last_updated": datetime.now(timezone.utc),
                }
            )
            if not self.repository.compare_and_swap(sku, stored, persisted):
                record_weight_update("rejected")
                return OptimizationResult(
                    sku=sku,
                    status="rejected",
                    reason="weights changed concurrently",
                    previous_weights=stored,
                    new_weights=candidate,
                    previous_mape=previous_mape,
                    new_mape=new_mape,
                    backtests=backtests,
                )

            LOGGER.info(
                "Persisted weights for sku=%s: MAPE %.4f -> %.4f", sku, previous_mape, new_mape
            )
            record_weight_update("persisted")
            return OptimizationResult(
                sku=sku,
                status="persisted",
                previous_weights=stored,
                new_weights=persisted,
                previous_mape=previous_mape,
                new_mape=new_mape,
                improvement=improvement,
                backtests=backtests,
            )

    def run_weekly(
        self,
        skus: Iterable[str],
        history_loader: HistoryLoader,
        stop_event: Optional[threading.Event] = None,
    ) -> WeeklyOptimizationSummary:
        """Optimise many SKUs on a bounded worker pool; stop between SKUs on request."""

        stop_event = stop_event or threading.Event()

        def _task(sku: str) -> Optional[OptimizationResult]:
            if stop_event.is_set():
                return None
            return self.optimize_sku(sku, history_loader(sku))

        results: List[OptimizationResult] = []
        failed = 0
        stopped = False
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="optimizer") as pool:
            futures = {sku: pool.submit(_task, sku) for sku in skus}
            for sku, future in futures.items():
                try:
                    result = future.result()
                except Exception:
                    LOGGER.exception("Weight optimisation failed for sku=%s", sku)
                    failed += 1
                    continue
                if result is None:
                    stopped = True
                    continue
                results.append(result)

        improved = [result for result in results if result.status == "persisted" and result.improvement > 0]
        skipped = sum(1 for result in results if result.status == "skipped")
        summary = WeeklyOptimizationSummary(
            total_skus_processed=len(results),
            skus_improved=len(improved),
            skus_skipped=skipped,
            skus_failed=failed,
            average_improvement=(
                sum(result.improvement for result in improved) / len(improved) if improved else 0.0
            ),
            stopped_early=stopped,
            results=results,
        )
        LOGGER.info(
            "Weekly optimisation: processed=%d improved=%d skipped=%d failed=%d",
            summary.total_skus_processed,
            summary.skus_improved,
            summary.skus_skipped,
            summary.skus_failed,
        )
        return summary


# ---------------------------------------------------------------------------
# Forecast accuracy tracking


def track_accuracy(
    sku: str,
    forecast_date: date,
    predicted_units: float,
    actual_units: float,
    model_used: str = "ensemble",
) -> ForecastAccuracyRecord:
    error = abs(predicted_units - actual_units)
    percentage = error / actual_units if actual_units > 0 else 0.0
    return ForecastAccuracyRecord(
        sku=sku,
        forecast_date=forecast_date,
        predicted_units=predicted_units,
        actual_units=actual_units,
        model_used=model_used,
        absolute_error=error,
        percentage_error=percentage,
        squared_error=error**2,
        within_confidence=percentage <= WITHIN_CONFIDENCE_ERROR,
    )


def accuracy_report(
    records: Iterable[ForecastAccuracyRecord],
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> AccuracyReport:
    """Overall, per-model and per-SKU MAPE over records with positive actuals."""

    selected = [
        record
        for record in records
        if record.actual_units > 0
        and (start is None or record.forecast_date >= start)
        and (end is None or record.forecast_date <= end)
    ]
    if not selected:
        return AccuracyReport(overall_mape=0.0)

    by_model: Dict[str, List[float]] = {}
    by_sku: Dict[str, List[float]] = {}
    for record in selected:
        by_model.setdefault(record.model_used or "ensemble", []).append(record.percentage_error)
        by_sku.setdefault(record.sku, []).append(record.percentage_error)

    sku_scores = sorted(
        (SkuAccuracy(sku=sku, mape=float(np.mean(errors))) for sku, errors in by_sku.items()),
        key=lambda item: item.mape,
    )
    return AccuracyReport(
        overall_mape=float(np.mean([record.percentage_error for record in selected])),
        model_performance=[
            ModelPerformance(model=model, mape=float(np.mean(errors)), count=len(errors))
            for model, errors in sorted(by_model.items())
        ],
        top_accuracy_skus=sku_scores[:10],
        worst_accuracy_skus=list(reversed(sku_scores[-10:])),
    )
