r"""backend\forecast_engine\services\anomaly_service.py

Inventory and forecast anomaly scanning with root-cause attribution.

The scan is read-only: every event carries the parameter adjustments its
root causes suggest, but nothing is changed until the adjustment service
applies them explicitly.  Root-cause contributions come from the weighting
table in ``configs/thresholds.yaml`` so they can be retuned without a code
change.
"""

from __future__ import annotations

import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..core.config import load_yaml, section
from ..models.schemas import (
    AnomalyEvent,
    AnomalySummary,
    ForecastAccuracyRecord,
    InventoryPosition,
    ParameterAdjustment,
    RecommendedAction,
    RootCauseFactor,
    SalesDataPoint,
    SpikeDetection,
    Supplier,
    TuningParameters,
)
from .decision_service import daily_units

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RootCauseWeights:
    """Contribution assigned to each root cause when its evidence is present."""

    supplier_delay: float = 0.40
    undetected_spike: float = 0.35
    under_forecast: float = 0.25
    over_forecast: float = 0.40
    velocity_decline: float = 0.35
    model_degradation: float = 0.60
    default: float = 0.50

    @classmethod
    def from_config(cls, config: Dict[str, float]) -> "RootCauseWeights":
        known = {name: float(value) for name, value in config.items() if name in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(slots=True)
class SkuSnapshot:
    """Everything the scanner needs to know about one SKU."""

    sku: str
    history: Sequence[SalesDataPoint]
    position: InventoryPosition
    supplier: Optional[Supplier] = None
    unit_price: float = 0.0
    unit_cost: float = 0.0
    spike: Optional[SpikeDetection] = None
    accuracy: Sequence[ForecastAccuracyRecord] = ()
    tuning: TuningParameters = field(default_factory=TuningParameters)


Diagnosis = Tuple[str, float, List[RootCauseFactor], List[ParameterAdjustment]]


def _rank(factors: List[RootCauseFactor], fallback: str, default_confidence: float) -> Tuple[str, float]:
    factors.sort(key=lambda item: item.contribution, reverse=True)
    if not factors:
        return fallback, default_confidence
    return factors[0].factor, factors[0].contribution


class AnomalyDetector:
    """Scan SKU snapshots for stockouts, overstock and repeated forecast misses."""

    def __init__(
        self,
        config_root: str = "configs",
        root_cause_weights: Optional[RootCauseWeights] = None,
    ) -> None:
        thresholds = load_yaml(os.path.join(config_root, "thresholds.yaml"))
        cfg = section(thresholds, "anomaly")

        self.weights = root_cause_weights or RootCauseWeights.from_config(
            section(thresholds, "root_cause_weights")
        )
        self.stockout_lookback_days = int(cfg.get("stockout_lookback_days", 30))
        self.lost_sales_days = int(cfg.get("lost_sales_days", 7))
        self.lost_margin_rate = float(cfg.get("lost_margin_rate", 0.3))
        self.supplier_delay_days = int(cfg.get("supplier_delay_days", 7))
        self.spike_multiplier = float(cfg.get("spike_multiplier", 1.5))
        self.under_forecast_bias = float(cfg.get("under_forecast_bias", 5.0))
        self.overstock_days_of_supply = float(cfg.get("overstock_days_of_supply", 300))
        self.overstock_min_units = float(cfg.get("overstock_min_units", 100))
        self.over_forecast_bias = float(cfg.get("over_forecast_bias", 5.0))
        self.velocity_decline_ratio = float(cfg.get("velocity_decline_ratio", 0.7))
        self.forecast_miss_error = float(cfg.get("forecast_miss_error", 0.5))
        self.forecast_miss_min_records = int(cfg.get("forecast_miss_min_records", 3))
        self.forecast_miss_window_days = int(cfg.get("forecast_miss_window_days", 7))

    # ------------------------------------------------------------------
    @staticmethod
    def _bias(records: Iterable[ForecastAccuracyRecord], as_of: date, days: int) -> Optional[float]:
        """Mean (actual - predicted) over records from the last ``days`` days."""

        since = as_of - timedelta(days=days)
        recent = [r.actual_units - r.predicted_units for r in records if since <= r.forecast_date <= as_of]
        return float(np.mean(recent)) if recent else None

    def diagnose_stockout(self, snapshot: SkuSnapshot, as_of: date) -> Diagnosis:
        factors: List[RootCauseFactor] = []
        adjustments: List[ParameterAdjustment] = []
        tuning = snapshot.tuning

        arrival = snapshot.supplier.latest_arrival() if snapshot.supplier else None
        if arrival is not None and arrival.delay_days > self.supplier_delay_days:
            factors.append(
                RootCauseFactor(
                    factor="Supplier delay",
                    contribution=self.weights.supplier_delay,
                    evidence=f"Last PO arrived {arrival.delay_days} days late",
                )
            )
            adjustments.append(
                ParameterAdjustment(
                    sku=snapshot.sku,
                    parameter="safety_stock_days",
                    old_value=tuning.safety_stock_days,
                    new_value=tuning.safety_stock_days + 7,
                    reason="Increase safety stock due to supplier delays",
                    evidence_date=arrival.actual_date,
                )
            )

        spike = snapshot.spike
        if spike is not None and (spike.is_spiking or spike.spike_multiplier > self.spike_multiplier):
            factors.append(
                RootCauseFactor(
                    factor="Undetected sales spike",
                    contribution=self.weights.undetected_spike,
                    evidence=f"Sales spiked {spike.spike_multiplier:.1f}x above baseline",
                )
            )
            adjustments.append(
                ParameterAdjustment(
                    sku=snapshot.sku,
                    parameter="spike_detection_threshold",
                    old_value=tuning.spike_detection_threshold,
                    new_value=max(0.0, tuning.spike_detection_threshold - 10),
                    reason="Lower spike detection threshold to catch spikes earlier",
                    evidence_date=spike.spike_start_date,
                )
            )

        bias = self._bias(snapshot.accuracy, as_of, self.stockout_lookback_days)
        if bias is not None and bias > self.under_forecast_bias:
            factors.append(
                RootCauseFactor(
                    factor="Systematic under-forecasting",
                    contribution=self.weights.under_forecast,
                    evidence=f"Average forecast {bias:.1f} units below actual",
                )
            )
            adjustments.append(
                ParameterAdjustment(
                    sku=snapshot.sku,
                    parameter="forecast_bias_correction",
                    old_value=tuning.forecast_bias_correction,
                    new_value=1.0 + bias / 10,
                    reason="Apply bias correction to forecasts",
                )
            )

        primary, confidence = _rank(factors, "Insufficient safety stock", self.weights.default)
        return primary, confidence, factors, adjustments

    def diagnose_overstock(self, snapshot: SkuSnapshot, as_of: date) -> Diagnosis:
        factors: List[RootCauseFactor] = []
        adjustments: List[ParameterAdjustment] = []

        under = self._bias(snapshot.accuracy, as_of, 90)
        bias = -under if under is not None else None
        if bias is not None and bias > self.over_forecast_bias:
            factors.append(
                RootCauseFactor(
                    factor="Systematic over-forecasting",
                    contribution=self.weights.over_forecast,
                    evidence=f"Average forecast {bias:.1f} units above actual",
                )
            )
            adjustments.append(
                ParameterAdjustment(
                    sku=snapshot.sku,
                    parameter="forecast_bias_correction",
                    old_value=snapshot.tuning.forecast_bias_correction,
                    new_value=max(0.0, 1.0 - bias / 20),
                    reason="Apply negative bias correction to forecasts",
                )
            )

        window = daily_units(snapshot.history, as_of, 60)
        older, recent = float(np.sum(window[:30])) / 30, float(np.sum(window[30:])) / 30
        if older > 0 and recent < older * self.velocity_decline_ratio:
            factors.append(
                RootCauseFactor(
                    factor="Sales velocity decline",
                    contribution=self.weights.velocity_decline,
                    evidence=f"Sales dropped {round((1 - recent / older) * 100)}% vs prior period",
                )
            )

        primary, confidence = _rank(factors, "Excess ordering", self.weights.default)
        return primary, confidence, factors, adjustments

    # ------------------------------------------------------------------
    def detect_stockout(
        self, snapshot: SkuSnapshot, as_of: date, detected_at: datetime
    ) -> Optional[AnomalyEvent]:
        if snapshot.position.on_hand > 0:
            return None
        sold = float(np.sum(daily_units(snapshot.history, as_of, self.stockout_lookback_days)))
        if sold <= 0:
            return None

        velocity = sold / self.stockout_lookback_days
        lost_units = int(round(velocity * self.lost_sales_days))
        primary, confidence, factors, adjustments = self.diagnose_stockout(snapshot, as_of)
        return AnomalyEvent(
            id=f"stockout-{snapshot.sku}-{as_of.isoformat()}",
            sku=snapshot.sku,
            event_type="stockout",
            detected_at=detected_at,
            start_date=as_of - timedelta(days=self.lost_sales_days),
            duration_days=self.lost_sales_days,
            financial_impact=lost_units * snapshot.unit_price * self.lost_margin_rate,
            unit_impact=lost_units,
            root_cause=primary,
            root_cause_confidence=confidence,
            contributing_factors=factors,
            proposed_adjustments=adjustments,
        )

    def detect_overstock(
        self, snapshot: SkuSnapshot, as_of: date, detected_at: datetime
    ) -> Optional[AnomalyEvent]:
        total = snapshot.position.total
        if total < self.overstock_min_units:
            return None
        velocity = float(np.sum(daily_units(snapshot.history, as_of, 30))) / 30
        days_of_supply = total / velocity if velocity > 0 else 999.0
        if days_of_supply <= self.overstock_days_of_supply:
            return None

        excess = total - velocity * 180
        primary, confidence, factors, adjustments = self.diagnose_overstock(snapshot, as_of)
        return AnomalyEvent(
            id=f"overstock-{snapshot.sku}-{as_of.isoformat()}",
            sku=snapshot.sku,
            event_type="overstock",
            detected_at=detected_at,
            start_date=as_of,
            duration_days=0,
            financial_impact=excess * snapshot.unit_cost,
            unit_impact=int(round(excess)),
            root_cause=primary,
            root_cause_confidence=confidence,
            contributing_factors=factors,
            proposed_adjustments=adjustments,
            notes=f"{round(days_of_supply)} days of supply, {round(excess)} excess units",
        )

    def detect_forecast_miss(
        self, snapshot: SkuSnapshot, as_of: date, detected_at: datetime
    ) -> Optional[AnomalyEvent]:
        since = as_of - timedelta(days=self.forecast_miss_window_days)
        misses = sorted(
            (
                record
                for record in snapshot.accuracy
                if since <= record.forecast_date <= as_of
                and record.percentage_error > self.forecast_miss_error
            ),
            key=lambda record: record.forecast_date,
        )
        if len(misses) < self.forecast_miss_min_records:
            return None

        average_error = float(np.mean([record.percentage_error for record in misses]))
        return AnomalyEvent(
            id=f"forecast-miss-{snapshot.sku}-{as_of.isoformat()}",
            sku=snapshot.sku,
            event_type="forecast_miss",
            detected_at=detected_at,
            start_date=misses[0].forecast_date,
            end_date=misses[-1].forecast_date,
            duration_days=len(misses),
            unit_impact=int(round(sum(abs(r.actual_units - r.predicted_units) for r in misses))),
            root_cause=f"Average forecast error {round(average_error * 100)}%",
            root_cause_confidence=0.8,
            contributing_factors=[
                RootCauseFactor(
                    factor="Model accuracy degradation",
                    contribution=self.weights.model_degradation,
                    evidence=f"{len(misses)} forecasts missed by more than "
                    f"{self.forecast_miss_error * 100:.0f}%",
                )
            ],
            proposed_adjustments=[
                ParameterAdjustment(
                    sku=snapshot.sku,
                    parameter="model_weights",
                    old_value=0.0,
                    new_value=0.0,
                    reason="Trigger model re-optimization",
                )
            ],
            notes=f"{len(misses)} consecutive forecast misses",
        )

    # ------------------------------------------------------------------
    def scan_sku(self, snapshot: SkuSnapshot, as_of: Optional[date] = None) -> List[AnomalyEvent]:
        as_of = as_of or date.today()
        detected_at = datetime.now(timezone.utc)
        events = [
            detector(snapshot, as_of, detected_at)
            for detector in (self.detect_stockout, self.detect_overstock, self.detect_forecast_miss)
        ]
        return [event for event in events if event is not None]

    def scan(
        self, snapshots: Iterable[SkuSnapshot], as_of: Optional[date] = None
    ) -> Tuple[List[AnomalyEvent], AnomalySummary]:
        """Scan every snapshot; storage-fee spikes are reserved and never emitted."""

        events: List[AnomalyEvent] = []
        for snapshot in snapshots:
            events.extend(self.scan_sku(snapshot, as_of))
        summary = self.summary(events)
        LOGGER.info(
            "Anomaly scan found %d events (%s)",
            summary.total_anomalies,
            ", ".join(f"{name}={count}" for name, count in summary.by_type.items()),
        )
        return events, summary

    @staticmethod
    def summary(events: Sequence[AnomalyEvent]) -> AnomalySummary:
        by_type: Dict[str, int] = {name: 0 for name in ("stockout", "overstock", "storage_fee_spike", "forecast_miss")}
        by_type.update(Counter(event.event_type for event in events))

        affected: Dict[str, List[str]] = {}
        for event in events:
            affected.setdefault(event.event_type, []).append(event.sku)

        actions: List[RecommendedAction] = []
        if by_type["stockout"]:
            actions.append(
                RecommendedAction(
                    priority="critical",
                    action=f"Address {by_type['stockout']} stockout(s) immediately",
                    affected_skus=affected["stockout"],
                )
            )
        if by_type["forecast_miss"]:
            actions.append(
                RecommendedAction(
                    priority="high",
                    action=f"Review forecast accuracy for {by_type['forecast_miss']} SKU(s)",
                    affected_skus=affected["forecast_miss"],
                )
            )
        if by_type["overstock"]:
            actions.append(
                RecommendedAction(
                    priority="medium",
                    action=f"Consider liquidation/promotions for {by_type['overstock']} overstocked SKU(s)",
                    affected_skus=affected["overstock"],
                )
            )

        recent = sorted(events, key=lambda event: event.detected_at, reverse=True)[:10]
        return AnomalySummary(
            total_anomalies=len(events),
            by_type=by_type,
            total_financial_impact=float(sum(event.financial_impact for event in events)),
            recent_anomalies=recent,
            recommended_actions=actions,
        )
