r"""backend\forecast_engine\services\spike_service.py

Short-term velocity spike detection.

A spike is a 7-day velocity well above the 30-day baseline that precedes
it.  Detected spikes carry a probable cause, an inventory impact at the new
rate and a decay curve; the ensemble multiplies future days by the decay
curve so the forecast follows the spike back toward normal.
"""

from __future__ import annotations

import logging
import math
import os
from datetime import date, timedelta
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..core.config import load_yaml, section
from ..models.schemas import (
    DecayPoint,
    InventoryImpact,
    InventoryPosition,
    SalesDataPoint,
    SpikeDetection,
    SpikeSignals,
    normalize_history,
)
from .decision_service import daily_units

LOGGER = logging.getLogger(__name__)

MIN_HISTORY_DAYS = 14
CURRENT_WINDOW_DAYS = 7
SCAN_WINDOW_DAYS = 3
LISTING_CHANGE_LOOKBACK_DAYS = 14

CAUSE_TEXT = {
    "ads": "likely due to increased ad spend",
    "deal": "due to active promotion/deal",
    "listing_change": "possibly due to recent listing changes",
    "organic": "appears to be organic growth",
    "unknown": "cause unknown",
}


def spike_multiplier_for(spike: Optional[SpikeDetection], days_from_now: int) -> float:
    """Multiplier from the first decay point at or after ``days_from_now`` (1.0 past the curve)."""

    if spike is None or not spike.is_spiking:
        return 1.0
    for point in spike.projected_decay:
        if point.days_from_now >= days_from_now:
            return point.projected_multiplier
    return 1.0


def apply_spike_adjustment(
    base_forecast: float, spike: Optional[SpikeDetection], days_from_now: int
) -> float:
    return base_forecast * spike_multiplier_for(spike, days_from_now)


def spike_alert(spike: SpikeDetection) -> str:
    impact = spike.inventory_impact
    return (
        f"SKU {spike.sku} is spiking at {spike.spike_multiplier:.1f}x normal velocity "
        f"({CAUSE_TEXT.get(spike.probable_cause, CAUSE_TEXT['unknown'])}). "
        f"Current inventory will last {impact.days_of_supply_at_new_rate} days at this rate. "
        f"Recommend ordering {impact.additional_units_needed} additional units."
    )


class SpikeDetector:
    """Compare recent velocity to a trailing baseline and explain the difference."""

    def __init__(self, config_root: str = "configs") -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        cfg = section(settings, "spike")

        self.threshold_percent = float(cfg.get("threshold_percent", 50))
        self.lookback_days = int(cfg.get("lookback_days", 30))
        self.decay_horizon_days = int(cfg.get("decay_horizon_days", 60))
        self.fba_target_days = int(cfg.get("fba_target_days", 45))
        self.default_lead_time_days = int(
            section(settings, "decision").get("default_lead_time_days", 30)
        )

    # ------------------------------------------------------------------
    def _not_spiking(
        self, sku: str, multiplier: float = 1.0, current: float = 0.0, baseline: float = 0.0
    ) -> SpikeDetection:
        return SpikeDetection(
            sku=sku,
            is_spiking=False,
            spike_multiplier=max(0.0, multiplier),
            probable_cause="unknown",
            cause_confidence=0.0,
            current_velocity=current,
            baseline_velocity=baseline,
            inventory_impact=InventoryImpact(
                days_of_supply_at_new_rate=999, additional_units_needed=0, urgency="ok"
            ),
            projected_decay=[],
        )

    @staticmethod
    def infer_cause(
        signals: Optional[SpikeSignals], spike_start: date
    ) -> Tuple[str, float, str]:
        """First-match cascade: ads, then deal, then listing change, else organic."""

        signals = signals or SpikeSignals()
        change = signals.ad_spend_change_pct
        if change is not None and change > 50:
            return "ads", min(0.9, 0.5 + change / 200), f"Ad spend increased {change:.0f}%"
        if signals.active_deal:
            return "deal", 0.85, f"Active deal: {signals.active_deal}"
        listing = signals.listing_change_date
        if listing is not None and listing >= spike_start - timedelta(days=LISTING_CHANGE_LOOKBACK_DAYS):
            return "listing_change", 0.7, f"Listing changed on {listing.isoformat()}"
        return "organic", 0.5, "No ad, deal or listing change found; likely organic demand"

    def inventory_impact(
        self, position: Optional[InventoryPosition], current_velocity: float, lead_time_days: int
    ) -> InventoryImpact:
        total = position.total if position is not None else 0.0
        days_of_supply = total / current_velocity if current_velocity > 0 else 999.0
        additional = int(math.ceil(max(0.0, current_velocity * self.fba_target_days - total)))

        if days_of_supply <= lead_time_days:
            urgency = "critical"
        elif days_of_supply <= lead_time_days + 14:
            urgency = "high"
        elif days_of_supply <= lead_time_days + 30:
            urgency = "medium"
        elif additional > 0:
            urgency = "low"
        else:
            urgency = "ok"
        return InventoryImpact(
            days_of_supply_at_new_rate=int(round(days_of_supply)),
            additional_units_needed=additional,
            urgency=urgency,
        )

    def project_decay(self, multiplier: float) -> List[DecayPoint]:
        """Exponential return toward 1.0, sampled weekly, ending at (horizon, 1.0)."""

        horizon = self.decay_horizon_days
        tau = horizon / 3
        points = [
            DecayPoint(
                days_from_now=day,
                projected_multiplier=max(1.0, 1 + (multiplier - 1) * math.exp(-day / tau)),
            )
            for day in range(0, horizon + 1, 7)
        ]
        points.append(DecayPoint(days_from_now=horizon, projected_multiplier=1.0))
        return points

    # ------------------------------------------------------------------
    def detect(
        self,
        sku: str,
        history: Sequence[SalesDataPoint],
        position: Optional[InventoryPosition] = None,
        lead_time_days: Optional[int] = None,
        signals: Optional[SpikeSignals] = None,
        threshold: Optional[float] = None,
    ) -> SpikeDetection:
        points = normalize_history(list(history))
        if len(points) < MIN_HISTORY_DAYS:
            return self._not_spiking(sku)

        first, last = points[0].date, points[-1].date
        span = (last - first).days + 1
        values = daily_units(points, last, span)
        dates = [first + timedelta(days=offset) for offset in range(span)]

        baseline_window = values[-(self.lookback_days + CURRENT_WINDOW_DAYS) : -CURRENT_WINDOW_DAYS]
        baseline = float(np.mean(baseline_window)) if baseline_window.size else 0.0
        current = float(np.mean(values[-CURRENT_WINDOW_DAYS:]))
        multiplier = current / baseline if baseline > 0 else 1.0

        threshold = self.threshold_percent if threshold is None else float(threshold)
        ratio_threshold = 1 + threshold / 100
        if baseline <= 0 or multiplier < ratio_threshold:
            return self._not_spiking(sku, multiplier, current, baseline)

        n = values.size
        start_index = n - CURRENT_WINDOW_DAYS
        for i in range(n - SCAN_WINDOW_DAYS, SCAN_WINDOW_DAYS - 1, -1):
            window = values[i : i + SCAN_WINDOW_DAYS]
            if float(np.mean(window)) / baseline >= ratio_threshold:
                start_index = i
            else:
                break
        spike_start = dates[start_index]

        cause, confidence, details = self.infer_cause(signals, spike_start)
        lead_time = int(lead_time_days) if lead_time_days else self.default_lead_time_days
        detection = SpikeDetection(
            sku=sku,
            is_spiking=True,
            spike_multiplier=multiplier,
            days_spiking=(last - spike_start).days,
            spike_start_date=spike_start,
            probable_cause=cause,
            cause_confidence=confidence,
            cause_details=details,
            current_velocity=current,
            baseline_velocity=baseline,
            inventory_impact=self.inventory_impact(position, current, lead_time),
            projected_decay=self.project_decay(multiplier),
        )
        LOGGER.info(
            "Spike detected for sku=%s: %.2fx since %s (cause=%s)", sku, multiplier, spike_start, cause
        )
        return detection

    def detect_all(
        self,
        histories: Mapping[str, Sequence[SalesDataPoint]],
        positions: Optional[Mapping[str, InventoryPosition]] = None,
        lead_times: Optional[Mapping[str, int]] = None,
        signals: Optional[Mapping[str, SpikeSignals]] = None,
    ) -> Tuple[List[SpikeDetection], List[str]]:
        """Scan several SKUs; return spiking SKUs (largest first) and urgent alerts."""

        positions = positions or {}
        lead_times = lead_times or {}
        signals = signals or {}

        spiking: List[SpikeDetection] = []
        for sku, history in histories.items():
            result = self.detect(
                sku,
                history,
                position=positions.get(sku),
                lead_time_days=lead_times.get(sku),
                signals=signals.get(sku),
            )
            if result.is_spiking:
                spiking.append(result)
        spiking.sort(key=lambda item: item.spike_multiplier, reverse=True)

        alerts: List[str] = []
        for spike in spiking:
            urgency = spike.inventory_impact.urgency
            if urgency == "critical":
                alerts.append(
                    f"SKU {spike.sku} spiking {spike.spike_multiplier:.1f}x - current inventory "
                    f"will last only {spike.inventory_impact.days_of_supply_at_new_rate} days at new rate"
                )
            elif urgency == "high":
                alerts.append(
                    f"SKU {spike.sku} showing {(spike.spike_multiplier - 1) * 100:.0f}% sales increase. "
                    f"Cause: {spike.probable_cause}. Consider increasing inventory."
                )
        return spiking, alerts
