"""Turn demand velocity into safety stock, reorder and FBA replenishment decisions."""

from __future__ import annotations

import logging
import math
import os
from datetime import date, timedelta
from typing import Dict, Literal, Optional, Sequence, Tuple

import numpy as np

from ..core.config import load_yaml, section
from ..models.schemas import (
    DaysOfSupply,
    EnsembleForecast,
    InventoryPosition,
    ReorderRecommendation,
    SalesDataPoint,
    SeasonalEvent,
    Supplier,
    VelocityData,
    normalize_history,
)

LOGGER = logging.getLogger(__name__)

NO_VELOCITY_DAYS = 999.0
STOCKOUT_HORIZON_DAYS = 365


# ---------------------------------------------------------------------------
def z_for_velocity(velocity: float) -> float:
    """Return the service-level z-score for a SKU selling ``velocity`` units/day.

    Fast movers get a 99% level, very slow movers 90%, everything else 95%.
    """

    if velocity > 10:
        return 2.33
    if velocity < 1:
        return 1.28
    return 1.65


def calculate_safety_stock(demand_std: float, lead_time_days: float, forecast: float) -> int:
    """Return ``ceil(max(Z * sigma * sqrt(L), 7 * forecast))``."""

    forecast = max(float(forecast), 0.0)
    statistical = z_for_velocity(forecast) * max(demand_std, 0.0) * math.sqrt(max(lead_time_days, 0.0))
    return int(math.ceil(max(statistical, forecast * 7)))


def daily_units(history: Sequence[SalesDataPoint], as_of: date, days: int) -> np.ndarray:
    """Units per calendar day for the ``days`` days ending at ``as_of`` (gaps are zero)."""

    by_date: Dict[date, float] = {point.date: point.units for point in history}
    start = as_of - timedelta(days=days - 1)
    return np.array(
        [by_date.get(start + timedelta(days=offset), 0.0) for offset in range(days)], dtype=float
    )


def calculate_velocity(history: Sequence[SalesDataPoint], as_of: Optional[date] = None) -> VelocityData:
    points = normalize_history(list(history))
    if not points:
        return VelocityData()
    as_of = as_of or points[-1].date

    last_30 = daily_units(points, as_of, 30)
    velocity_7d = float(np.sum(last_30[-7:])) / 7
    velocity_30d = float(np.sum(last_30)) / 30
    velocity_90d = float(np.sum(daily_units(points, as_of, 90))) / 90

    ratio = velocity_7d / velocity_30d if velocity_30d > 0 else 1.0
    if ratio > 1.2:
        trend = "rising"
    elif ratio < 0.8:
        trend = "declining"
    else:
        trend = "stable"

    effective = velocity_30d if velocity_30d > 0 else velocity_7d
    if velocity_7d > 0 and velocity_30d > 0 and (ratio > 1.5 or ratio < 0.5):
        effective = 0.6 * velocity_7d + 0.4 * velocity_30d

    return VelocityData(
        velocity_7d=velocity_7d,
        velocity_30d=velocity_30d,
        velocity_90d=velocity_90d,
        trend=trend,
        trend_percent=(ratio - 1) * 100,
        effective_velocity=effective,
        demand_std_dev=float(np.std(last_30)),
    )


def calculate_days_of_supply(position: InventoryPosition, velocity: float) -> DaysOfSupply:
    def _days(stock: float) -> float:
        if velocity <= 0:
            return NO_VELOCITY_DAYS if stock > 0 else 0.0
        return round(stock / velocity, 1)

    return DaysOfSupply(
        fba=_days(position.fba_available + position.fba_inbound),
        warehouse=_days(position.warehouse_available),
        total=_days(position.total),
    )


def recommended_safety_stock_days(
    importance: Literal["best_seller", "regular", "slow_mover"] = "regular",
    supplier_reliability: float = 1.0,
    near_season: bool = False,
) -> int:
    """Safety-stock days by SKU importance, padded for unreliable suppliers and peaks."""

    base = {"best_seller": 21, "regular": 14, "slow_mover": 10}.get(importance, 14)
    days = float(base)
    if supplier_reliability < 0.7:
        days *= 1.3
    elif supplier_reliability < 0.85:
        days *= 1.15
    if near_season:
        days += 7
    return int(round(days))


class DecisionService:
    """Reorder-point / target-days recommendation engine."""

    def __init__(self, config_root: str = "configs") -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        cfg = section(settings, "decision")
        targets = section(cfg, "target_days")
        thresholds = section(cfg, "urgency_thresholds")

        self.fba_target_days = int(targets.get("fba", 45))
        self.warehouse_target_days = int(targets.get("warehouse", 135))
        self.total_target_days = int(targets.get("total", 180))
        self.fba_receiving_days = int(cfg.get("fba_receiving_days", 10))
        self.default_lead_time_days = int(cfg.get("default_lead_time_days", 30))
        self.default_safety_stock_days = float(cfg.get("safety_stock_days", 14))
        self.urgency_thresholds = {
            "critical": float(thresholds.get("critical", 14)),
            "high": float(thresholds.get("high", 30)),
            "medium": float(thresholds.get("medium", 60)),
            "low": float(thresholds.get("low", 90)),
        }

    # ------------------------------------------------------------------
    def lead_time_for(self, supplier: Optional[Supplier]) -> int:
        """Observed PO lead time when the ledger has one, else the stated one, else the default."""

        if supplier is None:
            return self.default_lead_time_days
        observed = supplier.observed_lead_time()
        if observed is not None and observed > 0:
            return int(math.ceil(observed))
        if supplier.lead_time_days > 0:
            return int(supplier.lead_time_days)
        return self.default_lead_time_days

    def urgency_for(self, days_until_must_order: float) -> str:
        for tier in ("critical", "high", "medium", "low"):
            if days_until_must_order <= self.urgency_thresholds[tier]:
                return tier
        return "ok"

    # ------------------------------------------------------------------
    def recommend(
        self,
        sku: str,
        history: Sequence[SalesDataPoint],
        position: InventoryPosition,
        supplier: Optional[Supplier] = None,
        moq: Optional[int] = None,
        as_of: Optional[date] = None,
        safety_stock_days: Optional[float] = None,
        forecasts: Optional[Sequence[EnsembleForecast]] = None,
        upcoming_peak: Optional[Tuple[SeasonalEvent, float]] = None,
    ) -> ReorderRecommendation:
        """Return the reorder recommendation for ``sku`` given its stock position.

        When daily ensemble ``forecasts`` are supplied their mean ``final_forecast``
        is the demand rate; otherwise the effective sales velocity is used.
        ``upcoming_peak`` is the next seasonal event and its multiplier, reported
        alongside the quantities.
        """

        points = normalize_history(list(history))
        if as_of is None:
            as_of = points[-1].date if points else date.today()
        lead_time = self.lead_time_for(supplier)
        buffer_days = (
            float(safety_stock_days) if safety_stock_days is not None else self.default_safety_stock_days
        )

        velocity = calculate_velocity(points, as_of)
        rate = velocity.effective_velocity
        if forecasts:
            rate = float(np.mean([day.final_forecast for day in forecasts]))
        total = position.total
        supply = calculate_days_of_supply(position, rate)
        event_name, factor = (upcoming_peak[0].name, upcoming_peak[1]) if upcoming_peak else (None, 1.0)

        if rate <= 0:
            LOGGER.info("No recent sales velocity for sku=%s; nothing to reorder", sku)
            return ReorderRecommendation(
                sku=sku,
                reorder_point=0,
                safety_stock=0,
                recommended_order_qty=0,
                recommended_fba_qty=0,
                urgency="ok" if total > 0 else "low",
                days_of_supply=supply,
                days_until_must_order=NO_VELOCITY_DAYS if total > 0 else 0.0,
                stockout_date=None,
                velocity=velocity,
                lead_time_days=lead_time,
                seasonality_factor=factor,
                upcoming_event=event_name,
                reasoning="No recent sales velocity",
            )

        safety_stock = calculate_safety_stock(velocity.demand_std_dev, lead_time, rate)
        reorder_point = int(math.ceil(rate * lead_time + safety_stock))

        order_qty = int(math.ceil(max(0.0, rate * self.total_target_days - total)))
        if moq and 0 < order_qty < moq:
            order_qty = int(moq)

        fba_days = self.fba_target_days + self.fba_receiving_days
        fba_qty = int(math.ceil(max(0.0, rate * fba_days - (position.fba_available + position.fba_inbound))))
        fba_qty = min(fba_qty, int(position.warehouse_available))

        days_of_supply = total / rate
        days_until = days_of_supply - lead_time - buffer_days
        urgency = self.urgency_for(days_until)
        stockout_date = (
            as_of + timedelta(days=int(math.floor(days_of_supply)))
            if days_of_supply < STOCKOUT_HORIZON_DAYS
            else None
        )

        reasoning = [
            f"Selling {velocity.effective_velocity:.1f} units/day",
            f"{days_of_supply:.0f} days of supply remaining",
        ]
        if forecasts:
            reasoning.insert(1, f"Forecast {rate:.1f} units/day over the next {len(forecasts)} days")
        if order_qty > 0:
            reasoning.append(
                f"Order {order_qty} units to reach {self.total_target_days}-day target. "
                f"(Lead time: {lead_time} days)"
            )
        if fba_qty > 0:
            reasoning.append(f"Send {fba_qty} units to FBA to reach {self.fba_target_days}-day target")
        if event_name:
            reasoning.append(f"{event_name} coming up (+{(factor - 1) * 100:.0f}%)")

        LOGGER.info(
            "Recommendation for sku=%s: order=%d fba=%d urgency=%s", sku, order_qty, fba_qty, urgency
        )
        return ReorderRecommendation(
            sku=sku,
            reorder_point=reorder_point,
            safety_stock=safety_stock,
            recommended_order_qty=order_qty,
            recommended_fba_qty=fba_qty,
            urgency=urgency,
            days_of_supply=supply,
            days_until_must_order=round(days_until, 1),
            stockout_date=stockout_date,
            velocity=velocity,
            lead_time_days=lead_time,
            seasonality_factor=factor,
            upcoming_event=event_name,
            reasoning=". ".join(reasoning),
        )

