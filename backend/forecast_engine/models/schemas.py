r"""backend\forecast_engine\models\schemas.py

Pydantic models used throughout the engine.

These models serve as the data contracts between services and as request
payload validators and response serialisation schemas for the API.  Using
typed models ensures that every component agrees on the structure of the
data being exchanged.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

ModelName = Literal["prophet", "lstm", "exponential_smoothing", "arima"]
MODEL_NAMES: Tuple[str, ...] = ("prophet", "lstm", "exponential_smoothing", "arima")

Urgency = Literal["critical", "high", "medium", "low", "ok"]
SpikeCause = Literal["ads", "deal", "listing_change", "organic", "unknown"]
AnomalyType = Literal["stockout", "overstock", "storage_fee_spike", "forecast_miss"]
VelocityTrend = Literal["rising", "stable", "declining"]
TunableParameter = Literal[
    "safety_stock_days",
    "spike_detection_threshold",
    "forecast_bias_correction",
    "model_weights",
]


def _finite(value: float, default: float = 0.0) -> float:
    value = float(value)
    return value if math.isfinite(value) else default


# ---------------------------------------------------------------------------
# Sales history


class SalesDataPoint(BaseModel):
    """Units sold for a SKU on one calendar day."""

    date: date
    units: float = Field(..., ge=0)
    revenue: Optional[float] = None


def normalize_history(points: List[SalesDataPoint]) -> List[SalesDataPoint]:
    """Return ``points`` sorted by date with duplicate dates summed."""

    merged: Dict[date, SalesDataPoint] = {}
    for point in points:
        existing = merged.get(point.date)
        if existing is None:
            merged[point.date] = point
            continue
        revenue = None
        if existing.revenue is not None or point.revenue is not None:
            revenue = (existing.revenue or 0.0) + (point.revenue or 0.0)
        merged[point.date] = SalesDataPoint(
            date=point.date, units=existing.units + point.units, revenue=revenue
        )
    return [merged[key] for key in sorted(merged)]


# ---------------------------------------------------------------------------
# Model outputs


class PredictionFactors(BaseModel):
    base: float = 0.0
    trend: float = 0.0
    seasonality: float = 1.0


class ModelPrediction(BaseModel):
    """Single-point forecast produced by one model for a whole horizon."""

    model: ModelName
    forecast: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1)
    lower_bound: float = Field(..., ge=0)
    upper_bound: float = Field(..., ge=0)
    factors: PredictionFactors = Field(default_factory=PredictionFactors)
    is_fallback: bool = False


class DailyPrediction(BaseModel):
    date: date
    forecast: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1)
    lower_bound: float = Field(0.0, ge=0)
    upper_bound: float = Field(0.0, ge=0)


def clamp_prediction(
    model: str,
    forecast: float,
    confidence: float,
    lower: float,
    upper: float,
    factors: Optional[PredictionFactors] = None,
    is_fallback: bool = False,
) -> ModelPrediction:
    """Build a ``ModelPrediction`` with ``upper >= forecast >= lower >= 0``."""

    value = max(0.0, _finite(forecast))
    lo = min(max(0.0, _finite(lower)), value)
    hi = max(_finite(upper, value), value)
    conf = min(1.0, max(0.0, _finite(confidence)))
    return ModelPrediction(
        model=model,
        forecast=value,
        confidence=conf,
        lower_bound=lo,
        upper_bound=hi,
        factors=factors or PredictionFactors(base=value),
        is_fallback=is_fallback,
    )


def clamp_daily(
    day: date, forecast: float, confidence: float, lower: float | None = None, upper: float | None = None
) -> DailyPrediction:
    value = max(0.0, _finite(forecast))
    lo = value if lower is None else min(max(0.0, _finite(lower)), value)
    hi = value if upper is None else max(_finite(upper, value), value)
    return DailyPrediction(
        date=day,
        forecast=value,
        confidence=min(1.0, max(0.0, _finite(confidence))),
        lower_bound=lo,
        upper_bound=hi,
    )


# ---------------------------------------------------------------------------
# Ensemble


class ModelWeights(BaseModel):
    """Per-SKU ensemble weights learned by the optimizer."""

    sku: str
    prophet: float = Field(0.30, ge=0)
    lstm: float = Field(0.25, ge=0)
    exponential_smoothing: float = Field(0.30, ge=0)
    arima: float = Field(0.15, ge=0)
    overall_mape: Optional[float] = None
    history_fingerprint: Optional[str] = Field(
        None, description="Digest of the sales history the weights were optimised on"
    )
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in MODEL_NAMES}

    def normalized(self) -> "ModelWeights":
        """Return a copy whose four weights sum to 1 (equal split when all are 0)."""

        values = self.as_dict()
        total = sum(values.values())
        if total <= 0 or not math.isfinite(total):
            scaled = {name: 1.0 / len(MODEL_NAMES) for name in MODEL_NAMES}
        else:
            scaled = {name: value / total for name, value in values.items()}
        return self.model_copy(update=scaled)

    def same_weights(self, other: Optional["ModelWeights"], tol: float = 1e-9) -> bool:
        if other is None:
            return False
        mine, theirs = self.as_dict(), other.as_dict()
        return all(abs(mine[name] - theirs[name]) <= tol for name in MODEL_NAMES)


class EnsembleForecast(BaseModel):
    """Blended forecast and inventory guidance for one future day."""

    date: date
    base_forecast: float = Field(..., ge=0)
    final_forecast: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0, le=1)
    model_forecasts: Dict[str, float] = Field(default_factory=dict)
    weights: Dict[str, float] = Field(default_factory=dict)
    seasonality_multiplier: float = Field(1.0, ge=0)
    deal_multiplier: float = Field(1.0, ge=0)
    spike_multiplier: float = Field(1.0, ge=0)
    safety_stock: int = Field(0, ge=0)
    recommended_inventory: int = Field(0, ge=0)
    lower_bound: float = Field(0.0, ge=0)
    upper_bound: float = Field(0.0, ge=0)
    reasoning: List[str] = Field(default_factory=list)


class DemandDay(BaseModel):
    date: date
    units: float


class AggregatedForecast(BaseModel):
    sku: str
    horizon_days: int
    total_units: int
    daily_average: float
    confidence: float = Field(..., ge=0, le=1)
    peak_day: Optional[DemandDay] = None
    low_day: Optional[DemandDay] = None
    reasoning: List[str] = Field(default_factory=list)


class ModelComparison(BaseModel):
    model: ModelName
    mape: float
    bias: float


# ---------------------------------------------------------------------------
# Calendar inputs


class SeasonalEvent(BaseModel):
    """Recurring calendar window with a demand multiplier."""

    name: str
    event_type: str = "peak"
    start_month: int = Field(..., ge=1, le=12)
    start_day: int = Field(..., ge=1, le=31)
    end_month: int = Field(..., ge=1, le=12)
    end_day: int = Field(..., ge=1, le=31)
    base_multiplier: float = Field(1.0, ge=0)
    learned_multiplier: Optional[float] = Field(None, ge=0)
    sku_multipliers: Dict[str, float] = Field(default_factory=dict)
    is_active: bool = True

    def contains(self, day: date) -> bool:
        """True when ``day`` falls in the window, including windows crossing New Year."""

        current = (day.month, day.day)
        start = (self.start_month, self.start_day)
        end = (self.end_month, self.end_day)
        if start <= end:
            return start <= current <= end
        return current >= start or current <= end


class Deal(BaseModel):
    sku: str
    name: str = "deal"
    start_date: date
    end_date: date
    multiplier: float = Field(1.0, ge=0)

    def is_active_on(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


# ---------------------------------------------------------------------------
# Inventory and suppliers


class InventoryPosition(BaseModel):
    fba_available: float = Field(0.0, ge=0)
    fba_inbound: float = Field(0.0, ge=0)
    fba_reserved: float = Field(0.0, ge=0)
    warehouse_available: float = Field(0.0, ge=0)

    @property
    def total(self) -> float:
        return self.fba_available + self.fba_inbound + self.warehouse_available

    @property
    def on_hand(self) -> float:
        return self.fba_available + self.warehouse_available


class PurchaseOrderArrival(BaseModel):
    po_number: Optional[str] = None
    order_date: Optional[date] = None
    expected_date: date
    actual_date: Optional[date] = None

    @property
    def lead_time_days(self) -> Optional[int]:
        if self.order_date is None or self.actual_date is None:
            return None
        return (self.actual_date - self.order_date).days

    @property
    def delay_days(self) -> int:
        if self.actual_date is None:
            return 0
        return (self.actual_date - self.expected_date).days


class Supplier(BaseModel):
    name: str
    lead_time_days: int = Field(30, ge=0)
    purchase_orders: List[PurchaseOrderArrival] = Field(default_factory=list)

    def latest_arrival(self) -> Optional[PurchaseOrderArrival]:
        arrived = [po for po in self.purchase_orders if po.actual_date is not None]
        if not arrived:
            return None
        return max(arrived, key=lambda po: po.actual_date)

    def observed_lead_time(self, recent: int = 20) -> Optional[float]:
        """Mean order-to-arrival days over the ``recent`` latest received orders."""

        received = sorted(
            (po for po in self.purchase_orders if po.lead_time_days is not None),
            key=lambda po: po.actual_date,
            reverse=True,
        )[:recent]
        if not received:
            return None
        return sum(po.lead_time_days for po in received) / len(received)


# ---------------------------------------------------------------------------
# Decisions


class VelocityData(BaseModel):
    velocity_7d: float = 0.0
    velocity_30d: float = 0.0
    velocity_90d: float = 0.0
    trend: VelocityTrend = "stable"
    trend_percent: float = 0.0
    effective_velocity: float = 0.0
    demand_std_dev: float = 0.0


class DaysOfSupply(BaseModel):
    fba: float
    warehouse: float
    total: float


class ReorderRecommendation(BaseModel):
    sku: str
    reorder_point: int = Field(..., ge=0)
    safety_stock: int = Field(..., ge=0)
    recommended_order_qty: int = Field(..., ge=0)
    recommended_fba_qty: int = Field(..., ge=0)
    urgency: Urgency
    days_of_supply: DaysOfSupply
    days_until_must_order: float
    stockout_date: Optional[date] = None
    velocity: VelocityData
    lead_time_days: int
    seasonality_factor: float = Field(1.0, ge=0)
    upcoming_event: Optional[str] = None
    reasoning: str


# ---------------------------------------------------------------------------
# Spikes


class SpikeSignals(BaseModel):
    """External hints used to explain a velocity spike."""

    ad_spend_change_pct: Optional[float] = None
    active_deal: Optional[str] = None
    listing_change_date: Optional[date] = None


class InventoryImpact(BaseModel):
    days_of_supply_at_new_rate: int
    additional_units_needed: int = Field(..., ge=0)
    urgency: Urgency


class DecayPoint(BaseModel):
    days_from_now: int
    projected_multiplier: float = Field(..., ge=1.0)


class SpikeDetection(BaseModel):
    sku: str
    is_spiking: bool
    spike_multiplier: float = Field(1.0, ge=0)
    days_spiking: int = 0
    spike_start_date: Optional[date] = None
    probable_cause: SpikeCause = "unknown"
    cause_confidence: float = Field(0.0, ge=0, le=1)
    cause_details: str = ""
    current_velocity: float = 0.0
    baseline_velocity: float = 0.0
    inventory_impact: InventoryImpact = Field(
        default_factory=lambda: InventoryImpact(
            days_of_supply_at_new_rate=999, additional_units_needed=0, urgency="ok"
        )
    )
    projected_decay: List[DecayPoint] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Anomalies and feedback


class RootCauseFactor(BaseModel):
    factor: str
    contribution: float = Field(..., ge=0)
    evidence: str


class ParameterAdjustment(BaseModel):
    sku: str
    parameter: TunableParameter
    old_value: float
    new_value: float
    reason: str
    evidence_date: Optional[date] = Field(
        None, description="Date of the observation that prompted a relative change"
    )

    @property
    def key(self) -> Tuple[str, str]:
        return (self.sku, self.parameter)


class AnomalyEvent(BaseModel):
    id: str
    sku: str
    event_type: AnomalyType
    detected_at: datetime
    start_date: date
    end_date: Optional[date] = None
    duration_days: Optional[int] = None
    financial_impact: float = 0.0
    unit_impact: int = 0
    root_cause: str
    root_cause_confidence: float = Field(..., ge=0, le=1)
    contributing_factors: List[RootCauseFactor] = Field(default_factory=list)
    proposed_adjustments: List[ParameterAdjustment] = Field(default_factory=list)
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None


class RecommendedAction(BaseModel):
    priority: Literal["critical", "high", "medium", "low"]
    action: str
    affected_skus: List[str]


class AnomalySummary(BaseModel):
    total_anomalies: int
    by_type: Dict[str, int]
    total_financial_impact: float
    recent_anomalies: List[AnomalyEvent]
    recommended_actions: List[RecommendedAction]


class TuningParameters(BaseModel):
    """Per-SKU parameters adjusted by the feedback loop."""

    safety_stock_days: float = 14.0
    spike_detection_threshold: float = 50.0
    forecast_bias_correction: float = Field(1.0, ge=0)


class AdjustmentResult(BaseModel):
    adjustment: ParameterAdjustment
    applied: bool
    detail: str = ""


# ---------------------------------------------------------------------------
# Backtests and accuracy


class BacktestPoint(BaseModel):
    date: date
    predicted: float
    actual: float
    error: float
    percent_error: float


class BacktestPeriod(BaseModel):
    start: date
    end: date


class BacktestResult(BaseModel):
    sku: str
    model: ModelName
    period: BacktestPeriod
    mape: float
    mae: float
    rmse: float
    hit_rate: float
    forecasts: List[BacktestPoint] = Field(default_factory=list)


class OptimizationResult(BaseModel):
    sku: str
    status: Literal["persisted", "rejected", "skipped"]
    reason: str = ""
    previous_weights: Optional[ModelWeights] = None
    new_weights: Optional[ModelWeights] = None
    previous_mape: Optional[float] = None
    new_mape: Optional[float] = None
    improvement: float = 0.0
    backtests: List[BacktestResult] = Field(default_factory=list)


class WeeklyOptimizationSummary(BaseModel):
    total_skus_processed: int
    skus_improved: int
    skus_skipped: int
    skus_failed: int
    average_improvement: float
    stopped_early: bool = False
    results: List[OptimizationResult] = Field(default_factory=list)


class ForecastAccuracyRecord(BaseModel):
    sku: str
    forecast_date: date
    predicted_units: float
    actual_units: float
    model_used: str = "ensemble"
    absolute_error: float = 0.0
    percentage_error: float = 0.0
    squared_error: float = 0.0
    within_confidence: bool = False


class ModelPerformance(BaseModel):
    model: str
    mape: float
    count: int


class SkuAccuracy(BaseModel):
    sku: str
    mape: float


class AccuracyReport(BaseModel):
    overall_mape: float
    model_performance: List[ModelPerformance] = Field(default_factory=list)
    top_accuracy_skus: List[SkuAccuracy] = Field(default_factory=list)
    worst_accuracy_skus: List[SkuAccuracy] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline output


class SkuReport(BaseModel):
    """Everything the per-SKU pipeline produced, plus non-fatal warnings."""

    sku: str
    forecasts: List[EnsembleForecast] = Field(default_factory=list)
    recommendation: Optional[ReorderRecommendation] = None
    spike: Optional[SpikeDetection] = None
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API payloads


class RecommendationRequest(BaseModel):
    sku: str
    position: Optional[InventoryPosition] = Field(
        None, description="Override the ledger's stock position"
    )
    moq: Optional[int] = Field(None, ge=1)
    as_of: Optional[date] = None


class SpikeScanResponse(BaseModel):
    spiking: List[SpikeDetection]
    alerts: List[str]


class AnomalyScanRequest(BaseModel):
    skus: Optional[List[str]] = None
    as_of: Optional[date] = None


class AnomalyScanResponse(BaseModel):
    events: List[AnomalyEvent]
    summary: AnomalySummary
    pending_adjustments: List[ParameterAdjustment] = Field(default_factory=list)
