r"""backend\forecast_engine\services\seasonality_service.py

Calendar multipliers applied on top of the blended model forecast.

Seasonal events are recurring month/day windows (a window may cross New
Year).  For a given SKU the multiplier resolves as: SKU override, then a
blend of the base and learned multipliers, then the base multiplier alone.
Deals are dated promotions that multiply together when several overlap.
"""

from __future__ import annotations

import logging
import os
from datetime import date, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from ..core.config import load_yaml, section
from ..models.schemas import Deal, SeasonalEvent

LOGGER = logging.getLogger(__name__)

DEFAULT_EVENTS: tuple[SeasonalEvent, ...] = (
    SeasonalEvent(
        name="Valentine's Day", event_type="micro_peak",
        start_month=2, start_day=1, end_month=2, end_day=14, base_multiplier=2.0,
    ),
    SeasonalEvent(
        name="Spring Sales", event_type="peak",
        start_month=3, start_day=1, end_month=4, end_day=30, base_multiplier=1.5,
    ),
    SeasonalEvent(
        name="Mother's Day", event_type="micro_peak",
        start_month=5, start_day=1, end_month=5, end_day=14, base_multiplier=2.5,
    ),
    SeasonalEvent(
        name="Father's Day", event_type="micro_peak",
        start_month=6, start_day=1, end_month=6, end_day=14, base_multiplier=2.0,
    ),
    SeasonalEvent(
        name="Prime Day", event_type="micro_peak",
        start_month=7, start_day=10, end_month=7, end_day=20, base_multiplier=3.0,
    ),
    SeasonalEvent(
        name="Black Friday through Christmas", event_type="major_peak",
        start_month=11, start_day=15, end_month=12, end_day=24, base_multiplier=4.0,
    ),
)


class SeasonalityService:
    """Resolve seasonal and deal multipliers for a SKU and date."""

    def __init__(
        self,
        config_root: str = "configs",
        events: Optional[Sequence[SeasonalEvent]] = None,
        learned_blend: Optional[float] = None,
    ) -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        cfg = section(settings, "seasonality")

        self.learned_blend = float(
            learned_blend if learned_blend is not None else cfg.get("learned_blend", 0.6)
        )
        if events is None:
            configured = cfg.get("events")
            events = (
                [SeasonalEvent.model_validate(item) for item in configured]
                if configured
                else list(DEFAULT_EVENTS)
            )
        self.events: List[SeasonalEvent] = list(events)

    # ------------------------------------------------------------------
    def event_for(self, day: date) -> Optional[SeasonalEvent]:
        """Return the first active event whose window contains ``day``."""

        for event in self.events:
            if event.is_active and event.contains(day):
                return event
        return None

    def resolve_multiplier(self, event: SeasonalEvent, sku: str) -> float:
        override = event.sku_multipliers.get(sku)
        if override is not None:
            return max(0.0, float(override))
        if event.learned_multiplier is not None:
            blend = self.learned_blend
            return max(0.0, (1 - blend) * event.base_multiplier + blend * event.learned_multiplier)
        return max(0.0, event.base_multiplier)

    def seasonality_multiplier(self, sku: str, day: date) -> float:
        event = self.event_for(day)
        if event is None:
            return 1.0
        return self.resolve_multiplier(event, sku)

    def upcoming(self, as_of: date, within_days: int = 30) -> List[SeasonalEvent]:
        """Events starting within ``within_days`` of ``as_of`` (used for reorder advice)."""

        found = []
        for offset in range(within_days + 1):
            event = self.event_for(as_of + timedelta(days=offset))
            if event is not None and event not in found:
                found.append(event)
        return found

    def upcoming_peak(
        self, sku: str, as_of: date, within_days: int = 30
    ) -> Optional[Tuple[SeasonalEvent, float]]:
        """The upcoming event with the largest multiplier above 1 for ``sku``, if any."""

        best: Optional[Tuple[SeasonalEvent, float]] = None
        for event in self.upcoming(as_of, within_days):
            multiplier = self.resolve_multiplier(event, sku)
            if multiplier > 1.0 and (best is None or multiplier > best[1]):
                best = (event, multiplier)
        return best

    @staticmethod
    def deal_multiplier(deals: Iterable[Deal], sku: str, day: date) -> float:
        multiplier = 1.0
        for deal in deals:
            if deal.sku == sku and deal.is_active_on(day):
                multiplier *= max(0.0, deal.multiplier)
        return multiplier
