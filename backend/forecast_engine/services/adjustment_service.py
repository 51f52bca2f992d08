r"""backend\forecast_engine\services\adjustment_service.py

Proposal queue and explicit apply step for parameter adjustments.

Anomaly scans only *propose* adjustments.  They sit in an in-process queue
until :meth:`AdjustmentService.apply` is called, which writes the new value
to ``configs/tuning.yaml`` (atomically) or, for ``model_weights``, triggers
a re-optimisation of the SKU's ensemble weights.  Applying the same
adjustment twice is a no-op.

Relative adjustments carry the date of the evidence behind them.  Once one is
applied, that date is recorded next to the SKU's tuning and the same evidence
is not proposed or applied again, so repeated scans of an unchanged ledger do
not keep compounding the parameter.
"""

from __future__ import annotations

import logging
import math
import os
import threading
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.config import load_yaml, section, write_yaml_atomic
from ..models.schemas import (
    AdjustmentResult,
    AnomalyEvent,
    OptimizationResult,
    ParameterAdjustment,
    TuningParameters,
)

LOGGER = logging.getLogger(__name__)

ReoptimizeHook = Callable[[str], OptimizationResult]

NUMERIC_PARAMETERS = ("safety_stock_days", "spike_detection_threshold", "forecast_bias_correction")
EVIDENCE_KEY = "applied_evidence"


class AdjustmentService:
    """Hold proposed adjustments and apply them to the per-SKU tuning file."""

    def __init__(self, config_root: str = "configs", reoptimize_hook: Optional[ReoptimizeHook] = None) -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        self.path = os.path.join(config_root, "tuning.yaml")
        self.reoptimize_hook = reoptimize_hook
        self.defaults = TuningParameters(
            safety_stock_days=float(section(settings, "decision").get("safety_stock_days", 14)),
            spike_detection_threshold=float(section(settings, "spike").get("threshold_percent", 50)),
        )
        self._queue: Dict[Tuple[str, str], ParameterAdjustment] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, Dict[str, Any]]:
        data = load_yaml(self.path)
        return {str(sku): dict(values or {}) for sku, values in data.items()} if isinstance(data, dict) else {}

    def tuning_for(self, sku: str) -> TuningParameters:
        """Tuned parameters for ``sku`` layered over the configured defaults."""

        stored = self._load().get(sku, {})
        values = self.defaults.model_dump()
        values.update({name: float(stored[name]) for name in NUMERIC_PARAMETERS if name in stored})
        return TuningParameters(**values)

    def set_tuning(self, sku: str, tuning: TuningParameters) -> TuningParameters:
        with self._lock:
            data = self._load()
            data[sku] = self._entry(data, sku, tuning.model_dump())
            write_yaml_atomic(self.path, data)
        LOGGER.info("Tuning for sku=%s replaced: %s", sku, tuning.model_dump())
        return tuning

    @staticmethod
    def _entry(data: Dict[str, Dict[str, Any]], sku: str, values: Dict[str, Any]) -> Dict[str, Any]:
        entry = dict(values)
        evidence = data.get(sku, {}).get(EVIDENCE_KEY)
        if evidence:
            entry[EVIDENCE_KEY] = dict(evidence)
        return entry

    def applied_evidence(self, sku: str, parameter: str) -> Optional[date]:
        """Evidence date of the last applied adjustment to ``parameter`` for ``sku``."""

        raw = (self._load().get(sku, {}).get(EVIDENCE_KEY) or {}).get(parameter)
        if raw is None:
            return None
        return raw if isinstance(raw, date) else date.fromisoformat(str(raw))

    def _covered(self, adjustment: ParameterAdjustment) -> bool:
        if adjustment.evidence_date is None:
            return False
        applied = self.applied_evidence(adjustment.sku, adjustment.parameter)
        return applied is not None and adjustment.evidence_date <= applied

    # ------------------------------------------------------------------
    def propose(self, events: Iterable[AnomalyEvent]) -> List[ParameterAdjustment]:
        """Queue the adjustments carried by ``events``; later proposals replace earlier ones."""

        queued: List[ParameterAdjustment] = []
        with self._lock:
            for event in events:
                for adjustment in event.proposed_adjustments:
                    if self._covered(adjustment):
                        LOGGER.debug(
                            "Skipping %s for sku=%s; evidence from %s already applied",
                            adjustment.parameter,
                            adjustment.sku,
                            adjustment.evidence_date,
                        )
                        continue
                    self._queue[adjustment.key] = adjustment
                    queued.append(adjustment)
        if queued:
            LOGGER.info("Queued %d parameter adjustment(s)", len(queued))
        return queued

    def pending(self) -> List[ParameterAdjustment]:
        with self._lock:
            return list(self._queue.values())

    def apply(self, adjustment: ParameterAdjustment) -> AdjustmentResult:
        """Apply one adjustment; re-applying an already applied value changes nothing."""

        with self._lock:
            self._queue.pop(adjustment.key, None)
            if adjustment.parameter == "model_weights":
                return self._reoptimize(adjustment)

            if not math.isfinite(adjustment.new_value):
                raise ValueError(f"new_value for {adjustment.parameter} must be finite")

            if self._covered(adjustment):
                return AdjustmentResult(adjustment=adjustment, applied=False, detail="evidence already applied")

            tuned = self.tuning_for(adjustment.sku).model_dump()
            if tuned[adjustment.parameter] == adjustment.new_value:
                LOGGER.debug(
                    "Adjustment %s for sku=%s already at %s",
                    adjustment.parameter,
                    adjustment.sku,
                    adjustment.new_value,
                )
                return AdjustmentResult(adjustment=adjustment, applied=False, detail="already applied")

            tuned[adjustment.parameter] = adjustment.new_value
            data = self._load()
            entry = self._entry(data, adjustment.sku, TuningParameters(**tuned).model_dump())
            if adjustment.evidence_date is not None:
                entry.setdefault(EVIDENCE_KEY, {})[adjustment.parameter] = adjustment.evidence_date.isoformat()
            data[adjustment.sku] = entry
            write_yaml_atomic(self.path, data)

        LOGGER.info(
            "Applied adjustment for sku=%s: %s %s -> %s (%s)",
            adjustment.sku,
            adjustment.parameter,
            adjustment.old_value,
            adjustment.new_value,
            adjustment.reason,
        )
        return AdjustmentResult(
            adjustment=adjustment,
            applied=True,
            detail=f"{adjustment.parameter}: {adjustment.old_value} -> {adjustment.new_value}",
        )

    def _reoptimize(self, adjustment: ParameterAdjustment) -> AdjustmentResult:
        if self.reoptimize_hook is None:
            LOGGER.warning("No re-optimisation hook registered; skipping sku=%s", adjustment.sku)
            return AdjustmentResult(adjustment=adjustment, applied=False, detail="no re-optimisation hook")
        result = self.reoptimize_hook(adjustment.sku)
        return AdjustmentResult(
            adjustment=adjustment,
            applied=result.status == "persisted",
            detail=result.reason or result.status,
        )

    def apply_pending(self) -> List[AdjustmentResult]:
        return [self.apply(adjustment) for adjustment in self.pending()]
