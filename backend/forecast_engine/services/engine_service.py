r"""backend\forecast_engine\services\engine_service.py

Per-SKU pipeline and catalogue-wide jobs.

``EngineService`` wires the ledger, ensemble, spike detector, decision
service, optimizer, anomaly scanner and adjustment queue together.  The
forecast is the critical output of :meth:`EngineService.run_sku`; spike
detection and the reorder decision are best effort and degrade to warnings
on the returned :class:`SkuReport`.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

from ..core.config import get_settings, load_yaml, section
from ..core.exceptions import SkuNotFoundError
from ..models.schemas import AnomalyEvent, AnomalySummary, SkuReport, WeeklyOptimizationSummary
from .adjustment_service import AdjustmentService
from .anomaly_service import AnomalyDetector, SkuSnapshot
from .decision_service import DecisionService
from .ensemble_service import EnsembleService
from .ledger_service import LedgerService
from .spike_service import SpikeDetector
from .weight_optimizer import WeightOptimizer
from .weights_repository import FileWeightsRepository, WeightsRepository

LOGGER = logging.getLogger(__name__)


class EngineService:
    """Facade over every service the API and batch jobs need."""

    def __init__(
        self,
        config_root: str = "configs",
        data_root: str = "data",
        weights_repository: Optional[WeightsRepository] = None,
        ledger: Optional[LedgerService] = None,
    ) -> None:
        settings = load_yaml(os.path.join(config_root, "settings.yaml"))
        self.max_workers = int(section(settings, "engine").get("max_workers", 4))

        self.ledger = ledger or LedgerService(data_root=data_root)
        self.adjustments = AdjustmentService(config_root=config_root)
        self.ensemble = EnsembleService(
            config_root=config_root,
            weights_repository=weights_repository,
            tuning_provider=self.adjustments.tuning_for,
        )
        self.optimizer = WeightOptimizer(self.ensemble, config_root=config_root)
        self.adjustments.reoptimize_hook = self.reoptimize
        self.decisions = DecisionService(config_root=config_root)
        self.spikes = SpikeDetector(config_root=config_root)
        self.anomalies = AnomalyDetector(config_root=config_root)

    # ------------------------------------------------------------------
    def reoptimize(self, sku: str):
        return self.optimizer.optimize_sku(sku, self.ledger.history(sku))

    def run_sku(self, sku: str, horizon_days: int = 30) -> SkuReport:
        """Forecast, spike check and reorder recommendation for one SKU."""

        history = self.ledger.history(sku)
        tuning = self.adjustments.tuning_for(sku)
        position = self.ledger.position(sku)
        supplier = self.ledger.supplier_for(sku)
        report = SkuReport(sku=sku)

        try:
            report.spike = self.spikes.detect(
                sku,
                history,
                position=position,
                lead_time_days=self.decisions.lead_time_for(supplier),
                signals=self.ledger.signals(sku),
                threshold=tuning.spike_detection_threshold,
            )
        except Exception as exc:
            LOGGER.warning("Spike detection failed for sku=%s: %s", sku, exc)
            report.warnings.append(f"spike detection unavailable: {exc}")

        report.forecasts = self.ensemble.forecast(
            sku,
            history,
            horizon_days,
            deals=self.ledger.deals(sku),
            spike=report.spike,
            supplier=supplier,
        )

        try:
            report.recommendation = self.decisions.recommend(
                sku,
                history,
                position,
                supplier=supplier,
                moq=self.ledger.product(sku)["moq"],
                safety_stock_days=tuning.safety_stock_days,
                forecasts=report.forecasts,
                upcoming_peak=self.ensemble.seasonality.upcoming_peak(sku, history[-1].date),
            )
        except Exception as exc:
            LOGGER.warning("Reorder decision failed for sku=%s: %s", sku, exc)
            report.warnings.append(f"reorder recommendation unavailable: {exc}")

        return report

    # ------------------------------------------------------------------
    def snapshot(self, sku: str, as_of: Optional[date] = None) -> SkuSnapshot:
        """Everything the anomaly scanner needs for ``sku`` as known on ``as_of``."""

        history = self.ledger.history(sku)
        accuracy = self.ledger.accuracy_records(sku)
        if as_of is not None:
            history = [point for point in history if point.date <= as_of]
            accuracy = [record for record in accuracy if record.forecast_date <= as_of]
        tuning = self.adjustments.tuning_for(sku)
        position = self.ledger.position(sku)
        supplier = self.ledger.supplier_for(sku)
        product = self.ledger.product(sku)
        spike = self.spikes.detect(
            sku,
            history,
            position=position,
            lead_time_days=self.decisions.lead_time_for(supplier),
            signals=self.ledger.signals(sku),
            threshold=tuning.spike_detection_threshold,
        )
        return SkuSnapshot(
            sku=sku,
            history=history,
            position=position,
            supplier=supplier,
            unit_price=product["price"],
            unit_cost=product["cost"],
            spike=spike,
            accuracy=accuracy,
            tuning=tuning,
        )

    def scan_catalog(
        self,
        skus: Optional[Iterable[str]] = None,
        as_of: Optional[date] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Tuple[List[AnomalyEvent], AnomalySummary]:
        """Scan SKUs for anomalies and queue the adjustments they propose."""

        stop_event = stop_event or threading.Event()
        targets = list(skus) if skus is not None else self.ledger.skus()

        def _task(sku: str) -> Optional[SkuSnapshot]:
            if stop_event.is_set():
                return None
            try:
                return self.snapshot(sku, as_of)
            except SkuNotFoundError:
                LOGGER.warning("Skipping unknown sku=%s during anomaly scan", sku)
                return None

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scan") as pool:
            snapshots = [snapshot for snapshot in pool.map(_task, targets) if snapshot is not None]

        events, summary = self.anomalies.scan(snapshots, as_of)
        self.adjustments.propose(events)
        return events, summary

    def run_weekly_optimization(
        self, stop_event: Optional[threading.Event] = None
    ) -> WeeklyOptimizationSummary:
        return self.optimizer.run_weekly(self.ledger.skus(), self.ledger.history, stop_event)


@lru_cache(maxsize=None)
def get_engine() -> EngineService:
    """Process-wide engine built from :func:`get_settings`."""

    settings = get_settings()
    return EngineService(
        config_root=settings.config_dir,
        data_root=settings.data_dir,
        weights_repository=FileWeightsRepository(settings.weights_store_path),
    )
