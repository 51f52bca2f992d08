r"""backend\forecast_engine\services\ledger_service.py

Read access to the sales, inventory, supplier and accuracy extracts.

Extracts live in ``data/`` as CSV files (a sibling ``.parquet`` file is
preferred when present).  ``sales.csv`` is required; every other extract is
optional and an absent file simply yields empty results.  Frames are loaded
lazily and cached until :meth:`LedgerService.refresh` is called.
"""

from __future__ import annotations

import logging
import os
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ..core.exceptions import SkuNotFoundError
from ..models.schemas import (
    Deal,
    ForecastAccuracyRecord,
    InventoryPosition,
    PurchaseOrderArrival,
    SalesDataPoint,
    SpikeSignals,
    Supplier,
)
from .io_utils import optional_frame, prefer_parquet
from .weight_optimizer import track_accuracy

LOGGER = logging.getLogger(__name__)

EXTRACTS: Dict[str, Dict[str, Any]] = {
    "sales": {"file": "sales.csv", "dates": ["date"], "dtype": {"sku": str}},
    "inventory": {"file": "inventory.csv", "dates": [], "dtype": {"sku": str}},
    "products": {"file": "products.csv", "dates": [], "dtype": {"sku": str, "supplier": str}},
    "suppliers": {"file": "suppliers.csv", "dates": [], "dtype": {"name": str}},
    "purchase_orders": {
        "file": "purchase_orders.csv",
        "dates": ["order_date", "expected_date", "actual_date"],
        "dtype": {"supplier": str, "po_number": str},
    },
    "deals": {"file": "deals.csv", "dates": ["start_date", "end_date"], "dtype": {"sku": str}},
    "signals": {"file": "signals.csv", "dates": ["listing_change_date"], "dtype": {"sku": str}},
    "forecast_accuracy": {"file": "forecast_accuracy.csv", "dates": ["forecast_date"], "dtype": {"sku": str}},
}


def _as_date(value: Any) -> Optional[date]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).date()


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or pd.isna(value):
        return default
    return float(value)


class LedgerService:
    """Typed views over the ledger extracts in ``data_root``."""

    def __init__(self, data_root: Optional[str] = None) -> None:
        self.data_root = Path(data_root or os.getenv("DATA_DIR", "data"))
        self._frames: Dict[str, pd.DataFrame] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    def _frame(self, name: str) -> pd.DataFrame:
        with self._lock:
            cached = self._frames.get(name)
            if cached is not None:
                return cached
            extract = EXTRACTS[name]
            path = self.data_root / extract["file"]
            loader = prefer_parquet if name == "sales" else optional_frame
            frame = loader(path, dtype=extract["dtype"], parse_dates=extract["dates"])
            LOGGER.debug("Loaded %s extract with %d rows from %s", name, len(frame), path)
            self._frames[name] = frame
            return frame

    def _rows(self, name: str, column: str, value: str) -> pd.DataFrame:
        frame = self._frame(name)
        if frame.empty or column not in frame.columns:
            return frame.iloc[0:0]
        return frame[frame[column].astype(str) == value]

    def refresh(self) -> None:
        with self._lock:
            self._frames.clear()

    def data_files_present(self) -> bool:
        sales = self.data_root / EXTRACTS["sales"]["file"]
        return sales.exists() or sales.with_suffix(".parquet").exists()

    # ------------------------------------------------------------------
    def skus(self) -> List[str]:
        frame = self._frame("sales")
        return sorted(frame["sku"].astype(str).unique().tolist())

    def history(self, sku: str) -> List[SalesDataPoint]:
        """Daily sales for ``sku`` ordered by date, duplicate dates summed."""

        rows = self._rows("sales", "sku", sku)
        if rows.empty:
            raise SkuNotFoundError(sku)
        rows = rows.dropna(subset=["date"])
        agg = {"units": "sum"}
        if "revenue" in rows.columns:
            agg["revenue"] = "sum"
        daily = rows.groupby(rows["date"].dt.date).agg(agg).sort_index()
        return [
            SalesDataPoint(
                date=day,
                units=max(0.0, float(row["units"])),
                revenue=_as_float(row["revenue"]) if "revenue" in daily.columns else None,
            )
            for day, row in daily.iterrows()
        ]

    def position(self, sku: str) -> InventoryPosition:
        rows = self._rows("inventory", "sku", sku)
        if rows.empty:
            LOGGER.warning("No inventory row for sku=%s; assuming zero stock", sku)
            return InventoryPosition()
        row = rows.iloc[-1]
        return InventoryPosition(
            **{
                field: max(0.0, _as_float(row.get(field)))
                for field in ("fba_available", "fba_inbound", "fba_reserved", "warehouse_available")
            }
        )

    def product(self, sku: str) -> Dict[str, Any]:
        rows = self._rows("products", "sku", sku)
        if rows.empty:
            return {"sku": sku, "price": 0.0, "cost": 0.0, "supplier": None, "moq": None}
        row = rows.iloc[-1]
        moq = row.get("moq")
        supplier = row.get("supplier")
        return {
            "sku": sku,
            "price": _as_float(row.get("price")),
            "cost": _as_float(row.get("cost")),
            "supplier": None if supplier is None or pd.isna(supplier) else str(supplier),
            "moq": None if moq is None or pd.isna(moq) else int(moq),
        }

    def supplier_for(self, sku: str) -> Optional[Supplier]:
        name = self.product(sku)["supplier"]
        if not name:
            return None

        rows = self._rows("suppliers", "name", name)
        lead_time = 30
        if not rows.empty and "lead_time_days" in rows.columns:
            lead_time = int(_as_float(rows.iloc[-1]["lead_time_days"], 30))

        orders = [
            PurchaseOrderArrival(
                po_number=None if pd.isna(row.get("po_number")) else str(row.get("po_number")),
                order_date=_as_date(row.get("order_date")),
                expected_date=_as_date(row.get("expected_date")),
                actual_date=_as_date(row.get("actual_date")),
            )
            for _, row in self._rows("purchase_orders", "supplier", name).iterrows()
            if _as_date(row.get("expected_date")) is not None
        ]
        return Supplier(name=name, lead_time_days=lead_time, purchase_orders=orders)

    def deals(self, sku: str) -> List[Deal]:
        return [
            Deal(
                sku=sku,
                name=str(row.get("name", "deal")),
                start_date=_as_date(row["start_date"]),
                end_date=_as_date(row["end_date"]),
                multiplier=_as_float(row.get("multiplier"), 1.0),
            )
            for _, row in self._rows("deals", "sku", sku).iterrows()
            if _as_date(row.get("start_date")) and _as_date(row.get("end_date"))
        ]

    def signals(self, sku: str) -> Optional[SpikeSignals]:
        rows = self._rows("signals", "sku", sku)
        if rows.empty:
            return None
        row = rows.iloc[-1]
        ad_change = row.get("ad_spend_change_pct")
        deal = row.get("active_deal")
        return SpikeSignals(
            ad_spend_change_pct=None if ad_change is None or pd.isna(ad_change) else float(ad_change),
            active_deal=None if deal is None or pd.isna(deal) or not str(deal) else str(deal),
            listing_change_date=_as_date(row.get("listing_change_date")),
        )

    def accuracy_records(self, sku: Optional[str] = None) -> List[ForecastAccuracyRecord]:
        frame = self._frame("forecast_accuracy") if sku is None else self._rows("forecast_accuracy", "sku", sku)
        if frame.empty:
            return []
        return [
            track_accuracy(
                sku=str(row["sku"]),
                forecast_date=_as_date(row["forecast_date"]),
                predicted_units=_as_float(row.get("predicted_units")),
                actual_units=_as_float(row.get("actual_units")),
                model_used="ensemble" if pd.isna(row.get("model_used")) else str(row.get("model_used")),
            )
            for _, row in frame.iterrows()
            if _as_date(row.get("forecast_date")) is not None
        ]
