from __future__ import annotations

from datetime import date
from pathlib import Path
import sys

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from backend.forecast_engine.core.exceptions import DatasetUnavailableError, SkuNotFoundError
from backend.forecast_engine.services.ledger_service import LedgerService


def _write_ledger(data_dir: Path) -> Path:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "sales.csv").write_text(
        "sku,date,units,revenue\n"
        "A,2024-01-01,5,50\n"
        "A,2024-01-01,3,30\n"
        "A,2024-01-03,4,40\n"
        "B,2024-01-02,7,70\n"
    )
    (data_dir / "inventory.csv").write_text(
        "sku,fba_available,fba_inbound,fba_reserved,warehouse_available\n"
        "A,10,5,1,100\n"
    )
    (data_dir / "products.csv").write_text(
        "sku,price,cost,supplier,moq\n"
        "A,19.99,7.5,Acme,50\n"
        "B,5,2,,\n"
    )
    (data_dir / "suppliers.csv").write_text("name,lead_time_days\nAcme,21\n")
    (data_dir / "purchase_orders.csv").write_text(
        "po_number,supplier,order_date,expected_date,actual_date\n"
        "PO-1,Acme,2023-12-10,2024-01-01,2024-01-11\n"
        "PO-2,Acme,2024-01-10,2024-02-01,\n"
    )
    (data_dir / "forecast_accuracy.csv").write_text(
        "sku,forecast_date,predicted_units,actual_units,model_used\n"
        "A,2024-01-02,12,10,prophet\n"
        "B,2024-01-02,5,10,\n"
    )
    return data_dir


def test_history_sums_duplicate_days(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(_write_ledger(tmp_path / "data")))

    history = ledger.history("A")

    assert [point.date for point in history] == [date(2024, 1, 1), date(2024, 1, 3)]
    assert history[0].units == 8
    assert history[0].revenue == 80
    assert ledger.skus() == ["A", "B"]


def test_unknown_sku_raises(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(_write_ledger(tmp_path / "data")))

    with pytest.raises(SkuNotFoundError) as excinfo:
        ledger.history("ZZZ")
    assert excinfo.value.sku == "ZZZ"


def test_position_product_and_supplier(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(_write_ledger(tmp_path / "data")))

    position = ledger.position("A")
    supplier = ledger.supplier_for("A")

    assert position.total == 115
    assert position.on_hand == 110
    assert ledger.position("B").total == 0
    assert ledger.product("A")["moq"] == 50
    assert ledger.product("B")["supplier"] is None
    assert ledger.supplier_for("B") is None
    assert supplier.lead_time_days == 21
    assert len(supplier.purchase_orders) == 2
    assert supplier.latest_arrival().delay_days == 10
    assert supplier.observed_lead_time() == 32


def test_optional_extracts_may_be_missing(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(_write_ledger(tmp_path / "data")))

    assert ledger.deals("A") == []
    assert ledger.signals("A") is None


def test_accuracy_records(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(_write_ledger(tmp_path / "data")))

    records = ledger.accuracy_records()
    only_a = ledger.accuracy_records("A")

    assert len(records) == 2
    assert [record.model_used for record in records] == ["prophet", "ensemble"]
    assert only_a[0].percentage_error == pytest.approx(0.2)


def test_missing_sales_extract(tmp_path: Path) -> None:
    ledger = LedgerService(data_root=str(tmp_path / "empty"))

    assert ledger.data_files_present() is False
    with pytest.raises(DatasetUnavailableError):
        ledger.history("A")


def test_parquet_is_preferred_and_refresh_reloads(tmp_path: Path) -> None:
    data_dir = _write_ledger(tmp_path / "data")
    ledger = LedgerService(data_root=str(data_dir))
    assert ledger.history("B")[0].units == 7

    frame = pd.DataFrame({"sku": ["B"], "date": ["2024-01-02"], "units": [9]})
    frame.to_parquet(data_dir / "sales.parquet")

    assert ledger.history("B")[0].units == 7
    ledger.refresh()
    assert ledger.history("B")[0].units == 9
    assert ledger.skus() == ["B"]


def test_data_dir_from_environment(tmp_path: Path, monkeypatch) -> None:
    data_dir = _write_ledger(tmp_path / "env-data")
    monkeypatch.setenv("DATA_DIR", str(data_dir))

    assert LedgerService().data_files_present() is True
