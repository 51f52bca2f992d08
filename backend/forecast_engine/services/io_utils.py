from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pandas as pd

from ..core.exceptions import DatasetUnavailableError


def prefer_parquet(
    csv_path: str | Path,
    parquet_path: Optional[str | Path] = None,
    *,
    columns: Optional[Iterable[str]] = None,
    dtype: Optional[Dict[str, Any]] = None,
    parse_dates: Optional[Iterable[str]] = None,
    **csv_kwargs: Any,
) -> pd.DataFrame:
    """Load a ledger extract preferring Parquet with CSV fallback.

    Parameters
    ----------
    csv_path:
        Location of the canonical CSV file.
    parquet_path:
        Optional explicit Parquet path. When omitted we look for ``<csv>.parquet``.
    columns:
        Optional list/iterable of columns to read. Forwarded to the Parquet
        reader and mapped to ``usecols`` for CSV reads.
    dtype:
        Optional dtype mapping applied to the CSV fallback.
    parse_dates:
        Columns converted to ``datetime64`` after loading, whichever format
        the extract was stored in.
    csv_kwargs:
        Additional keyword arguments forwarded to :func:`pandas.read_csv`.

    Raises
    ------
    DatasetUnavailableError
        When neither the Parquet nor the CSV file exists.
    """

    csv_path = Path(csv_path)
    pq_path = Path(parquet_path) if parquet_path is not None else csv_path.with_suffix(".parquet")
    column_list = list(columns) if columns is not None else None

    if pq_path.exists():
        frame = pd.read_parquet(pq_path, columns=column_list)
    elif csv_path.exists():
        if column_list is not None and "usecols" not in csv_kwargs:
            csv_kwargs["usecols"] = column_list
        if dtype is not None and "dtype" not in csv_kwargs:
            csv_kwargs["dtype"] = dtype
        frame = pd.read_csv(csv_path, **csv_kwargs)
    else:
        raise DatasetUnavailableError(f"Dataset not found at {csv_path} (or {pq_path})")

    for column in parse_dates or ():
        if column in frame.columns:
            frame[column] = pd.to_datetime(frame[column], errors="coerce")
    return frame


def optional_frame(csv_path: str | Path, **kwargs: Any) -> pd.DataFrame:
    """Like :func:`prefer_parquet` but an absent extract yields an empty frame."""

    try:
        return prefer_parquet(csv_path, **kwargs)
    except DatasetUnavailableError:
        return pd.DataFrame()
