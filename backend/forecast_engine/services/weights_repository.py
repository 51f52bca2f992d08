r"""backend\forecast_engine\services\weights_repository.py

Keyed store for the per-SKU ensemble weights.

The optimizer's improve-or-skip step reads, compares and then writes, so
writers for the same SKU are serialised with a per-SKU lock and every write
is a compare-and-swap against the value the writer originally read.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol

import joblib

from ..models.schemas import ModelWeights

LOGGER = logging.getLogger(__name__)


class WeightsRepository(Protocol):
    def get(self, sku: str) -> Optional[ModelWeights]:
        ...

    def compare_and_swap(
        self, sku: str, expected: Optional[ModelWeights], new: ModelWeights
    ) -> bool:
        ...

    def lock(self, sku: str) -> contextlib.AbstractContextManager:
        ...


def _same(current: Optional[ModelWeights], expected: Optional[ModelWeights]) -> bool:
    if current is None or expected is None:
        return current is None and expected is None
    return current.same_weights(expected) and current.overall_mape == expected.overall_mape


class _KeyedLocks:
    """Lazily created re-entrant lock per SKU."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    @contextlib.contextmanager
    def lock(self, sku: str) -> Iterator[None]:
        with self._guard:
            sku_lock = self._locks.setdefault(sku, threading.RLock())
        with sku_lock:
            yield


class InMemoryWeightsRepository(_KeyedLocks):
    """Process-local repository, used by tests and single-process deployments."""

    def __init__(self, initial: Optional[Dict[str, ModelWeights]] = None) -> None:
        super().__init__()
        self._store: Dict[str, ModelWeights] = dict(initial or {})
        self._store_lock = threading.Lock()

    def get(self, sku: str) -> Optional[ModelWeights]:
        with self._store_lock:
            return self._store.get(sku)

    def compare_and_swap(
        self, sku: str, expected: Optional[ModelWeights], new: ModelWeights
    ) -> bool:
        with self._store_lock:
            if not _same(self._store.get(sku), expected):
                LOGGER.warning("Weights for sku=%s changed concurrently; swap refused", sku)
                return False
            self._store[sku] = new
            return True


class FileWeightsRepository(_KeyedLocks):
    """Weights pickled with joblib in a single file, replaced atomically on write."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        self._file_lock = threading.Lock()

    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        payload = joblib.load(self.path)
        return dict(payload) if isinstance(payload, dict) else {}

    def _dump(self, payload: Dict[str, dict]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".joblib", dir=str(directory))
        os.close(fd)
        try:
            joblib.dump(payload, tmp_path)
            shutil.move(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    # ------------------------------------------------------------------
    def get(self, sku: str) -> Optional[ModelWeights]:
        with self._file_lock:
            raw = self._load().get(sku)
        return ModelWeights.model_validate(raw) if raw is not None else None

    def compare_and_swap(
        self, sku: str, expected: Optional[ModelWeights], new: ModelWeights
    ) -> bool:
        with self._file_lock:
            payload = self._load()
            raw = payload.get(sku)
            current = ModelWeights.model_validate(raw) if raw is not None else None
            if not _same(current, expected):
                LOGGER.warning("Weights for sku=%s changed concurrently; swap refused", sku)
                return False
            payload[sku] = new.model_dump()
            self._dump(payload)
        LOGGER.info("Persisted weights for sku=%s to %s", sku, self.path)
        return True
