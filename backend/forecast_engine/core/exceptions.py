r"""backend\forecast_engine\core\exceptions.py

Error types raised by the engine services.

Each class also derives from the builtin the routers already map, so callers
that only catch ``ValueError`` or ``FileNotFoundError`` keep working.
:func:`raise_http_error` is the shared mapping from these errors to HTTP
responses used by every router.
"""

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import HTTPException, status

LOGGER = logging.getLogger(__name__)


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"


class InsufficientHistoryError(EngineError, ValueError):
    """Raised when an operation needs more sales history than is available."""

    code = "insufficient_history"


class SkuNotFoundError(EngineError, LookupError):
    """Raised when a SKU has no rows in the ledger."""

    code = "sku_not_found"

    def __init__(self, sku: str) -> None:
        super().__init__(f"SKU '{sku}' was not found in the sales ledger.")
        self.sku = sku


class DatasetUnavailableError(EngineError, FileNotFoundError):
    """Raised when a required ledger file is missing."""

    code = "data_unavailable"


def error_payload(code: str, message: str) -> dict[str, str]:
    """Return a standardised error payload."""

    return {"error": code, "message": message}


def raise_http_error(exc: Exception, sku: str, failure_code: str) -> NoReturn:
    """Translate a service exception into the matching HTTP error.

    Unknown SKUs map to 404, missing ledger extracts to 503, rejected input
    (any ``ValueError``) to 400 and everything else to 500 with ``failure_code``.
    """

    if isinstance(exc, SkuNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_payload(exc.code, str(exc)),
        ) from exc
    if isinstance(exc, FileNotFoundError):
        LOGGER.error("Ledger extracts missing while serving sku=%s: %s", sku, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_payload(
                DatasetUnavailableError.code,
                "Required ledger extracts are missing. Please add data/sales.csv and retry.",
            ),
        ) from exc
    if isinstance(exc, ValueError):
        LOGGER.warning("Request rejected for sku=%s: %s", sku, exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_payload(getattr(exc, "code", "invalid_request"), str(exc)),
        ) from exc
    LOGGER.exception("Unexpected error while serving sku=%s", sku)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=error_payload(failure_code, "An unexpected error occurred."),
    ) from exc
