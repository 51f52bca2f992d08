r"""backend\forecast_engine\core\observability.py"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response


_REQUEST_COUNTER = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "path", "status"]
)
_LATENCY_HISTOGRAM = Histogram(
    "http_request_latency_seconds", "Request latency", ["method", "path"]
)

MODEL_FALLBACKS = Counter(
    "forecast_model_fallbacks_total",
    "Forecasts served by a model's fallback estimator",
    ["model"],
)
WEIGHT_UPDATES = Counter(
    "weight_updates_total",
    "Optimizer runs per outcome",
    ["status"],
)


def record_fallback(model: str) -> None:
    """Count one fallback forecast for ``model``."""

    try:
        MODEL_FALLBACKS.labels(model).inc()
    except Exception:
        # Metrics errors should never break forecasting.
        pass


def record_weight_update(status: str) -> None:
    """Count one optimizer outcome (persisted, rejected or skipped)."""

    try:
        WEIGHT_UPDATES.labels(status).inc()
    except Exception:
        pass


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware emitting a JSON access log line and Prometheus metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method
        client_ip = request.client.host if request.client else "unknown"
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("request-id")
            or str(uuid.uuid4())
        )

        start_perf = time.perf_counter()
        start_wall = time.time()

        def _finalize(response: Response) -> Response:
            latency = time.perf_counter() - start_perf
            status_code = getattr(response, "status_code", 500)

            try:
                _REQUEST_COUNTER.labels(method, path, str(status_code)).inc()
                _LATENCY_HISTOGRAM.labels(method, path).observe(latency)
            except Exception:
                # Metrics errors should never break request handling.
                pass

            # Path params are only resolved once routing has happened.
            sku = request.path_params.get("sku") if request.path_params else None

            log_payload = {
                "timestamp": datetime.fromtimestamp(start_wall, tz=timezone.utc).isoformat(),
                "path": path,
                "method": method,
                "status": status_code,
                "latency_ms": int(latency * 1000),
                "request_id": request_id,
                "client_ip": client_ip,
                "sku": sku,
            }

            try:
                print(json.dumps(log_payload))
            except Exception:
                pass

            return response

        response: Response
        try:
            response = await call_next(request)
        except Exception:
            # Even if downstream fails we still want metrics/logs; re-raise after logging.
            response = PlainTextResponse("Internal Server Error", status_code=500)
            _finalize(response)
            raise

        return _finalize(response)


def metrics_endpoint() -> Response:
    """Return Prometheus metrics payload."""

    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
