"""Build the closed set of ensemble members from ``settings.yaml``."""

from __future__ import annotations

from typing import Any, Mapping, Tuple, Type

from ...core.config import section
from .arima import ArimaModel
from .base import ForecastModel
from .exponential_smoothing import ExponentialSmoothingModel
from .pattern_match import PatternMatchModel
from .prophet_like import ProphetLikeModel

MODEL_CLASSES: Tuple[Type[ForecastModel], ...] = (
    ProphetLikeModel,
    PatternMatchModel,
    ExponentialSmoothingModel,
    ArimaModel,
)


def default_models(settings: Mapping[str, Any] | None = None) -> Tuple[ForecastModel, ...]:
    """Instantiate one model per class using ``settings['models'][<name>]``."""

    settings = settings or {}
    return tuple(cls.from_config(section(settings, "models", cls.name)) for cls in MODEL_CLASSES)

