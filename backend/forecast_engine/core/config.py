"""
Application configuration utilities.

This module defines the ``Settings`` class used throughout the engine for
environment variables and provides helper functions to load the YAML files
containing model parameters, thresholds and per-SKU tuning.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from functools import lru_cache
from typing import Any, Dict, Mapping

import yaml
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration loaded from environment variables or a .env file."""

    # API server configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Locations of YAML configuration and ledger extracts
    config_dir: str = "configs"
    data_dir: str = "data"

    # Persisted per-SKU ensemble weights (joblib pickle)
    weights_store_path: str = "data/model_weights.joblib"

    log_level: str = "INFO"
    cors_origins: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache(maxsize=None)
def get_settings() -> Settings:
    """Return a cached instance of ``Settings``.

    Using a cache ensures that environment variables are only read once.
    """
    return Settings()


def load_yaml(file_path: str) -> dict:
    """Load a YAML file from the given path and return its contents.

    If the file does not exist, an empty dictionary is returned.
    """
    if not os.path.exists(file_path):
        return {}
    with open(file_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def write_yaml_atomic(file_path: str, payload: Mapping[str, Any]) -> None:
    """Write ``payload`` to ``file_path`` through a temp file and a rename."""

    directory = os.path.dirname(file_path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".yaml", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(dict(payload), handle, sort_keys=False)
        shutil.move(tmp_path, file_path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


def section(config: Mapping[str, Any], *keys: str) -> Dict[str, Any]:
    """Return a nested mapping from ``config`` or an empty dict when absent."""

    node: Any = config
    for key in keys:
        if not isinstance(node, Mapping):
            return {}
        node = node.get(key)
    return dict(node) if isinstance(node, Mapping) else {}
