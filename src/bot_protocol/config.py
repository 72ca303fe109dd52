"""Configuration loading for the protocol engine.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable BOT_PROTOCOL_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``BOT_PROTOCOL__`` (e.g., BOT_PROTOCOL__STATE__FILE=/tmp/state.json or
BOT_PROTOCOL__TIMEOUTS__CLARIFY=3).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import DEFAULT_MAX_DEPTH

logger = logging.getLogger(__name__)

ENV_CONFIG_PATH = "BOT_PROTOCOL_CONFIG"
ENV_PREFIX = "BOT_PROTOCOL__"

DEFAULTS: Dict[str, Any] = {
    "state": {"file": None, "cleanup_after_hours": 24},
    "timeouts": {"CLARIFY": 10, "REQUEST": 30, "HANDOFF": 30, "BROADCAST": 5},
    "depth": {"max": DEFAULT_MAX_DEPTH},
    "server": {"cors_origins": ["*"]},
    "logging": {"level": "INFO"},
}


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix BOT_PROTOCOL__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., BOT_PROTOCOL__STATE__FILE -> cfg["state"]["file"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # timeout tables are keyed by upper-case message type
        if parts[0] == "timeouts":
            leaf = leaf.upper()
        sub[leaf] = _coerce(value)
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration merged over the built-in defaults.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``BOT_PROTOCOL_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))
