"""
Batcher — Configuration Loader

Three tiers, later tiers winning:

  1. config/batcher.yaml      base run parameters and simulated fleet
  2. config/{env}.yaml        per-environment overlay (BATCHER_ENV, default dev)
  3. BATCHER_* variables      single-value overrides for ad-hoc runs

Usage:
    from infra.config_loader import load_config

    loader = load_config(env="test", project_root=".")
    spacer = loader.get("batcher.spacer", "5ms")
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("batcher.config")

BASE_FILE = "config/batcher.yaml"

# Known overrides; anything else goes through BATCHER_CONFIG__a__b=value
_ENV_MAPPINGS: dict[str, str] = {
    "BATCHER_SPACER": "batcher.spacer",
    "BATCHER_EXTRACTION_FRACTION": "batcher.extraction_fraction",
    "BATCHER_PREP_MULTIPLIER": "batcher.prep_multiplier",
    "BATCHER_PREP_TOLERANCE": "batcher.prep_tolerance",
    "BATCHER_MAX_DEPTH": "batcher.max_depth",
    "BATCHER_DEPTH_POLICY": "batcher.depth_policy",
    "BATCHER_STATUS_PORT": "batcher.status_port",
    "BATCHER_TIME_SCALE": "batcher.simulation.time_scale",
    "BATCHER_LOG_LEVEL": "logging.level",
}
_ARBITRARY_PREFIX = "BATCHER_CONFIG__"


class ConfigLoader:
    """Merged view of the three config tiers for one environment."""

    def __init__(self, env: str = "dev", project_root: str = "."):
        self.env = env
        self.project_root = Path(project_root)
        self.sources: list[str] = []
        self._data: dict[str, Any] | None = None

    def load(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        self.sources = []

        for label, relative in (("base", BASE_FILE), ("overlay", f"config/{self.env}.yaml")):
            path = self.project_root / relative
            if path.exists():
                with open(path) as f:
                    data = _deep_merge(data, yaml.safe_load(f) or {})
                self.sources.append(f"{label}:{relative}")

        overrides = _load_env_overrides()
        if overrides:
            data = _deep_merge(data, overrides)
            self.sources.append(f"env_vars({len(overrides)} keys)")

        self._data = data
        logger.info("Config loaded: env=%s sources=%s", self.env, self.sources)
        return data

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Value at a dotted path such as "batcher.simulation.time_scale"."""
        if self._data is None:
            self.load()
        current: Any = self._data
        for key in dotted_key.split("."):
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
        return current


def load_config(env: str = "dev", project_root: str = ".") -> ConfigLoader:
    loader = ConfigLoader(env=env, project_root=project_root)
    loader.load()
    return loader


# ═══════════════════════════════════════════════════════════════════
# Merging & Overrides
# ═══════════════════════════════════════════════════════════════════

def _deep_merge(base: dict, overlay: dict) -> dict:
    """Overlay wins. Dicts merge recursively; lists and scalars are replaced."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_path(tree: dict, dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    for key in parents:
        tree = tree.setdefault(key, {})
    tree[leaf] = value


def _load_env_overrides() -> dict[str, Any]:
    result: dict[str, Any] = {}
    for env_key, config_path in _ENV_MAPPINGS.items():
        value = os.environ.get(env_key)
        if value is not None:
            _set_path(result, config_path, _auto_convert(value))

    # BATCHER_CONFIG__batcher__reserved_capacity__home=512
    for key, value in os.environ.items():
        if key.startswith(_ARBITRARY_PREFIX):
            path = key[len(_ARBITRARY_PREFIX):].lower().replace("__", ".")
            _set_path(result, path, _auto_convert(value))
    return result


def _auto_convert(value: str) -> Any:
    """"true"/"yes" and "false"/"no" become booleans, then int, then float."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            pass
    return value
