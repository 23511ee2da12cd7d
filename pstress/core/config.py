"""YAML-backed application settings.

Settings live in a nested mapping addressed with dotted keys such as
``"analysis.error_tolerance"``.  A settings file only needs the keys it
changes; everything else falls back to :data:`DEFAULT_CONFIG`.
"""
from __future__ import annotations

import copy
import logging
import os
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "app": {"name": "pstress", "version": "0.1.0"},
    "analysis": {
        "error_tolerance": 0.05,
        "adapt_loop_max": 3,
        "max_p": 8,
        "max_p_jump": 2,
        "uniform": False,
        "reuse_previous_solution": False,
        "max_p_low_stress": None,
        "low_stress_fraction": 0.1,
        "max_p_final_pass": None,
        "detect_singularities": False,
        "singular_error_ratio": 0.8,
    },
    "assembly": {
        "workers": 1,
        "max_element_memory_mb": 512.0,
        "scratch_dir": None,
        "soft_springs": "auto",
        "soft_spring_factor": 1.0e-8,
        "penalty_factor": 1.0e8,
        "all_constraints_as_penalty": False,
    },
    "solver": {"residual_tolerance": 1.0e-8},
    "units": {
        "stress_conversion": 1.0,
        "stress_label": "Pa",
        "length_conversion": 1.0,
        "length_label": "m",
    },
    "logging": {"dir": "data/logs", "level": "INFO"},
}


def _merge_into(target: dict, layer: dict) -> None:
    """Overlay ``layer`` on ``target`` in place, descending into sub-mappings."""
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            target[key] = value


class AppConfig:
    """Layered settings: built-in defaults, then an optional YAML file.

    A missing file is not an error; the defaults apply unchanged.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._data: dict = copy.deepcopy(DEFAULT_CONFIG)
        self.source: Optional[str] = None
        if config_path and os.path.exists(config_path):
            with open(config_path, "r", encoding="utf-8") as f:
                layer = yaml.safe_load(f) or {}
            _merge_into(self._data, layer)
            self.source = config_path
            logger.debug("Loaded settings from %s", config_path)
        elif config_path:
            logger.warning("Settings file %s not found, using defaults", config_path)

    @classmethod
    def from_dict(cls, overrides: dict) -> "AppConfig":
        config = cls()
        _merge_into(config._data, copy.deepcopy(overrides))
        return config

    # -- dotted access --------------------------------------------------

    def get(self, dotted_key: str, default: Any = None) -> Any:
        value: Any = self._data
        for part in dotted_key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, dotted_key: str, value: Any) -> None:
        *parents, leaf = dotted_key.split(".")
        node = self._data
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value

    def section(self, name: str) -> dict:
        """Shallow copy of one top-level section, ``{}`` when absent."""
        value = self._data.get(name)
        return dict(value) if isinstance(value, dict) else {}

    # -- export ---------------------------------------------------------

    @property
    def data(self) -> dict:
        return self._data

    def dump(self) -> str:
        """Effective settings as a YAML document."""
        return yaml.safe_dump(self._data, sort_keys=False, default_flow_style=False)
