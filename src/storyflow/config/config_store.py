"""Configuration loading and persistence helpers."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from storyflow.constants import SETTINGS_FILENAME

DEFAULT_SETTINGS: Dict[str, Any] = {
    "connection": {
        "transport": "http",
        # host/port fall back to the transport's own defaults
        "host": None,
        "port": None,
        "shared_secret": "",
        "timeout": None,
        "workflow_template": None,
    },
    "working_directory": ".",
    "defaults": {},
    "execution": {
        "abort_on_provider_failure": False,
        "run_on_validation_errors": False,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}


def deep_merge(base: Dict, override: Dict) -> Dict:
    """Return `base` with `override` merged in; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigStore:
    """Handles the runner settings file (storyflow.yaml)."""

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path else Path(SETTINGS_FILENAME)
        self.explicit = path is not None

    def load(self) -> Dict:
        """Load settings layered over the built-in defaults.

        A missing default file is fine; a missing file that was asked for
        explicitly is an error.
        """
        if not self.path.exists():
            if self.explicit:
                raise FileNotFoundError(f"Settings file not found: {self.path}")
            return copy.deepcopy(DEFAULT_SETTINGS)

        with open(self.path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a mapping: {self.path}")
        return deep_merge(DEFAULT_SETTINGS, data)

    def save(self, settings: Dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            yaml.dump(settings, fh, default_flow_style=False, sort_keys=False)
