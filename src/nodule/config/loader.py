from __future__ import annotations

from pathlib import Path

import yaml

from nodule.config.errors import ConfigError


def load_yaml_config(path: Path) -> dict[str, object]:
    # Harness-level YAML loader; returns a raw mapping for validation.
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw
