from __future__ import annotations


class ConfigError(ValueError):
    # Raised for invalid harness config (fail fast).
    pass
