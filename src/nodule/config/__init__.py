from .errors import ConfigError
from .loader import load_yaml_config
from .settings import (
    HarnessSettings,
    LogExporterSettings,
    LoggingSettings,
    TimingSettings,
    TransportSettings,
    configure_settings,
    get_settings,
    load_harness_settings,
    parse_harness_settings,
)

__all__ = [
    "ConfigError",
    "HarnessSettings",
    "LogExporterSettings",
    "LoggingSettings",
    "TimingSettings",
    "TransportSettings",
    "configure_settings",
    "get_settings",
    "load_harness_settings",
    "load_yaml_config",
    "parse_harness_settings",
]
