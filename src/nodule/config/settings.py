from __future__ import annotations

import os
from pathlib import Path
from threading import Lock
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from nodule.config.errors import ConfigError
from nodule.config.loader import load_yaml_config
from nodule.observability.diagnostics import configure_diagnostics_from_settings

# Settings models map the harness YAML sections to typed structures.

CONFIG_ENV_VAR = "NODULE_CONFIG"


class TimingSettings(BaseModel):
    # Poll intervals, grace periods and bounded-wait deadlines (seconds).
    model_config = ConfigDict(extra="forbid")
    line_poll_seconds: float = Field(default=0.2, gt=0)
    line_start_timeout_seconds: float = Field(default=30.0, gt=0)
    reader_drain_timeout_seconds: float = Field(default=5.0, gt=0)
    process_stop_grace_seconds: float = Field(default=0.05, ge=0)
    process_kill_grace_seconds: float = Field(default=0.1, ge=0)
    backoff_initial_interval_seconds: float = Field(default=0.01, gt=0)
    topology_stop_recheck_seconds: float = Field(default=1.0, gt=0)
    read_count_timeout_seconds: float = Field(default=10.0, gt=0)
    proxy_poll_seconds: float = Field(default=0.2, gt=0)
    proxy_start_timeout_seconds: float = Field(default=5.0, gt=0)
    proxy_stop_timeout_seconds: float = Field(default=1.0, gt=0)
    proxy_connect_timeout_seconds: float = Field(default=5.0, gt=0)


class LogExporterSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["stdout", "stderr", "jsonl"]
    path: str | None = None

    @model_validator(mode="after")
    def _jsonl_requires_path(self) -> LogExporterSettings:
        if self.kind == "jsonl" and not self.path:
            raise ValueError("jsonl exporter requires a non-empty path")
        return self


class LoggingSettings(BaseModel):
    # Diagnostic channel: minimum level plus exporter list.
    model_config = ConfigDict(extra="forbid")
    enabled: bool = True
    level: Literal["debug", "info", "warning", "error"] = "warning"
    exporters: list[LogExporterSettings] = Field(
        default_factory=lambda: [LogExporterSettings(kind="stderr")]
    )


class TransportSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")
    max_payload_bytes: int = Field(default=16 * 1024 * 1024, gt=0)


class HarnessSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")
    timing: TimingSettings = Field(default_factory=TimingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)

    @field_validator("timing", "logging", "transport", mode="before")
    @classmethod
    def _none_means_defaults(cls, value: object) -> object:
        return {} if value is None else value


def parse_harness_settings(raw: dict[str, object]) -> HarnessSettings:
    try:
        return HarnessSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid harness settings: {exc}") from exc


def load_harness_settings(path: Path) -> HarnessSettings:
    return parse_harness_settings(load_yaml_config(path))


_lock = Lock()
_current: HarnessSettings | None = None


def get_settings() -> HarnessSettings:
    # Lazily resolved process-wide settings; $NODULE_CONFIG points at a YAML file when set.
    # A logging: section in that file configures the diagnostic channel on first load.
    global _current
    loaded: HarnessSettings | None = None
    with _lock:
        if _current is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            _current = load_harness_settings(Path(env_path)) if env_path else HarnessSettings()
            loaded = _current
        current = _current
    if loaded is not None and "logging" in loaded.model_fields_set:
        configure_diagnostics_from_settings(loaded.logging)
    return current


def configure_settings(settings: HarnessSettings | None) -> None:
    # None drops the override so the next get_settings() call reloads.
    global _current
    with _lock:
        _current = settings
