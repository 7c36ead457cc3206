from .adapters import FanoutLogSink, JsonlLogSink, MemoryLogSink, StderrLogSink, StdoutLogSink
from .diagnostics import (
    configure_diagnostics,
    configure_diagnostics_from_settings,
    diagnostic_sink,
    emit_diagnostic,
)
from .domain import LogMessage

__all__ = [
    "FanoutLogSink",
    "JsonlLogSink",
    "LogMessage",
    "MemoryLogSink",
    "StderrLogSink",
    "StdoutLogSink",
    "configure_diagnostics",
    "configure_diagnostics_from_settings",
    "diagnostic_sink",
    "emit_diagnostic",
]
