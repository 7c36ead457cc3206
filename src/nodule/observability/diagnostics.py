from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING

from nodule.observability.adapters.logging import FanoutLogSink, JsonlLogSink, StderrLogSink, StdoutLogSink
from nodule.observability.domain.logging import LogMessage, level_rank

if TYPE_CHECKING:
    from nodule.config.settings import LoggingSettings

# Process-wide diagnostic channel: background-loop failures and lifecycle events land here.
_lock = Lock()
_sink: object | None = StderrLogSink()
_min_level = "warning"
_enabled = True


def configure_diagnostics(sink: object | None, *, level: str = "warning", enabled: bool = True) -> None:
    global _sink, _min_level, _enabled
    level_rank(level)
    with _lock:
        previous = _sink
        _sink = sink
        _min_level = level
        _enabled = enabled
    if previous is not None and previous is not sink:
        close = getattr(previous, "close", None)
        if callable(close):
            close()


def configure_diagnostics_from_settings(settings: LoggingSettings) -> None:
    sinks: list[object] = []
    for exporter in settings.exporters:
        if exporter.kind == "stdout":
            sinks.append(StdoutLogSink())
        elif exporter.kind == "stderr":
            sinks.append(StderrLogSink())
        elif exporter.kind == "jsonl" and exporter.path:
            sinks.append(JsonlLogSink(Path(exporter.path)))
    sink: object | None
    if not sinks:
        sink = None
    elif len(sinks) == 1:
        sink = sinks[0]
    else:
        sink = FanoutLogSink(sinks=sinks)
    configure_diagnostics(sink, level=settings.level, enabled=settings.enabled)


def diagnostic_sink() -> object | None:
    with _lock:
        return _sink


def emit_diagnostic(*, level: str, message: str, fields: dict[str, object] | None = None) -> None:
    # Diagnostic emission must never break the caller's path.
    with _lock:
        sink = _sink
        enabled = _enabled
        min_level = _min_level
    if not enabled or sink is None:
        return
    if level_rank(level) < level_rank(min_level):
        return
    emit = getattr(sink, "emit", None)
    if not callable(emit):
        return
    try:
        emit(LogMessage(level=level, message=message, fields=dict(fields or {})))
    except Exception:
        return
