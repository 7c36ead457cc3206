from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Protocol, TextIO

from nodule.observability.domain.logging import LogMessage


class LogSink(Protocol):
    def emit(self, message: LogMessage) -> None: ...

    def close(self) -> None: ...


class StdoutLogSink:
    # Minimal structured log sink writing JSON lines to stdout.
    def emit(self, message: LogMessage) -> None:
        print(json.dumps(_log_to_dict(message), separators=(",", ":"), ensure_ascii=False, default=str))

    def close(self) -> None:
        return None


class StderrLogSink:
    # Default diagnostic sink; stderr keeps harness noise out of captured child stdout.
    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self._lock = Lock()

    def emit(self, message: LogMessage) -> None:
        stream = self._stream or sys.stderr
        payload = json.dumps(_log_to_dict(message), separators=(",", ":"), ensure_ascii=False, default=str)
        with self._lock:
            stream.write(payload + "\n")
            stream.flush()

    def close(self) -> None:
        return None


class JsonlLogSink:
    # File-backed structured log sink for lifecycle/process diagnostics.
    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._path.open("a", encoding="utf-8")
        self._lock = Lock()

    def emit(self, message: LogMessage) -> None:
        payload = json.dumps(_log_to_dict(message), separators=(",", ":"), ensure_ascii=False, default=str)
        with self._lock:
            self._file.write(payload + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


class MemoryLogSink:
    # Keeps emitted records in memory; used by tests asserting on diagnostics.
    def __init__(self) -> None:
        self.messages: list[LogMessage] = []
        self._lock = Lock()

    def emit(self, message: LogMessage) -> None:
        with self._lock:
            self.messages.append(message)

    def close(self) -> None:
        return None

    def names(self) -> list[str]:
        with self._lock:
            return [item.message for item in self.messages]


@dataclass(slots=True)
class FanoutLogSink:
    sinks: list[object]

    def emit(self, message: LogMessage) -> None:
        for sink in list(self.sinks):
            emit = getattr(sink, "emit", None)
            if not callable(emit):
                continue
            try:
                emit(message)
            except Exception:
                continue

    def close(self) -> None:
        for sink in list(self.sinks):
            close = getattr(sink, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception:
                continue


def _log_to_dict(message: LogMessage) -> dict[str, object]:
    return {
        "level": message.level,
        "message": message.message,
        "timestamp": message.timestamp.isoformat().replace("+00:00", "Z"),
        "fields": message.fields,
    }
