from .logging import FanoutLogSink, JsonlLogSink, LogSink, MemoryLogSink, StderrLogSink, StdoutLogSink

__all__ = [
    "FanoutLogSink",
    "JsonlLogSink",
    "LogSink",
    "MemoryLogSink",
    "StderrLogSink",
    "StdoutLogSink",
]
