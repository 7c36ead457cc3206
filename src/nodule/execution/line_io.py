from __future__ import annotations

import os
import selectors
import threading
from collections.abc import Callable

from nodule.config.settings import HarnessSettings
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.errors import HarnessTimeoutError, NotReadyError, ResourceStateError
from nodule.kernel.node import Node
from nodule.observability.diagnostics import emit_diagnostic

READ_CHUNK_BYTES = 65536


class LineSplitter:
    # Incremental newline splitter; lines keep their trailing b"\n".
    def __init__(self) -> None:
        self._pending = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._pending.extend(data)
        lines: list[bytes] = []
        start = 0
        while True:
            index = self._pending.find(b"\n", start)
            if index < 0:
                break
            lines.append(bytes(self._pending[start : index + 1]))
            start = index + 1
        del self._pending[:start]
        return lines

    def flush(self) -> bytes | None:
        if not self._pending:
            return None
        tail = bytes(self._pending)
        self._pending.clear()
        return tail


class LineIO(Node):
    """Background line reader over one readable stream.

    The stream must expose ``fileno()``. A daemon thread waits for readiness
    (bounded by the poll interval so stop requests are noticed), reads the
    available bytes, and delivers each complete line to the reader pipeline.
    End-of-stream flushes a trailing partial line, closes the stream and
    ends the loop. Lines are decoded with ``encoding`` unless it is None.
    """

    def __init__(
        self,
        stream: object,
        *,
        source: Node | None = None,
        encoding: str | None = "utf-8",
        poll_interval: float | None = None,
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        fileno = getattr(stream, "fileno", None)
        if not callable(fileno):
            raise TypeError(f"LineIO requires an object with fileno(), got {type(stream).__name__}")
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        self._stream = stream
        self._source = source
        self._encoding = encoding
        self._poll_interval = poll_interval
        self._thread: threading.Thread | None = None
        self._started_event = threading.Event()
        self._stop_event = threading.Event()
        self._eof = False
        self.error: BaseException | None = None

    @property
    def stream(self) -> object:
        return self._stream

    @property
    def eof(self) -> bool:
        return self._eof

    @property
    def closed(self) -> bool:
        return bool(getattr(self._stream, "closed", False))

    @property
    def poll_interval(self) -> float:
        if self._poll_interval is not None:
            return self._poll_interval
        return self.settings.timing.line_poll_seconds

    def run(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            raise ResourceStateError("line reader is already running")
        if self.closed:
            raise NotReadyError("cannot read lines from a closed stream")
        super().run()
        self._started_event.clear()
        self._stop_event.clear()
        self.error = None
        self._thread = threading.Thread(
            target=self._loop,
            name=f"nodule-line-io-{self.name or id(self)}",
            daemon=True,
        )
        self._thread.start()
        timeout = self.settings.timing.line_start_timeout_seconds
        started = wait_with_backoff(
            timeout,
            self._started_event.is_set,
            interval=self.settings.timing.backoff_initial_interval_seconds,
        )
        if started is TIMED_OUT:
            raise HarnessTimeoutError(f"line reader thread did not start within {timeout}s")

    def stop(self) -> bool:
        self._stop_event.set()
        thread = self._thread
        # A reader callback may stop its own line reader; joining itself would deadlock.
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._running = False
        return True

    def force_stop(self) -> bool:
        return self.stop()

    def done(self) -> bool:
        thread = self._thread
        return thread is None or not thread.is_alive()

    def is_running(self) -> bool:
        return not self.done()

    def wait(self, timeout: float | None = None) -> object:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        if not self.done():
            return None
        self._running = False
        return True

    def reset(self) -> None:
        if not self.done():
            raise ResourceStateError("cannot reset a running line reader")
        self._thread = None
        self._running = False

    def describe(self) -> dict[str, object]:
        details = super().describe()
        details.update({"eof": self._eof, "closed": self.closed, "error": repr(self.error) if self.error else None})
        return details

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if callable(close):
            close()

    # io helpers

    def print(self, *parts: object) -> None:
        self.write("".join(str(part) for part in parts))

    def puts(self, *lines: object) -> None:
        for line in lines or ("",):
            text = str(line)
            self.write(text if text.endswith("\n") else text + "\n")

    def write(self, data: str | bytes) -> int:
        payload = data.encode(self._encoding or "utf-8") if isinstance(data, str) else data
        return _write_all(self._stream, payload)

    # background loop

    def _loop(self) -> None:
        splitter = LineSplitter()
        self._started_event.set()
        try:
            fd = self._stream.fileno()  # type: ignore[attr-defined]
            with selectors.PollSelector() as selector:
                selector.register(fd, selectors.EVENT_READ)
                while not self._stop_event.is_set():
                    ready = selector.select(self.poll_interval)
                    if not ready or self._stop_event.is_set():
                        continue
                    chunk = os.read(fd, READ_CHUNK_BYTES)
                    if not chunk:
                        selector.unregister(fd)
                        tail = splitter.flush()
                        if tail is not None:
                            self._deliver(tail)
                        self._eof = True
                        self.close()
                        emit_diagnostic(level="debug", message="line_io.eof", fields={"node": self.name})
                        break
                    for line in splitter.feed(chunk):
                        self._deliver(line)
        except Exception as exc:
            self.error = exc
            emit_diagnostic(
                level="error",
                message="line_io.loop_failed",
                fields={"node": self.name, "error": repr(exc)},
            )

    def _deliver(self, raw: bytes) -> None:
        item: object = raw if self._encoding is None else raw.decode(self._encoding, errors="replace")
        self.run_readers(item, self._source or self)


def _write_all(stream: object, payload: bytes) -> int:
    # Raw pipe ends may accept partial writes.
    write: Callable[[bytes], int | None] = getattr(stream, "write")
    view = memoryview(payload)
    total = 0
    while total < len(payload):
        written = write(view[total:])
        if written is None:
            raise NotReadyError("stream would block on write")
        total += written
    flush = getattr(stream, "flush", None)
    if callable(flush):
        flush()
    return total
