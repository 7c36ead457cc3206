from __future__ import annotations

import os
import time

from nodule.config.settings import HarnessSettings
from nodule.execution.line_io import READ_CHUNK_BYTES, LineIO, LineSplitter, _write_all
from nodule.kernel.errors import NotReadyError, ResourceStateError
from nodule.kernel.node import Node
from nodule.kernel.topology import Topology
from nodule.platform.readiness import wait_ready


class Stdio(Node):
    """Input/output stream triple of a child-process-like object.

    stdout and stderr are each driven by a LineIO whose items are tagged with
    ``source`` (the Stdio itself by default). stdin is only ever written.
    """

    def __init__(
        self,
        *,
        stdin: object = None,
        stdout: object = None,
        stderr: object = None,
        stdout_readers: object = None,
        stderr_readers: object = None,
        source: Node | None = None,
        encoding: str | None = "utf-8",
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self._encoding = encoding
        origin = source or self
        self._stdout_reader = (
            LineIO(stdout, readers=stdout_readers, source=origin, encoding=encoding, settings=settings)
            if stdout is not None
            else None
        )
        self._stderr_reader = (
            LineIO(stderr, readers=stderr_readers, source=origin, encoding=encoding, settings=settings)
            if stderr is not None
            else None
        )

    def join_topology(self, topology: Topology) -> None:
        for reader in self._line_readers():
            reader.join_topology(topology)
        super().join_topology(topology)

    @property
    def stdout_reader(self) -> LineIO | None:
        return self._stdout_reader

    @property
    def stderr_reader(self) -> LineIO | None:
        return self._stderr_reader

    def _line_readers(self) -> list[LineIO]:
        return [reader for reader in (self._stdout_reader, self._stderr_reader) if reader is not None]

    # lifecycle

    def run(self) -> None:
        if self.readers_running():
            return
        super().run()
        for reader in self._line_readers():
            if not reader.closed:
                reader.run()

    def stop(self) -> bool:
        for reader in self._line_readers():
            reader.stop()
        self._running = False
        return True

    def force_stop(self) -> bool:
        return self.stop()

    def readers_running(self) -> bool:
        return any(reader.is_running() for reader in self._line_readers())

    def done(self) -> bool:
        # Readers have finished and every stream has been closed.
        if self.readers_running():
            return False
        return all(stream is None or _closed(stream) for stream in (self.stdin, self.stdout, self.stderr))

    def is_running(self) -> bool:
        return self.readers_running()

    def wait(self, timeout: float | None = None) -> object:
        # Waits for both line readers to reach end-of-stream within one shared deadline.
        deadline = None if timeout is None else time.monotonic() + timeout
        for reader in self._line_readers():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if reader.wait(remaining) is None:
                return None
        self._running = False
        return True

    def describe(self) -> dict[str, object]:
        details = super().describe()
        details["streams"] = {
            "stdin": _describe_stream(self.stdin),
            "stdout": _describe_stream(self.stdout),
            "stderr": _describe_stream(self.stderr),
        }
        return details

    # readiness

    def readable(self, timeout: float = 0) -> bool:
        return _ready([self.stdout, self.stderr], [], timeout)

    def stdout_ready(self, timeout: float = 0) -> bool:
        return _ready([self.stdout], [], timeout)

    def stderr_ready(self, timeout: float = 0) -> bool:
        return _ready([self.stderr], [], timeout)

    def writable(self, timeout: float = 0) -> bool:
        return _ready([], [self.stdin], timeout)

    def ready(self, timeout: float = 0) -> bool:
        return _ready([self.stdout, self.stderr], [self.stdin], timeout)

    # stdin

    def write(self, data: str | bytes) -> int:
        if not self.writable():
            raise NotReadyError("stdin is not ready for writing")
        payload = data.encode(self._encoding or "utf-8") if isinstance(data, str) else data
        return _write_all(self.stdin, payload)

    def print(self, *parts: object) -> int:
        return self.write("".join(str(part) for part in parts))

    def puts(self, *lines: object) -> int:
        total = 0
        for line in lines or ("",):
            text = str(line)
            total += self.write(text if text.endswith("\n") else text + "\n")
        return total

    # synchronous reads

    def read_stdout(self) -> list[object]:
        return self._read_lines(self.stdout, "stdout")

    def read_stderr(self) -> list[object]:
        return self._read_lines(self.stderr, "stderr")

    def _read_lines(self, stream: object, label: str) -> list[object]:
        # Reads whatever is immediately available; never blocks on a quiet stream.
        if self.readers_running():
            raise ResourceStateError(f"cannot read {label} synchronously while line readers are running")
        if stream is None or _closed(stream):
            return []
        splitter = LineSplitter()
        raw: list[bytes] = []
        fd = stream.fileno()  # type: ignore[attr-defined]
        while _ready([stream], [], 0):
            chunk = os.read(fd, READ_CHUNK_BYTES)
            if not chunk:
                break
            raw.extend(splitter.feed(chunk))
        tail = splitter.flush()
        if tail is not None:
            raw.append(tail)
        if self._encoding is None:
            return list(raw)
        return [line.decode(self._encoding, errors="replace") for line in raw]

    def close(self) -> None:
        for stream in (self.stdin, self.stdout, self.stderr):
            if stream is not None and not _closed(stream):
                stream.close()  # type: ignore[attr-defined]


def _closed(stream: object) -> bool:
    return bool(getattr(stream, "closed", False))


def _ready(readable: list[object], writable: list[object], timeout: float) -> bool:
    # Closed or absent streams are filtered out before waiting.
    rd = [stream for stream in readable if stream is not None and not _closed(stream)]
    wt = [stream for stream in writable if stream is not None and not _closed(stream)]
    if not rd and not wt:
        return False
    ready_rd, ready_wt = wait_ready(rd, wt, timeout)
    return bool(ready_rd or ready_wt)


def _describe_stream(stream: object) -> str | None:
    if stream is None:
        return None
    return "closed" if _closed(stream) else "open"
