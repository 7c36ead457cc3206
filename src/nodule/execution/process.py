from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass

from nodule.config.settings import HarnessSettings
from nodule.execution.stdio import Stdio
from nodule.kernel.actions import CAPTURE, Ref
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.errors import (
    ProcessAlreadyRunningError,
    ProcessNotRunningError,
    ProcessStillRunningError,
)
from nodule.kernel.node import Node
from nodule.kernel.topology import Topology
from nodule.observability.diagnostics import emit_diagnostic

# Only graceful termination and kill are ever sent to a child.
ALLOWED_SIGNALS = frozenset({signal.SIGTERM, signal.SIGKILL})


@dataclass(frozen=True, slots=True)
class ProcessStatus:
    pid: int
    returncode: int

    @property
    def exited(self) -> bool:
        return self.returncode >= 0

    @property
    def signaled(self) -> bool:
        return self.returncode < 0

    @property
    def exit_code(self) -> int | None:
        return self.returncode if self.returncode >= 0 else None

    @property
    def signal(self) -> int | None:
        return -self.returncode if self.returncode < 0 else None


class Process(Node):
    """Supervisor for one spawned child process.

    argv tokens are resolved against the topology when the process is run:
    plain strings pass through, ``Ref(name)`` becomes ``str(topology[name])``
    and nested lists/tuples are resolved recursively then joined with no
    separator, so ``["if=", Ref("infile")]`` yields ``"if=<path>"``. The first
    resolved token is the executable; no shell is involved.

    stdout lines flow through this node's own reader pipeline, stderr lines
    through ``stderr_node``. Both default to capture, exposed as ``output``
    and ``errors``.
    """

    def __init__(
        self,
        *argv: object,
        topology: Topology | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        stdout: object = CAPTURE,
        stderr: object = CAPTURE,
        encoding: str | None = "utf-8",
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        if not argv:
            raise ValueError("Process requires at least one argv token")
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        self.add_readers(stdout)
        self.stderr_node = Node(readers=stderr, settings=settings)
        self._argv_tokens = list(argv)
        self._env = dict(env or {})
        self._cwd = cwd
        self._encoding = encoding
        self._reap_lock = threading.Lock()
        self._resolved_argv: list[str] | None = None
        self._popen: subprocess.Popen[bytes] | None = None
        self._stdio: Stdio | None = None
        self._status: ProcessStatus | None = None
        self._started: float | None = None
        self._ended: float | None = None
        self._started_mono: float | None = None
        self._ended_mono: float | None = None
        if topology is not None:
            self.join_topology(topology)

    def join_topology(self, topology: Topology) -> None:
        super().join_topology(topology)
        self.stderr_node.join_topology(topology)
        if self._stdio is not None:
            self._stdio.join_topology(topology)

    # argv

    def resolve_argv(self) -> list[str]:
        return [self._convert(token) for token in self._argv_tokens]

    def _convert(self, token: object) -> str:
        if isinstance(token, str):
            return token
        if isinstance(token, Ref):
            return str(self.resolve(token.name))
        if isinstance(token, (list, tuple)):
            return "".join(self._convert(item) for item in token)
        if isinstance(token, os.PathLike):
            return os.fspath(token)
        if isinstance(token, (int, float)) and not isinstance(token, bool):
            return str(token)
        raise TypeError(f"unsupported argv token {token!r} ({type(token).__name__})")

    @property
    def argv(self) -> list[str]:
        if self._resolved_argv is not None:
            return list(self._resolved_argv)
        return [str(token) for token in self._argv_tokens]

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    @property
    def cwd(self) -> str | os.PathLike[str] | None:
        return self._cwd

    @property
    def pid(self) -> int | None:
        return None if self._popen is None else self._popen.pid

    @property
    def started(self) -> float | None:
        return self._started

    @property
    def ended(self) -> float | None:
        return self._ended

    @property
    def stdio(self) -> Stdio | None:
        return self._stdio

    @property
    def errors(self) -> list[object]:
        return self.stderr_node.output

    # lifecycle

    def run(self) -> None:
        if self._popen is not None:
            raise ProcessAlreadyRunningError(f"process {self.pid} was already started; reset() it first")
        super().run()
        try:
            argv = self.resolve_argv()
            self._spawn(argv)
        except BaseException:
            self._running = False
            raise

    def _spawn(self, argv: list[str]) -> None:
        stdin_r, stdin_w = os.pipe()
        stdout_r, stdout_w = os.pipe()
        stderr_r, stderr_w = os.pipe()
        child_ends = (stdin_r, stdout_w, stderr_w)
        try:
            popen = subprocess.Popen(
                argv,
                stdin=stdin_r,
                stdout=stdout_w,
                stderr=stderr_w,
                env={**os.environ, **self._env},
                cwd=self._cwd,
                close_fds=True,
            )
        except BaseException:
            for fd in (stdin_w, stdout_r, stderr_r):
                os.close(fd)
            raise
        finally:
            for fd in child_ends:
                os.close(fd)

        self._popen = popen
        self._resolved_argv = argv
        self._status = None
        self._started = time.time()
        self._started_mono = time.monotonic()
        self._ended = None
        self._ended_mono = None
        emit_diagnostic(
            level="debug",
            message="process.spawned",
            fields={"pid": popen.pid, "argv": argv},
        )

        self._stdio = Stdio(
            stdin=os.fdopen(stdin_w, "wb", buffering=0),
            stdout=os.fdopen(stdout_r, "rb", buffering=0),
            stderr=os.fdopen(stderr_r, "rb", buffering=0),
            stdout_readers=[self.run_readers],
            stderr_readers=[self.stderr_node.run_readers],
            source=self,
            encoding=self._encoding,
            settings=self._settings,
        )
        topology = self.topology
        if topology is not None:
            self._stdio.join_topology(topology)
        self._stdio.run()

    def _require_started(self, action: str) -> subprocess.Popen[bytes]:
        if self._popen is None:
            raise ProcessNotRunningError(f"called {action} before run()")
        return self._popen

    def send_signal(self, signum: int) -> None:
        popen = self._require_started("send_signal()")
        if signum <= 0:
            raise ValueError("non-positive signals are unsupported")
        if signum not in ALLOWED_SIGNALS:
            raise ValueError(f"only SIGTERM (15) and SIGKILL (9) may be sent, got {signum}")
        # Never signal a reaped pid; the number may already belong to someone else.
        if self._status is not None:
            return
        emit_diagnostic(level="debug", message="process.signal", fields={"pid": popen.pid, "signal": int(signum)})
        popen.send_signal(signum)

    def _reap(self, *, block: bool) -> bool:
        popen = self._require_started("reap")
        with self._reap_lock:
            if self._status is not None:
                return True
            returncode = popen.wait() if block else popen.poll()
            if returncode is None:
                return False
            self._ended = time.time()
            self._ended_mono = time.monotonic()
            self._status = ProcessStatus(pid=popen.pid, returncode=returncode)
        self._running = False
        emit_diagnostic(
            level="debug",
            message="process.reaped",
            fields={"pid": popen.pid, "returncode": returncode},
        )
        return True

    def done(self) -> bool:
        self._require_started("done()")
        return self._reap(block=False)

    def status(self) -> ProcessStatus | None:
        self._require_started("status()")
        self._reap(block=False)
        return self._status

    def is_running(self) -> bool:
        return self._popen is not None and not self.done()

    def wait(self, timeout: float | None = None) -> int | None:
        popen = self._require_started("wait()")
        deadline: float | None = None
        if timeout is None or timeout <= 0:
            self._reap(block=True)
        else:
            deadline = time.monotonic() + timeout
            result = wait_with_backoff(
                timeout,
                lambda: self._reap(block=False),
                interval=self.settings.timing.backoff_initial_interval_seconds,
            )
            if result is TIMED_OUT:
                return None
        self._drain_readers(deadline)
        return popen.pid

    def _drain_readers(self, deadline: float | None = None) -> None:
        # Bounded: a grandchild holding the pipe open must not hang the caller.
        # A caller deadline caps the drain so wait(timeout) never overshoots it.
        if self._stdio is None:
            return
        timeout = self.settings.timing.reader_drain_timeout_seconds
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - time.monotonic()))
        if self._stdio.wait(timeout) is None:
            emit_diagnostic(
                level="warning",
                message="process.drain_timeout",
                fields={"pid": self.pid, "timeout_seconds": timeout},
            )

    def stop(self) -> bool:
        self._require_started("stop()")
        if self.done():
            return True
        self.send_signal(signal.SIGTERM)
        time.sleep(self.settings.timing.process_stop_grace_seconds)
        return self._reap(block=False)

    def force_stop(self) -> bool:
        self._require_started("force_stop()")
        if self.done():
            return True
        self.send_signal(signal.SIGKILL)
        time.sleep(self.settings.timing.process_kill_grace_seconds)
        return self._reap(block=False)

    def elapsed(self) -> float:
        if self._started_mono is None:
            raise ProcessNotRunningError("called elapsed() before run()")
        if self._ended_mono is None:
            raise ProcessStillRunningError("called elapsed() before the process ended")
        return self._ended_mono - self._started_mono

    def slurp(self) -> tuple[list[object] | None, list[object] | None]:
        # Captured (stdout, stderr) lines; None for a stream that is not captured.
        if not self.done():
            raise ProcessStillRunningError("cannot slurp() until the process is done")
        self._drain_readers()
        stdout = self.output if self.capturing else None
        stderr = self.errors if self.stderr_node.capturing else None
        return stdout, stderr

    def reset(self) -> None:
        # Captured output survives a reset; clear() drops it.
        if self._popen is None:
            return
        if not self.done():
            raise ProcessStillRunningError("cannot reset() a running process")
        if self._stdio is not None:
            self._stdio.stop()
            self._stdio.close()
        self._stdio = None
        self._popen = None
        self._status = None
        self._resolved_argv = None
        self._started = None
        self._ended = None
        self._started_mono = None
        self._ended_mono = None
        self._running = False

    def clear(self) -> None:
        super().clear()
        self.stderr_node.clear()

    # stdin

    def _require_stdio(self) -> Stdio:
        self._require_started("stdin write")
        assert self._stdio is not None
        return self._stdio

    def write(self, data: str | bytes) -> int:
        return self._require_stdio().write(data)

    def print(self, *parts: object) -> int:
        return self._require_stdio().print(*parts)

    def puts(self, *lines: object) -> int:
        return self._require_stdio().puts(*lines)

    def close_stdin(self) -> None:
        stdin = self._require_stdio().stdin
        if stdin is not None and not stdin.closed:  # type: ignore[attr-defined]
            stdin.close()  # type: ignore[attr-defined]

    # reporting

    def to_dict(self) -> dict[str, object]:
        # Safe at any point in the lifecycle.
        elapsed: float | None = None
        if self._started_mono is not None:
            end = self._ended_mono if self._ended_mono is not None else time.monotonic()
            elapsed = end - self._started_mono
        return {
            "argv": self.argv,
            "command": str(self),
            "pid": self.pid,
            "started": self._started,
            "ended": self._ended,
            "elapsed": elapsed,
            "retval": None if self._status is None else self._status.exit_code,
        }

    def describe(self) -> dict[str, object]:
        details = super().describe()
        details.update(self.to_dict())
        return details

    def __str__(self) -> str:
        return " ".join(self.argv)

    def __repr__(self) -> str:
        return f"Process({self.to_dict()!r})"
