from __future__ import annotations

import io
import os
import shutil
import signal
import subprocess
import sys
from pathlib import Path

import pytest
from rich.console import Console as RichConsole

from nodule.adapters.console import Console
from nodule.adapters.tempfile import TempFile
from nodule.config.settings import HarnessSettings, TimingSettings
from nodule.execution.process import Process
from nodule.kernel.actions import CAPTURE, DRAIN, Ref
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.topology import Topology
from nodule.observability import MemoryLogSink, StderrLogSink, configure_diagnostics

ECHO = shutil.which("echo") or "/bin/echo"
DD = shutil.which("dd") or "/bin/dd"
CP = shutil.which("cp") or "/bin/cp"
SH = shutil.which("sh") or "/bin/sh"
SLEEP = shutil.which("sleep") or "/bin/sleep"


def _settings() -> HarnessSettings:
    return HarnessSettings(
        timing=TimingSettings(
            line_poll_seconds=0.02,
            reader_drain_timeout_seconds=2,
            topology_stop_recheck_seconds=0.3,
        )
    )


@pytest.fixture
def diagnostics():
    sink = MemoryLogSink()
    configure_diagnostics(sink, level="debug")
    yield sink
    configure_diagnostics(StderrLogSink(), level="warning")


def test_echo_topology_captures_output() -> None:
    topology = Topology(echo=Process(ECHO, "foobar", settings=_settings()), settings=_settings())
    topology.start_all()
    assert topology.wait("echo") == topology["echo"].pid
    assert topology["echo"].output == ["foobar\n"]
    topology.stop_all()


def test_serial_dd_then_cp_produces_equal_sized_files(tmp_path: Path) -> None:
    # Entries run in insertion order; cp only starts once dd has exited.
    settings = _settings()
    topology = Topology(
        {
            "file_a": TempFile(dir=tmp_path, suffix=".bin"),
            "file_b": TempFile(dir=tmp_path, suffix=".bin"),
            "dd": Process(
                DD, "if=/dev/urandom", ["of=", Ref("file_a")], "bs=1024", "count=4",
                stdout=DRAIN, stderr=DRAIN, settings=settings,
            ),
            "cp": Process(CP, Ref("file_a"), Ref("file_b"), settings=settings),
        },
        settings=settings,
    )
    topology.run_serially()
    file_a = topology["file_a"].path
    file_b = topology["file_b"].path
    assert file_a.stat().st_size == 4096
    assert file_b.stat().st_size == 4096
    assert topology["dd"].status().exit_code == 0
    assert topology["cp"].status().exit_code == 0
    topology.cleanup()
    assert not file_a.exists()
    assert not file_b.exists()


def test_stop_escalates_for_process_ignoring_sigterm(diagnostics: MemoryLogSink) -> None:
    settings = _settings()
    stubborn = Process(
        SH, "-c", "trap '' TERM; echo ready; while :; do sleep 0.05; done", settings=settings
    )
    topology = Topology(stubborn=stubborn, settings=settings)
    topology.start_all()
    stubborn.require_read_count(1, max_sleep=5)
    topology.stop("stubborn")
    assert stubborn.done()
    assert stubborn.status().signaled
    assert "topology.stop_escalated" in diagnostics.names()
    assert "topology.stuck_resource" not in diagnostics.names()


def test_console_shows_process_lines_with_name_prefix() -> None:
    buffer = io.StringIO()
    console = Console(console=RichConsole(file=buffer, force_terminal=False, width=200, highlight=False))
    settings = _settings()
    greeter = Process(ECHO, "hello", stdout=[Ref("console"), CAPTURE], settings=settings)
    topology = Topology(greeter=greeter, console=console, settings=settings)
    topology.start_all()
    greeter.wait()
    assert buffer.getvalue() == "[greeter]: hello\n"
    assert greeter.output == ["hello\n"]
    topology.stop_all()


_EXIT_GUARD_SCRIPT = """
import sys
from nodule.execution.process import Process
from nodule.kernel.topology import Topology

topology = Topology(a=Process(sys.argv[1], "30"), b=Process(sys.argv[1], "30"))
topology.start_all_but("b")
topology.start_all()
print(topology["a"].pid, topology["b"].pid, flush=True)
"""


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_children_are_stopped_when_the_interpreter_exits() -> None:
    # A node left out of start_all_but() and started later is still torn down at exit.
    src = Path(__file__).resolve().parents[3] / "src"
    env = {**os.environ, "PYTHONPATH": os.pathsep.join(filter(None, [str(src), os.environ.get("PYTHONPATH")]))}
    result = subprocess.run(
        [sys.executable, "-c", _EXIT_GUARD_SCRIPT, SLEEP],
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
    )
    assert result.returncode == 0, result.stderr
    pids = [int(token) for token in result.stdout.split()]
    assert len(pids) == 2
    try:
        assert wait_with_backoff(5, lambda: not any(_alive(pid) for pid in pids)) is not TIMED_OUT
    finally:
        for pid in pids:
            if _alive(pid):
                os.kill(pid, signal.SIGKILL)
