from __future__ import annotations

import shutil
import signal
import time
from pathlib import Path

import pytest

from nodule.config.settings import HarnessSettings, TimingSettings
from nodule.execution.process import Process
from nodule.kernel.actions import CAPTURE, DRAIN, Ref
from nodule.kernel.errors import (
    ProcessAlreadyRunningError,
    ProcessNotRunningError,
    ProcessStillRunningError,
    UnresolvedSymbolError,
)
from nodule.kernel.node import Node
from nodule.kernel.topology import Topology

ECHO = shutil.which("echo") or "/bin/echo"
SH = shutil.which("sh") or "/bin/sh"
CAT = shutil.which("cat") or "/bin/cat"
SLEEP = shutil.which("sleep") or "/bin/sleep"


def _settings() -> HarnessSettings:
    return HarnessSettings(timing=TimingSettings(line_poll_seconds=0.02, reader_drain_timeout_seconds=2))


class _Named(Node):
    def __init__(self, text: str) -> None:
        super().__init__()
        self.text = text

    def __str__(self) -> str:
        return self.text


def test_echo_output_is_captured_after_wait() -> None:
    # Captured stdout is complete by the time wait() returns.
    process = Process(ECHO, "foobar", settings=_settings())
    process.run()
    assert process.wait() == process.pid
    assert process.output == ["foobar\n"]
    assert process.errors == []
    assert process.done()
    status = process.status()
    assert status.exit_code == 0
    assert status.signal is None


def test_lifecycle_queries_before_run_raise_not_running() -> None:
    process = Process(ECHO, "x", settings=_settings())
    with pytest.raises(ProcessNotRunningError):
        process.done()
    with pytest.raises(ProcessNotRunningError):
        process.status()
    with pytest.raises(ProcessNotRunningError):
        process.stop()
    with pytest.raises(ProcessNotRunningError):
        process.elapsed()
    assert process.is_running() is False


def test_double_run_raises_already_running() -> None:
    process = Process(ECHO, "x", settings=_settings())
    process.run()
    try:
        with pytest.raises(ProcessAlreadyRunningError):
            process.run()
    finally:
        process.wait()


def test_argv_tokens_resolve_against_topology() -> None:
    # Nested sequences resolve recursively and join without separators.
    process = Process(ECHO, ["if=", Ref("infile")], 3, settings=_settings())
    _topology = Topology(infile=_Named("data.txt"), proc=process)
    assert process.resolve_argv() == [ECHO, "if=data.txt", "3"]
    process.run()
    process.wait()
    assert process.output == ["if=data.txt 3\n"]
    assert str(process) == f"{ECHO} if=data.txt 3"


def test_unknown_argv_symbol_raises_and_leaves_process_unstarted() -> None:
    process = Process(ECHO, Ref("nowhere"), settings=_settings())
    _topology = Topology(proc=process)
    with pytest.raises(UnresolvedSymbolError):
        process.run()
    assert process.pid is None
    assert not process.is_running()


def test_unsupported_argv_token_type_is_rejected() -> None:
    process = Process(ECHO, object(), settings=_settings())
    with pytest.raises(TypeError):
        process.resolve_argv()


def test_stdout_and_stderr_flow_through_separate_pipelines() -> None:
    process = Process(SH, "-c", "echo out; echo err 1>&2", settings=_settings())
    process.run()
    process.wait()
    assert process.output == ["out\n"]
    assert process.errors == ["err\n"]
    assert process.slurp() == (["out\n"], ["err\n"])


def test_stdout_can_be_forwarded_to_another_node() -> None:
    sink = Node(reader=CAPTURE)
    process = Process(ECHO, "routed", stdout=Ref("sink"), stderr=DRAIN, settings=_settings())
    _topology = Topology(sink=sink, proc=process)
    process.run()
    process.wait()
    assert sink.output == ["routed\n"]
    assert process.slurp() == (None, None)


def test_stdin_writes_reach_the_child() -> None:
    process = Process(CAT, settings=_settings())
    process.run()
    process.puts("hello")
    process.write(b"bytes\n")
    process.close_stdin()
    assert process.wait(5) == process.pid
    assert process.output == ["hello\n", "bytes\n"]


def test_wait_with_timeout_returns_none_then_force_stop_kills() -> None:
    process = Process(SLEEP, "5", settings=_settings())
    process.run()
    started = time.monotonic()
    assert process.wait(0.1) is None
    assert time.monotonic() - started < 2
    assert process.is_running()
    with pytest.raises(ProcessStillRunningError):
        process.elapsed()
    with pytest.raises(ProcessStillRunningError):
        process.slurp()
    assert process.force_stop() is True or process.wait(2) == process.pid
    assert process.status().signal == signal.SIGKILL
    assert process.elapsed() >= 0


def test_wait_returns_as_soon_as_child_exits() -> None:
    process = Process(SLEEP, "0.2", settings=_settings())
    process.run()
    started = time.monotonic()
    assert process.wait(5) == process.pid
    assert time.monotonic() - started < 4


def test_stop_terminates_a_cooperative_child() -> None:
    process = Process(SLEEP, "5", settings=_settings())
    process.run()
    deadline = time.monotonic() + 2
    while not process.stop() and time.monotonic() < deadline:
        pass
    assert process.done()
    assert process.status().signal == signal.SIGTERM


def test_child_ignoring_sigterm_needs_force_stop() -> None:
    process = Process(SH, "-c", "trap '' TERM; echo ready; while :; do sleep 0.05; done", settings=_settings())
    process.run()
    process.require_read_count(1, max_sleep=5)
    assert process.stop() is False
    assert not process.done()
    deadline = time.monotonic() + 2
    while not process.force_stop() and time.monotonic() < deadline:
        pass
    assert process.done()
    assert process.status().signal == signal.SIGKILL


def test_send_signal_rejects_anything_but_term_and_kill() -> None:
    process = Process(SLEEP, "5", settings=_settings())
    with pytest.raises(ProcessNotRunningError):
        process.send_signal(signal.SIGTERM)
    process.run()
    try:
        with pytest.raises(ValueError):
            process.send_signal(0)
        with pytest.raises(ValueError):
            process.send_signal(-9)
        with pytest.raises(ValueError):
            process.send_signal(signal.SIGINT)
    finally:
        process.force_stop()
        process.wait()


def test_reset_allows_rerun_and_keeps_captured_output() -> None:
    process = Process(ECHO, "again", settings=_settings())
    process.reset()
    process.run()
    process.wait()
    first_pid = process.pid
    process.reset()
    assert process.pid is None
    with pytest.raises(ProcessNotRunningError):
        process.done()
    process.run()
    process.wait()
    assert process.pid is not None
    assert process.output == ["again\n", "again\n"]
    assert first_pid is not None
    process.clear()
    assert process.output == []


def test_reset_refuses_a_running_process() -> None:
    process = Process(SLEEP, "5", settings=_settings())
    process.run()
    try:
        with pytest.raises(ProcessStillRunningError):
            process.reset()
    finally:
        process.force_stop()
        process.wait()


def test_env_and_cwd_reach_the_child(tmp_path: Path) -> None:
    process = Process(SH, "-c", "echo $NODULE_PROBE; pwd", env={"NODULE_PROBE": "xyz"}, cwd=tmp_path, settings=_settings())
    process.run()
    process.wait()
    assert process.output[0] == "xyz\n"
    assert Path(process.output[1].strip()).resolve() == tmp_path.resolve()


def test_to_dict_is_safe_at_every_stage() -> None:
    process = Process(ECHO, "report", settings=_settings())
    before = process.to_dict()
    assert before["pid"] is None
    assert before["elapsed"] is None
    process.run()
    process.wait()
    after = process.to_dict()
    assert after["argv"] == [ECHO, "report"]
    assert after["command"] == f"{ECHO} report"
    assert after["retval"] == 0
    assert after["elapsed"] >= 0
    assert process.describe()["pid"] == process.pid


def test_process_requires_argv() -> None:
    with pytest.raises(ValueError):
        Process()


def test_wait_timeout_bounds_reader_drain() -> None:
    # A background grandchild keeps the pipes open; wait(timeout) must still honour its ceiling.
    settings = HarnessSettings(timing=TimingSettings(line_poll_seconds=0.02, reader_drain_timeout_seconds=3))
    process = Process(SH, "-c", "sleep 3 & exit 0", settings=settings)
    process.run()
    started = time.monotonic()
    assert process.wait(0.5) == process.pid
    assert time.monotonic() - started < 1.5
    assert process.status().exit_code == 0
