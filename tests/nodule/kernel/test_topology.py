from __future__ import annotations

import atexit

import pytest

from nodule.config.settings import HarnessSettings, TimingSettings
from nodule.kernel.errors import (
    StuckResourceError,
    TopologyIntegrationRequiredError,
    TopologyStillRunningError,
    UnresolvedSymbolError,
)
from nodule.kernel.node import Node
from nodule.kernel.topology import Topology


def _fast_settings() -> HarnessSettings:
    return HarnessSettings(timing=TimingSettings(topology_stop_recheck_seconds=0.01))


class _Recorder(Node):
    # Records lifecycle calls into a shared journal.
    def __init__(self, label: str, journal: list[str], *, waits: bool = True) -> None:
        super().__init__()
        self.label = label
        self.journal = journal
        self.waits = waits
        self.reset_calls = 0

    @property
    def supports_wait(self) -> bool:  # type: ignore[override]
        return self.waits

    def run(self) -> None:
        super().run()
        self.journal.append(f"run:{self.label}")

    def stop(self) -> bool:
        self.journal.append(f"stop:{self.label}")
        return super().stop()

    def wait(self, timeout: float | None = None) -> object:
        self.journal.append(f"wait:{self.label}")
        self._running = False
        return True

    def reset(self) -> None:
        self.reset_calls += 1


class _IgnoresTerm(Node):
    # Graceful stop never converges; force_stop does.
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []

    def stop(self) -> bool:
        self.calls.append("stop")
        return False

    def force_stop(self) -> bool:
        self.calls.append("force_stop")
        self._running = False
        return True

    def wait(self, timeout: float | None = None) -> object:
        self.calls.append("wait")
        return None


class _Stuck(_IgnoresTerm):
    def force_stop(self) -> bool:
        self.calls.append("force_stop")
        return False


def test_topology_injects_itself_and_keeps_insertion_order() -> None:
    first, second = Node(), Node()
    topology = Topology({"first": first}, second=second)
    assert topology.keys() == ["first", "second"]
    assert list(topology) == ["first", "second"]
    assert len(topology) == 2
    assert first.topology is topology
    assert topology.key_of(second) == "second"
    assert topology.key_of(Node()) is None
    assert topology.to_dict() == {"first": first, "second": second}
    assert topology.items() == [("first", first), ("second", second)]


def test_topology_lookup_semantics() -> None:
    node = Node()
    topology = Topology(node=node)
    assert "node" in topology
    assert "other" not in topology
    assert topology.get("other") is None
    with pytest.raises(UnresolvedSymbolError):
        topology["other"]
    with pytest.raises(KeyError):
        topology["other"]


def test_topology_rejects_values_that_cannot_join() -> None:
    with pytest.raises(TopologyIntegrationRequiredError):
        Topology(bad=object())  # type: ignore[arg-type]


def test_start_all_is_idempotent_and_tracks_started_names() -> None:
    journal: list[str] = []
    topology = Topology(a=_Recorder("a", journal), b=_Recorder("b", journal))
    topology.start_all()
    topology.start_all()
    assert journal == ["run:a", "run:b"]
    assert topology.started("a") and topology.started("b")


def test_start_all_but_skips_excluded_names() -> None:
    journal: list[str] = []
    topology = Topology(a=_Recorder("a", journal), b=_Recorder("b", journal), c=_Recorder("c", journal))
    topology.start_all_but("b", ["c"])
    assert journal == ["run:a"]
    assert not topology.started("b")


def test_run_serially_waits_or_stops_each_node_in_order() -> None:
    # Waitable nodes are waited on; the rest are stopped before the next one runs.
    journal: list[str] = []
    topology = Topology(
        first=_Recorder("first", journal),
        watcher=_Recorder("watcher", journal, waits=False),
        last=_Recorder("last", journal),
    )
    topology.run_serially()
    assert journal == [
        "run:first",
        "wait:first",
        "run:watcher",
        "stop:watcher",
        "run:last",
        "wait:last",
    ]


def test_stop_escalates_to_force_stop() -> None:
    node = _IgnoresTerm()
    topology = Topology(node=node, settings=_fast_settings())
    topology.start("node")
    topology.stop("node")
    assert node.calls == ["stop", "wait", "force_stop"]
    assert node.done()
    assert not topology.started("node")


def test_stop_raises_stuck_resource_with_lifecycle_details() -> None:
    node = _Stuck()
    topology = Topology(stuck=node, settings=_fast_settings())
    topology.start("stuck")
    with pytest.raises(StuckResourceError) as excinfo:
        topology.stop("stuck")
    assert node.calls == ["stop", "wait", "force_stop", "wait"]
    assert excinfo.value.name == "stuck"
    assert excinfo.value.details["class"] == "_Stuck"
    assert excinfo.value.details["name"] == "stuck"


def test_stop_all_only_touches_running_nodes() -> None:
    journal: list[str] = []
    topology = Topology(a=_Recorder("a", journal), b=_Recorder("b", journal))
    topology.start("a")
    topology.stop_all()
    assert journal == ["run:a", "stop:a"]
    assert not topology.started("a")


def test_stop_all_but_leaves_excluded_running() -> None:
    journal: list[str] = []
    a, b = _Recorder("a", journal), _Recorder("b", journal)
    topology = Topology(a=a, b=b)
    topology.start_all()
    topology.stop_all_but("b")
    assert not a.is_running()
    assert b.is_running()
    topology.cleanup()
    assert not b.is_running()


def test_reset_all_requires_everything_stopped() -> None:
    journal: list[str] = []
    a, b = _Recorder("a", journal), _Recorder("b", journal)
    topology = Topology(a=a, b=b)
    topology.start_all()
    with pytest.raises(TopologyStillRunningError) as excinfo:
        topology.reset_all()
    assert excinfo.value.names == ["a", "b"]
    topology.stop_all()
    topology.reset_all()
    assert a.reset_calls == 1 and b.reset_calls == 1


def test_wait_and_wait_all_delegate_to_nodes() -> None:
    journal: list[str] = []
    topology = Topology(a=_Recorder("a", journal), b=_Recorder("b", journal, waits=False))
    assert topology.wait("a", 1) is True
    topology.wait_all()
    assert journal == ["wait:a", "wait:a"]


def test_start_all_is_idempotent_across_start_stop_cycles() -> None:
    journal: list[str] = []
    topology = Topology(a=_Recorder("a", journal), b=_Recorder("b", journal))
    topology.start_all()
    topology.start_all()
    topology.stop_all()
    topology.start_all()
    topology.stop_all()
    assert journal == ["run:a", "run:b", "stop:a", "stop:b", "run:a", "run:b", "stop:a", "stop:b"]


def test_exit_guard_is_registered_once_and_stops_every_running_node(monkeypatch: pytest.MonkeyPatch) -> None:
    # Nodes excluded from an earlier start_all_but() are still stopped at exit once started.
    guards: list[object] = []
    monkeypatch.setattr(atexit, "register", guards.append)
    journal: list[str] = []
    a, b = _Recorder("a", journal), _Recorder("b", journal)
    topology = Topology(a=a, b=b)
    topology.start_all_but("b")
    topology.start_all()
    assert len(guards) == 1
    guards[0]()  # type: ignore[operator]
    assert not a.is_running()
    assert not b.is_running()
    assert journal == ["run:a", "run:b", "stop:a", "stop:b"]
