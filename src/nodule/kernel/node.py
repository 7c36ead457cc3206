from __future__ import annotations

import weakref
from collections.abc import Callable
from threading import RLock
from typing import TYPE_CHECKING

from nodule.config.settings import HarnessSettings, get_settings
from nodule.kernel.actions import (
    ReaderAction,
    Ref,
    WriterAction,
    flatten_actions,
    reader_action,
    writer_action,
)
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.errors import CaptureNotEnabledError, HarnessTimeoutError, UnresolvedSymbolError
from nodule.observability.diagnostics import emit_diagnostic

if TYPE_CHECKING:
    from nodule.kernel.topology import Topology

AUTO_TOPOLOGY_KEY = "auto"


class Node:
    """Base capability unit of a topology.

    A node owns an ordered reader pipeline (and optionally a writer pipeline),
    counts every item delivered to it, and optionally captures those items.
    It holds only a weak reference to the topology it belongs to; symbolic
    reader actions are resolved against that topology at delivery time.
    """

    # run_serially() waits on nodes that support it and stops the rest.
    supports_wait = True

    def __init__(
        self,
        *,
        prefix: str | None = None,
        reader: object = None,
        readers: object = None,
        writer: object = None,
        writers: object = None,
        capture_writers: bool = False,
        verbose: Ref | bool | None = None,
        settings: HarnessSettings | None = None,
    ) -> None:
        self._lock = RLock()
        self._readers: list[ReaderAction] = []
        self._writers: list[WriterAction] = []
        self._read_count = 0
        self._output: list[object] | None = None
        self._written: list[object] | None = [] if capture_writers else None
        self._prefix = prefix or ""
        self._prefix_explicit = prefix is not None
        self._verbose = verbose
        self._settings = settings
        self._running = False
        self._topology_ref: weakref.ReferenceType[Topology] | None = None
        # Only the standalone fallback registry is owned by the node.
        self._auto_topology: Topology | None = None

        self.add_readers(reader, readers)
        self.add_writers(writer, writers)

    @property
    def settings(self) -> HarnessSettings:
        return self._settings or get_settings()

    @property
    def prefix(self) -> str:
        return self._prefix

    @prefix.setter
    def prefix(self, value: str) -> None:
        self._prefix = value
        self._prefix_explicit = True

    @property
    def topology(self) -> Topology | None:
        if self._topology_ref is None:
            return None
        return self._topology_ref()

    def join_topology(self, topology: Topology) -> None:
        self._topology_ref = weakref.ref(topology)

    @property
    def name(self) -> str | None:
        topology = self.topology
        if topology is None:
            return None
        return topology.key_of(self)

    # lifecycle

    def run(self) -> None:
        self._running = True
        topology = self.topology
        if topology is None:
            from nodule.kernel.topology import Topology

            self._auto_topology = Topology({AUTO_TOPOLOGY_KEY: self}, settings=self._settings)
            topology = self._auto_topology
        if not self._prefix_explicit:
            key = topology.key_of(self)
            if key is not None:
                self._prefix = f"[{key}]: "

    def stop(self) -> bool:
        self._running = False
        return True

    def force_stop(self) -> bool:
        self._running = False
        return True

    def done(self) -> bool:
        return not self._running

    def is_running(self) -> bool:
        # Never raises, unlike done() on some subclasses; safe for bulk teardown.
        return self._running

    def wait(self, timeout: float | None = None) -> object:
        _ = timeout
        return None

    def reset(self) -> None:
        return None

    def describe(self) -> dict[str, object]:
        # Lifecycle data surfaced in teardown failures.
        return {
            "class": type(self).__name__,
            "name": self.name,
            "running": self._running,
            "read_count": self._read_count,
        }

    # readers

    def add_reader(self, action: object) -> None:
        normalized = reader_action(action)
        if normalized is None:
            return
        with self._lock:
            if normalized.kind == "capture" and self._output is None:
                self._output = []
            self._readers.append(normalized)

    def add_readers(self, *actions: object) -> None:
        for action in flatten_actions(list(actions)):
            self.add_reader(action)

    @property
    def readers(self) -> list[ReaderAction]:
        with self._lock:
            return list(self._readers)

    def run_readers(self, item: object, source: Node | None = None) -> None:
        # Count first: drained and forwarded items are still deliveries.
        with self._lock:
            self._read_count += 1
            if self._verbose:
                self.verbose(f"READ({self._read_count}):", item)
            for action in self._readers:
                self._dispatch(action, item, source)

    def _dispatch(self, action: ReaderAction, item: object, source: Node | None) -> None:
        if action.kind == "capture":
            assert self._output is not None
            self._output.append(item)
        elif action.kind == "drain":
            return
        elif action.kind == "symbol":
            assert action.symbol is not None
            self.resolve(action.symbol).run_readers(item, self)
        else:
            assert action.target is not None
            if action.wants_source:
                action.target(item, source)
            else:
                action.target(item)

    def resolve(self, name: str) -> Node:
        topology = self.topology
        if topology is None:
            raise UnresolvedSymbolError(name, "topology is not set up")
        return topology[name]

    @property
    def read_count(self) -> int:
        return self._read_count

    @property
    def output(self) -> list[object]:
        with self._lock:
            if self._output is None:
                raise CaptureNotEnabledError(
                    f"{type(self).__name__} output requested but the capture reader was never added"
                )
            return list(self._output)

    @property
    def capturing(self) -> bool:
        return self._output is not None

    def clear(self) -> None:
        # Counter and capture buffer are reset together so they never disagree.
        with self._lock:
            self._read_count = 0
            if self._output is not None:
                self._output.clear()

    def require_read_count(
        self,
        count: int,
        max_sleep: float | None = None,
        on_timeout: Callable[[], object] | None = None,
    ) -> object:
        timeout = self.settings.timing.read_count_timeout_seconds if max_sleep is None else max_sleep
        result = wait_with_backoff(
            timeout,
            lambda: self._read_count >= count,
            interval=self.settings.timing.backoff_initial_interval_seconds,
        )
        if result is TIMED_OUT:
            if on_timeout is not None:
                return on_timeout()
            raise HarnessTimeoutError(
                f"read count {self._read_count} did not reach {count} within {timeout}s"
            )
        return True

    # writers

    def add_writer(self, action: object) -> None:
        normalized = writer_action(action)
        if normalized is None:
            return
        with self._lock:
            self._writers.append(normalized)

    def add_writers(self, *actions: object) -> None:
        for action in flatten_actions(list(actions)):
            self.add_writer(action)

    @property
    def writers(self) -> list[WriterAction]:
        with self._lock:
            return list(self._writers)

    def run_writers(self) -> list[object]:
        # None from a writer means "nothing to send this round".
        produced: list[object] = []
        with self._lock:
            for action in self._writers:
                item = action.target()
                if item is None:
                    continue
                produced.append(item)
                if self._written is not None:
                    self._written.append(item)
        return produced

    @property
    def written(self) -> list[object]:
        with self._lock:
            if self._written is None:
                raise CaptureNotEnabledError(f"{type(self).__name__} was not created with capture_writers=True")
            return list(self._written)

    # diagnostics

    def verbose(self, *parts: object) -> None:
        line = " ".join(str(part) for part in parts)
        target = self._verbose
        if isinstance(target, Ref):
            topology = self.topology
            if topology is not None and target.name in topology:
                topology[target.name].run_readers(line, self)
                return
        if target:
            emit_diagnostic(
                level="debug",
                message="node.verbose",
                fields={"node": self.name or type(self).__name__, "line": line},
            )
