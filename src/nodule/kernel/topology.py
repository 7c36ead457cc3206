from __future__ import annotations

import atexit
import weakref
from collections.abc import Iterable, Iterator, Mapping

from nodule.config.settings import HarnessSettings, get_settings
from nodule.kernel.errors import (
    StuckResourceError,
    TopologyIntegrationRequiredError,
    TopologyStillRunningError,
    UnresolvedSymbolError,
)
from nodule.kernel.node import Node
from nodule.observability.diagnostics import emit_diagnostic


class Topology:
    """Named, ordered collection of nodes with coordinated lifecycle control.

    Insertion order is significant: run_serially() walks entries in the
    order they were added. Every registered node receives a weak back
    reference so it can resolve siblings by name.
    """

    def __init__(
        self,
        resources: Mapping[str, Node] | None = None,
        *,
        settings: HarnessSettings | None = None,
        **named: Node,
    ) -> None:
        self._resources: dict[str, Node] = {}
        self._started: set[str] = set()
        self._settings = settings
        self._all_stopped = True
        self._exit_guard_registered = False
        for name, value in {**dict(resources or {}), **named}.items():
            self[name] = value

    @property
    def settings(self) -> HarnessSettings:
        return self._settings or get_settings()

    # mapping protocol

    def __getitem__(self, name: str) -> Node:
        try:
            return self._resources[name]
        except KeyError:
            raise UnresolvedSymbolError(name, f"known names: {sorted(self._resources)}") from None

    def __setitem__(self, name: str, value: Node) -> None:
        if not isinstance(name, str) or not name:
            raise ValueError("topology names must be non-empty strings")
        if not isinstance(value, Node):
            raise TopologyIntegrationRequiredError(
                f"{name} => {value!r} cannot join a topology (not a Node)"
            )
        value.join_topology(self)
        self._resources[name] = value

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __iter__(self) -> Iterator[str]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str, default: Node | None = None) -> Node | None:
        return self._resources.get(name, default)

    def keys(self) -> list[str]:
        return list(self._resources)

    def items(self) -> list[tuple[str, Node]]:
        return list(self._resources.items())

    def key_of(self, node: Node) -> str | None:
        for name, value in self._resources.items():
            if value is node:
                return name
        return None

    def to_dict(self) -> dict[str, Node]:
        return dict(self._resources)

    # lifecycle

    def start(self, name: str) -> None:
        node = self[name]
        self._all_stopped = False
        self._register_exit_guard()
        node.run()
        self._started.add(name)

    def started(self, name: str) -> bool:
        return name in self._started

    def start_all(self) -> None:
        for name in self._resources:
            if name not in self._started:
                self.start(name)

    def start_all_but(self, *names: str | Iterable[str]) -> None:
        excluded = _flatten_names(names)
        for name in self._resources:
            if name not in self._started and name not in excluded:
                self.start(name)

    def run_serially(self) -> None:
        # Each node finishes (or is stopped) before the next one starts.
        self._all_stopped = False
        self._register_exit_guard()
        for name, node in self._resources.items():
            node.run()
            if node.supports_wait:
                node.wait()
            else:
                node.stop()
        self._all_stopped = True

    def stop(self, name: str) -> None:
        node = self[name]
        window = self.settings.timing.topology_stop_recheck_seconds
        node.stop()
        if not node.done():
            node.wait(window)
        if not node.done():
            emit_diagnostic(
                level="warning",
                message="topology.stop_escalated",
                fields={"resource": name, "class": type(node).__name__},
            )
            node.force_stop()
        if not node.done():
            node.wait(window)
        if not node.done():
            details = node.describe()
            emit_diagnostic(
                level="error",
                message="topology.stuck_resource",
                fields={"resource": name, "details": details},
            )
            raise StuckResourceError(name, details)
        self._started.discard(name)

    def stop_all(self) -> None:
        if self._all_stopped:
            return
        for name, node in self._resources.items():
            if node.is_running():
                self.stop(name)
        self._started.clear()
        self._all_stopped = True

    def stop_all_but(self, *names: str | Iterable[str]) -> None:
        if self._all_stopped:
            return
        excluded = _flatten_names(names)
        for name, node in self._resources.items():
            if name not in excluded and node.is_running():
                self.stop(name)

    def cleanup(self) -> None:
        # Unlike stop_all(), always walks every running resource (serial runs included).
        for name, node in self._resources.items():
            if node.is_running():
                self.stop(name)
        self._started.clear()
        self._all_stopped = True

    def wait(self, name: str, timeout: float | None = 60) -> object:
        return self[name].wait(timeout)

    def wait_all(self) -> None:
        for node in self._resources.values():
            if node.supports_wait:
                node.wait()

    def reset_all(self) -> None:
        still_running = [name for name, node in self._resources.items() if node.is_running() and not node.done()]
        if still_running:
            raise TopologyStillRunningError(still_running)
        for node in self._resources.values():
            node.reset()
        self._started.clear()

    def _register_exit_guard(self) -> None:
        # One guard per topology; repeated start cycles must not stack handlers.
        # The guard stops every node still running at exit.
        if self._exit_guard_registered:
            return
        self._exit_guard_registered = True
        ref = weakref.ref(self)

        def _guard() -> None:
            topology = ref()
            if topology is not None:
                topology.cleanup()

        atexit.register(_guard)


def _flatten_names(names: Iterable[object]) -> frozenset[str]:
    flat: set[str] = set()
    for item in names:
        if isinstance(item, str):
            flat.add(item)
        else:
            flat.update(_flatten_names(item))  # type: ignore[arg-type]
    return frozenset(flat)
