from __future__ import annotations


class NoduleError(RuntimeError):
    # Base harness error: lifecycle misuse and unrecoverable teardown failures.
    pass


class ProcessNotRunningError(NoduleError):
    # Operation required a live pid that is absent.
    pass


class ProcessAlreadyRunningError(NoduleError):
    # Double start without an intervening reset.
    pass


class ProcessStillRunningError(NoduleError):
    # Operation (reset/slurp/elapsed) required prior completion.
    pass


class UnresolvedSymbolError(NoduleError, KeyError):
    # argv token or reader action referenced a name the topology does not hold.
    def __init__(self, name: str, detail: str | None = None) -> None:
        self.name = name
        self.detail = detail
        super().__init__(name)

    def __str__(self) -> str:
        if self.detail:
            return f"unresolved symbol '{self.name}': {self.detail}"
        return f"unresolved symbol '{self.name}'"


class InvalidActionError(NoduleError, TypeError):
    # Reader/writer action of an unsupported shape.
    pass


class HarnessTimeoutError(NoduleError, TimeoutError):
    # Bounded wait exceeded its deadline and no fallback was supplied.
    pass


class CaptureNotEnabledError(NoduleError):
    # Output was read from a node that never registered the capture action.
    pass


class NotReadyError(NoduleError):
    # Stream is closed or not ready for the requested direction.
    pass


class ResourceStateError(NoduleError):
    # Lifecycle transition is not legal from the current state.
    pass


class TopologyStillRunningError(NoduleError):
    # reset_all called while at least one resource is still running.
    def __init__(self, names: list[str]) -> None:
        self.names = list(names)
        super().__init__(f"resources still running: {', '.join(self.names)}")


class TopologyIntegrationRequiredError(NoduleError, TypeError):
    # Registered value cannot join a topology.
    pass


class StuckResourceError(NoduleError):
    # Graceful and forced stop both failed to converge.
    def __init__(self, name: str, details: dict[str, object]) -> None:
        self.name = name
        self.details = dict(details)
        super().__init__(f"could not stop resource '{name}': {self.details!r}")
