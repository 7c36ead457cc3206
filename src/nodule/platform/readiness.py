from __future__ import annotations

import selectors
from collections.abc import Sequence


def fileno_of(obj: object) -> int:
    if isinstance(obj, int):
        return obj
    return obj.fileno()  # type: ignore[attr-defined]


def wait_ready(
    readable: Sequence[object],
    writable: Sequence[object] = (),
    timeout: float | None = None,
) -> tuple[list[object], list[object]]:
    """Wait until any of the given objects (or raw descriptors) is ready.

    Ready objects come back in the order they were passed in. poll(2) has
    no FD_SETSIZE ceiling on descriptor numbers and, unlike epoll, accepts
    regular files.
    ``timeout=None`` blocks; ``0`` only polls.
    """
    masks: dict[int, int] = {}
    for obj in readable:
        fd = fileno_of(obj)
        masks[fd] = masks.get(fd, 0) | selectors.EVENT_READ
    for obj in writable:
        fd = fileno_of(obj)
        masks[fd] = masks.get(fd, 0) | selectors.EVENT_WRITE
    with selectors.PollSelector() as selector:
        for fd, mask in masks.items():
            selector.register(fd, mask)
        ready = {key.fd: events for key, events in selector.select(timeout)}
    ready_rd = [obj for obj in readable if ready.get(fileno_of(obj), 0) & selectors.EVENT_READ]
    ready_wt = [obj for obj in writable if ready.get(fileno_of(obj), 0) & selectors.EVENT_WRITE]
    return ready_rd, ready_wt
