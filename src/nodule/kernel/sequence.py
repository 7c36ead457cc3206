from __future__ import annotations

import itertools
from threading import Lock


class SequenceGenerator:
    # Process-wide unique counter for collision-free resource names.
    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


default_sequence = SequenceGenerator()
