from __future__ import annotations

import signal
from types import FrameType

from nodule.config.settings import HarnessSettings
from nodule.kernel.errors import NoduleError
from nodule.kernel.node import Node


class AlarmTimeoutError(NoduleError):
    # SIGALRM fired before the guarded test finished.
    pass


class Alarm(Node):
    """Whole-test watchdog built on SIGALRM.

    ``run()`` arms the alarm for ``timeout`` whole seconds; when it fires the
    main thread gets AlarmTimeoutError wherever it is blocked. ``stop()``
    disarms it and restores the previous handler. Main thread only, POSIX only.
    """

    # An armed alarm never finishes on its own; run_serially() must stop it.
    supports_wait = False

    def __init__(self, *, timeout: int, settings: HarnessSettings | None = None, **options: object) -> None:
        if not isinstance(timeout, int) or timeout <= 0:
            raise ValueError("Alarm.timeout must be a positive integer number of seconds")
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        self.timeout = timeout
        self._previous_handler: object = None
        self._installed = False
        self._armed = False

    @property
    def armed(self) -> bool:
        return self._armed

    def run(self) -> None:
        super().run()
        self._previous_handler = signal.signal(signal.SIGALRM, self._on_alarm)
        self._installed = True
        signal.alarm(self.timeout)
        self._armed = True

    def stop(self) -> bool:
        if self._armed:
            signal.alarm(0)
            self._armed = False
        # A fired alarm is disarmed but its handler is still installed.
        if self._installed:
            signal.signal(signal.SIGALRM, self._previous_handler)  # type: ignore[arg-type]
            self._installed = False
        return super().stop()

    def force_stop(self) -> bool:
        return self.stop()

    def _on_alarm(self, signum: int, frame: FrameType | None) -> None:
        _ = (signum, frame)
        self._armed = False
        raise AlarmTimeoutError(f"got SIGALRM after {self.timeout}s; aborting")
