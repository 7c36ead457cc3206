from __future__ import annotations

import signal
import time

import pytest

from nodule.adapters.alarm import Alarm, AlarmTimeoutError


def test_timeout_must_be_positive_integer() -> None:
    for bad in (0, -1, 1.5, "2"):
        with pytest.raises(ValueError):
            Alarm(timeout=bad)  # type: ignore[arg-type]


def test_alarm_fires_in_main_thread() -> None:
    alarm = Alarm(timeout=1)
    alarm.run()
    try:
        with pytest.raises(AlarmTimeoutError):
            time.sleep(3)
    finally:
        alarm.stop()
    assert not alarm.armed


def test_stop_disarms_and_restores_previous_handler() -> None:
    before = signal.getsignal(signal.SIGALRM)
    alarm = Alarm(timeout=30)
    alarm.run()
    assert alarm.armed
    assert signal.getsignal(signal.SIGALRM) == alarm._on_alarm
    assert alarm.stop() is True
    assert signal.alarm(0) == 0
    assert signal.getsignal(signal.SIGALRM) == before
    assert Alarm.supports_wait is False
