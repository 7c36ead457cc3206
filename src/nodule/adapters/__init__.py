# Leaf resources: scratch files, message-socket proxies, console sink and the SIGALRM watchdog.

from nodule.adapters.alarm import Alarm, AlarmTimeoutError
from nodule.adapters.console import Console
from nodule.adapters.socket_proxy import SocketProxy
from nodule.adapters.tempfile import TempFile

__all__ = [
    "Alarm",
    "AlarmTimeoutError",
    "Console",
    "SocketProxy",
    "TempFile",
]
