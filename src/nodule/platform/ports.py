from __future__ import annotations

import random
import socket
from threading import Lock

PORT_MIN = 10_000
PORT_MAX = 65_534

# Ports found in use once are never tried again in this process.
_seen: set[int] = set()
_lock = Lock()


class NoFreePortError(RuntimeError):
    # Every attempt hit a port that was already taken.
    pass


def random_port(rng: random.Random | None = None) -> int:
    return (rng or random).randint(PORT_MIN, PORT_MAX)


def random_tcp_port(max_tries: int = 500, *, rng: random.Random | None = None) -> int:
    return _search(socket.SOCK_STREAM, max_tries, rng)


def random_udp_port(max_tries: int = 500, *, rng: random.Random | None = None) -> int:
    return _search(socket.SOCK_DGRAM, max_tries, rng)


def _search(sock_type: int, max_tries: int, rng: random.Random | None) -> int:
    tries = 0
    while tries < max_tries:
        port = random_port(rng)
        with _lock:
            if port in _seen:
                tries += 1
                continue
        with socket.socket(socket.AF_INET, sock_type) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                with _lock:
                    _seen.add(port)
                tries += 1
                continue
        return port
    raise NoFreePortError(f"no free port found in {max_tries} tries")


def forget_seen_ports() -> None:
    with _lock:
        _seen.clear()
