from nodule.platform.ports import NoFreePortError, forget_seen_ports, random_port, random_tcp_port, random_udp_port
from nodule.platform.readiness import fileno_of, wait_ready

__all__ = [
    "NoFreePortError",
    "fileno_of",
    "forget_seen_ports",
    "random_port",
    "random_tcp_port",
    "random_udp_port",
    "wait_ready",
]
