from __future__ import annotations

import os
import socket
import stat
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from nodule.platform.readiness import wait_ready
from nodule.transport.framing import FrameDecoder, FrameError, encode_multipart

SOCKET_KINDS = frozenset({"pair", "push", "pull", "pub", "sub"})
SEND_KINDS = frozenset({"pair", "push", "pub"})
RECV_KINDS = frozenset({"pair", "pull", "sub"})

DEFAULT_MAX_PAYLOAD_BYTES = 16 * 1024 * 1024
RECV_CHUNK_BYTES = 65536
RECONNECT_INITIAL_SECONDS = 0.01
RECONNECT_MAX_SECONDS = 0.5


class TransportError(RuntimeError):
    # Base message-socket error for deterministic caller-side handling.
    pass


class UnsupportedEndpointError(TransportError, ValueError):
    # Endpoint URI scheme or shape is not understood.
    pass


class SocketKindError(TransportError, ValueError):
    # Operation is not valid for this socket kind.
    pass


@dataclass(frozen=True, slots=True)
class Endpoint:
    scheme: Literal["ipc", "tcp"]
    address: str
    port: int | None = None

    def __post_init__(self) -> None:
        if self.scheme not in ("ipc", "tcp"):
            raise UnsupportedEndpointError(f"unsupported endpoint scheme: {self.scheme}")
        if not self.address:
            raise UnsupportedEndpointError("endpoint address must be non-empty")
        if self.scheme == "tcp" and (self.port is None or self.port < 0 or self.port > 65535):
            raise UnsupportedEndpointError("tcp endpoint port must be in range [0, 65535]")

    @property
    def family(self) -> int:
        return socket.AF_UNIX if self.scheme == "ipc" else socket.AF_INET

    @property
    def sockaddr(self) -> str | tuple[str, int]:
        if self.scheme == "ipc":
            return self.address
        assert self.port is not None
        return (self.address, self.port)

    def __str__(self) -> str:
        if self.scheme == "ipc":
            return f"ipc://{self.address}"
        return f"tcp://{self.address}:{self.port}"


def parse_endpoint(uri: str) -> Endpoint:
    if not isinstance(uri, str) or "://" not in uri:
        raise UnsupportedEndpointError(f"endpoint must look like scheme://address, got {uri!r}")
    scheme, _, rest = uri.partition("://")
    if scheme == "ipc":
        return Endpoint(scheme="ipc", address=rest)
    if scheme == "tcp":
        host, sep, port_text = rest.rpartition(":")
        if not sep or not host:
            raise UnsupportedEndpointError(f"tcp endpoint must be tcp://host:port, got {uri!r}")
        if host == "*":
            host = "0.0.0.0"
        try:
            port = int(port_text)
        except ValueError as exc:
            raise UnsupportedEndpointError(f"tcp endpoint port must be an integer, got {port_text!r}") from exc
        return Endpoint(scheme="tcp", address=host, port=port)
    raise UnsupportedEndpointError(f"unsupported endpoint scheme: {scheme}")


@dataclass(slots=True)
class _Peer:
    sock: socket.socket
    decoder: FrameDecoder
    # Set for peers this side dialed; a lost peer is re-dialed.
    endpoint: Endpoint | None = None


@dataclass(slots=True)
class _PendingConnect:
    endpoint: Endpoint
    next_attempt: float = 0.0
    interval: float = RECONNECT_INITIAL_SECONDS


@dataclass(slots=True)
class _Listener:
    sock: socket.socket
    endpoint: Endpoint


class MessageSocket:
    """Multipart message socket with a fixed kind, over ipc:// or tcp://.

    One socket may bind and/or connect any number of endpoints. Dialed
    endpoints that refuse or drop are retried with a doubling interval.
    The instance is not thread-safe; exactly one thread may use it.
    """

    def __init__(
        self,
        kind: str,
        *,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if kind not in SOCKET_KINDS:
            raise SocketKindError(f"unsupported socket kind: {kind!r} (expected one of {sorted(SOCKET_KINDS)})")
        self.kind = kind
        self._max_payload_bytes = max_payload_bytes
        self._clock = clock
        self._listeners: list[_Listener] = []
        self._peers: list[_Peer] = []
        self._pending: list[_PendingConnect] = []
        self._outbox: deque[bytes] = deque()
        self._subscriptions: list[bytes] = []
        self._round_robin = 0
        self._closed = False

    # endpoints

    def bind(self, uri: str) -> Endpoint:
        self._require_open()
        endpoint = parse_endpoint(uri)
        sock = socket.socket(endpoint.family, socket.SOCK_STREAM)
        try:
            if endpoint.scheme == "ipc":
                _unlink_stale_socket(endpoint.address)
            else:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(endpoint.sockaddr)
            sock.listen()
        except OSError as exc:
            sock.close()
            raise TransportError(f"cannot bind {endpoint}: {exc}") from exc
        if endpoint.scheme == "tcp" and endpoint.port == 0:
            endpoint = Endpoint(scheme="tcp", address=endpoint.address, port=sock.getsockname()[1])
        self._listeners.append(_Listener(sock=sock, endpoint=endpoint))
        return endpoint

    def connect(self, uri: str) -> Endpoint:
        # Connecting never fails on a missing peer; the dial is retried until one appears.
        self._require_open()
        endpoint = parse_endpoint(uri)
        pending = _PendingConnect(endpoint=endpoint)
        if not self._try_connect(pending):
            self._pending.append(pending)
        return endpoint

    @property
    def bound_endpoints(self) -> list[Endpoint]:
        return [listener.endpoint for listener in self._listeners]

    @property
    def peer_count(self) -> int:
        return len(self._peers)

    @property
    def pending_connects(self) -> int:
        return len(self._pending)

    @property
    def queued_messages(self) -> int:
        return len(self._outbox)

    # subscriptions

    def subscribe(self, topic: bytes | str) -> None:
        if self.kind != "sub":
            raise SocketKindError(f"subscribe is only valid on sub sockets, not {self.kind}")
        prefix = topic.encode("utf-8") if isinstance(topic, str) else bytes(topic)
        if prefix not in self._subscriptions:
            self._subscriptions.append(prefix)

    def unsubscribe(self, topic: bytes | str) -> None:
        if self.kind != "sub":
            raise SocketKindError(f"unsubscribe is only valid on sub sockets, not {self.kind}")
        prefix = topic.encode("utf-8") if isinstance(topic, str) else bytes(topic)
        if prefix in self._subscriptions:
            self._subscriptions.remove(prefix)

    @property
    def subscriptions(self) -> list[bytes]:
        return list(self._subscriptions)

    # sending

    def send_multipart(self, parts: Sequence[bytes]) -> bool:
        # Returns False when a pub socket dropped the message for lack of peers.
        self._require_open()
        if self.kind not in SEND_KINDS:
            raise SocketKindError(f"{self.kind} sockets cannot send")
        frame = encode_multipart(parts, max_payload_bytes=self._max_payload_bytes)
        # pub drops without peers; pair and push hold messages until one connects.
        if self.kind == "pub":
            if not self._peers:
                return False
            for peer in list(self._peers):
                self._send_frame(peer, frame)
            return True
        self._outbox.append(frame)
        self._flush_outbox()
        return True

    def _flush_outbox(self) -> None:
        while self._outbox and self._peers:
            frame = self._outbox[0]
            if self.kind == "pair":
                peer = self._peers[0]
            else:
                peer = self._peers[self._round_robin % len(self._peers)]
                self._round_robin += 1
            if self._send_frame(peer, frame):
                self._outbox.popleft()

    def _send_frame(self, peer: _Peer, frame: bytes) -> bool:
        try:
            peer.sock.sendall(frame)
        except OSError:
            self._drop_peer(peer)
            return False
        return True

    # receiving

    def readable_sockets(self) -> list[socket.socket]:
        # Sockets a caller should wait on; send-only kinds still watch peers for hangups.
        return [listener.sock for listener in self._listeners] + [peer.sock for peer in self._peers]

    def maintain(self) -> None:
        # Re-dials pending endpoints whose retry interval has elapsed.
        if self._closed or not self._pending:
            return
        now = self._clock()
        still_pending: list[_PendingConnect] = []
        for pending in self._pending:
            if pending.next_attempt > now or not self._try_connect(pending):
                still_pending.append(pending)
        self._pending = still_pending

    def next_retry_delay(self) -> float | None:
        if not self._pending:
            return None
        return max(0.0, min(pending.next_attempt for pending in self._pending) - self._clock())

    def handle_readable(self, sock: socket.socket) -> list[list[bytes]]:
        for listener in self._listeners:
            if listener.sock is sock:
                self._accept(listener)
                return []
        for peer in self._peers:
            if peer.sock is sock:
                return self._receive(peer)
        return []

    def poll(self, timeout: float) -> list[list[bytes]]:
        self.maintain()
        watched = self.readable_sockets()
        if not watched:
            delay = self.next_retry_delay()
            time.sleep(timeout if delay is None else min(timeout, delay))
            return []
        ready, _ = wait_ready(watched, (), timeout)
        messages: list[list[bytes]] = []
        for sock in ready:
            messages.extend(self.handle_readable(sock))
        return messages

    def _accept(self, listener: _Listener) -> None:
        try:
            conn, _ = listener.sock.accept()
        except OSError:
            return
        self._add_peer(conn, endpoint=None)

    def _receive(self, peer: _Peer) -> list[list[bytes]]:
        try:
            chunk = peer.sock.recv(RECV_CHUNK_BYTES)
        except OSError:
            chunk = b""
        if not chunk:
            self._drop_peer(peer)
            return []
        try:
            messages = peer.decoder.feed(chunk)
        except FrameError:
            # A peer that speaks garbage is cut off; the stream cannot be resynchronized.
            self._drop_peer(peer)
            raise
        if self.kind not in RECV_KINDS:
            return []
        if self.kind == "sub":
            return [message for message in messages if self._matches(message[0])]
        return messages

    def _matches(self, topic: bytes) -> bool:
        return any(topic.startswith(prefix) for prefix in self._subscriptions)

    # peers

    def _try_connect(self, pending: _PendingConnect) -> bool:
        endpoint = pending.endpoint
        sock = socket.socket(endpoint.family, socket.SOCK_STREAM)
        try:
            sock.connect(endpoint.sockaddr)
        except OSError:
            sock.close()
            pending.next_attempt = self._clock() + pending.interval
            pending.interval = min(pending.interval * 2, RECONNECT_MAX_SECONDS)
            return False
        self._add_peer(sock, endpoint=endpoint)
        return True

    def _add_peer(self, sock: socket.socket, *, endpoint: Endpoint | None) -> None:
        if sock.family == socket.AF_INET:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._peers.append(_Peer(sock=sock, decoder=FrameDecoder(max_payload_bytes=self._max_payload_bytes), endpoint=endpoint))
        self._flush_outbox()

    def _drop_peer(self, peer: _Peer) -> None:
        if peer in self._peers:
            self._peers.remove(peer)
        peer.sock.close()
        if peer.endpoint is not None and not self._closed:
            self._pending.append(_PendingConnect(endpoint=peer.endpoint, next_attempt=self._clock() + RECONNECT_INITIAL_SECONDS))

    # teardown

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for peer in self._peers:
            peer.sock.close()
        self._peers.clear()
        self._pending.clear()
        self._outbox.clear()
        for listener in self._listeners:
            listener.sock.close()
            if listener.endpoint.scheme == "ipc":
                _unlink_stale_socket(listener.endpoint.address)
        self._listeners.clear()

    def _require_open(self) -> None:
        if self._closed:
            raise TransportError("message socket is closed")

    def __enter__(self) -> MessageSocket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _unlink_stale_socket(path: str) -> None:
    # Only unix socket files are removed; anything else at the path is left alone.
    try:
        mode = os.stat(path).st_mode
    except FileNotFoundError:
        return
    if stat.S_ISSOCK(mode):
        os.unlink(path)
