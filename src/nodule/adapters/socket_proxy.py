from __future__ import annotations

import os
import threading
import time
from typing import Literal

from nodule.adapters.tempfile import TempFile
from nodule.config.settings import HarnessSettings
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.errors import HarnessTimeoutError, ResourceStateError
from nodule.observability.diagnostics import emit_diagnostic
from nodule.platform.readiness import wait_ready
from nodule.transport.control_plane import (
    CONTROL_KIND_EXIT,
    CONTROL_KIND_SUBSCRIBE,
    ControlChannel,
    ControlChannelClosedError,
    data_command,
    exit_command,
    subscribe_command,
)
from nodule.transport.framing import FrameError
from nodule.transport.message_socket import SOCKET_KINDS, MessageSocket, SocketKindError, parse_endpoint

ProxyState = Literal["idle", "running", "draining", "stopped"]

GENERATE_URI = frozenset({"gen", "generate"})


class SocketProxy(TempFile):
    """Message-socket resource whose socket lives on one worker thread.

    The worker creates the socket, binds and/or connects it to ``uri``, and
    then polls the socket together with the worker end of a ControlChannel.
    Every inbound message (a list of parts) goes through the reader pipeline
    with this proxy as the source. The owner never touches the socket: sends
    and subscriptions travel as control commands.

    Lifecycle is ``idle -> running -> draining -> stopped`` and one-way; a
    stopped proxy cannot be run again.
    """

    def __init__(
        self,
        *,
        uri: str = "gen",
        bind: str | None = None,
        connect: str | None = None,
        limit: int | None = None,
        subscribe: object = None,
        encoding: str | None = "utf-8",
        dir: str | os.PathLike[str] | None = None,
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        super().__init__(suffix=".sock", dir=dir, settings=settings, **options)
        if bind and connect and bind != connect:
            raise ValueError("socket kinds must be the same when both bind and connect are given")
        kind = bind or connect
        if not kind:
            raise ValueError("a socket proxy needs bind=<kind> and/or connect=<kind>")
        if kind not in SOCKET_KINDS:
            raise SocketKindError(f"unsupported socket kind: {kind!r} (expected one of {sorted(SOCKET_KINDS)})")
        if limit is not None and (not isinstance(limit, int) or limit <= 0):
            raise ValueError("limit must be a positive integer")

        if uri in GENERATE_URI:
            self.uri = f"ipc://{self.path}"
        else:
            parse_endpoint(uri)
            self.uri = uri
        self.kind = kind
        self.binds = bool(bind)
        self.connects = bool(connect)
        self.limit = limit
        self._subscriptions = _topics(subscribe, kind)
        self._encoding = encoding

        self._lifecycle_lock = threading.RLock()
        self._state: ProxyState = "idle"
        self._thread: threading.Thread | None = None
        self._control: ControlChannel | None = None
        self._ready = threading.Event()
        self._cancel = threading.Event()
        self._message_count = 0
        self._error_count = 0
        self._peer_count = 0
        self.error: BaseException | None = None

    @property
    def supports_wait(self) -> bool:  # type: ignore[override]
        # Only a limited proxy ever finishes on its own.
        return self.limit is not None

    @property
    def state(self) -> ProxyState:
        return self._state

    @property
    def cancel_requested(self) -> bool:
        # Long-running reader callbacks may poll this to give up early.
        return self._cancel.is_set()

    @property
    def message_count(self) -> int:
        return self._message_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def peer_count(self) -> int:
        return self._peer_count

    # owner side

    def run(self) -> None:
        with self._lifecycle_lock:
            if self._state != "idle":
                raise ResourceStateError(f"socket proxy is {self._state}; create a new one to run again")
            self._state = "running"
            super().run()
            timing = self.settings.timing
            self._control = ControlChannel(max_payload_bytes=self.settings.transport.max_payload_bytes)
            self._thread = threading.Thread(
                target=self._worker,
                name=f"nodule-socket-proxy-{self.name or id(self)}",
                daemon=True,
            )
            self._thread.start()
            thread = self._thread
            started = wait_with_backoff(
                timing.proxy_start_timeout_seconds,
                lambda: self._ready.is_set() or not thread.is_alive(),
                interval=timing.backoff_initial_interval_seconds,
            )
            if not self._ready.is_set() and self.error is not None:
                failure = self.error
                thread.join()
                self._finalize()
                raise failure
            if started is TIMED_OUT:
                raise HarnessTimeoutError(
                    f"socket proxy worker did not start within {timing.proxy_start_timeout_seconds}s"
                )

    def send(self, *parts: object) -> None:
        if self._state != "running" or self._control is None:
            raise ResourceStateError(f"cannot send through a socket proxy that is {self._state}")
        if self.kind not in ("pair", "push", "pub"):
            raise SocketKindError(f"{self.kind} sockets cannot send")
        self._control.send(data_command([self._encode(part) for part in parts]))

    def subscribe(self, topic: bytes | str) -> None:
        if self.kind != "sub":
            raise SocketKindError(f"subscribe is only valid on sub sockets, not {self.kind}")
        encoded = self._encode(topic)
        if self._state == "idle":
            self._subscriptions.append(encoded)
            return
        if self._state != "running" or self._control is None:
            raise ResourceStateError(f"cannot subscribe on a socket proxy that is {self._state}")
        self._control.send(subscribe_command(encoded))

    def stop(self) -> bool:
        with self._lifecycle_lock:
            if self._state == "idle":
                self._finalize()
                return True
            if self._state == "stopped":
                return True
            self._state = "draining"
            thread = self._thread
            control = self._control
            if thread is threading.current_thread():
                # Called from a reader callback; the worker exits once the callback returns.
                self._cancel.set()
                return False
            if thread is not None and thread.is_alive():
                if control is not None:
                    try:
                        control.send(exit_command())
                    except (ControlChannelClosedError, OSError):
                        pass
                thread.join(self.settings.timing.proxy_stop_timeout_seconds)
                if thread.is_alive():
                    return False
            self._finalize()
            return True

    def force_stop(self) -> bool:
        with self._lifecycle_lock:
            if self.stop():
                return True
            self._cancel.set()
            thread = self._thread
            if thread is not None:
                thread.join(self.settings.timing.proxy_stop_timeout_seconds)
                if thread.is_alive():
                    return False
            self._finalize()
            return True

    def done(self) -> bool:
        thread = self._thread
        return thread is None or not thread.is_alive()

    def is_running(self) -> bool:
        return self._state in ("running", "draining")

    def wait(self, timeout: float | None = None) -> object:
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            return None
        with self._lifecycle_lock:
            if self._state != "stopped":
                self._finalize()
        return True

    def reset(self) -> None:
        # Sockets are single-use; reset only drops captured data.
        self.clear()

    def _finalize(self) -> None:
        if self._control is not None:
            self._control.close()
        self._state = "stopped"
        self._running = False
        self.remove()

    def describe(self) -> dict[str, object]:
        details = super().describe()
        details.update(
            {
                "uri": self.uri,
                "kind": self.kind,
                "state": self._state,
                "limit": self.limit,
                "message_count": self._message_count,
                "error_count": self._error_count,
                "peer_count": self._peer_count,
            }
        )
        return details

    def __str__(self) -> str:
        return self.uri

    # worker side

    def _worker(self) -> None:
        control = self._control
        assert control is not None
        transport = MessageSocket(self.kind, max_payload_bytes=self.settings.transport.max_payload_bytes)
        try:
            if self.binds:
                self.uri = str(transport.bind(self.uri))
            if self.connects:
                transport.connect(self.uri)
            for topic in self._subscriptions:
                transport.subscribe(topic)
            emit_diagnostic(
                level="debug",
                message="socket_proxy.worker_started",
                fields={"uri": self.uri, "kind": self.kind, "bind": self.binds, "connect": self.connects},
            )
            self._ready.set()
            self._serve(transport, control)
        except Exception as exc:
            self.error = exc
            self._error_count += 1
            emit_diagnostic(
                level="error",
                message="socket_proxy.worker_failed",
                fields={"uri": self.uri, "error": repr(exc)},
            )
        finally:
            transport.close()
            self._peer_count = 0
            if self._state == "running":
                self._state = "draining"

    def _serve(self, transport: MessageSocket, control: ControlChannel) -> None:
        timing = self.settings.timing
        connect_deadline = time.monotonic() + timing.proxy_connect_timeout_seconds
        warned_connect = False
        while not self._cancel.is_set():
            self._send_writer_output(transport)
            transport.maintain()
            self._peer_count = transport.peer_count
            if not warned_connect and transport.pending_connects and time.monotonic() > connect_deadline:
                warned_connect = True
                emit_diagnostic(
                    level="warning",
                    message="socket_proxy.connect_pending",
                    fields={"uri": self.uri, "timeout_seconds": timing.proxy_connect_timeout_seconds},
                )

            timeout = timing.proxy_poll_seconds
            retry = transport.next_retry_delay()
            if retry is not None:
                timeout = min(timeout, retry)
            watched = [control.worker_socket, *transport.readable_sockets()]
            ready, _ = wait_ready(watched, (), timeout)
            for sock in ready:
                if sock is control.worker_socket:
                    if self._handle_control(transport, control):
                        return
                    continue
                try:
                    messages = transport.handle_readable(sock)
                except FrameError as exc:
                    self._error_count += 1
                    emit_diagnostic(
                        level="warning",
                        message="socket_proxy.frame_rejected",
                        fields={"uri": self.uri, "error": repr(exc)},
                    )
                    continue
                for message in messages:
                    self._message_count += 1
                    self.run_readers(self._decode(message), self)
                    if self._cancel.is_set():
                        return
                    if self.limit is not None and self._message_count >= self.limit:
                        emit_diagnostic(
                            level="debug",
                            message="socket_proxy.limit_reached",
                            fields={"uri": self.uri, "limit": self.limit},
                        )
                        return

    def _handle_control(self, transport: MessageSocket, control: ControlChannel) -> bool:
        # True means the worker must exit.
        for command in control.receive():
            if command.kind == CONTROL_KIND_EXIT:
                return True
            if command.kind == CONTROL_KIND_SUBSCRIBE:
                transport.subscribe(command.parts[0])
            else:
                transport.send_multipart(list(command.parts))
        return False

    def _send_writer_output(self, transport: MessageSocket) -> None:
        if not self._writers:
            return
        for output in self.run_writers():
            for parts in _writer_messages(output):
                transport.send_multipart([self._encode(part) for part in parts])

    def _encode(self, part: object) -> bytes:
        if isinstance(part, (bytes, bytearray)):
            return bytes(part)
        return str(part).encode(self._encoding or "utf-8")

    def _decode(self, message: list[bytes]) -> list[object]:
        if self._encoding is None:
            return list(message)
        return [part.decode(self._encoding, errors="replace") for part in message]


def _writer_messages(output: object) -> list[list[object]]:
    # A list is several messages; a nested list/tuple inside it is one multipart message.
    if isinstance(output, (list, tuple)):
        return [list(item) if isinstance(item, (list, tuple)) else [item] for item in output]
    return [[output]]


def _topics(subscribe: object, kind: str) -> list[bytes]:
    if subscribe is None:
        # sub sockets see everything unless told otherwise
        return [b""] if kind == "sub" else []
    if kind != "sub":
        raise SocketKindError(f"subscribe is only valid on sub sockets, not {kind}")
    items = subscribe if isinstance(subscribe, (list, tuple)) else [subscribe]
    return [item.encode("utf-8") if isinstance(item, str) else bytes(item) for item in items]  # type: ignore[arg-type]
