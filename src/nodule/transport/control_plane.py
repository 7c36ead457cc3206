from __future__ import annotations

import socket
from collections.abc import Sequence
from dataclasses import dataclass
from threading import Lock

from nodule.transport.framing import FrameDecoder, encode_multipart

CONTROL_KIND_DATA = "data"
CONTROL_KIND_SUBSCRIBE = "subscribe"
CONTROL_KIND_EXIT = "exit"

CONTROL_ALLOWED_KINDS = frozenset({CONTROL_KIND_DATA, CONTROL_KIND_SUBSCRIBE, CONTROL_KIND_EXIT})

RECV_CHUNK_BYTES = 65536


class ControlChannelClosedError(RuntimeError):
    # Command sent after the channel was closed.
    pass


@dataclass(frozen=True, slots=True)
class ControlCommand:
    kind: str
    parts: tuple[bytes, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in CONTROL_ALLOWED_KINDS:
            raise ValueError(f"unsupported control command kind: {self.kind}")
        if not all(isinstance(part, bytes) for part in self.parts):
            raise ValueError("ControlCommand.parts must be bytes")
        if self.kind == CONTROL_KIND_DATA and not self.parts:
            raise ValueError("data command requires at least one part")


def data_command(parts: Sequence[bytes]) -> ControlCommand:
    return ControlCommand(kind=CONTROL_KIND_DATA, parts=tuple(parts))


def subscribe_command(topic: bytes) -> ControlCommand:
    return ControlCommand(kind=CONTROL_KIND_SUBSCRIBE, parts=(topic,))


def exit_command() -> ControlCommand:
    return ControlCommand(kind=CONTROL_KIND_EXIT)


def encode_control(command: ControlCommand) -> list[bytes]:
    return [command.kind.encode("ascii"), *command.parts]


def decode_control(frame: Sequence[bytes]) -> ControlCommand:
    # An unknown leading part is not a tag: the whole frame is forwarded as data.
    if not frame:
        raise ValueError("control frame must contain at least one part")
    try:
        tag = frame[0].decode("ascii")
    except UnicodeDecodeError:
        tag = ""
    if tag in CONTROL_ALLOWED_KINDS:
        return ControlCommand(kind=tag, parts=tuple(frame[1:]))
    return ControlCommand(kind=CONTROL_KIND_DATA, parts=tuple(frame))


class ControlChannel:
    """In-process command pipe between an owner thread and one worker thread.

    The owner side may be used from any thread (sends are serialized); the
    worker side belongs to the worker and is meant to be polled next
    to the worker's transport sockets.
    """

    def __init__(self, *, max_payload_bytes: int) -> None:
        self._owner, self._worker = socket.socketpair()
        self._decoder = FrameDecoder(max_payload_bytes=max_payload_bytes)
        self._max_payload_bytes = max_payload_bytes
        self._send_lock = Lock()
        self._closed = False

    @property
    def worker_socket(self) -> socket.socket:
        return self._worker

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, command: ControlCommand) -> None:
        frame = encode_multipart(encode_control(command), max_payload_bytes=self._max_payload_bytes)
        with self._send_lock:
            if self._closed:
                raise ControlChannelClosedError("control channel is closed")
            self._owner.sendall(frame)

    def receive(self) -> list[ControlCommand]:
        # Worker side; an owner hangup reads as an exit command.
        chunk = self._worker.recv(RECV_CHUNK_BYTES)
        if not chunk:
            return [exit_command()]
        return [decode_control(frame) for frame in self._decoder.feed(chunk)]

    def close(self) -> None:
        with self._send_lock:
            if self._closed:
                return
            self._closed = True
            self._owner.close()
            self._worker.close()
