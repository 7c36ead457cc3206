from __future__ import annotations

from collections.abc import Sequence

# Wire format of one multipart message:
#   [u32 body length][u32 part count]([u32 part length][part bytes])*
# All integers are big-endian. The body length excludes its own 4 bytes.

HEADER_BYTES = 4


class FrameError(ValueError):
    # Malformed frame on the wire.
    pass


class FrameTooLargeError(FrameError):
    # Declared body length exceeds the configured cap before any decode.
    pass


def _u32(value: int) -> bytes:
    return value.to_bytes(HEADER_BYTES, byteorder="big", signed=False)


def _read_u32(data: bytes | memoryview, offset: int) -> int:
    return int.from_bytes(data[offset : offset + HEADER_BYTES], byteorder="big", signed=False)


def encode_multipart(parts: Sequence[bytes], *, max_payload_bytes: int | None = None) -> bytes:
    if not parts:
        raise FrameError("multipart message must contain at least one part")
    body = bytearray(_u32(len(parts)))
    for part in parts:
        if not isinstance(part, (bytes, bytearray, memoryview)):
            raise FrameError(f"message parts must be bytes, got {type(part).__name__}")
        body += _u32(len(part))
        body += part
    if max_payload_bytes is not None and len(body) > max_payload_bytes:
        raise FrameTooLargeError("multipart body exceeds max_payload_bytes")
    return _u32(len(body)) + bytes(body)


def decode_body(body: bytes) -> list[bytes]:
    if len(body) < HEADER_BYTES:
        raise FrameError("multipart body must contain a 4-byte part count")
    count = _read_u32(body, 0)
    offset = HEADER_BYTES
    parts: list[bytes] = []
    for _ in range(count):
        if offset + HEADER_BYTES > len(body):
            raise FrameError("truncated part length prefix")
        size = _read_u32(body, offset)
        offset += HEADER_BYTES
        if offset + size > len(body):
            raise FrameError("part length exceeds body")
        parts.append(bytes(body[offset : offset + size]))
        offset += size
    if offset != len(body):
        raise FrameError("trailing bytes after the last part")
    if not parts:
        raise FrameError("multipart message must contain at least one part")
    return parts


class FrameDecoder:
    # Incremental stream decoder: feed raw socket bytes, get complete messages back.
    def __init__(self, *, max_payload_bytes: int) -> None:
        if max_payload_bytes <= 0:
            raise ValueError("max_payload_bytes must be > 0")
        self._max_payload_bytes = max_payload_bytes
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[list[bytes]]:
        self._buffer.extend(data)
        messages: list[list[bytes]] = []
        while len(self._buffer) >= HEADER_BYTES:
            declared = _read_u32(self._buffer, 0)
            if declared > self._max_payload_bytes:
                raise FrameTooLargeError("framed payload exceeds max_payload_bytes")
            end = HEADER_BYTES + declared
            if len(self._buffer) < end:
                break
            body = bytes(self._buffer[HEADER_BYTES:end])
            del self._buffer[:end]
            messages.append(decode_body(body))
        return messages
