# Transport package: multipart framing, message sockets and the worker control channel.

from nodule.transport.control_plane import (
    CONTROL_KIND_DATA,
    CONTROL_KIND_EXIT,
    CONTROL_KIND_SUBSCRIBE,
    ControlChannel,
    ControlChannelClosedError,
    ControlCommand,
    data_command,
    decode_control,
    encode_control,
    exit_command,
    subscribe_command,
)
from nodule.transport.framing import FrameDecoder, FrameError, FrameTooLargeError, decode_body, encode_multipart
from nodule.transport.message_socket import (
    SOCKET_KINDS,
    Endpoint,
    MessageSocket,
    SocketKindError,
    TransportError,
    UnsupportedEndpointError,
    parse_endpoint,
)

__all__ = [
    "CONTROL_KIND_DATA",
    "CONTROL_KIND_EXIT",
    "CONTROL_KIND_SUBSCRIBE",
    "ControlChannel",
    "ControlChannelClosedError",
    "ControlCommand",
    "Endpoint",
    "FrameDecoder",
    "FrameError",
    "FrameTooLargeError",
    "MessageSocket",
    "SOCKET_KINDS",
    "SocketKindError",
    "TransportError",
    "UnsupportedEndpointError",
    "data_command",
    "decode_body",
    "decode_control",
    "encode_control",
    "encode_multipart",
    "exit_command",
    "parse_endpoint",
    "subscribe_command",
]
