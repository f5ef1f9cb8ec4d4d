"""core — Transport, key codec and connection lifecycle."""
from .errors import (
    HandshakeInterrupted,
    HandshakeRejected,
    InvalidKeyLevel,
    MalformedFrame,
    MalformedKey,
    NotConnected,
    OBSLinkError,
    ProtocolError,
    ProtocolVersionMismatch,
    TransportClosed,
    TransportError,
    Unreachable,
)
from .keys import EntityRef, decode, encode
from .protocol import Endpoint, EventSubscription, OpCode
from .supervisor import ConnectionState, ConnectionStatusEvent, ConnectionSupervisor, HealthStatus
from .transport import Transport, WebSocketTransport

__all__ = [
    "ConnectionState", "ConnectionStatusEvent", "ConnectionSupervisor", "HealthStatus",
    "EntityRef", "decode", "encode",
    "Endpoint", "EventSubscription", "OpCode",
    "Transport", "WebSocketTransport",
    "OBSLinkError", "TransportError", "Unreachable", "HandshakeInterrupted", "TransportClosed", "MalformedFrame",
    "ProtocolError", "HandshakeRejected", "ProtocolVersionMismatch", "NotConnected",
    "MalformedKey", "InvalidKeyLevel",
]
