"""
core/errors.py — Exception taxonomy for obs-link.

Transport errors are recovered by the supervisor's reconnect policy, protocol
errors end a single connection attempt, codec errors signal stale caller state.
None of these escape the receive loop or the supervisor task.
"""

from __future__ import annotations

from typing import Optional


class OBSLinkError(Exception):
    pass


# ── Transport ────────────────────────────────────────────────────────

class TransportError(OBSLinkError):
    pass


class Unreachable(TransportError):
    """Endpoint refused, timed out, or did not speak WebSocket."""


class HandshakeInterrupted(Unreachable):
    """The socket opened but closed or went silent before Identified (OBS starting or stopping)."""


class TransportClosed(TransportError):
    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        detail = f"code={code}" if code is not None else "no close frame"
        super().__init__(f"Connection closed ({detail}{', ' + reason if reason else ''})")


class MalformedFrame(TransportError):
    pass


# ── Protocol ─────────────────────────────────────────────────────────

class ProtocolError(OBSLinkError):
    pass


class HandshakeRejected(ProtocolError):
    pass


class ProtocolVersionMismatch(ProtocolError):
    pass


class NotConnected(OBSLinkError):
    pass


# ── Key codec ────────────────────────────────────────────────────────

class KeyCodecError(OBSLinkError, ValueError):
    pass


class MalformedKey(KeyCodecError):
    pass


class InvalidKeyLevel(KeyCodecError):
    pass
