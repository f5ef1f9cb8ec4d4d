"""
core/transport.py — Duplex JSON transport to one obs-websocket endpoint.

Network I/O and the Hello/Identify handshake only; frames are handed upward
untouched. A transport instance is single-use: the supervisor builds a fresh
one for every connection attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from . import protocol
from .errors import (
    HandshakeInterrupted,
    HandshakeRejected,
    MalformedFrame,
    ProtocolVersionMismatch,
    TransportClosed,
    Unreachable,
)
from .protocol import CloseCode, Endpoint, EventSubscription, Frame, OpCode

log = logging.getLogger(__name__)


class Transport(Protocol):
    """What the supervisor needs from a connection. Fakes in tests implement this."""

    async def open(
        self,
        endpoint: Endpoint,
        password: str,
        on_hello: Optional[Callable[[], None]] = None,
    ) -> "Transport": ...

    async def send(self, frame: Frame) -> None: ...

    async def receive(self) -> Frame: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    def __init__(
        self,
        open_timeout: float = 5.0,
        event_subscriptions: int = EventSubscription.ALL,
        max_size: Optional[int] = 2 ** 24,
    ):
        self.open_timeout = open_timeout
        self.event_subscriptions = event_subscriptions
        self.max_size = max_size

        self._ws: Optional[ClientConnection] = None
        self._send_lock = asyncio.Lock()
        self._closed = False
        self.negotiated_rpc_version: Optional[int] = None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def open(
        self,
        endpoint: Endpoint,
        password: str = "",
        on_hello: Optional[Callable[[], None]] = None,
    ) -> "WebSocketTransport":
        """
        Connect and identify. Returns self as the connection handle.

        Raises:
            Unreachable:             socket, DNS, timeout or HTTP upgrade failure
            HandshakeInterrupted:    plain close or silence before Identified (an Unreachable)
            HandshakeRejected:       missing/wrong password, or a 40xx close during Identify
            ProtocolVersionMismatch: server RPC version unsupported
        """
        try:
            self._ws = await connect(
                endpoint.url,
                subprotocols=[protocol.SUBPROTOCOL],
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as e:
            raise Unreachable(f"{endpoint}: {e}") from e

        try:
            await self._identify(password, on_hello)
        except BaseException:
            await self.close()
            raise
        log.debug(f"Identified with {endpoint} (rpc v{self.negotiated_rpc_version})")
        return self

    async def _identify(self, password: str, on_hello: Optional[Callable[[], None]]) -> None:
        try:
            hello = await self._expect(OpCode.HELLO)
            rpc_version = hello.get("rpcVersion", 0)
            if not isinstance(rpc_version, int) or rpc_version < protocol.RPC_VERSION:
                raise ProtocolVersionMismatch(
                    f"server speaks rpc v{rpc_version}, need v{protocol.RPC_VERSION}"
                )
            if on_hello is not None:
                on_hello()

            auth = None
            challenge = hello.get("authentication")
            if challenge:
                if not password:
                    raise HandshakeRejected("server requires a password but none is configured")
                auth = protocol.auth_response(password, challenge["salt"], challenge["challenge"])

            await self.send(protocol.identify(protocol.RPC_VERSION, auth, self.event_subscriptions))
            identified = await self._expect(OpCode.IDENTIFIED)
            self.negotiated_rpc_version = identified.get("negotiatedRpcVersion", protocol.RPC_VERSION)
        except TransportClosed as e:
            if e.code == CloseCode.UNSUPPORTED_RPC_VERSION:
                raise ProtocolVersionMismatch(str(e)) from e
            if e.code is not None and 4000 <= e.code < 5000:
                raise HandshakeRejected(str(e)) from e
            # Plain WebSocket close (1000-1015) or none at all: not an answer to our Identify
            raise HandshakeInterrupted(f"closed during handshake: {e}") from e
        except asyncio.TimeoutError as e:
            raise HandshakeInterrupted(f"no handshake reply within {self.open_timeout}s") from e
        except (MalformedFrame, KeyError, TypeError) as e:
            raise HandshakeRejected(f"invalid handshake: {e!r}") from e

    async def _expect(self, op: OpCode) -> dict:
        frame = await asyncio.wait_for(self.receive(), self.open_timeout)
        if protocol.opcode(frame) != op:
            raise MalformedFrame(f"expected op {op.name}, got {frame.get('op')!r}")
        return protocol.payload(frame)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                log.debug(f"Transport close error: {e}")

    @property
    def closed(self) -> bool:
        return self._closed

    # ── I/O ──────────────────────────────────────────────────────────

    async def send(self, frame: Frame) -> None:
        if self._closed or self._ws is None:
            raise TransportClosed(reason="transport is closed")
        data = json.dumps(frame)
        async with self._send_lock:
            try:
                await self._ws.send(data)
            except ConnectionClosed as e:
                raise _closed_from(e) from e

    async def receive(self) -> Frame:
        if self._ws is None:
            raise TransportClosed(reason="transport was never opened")
        try:
            raw: Any = await self._ws.recv()
        except ConnectionClosed as e:
            raise _closed_from(e) from e
        try:
            frame = json.loads(raw)
        except ValueError as e:
            raise MalformedFrame(f"undecodable frame: {e}") from e
        if not isinstance(frame, dict):
            raise MalformedFrame(f"frame is {type(frame).__name__}, expected object")
        return frame


def _closed_from(e: ConnectionClosed) -> TransportClosed:
    if e.rcvd is not None:
        return TransportClosed(e.rcvd.code, e.rcvd.reason)
    return TransportClosed()
