"""
core/supervisor.py — Connection lifecycle for one OBS endpoint.

    Disconnected → Connecting → Authenticating → Connected
                       ↑                            │ error / remote close
                       └────── Reconnecting ←───────┘

Startup probes the endpoint a bounded number of times (OBS may still be
starting). Once a session has existed, reconnection is retried forever at a
fixed interval until stop(). The supervisor's task is the only reader of the
transport and feeds every frame to the router in arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from obs_link.events.bus import EventBus, Subscription

from .errors import (
    HandshakeInterrupted,
    NotConnected,
    ProtocolError,
    TransportError,
    Unreachable,
)
from .protocol import Endpoint, Frame
from .transport import Transport, WebSocketTransport

if TYPE_CHECKING:
    from obs_link.events.router import EventRouter

log = logging.getLogger(__name__)

TransportFactory = Callable[[], Transport]
Probe = Callable[[Endpoint, float], Awaitable[bool]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class HealthStatus(str, Enum):
    NORMAL = "normal"    # connected
    WARNING = "warning"  # OBS is there but we are not connected (yet)
    ERROR = "error"      # OBS is absent, or the password/protocol is wrong


@dataclass(frozen=True)
class ConnectionStatusEvent:
    state: ConnectionState
    status: HealthStatus
    reason: str = ""
    retry_count: int = 0


async def tcp_probe(endpoint: Endpoint, timeout: float = 1.0) -> bool:
    """True when something accepts TCP connections on the endpoint."""
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(endpoint.host, endpoint.port), timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


class ConnectionSupervisor:
    # Lifecycle topics on self.events
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STATE_CHANGED = "state_changed"

    def __init__(
        self,
        endpoint: Endpoint,
        password: str = "",
        *,
        router: "EventRouter",
        events: Optional[EventBus] = None,
        transport_factory: Optional[TransportFactory] = None,
        probe: Probe = tcp_probe,
        probe_attempts: int = 20,
        probe_interval: float = 1.0,
        reconnect_interval: float = 1.0,
    ):
        self.endpoint = endpoint
        self.password = password
        self.probe_attempts = max(1, probe_attempts)
        self.probe_interval = probe_interval
        self.reconnect_interval = reconnect_interval

        self._router = router
        self.events = events or EventBus("connection")
        self._transport_factory = transport_factory or WebSocketTransport
        self._probe = probe

        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.retry_count = 0
        self._reachable: Optional[bool] = None
        self._config_error = False
        self._last_status: Optional[HealthStatus] = None

        self._transport: Optional[Transport] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._connected_evt = asyncio.Event()

    # ── Public surface ───────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._transport is not None and not self._closing

    def status(self) -> HealthStatus:
        if self.state == ConnectionState.CONNECTED:
            return HealthStatus.NORMAL
        if self._config_error or self._reachable is False:
            return HealthStatus.ERROR
        return HealthStatus.WARNING

    def on_connected(self, callback: Callable[[ConnectionStatusEvent], Any]) -> Subscription:
        return self.events.subscribe(self.CONNECTED, callback)

    def on_disconnected(self, callback: Callable[[ConnectionStatusEvent], Any]) -> Subscription:
        """callback receives a ConnectionStatusEvent whose ``reason`` says why."""
        return self.events.subscribe(self.DISCONNECTED, callback)

    def on_state_changed(self, callback: Callable[[ConnectionStatusEvent], Any]) -> Subscription:
        return self.events.subscribe(self.STATE_CHANGED, callback)

    def update_credentials(self, endpoint: Optional[Endpoint] = None, password: Optional[str] = None) -> None:
        """Takes effect on the next connection attempt."""
        if endpoint is not None:
            self.endpoint = endpoint
        if password is not None:
            self.password = password
            self._config_error = False

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._reachable = None
        self._config_error = False
        self._task = asyncio.create_task(self._run(), name=f"obs-link:{self.endpoint}")

    async def stop(self) -> None:
        """Close the session and wait for the receive task to finish."""
        self._closing = True
        was_connected = self.state == ConnectionState.CONNECTED
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()  # unblocks receive()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._router.reset()
        self._set_state(ConnectionState.DISCONNECTED, "stopped")
        if was_connected:
            self.events.publish(self.DISCONNECTED, self._status_event("stopped"))
        log.info(f"Supervisor for {self.endpoint} stopped")

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until connected, the startup probes run out, or ``timeout``."""
        if self.connected:
            return True
        waiter = asyncio.ensure_future(self._connected_evt.wait())
        waits = {waiter}
        if self._task is not None:
            waits.add(self._task)
        try:
            await asyncio.wait(waits, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return self.connected

    async def send(self, frame: Frame) -> None:
        """The single outbound path. Raises NotConnected."""
        transport = self._transport
        if self._closing or transport is None or self.state != ConnectionState.CONNECTED:
            raise NotConnected(f"not connected to OBS at {self.endpoint}")
        try:
            await transport.send(frame)
        except TransportError as e:
            raise NotConnected(str(e)) from e

    # ── State machine ────────────────────────────────────────────────

    def _status_event(self, reason: str = "") -> ConnectionStatusEvent:
        return ConnectionStatusEvent(self.state, self.status(), reason, self.retry_count)

    def _set_state(self, state: ConnectionState, reason: str = "") -> None:
        status_before = self._last_status
        changed = state != self.state
        self.state = state
        if state == ConnectionState.CONNECTED:
            self._connected_evt.set()
        else:
            self._connected_evt.clear()
        status = self.status()
        if changed or status != status_before:
            self._last_status = status
            log.info(f"OBS {self.endpoint}: {state.value} [{status.value}]{' — ' + reason if reason else ''}")
            self.events.publish(self.STATE_CHANGED, self._status_event(reason))

    async def _run(self) -> None:
        try:
            transport = await self._startup()
            while transport is not None and not self._closing:
                reason = await self._session(transport)
                if self._closing:
                    break
                self._lost(reason)
                transport = await self._reconnect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Nothing should get here; keep the process alive regardless.
            log.error(f"Supervisor task crashed: {e}", exc_info=True)
            self.last_error = str(e)
            self._set_state(ConnectionState.DISCONNECTED, str(e))

    async def _open(self) -> Transport:
        transport = self._transport_factory()
        return await transport.open(
            self.endpoint,
            self.password,
            on_hello=lambda: self._set_state(ConnectionState.AUTHENTICATING),
        )

    async def _startup(self) -> Optional[Transport]:
        self._set_state(ConnectionState.CONNECTING, "probing")
        for attempt in range(1, self.probe_attempts + 1):
            self.retry_count = attempt - 1
            reachable = await self._probe(self.endpoint, max(self.probe_interval, 0.5))
            if reachable:
                self._reachable = True
                try:
                    return await self._open()
                except Unreachable as e:
                    self.last_error = str(e)
                except ProtocolError as e:
                    self._fail_config(e)
                    return None
            else:
                self._reachable = False
                self.last_error = f"{self.endpoint} not reachable"
            log.debug(f"Probe {attempt}/{self.probe_attempts} for {self.endpoint}: {self.last_error}")
            self._set_state(ConnectionState.CONNECTING, self.last_error)
            if attempt < self.probe_attempts:
                await asyncio.sleep(self.probe_interval)
        self._reachable = False
        log.warning(f"OBS not reachable at {self.endpoint} after {self.probe_attempts} attempts")
        self._set_state(ConnectionState.DISCONNECTED, self.last_error or "unreachable")
        return None

    def _fail_config(self, e: ProtocolError) -> None:
        self._config_error = True
        self.last_error = str(e)
        log.error(f"OBS handshake failed at {self.endpoint}: {e}")
        self._set_state(ConnectionState.DISCONNECTED, str(e))

    async def _session(self, transport: Transport) -> str:
        self._transport = transport
        self.retry_count = 0
        self.last_error = None
        self._reachable = True
        self._config_error = False
        # Anything cached before this session may be stale: events missed
        # while disconnected cannot be replayed.
        self._router.reset()
        self._set_state(ConnectionState.CONNECTED)
        self.events.publish(self.CONNECTED, self._status_event())
        try:
            while True:
                frame = await transport.receive()
                try:
                    self._router.route(frame)
                except Exception as e:
                    log.error(f"Router failed on frame: {e}", exc_info=True)
        except TransportError as e:
            return str(e)
        finally:
            if self._transport is transport:
                self._transport = None
            await transport.close()

    def _lost(self, reason: str) -> None:
        self.last_error = reason
        self._router.reset()
        log.warning(f"Lost connection to OBS at {self.endpoint}: {reason}")
        self._set_state(ConnectionState.RECONNECTING, reason)
        self.events.publish(self.DISCONNECTED, self._status_event(reason))

    async def _reconnect(self) -> Optional[Transport]:
        while not self._closing:
            await asyncio.sleep(self.reconnect_interval)
            self.retry_count += 1
            self._set_state(ConnectionState.CONNECTING, f"attempt {self.retry_count}")
            try:
                return await self._open()
            except Unreachable as e:
                # A socket that answered and then closed means OBS is there
                self._reachable = isinstance(e, HandshakeInterrupted)
                self._config_error = False
                self.last_error = str(e)
            except ProtocolError as e:
                self._reachable = True
                self._config_error = True
                self.last_error = str(e)
            log.debug(f"Reconnect attempt {self.retry_count} failed: {self.last_error}")
            self._set_state(ConnectionState.RECONNECTING, self.last_error)
        return None
