"""
link.py — OBSLink: one explicit handle per OBS connection.

Builds and wires the components for a single endpoint. Consumers get the
handle passed in at construction; there is no module-level "current"
connection, so several links can coexist (and tests build their own).

    link = OBSLink(Endpoint("localhost", 4455), password="secret")
    sub = link.events.subscribe(EventCategory.STREAM_STATUS_CHANGED, on_stream)
    await link.start()
    outcome = await link.commands.streaming().toggle()
    ...
    sub.cancel()
    await link.stop()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from obs_link.commands.dispatcher import CommandDispatcher
from obs_link.core.protocol import Endpoint
from obs_link.core.supervisor import (
    ConnectionState,
    ConnectionSupervisor,
    HealthStatus,
    Probe,
    TransportFactory,
    tcp_probe,
)
from obs_link.core.transport import WebSocketTransport
from obs_link.events.bus import EventBus
from obs_link.events.refresh import StateRefresher
from obs_link.events.router import EventRouter
from obs_link.state.cache import StateCache

if TYPE_CHECKING:
    from obs_link.config.settings import OBSSettings

log = logging.getLogger(__name__)


class OBSLink:
    def __init__(
        self,
        endpoint: Endpoint,
        password: str = "",
        *,
        transport_factory: Optional[TransportFactory] = None,
        probe: Probe = tcp_probe,
        probe_attempts: int = 20,
        probe_interval: float = 1.0,
        reconnect_interval: float = 1.0,
        request_timeout: float = 5.0,
        command_retries: int = 1,
        refresh_on_connect: bool = True,
    ):
        self.state = StateCache()
        self.events = EventBus("domain-events")
        self.router = EventRouter(self.state, self.events)
        self.supervisor = ConnectionSupervisor(
            endpoint,
            password,
            router=self.router,
            transport_factory=transport_factory,
            probe=probe,
            probe_attempts=probe_attempts,
            probe_interval=probe_interval,
            reconnect_interval=reconnect_interval,
        )
        self.commands = CommandDispatcher(
            self.state,
            self.supervisor,
            request_timeout=request_timeout,
            command_retries=command_retries,
        )
        self.router.bind_responses(self.commands.handle_response)
        self.refresher = StateRefresher(self.router, self.commands)

        self._wiring = [
            self.supervisor.on_disconnected(self.commands.abandon_all),
            self.supervisor.on_disconnected(self.refresher.cancel),
        ]
        if refresh_on_connect:
            self._wiring.append(self.supervisor.on_connected(self.refresher.schedule_refresh))

    @classmethod
    def from_settings(cls, settings: "OBSSettings", **overrides) -> "OBSLink":
        """Build a link from OBSSettings (the CLI path)."""
        def _transport() -> WebSocketTransport:
            return WebSocketTransport(open_timeout=settings.open_timeout)

        kwargs = dict(
            transport_factory=_transport,
            probe_attempts=settings.probe_attempts,
            probe_interval=settings.probe_interval,
            reconnect_interval=settings.reconnect_interval,
            request_timeout=settings.request_timeout,
            command_retries=settings.command_retries,
        )
        kwargs.update(overrides)
        return cls(Endpoint(settings.host, settings.port), settings.password, **kwargs)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        await self.supervisor.start()

    async def stop(self) -> None:
        self.refresher.cancel()
        await self.supervisor.stop()
        self.commands.abandon_all("stopped")

    async def close(self) -> None:
        """Stop and release the internal wiring; the handle is unusable afterwards."""
        await self.stop()
        for sub in self._wiring:
            sub.cancel()
        self._wiring.clear()

    async def __aenter__(self) -> "OBSLink":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Status ───────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self.supervisor.connected

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.state

    def status(self) -> HealthStatus:
        """Normal / Warning / Error, for the host's status indicator."""
        return self.supervisor.status()

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return await self.supervisor.wait_connected(timeout)

    def __repr__(self) -> str:
        return f"<OBSLink {self.supervisor.endpoint} {self.supervisor.state.value}>"
