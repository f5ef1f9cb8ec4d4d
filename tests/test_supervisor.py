"""
tests/test_supervisor.py — Connection lifecycle against FakeTransport.
Intervals are zero so the retry loops run at full speed.
"""

import pytest

from obs_link.core.errors import (
    HandshakeInterrupted,
    HandshakeRejected,
    MalformedFrame,
    NotConnected,
    Unreachable,
)
from obs_link.core.protocol import Endpoint
from obs_link.core.supervisor import ConnectionState, ConnectionSupervisor, HealthStatus
from obs_link.events.router import EventRouter
from obs_link.state import Field, StateCache, StateKey

from conftest import CountingProbe, FakeTransport, TransportFactory, wait_until

ENDPOINT = Endpoint("localhost", 4455)
PROGRAM = StateKey.singleton(Field.PROGRAM_SCENE)


def make_supervisor(factory, probe=None, **kwargs):
    cache = StateCache()
    router = EventRouter(cache)
    options = dict(probe_interval=0, reconnect_interval=0)
    options.update(kwargs)
    sup = ConnectionSupervisor(
        ENDPOINT, "secret",
        router=router,
        transport_factory=factory,
        probe=probe or CountingProbe(),
        **options,
    )
    return sup, cache


@pytest.mark.asyncio
async def test_connects_after_refused_probes():
    probe = CountingProbe(fail_first=5)
    factory = TransportFactory(FakeTransport())
    sup, _ = make_supervisor(factory, probe)
    seen = []
    sup.on_state_changed(seen.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)

    assert probe.calls == 6
    assert sup.state == ConnectionState.CONNECTED
    assert sup.status() == HealthStatus.NORMAL
    assert factory.built[0].password == "secret"
    # Unreachable during probing is an error; once connected it never is.
    statuses = [e.status for e in seen]
    assert HealthStatus.ERROR in statuses
    first_ok = statuses.index(HealthStatus.NORMAL)
    assert HealthStatus.ERROR not in statuses[first_ok:]
    await sup.stop()


@pytest.mark.asyncio
async def test_probe_attempts_exhausted():
    probe = CountingProbe(fail_first=100)
    factory = TransportFactory()
    sup, _ = make_supervisor(factory, probe, probe_attempts=3)

    await sup.start()
    assert not await sup.wait_connected(timeout=2)

    assert probe.calls == 3
    assert factory.built == []
    assert sup.state == ConnectionState.DISCONNECTED
    assert sup.status() == HealthStatus.ERROR
    await sup.stop()


@pytest.mark.asyncio
async def test_handshake_rejected_is_terminal_at_startup():
    factory = TransportFactory(FakeTransport(fail_with=HandshakeRejected("authentication failed")))
    sup, _ = make_supervisor(factory)

    await sup.start()
    assert not await sup.wait_connected(timeout=2)

    assert len(factory.built) == 1
    assert sup.status() == HealthStatus.ERROR
    assert "authentication failed" in sup.last_error
    await sup.stop()


@pytest.mark.asyncio
async def test_reconnect_resets_cache_and_reports_disconnect():
    first, second = FakeTransport(), FakeTransport()
    factory = TransportFactory(first, second)
    sup, cache = make_supervisor(factory)
    lost, connects = [], []
    sup.on_disconnected(lost.append)
    sup.on_connected(connects.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    first.push_event("CurrentProgramSceneChanged", {"sceneName": "Live"})
    await wait_until(lambda: cache.get(PROGRAM) == "Live")

    first.drop("connection reset")
    await wait_until(lambda: len(factory.built) == 2 and sup.connected)

    assert first.closed
    assert PROGRAM not in cache
    assert len(lost) == 1
    assert lost[0].state == ConnectionState.RECONNECTING
    assert "connection reset" in lost[0].reason
    assert len(connects) == 2
    assert sup.retry_count == 0

    second.push_event("CurrentProgramSceneChanged", {"sceneName": "BRB"})
    await wait_until(lambda: cache.get(PROGRAM) == "BRB")
    await sup.stop()


@pytest.mark.asyncio
async def test_reconnect_keeps_trying_while_unreachable():
    factory = TransportFactory(
        FakeTransport(),
        FakeTransport(fail_with=Unreachable("refused")),
        FakeTransport(fail_with=Unreachable("refused")),
        FakeTransport(),
    )
    sup, _ = make_supervisor(factory)
    seen = []
    sup.on_state_changed(seen.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    factory.built[0].drop()
    await wait_until(lambda: len(factory.built) == 4 and sup.connected)

    assert HealthStatus.ERROR in [e.status for e in seen]
    assert sup.status() == HealthStatus.NORMAL
    await sup.stop()


@pytest.mark.asyncio
async def test_interrupted_handshake_at_startup_is_retried():
    factory = TransportFactory(
        FakeTransport(fail_with=HandshakeInterrupted("closed during handshake: code=1001")),
        FakeTransport(fail_with=Unreachable("opening handshake timed out")),
        FakeTransport(),
    )
    probe = CountingProbe()
    sup, _ = make_supervisor(factory, probe)
    seen = []
    sup.on_state_changed(seen.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)

    # The port answered every time, so these were attempts, not a config error
    assert len(factory.built) == 3
    assert probe.calls == 3
    assert HealthStatus.ERROR not in [e.status for e in seen]
    await sup.stop()


@pytest.mark.asyncio
async def test_interrupted_handshake_on_reconnect_is_a_warning():
    factory = TransportFactory(
        FakeTransport(),
        FakeTransport(fail_with=HandshakeInterrupted("closed during handshake: no close frame")),
        FakeTransport(),
    )
    sup, _ = make_supervisor(factory)
    seen = []
    sup.on_state_changed(seen.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    factory.built[0].drop()
    await wait_until(lambda: len(factory.built) == 3 and sup.connected)

    statuses = [e.status for e in seen]
    assert HealthStatus.WARNING in statuses
    assert HealthStatus.ERROR not in statuses
    assert sup.status() == HealthStatus.NORMAL
    await sup.stop()


@pytest.mark.asyncio
async def test_malformed_frame_triggers_reconnect():
    factory = TransportFactory(FakeTransport(), FakeTransport())
    sup, _ = make_supervisor(factory)

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    factory.built[0].push(MalformedFrame("not JSON"))
    await wait_until(lambda: len(factory.built) == 2 and sup.connected)
    await sup.stop()


@pytest.mark.asyncio
async def test_send_goes_through_transport():
    transport = FakeTransport()
    sup, _ = make_supervisor(TransportFactory(transport))

    with pytest.raises(NotConnected):
        await sup.send({"op": 6, "d": {}})

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    await sup.send({"op": 6, "d": {"requestType": "GetVersion", "requestId": "1"}})
    assert transport.requests("GetVersion")
    await sup.stop()


@pytest.mark.asyncio
async def test_stop_closes_session():
    transport = FakeTransport()
    sup, cache = make_supervisor(TransportFactory(transport))
    lost = []
    sup.on_disconnected(lost.append)

    await sup.start()
    assert await sup.wait_connected(timeout=2)
    transport.push_event("StudioModeStateChanged", {"studioModeEnabled": True})
    await wait_until(lambda: len(cache) > 0)

    await sup.stop()

    assert transport.closed
    assert not sup.connected
    assert sup.state == ConnectionState.DISCONNECTED
    assert len(cache) == 0
    assert [e.reason for e in lost] == ["stopped"]
    with pytest.raises(NotConnected):
        await sup.send({"op": 6, "d": {}})


@pytest.mark.asyncio
async def test_update_credentials_used_on_next_attempt():
    factory = TransportFactory(FakeTransport(), FakeTransport())
    sup, _ = make_supervisor(factory)
    await sup.start()
    assert await sup.wait_connected(timeout=2)

    sup.update_credentials(password="new-secret")
    factory.built[0].drop()
    await wait_until(lambda: len(factory.built) == 2 and sup.connected)
    assert factory.built[1].password == "new-secret"
    await sup.stop()
