"""
tests/conftest.py — Fakes shared by the obs-link tests.

FakeTransport stands in for the WebSocket: tests push frames into its inbox
and inspect what was sent. It can answer requests itself from a table of
canned responses, which is enough to play OBS for the refresh logic.
"""

import asyncio
from typing import Optional

import pytest

from obs_link.core.errors import TransportClosed
from obs_link.core.protocol import OpCode


class FakeTransport:
    def __init__(
        self,
        responses: Optional[dict] = None,
        fail_with: Optional[Exception] = None,
        send_delay: float = 0.0,
    ):
        self.responses = responses
        self.fail_with = fail_with
        self.send_delay = send_delay  # >0 makes send() actually yield, like a socket write
        self.in_flight = 0
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False
        self.password = None

    async def open(self, endpoint, password="", on_hello=None):
        if self.fail_with is not None:
            raise self.fail_with
        if on_hello is not None:
            on_hello()
        self.password = password
        self.opened = True
        return self

    async def send(self, frame):
        if self.send_delay:
            self.in_flight += 1
            try:
                await asyncio.sleep(self.send_delay)
            finally:
                self.in_flight -= 1
        if self.closed:
            raise TransportClosed(reason="closed")
        self.sent.append(frame)
        if self.responses is not None and frame["op"] == OpCode.REQUEST:
            d = frame["d"]
            data = self.responses.get(d["requestType"])
            if callable(data):
                data = data(d.get("requestData", {}))
            self.respond_to(d, data)

    async def receive(self):
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise TransportClosed(1000, "closed")
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(None)

    # ── Test helpers ─────────────────────────────────────────────────

    def push(self, frame):
        self.inbox.put_nowait(frame)

    def push_event(self, event_type, data=None):
        self.push({"op": OpCode.EVENT, "d": {"eventType": event_type, "eventIntent": 0, "eventData": data or {}}})

    def drop(self, reason="connection reset"):
        self.inbox.put_nowait(TransportClosed(1006, reason))

    def respond_to(self, request_d, data=None):
        ok = data is not None
        self.push({
            "op": OpCode.REQUEST_RESPONSE,
            "d": {
                "requestType": request_d["requestType"],
                "requestId": request_d["requestId"],
                "requestStatus": {"result": ok, "code": 100 if ok else 600},
                "responseData": data or {},
            },
        })

    def requests(self, request_type=None):
        return [
            f["d"] for f in self.sent
            if f["op"] == OpCode.REQUEST and (request_type is None or f["d"]["requestType"] == request_type)
        ]


class TransportFactory:
    """Hands out FakeTransports in order; remembers every one it built."""

    def __init__(self, *transports: FakeTransport):
        self._queue = list(transports)
        self.built: list[FakeTransport] = []

    def __call__(self):
        transport = self._queue.pop(0) if self._queue else FakeTransport()
        self.built.append(transport)
        return transport


class CountingProbe:
    def __init__(self, fail_first: int = 0):
        self.fail_first = fail_first
        self.calls = 0

    async def __call__(self, endpoint, timeout):
        self.calls += 1
        return self.calls > self.fail_first


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def obs_responses():
    """Canned answers for the refresh requests: one collection, two scenes, a mic."""
    return {
        "GetSceneCollectionList": {"currentSceneCollectionName": "Show", "sceneCollections": ["Show", "Podcast"]},
        "GetCurrentProgramScene": {"currentProgramSceneName": "Live"},
        "GetStudioModeEnabled": {"studioModeEnabled": False},
        "GetStreamStatus": {"outputActive": False},
        "GetRecordStatus": {"outputActive": False, "outputPaused": False},
        "GetReplayBufferStatus": None,
        "GetVirtualCamStatus": {"outputActive": False},
        "GetSceneList": {
            "currentProgramSceneName": "Live",
            "currentPreviewSceneName": None,
            "scenes": [
                {"sceneName": "BRB", "sceneIndex": 1},
                {"sceneName": "Live", "sceneIndex": 0},
            ],
        },
        "GetSceneItemList": lambda req: {
            "sceneItems": [
                {"sceneItemId": 1, "sourceName": "Camera", "sceneItemEnabled": True},
                {"sceneItemId": 2, "sourceName": "Mic", "sceneItemEnabled": True},
            ] if req["sceneName"] == "Live" else []
        },
        "GetInputList": {"inputs": [
            {"inputName": "Camera", "inputKind": "v4l2_input"},
            {"inputName": "Mic", "inputKind": "pulse_input_capture"},
        ]},
        "GetInputMute": lambda req: {"inputMuted": False} if req["inputName"] == "Mic" else None,
        "GetInputVolume": lambda req: {"inputVolumeDb": -6.0, "inputVolumeMul": 0.5} if req["inputName"] == "Mic" else None,
        "GetSourceFilterList": lambda req: {
            "filters": [{"filterName": "Gate", "filterEnabled": True}] if req["sourceName"] == "Mic" else []
        },
    }
