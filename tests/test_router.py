"""
tests/test_router.py — Event classification, cache updates and fan-out.
The router is driven directly with raw frames, no transport involved.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from obs_link.core.keys import EntityRef
from obs_link.core.protocol import OpCode
from obs_link.events import EventBus, EventCategory
from obs_link.events.router import EventRouter
from obs_link.state import Field, StateCache, StateKey


def event(event_type, **data):
    return {"op": OpCode.EVENT, "d": {"eventType": event_type, "eventIntent": 0, "eventData": data}}


@pytest.fixture
def router():
    r = EventRouter(StateCache(), EventBus())
    r.cache.set(StateKey.singleton(Field.SCENE_COLLECTION), "Show")
    return r


def collect(router, category):
    seen = []
    router.subscribe(category, seen.append)
    return seen


# ─── Ordering ──────────────────────────────────────────────────────────────────

def test_interleaved_events_keep_last_value_per_ref(router):
    mic, cam = EntityRef(source_name="Mic"), EntityRef(source_name="Cam")
    sequence = [
        ("Mic", True), ("Cam", True), ("Mic", False), ("Cam", False),
        ("Mic", True), ("Cam", True), ("Cam", False), ("Mic", False), ("Mic", True),
    ]
    seen = collect(router, EventCategory.MUTE_CHANGED)
    for name, muted in sequence:
        router.route(event("InputMuteStateChanged", inputName=name, inputMuted=muted))

    assert router.cache.get(StateKey.muted(mic)) is True
    assert router.cache.get(StateKey.muted(cam)) is False
    assert [(e.ref.source_name, e.value) for e in seen] == sequence


def test_program_scene_event(router):
    seen = collect(router, EventCategory.SCENE_CHANGED)
    router.route(event("CurrentProgramSceneChanged", sceneName="BRB"))
    assert router.cache.program_scene == "BRB"
    assert seen[0].ref == EntityRef("Show", "BRB")
    assert seen[0].value == "BRB"
    assert seen[0].event_type == "CurrentProgramSceneChanged"


# ─── Robustness ────────────────────────────────────────────────────────────────

def test_unknown_event_is_dropped(router):
    before = dict(router.cache.snapshot())
    router.route(event("SomeFutureEvent", foo=1))
    router.route({"op": 42, "d": {}})
    router.route({"nonsense": True})
    assert dict(router.cache.snapshot()) == before
    assert router.dropped == 3


def test_broken_event_data_does_not_escape(router):
    router.route(event("InputMuteStateChanged"))  # missing fields
    router.route(event("InputMuteStateChanged", inputName="Mic", inputMuted=True))
    assert router.cache.get(StateKey.muted(EntityRef(source_name="Mic"))) is True


def test_failing_subscriber_does_not_stop_others(router):
    good = MagicMock(return_value=None)
    router.subscribe(EventCategory.STREAM_STATUS_CHANGED, MagicMock(side_effect=RuntimeError("boom")))
    router.subscribe(EventCategory.STREAM_STATUS_CHANGED, good)
    router.route(event("StreamStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_STARTED"))
    good.assert_called_once()
    assert router.cache.get(StateKey.singleton(Field.STREAMING)) is True


def test_responses_go_to_sink(router):
    sink = MagicMock(return_value=None)
    router.bind_responses(sink)
    d = {"requestType": "StartStream", "requestId": "abc", "requestStatus": {"result": True, "code": 100}}
    router.route({"op": OpCode.REQUEST_RESPONSE, "d": d})
    sink.assert_called_once_with(d)


# ─── Subscriptions ─────────────────────────────────────────────────────────────

def test_unsubscribe_stops_delivery(router):
    cb = MagicMock(return_value=None)
    sub = router.subscribe(EventCategory.VOLUME_CHANGED, cb)
    router.route(event("InputVolumeChanged", inputName="Mic", inputVolumeDb=-3.0, inputVolumeMul=0.7))
    sub.cancel()
    router.route(event("InputVolumeChanged", inputName="Mic", inputVolumeDb=-9.0, inputVolumeMul=0.35))
    assert cb.call_count == 1
    assert router.bus.subscriber_count(EventCategory.VOLUME_CHANGED) == 0
    assert router.cache.get(StateKey.volume(EntityRef(source_name="Mic"))) == -9.0


@pytest.mark.asyncio
async def test_async_subscriber_is_scheduled(router):
    got = asyncio.Event()

    async def on_record(evt):
        got.set()

    router.subscribe(EventCategory.RECORD_STATUS_CHANGED, on_record)
    router.route(event("RecordStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_STARTED"))
    await asyncio.wait_for(got.wait(), 1.0)


# ─── Entity lifecycle ──────────────────────────────────────────────────────────

def test_scene_rename_moves_dependent_keys(router):
    router.route(event("SceneCreated", sceneName="Live", isGroup=False))
    router.route(event("SceneItemCreated", sceneName="Live", sourceName="Cam", sceneItemId=4, sceneItemIndex=0))
    router.route(event("SceneItemEnableStateChanged", sceneName="Live", sceneItemId=4, sceneItemEnabled=True))
    router.route(event("CurrentProgramSceneChanged", sceneName="Live"))

    router.route(event("SceneNameChanged", oldSceneName="Live", sceneName="Main"))

    cache = router.cache
    assert StateKey.scene(EntityRef("Show", "Live")) not in cache
    assert StateKey.scene(EntityRef("Show", "Main")) in cache
    assert cache.get(StateKey.visible(EntityRef("Show", "Main", 4))) is True
    assert cache.program_scene == "Main"


def test_scene_removed_drops_items(router):
    router.route(event("SceneCreated", sceneName="Live", isGroup=False))
    router.route(event("SceneItemCreated", sceneName="Live", sourceName="Cam", sceneItemId=4, sceneItemIndex=0))
    router.route(event("SceneRemoved", sceneName="Live", isGroup=False))
    assert router.cache.keys(Field.SCENE) == []
    assert router.cache.keys(Field.SCENE_ITEM) == []


def test_input_removed_drops_everything_about_it(router):
    router.route(event("InputCreated", inputName="Cam", inputKind="v4l2_input"))
    router.route(event("InputMuteStateChanged", inputName="Cam", inputMuted=False))
    router.route(event("SourceFilterEnableStateChanged", sourceName="Cam", filterName="Blur", filterEnabled=True))
    router.route(event("SceneItemCreated", sceneName="Live", sourceName="Cam", sceneItemId=4, sceneItemIndex=0))
    router.route(event("SceneItemEnableStateChanged", sceneName="Live", sceneItemId=4, sceneItemEnabled=True))
    router.route(event("InputMuteStateChanged", inputName="Mic", inputMuted=True))

    router.route(event("InputRemoved", inputName="Cam"))

    remaining = router.cache.keys()
    assert StateKey.muted(EntityRef(source_name="Mic")) in remaining
    assert all(k.ref is None or k.ref.source_name in (None, "Mic") for k in remaining)
    assert router.cache.keys(Field.VISIBLE) == []


def test_input_rename(router):
    router.route(event("InputMuteStateChanged", inputName="Mic", inputMuted=True))
    router.route(event("SceneItemCreated", sceneName="Live", sourceName="Mic", sceneItemId=2, sceneItemIndex=0))
    router.route(event("InputNameChanged", oldInputName="Mic", inputName="Voice"))
    assert router.cache.get(StateKey.muted(EntityRef(source_name="Voice"))) is True
    assert router.cache.get(StateKey.scene_item(EntityRef("Show", "Live", 2))) == "Voice"


def test_visibility_event_carries_source_name(router):
    seen = collect(router, EventCategory.SOURCE_VISIBILITY_CHANGED)
    router.route(event("SceneItemCreated", sceneName="Live", sourceName="Cam", sceneItemId=4, sceneItemIndex=0))
    router.route(event("SceneItemEnableStateChanged", sceneName="Live", sceneItemId=4, sceneItemEnabled=False))
    assert seen[0].ref == EntityRef("Show", "Live", 4, "Cam")
    assert seen[0].value is False


def test_filter_rename_and_remove(router):
    router.route(event("SourceFilterEnableStateChanged", sourceName="Cam", filterName="Blur", filterEnabled=True))
    router.route(event("SourceFilterNameChanged", sourceName="Cam", oldFilterName="Blur", filterName="Soft"))
    cam = EntityRef(source_name="Cam")
    assert router.cache.get(StateKey.filter_enabled(cam, "Soft")) is True
    router.route(event("SourceFilterRemoved", sourceName="Cam", filterName="Soft"))
    assert router.cache.keys(Field.FILTER_ENABLED) == []


def test_collection_switch_clears_scoped_state(router):
    refresher = MagicMock()
    router.bind_refresher(refresher)
    router.route(event("SceneCreated", sceneName="Live", isGroup=False))
    router.route(event("InputMuteStateChanged", inputName="Mic", inputMuted=True))
    router.route(event("StreamStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_STARTED"))

    router.route(event("CurrentSceneCollectionChanging", sceneCollectionName="Show"))
    router.route(event("CurrentSceneCollectionChanged", sceneCollectionName="Podcast"))

    cache = router.cache
    assert cache.current_collection == "Podcast"
    assert cache.keys(Field.SCENE) == []
    assert cache.keys(Field.MUTED) == []
    assert cache.get(StateKey.singleton(Field.STREAMING)) is True
    refresher.schedule_collection_refresh.assert_called_once()


# ─── Outputs ───────────────────────────────────────────────────────────────────

def test_record_pause_tracking(router):
    paused = StateKey.singleton(Field.RECORD_PAUSED)
    router.route(event("RecordStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_STARTED"))
    assert router.cache.get(paused) is False
    router.route(event("RecordStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_PAUSED"))
    assert router.cache.get(paused) is True
    assert router.cache.get(StateKey.singleton(Field.RECORDING)) is True
    router.route(event("RecordStateChanged", outputActive=True, outputState="OBS_WEBSOCKET_OUTPUT_RESUMED"))
    assert router.cache.get(paused) is False
    router.route(event("RecordStateChanged", outputActive=False, outputState="OBS_WEBSOCKET_OUTPUT_STOPPED"))
    assert router.cache.get(StateKey.singleton(Field.RECORDING)) is False


def test_studio_mode_off_forgets_preview(router):
    router.route(event("StudioModeStateChanged", studioModeEnabled=True))
    router.route(event("CurrentPreviewSceneChanged", sceneName="BRB"))
    assert router.cache.get(StateKey.singleton(Field.PREVIEW_SCENE)) == "BRB"
    router.route(event("StudioModeStateChanged", studioModeEnabled=False))
    assert StateKey.singleton(Field.PREVIEW_SCENE) not in router.cache


def test_replay_saved_is_event_only(router):
    seen = collect(router, EventCategory.REPLAY_BUFFER_SAVED)
    before = len(router.cache)
    router.route(event("ReplayBufferSaved", savedReplayPath="/tmp/replay.mkv"))
    assert seen[0].value == "/tmp/replay.mkv"
    assert len(router.cache) == before


# ─── Refresh responses ─────────────────────────────────────────────────────────

def test_apply_scene_list_and_items(router):
    router.apply_response("GetSceneList", {}, {
        "currentProgramSceneName": "Live",
        "currentPreviewSceneName": None,
        "scenes": [{"sceneName": "BRB", "sceneIndex": 1}, {"sceneName": "Live", "sceneIndex": 0}],
    })
    router.apply_response("GetSceneItemList", {"sceneName": "Live"}, {
        "sceneItems": [{"sceneItemId": 4, "sourceName": "Cam", "sceneItemEnabled": False}],
    })
    cache = router.cache
    assert cache.scenes() == ["Live", "BRB"]
    assert cache.program_scene == "Live"
    assert StateKey.singleton(Field.PREVIEW_SCENE) not in cache
    assert cache.get(StateKey.visible(EntityRef("Show", "Live", 4))) is False


def test_apply_input_state(router):
    router.apply_response("GetInputMute", {"inputName": "Mic"}, {"inputMuted": True})
    router.apply_response("GetInputVolume", {"inputName": "Mic"}, {"inputVolumeDb": -12.5, "inputVolumeMul": 0.24})
    router.apply_response("GetSourceFilterList", {"sourceName": "Mic"}, {
        "filters": [{"filterName": "Gate", "filterEnabled": True}, {"filterName": "EQ", "filterEnabled": False}],
    })
    mic = EntityRef(source_name="Mic")
    assert router.cache.get(StateKey.muted(mic)) is True
    assert router.cache.get(StateKey.volume(mic)) == -12.5
    assert router.cache.get(StateKey.filter_enabled(mic, "EQ")) is False


def test_apply_unknown_response_is_ignored(router):
    before = len(router.cache)
    router.apply_response("GetHotkeyList", {}, {"hotkeys": []})
    assert len(router.cache) == before
