"""
events/router.py — Classifies inbound frames, updates the cache, fans out.

Runs on the supervisor's receive task, one frame at a time, in arrival
order. It is the only writer of the StateCache: remote events go through
route(), refresh responses through apply_response(). Unknown frames are
logged and dropped; a handler failure never stops the loop.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Optional

from obs_link.core import protocol
from obs_link.core.keys import EntityRef
from obs_link.core.protocol import Frame, OpCode
from obs_link.state.cache import Field, StateCache, StateKey

from .bus import EventBus, Subscription
from .types import DomainEvent, EventCategory

if TYPE_CHECKING:
    from .refresh import StateRefresher

log = logging.getLogger(__name__)

ResponseSink = Callable[[dict], None]

RECORD_PAUSED_STATE = "OBS_WEBSOCKET_OUTPUT_PAUSED"
RECORD_RESUMED_STATE = "OBS_WEBSOCKET_OUTPUT_RESUMED"

# Survive a scene collection switch: these belong to OBS, not the collection.
_GLOBAL_FIELDS = frozenset({
    Field.STREAMING, Field.RECORDING, Field.RECORD_PAUSED,
    Field.REPLAY_BUFFER, Field.VIRTUAL_CAM, Field.STUDIO_MODE,
})
_INPUT_FIELDS = frozenset({Field.SOURCE, Field.MUTED, Field.VOLUME, Field.FILTER_ENABLED})


class EventRouter:
    def __init__(self, cache: StateCache, bus: Optional[EventBus] = None):
        self.cache = cache
        self.bus = bus or EventBus("domain-events")
        self._response_sink: Optional[ResponseSink] = None
        self._refresher: Optional["StateRefresher"] = None
        self.routed = 0
        self.dropped = 0

        self._event_handlers: dict[str, Callable[[dict], None]] = {
            "CurrentProgramSceneChanged": self._on_program_scene_changed,
            "CurrentPreviewSceneChanged": self._on_preview_scene_changed,
            "SceneCreated": self._on_scene_created,
            "SceneRemoved": self._on_scene_removed,
            "SceneNameChanged": self._on_scene_renamed,
            "CurrentSceneCollectionChanging": self._on_collection_changing,
            "CurrentSceneCollectionChanged": self._on_collection_changed,
            "InputCreated": self._on_input_created,
            "InputRemoved": self._on_input_removed,
            "InputNameChanged": self._on_input_renamed,
            "SceneItemCreated": self._on_scene_item_created,
            "SceneItemRemoved": self._on_scene_item_removed,
            "SceneItemEnableStateChanged": self._on_scene_item_enabled,
            "InputMuteStateChanged": self._on_input_mute,
            "InputVolumeChanged": self._on_input_volume,
            "SourceFilterEnableStateChanged": self._on_filter_enabled,
            "SourceFilterCreated": self._on_filter_created,
            "SourceFilterRemoved": self._on_filter_removed,
            "SourceFilterNameChanged": self._on_filter_renamed,
            "StreamStateChanged": self._on_stream_state,
            "RecordStateChanged": self._on_record_state,
            "ReplayBufferStateChanged": self._on_replay_buffer_state,
            "ReplayBufferSaved": self._on_replay_buffer_saved,
            "VirtualcamStateChanged": self._on_virtual_cam_state,
            "StudioModeStateChanged": self._on_studio_mode,
            "ExitStarted": self._on_exit_started,
        }
        self._response_handlers: dict[str, Callable[[dict, dict], None]] = {
            "GetCurrentProgramScene": self._apply_program_scene,
            "GetCurrentPreviewScene": self._apply_preview_scene,
            "GetStudioModeEnabled": self._apply_studio_mode,
            "GetSceneCollectionList": self._apply_collection_list,
            "GetSceneList": self._apply_scene_list,
            "GetSceneItemList": self._apply_scene_item_list,
            "GetInputList": self._apply_input_list,
            "GetInputMute": self._apply_input_mute,
            "GetInputVolume": self._apply_input_volume,
            "GetSourceFilterList": self._apply_filter_list,
            "GetSourceFilter": self._apply_filter,
            "GetStreamStatus": self._apply_stream_status,
            "GetRecordStatus": self._apply_record_status,
            "GetReplayBufferStatus": self._apply_replay_buffer_status,
            "GetVirtualCamStatus": self._apply_virtual_cam_status,
        }

    # ── Wiring ───────────────────────────────────────────────────────

    def bind_responses(self, sink: ResponseSink) -> None:
        """Where RequestResponse payloads go (the command dispatcher)."""
        self._response_sink = sink

    def bind_refresher(self, refresher: "StateRefresher") -> None:
        self._refresher = refresher

    def subscribe(self, category: EventCategory, callback: Callable[[DomainEvent], Any]) -> Subscription:
        return self.bus.subscribe(category, callback)

    def unsubscribe(self, sub: Subscription) -> bool:
        return self.bus.unsubscribe(sub)

    def reset(self) -> None:
        """Forget everything; called on every (re)connection and on disconnect."""
        self.cache.reset()

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._event_handlers)

    # ── Inbound ──────────────────────────────────────────────────────

    def route(self, frame: Frame) -> None:
        op = protocol.opcode(frame)
        d = protocol.payload(frame)
        try:
            if op == OpCode.EVENT:
                self._route_event(d)
            elif op in (OpCode.REQUEST_RESPONSE, OpCode.REQUEST_BATCH_RESPONSE):
                if self._response_sink is not None:
                    self._response_sink(d)
            else:
                self.dropped += 1
                log.debug(f"Dropping frame with op {frame.get('op')!r}")
        except Exception as e:
            self.dropped += 1
            log.error(f"Error routing frame op={frame.get('op')!r}: {e}", exc_info=True)

    def _route_event(self, d: dict) -> None:
        event_type = d.get("eventType", "")
        handler = self._event_handlers.get(event_type)
        if handler is None:
            self.dropped += 1
            log.debug(f"Ignoring unsupported event {event_type!r}")
            return
        handler(d.get("eventData") or {})
        self.routed += 1

    def apply_response(self, request_type: str, request_data: dict, response_data: dict) -> None:
        """Write a successful read-request response into the cache."""
        handler = self._response_handlers.get(request_type)
        if handler is None:
            log.debug(f"No state mapping for {request_type} response")
            return
        try:
            handler(request_data or {}, response_data or {})
        except Exception as e:
            log.error(f"Error applying {request_type} response: {e}", exc_info=True)

    # ── Helpers ──────────────────────────────────────────────────────

    def _emit(self, category: EventCategory, ref: Optional[EntityRef], value: Any, origin: str, **data: Any) -> None:
        self.bus.publish(category, DomainEvent(category, ref, value, origin, data))

    def _scene_ref(self, scene_name: str, item_id: Optional[int] = None) -> EntityRef:
        return EntityRef(collection=self.cache.current_collection, scene=scene_name, source_id=item_id)

    def _in_scene(self, scene_name: str) -> Callable[[StateKey], bool]:
        collection = self.cache.current_collection
        return lambda k: (
            k.ref is not None
            and k.field not in _INPUT_FIELDS
            and k.ref.collection == collection
            and k.ref.scene == scene_name
        )

    def _of_source(self, source_name: str) -> Callable[[StateKey], bool]:
        return lambda k: k.field in _INPUT_FIELDS and k.ref is not None and k.ref.source_name == source_name

    def _item_source(self, item: EntityRef) -> Optional[str]:
        return self.cache.get(StateKey.scene_item(item))

    def _set_flag(self, field: Field, value: bool, category: EventCategory, origin: str, **data: Any) -> None:
        self.cache.set(StateKey.singleton(field), value)
        self._emit(category, None, value, origin, **data)

    # ── Scenes ───────────────────────────────────────────────────────

    def _on_program_scene_changed(self, d: dict) -> None:
        self._apply_program_scene({}, d, origin="CurrentProgramSceneChanged")

    def _apply_program_scene(self, _req: dict, d: dict, origin: str = "GetCurrentProgramScene") -> None:
        name = d.get("sceneName") or d.get("currentProgramSceneName")
        if not name:
            return
        self.cache.set(StateKey.singleton(Field.PROGRAM_SCENE), name)
        self._emit(EventCategory.SCENE_CHANGED, self._scene_ref(name), name, origin)

    def _on_preview_scene_changed(self, d: dict) -> None:
        self._apply_preview_scene({}, d, origin="CurrentPreviewSceneChanged")

    def _apply_preview_scene(self, _req: dict, d: dict, origin: str = "GetCurrentPreviewScene") -> None:
        name = d.get("sceneName") or d.get("currentPreviewSceneName")
        if not name:
            return
        self.cache.set(StateKey.singleton(Field.PREVIEW_SCENE), name)
        self._emit(EventCategory.PREVIEW_SCENE_CHANGED, self._scene_ref(name), name, origin)

    def _on_scene_created(self, d: dict) -> None:
        if d.get("isGroup"):
            return
        name = d["sceneName"]
        ref = self._scene_ref(name)
        self.cache.set(StateKey.scene(ref), len(self.cache.keys(Field.SCENE)))
        self._emit(EventCategory.SCENE_CREATED, ref, name, "SceneCreated")

    def _on_scene_removed(self, d: dict) -> None:
        if d.get("isGroup"):
            return
        name = d["sceneName"]
        ref = self._scene_ref(name)
        self.cache.remove_where(self._in_scene(name))
        # A scene is also a source that can carry filters
        self.cache.remove_where(lambda k: k.field == Field.FILTER_ENABLED and k.ref.source_name == name)
        self._emit(EventCategory.SCENE_REMOVED, ref, None, "SceneRemoved")

    def _on_scene_renamed(self, d: dict) -> None:
        old, new = d["oldSceneName"], d["sceneName"]
        in_scene = self._in_scene(old)

        def rewrite(k: StateKey) -> Optional[StateKey]:
            if in_scene(k):
                return k._replace(ref=replace(k.ref, scene=new))
            if k.field == Field.FILTER_ENABLED and k.ref.source_name == old:
                return k._replace(ref=k.ref.with_name(new))
            return None

        self.cache.rekey_where(rewrite)
        for field in (Field.PROGRAM_SCENE, Field.PREVIEW_SCENE):
            key = StateKey.singleton(field)
            if self.cache.get(key) == old:
                self.cache.set(key, new)
        self._emit(EventCategory.SCENE_RENAMED, self._scene_ref(new), new, "SceneNameChanged", old_name=old)

    def _apply_scene_list(self, _req: dict, d: dict) -> None:
        for scene in d.get("scenes", []):
            name = scene.get("sceneName")
            if not name:
                continue
            ref = self._scene_ref(name)
            self.cache.set(StateKey.scene(ref), scene.get("sceneIndex", 0))
            self._emit(EventCategory.SCENE_CREATED, ref, name, "GetSceneList")
        self._apply_program_scene({}, d, origin="GetSceneList")
        self._apply_preview_scene({}, d, origin="GetSceneList")

    # ── Scene collections ────────────────────────────────────────────

    def _on_collection_changing(self, d: dict) -> None:
        dropped = self.cache.remove_where(lambda k: k.field not in _GLOBAL_FIELDS)
        log.info(f"Scene collection changing to {d.get('sceneCollectionName')!r}; dropped {len(dropped)} entries")

    def _on_collection_changed(self, d: dict) -> None:
        name = d.get("sceneCollectionName", "")
        self.cache.set(StateKey.singleton(Field.SCENE_COLLECTION), name)
        self._emit(EventCategory.SCENE_COLLECTION_CHANGED, EntityRef(collection=name), name,
                   "CurrentSceneCollectionChanged")
        if self._refresher is not None:
            self._refresher.schedule_collection_refresh()

    def _apply_collection_list(self, _req: dict, d: dict) -> None:
        name = d.get("currentSceneCollectionName")
        if not name:
            return
        self.cache.set(StateKey.singleton(Field.SCENE_COLLECTION), name)
        self._emit(EventCategory.SCENE_COLLECTION_CHANGED, EntityRef(collection=name), name,
                   "GetSceneCollectionList", collections=d.get("sceneCollections", []))

    # ── Inputs ───────────────────────────────────────────────────────

    def _on_input_created(self, d: dict) -> None:
        name = d["inputName"]
        ref = EntityRef(source_name=name)
        self.cache.set(StateKey.source(ref), d.get("inputKind", ""))
        self._emit(EventCategory.SOURCE_CREATED, ref, name, "InputCreated", kind=d.get("inputKind", ""))

    def _on_input_removed(self, d: dict) -> None:
        name = d["inputName"]
        self.cache.remove_where(self._of_source(name))
        items = [k.ref for k in self.cache.keys(Field.SCENE_ITEM) if self.cache.get(k) == name]
        self.cache.remove_where(lambda k: k.field in (Field.SCENE_ITEM, Field.VISIBLE) and k.ref in items)
        self._emit(EventCategory.SOURCE_REMOVED, EntityRef(source_name=name), None, "InputRemoved")

    def _on_input_renamed(self, d: dict) -> None:
        old, new = d["oldInputName"], d["inputName"]
        of_old = self._of_source(old)
        self.cache.rekey_where(lambda k: k._replace(ref=k.ref.with_name(new)) if of_old(k) else None)
        for key in self.cache.keys(Field.SCENE_ITEM):
            if self.cache.get(key) == old:
                self.cache.set(key, new)
        self._emit(EventCategory.SOURCE_RENAMED, EntityRef(source_name=new), new, "InputNameChanged", old_name=old)

    def _apply_input_list(self, _req: dict, d: dict) -> None:
        for item in d.get("inputs", []):
            name = item.get("inputName")
            if name:
                ref = EntityRef(source_name=name)
                self.cache.set(StateKey.source(ref), item.get("inputKind", ""))
                self._emit(EventCategory.SOURCE_CREATED, ref, name, "GetInputList", kind=item.get("inputKind", ""))

    def _on_input_mute(self, d: dict) -> None:
        self._apply_input_mute({"inputName": d["inputName"]}, d, origin="InputMuteStateChanged")

    def _apply_input_mute(self, req: dict, d: dict, origin: str = "GetInputMute") -> None:
        ref = EntityRef(source_name=req["inputName"])
        muted = bool(d["inputMuted"])
        self.cache.set(StateKey.muted(ref), muted)
        self._emit(EventCategory.MUTE_CHANGED, ref, muted, origin)

    def _on_input_volume(self, d: dict) -> None:
        self._apply_input_volume({"inputName": d["inputName"]}, d, origin="InputVolumeChanged")

    def _apply_input_volume(self, req: dict, d: dict, origin: str = "GetInputVolume") -> None:
        ref = EntityRef(source_name=req["inputName"])
        db = float(d["inputVolumeDb"])
        self.cache.set(StateKey.volume(ref), db)
        self._emit(EventCategory.VOLUME_CHANGED, ref, db, origin, multiplier=d.get("inputVolumeMul"))

    # ── Scene items ──────────────────────────────────────────────────

    def _on_scene_item_created(self, d: dict) -> None:
        ref = self._scene_ref(d["sceneName"], int(d["sceneItemId"])).with_name(d.get("sourceName"))
        self.cache.set(StateKey.scene_item(ref), d.get("sourceName"))
        self._emit(EventCategory.SCENE_ITEM_CREATED, ref, d.get("sourceName"), "SceneItemCreated")

    def _on_scene_item_removed(self, d: dict) -> None:
        ref = self._scene_ref(d["sceneName"], int(d["sceneItemId"]))
        self.cache.remove(StateKey.scene_item(ref))
        self.cache.remove(StateKey.visible(ref))
        self._emit(EventCategory.SCENE_ITEM_REMOVED, ref.with_name(d.get("sourceName")), None, "SceneItemRemoved")

    def _on_scene_item_enabled(self, d: dict) -> None:
        ref = self._scene_ref(d["sceneName"], int(d["sceneItemId"]))
        enabled = bool(d["sceneItemEnabled"])
        self.cache.set(StateKey.visible(ref), enabled)
        self._emit(EventCategory.SOURCE_VISIBILITY_CHANGED, ref.with_name(self._item_source(ref)), enabled,
                   "SceneItemEnableStateChanged")

    def _apply_scene_item_list(self, req: dict, d: dict) -> None:
        scene = req["sceneName"]
        for item in d.get("sceneItems", []):
            ref = self._scene_ref(scene, int(item["sceneItemId"])).with_name(item.get("sourceName"))
            self.cache.set(StateKey.scene_item(ref), item.get("sourceName"))
            self._emit(EventCategory.SCENE_ITEM_CREATED, ref, item.get("sourceName"), "GetSceneItemList")
            if "sceneItemEnabled" in item:
                enabled = bool(item["sceneItemEnabled"])
                self.cache.set(StateKey.visible(ref), enabled)
                self._emit(EventCategory.SOURCE_VISIBILITY_CHANGED, ref, enabled, "GetSceneItemList")

    # ── Filters ──────────────────────────────────────────────────────

    def _on_filter_enabled(self, d: dict) -> None:
        self._set_filter(d["sourceName"], d["filterName"], bool(d["filterEnabled"]), "SourceFilterEnableStateChanged")

    def _set_filter(self, source: str, filter_name: str, enabled: bool, origin: str) -> None:
        ref = EntityRef(source_name=source)
        self.cache.set(StateKey.filter_enabled(ref, filter_name), enabled)
        self._emit(EventCategory.FILTER_ENABLED_CHANGED, ref, enabled, origin, filter=filter_name)

    def _on_filter_created(self, d: dict) -> None:
        source, filter_name = d["sourceName"], d["filterName"]
        self._emit(EventCategory.FILTER_LIST_CHANGED, EntityRef(source_name=source), filter_name,
                   "SourceFilterCreated", filter=filter_name)
        # The event does not say whether the filter is enabled; ask.
        if self._refresher is not None:
            self._refresher.schedule_filter_refresh(source, filter_name)

    def _on_filter_removed(self, d: dict) -> None:
        ref = EntityRef(source_name=d["sourceName"])
        self.cache.remove(StateKey.filter_enabled(ref, d["filterName"]))
        self._emit(EventCategory.FILTER_LIST_CHANGED, ref, None, "SourceFilterRemoved", filter=d["filterName"])

    def _on_filter_renamed(self, d: dict) -> None:
        ref = EntityRef(source_name=d["sourceName"])
        old, new = d["oldFilterName"], d["filterName"]
        old_key = StateKey.filter_enabled(ref, old)
        self.cache.rekey_where(lambda k: k._replace(name=new) if k == old_key else None)
        self._emit(EventCategory.FILTER_LIST_CHANGED, ref, new, "SourceFilterNameChanged", filter=new, old_name=old)

    def _apply_filter_list(self, req: dict, d: dict) -> None:
        for f in d.get("filters", []):
            if "filterName" in f and "filterEnabled" in f:
                self._set_filter(req["sourceName"], f["filterName"], bool(f["filterEnabled"]), "GetSourceFilterList")

    def _apply_filter(self, req: dict, d: dict) -> None:
        self._set_filter(req["sourceName"], req["filterName"], bool(d["filterEnabled"]), "GetSourceFilter")

    # ── Outputs ──────────────────────────────────────────────────────

    def _on_stream_state(self, d: dict) -> None:
        self._set_flag(Field.STREAMING, bool(d.get("outputActive")), EventCategory.STREAM_STATUS_CHANGED,
                       "StreamStateChanged", state=d.get("outputState", ""))

    def _apply_stream_status(self, _req: dict, d: dict) -> None:
        self._set_flag(Field.STREAMING, bool(d.get("outputActive")), EventCategory.STREAM_STATUS_CHANGED,
                       "GetStreamStatus", reconnecting=d.get("outputReconnecting", False))

    def _on_record_state(self, d: dict) -> None:
        state = d.get("outputState", "")
        active = bool(d.get("outputActive"))
        paused_key = StateKey.singleton(Field.RECORD_PAUSED)
        if state == RECORD_PAUSED_STATE:
            self.cache.set(paused_key, True)
        elif state == RECORD_RESUMED_STATE or not active:
            self.cache.set(paused_key, False)
        elif paused_key not in self.cache:
            self.cache.set(paused_key, False)
        self._set_flag(Field.RECORDING, active, EventCategory.RECORD_STATUS_CHANGED, "RecordStateChanged",
                       state=state, paused=self.cache.get(paused_key), path=d.get("outputPath"))

    def _apply_record_status(self, _req: dict, d: dict) -> None:
        paused = bool(d.get("outputPaused"))
        self.cache.set(StateKey.singleton(Field.RECORD_PAUSED), paused)
        self._set_flag(Field.RECORDING, bool(d.get("outputActive")), EventCategory.RECORD_STATUS_CHANGED,
                       "GetRecordStatus", paused=paused)

    def _on_replay_buffer_state(self, d: dict) -> None:
        self._set_flag(Field.REPLAY_BUFFER, bool(d.get("outputActive")), EventCategory.REPLAY_BUFFER_STATUS_CHANGED,
                       "ReplayBufferStateChanged", state=d.get("outputState", ""))

    def _apply_replay_buffer_status(self, _req: dict, d: dict) -> None:
        self._set_flag(Field.REPLAY_BUFFER, bool(d.get("outputActive")), EventCategory.REPLAY_BUFFER_STATUS_CHANGED,
                       "GetReplayBufferStatus")

    def _on_replay_buffer_saved(self, d: dict) -> None:
        self._emit(EventCategory.REPLAY_BUFFER_SAVED, None, d.get("savedReplayPath", ""), "ReplayBufferSaved")

    def _on_virtual_cam_state(self, d: dict) -> None:
        self._set_flag(Field.VIRTUAL_CAM, bool(d.get("outputActive")), EventCategory.VIRTUAL_CAM_STATUS_CHANGED,
                       "VirtualcamStateChanged", state=d.get("outputState", ""))

    def _apply_virtual_cam_status(self, _req: dict, d: dict) -> None:
        self._set_flag(Field.VIRTUAL_CAM, bool(d.get("outputActive")), EventCategory.VIRTUAL_CAM_STATUS_CHANGED,
                       "GetVirtualCamStatus")

    # ── Studio mode / general ────────────────────────────────────────

    def _on_studio_mode(self, d: dict) -> None:
        self._apply_studio_mode({}, d, origin="StudioModeStateChanged")

    def _apply_studio_mode(self, _req: dict, d: dict, origin: str = "GetStudioModeEnabled") -> None:
        enabled = bool(d.get("studioModeEnabled"))
        if not enabled:
            self.cache.remove(StateKey.singleton(Field.PREVIEW_SCENE))
        self._set_flag(Field.STUDIO_MODE, enabled, EventCategory.STUDIO_MODE_CHANGED, origin)

    def _on_exit_started(self, d: dict) -> None:
        log.info("OBS is shutting down")
        self._emit(EventCategory.REMOTE_EXITING, None, None, "ExitStarted")
