"""
commands/switches.py — On/off commands as TurnOn / TurnOff / Toggle.

Each switch knows which cache key holds its state and which request moves
it; the dispatcher does the checking and sending. Adding a new switchable
thing means adding a class here, not another branch elsewhere.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

from obs_link.core.keys import EntityRef
from obs_link.state.cache import Field, StateCache, StateKey

if TYPE_CHECKING:
    from .dispatcher import CommandDispatcher, CommandOutcome


class Switch(ABC):
    kind: str = "switch"
    # Entity switches need a known state: an absent key means the entity
    # does not exist (or has no such property), not "off".
    requires_state: bool = False

    def __init__(self, dispatcher: "CommandDispatcher", ref: Optional[EntityRef] = None):
        self._dispatcher = dispatcher
        self.ref = ref

    @abstractmethod
    def state_key(self) -> StateKey: ...

    @abstractmethod
    def request_for(self, on: bool) -> tuple[str, Optional[dict]]: ...

    def target_known(self, cache: StateCache) -> bool:
        return True

    async def turn_on(self) -> "CommandOutcome":
        return await self._dispatcher.switch(self, True)

    async def turn_off(self) -> "CommandOutcome":
        return await self._dispatcher.switch(self, False)

    async def toggle(self) -> "CommandOutcome":
        return await self._dispatcher.switch(self, None)

    def is_on(self) -> Optional[bool]:
        """Last confirmed state, or None when unknown."""
        value = self._dispatcher.cache.get(self.state_key())
        return None if value is None else bool(value)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.ref or ''}>"


class _OutputSwitch(Switch):
    field: Field
    start: str
    stop: str

    def state_key(self) -> StateKey:
        return StateKey.singleton(self.field)

    def request_for(self, on: bool) -> tuple[str, Optional[dict]]:
        return (self.start if on else self.stop), None


class StreamSwitch(_OutputSwitch):
    kind = "streaming"
    field = Field.STREAMING
    start, stop = "StartStream", "StopStream"


class RecordSwitch(_OutputSwitch):
    kind = "recording"
    field = Field.RECORDING
    start, stop = "StartRecord", "StopRecord"


class RecordPauseSwitch(_OutputSwitch):
    kind = "record_pause"
    field = Field.RECORD_PAUSED
    start, stop = "PauseRecord", "ResumeRecord"

    def target_known(self, cache: StateCache) -> bool:
        return bool(cache.get(StateKey.singleton(Field.RECORDING)))


class ReplayBufferSwitch(_OutputSwitch):
    kind = "replay_buffer"
    field = Field.REPLAY_BUFFER
    start, stop = "StartReplayBuffer", "StopReplayBuffer"


class VirtualCamSwitch(_OutputSwitch):
    kind = "virtual_cam"
    field = Field.VIRTUAL_CAM
    start, stop = "StartVirtualCam", "StopVirtualCam"


class StudioModeSwitch(Switch):
    kind = "studio_mode"

    def state_key(self) -> StateKey:
        return StateKey.singleton(Field.STUDIO_MODE)

    def request_for(self, on: bool) -> tuple[str, Optional[dict]]:
        return "SetStudioModeEnabled", {"studioModeEnabled": on}


class MuteSwitch(Switch):
    kind = "mute"
    requires_state = True

    def state_key(self) -> StateKey:
        return StateKey.muted(self.ref)

    def target_known(self, cache: StateCache) -> bool:
        return bool(self.ref and self.ref.source_name)

    def request_for(self, on: bool) -> tuple[str, Optional[dict]]:
        return "SetInputMute", {"inputName": self.ref.source_name, "inputMuted": on}


class VisibilitySwitch(Switch):
    kind = "visibility"
    requires_state = True

    def state_key(self) -> StateKey:
        return StateKey.visible(self.ref)

    def target_known(self, cache: StateCache) -> bool:
        return bool(
            self.ref
            and self.ref.scene
            and self.ref.source_id is not None
            and StateKey.scene_item(self.ref) in cache
        )

    def request_for(self, on: bool) -> tuple[str, Optional[dict]]:
        return "SetSceneItemEnabled", {
            "sceneName": self.ref.scene,
            "sceneItemId": self.ref.source_id,
            "sceneItemEnabled": on,
        }


class FilterSwitch(Switch):
    kind = "filter"
    requires_state = True

    def __init__(self, dispatcher: "CommandDispatcher", ref: EntityRef, filter_name: str):
        super().__init__(dispatcher, ref)
        self.filter_name = filter_name

    def state_key(self) -> StateKey:
        return StateKey.filter_enabled(self.ref, self.filter_name)

    def target_known(self, cache: StateCache) -> bool:
        return bool(self.ref and self.ref.source_name and self.filter_name)

    def request_for(self, on: bool) -> tuple[str, Optional[dict]]:
        return "SetSourceFilterEnabled", {
            "sourceName": self.ref.source_name,
            "filterName": self.filter_name,
            "filterEnabled": on,
        }
