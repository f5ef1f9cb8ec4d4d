"""
commands/dispatcher.py — Outbound commands with precondition checks.

Every public command returns a CommandOutcome as soon as the request is on
the wire; OBS confirms later through an event that the router writes into
the cache. The dispatcher reads the cache, never writes it.

Toggle is best effort: it inverts the cached value, which can be one event
behind. Pressing twice while OBS is still switching may yield NO_OP.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from obs_link.core import protocol
from obs_link.core.errors import NotConnected
from obs_link.core.keys import EntityRef
from obs_link.core.protocol import Frame
from obs_link.state.cache import Field, StateCache, StateKey

from .switches import (
    FilterSwitch,
    MuteSwitch,
    RecordPauseSwitch,
    RecordSwitch,
    ReplayBufferSwitch,
    StreamSwitch,
    StudioModeSwitch,
    Switch,
    VirtualCamSwitch,
    VisibilitySwitch,
)

log = logging.getLogger(__name__)

MIN_VOLUME_DB = -100.0
MAX_VOLUME_DB = 26.0
VOLUME_EPSILON_DB = 0.01


class CommandOutcome(str, Enum):
    SENT = "sent"
    NO_OP = "no_op"                    # already in the desired state, nothing sent
    NOT_CONNECTED = "not_connected"
    INVALID_TARGET = "invalid_target"  # unknown entity, or state unknown for a toggle

    @property
    def ok(self) -> bool:
        return self in (CommandOutcome.SENT, CommandOutcome.NO_OP)


class Sender(Protocol):
    @property
    def connected(self) -> bool: ...

    async def send(self, frame: Frame) -> None: ...


ResponseCallback = Callable[[dict], None]


@dataclass
class PendingCommand:
    request_id: str
    request_type: str
    data: Optional[dict]
    kind: str
    ref: Optional[EntityRef] = None
    desired: Any = None
    state_key: Optional[StateKey] = None
    retries: int = 0
    deadline: float = 0.0
    on_response: Optional[ResponseCallback] = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class CommandDispatcher:
    def __init__(
        self,
        cache: StateCache,
        sender: Sender,
        request_timeout: float = 5.0,
        command_retries: int = 1,
    ):
        self.cache = cache
        self._sender = sender
        self.request_timeout = request_timeout
        self.command_retries = command_retries
        self._pending: dict[str, PendingCommand] = {}
        self._resends: set[asyncio.Task] = set()

    # ── Low-level request path ───────────────────────────────────────

    async def request(
        self,
        request_type: str,
        data: Optional[dict] = None,
        *,
        kind: str = "request",
        ref: Optional[EntityRef] = None,
        desired: Any = None,
        state_key: Optional[StateKey] = None,
        on_response: Optional[ResponseCallback] = None,
        retries: int = 0,
    ) -> str:
        """
        Send one request and track it until its response or deadline.
        Returns the requestId. Raises NotConnected.
        """
        if not self._sender.connected:
            raise NotConnected(f"cannot send {request_type}: not connected")
        frame = protocol.request(request_type, data)
        request_id = frame["d"]["requestId"]
        pending = PendingCommand(
            request_id=request_id,
            request_type=request_type,
            data=data,
            kind=kind,
            ref=ref,
            desired=desired,
            state_key=state_key,
            retries=retries,
            deadline=time.monotonic() + self.request_timeout,
            on_response=on_response,
        )
        self._pending[request_id] = pending
        try:
            await self._sender.send(frame)
        except (NotConnected, asyncio.CancelledError):
            self._pending.pop(request_id, None)
            raise
        # The response may already have been handled while send() awaited.
        if request_id in self._pending:
            loop = asyncio.get_running_loop()
            pending.timer = loop.call_later(self.request_timeout, self._expire, request_id)
        log.debug(f"→ {request_type} {data or ''} [{request_id[:8]}]")
        return request_id

    def handle_response(self, d: dict) -> None:
        """Correlate a RequestResponse payload. Called on the receive task."""
        request_id = d.get("requestId")
        pending = self._pending.pop(request_id, None) if request_id else None
        if pending is None:
            log.debug(f"Response for unknown or expired request {request_id!r} ({d.get('requestType')})")
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if not protocol.response_ok(d) and pending.kind != "refresh":
            log.warning(f"{pending.request_type} failed: {protocol.response_error(d)}")
        if pending.on_response is not None:
            try:
                pending.on_response(d)
            except Exception as e:
                log.error(f"Response callback for {pending.request_type} failed: {e}", exc_info=True)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        if self._reached(pending):
            return
        if pending.state_key is not None and pending.retries < self.command_retries and self._sender.connected:
            log.info(f"{pending.request_type} timed out; resending ({pending.retries + 1}/{self.command_retries})")
            task = asyncio.ensure_future(self._resend(pending))
            self._resends.add(task)
            task.add_done_callback(self._resends.discard)
        else:
            log.warning(f"{pending.request_type} got no response within {self.request_timeout}s")

    def _reached(self, pending: PendingCommand) -> bool:
        if pending.state_key is None:
            return False
        current = self.cache.get(pending.state_key)
        # OBS reports volume back with float noise
        if isinstance(pending.desired, float) and isinstance(current, (int, float)) and not isinstance(current, bool):
            return abs(current - pending.desired) < VOLUME_EPSILON_DB
        return current == pending.desired

    async def _resend(self, pending: PendingCommand) -> None:
        try:
            await self.request(
                pending.request_type,
                pending.data,
                kind=pending.kind,
                ref=pending.ref,
                desired=pending.desired,
                state_key=pending.state_key,
                on_response=pending.on_response,
                retries=pending.retries + 1,
            )
        except NotConnected as e:
            log.debug(f"Resend of {pending.request_type} dropped: {e}")

    def abandon_all(self, _reason: object = None) -> int:
        """Drop every pending command; their responses can no longer arrive."""
        dropped = len(self._pending)
        for pending in self._pending.values():
            if pending.timer is not None:
                pending.timer.cancel()
        self._pending.clear()
        for task in list(self._resends):
            task.cancel()
        if dropped:
            log.info(f"Abandoned {dropped} pending command(s)")
        return dropped

    @property
    def pending(self) -> list[PendingCommand]:
        return list(self._pending.values())

    async def _command(
        self,
        request_type: str,
        data: Optional[dict] = None,
        *,
        kind: str,
        ref: Optional[EntityRef] = None,
        desired: Any = None,
        state_key: Optional[StateKey] = None,
    ) -> CommandOutcome:
        try:
            await self.request(request_type, data, kind=kind, ref=ref, desired=desired, state_key=state_key)
        except NotConnected as e:
            log.debug(f"{kind}: {e}")
            return CommandOutcome.NOT_CONNECTED
        return CommandOutcome.SENT

    # ── Switch commands ──────────────────────────────────────────────

    async def switch(self, sw: Switch, desired: Optional[bool]) -> CommandOutcome:
        """Drive ``sw`` to ``desired``; None means toggle."""
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        if not sw.target_known(self.cache):
            return CommandOutcome.INVALID_TARGET
        key = sw.state_key()
        current = self.cache.get(key)
        if current is None and (desired is None or sw.requires_state):
            return CommandOutcome.INVALID_TARGET
        if desired is None:
            desired = not current
        elif current is not None and bool(current) == desired:
            return CommandOutcome.NO_OP
        request_type, data = sw.request_for(desired)
        outcome = await self._command(request_type, data, kind=sw.kind, ref=sw.ref, desired=desired, state_key=key)
        log.debug(f"{sw.kind} {'on' if desired else 'off'} → {outcome.value}")
        return outcome

    def _scoped(self, ref: EntityRef) -> EntityRef:
        """Fill in the current collection for refs persisted without one."""
        if ref.collection is None and ref.scene is not None:
            return EntityRef(self.cache.current_collection, ref.scene, ref.source_id, ref.source_name)
        return ref

    def streaming(self) -> StreamSwitch:
        return StreamSwitch(self)

    def recording(self) -> RecordSwitch:
        return RecordSwitch(self)

    def record_pause(self) -> RecordPauseSwitch:
        return RecordPauseSwitch(self)

    def replay_buffer(self) -> ReplayBufferSwitch:
        return ReplayBufferSwitch(self)

    def virtual_cam(self) -> VirtualCamSwitch:
        return VirtualCamSwitch(self)

    def studio_mode(self) -> StudioModeSwitch:
        return StudioModeSwitch(self)

    def mute(self, ref: EntityRef) -> MuteSwitch:
        return MuteSwitch(self, ref)

    def visibility(self, ref: EntityRef) -> VisibilitySwitch:
        ref = self._scoped(ref)
        if ref.source_id is None and ref.source_name:
            ref = self.cache.find_scene_item(ref, ref.source_name) or ref
        return VisibilitySwitch(self, ref)

    def filter(self, ref: EntityRef, filter_name: str) -> FilterSwitch:
        return FilterSwitch(self, ref, filter_name)

    # Shorthands for the common buttons

    async def start_streaming(self) -> CommandOutcome:
        return await self.streaming().turn_on()

    async def stop_streaming(self) -> CommandOutcome:
        return await self.streaming().turn_off()

    async def toggle_streaming(self) -> CommandOutcome:
        return await self.streaming().toggle()

    async def start_recording(self) -> CommandOutcome:
        return await self.recording().turn_on()

    async def stop_recording(self) -> CommandOutcome:
        return await self.recording().turn_off()

    async def toggle_recording(self) -> CommandOutcome:
        return await self.recording().toggle()

    async def toggle_mute(self, ref: EntityRef) -> CommandOutcome:
        return await self.mute(ref).toggle()

    # ── Scenes ───────────────────────────────────────────────────────

    async def set_scene_active(self, ref: EntityRef) -> CommandOutcome:
        """Switch the program scene."""
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        ref = self._scoped(ref)
        if not ref.scene or StateKey.scene(ref) not in self.cache:
            return CommandOutcome.INVALID_TARGET
        key = StateKey.singleton(Field.PROGRAM_SCENE)
        if self.cache.get(key) == ref.scene:
            return CommandOutcome.NO_OP
        return await self._command("SetCurrentProgramScene", {"sceneName": ref.scene},
                                   kind="scene", ref=ref, desired=ref.scene, state_key=key)

    async def set_preview_scene(self, ref: EntityRef) -> CommandOutcome:
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        ref = self._scoped(ref)
        if (
            not ref.scene
            or StateKey.scene(ref) not in self.cache
            or not self.cache.get(StateKey.singleton(Field.STUDIO_MODE))
        ):
            return CommandOutcome.INVALID_TARGET
        key = StateKey.singleton(Field.PREVIEW_SCENE)
        if self.cache.get(key) == ref.scene:
            return CommandOutcome.NO_OP
        return await self._command("SetCurrentPreviewScene", {"sceneName": ref.scene},
                                   kind="preview_scene", ref=ref, desired=ref.scene, state_key=key)

    async def transition_to_program(self) -> CommandOutcome:
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        if not self.cache.get(StateKey.singleton(Field.STUDIO_MODE)):
            return CommandOutcome.INVALID_TARGET
        return await self._command("TriggerStudioModeTransition", kind="transition")

    async def set_scene_collection(self, name: str) -> CommandOutcome:
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        if not name:
            return CommandOutcome.INVALID_TARGET
        key = StateKey.singleton(Field.SCENE_COLLECTION)
        if self.cache.get(key) == name:
            return CommandOutcome.NO_OP
        return await self._command("SetCurrentSceneCollection", {"sceneCollectionName": name},
                                   kind="scene_collection", ref=EntityRef(collection=name), desired=name, state_key=key)

    # ── Audio ────────────────────────────────────────────────────────

    async def set_volume(self, ref: EntityRef, volume_db: float) -> CommandOutcome:
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        key = StateKey.volume(ref)
        current = self.cache.get(key)
        if not ref.source_name or current is None:
            return CommandOutcome.INVALID_TARGET
        target = max(MIN_VOLUME_DB, min(MAX_VOLUME_DB, float(volume_db)))
        if abs(current - target) < VOLUME_EPSILON_DB:
            return CommandOutcome.NO_OP
        return await self._command("SetInputVolume", {"inputName": ref.source_name, "inputVolumeDb": target},
                                   kind="volume", ref=key.ref, desired=target, state_key=key)

    async def adjust_volume(self, ref: EntityRef, delta_db: float) -> CommandOutcome:
        """Step the volume relative to the last confirmed value (dial turns)."""
        current = self.cache.get(StateKey.volume(ref))
        if current is None:
            if not self._sender.connected:
                return CommandOutcome.NOT_CONNECTED
            return CommandOutcome.INVALID_TARGET
        return await self.set_volume(ref, current + delta_db)

    # ── Outputs ──────────────────────────────────────────────────────

    async def save_replay_buffer(self) -> CommandOutcome:
        if not self._sender.connected:
            return CommandOutcome.NOT_CONNECTED
        if not self.cache.get(StateKey.singleton(Field.REPLAY_BUFFER)):
            return CommandOutcome.INVALID_TARGET
        return await self._command("SaveReplayBuffer", kind="replay_buffer_save")
