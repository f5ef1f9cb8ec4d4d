"""
events/refresh.py — Re-reads remote state after (re)connection.

obs-websocket keeps no event log, so whatever changed while we were away is
fetched again with read-only requests. Responses are handed to the router
on the receive task; this module only decides what to ask next.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Coroutine, Optional

from obs_link.core import protocol
from obs_link.core.errors import NotConnected

if TYPE_CHECKING:
    from obs_link.commands.dispatcher import CommandDispatcher
    from .router import EventRouter

log = logging.getLogger(__name__)

OUTPUT_STATUS_REQUESTS = (
    "GetStreamStatus",
    "GetRecordStatus",
    "GetReplayBufferStatus",
    "GetVirtualCamStatus",
)


class StateRefresher:
    def __init__(self, router: "EventRouter", dispatcher: "CommandDispatcher"):
        self._router = router
        self._dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()
        router.bind_refresher(self)

    # ── Entry points ─────────────────────────────────────────────────

    async def refresh_all(self) -> None:
        """Full re-read of everything the cache mirrors."""
        log.debug("Refreshing OBS state")
        # Collection first: scene refs are scoped by it.
        await self._ask("GetSceneCollectionList", then=lambda _d: self.schedule_collection_refresh())
        await self._ask("GetCurrentProgramScene")
        await self._ask("GetStudioModeEnabled", then=self._after_studio_mode)
        for request_type in OUTPUT_STATUS_REQUESTS:
            await self._ask(request_type)

    async def refresh_collection(self) -> None:
        await self._ask("GetSceneList", then=self._after_scene_list)
        await self._ask("GetInputList", then=self._after_input_list)

    def schedule_refresh(self, _event: object = None) -> None:
        """Wired to the supervisor's connected event; cancel() stops it with the session."""
        self._spawn(self.refresh_all())

    def schedule_collection_refresh(self) -> None:
        self._spawn(self.refresh_collection())

    def schedule_filter_refresh(self, source_name: str, filter_name: str) -> None:
        self._spawn(self._ask("GetSourceFilter", {"sourceName": source_name, "filterName": filter_name}))

    def cancel(self, _event: object = None) -> None:
        """Stop every refresh chain still sending. Wired to the disconnected event."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ── Follow-ups (run on the receive task, so they only spawn sends) ──

    def _after_studio_mode(self, d: dict) -> None:
        if d.get("studioModeEnabled"):
            self._spawn(self._ask("GetCurrentPreviewScene"))

    def _after_scene_list(self, d: dict) -> None:
        scenes = [s["sceneName"] for s in d.get("scenes", []) if s.get("sceneName")]
        self._spawn(self._ask_each(
            [("GetSceneItemList", {"sceneName": s}) for s in scenes]
            + [("GetSourceFilterList", {"sourceName": s}) for s in scenes]
        ))

    def _after_input_list(self, d: dict) -> None:
        requests = []
        for item in d.get("inputs", []):
            name = item.get("inputName")
            if not name:
                continue
            requests.append(("GetInputMute", {"inputName": name}))
            requests.append(("GetInputVolume", {"inputName": name}))
            requests.append(("GetSourceFilterList", {"sourceName": name}))
        self._spawn(self._ask_each(requests))

    # ── Plumbing ─────────────────────────────────────────────────────

    async def _ask_each(self, requests: list[tuple[str, dict]]) -> None:
        for request_type, data in requests:
            await self._ask(request_type, data)

    async def _ask(
        self,
        request_type: str,
        data: Optional[dict] = None,
        then: Optional[Callable[[dict], None]] = None,
    ) -> None:
        def on_response(d: dict) -> None:
            if not protocol.response_ok(d):
                # Expected for non-audio inputs or a disabled replay buffer.
                log.debug(f"{request_type} {data or ''} failed: {protocol.response_error(d)}")
                return
            response_data = d.get("responseData") or {}
            self._router.apply_response(request_type, data or {}, response_data)
            if then is not None:
                then(response_data)

        try:
            await self._dispatcher.request(request_type, data, kind="refresh", on_response=on_response)
        except NotConnected as e:
            log.debug(f"Refresh request {request_type} skipped: {e}")

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
