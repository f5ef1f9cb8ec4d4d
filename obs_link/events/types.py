"""events/types.py — Typed domain events emitted by the router."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from obs_link.core.keys import EntityRef


class EventCategory(str, Enum):
    SCENE_CHANGED = "scene_changed"
    PREVIEW_SCENE_CHANGED = "preview_scene_changed"
    SCENE_CREATED = "scene_created"
    SCENE_REMOVED = "scene_removed"
    SCENE_RENAMED = "scene_renamed"
    SCENE_COLLECTION_CHANGED = "scene_collection_changed"
    SOURCE_CREATED = "source_created"
    SOURCE_REMOVED = "source_removed"
    SOURCE_RENAMED = "source_renamed"
    SCENE_ITEM_CREATED = "scene_item_created"
    SCENE_ITEM_REMOVED = "scene_item_removed"
    SOURCE_VISIBILITY_CHANGED = "source_visibility_changed"
    MUTE_CHANGED = "mute_changed"
    VOLUME_CHANGED = "volume_changed"
    FILTER_ENABLED_CHANGED = "filter_enabled_changed"
    FILTER_LIST_CHANGED = "filter_list_changed"
    STREAM_STATUS_CHANGED = "stream_status_changed"
    RECORD_STATUS_CHANGED = "record_status_changed"
    REPLAY_BUFFER_STATUS_CHANGED = "replay_buffer_status_changed"
    REPLAY_BUFFER_SAVED = "replay_buffer_saved"
    VIRTUAL_CAM_STATUS_CHANGED = "virtual_cam_status_changed"
    STUDIO_MODE_CHANGED = "studio_mode_changed"
    REMOTE_EXITING = "remote_exiting"


@dataclass(frozen=True)
class DomainEvent:
    """
    One classified change.

    value is the new value (bool for switches, float dB for volume, a name
    for scene/rename events, None for removals). event_type is the
    obs-websocket event or request it came from; data holds extra fields
    worth passing on (old names, output state strings, saved paths).
    """
    category: EventCategory
    ref: Optional[EntityRef] = None
    value: Any = None
    event_type: str = ""
    data: dict = field(default_factory=dict, compare=False)
