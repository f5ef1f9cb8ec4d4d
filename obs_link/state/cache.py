"""
state/cache.py — Mirror of remote OBS state.

Written only by the EventRouter (from events and refresh responses, on the
receive task); read by the dispatcher and by consumers on any task or thread.
Nothing here is ever speculative: a command's effect shows up only after
OBS reports it.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, NamedTuple, Optional

from obs_link.core.keys import EntityRef

log = logging.getLogger(__name__)


class Field(str, Enum):
    # Singletons (ref is None)
    PROGRAM_SCENE = "program_scene"
    PREVIEW_SCENE = "preview_scene"
    SCENE_COLLECTION = "scene_collection"
    STREAMING = "streaming"
    RECORDING = "recording"
    RECORD_PAUSED = "record_paused"
    REPLAY_BUFFER = "replay_buffer"
    VIRTUAL_CAM = "virtual_cam"
    STUDIO_MODE = "studio_mode"
    # Scene-scoped (ref = collection/scene[/item id])
    SCENE = "scene"
    SCENE_ITEM = "scene_item"
    VISIBLE = "visible"
    # Input-scoped (ref = source name)
    SOURCE = "source"
    MUTED = "muted"
    VOLUME = "volume"
    FILTER_ENABLED = "filter_enabled"


SINGLETONS = frozenset({
    Field.PROGRAM_SCENE, Field.PREVIEW_SCENE, Field.SCENE_COLLECTION,
    Field.STREAMING, Field.RECORDING, Field.RECORD_PAUSED,
    Field.REPLAY_BUFFER, Field.VIRTUAL_CAM, Field.STUDIO_MODE,
})


class StateKey(NamedTuple):
    field: Field
    ref: Optional[EntityRef] = None
    name: Optional[str] = None  # filter name for FILTER_ENABLED

    # Constructors normalise the ref so that equal objects share one key
    # regardless of which optional levels a caller filled in.

    @classmethod
    def singleton(cls, field: Field) -> "StateKey":
        return cls(field)

    @classmethod
    def scene(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.SCENE, ref.scene_ref())

    @classmethod
    def scene_item(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.SCENE_ITEM, ref.item_ref())

    @classmethod
    def visible(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.VISIBLE, ref.item_ref())

    @classmethod
    def source(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.SOURCE, ref.source_ref())

    @classmethod
    def muted(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.MUTED, ref.source_ref())

    @classmethod
    def volume(cls, ref: EntityRef) -> "StateKey":
        return cls(Field.VOLUME, ref.source_ref())

    @classmethod
    def filter_enabled(cls, ref: EntityRef, filter_name: str) -> "StateKey":
        return cls(Field.FILTER_ENABLED, ref.source_ref(), filter_name)

    @property
    def collection_scoped(self) -> bool:
        return self.ref is not None and self.ref.collection is not None


_MISSING = object()


class StateCache:
    def __init__(self):
        self._data: dict[StateKey, Any] = {}
        self._lock = threading.RLock()
        self.generation = 0  # bumped on every reset

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, key: StateKey, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __iter__(self) -> Iterator[StateKey]:
        return iter(self.keys())

    def keys(self, field: Optional[Field] = None) -> list[StateKey]:
        with self._lock:
            return [k for k in self._data if field is None or k.field == field]

    def snapshot(self) -> Mapping[StateKey, Any]:
        """Read-only copy, consistent as of the last applied event."""
        with self._lock:
            return MappingProxyType(dict(self._data))

    # Convenience reads for consumers

    @property
    def current_collection(self) -> Optional[str]:
        return self.get(StateKey.singleton(Field.SCENE_COLLECTION))

    @property
    def program_scene(self) -> Optional[str]:
        return self.get(StateKey.singleton(Field.PROGRAM_SCENE))

    def scenes(self) -> list[str]:
        """Scene names of the current collection, in OBS list order."""
        collection = self.current_collection
        found = [(self.get(k, 0), k.ref.scene) for k in self.keys(Field.SCENE) if k.ref.collection == collection]
        return [name for _, name in sorted(found, key=lambda t: t[0])]

    def inputs(self) -> dict[str, str]:
        return {k.ref.source_name: v for k, v in self.snapshot().items() if k.field == Field.SOURCE}

    def find_scene_item(self, scene_ref: EntityRef, source_name: str) -> Optional[EntityRef]:
        """Look up a scene item ref by the source name it shows."""
        for k, v in self.snapshot().items():
            if k.field == Field.SCENE_ITEM and v == source_name and k.ref.scene_ref() == scene_ref.scene_ref():
                return k.ref.with_name(source_name)
        return None

    # ── Writes (EventRouter only) ────────────────────────────────────

    def set(self, key: StateKey, value: Any) -> bool:
        """Store ``value``; returns True when it changed."""
        with self._lock:
            old = self._data.get(key, _MISSING)
            self._data[key] = value
            return old is _MISSING or old != value

    def remove(self, key: StateKey) -> bool:
        with self._lock:
            return self._data.pop(key, _MISSING) is not _MISSING

    def remove_where(self, predicate: Callable[[StateKey], bool]) -> list[StateKey]:
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            return doomed

    def rekey_where(self, rewrite: Callable[[StateKey], Optional[StateKey]]) -> int:
        """Move every entry for which ``rewrite`` returns a new key."""
        with self._lock:
            moves = []
            for k in self._data:
                new = rewrite(k)
                if new is not None and new != k:
                    moves.append((k, new))
            for old, new in moves:
                self._data[new] = self._data.pop(old)
            return len(moves)

    def reset(self) -> None:
        with self._lock:
            dropped = len(self._data)
            self._data.clear()
            self.generation += 1
        log.debug(f"State cache reset ({dropped} entries dropped)")
