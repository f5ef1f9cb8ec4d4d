"""
core/keys.py — Parameter key codec and the EntityRef value type.

A key is the hierarchical address of one remote object, flattened into a
single string so a control surface can persist it as a button parameter:

    collection <::> scene <::> source-id <::> source-name

Keys are a pure function of their levels, so a key stored before a restart
still decodes to the same reference afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence

from .errors import InvalidKeyLevel, MalformedKey

# No proper prefix of the delimiter equals a proper suffix of it, so a key
# built from levels that never contain it splits back unambiguously.
DELIMITER = "<::>"
_FRAGMENTS = (DELIMITER[:-1], DELIMITER[1:])

REF_LEVELS = 4


def encode(levels: Sequence[str]) -> str:
    """Join ``levels`` into a key. Raises InvalidKeyLevel on unsafe input."""
    if isinstance(levels, str):
        raise InvalidKeyLevel("levels must be a sequence of strings, not a single string")
    if not levels:
        raise InvalidKeyLevel("at least one level is required")
    for level in levels:
        if not isinstance(level, str):
            raise InvalidKeyLevel(f"level {level!r} is not a string")
        if DELIMITER in level:
            raise InvalidKeyLevel(f"level {level!r} contains the delimiter {DELIMITER!r}")
        if any(fragment in level for fragment in _FRAGMENTS):
            raise InvalidKeyLevel(f"level {level!r} contains a truncated delimiter")
    return DELIMITER.join(levels)


def decode(key: str, expected: Optional[int] = None) -> tuple[str, ...]:
    """
    Split ``key`` back into its levels.

    Args:
        key:      a string previously produced by encode()
        expected: when given, the exact number of levels the key must carry

    Raises:
        MalformedKey: empty key, a dangling delimiter fragment, or a segment
                      count different from ``expected``.
    """
    if not isinstance(key, str) or not key:
        raise MalformedKey("empty key")
    levels = tuple(key.split(DELIMITER))
    for level in levels:
        if any(fragment in level for fragment in _FRAGMENTS):
            raise MalformedKey(f"truncated delimiter in key {key!r}")
    if expected is not None and len(levels) != expected:
        raise MalformedKey(f"expected {expected} levels, got {len(levels)} in key {key!r}")
    return levels


@dataclass(frozen=True)
class EntityRef:
    """
    Immutable address of a remote object. Every level is optional:

      EntityRef(collection="Show", scene="Live")                     → a scene
      EntityRef("Show", "Live", source_id=7, source_name="Camera")   → a scene item
      EntityRef(source_name="Mic/Aux")                               → an input
    """
    collection: Optional[str] = None
    scene: Optional[str] = None
    source_id: Optional[int] = None
    source_name: Optional[str] = None

    # ── Narrowing helpers used as cache addresses ────────────────────

    def scene_ref(self) -> "EntityRef":
        return EntityRef(collection=self.collection, scene=self.scene)

    def item_ref(self) -> "EntityRef":
        return EntityRef(collection=self.collection, scene=self.scene, source_id=self.source_id)

    def source_ref(self) -> "EntityRef":
        return EntityRef(source_name=self.source_name)

    def with_name(self, source_name: Optional[str]) -> "EntityRef":
        return replace(self, source_name=source_name)

    # ── Key codec ────────────────────────────────────────────────────

    def to_key(self) -> str:
        return encode([
            self.collection or "",
            self.scene or "",
            "" if self.source_id is None else str(self.source_id),
            self.source_name or "",
        ])

    @classmethod
    def from_key(cls, key: str) -> "EntityRef":
        collection, scene, source_id, source_name = decode(key, expected=REF_LEVELS)
        try:
            item_id = int(source_id) if source_id else None
        except ValueError:
            raise MalformedKey(f"source id {source_id!r} is not an integer") from None
        return cls(
            collection=collection or None,
            scene=scene or None,
            source_id=item_id,
            source_name=source_name or None,
        )

    @classmethod
    def parse_or_none(cls, key: Optional[str]) -> Optional["EntityRef"]:
        """Decode a persisted key, or None when it is missing or stale."""
        if not key:
            return None
        try:
            return cls.from_key(key)
        except MalformedKey:
            return None

    def __str__(self) -> str:
        parts = [p for p in (self.collection, self.scene) if p]
        if self.source_name or self.source_id is not None:
            parts.append(self.source_name or f"#{self.source_id}")
        return " / ".join(parts) or "<root>"
