"""
core/protocol.py — obs-websocket v5 message shapes.

Only the three-class contract matters to the rest of the package:
requests (op 6) expect one RequestResponse (op 7) with the same requestId,
events (op 5) arrive unsolicited.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Any, Optional

RPC_VERSION = 1
SUBPROTOCOL = "obswebsocket.json"

Frame = dict[str, Any]


class OpCode(IntEnum):
    HELLO = 0
    IDENTIFY = 1
    IDENTIFIED = 2
    REIDENTIFY = 3
    EVENT = 5
    REQUEST = 6
    REQUEST_RESPONSE = 7
    REQUEST_BATCH = 8
    REQUEST_BATCH_RESPONSE = 9


class EventSubscription(IntFlag):
    NONE = 0
    GENERAL = 1 << 0
    CONFIG = 1 << 1
    SCENES = 1 << 2
    INPUTS = 1 << 3
    TRANSITIONS = 1 << 4
    FILTERS = 1 << 5
    OUTPUTS = 1 << 6
    SCENE_ITEMS = 1 << 7
    MEDIA_INPUTS = 1 << 8
    VENDORS = 1 << 9
    UI = 1 << 10
    ALL = (
        GENERAL | CONFIG | SCENES | INPUTS | TRANSITIONS | FILTERS
        | OUTPUTS | SCENE_ITEMS | MEDIA_INPUTS | VENDORS | UI
    )


class CloseCode(IntEnum):
    UNKNOWN_REASON = 4000
    MESSAGE_DECODE_ERROR = 4002
    MISSING_DATA_FIELD = 4003
    INVALID_DATA_FIELD_TYPE = 4004
    INVALID_DATA_FIELD_VALUE = 4005
    UNKNOWN_OP_CODE = 4006
    NOT_IDENTIFIED = 4007
    ALREADY_IDENTIFIED = 4008
    AUTHENTICATION_FAILED = 4009
    UNSUPPORTED_RPC_VERSION = 4010
    SESSION_INVALIDATED = 4011
    UNSUPPORTED_FEATURE = 4012


@dataclass(frozen=True)
class Endpoint:
    host: str = "localhost"
    port: int = 4455

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def auth_response(password: str, salt: str, challenge: str) -> str:
    """obs-websocket challenge-response: b64(sha256(b64(sha256(pw + salt)) + challenge))."""
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


# ── Frame builders ───────────────────────────────────────────────────

def identify(
    rpc_version: int,
    authentication: Optional[str] = None,
    event_subscriptions: int = EventSubscription.ALL,
) -> Frame:
    data: dict[str, Any] = {"rpcVersion": rpc_version, "eventSubscriptions": int(event_subscriptions)}
    if authentication is not None:
        data["authentication"] = authentication
    return {"op": OpCode.IDENTIFY.value, "d": data}


def request(request_type: str, data: Optional[dict] = None, request_id: Optional[str] = None) -> Frame:
    d: dict[str, Any] = {"requestType": request_type, "requestId": request_id or uuid.uuid4().hex}
    if data:
        d["requestData"] = data
    return {"op": OpCode.REQUEST.value, "d": d}


# ── Frame accessors ──────────────────────────────────────────────────

def opcode(frame: Frame) -> Optional[int]:
    op = frame.get("op")
    return op if isinstance(op, int) else None


def payload(frame: Frame) -> dict:
    d = frame.get("d")
    return d if isinstance(d, dict) else {}


def response_ok(d: dict) -> bool:
    return bool(d.get("requestStatus", {}).get("result", False))


def response_error(d: dict) -> str:
    status = d.get("requestStatus", {})
    return f"{status.get('code', '?')}: {status.get('comment', 'no comment')}"
