"""commands — Outbound commands and TurnOn/TurnOff/Toggle switches."""
from .dispatcher import CommandDispatcher, CommandOutcome, PendingCommand
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

__all__ = [
    "CommandDispatcher", "CommandOutcome", "PendingCommand",
    "Switch", "StreamSwitch", "RecordSwitch", "RecordPauseSwitch", "ReplayBufferSwitch",
    "VirtualCamSwitch", "StudioModeSwitch", "MuteSwitch", "VisibilitySwitch", "FilterSwitch",
]
