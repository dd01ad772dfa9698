"""Typed events funnelled through the session's single asyncio.Queue."""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class EventKind(Enum):
    START_REQUESTED = auto()     # request_start() or wake word
    STOP_REQUESTED = auto()      # stop_session() or delayed exit command
    HANDS_FREE_TOGGLED = auto()  # toggle_hands_free()
    CHANNEL_OPENED = auto()      # connect task finished acquiring everything
    CONNECT_FAILED = auto()      # connect task raised (data = exception)
    CHANNEL_ERROR = auto()       # receive loop broke (data = exception)
    CHANNEL_CLOSED = auto()      # server closed the channel normally
    MIC_FRAME = auto()           # float32 samples from the capture thread
    INBOUND = auto()             # InboundMessage from the remote service
    PLAYBACK_ENDED = auto()      # data = callable from the scheduler
    WAKE_CALLBACK = auto()       # data = callable from the wake trigger adapter
    CAPTURE_FAILED = auto()      # microphone read failed (data = exception)
    CONFIG_UPDATED = auto()      # update_config() (data = SessionConfig)


@dataclass
class SessionEvent:
    kind: EventKind
    session_id: int | None = None  # None = not bound to a session
    data: Any = None
    metadata: dict = field(default_factory=dict)
