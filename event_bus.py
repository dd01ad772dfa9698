"""Event bus between the voice session and its presentation layer.

In-process callbacks deliver status changes and finalized transcriptions to
whatever renders them. When a log directory is configured, lifecycle and
status events are also appended to a JSONL diagnostics file. Transcription
text is only ever delivered ephemerally (callbacks), never written to disk.

Writer atomicity: POSIX O_APPEND guarantees atomic writes under PIPE_BUF (4096 bytes).
Each JSON line + newline stays under that limit.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic multi-writer appends
_PIPE_BUF = 4096


class EventType(str, Enum):
    """All event types in the bus catalog."""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATUS = "status"
    VISUAL_STATUS = "visual_status"
    HANDS_FREE = "hands_free"
    TRANSCRIPTION = "transcription"
    COMMAND = "command"
    WAKE = "wake"
    ERROR = "error"


# Core fields that are not part of the payload
_CORE_FIELDS = {"ts", "src", "type", "gen"}


@dataclass
class BusEvent:
    """A single event on the bus. gen is the session id it belongs to."""
    ts: float
    src: str
    type: str
    gen: int
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, gen: int, **kwargs):
        self.ts = ts
        self.src = src
        self.type = type
        self.gen = gen
        self.payload = kwargs

    def to_json_line(self) -> str:
        """Serialize to a single JSON line with trailing newline.

        Truncates payload if the line would exceed PIPE_BUF.
        """
        data = {"ts": self.ts, "src": self.src, "type": self.type,
                "gen": self.gen, **self.payload}
        line = json.dumps(data, separators=(',', ':'), default=str) + "\n"

        if len(line.encode()) > _PIPE_BUF:
            truncated = dict(data)
            for key, val in list(truncated.items()):
                if key in _CORE_FIELDS:
                    continue
                if isinstance(val, str) and len(val) > 200:
                    truncated[key] = val[:200] + "...[truncated]"
            line = json.dumps(truncated, separators=(',', ':'), default=str) + "\n"

            # If still too large, drop all payload
            if len(line.encode()) > _PIPE_BUF:
                minimal = {k: data[k] for k in _CORE_FIELDS}
                minimal["_truncated"] = True
                line = json.dumps(minimal, separators=(',', ':')) + "\n"

        return line


class EventBusWriter:
    """Append-only writer for the bus JSONL file."""

    def __init__(self, bus_path: Path):
        self._bus_path = bus_path
        self._file = None

    def open(self):
        """Open the JSONL file for appending (O_APPEND for atomicity)."""
        self._bus_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._bus_path, "a")

    def write(self, evt: BusEvent):
        if self._file is None:
            self.open()
        self._file.write(evt.to_json_line())
        self._file.flush()

    def close(self):
        """Close the file handle."""
        if self._file:
            self._file.close()
            self._file = None


class EventBus:
    """In-process callbacks plus an optional JSONL diagnostics log.

    Usage:
        bus = EventBus(src="voice_session", log_dir=None)
        bus.on("status", my_callback)                # Register listener
        bus.emit("status", gen=1, status="CONNECTED")  # Log + callbacks
        bus.emit_ephemeral("transcription", gen=1, text="hi")  # Callbacks only
        bus.close()
    """

    def __init__(self, src: str = "voice_session", log_dir: Path | str | None = None):
        self._src = src
        self._writer: EventBusWriter | None = None
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]
        self._bus_path = None
        if log_dir:
            self._bus_path = Path(log_dir).expanduser() / "events.jsonl"
            self._writer = EventBusWriter(self._bus_path)

    @property
    def bus_path(self) -> Path | None:
        return self._bus_path

    def close(self):
        """Close the writer."""
        if self._writer:
            self._writer.close()

    def on(self, event_type: str, callback: Callable):
        """Register an in-process callback.

        Args:
            event_type: Event type to listen for, or "*" for all events.
            callback: Called with BusEvent as argument.
        """
        if isinstance(event_type, EventType):
            event_type = event_type.value
        self._callbacks.setdefault(event_type, []).append(callback)

    def _fire_callbacks(self, evt: BusEvent):
        """Fire registered callbacks for an event."""
        for cb_type in (evt.type, "*"):
            for cb in self._callbacks.get(cb_type, []):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def _make_event(self, event_type, gen, payload) -> BusEvent:
        if isinstance(event_type, EventType):
            event_type = event_type.value
        return BusEvent(ts=time.time(), src=self._src, type=event_type, gen=gen, **payload)

    def emit(self, event_type, gen: int = 0, **payload):
        """Write event to the log (if configured) and fire in-process callbacks."""
        evt = self._make_event(event_type, gen, payload)
        if self._writer:
            try:
                self._writer.write(evt)
            except OSError as e:
                logger.error("Bus write failed for %s: %s", evt.type, e)
        self._fire_callbacks(evt)

    def emit_ephemeral(self, event_type, gen: int = 0, **payload):
        """Fire callbacks only, skip disk write. For transcript text."""
        self._fire_callbacks(self._make_event(event_type, gen, payload))
