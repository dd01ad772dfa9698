"""Per-turn transcript aggregation and the finalized transcription log.

Provides:
- TranscriptDraft: the accumulating input/output text of the current turn
- Transcription: frozen record emitted at turn completion
- TranscriptAggregator: appends streamed deltas and finalizes a turn
- TranscriptLog: ordered, append-only history readable from any thread

No external dependencies beyond stdlib.
"""

import time
from dataclasses import dataclass
from threading import Lock

USER = "user"
MODEL = "model"


@dataclass
class TranscriptDraft:
    """Text streamed so far in the current turn."""
    input_text: str = ""
    output_text: str = ""

    def is_empty(self) -> bool:
        return not self.input_text and not self.output_text


@dataclass(frozen=True)
class Transcription:
    """A finalized utterance."""
    text: str
    sender: str  # "user" or "model"
    timestamp: float  # time.time() at turn completion


class TranscriptAggregator:
    """Accumulates streamed transcript deltas for one turn at a time."""

    def __init__(self):
        self.draft = TranscriptDraft()

    def append_input(self, text: str):
        self.draft.input_text += text

    def append_output(self, text: str):
        self.draft.output_text += text

    def finalize(self, now: float | None = None) -> tuple:
        """Emit the (user, model) pair for the turn and reset the draft.

        Both records are created even if one or both texts are empty;
        display code may hide empty entries.
        """
        ts = time.time() if now is None else now
        records = (
            Transcription(text=self.draft.input_text, sender=USER, timestamp=ts),
            Transcription(text=self.draft.output_text, sender=MODEL, timestamp=ts),
        )
        self.draft = TranscriptDraft()
        return records


class TranscriptLog:
    """Append-only history of finalized transcriptions.

    Appends happen on the session's event loop; presentation code may read
    snapshots from other threads, hence the lock.
    """

    def __init__(self):
        self._entries: list = []
        self._lock = Lock()

    def extend(self, records):
        with self._lock:
            self._entries.extend(records)

    def snapshot(self) -> tuple:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
