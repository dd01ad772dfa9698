"""Spoken exit-command detection with a single delayed stop."""

EXIT_PHRASES = ("goodbye", "sleep", "stop session")
STOP_DELAY_SECONDS = 3.0  # lets the model finish its acknowledgement


class CommandDetector:
    """Scans the accumulated user transcript for exit phrases.

    The first match schedules on_stop after delay seconds on the given event
    loop. While that stop is pending, further matches do nothing.

    Args:
        loop: asyncio event loop used for call_later
        on_stop: callable invoked when the delay elapses
        delay: seconds between detection and stop
        phrases: lower-case substrings that count as an exit command
    """

    def __init__(self, loop, on_stop, delay=STOP_DELAY_SECONDS, phrases=EXIT_PHRASES):
        self._loop = loop
        self._on_stop = on_stop
        self.delay = delay
        self.phrases = tuple(p.lower() for p in phrases)
        self._pending = None
        self.matched_phrase = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def match(self, text: str) -> str | None:
        lowered = text.lower()
        for phrase in self.phrases:
            if phrase in lowered:
                return phrase
        return None

    def scan(self, accumulated_input: str) -> bool:
        """Check the whole input draft; return True if a stop was scheduled now."""
        if self._pending is not None:
            return False
        phrase = self.match(accumulated_input)
        if phrase is None:
            return False
        self.matched_phrase = phrase
        print(f"Command: Heard '{phrase}', stopping in {self.delay:.1f}s", flush=True)
        self._pending = self._loop.call_later(self.delay, self._fire)
        return True

    def _fire(self):
        self._pending = None
        self._on_stop()

    def cancel(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
