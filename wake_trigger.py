"""Hands-free wake word trigger on top of an always-on recognizer.

The recognizer is any object with:
    start(on_result, on_error, on_end)   on_result(text, is_final)
    stop()
Its callbacks may fire on any thread; they are routed through dispatch so
that all state changes happen on the session's event loop. stop() may block
while the recognizer releases the microphone, so it runs in the loop's
default executor; wait_stopped() resolves once it has returned.
"""

import logging

logger = logging.getLogger(__name__)

WAKE_PHRASE = "wake up"
GREETING = "hey"
RESTART_DELAY_SECONDS = 1.0


class WakeTriggerAdapter:
    """Runs the recognizer while hands-free listening is desired.

    Args:
        recognizer: streaming recognizer (see module docstring)
        loop: asyncio event loop for the restart timer
        on_wake: called when a wake phrase is heard
        should_listen: callable -> bool, True while hands-free is on and no
            session is active
        assistant_name: name that, together with "hey", wakes the assistant
        restart_delay: seconds before restarting after a recognizer error
        dispatch: callable(fn) that runs fn on the event loop thread
    """

    def __init__(self, recognizer, loop, on_wake, should_listen,
                 assistant_name="EVA", wake_phrase=WAKE_PHRASE,
                 restart_delay=RESTART_DELAY_SECONDS, dispatch=None):
        self._recognizer = recognizer
        self._loop = loop
        self._on_wake = on_wake
        self._should_listen = should_listen
        self.assistant_name = assistant_name.lower()
        self.wake_phrase = wake_phrase.lower()
        self.restart_delay = restart_delay
        self._dispatch = dispatch or (lambda fn: fn())

        self.listening = False
        self._run_id = 0  # bumped on every start/stop; stale callbacks are ignored
        self._restart_handle = None
        self._stopping = None  # executor future of the last recognizer stop

    @property
    def restart_pending(self) -> bool:
        return self._restart_handle is not None

    def is_wake_phrase(self, text: str) -> bool:
        lowered = text.lower()
        if self.wake_phrase in lowered:
            return True
        return GREETING in lowered and self.assistant_name in lowered

    # ── Lifecycle ──────────────────────────────────────────────────

    def enable(self):
        """Start listening now (no-op if already listening).

        If the previous run is still stopping, the start is deferred until
        the microphone has been released.
        """
        self._cancel_restart()
        if self.listening:
            return
        if self._stopping is not None and not self._stopping.done():
            self._stopping.add_done_callback(lambda _: self._dispatch(self._restart))
            return
        self._start_recognizer()

    def disable(self):
        """Stop listening and forget any scheduled restart."""
        self._cancel_restart()
        if not self.listening:
            return
        self.listening = False
        self._run_id += 1
        self._stopping = self._loop.run_in_executor(None, self._stop_recognizer)

    async def wait_stopped(self):
        """Wait for the last recognizer stop to finish."""
        if self._stopping is not None:
            await self._stopping

    def _stop_recognizer(self):
        try:
            self._recognizer.stop()
        except Exception as e:
            logger.warning("Wake trigger: recognizer stop failed: %s", e)
            return
        logger.info("Wake trigger: stopped")

    def _start_recognizer(self):
        self._run_id += 1
        run_id = self._run_id

        def on_result(text, is_final=False):
            self._dispatch(lambda: self.handle_result(text, is_final, run_id))

        def on_error(error):
            self._dispatch(lambda: self.handle_error(error, run_id))

        def on_end():
            self._dispatch(lambda: self.handle_end(run_id))

        try:
            self._recognizer.start(on_result, on_error, on_end)
        except Exception as e:
            logger.warning("Wake trigger: recognizer failed to start: %s", e)
            self.listening = False
            self._schedule_restart()
            return
        self.listening = True
        logger.info("Wake trigger: listening for '%s' / '%s %s'",
                    self.wake_phrase, GREETING, self.assistant_name)

    # ── Recognizer callbacks (event loop thread) ───────────────────

    def handle_result(self, text, is_final=False, run_id=None):
        if run_id is not None and run_id != self._run_id:
            return
        if not self.listening or not text:
            return
        if self.is_wake_phrase(text):
            logger.info("Wake trigger: heard %r (final=%s)", text, is_final)
            self._on_wake()

    def handle_error(self, error, run_id=None):
        if run_id is not None and run_id != self._run_id:
            return
        logger.warning("Wake trigger: recognizer error: %s", error)
        self.listening = False
        if self._should_listen():
            self._schedule_restart()

    def handle_end(self, run_id=None):
        if run_id is not None and run_id != self._run_id:
            return
        self.listening = False
        if self._should_listen():
            self._start_recognizer()

    # ── Restart timer ──────────────────────────────────────────────

    def _schedule_restart(self):
        self._cancel_restart()
        self._restart_handle = self._loop.call_later(
            self.restart_delay, lambda: self._dispatch(self._restart))

    def _restart(self):
        self._restart_handle = None
        if self._should_listen() and not self.listening:
            self._start_recognizer()

    def _cancel_restart(self):
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
