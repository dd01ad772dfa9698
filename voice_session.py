#!/usr/bin/env python3
"""
Live voice conversation with a remote speech-to-speech model:
  Microphone -> PCM16 frames -> Gemini Live -> model audio -> gapless playback
                                           -> transcripts -> exit command detection

Every trigger (user actions, microphone frames, server messages, playback
completions, timers, wake recognizer callbacks) becomes a SessionEvent on one
asyncio.Queue drained by a single consumer task, so session state is only
ever mutated from one place, in arrival order. Events carry the id of the
session they belong to; events from an earlier session are dropped.
"""

import asyncio
import inspect
import time

import pcm_framer
from capture_pipeline import CapturePipeline
from command_detector import CommandDetector
from event_bus import EventBus, EventType
from playback_scheduler import PlaybackScheduler
from realtime_channel import RealtimeChannel
from session_config import SessionConfig
from session_errors import AcquisitionError, ChannelError, FormatError
from session_events import EventKind, SessionEvent
from session_status import ConnectionStatus, VisualStatus, derive_visual_status
from transcript_buffer import TranscriptAggregator, TranscriptLog
from wake_trigger import WakeTriggerAdapter

# Events that only make sense for the session that produced them
_SESSION_BOUND = {
    EventKind.CHANNEL_OPENED, EventKind.CONNECT_FAILED, EventKind.CHANNEL_ERROR,
    EventKind.CHANNEL_CLOSED, EventKind.MIC_FRAME, EventKind.INBOUND,
    EventKind.PLAYBACK_ENDED, EventKind.CAPTURE_FAILED,
}


class Session:
    """One conversation: its fixed configuration and every resource it holds."""

    def __init__(self, session_id: int, config: SessionConfig):
        self.id = session_id
        self.config = config
        self.started_at = time.time()

        self.microphone = None
        self.sink = None
        self.channel = None
        self.capture = None
        self.scheduler = None
        self.detector = None
        self.receive_task = None
        self.transcript = TranscriptAggregator()

        self.capture_active = False
        self.closed = False

    @property
    def playback_active(self) -> bool:
        return self.scheduler is not None and self.scheduler.is_active


def _default_microphone(config):
    from audio_devices import PaSimpleMicrophone
    return PaSimpleMicrophone(sample_rate=config.input_sample_rate,
                              frame_size=config.frame_size)


def _default_sink(config):
    from audio_devices import PyAudioSink
    return PyAudioSink(sample_rate=config.output_sample_rate)


class VoiceSession:
    """Session lifecycle state machine for the duplex voice conversation.

    Exposes status, visual_status, transcriptions and hands_free, plus the
    thread-safe actions request_start(), stop_session(), toggle_hands_free()
    and update_config(). Status and transcript changes are published on bus.

    Args:
        config: SessionConfig for the next session (snapshotted at start)
        api_key: key for the remote model, used by the default channel
        recognizer: optional always-on recognizer for hands-free wake words
        bus: EventBus for presentation callbacks / diagnostics
        on_status: callback(ConnectionStatus) on every status change
        hands_free: initial hands-free setting
        channel_factory, microphone_factory, sink_factory: device/channel
            constructors, replaceable for tests
    """

    def __init__(self, config=None, api_key=None, recognizer=None, bus=None,
                 on_status=None, hands_free=False, channel_factory=None,
                 microphone_factory=None, sink_factory=None):
        self.config = config or SessionConfig()
        self._api_key = api_key
        self._channel_factory = channel_factory or (lambda: RealtimeChannel(self._api_key))
        self._microphone_factory = microphone_factory or _default_microphone
        self._sink_factory = sink_factory or _default_sink
        self._recognizer = recognizer
        self.bus = bus or EventBus()
        self.on_status = on_status or (lambda s: None)

        self.status = ConnectionStatus.DISCONNECTED
        self.visual_status = VisualStatus.IDLE
        self.hands_free = hands_free
        self.running = False

        self._transcriptions = TranscriptLog()
        self._session = None
        self._session_counter = 0
        self._wake = None

        # Created in start()
        self._loop = None
        self._queue = None
        self._consumer_task = None
        self._connect_tasks = set()

    # ── Presentation-facing state ──────────────────────────────────

    @property
    def transcriptions(self) -> tuple:
        return self._transcriptions.snapshot()

    @property
    def current_session(self) -> Session | None:
        return self._session

    # ── Lifecycle of the manager itself ────────────────────────────

    async def start(self):
        """Start the event consumer (and the wake recognizer if hands-free)."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self.running = True
        self._consumer_task = asyncio.create_task(self._consume())

        if self._recognizer is not None:
            self._wake = WakeTriggerAdapter(
                self._recognizer, self._loop,
                on_wake=self._on_wake,
                should_listen=self._should_listen,
                assistant_name=self.config.assistant_name,
                restart_delay=self.config.recognizer_restart_delay,
                dispatch=lambda fn: self._post_threadsafe(
                    SessionEvent(EventKind.WAKE_CALLBACK, data=fn)),
            )
            if self._should_listen():
                self._wake.enable()
        print(f"Voice session: Ready (hands-free {'on' if self.hands_free else 'off'})", flush=True)

    async def shutdown(self):
        """End any session, stop the recognizer and the consumer."""
        if not self.running:
            return
        self.running = False
        self._post(SessionEvent(EventKind.STOP_REQUESTED, metadata={"reason": "shutdown"}))
        await self.settle()
        if self._wake is not None:
            self._wake.disable()
            await self._wake.wait_stopped()
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None
        self.bus.close()
        print("Voice session: Shut down", flush=True)

    async def settle(self):
        """Wait until every posted event and in-flight connect attempt is handled."""
        while True:
            await asyncio.sleep(0)
            if self._wake is not None:
                await self._wake.wait_stopped()
            await self._queue.join()
            pending = [t for t in self._connect_tasks if not t.done()]
            if pending:
                await asyncio.wait(pending)
                continue
            await asyncio.sleep(0)
            if self._queue.empty():
                return

    # ── Actions (thread-safe) ──────────────────────────────────────

    def request_start(self):
        """Start a session if none is active."""
        self._post_threadsafe(SessionEvent(EventKind.START_REQUESTED,
                                           metadata={"source": "user"}))

    def stop_session(self):
        """End the active session; no-op when disconnected."""
        self._post_threadsafe(SessionEvent(EventKind.STOP_REQUESTED,
                                           metadata={"reason": "user"}))

    def toggle_hands_free(self):
        self._post_threadsafe(SessionEvent(EventKind.HANDS_FREE_TOGGLED))

    def update_config(self, config: SessionConfig):
        """Use config for the next session; an active session keeps its own."""
        self._post_threadsafe(SessionEvent(EventKind.CONFIG_UPDATED, data=config))

    def _post(self, event: SessionEvent):
        """Queue an event from the event loop thread."""
        self._queue.put_nowait(event)

    def _post_threadsafe(self, event: SessionEvent):
        """Queue an event from any thread."""
        if self._loop is None:
            raise RuntimeError("VoiceSession.start() has not been awaited")
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # Loop already closed: late device callback during interpreter shutdown
            print(f"Voice session: Dropped {event.kind.name} after loop closed", flush=True)

    # ── Event consumer ─────────────────────────────────────────────

    async def _consume(self):
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except Exception as e:
                print(f"Voice session: Error handling {event.kind.name}: {e}", flush=True)
                self.bus.emit(EventType.ERROR, gen=event.session_id or 0,
                              error=str(e), event=event.kind.name)
            finally:
                self._queue.task_done()

    def _is_current(self, session_id) -> bool:
        return self._session is not None and self._session.id == session_id

    async def _handle(self, event: SessionEvent):
        kind = event.kind

        if kind in _SESSION_BOUND and not self._is_current(event.session_id):
            return  # Stale event from a previous session

        if kind == EventKind.START_REQUESTED:
            self._handle_start(event.metadata.get("source", "user"))
        elif kind == EventKind.STOP_REQUESTED:
            if event.session_id is not None and not self._is_current(event.session_id):
                return  # delayed stop armed by an earlier session
            await self._teardown(event.metadata.get("reason", "user"))
        elif kind == EventKind.HANDS_FREE_TOGGLED:
            self._handle_toggle_hands_free()
        elif kind == EventKind.CONFIG_UPDATED:
            self.config = event.data
            print(f"Voice session: Config updated (voice {self.config.voice}, "
                  f"language {self.config.language})", flush=True)
        elif kind == EventKind.WAKE_CALLBACK:
            event.data()
        elif kind == EventKind.CHANNEL_OPENED:
            self._on_channel_opened()
        elif kind == EventKind.CONNECT_FAILED:
            await self._fail(event.data, "connect failed")
        elif kind == EventKind.CHANNEL_ERROR:
            await self._fail(event.data, "channel error")
        elif kind == EventKind.CHANNEL_CLOSED:
            await self._teardown("server closed")
        elif kind == EventKind.CAPTURE_FAILED:
            await self._fail(AcquisitionError(f"Microphone read failed: {event.data}"),
                             "capture failed")
        elif kind == EventKind.MIC_FRAME:
            self._on_mic_frame(event.data)
        elif kind == EventKind.INBOUND:
            self._on_inbound(event.data)
        elif kind == EventKind.PLAYBACK_ENDED:
            event.data()

    # ── Status ─────────────────────────────────────────────────────

    def _set_status(self, status: ConnectionStatus):
        if status == self.status:
            return
        self.status = status
        gen = self._session.id if self._session else self._session_counter
        print(f"Voice session: Status {status.value}", flush=True)
        self.bus.emit(EventType.STATUS, gen=gen, status=status.value)
        self.on_status(status)
        self._refresh_visual()

    def _refresh_visual(self):
        session = self._session
        visual = derive_visual_status(
            self.status,
            playback_active=session.playback_active if session else False,
        )
        if visual == self.visual_status:
            return
        self.visual_status = visual
        gen = session.id if session else self._session_counter
        self.bus.emit(EventType.VISUAL_STATUS, gen=gen, visual_status=visual.value)

    def _should_listen(self) -> bool:
        return self.running and self.hands_free and self.status == ConnectionStatus.DISCONNECTED

    # ── Start ──────────────────────────────────────────────────────

    def _handle_start(self, source):
        if self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            print(f"Voice session: Start ({source}) ignored, already {self.status.value}", flush=True)
            return
        if not self.running:
            return

        self._session_counter += 1
        session = Session(self._session_counter, self.config)
        self._session = session

        # The recognizer and the live session never share the microphone
        if self._wake is not None:
            self._wake.disable()

        self.bus.emit(EventType.SESSION_START, gen=session.id, source=source,
                      voice=session.config.voice, language=session.config.language)
        self._set_status(ConnectionStatus.CONNECTING)

        task = asyncio.create_task(self._connect(session))
        self._connect_tasks.add(task)
        task.add_done_callback(self._connect_tasks.discard)

    async def _connect(self, session: Session):
        """Acquire microphone, speaker and channel; report back via the queue."""
        loop = asyncio.get_running_loop()
        t0 = time.time()
        try:
            if self._wake is not None:
                await self._wake.wait_stopped()
            microphone = self._microphone_factory(session.config)
            await loop.run_in_executor(None, microphone.open)
            if not self._adopt(session, "microphone", microphone):
                return

            sink = self._sink_factory(session.config)
            await loop.run_in_executor(None, sink.open)
            if not self._adopt(session, "sink", sink):
                return

            channel = self._channel_factory()
            await channel.connect(session.config)
            if session.closed:
                await channel.close()
                return
            session.channel = channel
        except (AcquisitionError, ChannelError) as e:
            self._post(SessionEvent(EventKind.CONNECT_FAILED, session.id, e))
            return
        except Exception as e:
            print(f"Voice session: Unexpected connect error: {e}", flush=True)
            self._post(SessionEvent(EventKind.CONNECT_FAILED, session.id, e))
            return

        print(f"Voice session: Resources acquired [{time.time() - t0:.2f}s]", flush=True)
        self._post(SessionEvent(EventKind.CHANNEL_OPENED, session.id))

    def _adopt(self, session, attr, resource) -> bool:
        """Attach a freshly opened resource, or close it if the session ended meanwhile."""
        if session.closed:
            try:
                resource.close()
            except Exception as e:
                print(f"Voice session: Error releasing late {attr}: {e}", flush=True)
            return False
        setattr(session, attr, resource)
        return True

    def _on_channel_opened(self):
        session = self._session
        config = session.config
        sid = session.id

        session.scheduler = PlaybackScheduler(
            session.sink,
            on_drained=self._refresh_visual,
            dispatch=lambda fn: self._post_threadsafe(
                SessionEvent(EventKind.PLAYBACK_ENDED, sid, fn)),
        )
        session.detector = CommandDetector(
            self._loop,
            on_stop=lambda: self._post(SessionEvent(
                EventKind.STOP_REQUESTED, sid, metadata={"reason": "command"})),
            delay=config.stop_delay_seconds,
            phrases=config.exit_phrases,
        )
        session.capture = CapturePipeline(
            session.microphone,
            on_frame=lambda samples: self._post_threadsafe(
                SessionEvent(EventKind.MIC_FRAME, sid, samples)),
            threshold=config.activity_threshold,
            on_error=lambda error: self._post_threadsafe(
                SessionEvent(EventKind.CAPTURE_FAILED, sid, error)),
        )

        self._set_status(ConnectionStatus.CONNECTED)
        if self._wake is not None:
            self._wake.disable()

        session.receive_task = asyncio.create_task(self._receive(session))
        session.capture.start()
        print("Voice session: Connected, listening", flush=True)

    async def _receive(self, session: Session):
        """Forward server messages into the queue until the channel ends."""
        try:
            async for msg in session.channel.messages():
                self._post(SessionEvent(EventKind.INBOUND, session.id, msg))
        except ChannelError as e:
            self._post(SessionEvent(EventKind.CHANNEL_ERROR, session.id, e))
        except Exception as e:
            self._post(SessionEvent(EventKind.CHANNEL_ERROR, session.id, ChannelError(str(e))))
        else:
            self._post(SessionEvent(EventKind.CHANNEL_CLOSED, session.id))

    # ── Capture ────────────────────────────────────────────────────

    def _on_mic_frame(self, samples):
        session = self._session
        if self.status != ConnectionStatus.CONNECTED or session.capture is None:
            return
        frame = session.capture.process(samples)
        session.capture_active = frame.active
        session.channel.send_audio(frame.pcm, frame.sample_rate)
        self._refresh_visual()

    # ── Inbound messages ───────────────────────────────────────────

    def _on_inbound(self, msg):
        session = self._session
        if self.status != ConnectionStatus.CONNECTED:
            return

        if msg.audio_chunk:
            try:
                samples = pcm_framer.decode(msg.audio_chunk)
            except FormatError as e:
                print(f"Voice session: Dropping audio chunk: {e}", flush=True)
            else:
                session.scheduler.enqueue(samples, session.config.output_sample_rate)
                self._refresh_visual()

        if msg.input_transcript_delta is not None:
            session.transcript.append_input(msg.input_transcript_delta)
            if session.detector.scan(session.transcript.draft.input_text):
                self.bus.emit(EventType.COMMAND, gen=session.id,
                              phrase=session.detector.matched_phrase,
                              delay=session.detector.delay)

        if msg.output_transcript_delta is not None:
            session.transcript.append_output(msg.output_transcript_delta)

        if msg.turn_complete:
            records = session.transcript.finalize()
            self._transcriptions.extend(records)
            for record in records:
                self.bus.emit_ephemeral(EventType.TRANSCRIPTION, gen=session.id,
                                        text=record.text, sender=record.sender,
                                        timestamp=record.timestamp)

        if msg.interrupted:
            stopped = session.scheduler.interrupt()
            print(f"Voice session: Interrupted, stopped {stopped} segment(s)", flush=True)
            self._refresh_visual()

    # ── Teardown ───────────────────────────────────────────────────

    async def _fail(self, error, reason):
        print(f"Voice session: {reason}: {error}", flush=True)
        gen = self._session.id if self._session else self._session_counter
        self.bus.emit(EventType.ERROR, gen=gen, error=str(error), kind=type(error).__name__)
        self._set_status(ConnectionStatus.ERROR)
        await self._teardown(reason)

    async def _release(self, what, fn):
        """Run one release step; a failure is logged and the teardown continues."""
        try:
            result = fn()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            print(f"Voice session: Error releasing {what}: {e}", flush=True)

    async def _teardown(self, reason):
        """Release whatever the current session holds and settle to Disconnected.

        Idempotent: with no session this does nothing.
        """
        session = self._session
        if session is None:
            return
        session.closed = True
        loop = asyncio.get_running_loop()

        if session.detector is not None:
            session.detector.cancel()
        if session.receive_task is not None:
            session.receive_task.cancel()
            await asyncio.gather(session.receive_task, return_exceptions=True)
        if session.capture is not None:
            await self._release("capture", lambda: loop.run_in_executor(None, session.capture.stop))
        if session.microphone is not None:
            await self._release("microphone", lambda: loop.run_in_executor(None, session.microphone.close))
        if session.scheduler is not None:
            await self._release("playback", session.scheduler.close)
        elif session.sink is not None:
            await self._release("speaker", session.sink.close)
        if session.channel is not None:
            await self._release("channel", session.channel.close)

        self._session = None
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._refresh_visual()
        self.bus.emit(EventType.SESSION_END, gen=session.id, reason=reason,
                      duration=round(time.time() - session.started_at, 2))
        print(f"Voice session: Session {session.id} ended ({reason})", flush=True)

        if self._wake is not None and self._should_listen():
            self._wake.enable()

    # ── Hands-free ─────────────────────────────────────────────────

    def _on_wake(self):
        self.bus.emit(EventType.WAKE, gen=self._session_counter)
        self._post(SessionEvent(EventKind.START_REQUESTED, metadata={"source": "wake"}))

    def _handle_toggle_hands_free(self):
        self.hands_free = not self.hands_free
        print(f"Voice session: Hands-free {'on' if self.hands_free else 'off'}", flush=True)
        self.bus.emit(EventType.HANDS_FREE, gen=self._session_counter, enabled=self.hands_free)
        if self._wake is None:
            if self.hands_free:
                print("Voice session: No wake recognizer configured", flush=True)
            return
        if self._should_listen():
            self._wake.enable()
        elif not self.hands_free:
            self._wake.disable()
