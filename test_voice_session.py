#!/usr/bin/env python3
"""Tests for the VoiceSession state machine.

Drives the real session with fake devices and a scripted channel:
start/stop lifecycle, connect failures, gapless playback and interruption,
transcript turns, spoken exit commands, stale events, hands-free wake and
config updates.

Run: python3 test_voice_session.py
"""

import asyncio
import queue
import sys
import threading
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ── Fakes ────────────────────────────────────────────────────────

class FakeMicrophone:
    """Frames pushed by the test are returned by read_frame()."""

    def __init__(self, sample_rate=16000, fail=None):
        self.sample_rate = sample_rate
        self.fail = fail
        self.frames = queue.Queue()
        self.opened = False
        self.opened_at = None
        self.closed = False

    def open(self):
        if self.fail:
            raise self.fail
        self.opened = True
        self.opened_at = time.monotonic()

    def read_frame(self):
        try:
            return self.frames.get(timeout=0.02)
        except queue.Empty:
            return None

    def close(self):
        self.closed = True


class FakeSink:
    def __init__(self):
        self.current_time = 0.0
        self.scheduled = []  # (start_time, duration, on_ended)
        self.stopped = []
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def schedule(self, samples, sample_rate, start_time, on_ended):
        self.scheduled.append((start_time, len(samples) / sample_rate, on_ended))
        return len(self.scheduled) - 1

    def stop(self, handle):
        self.stopped.append(handle)

    def close(self):
        self.closed = True

    def finish_all(self):
        for _, _, on_ended in self.scheduled:
            on_ended()


class FakeChannel:
    """Server messages are fed by the test; None ends the stream normally."""

    def __init__(self, fail=None):
        self.fail = fail
        self.inbound = None
        self.sent = []
        self.config = None
        self.closed = False

    async def connect(self, config):
        await asyncio.sleep(0)
        if self.fail:
            raise self.fail
        self.config = config
        self.inbound = asyncio.Queue()

    def send_audio(self, pcm, sample_rate):
        self.sent.append((pcm, sample_rate))

    async def messages(self):
        while True:
            item = await self.inbound.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True

    def feed(self, **fields):
        from realtime_channel import InboundMessage
        self.inbound.put_nowait(InboundMessage(**fields))


class FakeRecognizer:
    def __init__(self):
        self.runs = []
        self.stops = 0

    def start(self, on_result, on_error, on_end):
        self.runs.append((on_result, on_error, on_end))

    def stop(self):
        self.stops += 1

    def say(self, text, is_final=True):
        self.runs[-1][0](text, is_final)


class SlowStopRecognizer(FakeRecognizer):
    """stop() blocks like a recognizer joining its capture thread."""

    def __init__(self, delay=0.3):
        super().__init__()
        self.delay = delay
        self.stop_thread = None
        self.stopped_at = None

    def stop(self):
        time.sleep(self.delay)
        self.stop_thread = threading.get_ident()
        self.stopped_at = time.monotonic()
        super().stop()


class Harness:
    """A VoiceSession wired to fakes, recording everything it publishes."""

    def __init__(self, channel_error=None, mic_error=None, recognizer=None,
                 hands_free=False, **config):
        from session_config import SessionConfig
        from voice_session import VoiceSession

        self.channel_error = channel_error
        self.mic_error = mic_error
        self.channels = []
        self.mics = []
        self.sinks = []
        self.statuses = []
        self.events = []
        config.setdefault("stop_delay_seconds", 0.05)
        self.session = VoiceSession(
            SessionConfig(**config),
            api_key="test-key",
            recognizer=recognizer,
            on_status=self.statuses.append,
            hands_free=hands_free,
            channel_factory=self._make_channel,
            microphone_factory=self._make_mic,
            sink_factory=self._make_sink,
        )
        self.session.bus.on("*", self.events.append)

    def _make_channel(self):
        self.channels.append(FakeChannel(self.channel_error))
        return self.channels[-1]

    def _make_mic(self, config):
        self.mics.append(FakeMicrophone(config.input_sample_rate, self.mic_error))
        return self.mics[-1]

    def _make_sink(self, config):
        self.sinks.append(FakeSink())
        return self.sinks[-1]

    @property
    def channel(self):
        return self.channels[-1]

    @property
    def sink(self):
        return self.sinks[-1]

    def published(self, event_type, key):
        return [e.payload[key] for e in self.events if e.type == event_type]

    async def settle(self, delay=0.01):
        await asyncio.sleep(delay)
        await self.session.settle()

    async def connect(self):
        await self.session.start()
        self.session.request_start()
        await self.settle()


def speech(seconds, rate=24000):
    from pcm_framer import encode
    return encode(np.full(int(seconds * rate), 0.1, dtype=np.float32))


def run(scenario):
    """Run an async scenario with a Harness and always shut the session down."""
    async def main():
        h = scenario.harness() if hasattr(scenario, "harness") else Harness()
        try:
            await scenario(h)
        finally:
            await h.session.shutdown()
    asyncio.run(main())


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Lifecycle
# ══════════════════════════════════════════════════════════════════

@test("Start goes Connecting -> Connected with waking -> listening")
def test_start_connects():
    from session_status import ConnectionStatus, VisualStatus

    async def scenario(h):
        await h.connect()
        assert h.session.status == ConnectionStatus.CONNECTED
        assert h.session.visual_status == VisualStatus.LISTENING
        assert h.statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        assert h.published("status", "status") == ["CONNECTING", "CONNECTED"]
        assert h.published("visual_status", "visual_status") == ["waking", "listening"]
        assert h.mics[0].opened and h.sinks[0].opened
        assert h.channel.config.voice == "Zephyr"

    run(scenario)


@test("Double start opens exactly one channel")
def test_double_start():
    async def scenario(h):
        await h.session.start()
        h.session.request_start()
        h.session.request_start()
        await h.settle()
        h.session.request_start()
        await h.settle()
        assert len(h.channels) == 1
        assert len(h.mics) == 1
        assert len(h.published("session_start", "source")) == 1

    run(scenario)


@test("Stop when disconnected is a no-op")
def test_stop_when_disconnected():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.session.start()
        h.session.stop_session()
        await h.settle()
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert h.statuses == []
        assert h.events == []

    run(scenario)


@test("Stop releases microphone, speaker and channel")
def test_stop_releases_everything():
    from session_status import ConnectionStatus, VisualStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(audio_chunk=speech(0.5))
        await h.settle()
        h.session.stop_session()
        await h.settle()
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert h.session.visual_status == VisualStatus.IDLE
        assert h.mics[0].closed
        assert h.sinks[0].closed
        assert h.sinks[0].stopped == [0], "Pending playback must be stopped"
        assert h.channel.closed
        assert h.session.current_session is None
        assert h.published("session_end", "reason") == ["user"]

        h.session.stop_session()
        await h.settle()
        assert h.published("session_end", "reason") == ["user"], "Second stop is a no-op"

    run(scenario)


@test("Stop while connecting releases resources acquired afterwards")
def test_stop_while_connecting():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.session.start()
        h.session.request_start()
        h.session.stop_session()
        await h.settle()
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert h.mics[0].closed
        assert h.channels == [], "Channel must not be opened for an ended session"

    run(scenario)


@test("Session can be started again after stopping")
def test_restart():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.session.stop_session()
        await h.settle()
        h.session.request_start()
        await h.settle()
        assert h.session.status == ConnectionStatus.CONNECTED
        assert len(h.channels) == 2
        assert h.session.current_session.id == 2

    run(scenario)


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Failures
# ══════════════════════════════════════════════════════════════════

@test("Channel connect failure goes Error -> Disconnected and releases devices")
def test_connect_failure():
    from session_errors import ChannelError
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        assert h.statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.ERROR,
                              ConnectionStatus.DISCONNECTED]
        assert h.mics[0].closed and h.sinks[0].closed
        assert h.published("error", "kind") == ["ChannelError"]

    scenario.harness = lambda: Harness(channel_error=ChannelError("403 forbidden"))
    run(scenario)


@test("Microphone failure aborts the attempt without opening a channel")
def test_mic_failure():
    from session_errors import AcquisitionError
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert ConnectionStatus.ERROR in h.statuses
        assert h.sinks == [] and h.channels == []

    scenario.harness = lambda: Harness(mic_error=AcquisitionError("permission denied"))
    run(scenario)


@test("Abnormal channel close goes Error -> Disconnected")
def test_channel_error():
    from session_errors import ChannelError
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.channel.inbound.put_nowait(ChannelError("1011 internal error"))
        await h.settle()
        assert h.statuses[-2:] == [ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED]
        assert h.channel.closed

    run(scenario)


@test("Normal server close ends the session without an error")
def test_server_close():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.channel.inbound.put_nowait(None)
        await h.settle()
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert ConnectionStatus.ERROR not in h.statuses
        assert h.published("session_end", "reason") == ["server closed"]

    run(scenario)


@test("Odd-length audio is dropped without ending the session")
def test_bad_audio_chunk():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(audio_chunk=b"\x00\x01\x02")
        h.channel.feed(input_transcript_delta="still here")
        await h.settle()
        assert h.session.status == ConnectionStatus.CONNECTED
        assert h.sink.scheduled == []
        assert h.session.current_session.transcript.draft.input_text == "still here"

    run(scenario)


@test("Microphone read failure goes Error -> Disconnected and releases everything")
def test_capture_failure():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()

        def unplugged():
            raise OSError("device unplugged")

        h.mics[0].read_frame = unplugged
        for _ in range(50):
            await h.settle(0.02)
            if h.session.status == ConnectionStatus.DISCONNECTED:
                break
        assert h.statuses[-2:] == [ConnectionStatus.ERROR, ConnectionStatus.DISCONNECTED]
        assert h.mics[0].closed and h.sinks[0].closed and h.channel.closed
        assert h.published("error", "kind") == ["AcquisitionError"]
        assert h.published("session_end", "reason") == ["capture failed"]
        assert h.session.current_session is None

    run(scenario)


# ══════════════════════════════════════════════════════════════════
# Test Group 3: Audio in and out
# ══════════════════════════════════════════════════════════════════

@test("Microphone frames are sent as PCM16 at the capture rate")
def test_capture_sends_audio():
    async def scenario(h):
        await h.connect()
        h.mics[0].frames.put(np.full(4096, 0.2, dtype=np.float32))
        h.mics[0].frames.put(np.zeros(4096, dtype=np.float32))
        for _ in range(50):
            await h.settle(0.02)
            if len(h.channel.sent) >= 2:
                break
        assert len(h.channel.sent) == 2
        pcm, rate = h.channel.sent[0]
        assert len(pcm) == 8192
        assert rate == 16000
        assert h.session.current_session.capture_active is False

    run(scenario)


@test("Active microphone frames keep the face listening while connected")
def test_active_frames_listening():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        for _ in range(3):
            h.mics[0].frames.put(np.full(4096, 0.02, dtype=np.float32))
        for _ in range(50):
            await h.settle(0.02)
            if len(h.channel.sent) >= 3:
                break
        assert len(h.channel.sent) == 3
        assert h.session.current_session.capture_active is True
        assert h.session.status == ConnectionStatus.CONNECTED
        assert h.published("visual_status", "visual_status") == ["waking", "listening"]

    run(scenario)


@test("Visual status depends only on connection status and playback")
def test_derive_visual_status():
    from session_status import ConnectionStatus, VisualStatus, derive_visual_status
    assert derive_visual_status(ConnectionStatus.DISCONNECTED, False) == VisualStatus.IDLE
    assert derive_visual_status(ConnectionStatus.ERROR, True) == VisualStatus.IDLE
    assert derive_visual_status(ConnectionStatus.CONNECTING, True) == VisualStatus.WAKING
    assert derive_visual_status(ConnectionStatus.CONNECTED, False) == VisualStatus.LISTENING
    assert derive_visual_status(ConnectionStatus.CONNECTED, True) == VisualStatus.SPEAKING


@test("Back-to-back audio plays gaplessly, drains back to listening")
def test_back_to_back_audio():
    from session_status import VisualStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(audio_chunk=speech(0.1))
        h.channel.feed(audio_chunk=speech(0.1))
        await h.settle()
        starts = [round(s[0], 6) for s in h.sink.scheduled]
        assert starts == [0.0, 0.1], f"Got {starts}"
        assert h.session.visual_status == VisualStatus.SPEAKING

        h.sink.finish_all()
        await h.settle()
        assert h.session.visual_status == VisualStatus.LISTENING
        assert h.published("visual_status", "visual_status")[-2:] == ["speaking", "listening"]

    run(scenario)


@test("Interruption stops playback and schedules new audio at now")
def test_interruption():
    from session_status import VisualStatus

    async def scenario(h):
        await h.connect()
        for _ in range(3):
            h.channel.feed(audio_chunk=speech(0.5))
        await h.settle()
        h.channel.feed(interrupted=True)
        await h.settle()
        assert sorted(h.sink.stopped) == [0, 1, 2]
        assert h.session.visual_status == VisualStatus.LISTENING

        h.sink.current_time = 0.3
        h.channel.feed(audio_chunk=speech(0.1))
        await h.settle()
        assert h.sink.scheduled[-1][0] == 0.3

        # Late completions from interrupted segments change nothing
        for _, _, on_ended in h.sink.scheduled[:3]:
            on_ended()
        await h.settle()
        assert h.session.visual_status == VisualStatus.SPEAKING

    run(scenario)


# ══════════════════════════════════════════════════════════════════
# Test Group 4: Transcripts and commands
# ══════════════════════════════════════════════════════════════════

@test("Turn completion emits the user and model transcriptions")
def test_transcript_turn():
    async def scenario(h):
        await h.connect()
        h.channel.feed(input_transcript_delta="hel")
        h.channel.feed(input_transcript_delta="lo")
        h.channel.feed(output_transcript_delta="Hi ", audio_chunk=speech(0.05))
        h.channel.feed(output_transcript_delta="there", turn_complete=True)
        await h.settle()
        records = h.session.transcriptions
        assert [(r.sender, r.text) for r in records] == [("user", "hello"), ("model", "Hi there")]
        assert records[0].timestamp == records[1].timestamp
        assert h.published("transcription", "text") == ["hello", "Hi there"]

    run(scenario)


@test("Turn with no model text still yields both records")
def test_transcript_empty_model():
    async def scenario(h):
        await h.connect()
        h.channel.feed(input_transcript_delta="hmm")
        h.channel.feed(turn_complete=True)
        await h.settle()
        assert [(r.sender, r.text) for r in h.session.transcriptions] == [
            ("user", "hmm"), ("model", "")]

    run(scenario)


@test("Transcription text is never written to the diagnostics log")
def test_transcripts_not_persisted():
    import tempfile

    async def scenario(h):
        await h.connect()
        h.channel.feed(input_transcript_delta="my secret", turn_complete=True)
        await h.settle()

    with tempfile.TemporaryDirectory() as tmpdir:
        def harness():
            from event_bus import EventBus
            h = Harness()
            h.session.bus = EventBus(log_dir=tmpdir)
            return h
        scenario.harness = harness
        run(scenario)
        content = (Path(tmpdir) / "events.jsonl").read_text()
        assert "CONNECTED" in content
        assert "my secret" not in content


@test("Exit phrase split across deltas schedules exactly one delayed stop")
def test_exit_command():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(input_transcript_delta="hel")
        h.channel.feed(input_transcript_delta="lo good")
        h.channel.feed(input_transcript_delta="bye")
        h.channel.feed(input_transcript_delta=" goodbye")
        await h.settle()
        assert h.published("command", "phrase") == ["goodbye"]
        assert h.session.status == ConnectionStatus.CONNECTED, "Stop is delayed"

        await h.settle(0.1)
        assert h.session.status == ConnectionStatus.DISCONNECTED
        assert h.published("session_end", "reason") == ["command"]

    run(scenario)


@test("Delayed stop from an ended session does not stop the next one")
def test_stale_delayed_stop():
    from session_status import ConnectionStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(input_transcript_delta="goodbye")
        await h.settle()
        h.session.stop_session()
        await h.settle()
        h.session.request_start()
        await h.settle(0.1)
        assert h.session.status == ConnectionStatus.CONNECTED
        assert h.published("session_end", "reason") == ["user"]

    run(scenario)


@test("Playback completion from a previous session is ignored")
def test_stale_playback_completion():
    from session_status import VisualStatus

    async def scenario(h):
        await h.connect()
        h.channel.feed(audio_chunk=speech(0.2))
        await h.settle()
        old_sink = h.sink
        h.session.stop_session()
        await h.settle()
        h.session.request_start()
        await h.settle()
        h.channel.feed(audio_chunk=speech(0.2))
        await h.settle()
        old_sink.finish_all()
        await h.settle()
        assert h.session.visual_status == VisualStatus.SPEAKING

    run(scenario)


# ══════════════════════════════════════════════════════════════════
# Test Group 5: Hands-free
# ══════════════════════════════════════════════════════════════════

@test("Hands-free wake word starts a session and pauses the recognizer")
def test_wake_word_starts_session():
    from session_status import ConnectionStatus

    recognizer = FakeRecognizer()

    async def scenario(h):
        await h.session.start()
        await h.settle()
        assert len(recognizer.runs) == 1, "Recognizer runs while hands-free and idle"
        recognizer.say("hey eva")
        await h.settle()
        assert h.session.status == ConnectionStatus.CONNECTED
        assert recognizer.stops >= 1
        assert h.published("session_start", "source") == ["wake"]

        h.session.stop_session()
        await h.settle()
        assert len(recognizer.runs) == 2, "Recognizer resumes after the session"

    scenario.harness = lambda: Harness(recognizer=recognizer, hands_free=True)
    run(scenario)


@test("Toggling hands-free starts and stops the recognizer")
def test_toggle_hands_free():
    recognizer = FakeRecognizer()

    async def scenario(h):
        await h.session.start()
        assert recognizer.runs == []
        h.session.toggle_hands_free()
        await h.settle()
        assert h.session.hands_free
        assert len(recognizer.runs) == 1
        h.session.toggle_hands_free()
        await h.settle()
        assert not h.session.hands_free
        assert recognizer.stops == 1
        assert h.published("hands_free", "enabled") == [True, False]

    scenario.harness = lambda: Harness(recognizer=recognizer)
    run(scenario)


@test("Wake words are ignored while a session is active")
def test_wake_ignored_when_connected():
    recognizer = FakeRecognizer()

    async def scenario(h):
        await h.connect()
        h.session.toggle_hands_free()
        await h.settle()
        assert recognizer.runs == [], "Recognizer must not run during a session"

    scenario.harness = lambda: Harness(recognizer=recognizer)
    run(scenario)


@test("Wake start stops the recognizer off the event loop before opening the mic")
def test_wake_waits_for_recognizer_stop():
    from session_status import ConnectionStatus

    recognizer = SlowStopRecognizer(delay=0.3)

    async def scenario(h):
        await h.session.start()
        await h.settle()
        t0 = time.monotonic()
        recognizer.say("wake up")
        await asyncio.sleep(0.02)
        assert time.monotonic() - t0 < 0.15, "Event loop blocked while the recognizer stopped"
        assert h.session.status == ConnectionStatus.CONNECTING
        assert h.mics == [], "Microphone opened before the recognizer released it"

        await h.settle()
        assert h.session.status == ConnectionStatus.CONNECTED
        assert recognizer.stops == 1
        assert recognizer.stop_thread != threading.get_ident()
        assert h.mics[0].opened_at >= recognizer.stopped_at

    scenario.harness = lambda: Harness(recognizer=recognizer, hands_free=True)
    run(scenario)


# ══════════════════════════════════════════════════════════════════
# Test Group 6: Configuration
# ══════════════════════════════════════════════════════════════════

@test("Config updates apply to the next session, not the active one")
def test_update_config():
    from session_config import SessionConfig

    async def scenario(h):
        await h.connect()
        h.session.update_config(SessionConfig(voice="Puck", stop_delay_seconds=0.05))
        await h.settle()
        assert h.channel.config.voice == "Zephyr"
        assert h.session.current_session.config.voice == "Zephyr"
        assert h.session.config.voice == "Puck"

        h.session.stop_session()
        await h.settle()
        h.session.request_start()
        await h.settle()
        assert len(h.channels) == 2
        assert h.channels[1].config.voice == "Puck"
        assert h.channels[0].config.voice == "Zephyr"

    run(scenario)


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("Voice Session Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
