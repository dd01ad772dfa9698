"""Deepgram streaming recognizer for hands-free wake words.

Runs only while no conversation is active, so it has the microphone to
itself. Interface expected by WakeTriggerAdapter:
- start(on_result, on_error, on_end)   on_result(text, is_final)
- stop()

Architecture:
- Worker thread opens the microphone (pasimple, 16-bit) and the Deepgram
  WebSocket, then streams every captured chunk with send_media()
- Deepgram SDK listener runs on its own thread and fires callbacks
- Interim and final results are both reported; wake phrases are short
  enough that waiting for endpointing would only add latency
- Callbacks fire on SDK/worker threads; the caller marshals them

Audio format: 16kHz 16-bit mono PCM (linear16).
"""

import threading
import time

from deepgram import DeepgramClient
from deepgram.core.events import EventType
from deepgram.extensions.types.sockets.listen_v1_control_message import (
    ListenV1ControlMessage,
)

from session_errors import AcquisitionError, RecognizerError

SAMPLE_RATE = 16000
FRAME_SIZE = 1024  # samples per read (64ms at 16kHz)
KEEPALIVE_INTERVAL = 5.0  # seconds without audio before a KeepAlive
STOP_JOIN_TIMEOUT = 1.0


def _default_microphone(sample_rate, frame_size):
    from audio_devices import PaSimpleMicrophone
    return PaSimpleMicrophone(sample_rate=sample_rate, frame_size=frame_size,
                              sample_format="s16", app_name="eva-wake")


class DeepgramRecognizer:
    """Always-on streaming speech recognizer backed by Deepgram Nova-3.

    Args:
        api_key: Deepgram API key
        sample_rate: capture rate sent to Deepgram
        frame_size: samples per microphone read
        microphone_factory: callable(sample_rate, frame_size) -> microphone
            with open()/read_bytes()/close()
        client_factory: callable(api_key) -> DeepgramClient
    """

    def __init__(self, api_key, sample_rate=SAMPLE_RATE, frame_size=FRAME_SIZE,
                 microphone_factory=None, client_factory=None):
        self._api_key = api_key
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self._microphone_factory = microphone_factory or _default_microphone
        self._client_factory = client_factory or (lambda key: DeepgramClient(api_key=key))

        self._stop_event = threading.Event()
        self._worker = None
        self._on_result = None
        self._on_error = None
        self._on_end = None

        self.results_received = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self, on_result, on_error, on_end):
        """Begin capture + streaming on a background thread. Returns immediately."""
        if self.running:
            raise RecognizerError("Recognizer already running")
        self._on_result = on_result
        self._on_error = on_error
        self._on_end = on_end
        self._stop_event = threading.Event()
        self._worker = threading.Thread(
            target=self._run, args=(self._stop_event,), daemon=True
        )
        self._worker.start()

    def stop(self):
        """Signal shutdown; the worker releases the mic and the socket."""
        self._stop_event.set()
        worker, self._worker = self._worker, None
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=STOP_JOIN_TIMEOUT)

    # ── Worker ────────────────────────────────────────────────────

    def _run(self, stop_event):
        """One recognizer run: callbacks are bound to this run's stop_event."""
        on_result, on_error, on_end = self._on_result, self._on_error, self._on_end
        socket_open = threading.Event()
        microphone = None
        context = connection = None

        def report(error):
            if stop_event.is_set():
                return
            print(f"DeepgramRecognizer: Error: {error}", flush=True)
            if on_error:
                on_error(error)

        def handle_message(result, *args, **kwargs):
            text = self._extract_transcript(result)
            if text and on_result and not stop_event.is_set():
                self.results_received += 1
                on_result(text, bool(getattr(result, "is_final", False)))

        def handle_close(*args, **kwargs):
            print("DeepgramRecognizer: WebSocket closed", flush=True)
            socket_open.clear()
            if not stop_event.is_set() and on_end:
                on_end()

        def handle_error(error, *args, **kwargs):
            report(RecognizerError(str(error)))

        try:
            microphone = self._microphone_factory(self.sample_rate, self.frame_size)
            microphone.open()
            context, connection = self._connect()
            connection.on(EventType.OPEN, self._on_open)
            connection.on(EventType.MESSAGE, handle_message)
            connection.on(EventType.CLOSE, handle_close)
            connection.on(EventType.ERROR, handle_error)
            socket_open.set()
            # start_listening() blocks while the socket is open
            threading.Thread(target=connection.start_listening, daemon=True).start()
            print("DeepgramRecognizer: Listening", flush=True)
            self._stream(microphone, connection, stop_event, socket_open)
        except (AcquisitionError, RecognizerError) as e:
            report(e)
        except Exception as e:
            report(RecognizerError(str(e)))
        finally:
            if connection is not None:
                self._disconnect(context, connection)
            if microphone is not None:
                try:
                    microphone.close()
                except Exception as e:
                    print(f"DeepgramRecognizer: Mic close error: {e}", flush=True)

    def _connect(self):
        """Open the Deepgram socket; returns (context manager, connection)."""
        client = self._client_factory(self._api_key)
        try:
            context = client.listen.v1.connect(
                model="nova-3",
                encoding="linear16",
                sample_rate=str(self.sample_rate),
                channels="1",
                interim_results="true",
                endpointing="300",
                smart_format="false",
                punctuate="false",
                language="en",
            )
            return context, context.__enter__()
        except Exception as e:
            raise RecognizerError(f"Could not connect to Deepgram: {e}") from e

    def _stream(self, microphone, connection, stop_event, socket_open):
        """Forward microphone chunks until stopped or the socket drops."""
        last_sent = time.time()
        while not stop_event.is_set() and socket_open.is_set():
            data = microphone.read_bytes()
            if stop_event.is_set():
                break
            if data:
                connection.send_media(data)
                last_sent = time.time()
            elif time.time() - last_sent >= KEEPALIVE_INTERVAL:
                connection.send_control(ListenV1ControlMessage(type="KeepAlive"))
                last_sent = time.time()

    def _disconnect(self, context, connection):
        try:
            connection.send_control(ListenV1ControlMessage(type="Finalize"))
            context.__exit__(None, None, None)
        except Exception as e:
            print(f"DeepgramRecognizer: Close error: {e}", flush=True)

    # ── Deepgram event handlers ───────────────────────────────────

    def _on_open(self, *args, **kwargs):
        print("DeepgramRecognizer: WebSocket opened", flush=True)

    @staticmethod
    def _extract_transcript(result):
        channel = getattr(result, "channel", None)
        if channel is None or not channel.alternatives:
            return ""
        return channel.alternatives[0].transcript.strip()
