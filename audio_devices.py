"""Concrete audio devices: pasimple microphone and PyAudio output sink.

The microphone yields fixed-size float32 frames. The sink mixes scheduled
buffers into a callback-driven PyAudio stream and exposes the number of
rendered frames as a monotonic output clock, so playback can be scheduled at
absolute start times.
"""

import itertools
import threading
from dataclasses import dataclass
from typing import Callable

import numpy as np

from session_errors import AcquisitionError

CHANNELS = 1
FLOAT_BYTES = 4
OUTPUT_FRAMES_PER_BUFFER = 1024


class PaSimpleMicrophone:
    """Blocking PulseAudio/PipeWire capture of mono frames.

    Args:
        sample_rate: capture rate in Hz
        frame_size: samples per frame
        sample_format: "float32" (session capture) or "s16" (raw linear16)
        device_name: PulseAudio source name, None for the default mic
    """

    def __init__(self, sample_rate=16000, frame_size=4096, sample_format="float32",
                 device_name=None, app_name="eva-voice"):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.sample_format = sample_format
        self._device_name = device_name
        self._app_name = app_name
        self._pa = None

    @property
    def is_open(self) -> bool:
        return self._pa is not None

    def open(self):
        import pasimple

        fmt = (pasimple.PA_SAMPLE_FLOAT32LE if self.sample_format == "float32"
               else pasimple.PA_SAMPLE_S16LE)
        try:
            self._pa = pasimple.PaSimple(
                pasimple.PA_STREAM_RECORD, fmt, CHANNELS, self.sample_rate,
                app_name=self._app_name,
                device_name=self._device_name,
            )
        except Exception as e:
            raise AcquisitionError(f"Microphone unavailable: {e}") from e
        print(f"Microphone: Opened ({self.sample_rate}Hz, {self.sample_format})", flush=True)

    def read_bytes(self) -> bytes:
        width = FLOAT_BYTES if self.sample_format == "float32" else 2
        return self._pa.read(self.frame_size * width)

    def read_frame(self) -> np.ndarray:
        """Read one frame of float32 samples (blocks for one frame period)."""
        return np.frombuffer(self.read_bytes(), dtype='<f4').copy()

    def close(self):
        pa, self._pa = self._pa, None
        if pa is not None:
            pa.close()
            print("Microphone: Closed", flush=True)


@dataclass
class _Voice:
    handle: int
    start_frame: int
    samples: np.ndarray
    on_ended: Callable[[], None]


class PyAudioSink:
    """Callback-mode PyAudio output with sample-accurate scheduling.

    current_time advances by the frames actually handed to the device, so it
    never goes backwards and is unaffected by wall-clock jumps.
    """

    def __init__(self, sample_rate=24000):
        self.sample_rate = sample_rate
        self._pa = None
        self._stream = None
        self._lock = threading.Lock()
        self._voices: dict[int, _Voice] = {}
        self._handles = itertools.count(1)
        self._frames_rendered = 0

    @property
    def current_time(self) -> float:
        return self._frames_rendered / float(self.sample_rate)

    def open(self):
        import pyaudio

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.sample_rate,
                output=True,
                frames_per_buffer=OUTPUT_FRAMES_PER_BUFFER,
                stream_callback=self._callback,
            )
        except Exception as e:
            self.close()
            raise AcquisitionError(f"Audio output unavailable: {e}") from e
        print(f"Speaker: Opened ({self.sample_rate}Hz)", flush=True)

    def schedule(self, samples, sample_rate, start_time, on_ended):
        if sample_rate != self.sample_rate:
            raise ValueError(f"segment rate {sample_rate}Hz != output rate {self.sample_rate}Hz")
        voice = _Voice(
            handle=next(self._handles),
            start_frame=int(round(start_time * self.sample_rate)),
            samples=np.asarray(samples, dtype=np.float32),
            on_ended=on_ended,
        )
        with self._lock:
            # The callback may have advanced past start_time since it was read
            voice.start_frame = max(voice.start_frame, self._frames_rendered)
            self._voices[voice.handle] = voice
        return voice.handle

    def stop(self, handle):
        with self._lock:
            self._voices.pop(handle, None)

    def _callback(self, in_data, frame_count, time_info, status):
        import pyaudio

        out = np.zeros(frame_count, dtype=np.float32)
        finished = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frame_count
            for voice in list(self._voices.values()):
                v_end = voice.start_frame + len(voice.samples)
                lo = max(block_start, voice.start_frame)
                hi = min(block_end, v_end)
                if lo < hi:
                    out[lo - block_start:hi - block_start] += \
                        voice.samples[lo - voice.start_frame:hi - voice.start_frame]
                if v_end <= block_end:
                    finished.append(voice)
                    del self._voices[voice.handle]
            self._frames_rendered = block_end

        for voice in finished:
            try:
                voice.on_ended()
            except Exception as e:
                print(f"Speaker: on_ended callback error: {e}", flush=True)

        np.clip(out, -1.0, 1.0, out=out)
        return out.tobytes(), pyaudio.paContinue

    def close(self):
        with self._lock:
            self._voices.clear()
        stream, self._stream = self._stream, None
        pa, self._pa = self._pa, None
        if stream is not None:
            try:
                stream.stop_stream()
            finally:
                stream.close()
        if pa is not None:
            pa.terminate()
            print("Speaker: Closed", flush=True)
