"""Microphone capture: frame reading thread, activity signal, PCM framing.

Frames are read on a daemon thread and handed to on_frame as soon as they
arrive. on_frame must return quickly; the session posts the frame into its
event queue and does the framing and sending there.
"""

import threading
import time
from dataclasses import dataclass

import numpy as np

import pcm_framer

ACTIVITY_THRESHOLD = 0.01  # mean absolute amplitude
FRAME_SIZE = 4096          # samples per frame


@dataclass(frozen=True)
class CapturedFrame:
    """One microphone frame ready for the outbound channel."""
    pcm: bytes
    level: float
    active: bool
    sample_rate: int


def frame_level(samples) -> float:
    """Mean absolute amplitude of a frame (0.0 for an empty frame)."""
    data = np.asarray(samples, dtype=np.float32)
    if data.size == 0:
        return 0.0
    return float(np.mean(np.abs(data)))


class CapturePipeline:
    """Reads frames from a microphone and frames them for transmission.

    Args:
        microphone: opened device with read_frame() and sample_rate
        on_frame: callback(samples) invoked from the capture thread
        on_error: callback(exception) invoked from the capture thread when a
            read fails; capture has ended at that point
        threshold: activity threshold on mean absolute amplitude
    """

    def __init__(self, microphone, on_frame=None, threshold=ACTIVITY_THRESHOLD, on_error=None):
        self._microphone = microphone
        self._on_frame = on_frame or (lambda samples: None)
        self._on_error = on_error or (lambda error: None)
        self.threshold = threshold
        self._stop_event = threading.Event()
        self._thread = None
        self.frames_captured = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._capture_thread, daemon=True)
        self._thread.start()
        print("Capture: Started", flush=True)

    def stop(self):
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
            print(f"Capture: Stopped ({self.frames_captured} frames)", flush=True)

    def process(self, samples) -> CapturedFrame:
        """Compute the activity signal and encode the frame to PCM16."""
        level = frame_level(samples)
        return CapturedFrame(
            pcm=pcm_framer.encode(samples),
            level=level,
            active=level > self.threshold,
            sample_rate=self._microphone.sample_rate,
        )

    def _capture_thread(self):
        """Read frames until stopped; a failed read ends capture."""
        while not self._stop_event.is_set():
            try:
                samples = self._microphone.read_frame()
            except Exception as e:
                if not self._stop_event.is_set():
                    print(f"Capture: Read error: {e}", flush=True)
                    self._on_error(e)
                break
            if samples is None or len(samples) == 0:
                time.sleep(0.01)
                continue
            if self._stop_event.is_set():
                break
            self.frames_captured += 1
            self._on_frame(samples)
