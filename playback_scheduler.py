"""Gapless playback scheduling for streamed model audio.

Segments can arrive faster than real time. Each one is placed at
max(next_playback_time, clock now) so consecutive segments play back-to-back
without gaps or overlap, and a scheduler that went idle starts the next
segment immediately instead of at a stale future timestamp.

The sink is anything with:
    current_time                      -> float, monotonic output clock (seconds)
    schedule(samples, sample_rate, start_time, on_ended) -> handle
    stop(handle)
    close()
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import pcm_framer

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class PlaybackSegment:
    """One decoded chunk of model audio owned by the scheduler until it ends."""
    samples: Any
    sample_rate: int
    start_time: float = 0.0
    duration: float = 0.0
    handle: Any = field(default=None, repr=False)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class PlaybackScheduler:
    """Serializes segments onto a sink against its output clock.

    Args:
        sink: audio output with a monotonic clock (see module docstring)
        on_drained: called when the last active segment finishes naturally
        dispatch: callable(fn) used to run completion handling on the
            owner's thread; defaults to calling fn directly
    """

    def __init__(self, sink, on_drained: Callable[[], None] | None = None,
                 dispatch: Callable[[Callable[[], None]], None] | None = None):
        self._sink = sink
        self._on_drained = on_drained or (lambda: None)
        self._dispatch = dispatch or (lambda fn: fn())
        self._active: set[PlaybackSegment] = set()
        self.next_playback_time = 0.0

    @property
    def is_active(self) -> bool:
        return bool(self._active)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def enqueue(self, samples, sample_rate: int) -> PlaybackSegment | None:
        """Schedule samples right after the previous segment (or now, if idle)."""
        segment = PlaybackSegment(samples=samples, sample_rate=sample_rate,
                                  duration=pcm_framer.duration_of(len(samples), sample_rate))
        segment.start_time = max(self.next_playback_time, self._sink.current_time)

        def _ended(seg=segment):
            self._dispatch(lambda: self.segment_finished(seg))

        try:
            segment.handle = self._sink.schedule(samples, sample_rate,
                                                 segment.start_time, _ended)
        except Exception as e:
            logger.error("Playback: failed to schedule %.2fs segment: %s",
                         segment.duration, e)
            return None

        self.next_playback_time = segment.start_time + segment.duration
        self._active.add(segment)
        return segment

    def segment_finished(self, segment: PlaybackSegment):
        """Handle natural completion of a segment."""
        if segment not in self._active:
            return  # stopped by interrupt(), already forgotten
        self._active.discard(segment)
        if not self._active:
            self._on_drained()

    def interrupt(self):
        """Stop everything playing or pending and drop the backlog."""
        stopped = list(self._active)
        self._active.clear()
        self.next_playback_time = 0.0
        for segment in stopped:
            try:
                self._sink.stop(segment.handle)
            except Exception as e:
                logger.warning("Playback: stop failed for segment at %.2fs: %s",
                               segment.start_time, e)
        return len(stopped)

    def close(self):
        """Interrupt playback and release the sink."""
        self.interrupt()
        try:
            self._sink.close()
        except Exception as e:
            logger.warning("Playback: sink close failed: %s", e)
