"""Linear PCM framing between float32 samples and the 16-bit wire format."""

import numpy as np

from session_errors import FormatError

BYTES_PER_SAMPLE = 2  # 16-bit PCM
WIRE_DTYPE = np.dtype('<i2')


def encode(samples) -> bytes:
    """Quantize float samples in [-1, 1] to signed 16-bit little-endian PCM.

    Out-of-range values are clipped. The output is densely packed, no header.
    """
    data = np.asarray(samples, dtype=np.float32)
    clipped = np.clip(data, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.round(scaled).astype(WIRE_DTYPE).tobytes()


def decode(data: bytes) -> np.ndarray:
    """Convert 16-bit little-endian PCM bytes back to float32 samples in [-1, 1)."""
    if len(data) % BYTES_PER_SAMPLE:
        raise FormatError(f"PCM16 payload has odd length ({len(data)} bytes)")
    samples = np.frombuffer(data, dtype=WIRE_DTYPE)
    return samples.astype(np.float32) / 32768.0


def duration_of(num_samples: int, sample_rate: int) -> float:
    """Seconds covered by num_samples at sample_rate."""
    return num_samples / float(sample_rate)
