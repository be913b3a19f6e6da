"""Audio buffering and capture-device interface. Mono float32 at 16 kHz."""
from typing import List, Protocol

import numpy as np

SAMPLE_RATE_HZ = 16000


def pcm16_to_float32(pcm16_le: bytes) -> np.ndarray:
    """Convert PCM16 little-endian bytes to float32 in [-1, 1]."""
    samples = np.frombuffer(pcm16_le, dtype="<i2")
    return samples.astype(np.float32) / 32768.0


class AudioBuffer:
    """
    Accumulates captured audio between transcription passes.

    - append() is the producer side (capture callback).
    - swap() is the consumer side: it hands back everything buffered and
      leaves an empty buffer in its place, in one step.
    - restore() puts a failed snapshot back in front of newer audio.
    - At most `max_seconds` are kept; the oldest samples are dropped first.
    """

    def __init__(self, sample_rate_hz: int = SAMPLE_RATE_HZ, max_seconds: float = 30.0):
        if sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be > 0")
        self.sample_rate_hz = sample_rate_hz
        self.max_samples = int(sample_rate_hz * max_seconds)
        self._chunks: List[np.ndarray] = []
        self._size = 0

    def __len__(self) -> int:
        return self._size

    @property
    def duration_seconds(self) -> float:
        return self._size / self.sample_rate_hz

    def append(self, samples: np.ndarray) -> int:
        """Append mono samples; returns how many were added."""
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        if chunk.size == 0:
            return 0
        self._chunks.append(chunk)
        self._size += chunk.size
        self._trim()
        return int(chunk.size)

    def swap(self) -> np.ndarray:
        """Snapshot-and-clear."""
        chunks, self._chunks, self._size = self._chunks, [], 0
        if not chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(chunks)

    def restore(self, snapshot: np.ndarray):
        if snapshot.size == 0:
            return
        self._chunks.insert(0, snapshot)
        self._size += snapshot.size
        self._trim()

    def clear(self):
        self._chunks = []
        self._size = 0

    def _trim(self):
        excess = self._size - self.max_samples
        while excess > 0 and self._chunks:
            head = self._chunks[0]
            if head.size <= excess:
                self._chunks.pop(0)
                self._size -= head.size
                excess -= head.size
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess
                excess = 0


class CaptureDevice(Protocol):
    """Audio source the session records from."""

    async def check_permission(self) -> bool:
        """True if the device exists and capture is permitted."""
        ...

    async def open(self) -> None:
        ...

    async def close(self) -> None:
        ...


class PushCaptureDevice:
    """
    Capture device fed by the client (e.g. the HTTP /audio endpoint).
    Always available; audio arrives through the session's feed_audio().
    """

    def __init__(self, permitted: bool = True):
        self.permitted = permitted
        self.is_open = False

    async def check_permission(self) -> bool:
        return self.permitted

    async def open(self) -> None:
        self.is_open = True

    async def close(self) -> None:
        self.is_open = False
