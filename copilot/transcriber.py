"""
Speech-to-text backends.

Transcriber implementations accept float32 mono audio in [-1, 1] and return
text plus a confidence in [0, 1].
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Union

import numpy as np

logger = logging.getLogger(__name__)

MODEL_SIZES = ("tiny", "base", "small", "medium", "large")


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    confidence: float


class Transcriber(Protocol):
    """Minimal backend interface the TranscriptionSession needs."""

    @property
    def is_initialized(self) -> bool:
        ...

    async def initialize(self) -> None:
        """Load the model; raise on failure."""
        ...

    async def transcribe(self, audio: np.ndarray) -> TranscriptionResult:  # pragma: no cover - interface only
        ...


class WhisperTranscriber:
    """
    Local Whisper via faster-whisper.
    Confidence is the duration-weighted mean of exp(avg_logprob) over segments.
    """

    def __init__(
        self,
        model_size: str = "tiny",
        device: str = "cpu",
        compute_type: str = "int8",
        language: Optional[str] = "en",
    ):
        if model_size not in MODEL_SIZES:
            raise ValueError(f"model_size must be one of {', '.join(MODEL_SIZES)}")
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.language = language
        self._model = None

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    async def initialize(self) -> None:
        if self._model is not None:
            return
        from faster_whisper import WhisperModel

        logger.info(f"Loading Whisper model: {self.model_size}")
        self._model = await asyncio.to_thread(
            WhisperModel, self.model_size, device=self.device, compute_type=self.compute_type
        )

    async def transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        if self._model is None:
            raise RuntimeError("Whisper model is not loaded")
        return await asyncio.to_thread(self._transcribe_sync, audio)

    def _transcribe_sync(self, audio: np.ndarray) -> TranscriptionResult:
        segments, _info = self._model.transcribe(audio, language=self.language, word_timestamps=False)
        texts = []
        weighted = 0.0
        total = 0.0
        for seg in segments:
            text = seg.text.strip()
            if not text:
                continue
            texts.append(text)
            span = max(seg.end - seg.start, 1e-3)
            weighted += math.exp(float(seg.avg_logprob)) * span
            total += span
        confidence = weighted / total if total else 0.0
        return TranscriptionResult(text=" ".join(texts), confidence=min(1.0, max(0.0, confidence)))


@dataclass
class MockTranscriber:
    """
    Scripted transcriber for tests.
    Each scripted item is returned (TranscriptionResult) or raised (exception).
    """
    script: List[Union[TranscriptionResult, BaseException]] = field(default_factory=list)
    default: TranscriptionResult = TranscriptionResult("Mock transcription result", 0.85)
    fail_initialize: bool = False
    initialized: bool = False
    calls: List[int] = field(default_factory=list)

    @property
    def is_initialized(self) -> bool:
        return self.initialized

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def initialize(self) -> None:
        if self.fail_initialize:
            raise RuntimeError("model failed to load")
        self.initialized = True

    async def transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        self.calls.append(int(audio.size))
        await asyncio.sleep(0)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return self.default
