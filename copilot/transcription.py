"""
Transcription Session
=====================

Lifecycle of one audio-to-text session:

    idle → starting → recording ⇄ processing → stopping → idle

plus `disabled` (backend or device could not be started) and `error`
(circuit breaker tripped). Failures become states and events; start() and
stop() never raise.

A pass snapshots-and-clears the audio buffer before awaiting the
transcriber, so audio captured during the call lands in the fresh buffer.
Passes are serialized by a lock, which keeps transcript order.
"""
import asyncio
import logging
from enum import Enum
from typing import Optional

import numpy as np
from sqlalchemy.exc import SQLAlchemyError

from copilot.audio import SAMPLE_RATE_HZ, AudioBuffer, CaptureDevice
from copilot.errors import CircuitOpenError, ValidationError
from copilot.events import EventChannel, SessionErrorEvent, SessionStateEvent, TranscriptEvent
from copilot.redaction import redact_pii
from copilot.resilience import RetryPolicy, call_with_retry
from copilot.secure_store import SecureStore
from copilot.transcriber import Transcriber, TranscriptionResult

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    PROCESSING = "processing"
    STOPPING = "stopping"
    DISABLED = "disabled"
    ERROR = "error"


ACTIVE_STATES = (SessionState.RECORDING, SessionState.PROCESSING)
STARTABLE_STATES = (SessionState.IDLE, SessionState.DISABLED, SessionState.ERROR)


class TranscriptionSession:
    """
    Buffers audio, transcribes it periodically, and persists accepted text.

    Args:
        interval: seconds between timer-driven passes; None disables the timer
            (passes are then driven through process_pending())
        min_buffer_seconds: passes are skipped below this much buffered audio
        confidence_threshold: results below this confidence are dropped
        max_consecutive_errors: failed passes in a row before the breaker trips
    """

    def __init__(
        self,
        store: SecureStore,
        transcriber: Transcriber,
        device: CaptureDevice,
        events: Optional[EventChannel] = None,
        interval: Optional[float] = 1.0,
        min_buffer_seconds: float = 0.5,
        confidence_threshold: float = 0.7,
        max_consecutive_errors: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
        speaker: Optional[str] = "user",
        sample_rate_hz: int = SAMPLE_RATE_HZ,
        max_buffer_seconds: float = 30.0,
    ):
        self.store = store
        self.transcriber = transcriber
        self.device = device
        self.events = events if events is not None else EventChannel()
        self.interval = interval
        self.min_buffer_seconds = min_buffer_seconds
        self.confidence_threshold = confidence_threshold
        self.max_consecutive_errors = max_consecutive_errors
        self.retry_policy = retry_policy or RetryPolicy()
        self.speaker = speaker
        self.buffer = AudioBuffer(sample_rate_hz, max_buffer_seconds)

        self.state = SessionState.IDLE
        self.session_id: Optional[int] = None
        self.last_text: str = ""
        self.consecutive_errors = 0

        self._last_raw_text: Optional[str] = None
        self._breaker_tripped = False
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    # ============ Lifecycle ============

    async def start(self, session_id: int) -> SessionState:
        """
        Check the capture device, load the backend and begin recording.
        Any startup failure leaves the session `disabled`.
        """
        if self.state not in STARTABLE_STATES:
            logger.warning(f"Transcription already running for session {self.session_id}")
            return self.state

        self.session_id = session_id
        self._set_state(SessionState.STARTING)

        try:
            if not await self.device.check_permission():
                return self._disable("capture device unavailable or permission denied")
            if not self.transcriber.is_initialized:
                await self.transcriber.initialize()
            await self.device.open()
        except Exception as e:
            logger.error(f"Failed to start transcription: {e}")
            return self._disable(f"initialization failed: {e}")

        self.buffer.clear()
        self.consecutive_errors = 0
        self.last_text = ""
        self._last_raw_text = None
        self._breaker_tripped = False
        self._set_state(SessionState.RECORDING)

        if self.interval:
            self._timer = asyncio.create_task(self._run_timer())
        logger.info(f"Transcription started for session {session_id}")
        return self.state

    async def stop(self) -> SessionState:
        """Flush buffered audio once and return to idle. No-op when not running."""
        if self.state in STARTABLE_STATES or self.state == SessionState.STOPPING:
            return self.state

        self._set_state(SessionState.STOPPING)
        await self._cancel_timer()

        await self.process_pending()
        if self.state == SessionState.ERROR:
            return self.state

        await self._close_device()
        self.buffer.clear()
        self._set_state(SessionState.IDLE)
        logger.info(f"Transcription stopped for session {self.session_id}")
        return self.state

    # ============ Audio ============

    def feed_audio(self, samples: np.ndarray) -> int:
        """Producer side. Audio is ignored unless the session is recording."""
        if not self.is_active:
            return 0
        return self.buffer.append(samples)

    async def process_pending(self) -> Optional[str]:
        """
        Run one transcription pass if enough audio is buffered.

        Returns:
            The accepted (redacted) text, or None if nothing was accepted
        """
        async with self._lock:
            if self.state not in ACTIVE_STATES and self.state != SessionState.STOPPING:
                return None
            if self.buffer.duration_seconds < self.min_buffer_seconds:
                return None

            snapshot = self.buffer.swap()
            if self.state == SessionState.RECORDING:
                self._set_state(SessionState.PROCESSING)
            try:
                result = await self._transcribe(snapshot)
            except asyncio.CancelledError:
                self.buffer.restore(snapshot)
                raise
            except Exception as e:
                self.buffer.restore(snapshot)
                await self._record_failure(e)
                return None
            finally:
                if self.state == SessionState.PROCESSING:
                    self._set_state(SessionState.RECORDING)

            try:
                return self._accept(result)
            except (ValidationError, SQLAlchemyError) as e:
                logger.error(f"Failed to persist transcript for session {self.session_id}: {e}")
                await self._record_failure(e)
                return None

    async def _transcribe(self, audio: np.ndarray) -> TranscriptionResult:
        return await call_with_retry(
            lambda: self.transcriber.transcribe(audio),
            self.retry_policy,
            is_retryable=lambda e: True,
            on_timeout=lambda: TimeoutError("transcription timed out"),
            label="transcriber",
        )

    def _accept(self, result: TranscriptionResult) -> Optional[str]:
        text = (result.text or "").strip()
        if not text or result.confidence < self.confidence_threshold:
            logger.debug(f"Dropped transcription below confidence threshold ({result.confidence:.2f})")
            return None
        if text == self._last_raw_text:
            return None

        redacted = redact_pii(text)
        self.store.add_transcript(self.session_id, self.speaker, redacted, result.confidence)

        self._last_raw_text = text
        self.last_text = redacted
        self.consecutive_errors = 0
        self.events.publish(TranscriptEvent(self.session_id, redacted, result.confidence))
        return redacted

    # ============ Circuit Breaker ============

    async def _record_failure(self, error: BaseException):
        self.consecutive_errors += 1
        logger.warning(
            f"Transcription pass failed ({self.consecutive_errors}/{self.max_consecutive_errors}): {error}"
        )
        if self.consecutive_errors >= self.max_consecutive_errors and not self._breaker_tripped:
            await self._trip(error)

    async def _trip(self, error: BaseException):
        self._breaker_tripped = True
        breaker = CircuitOpenError(self.consecutive_errors, error)
        logger.error(f"Stopping transcription for session {self.session_id}: {breaker}")

        self._set_state(SessionState.STOPPING, str(breaker))
        if self._timer is not None and self._timer is not asyncio.current_task():
            self._timer.cancel()
        self._timer = None
        await self._close_device()
        self.buffer.clear()

        self._set_state(SessionState.ERROR, str(breaker))
        self.events.publish(SessionErrorEvent(self.session_id, str(breaker), self.consecutive_errors))

    # ============ Internals ============

    async def _run_timer(self):
        while self.is_active:
            await asyncio.sleep(self.interval)
            if not self.is_active:
                break
            try:
                await self.process_pending()
            except Exception as e:
                logger.error(f"Unexpected error in transcription pass for session {self.session_id}: {e}")
                await self._record_failure(e)

    async def _cancel_timer(self):
        timer, self._timer = self._timer, None
        if timer is None or timer is asyncio.current_task():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _close_device(self):
        try:
            await self.device.close()
        except Exception as e:
            logger.warning(f"Error closing capture device: {e}")

    def _disable(self, reason: str) -> SessionState:
        logger.warning(f"Transcription disabled: {reason}")
        self._set_state(SessionState.DISABLED, reason)
        return self.state

    def _set_state(self, state: SessionState, reason: Optional[str] = None):
        self.state = state
        self.events.publish(SessionStateEvent(self.session_id, state.value, reason))
