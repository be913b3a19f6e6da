"""
Copilot Orchestrator
====================

Composes SecureStore, SuggestionEngine and TranscriptionSession behind the
session-scoped commands used by the HTTP router:

    start_session → feed_audio / get_suggestions / get_partial_transcript → stop_session

At most one session is active at a time.
"""
import logging
from typing import List, Optional

import numpy as np

from config import Settings
from copilot.audio import CaptureDevice, PushCaptureDevice, pcm16_to_float32
from copilot.errors import ValidationError
from copilot.events import EventChannel, Subscription
from copilot.key_provider import create_key_provider
from copilot.llm_client import GeminiProvider, MockProvider, OllamaProvider, Provider
from copilot.rate_limiter import RateLimiter
from copilot.resilience import RetryPolicy
from copilot.response_cache import ResponseCache
from copilot.retention import RetentionTask
from copilot.schemas import (
    ActionItemRecord,
    ActionItemRequest,
    HealthResponse,
    IntegrationData,
    PartialTranscriptResponse,
    ProfileData,
    StartSessionRequest,
    StartSessionResponse,
    StopSessionResponse,
    SuggestionResult,
)
from copilot.secure_store import SecureStore
from copilot.speech_metrics import compute_metrics
from copilot.suggestion_engine import SuggestionEngine
from copilot.transcriber import Transcriber, WhisperTranscriber
from copilot.transcription import SessionState, TranscriptionSession

logger = logging.getLogger(__name__)


def build_providers(settings=Settings) -> List[Provider]:
    """
    Instantiate the provider chain in configured order.
    Gemini is skipped when no API key is set.
    """
    providers: List[Provider] = []
    for name in settings.provider_chain():
        if name == "gemini":
            if not settings.GEMINI_API_KEY:
                logger.warning("GEMINI_API_KEY not set; skipping gemini provider")
                continue
            providers.append(GeminiProvider(settings.GEMINI_API_KEY, settings.GEMINI_MODEL))
        elif name == "ollama":
            providers.append(OllamaProvider(settings.OLLAMA_HOST, settings.OLLAMA_MODEL))
        elif name == "mock":
            providers.append(MockProvider())
        else:
            logger.warning(f"Unknown provider {name!r} in chain; skipping")
    return providers


class Orchestrator:

    def __init__(
        self,
        store: SecureStore,
        engine: SuggestionEngine,
        transcription: TranscriptionSession,
        retention: Optional[RetentionTask] = None,
    ):
        self.store = store
        self.engine = engine
        self.transcription = transcription
        self.retention = retention
        self.active_session_id: Optional[int] = None
        self.last_session_id: Optional[int] = None

    @classmethod
    def from_settings(
        cls,
        settings=Settings,
        transcriber: Optional[Transcriber] = None,
        device: Optional[CaptureDevice] = None,
    ) -> "Orchestrator":
        """Wire every component from configuration. Nothing is opened yet."""
        key_provider = create_key_provider(
            settings.KEY_BACKEND,
            key_file=settings.KEY_FILE,
            service_name=settings.KEYRING_SERVICE,
            account_name=settings.KEYRING_ACCOUNT,
        )
        store = SecureStore(settings.DATABASE_URL, key_provider, busy_timeout=settings.DB_BUSY_TIMEOUT_SECONDS)

        retry_policy = RetryPolicy(
            max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
            base_delay=settings.PROVIDER_RETRY_DELAY_SECONDS,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
        engine = SuggestionEngine(
            store,
            build_providers(settings),
            rate_limiter=RateLimiter(settings.PROVIDER_RATE_QUOTAS, default_quota=settings.DEFAULT_RATE_QUOTA),
            cache=ResponseCache(),
            retry_policy=retry_policy,
        )
        transcription = TranscriptionSession(
            store,
            transcriber or WhisperTranscriber(settings.WHISPER_MODEL_SIZE),
            device or PushCaptureDevice(),
            events=EventChannel(),
            confidence_threshold=settings.CONFIDENCE_THRESHOLD,
            max_consecutive_errors=settings.MAX_CONSECUTIVE_ERRORS,
            retry_policy=retry_policy,
        )
        retention = RetentionTask(store, retention_days=settings.RETENTION_DAYS)
        return cls(store, engine, transcription, retention)

    # ============ Lifecycle ============

    def open(self) -> "Orchestrator":
        self.store.open()
        if self.store.degraded:
            logger.warning(f"Running without durable persistence: {self.store.degraded}")
        if self.retention is not None:
            self.retention.start()
        return self

    async def close(self):
        if self.active_session_id is not None:
            await self.transcription.stop()
            self.store.end_session(self.active_session_id)
            self.active_session_id = None
        if self.retention is not None:
            await self.retention.stop()
        self.store.close()

    # ============ Sessions ============

    async def start_session(self, options: StartSessionRequest) -> StartSessionResponse:
        """
        Create a session row and start transcription for it.
        A transcription failure leaves the session open with state `disabled`.
        """
        if self.active_session_id is not None:
            raise ValidationError(f"Session {self.active_session_id} is already active")

        session = self.store.create_session(
            type=options.type,
            mode=options.mode,
            title=options.title,
            source_app=options.source_app,
        )
        self.active_session_id = session.id
        self.last_session_id = session.id

        state = await self.transcription.start(session.id)
        logger.info(f"Session {session.id} started (transcription: {state.value})")
        return StartSessionResponse(
            session=session,
            transcription_state=state.value,
            persistence_durable=self.store.is_durable,
        )

    async def stop_session(self) -> StopSessionResponse:
        """Stop transcription, close the session, save metrics and summarize it."""
        session_id = self.active_session_id
        if session_id is None:
            return StopSessionResponse()

        await self.transcription.stop()
        session = self.store.end_session(session_id)
        self.active_session_id = None

        transcripts = self.store.get_transcripts(session_id)
        if transcripts:
            metrics = compute_metrics(session_id, transcripts, session.started_at, session.ended_at)
            self.store.save_metrics(session_id, metrics)

        summary = await self.engine.summarize_session(session_id)
        logger.info(f"Session {session_id} stopped")
        return StopSessionResponse(session_id=session_id, summary=summary)

    # ============ Suggestions ============

    async def get_suggestions(
        self,
        context: str,
        pipeline: str = "interview",
        session_id: Optional[int] = None,
    ) -> SuggestionResult:
        if session_id is None:
            session_id = self.active_session_id
        return await self.engine.get_suggestions(context, pipeline, session_id)

    def accept_suggestion(self, suggestion_id: int) -> bool:
        return self.store.mark_suggestion_accepted(suggestion_id)

    def add_action_item(self, request: ActionItemRequest, session_id: Optional[int] = None) -> ActionItemRecord:
        session_id = session_id if session_id is not None else self.active_session_id
        if session_id is None:
            raise ValidationError("No active session")
        return self.store.add_action_item(session_id, request.text, request.owner, request.due_date)

    # ============ Transcription ============

    def feed_audio(self, pcm16: bytes) -> int:
        """Push PCM16 little-endian mono audio at 16 kHz. Returns samples buffered."""
        if len(pcm16) % 2:
            raise ValidationError("PCM16 audio must have an even number of bytes")
        return self.transcription.feed_audio(pcm16_to_float32(pcm16))

    def feed_samples(self, samples: np.ndarray) -> int:
        return self.transcription.feed_audio(samples)

    def get_partial_transcript(self) -> PartialTranscriptResponse:
        """Latest accepted transcript text for the active or most recent session."""
        return PartialTranscriptResponse(
            session_id=self.active_session_id or self.last_session_id,
            text=self.transcription.last_text,
        )

    def subscribe(self) -> Subscription:
        return self.transcription.events.subscribe()

    # ============ Profile & Integrations ============

    def save_profile(self, data: ProfileData) -> None:
        self.store.save_profile(data)

    def get_profile(self) -> Optional[ProfileData]:
        return self.store.get_profile()

    def save_integration(self, data: IntegrationData) -> None:
        self.store.save_integration(data.provider, data.access_token, data.refresh_token, data.scopes)

    def get_integration(self, provider: str) -> Optional[IntegrationData]:
        return self.store.get_integration(provider)

    # ============ Privacy ============

    async def wipe_all_data(self) -> None:
        """Stop any active session, then erase every table and the encryption key."""
        if self.active_session_id is not None:
            await self.transcription.stop()
            self.active_session_id = None
        self.store.wipe_all_data()
        self.engine.clear_cache()
        self.transcription.last_text = ""
        self.last_session_id = None
        logger.info("All user data wiped")

    # ============ Health ============

    def health(self) -> HealthResponse:
        state = self.transcription.state
        return HealthResponse(
            status="degraded" if not self.store.is_durable or state == SessionState.ERROR else "healthy",
            persistence_durable=self.store.is_durable,
            transcription_state=state.value,
            providers=self.engine.provider_names,
        )
