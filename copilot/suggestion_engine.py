"""
Suggestion Engine
=================

Turns conversational context into a short list of suggestions.

Flow for get_suggestions():
1. Validate input (text, length, pipeline)
2. Screen raw context for prompt injection
3. Cache lookup (pipeline + sha256 of context)
4. Redact PII, sanitize, enrich from the secure store
5. Build the pipeline prompt and walk the provider chain
   (rate limit → timeout → retry with backoff → next provider)
6. Parse and validate the response, redact, cache, persist

Any failure resolves to the pipeline's fallback list; nothing is raised.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from copilot.errors import (
    InjectionDetected,
    IntegrityError,
    KeyStoreError,
    ProviderError,
    ProviderErrorKind,
    QuotaExceeded,
    ValidationError,
)
from copilot.llm_client import GenerationOptions, Provider
from copilot.pipelines import (
    Pipeline,
    Prompt,
    build_prompt,
    extract_current_question,
    get_fallback_suggestions,
)
from copilot.rate_limiter import RateLimiter
from copilot.redaction import (
    find_prompt_injection,
    redact_pii,
    sanitize_text,
    truncate_by_tokens,
)
from copilot.resilience import RetryPolicy, call_with_retry
from copilot.response_cache import ResponseCache, make_cache_key
from copilot.schemas import SessionSummary, SuggestionResult, SuggestionSource
from copilot.secure_store import SecureStore

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 50_000
MIN_SUGGESTION_CHARS = 10
MAX_DISPLAY_SUGGESTIONS = 4
MAX_RESPONSE_SUGGESTIONS = 10
MAX_SUGGESTION_CHARS = 1000

# Token budgets per enriched field
TRANSCRIPT_TOKENS = 1500
PROFILE_FIELD_TOKENS = 100
QUESTION_TOKENS = 75

SESSION_CACHE_KEY = "session_{session_id}"


def parse_suggestions(response: str) -> List[str]:
    """
    Split a response into suggestions: strip bullets/numbering, drop short
    fragments. Returns every parsed item; callers cap the display count.
    """
    suggestions = []
    for line in response.splitlines():
        cleaned = line.strip()
        cleaned = cleaned.lstrip("-•*").strip()
        if cleaned[:1].isdigit():
            head, sep, tail = cleaned.partition(".")
            if sep and head.isdigit():
                cleaned = tail.strip()
            else:
                head, sep, tail = cleaned.partition(")")
                if sep and head.isdigit():
                    cleaned = tail.strip()
        if len(cleaned) > MIN_SUGGESTION_CHARS:
            suggestions.append(cleaned)
    return suggestions


def validate_suggestions(suggestions: Sequence[str]) -> Optional[str]:
    """Return a rejection reason, or None if the parsed set is acceptable."""
    if not suggestions:
        return "empty response"
    if len(suggestions) > MAX_RESPONSE_SUGGESTIONS:
        return f"too many suggestions ({len(suggestions)})"
    for item in suggestions:
        if len(item) > MAX_SUGGESTION_CHARS:
            return "suggestion too long"
        match = find_prompt_injection(item)
        if match:
            return f"reflected injection: {match!r}"
    return None


class SuggestionEngine:
    """
    Multi-provider suggestion generator with cache, rate limits and fallbacks.
    Dependencies are injected; the engine owns its cache and rate limiter.
    """

    def __init__(
        self,
        store: SecureStore,
        providers: Sequence[Provider],
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        generation_options: Optional[GenerationOptions] = None,
    ):
        self.store = store
        self.providers = list(providers)
        self.rate_limiter = rate_limiter or RateLimiter({})
        self.cache = cache if cache is not None else ResponseCache()
        self.retry_policy = retry_policy or RetryPolicy()
        self.generation_options = generation_options or GenerationOptions()

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]

    # ============ Public API ============

    async def get_suggestions(
        self,
        context: Any,
        pipeline: Any = Pipeline.INTERVIEW,
        session_id: Optional[int] = None,
        use_cache: bool = True,
    ) -> SuggestionResult:
        try:
            resolved = self._validate_input(context, pipeline)
        except ValidationError as e:
            logger.warning(f"Rejected suggestion request: {e}")
            return self._fallback(_pipeline_or_default(pipeline), f"validation: {e}")

        try:
            self._screen(context)
        except InjectionDetected as e:
            logger.warning(f"Potential prompt injection detected ({e}); using fallback")
            return self._fallback(resolved, "injection detected")

        cache_key = make_cache_key(resolved.value, context)
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return SuggestionResult(
                    suggestions=list(cached),
                    pipeline=resolved.value,
                    source=SuggestionSource.CACHE,
                )

        enriched = self.enrich_context(sanitize_text(redact_pii(context)), session_id)
        prompt = build_prompt(resolved, enriched)
        if not prompt.is_valid():
            logger.warning(f"Prompt for {resolved.value} exceeds size limits; using fallback")
            return self._fallback(resolved, "invalid prompt")

        try:
            provider_name, response = await self._generate(prompt)
        except ProviderError as e:
            logger.warning(f"All providers failed for {resolved.value}: {e}")
            return self._fallback(resolved, str(e))

        parsed = parse_suggestions(response)
        rejection = validate_suggestions(parsed)
        if rejection:
            logger.warning(f"Invalid response from {provider_name} ({rejection}); using fallback")
            return self._fallback(resolved, f"invalid response: {rejection}")

        suggestions = [redact_pii(s) for s in parsed[:MAX_DISPLAY_SUGGESTIONS]]

        if use_cache:
            self.cache.set(cache_key, list(suggestions))

        if session_id is not None:
            self._persist(session_id, resolved, suggestions)

        return SuggestionResult(
            suggestions=suggestions,
            pipeline=resolved.value,
            source=SuggestionSource.PROVIDER,
            provider=provider_name,
        )

    async def summarize_session(self, session_id: int) -> Optional[SessionSummary]:
        """
        Generate a meeting-style summary for a finished session.
        Returns None if the session does not exist.
        """
        session = self.store.get_session(session_id)
        if session is None:
            return None

        transcripts = self.store.get_transcripts(session_id)
        action_items = self.store.list_action_items(session_id)
        metrics = self.store.get_metrics(session_id)
        duration = _duration_minutes(session.started_at, session.ended_at)

        transcript_text = "\n".join(t.text for t in transcripts)
        summary_request = (
            "Generate a meeting summary with the following sections:\n"
            "1. Key Decisions\n"
            "2. Action Items (with owners and due dates)\n"
            "3. Next Steps\n"
            "4. Risks/Concerns\n\n"
            f"Meeting Transcript: {truncate_by_tokens(transcript_text, TRANSCRIPT_TOKENS)}\n"
            f"Duration: {duration if duration is not None else 'Unknown'} minutes\n"
            f"Participants: {session.source_app or 'Unknown'}"
        )
        prompt = build_prompt(Pipeline.MEETING, {
            "transcript": redact_pii(summary_request),
            "session_type": session.type,
            "topic": session.title,
        })

        source = SuggestionSource.FALLBACK
        summary = "\n".join(get_fallback_suggestions(Pipeline.MEETING))
        if transcripts and prompt.is_valid():
            try:
                _, response = await self._generate(prompt)
                summary = redact_pii(response.strip())
                source = SuggestionSource.PROVIDER
            except ProviderError as e:
                logger.warning(f"Session summary generation failed for {session_id}: {e}")

        return SessionSummary(
            session_id=session_id,
            summary=summary,
            action_items=action_items,
            metrics=metrics,
            duration_minutes=duration,
            source=source,
        )

    # ============ Context ============

    def enrich_context(self, text: str, session_id: Optional[int]) -> Dict[str, Any]:
        """
        Merge redacted input with profile, session metadata and cached context.
        Store failures are logged and skipped.
        """
        enriched: Dict[str, Any] = {
            "transcript": truncate_by_tokens(text, TRANSCRIPT_TOKENS),
            "current_question": truncate_by_tokens(extract_current_question(text), QUESTION_TOKENS),
        }

        try:
            profile = self.store.get_profile()
        except (IntegrityError, KeyStoreError, SQLAlchemyError) as e:
            logger.error(f"Profile unavailable for enrichment: {e}")
            profile = None
        if profile:
            enriched["resume"] = self._clean_field(profile.resume, PROFILE_FIELD_TOKENS)
            enriched["job_description"] = self._clean_field(profile.job_description, PROFILE_FIELD_TOKENS)
            enriched["role"] = profile.role
            enriched["industry"] = profile.industry

        if session_id is not None:
            try:
                session = self.store.get_session(session_id)
            except SQLAlchemyError as e:
                logger.error(f"Session {session_id} unavailable for enrichment: {e}")
                session = None
            if session:
                enriched["session_type"] = session.type
                enriched["session_mode"] = session.mode
                enriched["source_app"] = session.source_app
                enriched["topic"] = session.title

            try:
                cached = self.store.get_context_cache(SESSION_CACHE_KEY.format(session_id=session_id))
            except (IntegrityError, KeyStoreError, SQLAlchemyError) as e:
                logger.error(f"Cached context for session {session_id} unavailable: {e}")
                cached = None
            if isinstance(cached, dict):
                for key, value in cached.items():
                    if key in ("transcript", "current_question"):
                        continue
                    enriched[key] = self._clean_field(value, PROFILE_FIELD_TOKENS) if isinstance(value, str) else value

        return enriched

    @staticmethod
    def _clean_field(value: Optional[str], max_tokens: int) -> Optional[str]:
        if not value:
            return value
        return truncate_by_tokens(sanitize_text(redact_pii(value)), max_tokens)

    # ============ Providers ============

    async def _generate(self, prompt: Prompt):
        """
        Walk the provider chain in order.

        Returns:
            (provider_name, response_text)

        Raises:
            ProviderError: every provider failed or none is configured
        """
        if not self.providers:
            raise ProviderError("none", ProviderErrorKind.UNAVAILABLE, "no provider configured")

        last_error: Optional[ProviderError] = None
        for provider in self.providers:
            try:
                response = await self._call_provider(provider, prompt)
                return provider.name, response
            except QuotaExceeded as e:
                logger.warning(f"Rate limit exceeded for {provider.name}; trying next provider")
                last_error = e
            except ProviderError as e:
                logger.warning(f"Provider {provider.name} failed: {e}")
                last_error = e
            except Exception as e:
                logger.error(f"Provider {provider.name} raised unexpected error: {e}")
                last_error = ProviderError(provider.name, ProviderErrorKind.SERVER_ERROR, str(e))

        raise last_error

    async def _call_provider(self, provider: Provider, prompt: Prompt) -> str:
        async def attempt() -> str:
            if not self.rate_limiter.try_acquire(provider.name):
                raise QuotaExceeded(provider.name, self.rate_limiter.quota_for(provider.name))
            return await provider.generate(prompt.system, prompt.user, self.generation_options)

        return await call_with_retry(
            attempt,
            self.retry_policy,
            is_retryable=lambda e: isinstance(e, ProviderError) and e.retryable,
            on_timeout=lambda: ProviderError(provider.name, ProviderErrorKind.TIMEOUT, "request timed out"),
            label=f"provider {provider.name}",
        )

    # ============ Helpers ============

    def _validate_input(self, context: Any, pipeline: Any) -> Pipeline:
        if not isinstance(context, str) or not context:
            raise ValidationError("context must be non-empty text")
        if len(context) > MAX_CONTEXT_CHARS:
            raise ValidationError(f"context exceeds {MAX_CONTEXT_CHARS} characters")
        return Pipeline.parse(pipeline)

    @staticmethod
    def _screen(text: str):
        match = find_prompt_injection(text)
        if match:
            raise InjectionDetected(match)

    def _fallback(self, pipeline: Pipeline, reason: str) -> SuggestionResult:
        return SuggestionResult(
            suggestions=get_fallback_suggestions(pipeline),
            pipeline=pipeline.value,
            source=SuggestionSource.FALLBACK,
            reason=reason,
        )

    def _persist(self, session_id: int, pipeline: Pipeline, suggestions: List[str]):
        try:
            for suggestion in suggestions:
                self.store.add_suggestion(session_id, pipeline.value, suggestion)
        except (ValidationError, SQLAlchemyError) as e:
            logger.error(f"Failed to persist suggestions for session {session_id}: {e}")

    def clear_cache(self):
        self.cache.clear()


def _pipeline_or_default(value: Any) -> Pipeline:
    try:
        return Pipeline.parse(value)
    except ValidationError:
        return Pipeline.INTERVIEW


def _duration_minutes(started_at: Optional[datetime], ended_at: Optional[datetime]) -> Optional[int]:
    if not started_at or not ended_at:
        return None
    return round((ended_at - started_at).total_seconds() / 60)
