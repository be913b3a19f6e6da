"""
Echo Copilot - Secure Session Store & Resilient AI Orchestration
================================================================

Conversation copilot core:
- Encrypted-at-rest session store (AES-256-GCM, OS keychain or key file)
- Suggestion engine with PII redaction, injection screening, caching,
  per-provider rate limits and a timeout/retry/fallback provider chain
- Transcription sessions with confidence gating and a circuit breaker

Key Design Principles:
1. Callers always get a value - failures become fallback results or states
2. Plaintext secrets never leave the store
3. Every bounded resource has an explicit limit (cache, buffer, quotas)
"""

from copilot.secure_store import SecureStore
from copilot.suggestion_engine import SuggestionEngine
from copilot.transcription import SessionState, TranscriptionSession
from copilot.orchestrator import Orchestrator
from copilot.llm_client import Provider, GeminiProvider, OllamaProvider, MockProvider

__all__ = [
    'SecureStore',
    'SuggestionEngine',
    'SessionState',
    'TranscriptionSession',
    'Orchestrator',
    'Provider',
    'GeminiProvider',
    'OllamaProvider',
    'MockProvider',
]
