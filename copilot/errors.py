"""
Error taxonomy for the copilot core.

ValidationError and InjectionDetected are resolved to fallback suggestions by
the SuggestionEngine; ProviderError is retried and fallback-chained;
IntegrityError is raised to the caller of a single record read;
CircuitOpenError and PersistenceDegraded are reported once as events/status.
"""
from enum import Enum
from typing import Optional


class CopilotError(Exception):
    """Base class for all copilot errors."""


class ValidationError(CopilotError):
    """Malformed input or unknown pipeline."""


class IntegrityError(CopilotError):
    """Decryption failed: tampered ciphertext or wrong key."""


class InjectionDetected(CopilotError):
    """Text matched the prompt-injection screen."""


class KeyStoreError(CopilotError):
    """The encryption key could not be read, written or destroyed."""


class PersistenceDegraded(CopilotError):
    """The durable store could not be opened; data lives in memory only."""


class CircuitOpenError(CopilotError):
    """Too many consecutive transcription failures."""

    def __init__(self, failures: int, last_error: Optional[BaseException] = None):
        self.failures = failures
        self.last_error = last_error
        super().__init__(f"Transcription stopped after {failures} consecutive failures: {last_error}")


class ProviderErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    UNAVAILABLE = "unavailable"


RETRYABLE_KINDS = {ProviderErrorKind.TIMEOUT, ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.SERVER_ERROR}


class ProviderError(CopilotError):
    """A backend call failed."""

    def __init__(self, provider: str, kind: ProviderErrorKind, message: str = "", status: Optional[int] = None):
        self.provider = provider
        self.kind = kind
        self.status = status
        super().__init__(f"{provider}: {kind.value} {message}".strip())

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @classmethod
    def from_status(cls, provider: str, status: int, message: str = "") -> "ProviderError":
        """Map an HTTP status code to an error kind."""
        if status == 429:
            kind = ProviderErrorKind.RATE_LIMITED
        elif status == 408 or status == 504:
            kind = ProviderErrorKind.TIMEOUT
        elif status >= 500:
            kind = ProviderErrorKind.SERVER_ERROR
        else:
            kind = ProviderErrorKind.CLIENT_ERROR
        return cls(provider, kind, message, status=status)


class QuotaExceeded(ProviderError):
    """Local per-provider quota used up; the request was never sent."""

    def __init__(self, provider: str, quota: int):
        self.quota = quota
        super().__init__(provider, ProviderErrorKind.RATE_LIMITED, f"local quota of {quota}/min exhausted")

    @property
    def retryable(self) -> bool:
        return False
