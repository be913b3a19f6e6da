import os
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

# Load .env before reading settings
load_dotenv()


def _parse_quotas(raw: str) -> Dict[str, int]:
    """Parse "gemini=60,ollama=120" into {"gemini": 60, "ollama": 120}."""
    quotas = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        try:
            quotas[name.strip()] = int(value)
        except ValueError:
            continue
    return quotas


class Settings:
    """
    Application settings read from environment variables.
    Components receive these values through Orchestrator.from_settings().
    """
    DATA_DIR = Path(os.getenv("ECHO_DATA_DIR", os.path.expanduser("~/.echo-copilot")))

    # Storage
    DATABASE_URL = os.getenv("ECHO_DATABASE_URL", f"sqlite:///{DATA_DIR / 'echo.db'}")
    DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("ECHO_DB_BUSY_TIMEOUT", "2.0"))

    # Key management: "keyring" (OS secret store) or "file"
    KEY_BACKEND = os.getenv("ECHO_KEY_BACKEND", "keyring")
    KEY_FILE = Path(os.getenv("ECHO_KEY_FILE", str(DATA_DIR / "echo.key")))
    KEYRING_SERVICE = os.getenv("ECHO_KEYRING_SERVICE", "echo-copilot")
    KEYRING_ACCOUNT = os.getenv("ECHO_KEYRING_ACCOUNT", "encryption-key")

    # Providers
    ACTIVE_PROVIDER = os.getenv("ECHO_ACTIVE_PROVIDER", "gemini")
    KNOWN_PROVIDERS: List[str] = ["gemini", "ollama", "mock"]
    # mock only joins the chain when it is the active provider
    FALLBACK_ORDER: List[str] = ["gemini", "ollama"]
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
    OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
    OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3")
    PROVIDER_RATE_QUOTAS = _parse_quotas(os.getenv("ECHO_PROVIDER_RATE_QUOTAS", "gemini=60,ollama=120,mock=60"))
    DEFAULT_RATE_QUOTA = int(os.getenv("ECHO_DEFAULT_RATE_QUOTA", "60"))
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("ECHO_PROVIDER_TIMEOUT", "30"))
    PROVIDER_MAX_ATTEMPTS = int(os.getenv("ECHO_PROVIDER_MAX_ATTEMPTS", "3"))
    PROVIDER_RETRY_DELAY_SECONDS = float(os.getenv("ECHO_PROVIDER_RETRY_DELAY", "1.0"))

    # Transcription
    WHISPER_MODEL_SIZE = os.getenv("ECHO_WHISPER_MODEL", "tiny")
    CONFIDENCE_THRESHOLD = float(os.getenv("ECHO_CONFIDENCE_THRESHOLD", "0.7"))
    RETENTION_DAYS = int(os.getenv("ECHO_RETENTION_DAYS", "30"))
    MAX_CONSECUTIVE_ERRORS = int(os.getenv("ECHO_MAX_CONSECUTIVE_ERRORS", "5"))

    LOG_LEVEL = os.getenv("ECHO_LOG_LEVEL", "INFO")

    MODEL_SIZES = ("tiny", "base", "small", "medium", "large")
    KEY_BACKENDS = ("keyring", "file")

    @classmethod
    def validate(cls) -> List[str]:
        """
        Returns a list of configuration problems (empty when valid).
        """
        problems = []
        if cls.WHISPER_MODEL_SIZE not in cls.MODEL_SIZES:
            problems.append(f"ECHO_WHISPER_MODEL must be one of {', '.join(cls.MODEL_SIZES)}")
        if cls.KEY_BACKEND not in cls.KEY_BACKENDS:
            problems.append(f"ECHO_KEY_BACKEND must be one of {', '.join(cls.KEY_BACKENDS)}")
        if cls.ACTIVE_PROVIDER not in cls.KNOWN_PROVIDERS:
            problems.append(f"ECHO_ACTIVE_PROVIDER must be one of {', '.join(cls.KNOWN_PROVIDERS)}")
        if not 0.0 <= cls.CONFIDENCE_THRESHOLD <= 1.0:
            problems.append("ECHO_CONFIDENCE_THRESHOLD must be between 0 and 1")
        if cls.RETENTION_DAYS < 0:
            problems.append("ECHO_RETENTION_DAYS must be >= 0")
        if cls.ACTIVE_PROVIDER == "gemini" and not cls.GEMINI_API_KEY:
            problems.append("GEMINI_API_KEY is not set; gemini provider will be skipped")
        return problems

    @classmethod
    def provider_chain(cls) -> List[str]:
        """Active provider first, then the fixed fallback order."""
        return [cls.ACTIVE_PROVIDER] + [p for p in cls.FALLBACK_ORDER if p != cls.ACTIVE_PROVIDER]
