"""
Redaction & Prompt-Injection Guard
==================================

Text hygiene applied before anything reaches a provider:
- redact_pii: replace sensitive substrings with category tokens, in a fixed order
- detect_prompt_injection: dangerous phrases and blocked command tokens
- sanitize_text: drop URLs and markdown emphasis
- truncate_by_tokens: rough token budget (4 chars ≈ 1 token)
"""
import re
from typing import List, Optional, Pattern, Tuple

# Applied in this order; each match becomes its category token
PII_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL]"),
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    (re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[CARD]"),
    (re.compile(r"(?:\(\d{3}\)\s?|\b\d{3}[-.\s])\d{3}[-.\s]\d{4}\b"), "[PHONE]"),
    (re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b"), "[NAME]"),
    (re.compile(
        r"\b\d{1,5}\s+[A-Za-z0-9\s]+?\b(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr)\b",
        re.IGNORECASE,
    ), "[ADDRESS]"),
    (re.compile(r"\b[A-Z]{2}\s+\d{5}(?:-\d{4})?\b"), "[ZIP]"),
    (re.compile(r"\b(?:password|passwd|pwd)\s*[:=]\s*\S+", re.IGNORECASE), "[PASSWORD]"),
    (re.compile(r"\b(?:token|key|secret)\s*[:=]\s*\S+", re.IGNORECASE), "[CREDENTIAL]"),
]

DANGEROUS_PATTERNS: List[Pattern] = [
    re.compile(r"ignore (?:all )?previous instructions?", re.IGNORECASE),
    re.compile(r"forget everything", re.IGNORECASE),
    re.compile(r"system prompt", re.IGNORECASE),
    re.compile(r"you are now", re.IGNORECASE),
    re.compile(r"act as if", re.IGNORECASE),
    re.compile(r"pretend to be", re.IGNORECASE),
    re.compile(r"roleplay as", re.IGNORECASE),
]

# Whole-word matches only
BLOCKED_COMMANDS = ["execute", "eval", "shell", "sudo", "drop", "truncate", "rm -rf"]
_BLOCKED_COMMAND_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(c) for c in BLOCKED_COMMANDS) + r")\b",
    re.IGNORECASE,
)

CHARS_PER_TOKEN = 4


def redact_pii(text: Optional[str]) -> Optional[str]:
    """
    Replace emails, SSNs, card numbers, phone numbers, names, addresses,
    state+zip and password/credential assignments with category tokens.
    Non-string input is returned unchanged.
    """
    if not text or not isinstance(text, str):
        return text

    redacted = text
    for pattern, token in PII_PATTERNS:
        redacted = pattern.sub(token, redacted)
    return redacted


def find_prompt_injection(text: Optional[str]) -> Optional[str]:
    """Return the first matched phrase/command, or None if the text is clean."""
    if not text or not isinstance(text, str):
        return None

    for pattern in DANGEROUS_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)

    match = _BLOCKED_COMMAND_RE.search(text)
    if match:
        return match.group(0)
    return None


def detect_prompt_injection(text: Optional[str]) -> bool:
    return find_prompt_injection(text) is not None


def sanitize_text(text: str) -> str:
    """Replace URLs with [URL] and strip markdown links/emphasis."""
    text = re.sub(r"https?://\S+", "[URL]", text)
    text = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", text)
    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    return text


def truncate_by_tokens(text: Optional[str], max_tokens: int = 1000) -> Optional[str]:
    """Keep the tail of long text; recent conversation matters most."""
    if not text:
        return text
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return "..." + text[-max_chars:]
