"""
Speaking metrics for a finished session, computed from its transcripts.

- words_per_minute: the user's words over the session duration
- filler_rate: filler words as a percentage of the user's words
- talk_ratio: the user's share of all transcribed words
- clarity_score: mean transcription confidence of the user's segments
- interruption_count: speaker changes within INTERRUPTION_GAP_SECONDS
"""
import re
from datetime import datetime
from typing import List, Optional, Sequence

from copilot.schemas import MetricRecord, TranscriptRecord

FILLER_WORDS = {"um", "uh", "like", "so", "well"}
FILLER_PHRASES = ("you know",)
INTERRUPTION_GAP_SECONDS = 1.0

_WORD_PATTERN = re.compile(r"[a-z']+")


def _words(text: str) -> List[str]:
    return _WORD_PATTERN.findall(text.lower())


def count_fillers(text: str) -> int:
    lowered = text.lower()
    count = sum(1 for w in _words(lowered) if w in FILLER_WORDS)
    for phrase in FILLER_PHRASES:
        count += len(re.findall(rf"\b{re.escape(phrase)}\b", lowered))
    return count


def compute_metrics(
    session_id: int,
    transcripts: Sequence[TranscriptRecord],
    started_at: Optional[datetime],
    ended_at: Optional[datetime],
    user_speaker: Optional[str] = "user",
) -> MetricRecord:
    """Segments with no speaker label count as the user's."""
    user_segments = [t for t in transcripts if t.speaker in (None, user_speaker)]

    user_words = sum(len(_words(t.text)) for t in user_segments)
    total_words = sum(len(_words(t.text)) for t in transcripts)

    words_per_minute = None
    if started_at and ended_at:
        minutes = (ended_at - started_at).total_seconds() / 60
        if minutes > 0:
            words_per_minute = round(user_words / minutes, 1)

    filler_rate = None
    if user_words:
        fillers = sum(count_fillers(t.text) for t in user_segments)
        filler_rate = round(fillers / user_words * 100, 2)

    talk_ratio = round(user_words / total_words, 3) if total_words else None

    confidences = [t.confidence for t in user_segments if t.confidence is not None]
    clarity_score = round(sum(confidences) / len(confidences), 3) if confidences else None

    interruptions = 0
    for previous, current in zip(transcripts, transcripts[1:]):
        if previous.speaker == current.speaker:
            continue
        gap = (current.timestamp - previous.timestamp).total_seconds()
        if gap < INTERRUPTION_GAP_SECONDS:
            interruptions += 1

    return MetricRecord(
        session_id=session_id,
        clarity_score=clarity_score,
        words_per_minute=words_per_minute,
        filler_rate=filler_rate,
        talk_ratio=talk_ratio,
        interruption_count=interruptions,
    )
