"""
Pydantic Schemas for the copilot
Plain values returned by the secure store and request/response models for the router.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============ Store Records ============

class SessionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    mode: str
    title: Optional[str] = None
    source_app: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class TranscriptRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    timestamp: datetime
    speaker: Optional[str] = None
    text: str
    confidence: Optional[float] = None


class SuggestionRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    timestamp: datetime
    pipeline: str
    content: str
    accepted: bool = False


class ActionItemRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: int
    owner: Optional[str] = None
    text: str
    due_date: Optional[datetime] = None
    completed: bool = False


class MetricRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: int
    clarity_score: Optional[float] = None
    words_per_minute: Optional[float] = None
    filler_rate: Optional[float] = None
    talk_ratio: Optional[float] = None
    interruption_count: int = 0


class ProfileData(BaseModel):
    """Decrypted profile. Résumé and job description are encrypted at rest."""
    resume: Optional[str] = None
    job_description: Optional[str] = None
    role: Optional[str] = None
    industry: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class IntegrationData(BaseModel):
    provider: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scopes: Optional[List[str]] = None


# ============ Engine Results ============

class SuggestionSource(str, Enum):
    PROVIDER = "provider"
    CACHE = "cache"
    FALLBACK = "fallback"


class SuggestionResult(BaseModel):
    """Tagged result of a suggestion request. Never an exception."""
    suggestions: List[str]
    pipeline: str
    source: SuggestionSource
    provider: Optional[str] = None
    reason: Optional[str] = None


class SessionSummary(BaseModel):
    session_id: int
    summary: str
    action_items: List[ActionItemRecord] = []
    metrics: Optional[MetricRecord] = None
    duration_minutes: Optional[int] = None
    source: SuggestionSource = SuggestionSource.FALLBACK


# ============ Request Schemas ============

class StartSessionRequest(BaseModel):
    type: str = Field(default="interview", max_length=50)
    mode: str = Field(default="overlay", max_length=50)
    title: Optional[str] = Field(default=None, max_length=255)
    source_app: Optional[str] = Field(default=None, max_length=255)


class SuggestionRequest(BaseModel):
    context: str
    pipeline: str = "interview"
    session_id: Optional[int] = None


class ActionItemRequest(BaseModel):
    text: str = Field(..., max_length=2000)
    owner: Optional[str] = None
    due_date: Optional[datetime] = None


# ============ Response Schemas ============

class StartSessionResponse(BaseModel):
    session: SessionRecord
    transcription_state: str
    persistence_durable: bool = True


class StopSessionResponse(BaseModel):
    session_id: Optional[int] = None
    summary: Optional[SessionSummary] = None


class PartialTranscriptResponse(BaseModel):
    session_id: Optional[int] = None
    text: str = ""


class HealthResponse(BaseModel):
    status: str
    persistence_durable: bool
    transcription_state: str
    providers: List[str] = []
