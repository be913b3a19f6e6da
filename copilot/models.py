"""
Copilot SQLAlchemy Models
Eight tables of the secure store. Columns ending in _encrypted hold
base64(nonce ‖ tag ‖ ciphertext) produced by copilot.crypto.FieldCipher.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, Float, ForeignKey, JSON
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ConversationSession(Base):
    """
    One interview/meeting/chat session.
    Created on start, ended_at set on stop, removed only by explicit delete or wipe.
    """
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False)   # interview, meeting, chat, ...
    mode = Column(String(50), nullable=False)   # overlay, stealth, ...
    title = Column(String(255), nullable=True)
    source_app = Column(String(255), nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    transcripts = relationship("TranscriptSegment", cascade="all, delete-orphan", passive_deletes=True)
    suggestions = relationship("Suggestion", cascade="all, delete-orphan", passive_deletes=True)
    action_items = relationship("ActionItem", cascade="all, delete-orphan", passive_deletes=True)
    metrics = relationship("Metric", cascade="all, delete-orphan", passive_deletes=True)


class TranscriptSegment(Base):
    """Accepted, redacted transcript chunk. Immutable once written."""
    __tablename__ = "transcripts"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    speaker = Column(String(50), nullable=True)
    text = Column(Text, nullable=False)
    confidence = Column(Float, nullable=True)


class Suggestion(Base):
    """Generated (non-fallback) suggestion."""
    __tablename__ = "suggestions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    pipeline = Column(String(50), nullable=False)
    content = Column(Text, nullable=False)
    accepted = Column(Boolean, default=False, nullable=False)


class ActionItem(Base):
    __tablename__ = "actions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    owner = Column(String(255), nullable=True)
    text = Column(Text, nullable=False)
    due_date = Column(DateTime, nullable=True)
    completed = Column(Boolean, default=False, nullable=False)


class Profile(Base):
    """
    Singleton profile row (id=1), overwritten wholesale on save.
    """
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True)
    resume_encrypted = Column(Text, nullable=True)
    job_description_encrypted = Column(Text, nullable=True)
    role = Column(String(255), nullable=True)
    industry = Column(String(255), nullable=True)
    preferences = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class IntegrationCredential(Base):
    """OAuth-style tokens for a third-party provider, upserted by provider name."""
    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(100), nullable=False, unique=True)
    access_token_encrypted = Column(Text, nullable=True)
    refresh_token_encrypted = Column(Text, nullable=True)
    scopes = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Metric(Base):
    """Speaking metrics computed when a session stops."""
    __tablename__ = "metrics"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    clarity_score = Column(Float, nullable=True)
    words_per_minute = Column(Float, nullable=True)
    filler_rate = Column(Float, nullable=True)
    talk_ratio = Column(Float, nullable=True)
    interruption_count = Column(Integer, default=0)


class ContextCacheEntry(Base):
    """
    Read-through context cache. A row past expires_at is a miss.
    """
    __tablename__ = "context_cache"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(255), nullable=False, unique=True, index=True)
    value_encrypted = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


# Deletion order for wipe: children before parents
ALL_TABLES = [
    TranscriptSegment, Suggestion, ActionItem, Metric,
    ConversationSession, Profile, IntegrationCredential, ContextCacheEntry,
]
