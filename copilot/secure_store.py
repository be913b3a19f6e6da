"""
Secure Store
============

Encrypted-at-rest persistence for sessions, transcripts, suggestions, action
items, profile, integrations, metrics and the context cache.

- Sensitive columns pass through FieldCipher (AES-256-GCM) on every write.
- The symmetric key comes from an injected KeyProvider and is held only here.
- If the database cannot be opened the store falls back to in-memory SQLite
  and reports PersistenceDegraded through `degraded`.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import Base, IN_MEMORY_URL, create_store_engine, make_session_factory
from copilot.crypto import FieldCipher, generate_key
from copilot.errors import KeyStoreError, PersistenceDegraded, ValidationError
from copilot.key_provider import KeyProvider
from copilot.models import (
    ALL_TABLES,
    ActionItem,
    ContextCacheEntry,
    ConversationSession,
    IntegrationCredential,
    Metric,
    Profile,
    Suggestion,
    TranscriptSegment,
    utcnow,
)
from copilot.schemas import (
    ActionItemRecord,
    IntegrationData,
    MetricRecord,
    ProfileData,
    SessionRecord,
    SuggestionRecord,
    TranscriptRecord,
)

logger = logging.getLogger(__name__)

PROFILE_ID = 1

# Columns update_session() may change
SESSION_PATCH_FIELDS = {"type", "mode", "title", "source_app", "ended_at", "metadata"}


def _session_record(row: ConversationSession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        type=row.type,
        mode=row.mode,
        title=row.title,
        source_app=row.source_app,
        started_at=row.started_at,
        ended_at=row.ended_at,
        metadata=row.metadata_json,
    )


class SecureStore:
    """
    Repository for all copilot entities.
    Every method takes and returns plain values; encryption is internal.
    """

    def __init__(
        self,
        database_url: str,
        key_provider: KeyProvider,
        busy_timeout: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database_url = database_url
        self.key_provider = key_provider
        self.busy_timeout = busy_timeout
        self.clock = clock
        self.degraded: Optional[PersistenceDegraded] = None
        self._engine = None
        self._session_factory = None
        self._cipher: Optional[FieldCipher] = None

    # ============ Lifecycle ============

    def open(self) -> "SecureStore":
        """
        Open the database and create tables.
        Falls back to an in-memory database instead of raising.
        """
        try:
            self._connect(self.database_url)
        except (SQLAlchemyError, OSError) as e:
            self.degraded = PersistenceDegraded(f"Could not open {self.database_url}: {e}")
            logger.warning(f"Secure store falling back to in-memory database: {e}")
            self._connect(IN_MEMORY_URL)
        return self

    def _connect(self, url: str):
        engine = create_store_engine(url, busy_timeout=self.busy_timeout)
        try:
            Base.metadata.create_all(bind=engine)
        except Exception:
            engine.dispose()
            raise
        self._engine = engine
        self._session_factory = make_session_factory(engine)

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
        self._cipher = None

    @property
    def is_durable(self) -> bool:
        return self.degraded is None

    def _db(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("SecureStore is not open")
        return self._session_factory()

    # ============ Encryption ============

    def _get_cipher(self) -> FieldCipher:
        """Load or create the key on first use; keep it in memory afterwards."""
        if self._cipher is None:
            key = self.key_provider.load()
            if key is None:
                key = generate_key()
                self.key_provider.save(key)
                logger.info(f"Created new encryption key in {self.key_provider.name} store")
            self._cipher = FieldCipher(key)
        return self._cipher

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        return self._get_cipher().encrypt(plaintext)

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        return self._get_cipher().decrypt(stored)

    # ============ Sessions ============

    def create_session(
        self,
        type: str,
        mode: str,
        title: Optional[str] = None,
        source_app: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionRecord:
        with self._db() as db:
            row = ConversationSession(
                type=type,
                mode=mode,
                title=title,
                source_app=source_app,
                metadata_json=metadata,
                started_at=self.clock(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _session_record(row)

    def update_session(self, session_id: int, patch: Dict[str, Any]) -> Optional[SessionRecord]:
        unknown = set(patch) - SESSION_PATCH_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        with self._db() as db:
            row = db.get(ConversationSession, session_id)
            if row is None:
                return None
            for field, value in patch.items():
                if field == "metadata":
                    row.metadata_json = value
                else:
                    setattr(row, field, value)
            db.commit()
            db.refresh(row)
            return _session_record(row)

    def end_session(self, session_id: int) -> Optional[SessionRecord]:
        return self.update_session(session_id, {"ended_at": self.clock()})

    def get_session(self, session_id: int) -> Optional[SessionRecord]:
        with self._db() as db:
            row = db.get(ConversationSession, session_id)
            return _session_record(row) if row else None

    def list_recent_sessions(self, limit: int = 10) -> List[SessionRecord]:
        with self._db() as db:
            rows = db.query(ConversationSession).order_by(
                ConversationSession.started_at.desc()
            ).limit(limit).all()
            return [_session_record(r) for r in rows]

    def delete_session(self, session_id: int) -> bool:
        with self._db() as db:
            row = db.get(ConversationSession, session_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def _require_session(self, db: Session, session_id: int):
        if db.get(ConversationSession, session_id) is None:
            raise ValidationError(f"Session {session_id} does not exist")

    # ============ Transcripts ============

    def add_transcript(
        self,
        session_id: int,
        speaker: Optional[str],
        text: str,
        confidence: Optional[float] = None,
    ) -> TranscriptRecord:
        """Text must already be redacted; it is stored as-is."""
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Confidence {confidence} outside [0, 1]")

        with self._db() as db:
            self._require_session(db, session_id)
            row = TranscriptSegment(
                session_id=session_id,
                speaker=speaker,
                text=text,
                confidence=confidence,
                timestamp=self.clock(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return TranscriptRecord.model_validate(row)

    def get_transcripts(self, session_id: int) -> List[TranscriptRecord]:
        with self._db() as db:
            rows = db.query(TranscriptSegment).filter(
                TranscriptSegment.session_id == session_id
            ).order_by(TranscriptSegment.timestamp.asc(), TranscriptSegment.id.asc()).all()
            return [TranscriptRecord.model_validate(r) for r in rows]

    def purge_transcripts_older_than(self, cutoff: datetime) -> int:
        with self._db() as db:
            result = db.execute(delete(TranscriptSegment).where(TranscriptSegment.timestamp < cutoff))
            db.commit()
            return result.rowcount or 0

    # ============ Suggestions ============

    def add_suggestion(self, session_id: int, pipeline: str, content: str) -> SuggestionRecord:
        with self._db() as db:
            self._require_session(db, session_id)
            row = Suggestion(session_id=session_id, pipeline=pipeline, content=content, timestamp=self.clock())
            db.add(row)
            db.commit()
            db.refresh(row)
            return SuggestionRecord.model_validate(row)

    def list_suggestions(self, session_id: int) -> List[SuggestionRecord]:
        with self._db() as db:
            rows = db.query(Suggestion).filter(
                Suggestion.session_id == session_id
            ).order_by(Suggestion.timestamp.asc(), Suggestion.id.asc()).all()
            return [SuggestionRecord.model_validate(r) for r in rows]

    def mark_suggestion_accepted(self, suggestion_id: int) -> bool:
        with self._db() as db:
            row = db.get(Suggestion, suggestion_id)
            if row is None:
                return False
            row.accepted = True
            db.commit()
            return True

    # ============ Action Items ============

    def add_action_item(
        self,
        session_id: int,
        text: str,
        owner: Optional[str] = None,
        due_date: Optional[datetime] = None,
    ) -> ActionItemRecord:
        with self._db() as db:
            self._require_session(db, session_id)
            row = ActionItem(session_id=session_id, owner=owner, text=text, due_date=due_date, timestamp=self.clock())
            db.add(row)
            db.commit()
            db.refresh(row)
            return ActionItemRecord.model_validate(row)

    def list_action_items(self, session_id: int) -> List[ActionItemRecord]:
        with self._db() as db:
            rows = db.query(ActionItem).filter(
                ActionItem.session_id == session_id
            ).order_by(ActionItem.timestamp.asc(), ActionItem.id.asc()).all()
            return [ActionItemRecord.model_validate(r) for r in rows]

    # ============ Profile ============

    def save_profile(self, data: ProfileData) -> None:
        """Overwrite the singleton profile."""
        with self._db() as db:
            row = db.get(Profile, PROFILE_ID)
            if row is None:
                row = Profile(id=PROFILE_ID)
                db.add(row)
            row.resume_encrypted = self.encrypt(data.resume)
            row.job_description_encrypted = self.encrypt(data.job_description)
            row.role = data.role
            row.industry = data.industry
            row.preferences = data.preferences
            row.updated_at = self.clock()
            db.commit()

    def get_profile(self) -> Optional[ProfileData]:
        """
        Raises:
            IntegrityError: the encrypted blobs cannot be authenticated
        """
        with self._db() as db:
            row = db.get(Profile, PROFILE_ID)
            if row is None:
                return None
            return ProfileData(
                resume=self.decrypt(row.resume_encrypted),
                job_description=self.decrypt(row.job_description_encrypted),
                role=row.role,
                industry=row.industry,
                preferences=row.preferences,
            )

    # ============ Integrations ============

    def save_integration(
        self,
        provider: str,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ) -> None:
        """Upsert credentials by provider name."""
        with self._db() as db:
            row = db.query(IntegrationCredential).filter(IntegrationCredential.provider == provider).first()
            if row is None:
                row = IntegrationCredential(provider=provider)
                db.add(row)
            row.access_token_encrypted = self.encrypt(access_token)
            row.refresh_token_encrypted = self.encrypt(refresh_token)
            row.scopes = scopes
            row.updated_at = self.clock()
            db.commit()

    def get_integration(self, provider: str) -> Optional[IntegrationData]:
        with self._db() as db:
            row = db.query(IntegrationCredential).filter(IntegrationCredential.provider == provider).first()
            if row is None:
                return None
            return IntegrationData(
                provider=row.provider,
                access_token=self.decrypt(row.access_token_encrypted),
                refresh_token=self.decrypt(row.refresh_token_encrypted),
                scopes=row.scopes,
            )

    # ============ Metrics ============

    def save_metrics(self, session_id: int, metrics: MetricRecord) -> None:
        with self._db() as db:
            self._require_session(db, session_id)
            db.add(Metric(
                session_id=session_id,
                clarity_score=metrics.clarity_score,
                words_per_minute=metrics.words_per_minute,
                filler_rate=metrics.filler_rate,
                talk_ratio=metrics.talk_ratio,
                interruption_count=metrics.interruption_count,
            ))
            db.commit()

    def get_metrics(self, session_id: int) -> Optional[MetricRecord]:
        with self._db() as db:
            row = db.query(Metric).filter(Metric.session_id == session_id).order_by(Metric.id.desc()).first()
            return MetricRecord.model_validate(row) if row else None

    # ============ Context Cache ============

    def set_context_cache(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        expires_at = self.clock() + timedelta(seconds=ttl_seconds)
        encrypted = self.encrypt(json.dumps(value))
        with self._db() as db:
            row = db.query(ContextCacheEntry).filter(ContextCacheEntry.key == key).first()
            if row is None:
                row = ContextCacheEntry(key=key, created_at=self.clock())
                db.add(row)
            row.value_encrypted = encrypted
            row.expires_at = expires_at
            db.commit()

    def get_context_cache(self, key: str) -> Optional[Any]:
        """Returns None for missing or expired keys; expired rows are removed."""
        now = self.clock()
        with self._db() as db:
            row = db.query(ContextCacheEntry).filter(ContextCacheEntry.key == key).first()
            if row is None:
                return None
            if now > row.expires_at:
                db.delete(row)
                db.commit()
                return None
            return json.loads(self.decrypt(row.value_encrypted))

    def purge_expired_cache(self) -> int:
        with self._db() as db:
            result = db.execute(delete(ContextCacheEntry).where(ContextCacheEntry.expires_at < self.clock()))
            db.commit()
            return result.rowcount or 0

    # ============ Privacy ============

    def wipe_all_data(self) -> None:
        """
        Clear every table and destroy the encryption key, all or nothing.

        The key is destroyed first while the old value is kept in memory; if the
        table wipe then fails, the key is written back and the error re-raised.
        An unreadable key protects nothing, so the wipe goes ahead without it.
        """
        old_cipher = self._cipher
        try:
            old_key = self.key_provider.load()
        except KeyStoreError as e:
            logger.warning(f"Existing encryption key unreadable, wiping without restore point: {e}")
            old_key = None

        self.key_provider.destroy()

        try:
            with self._db() as db:
                for table in ALL_TABLES:
                    db.execute(delete(table))
                db.commit()
        except SQLAlchemyError:
            logger.error("Wipe failed; restoring encryption key")
            if old_key is not None:
                try:
                    self.key_provider.save(old_key)
                except KeyStoreError as restore_error:
                    logger.critical(f"Could not restore encryption key after failed wipe: {restore_error}")
            self._cipher = old_cipher
            raise

        self._cipher = None
        logger.info("All copilot data wiped and encryption key destroyed")
