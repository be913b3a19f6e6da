"""
Secure Store Tests
==================

Encrypted persistence, context-cache expiry, atomic wipe and degraded mode.
"""

from datetime import datetime, timedelta

import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

from copilot.errors import IntegrityError, ValidationError
from copilot.key_provider import FileKeyProvider
from copilot.models import Profile
from copilot.schemas import MetricRecord, ProfileData
from copilot.secure_store import SecureStore


class FakeClock:
    def __init__(self, start=datetime(2025, 3, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_provider(tmp_path):
    return FileKeyProvider(tmp_path / "echo.key")


@pytest.fixture
def store(key_provider, clock):
    store = SecureStore("sqlite://", key_provider, clock=clock).open()
    yield store
    store.close()


# ==============================================================================
# Sessions & transcripts
# ==============================================================================

class TestSessions:

    def test_create_and_get(self, store):
        session = store.create_session("interview", "overlay", title="Backend role", metadata={"company": "Acme"})
        loaded = store.get_session(session.id)

        assert loaded.type == "interview"
        assert loaded.title == "Backend role"
        assert loaded.metadata == {"company": "Acme"}
        assert loaded.ended_at is None

    def test_end_session_sets_ended_at(self, store, clock):
        session = store.create_session("meeting", "overlay")
        clock.advance(minutes=12)
        ended = store.end_session(session.id)

        assert ended.ended_at >= ended.started_at
        assert ended.ended_at - ended.started_at == timedelta(minutes=12)

    def test_update_rejects_unknown_fields(self, store):
        session = store.create_session("meeting", "overlay")
        with pytest.raises(ValidationError):
            store.update_session(session.id, {"started_at": datetime(2020, 1, 1)})

    def test_update_missing_session_returns_none(self, store):
        assert store.update_session(999, {"title": "x"}) is None

    def test_transcripts_in_order(self, store, clock):
        session = store.create_session("interview", "overlay")
        store.add_transcript(session.id, "user", "first", 0.9)
        clock.advance(seconds=1)
        store.add_transcript(session.id, "user", "second", 0.8)

        assert [t.text for t in store.get_transcripts(session.id)] == ["first", "second"]

    def test_transcript_for_unknown_session_rejected(self, store):
        with pytest.raises(ValidationError):
            store.add_transcript(42, "user", "orphan", 0.9)

    def test_transcript_confidence_range_enforced(self, store):
        session = store.create_session("interview", "overlay")
        with pytest.raises(ValidationError):
            store.add_transcript(session.id, "user", "text", 1.5)

    def test_purge_transcripts_older_than(self, store, clock):
        session = store.create_session("interview", "overlay")
        store.add_transcript(session.id, "user", "old", 0.9)
        clock.advance(days=31)
        store.add_transcript(session.id, "user", "new", 0.9)

        purged = store.purge_transcripts_older_than(clock() - timedelta(days=30))

        assert purged == 1
        assert [t.text for t in store.get_transcripts(session.id)] == ["new"]

    def test_delete_session_cascades(self, store):
        session = store.create_session("interview", "overlay")
        store.add_transcript(session.id, "user", "text", 0.9)
        store.add_suggestion(session.id, "interview", "Give a concrete example")

        assert store.delete_session(session.id)
        assert store.get_transcripts(session.id) == []
        assert store.list_suggestions(session.id) == []

    def test_suggestions_and_action_items(self, store):
        session = store.create_session("meeting", "overlay")
        suggestion = store.add_suggestion(session.id, "meeting", "Ask about next steps")
        store.add_action_item(session.id, "Send the notes", owner="me")

        assert store.mark_suggestion_accepted(suggestion.id)
        assert store.list_suggestions(session.id)[0].accepted
        assert store.list_action_items(session.id)[0].text == "Send the notes"
        assert not store.mark_suggestion_accepted(12345)

    def test_metrics_round_trip(self, store):
        session = store.create_session("interview", "overlay")
        store.save_metrics(session.id, MetricRecord(session_id=session.id, clarity_score=0.9, words_per_minute=140.0))

        assert store.get_metrics(session.id).words_per_minute == 140.0


# ==============================================================================
# Encryption at rest
# ==============================================================================

class TestEncryptedFields:

    def test_profile_round_trip(self, store):
        store.save_profile(ProfileData(resume="Ten years of Python", job_description="Platform engineer", role="Engineer"))
        profile = store.get_profile()

        assert profile.resume == "Ten years of Python"
        assert profile.job_description == "Platform engineer"
        assert profile.role == "Engineer"

    def test_profile_ciphertext_at_rest(self, store):
        store.save_profile(ProfileData(resume="Ten years of Python"))

        with store._db() as db:
            row = db.get(Profile, 1)
            assert "Ten years" not in row.resume_encrypted

    def test_tampered_profile_raises_integrity_error(self, store):
        store.save_profile(ProfileData(resume="Ten years of Python"))
        with store._db() as db:
            row = db.get(Profile, 1)
            blob = row.resume_encrypted
            row.resume_encrypted = blob[:-4] + ("AAAA" if blob[-4:] != "AAAA" else "BBBB")
            db.commit()

        with pytest.raises(IntegrityError):
            store.get_profile()

    def test_integration_upsert(self, store):
        store.save_integration("jira", "access-1", "refresh-1", ["read"])
        store.save_integration("jira", "access-2", None, ["read", "write"])
        integration = store.get_integration("jira")

        assert integration.access_token == "access-2"
        assert integration.refresh_token is None
        assert integration.scopes == ["read", "write"]
        assert store.get_integration("slack") is None

    def test_key_created_lazily(self, store, key_provider):
        assert key_provider.load() is None
        store.save_profile(ProfileData(resume="r"))
        assert key_provider.load() is not None


class TestContextCache:

    def test_hit_before_expiry(self, store, clock):
        store.set_context_cache("session_1", {"topic": "roadmap"}, ttl_seconds=60)
        clock.advance(seconds=59)

        assert store.get_context_cache("session_1") == {"topic": "roadmap"}

    def test_hit_at_exact_expiry(self, store, clock):
        store.set_context_cache("session_1", {"topic": "roadmap"}, ttl_seconds=60)
        clock.advance(seconds=60)

        assert store.get_context_cache("session_1") == {"topic": "roadmap"}

    def test_miss_after_expiry(self, store, clock):
        store.set_context_cache("session_1", {"topic": "roadmap"}, ttl_seconds=60)
        clock.advance(seconds=61)

        assert store.get_context_cache("session_1") is None

    def test_purge_expired(self, store, clock):
        store.set_context_cache("a", 1, ttl_seconds=10)
        store.set_context_cache("b", 2, ttl_seconds=1000)
        clock.advance(seconds=20)

        assert store.purge_expired_cache() == 1
        assert store.get_context_cache("b") == 2


# ==============================================================================
# Wipe
# ==============================================================================

class TestWipe:

    def test_wipe_removes_data_and_key(self, store, key_provider):
        session = store.create_session("interview", "overlay")
        store.add_transcript(session.id, "user", "hello", 0.9)
        store.save_profile(ProfileData(resume="secret resume"))
        store.save_integration("jira", "token")
        old_key = key_provider.load()

        store.wipe_all_data()

        assert store.get_profile() is None
        assert store.get_session(session.id) is None
        assert store.get_integration("jira") is None
        assert key_provider.load() is None
        assert old_key is not None

    def test_new_writes_after_wipe_use_new_key(self, store, key_provider):
        store.save_profile(ProfileData(resume="before"))
        old_key = key_provider.load()
        store.wipe_all_data()

        store.save_profile(ProfileData(resume="after"))

        assert store.get_profile().resume == "after"
        assert key_provider.load() != old_key

    def test_failed_wipe_restores_key(self, store, key_provider):
        store.save_profile(ProfileData(resume="keep me"))
        old_key = key_provider.load()

        with patch.object(store, "_db", side_effect=OperationalError("DELETE", {}, Exception("disk I/O error"))):
            with pytest.raises(OperationalError):
                store.wipe_all_data()

        assert key_provider.load() == old_key
        assert store.get_profile().resume == "keep me"

    def test_wipe_with_unreadable_key(self, store, key_provider):
        store.save_profile(ProfileData(resume="secret resume"))
        key_provider.path.write_text("garbage", encoding="ascii")
        store._cipher = None

        store.wipe_all_data()

        assert not key_provider.path.exists()
        assert store.get_profile() is None


# ==============================================================================
# Degraded mode
# ==============================================================================

class TestDegradedMode:

    def test_falls_back_to_memory(self, tmp_path, key_provider):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        store = SecureStore(f"sqlite:///{blocker}/echo.db", key_provider).open()

        try:
            assert not store.is_durable
            assert store.degraded is not None
            session = store.create_session("interview", "overlay")
            assert store.get_session(session.id) is not None
        finally:
            store.close()

    def test_file_database_is_durable(self, tmp_path, key_provider):
        url = f"sqlite:///{tmp_path / 'echo.db'}"
        store = SecureStore(url, key_provider).open()
        session = store.create_session("interview", "overlay")
        store.close()

        reopened = SecureStore(url, key_provider).open()
        try:
            assert reopened.is_durable
            assert reopened.get_session(session.id).type == "interview"
        finally:
            reopened.close()
