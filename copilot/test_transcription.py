"""
Transcription Session Tests
===========================

Buffering thresholds, confidence gate, duplicate suppression, redaction,
startup failures and the circuit breaker.
"""

import asyncio

import numpy as np
import pytest

from copilot.audio import SAMPLE_RATE_HZ, AudioBuffer, PushCaptureDevice, pcm16_to_float32
from copilot.events import EventChannel, SessionErrorEvent, SessionStateEvent, TranscriptEvent
from copilot.key_provider import FileKeyProvider
from copilot.resilience import RetryPolicy
from copilot.secure_store import SecureStore
from copilot.transcriber import MockTranscriber, TranscriptionResult
from copilot.transcription import SessionState, TranscriptionSession

NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, timeout=1.0)


def seconds_of_audio(seconds):
    return np.full(int(SAMPLE_RATE_HZ * seconds), 0.1, dtype=np.float32)


@pytest.fixture
def store(tmp_path):
    store = SecureStore("sqlite://", FileKeyProvider(tmp_path / "echo.key")).open()
    yield store
    store.close()


@pytest.fixture
def session_id(store):
    return store.create_session("interview", "overlay").id


def make_session(store, transcriber=None, device=None, **kwargs):
    kwargs.setdefault("retry_policy", NO_RETRY)
    kwargs.setdefault("interval", None)
    return TranscriptionSession(
        store,
        transcriber or MockTranscriber(),
        device or PushCaptureDevice(),
        events=EventChannel(),
        **kwargs,
    )


# ==============================================================================
# Audio buffer
# ==============================================================================

class TestAudioBuffer:

    def test_swap_returns_snapshot_and_clears(self):
        buffer = AudioBuffer()
        buffer.append(np.ones(100, dtype=np.float32))
        buffer.append(np.zeros(50, dtype=np.float32))

        snapshot = buffer.swap()

        assert snapshot.size == 150
        assert len(buffer) == 0

    def test_restore_puts_snapshot_in_front(self):
        buffer = AudioBuffer()
        buffer.append(np.ones(10, dtype=np.float32))
        snapshot = buffer.swap()
        buffer.append(np.zeros(5, dtype=np.float32))

        buffer.restore(snapshot)
        merged = buffer.swap()

        assert merged[:10].tolist() == [1.0] * 10
        assert merged[10:].tolist() == [0.0] * 5

    def test_capacity_drops_oldest(self):
        buffer = AudioBuffer(sample_rate_hz=10, max_seconds=1.0)
        buffer.append(np.arange(8, dtype=np.float32))
        buffer.append(np.arange(8, 12, dtype=np.float32))

        assert len(buffer) == 10
        assert buffer.swap().tolist() == list(range(2, 12))

    def test_pcm16_conversion(self):
        pcm = np.array([0, 16384, -32768], dtype="<i2").tobytes()
        samples = pcm16_to_float32(pcm)

        assert samples.dtype == np.float32
        assert samples.tolist() == [0.0, 0.5, -1.0]

    def test_rejects_non_positive_sample_rate(self):
        with pytest.raises(ValueError):
            AudioBuffer(sample_rate_hz=0)


# ==============================================================================
# Session
# ==============================================================================

class TestTranscriptionSession:

    def test_below_minimum_never_transcribes(self, store, session_id):
        transcriber = MockTranscriber()

        async def scenario():
            session = make_session(store, transcriber)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.4))
            await session.process_pending()
            return session

        session = asyncio.run(scenario())

        assert transcriber.call_count == 0
        assert session.buffer.duration_seconds == pytest.approx(0.4)

    def test_minimum_triggers_exactly_one_call(self, store, session_id):
        transcriber = MockTranscriber()

        async def scenario():
            session = make_session(store, transcriber)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.4))
            await session.process_pending()
            session.feed_audio(seconds_of_audio(0.1))
            await session.process_pending()
            await session.process_pending()

        asyncio.run(scenario())

        assert transcriber.call_count == 1
        assert transcriber.calls[0] == int(SAMPLE_RATE_HZ * 0.5)

    def test_accepted_text_persisted_and_emitted(self, store, session_id):
        async def scenario():
            session = make_session(store, MockTranscriber(script=[TranscriptionResult("I led the data team", 0.9)]))
            subscription = session.events.subscribe()
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(1.0))
            accepted = await session.process_pending()
            return session, accepted, subscription.drain()

        session, accepted, events = asyncio.run(scenario())

        assert accepted == "I led the data team"
        assert session.last_text == "I led the data team"
        assert [t.text for t in store.get_transcripts(session_id)] == ["I led the data team"]
        transcript_events = [e for e in events if isinstance(e, TranscriptEvent)]
        assert len(transcript_events) == 1
        assert transcript_events[0].confidence == 0.9

    def test_confidence_gate_and_duplicate_suppression(self, store, session_id):
        script = [
            TranscriptionResult("hello there", 0.5),
            TranscriptionResult("hello there", 0.9),
            TranscriptionResult("hello there", 0.95),
            TranscriptionResult("tell me about yourself", 0.8),
        ]

        async def scenario():
            session = make_session(store, MockTranscriber(script=script))
            await session.start(session_id)
            for _ in range(4):
                session.feed_audio(seconds_of_audio(0.5))
                await session.process_pending()

        asyncio.run(scenario())

        assert [t.text for t in store.get_transcripts(session_id)] == ["hello there", "tell me about yourself"]

    def test_accepted_text_is_redacted(self, store, session_id):
        async def scenario():
            session = make_session(store, MockTranscriber(script=[TranscriptionResult("mail me at bob@example.com", 0.9)]))
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            await session.process_pending()
            return session

        session = asyncio.run(scenario())

        assert "bob@example.com" not in session.last_text
        assert "[EMAIL]" in store.get_transcripts(session_id)[0].text

    def test_failed_pass_restores_audio(self, store, session_id):
        transcriber = MockTranscriber(script=[RuntimeError("decoder crashed"), TranscriptionResult("recovered text", 0.9)])

        async def scenario():
            session = make_session(store, transcriber)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            await session.process_pending()
            failures_after_first = session.consecutive_errors
            await session.process_pending()
            return session, failures_after_first

        session, failures_after_first = asyncio.run(scenario())

        assert failures_after_first == 1
        assert session.consecutive_errors == 0
        assert transcriber.calls == [int(SAMPLE_RATE_HZ * 0.5)] * 2

    def test_circuit_breaker_emits_exactly_one_error(self, store, session_id):
        transcriber = MockTranscriber(script=[RuntimeError(f"failure {i}") for i in range(10)])

        async def scenario():
            session = make_session(store, transcriber, max_consecutive_errors=5)
            subscription = session.events.subscribe()
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            for _ in range(8):
                await session.process_pending()
            session.feed_audio(seconds_of_audio(0.5))
            await session.process_pending()
            await session.stop()
            return session, subscription.drain()

        session, events = asyncio.run(scenario())

        errors = [e for e in events if isinstance(e, SessionErrorEvent)]
        assert session.state == SessionState.ERROR
        assert len(errors) == 1
        assert errors[0].failures == 5
        assert transcriber.call_count == 5

    def test_retry_policy_applies_to_transcriber(self, store, session_id):
        transcriber = MockTranscriber(script=[RuntimeError("blip"), TranscriptionResult("second attempt", 0.9)])

        async def scenario():
            session = make_session(store, transcriber, retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, timeout=1.0))
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            return await session.process_pending()

        assert asyncio.run(scenario()) == "second attempt"
        assert transcriber.call_count == 2


class TestLifecycle:

    def test_permission_denied_disables(self, store, session_id):
        transcriber = MockTranscriber()

        async def scenario():
            session = make_session(store, transcriber, device=PushCaptureDevice(permitted=False))
            subscription = session.events.subscribe()
            state = await session.start(session_id)
            return state, subscription.drain()

        state, events = asyncio.run(scenario())

        assert state == SessionState.DISABLED
        assert not transcriber.is_initialized
        assert events[-1] == SessionStateEvent(session_id, "disabled", "capture device unavailable or permission denied")

    def test_initialize_failure_disables(self, store, session_id):
        async def scenario():
            session = make_session(store, MockTranscriber(fail_initialize=True))
            return await session.start(session_id)

        assert asyncio.run(scenario()) == SessionState.DISABLED

    def test_disabled_session_ignores_audio(self, store, session_id):
        async def scenario():
            session = make_session(store, MockTranscriber(fail_initialize=True))
            await session.start(session_id)
            return session.feed_audio(seconds_of_audio(1.0))

        assert asyncio.run(scenario()) == 0

    def test_stop_is_idempotent(self, store, session_id):
        async def scenario():
            session = make_session(store)
            idle = await session.stop()
            await session.start(session_id)
            first = await session.stop()
            second = await session.stop()
            return idle, first, second

        assert asyncio.run(scenario()) == (SessionState.IDLE, SessionState.IDLE, SessionState.IDLE)

    def test_stop_flushes_buffered_audio_once(self, store, session_id):
        transcriber = MockTranscriber()
        device = PushCaptureDevice()

        async def scenario():
            session = make_session(store, transcriber, device=device)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.7))
            await session.stop()
            await session.stop()

        asyncio.run(scenario())

        assert transcriber.call_count == 1
        assert not device.is_open
        assert len(store.get_transcripts(session_id)) == 1

    def test_timer_drives_passes(self, store, session_id):
        transcriber = MockTranscriber()

        async def scenario():
            session = make_session(store, transcriber, interval=0.01)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.6))
            await asyncio.sleep(0.1)
            await session.stop()

        asyncio.run(scenario())

        assert transcriber.call_count == 1

    def test_timer_survives_unexpected_pass_error(self, store, session_id):
        script = [TranscriptionResult("no score", None), TranscriptionResult("no score again", None)]

        async def scenario():
            session = make_session(store, MockTranscriber(script=script), interval=0.01, max_consecutive_errors=2)
            subscription = session.events.subscribe()
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            await asyncio.sleep(0.1)
            failures_after_first = session.consecutive_errors
            timer_alive = session._timer is not None and not session._timer.done()
            session.feed_audio(seconds_of_audio(0.5))
            await asyncio.sleep(0.1)
            return session, failures_after_first, timer_alive, subscription.drain()

        session, failures_after_first, timer_alive, events = asyncio.run(scenario())

        assert failures_after_first == 1
        assert timer_alive
        assert session.state == SessionState.ERROR
        assert len([e for e in events if isinstance(e, SessionErrorEvent)]) == 1

    def test_restart_after_breaker(self, store, session_id):
        transcriber = MockTranscriber(script=[RuntimeError("x")] * 2)

        async def scenario():
            session = make_session(store, transcriber, max_consecutive_errors=2)
            await session.start(session_id)
            session.feed_audio(seconds_of_audio(0.5))
            await session.process_pending()
            await session.process_pending()
            tripped = session.state
            restarted = await session.start(session_id)
            return tripped, restarted, session.consecutive_errors

        assert asyncio.run(scenario()) == (SessionState.ERROR, SessionState.RECORDING, 0)
