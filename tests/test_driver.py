"""Tests for the transcription driver: attempts, retries, abandonment and resume.

Retry semantics under test:
- Failure 1: retry after 60s
- Failure 2: retry after 120s
- Failure 3: abandoned, no further attempt
"""

import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from voicememo.db import get_audio, insert_audio, set_transcription
from voicememo.driver import (
    OUTCOME_ABANDONED,
    OUTCOME_ALREADY_TRANSCRIBED,
    OUTCOME_ERROR,
    OUTCOME_GONE,
    OUTCOME_NOT_DUE,
    OUTCOME_RETRY_SCHEDULED,
    OUTCOME_SUCCEEDED,
    TranscriptionDriver,
)
from voicememo.ledger import LedgerError
from voicememo.models import Audio, FailedAudioTranscription, as_utc
from voicememo.stt import SpeechToText, TranscriptionServiceError


class ScriptedSpeechToText(SpeechToText):
    """Returns scripted results in order; exceptions are raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[tuple[bytes, str]] = []

    def transcribe(self, stream, language):
        self.calls.append((stream.read_all(), language))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingScheduler:
    def __init__(self):
        self.calls: list[tuple[int, str, int]] = []

    def __call__(self, audio_id, language, delay_seconds):
        self.calls.append((audio_id, language, delay_seconds))


def _fail():
    return TranscriptionServiceError("Whisper api returned HTTP 503")


@pytest.fixture
def env(temp_db, local_storage):
    """Database, storage, clock and scheduler shared by a driver under test."""
    _, _, SessionFactory = temp_db

    class Env:
        session_factory = SessionFactory
        storage = local_storage
        clock = FakeClock()
        scheduler = RecordingScheduler()

        def make_driver(self, stt):
            return TranscriptionDriver(
                session_factory=self.session_factory,
                storage=self.storage,
                stt=stt,
                schedule=self.scheduler,
                clock=self.clock,
            )

        def add_audio(self, data=b"webm-bytes", audio_id=None):
            with self.session_factory() as session:
                if audio_id is None:
                    audio = insert_audio(session, user_id=1)
                else:
                    audio = Audio(id=audio_id, user_id=1)
                    session.add(audio)
                    session.flush()
                session.commit()
            if data is not None:
                self.storage.store(audio.id, [data])
            return audio.id

        def transcription(self, audio_id):
            with self.session_factory() as session:
                return get_audio(session, audio_id).transcription

        def add_ledger_entry(self, audio_id, retries, language="en", next_retry_at=None):
            with self.session_factory() as session:
                entry = FailedAudioTranscription(
                    audio_id=audio_id,
                    retries=retries,
                    language=language,
                    next_retry_at=next_retry_at,
                )
                session.add(entry)
                session.commit()
                return entry.id

    return Env()


class TestSuccessfulAttempt:
    def test_first_attempt_success(self, env):
        audio_id = env.add_audio(b"voice")
        stt = ScriptedSpeechToText("hello")
        driver = env.make_driver(stt)

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_SUCCEEDED
        assert result["attempts"] == 1
        assert env.transcription(audio_id) == "hello"
        assert stt.calls == [(b"voice", "en")]
        assert driver.ledger.get(audio_id) is None
        assert env.scheduler.calls == []

    def test_empty_transcript_is_stored(self, env):
        audio_id = env.add_audio()
        driver = env.make_driver(ScriptedSpeechToText(""))

        assert driver.attempt(audio_id, "en")["status"] == OUTCOME_SUCCEEDED
        assert env.transcription(audio_id) == ""


class TestRetrySchedule:
    def test_first_failure_schedules_retry_after_60s(self, env):
        audio_id = env.add_audio()
        driver = env.make_driver(ScriptedSpeechToText(_fail()))

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_RETRY_SCHEDULED
        assert result["failures"] == 1
        assert result["delay_seconds"] == 60
        assert env.scheduler.calls == [(audio_id, "en", 60)]

        entry = driver.ledger.get(audio_id)
        assert entry.retries == 1
        assert as_utc(entry.next_retry_at) == env.clock.now + timedelta(seconds=60)
        assert env.transcription(audio_id) is None

    def test_second_failure_schedules_retry_after_120s(self, env):
        audio_id = env.add_audio()
        driver = env.make_driver(ScriptedSpeechToText(_fail(), _fail()))

        driver.attempt(audio_id, "en")
        env.clock.advance(60)
        result = driver.attempt(audio_id, "en")

        assert result["failures"] == 2
        assert result["delay_seconds"] == 120
        assert env.scheduler.calls == [(audio_id, "en", 60), (audio_id, "en", 120)]
        assert driver.ledger.get(audio_id).retries == 2

    def test_third_failure_abandons(self, env):
        audio_id = env.add_audio()
        stt = ScriptedSpeechToText(_fail(), _fail(), _fail())
        driver = env.make_driver(stt)

        driver.attempt(audio_id, "en")
        env.clock.advance(60)
        driver.attempt(audio_id, "en")
        env.clock.advance(120)
        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_ABANDONED
        assert result["failures"] == 3
        assert len(stt.calls) == 3
        # No fourth attempt is scheduled
        assert len(env.scheduler.calls) == 2
        assert driver.ledger.get(audio_id) is None
        assert env.transcription(audio_id) is None

    def test_succeeds_on_third_attempt(self, env):
        """Fail twice, then succeed: entry gone, transcription stored."""
        audio_id = env.add_audio(audio_id=7)
        driver = env.make_driver(ScriptedSpeechToText(_fail(), _fail(), "hello world"))

        driver.attempt(7, "en")
        env.clock.advance(60)
        driver.attempt(7, "en")
        env.clock.advance(120)
        result = driver.attempt(7, "en")

        assert audio_id == 7
        assert result["status"] == OUTCOME_SUCCEEDED
        assert result["attempts"] == 3
        assert env.transcription(7) == "hello world"
        assert driver.ledger.get(7) is None
        assert env.storage.get(7).read_all() == b"webm-bytes"

    def test_retry_uses_recorded_language(self, env):
        audio_id = env.add_audio()
        stt = ScriptedSpeechToText(_fail(), "bonjour")
        driver = env.make_driver(stt)

        driver.attempt(audio_id, "fr")
        env.clock.advance(60)
        driver.attempt(audio_id, "en")

        assert [language for _, language in stt.calls] == ["fr", "fr"]

    def test_missing_blob_counts_as_failure(self, env):
        audio_id = env.add_audio(data=None)
        stt = ScriptedSpeechToText()
        driver = env.make_driver(stt)

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_RETRY_SCHEDULED
        assert stt.calls == []
        assert driver.ledger.get(audio_id).retries == 1

    def test_unexpected_error_counts_as_failure(self, env):
        audio_id = env.add_audio()
        driver = env.make_driver(ScriptedSpeechToText(RuntimeError("segfault-ish")))

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_RETRY_SCHEDULED
        assert driver.ledger.get(audio_id).retries == 1

    def test_default_scheduler_enqueues_on_huey(self, env):
        audio_id = env.add_audio()
        driver = TranscriptionDriver(
            session_factory=env.session_factory,
            storage=env.storage,
            stt=ScriptedSpeechToText(_fail()),
            clock=env.clock,
        )

        with patch("voicememo.huey_app.enqueue_transcription") as mock_enqueue:
            driver.attempt(audio_id, "en")

        mock_enqueue.assert_called_once_with(audio_id, "en", 60)


class TestAttemptGuards:
    def test_early_delivery_is_not_due(self, env):
        audio_id = env.add_audio()
        stt = ScriptedSpeechToText(_fail(), "late")
        driver = env.make_driver(stt)

        driver.attempt(audio_id, "en")
        env.clock.advance(10)
        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_NOT_DUE
        assert len(stt.calls) == 1
        assert driver.ledger.get(audio_id).retries == 1

    def test_already_transcribed(self, env):
        audio_id = env.add_audio()
        with env.session_factory() as session:
            set_transcription(session, audio_id, "done")
            session.commit()
        env.add_ledger_entry(audio_id, retries=1)
        stt = ScriptedSpeechToText()
        driver = env.make_driver(stt)

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_ALREADY_TRANSCRIBED
        assert stt.calls == []
        assert driver.ledger.get(audio_id) is None
        assert env.transcription(audio_id) == "done"

    def test_deleted_audio_is_gone(self, env):
        stt = ScriptedSpeechToText()
        driver = env.make_driver(stt)

        result = driver.attempt(999, "en")

        assert result["status"] == OUTCOME_GONE
        assert stt.calls == []

    def test_exhausted_entry_abandoned_without_attempt(self, env):
        audio_id = env.add_audio()
        env.add_ledger_entry(audio_id, retries=3)
        stt = ScriptedSpeechToText()
        driver = env.make_driver(stt)

        result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_ABANDONED
        assert stt.calls == []
        assert driver.ledger.get(audio_id) is None

    def test_ledger_failure_reported_not_raised(self, env):
        audio_id = env.add_audio()
        driver = env.make_driver(ScriptedSpeechToText(_fail()))

        with patch.object(driver.ledger, "insert", side_effect=LedgerError("database is locked")):
            result = driver.attempt(audio_id, "en")

        assert result["status"] == OUTCOME_ERROR


class TestResumePending:
    def test_exhausted_entry_abandoned_on_resume(self, env):
        audio_id = env.add_audio()
        env.add_ledger_entry(audio_id, retries=3)
        stt = ScriptedSpeechToText()
        driver = env.make_driver(stt)

        result = driver.resume_pending()

        assert result == {"status": "resumed", "scheduled": 0, "abandoned": 1}
        assert env.scheduler.calls == []
        assert stt.calls == []
        assert driver.ledger.get(audio_id) is None

    def test_resumed_entry_gets_exactly_one_attempt(self, env):
        audio_id = env.add_audio()
        env.add_ledger_entry(audio_id, retries=1, language="es")
        stt = ScriptedSpeechToText("hola")
        driver = env.make_driver(stt)

        result = driver.resume_pending()
        assert result["scheduled"] == 1
        assert env.scheduler.calls == [(audio_id, "es", 0)]

        # Deliver the scheduled attempt
        for scheduled_id, language, _ in env.scheduler.calls:
            driver.attempt(scheduled_id, language)

        assert len(stt.calls) == 1
        assert env.transcription(audio_id) == "hola"

    def test_resume_paces_entries_in_ledger_order(self, env):
        ids = [env.add_audio() for _ in range(3)]
        for audio_id in ids:
            env.add_ledger_entry(audio_id, retries=1)
        driver = env.make_driver(ScriptedSpeechToText())

        driver.resume_pending()

        assert [(a, d) for a, _, d in env.scheduler.calls] == [
            (ids[0], 0),
            (ids[1], 60),
            (ids[2], 120),
        ]

    def test_resume_respects_pending_backoff(self, env):
        audio_id = env.add_audio()
        env.add_ledger_entry(
            audio_id, retries=2, next_retry_at=env.clock.now + timedelta(seconds=90)
        )
        driver = env.make_driver(ScriptedSpeechToText())

        driver.resume_pending()

        assert env.scheduler.calls == [(audio_id, "en", 90)]

    def test_resume_slots_follow_backed_off_entry(self, env):
        ids = [env.add_audio() for _ in range(3)]
        env.add_ledger_entry(
            ids[0], retries=2, next_retry_at=env.clock.now + timedelta(seconds=120)
        )
        env.add_ledger_entry(ids[1], retries=1)
        env.add_ledger_entry(ids[2], retries=1)
        driver = env.make_driver(ScriptedSpeechToText())

        driver.resume_pending()

        # Due entries queue up behind the backed-off one, one pacing step apart
        assert [(a, d) for a, _, d in env.scheduler.calls] == [
            (ids[0], 120),
            (ids[1], 180),
            (ids[2], 240),
        ]

    def test_resume_empty_ledger(self, env):
        driver = env.make_driver(ScriptedSpeechToText())
        assert driver.resume_pending() == {"status": "resumed", "scheduled": 0, "abandoned": 0}


class TestConcurrentAttempts:
    def test_different_audios_run_concurrently(self, env):
        """Attempts for different audios overlap and do not share state."""
        first = env.add_audio(b"first")
        second = env.add_audio(b"second")
        barrier = threading.Barrier(2, timeout=5)

        class BarrierSpeechToText(SpeechToText):
            def transcribe(self, stream, language):
                data = stream.read_all()
                barrier.wait()
                return data.decode()

        driver = env.make_driver(BarrierSpeechToText())
        results = {}

        def run(audio_id):
            results[audio_id] = driver.attempt(audio_id, "en")

        threads = [threading.Thread(target=run, args=(a,)) for a in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results[first]["status"] == OUTCOME_SUCCEEDED
        assert results[second]["status"] == OUTCOME_SUCCEEDED
        assert env.transcription(first) == "first"
        assert env.transcription(second) == "second"
