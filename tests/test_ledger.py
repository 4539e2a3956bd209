"""Tests for the retry ledger."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from voicememo.db import insert_audio
from voicememo.ledger import LedgerError, RetryLedger
from voicememo.models import as_utc


@pytest.fixture
def ledger_db(temp_db):
    """Ledger over a temp database with three audio rows (ids 1-3)."""
    _, _, SessionFactory = temp_db
    with SessionFactory() as session:
        for _ in range(3):
            insert_audio(session, user_id=1)
        session.commit()
    return RetryLedger(SessionFactory)


class TestRetryLedger:
    def test_insert_starts_at_zero(self, ledger_db):
        entry_id = ledger_db.insert(1, "en")

        entry = ledger_db.get(1)
        assert entry.id == entry_id
        assert entry.retries == 0
        assert entry.language == "en"
        assert entry.last_retry_at is None

    def test_get_missing(self, ledger_db):
        assert ledger_db.get(2) is None

    def test_increment_returns_new_count(self, ledger_db):
        entry_id = ledger_db.insert(1, "en")
        now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

        assert ledger_db.increment(entry_id, now) == 1
        assert ledger_db.increment(entry_id, now + timedelta(seconds=60)) == 2

        entry = ledger_db.get(1)
        assert entry.retries == 2
        assert as_utc(entry.last_retry_at) == now + timedelta(seconds=60)

    def test_increment_missing_entry(self, ledger_db):
        with pytest.raises(LedgerError, match="not found"):
            ledger_db.increment(12345)

    def test_one_entry_per_audio(self, ledger_db):
        ledger_db.insert(1, "en")
        with pytest.raises(LedgerError):
            ledger_db.insert(1, "en")

    def test_set_next_retry(self, ledger_db):
        entry_id = ledger_db.insert(2, "es")
        due = datetime(2024, 5, 1, 12, 2, tzinfo=UTC)

        ledger_db.set_next_retry(entry_id, due)

        assert as_utc(ledger_db.get(2).next_retry_at) == due

    def test_delete(self, ledger_db):
        entry_id = ledger_db.insert(3, "en")

        assert ledger_db.delete(entry_id) is True
        assert ledger_db.delete(entry_id) is False
        assert ledger_db.get(3) is None

    def test_list_all_in_insertion_order(self, ledger_db):
        ledger_db.insert(3, "en")
        ledger_db.insert(1, "es")
        ledger_db.insert(2, "fr")

        assert [e.audio_id for e in ledger_db.list_all()] == [3, 1, 2]

    def test_store_failure_wrapped(self):
        factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("disk I/O error")))
        ledger = RetryLedger(factory)

        with pytest.raises(LedgerError):
            ledger.list_all()
