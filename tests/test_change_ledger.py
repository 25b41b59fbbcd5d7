"""Tests for the change log retry ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from exbridge.db.engine import get_session
from exbridge.db.models.change_log import ChangeLogEntry, ChangeSource, ChangeStatus
from exbridge.sync.ledger import ChangeLedger

START = datetime(2025, 11, 3, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ledger(test_engine, test_settings, clock):
    settings = test_settings.model_copy(
        update={"retry_base_minutes": 5, "retry_max_minutes": 60, "max_retries": 3, "stale_timeout_minutes": 10}
    )
    return ChangeLedger(test_engine, settings, clock=clock)


def load(engine, entry_id: int) -> ChangeLogEntry:
    with get_session(engine) as session:
        return session.get(ChangeLogEntry, entry_id)


class TestBackoff:
    """Test retry delays."""

    def test_delay_doubles_up_to_cap(self, ledger):
        """Test the delay sequence 5, 10, 20, 40 then the 60 minute cap."""
        delays = [ledger.next_retry_delay(n) for n in range(6)]
        assert delays == [timedelta(minutes=m) for m in (5, 10, 20, 40, 60, 60)]

    def test_schedule_retry(self, ledger, test_engine, clock):
        """Test each retry increments the count and pushes next_retry_at out."""
        entry = ledger.enqueue("Company", 7, {"ID": "7"})

        ledger.schedule_retry(entry.id, "Rate limited")
        first = load(test_engine, entry.id)
        assert first.status == ChangeStatus.RETRY
        assert first.retry_count == 1
        assert first.next_retry_at == START + timedelta(minutes=5)
        assert first.error == "Rate limited"
        assert first.locked_at is None

        ledger.schedule_retry(entry.id, "Rate limited")
        second = load(test_engine, entry.id)
        assert second.retry_count == 2
        assert second.next_retry_at == START + timedelta(minutes=10)

    def test_retries_are_bounded(self, ledger, test_engine):
        """Test the failure after max_retries retries is terminal."""
        entry = ledger.enqueue("Company", 7, {"ID": "7"})
        for _ in range(3):
            ledger.schedule_retry(entry.id, "boom")
        before = load(test_engine, entry.id)
        assert before.status == ChangeStatus.RETRY
        assert before.retry_count == 3

        ledger.schedule_retry(entry.id, "boom")

        after = load(test_engine, entry.id)
        assert after.status == ChangeStatus.ERROR
        assert after.error == "Max retries exceeded: boom"
        assert after.retry_count == 3
        assert after.next_retry_at == before.next_retry_at
        assert ledger.claim() == []


class TestClaim:
    """Test claiming eligible records."""

    def test_claim_locks_records(self, ledger, clock):
        """Test claimed records are locked and not handed out twice."""
        first = ledger.enqueue("Company", 1, {"ID": "1"})
        second = ledger.enqueue("Company", 2, {"ID": "2"})

        claimed = ledger.claim()

        assert [e.id for e in claimed] == [first.id, second.id]
        assert all(e.status == ChangeStatus.PROCESSING for e in claimed)
        assert all(e.locked_at == START for e in claimed)
        assert ledger.claim() == []

    def test_claim_filters_and_limits(self, ledger):
        """Test the entity type filter and the limit."""
        ledger.enqueue("Company", 1)
        ledger.enqueue("Contact", 2)
        ledger.enqueue("Contact", 3)

        claimed = ledger.claim("Contact", limit=1)

        assert len(claimed) == 1
        assert claimed[0].entity_type == "Contact"
        assert claimed[0].external_id == "2"

    def test_not_claimable_before_retry_time(self, ledger, clock):
        """Test a deferred record waits for next_retry_at."""
        entry = ledger.defer("Contact", 5, "Counterparty is not synced yet", {"ID": "5"})

        assert ledger.claim() == []
        clock.advance(minutes=4)
        assert ledger.claim() == []
        clock.advance(minutes=1)
        assert [e.id for e in ledger.claim()] == [entry.id]

    def test_stale_lock_is_reclaimed(self, ledger, test_engine, clock):
        """Test a record abandoned mid-processing is claimable after the stale timeout."""
        entry = ledger.enqueue("Product", 9, {"ID": "9"})
        assert len(ledger.claim()) == 1

        clock.advance(minutes=5)
        assert ledger.claim() == []

        clock.advance(minutes=6)
        reclaimed = ledger.claim()

        assert [e.id for e in reclaimed] == [entry.id]
        assert load(test_engine, entry.id).locked_at == START + timedelta(minutes=11)

    def test_is_eligible(self, ledger, clock):
        """Test the in-memory eligibility check agrees with claiming rules."""
        now = clock()
        stale = now - timedelta(minutes=11)
        fresh = now - timedelta(minutes=1)

        def entry(status, locked_at=None, next_retry_at=None):
            return ChangeLogEntry(status=status, locked_at=locked_at, next_retry_at=next_retry_at)

        assert ledger.is_eligible(entry(ChangeStatus.PENDING))
        assert ledger.is_eligible(entry(ChangeStatus.RETRY, next_retry_at=now))
        assert not ledger.is_eligible(entry(ChangeStatus.RETRY, next_retry_at=now + timedelta(seconds=1)))
        assert not ledger.is_eligible(entry(ChangeStatus.PENDING, locked_at=fresh))
        assert ledger.is_eligible(entry(ChangeStatus.PENDING, locked_at=stale))
        assert not ledger.is_eligible(entry(ChangeStatus.PROCESSING, locked_at=fresh))
        assert ledger.is_eligible(entry(ChangeStatus.PROCESSING, locked_at=stale))
        for status in (ChangeStatus.PROCESSED, ChangeStatus.ERROR, ChangeStatus.SKIPPED):
            assert not ledger.is_eligible(entry(status))


class TestOutcomes:
    """Test recording outcomes."""

    def test_enqueue_reuses_open_record(self, ledger, test_engine):
        """Test a second change of the same record updates the open entry."""
        first = ledger.enqueue("Company", 7, {"v": 1})
        again = ledger.enqueue("Company", "7", {"v": 2}, guid_1c="guid-7")

        assert again.id == first.id
        stored = load(test_engine, first.id)
        assert stored.payload == {"v": 2}
        assert stored.guid_1c == "guid-7"

        ledger.mark_processed(first.id)
        assert ledger.enqueue("Company", 7, {"v": 3}).id != first.id

    def test_mark_processed(self, ledger, test_engine):
        """Test processing clears the lock and error."""
        entry = ledger.defer("Company", 7, "boom")
        ledger.mark_processed(entry.id)

        stored = load(test_engine, entry.id)
        assert stored.status == ChangeStatus.PROCESSED
        assert stored.sent_at == START
        assert stored.error is None
        assert stored.locked_at is None

    def test_settle(self, ledger, test_engine):
        """Test a later successful pull closes the open retry."""
        entry = ledger.defer("Contact", 5, "Counterparty is not synced yet")

        settled = ledger.settle("Contact", 5)

        assert settled.id == entry.id
        assert load(test_engine, entry.id).status == ChangeStatus.PROCESSED
        assert ledger.settle("Contact", 6) is None

    def test_supersede(self, ledger, test_engine):
        """Test a newer version that is not imported closes the open retry unreplayed."""
        entry = ledger.defer("Contact", 5, "Counterparty is not synced yet", {"POST": "Директор"})

        closed = ledger.supersede("Contact", 5, "Last changed by 1C")

        assert closed.id == entry.id
        stored = load(test_engine, entry.id)
        assert stored.status == ChangeStatus.SKIPPED
        assert stored.error == "Last changed by 1C"
        assert ledger.claim() == []
        assert ledger.supersede("Contact", 6, "Last changed by 1C") is None

    def test_record_error_is_terminal(self, ledger, test_engine):
        """Test a non-retryable failure is written straight to error."""
        entry = ledger.record_error("Company", 3, "Counterparty name is missing", {"ID": "3"})

        stored = load(test_engine, entry.id)
        assert stored.status == ChangeStatus.ERROR
        assert stored.error == "Counterparty name is missing"
        assert stored.payload == {"ID": "3"}
        assert ledger.claim() == []

    def test_record_skipped(self, ledger, test_engine):
        """Test an intentional skip keeps its reason."""
        entry = ledger.record_skipped("Product", 4, "Last changed by 1C")

        stored = load(test_engine, entry.id)
        assert stored.status == ChangeStatus.SKIPPED
        assert stored.error == "Last changed by 1C"

    def test_unknown_entry(self, ledger):
        """Test outcomes for a missing id raise."""
        with pytest.raises(LookupError, match="does not exist"):
            ledger.mark_processed(999)


class TestLocalChanges:
    """Test changes of local entities queued for Bitrix24."""

    def test_enqueue_local_reuses_open_record(self, ledger, test_engine):
        """Test local changes are keyed by GUID and marked as coming from 1C."""
        first = ledger.enqueue_local("Contact", "c-1")
        again = ledger.enqueue_local("Contact", "c-1")
        other = ledger.enqueue_local("Contact", "c-2")

        assert again.id == first.id
        assert other.id != first.id
        stored = load(test_engine, first.id)
        assert stored.source == ChangeSource.ONE_C
        assert stored.external_id is None
        assert stored.status == ChangeStatus.PENDING

    def test_claims_are_split_by_source(self, ledger):
        """Test pulled records and local changes are claimed separately."""
        pulled = ledger.enqueue("Contact", 7, {"ID": "7"})
        local = ledger.enqueue_local("Contact", "c-1")

        assert [e.id for e in ledger.claim("Contact")] == [pulled.id]
        assert [e.id for e in ledger.claim("Contact", source=ChangeSource.ONE_C)] == [local.id]

    def test_pulled_outcomes_leave_local_changes_alone(self, ledger, test_engine):
        """Test settling or superseding a pulled record never closes a local change."""
        local = ledger.enqueue_local("Contact", "c-1")
        pulled = ledger.enqueue("Contact", 7, {"ID": "7"}, guid_1c="c-1")

        assert pulled.id != local.id
        ledger.settle("Contact", 7)
        assert ledger.supersede("Contact", 7, "Last changed by 1C") is None
        assert load(test_engine, local.id).status == ChangeStatus.PENDING
        assert ledger.queue_stats("Contact")["ready"] == 1


class TestMaintenance:
    """Test stale unlocking and statistics."""

    def test_unlock_stale(self, ledger, test_engine, clock):
        """Test abandoned processing records return to retry."""
        entry = ledger.enqueue("Invoice", 12)
        ledger.claim()

        assert ledger.unlock_stale() == 0
        clock.advance(minutes=11)
        assert ledger.unlock_stale() == 1

        stored = load(test_engine, entry.id)
        assert stored.status == ChangeStatus.RETRY
        assert stored.locked_at is None

    def test_queue_stats(self, ledger):
        """Test counts per status with ready and total."""
        ledger.enqueue("Company", 1)
        ledger.enqueue("Company", 2)
        ledger.defer("Company", 3, "Rate limited")
        ledger.record_skipped("Company", 4, "Skipped by configuration")
        ledger.enqueue("Contact", 5)

        stats = ledger.queue_stats("Company")

        assert stats["pending"] == 2
        assert stats["retry"] == 1
        assert stats["skipped"] == 1
        assert stats["processed"] == 0
        assert stats["ready"] == 2
        assert stats["total"] == 4
