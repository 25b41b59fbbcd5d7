"""Tests for repositories."""

from datetime import datetime, timedelta, timezone

from exbridge.db.models import ChangeLogEntry, ChangeStatus, Counterparty
from exbridge.db.repositories.change_log import ChangeLogRepository
from exbridge.db.repositories.entity import EntityRepository
from exbridge.db.repositories.sync_state import SyncStateRepository

NOW = datetime(2025, 11, 3, 12, 0, tzinfo=timezone.utc)
STALE_BEFORE = NOW - timedelta(minutes=10)


class TestEntityRepository:
    """Test the GUID-keyed entity repository."""

    def test_get_all_empty(self, test_session):
        """Test getting all counterparties when none exist."""
        assert EntityRepository(test_session, Counterparty).get_all() == []

    def test_upsert_create(self, test_session):
        """Test creating a new entity."""
        repo = EntityRepository(test_session, Counterparty)

        action, entity = repo.upsert(Counterparty(guid_1c="cp-1", b24_id=42, name="ООО Ромашка"))

        assert action == "created"
        assert entity.id is not None
        assert repo.get_by_guid("cp-1") is entity
        assert repo.get_by_b24_id(42) is entity

    def test_upsert_update(self, test_session):
        """Test updating an existing entity in place."""
        repo = EntityRepository(test_session, Counterparty)
        _, original = repo.upsert(Counterparty(guid_1c="cp-1", b24_id=42, name="ООО Ромашка"))

        action, updated = repo.upsert(
            Counterparty(guid_1c="cp-1", b24_id=None, name="ООО Ромашка Плюс", inn="7701234567")
        )

        assert action == "updated"
        assert updated is original
        assert updated.name == "ООО Ромашка Плюс"
        assert updated.inn == "7701234567"
        assert updated.b24_id == 42
        assert len(repo.get_all()) == 1

    def test_upsert_idempotent(self, test_session):
        """Test applying the same data twice leaves one unchanged row."""
        repo = EntityRepository(test_session, Counterparty)
        repo.upsert(Counterparty(guid_1c="cp-1", name="ООО Ромашка", kpp="770101001"))
        repo.upsert(Counterparty(guid_1c="cp-1", name="ООО Ромашка", kpp="770101001"))

        rows = repo.get_all()
        assert len(rows) == 1
        assert rows[0].kpp == "770101001"

    def test_nullable_columns_are_cleared(self, test_session):
        """Test an optional value removed at the source is removed locally."""
        repo = EntityRepository(test_session, Counterparty)
        repo.upsert(Counterparty(guid_1c="cp-1", name="ООО Ромашка", kpp="770101001"))

        _, entity = repo.upsert(Counterparty(guid_1c="cp-1", name="ООО Ромашка", kpp=None))

        assert entity.kpp is None

    def test_b24_index(self, test_session):
        """Test the Bitrix24 id map skips entities without an id."""
        repo = EntityRepository(test_session, Counterparty)
        repo.upsert(Counterparty(guid_1c="cp-1", b24_id=42, name="A"))
        repo.upsert(Counterparty(guid_1c="cp-2", b24_id=43, name="B"))
        repo.upsert(Counterparty(guid_1c="cp-3", name="C"))

        assert repo.b24_index() == {42: "cp-1", 43: "cp-2"}


class TestChangeLogRepository:
    """Test change log queries."""

    def add(self, session, **kwargs) -> ChangeLogEntry:
        entry = ChangeLogEntry(entity_type=kwargs.pop("entity_type", "Company"), **kwargs)
        return ChangeLogRepository(session).add(entry)

    def test_ready_for_processing(self, test_session):
        """Test only due and unlocked records are ready, oldest first."""
        ready = self.add(test_session, external_id="1", status=ChangeStatus.PENDING)
        due = self.add(test_session, external_id="2", status=ChangeStatus.RETRY, next_retry_at=NOW)
        self.add(test_session, external_id="3", status=ChangeStatus.RETRY, next_retry_at=NOW + timedelta(minutes=1))
        self.add(test_session, external_id="4", status=ChangeStatus.PENDING, locked_at=NOW)
        self.add(test_session, external_id="5", status=ChangeStatus.PROCESSED)
        abandoned = self.add(
            test_session, external_id="6", status=ChangeStatus.PROCESSING, locked_at=NOW - timedelta(minutes=30)
        )

        result = ChangeLogRepository(test_session).ready_for_processing(NOW, STALE_BEFORE)

        assert [e.id for e in result] == [ready.id, due.id, abandoned.id]

    def test_try_lock_once(self, test_session):
        """Test a record can be locked only once while the lock is fresh."""
        entry = self.add(test_session, external_id="1")
        repo = ChangeLogRepository(test_session)

        assert repo.try_lock(entry.id, NOW, STALE_BEFORE)
        assert not repo.try_lock(entry.id, NOW, STALE_BEFORE)

        test_session.refresh(entry)
        assert entry.status == ChangeStatus.PROCESSING
        assert entry.locked_at == NOW

    def test_get_open_for_record(self, test_session):
        """Test the newest open record of an external record is returned."""
        self.add(test_session, external_id="7", status=ChangeStatus.PROCESSED)
        open_entry = self.add(test_session, external_id="7", status=ChangeStatus.RETRY)
        self.add(test_session, entity_type="Contact", external_id="7")
        repo = ChangeLogRepository(test_session)

        assert repo.get_open_for_record("Company", "7") is open_entry
        assert repo.get_open_for_record("Company", "8") is None

    def test_get_stale(self, test_session):
        """Test only processing records with an old lock are stale."""
        stale = self.add(
            test_session, external_id="1", status=ChangeStatus.PROCESSING, locked_at=NOW - timedelta(minutes=11)
        )
        self.add(test_session, external_id="2", status=ChangeStatus.PROCESSING, locked_at=NOW)

        assert ChangeLogRepository(test_session).get_stale(STALE_BEFORE) == [stale]

    def test_count_by_status(self, test_session):
        """Test counts include zero counts for every status."""
        self.add(test_session, external_id="1")
        self.add(test_session, external_id="2", status=ChangeStatus.ERROR)
        self.add(test_session, entity_type="Invoice", external_id="3")

        counts = ChangeLogRepository(test_session).count_by_status("Company")

        assert counts == {
            "pending": 1,
            "processing": 0,
            "retry": 0,
            "processed": 0,
            "error": 1,
            "skipped": 0,
        }


class TestSyncStateRepository:
    """Test sync state updates."""

    def test_ensure_is_idempotent(self, test_session):
        """Test ensure creates one row per entity type."""
        repo = SyncStateRepository(test_session)
        repo.ensure("Company")
        repo.ensure("Company")

        assert len(repo.get_all()) == 1

    def test_advance(self, test_session):
        """Test counters add up and the watermark only moves forward."""
        repo = SyncStateRepository(test_session)
        repo.advance("Company", watermark=NOW, pulled=3, created=2)
        repo.advance("Company", watermark=NOW - timedelta(hours=1), pulled=1, errors=1)

        state = repo.get_by_entity_type("Company")
        assert state.last_external_updated_at == NOW
        assert state.total_pulled == 4
        assert state.total_created == 2
        assert state.total_errors == 1

    def test_set_status(self, test_session):
        """Test long messages are truncated."""
        repo = SyncStateRepository(test_session)
        repo.set_status("Invoice", "error", "x" * 600, completed_at=NOW)

        state = repo.get_by_entity_type("Invoice")
        assert state.status == "error"
        assert len(state.error_message) == 500
        assert state.last_sync_at == NOW

    def test_cycle_lease(self, test_session):
        """Test the lease is exclusive until stale or released."""
        repo = SyncStateRepository(test_session)

        assert repo.try_lock_cycle("Company", NOW, STALE_BEFORE)
        assert not repo.try_lock_cycle("Company", NOW, STALE_BEFORE)
        assert repo.try_lock_cycle("Company", NOW + timedelta(minutes=20), NOW + timedelta(minutes=10))

        repo.unlock_cycle("Company")
        assert repo.get_by_entity_type("Company").cycle_locked_at is None
