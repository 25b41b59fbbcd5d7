"""Change log repository."""

from datetime import datetime

from sqlalchemy import and_, func, or_, select, update

from exbridge.db.models.change_log import ChangeLogEntry, ChangeSource, ChangeStatus
from exbridge.db.repositories.base import BaseRepository

PROCESSABLE_STATUSES = (ChangeStatus.PENDING, ChangeStatus.RETRY)
OPEN_STATUSES = (ChangeStatus.PENDING, ChangeStatus.RETRY, ChangeStatus.PROCESSING)


class ChangeLogRepository(BaseRepository[ChangeLogEntry]):
    """Repository for ChangeLogEntry operations."""

    model = ChangeLogEntry

    @staticmethod
    def eligible_clause(now: datetime, stale_before: datetime):
        """SQL condition selecting records a worker may claim.

        A record left in processing by a worker that never reported an
        outcome becomes claimable again once its lock is stale.
        """
        return or_(
            and_(
                ChangeLogEntry.status.in_(PROCESSABLE_STATUSES),
                or_(ChangeLogEntry.next_retry_at.is_(None), ChangeLogEntry.next_retry_at <= now),
                or_(ChangeLogEntry.locked_at.is_(None), ChangeLogEntry.locked_at < stale_before),
            ),
            and_(
                ChangeLogEntry.status == ChangeStatus.PROCESSING,
                ChangeLogEntry.locked_at < stale_before,
            ),
        )

    def _get_open(self, entity_type: str, source: ChangeSource, *conditions) -> ChangeLogEntry | None:
        stmt = (
            select(ChangeLogEntry)
            .where(
                ChangeLogEntry.entity_type == entity_type,
                ChangeLogEntry.source == source,
                ChangeLogEntry.status.in_(OPEN_STATUSES),
                *conditions,
            )
            .order_by(ChangeLogEntry.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def get_open_for_record(
        self, entity_type: str, external_id: str, source: ChangeSource = ChangeSource.B24
    ) -> ChangeLogEntry | None:
        """Get the newest non-terminal record for an external record.

        Args:
            entity_type: Entity type.
            external_id: Bitrix24 record id.
            source: System the change was detected in.

        Returns:
            ChangeLogEntry or None.
        """
        return self._get_open(entity_type, source, ChangeLogEntry.external_id == external_id)

    def get_open_for_guid(
        self, entity_type: str, guid_1c: str, source: ChangeSource = ChangeSource.ONE_C
    ) -> ChangeLogEntry | None:
        """Get the newest non-terminal record for a local entity."""
        return self._get_open(entity_type, source, ChangeLogEntry.guid_1c == guid_1c)

    def ready_for_processing(
        self,
        now: datetime,
        stale_before: datetime,
        entity_type: str | None = None,
        limit: int = 100,
        source: ChangeSource | None = None,
    ) -> list[ChangeLogEntry]:
        """Get records eligible for processing, oldest first.

        Args:
            now: Current time.
            stale_before: Locks taken before this time are considered abandoned.
            entity_type: Restrict to one entity type.
            limit: Maximum number of records.
            source: Restrict to changes detected in one system.

        Returns:
            List of eligible records.
        """
        stmt = select(ChangeLogEntry).where(self.eligible_clause(now, stale_before))
        if entity_type is not None:
            stmt = stmt.where(ChangeLogEntry.entity_type == entity_type)
        if source is not None:
            stmt = stmt.where(ChangeLogEntry.source == source)
        stmt = stmt.order_by(ChangeLogEntry.id).limit(limit)
        return list(self.session.scalars(stmt).all())

    def try_lock(self, entry_id: int, now: datetime, stale_before: datetime) -> bool:
        """Lock a record if it is still eligible.

        The eligibility condition is part of the UPDATE, so two workers can
        never both claim the same record.

        Returns:
            True if this call took the lock.
        """
        stmt = (
            update(ChangeLogEntry)
            .where(ChangeLogEntry.id == entry_id, self.eligible_clause(now, stale_before))
            .values(locked_at=now, status=ChangeStatus.PROCESSING)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def get_stale(self, stale_before: datetime) -> list[ChangeLogEntry]:
        """Get records stuck in processing with a lock older than ``stale_before``."""
        stmt = select(ChangeLogEntry).where(
            ChangeLogEntry.status == ChangeStatus.PROCESSING,
            ChangeLogEntry.locked_at.is_not(None),
            ChangeLogEntry.locked_at < stale_before,
        )
        return list(self.session.scalars(stmt).all())

    def count_by_status(self, entity_type: str | None = None) -> dict[str, int]:
        """Count records grouped by status.

        Args:
            entity_type: Restrict to one entity type.

        Returns:
            Mapping of status value to count, including zero counts.
        """
        stmt = select(ChangeLogEntry.status, func.count()).group_by(ChangeLogEntry.status)
        if entity_type is not None:
            stmt = stmt.where(ChangeLogEntry.entity_type == entity_type)

        counts = {status.value: 0 for status in ChangeStatus}
        for status, count in self.session.execute(stmt).all():
            counts[ChangeStatus(status).value] = count
        return counts
