"""Sync state repository."""

from datetime import datetime

from sqlalchemy import case, literal, or_, select, update

from exbridge.db.base import UTCDateTime, utcnow
from exbridge.db.models.sync_state import SyncState
from exbridge.db.repositories.base import BaseRepository


class SyncStateRepository(BaseRepository[SyncState]):
    """Repository for SyncState operations.

    Every mutation is a single UPDATE statement against the entity type's row
    so concurrent writers never lose each other's counter increments.
    """

    model = SyncState

    def get_by_entity_type(self, entity_type: str) -> SyncState | None:
        """Get the sync state for an entity type.

        Args:
            entity_type: Entity type (Company, Contact, Contract, Product, Invoice).

        Returns:
            SyncState or None.
        """
        stmt = select(SyncState).where(SyncState.entity_type == entity_type)
        return self.session.scalar(stmt)

    def get_all_ordered(self) -> list[SyncState]:
        stmt = select(SyncState).order_by(SyncState.entity_type)
        return list(self.session.scalars(stmt).all())

    def ensure(self, entity_type: str) -> None:
        """Create the row for an entity type if it does not exist yet.

        Args:
            entity_type: Entity type.
        """
        data = {
            "entity_type": entity_type,
            "total_pulled": 0,
            "total_created": 0,
            "total_updated": 0,
            "total_skipped": 0,
            "total_errors": 0,
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }

        self.session.execute(self.insert_if_absent(data, "entity_type"))

    def advance(
        self,
        entity_type: str,
        watermark: datetime | None = None,
        pulled: int = 0,
        created: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errors: int = 0,
    ) -> None:
        """Add counter deltas and move the watermark forward in one statement.

        The watermark column is only replaced when the new value is later than
        the stored one.

        Args:
            entity_type: Entity type.
            watermark: Newest modification time among processed records.
            pulled: Records pulled in the chunk.
            created: Records created.
            updated: Records updated.
            skipped: Records skipped.
            errors: Records that failed.
        """
        self.ensure(entity_type)

        values: dict = {
            "total_pulled": SyncState.total_pulled + pulled,
            "total_created": SyncState.total_created + created,
            "total_updated": SyncState.total_updated + updated,
            "total_skipped": SyncState.total_skipped + skipped,
            "total_errors": SyncState.total_errors + errors,
            "updated_at": utcnow(),
        }
        if watermark is not None:
            new_value = literal(watermark, UTCDateTime())
            column = SyncState.last_external_updated_at
            values["last_external_updated_at"] = case(
                (or_(column.is_(None), column < new_value), new_value),
                else_=column,
            )

        stmt = update(SyncState).where(SyncState.entity_type == entity_type).values(**values)
        self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.expire_all()

    def set_status(
        self,
        entity_type: str,
        status: str,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        """Record the outcome of a cycle.

        Args:
            entity_type: Entity type.
            status: success, error or fatal.
            error_message: Error message if the cycle did not succeed.
            completed_at: Completion time; sets last_sync_at when given.
        """
        self.ensure(entity_type)
        values: dict = {
            "status": status,
            "error_message": error_message[:500] if error_message else None,
            "updated_at": utcnow(),
        }
        if completed_at is not None:
            values["last_sync_at"] = completed_at

        stmt = update(SyncState).where(SyncState.entity_type == entity_type).values(**values)
        self.session.execute(stmt.execution_options(synchronize_session=False))
        self.session.expire_all()

    def try_lock_cycle(self, entity_type: str, now: datetime, stale_before: datetime) -> bool:
        """Take the cycle lease for an entity type.

        Succeeds when no lease is held or the held lease is older than
        ``stale_before``.

        Returns:
            True if the lease was taken.
        """
        self.ensure(entity_type)
        stmt = (
            update(SyncState)
            .where(
                SyncState.entity_type == entity_type,
                or_(SyncState.cycle_locked_at.is_(None), SyncState.cycle_locked_at < stale_before),
            )
            .values(cycle_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.expire_all()
        return result.rowcount == 1

    def renew_cycle(self, entity_type: str, held: datetime, now: datetime) -> bool:
        """Move the cycle lease to ``now`` if it is still the one taken at ``held``.

        Returns:
            False if the lease was released or taken over in the meantime.
        """
        stmt = (
            update(SyncState)
            .where(SyncState.entity_type == entity_type, SyncState.cycle_locked_at == held)
            .values(cycle_locked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.expire_all()
        return result.rowcount == 1

    def unlock_cycle(self, entity_type: str, held: datetime | None = None) -> None:
        """Release the cycle lease; with ``held``, only if it is still that lease."""
        conditions = [SyncState.entity_type == entity_type]
        if held is not None:
            conditions.append(SyncState.cycle_locked_at == held)
        stmt = (
            update(SyncState)
            .where(*conditions)
            .values(cycle_locked_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        self.session.expire_all()
