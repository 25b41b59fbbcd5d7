"""Per-entity-type watermark tracking."""

import asyncio
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from exbridge.config.logging import SyncStats, get_logger
from exbridge.db.base import utcnow
from exbridge.db.engine import get_session
from exbridge.db.models.sync_state import SyncState
from exbridge.db.repositories.sync_state import SyncStateRepository

logger = get_logger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_FATAL = "fatal"


class SyncStateTracker:
    """Reads and advances the SyncState row of each entity type.

    The watermark (``last_external_updated_at``) bounds the next pull and
    never moves backward: an older value is ignored with a warning.

    Methods accept an optional session so that a chunk's entity writes and
    its watermark advance commit in one transaction. Without one, each call
    runs in its own transaction.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._locks: dict[str, asyncio.Lock] = {}
        self._leases: dict[str, datetime] = {}

    @contextmanager
    def _session(self, session: Session | None) -> Generator[Session, None, None]:
        if session is not None:
            yield session
        else:
            with get_session(self.engine) as own:
                yield own

    def lock(self, entity_type: str) -> asyncio.Lock:
        """In-process lock serializing cycles of one entity type."""
        if entity_type not in self._locks:
            self._locks[entity_type] = asyncio.Lock()
        return self._locks[entity_type]

    def get_state(self, entity_type: str, session: Session | None = None) -> SyncState | None:
        with self._session(session) as s:
            return SyncStateRepository(s).get_by_entity_type(entity_type)

    def all_states(self) -> list[SyncState]:
        with self._session(None) as s:
            return SyncStateRepository(s).get_all_ordered()

    def get_last_sync(self, entity_type: str, session: Session | None = None) -> datetime | None:
        """Watermark for the next pull, or None if the type was never synced.

        This is the newest external modification time seen, not the
        wall-clock time the last cycle finished.
        """
        state = self.get_state(entity_type, session)
        return state.last_external_updated_at if state is not None else None

    def update_last_sync(
        self, entity_type: str, watermark: datetime, session: Session | None = None
    ) -> bool:
        """Move the watermark forward.

        Args:
            entity_type: Entity type.
            watermark: New watermark.
            session: Session to join.

        Returns:
            False if ``watermark`` is older than the stored one (nothing
            written), True otherwise.
        """
        return self.record_chunk(entity_type, watermark, session=session)

    def record_chunk(
        self,
        entity_type: str,
        watermark: datetime | None,
        stats: SyncStats | None = None,
        session: Session | None = None,
    ) -> bool:
        """Add a processed chunk's counters and advance the watermark in one write.

        Args:
            entity_type: Entity type.
            watermark: Newest modification time among the chunk's processed
                records, or None if none were processed.
            stats: Counter deltas for the chunk.
            session: Session to join.

        Returns:
            False if the watermark was rejected as older than the stored one.
        """
        with self._session(session) as s:
            repo = SyncStateRepository(s)
            current = repo.get_by_entity_type(entity_type)
            stored = current.last_external_updated_at if current is not None else None

            accepted = True
            if watermark is not None and stored is not None and watermark < stored:
                logger.warning(
                    "Ignoring watermark older than stored value",
                    entity_type=entity_type,
                    watermark=watermark.isoformat(),
                    stored=stored.isoformat(),
                )
                accepted = False
                watermark = None

            if stats is None and watermark is None:
                return accepted

            repo.advance(
                entity_type,
                watermark=watermark,
                pulled=stats.pulled if stats else 0,
                created=stats.created if stats else 0,
                updated=stats.updated if stats else 0,
                skipped=stats.skipped if stats else 0,
                errors=stats.error_count if stats else 0,
            )
            return accepted

    def mark_completed(self, entity_type: str, stats: SyncStats | None = None) -> datetime:
        """Record a finished cycle; sets ``last_sync_at`` to now.

        Returns:
            The completion time written.
        """
        completed_at = utcnow()
        status = STATUS_SUCCESS if stats is None or stats.success else STATUS_ERROR
        message = "; ".join(stats.errors[:3]) if stats is not None and stats.errors else None
        with self._session(None) as s:
            SyncStateRepository(s).set_status(entity_type, status, message, completed_at=completed_at)
        return completed_at

    def mark_failed(self, entity_type: str, message: str) -> None:
        """Record an aborted cycle; ``last_sync_at`` and the watermark are untouched."""
        with self._session(None) as s:
            SyncStateRepository(s).set_status(entity_type, STATUS_FATAL, message)

    def dependency_ready(self, entity_type: str) -> bool:
        """Whether ``entity_type`` has completed at least one cycle."""
        state = self.get_state(entity_type)
        return state is not None and state.last_sync_at is not None

    def acquire_cycle(self, entity_type: str, stale_timeout: timedelta) -> bool:
        """Take the cross-process cycle lease for an entity type.

        A lease older than ``stale_timeout`` is treated as abandoned, so a
        running cycle keeps its lease fresh with :meth:`renew_cycle`.
        """
        # Whole seconds: the lease value is compared for equality on renewal
        # and MySQL DATETIME drops fractions.
        now = utcnow().replace(microsecond=0)
        with self._session(None) as s:
            acquired = SyncStateRepository(s).try_lock_cycle(entity_type, now, now - stale_timeout)
        if acquired:
            self._leases[entity_type] = now
        else:
            logger.warning("Cycle already running elsewhere", entity_type=entity_type)
        return acquired

    def renew_cycle(self, entity_type: str) -> bool:
        """Extend the lease taken by :meth:`acquire_cycle`.

        Commits on its own so a rolled back chunk does not undo it.

        Returns:
            False if another worker took the lease over; True otherwise,
            including when this tracker holds no lease.
        """
        held = self._leases.get(entity_type)
        if held is None:
            return True
        now = utcnow().replace(microsecond=0)
        with self._session(None) as s:
            renewed = SyncStateRepository(s).renew_cycle(entity_type, held, now)
        if not renewed:
            logger.error("Cycle lease lost", entity_type=entity_type, held_since=held.isoformat())
            return False
        self._leases[entity_type] = now
        return True

    def release_cycle(self, entity_type: str) -> None:
        """Release the lease unless another worker has taken it over."""
        held = self._leases.pop(entity_type, None)
        with self._session(None) as s:
            SyncStateRepository(s).unlock_cycle(entity_type, held)
