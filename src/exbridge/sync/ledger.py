"""Persisted change log used as the retry ledger."""

from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from exbridge.config.logging import get_logger
from exbridge.config.settings import Settings
from exbridge.db.base import utcnow
from exbridge.db.engine import get_session
from exbridge.db.models.change_log import ChangeLogEntry, ChangeSource, ChangeStatus
from exbridge.db.repositories.change_log import ChangeLogRepository
from exbridge.utils.retry import backoff_delay

logger = get_logger(__name__)


class ChangeLedger:
    """Queue of records to (re)process with retry bookkeeping.

    A record may be claimed when its status is pending or retry, its
    ``next_retry_at`` has passed and it is unlocked or its lock is older than
    the stale timeout. Claiming sets ``locked_at`` and the processing status;
    every outcome clears the lock. A processing record whose lock went stale
    is claimable again.
    """

    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.max_retries = settings.max_retries
        self.base_minutes = settings.retry_base_minutes
        self.max_minutes = settings.retry_max_minutes
        self.stale_timeout = timedelta(minutes=settings.stale_timeout_minutes)
        self.clock = clock

    @contextmanager
    def _session(self, session: Session | None) -> Generator[Session, None, None]:
        if session is not None:
            yield session
        else:
            with get_session(self.engine) as own:
                yield own

    def next_retry_delay(self, retry_count: int) -> timedelta:
        """Backoff before the next attempt: base * 2**retry_count minutes, capped."""
        return timedelta(minutes=backoff_delay(retry_count, self.base_minutes, self.max_minutes))

    def is_eligible(self, entry: ChangeLogEntry, now: datetime | None = None) -> bool:
        """Python mirror of the claim condition, for a loaded entry."""
        now = now or self.clock()
        status = ChangeStatus(entry.status)
        stale = entry.locked_at is not None and entry.locked_at < now - self.stale_timeout
        if status == ChangeStatus.PROCESSING:
            return stale
        if not status.can_process:
            return False
        if entry.next_retry_at is not None and entry.next_retry_at > now:
            return False
        return entry.locked_at is None or stale

    # Creation

    def enqueue(
        self,
        entity_type: str,
        external_id: str | int | None,
        payload: dict[str, Any] | None = None,
        guid_1c: str | None = None,
        object_type: str | None = None,
        change_type: str = "update",
        source: ChangeSource = ChangeSource.B24,
        session: Session | None = None,
    ) -> ChangeLogEntry:
        """Record a change, reusing the open record of the same record.

        Changes pulled from Bitrix24 are keyed by the Bitrix24 id, local
        changes by the GUID of the local entity.

        Returns:
            The pending (or already open) entry, flushed so it has an id.
        """
        external_id = str(external_id) if external_id is not None else None
        with self._session(session) as s:
            repo = ChangeLogRepository(s)
            entry = None
            if external_id:
                entry = repo.get_open_for_record(entity_type, external_id, source)
            elif guid_1c:
                entry = repo.get_open_for_guid(entity_type, guid_1c, source)
            if entry is None:
                entry = repo.add(
                    ChangeLogEntry(
                        entity_type=entity_type,
                        external_id=external_id,
                        guid_1c=guid_1c,
                        object_type=object_type,
                        source=source,
                        change_type=change_type,
                        payload=payload,
                        status=ChangeStatus.PENDING,
                        retry_count=0,
                    )
                )
            else:
                entry.payload = payload if payload is not None else entry.payload
                entry.guid_1c = guid_1c or entry.guid_1c
                entry.object_type = object_type or entry.object_type
                s.flush()
            return entry

    def enqueue_local(
        self,
        entity_type: str,
        guid_1c: str,
        change_type: str = "update",
        session: Session | None = None,
    ) -> ChangeLogEntry:
        """Record a change of a local entity to be pushed to Bitrix24."""
        entry = self.enqueue(
            entity_type,
            None,
            guid_1c=guid_1c,
            change_type=change_type,
            source=ChangeSource.ONE_C,
            session=session,
        )
        logger.debug("Local change queued", change_id=entry.id, entity_type=entity_type, guid_1c=guid_1c)
        return entry

    # Claiming

    def claim(
        self,
        entity_type: str | None = None,
        limit: int = 100,
        source: ChangeSource = ChangeSource.B24,
    ) -> list[ChangeLogEntry]:
        """Lock and return eligible records of one source, oldest first.

        Each lock is a conditional UPDATE, so a record claimed by another
        worker in the meantime is silently left out.
        """
        now = self.clock()
        stale_before = now - self.stale_timeout
        claimed: list[ChangeLogEntry] = []
        with self._session(None) as s:
            repo = ChangeLogRepository(s)
            for entry in repo.ready_for_processing(now, stale_before, entity_type, limit, source):
                if repo.try_lock(entry.id, now, stale_before):
                    s.refresh(entry)
                    claimed.append(entry)
                else:
                    logger.warning("Failed to lock change", change_id=entry.id)
        return claimed

    # Outcomes

    def _load(self, s: Session, entry_id: int) -> ChangeLogEntry:
        entry = ChangeLogRepository(s).get_by_id(entry_id)
        if entry is None:
            raise LookupError(f"Change log entry {entry_id} does not exist")
        return entry

    def mark_processed(self, entry_id: int, session: Session | None = None) -> ChangeLogEntry:
        with self._session(session) as s:
            entry = self._load(s, entry_id)
            entry.status = ChangeStatus.PROCESSED
            entry.sent_at = self.clock()
            entry.error = None
            entry.locked_at = None
            s.flush()
            return entry

    def schedule_retry(self, entry_id: int, error: str, session: Session | None = None) -> ChangeLogEntry:
        """Schedule another attempt, or give up once retries are exhausted.

        The delay uses the retry count before incrementing, so the first
        retry waits the base delay.

        Returns:
            The entry, with status retry or, past ``max_retries``, error.
        """
        with self._session(session) as s:
            entry = self._load(s, entry_id)
            entry.locked_at = None

            if entry.retry_count >= self.max_retries:
                entry.status = ChangeStatus.ERROR
                entry.error = f"Max retries exceeded: {error}"
                logger.error(
                    "Max retries exceeded",
                    change_id=entry.id,
                    entity_type=entry.entity_type,
                    external_id=entry.external_id,
                    error=error,
                )
            else:
                entry.next_retry_at = self.clock() + self.next_retry_delay(entry.retry_count)
                entry.retry_count += 1
                entry.status = ChangeStatus.RETRY
                entry.error = error
                logger.info(
                    "Change scheduled for retry",
                    change_id=entry.id,
                    entity_type=entry.entity_type,
                    external_id=entry.external_id,
                    retry_count=entry.retry_count,
                    next_retry_at=entry.next_retry_at.isoformat(),
                )
            s.flush()
            return entry

    def mark_error(self, entry_id: int, error: str, session: Session | None = None) -> ChangeLogEntry:
        with self._session(session) as s:
            entry = self._load(s, entry_id)
            entry.status = ChangeStatus.ERROR
            entry.error = error
            entry.locked_at = None
            s.flush()
            return entry

    def mark_skipped(self, entry_id: int, reason: str, session: Session | None = None) -> ChangeLogEntry:
        with self._session(session) as s:
            entry = self._load(s, entry_id)
            entry.status = ChangeStatus.SKIPPED
            entry.error = reason
            entry.locked_at = None
            s.flush()
            return entry

    def record_skipped(
        self,
        entity_type: str,
        external_id: str | int | None,
        reason: str,
        payload: dict[str, Any] | None = None,
        object_type: str | None = None,
        session: Session | None = None,
    ) -> ChangeLogEntry:
        """Write a terminal skipped record for an intentionally excluded change."""
        with self._session(session) as s:
            entry = self.enqueue(entity_type, external_id, payload, object_type=object_type, session=s)
            return self.mark_skipped(entry.id, reason, session=s)

    def record_error(
        self,
        entity_type: str,
        external_id: str | int | None,
        error: str,
        payload: dict[str, Any] | None = None,
        object_type: str | None = None,
        session: Session | None = None,
    ) -> ChangeLogEntry:
        """Write a terminal error record for a non-retryable record failure."""
        with self._session(session) as s:
            entry = self.enqueue(entity_type, external_id, payload, object_type=object_type, session=s)
            return self.mark_error(entry.id, error, session=s)

    def settle(
        self, entity_type: str, external_id: str | int, session: Session | None = None
    ) -> ChangeLogEntry | None:
        """Mark the open record of an external record processed, if there is one.

        Called when a later pull processed the record successfully before its
        scheduled retry came up.
        """
        with self._session(session) as s:
            entry = ChangeLogRepository(s).get_open_for_record(entity_type, str(external_id))
            if entry is None:
                return None
            return self.mark_processed(entry.id, session=s)

    def supersede(
        self, entity_type: str, external_id: str | int, reason: str, session: Session | None = None
    ) -> ChangeLogEntry | None:
        """Close the open record of an external record without replaying it.

        Called when a newer version of the record was pulled and
        intentionally not imported; the older stored payload must not be
        replayed over it.
        """
        with self._session(session) as s:
            entry = ChangeLogRepository(s).get_open_for_record(entity_type, str(external_id))
            if entry is None:
                return None
            return self.mark_skipped(entry.id, reason, session=s)

    def defer(
        self,
        entity_type: str,
        external_id: str | int | None,
        error: str,
        payload: dict[str, Any] | None = None,
        guid_1c: str | None = None,
        object_type: str | None = None,
        session: Session | None = None,
    ) -> ChangeLogEntry:
        """Record a retryable failure of an external record and schedule its retry."""
        with self._session(session) as s:
            entry = self.enqueue(
                entity_type, external_id, payload, guid_1c=guid_1c, object_type=object_type, session=s
            )
            return self.schedule_retry(entry.id, error, session=s)

    # Maintenance

    def unlock_stale(self) -> int:
        """Return abandoned processing records to the retry queue.

        Returns:
            Number of records unlocked.
        """
        stale_before = self.clock() - self.stale_timeout
        with self._session(None) as s:
            stale = ChangeLogRepository(s).get_stale(stale_before)
            for entry in stale:
                entry.locked_at = None
                entry.status = ChangeStatus.RETRY
                logger.warning("Unlocked stale change", change_id=entry.id, entity_type=entry.entity_type)
            return len(stale)

    def queue_stats(self, entity_type: str | None = None) -> dict[str, int]:
        """Record counts per status plus ``ready`` (claimable now) and ``total``."""
        now = self.clock()
        with self._session(None) as s:
            repo = ChangeLogRepository(s)
            counts = repo.count_by_status(entity_type)
            ready = repo.ready_for_processing(now, now - self.stale_timeout, entity_type, limit=10_000)
        counts["ready"] = len(ready)
        counts["total"] = sum(v for k, v in counts.items() if k != "ready")
        return counts
