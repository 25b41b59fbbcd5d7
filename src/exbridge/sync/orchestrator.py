"""Sync orchestrator: runs incremental pull cycles per entity type."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from exbridge.api.client import Bitrix24Client
from exbridge.config.logging import EmailNotifier, SyncStats, SyncSummary
from exbridge.config.settings import ENTITY_TYPES, Settings
from exbridge.db.base import utcnow
from exbridge.db.engine import get_session
from exbridge.db.models.change_log import ChangeLogEntry, ChangeSource, ChangeStatus
from exbridge.db.repositories.entity import EntityRepository
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.registry import ObjectMappingRegistry, default_registry
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.ledger import ChangeLedger
from exbridge.sync.state import SyncStateTracker
from exbridge.sync.strategies import STRATEGIES, BaseEntityStrategy, Chunk
from exbridge.utils.cache import MemoryCache
from exbridge.utils.exceptions import (
    APIError,
    ExBridgeError,
    FatalSyncError,
    MappingNotFoundError,
    RateLimitError,
    SyncError,
    ValidationError,
)
from exbridge.utils.retry import is_transient

logger = structlog.get_logger(__name__)

# Entity types that must have completed a cycle before the key type may run
DEPENDENCIES: dict[str, tuple[str, ...]] = {
    "Contact": ("Company",),
    "Contract": ("Company",),
    "Invoice": ("Company", "Contract"),
}

ECHO_SKIP_REASON = "Last changed by 1C"


class CycleState(str, Enum):
    """Stages of one entity type's cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING_CHUNK = "processing_chunk"
    RETRY_WAIT = "retry_wait"
    ADVANCING_WATERMARK = "advancing_watermark"
    FATAL = "fatal"


class SyncOrchestrator:
    """Coordinates pull cycles, the watermark tracker and the retry ledger.

    A cycle for one entity type fetches chunks of records modified at or
    after the watermark. Each chunk is processed in one transaction, record
    by record inside SAVEPOINTs, and the transaction ends with the chunk's
    watermark advance, so persisted entities and the watermark commit
    together. Records failing with a retryable error go to the ledger and
    are replayed from their stored payload at the end of the cycle.
    Local changes queued from the 1C side are pushed to Bitrix24 by
    :meth:`process_changes` with the same retry bookkeeping.
    """

    def __init__(
        self,
        client: Bitrix24Client,
        engine: Engine,
        settings: Settings,
        registry: ObjectMappingRegistry | None = None,
        tracker: SyncStateTracker | None = None,
        ledger: ChangeLedger | None = None,
        notifier: EmailNotifier | None = None,
        cache: MemoryCache | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Bitrix24 API client.
            engine: SQLAlchemy engine.
            settings: Application settings.
            registry: Frozen mapping registry; the default one if omitted.
            tracker: Watermark tracker.
            ledger: Retry ledger.
            notifier: Operator notifications.
            cache: Cache shared by reference lookups across cycles.
        """
        self.client = client
        self.engine = engine
        self.settings = settings
        self.registry = registry if registry is not None else default_registry()
        self.tracker = tracker or SyncStateTracker(engine)
        self.ledger = ledger or ChangeLedger(engine, settings)
        self.notifier = notifier or EmailNotifier(settings)
        self.cache = cache if cache is not None else MemoryCache()
        self._strategies: dict[str, BaseEntityStrategy] = {}

    def strategy_for(self, entity_type: str) -> BaseEntityStrategy:
        if entity_type not in STRATEGIES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if entity_type not in self._strategies:
            self._strategies[entity_type] = STRATEGIES[entity_type](self.client, self.settings)
        return self._strategies[entity_type]

    def _resolver(self, session: Session) -> ReferenceResolver:
        return ReferenceResolver(
            session,
            cache=self.cache,
            entity_ttl=self.settings.cache_entity_ttl,
            bulk_ttl=self.settings.cache_bulk_ttl,
        )

    def _transition(self, entity_type: str, state: CycleState, **context: Any) -> None:
        logger.info("Cycle state", entity_type=entity_type, state=state.value, **context)

    # Full pass

    def missing_dependencies(self, entity_type: str) -> list[str]:
        """Dependencies of ``entity_type`` that never completed a cycle."""
        return [dep for dep in DEPENDENCIES.get(entity_type, ()) if not self.tracker.dependency_ready(dep)]

    async def sync_all(self, full: bool = False) -> SyncSummary:
        """Run one cycle per entity type in dependency order.

        Args:
            full: Ignore stored watermarks and pull everything.

        Returns:
            Summary of the pass.
        """
        summary = SyncSummary()
        skipped = self.settings.get_skip_entity_types_list()
        logger.info("Starting sync pass", full=full, skip=skipped)

        for entity_type in ENTITY_TYPES:
            if entity_type in skipped:
                summary.skip(entity_type, "Skipped by configuration")
                continue

            missing = self.missing_dependencies(entity_type)
            if missing:
                reason = f"Dependencies never synced: {', '.join(missing)}"
                logger.warning("Skipping entity type", entity_type=entity_type, reason=reason)
                summary.skip(entity_type, reason)
                continue

            summary.add_stats(await self.sync_entity(entity_type, full=full))

        summary.finish()
        logger.info("Sync pass complete", **summary.to_dict())
        self.notifier.notify_sync_complete(summary)
        return summary

    # One cycle

    async def sync_entity(self, entity_type: str, full: bool = False) -> SyncStats:
        """Run one cycle for an entity type.

        A cycle never overlaps another cycle of the same type: the
        in-process lock and the database lease both have to be free.

        Args:
            entity_type: Entity type to sync.
            full: Ignore the stored watermark and pull everything.

        Returns:
            Counters of the cycle.
        """
        strategy = self.strategy_for(entity_type)
        stats = SyncStats(entity_type=entity_type)

        lock = self.tracker.lock(entity_type)
        if lock.locked():
            logger.warning("Cycle already running", entity_type=entity_type)
            stats.add_warning("Cycle already running")
            return stats

        async with lock:
            stale_timeout = timedelta(minutes=self.settings.stale_timeout_minutes)
            if not self.tracker.acquire_cycle(entity_type, stale_timeout):
                stats.add_warning("Cycle already running elsewhere")
                return stats
            try:
                await self._run_cycle(strategy, stats, full)
            finally:
                self.tracker.release_cycle(entity_type)

        return stats

    async def _run_cycle(self, strategy: BaseEntityStrategy, stats: SyncStats, full: bool) -> None:
        entity_type = strategy.entity_type
        try:
            await strategy.prepare()
            await self._pull(strategy, stats, full)
            await self._drain(strategy, stats)
        except FatalSyncError as e:
            stats.fatal = True
            stats.add_error(str(e))
            stats.finish()
            self._transition(entity_type, CycleState.FATAL, error=str(e))
            self.tracker.mark_failed(entity_type, str(e))
            self.notifier.send_alert(entity_type, f"Sync cycle aborted: {e}", stats)
            return
        except Exception as e:
            # Fetch failures end the cycle; committed chunks keep their watermark
            stats.fatal = True
            stats.add_error(f"Cycle failed: {e}")
            stats.finish()
            logger.error("Sync cycle failed", entity_type=entity_type, error=str(e))
            self.tracker.mark_failed(entity_type, str(e))
            self._transition(entity_type, CycleState.IDLE)
            return

        stats.finish()
        self.tracker.mark_completed(entity_type, stats)
        logger.info("Sync cycle complete", **stats.to_dict())
        self._transition(entity_type, CycleState.IDLE)

        threshold = self.settings.alert_threshold_for(entity_type)
        if stats.error_count >= threshold:
            self.notifier.send_alert(
                entity_type,
                f"{stats.error_count} record errors in one cycle (threshold {threshold})",
                stats,
            )

    def _keep_lease(self, entity_type: str) -> None:
        """Renew the cycle lease; a cycle whose lease was taken over stops."""
        if not self.tracker.renew_cycle(entity_type):
            raise FatalSyncError(entity_type, "Cycle lease was taken over by another worker")

    async def _fetch(self, strategy: BaseEntityStrategy, since: datetime | None, start: int) -> Chunk:
        """Fetch a chunk, backing off while the portal throttles us."""
        attempt = 0
        while True:
            self._keep_lease(strategy.entity_type)
            self._transition(strategy.entity_type, CycleState.FETCHING, start=start)
            try:
                return await strategy.fetch_chunk(since, start)
            except RateLimitError as e:
                if attempt >= self.settings.max_retries:
                    raise
                attempt += 1
                self.client.rate_limiter.penalize(self.settings.rate_limit_backoff_seconds * attempt)
                self._transition(strategy.entity_type, CycleState.RETRY_WAIT, attempt=attempt, error=str(e))

    async def _pull(self, strategy: BaseEntityStrategy, stats: SyncStats, full: bool) -> None:
        """Fetch and process chunks until no record at or after the watermark remains.

        The fetch cursor moves to the newest modification time of each
        chunk; records already seen with the same modification time are
        dropped from the next chunk, and offsets are only used to page
        through a run of records sharing one timestamp.
        """
        entity_type = strategy.entity_type
        since = None if full else self.tracker.get_last_sync(entity_type)
        start = 0
        seen: set[tuple[str, datetime | None]] = set()

        while True:
            chunk = await self._fetch(strategy, since, start)
            fresh = [
                item for item in chunk.items if (strategy.external_id(item), strategy.modified_at(item)) not in seen
            ]
            if not fresh:
                if chunk.has_more:
                    start += len(chunk)
                    continue
                break

            await self._process_chunk(strategy, fresh, stats)
            seen.update((strategy.external_id(item), strategy.modified_at(item)) for item in fresh)

            if not chunk.has_more:
                break
            cursor = max((m for m in map(strategy.modified_at, chunk.items) if m is not None), default=None)
            if cursor is not None and cursor != since:
                since, start = cursor, 0
            else:
                start += len(chunk)

    async def _process_chunk(
        self, strategy: BaseEntityStrategy, items: list[dict[str, Any]], stats: SyncStats
    ) -> None:
        entity_type = strategy.entity_type
        chunk_stats = SyncStats(entity_type=entity_type)
        write_backs: list[tuple[dict[str, Any], str]] = []
        watermark: datetime | None = None

        self._keep_lease(entity_type)
        self._transition(entity_type, CycleState.PROCESSING_CHUNK, records=len(items))
        with get_session(self.engine) as session:
            resolver = self._resolver(session)
            for item in items:
                chunk_stats.count("pulled")
                if self._process_record(strategy, item, session, resolver, chunk_stats, write_backs):
                    modified = strategy.modified_at(item)
                    if modified is not None and (watermark is None or modified > watermark):
                        watermark = modified

            self._transition(
                entity_type,
                CycleState.ADVANCING_WATERMARK,
                watermark=watermark.isoformat() if watermark else None,
            )
            self.tracker.record_chunk(entity_type, watermark, chunk_stats, session=session)

        self._merge(stats, chunk_stats)
        if watermark is not None and (stats.watermark is None or watermark > stats.watermark):
            stats.watermark = watermark
        await self._write_back_guids(strategy, write_backs)

    async def _drain(self, strategy: BaseEntityStrategy, stats: SyncStats, limit: int | None = None) -> int:
        """Replay ledger records of this entity type that are due for retry.

        Returns:
            Number of records replayed.
        """
        entity_type = strategy.entity_type
        self._keep_lease(entity_type)
        entries = self.ledger.claim(entity_type, limit=limit or self.settings.chunk_size)
        if not entries:
            return 0

        await strategy.prepare()
        self._transition(entity_type, CycleState.RETRY_WAIT, due=len(entries))
        drain_stats = SyncStats(entity_type=entity_type)
        write_backs: list[tuple[dict[str, Any], str]] = []

        with get_session(self.engine) as session:
            resolver = self._resolver(session)
            for entry in entries:
                if not entry.payload:
                    self.ledger.mark_error(entry.id, "No payload to replay", session=session)
                    drain_stats.add_error(f"{entry.external_id}: no payload to replay")
                    continue
                self._process_record(
                    strategy, entry.payload, session, resolver, drain_stats, write_backs, entry_id=entry.id
                )
            self.tracker.record_chunk(entity_type, None, drain_stats, session=session)

        self._merge(stats, drain_stats)
        await self._write_back_guids(strategy, write_backs)
        return len(entries)

    @staticmethod
    def _merge(stats: SyncStats, part: SyncStats) -> None:
        for name in ("pulled", "created", "updated", "skipped", "retried"):
            setattr(stats, name, getattr(stats, name) + getattr(part, name))
        stats.errors.extend(part.errors)
        stats.warnings.extend(part.warnings)

    # One record

    def _process_record(
        self,
        strategy: BaseEntityStrategy,
        item: dict[str, Any],
        session: Session,
        resolver: ReferenceResolver,
        stats: SyncStats,
        write_backs: list[tuple[dict[str, Any], str]],
        entry_id: int | None = None,
    ) -> bool:
        """Process one record and record its outcome.

        Args:
            strategy: Strategy of the record's entity type.
            item: Bitrix24 record.
            session: Session of the chunk.
            resolver: Reference lookup bound to ``session``.
            stats: Counters to update.
            write_backs: Collects (record, GUID) pairs to store in Bitrix24.
            entry_id: Ledger record being replayed, if any.

        Returns:
            True if the record counts toward the watermark (persisted or
            intentionally skipped).

        Raises:
            FatalSyncError: If a priority object type has no mapping.
        """
        entity_type = strategy.entity_type
        object_type = strategy.object_type
        external_id = strategy.external_id(item)

        if not strategy.should_import(item):
            logger.debug("Skipping record last changed by 1C", entity_type=entity_type, external_id=external_id)
            stats.count("skipped")
            if entry_id is not None:
                self.ledger.mark_skipped(entry_id, ECHO_SKIP_REASON, session=session)
            else:
                self.ledger.supersede(entity_type, external_id, ECHO_SKIP_REASON, session=session)
            return True

        mapping = self.registry.get_mapping(object_type)
        if mapping is None:
            error = MappingNotFoundError(object_type)
            if self.registry.is_priority_type(object_type):
                raise FatalSyncError(entity_type, str(error))
            logger.warning("No mapping, skipping record", entity_type=entity_type, object_type=object_type)
            stats.count("skipped")
            if entry_id is not None:
                self.ledger.mark_skipped(entry_id, str(error), session=session)
            else:
                self.ledger.record_skipped(
                    entity_type, external_id, str(error), payload=item, object_type=object_type, session=session
                )
            return True

        try:
            with session.begin_nested():
                action, guid, needs_write_back = self._apply(strategy, mapping, item, session, resolver)
        except SyncError as e:
            if e.retryable:
                self._defer(strategy, item, e, session, stats, entry_id)
            else:
                self._fail(strategy, item, str(e), session, stats, entry_id)
            return False
        except Exception as e:
            logger.error(
                "Unexpected error processing record",
                entity_type=entity_type,
                external_id=external_id,
                error=str(e),
                exc_info=True,
            )
            self._fail(strategy, item, f"{type(e).__name__}: {e}", session, stats, entry_id)
            return False

        stats.count(action)
        if entry_id is not None:
            self.ledger.mark_processed(entry_id, session=session)
        else:
            self.ledger.settle(entity_type, external_id, session=session)
        if needs_write_back:
            write_backs.append((item, guid))
        logger.debug("Record synced", entity_type=entity_type, external_id=external_id, action=action, guid=guid)
        return True

    def _apply(
        self,
        strategy: BaseEntityStrategy,
        mapping: ObjectMapping,
        item: dict[str, Any],
        session: Session,
        resolver: ReferenceResolver,
    ) -> tuple[str, str, bool]:
        guid, needs_write_back = strategy.resolve_guid(item, session)
        wire = strategy.to_wire(item, guid, resolver)

        result = mapping.validate_structure(wire)
        if not result.is_valid():
            raise ValidationError(f"{result.summary()}: {'; '.join(result.errors)}")
        for warning in result.warnings:
            logger.debug("Mapping warning", entity_type=strategy.entity_type, guid=guid, warning=warning)

        entity = mapping.map_from_1c(wire, resolver)
        entity.last_pulled_at = utcnow()
        action, _ = EntityRepository(session, strategy.model).upsert(entity)
        resolver.invalidate(strategy.model, guid)
        return action, guid, needs_write_back

    def _defer(
        self,
        strategy: BaseEntityStrategy,
        item: dict[str, Any],
        error: SyncError,
        session: Session,
        stats: SyncStats,
        entry_id: int | None,
    ) -> None:
        entity_type = strategy.entity_type
        external_id = strategy.external_id(item)
        if isinstance(error, RateLimitError):
            self.client.rate_limiter.penalize(self.settings.rate_limit_backoff_seconds)

        if entry_id is not None:
            entry = self.ledger.schedule_retry(entry_id, str(error), session=session)
        else:
            entry = self.ledger.defer(
                entity_type,
                external_id,
                str(error),
                payload=item,
                object_type=strategy.object_type,
                session=session,
            )

        if entry.status == ChangeStatus.ERROR:
            stats.add_error(f"{external_id}: {entry.error}")
        else:
            stats.count("retried")
            logger.info(
                "Record deferred",
                entity_type=entity_type,
                external_id=external_id,
                kind=error.kind.value,
                error=str(error),
            )

    def _fail(
        self,
        strategy: BaseEntityStrategy,
        item: dict[str, Any],
        message: str,
        session: Session,
        stats: SyncStats,
        entry_id: int | None,
    ) -> None:
        external_id = strategy.external_id(item)
        logger.warning("Record failed", entity_type=strategy.entity_type, external_id=external_id, error=message)
        stats.add_error(f"{external_id}: {message}")
        if entry_id is not None:
            self.ledger.mark_error(entry_id, message, session=session)
        else:
            self.ledger.record_error(
                strategy.entity_type,
                external_id,
                message,
                payload=item,
                object_type=strategy.object_type,
                session=session,
            )

    async def _write_back_guids(
        self, strategy: BaseEntityStrategy, write_backs: list[tuple[dict[str, Any], str]]
    ) -> None:
        """Store generated GUIDs in Bitrix24; failures are logged, not raised."""
        for item, guid in write_backs:
            try:
                await strategy.write_back_guid(item, guid)
            except Exception as e:
                logger.warning(
                    "Failed to write GUID back to Bitrix24",
                    entity_type=strategy.entity_type,
                    external_id=strategy.external_id(item),
                    guid=guid,
                    error=str(e),
                )

    # Pushing local changes

    async def _push(self, strategy: BaseEntityStrategy, stats: SyncStats, limit: int | None = None) -> int:
        """Push due local changes of this entity type to Bitrix24.

        Each change is pushed in its own transaction, so the outcome of a
        change is committed as soon as the portal answered for it.

        Returns:
            Number of changes processed.
        """
        entity_type = strategy.entity_type
        self._keep_lease(entity_type)
        entries = self.ledger.claim(
            entity_type, limit=limit or self.settings.chunk_size, source=ChangeSource.ONE_C
        )
        if not entries:
            return 0

        await strategy.prepare()
        logger.info("Pushing local changes", entity_type=entity_type, due=len(entries))
        for entry in entries:
            with get_session(self.engine) as session:
                await self._push_entry(strategy, entry, session, stats)
        return len(entries)

    async def _push_entry(
        self, strategy: BaseEntityStrategy, entry: ChangeLogEntry, session: Session, stats: SyncStats
    ) -> None:
        entity_type = strategy.entity_type
        guid = entry.guid_1c
        mapping = self.registry.get_mapping(strategy.object_type)
        if not strategy.pushable or mapping is None:
            reason = (
                f"{entity_type} changes are not pushed to Bitrix24"
                if mapping is not None
                else str(MappingNotFoundError(strategy.object_type))
            )
            self.ledger.mark_skipped(entry.id, reason, session=session)
            stats.count("skipped")
            return

        repo = EntityRepository(session, strategy.model)
        entity = repo.get_by_guid(guid) if guid else None
        if entity is None:
            message = f"Local {entity_type} {guid} does not exist"
            self.ledger.mark_error(entry.id, message, session=session)
            stats.add_error(message)
            return

        resolver = self._resolver(session)
        wire = {**mapping.map_to_1c(entity), "b24_id": entity.b24_id}
        try:
            action, record_id = await strategy.push(wire, resolver)
        except SyncError as e:
            self._push_failed(entry, e, e.retryable, session, stats)
            return
        except APIError as e:
            self._push_failed(entry, e, is_transient(e), session, stats)
            return
        except Exception as e:
            logger.error(
                "Unexpected error pushing change",
                entity_type=entity_type,
                guid_1c=guid,
                error=str(e),
                exc_info=True,
            )
            self._push_failed(entry, e, False, session, stats)
            return

        if entity.b24_id is None and strategy.links_record_id:
            entity.b24_id = record_id
            resolver.invalidate(strategy.model, guid)
        self.ledger.mark_processed(entry.id, session=session)
        stats.count("pushed")
        logger.info(
            "Local change pushed", entity_type=entity_type, guid_1c=guid, action=action, b24_id=record_id
        )

    def _push_failed(
        self, entry: ChangeLogEntry, error: Exception, retryable: bool, session: Session, stats: SyncStats
    ) -> None:
        message = str(error) if isinstance(error, ExBridgeError) else f"{type(error).__name__}: {error}"
        if not retryable:
            logger.warning("Push failed", entity_type=entry.entity_type, guid_1c=entry.guid_1c, error=message)
            self.ledger.mark_error(entry.id, message, session=session)
            stats.add_error(f"{entry.guid_1c}: {message}")
            return

        if isinstance(error, RateLimitError):
            self.client.rate_limiter.penalize(self.settings.rate_limit_backoff_seconds)
        updated = self.ledger.schedule_retry(entry.id, message, session=session)
        if updated.status == ChangeStatus.ERROR:
            stats.add_error(f"{entry.guid_1c}: {updated.error}")
        else:
            stats.count("retried")

    def queue_push(self, entity_type: str, guids: list[str]) -> list[ChangeLogEntry]:
        """Queue local entities to be pushed to Bitrix24 by :meth:`process_changes`.

        Raises:
            ValueError: If the entity type is unknown or its changes are not pushed.
        """
        if not self.strategy_for(entity_type).pushable:
            raise ValueError(f"{entity_type} changes are not pushed to Bitrix24")
        with get_session(self.engine) as session:
            return [self.ledger.enqueue_local(entity_type, guid, session=session) for guid in guids]

    # Ledger processing and status

    async def process_changes(self, limit: int = 100, entity_type: str | None = None) -> dict[str, SyncStats]:
        """Replay due ledger records and push due local changes outside a pull cycle.

        Args:
            limit: Maximum records per entity type.
            entity_type: Restrict to one entity type.

        Returns:
            Counters per entity type that had due records.
        """
        results: dict[str, SyncStats] = {}
        stale_timeout = timedelta(minutes=self.settings.stale_timeout_minutes)
        for name in [entity_type] if entity_type else ENTITY_TYPES:
            strategy = self.strategy_for(name)
            lock = self.tracker.lock(name)
            if lock.locked():
                logger.warning("Cycle running, not replaying changes", entity_type=name)
                continue
            async with lock:
                if not self.tracker.acquire_cycle(name, stale_timeout):
                    continue
                stats = SyncStats(entity_type=name)
                try:
                    replayed = await self._drain(strategy, stats, limit=limit)
                    pushed = await self._push(strategy, stats, limit=limit)
                    if not replayed and not pushed:
                        continue
                except FatalSyncError as e:
                    stats.fatal = True
                    stats.add_error(str(e))
                    self.notifier.send_alert(name, f"Processing changes aborted: {e}", stats)
                finally:
                    self.tracker.release_cycle(name)
                stats.finish()
                results[name] = stats
        return results

    def get_sync_status(self) -> list[dict[str, Any]]:
        """Watermark, counters and ledger queue per entity type."""
        states = {state.entity_type: state for state in self.tracker.all_states()}
        status = []
        for entity_type in ENTITY_TYPES:
            state = states.get(entity_type)
            status.append(
                {
                    "entity_type": entity_type,
                    "last_sync_at": state.last_sync_at if state else None,
                    "watermark": state.last_external_updated_at if state else None,
                    "status": state.status if state else None,
                    "error_message": state.error_message if state else None,
                    "total_pulled": state.total_pulled if state else 0,
                    "total_created": state.total_created if state else 0,
                    "total_updated": state.total_updated if state else 0,
                    "total_skipped": state.total_skipped if state else 0,
                    "total_errors": state.total_errors if state else 0,
                    "queue": self.ledger.queue_stats(entity_type),
                }
            )
        return status
