# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Table Sync Registry - Single source of truth for which tables are syncing.

The registry owns one entry per table name. A running entry has exactly one
ShapeClient and one poll loop task, which does, strictly in sequence:

    poll -> apply batch to the local store -> notify subscribers

so batches of a table are applied in arrival order and subscribers never see
a batch before it has been committed. Tables sync independently of each
other.

Retryable connection failures are handled inside the ShapeClient. Every
other failure stops the table's loop and is reported through its status;
local reads keep serving the last committed data.
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Set, Union

import httpx
import structlog
from ulid import ULID

from docpal_sync.config import INITIAL_OFFSET, SyncConfig, SyncStatus
from docpal_sync.exceptions import DocPalSyncError
from docpal_sync.notifier import (
    ChangeCallback,
    ChangeNotifier,
    build_change_set,
    build_reset_change_set,
)
from docpal_sync.schema_guard import SchemaCheckResult, SchemaVersionGuard
from docpal_sync.shape import ChangeBatch, ShapeClient, ShapeSource, source_for_table
from docpal_sync.store import LocalStore, Row

logger = structlog.get_logger()


@dataclass
class SyncedTable:
    """Sync state of one table."""

    table: str
    status: SyncStatus = SyncStatus.IDLE
    last_error: str | None = None
    offset: str = INITIAL_OFFSET
    handle: str | None = None
    last_synced_at: datetime | None = None
    up_to_date: bool = False


@dataclass(frozen=True)
class SchemaResetEvent:
    """Announces that the local store was cleared."""

    reason: str  # version_mismatch or manual_reset
    old_version: str | None
    new_version: str | None
    cleared_tables: List[str]


SchemaResetCallback = Callable[[SchemaResetEvent], Union[None, Awaitable[None]]]


class _SyncRun:
    """One poll loop of a table, from start_sync until it is stopped."""

    def __init__(self, client: ShapeClient, run_id: str):
        self.client = client
        self.run_id = run_id
        self.task: asyncio.Task | None = None
        self.stopping = False
        self.applying = False

    def stop(self) -> None:
        self.stopping = True
        # A batch being applied is finished first; the loop exits after it
        if not self.applying and self.task is not None:
            self.task.cancel()


class _TableEntry:
    def __init__(self, info: SyncedTable, source: ShapeSource):
        self.info = info
        self.source = source
        self.run: _SyncRun | None = None
        # Tasks of stopped runs, possibly still finishing their last batch
        self.draining: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self.run is not None and self.run.task is not None and not self.run.task.done()

    def owns_current_task(self) -> bool:
        current = asyncio.current_task()
        if current is None:
            return False
        return current in self.draining or (self.run is not None and self.run.task is current)

    def pending_drains(self) -> Set[asyncio.Task]:
        self.draining = {t for t in self.draining if not t.done()}
        return set(self.draining)


class TableSyncRegistry:
    """
    Sync context for one local store.

    Create it once at the application's composition root and hand it to
    whatever needs to start tables, read rows, or subscribe to changes.

    The registry lock is only held while entries are inspected or swapped,
    never while a poll loop is awaited, so change callbacks may start and
    stop other tables.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        http: httpx.AsyncClient,
        *,
        notifier: ChangeNotifier | None = None,
        guard: SchemaVersionGuard | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store
        self.http = http
        self.notifier = notifier or ChangeNotifier()
        self.guard = guard or SchemaVersionGuard(store, http, config.schema_version_url)
        self._sleep = sleep

        self._entries: Dict[str, _TableEntry] = {}
        self._lock = asyncio.Lock()
        self._schema_reset_listeners: Dict[int, SchemaResetCallback] = {}
        self._next_listener_id = 0
        self._closed = False
        # Tables to start once a running reset is over; None when no reset runs
        self._deferred: Dict[str, ShapeSource] | None = None
        self.schema_version: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle of a table
    # ------------------------------------------------------------------

    async def start_sync(self, table: str, source: ShapeSource | None = None) -> SyncedTable:
        """
        Start syncing a table. No-op if it is already syncing.

        Safe to call concurrently and redundantly: only one shape client per
        table is ever created. The stream resumes from the persisted
        offset/handle when there is one. While a schema reset is running the
        table is queued and started once the reset is over.

        Returns:
            Snapshot of the table's sync state
        """
        async with self._lock:
            if self._closed:
                raise DocPalSyncError("Sync registry is closed", details={"table": table})

            entry = self._entries.get(table)
            if entry is not None and entry.is_running:
                logger.debug("sync_already_running", table=table)
                return replace(entry.info)

            source = source or (entry.source if entry else source_for_table(self.config, table))
            if entry is None:
                entry = _TableEntry(SyncedTable(table=table), source)
                self._entries[table] = entry
            else:
                entry.source = source

            info = entry.info
            info.status = SyncStatus.SYNCING
            info.last_error = None
            info.up_to_date = False

            if self._deferred is not None:
                self._deferred[table] = source
                logger.info("sync_start_deferred", table=table)
                return replace(info)

            persisted = await self.store.load_sync_state(table)
            self._load_position(info, persisted)

            previous = entry.pending_drains()

            run = _SyncRun(
                ShapeClient(self.http, source, self.config, sleep=self._sleep),
                str(ULID()),
            )
            run.task = asyncio.create_task(
                self._run(entry, run, previous), name=f"docpal-sync:{table}"
            )
            entry.run = run

            logger.info(
                "sync_started",
                table=table,
                run_id=run.run_id,
                offset=info.offset,
                resumed=persisted is not None,
            )
            return replace(info)

    async def stop_sync(self, table: str, *, clear: bool = False) -> None:
        """
        Stop syncing a table.

        A suspended poll is cancelled right away; a batch being applied is
        allowed to finish first. The persisted offset/handle are kept so the
        next start_sync resumes, unless clear is set, in which case the
        table's rows and position are removed too.
        """
        async with self._lock:
            entry = self._entries.get(table)
            run = self._detach(entry) if entry is not None else None
            draining = entry.pending_drains() if entry is not None else set()
            if self._deferred is not None:
                self._deferred.pop(table, None)

        if draining:
            await asyncio.wait(draining)
        if run is not None:
            await run.client.close()

        if clear:
            async with self._lock:
                if entry is not None and entry.is_running:
                    logger.warning("sync_clear_skipped", table=table, reason="restarted")
                    return
                await self.store.clear(table)
                if entry is not None:
                    entry.info.offset = INITIAL_OFFSET
                    entry.info.handle = None
                    entry.info.last_synced_at = None

        logger.info("sync_stopped", table=table, cleared=clear)

    def _detach(self, entry: _TableEntry) -> _SyncRun | None:
        """Take the run away from an entry and ask it to stop. Lock held."""
        if entry.owns_current_task():
            raise DocPalSyncError(
                "A table cannot be stopped from its own change callback",
                details={"table": entry.info.table},
            )

        entry.info.status = SyncStatus.IDLE
        entry.info.up_to_date = False

        run = entry.run
        if run is None:
            return None
        entry.run = None
        run.stop()
        if run.task is not None:
            entry.draining.add(run.task)
        return run

    def _draining_tasks(self) -> Set[asyncio.Task]:
        current = asyncio.current_task()
        tasks: Set[asyncio.Task] = set()
        for entry in self._entries.values():
            tasks.update(entry.pending_drains())
        tasks.discard(current)
        return tasks

    async def _drain(self, runs: List[_SyncRun], tasks: Set[asyncio.Task]) -> None:
        """Wait for stopped runs to finish and release their connections. Lock not held."""
        if tasks:
            await asyncio.wait(tasks)
        for run in runs:
            await run.client.close()

    @staticmethod
    def _load_position(info: SyncedTable, persisted: Mapping[str, Any] | None) -> None:
        if persisted is not None:
            info.offset = persisted["offset"]
            info.handle = persisted["handle"]
            if persisted["last_synced_at"]:
                info.last_synced_at = datetime.fromisoformat(persisted["last_synced_at"])
        else:
            info.offset = INITIAL_OFFSET
            info.handle = None

    async def close(self) -> None:
        """Stop every table. The store and HTTP client are left to their owner."""
        async with self._lock:
            runs = []
            for entry in self._entries.values():
                run = self._detach(entry)
                if run is not None:
                    runs.append(run)
            if self._deferred is not None:
                self._deferred.clear()
            self._closed = True
            tasks = self._draining_tasks()

        await self._drain(runs, tasks)
        logger.info("sync_registry_closed", tables=list(self._entries))

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _run(
        self,
        entry: _TableEntry,
        run: _SyncRun,
        previous: Set[asyncio.Task],
    ) -> None:
        table = entry.info.table
        log = logger.bind(table=table, run_id=run.run_id)

        try:
            if previous:
                # Stopped runs commit their last batch before this one reads the position
                await asyncio.wait(previous)
                self._load_position(entry.info, await self.store.load_sync_state(table))

            await run.client.open(entry.info.offset, entry.info.handle)
            while not run.stopping:
                batch = await run.client.poll()
                run.applying = True
                try:
                    await self._handle_batch(entry, run, batch)
                finally:
                    run.applying = False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not run.stopping:
                entry.info.status = SyncStatus.ERROR
                entry.info.last_error = str(e)
            log.error(
                "sync_failed",
                error_type=type(e).__name__,
                error=str(e),
                offset=entry.info.offset,
            )
        finally:
            await run.client.close()

    async def _handle_batch(self, entry: _TableEntry, run: _SyncRun, batch: ChangeBatch) -> None:
        info = entry.info
        table = info.table

        if batch.must_refetch:
            removed = await self.store.reset_table(table, batch.handle)
            info.offset = INITIAL_OFFSET
            info.handle = batch.handle
            info.up_to_date = False
            if not run.stopping:
                info.status = SyncStatus.SYNCING
            await self.notifier.dispatch(build_reset_change_set(table, removed))
            return

        applied = await self.store.apply_batch(
            table, batch, self.config.primary_key_for(table)
        )
        info.offset = applied.offset
        info.handle = applied.handle
        info.last_synced_at = datetime.now(UTC)

        if batch.up_to_date and not info.up_to_date and not run.stopping:
            info.up_to_date = True
            info.status = SyncStatus.UP_TO_DATE
            logger.info("table_up_to_date", table=table, offset=info.offset)

        await self.notifier.dispatch(build_change_set(applied))

    # ------------------------------------------------------------------
    # Schema version
    # ------------------------------------------------------------------

    async def check_schema_version(self, server_version: str | None = None) -> SchemaCheckResult:
        """
        Run the schema version guard.

        Serialized with start_sync/stop_sync. Tables already running are
        stopped for the duration of the check and restarted afterwards; after
        a reset they restart from the initial snapshot.

        Args:
            server_version: Version to compare against; fetched from the
                configured endpoint when omitted
        """

        async def check() -> SchemaCheckResult:
            if server_version is None:
                return await self.guard.check()
            return await self.guard.check_version(server_version)

        return await self._with_tables_paused(check, reason="version_mismatch")

    async def force_reset(self) -> SchemaCheckResult:
        """
        Drop every mirrored row, every sync position and the stored schema version.

        Running tables are stopped, the store is wiped, schema-reset listeners
        are told with reason "manual_reset", and the tables are started again
        from the initial snapshot.
        """
        return await self._with_tables_paused(self.guard.force_reset, reason="manual_reset")

    async def _with_tables_paused(
        self,
        action: Callable[[], Awaitable[SchemaCheckResult]],
        *,
        reason: str,
    ) -> SchemaCheckResult:
        async with self._lock:
            if self._closed:
                raise DocPalSyncError("Sync registry is closed")
            if self._deferred is not None:
                raise DocPalSyncError("A schema reset is already running")
            running = [e for e in self._entries.values() if e.is_running]
            for entry in running:
                if entry.owns_current_task():
                    raise DocPalSyncError(
                        "A schema reset cannot run from a change callback",
                        details={"table": entry.info.table},
                    )
            self._deferred = {e.info.table: e.source for e in running}
            runs = [run for run in map(self._detach, running) if run is not None]
            # Runs stopped earlier may still be committing their last batch
            tasks = self._draining_tasks()

        try:
            await self._drain(runs, tasks)

            async with self._lock:
                result = await action()
                if result.reset or result.new_version:
                    self.schema_version = result.new_version

                if result.reset:
                    for entry in self._entries.values():
                        entry.info.offset = INITIAL_OFFSET
                        entry.info.handle = None
                        entry.info.last_synced_at = None
                        entry.info.up_to_date = False
                        if entry.info.table not in self._deferred:
                            entry.info.status = SyncStatus.IDLE
        finally:
            async with self._lock:
                deferred, self._deferred = self._deferred, None

        if result.reset:
            await self._emit_schema_reset(
                SchemaResetEvent(
                    reason=reason,
                    old_version=result.old_version,
                    new_version=result.new_version,
                    cleared_tables=result.cleared_tables,
                )
            )

        for table, source in deferred.items():
            if self._closed:
                break
            await self.start_sync(table, source)

        return result

    def on_schema_reset(self, callback: SchemaResetCallback) -> Callable[[], None]:
        """Register a callback invoked after the store was cleared by a schema reset."""
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._schema_reset_listeners[listener_id] = callback

        def unsubscribe() -> None:
            self._schema_reset_listeners.pop(listener_id, None)

        return unsubscribe

    async def _emit_schema_reset(self, event: SchemaResetEvent) -> None:
        for callback in list(self._schema_reset_listeners.values()):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("schema_reset_callback_failed", error=str(e))

    # ------------------------------------------------------------------
    # Reads and subscriptions
    # ------------------------------------------------------------------

    def is_table_up_to_date(self, table: str) -> bool:
        """True once the table reached the live marker since its last (re)start."""
        entry = self._entries.get(table)
        return entry is not None and entry.info.up_to_date

    def on_data_change(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        """
        Subscribe to a table's changes.

        The callback receives a ChangeSet once per applied batch. It must be
        removed by calling the returned function.
        """
        return self.notifier.subscribe(table, callback)

    def get_table(self, table: str) -> SyncedTable:
        entry = self._entries.get(table)
        if entry is None:
            return SyncedTable(table=table)
        return replace(entry.info)

    def tables(self) -> List[SyncedTable]:
        return [replace(e.info) for e in self._entries.values()]

    def active_tables(self) -> List[str]:
        return [name for name, e in self._entries.items() if e.is_running]

    async def query(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        *,
        order_by: str | List[str] | None = None,
        limit: int | None = None,
    ) -> List[Row]:
        """Read mirrored rows. Works whatever the table's sync status is."""
        return await self.store.query(table, where, order_by=order_by, limit=limit)

    async def count(self, table: str) -> int:
        return await self.store.count(table)

    def get_status(self) -> Dict[str, Any]:
        """Summary of the registry, suitable for a status indicator."""
        return {
            "schema_version": self.schema_version,
            "active_tables": self.active_tables(),
            "tables": {
                name: {
                    "status": e.info.status.value,
                    "up_to_date": e.info.up_to_date,
                    "last_error": e.info.last_error,
                    "offset": e.info.offset,
                    "last_synced_at": (
                        e.info.last_synced_at.isoformat() if e.info.last_synced_at else None
                    ),
                }
                for name, e in self._entries.items()
            },
        }
