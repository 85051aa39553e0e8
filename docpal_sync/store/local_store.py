# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local Store - SQLite mirror of synced tables.

Rows of every synced table live in a single `rows` table keyed by
(table_name, row_key), where row_key is the JSON encoding of the row's
primary key values. Sync positions (offset/handle) live in `sync_state`
and are written in the same transaction as the rows of a batch, so an
offset can never get ahead of the data it covers.

The store keeps two connections:
- a writer, used only by apply/clear calls and serialized by a lock
- a reader, used by queries

The database runs in WAL mode, so readers see the last committed batch
and never wait on an in-flight write transaction.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, TypedDict

import aiosqlite
import structlog

from docpal_sync.config import DEFAULT_PRIMARY_KEY, INITIAL_OFFSET, Operation, is_valid_identifier
from docpal_sync.exceptions import MalformedBatchError, StoreError
from docpal_sync.shape.messages import ChangeBatch, RowOperation

logger = structlog.get_logger()

Row = Dict[str, Any]


class SyncStateRecord(TypedDict):
    """Persisted sync position of a table."""

    table_name: str
    offset: str
    handle: str | None
    last_synced_at: str | None


@dataclass(frozen=True)
class AppliedChange:
    """
    A row operation as it was applied.

    previous is the stored row before this operation (None if absent),
    row is the stored row after it (for deletes, the removed row). An update
    for a row that was not stored takes previous from the upstream old_value
    when one was sent.
    """

    operation: Operation
    row_key: str
    row: Row
    previous: Row | None


@dataclass(frozen=True)
class AppliedBatch:
    """Result of applying one change batch."""

    table: str
    changes: Tuple[AppliedChange, ...]
    offset: str
    handle: str | None
    up_to_date: bool


async def init_store_db(db_path: Path) -> None:
    """
    Initialize the local store schema.

    Creates tables if they don't exist. This is idempotent and safe to
    call multiple times.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS rows (
                    table_name TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (table_name, row_key)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    table_name TEXT PRIMARY KEY,
                    "offset" TEXT NOT NULL,
                    handle TEXT,
                    last_synced_at TEXT
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            await db.commit()
    except Exception as e:
        raise StoreError(
            f"Failed to initialize local store: {e}",
            details={"db_path": str(db_path)},
        ) from e


def _encode_key(row: Mapping[str, Any], primary_key: Sequence[str]) -> str:
    missing = [col for col in primary_key if row.get(col) is None]
    if missing:
        raise MalformedBatchError(
            "Row is missing primary key columns",
            details={"missing": missing, "primary_key": list(primary_key)},
        )
    return json.dumps([row[col] for col in primary_key], separators=(",", ":"))


def _column_expr(column: str) -> str:
    if not is_valid_identifier(column):
        raise StoreError(f"Invalid column name: {column!r}")
    return f"json_extract(data, '$.{column}')"


def _sql_value(value: Any) -> Any:
    # json_extract yields 1/0 for JSON booleans
    if isinstance(value, bool):
        return int(value)
    return value


class LocalStore:
    """Durable per-table row storage with a single writer."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> "LocalStore":
        """Create the schema and open the writer and reader connections."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await init_store_db(self.db_path)

        self._writer = await aiosqlite.connect(self.db_path, isolation_level=None)
        await self._writer.execute("PRAGMA journal_mode=WAL")
        await self._writer.execute("PRAGMA busy_timeout=5000")

        self._reader = await aiosqlite.connect(self.db_path, isolation_level=None)
        await self._reader.execute("PRAGMA query_only=ON")

        logger.info("local_store_opened", db_path=str(self.db_path))
        return self

    async def close(self) -> None:
        """Close both connections. Safe to call more than once."""
        async with self._write_lock:
            if self._writer is not None:
                await self._writer.close()
                self._writer = None
        if self._reader is not None:
            await self._reader.close()
            self._reader = None

    async def __aenter__(self) -> "LocalStore":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _require_writer(self) -> aiosqlite.Connection:
        if self._writer is None:
            raise StoreError("Local store is not open", details={"db_path": str(self.db_path)})
        return self._writer

    def _require_reader(self) -> aiosqlite.Connection:
        if self._reader is None:
            raise StoreError("Local store is not open", details={"db_path": str(self.db_path)})
        return self._reader

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def apply_batch(
        self,
        table: str,
        batch: ChangeBatch,
        primary_key: Sequence[str] = DEFAULT_PRIMARY_KEY,
    ) -> AppliedBatch:
        """
        Apply a change batch atomically and persist its sync position.

        Operations are applied strictly in order. The batch's offset and
        handle are written in the same transaction, after the rows.

        Args:
            table: Synced table name
            batch: Batch received from the shape client
            primary_key: Columns identifying a row

        Returns:
            AppliedBatch describing every applied operation

        Raises:
            MalformedBatchError: If any operation cannot be applied; nothing
                from the batch is kept and the offset does not advance
            StoreError: If SQLite fails
        """
        async with self._write_lock:
            db = self._require_writer()
            now = datetime.now(UTC).isoformat()
            changes: List[AppliedChange] = []

            await db.execute("BEGIN IMMEDIATE")
            try:
                for op in batch.operations:
                    changes.append(
                        await self._apply_operation(db, table, op, primary_key, now)
                    )
                await self._write_sync_state(db, table, batch.offset, batch.handle, now)
                await db.execute("COMMIT")
            except MalformedBatchError as e:
                await db.execute("ROLLBACK")
                logger.error(
                    "batch_rejected",
                    table=table,
                    operations=len(batch.operations),
                    error=str(e),
                )
                raise
            except BaseException as e:
                await db.execute("ROLLBACK")
                if isinstance(e, Exception):
                    raise StoreError(
                        f"Failed to apply batch: {e}",
                        details={"table": table, "offset": batch.offset},
                    ) from e
                raise

        logger.debug(
            "batch_applied",
            table=table,
            operations=len(changes),
            offset=batch.offset,
            up_to_date=batch.up_to_date,
        )
        return AppliedBatch(
            table=table,
            changes=tuple(changes),
            offset=batch.offset,
            handle=batch.handle,
            up_to_date=batch.up_to_date,
        )

    async def _apply_operation(
        self,
        db: aiosqlite.Connection,
        table: str,
        op: RowOperation,
        primary_key: Sequence[str],
        now: str,
    ) -> AppliedChange:
        if not isinstance(op.value, dict):
            raise MalformedBatchError(
                "Row operation value is not a mapping",
                details={"table": table, "key": op.key},
            )

        row_key = _encode_key(op.value, primary_key)
        previous = await self._fetch_stored(db, table, row_key)

        if op.operation == Operation.DELETE:
            await db.execute(
                "DELETE FROM rows WHERE table_name = ? AND row_key = ?",
                (table, row_key),
            )
            removed = previous if previous is not None else dict(op.value)
            return AppliedChange(Operation.DELETE, row_key, removed, previous)

        if op.operation == Operation.UPDATE:
            if previous is None:
                logger.warning(
                    "update_for_missing_row",
                    table=table,
                    row_key=row_key,
                )
                new_row = dict(op.value)
                if op.old_value:
                    previous = {**op.value, **op.old_value}
            else:
                new_row = {**previous, **op.value}
        elif op.operation == Operation.INSERT:
            new_row = dict(op.value)
        else:
            raise MalformedBatchError(
                f"Unsupported operation: {op.operation!r}",
                details={"table": table, "key": op.key},
            )

        try:
            data = json.dumps(new_row, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise MalformedBatchError(
                f"Row is not JSON serializable: {e}",
                details={"table": table, "key": op.key},
            ) from e

        await db.execute(
            """
            INSERT INTO rows (table_name, row_key, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(table_name, row_key) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (table, row_key, data, now),
        )
        return AppliedChange(op.operation, row_key, new_row, previous)

    async def _fetch_stored(
        self, db: aiosqlite.Connection, table: str, row_key: str
    ) -> Row | None:
        async with db.execute(
            "SELECT data FROM rows WHERE table_name = ? AND row_key = ?",
            (table, row_key),
        ) as cursor:
            found = await cursor.fetchone()
            return json.loads(found[0]) if found else None

    async def _write_sync_state(
        self,
        db: aiosqlite.Connection,
        table: str,
        offset: str,
        handle: str | None,
        now: str | None,
    ) -> None:
        await db.execute(
            """
            INSERT INTO sync_state (table_name, "offset", handle, last_synced_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(table_name) DO UPDATE SET
                "offset" = excluded."offset",
                handle = excluded.handle,
                last_synced_at = excluded.last_synced_at
            """,
            (table, offset, handle, now),
        )

    async def reset_table(self, table: str, handle: str | None) -> List[Row]:
        """
        Drop a table's rows and restart its stream from the snapshot.

        Used when the upstream rotates a shape (must-refetch). The rows and
        the new position are replaced in one transaction.

        Returns:
            The rows that were removed
        """
        async with self._write_lock:
            db = self._require_writer()
            await db.execute("BEGIN IMMEDIATE")
            try:
                removed = await self._select_rows(db, table)
                await db.execute("DELETE FROM rows WHERE table_name = ?", (table,))
                await self._write_sync_state(db, table, INITIAL_OFFSET, handle, None)
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        logger.info("table_reset", table=table, removed=len(removed), handle=handle)
        return removed

    async def clear(self, table: str, *, forget_position: bool = True) -> int:
        """
        Remove all local rows of a table.

        Args:
            table: Table to clear
            forget_position: Also discard the persisted offset/handle so the
                next sync starts from the snapshot

        Returns:
            Number of rows removed
        """
        async with self._write_lock:
            db = self._require_writer()
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "DELETE FROM rows WHERE table_name = ?", (table,)
                )
                removed = cursor.rowcount
                if forget_position:
                    await db.execute(
                        "DELETE FROM sync_state WHERE table_name = ?", (table,)
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        logger.info("table_cleared", table=table, removed=removed)
        return removed

    async def clear_all(self) -> List[str]:
        """
        Remove every row and every persisted sync position.

        Returns:
            Names of the tables that had rows or positions
        """
        async with self._write_lock:
            db = self._require_writer()
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT table_name FROM rows
                    UNION
                    SELECT table_name FROM sync_state
                    """
                ) as cursor:
                    tables = sorted(row[0] for row in await cursor.fetchall())
                await db.execute("DELETE FROM rows")
                await db.execute("DELETE FROM sync_state")
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        logger.info("store_cleared", tables=tables)
        return tables

    async def set_meta(self, key: str, value: str) -> None:
        async with self._write_lock:
            db = self._require_writer()
            await db.execute(
                """
                INSERT INTO meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    async def delete_meta(self, key: str) -> None:
        async with self._write_lock:
            db = self._require_writer()
            await db.execute("DELETE FROM meta WHERE key = ?", (key,))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_meta(self, key: str) -> str | None:
        async with self._require_reader().execute(
            "SELECT value FROM meta WHERE key = ?", (key,)
        ) as cursor:
            found = await cursor.fetchone()
            return found[0] if found else None

    async def load_sync_state(self, table: str) -> SyncStateRecord | None:
        """Get the persisted sync position of a table, if any."""
        async with self._require_reader().execute(
            """
            SELECT table_name, "offset", handle, last_synced_at
            FROM sync_state WHERE table_name = ?
            """,
            (table,),
        ) as cursor:
            found = await cursor.fetchone()
            if not found:
                return None
            return SyncStateRecord(
                table_name=found[0],
                offset=found[1],
                handle=found[2],
                last_synced_at=found[3],
            )

    async def list_sync_states(self) -> List[SyncStateRecord]:
        async with self._require_reader().execute(
            """
            SELECT table_name, "offset", handle, last_synced_at
            FROM sync_state ORDER BY table_name
            """
        ) as cursor:
            return [
                SyncStateRecord(
                    table_name=r[0], offset=r[1], handle=r[2], last_synced_at=r[3]
                )
                for r in await cursor.fetchall()
            ]

    async def _select_rows(self, db: aiosqlite.Connection, table: str) -> List[Row]:
        async with db.execute(
            "SELECT data FROM rows WHERE table_name = ? ORDER BY rowid",
            (table,),
        ) as cursor:
            return [json.loads(r[0]) for r in await cursor.fetchall()]

    async def query(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        *,
        order_by: str | Iterable[str] | None = None,
        limit: int | None = None,
    ) -> List[Row]:
        """
        Read rows of a table.

        Args:
            table: Synced table name
            where: Column filters. A None value matches NULL/missing, a list
                or tuple matches any of its values, anything else matches
                by equality.
            order_by: Column name(s); prefix with "-" for descending.
                Defaults to arrival order of the first insert.
            limit: Maximum number of rows

        Returns:
            Rows as plain dicts
        """
        clauses = ["table_name = ?"]
        params: List[Any] = [table]

        for column, value in (where or {}).items():
            expr = _column_expr(column)
            if value is None:
                clauses.append(f"{expr} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                clauses.append(f"{expr} IN ({','.join('?' * len(values))})")
                params.extend(_sql_value(v) for v in values)
            else:
                clauses.append(f"{expr} = ?")
                params.append(_sql_value(value))

        sql = f"SELECT data FROM rows WHERE {' AND '.join(clauses)}"

        if order_by:
            columns = [order_by] if isinstance(order_by, str) else list(order_by)
            terms = []
            for column in columns:
                descending = column.startswith("-")
                name = column[1:] if descending else column
                terms.append(f"{_column_expr(name)} {'DESC' if descending else 'ASC'}")
            sql += f" ORDER BY {', '.join(terms)}, rowid"
        else:
            sql += " ORDER BY rowid"

        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        async with self._require_reader().execute(sql, params) as cursor:
            return [json.loads(r[0]) for r in await cursor.fetchall()]

    async def get_row(
        self,
        table: str,
        key: Mapping[str, Any],
        primary_key: Sequence[str] = DEFAULT_PRIMARY_KEY,
    ) -> Row | None:
        """Fetch one row by its primary key values."""
        row_key = _encode_key(key, primary_key)
        async with self._require_reader().execute(
            "SELECT data FROM rows WHERE table_name = ? AND row_key = ?",
            (table, row_key),
        ) as cursor:
            found = await cursor.fetchone()
            return json.loads(found[0]) if found else None

    async def count(self, table: str) -> int:
        async with self._require_reader().execute(
            "SELECT COUNT(*) FROM rows WHERE table_name = ?", (table,)
        ) as cursor:
            found = await cursor.fetchone()
            return found[0] if found else 0

    async def get_store_stats(self) -> Dict[str, int]:
        """Row counts per table."""
        async with self._require_reader().execute(
            "SELECT table_name, COUNT(*) FROM rows GROUP BY table_name ORDER BY table_name"
        ) as cursor:
            return {r[0]: r[1] for r in await cursor.fetchall()}
