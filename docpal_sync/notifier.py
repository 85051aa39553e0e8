# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Change Notifier - Turn applied batches into insert/update/delete sets.

Operations arriving in one batch are classified by their tags. When one
batch touches the same row more than once, the row is reported once,
according to what happened to it across the whole batch:

- ends with a delete            -> delete list
- first seen as an insert       -> insert list, final row
- existed before the batch      -> update list, (row before batch, final row)

Every subscription of a table is invoked once per non-empty batch, after
the batch has been committed to the local store.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Union

import structlog

from docpal_sync.config import Operation
from docpal_sync.store import AppliedBatch, AppliedChange, Row

logger = structlog.get_logger()


@dataclass(frozen=True)
class RowUpdate:
    """Old and new value of an updated row."""

    old: Row
    new: Row


@dataclass(frozen=True)
class ChangeSet:
    """Insert/update/delete classification of one batch."""

    table: str
    insert: List[Row] = field(default_factory=list)
    update: List[RowUpdate] = field(default_factory=list)
    delete: List[Row] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.insert or self.update or self.delete)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "insert": list(self.insert),
            "update": [{"old": u.old, "new": u.new} for u in self.update],
            "delete": list(self.delete),
        }


ChangeCallback = Callable[[ChangeSet], Union[None, Awaitable[None]]]


def build_change_set(applied: AppliedBatch) -> ChangeSet:
    """
    Classify the operations of an applied batch.

    Rows keep the position of their first operation within the batch.
    """
    # row_key -> [first change, last change]
    touched: Dict[str, List[AppliedChange]] = {}
    for change in applied.changes:
        if change.row_key in touched:
            touched[change.row_key][1] = change
        else:
            touched[change.row_key] = [change, change]

    change_set = ChangeSet(table=applied.table)
    for first, last in touched.values():
        existed_before = first.previous is not None
        if last.operation == Operation.DELETE:
            change_set.delete.append(last.row)
        elif not existed_before:
            change_set.insert.append(last.row)
        else:
            change_set.update.append(RowUpdate(old=first.previous, new=last.row))

    return change_set


def build_reset_change_set(table: str, removed: List[Row]) -> ChangeSet:
    """Change set announcing that a table's rows were dropped."""
    return ChangeSet(table=table, delete=list(removed))


class ChangeNotifier:
    """Publish/subscribe registry of change callbacks keyed by table name."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Dict[int, ChangeCallback]] = {}
        self._next_id = 0

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        """
        Register a callback for a table's changes.

        Returns:
            A function removing the subscription; calling it twice is harmless
        """
        subscription_id = self._next_id
        self._next_id += 1
        self._subscriptions.setdefault(table, {})[subscription_id] = callback

        def unsubscribe() -> None:
            callbacks = self._subscriptions.get(table)
            if callbacks is None:
                return
            callbacks.pop(subscription_id, None)
            if not callbacks:
                self._subscriptions.pop(table, None)

        return unsubscribe

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, {}))

    async def dispatch(self, change_set: ChangeSet) -> int:
        """
        Invoke every subscription of the change set's table, in registration order.

        A failing callback is logged and does not prevent the others from
        running.

        Returns:
            Number of callbacks invoked
        """
        if change_set.is_empty:
            return 0

        # Snapshot so callbacks may subscribe or unsubscribe while being dispatched
        pending = list(self._subscriptions.get(change_set.table, {}).items())
        invoked = 0

        for subscription_id, callback in pending:
            if subscription_id not in self._subscriptions.get(change_set.table, {}):
                continue
            invoked += 1
            try:
                result = callback(change_set)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "change_callback_failed",
                    table=change_set.table,
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(e),
                )

        logger.debug(
            "changes_dispatched",
            table=change_set.table,
            inserts=len(change_set.insert),
            updates=len(change_set.update),
            deletes=len(change_set.delete),
            subscribers=invoked,
        )
        return invoked
