# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shape protocol messages - Parse proxy responses into change batches.

A shape response body is a JSON array. Row messages look like:

    {"key": "\\"public\\".\\"users\\"/\\"1\\"",
     "value": {"id": "1", "name": "a"},
     "old_value": {"name": "z"},
     "headers": {"operation": "update"}}

Control messages carry only headers:

    {"headers": {"control": "up-to-date"}}
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from docpal_sync.config import Operation
from docpal_sync.exceptions import MalformedBatchError

# Response headers
HEADER_OFFSET = "electric-offset"
HEADER_HANDLE = "electric-handle"
HEADER_SCHEMA = "electric-schema"
HEADER_CURSOR = "electric-cursor"
HEADER_UP_TO_DATE = "electric-up-to-date"

# Control messages
CONTROL_UP_TO_DATE = "up-to-date"
CONTROL_MUST_REFETCH = "must-refetch"
CONTROL_SNAPSHOT_END = "snapshot-end"


@dataclass(frozen=True)
class RowOperation:
    """One row change in arrival order."""

    operation: Operation
    key: str | None
    value: Dict[str, Any]
    old_value: Dict[str, Any] | None = None


@dataclass(frozen=True)
class ChangeBatch:
    """
    Changes received from one response of a shape stream.

    offset and handle must be persisted only after the operations have
    been applied to the local store.
    """

    operations: Tuple[RowOperation, ...]
    offset: str
    handle: str | None
    up_to_date: bool = False
    must_refetch: bool = False
    cursor: str | None = None
    schema: Dict[str, Any] | None = field(default=None, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.operations


def parse_operation(message: Mapping[str, Any]) -> RowOperation:
    """
    Parse a single row message.

    Raises:
        MalformedBatchError: If the operation tag or value is unusable
    """
    headers = message.get("headers") or {}
    raw_op = headers.get("operation")
    try:
        operation = Operation(raw_op)
    except ValueError as exc:
        raise MalformedBatchError(
            f"Unknown row operation: {raw_op!r}",
            details={"key": message.get("key")},
        ) from exc

    value = message.get("value")
    if not isinstance(value, dict):
        raise MalformedBatchError(
            "Row message has no object value",
            details={"key": message.get("key"), "operation": operation.value},
        )

    old_value = message.get("old_value")
    if old_value is not None and not isinstance(old_value, dict):
        raise MalformedBatchError(
            "Row message has a non-object old_value",
            details={"key": message.get("key")},
        )

    return RowOperation(
        operation=operation,
        key=message.get("key"),
        value=value,
        old_value=old_value,
    )


def parse_messages(body: Any) -> Tuple[List[RowOperation], bool, bool]:
    """
    Split a response body into row operations and control flags.

    Returns:
        Tuple of (operations, up_to_date, must_refetch)
    """
    if body is None:
        return [], False, False

    if not isinstance(body, list):
        raise MalformedBatchError(
            "Shape response body is not a JSON array",
            details={"type": type(body).__name__},
        )

    operations: List[RowOperation] = []
    up_to_date = False
    must_refetch = False

    for message in body:
        if not isinstance(message, dict):
            raise MalformedBatchError(
                "Shape message is not a JSON object",
                details={"message": repr(message)[:200]},
            )

        headers = message.get("headers") or {}
        control = headers.get("control")
        if control == CONTROL_UP_TO_DATE:
            up_to_date = True
        elif control == CONTROL_MUST_REFETCH:
            must_refetch = True
        elif control is not None:
            # snapshot-end and future control messages carry no rows
            continue
        else:
            operations.append(parse_operation(message))

    return operations, up_to_date, must_refetch
