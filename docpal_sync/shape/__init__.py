# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shape Layer - Electric shape streams consumed through the DocPal proxy.
"""

from docpal_sync.shape.client import (
    ShapeClient,
    ShapeClientState,
    ShapeSource,
    source_for_table,
)
from docpal_sync.shape.messages import (
    ChangeBatch,
    RowOperation,
    parse_messages,
    parse_operation,
)

__all__ = [
    "ShapeClient",
    "ShapeClientState",
    "ShapeSource",
    "source_for_table",
    # Messages
    "ChangeBatch",
    "RowOperation",
    "parse_messages",
    "parse_operation",
]
