# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local Store - Embedded mirror of synced tables and their sync positions.
"""

from docpal_sync.store.local_store import (
    AppliedBatch,
    AppliedChange,
    LocalStore,
    Row,
    SyncStateRecord,
    init_store_db,
)

__all__ = [
    "LocalStore",
    "init_store_db",
    # Types
    "AppliedBatch",
    "AppliedChange",
    "Row",
    "SyncStateRecord",
]
