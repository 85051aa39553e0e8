# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync - Local-first table sync over the Electric SQL shape protocol.

Mirrors server tables into an embedded SQLite store, keeps them current
through a resumable stream of change batches, notifies subscribers of what
changed, and resets the mirror when the server schema version moves.
Ships the matching FastAPI shape proxy. Package name: docpal_sync.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from docpal_sync.builder import create_config
from docpal_sync.config import SyncConfig, ProxySettings, SyncStatus

# Core functions
from docpal_sync.core import (
    SyncContext,
    initialize_sync_context,
    get_sync_stats,
    shutdown_sync_context,
)

# Environment-based configuration and profiles (additional helpers)
from docpal_sync.env import (
    create_config_from_env,
    create_proxy_settings_from_env,
    snapshot_only,
    resilient,
)

from docpal_sync.notifier import ChangeSet, RowUpdate
from docpal_sync.registry import SchemaResetEvent, SyncedTable, TableSyncRegistry

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "create_config_from_env",
    "create_proxy_settings_from_env",
    "snapshot_only",
    "resilient",
    "SyncConfig",
    "ProxySettings",
    # Core orchestration functions
    "SyncContext",
    "initialize_sync_context",
    "get_sync_stats",
    "shutdown_sync_context",
    # Sync state and change events
    "TableSyncRegistry",
    "SyncedTable",
    "SyncStatus",
    "ChangeSet",
    "RowUpdate",
    "SchemaResetEvent",
]
