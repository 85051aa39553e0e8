# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and sync profiles.

These helpers are small, convenient wrappers around create_config(),
SyncConfig.with_updates() and ProxySettings. They make it easy to:

- Build a client configuration from environment variables
- Build shape proxy settings from environment variables
- Apply ready-made sync profiles
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

from docpal_sync.builder import create_config
from docpal_sync.config import ProxySettings, ReplicaMode, SyncConfig
from docpal_sync.errors import (
    explain_invalid_bool_env,
    explain_invalid_max_retries_env,
    explain_invalid_primary_key,
    explain_invalid_replica_env,
    explain_missing_proxy_url_env,
)
from docpal_sync.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lower = value.strip().lower()
    if lower in _TRUE:
        return True
    if lower in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_list(value: str | None) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_replica(value: str | None) -> ReplicaMode:
    if not value:
        return ReplicaMode.FULL
    try:
        return ReplicaMode(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_replica_env(value)) from exc


def _parse_max_retries(value: str | None) -> int | None:
    if value is None or value.strip() == "":
        return None
    try:
        retries = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_max_retries_env(value)) from exc
    if retries < 0:
        raise ConfigurationError(explain_invalid_max_retries_env(value))
    return retries


def _parse_primary_keys(value: str | None) -> Dict[str, List[str]]:
    """Parse "company_members:company_id+user_id,users:id"."""
    keys: Dict[str, List[str]] = {}
    for entry in _parse_list(value):
        table, sep, columns = entry.partition(":")
        table = table.strip()
        cols = [c.strip() for c in columns.split("+") if c.strip()]
        if not sep or not table or not cols:
            raise ConfigurationError(explain_invalid_primary_key(table, entry))
        keys[table] = cols
    return keys


def create_config_from_env(*, tables: List[str] | None = None) -> SyncConfig:
    """
    Create a SyncConfig from environment variables.

    Required:
        - DOCPAL_SYNC_PROXY_URL: Base URL of the shape proxy

    Optional environment variables:
        - DOCPAL_SYNC_SCHEMA_URL: Schema version endpoint
        - DOCPAL_SYNC_STORE_PATH: Local SQLite file (default: ./docpal_sync.db)
        - DOCPAL_SYNC_TABLES: Comma-separated tables to sync at startup
          (ignored when tables=... is passed)
        - DOCPAL_SYNC_PRIMARY_KEYS: e.g. "company_members:company_id+user_id"
        - DOCPAL_SYNC_LIVE: 'true' | 'false' (default: true)
        - DOCPAL_SYNC_REPLICA: 'full' | 'default' (default: full)
        - DOCPAL_SYNC_TOKEN: Bearer token sent to the proxy
        - DOCPAL_SYNC_MAX_RETRIES: Non-negative integer (default: retry forever)
    """

    proxy_url = os.getenv("DOCPAL_SYNC_PROXY_URL")
    if not proxy_url:
        raise ConfigurationError(explain_missing_proxy_url_env())

    table_names = tables if tables is not None else _parse_list(os.getenv("DOCPAL_SYNC_TABLES"))
    primary_keys = _parse_primary_keys(os.getenv("DOCPAL_SYNC_PRIMARY_KEYS"))
    store_path_env = os.getenv("DOCPAL_SYNC_STORE_PATH")

    headers: Dict[str, str] = {}
    token = os.getenv("DOCPAL_SYNC_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    return create_config(
        proxy_url,
        tables={t: primary_keys.get(t) for t in table_names},
        schema_version_url=os.getenv("DOCPAL_SYNC_SCHEMA_URL") or None,
        store_path=Path(store_path_env) if store_path_env else None,
        live=_parse_bool("DOCPAL_SYNC_LIVE", os.getenv("DOCPAL_SYNC_LIVE"), True),
        replica=_parse_replica(os.getenv("DOCPAL_SYNC_REPLICA")),
        headers=headers,
        max_retries=_parse_max_retries(os.getenv("DOCPAL_SYNC_MAX_RETRIES")),
        primary_keys=primary_keys,
    )


def create_proxy_settings_from_env() -> ProxySettings:
    """
    Create ProxySettings from environment variables.

    Optional environment variables:
        - ELECTRIC_URL: Upstream Electric service (default: http://localhost:30000)
        - DOCPAL_SCHEMA_VERSION: Version reported by /schema/version
        - DOCPAL_SYNCED_TABLES: Comma-separated tables the proxy serves
        - DATABASE_URL: Postgres URL for membership lookups
    """

    defaults = ProxySettings()
    synced = _parse_list(os.getenv("DOCPAL_SYNCED_TABLES")) or list(defaults.synced_tables)

    return ProxySettings(
        electric_url=os.getenv("ELECTRIC_URL", defaults.electric_url),
        schema_version=os.getenv("DOCPAL_SCHEMA_VERSION", defaults.schema_version),
        synced_tables=synced,
        auth_required_tables=[t for t in defaults.auth_required_tables if t in synced],
        company_scoped_tables={
            t: c for t, c in defaults.company_scoped_tables.items() if t in synced
        },
        admin_only_tables=[t for t in defaults.admin_only_tables if t in synced],
        database_url=os.getenv("DATABASE_URL") or None,
    )


# ============================================================================
# Profiles
# ============================================================================

def snapshot_only(config: SyncConfig) -> SyncConfig:
    """
    Catch up periodically instead of holding live requests open.

    - live disabled
    - at least 5 seconds between requests that brought nothing new
    """

    return config.with_updates(
        live=False,
        idle_interval_seconds=max(config.idle_interval_seconds, 5.0),
    )


def resilient(config: SyncConfig) -> SyncConfig:
    """
    Ride out long proxy outages.

    - retry forever
    - back off up to 2 minutes between attempts
    """

    return config.with_updates(
        max_retries=None,
        max_retry_delay_seconds=max(config.max_retry_delay_seconds, 120.0),
    )
