# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync Core - Composition root for the client side.

This module wires the components together: local store, HTTP client,
schema version guard, change notifier and table sync registry.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

import httpx
import structlog

from docpal_sync.config import SyncConfig
from docpal_sync.notifier import ChangeNotifier
from docpal_sync.registry import TableSyncRegistry
from docpal_sync.schema_guard import SchemaCheckResult, SchemaVersionGuard
from docpal_sync.store import LocalStore

logger = structlog.get_logger()


@dataclass
class SyncContext:
    """Runtime state for one local store and its sync loops."""

    config: SyncConfig
    store: LocalStore
    http: httpx.AsyncClient
    registry: TableSyncRegistry
    guard: SchemaVersionGuard
    owns_http: bool
    schema_check: SchemaCheckResult | None = None


async def initialize_sync_context(
    config: SyncConfig,
    *,
    http: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SyncContext:
    """
    Initialize runtime state for syncing.

    Opens the local store, checks the server schema version when an
    endpoint is configured, then starts every table listed in the config.
    The schema check always runs before the first table starts.

    Args:
        config: Sync configuration
        http: HTTP client to use; one is created (and later closed) if omitted
        sleep: Sleep function used between retries and idle polls

    Returns:
        Initialized SyncContext
    """
    store = await LocalStore(config.store_path).open()

    owns_http = http is None
    if http is None:
        http = httpx.AsyncClient(timeout=httpx.Timeout(config.request_timeout_seconds))

    notifier = ChangeNotifier()
    guard = SchemaVersionGuard(store, http, config.schema_version_url)
    registry = TableSyncRegistry(
        config, store, http, notifier=notifier, guard=guard, sleep=sleep
    )

    ctx = SyncContext(
        config=config,
        store=store,
        http=http,
        registry=registry,
        guard=guard,
        owns_http=owns_http,
    )

    try:
        if config.schema_version_url:
            ctx.schema_check = await registry.check_schema_version()

        for table in config.tables:
            await registry.start_sync(table)
    except BaseException:
        await shutdown_sync_context(ctx)
        raise

    logger.info(
        "sync_context_initialized",
        store_path=str(config.store_path),
        tables=list(config.tables),
        schema_version=registry.schema_version,
    )
    return ctx


async def get_sync_stats(ctx: SyncContext) -> Dict[str, Any]:
    """Registry status plus row counts per mirrored table."""
    status = ctx.registry.get_status()
    status["row_counts"] = await ctx.store.get_store_stats()
    return status


async def shutdown_sync_context(ctx: SyncContext) -> None:
    """Cleanup resources."""
    try:
        await ctx.registry.close()
    except Exception as e:
        logger.warning("sync_registry_close_failed", error=str(e))

    if ctx.owns_http:
        try:
            await ctx.http.aclose()
        except Exception as e:
            logger.warning("http_client_close_failed", error=str(e))

    await ctx.store.close()

    logger.info("sync_context_shutdown_complete")
