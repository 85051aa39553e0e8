# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example client mirroring DocPal tables into a local SQLite file.

Run with:
    DOCPAL_SYNC_PROXY_URL=http://localhost:8000/api/electric \\
    DOCPAL_SYNC_SCHEMA_URL=http://localhost:8000/api/schema/version \\
    DOCPAL_SYNC_TOKEN=<token> \\
    python -m examples.sync_client
"""

import asyncio

import structlog

from docpal_sync import (
    ChangeSet,
    SchemaResetEvent,
    create_config_from_env,
    initialize_sync_context,
    shutdown_sync_context,
)

logger = structlog.get_logger()

TABLES = ["users", "companies", "company_members", "workspaces"]


def log_changes(change_set: ChangeSet) -> None:
    logger.info(
        "table_changed",
        table=change_set.table,
        inserted=len(change_set.insert),
        updated=len(change_set.update),
        deleted=len(change_set.delete),
    )


def log_reset(event: SchemaResetEvent) -> None:
    logger.warning(
        "local_data_reset",
        old_version=event.old_version,
        new_version=event.new_version,
    )


async def main() -> None:
    config = create_config_from_env(tables=[])
    ctx = await initialize_sync_context(config)
    registry = ctx.registry

    registry.on_schema_reset(log_reset)
    for table in TABLES:
        registry.on_data_change(table, log_changes)
        await registry.start_sync(table)

    try:
        while True:
            await asyncio.sleep(10)
            members = await registry.query("company_members", {"role": ["owner", "admin"]})
            logger.info("sync_status", admins=len(members), **registry.get_status())
    finally:
        await shutdown_sync_context(ctx)


if __name__ == "__main__":
    asyncio.run(main())
