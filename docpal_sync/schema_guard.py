# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Schema Version Guard - Force a clean resync when the server schema changes.

The server publishes a schema version string. The last version the local
store was synced against is kept in the store's metadata. When the two
differ, every mirrored row and every persisted offset/handle is dropped so
each table restarts from the initial snapshot.

The check must run before any table starts syncing.
"""

from dataclasses import dataclass, field
from typing import List

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from docpal_sync.exceptions import SchemaMismatchError
from docpal_sync.store import LocalStore

logger = structlog.get_logger()

SCHEMA_VERSION_KEY = "docpal_schema_version"


class SchemaVersionInfo(BaseModel):
    """Body of GET <server>/schema/version."""

    version: str
    tables: List[str] = []


@dataclass
class SchemaCheckResult:
    """Outcome of a schema version check."""

    checked: bool
    reset: bool
    old_version: str | None
    new_version: str | None
    cleared_tables: List[str] = field(default_factory=list)


class SchemaVersionGuard:
    """Compares the server schema version with the locally persisted one."""

    def __init__(
        self,
        store: LocalStore,
        http: httpx.AsyncClient | None = None,
        version_url: str | None = None,
        *,
        timeout_seconds: float = 10.0,
    ):
        self.store = store
        self.http = http
        self.version_url = version_url
        self.timeout_seconds = timeout_seconds

    async def fetch_server_version(self) -> SchemaVersionInfo | None:
        """
        Fetch the server's schema version.

        Returns:
            The parsed response, or None when the endpoint is not configured,
            unreachable, or answers with something unusable. Sync then
            proceeds with the existing local data.
        """
        if self.http is None or not self.version_url:
            return None

        try:
            response = await self.http.get(self.version_url, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            logger.warning("schema_version_unreachable", url=self.version_url, error=str(e))
            return None

        if response.status_code != 200:
            logger.warning(
                "schema_version_fetch_failed",
                url=self.version_url,
                status=response.status_code,
            )
            return None

        try:
            return SchemaVersionInfo.model_validate_json(response.content)
        except ValidationError as e:
            logger.warning("schema_version_invalid", url=self.version_url, error=str(e))
            return None

    async def local_version(self) -> str | None:
        return await self.store.get_meta(SCHEMA_VERSION_KEY)

    async def verify(self, server_version: str) -> str | None:
        """
        Raise if the persisted version differs from the server's.

        Returns:
            The persisted version when it matches

        Raises:
            SchemaMismatchError: On mismatch, including a store that was never
                synced against any version
        """
        local = await self.local_version()
        if local != server_version:
            raise SchemaMismatchError(local, server_version)
        return local

    async def check_version(self, server_version: str) -> SchemaCheckResult:
        """
        Compare against the persisted version and reset the store on mismatch.

        On mismatch all local rows and persisted offsets/handles are removed
        and the server version is persisted.
        """
        try:
            local = await self.verify(server_version)
        except SchemaMismatchError as mismatch:
            logger.warning(
                "schema_version_mismatch",
                local=mismatch.local_version,
                server=mismatch.server_version,
            )
            cleared = await self.store.clear_all()
            await self.store.set_meta(SCHEMA_VERSION_KEY, server_version)
            logger.info(
                "schema_reset_complete",
                old_version=mismatch.local_version,
                new_version=server_version,
                cleared_tables=cleared,
            )
            return SchemaCheckResult(
                checked=True,
                reset=True,
                old_version=mismatch.local_version,
                new_version=server_version,
                cleared_tables=cleared,
            )

        logger.info("schema_version_current", version=local)
        return SchemaCheckResult(
            checked=True,
            reset=False,
            old_version=local,
            new_version=server_version,
        )

    async def check(self) -> SchemaCheckResult:
        """Fetch the server version and check it."""
        info = await self.fetch_server_version()
        if info is None:
            local = await self.local_version()
            return SchemaCheckResult(
                checked=False,
                reset=False,
                old_version=local,
                new_version=None,
            )
        return await self.check_version(info.version)

    async def force_reset(self) -> SchemaCheckResult:
        """
        Clear the store and forget the persisted version.

        The next check counts as a first run, so the server version is
        recorded again.
        """
        local = await self.local_version()
        cleared = await self.store.clear_all()
        await self.store.delete_meta(SCHEMA_VERSION_KEY)
        logger.warning("schema_force_reset", old_version=local, cleared_tables=cleared)
        return SchemaCheckResult(
            checked=False,
            reset=True,
            old_version=local,
            new_version=None,
            cleared_tables=cleared,
        )
