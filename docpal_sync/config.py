# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so the sync
registry and the shape proxy can share it between tasks safely.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List
import re


# Offset sentinel meaning "send the full snapshot from the beginning"
INITIAL_OFFSET = "-1"

DEFAULT_PRIMARY_KEY = ("id",)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SyncStatus(str, Enum):
    """Sync status of a single table."""

    IDLE = "idle"
    SYNCING = "syncing"
    UP_TO_DATE = "up_to_date"
    ERROR = "error"


class Operation(str, Enum):
    """Row operation tag carried by the change stream."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ReplicaMode(str, Enum):
    """How much of a row the upstream sends on update/delete."""

    DEFAULT = "default"  # Changed columns and primary key only
    FULL = "full"  # Full row plus old_value on updates


def is_valid_identifier(name: str) -> bool:
    """Check that a table or column name is a plain SQL identifier."""
    return bool(name) and bool(_IDENTIFIER.match(name))


def _validate_url(url: str) -> bool:
    return bool(url) and url.startswith(("http://", "https://"))


@dataclass(frozen=True)
class SyncConfig:
    """
    Immutable configuration for the client-side sync layer.

    Retry settings apply to connection failures, timeouts, 429 and 5xx
    answers from the shape proxy. Authorization failures are never retried.
    """

    # Required: base URL of the shape proxy, tables are appended as a path
    proxy_url: str

    # Schema version endpoint; None disables the startup version check
    schema_version_url: str | None = None

    # Path to the SQLite file holding mirrored rows and sync state
    store_path: Path = field(default_factory=lambda: Path("./docpal_sync.db"))

    # Tables started automatically by initialize_sync_context()
    tables: List[str] = field(default_factory=list)

    # Primary key columns per table: {"company_members": ["company_id", "user_id"]}
    primary_keys: Dict[str, List[str]] = field(default_factory=dict)

    # Follow the stream live after the initial catch-up
    live: bool = True

    # Ask the upstream for full rows on update/delete
    replica: ReplicaMode = ReplicaMode.FULL

    # Extra request headers sent to the proxy (e.g. Authorization)
    headers: Dict[str, str] = field(default_factory=dict)

    # Per-request timeout; live requests are held open by the server
    request_timeout_seconds: float = 60.0

    # Capped exponential backoff for retryable failures
    retry_delay_seconds: float = 1.0
    max_retry_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0

    # None retries forever
    max_retries: int | None = None

    # Pause between requests that returned nothing new
    idle_interval_seconds: float = 0.5

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_url(self.proxy_url):
            errors.append(f"Invalid proxy_url: {self.proxy_url!r}")

        if self.schema_version_url is not None and not _validate_url(
            self.schema_version_url
        ):
            errors.append(f"Invalid schema_version_url: {self.schema_version_url!r}")

        for table in self.tables:
            if not is_valid_identifier(table):
                errors.append(f"Invalid table name: {table!r}")

        for table, columns in self.primary_keys.items():
            if not is_valid_identifier(table):
                errors.append(f"Invalid table name in primary_keys: {table!r}")
            if not columns or not all(is_valid_identifier(c) for c in columns):
                errors.append(f"Invalid primary key for {table}: {columns!r}")

        if self.request_timeout_seconds <= 0:
            errors.append(
                f"request_timeout_seconds must be > 0, got {self.request_timeout_seconds}"
            )

        if self.retry_delay_seconds < 0:
            errors.append(
                f"retry_delay_seconds must be >= 0, got {self.retry_delay_seconds}"
            )

        if self.max_retry_delay_seconds < self.retry_delay_seconds:
            errors.append("max_retry_delay_seconds must be >= retry_delay_seconds")

        if self.retry_backoff_multiplier < 1:
            errors.append(
                f"retry_backoff_multiplier must be >= 1, got {self.retry_backoff_multiplier}"
            )

        if self.max_retries is not None and self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries}")

        if self.idle_interval_seconds < 0:
            errors.append(
                f"idle_interval_seconds must be >= 0, got {self.idle_interval_seconds}"
            )

        if errors:
            from docpal_sync.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def primary_key_for(self, table: str) -> tuple:
        """Primary key columns used to identify local rows of a table."""
        return tuple(self.primary_keys.get(table, DEFAULT_PRIMARY_KEY))

    def with_updates(self, **kwargs) -> "SyncConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return SyncConfig(**current)


@dataclass(frozen=True)
class ProxySettings:
    """
    Immutable configuration for the server-side shape proxy.

    Tables listed in company_scoped_tables are filtered to the companies the
    requesting user belongs to; the value names the column holding the
    company id. Tables in admin_only_tables are further restricted to
    companies where the user holds one of admin_roles.
    """

    # Upstream Electric service
    electric_url: str = "http://localhost:30000"

    # Version reported by the schema endpoint
    schema_version: str = "0.0.1"

    # Tables the proxy is willing to serve
    synced_tables: List[str] = field(
        default_factory=lambda: [
            "users",
            "companies",
            "company_members",
            "company_invites",
            "workspaces",
            "data_tables",
            "data_table_columns",
            "table_migrations",
        ]
    )

    # Tables that require an authenticated user
    auth_required_tables: List[str] = field(
        default_factory=lambda: ["users", "companies", "company_members", "company_invites"]
    )

    company_scoped_tables: Dict[str, str] = field(
        default_factory=lambda: {
            "companies": "id",
            "company_members": "company_id",
            "company_invites": "company_id",
        }
    )

    admin_only_tables: List[str] = field(default_factory=lambda: ["company_invites"])

    admin_roles: List[str] = field(default_factory=lambda: ["owner", "admin"])

    # Postgres URL for membership lookups (optional)
    database_url: str | None = None

    upstream_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_url(self.electric_url):
            errors.append(f"Invalid electric_url: {self.electric_url!r}")

        if not self.schema_version:
            errors.append("schema_version must not be empty")

        for table in self.synced_tables:
            if not is_valid_identifier(table):
                errors.append(f"Invalid table name: {table!r}")

        for table in self.auth_required_tables:
            if table not in self.synced_tables:
                errors.append(f"auth_required table {table!r} is not in synced_tables")

        for table, column in self.company_scoped_tables.items():
            if table not in self.synced_tables:
                errors.append(f"company_scoped table {table!r} is not in synced_tables")
            if not is_valid_identifier(column):
                errors.append(f"Invalid company column for {table}: {column!r}")

        for table in self.admin_only_tables:
            if table not in self.company_scoped_tables:
                errors.append(f"admin_only table {table!r} must be company scoped")

        if self.upstream_timeout_seconds <= 0:
            errors.append(
                f"upstream_timeout_seconds must be > 0, got {self.upstream_timeout_seconds}"
            )

        if errors:
            from docpal_sync.exceptions import ConfigurationError

            raise ConfigurationError(
                "Proxy settings validation failed",
                details={"errors": errors},
            )
