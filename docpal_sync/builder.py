# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync Builder - Functional builder pattern for configuration.

This module provides pure functions for building SyncConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, List

from docpal_sync.config import ReplicaMode, SyncConfig


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "proxy_url": "",
        "schema_version_url": None,
        "store_path": Path("./docpal_sync.db"),
        "tables": [],
        "primary_keys": {},
        "live": True,
        "replica": ReplicaMode.FULL,
        "headers": {},
        "request_timeout_seconds": 60.0,
        "retry_delay_seconds": 1.0,
        "max_retry_delay_seconds": 30.0,
        "retry_backoff_multiplier": 2.0,
        "max_retries": None,
        "idle_interval_seconds": 0.5,
    }


def with_proxy_url(config: ConfigDict, proxy_url: str) -> ConfigDict:
    """
    Set the shape proxy base URL.

    Args:
        config: Current configuration dictionary
        proxy_url: Base URL; table names are appended as a path segment

    Returns:
        New configuration dictionary with proxy URL set
    """
    return {**config, "proxy_url": proxy_url}


def with_schema_version_url(config: ConfigDict, url: str) -> ConfigDict:
    """
    Enable the startup schema version check against this endpoint.
    """
    return {**config, "schema_version_url": url}


def with_store_path(config: ConfigDict, store_path: Path | str) -> ConfigDict:
    """
    Set where the local SQLite mirror lives.
    """
    path = Path(store_path) if isinstance(store_path, str) else store_path
    return {**config, "store_path": path}


def sync_table(
    config: ConfigDict,
    table: str,
    primary_key: List[str] | None = None,
) -> ConfigDict:
    """
    Add a table to start syncing at startup.

    Args:
        config: Current configuration dictionary
        table: Upstream table name
        primary_key: Key columns if not ["id"]

    Returns:
        New configuration dictionary with table added
    """
    tables = list(config["tables"])
    if table not in tables:
        tables.append(table)
    new_config = {**config, "tables": tables}
    if primary_key:
        new_config["primary_keys"] = {**config["primary_keys"], table: list(primary_key)}
    return new_config


def with_header(config: ConfigDict, name: str, value: str) -> ConfigDict:
    """
    Send an extra header with every shape request (e.g. Authorization).
    """
    return {**config, "headers": {**config["headers"], name: value}}


def with_bearer_token(config: ConfigDict, token: str) -> ConfigDict:
    """
    Authenticate shape requests with a bearer token.
    """
    return with_header(config, "Authorization", f"Bearer {token}")


def live_mode(config: ConfigDict) -> ConfigDict:
    """
    Follow the stream live after the initial catch-up.

    This is the default mode.
    """
    return {**config, "live": True}


def snapshot_mode(config: ConfigDict) -> ConfigDict:
    """
    Re-issue catch-up requests instead of holding live requests open.
    """
    return {**config, "live": False}


def full_replica(config: ConfigDict) -> ConfigDict:
    """
    Ask for full rows and previous values on updates (default).
    """
    return {**config, "replica": ReplicaMode.FULL}


def default_replica(config: ConfigDict) -> ConfigDict:
    """
    Ask for changed columns only on updates; rows are merged locally.
    """
    return {**config, "replica": ReplicaMode.DEFAULT}


def with_retry_policy(
    config: ConfigDict,
    *,
    delay_seconds: float | None = None,
    max_delay_seconds: float | None = None,
    multiplier: float | None = None,
    max_retries: int | None = None,
) -> ConfigDict:
    """
    Tune the capped exponential backoff for retryable failures.

    Args:
        config: Current configuration dictionary
        delay_seconds: First retry delay
        max_delay_seconds: Upper bound for a single delay
        multiplier: Growth factor between retries
        max_retries: Give up after this many retries (None keeps current)

    Returns:
        New configuration dictionary with retry settings applied
    """
    updates: ConfigDict = {}
    if delay_seconds is not None:
        updates["retry_delay_seconds"] = delay_seconds
    if max_delay_seconds is not None:
        updates["max_retry_delay_seconds"] = max_delay_seconds
    if multiplier is not None:
        updates["retry_backoff_multiplier"] = multiplier
    if max_retries is not None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        updates["max_retries"] = max_retries
    return {**config, **updates}


def retry_forever(config: ConfigDict) -> ConfigDict:
    """
    Never give up on connection failures.
    """
    return {**config, "max_retries": None}


def with_request_timeout(config: ConfigDict, seconds: float) -> ConfigDict:
    """
    Set the per-request timeout.
    """
    if seconds <= 0:
        raise ValueError(f"request timeout must be > 0, got {seconds}")
    return {**config, "request_timeout_seconds": seconds}


def with_idle_interval(config: ConfigDict, seconds: float) -> ConfigDict:
    """
    Set the pause after a response that brought nothing new.
    """
    return {**config, "idle_interval_seconds": seconds}


def build_config(config_dict: ConfigDict) -> SyncConfig:
    """
    Validate and build an immutable SyncConfig from a configuration dictionary.

    Args:
        config_dict: Configuration dictionary built using builder functions

    Returns:
        Validated, immutable SyncConfig instance

    Raises:
        ConfigurationError: If validation fails
    """
    if not config_dict.get("proxy_url"):
        from docpal_sync.exceptions import ConfigurationError

        raise ConfigurationError("proxy_url is required")

    return SyncConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into a single function.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_proxy_url(c, "https://app.example.com/api/electric"),
            lambda c: sync_table(c, "users"),
            snapshot_mode,
        )(create_empty_config())

    Args:
        *funcs: Builder functions to compose

    Returns:
        A single function that applies all functions in sequence
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def build_from_steps(*steps: BuilderFunc) -> SyncConfig:
    """
    Build config by applying a sequence of builder functions.

    This is a convenience function that combines pipe() and build_config().

    Args:
        *steps: Builder functions to apply in sequence

    Returns:
        Validated, immutable SyncConfig instance
    """
    return build_config(pipe(*steps)(create_empty_config()))


def create_config(
    proxy_url: str,
    *,
    tables: List[str] | Dict[str, List[str]] | None = None,
    schema_version_url: str | None = None,
    store_path: str | Path | None = None,
    live: bool = True,
    replica: str | ReplicaMode = ReplicaMode.FULL,
    headers: Dict[str, str] | None = None,
    max_retries: int | None = None,
    **kwargs: Any,
) -> SyncConfig:
    """
    Create sync configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        proxy_url: Base URL of the shape proxy (required)
        tables: Tables to sync at startup, either a list of names or a dict
                mapping names to primary key columns.
                Example: {"users": ["id"], "company_members": ["company_id", "user_id"]}
        schema_version_url: Endpoint reporting the server schema version
        store_path: Path to the local SQLite file (default: "./docpal_sync.db")
        live: Follow the stream live after catching up (default: True)
        replica: "full" or "default" (default: "full")
        headers: Extra headers for shape requests
        max_retries: Give up after this many retries (default: retry forever)
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable SyncConfig instance

    Example:
        config = create_config(
            "https://app.example.com/api/electric",
            tables=["users", "companies"],
            schema_version_url="https://app.example.com/api/schema/version",
            store_path="/var/lib/docpal/sync.db",
        )
    """
    config_dict = create_empty_config()
    config_dict = with_proxy_url(config_dict, proxy_url)

    if isinstance(tables, dict):
        for table, primary_key in tables.items():
            config_dict = sync_table(config_dict, table, primary_key)
    elif tables:
        for table in tables:
            config_dict = sync_table(config_dict, table)

    if schema_version_url:
        config_dict = with_schema_version_url(config_dict, schema_version_url)

    if store_path:
        config_dict = with_store_path(config_dict, store_path)

    config_dict = live_mode(config_dict) if live else snapshot_mode(config_dict)

    if isinstance(replica, str):
        replica = ReplicaMode(replica.lower())
    config_dict["replica"] = replica

    for name, value in (headers or {}).items():
        config_dict = with_header(config_dict, name, value)

    if max_retries is not None:
        config_dict = with_retry_policy(config_dict, max_retries=max_retries)

    # Apply any additional kwargs
    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
