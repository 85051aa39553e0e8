# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for DocPal Sync.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_missing_proxy_url_env() -> str:
    """
    Explain that the shape proxy URL environment variable is missing.
    """

    return (
        "Shape proxy URL is not configured. "
        "Set the DOCPAL_SYNC_PROXY_URL environment variable "
        "or pass proxy_url=... to create_config()."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: 'true', 'false', '1', '0', 'yes', 'no'."
    )


def explain_invalid_replica_env(value: str | None) -> str:
    """
    Explain that DOCPAL_SYNC_REPLICA is invalid.
    """

    return (
        f"Invalid DOCPAL_SYNC_REPLICA value: {value!r}. "
        "Expected 'full' or 'default'."
    )


def explain_invalid_max_retries_env(value: str | None) -> str:
    """
    Explain that DOCPAL_SYNC_MAX_RETRIES is invalid.
    """

    return (
        f"Invalid DOCPAL_SYNC_MAX_RETRIES value: {value!r}. "
        "It must be a non-negative integer, or empty to retry forever."
    )


def explain_invalid_primary_key(table: str, value: str) -> str:
    """
    Explain that a DOCPAL_SYNC_PRIMARY_KEYS entry is invalid.
    """

    return (
        f"Invalid primary key entry for {table!r}: {value!r}. "
        "Use 'table:col1+col2', separated by commas, "
        "e.g. 'company_members:company_id+user_id'."
    )

