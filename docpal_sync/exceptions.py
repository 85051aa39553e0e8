# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync Exceptions - Custom exceptions for the docpal_sync package.
"""


class DocPalSyncError(Exception):
    """Base exception for all DocPal sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DocPalSyncError):
    """Raised when configuration is invalid."""

    pass


class SyncConnectionError(DocPalSyncError):
    """Raised when the shape proxy cannot be reached (retryable)."""

    pass


class AuthorizationError(DocPalSyncError):
    """Raised when the shape proxy answers 401 or 403."""

    def __init__(self, message: str, status_code: int, details: dict | None = None):
        self.status_code = status_code
        super().__init__(message, details)


class ShapeProtocolError(DocPalSyncError):
    """Raised when the shape proxy answers with an unexpected response."""

    def __init__(
        self, message: str, status_code: int | None = None, details: dict | None = None
    ):
        self.status_code = status_code
        super().__init__(message, details)


class MalformedBatchError(DocPalSyncError):
    """Raised when a change batch cannot be applied to the local store."""

    pass


class SchemaMismatchError(DocPalSyncError):
    """Raised when the local schema version differs from the server's."""

    def __init__(self, local_version: str | None, server_version: str):
        self.local_version = local_version
        self.server_version = server_version
        super().__init__(
            "Local schema version does not match server",
            details={"local": local_version, "server": server_version},
        )


class StoreError(DocPalSyncError):
    """Raised when local store operations fail."""

    pass
