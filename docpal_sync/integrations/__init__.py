# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI shape proxy and schema version endpoint.
"""

from docpal_sync.integrations.fastapi import (
    MembershipLookup,
    PostgresMembershipLookup,
    ProxyUser,
    bearer_user_resolver,
    get_sync_settings,
    register_sync_routes,
    sync_proxy_lifespan,
)

__all__ = [
    "MembershipLookup",
    "PostgresMembershipLookup",
    "ProxyUser",
    "bearer_user_resolver",
    "get_sync_settings",
    "register_sync_routes",
    "sync_proxy_lifespan",
]
