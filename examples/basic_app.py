# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application serving the DocPal shape proxy.

This example demonstrates how to put the shape proxy in front of an
Electric service, with bearer-token users and Postgres membership lookups.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    ELECTRIC_URL: Upstream Electric service (default: http://localhost:30000)
    DOCPAL_SCHEMA_VERSION: Schema version reported to clients
    DATABASE_URL: PostgreSQL connection URL (for company membership lookups)
    DOCPAL_DEMO_TOKENS: "token:user_id[:super],..." accepted bearer tokens
"""

import os
from typing import Dict

from fastapi import FastAPI

from docpal_sync.env import create_proxy_settings_from_env
from docpal_sync.integrations.fastapi import (
    ProxyUser,
    bearer_user_resolver,
    sync_proxy_lifespan,
)


def load_demo_tokens() -> Dict[str, ProxyUser]:
    """
    Parse DOCPAL_DEMO_TOKENS.

    A real deployment resolves users from its session or JWT layer instead.
    """
    tokens: Dict[str, ProxyUser] = {}
    for entry in os.getenv("DOCPAL_DEMO_TOKENS", "").split(","):
        parts = entry.strip().split(":")
        if len(parts) < 2:
            continue
        tokens[parts[0]] = ProxyUser(id=parts[1], is_super_admin="super" in parts[2:])
    return tokens


DEMO_TOKENS = load_demo_tokens()


async def lookup_token(token: str) -> ProxyUser | None:
    return DEMO_TOKENS.get(token)


settings = create_proxy_settings_from_env()

# Create FastAPI app
app = FastAPI(
    title="DocPal Shape Proxy",
    description="Authorizing proxy between DocPal clients and Electric",
    version="1.0.0",
    lifespan=lambda app: sync_proxy_lifespan(
        app,
        settings,
        user_resolver=bearer_user_resolver(lookup_token),
    ),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "DocPal shape proxy",
        "docs": "/docs",
        "schema_version": "/api/schema/version",
        "health": "/api/electric-health",
    }


# ============================================================================
# Shape Proxy Endpoints (registered by the lifespan)
# ============================================================================
#
# GET /api/electric/{table}     - Shape stream of a synced table
# GET /api/schema/version       - Schema version and synced tables
# GET /api/electric-health      - Upstream health
#
# Auth-required and company-scoped tables need: Authorization: Bearer <token>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
