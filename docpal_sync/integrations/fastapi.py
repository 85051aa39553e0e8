# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DocPal Sync FastAPI Integration - Server side of the shape protocol.

This module provides:
- A shape proxy in front of the upstream Electric service, with
  table-level authorization and company-scoped row filtering
- The schema version endpoint the client-side guard polls
- A health check for the upstream service
- Lifespan management for the upstream HTTP client and membership lookups
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Awaitable, Callable, Dict, List, Protocol, Sequence

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBearer

from docpal_sync.config import INITIAL_OFFSET, ProxySettings

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)

# Query params forwarded to Electric as-is
ELECTRIC_PROTOCOL_PARAMS = (
    "offset",
    "handle",
    "live",
    "cursor",
    "where",
    "columns",
    "replica",
)

# Response headers forwarded back to the client
ELECTRIC_RESPONSE_HEADERS = (
    "electric-handle",
    "electric-offset",
    "electric-schema",
    "electric-cursor",
    "electric-chunk-last-offset",
    "electric-up-to-date",
    "etag",
    "cache-control",
)

# Responses differ per user; shared caches must not mix them
VARY = "Cookie, Authorization"

EMPTY_SHAPE_RESPONSE = [{"headers": {"control": "up-to-date"}}]


@dataclass(frozen=True)
class ProxyUser:
    """The authenticated caller of the shape proxy."""

    id: str
    is_super_admin: bool = False


UserResolver = Callable[[Request], Awaitable[ProxyUser | None]]


class MembershipLookup(Protocol):
    """Answers which companies a user belongs to."""

    async def company_ids(
        self, user_id: str, roles: Sequence[str] | None = None
    ) -> List[str]:
        ...


class PostgresMembershipLookup:
    """
    Membership lookups against the company_members table with asyncpg.

    Only memberships whose role is in `roles` are returned when roles are
    given.
    """

    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 5):
        self.database_url = database_url
        self.min_size = min_size
        self.max_size = max_size
        self._pool = None

    async def connect(self) -> "PostgresMembershipLookup":
        import asyncpg

        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.database_url, min_size=self.min_size, max_size=self.max_size
            )
            logger.info("membership_lookup_connected")
        return self

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def company_ids(
        self, user_id: str, roles: Sequence[str] | None = None
    ) -> List[str]:
        if self._pool is None:
            await self.connect()

        if roles:
            records = await self._pool.fetch(
                "SELECT company_id FROM company_members "
                "WHERE user_id = $1 AND role = ANY($2::text[])",
                user_id,
                list(roles),
            )
        else:
            records = await self._pool.fetch(
                "SELECT company_id FROM company_members WHERE user_id = $1",
                user_id,
            )
        return [str(r["company_id"]) for r in records]


async def anonymous_user(request: Request) -> ProxyUser | None:
    """Default resolver: every caller is anonymous."""
    return None


def bearer_user_resolver(
    lookup: Callable[[str], Awaitable[ProxyUser | None]],
) -> UserResolver:
    """
    Resolve the caller from an `Authorization: Bearer <token>` header.

    Args:
        lookup: Maps a token to a user, or None when the token is not valid
    """

    async def resolve(request: Request) -> ProxyUser | None:
        credentials = await security(request)
        if credentials is None:
            return None
        return await lookup(credentials.credentials)

    return resolve


def build_company_filter(column: str, company_ids: Sequence[str]) -> Dict[str, str]:
    """
    Build a parameterized Electric where clause restricting rows to companies.

    Returns:
        Query params: the where clause and one params[n] entry per id
    """
    placeholders = ", ".join(f"${i}" for i in range(1, len(company_ids) + 1))
    params = {"where": f"{column} IN ({placeholders})"}
    for i, company_id in enumerate(company_ids, start=1):
        params[f"params[{i}]"] = str(company_id)
    return params


def _forward_headers(response: httpx.Response) -> Dict[str, str]:
    headers = {
        name: response.headers[name]
        for name in ELECTRIC_RESPONSE_HEADERS
        if name in response.headers
    }
    headers["content-type"] = response.headers.get("content-type", "application/json")
    headers["Vary"] = VARY
    return headers


def _empty_shape() -> JSONResponse:
    return JSONResponse(EMPTY_SHAPE_RESPONSE, headers={"Vary": VARY})


def register_sync_routes(
    app: FastAPI,
    settings: ProxySettings,
    *,
    user_resolver: UserResolver | None = None,
    membership: MembershipLookup | None = None,
    http: httpx.AsyncClient | None = None,
    prefix: str = "/api",
) -> None:
    """
    Register the shape proxy endpoints on a FastAPI app.

    Args:
        app: FastAPI application
        settings: Proxy settings
        user_resolver: Resolves the caller of a request (default: anonymous)
        membership: Company membership lookups for company-scoped tables
        http: Client for upstream requests (default: app.state.docpal_sync_http)
        prefix: URL prefix for endpoints (default: /api)
    """
    resolve_user = user_resolver or anonymous_user

    def upstream_client() -> httpx.AsyncClient:
        client = http or getattr(app.state, "docpal_sync_http", None)
        if client is None:
            raise HTTPException(status_code=500, detail="Shape proxy is not initialized")
        return client

    async def company_filter(table: str, user: ProxyUser) -> Dict[str, str] | None:
        """Where params for a company-scoped table, or None if the user sees nothing."""
        if membership is None:
            raise HTTPException(
                status_code=500,
                detail="Membership lookup is not configured",
            )
        roles = settings.admin_roles if table in settings.admin_only_tables else None
        company_ids = await membership.company_ids(user.id, roles)
        if not company_ids:
            return None
        return build_company_filter(settings.company_scoped_tables[table], company_ids)

    @app.get(f"{prefix}/electric/{{table}}")
    async def proxy_shape(table: str, request: Request) -> Response:
        """
        Forward a shape request to Electric.

        The table comes from the path, never from client params.
        """
        if table not in settings.synced_tables:
            raise HTTPException(status_code=403, detail=f"Table not synced: {table}")

        user = await resolve_user(request)
        scoped = table in settings.company_scoped_tables

        if user is None and (table in settings.auth_required_tables or scoped):
            raise HTTPException(status_code=401, detail="Authentication required")

        params: Dict[str, str] = {"table": table}
        query = request.query_params
        for name in ELECTRIC_PROTOCOL_PARAMS:
            values = query.getlist(name)
            if values:
                params[name] = ",".join(values)
        for name, value in query.items():
            if name.startswith("params["):
                params[name] = value
        params.setdefault("offset", INITIAL_OFFSET)

        if scoped and not user.is_super_admin:
            where = await company_filter(table, user)
            if where is None:
                logger.debug("shape_proxy_no_memberships", table=table, user_id=user.id)
                return _empty_shape()
            # Client filters are replaced, not combined
            params = {k: v for k, v in params.items() if not k.startswith("params[")}
            params.update(where)

        url = f"{settings.electric_url.rstrip('/')}/v1/shape"
        logger.debug("shape_proxy_forwarding", table=table, params=params)

        try:
            response = await upstream_client().get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=settings.upstream_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.error("shape_proxy_upstream_failed", table=table, error=str(e))
            raise HTTPException(
                status_code=502,
                detail=f"Failed to connect to Electric: {e}",
            )

        if response.is_error:
            logger.warning(
                "shape_proxy_upstream_error",
                table=table,
                status=response.status_code,
            )

        return Response(
            content=response.content,
            status_code=response.status_code,
            headers=_forward_headers(response),
        )

    @app.get(f"{prefix}/schema/version")
    async def schema_version() -> dict:
        """
        Current schema version and the tables the client should expect.
        """
        return {
            "version": settings.schema_version,
            "tables": list(settings.synced_tables),
        }

    @app.get(f"{prefix}/electric-health")
    async def electric_health() -> dict:
        """
        Health check endpoint.

        Verifies the upstream Electric service answers.
        """
        reachable = False
        error = None
        try:
            response = await upstream_client().get(
                f"{settings.electric_url.rstrip('/')}/v1/health",
                timeout=settings.upstream_timeout_seconds,
            )
            reachable = response.status_code < 500
            if not reachable:
                error = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            error = str(e)

        return {
            "status": "healthy" if reachable else "unhealthy",
            "electric_reachable": reachable,
            "electric_error": error,
            "schema_version": settings.schema_version,
            "timestamp": datetime.now(UTC).isoformat(),
        }


@asynccontextmanager
async def sync_proxy_lifespan(
    app: FastAPI,
    settings: ProxySettings,
    *,
    user_resolver: UserResolver | None = None,
    membership: MembershipLookup | None = None,
    prefix: str = "/api",
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: sync_proxy_lifespan(app, settings))

    Opens the upstream HTTP client and, when settings.database_url is set
    and no membership lookup was given, a Postgres membership lookup.

    Args:
        app: FastAPI application
        settings: Proxy settings
        user_resolver: Resolves the caller of a request
        membership: Company membership lookups
        prefix: URL prefix for endpoints
    """
    logger.info("sync_proxy_starting", electric_url=settings.electric_url)

    http = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)
    app.state.docpal_sync_http = http
    app.state.docpal_sync_settings = settings

    owned_lookup = None
    if membership is None and settings.database_url:
        owned_lookup = await PostgresMembershipLookup(settings.database_url).connect()
        membership = owned_lookup

    register_sync_routes(
        app,
        settings,
        user_resolver=user_resolver,
        membership=membership,
        http=http,
        prefix=prefix,
    )

    logger.info("sync_proxy_started", tables=list(settings.synced_tables))

    try:
        yield
    finally:
        logger.info("sync_proxy_stopping")
        await http.aclose()
        if owned_lookup is not None:
            await owned_lookup.close()
        logger.info("sync_proxy_stopped")


def get_sync_settings(app: FastAPI) -> ProxySettings:
    """
    Get proxy settings from a FastAPI app.

    Useful for accessing settings in custom endpoints.

    Raises:
        RuntimeError: If the proxy is not initialized
    """
    settings = getattr(app.state, "docpal_sync_settings", None)
    if not settings:
        raise RuntimeError("Shape proxy not initialized. Use sync_proxy_lifespan first.")
    return settings
