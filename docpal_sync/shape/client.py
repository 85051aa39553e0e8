# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shape Client - Resumable, ordered change stream for one upstream table.

The client speaks the Electric shape protocol through the DocPal shape
proxy. Each response becomes a ChangeBatch carrying the offset and handle
to persist once the batch has been applied.

State machine:

    disconnected -> connecting -> catching_up -> live -> disconnected

Connection failures, timeouts, 429 and 5xx answers are retried with capped
exponential backoff. 401/403 raise AuthorizationError and are never retried.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

import httpx
import structlog

from docpal_sync.config import INITIAL_OFFSET, ReplicaMode, SyncConfig
from docpal_sync.exceptions import (
    AuthorizationError,
    MalformedBatchError,
    ShapeProtocolError,
    SyncConnectionError,
)
from docpal_sync.shape.messages import (
    HEADER_CURSOR,
    HEADER_HANDLE,
    HEADER_OFFSET,
    HEADER_SCHEMA,
    HEADER_UP_TO_DATE,
    ChangeBatch,
    parse_messages,
)

logger = structlog.get_logger()

RETRYABLE_STATUS = {429, 500, 502, 503, 504}

Sleep = Callable[[float], Awaitable[None]]


class ShapeClientState(str, Enum):
    """Lifecycle state of a shape client."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CATCHING_UP = "catching_up"
    LIVE = "live"


@dataclass(frozen=True)
class ShapeSource:
    """
    Where a table's shape stream comes from.

    url is the full shape endpoint for the table, e.g.
    "https://app.example.com/api/electric/users". params are sent with
    every request (where, columns, ...).
    """

    table: str
    url: str
    params: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


def source_for_table(config: SyncConfig, table: str) -> ShapeSource:
    """Default source: <proxy_url>/<table>."""
    return ShapeSource(
        table=table,
        url=f"{config.proxy_url.rstrip('/')}/{table}",
        headers=dict(config.headers),
    )


class ShapeClient:
    """Long-lived subscription to one table's change stream."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        source: ShapeSource,
        config: SyncConfig,
        *,
        sleep: Sleep = asyncio.sleep,
    ):
        self.http = http
        self.source = source
        self.config = config
        self._sleep = sleep

        self.state = ShapeClientState.DISCONNECTED
        self.offset = INITIAL_OFFSET
        self.handle: str | None = None
        self.cursor: str | None = None
        self.schema: Dict[str, Any] | None = None
        self.requests_made = 0

        self._pending: ChangeBatch | None = None
        self._seen_up_to_date = False
        self._idle = False

    @property
    def table(self) -> str:
        return self.source.table

    @property
    def is_live(self) -> bool:
        return self.state == ShapeClientState.LIVE

    async def open(
        self,
        resume_offset: str | None = None,
        resume_handle: str | None = None,
    ) -> "ShapeClient":
        """
        Begin or resume the subscription.

        Without a resume offset the first request asks for the full snapshot.
        The first response is buffered and returned by the next poll().

        Raises:
            SyncConnectionError: If the proxy stays unreachable after retries
            AuthorizationError: If the proxy answers 401/403
        """
        if resume_offset is None or resume_handle is None:
            # An offset is only meaningful together with the handle it belongs to
            resume_offset, resume_handle = INITIAL_OFFSET, None

        self.offset = resume_offset
        self.handle = resume_handle
        self.cursor = None
        self._seen_up_to_date = False
        self._idle = False
        self.state = ShapeClientState.CONNECTING

        logger.info(
            "shape_opening",
            table=self.table,
            offset=self.offset,
            handle=self.handle,
        )

        self._pending = await self._fetch()
        return self

    async def poll(self) -> ChangeBatch:
        """
        Wait for the next batch of changes.

        Raises:
            SyncConnectionError: If retries are exhausted
            AuthorizationError: If the proxy answers 401/403
            ShapeProtocolError: On an unexpected response
            MalformedBatchError: If the body cannot be parsed
        """
        if self.state == ShapeClientState.DISCONNECTED:
            raise ShapeProtocolError(
                "Shape client is not open",
                details={"table": self.table},
            )

        if self._pending is not None:
            batch, self._pending = self._pending, None
            return batch

        if self._idle and self.config.idle_interval_seconds > 0:
            await self._sleep(self.config.idle_interval_seconds)

        return await self._fetch()

    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self.state == ShapeClientState.DISCONNECTED:
            return
        self.state = ShapeClientState.DISCONNECTED
        self._pending = None
        logger.info("shape_closed", table=self.table, offset=self.offset)

    def _build_params(self) -> Dict[str, str]:
        params = dict(self.source.params)
        params["offset"] = self.offset
        if self.handle:
            params["handle"] = self.handle
        if self.config.replica == ReplicaMode.FULL:
            params["replica"] = ReplicaMode.FULL.value
        if self.config.live and self._seen_up_to_date:
            params["live"] = "true"
            if self.cursor:
                params["cursor"] = self.cursor
        return params

    async def _fetch(self) -> ChangeBatch:
        """Issue requests until one yields a batch, retrying transient failures."""
        delay = self.config.retry_delay_seconds
        attempt = 0

        while True:
            try:
                batch = await self._request_once()
            except SyncConnectionError as e:
                if (
                    self.config.max_retries is not None
                    and attempt >= self.config.max_retries
                ):
                    self.state = ShapeClientState.DISCONNECTED
                    logger.error(
                        "shape_request_failed",
                        table=self.table,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise
                attempt += 1
                logger.warning(
                    "shape_request_retrying",
                    table=self.table,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                delay = min(
                    delay * self.config.retry_backoff_multiplier,
                    self.config.max_retry_delay_seconds,
                )
                continue
            except (AuthorizationError, ShapeProtocolError, MalformedBatchError):
                self.state = ShapeClientState.DISCONNECTED
                raise

            self._advance(batch)
            return batch

    async def _request_once(self) -> ChangeBatch:
        params = self._build_params()
        self.requests_made += 1

        try:
            response = await self.http.get(
                self.source.url,
                params=params,
                headers=self.source.headers,
                timeout=self.config.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise SyncConnectionError(
                f"Shape request timed out: {e}",
                details={"table": self.table, "offset": self.offset},
            ) from e
        except httpx.TransportError as e:
            raise SyncConnectionError(
                f"Shape proxy unreachable: {e}",
                details={"table": self.table, "url": self.source.url},
            ) from e

        status = response.status_code

        if status in (401, 403):
            raise AuthorizationError(
                f"Shape proxy refused access to {self.table}: {response.text}",
                status_code=status,
                details={"table": self.table},
            )

        if status == 409:
            # Shape was rotated upstream; restart from the snapshot with the new handle
            new_handle = response.headers.get(HEADER_HANDLE)
            logger.warning(
                "shape_must_refetch",
                table=self.table,
                old_handle=self.handle,
                new_handle=new_handle,
            )
            return ChangeBatch(
                operations=(),
                offset=INITIAL_OFFSET,
                handle=new_handle,
                must_refetch=True,
            )

        if status in RETRYABLE_STATUS:
            raise SyncConnectionError(
                f"Shape proxy answered {status}",
                details={"table": self.table, "status": status},
            )

        if status == 204:
            return self._batch_from_response(response, [], up_to_date=True)

        if status != 200:
            raise ShapeProtocolError(
                f"Unexpected shape response {status}: {response.text}",
                status_code=status,
                details={"table": self.table},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedBatchError(
                f"Shape response is not valid JSON: {e}",
                details={"table": self.table},
            ) from e

        operations, up_to_date, must_refetch = parse_messages(body)

        if must_refetch:
            return ChangeBatch(
                operations=(),
                offset=INITIAL_OFFSET,
                handle=response.headers.get(HEADER_HANDLE),
                must_refetch=True,
            )

        up_to_date = up_to_date or HEADER_UP_TO_DATE in response.headers
        return self._batch_from_response(response, operations, up_to_date=up_to_date)

    def _batch_from_response(
        self,
        response: httpx.Response,
        operations: list,
        *,
        up_to_date: bool,
    ) -> ChangeBatch:
        schema = None
        raw_schema = response.headers.get(HEADER_SCHEMA)
        if raw_schema:
            try:
                schema = json.loads(raw_schema)
            except json.JSONDecodeError:
                logger.warning("shape_schema_header_invalid", table=self.table)

        return ChangeBatch(
            operations=tuple(operations),
            offset=response.headers.get(HEADER_OFFSET, self.offset),
            handle=response.headers.get(HEADER_HANDLE, self.handle),
            up_to_date=up_to_date,
            cursor=response.headers.get(HEADER_CURSOR, self.cursor),
            schema=schema,
        )

    def _advance(self, batch: ChangeBatch) -> None:
        """Move the request position and state machine past a received batch."""
        previous_offset = self.offset

        self.offset = batch.offset
        self.handle = batch.handle
        self.cursor = batch.cursor
        if batch.schema is not None:
            self.schema = batch.schema

        if batch.must_refetch:
            self._seen_up_to_date = False
            self._idle = False
            self.state = ShapeClientState.CATCHING_UP
            return

        if batch.up_to_date:
            self._seen_up_to_date = True
            self.state = ShapeClientState.LIVE
        elif self.state == ShapeClientState.CONNECTING:
            self.state = ShapeClientState.CATCHING_UP

        logger.debug(
            "shape_batch_received",
            table=self.table,
            operations=len(batch.operations),
            offset=batch.offset,
            up_to_date=batch.up_to_date,
        )

        self._idle = batch.is_empty and batch.offset == previous_offset
