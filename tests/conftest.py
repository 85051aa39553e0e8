# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for DocPal Sync tests.

Provides a temporary local store, fast test configurations, and a scripted
fake shape proxy served through httpx.MockTransport.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Generator, List

import httpx
import pytest
import pytest_asyncio

from docpal_sync.config import SyncConfig
from docpal_sync.store import LocalStore

PROXY_URL = "http://proxy.test/api/electric"
SCHEMA_URL = "http://proxy.test/api/schema/version"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def store(temp_dir: Path) -> AsyncGenerator[LocalStore, None]:
    """Open a local store in a temporary directory."""
    local = await LocalStore(temp_dir / "sync.db").open()
    yield local
    await local.close()


@pytest.fixture
def test_config(temp_dir: Path) -> SyncConfig:
    """Create a test configuration that never waits between requests."""
    return SyncConfig(
        proxy_url=PROXY_URL,
        store_path=temp_dir / "sync.db",
        primary_keys={"company_members": ["company_id", "user_id"]},
        request_timeout_seconds=5.0,
        retry_delay_seconds=0.0,
        max_retry_delay_seconds=0.0,
        max_retries=3,
        idle_interval_seconds=0.0,
    )


def row_message(operation: str, value: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    """Build a shape row message."""
    message = {
        "key": f'"public"."t"/"{value.get("id")}"',
        "value": value,
        "headers": {"operation": operation},
    }
    message.update(extra)
    return message


def shape_response(
    messages: List[Dict[str, Any]] | None = None,
    *,
    offset: str,
    handle: str = "h1",
    up_to_date: bool = False,
    cursor: str | None = None,
    status_code: int = 200,
) -> httpx.Response:
    """Build a shape proxy response."""
    body = list(messages or [])
    if up_to_date:
        body.append({"headers": {"control": "up-to-date"}})
    headers = {"electric-offset": offset, "electric-handle": handle}
    if cursor:
        headers["electric-cursor"] = cursor
    return httpx.Response(status_code, json=body, headers=headers)


class FakeShapeProxy:
    """
    Scripted stand-in for the shape proxy.

    Responses are queued per table and served in order. When a table's
    queue is empty the request stays pending until a response is queued,
    like a live long-poll request.
    """

    def __init__(self) -> None:
        self.queues: Dict[str, asyncio.Queue] = {}
        self.requests: Dict[str, List[httpx.Request]] = {}
        self.schema_version: str | None = None

    def queue(self, table: str) -> asyncio.Queue:
        return self.queues.setdefault(table, asyncio.Queue())

    def push(self, table: str, *responses: httpx.Response | Exception) -> None:
        for response in responses:
            self.queue(table).put_nowait(response)

    def params(self, table: str) -> List[Dict[str, str]]:
        return [dict(r.url.params) for r in self.requests.get(table, [])]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/schema/version"):
            if self.schema_version is None:
                return httpx.Response(503)
            return httpx.Response(200, json={"version": self.schema_version, "tables": []})

        table = request.url.path.rsplit("/", 1)[-1]
        self.requests.setdefault(table, []).append(request)
        response = await self.queue(table).get()
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_proxy() -> FakeShapeProxy:
    return FakeShapeProxy()


@pytest_asyncio.fixture
async def http(fake_proxy: FakeShapeProxy) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client wired to the fake shape proxy."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_proxy.handler)) as client:
        yield client


@pytest.fixture
def recorded_sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps: List[float]) -> Callable[[float], Any]:
    """Sleep replacement that records delays and only yields to the loop."""

    async def sleep(seconds: float) -> None:
        recorded_sleeps.append(seconds)
        await asyncio.sleep(0)

    return sleep


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until predicate() holds, failing the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.01)
