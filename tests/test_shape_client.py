# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Shape Client Tests.

Covers the request position, the state machine, control messages and the
retry policy against a scripted shape proxy.
"""

import httpx
import pytest

from docpal_sync.config import Operation, SyncConfig
from docpal_sync.exceptions import (
    AuthorizationError,
    MalformedBatchError,
    ShapeProtocolError,
    SyncConnectionError,
)
from docpal_sync.shape import (
    ShapeClient,
    ShapeClientState,
    parse_messages,
    source_for_table,
)

from conftest import FakeShapeProxy, row_message, shape_response


def make_client(http, config: SyncConfig, sleep, table: str = "users") -> ShapeClient:
    return ShapeClient(http, source_for_table(config, table), config, sleep=sleep)


# ============================================================================
# Position and state machine
# ============================================================================

@pytest.mark.asyncio
async def test_open_without_offset_requests_snapshot(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="0_0"),
    )
    client = make_client(http, test_config, fake_sleep)

    await client.open()
    batch = await client.poll()

    params = fake_proxy.params("users")[0]
    assert params["offset"] == "-1"
    assert "handle" not in params
    assert params["replica"] == "full"
    assert "live" not in params
    assert batch.offset == "0_0"
    assert batch.handle == "h1"
    assert batch.operations[0].operation == Operation.INSERT
    assert client.state == ShapeClientState.CATCHING_UP


@pytest.mark.asyncio
async def test_open_resumes_from_offset_and_handle(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push("users", shape_response(offset="8_0", handle="h7"))
    client = make_client(http, test_config, fake_sleep)

    await client.open("7_3", "h7")

    params = fake_proxy.params("users")[0]
    assert params["offset"] == "7_3"
    assert params["handle"] == "h7"


@pytest.mark.asyncio
async def test_offset_without_handle_restarts_snapshot(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push("users", shape_response(offset="0_0"))
    client = make_client(http, test_config, fake_sleep)

    await client.open("7_3", None)

    assert fake_proxy.params("users")[0]["offset"] == "-1"


@pytest.mark.asyncio
async def test_up_to_date_switches_to_live_requests(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="0_0"),
        shape_response(offset="1_0", up_to_date=True, cursor="c-1"),
        shape_response([row_message("update", {"id": "1", "n": 2})], offset="2_0"),
    )
    client = make_client(http, test_config, fake_sleep)

    await client.open()
    await client.poll()
    second = await client.poll()
    assert second.up_to_date
    assert client.is_live

    await client.poll()

    params = fake_proxy.params("users")
    assert "live" not in params[1]
    assert params[2]["live"] == "true"
    assert params[2]["cursor"] == "c-1"
    assert params[2]["offset"] == "1_0"
    assert params[2]["handle"] == "h1"


@pytest.mark.asyncio
async def test_snapshot_mode_never_sends_live(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    config = test_config.with_updates(live=False)
    fake_proxy.push(
        "users",
        shape_response(offset="1_0", up_to_date=True),
        shape_response(offset="1_0", up_to_date=True),
    )
    client = make_client(http, config, fake_sleep)

    await client.open()
    await client.poll()
    await client.poll()

    assert all("live" not in p for p in fake_proxy.params("users"))


@pytest.mark.asyncio
async def test_no_content_means_up_to_date(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        httpx.Response(204, headers={"electric-offset": "3_0", "electric-handle": "h1"}),
    )
    client = make_client(http, test_config, fake_sleep)

    await client.open()
    batch = await client.poll()

    assert batch.up_to_date
    assert batch.is_empty
    assert batch.offset == "3_0"


@pytest.mark.asyncio
async def test_idle_response_waits_before_next_request(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep, recorded_sleeps
):
    config = test_config.with_updates(idle_interval_seconds=0.25)
    fake_proxy.push(
        "users",
        shape_response(offset="1_0", up_to_date=True),
        shape_response(offset="1_0", up_to_date=True),
        shape_response(offset="1_0", up_to_date=True),
    )
    client = make_client(http, config, fake_sleep)

    await client.open()
    await client.poll()
    await client.poll()
    await client.poll()

    assert recorded_sleeps == [0.25]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_poll_after_close_fails(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push("users", shape_response(offset="0_0"))
    client = make_client(http, test_config, fake_sleep)
    await client.open()

    await client.close()
    await client.close()

    assert client.state == ShapeClientState.DISCONNECTED
    with pytest.raises(ShapeProtocolError):
        await client.poll()


# ============================================================================
# Refetch and errors
# ============================================================================

@pytest.mark.asyncio
async def test_conflict_restarts_from_snapshot_with_new_handle(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        httpx.Response(409, json=[], headers={"electric-handle": "h2"}),
        shape_response(offset="0_0", handle="h2"),
    )
    client = make_client(http, test_config, fake_sleep)

    await client.open("5_0", "h1")
    refetch = await client.poll()

    assert refetch.must_refetch
    assert refetch.handle == "h2"
    assert client.offset == "-1"

    await client.poll()
    params = fake_proxy.params("users")[1]
    assert params["offset"] == "-1"
    assert params["handle"] == "h2"


@pytest.mark.asyncio
async def test_must_refetch_control_message(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        httpx.Response(
            200,
            json=[{"headers": {"control": "must-refetch"}}],
            headers={"electric-handle": "h3", "electric-offset": "-1"},
        ),
    )
    client = make_client(http, test_config, fake_sleep)

    await client.open("2_0", "h1")
    batch = await client.poll()

    assert batch.must_refetch
    assert batch.handle == "h3"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_authorization_failures_are_not_retried(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep, status
):
    fake_proxy.push("users", httpx.Response(status, text="nope"))
    client = make_client(http, test_config, fake_sleep)

    with pytest.raises(AuthorizationError) as exc_info:
        await client.open()

    assert exc_info.value.status_code == status
    assert client.requests_made == 1
    assert client.state == ShapeClientState.DISCONNECTED


@pytest.mark.asyncio
async def test_transient_failures_retried_with_backoff(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep, recorded_sleeps
):
    config = test_config.with_updates(
        retry_delay_seconds=1.0,
        max_retry_delay_seconds=3.0,
        retry_backoff_multiplier=2.0,
        max_retries=5,
    )
    fake_proxy.push(
        "users",
        httpx.ConnectError("refused"),
        httpx.Response(503),
        httpx.ReadTimeout("slow"),
        httpx.Response(429),
        shape_response(offset="0_0"),
    )
    client = make_client(http, config, fake_sleep)

    await client.open()
    batch = await client.poll()

    assert batch.offset == "0_0"
    assert recorded_sleeps == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_retries_exhausted_raises_connection_error(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    config = test_config.with_updates(max_retries=2)
    fake_proxy.push("users", *[httpx.ConnectError("refused") for _ in range(3)])
    client = make_client(http, config, fake_sleep)

    with pytest.raises(SyncConnectionError):
        await client.open()

    assert client.requests_made == 3
    assert client.state == ShapeClientState.DISCONNECTED


@pytest.mark.asyncio
async def test_unexpected_status_raises_protocol_error(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push("users", httpx.Response(400, text="bad where"))
    client = make_client(http, test_config, fake_sleep)

    with pytest.raises(ShapeProtocolError) as exc_info:
        await client.open()

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_unknown_operation_is_malformed(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        httpx.Response(
            200,
            json=[{"key": "k", "value": {"id": "1"}, "headers": {"operation": "upsert"}}],
            headers={"electric-offset": "0_0", "electric-handle": "h1"},
        ),
    )
    client = make_client(http, test_config, fake_sleep)

    with pytest.raises(MalformedBatchError):
        await client.open()


def test_parse_messages_skips_snapshot_end():
    body = [
        row_message("insert", {"id": "1"}),
        {"headers": {"control": "snapshot-end"}},
        row_message("delete", {"id": "1"}),
        {"headers": {"control": "up-to-date"}},
    ]

    operations, up_to_date, must_refetch = parse_messages(body)

    assert [o.operation for o in operations] == [Operation.INSERT, Operation.DELETE]
    assert up_to_date
    assert not must_refetch


def test_parse_messages_rejects_non_array():
    with pytest.raises(MalformedBatchError):
        parse_messages({"value": {}})


@pytest.mark.asyncio
async def test_undecodable_body_is_malformed(
    http, fake_proxy: FakeShapeProxy, test_config, fake_sleep
):
    fake_proxy.push(
        "users",
        httpx.Response(
            200,
            content=b"[\xff\xfe]",
            headers={"electric-offset": "0_0", "electric-handle": "h1"},
        ),
    )
    client = make_client(http, test_config, fake_sleep)

    with pytest.raises(MalformedBatchError):
        await client.open()
