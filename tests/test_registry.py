# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Table Sync Registry Tests.

These tests drive whole poll loops against the scripted shape proxy:
1. Up-to-date tracking and change notification
2. Resuming from the persisted offset after stop/start
3. One shape client per table under concurrent starts
4. Error statuses, with local reads still served
5. Shape rotation (must-refetch)
"""

import asyncio
from typing import List

import httpx
import pytest
import pytest_asyncio

from docpal_sync.config import Operation, SyncStatus
from docpal_sync.exceptions import DocPalSyncError
from docpal_sync.notifier import ChangeSet
from docpal_sync.registry import TableSyncRegistry
from docpal_sync.shape import ChangeBatch, RowOperation

from conftest import FakeShapeProxy, row_message, shape_response, wait_for


@pytest_asyncio.fixture
async def registry(test_config, store, http, fake_sleep):
    reg = TableSyncRegistry(test_config, store, http, sleep=fake_sleep)
    yield reg
    await reg.close()


def status_of(registry: TableSyncRegistry, table: str) -> SyncStatus:
    return registry.get_table(table).status


# ============================================================================
# Happy path
# ============================================================================

@pytest.mark.asyncio
async def test_table_becomes_up_to_date_and_notifies(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    seen: List[ChangeSet] = []
    visible_in_callback: List[int] = []

    async def on_change(change_set: ChangeSet) -> None:
        seen.append(change_set)
        visible_in_callback.append(await registry.count("users"))

    registry.on_data_change("users", on_change)
    fake_proxy.push(
        "users",
        shape_response(
            [row_message("insert", {"id": "1"}), row_message("insert", {"id": "2"})],
            offset="0_0",
        ),
        shape_response(offset="1_0", up_to_date=True),
    )

    info = await registry.start_sync("users")
    assert info.status == SyncStatus.SYNCING
    assert not registry.is_table_up_to_date("users")

    await wait_for(lambda: registry.is_table_up_to_date("users"))

    assert status_of(registry, "users") == SyncStatus.UP_TO_DATE
    assert await registry.query("users") == [{"id": "1"}, {"id": "2"}]
    assert len(seen) == 1
    assert seen[0].insert == [{"id": "1"}, {"id": "2"}]
    # Subscribers run after the batch committed
    assert visible_in_callback == [2]
    assert registry.get_table("users").offset == "1_0"
    assert registry.active_tables() == ["users"]


@pytest.mark.asyncio
async def test_live_changes_are_applied_and_notified(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    seen: List[ChangeSet] = []
    registry.on_data_change("users", seen.append)
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1", "n": 1})], offset="0_0"),
        shape_response(offset="1_0", up_to_date=True),
    )

    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    fake_proxy.push(
        "users",
        shape_response(
            [row_message("update", {"id": "1", "n": 2})],
            offset="2_0",
            up_to_date=True,
        ),
    )
    await wait_for(lambda: len(seen) == 2)

    assert seen[1].update[0].old == {"id": "1", "n": 1}
    assert seen[1].update[0].new == {"id": "1", "n": 2}
    assert fake_proxy.params("users")[2]["live"] == "true"


# ============================================================================
# Lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_restart_resumes_from_persisted_offset(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy, store
):
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="4_2", handle="h9"),
        shape_response(offset="5_0", handle="h9", up_to_date=True),
    )
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    await registry.stop_sync("users")
    assert status_of(registry, "users") == SyncStatus.IDLE
    assert not registry.is_table_up_to_date("users")
    assert registry.active_tables() == []

    requests_before = len(fake_proxy.params("users"))
    fake_proxy.push("users", shape_response(offset="5_0", handle="h9", up_to_date=True))
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    resume_params = fake_proxy.params("users")[requests_before]
    assert resume_params["offset"] == "5_0"
    assert resume_params["handle"] == "h9"
    assert await store.count("users") == 1


@pytest.mark.asyncio
async def test_new_registry_resumes_from_store(
    test_config, store, http, fake_sleep, fake_proxy: FakeShapeProxy
):
    await store.apply_batch(
        "users",
        ChangeBatch(
            operations=(RowOperation(Operation.INSERT, None, {"id": "1"}),),
            offset="3_3",
            handle="h3",
        ),
    )
    fake_proxy.push("users", shape_response(offset="3_3", handle="h3", up_to_date=True))

    registry = TableSyncRegistry(test_config, store, http, sleep=fake_sleep)
    try:
        info = await registry.start_sync("users")
        assert info.offset == "3_3"
        await wait_for(lambda: registry.is_table_up_to_date("users"))
    finally:
        await registry.close()

    assert fake_proxy.params("users")[0]["offset"] == "3_3"
    assert fake_proxy.params("users")[0]["handle"] == "h3"


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_client(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    await asyncio.gather(*(registry.start_sync("users") for _ in range(5)))

    await wait_for(lambda: len(fake_proxy.params("users")) == 1)
    await asyncio.sleep(0.05)

    assert len(fake_proxy.params("users")) == 1
    assert registry.active_tables() == ["users"]


@pytest.mark.asyncio
async def test_start_while_running_is_noop(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    fake_proxy.push("users", shape_response(offset="1_0", up_to_date=True))
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    info = await registry.start_sync("users")

    assert info.status == SyncStatus.UP_TO_DATE
    assert registry.is_table_up_to_date("users")


@pytest.mark.asyncio
async def test_stop_with_clear_drops_rows_and_position(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy, store
):
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="2_0", up_to_date=True),
    )
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    await registry.stop_sync("users", clear=True)

    assert await store.count("users") == 0
    assert await store.load_sync_state("users") is None

    requests_before = len(fake_proxy.params("users"))
    fake_proxy.push("users", shape_response(offset="0_0", up_to_date=True))
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    params = fake_proxy.params("users")[requests_before]
    assert params["offset"] == "-1"
    assert "handle" not in params


@pytest.mark.asyncio
async def test_tables_sync_independently(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    fake_proxy.push("users", shape_response(offset="1_0", up_to_date=True))
    fake_proxy.push("companies", httpx.Response(403))

    await registry.start_sync("users")
    await registry.start_sync("companies")

    await wait_for(lambda: registry.is_table_up_to_date("users"))
    await wait_for(lambda: status_of(registry, "companies") == SyncStatus.ERROR)

    assert registry.active_tables() == ["users"]


@pytest.mark.asyncio
async def test_closed_registry_refuses_to_start(registry: TableSyncRegistry):
    await registry.close()

    with pytest.raises(DocPalSyncError):
        await registry.start_sync("users")


# ============================================================================
# Stopping while callbacks run
# ============================================================================

def blocking_callback(registry: TableSyncRegistry, then_start: str):
    """Change callback that blocks until released, then starts another table."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def on_change(change_set: ChangeSet) -> None:
        entered.set()
        await release.wait()
        try:
            await registry.start_sync(then_start)
        except DocPalSyncError:
            pass

    return on_change, entered, release


@pytest.mark.asyncio
async def test_stop_waits_for_callback_that_starts_another_table(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    on_change, entered, release = blocking_callback(registry, "companies")
    registry.on_data_change("users", on_change)
    fake_proxy.push("users", shape_response([row_message("insert", {"id": "1"})], offset="0_0"))
    fake_proxy.push("companies", shape_response(offset="1_0", up_to_date=True))

    await registry.start_sync("users")
    await asyncio.wait_for(entered.wait(), 2.0)

    stopper = asyncio.create_task(registry.stop_sync("users"))
    await asyncio.sleep(0.01)
    # The batch in flight is finished before the table stops
    assert not stopper.done()

    release.set()
    await asyncio.wait_for(stopper, 2.0)

    assert status_of(registry, "users") == SyncStatus.IDLE
    assert await registry.count("users") == 1
    await wait_for(lambda: registry.is_table_up_to_date("companies"))
    assert registry.active_tables() == ["companies"]


@pytest.mark.asyncio
async def test_close_while_callback_is_running(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    on_change, entered, release = blocking_callback(registry, "companies")
    registry.on_data_change("users", on_change)
    fake_proxy.push("users", shape_response([row_message("insert", {"id": "1"})], offset="0_0"))

    await registry.start_sync("users")
    await asyncio.wait_for(entered.wait(), 2.0)

    closer = asyncio.create_task(registry.close())
    await asyncio.sleep(0.01)
    release.set()
    await asyncio.wait_for(closer, 2.0)

    assert registry.active_tables() == []
    assert "companies" not in registry.get_status()["tables"]


@pytest.mark.asyncio
async def test_tables_started_during_schema_reset_start_afterwards(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    on_change, entered, release = blocking_callback(registry, "companies")
    registry.on_data_change("users", on_change)
    fake_proxy.push("users", shape_response([row_message("insert", {"id": "1"})], offset="0_0"))

    await registry.start_sync("users")
    await asyncio.wait_for(entered.wait(), 2.0)

    checker = asyncio.create_task(registry.check_schema_version("2"))
    await asyncio.sleep(0.01)
    assert not checker.done()

    fake_proxy.push("users", shape_response(offset="0_0", handle="h2", up_to_date=True))
    fake_proxy.push("companies", shape_response(offset="1_0", up_to_date=True))
    release.set()
    result = await asyncio.wait_for(checker, 2.0)

    assert result.reset
    await wait_for(lambda: registry.is_table_up_to_date("users"))
    await wait_for(lambda: registry.is_table_up_to_date("companies"))
    assert fake_proxy.params("users")[1]["offset"] == "-1"
    assert fake_proxy.params("companies")[0]["offset"] == "-1"
    assert await registry.count("users") == 0


# ============================================================================
# Errors
# ============================================================================

@pytest.mark.asyncio
async def test_authorization_error_sets_error_status_and_reads_still_work(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy, store
):
    await store.apply_batch(
        "users",
        ChangeBatch(
            operations=(RowOperation(Operation.INSERT, None, {"id": "1"}),),
            offset="1_0",
            handle="h1",
        ),
    )
    fake_proxy.push("users", httpx.Response(401, text="expired"))

    await registry.start_sync("users")
    await wait_for(lambda: status_of(registry, "users") == SyncStatus.ERROR)

    info = registry.get_table("users")
    assert "expired" in info.last_error
    assert registry.active_tables() == []
    assert await registry.query("users") == [{"id": "1"}]
    assert registry.get_status()["tables"]["users"]["status"] == "error"


@pytest.mark.asyncio
async def test_malformed_batch_stops_table_without_advancing(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy, store
):
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="0_0"),
        shape_response([row_message("insert", {"name": "no id"})], offset="1_0"),
    )

    await registry.start_sync("users")
    await wait_for(lambda: status_of(registry, "users") == SyncStatus.ERROR)

    assert (await store.load_sync_state("users"))["offset"] == "0_0"
    assert await store.query("users") == [{"id": "1"}]


@pytest.mark.asyncio
async def test_exhausted_retries_set_error_status(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    fake_proxy.push("users", *[httpx.ConnectError("down") for _ in range(4)])

    await registry.start_sync("users")
    await wait_for(lambda: status_of(registry, "users") == SyncStatus.ERROR)

    assert len(fake_proxy.params("users")) == 4


@pytest.mark.asyncio
async def test_errored_table_can_be_restarted(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy
):
    fake_proxy.push("users", httpx.Response(403))
    await registry.start_sync("users")
    await wait_for(lambda: status_of(registry, "users") == SyncStatus.ERROR)

    fake_proxy.push("users", shape_response(offset="1_0", up_to_date=True))
    await registry.start_sync("users")
    await wait_for(lambda: registry.is_table_up_to_date("users"))

    assert registry.get_table("users").last_error is None


# ============================================================================
# Shape rotation
# ============================================================================

@pytest.mark.asyncio
async def test_must_refetch_replaces_rows_from_new_snapshot(
    registry: TableSyncRegistry, fake_proxy: FakeShapeProxy, store
):
    seen: List[ChangeSet] = []
    registry.on_data_change("users", seen.append)
    fake_proxy.push(
        "users",
        shape_response([row_message("insert", {"id": "1"})], offset="1_0", up_to_date=True),
        httpx.Response(409, json=[], headers={"electric-handle": "h2"}),
        shape_response(
            [row_message("insert", {"id": "2"})],
            offset="0_0",
            handle="h2",
            up_to_date=True,
        ),
    )

    await registry.start_sync("users")
    await wait_for(lambda: len(seen) == 3)

    assert seen[1].delete == [{"id": "1"}]
    assert seen[2].insert == [{"id": "2"}]
    assert await store.query("users") == [{"id": "2"}]

    params = fake_proxy.params("users")[2]
    assert params["offset"] == "-1"
    assert params["handle"] == "h2"
    assert (await store.load_sync_state("users"))["handle"] == "h2"
