from __future__ import annotations

import asyncio

from backup.types import BackupStatus, HistoryQuery
from orchestrator.history import HistoryView

from fakes import ATTEMPT_A, ATTEMPT_B, FakeClock, FakeGateway, attempt


def test_refresh_replaces_rows_and_notifies_listeners():
    gateway = FakeGateway(records=[attempt(ATTEMPT_A, "in_progress"), attempt(ATTEMPT_B, "success", key="k")])
    seen = []

    async def scenario():
        view = HistoryView(gateway, clock=FakeClock())
        unsubscribe = view.subscribe(lambda rows: seen.append([row.id for row in rows]))
        await view.refresh()
        unsubscribe()
        gateway.records = []
        await view.refresh()
        return view

    view = asyncio.run(scenario())

    assert seen == [[ATTEMPT_A, ATTEMPT_B]]
    assert view.rows == []


def test_terminal_row_is_not_regressed_by_stale_read():
    gateway = FakeGateway(records=[attempt(ATTEMPT_A, "success", key="k")])

    async def scenario():
        view = HistoryView(gateway, clock=FakeClock())
        await view.refresh()
        gateway.records = [attempt(ATTEMPT_A, "in_progress"), attempt(ATTEMPT_B, "pending")]
        await view.refresh()
        return view

    view = asyncio.run(scenario())

    assert view.get(ATTEMPT_A).status is BackupStatus.SUCCESS
    assert view.get(ATTEMPT_A).artifact_key == "k"
    assert [row.id for row in view.active_rows()] == [ATTEMPT_B]


def test_request_refresh_is_throttled():
    gateway = FakeGateway()
    clock = FakeClock()

    async def scenario():
        view = HistoryView(gateway, throttle_s=2.0, clock=clock)
        results = [await view.request_refresh(), await view.request_refresh()]
        clock.advance(2.0)
        results.append(await view.request_refresh())
        return results

    assert asyncio.run(scenario()) == [True, False, True]
    assert gateway.count("list_history") == 2


def test_set_query_keeps_unchanged_filters():
    gateway = FakeGateway()

    async def scenario():
        view = HistoryView(gateway, query=HistoryQuery(limit=20), clock=FakeClock())
        await view.set_query(status="failed", search="nightly")
        return view.query

    query = asyncio.run(scenario())

    assert query == HistoryQuery(limit=20, status="failed", search="nightly")
    assert query.to_payload() == {"limit": 20, "status": "failed", "search": "nightly"}


def test_broken_listener_does_not_stop_others():
    gateway = FakeGateway(records=[attempt(ATTEMPT_A, "pending")])
    seen = []

    def broken(rows):
        raise RuntimeError("listener bug")

    async def scenario():
        view = HistoryView(gateway, clock=FakeClock())
        view.subscribe(broken)
        view.subscribe(lambda rows: seen.append(len(rows)))
        await view.refresh()

    asyncio.run(scenario())

    assert seen == [1]
