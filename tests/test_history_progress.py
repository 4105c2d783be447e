from __future__ import annotations

import asyncio

import pytest

from backup.errors import TransientGatewayError
from backup.reconcile import Verdict, VerdictKind
from core.settings import DEFAULT_SETTINGS
from orchestrator.announce import attempt_keys
from orchestrator.progress import HistoryProgressEntry, HistoryProgressTracker

from fakes import ATTEMPT_A, ATTEMPT_B, FakeGateway, attempt, build_harness, levels, status


def test_entry_ignores_small_and_backward_moves():
    entry = HistoryProgressEntry(ATTEMPT_A, display_progress=10.0)
    assert entry.advance(10.5) is False
    assert entry.advance(12.0) is True
    assert entry.advance(11.0) is False
    assert entry.display_progress == 12.0

    entry.display_progress = 99.5
    assert entry.advance(100.0) is True
    assert entry.display_progress == 100.0
    assert entry.advance(100.0) is False


def test_key_on_running_row_settles_without_status_call():
    gateway = FakeGateway(records=[attempt(ATTEMPT_A, "in_progress", key="k1", handle="run-1")])

    async def scenario():
        h = build_harness(gateway)
        await h.history.refresh()
        await h.tracker.tick()
        return h

    h = asyncio.run(scenario())

    assert gateway.count("query_status") == 0
    assert h.tracker.progress_of(ATTEMPT_A) == 100.0
    assert h.tracker.entries[ATTEMPT_A].settled
    successes = levels(h.feed, "success")
    assert len(successes) == 1
    assert successes[0].url == "https://signed.example/k1"


def test_settled_rows_share_one_throttled_refetch():
    gateway = FakeGateway(
        records=[
            attempt(ATTEMPT_A, "in_progress", key="k1", handle="run-1"),
            attempt(ATTEMPT_B, "in_progress", key="k2", handle="run-2"),
        ]
    )

    async def scenario():
        h = build_harness(gateway)
        await h.history.refresh()
        await h.tracker.tick()
        after_first = gateway.count("list_history")
        h.clock.advance(2.0)
        await h.tracker.tick()
        return h, after_first

    h, after_first = asyncio.run(scenario())

    assert after_first == 1
    assert gateway.count("list_history") == 2
    assert len(levels(h.feed, "success")) == 2


def test_live_progress_and_time_estimate():
    gateway = FakeGateway(
        statuses={
            "run-1": [
                TransientGatewayError("timeout", function="get-backup-status"),
                status("in_progress", 30),
                status("in_progress", 70),
            ]
        },
        records=[attempt(ATTEMPT_A, "in_progress", handle="run-1")],
    )

    async def scenario():
        h = build_harness(gateway)
        await h.history.refresh()
        h.clock.advance(7.5 * 60)
        seen = []
        for _ in range(3):
            await h.tracker.tick()
            seen.append(h.tracker.progress_of(ATTEMPT_A))
        return h, seen

    h, seen = asyncio.run(scenario())

    assert seen == [pytest.approx(52.5), pytest.approx(52.5), 70.0]
    assert h.feed.recent() == []


def test_rows_owned_by_another_watcher_are_not_announced():
    gateway = FakeGateway(
        statuses={"run-1": [status("failed", error="boom")]},
        records=[attempt(ATTEMPT_A, "in_progress", handle="run-1")],
    )

    async def scenario():
        h = build_harness(gateway)
        h.ledger.acquire(attempt_keys("run-1", ATTEMPT_A), "engine")
        await h.history.refresh()
        await h.tracker.tick()
        return h

    h = asyncio.run(scenario())

    assert h.tracker.entries[ATTEMPT_A].settled
    assert h.feed.recent() == []
    assert gateway.count("sign_artifact_url") == 0


def test_attempt_announced_elsewhere_is_not_repeated():
    gateway = FakeGateway(records=[attempt(ATTEMPT_A, "in_progress", key="k1", handle="run-1")])

    async def scenario():
        h = build_harness(gateway)
        h.announcer.announce(
            Verdict(VerdictKind.SUCCESS, artifact_key="k1"),
            attempt_keys("run-1"),
            url="https://signed.example/k1",
        )
        await h.history.refresh()
        await h.tracker.tick()
        return h

    h = asyncio.run(scenario())

    assert len(levels(h.feed, "success")) == 1
    assert h.tracker.entries[ATTEMPT_A].settled


def test_loop_stops_when_idle_and_restarts_on_new_rows():
    gateway = FakeGateway(
        statuses={"run-2": [status("in_progress", 20)]},
        records=[attempt(ATTEMPT_A, "in_progress", key="k1", handle="run-1")],
    )

    async def scenario():
        h = build_harness(gateway)
        await h.history.refresh()
        h.tracker.start()
        started = h.tracker.running
        while h.tracker.running:
            await asyncio.sleep(0)
        idle_after_settle = not h.tracker.running

        gateway.records = gateway.records + [attempt(ATTEMPT_B, "in_progress", handle="run-2")]
        await h.history.refresh()
        restarted = h.tracker.running
        await h.tracker.stop()
        return h, started, idle_after_settle, restarted

    h, started, idle_after_settle, restarted = asyncio.run(scenario())

    assert started
    assert idle_after_settle
    assert restarted
    assert not h.tracker.running
    assert len(levels(h.feed, "success")) == 1


def test_rows_leaving_the_active_set_are_forgotten():
    gateway = FakeGateway(
        statuses={"run-1": [status("in_progress", 40)]},
        records=[attempt(ATTEMPT_A, "in_progress", handle="run-1")],
    )

    async def scenario():
        h = build_harness(gateway)
        await h.history.refresh()
        await h.tracker.tick()
        before = set(h.tracker.entries)
        h.tracker.start()
        gateway.records = [attempt(ATTEMPT_A, "cancelled", handle="run-1")]
        await h.history.refresh()
        after = set(h.tracker.entries)
        await h.tracker.stop()
        return before, after

    before, after = asyncio.run(scenario())

    assert before == {ATTEMPT_A}
    assert after == set()


def test_tracker_from_settings():
    async def scenario():
        h = build_harness(FakeGateway())
        tracker = HistoryProgressTracker.from_settings(
            h.gateway, h.history, h.announcer, DEFAULT_SETTINGS, clock=h.clock
        )
        return tracker.running

    assert asyncio.run(scenario()) is False
