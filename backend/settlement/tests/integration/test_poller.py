"""Tests for ScorePoller: backoff, degraded/recovered health, snapshot hand-off and task lifecycle."""

from __future__ import annotations

import asyncio

import pytest

from settlement.engine.poller import ScorePoller, backoff_delay, stored_state
from settlement.logic.exceptions import FeedUnavailableError, MalformedPayloadError
from settlement.tests.conftest import make_pool, snap
from settlement.tests.mocks import RecordingSleep, ScriptedFeed
from shared.dal.models import AuditEventType, GameStatus, HealthState, PoolHealth, Severity

LIVE = 15.0
IDLE = 60.0


def _poller(repository, service, feed, sleep=None, **kwargs) -> ScorePoller:
    return ScorePoller(
        repository,
        feed,
        service,
        live_interval=LIVE,
        idle_interval=IDLE,
        scan_interval=30.0,
        max_attempts=5,
        backoff_base=1.0,
        backoff_max=30.0,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


class TestBackoffDelay:
    @pytest.mark.parametrize(("attempt", "expected"), [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (6, 30.0)])
    def test_doubles_up_to_cap(self, attempt, expected):
        assert backoff_delay(attempt, 1.0, 30.0) == expected


class TestStoredState:
    def test_fresh_pool(self):
        assert stored_state(make_pool()) == (0, 0, 0, GameStatus.PRE)


class TestFeedFailures:
    async def test_exhausted_retries_mark_pool_degraded_once(self, repository, service):
        await repository.create_pool(make_pool())
        feed = ScriptedFeed(FeedUnavailableError("timed out fetching game 401547417"))
        sleep = RecordingSleep()
        poller = _poller(repository, service, feed, sleep)

        interval = await poller.poll_once("pool-1")

        assert interval == IDLE
        assert len(feed.calls) == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        events = await repository.get_audit_events("pool-1")
        assert [(e.type, e.severity) for e in events] == [(AuditEventType.FEED_FETCH_FAIL, Severity.ERROR)]
        assert events[0].message.startswith("feed degraded after 5 failed attempts")
        assert (await repository.get_health("pool-1")).state == HealthState.DEGRADED
        assert await repository.get_winners("pool-1") == []
        assert (await repository.get_pool("pool-1")).version == 0

    async def test_still_failing_adds_no_audit(self, repository, service):
        await repository.create_pool(make_pool())
        poller = _poller(repository, service, ScriptedFeed(FeedUnavailableError("down")))

        await poller.poll_once("pool-1")
        await poller.poll_once("pool-1")

        assert len(await repository.get_audit_events("pool-1")) == 1

    async def test_recovery_is_audited(self, repository, service):
        await repository.create_pool(make_pool())
        feed = ScriptedFeed(*[FeedUnavailableError("down")] * 5, snap(0, 0, 1))
        poller = _poller(repository, service, feed)

        await poller.poll_once("pool-1")
        interval = await poller.poll_once("pool-1")

        assert interval == LIVE
        types = [e.type for e in await repository.get_audit_events("pool-1")]
        assert types == [AuditEventType.FEED_FETCH_FAIL, AuditEventType.FEED_FETCH_SUCCESS, AuditEventType.SCORE_UPDATE]
        assert (await repository.get_health("pool-1")).state == HealthState.OK

    async def test_transient_failure_recovers_within_cycle(self, repository, service):
        await repository.create_pool(make_pool())
        sleep = RecordingSleep()
        feed = ScriptedFeed(FeedUnavailableError("blip"), FeedUnavailableError("blip"), snap(0, 0, 1))
        poller = _poller(repository, service, feed, sleep)

        await poller.poll_once("pool-1")

        assert sleep.delays == [1.0, 2.0]
        assert (await repository.get_health("pool-1")).state == HealthState.OK
        assert [e.type for e in await repository.get_audit_events("pool-1")] == [AuditEventType.SCORE_UPDATE]

    async def test_malformed_payload_is_dropped_and_audited(self, repository, service):
        await repository.create_pool(make_pool())
        sleep = RecordingSleep()
        poller = _poller(repository, service, ScriptedFeed(MalformedPayloadError("missing score")), sleep)

        interval = await poller.poll_once("pool-1")

        assert interval == IDLE
        assert sleep.delays == []
        events = await repository.get_audit_events("pool-1")
        assert [e.type for e in events] == [AuditEventType.FEED_FETCH_FAIL]
        assert "malformed payload" in events[0].message
        assert (await repository.get_pool("pool-1")).version == 0


class TestSnapshotHandling:
    async def test_unchanged_snapshot_is_not_processed(self, repository, service):
        await repository.create_pool(make_pool())
        poller = _poller(repository, service, ScriptedFeed(snap(0, 0, 0, GameStatus.PRE)))

        interval = await poller.poll_once("pool-1")

        assert interval == IDLE
        assert await repository.get_audit_events("pool-1") == []

    async def test_settles_checkpoint_from_feed(self, repository, service):
        await repository.create_pool(make_pool())
        poller = _poller(repository, service, ScriptedFeed(snap(7, 3, 1), snap(7, 3, 2)))

        await poller.poll_once("pool-1")
        await poller.poll_once("pool-1")

        winners = await repository.get_winners("pool-1")
        assert [(w.period, w.square_index) for w in winners] == [("Q1", 6)]

    async def test_final_snapshot_stops_polling(self, repository, service):
        await repository.create_pool(make_pool())
        poller = _poller(repository, service, ScriptedFeed(snap(17, 10, 4, GameStatus.POST)))

        assert await poller.poll_once("pool-1") is None
        assert await poller.poll_once("pool-1") is None
        assert (await repository.get_pool("pool-1")).scores.game_status == GameStatus.POST

    async def test_configuration_error_suspends_and_stops(self, repository, service):
        await repository.create_pool(make_pool(axis=None))
        await service.process_snapshot("pool-1", snap(7, 3, 1))
        feed = ScriptedFeed(snap(7, 3, 2))
        poller = _poller(repository, service, feed)

        assert await poller.poll_once("pool-1") == LIVE
        assert await poller.poll_once("pool-1") is None
        assert len(feed.calls) == 1
        assert (await repository.get_health("pool-1")).state == HealthState.SUSPENDED

    @pytest.mark.parametrize(
        "pool",
        [
            make_pool(is_locked=False),
            make_pool(game_id=None),
        ],
    )
    async def test_inactive_pools_are_not_polled(self, repository, service, pool):
        await repository.create_pool(pool)
        feed = ScriptedFeed(snap(0, 0, 1))

        assert await _poller(repository, service, feed).poll_once("pool-1") is None
        assert feed.calls == []

    async def test_missing_or_suspended_pools_are_not_polled(self, repository, service):
        await repository.create_pool(make_pool())
        await repository.set_health("pool-1", PoolHealth(state=HealthState.SUSPENDED, message="manual"))
        feed = ScriptedFeed(snap(0, 0, 1))
        poller = _poller(repository, service, feed)

        assert await poller.poll_once("pool-1") is None
        assert await poller.poll_once("missing") is None
        assert feed.calls == []


class TestLifecycle:
    async def test_poll_loop_runs_until_final(self, repository, service):
        await repository.create_pool(make_pool())
        sleep = RecordingSleep()
        feed = ScriptedFeed(snap(0, 0, 1), snap(7, 3, 1), snap(17, 10, 4, GameStatus.POST))
        poller = _poller(repository, service, feed, sleep)

        await poller._poll_loop("pool-1")

        assert len(feed.calls) == 3
        assert sleep.delays == [LIVE, LIVE]
        assert len(await repository.get_winners("pool-1")) == 4

    async def test_scan_starts_one_task_per_active_pool(self, repository, service):
        await repository.create_pool(make_pool("pool-1"))
        await repository.create_pool(make_pool("pool-2"))
        await repository.create_pool(make_pool("draft", is_locked=False))
        poller = _poller(repository, service, ScriptedFeed(snap(0, 0, 0, GameStatus.PRE)))

        started = await poller.scan()

        assert started == ["pool-1", "pool-2"]
        assert poller.polling_pool_ids == ["pool-1", "pool-2"]
        assert await poller.scan() == []
        await poller.stop()
        assert poller.polling_pool_ids == []

    async def test_finished_tasks_are_pruned(self, repository, service):
        await repository.create_pool(make_pool())
        poller = _poller(repository, service, ScriptedFeed(snap(17, 10, 4, GameStatus.POST)))

        await poller.scan()
        for _ in range(100):
            if not poller.polling_pool_ids:
                break
            await asyncio.sleep(0)

        assert poller.polling_pool_ids == []
        assert await poller.scan() == []
        await poller.stop()

    async def test_start_and_stop(self, repository, service):
        poller = _poller(repository, service, ScriptedFeed(snap(0, 0, 0, GameStatus.PRE)), sleep=asyncio.sleep)

        poller.start()
        await asyncio.sleep(0)

        assert poller.running is True
        await poller.stop()
        assert poller.running is False
