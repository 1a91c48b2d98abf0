"""
Score feed poller.

One asyncio task per active pool fetches the game from the feed, retries
transient failures with capped exponential backoff, and hands changed
snapshots to SettlementService. A supervisor task rescans the repository
for pools that became active. A pool's task ends when its game is final,
the pool is deleted, or it is suspended.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from settlement.logic.exceptions import FeedUnavailableError, MalformedPayloadError, SettlementError
from shared.dal.models import AuditEvent, AuditEventType, GameScore, GameStatus, HealthState, PoolHealth, Severity

if TYPE_CHECKING:
    from settlement.engine.service import SettlementService
    from settlement.feed.protocol import ScoreFeed
    from settlement.logic.types import FeedSnapshot
    from shared.dal.models import Pool
    from shared.dal.pool_repository import PoolRepository

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_LIVE_INTERVAL = 15.0
DEFAULT_IDLE_INTERVAL = 60.0
DEFAULT_SCAN_INTERVAL = 30.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2**attempt, capped."""
    return min(base * (2**attempt), cap)


def stored_state(pool: Pool) -> tuple[int, int, int, GameStatus]:
    current = pool.scores.current or GameScore()
    return (current.home, current.away, pool.scores.period, pool.scores.game_status)


class ScorePoller:
    def __init__(  # noqa: PLR0913
        self,
        repository: PoolRepository,
        feed: ScoreFeed,
        service: SettlementService,
        *,
        live_interval: float = DEFAULT_LIVE_INTERVAL,
        idle_interval: float = DEFAULT_IDLE_INTERVAL,
        scan_interval: float = DEFAULT_SCAN_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._feed = feed
        self._service = service
        self._live_interval = live_interval
        self._idle_interval = idle_interval
        self._scan_interval = scan_interval
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[None]] = {}  # pool_id -> polling task
        self._supervisor: asyncio.Task[None] | None = None

    @property
    def polling_pool_ids(self) -> list[str]:
        return sorted(pool_id for pool_id, task in self._tasks.items() if not task.done())

    @property
    def running(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    def start(self) -> None:
        if self.running:
            return
        self._supervisor = asyncio.create_task(self._supervise())
        logger.info("score poller started")

    async def stop(self) -> None:
        """Cancel the supervisor and every pool task, waiting for them to finish."""
        tasks = list(self._tasks.values())
        if self._supervisor is not None:
            tasks.append(self._supervisor)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._supervisor = None
        logger.info("score poller stopped")

    async def scan(self) -> list[str]:
        """Start tasks for active pools that are not being polled. Returns the newly started ids."""
        started = []
        for pool in await self._repository.list_active_pools():
            existing = self._tasks.get(pool.pool_id)
            if existing is not None and not existing.done():
                continue
            self._tasks[pool.pool_id] = asyncio.create_task(self._poll_loop(pool.pool_id))
            started.append(pool.pool_id)
        for pool_id in [pid for pid, task in self._tasks.items() if task.done()]:
            if pool_id not in started:
                del self._tasks[pool_id]
                self._service.forget(pool_id)
        if started:
            logger.info("polling new pools", pool_ids=started)
        return started

    async def _supervise(self) -> None:
        while True:
            try:
                await self.scan()
            except Exception:
                logger.exception("pool scan failed")
            await self._sleep(self._scan_interval)

    async def _poll_loop(self, pool_id: str) -> None:
        structlog.contextvars.bind_contextvars(pool_id=pool_id)
        while True:
            try:
                interval = await self.poll_once(pool_id)
            except Exception:
                # keep polling; the next cycle starts from a fresh read
                logger.exception("poll cycle crashed")
                interval = self._idle_interval
            if interval is None:
                logger.info("stopped polling pool")
                return
            await self._sleep(interval)

    async def poll_once(self, pool_id: str) -> float | None:
        """Run one polling cycle for a pool.

        Returns the delay before the next cycle, or None when the pool should
        no longer be polled.
        """
        pool = await self._repository.get_pool(pool_id)
        if pool is None or pool.game_id is None or not pool.is_locked:
            return None
        health = await self._repository.get_health(pool_id) or PoolHealth()
        if health.state == HealthState.SUSPENDED or pool.scores.game_status == GameStatus.POST:
            return None

        try:
            snapshot = await self._fetch_with_backoff(pool.league, pool.game_id)
        except FeedUnavailableError as e:
            await self._mark_degraded(pool_id, health, e)
            return self._interval(pool)
        except MalformedPayloadError as e:
            logger.error("malformed feed payload dropped", game_id=pool.game_id, error=str(e))
            await self._repository.append_audit(
                pool_id,
                AuditEvent(
                    type=AuditEventType.FEED_FETCH_FAIL,
                    severity=Severity.ERROR,
                    message=f"feed fetch failed: malformed payload ({e})",
                    payload={"game_id": pool.game_id},
                ),
            )
            return self._interval(pool)

        if health.state == HealthState.DEGRADED:
            await self._mark_recovered(pool_id)

        if snapshot.state() == stored_state(pool):
            return self._interval(pool)

        try:
            result = await self._service.process_snapshot(pool_id, snapshot)
        except SettlementError as e:
            # The service has already audited and suspended the pool where needed.
            logger.warning("snapshot processing failed", error=str(e))
            return self._interval(pool)

        if result.winners:
            logger.info("winners settled", count=len(result.winners))
        if snapshot.status == GameStatus.POST:
            return None
        return self._live_interval if snapshot.status == GameStatus.IN else self._idle_interval

    def _interval(self, pool: Pool) -> float:
        return self._live_interval if pool.scores.game_status == GameStatus.IN else self._idle_interval

    async def _fetch_with_backoff(self, league: str, game_id: str) -> FeedSnapshot:
        """Fetch with up to max_attempts tries. Re-raises the last FeedUnavailableError."""
        for attempt in range(self._max_attempts):
            try:
                return await self._feed.fetch(league, game_id)
            except FeedUnavailableError as e:
                if attempt == self._max_attempts - 1:
                    raise
                delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
                logger.warning("feed fetch failed, backing off", attempt=attempt + 1, delay=delay, error=str(e))
                await self._sleep(delay)
        raise FeedUnavailableError("no fetch attempts configured")  # pragma: no cover

    async def _mark_degraded(self, pool_id: str, health: PoolHealth, error: FeedUnavailableError) -> None:
        if health.state == HealthState.DEGRADED:
            logger.warning("feed still unavailable", error=str(error))
            return
        message = f"feed degraded after {self._max_attempts} failed attempts: {error}"
        logger.error("feed degraded", error=str(error))
        await self._repository.append_audit(
            pool_id,
            AuditEvent(type=AuditEventType.FEED_FETCH_FAIL, severity=Severity.ERROR, message=message),
        )
        await self._repository.set_health(pool_id, PoolHealth(state=HealthState.DEGRADED, message=message))

    async def _mark_recovered(self, pool_id: str) -> None:
        logger.info("feed recovered")
        await self._repository.append_audit(
            pool_id,
            AuditEvent(type=AuditEventType.FEED_FETCH_SUCCESS, severity=Severity.INFO, message="feed recovered"),
        )
        await self._repository.set_health(pool_id, PoolHealth())
