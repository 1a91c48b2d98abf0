"""
SettlementService: the entry point for everything that changes a pool.

Feed snapshots from the poller and administrative actions (simulate,
resettle, reset, lock, resume) all pass through here, so each pool's
changes are serialized by one asyncio.Lock per pool on top of the writer's
version check.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict

from settlement.engine.pipeline import build_resettle_commit, build_snapshot_commit
from settlement.logic.exceptions import ConfigurationError, PoolNotFoundError
from shared.dal.models import (
    AuditEvent,
    AuditEventType,
    HealthState,
    Pool,
    PoolHealth,
    Severity,
    Winner,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from settlement.engine.writer import SettledHistory, SettlementWriter
    from settlement.logic.types import FeedSnapshot
    from shared.dal.models import PoolCommit
    from shared.dal.pool_repository import PoolRepository

logger = structlog.get_logger()


class SettlementResult(BaseModel):
    """Summary of one pipeline run, returned to callers and the HTTP layer."""

    model_config = ConfigDict(frozen=True)

    pool_id: str
    committed: bool
    new_events: int = 0
    winners: tuple[Winner, ...] = ()
    version: int | None = None

    @classmethod
    def from_plan(cls, pool_id: str, plan: PoolCommit | None, previous_events: int = 0) -> SettlementResult:
        if plan is None:
            return cls(pool_id=pool_id, committed=False)
        return cls(
            pool_id=pool_id,
            committed=True,
            new_events=max(len(plan.pool.score_events) - previous_events, 0),
            winners=tuple(s.winner for s in plan.settlements if s.winner is not None),
            version=plan.pool.version,
        )


class SettlementService:
    def __init__(self, repository: PoolRepository, writer: SettlementWriter) -> None:
        self._repository = repository
        self._writer = writer
        self._pool_locks: dict[str, asyncio.Lock] = {}  # pool_id -> Lock
        self._pool_users: dict[str, int] = {}  # pool_id -> callers holding or awaiting the lock

    def _get_pool_lock(self, pool_id: str) -> asyncio.Lock:
        lock = self._pool_locks.get(pool_id)
        if lock is None:
            lock = asyncio.Lock()
            self._pool_locks[pool_id] = lock
        return lock

    @asynccontextmanager
    async def _serialized(self, pool_id: str) -> AsyncIterator[None]:
        lock = self._get_pool_lock(pool_id)
        self._pool_users[pool_id] = self._pool_users.get(pool_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._pool_users[pool_id] - 1
            if users:
                self._pool_users[pool_id] = users
            else:
                del self._pool_users[pool_id]

    async def _require_pool(self, pool_id: str) -> Pool:
        pool = await self._repository.get_pool(pool_id)
        if pool is None:
            raise PoolNotFoundError(pool_id)
        return pool

    async def _halt_on_configuration_error(self, pool_id: str, error: ConfigurationError) -> None:
        """Audit a configuration problem and suspend automated settlement until an admin resumes."""
        logger.error("pool configuration prevents settlement", pool_id=pool_id, error=str(error))
        await self._repository.append_audit(
            pool_id,
            AuditEvent(
                type=AuditEventType.SYNC_ERROR,
                severity=Severity.ERROR,
                message=f"configuration error: {error}; automated settlement halted",
            ),
        )
        await self._repository.set_health(
            pool_id,
            PoolHealth(state=HealthState.SUSPENDED, message=f"configuration error: {error}"),
        )

    async def _run_snapshot(
        self,
        pool_id: str,
        snapshot: FeedSnapshot,
        *,
        source: str,
        extra_audit: tuple[AuditEvent, ...] = (),
    ) -> SettlementResult:
        pool = await self._require_pool(pool_id)
        previous_events = len(pool.score_events)

        def build(current: Pool, history: SettledHistory) -> PoolCommit | None:
            return build_snapshot_commit(current, history, snapshot, source=source, extra_audit=extra_audit)

        try:
            plan = await self._writer.apply(pool_id, build)
        except ConfigurationError as e:
            await self._halt_on_configuration_error(pool_id, e)
            raise
        return SettlementResult.from_plan(pool_id, plan, previous_events)

    async def process_snapshot(self, pool_id: str, snapshot: FeedSnapshot) -> SettlementResult:
        """Run one feed snapshot through normalizer, resolver and writer."""
        async with self._serialized(pool_id):
            return await self._run_snapshot(pool_id, snapshot, source="feed")

    async def simulate(self, pool_id: str, snapshot: FeedSnapshot) -> SettlementResult:
        """Inject a synthetic next-state snapshot through the normal pipeline.

        Pools without axis numbers get them generated first.
        """
        async with self._serialized(pool_id):
            pool = await self._require_pool(pool_id)
            if pool.axis_numbers is None:
                try:
                    await self._writer.assign_axis_numbers(pool_id)
                except ConfigurationError as e:
                    await self._halt_on_configuration_error(pool_id, e)
                    raise
            audit = AuditEvent(
                type=AuditEventType.SIMULATION,
                severity=Severity.INFO,
                message=f"simulated snapshot {snapshot.home_score}-{snapshot.away_score}, "
                f"period {snapshot.period}, {snapshot.status}",
                payload=snapshot.model_dump(mode="json"),
            )
            logger.info("simulating snapshot", pool_id=pool_id, state=snapshot.state())
            return await self._run_snapshot(pool_id, snapshot, source="simulation", extra_audit=(audit,))

    async def resettle(self, pool_id: str) -> SettlementResult:
        """Replay stored events and settle checkpoints that were missed."""
        async with self._serialized(pool_id):
            pool = await self._require_pool(pool_id)
            try:
                plan = await self._writer.apply(pool_id, build_resettle_commit)
            except ConfigurationError as e:
                await self._halt_on_configuration_error(pool_id, e)
                raise
            logger.info("pool resettled", pool_id=pool_id)
            return SettlementResult.from_plan(pool_id, plan, len(pool.score_events))

    async def reset(self, pool_id: str) -> Pool:
        async with self._serialized(pool_id):
            return await self._writer.reset(pool_id)

    async def lock_pool(self, pool_id: str) -> Pool:
        """Assign axis numbers (when missing) and lock the pool so the poller picks it up."""
        async with self._serialized(pool_id):
            return await self._writer.assign_axis_numbers(pool_id, lock=True)

    async def resume(self, pool_id: str) -> PoolHealth:
        """Clear a suspended or degraded state after a manual correction."""
        async with self._serialized(pool_id):
            await self._require_pool(pool_id)
            health = PoolHealth()
            await self._repository.set_health(pool_id, health)
            logger.info("pool resumed", pool_id=pool_id)
            return health

    async def get_pool(self, pool_id: str) -> tuple[Pool, PoolHealth]:
        pool = await self._require_pool(pool_id)
        health = await self._repository.get_health(pool_id) or PoolHealth()
        return pool, health

    async def get_winners(self, pool_id: str) -> list[Winner]:
        await self._require_pool(pool_id)
        return await self._repository.get_winners(pool_id)

    async def get_audit_events(self, pool_id: str, limit: int = 100) -> list[AuditEvent]:
        await self._require_pool(pool_id)
        return await self._repository.get_audit_events(pool_id, limit)

    def forget(self, pool_id: str) -> None:
        """Drop the lock of a pool the poller no longer tracks.

        The lock is kept while any caller holds it or waits on it, so a later
        caller cannot get a fresh lock and run alongside them.
        """
        lock = self._pool_locks.get(pool_id)
        if lock is not None and not lock.locked() and pool_id not in self._pool_users:
            del self._pool_locks[pool_id]
