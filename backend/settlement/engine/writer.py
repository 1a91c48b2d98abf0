"""
Settlement writer: the only code path that mutates a pool.

Every write is a PoolCommit built from a fresh read of the pool, its
settled keys and what it has paid so far. The repository applies the
commit in one transaction guarded by the pool version; when the version
moved or a settlement key already exists the writer rereads and rebuilds,
up to ``max_attempts`` times. A pool that keeps conflicting, or whose
writes fail in SQLite, is audited and suspended.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ConfigDict

from settlement.logic.axis import commit_hash, generate_number_sets
from settlement.logic.exceptions import (
    AxisNumbersLockedError,
    PersistenceFailureError,
    PoolNotFoundError,
    SettlementConflictError,
)
from shared.dal.models import (
    AuditEvent,
    AuditEventType,
    HealthState,
    Pool,
    PoolCommit,
    PoolHealth,
    PotLedger,
    Scores,
    Severity,
)

if TYPE_CHECKING:
    from shared.dal.pool_repository import PoolRepository

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3


class SettledHistory(BaseModel):
    """What a pool has already settled, read alongside the pool for every attempt."""

    model_config = ConfigDict(frozen=True)

    keys: frozenset[tuple[str, int, int]] = frozenset()
    paid_total: Decimal = Decimal(0)
    winner_count: int = 0


PlanBuilder = Callable[[Pool, SettledHistory], PoolCommit | None]


class SettlementWriter:
    def __init__(self, repository: PoolRepository, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._repository = repository
        self._max_attempts = max_attempts

    async def read(self, pool_id: str) -> tuple[Pool, SettledHistory]:
        pool = await self._repository.get_pool(pool_id)
        if pool is None:
            raise PoolNotFoundError(pool_id)
        keys = await self._repository.get_settled_keys(pool_id)
        winners = await self._repository.get_winners(pool_id)
        history = SettledHistory(
            keys=frozenset(keys),
            paid_total=sum((w.amount for w in winners), Decimal(0)),
            winner_count=len(winners),
        )
        return pool, history

    async def apply(self, pool_id: str, build: PlanBuilder) -> PoolCommit | None:
        """Build and commit a plan with optimistic retry.

        ``build`` is called with a fresh read on every attempt and may return
        None when there is nothing to write. Returns the committed plan, whose
        pool carries the new version.
        """
        for attempt in range(1, self._max_attempts + 1):
            pool, history = await self.read(pool_id)
            plan = build(pool, history)
            if plan is None:
                return None
            try:
                committed = await self._repository.commit(plan)
            except sqlite3.Error as e:
                await self._suspend(pool_id, f"settlement write failed: {e}")
                raise PersistenceFailureError(f"pool {pool_id}: {e}") from e
            if committed:
                new_pool = plan.pool.model_copy(update={"version": plan.pool.version + 1})
                return plan.model_copy(update={"pool": new_pool})
            logger.info("settlement commit conflicted, retrying", pool_id=pool_id, attempt=attempt)

        await self._suspend(pool_id, f"settlement conflict persisted after {self._max_attempts} attempts")
        raise SettlementConflictError(pool_id, self._max_attempts)

    async def _suspend(self, pool_id: str, message: str) -> None:
        logger.error("suspending pool", pool_id=pool_id, reason=message)
        try:
            await self._repository.append_audit(
                pool_id,
                AuditEvent(
                    type=AuditEventType.SYNC_ERROR,
                    severity=Severity.ERROR,
                    message=f"{message}; pool suspended",
                ),
            )
            await self._repository.set_health(pool_id, PoolHealth(state=HealthState.SUSPENDED, message=message))
        except sqlite3.Error:
            logger.exception("could not record pool suspension", pool_id=pool_id)

    async def assign_axis_numbers(self, pool_id: str, *, lock: bool = False, regenerate: bool = False) -> Pool:
        """Assign axis numbers (one or four sets) if the pool has none, optionally locking it.

        Existing numbers are kept unless ``regenerate`` is set, and are never
        replaced once a square is paid or anything has been settled.
        """

        def build(pool: Pool, history: SettledHistory) -> PoolCommit | None:
            has_numbers = pool.axis_numbers is not None
            if has_numbers and regenerate and (pool.has_paid_squares or history.keys or history.winner_count):
                raise AxisNumbersLockedError(f"pool {pool_id} has paid squares or settlements; axis numbers are final")
            audit: list[AuditEvent] = []
            update: dict[str, object] = {}
            if not has_numbers or regenerate:
                axis_numbers, quarterly_numbers = generate_number_sets(pool.rules.number_sets)
                update["axis_numbers"] = axis_numbers
                update["quarterly_numbers"] = quarterly_numbers
                audit.append(
                    AuditEvent(
                        type=AuditEventType.DIGITS_GENERATED,
                        severity=Severity.INFO,
                        message=f"axis numbers generated ({pool.rules.number_sets} set(s))",
                        payload={
                            "commit_hash": commit_hash(axis_numbers, quarterly_numbers),
                            "home": list(axis_numbers.home),
                            "away": list(axis_numbers.away),
                            "sets": [s.model_dump(mode="json") for s in quarterly_numbers or ()],
                        },
                    ),
                )
            if lock and not pool.is_locked:
                update["is_locked"] = True
                audit.append(AuditEvent(type=AuditEventType.POOL_LOCKED, severity=Severity.INFO, message="pool locked"))
            if not update:
                return None
            return PoolCommit(pool=pool.model_copy(update=update), audit=tuple(audit))

        plan = await self.apply(pool_id, build)
        if plan is None:
            pool, _ = await self.read(pool_id)
            return pool
        logger.info("axis numbers assigned", pool_id=pool_id, locked=plan.pool.is_locked)
        return plan.pool

    async def reset(self, pool_id: str) -> Pool:
        """Clear numbers, events, ledger, settlements and winners and unlock the pool."""

        def build(pool: Pool, history: SettledHistory) -> PoolCommit:
            cleared = pool.model_copy(
                update={
                    "axis_numbers": None,
                    "quarterly_numbers": None,
                    "score_events": (),
                    "scores": Scores(),
                    "pot": PotLedger(),
                    "is_locked": False,
                },
            )
            audit = AuditEvent(
                type=AuditEventType.POOL_RESET,
                severity=Severity.WARNING,
                message="pool reset by administrator",
                payload={"cleared_winners": history.winner_count, "cleared_settlements": len(history.keys)},
            )
            return PoolCommit(pool=cleared, audit=(audit,), clear_history=True)

        plan = await self.apply(pool_id, build)
        await self._repository.set_health(pool_id, PoolHealth())
        logger.warning("pool reset", pool_id=pool_id)
        if plan is None:  # pragma: no cover
            return (await self.read(pool_id))[0]
        return plan.pool
