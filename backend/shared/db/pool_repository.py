"""SQLite-backed pool repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from shared.dal.models import AuditEvent, HealthState, Pool, PoolCommit, PoolHealth, Winner
from shared.dal.pool_repository import PoolRepository

if TYPE_CHECKING:
    from shared.db.connection import Database

logger = structlog.get_logger()


class SqlitePoolRepository(PoolRepository):
    """SQLite implementation of PoolRepository.

    Stores the pool aggregate as JSON next to a version column and the few
    indexed columns the poller queries on. Each commit runs in one
    transaction guarded by ``UPDATE ... WHERE version = ?``.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    async def create_pool(self, pool: Pool) -> None:
        """Insert a pool record. Logs a warning and returns on duplicate pool_id."""
        async with self._lock:
            try:
                self._db.connection.execute(
                    "INSERT INTO pools (id, version, game_id, game_status, is_locked, data) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        pool.pool_id,
                        pool.version,
                        pool.game_id,
                        pool.scores.game_status.value,
                        int(pool.is_locked),
                        _dump_pool(pool),
                    ),
                )
                self._db.connection.commit()
            except sqlite3.IntegrityError:
                self._db.connection.rollback()
                logger.warning("pool already exists, ignoring duplicate create", pool_id=pool.pool_id)

    async def get_pool(self, pool_id: str) -> Pool | None:
        row = self._db.connection.execute(
            "SELECT version, data FROM pools WHERE id = ?",
            (pool_id,),
        ).fetchone()
        if row is None:
            return None
        return _load_pool(row[0], row[1])

    async def delete_pool(self, pool_id: str) -> None:
        async with self._lock:
            self._db.connection.execute("DELETE FROM pools WHERE id = ?", (pool_id,))
            self._db.connection.commit()

    async def list_active_pools(self) -> list[Pool]:
        rows = self._db.connection.execute(
            "SELECT version, data FROM pools "
            "WHERE game_id IS NOT NULL AND is_locked = 1 AND game_status != 'post' AND health_state != ? "
            "ORDER BY id",
            (HealthState.SUSPENDED.value,),
        ).fetchall()
        return [_load_pool(row[0], row[1]) for row in rows]

    async def commit(self, plan: PoolCommit) -> bool:
        """Write the pool, its settlements, winners and audit events in one transaction.

        A version mismatch or an already-recorded settlement key rolls the
        whole transaction back and returns False. Other SQLite errors roll
        back and propagate.
        """
        pool = plan.pool
        async with self._lock:
            conn = self._db.connection
            try:
                conn.execute("BEGIN IMMEDIATE")
                if plan.clear_history:
                    conn.execute("DELETE FROM settlements WHERE pool_id = ?", (pool.pool_id,))
                cursor = conn.execute(
                    "UPDATE pools SET version = version + 1, game_id = ?, game_status = ?, is_locked = ?, data = ? "
                    "WHERE id = ? AND version = ?",
                    (
                        pool.game_id,
                        pool.scores.game_status.value,
                        int(pool.is_locked),
                        _dump_pool(pool),
                        pool.pool_id,
                        pool.version,
                    ),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    logger.info("pool version moved on, commit rejected", pool_id=pool.pool_id, version=pool.version)
                    return False
                now = datetime.now(UTC).isoformat()
                for settlement in plan.settlements:
                    conn.execute(
                        "INSERT INTO settlements (pool_id, period, home_score, away_score, settled_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (pool.pool_id, settlement.period, settlement.home_score, settlement.away_score, now),
                    )
                    if settlement.winner is not None:
                        conn.execute(
                            "INSERT INTO winners (pool_id, period, home_score, away_score, data) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (
                                pool.pool_id,
                                settlement.period,
                                settlement.home_score,
                                settlement.away_score,
                                settlement.winner.model_dump_json(),
                            ),
                        )
                for event in plan.audit:
                    _insert_audit(conn, pool.pool_id, event)
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                logger.info("settlement key already recorded, commit rejected", pool_id=pool.pool_id)
                return False
            except sqlite3.Error:
                conn.rollback()
                raise
        return True

    async def get_settled_keys(self, pool_id: str) -> set[tuple[str, int, int]]:
        rows = self._db.connection.execute(
            "SELECT period, home_score, away_score FROM settlements WHERE pool_id = ?",
            (pool_id,),
        ).fetchall()
        return {(row[0], row[1], row[2]) for row in rows}

    async def get_winners(self, pool_id: str) -> list[Winner]:
        """Winners in the order they were settled."""
        rows = self._db.connection.execute(
            "SELECT data FROM winners WHERE pool_id = ? ORDER BY id",
            (pool_id,),
        ).fetchall()
        return [Winner.model_validate(json.loads(row[0])) for row in rows]

    async def get_audit_events(self, pool_id: str, limit: int = 100) -> list[AuditEvent]:
        """The most recent audit events, oldest first."""
        rows = self._db.connection.execute(
            "SELECT data FROM audit_events WHERE pool_id = ? ORDER BY id DESC LIMIT ?",
            (pool_id, limit),
        ).fetchall()
        return [AuditEvent.model_validate(json.loads(row[0])) for row in reversed(rows)]

    async def append_audit(self, pool_id: str, event: AuditEvent) -> None:
        """Insert a standalone audit event. Events for unknown pools are dropped with a warning."""
        async with self._lock:
            try:
                _insert_audit(self._db.connection, pool_id, event)
                self._db.connection.commit()
            except sqlite3.IntegrityError:
                self._db.connection.rollback()
                logger.warning("audit event for unknown pool dropped", pool_id=pool_id, type=event.type.value)

    async def get_health(self, pool_id: str) -> PoolHealth | None:
        row = self._db.connection.execute(
            "SELECT health_state, health_message FROM pools WHERE id = ?",
            (pool_id,),
        ).fetchone()
        if row is None:
            return None
        return PoolHealth(state=HealthState(row[0]), message=row[1])

    async def set_health(self, pool_id: str, health: PoolHealth) -> None:
        async with self._lock:
            cursor = self._db.connection.execute(
                "UPDATE pools SET health_state = ?, health_message = ? WHERE id = ?",
                (health.state.value, health.message, pool_id),
            )
            self._db.connection.commit()
            if cursor.rowcount == 0:
                logger.warning("set_health had no effect (pool not found)", pool_id=pool_id)


def _dump_pool(pool: Pool) -> str:
    return pool.model_dump_json(exclude={"version"})


def _load_pool(version: int, data: str) -> Pool:
    return Pool.model_validate({**json.loads(data), "version": version})


def _insert_audit(conn: sqlite3.Connection, pool_id: str, event: AuditEvent) -> None:
    conn.execute(
        "INSERT INTO audit_events (pool_id, type, severity, created_at, data) VALUES (?, ?, ?, ?, ?)",
        (pool_id, event.type.value, event.severity.value, event.timestamp.isoformat(), event.model_dump_json()),
    )
