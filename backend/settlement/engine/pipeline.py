"""
Settlement pipeline: normalizer -> resolver -> commit plan.

The builders here are pure: they take a pool and its settled history and
return the PoolCommit the writer should apply, or None when there is
nothing to do. They are re-run from a fresh read on every writer retry.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import structlog

from settlement.logic.exceptions import SnapshotRejectedError
from settlement.logic.normalizer import normalize
from settlement.logic.resolver import resolve_events
from shared.dal.models import (
    AuditEvent,
    AuditEventType,
    GameStatus,
    PoolCommit,
    PotLedger,
    Settlement,
    Severity,
)

if TYPE_CHECKING:
    from settlement.engine.writer import SettledHistory
    from settlement.logic.types import FeedSnapshot, Resolution
    from shared.dal.models import Pool, ScoreEvent

logger = structlog.get_logger()

_ZERO = Decimal(0)


def _resolution_audit(resolution: Resolution) -> AuditEvent | None:
    checkpoint = resolution.checkpoint
    payload = {
        "period": checkpoint.label,
        "home_score": checkpoint.home_score,
        "away_score": checkpoint.away_score,
        "square_index": resolution.square_index,
        "home_digit": resolution.home_digit,
        "away_digit": resolution.away_digit,
    }
    score = f"{checkpoint.home_score}-{checkpoint.away_score}"
    if resolution.winner is not None:
        return AuditEvent(
            type=AuditEventType.SETTLEMENT,
            severity=Severity.INFO,
            message=f"{checkpoint.label} settled at {score}: square {resolution.square_index} "
            f"({resolution.owner}) wins {resolution.amount}",
            payload={**payload, "owner": resolution.owner, "amount": str(resolution.amount)},
        )
    if resolution.rolled_over > _ZERO:
        return AuditEvent(
            type=AuditEventType.ROLLOVER,
            severity=Severity.INFO,
            message=f"{checkpoint.label} at {score}: square {resolution.square_index} unowned, "
            f"{resolution.rolled_over} rolls over",
            payload={**payload, "amount": str(resolution.rolled_over)},
        )
    if resolution.repeat:
        return None
    return AuditEvent(
        type=AuditEventType.SETTLEMENT,
        severity=Severity.INFO,
        message=f"{checkpoint.label} at {score}: square {resolution.square_index} unowned, "
        f"{resolution.house} stays undistributed",
        payload={**payload, "owner": None, "amount": str(resolution.house)},
    )


def _settlements(resolutions: list[Resolution]) -> tuple[Settlement, ...]:
    return tuple(
        Settlement(
            period=r.checkpoint.label,
            home_score=r.checkpoint.home_score,
            away_score=r.checkpoint.away_score,
            winner=r.winner,
        )
        for r in resolutions
    )


def _score_update_audit(events: tuple[ScoreEvent, ...], pool_after: Pool, source: str) -> AuditEvent:
    scores = pool_after.scores
    current = scores.current
    score = f"{current.home}-{current.away}" if current is not None else "0-0"
    return AuditEvent(
        type=AuditEventType.SCORE_UPDATE,
        severity=Severity.INFO,
        message=f"score {score}, period {scores.period}, {scores.game_status} ({len(events)} new events)",
        payload={
            "source": source,
            "events": [e.model_dump(mode="json", exclude={"timestamp"}) for e in events],
        },
    )


def build_snapshot_commit(
    pool: Pool,
    history: SettledHistory,
    snapshot: FeedSnapshot,
    *,
    source: str = "feed",
    extra_audit: tuple[AuditEvent, ...] = (),
) -> PoolCommit | None:
    """Plan the commit for one snapshot.

    Finished games are frozen and return None. A snapshot that would move
    the game backwards becomes an audit-only commit. Raises
    ConfigurationError when a checkpoint needs axis numbers or rules the
    pool does not have.
    """
    if pool.scores.game_status == GameStatus.POST:
        logger.info("game already final, snapshot ignored", pool_id=pool.pool_id)
        return None

    try:
        update = normalize(pool.scores, pool.score_events, snapshot, pool.rules)
    except SnapshotRejectedError as e:
        logger.warning("snapshot rejected", pool_id=pool.pool_id, reason=str(e))
        audit = AuditEvent(
            type=AuditEventType.SYNC_ERROR,
            severity=Severity.WARNING,
            message=f"snapshot rejected: {e}",
            payload={"source": source, "snapshot": snapshot.model_dump(mode="json")},
        )
        return PoolCommit(pool=pool, audit=(*extra_audit, audit))

    if not update.changed:
        if not extra_audit:
            return None
        return PoolCommit(pool=pool, audit=extra_audit)

    advanced = pool.model_copy(
        update={"scores": update.scores, "score_events": pool.score_events + update.events},
    )
    resolutions, ledger = resolve_events(advanced, update.events, pool.pot, skip_keys=set(history.keys))
    final = advanced.model_copy(update={"pot": ledger})

    audit: list[AuditEvent] = [*extra_audit, _score_update_audit(update.events, final, source)]
    audit.extend(a for a in map(_resolution_audit, resolutions) if a is not None)
    for r in resolutions:
        logger.info(
            "checkpoint resolved",
            pool_id=pool.pool_id,
            period=r.checkpoint.label,
            square=r.square_index,
            owner=r.owner,
            amount=r.amount,
        )
    return PoolCommit(pool=final, settlements=_settlements(resolutions), audit=tuple(audit))


def build_resettle_commit(pool: Pool, history: SettledHistory) -> PoolCommit:
    """Replay the stored events and settle only the checkpoints that were missed.

    The replay starts from an empty ledger so rollover and the no-repeat rule
    see the full history; amounts of newly settled checkpoints are then
    capped against what has actually been paid.
    """
    replayed, ideal = resolve_events(pool, pool.score_events, PotLedger())
    missed = [r for r in replayed if r.checkpoint.key not in history.keys]

    remaining = max(pool.distributable_pot - history.paid_total, _ZERO)
    paid = history.paid_total
    settled: list[Resolution] = []
    for r in missed:
        if r.winner is None:
            settled.append(r)
            continue
        amount = min(r.amount, remaining)
        remaining -= amount
        paid += amount
        winner = r.winner.model_copy(update={"amount": amount})
        settled.append(r.model_copy(update={"amount": amount, "winner": winner}))

    ledger = ideal.model_copy(update={"paid_total": paid})
    audit = [
        AuditEvent(
            type=AuditEventType.RESETTLE,
            severity=Severity.INFO,
            message=f"resettle replayed {len(pool.score_events)} events, settled {len(settled)} missed checkpoints",
            payload={"missed": [list(r.checkpoint.key) for r in settled]},
        ),
    ]
    audit.extend(a for a in map(_resolution_audit, settled) if a is not None)
    return PoolCommit(
        pool=pool.model_copy(update={"pot": ledger}),
        settlements=_settlements(settled),
        audit=tuple(audit),
    )
