"""
Winner resolver.

Pure functions only: given the pool configuration, a checkpoint and the pot
ledger, decide which square wins and how much it is paid. Nothing here
reads the clock, the database or the feed, so resolving the same inputs
always gives the same answer.

Grid layout: the away axis picks the row and the home axis the column, so
the winning square is ``away_digit * 10 + home_digit``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from settlement.logic.axis import axis_for_period
from settlement.logic.rules import (
    BONUS_LABEL,
    EVENT_LABEL,
    FINAL_LABEL,
    REGULATION_PERIODS,
    checkpoint_label,
    payout_percentage,
    period_name,
    validate_rules,
)
from settlement.logic.types import Checkpoint, Resolution
from shared.dal.models import EventKind, GameScore, PotLedger, Winner, to_cents

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shared.dal.models import AxisNumbers, Pool, ScoreEvent, Square

_ZERO = Decimal(0)


def locate_square(
    home_score: int,
    away_score: int,
    axis: AxisNumbers,
    *,
    reverse: bool = False,
) -> tuple[int, int, int]:
    """Return (square_index, home_digit, away_digit) for a score.

    With reverse winners the score digits swap sides before the axis lookup,
    so locate_square(7, 3, reverse=True) == locate_square(3, 7).
    """
    if reverse:
        home_score, away_score = away_score, home_score
    home_digit = axis.home[home_score % 10]
    away_digit = axis.away[away_score % 10]
    return away_digit * 10 + home_digit, home_digit, away_digit


def checkpoint_for_event(
    pool: Pool,
    event: ScoreEvent,
    regulation: GameScore | None = None,
) -> Checkpoint | None:
    """Build the checkpoint an accepted event triggers, if any.

    When overtime does not count, the final checkpoint settles on the
    regulation score instead of the event's score.
    """
    label = checkpoint_label(event, pool.rules)
    if label is None:
        return None
    home, away = event.home, event.away
    if label == FINAL_LABEL and not pool.rules.include_overtime and regulation is not None:
        home, away = regulation.home, regulation.away
    if label == EVENT_LABEL:
        where = period_name(max(event.period, 1)) + (f" {event.clock}" if event.clock else "")
        description = f"{event.description} ({where})"
    else:
        description = f"{label} winner"
    return Checkpoint(
        label=label,
        period=event.period,
        home_score=home,
        away_score=away,
        percentage=payout_percentage(pool.payouts, label),
        fixed_amount=pool.payouts.score_event_amount if label == EVENT_LABEL else None,
        description=description,
        is_event=label == EVENT_LABEL,
    )


def _owner(squares: tuple[Square, ...], index: int) -> str | None:
    return squares[index].owner or None


def resolve_checkpoint(pool: Pool, checkpoint: Checkpoint, ledger: PotLedger) -> Resolution:
    """Evaluate one checkpoint against the ledger and return the outcome with the new ledger.

    Amount is the checkpoint's share of the distributable pot (or its fixed
    amount) plus any rollover carried in, capped at what is left of that pot.
    An every-score checkpoint that lands on the same digit pair as the
    previous checkpoint pays nothing.
    """
    validate_rules(pool.rules, pool.payouts)
    axis = axis_for_period(pool, checkpoint.period)
    index, home_digit, away_digit = locate_square(
        checkpoint.home_score,
        checkpoint.away_score,
        axis,
        reverse=pool.rules.reverse_winners,
    )
    owner = _owner(pool.squares, index)
    digits = (home_digit, away_digit)
    base = {
        "checkpoint": checkpoint,
        "square_index": index,
        "home_digit": home_digit,
        "away_digit": away_digit,
        "owner": owner,
    }

    if checkpoint.is_event and ledger.last_digits == digits:
        return Resolution(**base, repeat=True, ledger=ledger)

    total = pool.distributable_pot
    remaining = max(total - ledger.paid_total, _ZERO)
    rollover_in = ledger.rollover_balance
    if checkpoint.fixed_amount is not None:
        share = to_cents(checkpoint.fixed_amount)
    else:
        share = to_cents(total * checkpoint.percentage / 100)
    amount = min(share + rollover_in, remaining)

    if owner is None:
        if pool.rules.quarterly_rollover:
            new_ledger = ledger.model_copy(update={"rollover_balance": amount, "last_digits": digits})
            return Resolution(**base, rollover_in=rollover_in, rolled_over=amount, ledger=new_ledger)
        new_ledger = ledger.model_copy(update={"rollover_balance": _ZERO, "last_digits": digits})
        return Resolution(**base, rollover_in=rollover_in, house=amount, ledger=new_ledger)

    winner = Winner(
        period=checkpoint.label,
        square_index=index,
        home_digit=home_digit,
        away_digit=away_digit,
        owner=owner,
        amount=amount,
        description=checkpoint.description,
        home_score=checkpoint.home_score,
        away_score=checkpoint.away_score,
        is_rollover=rollover_in > _ZERO,
    )
    new_ledger = PotLedger(
        paid_total=ledger.paid_total + amount,
        rollover_balance=_ZERO,
        last_digits=digits,
        last_winner_square=index,
    )
    return Resolution(**base, amount=amount, rollover_in=rollover_in, winner=winner, ledger=new_ledger)


def resolve_final_rollover(pool: Pool, final: Resolution) -> Resolution | None:
    """Pay a rollover still outstanding after the final checkpoint to the last winner.

    Returns None when there is nothing to pay. Without an owned previous
    winner the balance stays with the house.
    """
    ledger = final.ledger
    if not pool.rules.quarterly_rollover or ledger.rollover_balance <= _ZERO:
        return None
    checkpoint = Checkpoint(
        label=BONUS_LABEL,
        period=final.checkpoint.period,
        home_score=final.checkpoint.home_score,
        away_score=final.checkpoint.away_score,
        percentage=_ZERO,
        description="Rollover bonus (last winner)",
    )
    rollover_in = ledger.rollover_balance
    amount = min(rollover_in, max(pool.distributable_pot - ledger.paid_total, _ZERO))
    index = ledger.last_winner_square
    owner = _owner(pool.squares, index) if index is not None else None

    if owner is None:
        new_ledger = ledger.model_copy(update={"rollover_balance": _ZERO})
        return Resolution(
            checkpoint=checkpoint,
            square_index=final.square_index,
            home_digit=final.home_digit,
            away_digit=final.away_digit,
            owner=None,
            rollover_in=rollover_in,
            house=amount,
            ledger=new_ledger,
        )

    home_digit, away_digit = index % 10, index // 10
    winner = Winner(
        period=BONUS_LABEL,
        square_index=index,
        home_digit=home_digit,
        away_digit=away_digit,
        owner=owner,
        amount=amount,
        description=checkpoint.description,
        home_score=checkpoint.home_score,
        away_score=checkpoint.away_score,
        is_rollover=True,
    )
    new_ledger = ledger.model_copy(update={"paid_total": ledger.paid_total + amount, "rollover_balance": _ZERO})
    return Resolution(
        checkpoint=checkpoint,
        square_index=index,
        home_digit=home_digit,
        away_digit=away_digit,
        owner=owner,
        amount=amount,
        rollover_in=rollover_in,
        winner=winner,
        ledger=new_ledger,
    )


def resolve_events(
    pool: Pool,
    events: Iterable[ScoreEvent],
    ledger: PotLedger,
    skip_keys: set[tuple[str, int, int]] | None = None,
) -> tuple[list[Resolution], PotLedger]:
    """Resolve a run of accepted events in order, threading the ledger through.

    Checkpoints whose key is in skip_keys (already settled) are passed over
    without touching the ledger; so are repeats of a key within the run.
    """
    skip = set(skip_keys or ())
    regulation = pool.scores.regulation
    resolutions: list[Resolution] = []
    for event in events:
        if event.kind != EventKind.SCORE and event.period == REGULATION_PERIODS:
            regulation = GameScore(home=event.home, away=event.away)
        checkpoint = checkpoint_for_event(pool, event, regulation)
        if checkpoint is None or checkpoint.key in skip:
            continue
        skip.add(checkpoint.key)
        resolution = resolve_checkpoint(pool, checkpoint, ledger)
        ledger = resolution.ledger
        resolutions.append(resolution)
        if checkpoint.label != FINAL_LABEL:
            continue
        bonus = resolve_final_rollover(pool, resolution)
        if bonus is not None and bonus.checkpoint.key not in skip:
            skip.add(bonus.checkpoint.key)
            ledger = bonus.ledger
            resolutions.append(bonus)
    return resolutions, ledger
