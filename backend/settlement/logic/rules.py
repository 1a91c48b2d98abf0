"""Rule engine: rule validation, checkpoint policy and the game status state machine.

RuleConfig and PayoutTable are persisted with the pool, so the models live
in shared.dal.models; this module decides what they mean.
"""

from decimal import Decimal

from settlement.logic.exceptions import ConfigurationError
from shared.dal.models import EventKind, GameStatus, PayoutTable, RuleConfig, ScoreEvent

__all__ = [
    "BONUS_LABEL",
    "EVENT_LABEL",
    "FINAL_LABEL",
    "PERIOD_LABELS",
    "REGULATION_PERIODS",
    "SUPPORTED_NUMBER_SETS",
    "PayoutTable",
    "RuleConfig",
    "can_transition",
    "checkpoint_label",
    "payout_percentage",
    "period_name",
    "validate_rules",
]

REGULATION_PERIODS = 4
SUPPORTED_NUMBER_SETS = frozenset({1, 4})

PERIOD_LABELS = {1: "Q1", 2: "HALF", 3: "Q3"}
FINAL_LABEL = "FINAL"
EVENT_LABEL = "EVENT"
BONUS_LABEL = "BONUS"  # final rollover paid to the last winner

_STATUS_ORDER = {GameStatus.PRE: 0, GameStatus.IN: 1, GameStatus.POST: 2}


def validate_rules(rules: RuleConfig, payouts: PayoutTable) -> None:
    """Raise ConfigurationError when the rules or payout table cannot be settled."""
    if rules.number_sets not in SUPPORTED_NUMBER_SETS:
        raise ConfigurationError(f"number_sets must be one of {sorted(SUPPORTED_NUMBER_SETS)}, got {rules.number_sets}")
    for name in ("q1", "half", "q3", "final", "score_event", "charity_percentage"):
        pct = getattr(payouts, name)
        if not Decimal(0) <= pct <= Decimal(100):
            raise ConfigurationError(f"payout percentage {name}={pct} outside 0-100")
    period_total = payouts.q1 + payouts.half + payouts.q3 + payouts.final
    if period_total > Decimal(100):
        raise ConfigurationError(f"period payout percentages sum to {period_total}, more than 100")
    if payouts.score_event_amount is not None and payouts.score_event_amount < 0:
        raise ConfigurationError(f"score_event_amount must not be negative, got {payouts.score_event_amount}")


def checkpoint_label(event: ScoreEvent, rules: RuleConfig) -> str | None:
    """Name the checkpoint an accepted event triggers, or None when it pays nothing.

    Period ends of Q1, Q2 and Q3 and the game end are checkpoints under every
    rule set. Overtime period ends never are. With every_score_pays each
    scoring event is also a checkpoint, and so is a closing period that is
    not a regulation checkpoint.
    """
    if event.kind == EventKind.GAME_END:
        return FINAL_LABEL
    if event.kind == EventKind.PERIOD_END and event.period in PERIOD_LABELS:
        return PERIOD_LABELS[event.period]
    if rules.every_score_pays:
        return EVENT_LABEL
    return None


def payout_percentage(payouts: PayoutTable, label: str) -> Decimal:
    if label == EVENT_LABEL:
        return payouts.score_event
    if label == FINAL_LABEL:
        return payouts.final
    return {"Q1": payouts.q1, "HALF": payouts.half, "Q3": payouts.q3}[label]


def can_transition(current: GameStatus, new: GameStatus) -> bool:
    """Status only moves forward: pre -> in -> post. Staying put is allowed."""
    return _STATUS_ORDER[new] >= _STATUS_ORDER[current]


def period_name(period: int) -> str:
    """Q1..Q4, then OT, OT2, ..."""
    if period <= REGULATION_PERIODS:
        return f"Q{period}"
    overtime = period - REGULATION_PERIODS
    return "OT" if overtime == 1 else f"OT{overtime}"
