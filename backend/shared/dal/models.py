"""Persistence models for the data access layer.

The pool aggregate and its append-only collections (winners, audit events)
are frozen pydantic models. Updates always go through model_copy() and are
written back by the repository under an optimistic version check.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_DOWN, Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

GRID_SIZE = 100
DIGITS = tuple(range(10))
CENTS = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    """Quantize a money amount to cents, always rounding down."""
    return value.quantize(CENTS, rounding=ROUND_DOWN)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GameStatus(StrEnum):
    PRE = "pre"
    IN = "in"
    POST = "post"


class EventKind(StrEnum):
    """What produced a score event: a score change or a closing period."""

    SCORE = "score"
    PERIOD_END = "period_end"
    GAME_END = "game_end"


class Severity(StrEnum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditEventType(StrEnum):
    FEED_FETCH_SUCCESS = "FEED_FETCH_SUCCESS"
    FEED_FETCH_FAIL = "FEED_FETCH_FAIL"
    SCORE_UPDATE = "SCORE_UPDATE"
    SETTLEMENT = "SETTLEMENT"
    ROLLOVER = "ROLLOVER"
    SYNC_ERROR = "SYNC_ERROR"
    SIMULATION = "SIMULATION"
    RESETTLE = "RESETTLE"
    POOL_RESET = "POOL_RESET"
    POOL_LOCKED = "POOL_LOCKED"
    DIGITS_GENERATED = "DIGITS_GENERATED"


class HealthState(StrEnum):
    OK = "ok"
    DEGRADED = "degraded"
    SUSPENDED = "suspended"


class Square(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, lt=GRID_SIZE)
    owner: str | None = None
    is_paid: bool = False


class AxisNumbers(BaseModel):
    """Two digit permutations: position i holds the grid coordinate for score digit i."""

    model_config = ConfigDict(frozen=True)

    home: tuple[int, ...]
    away: tuple[int, ...]

    @field_validator("home", "away")
    @classmethod
    def validate_permutation(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if tuple(sorted(v)) != DIGITS:
            raise ValueError(f"axis must be a permutation of digits 0-9, got {list(v)}")
        return v


class RuleConfig(BaseModel):
    """Per-pool rule variations, set by the pool owner before lock."""

    model_config = ConfigDict(frozen=True)

    every_score_pays: bool = False
    quarterly_rollover: bool = False
    reverse_winners: bool = False
    number_sets: int = 1
    combine_touchdown_conversions: bool = True
    include_overtime: bool = True


class PayoutTable(BaseModel):
    """Payout percentages of the distributable pot, per checkpoint.

    The charity share comes off the top of the pot before any percentage is
    applied. A fixed score_event_amount, when set, replaces the score_event
    percentage for every-score checkpoints.
    """

    model_config = ConfigDict(frozen=True)

    q1: Decimal = Decimal(25)
    half: Decimal = Decimal(25)
    q3: Decimal = Decimal(25)
    final: Decimal = Decimal(25)
    score_event: Decimal = Decimal(0)
    score_event_amount: Decimal | None = None  # dollars per every-score checkpoint
    charity_percentage: Decimal = Decimal(0)


class GameScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    home: int = Field(default=0, ge=0)
    away: int = Field(default=0, ge=0)


class Scores(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: GameScore | None = None
    q1: GameScore | None = None
    half: GameScore | None = None
    q3: GameScore | None = None
    regulation: GameScore | None = None  # end of period 4, before overtime
    final: GameScore | None = None
    game_status: GameStatus = GameStatus.PRE
    period: int = 0  # 0 = not started
    clock: str = ""


class ScoreEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    home: int = Field(ge=0)
    away: int = Field(ge=0)
    period: int = Field(ge=0)
    clock: str = ""
    description: str
    kind: EventKind = EventKind.SCORE
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, int, int, int]:
        """Dedup key: an event with an existing key is never appended twice."""
        return (self.kind.value, self.period, self.home, self.away)


class PotLedger(BaseModel):
    """Running totals the resolver needs to keep payouts conserved."""

    model_config = ConfigDict(frozen=True)

    paid_total: Decimal = Decimal(0)
    rollover_balance: Decimal = Decimal(0)
    last_digits: tuple[int, int] | None = None  # (home_digit, away_digit) of last resolved checkpoint
    last_winner_square: int | None = None  # square of the last owned winner, for the final rollover bonus


class Winner(BaseModel):
    model_config = ConfigDict(frozen=True)

    period: str
    square_index: int = Field(ge=0, lt=GRID_SIZE)
    home_digit: int = Field(ge=0, le=9)
    away_digit: int = Field(ge=0, le=9)
    owner: str
    amount: Decimal
    description: str
    home_score: int
    away_score: int
    is_rollover: bool = False  # amount includes a carried-over share


class AuditEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: AuditEventType
    severity: Severity
    message: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class PoolHealth(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: HealthState = HealthState.OK
    message: str = ""


def empty_grid() -> tuple[Square, ...]:
    return tuple(Square(index=i) for i in range(GRID_SIZE))


class Pool(BaseModel):
    """The versioned pool aggregate. `version` is owned by the repository."""

    model_config = ConfigDict(frozen=True)

    pool_id: str = Field(min_length=1)
    name: str = ""
    game_id: str | None = None
    league: str = "nfl"
    squares: tuple[Square, ...] = Field(default_factory=empty_grid)
    axis_numbers: AxisNumbers | None = None
    quarterly_numbers: tuple[AxisNumbers, ...] | None = None
    rules: RuleConfig = Field(default_factory=RuleConfig)
    cost_per_square: Decimal = Field(default=Decimal(0), ge=0)
    payouts: PayoutTable = Field(default_factory=PayoutTable)
    scores: Scores = Field(default_factory=Scores)
    score_events: tuple[ScoreEvent, ...] = ()
    is_locked: bool = False
    pot: PotLedger = Field(default_factory=PotLedger)
    version: int = 0

    @field_validator("squares")
    @classmethod
    def validate_grid(cls, v: tuple[Square, ...]) -> tuple[Square, ...]:
        if len(v) != GRID_SIZE:
            raise ValueError(f"grid must have exactly {GRID_SIZE} squares, got {len(v)}")
        if any(square.index != i for i, square in enumerate(v)):
            raise ValueError("square indexes must match their grid position")
        return v

    @property
    def filled_squares(self) -> int:
        return sum(1 for s in self.squares if s.owner)

    @property
    def total_pot(self) -> Decimal:
        return to_cents(self.cost_per_square * self.filled_squares)

    @property
    def charity_deduction(self) -> Decimal:
        return to_cents(self.total_pot * self.payouts.charity_percentage / 100)

    @property
    def distributable_pot(self) -> Decimal:
        """What the checkpoints share: the pot less the charity deduction."""
        return self.total_pot - self.charity_deduction

    @property
    def has_paid_squares(self) -> bool:
        return any(s.is_paid for s in self.squares)


class Settlement(BaseModel):
    """One settled checkpoint. (pool_id, period, home_score, away_score) is unique."""

    model_config = ConfigDict(frozen=True)

    period: str
    home_score: int
    away_score: int
    winner: Winner | None = None

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.period, self.home_score, self.away_score)


class PoolCommit(BaseModel):
    """Everything written in one transaction against a single pool version.

    `pool.version` is the version the commit was built from; the repository
    rejects the commit when the stored version has moved on.
    """

    model_config = ConfigDict(frozen=True)

    pool: Pool
    settlements: tuple[Settlement, ...] = ()
    audit: tuple[AuditEvent, ...] = ()
    clear_history: bool = False  # administrative reset: drop winners and settlements first
