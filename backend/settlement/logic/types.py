"""Value types passed between the normalizer, resolver and writer."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.dal.models import GameScore, GameStatus, PotLedger, Scores, ScoreEvent, Winner


class FeedSnapshot(BaseModel):
    """One observation of the game as reported by the feed (or an admin simulation).

    Line scores are per-period points, not cumulative; either both sides are
    present or neither is.
    """

    model_config = ConfigDict(frozen=True)

    home_score: int = Field(ge=0)
    away_score: int = Field(ge=0)
    period: int = Field(default=0, ge=0)
    clock: str = ""
    status: GameStatus
    home_linescores: tuple[int, ...] | None = None
    away_linescores: tuple[int, ...] | None = None

    @model_validator(mode="after")
    def validate_linescores(self) -> FeedSnapshot:
        if (self.home_linescores is None) != (self.away_linescores is None):
            raise ValueError("line scores must be given for both teams or neither")
        return self

    @property
    def score(self) -> GameScore:
        return GameScore(home=self.home_score, away=self.away_score)

    def state(self) -> tuple[int, int, int, GameStatus]:
        """The tuple the poller compares against stored scores to detect change."""
        return (self.home_score, self.away_score, self.period, self.status)


class NormalizedUpdate(BaseModel):
    """Result of normalizing one snapshot against the stored scores."""

    model_config = ConfigDict(frozen=True)

    events: tuple[ScoreEvent, ...] = ()
    scores: Scores
    changed: bool = False


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    period: int
    home_score: int
    away_score: int
    percentage: Decimal
    fixed_amount: Decimal | None = None  # replaces the percentage share when set
    description: str
    is_event: bool = False  # every-score checkpoint, subject to the no-repeat rule

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.label, self.home_score, self.away_score)


class Resolution(BaseModel):
    """Outcome of one checkpoint evaluation: at most one winner, plus ledger movement."""

    model_config = ConfigDict(frozen=True)

    checkpoint: Checkpoint
    square_index: int
    home_digit: int
    away_digit: int
    owner: str | None
    amount: Decimal = Decimal(0)
    rollover_in: Decimal = Decimal(0)
    rolled_over: Decimal = Decimal(0)  # carried to the next checkpoint
    house: Decimal = Decimal(0)  # left undistributed
    repeat: bool = False  # skipped by the no-repeat rule
    winner: Winner | None = None
    ledger: PotLedger
