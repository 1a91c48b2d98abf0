from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from settlement.logic.types import FeedSnapshot
from shared.dal.models import GameStatus


class SimulateRequest(BaseModel):
    """Body of POST /pools/{pool_id}/simulate: the next state of the game."""

    model_config = ConfigDict(extra="forbid")

    home_score: int = Field(ge=0, le=999, strict=True)
    away_score: int = Field(ge=0, le=999, strict=True)
    period: int = Field(ge=0, le=20, strict=True)
    status: GameStatus
    clock: str = Field(default="", max_length=16)

    @model_validator(mode="after")
    def _final_needs_a_period(self) -> SimulateRequest:
        if self.status == GameStatus.POST and self.period < 1:
            raise ValueError("a final snapshot needs period 1 or later")
        return self

    def to_snapshot(self) -> FeedSnapshot:
        return FeedSnapshot(
            home_score=self.home_score,
            away_score=self.away_score,
            period=self.period,
            clock=self.clock,
            status=self.status,
        )
