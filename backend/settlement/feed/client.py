"""ESPN summary feed client and payload parser.

The summary endpoint answers ``GET {base}/{league}/summary?event={game_id}``
with a large document; only ``header.competitions[0]`` matters here. The
parser is strict: a missing competitor, score, period or state makes the
whole payload untrusted rather than defaulting to zero.
"""

from __future__ import annotations

from typing import Any, Literal

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from settlement.feed.protocol import ScoreFeed
from settlement.logic.exceptions import FeedUnavailableError, MalformedPayloadError
from settlement.logic.types import FeedSnapshot
from shared.dal.models import GameStatus

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 10.0


class _LineScore(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    value: float | None = None
    display_value: str | None = Field(default=None, alias="displayValue")

    def points(self) -> int | None:
        if self.value is not None and self.value == int(self.value):
            return int(self.value)
        if self.display_value is not None and self.display_value.strip().isdigit():
            return int(self.display_value)
        return None


class _Competitor(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    home_away: Literal["home", "away"] = Field(alias="homeAway")
    score: int | None = Field(default=None, ge=0)
    linescores: list[_LineScore] | None = None


class _StatusType(BaseModel):
    model_config = ConfigDict(extra="ignore")

    state: GameStatus


class _Status(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    period: int = Field(ge=0)
    display_clock: str = Field(default="", alias="displayClock")
    type: _StatusType


class _Competition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    competitors: list[_Competitor] = Field(min_length=2)
    status: _Status


class _Header(BaseModel):
    model_config = ConfigDict(extra="ignore")

    competitions: list[_Competition] = Field(min_length=1)


class _Summary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    header: _Header


def _linescores(competitor: _Competitor) -> tuple[int, ...] | None:
    if not competitor.linescores:
        return None
    points = [line.points() for line in competitor.linescores]
    if any(p is None for p in points):
        return None
    return tuple(p for p in points if p is not None)


def _side(competitors: list[_Competitor], side: str) -> _Competitor:
    matches = [c for c in competitors if c.home_away == side]
    if len(matches) != 1:
        raise MalformedPayloadError(f"expected exactly one {side} competitor, found {len(matches)}")
    return matches[0]


def parse_summary(payload: Any) -> FeedSnapshot:  # noqa: ANN401
    """Parse an ESPN summary document into a FeedSnapshot.

    Scores may only be absent before kickoff. Line scores are kept only when
    both teams report a readable value for every period.
    """
    try:
        summary = _Summary.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayloadError(f"invalid summary payload: {e.error_count()} errors") from e

    competition = summary.header.competitions[0]
    home = _side(competition.competitors, "home")
    away = _side(competition.competitors, "away")
    status = competition.status.type.state

    if home.score is None or away.score is None:
        if status != GameStatus.PRE:
            raise MalformedPayloadError(f"missing score while game is {status}")
        logger.warning("score missing before kickoff, treating as 0-0", period=competition.status.period)
        home_score, away_score = 0, 0
    else:
        home_score, away_score = home.score, away.score

    home_lines = _linescores(home)
    away_lines = _linescores(away)
    if home_lines is None or away_lines is None:
        home_lines = away_lines = None

    return FeedSnapshot(
        home_score=home_score,
        away_score=away_score,
        period=competition.status.period,
        clock=competition.status.display_clock,
        status=status,
        home_linescores=home_lines,
        away_linescores=away_lines,
    )


class EspnFeedClient(ScoreFeed):
    """ScoreFeed backed by the public ESPN summary endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def fetch(self, league: str, game_id: str) -> FeedSnapshot:
        try:
            response = await self._client.get(f"/{league}/summary", params={"event": game_id})
        except httpx.TimeoutException as e:
            raise FeedUnavailableError(f"timed out fetching game {game_id}") from e
        except httpx.RequestError as e:
            raise FeedUnavailableError(f"transport error fetching game {game_id}: {e}") from e

        if not response.is_success:
            raise FeedUnavailableError(f"feed returned HTTP {response.status_code} for game {game_id}")

        try:
            payload = response.json()
        except ValueError as e:
            raise MalformedPayloadError(f"response for game {game_id} is not JSON") from e

        snapshot = parse_summary(payload)
        logger.debug("fetched feed snapshot", game_id=game_id, state=snapshot.state())
        return snapshot

    async def aclose(self) -> None:
        await self._client.aclose()
