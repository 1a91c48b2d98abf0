"""
Event normalizer: turn a feed snapshot into discrete score events.

The feed only reports cumulative state, so the normalizer compares each
snapshot with the stored scores and synthesizes the events that explain
the difference: labelled scoring plays, then a period_end (or game_end)
event for every period that closed. Events carry a dedup key so replaying
a snapshot never appends the same event twice.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from settlement.logic.exceptions import SnapshotRejectedError
from settlement.logic.rules import PERIOD_LABELS, REGULATION_PERIODS, can_transition, period_name
from settlement.logic.types import NormalizedUpdate
from shared.dal.models import EventKind, GameScore, GameStatus, Scores, ScoreEvent

if TYPE_CHECKING:
    from settlement.logic.types import FeedSnapshot
    from shared.dal.models import RuleConfig

logger = structlog.get_logger()

SCORE_LABELS = {
    1: "Extra Point",
    2: "Safety",
    3: "Field Goal",
    6: "Touchdown",
    7: "Touchdown + Extra Point",
    8: "Touchdown + 2Pt Conversion",
}
SCORE_CHANGE_LABEL = "Score Change"
TOUCHDOWN_POINTS = 6
HALFTIME_PERIOD = 2
_CONVERSION_LABELS = {1: "Extra Point", 2: "2Pt Conversion"}
_PERIOD_CLOSED_CLOCK = "0:00"


def describe_delta(delta_home: int, delta_away: int) -> str:
    """Label a score change. Only a one-sided change with a known value gets a specific label."""
    if delta_home and delta_away:
        return SCORE_CHANGE_LABEL
    return SCORE_LABELS.get(delta_home or delta_away, SCORE_CHANGE_LABEL)


def _period_end_description(period: int) -> str:
    if period == HALFTIME_PERIOD:
        return "Halftime"
    return f"End of {period_name(period)}"


def _game_end_description(period: int) -> str:
    return "Final" if period <= REGULATION_PERIODS else f"Final/{period_name(period)}"


def scoring_events(
    start: GameScore,
    end: GameScore,
    period: int,
    clock: str,
    *,
    combine_conversions: bool,
) -> list[ScoreEvent]:
    """Events that move the score from start to end within one period."""
    delta_home = end.home - start.home
    delta_away = end.away - start.away
    if not delta_home and not delta_away:
        return []
    one_sided = delta_home if not delta_away else (delta_away if not delta_home else 0)
    if not combine_conversions and one_sided - TOUCHDOWN_POINTS in _CONVERSION_LABELS:
        td_home = start.home + (TOUCHDOWN_POINTS if delta_home else 0)
        td_away = start.away + (TOUCHDOWN_POINTS if delta_away else 0)
        return [
            ScoreEvent(
                home=td_home,
                away=td_away,
                period=period,
                clock=clock,
                description=SCORE_LABELS[TOUCHDOWN_POINTS],
            ),
            ScoreEvent(
                home=end.home,
                away=end.away,
                period=period,
                clock=clock,
                description=_CONVERSION_LABELS[one_sided - TOUCHDOWN_POINTS],
            ),
        ]
    description = describe_delta(delta_home, delta_away)
    return [ScoreEvent(home=end.home, away=end.away, period=period, clock=clock, description=description)]


def _cumulative(linescores: tuple[int, ...] | None, period: int) -> int | None:
    if linescores is None or len(linescores) < period:
        return None
    return sum(linescores[:period])


def boundary_score(snapshot: FeedSnapshot, period: int, running: GameScore) -> GameScore:
    """Score at the end of a closed period.

    Uses cumulative line scores when the feed supplies them and they agree
    with the running and snapshot totals; otherwise the last known score.
    """
    home = _cumulative(snapshot.home_linescores, period)
    away = _cumulative(snapshot.away_linescores, period)
    if home is None or away is None:
        return running
    if not (running.home <= home <= snapshot.home_score and running.away <= away <= snapshot.away_score):
        logger.warning(
            "line scores disagree with totals, using last known score",
            period=period,
            linescore_home=home,
            linescore_away=away,
        )
        return running
    return GameScore(home=home, away=away)


def check_snapshot(scores: Scores, snapshot: FeedSnapshot) -> None:
    """Raise SnapshotRejectedError when the snapshot would move the game backwards."""
    current = scores.current or GameScore()
    if snapshot.home_score < current.home or snapshot.away_score < current.away:
        raise SnapshotRejectedError(
            f"score decreased from {current.home}-{current.away} to {snapshot.home_score}-{snapshot.away_score}",
        )
    if snapshot.period < scores.period:
        raise SnapshotRejectedError(f"period decreased from {scores.period} to {snapshot.period}")
    if not can_transition(scores.game_status, snapshot.status):
        raise SnapshotRejectedError(f"status moved backwards from {scores.game_status} to {snapshot.status}")
    if snapshot.status == GameStatus.POST and snapshot.period < 1:
        raise SnapshotRejectedError("final status reported before any period was played")


def normalize(
    scores: Scores,
    existing: tuple[ScoreEvent, ...],
    snapshot: FeedSnapshot,
    rules: RuleConfig,
) -> NormalizedUpdate:
    """Derive new events and the updated scores for one snapshot.

    Raises SnapshotRejectedError (with nothing derived) for a snapshot that
    would move the score, period or status backwards.
    """
    check_snapshot(scores, snapshot)
    running = scores.current or GameScore()
    status_advanced = snapshot.status != scores.game_status
    if snapshot.score == running and snapshot.period == scores.period and not status_advanced:
        return NormalizedUpdate(scores=scores.model_copy(update={"clock": snapshot.clock}), changed=False)

    combine = rules.combine_touchdown_conversions
    seen = {event.key for event in existing}
    events: list[ScoreEvent] = []
    updates: dict[str, GameScore | None] = {}

    first_open = max(scores.period, 1)
    closed = list(range(first_open, snapshot.period))
    if snapshot.status == GameStatus.POST and snapshot.period >= 1:
        closed.append(snapshot.period)

    for period in closed:
        is_final = snapshot.status == GameStatus.POST and period == snapshot.period
        boundary = snapshot.score if is_final else boundary_score(snapshot, period, running)
        events.extend(scoring_events(running, boundary, period, _PERIOD_CLOSED_CLOCK, combine_conversions=combine))
        running = boundary
        if is_final:
            events.append(
                ScoreEvent(
                    home=boundary.home,
                    away=boundary.away,
                    period=period,
                    clock=_PERIOD_CLOSED_CLOCK,
                    description=_game_end_description(period),
                    kind=EventKind.GAME_END,
                ),
            )
            updates["final"] = boundary
        else:
            events.append(
                ScoreEvent(
                    home=boundary.home,
                    away=boundary.away,
                    period=period,
                    clock=_PERIOD_CLOSED_CLOCK,
                    description=_period_end_description(period),
                    kind=EventKind.PERIOD_END,
                ),
            )
        label = PERIOD_LABELS.get(period)
        if label is not None and getattr(scores, label.lower()) is None:
            updates[label.lower()] = boundary
        if period == REGULATION_PERIODS and scores.regulation is None:
            updates["regulation"] = boundary

    if snapshot.status != GameStatus.POST:
        events.extend(
            scoring_events(
                running,
                snapshot.score,
                max(snapshot.period, 1),
                snapshot.clock,
                combine_conversions=combine,
            ),
        )

    fresh: list[ScoreEvent] = []
    for event in events:
        if event.key in seen:
            logger.debug("dropping duplicate score event", key=event.key)
            continue
        seen.add(event.key)
        fresh.append(event)

    new_scores = scores.model_copy(
        update={
            **updates,
            "current": snapshot.score,
            "period": snapshot.period,
            "game_status": snapshot.status,
            "clock": snapshot.clock,
        },
    )
    return NormalizedUpdate(events=tuple(fresh), scores=new_scores, changed=True)
