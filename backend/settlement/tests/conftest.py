from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from settlement.engine.service import SettlementService
from settlement.engine.writer import SettlementWriter
from settlement.logic.types import FeedSnapshot
from shared.dal.models import AxisNumbers, GameStatus, PayoutTable, Pool, RuleConfig, Square
from shared.db.connection import Database
from shared.db.pool_repository import SqlitePoolRepository

if TYPE_CHECKING:
    from pathlib import Path

# home [5,0,3,8,1,9,2,6,4,7] / away [2,9,4,0,6,1,8,3,5,7]: 7-3 lands on square 6
SCENARIO_AXIS = AxisNumbers(home=(5, 0, 3, 8, 1, 9, 2, 6, 4, 7), away=(2, 9, 4, 0, 6, 1, 8, 3, 5, 7))
IDENTITY_AXIS = AxisNumbers(home=tuple(range(10)), away=tuple(range(10)))


def owned_grid(owners: dict[int, str] | None = None, *, fill: bool = True, paid: bool = False) -> tuple[Square, ...]:
    """Grid where every square is owned by ``player-{index}`` unless overridden by ``owners``.

    With ``fill=False`` only the squares in ``owners`` are owned.
    """
    owners = owners or {}
    squares = []
    for i in range(100):
        owner = owners.get(i, f"player-{i}" if fill else None)
        squares.append(Square(index=i, owner=owner, is_paid=paid and owner is not None))
    return tuple(squares)


def make_pool(  # noqa: PLR0913
    pool_id: str = "pool-1",
    *,
    squares: tuple[Square, ...] | None = None,
    rules: RuleConfig | None = None,
    payouts: PayoutTable | None = None,
    axis: AxisNumbers | None = SCENARIO_AXIS,
    quarterly: tuple[AxisNumbers, ...] | None = None,
    cost: Decimal = Decimal(10),
    game_id: str | None = "401547417",
    is_locked: bool = True,
) -> Pool:
    """A locked pool with 100 owned $10 squares (a $1000 pot) and the scenario axis."""
    return Pool(
        pool_id=pool_id,
        name="Test Pool",
        game_id=game_id,
        squares=squares if squares is not None else owned_grid(),
        rules=rules or RuleConfig(),
        payouts=payouts or PayoutTable(),
        axis_numbers=axis,
        quarterly_numbers=quarterly,
        cost_per_square=cost,
        is_locked=is_locked,
    )


def snap(  # noqa: PLR0913
    home: int,
    away: int,
    period: int,
    status: GameStatus | str = GameStatus.IN,
    clock: str = "",
    *,
    home_lines: tuple[int, ...] | None = None,
    away_lines: tuple[int, ...] | None = None,
) -> FeedSnapshot:
    return FeedSnapshot(
        home_score=home,
        away_score=away,
        period=period,
        clock=clock,
        status=GameStatus(status),
        home_linescores=home_lines,
        away_linescores=away_lines,
    )


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "settlement.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def repository(db: Database) -> SqlitePoolRepository:
    return SqlitePoolRepository(db)


@pytest.fixture
def writer(repository: SqlitePoolRepository) -> SettlementWriter:
    return SettlementWriter(repository, max_attempts=3)


@pytest.fixture
def service(repository: SqlitePoolRepository, writer: SettlementWriter) -> SettlementService:
    return SettlementService(repository, writer)
