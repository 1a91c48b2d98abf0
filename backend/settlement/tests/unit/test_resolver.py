from decimal import Decimal

import pytest

from settlement.logic.exceptions import ConfigurationError
from settlement.logic.resolver import (
    checkpoint_for_event,
    locate_square,
    resolve_checkpoint,
    resolve_events,
    resolve_final_rollover,
)
from settlement.tests.conftest import IDENTITY_AXIS, SCENARIO_AXIS, make_pool, owned_grid
from shared.dal.models import AxisNumbers, EventKind, PayoutTable, PotLedger, RuleConfig, ScoreEvent


def _end(period: int, home: int, away: int) -> ScoreEvent:
    return ScoreEvent(home=home, away=away, period=period, description=f"End of Q{period}", kind=EventKind.PERIOD_END)


def _final(period: int, home: int, away: int) -> ScoreEvent:
    return ScoreEvent(home=home, away=away, period=period, description="Final", kind=EventKind.GAME_END)


def _score(period: int, home: int, away: int, description: str = "Touchdown + Extra Point") -> ScoreEvent:
    return ScoreEvent(home=home, away=away, period=period, clock="8:12", description=description)


FULL_GAME = (
    _score(1, 7, 0),
    _score(1, 7, 3, "Field Goal"),
    _end(1, 7, 3),
    _score(2, 14, 3),
    _end(2, 14, 3),
    _score(3, 14, 10),
    _end(3, 14, 10),
    _score(4, 17, 10, "Field Goal"),
    _final(4, 17, 10),
)


class TestLocateSquare:
    def test_scenario_square(self):
        assert locate_square(7, 3, SCENARIO_AXIS) == (6, 6, 0)

    def test_only_last_digit_matters(self):
        assert locate_square(27, 13, SCENARIO_AXIS) == locate_square(7, 3, SCENARIO_AXIS)

    def test_reversal_symmetry(self):
        assert locate_square(7, 3, SCENARIO_AXIS, reverse=True) == locate_square(3, 7, SCENARIO_AXIS)

    def test_row_is_away_column_is_home(self):
        index, home_digit, away_digit = locate_square(4, 9, IDENTITY_AXIS)
        assert (index, home_digit, away_digit) == (94, 4, 9)


class TestResolveCheckpoint:
    def test_scenario_q1_winner(self):
        pool = make_pool()
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        resolution = resolve_checkpoint(pool, checkpoint, PotLedger())

        assert resolution.square_index == 6
        assert (resolution.home_digit, resolution.away_digit) == (6, 0)
        assert resolution.winner is not None
        assert resolution.winner.period == "Q1"
        assert resolution.winner.owner == "player-6"
        assert resolution.winner.amount == Decimal("250.00")
        assert resolution.ledger.paid_total == Decimal("250.00")
        assert resolution.ledger.last_digits == (6, 0)

    def test_is_pure(self):
        pool = make_pool()
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None
        ledger = PotLedger()

        assert resolve_checkpoint(pool, checkpoint, ledger) == resolve_checkpoint(pool, checkpoint, ledger)
        assert ledger == PotLedger()

    def test_reverse_winners_pays_swapped_square(self):
        pool = make_pool(rules=RuleConfig(reverse_winners=True))
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        resolution = resolve_checkpoint(pool, checkpoint, PotLedger())

        assert resolution.square_index == locate_square(3, 7, SCENARIO_AXIS)[0]
        assert resolution.winner is not None
        assert (resolution.winner.home_score, resolution.winner.away_score) == (7, 3)

    def test_unowned_without_rollover_stays_with_house(self):
        pool = make_pool(squares=owned_grid({6: None}))
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        resolution = resolve_checkpoint(pool, checkpoint, PotLedger())

        assert resolution.winner is None
        assert resolution.house == Decimal("247.50")
        assert resolution.ledger.rollover_balance == Decimal(0)
        assert resolution.ledger.paid_total == Decimal(0)

    def test_amount_capped_at_remaining_pot(self):
        pool = make_pool()
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        resolution = resolve_checkpoint(pool, checkpoint, PotLedger(paid_total=Decimal(900)))

        assert resolution.amount == Decimal(100)
        assert resolution.ledger.paid_total == Decimal(1000)

    def test_missing_axis_is_a_configuration_error(self):
        pool = make_pool(axis=None)
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        with pytest.raises(ConfigurationError):
            resolve_checkpoint(pool, checkpoint, PotLedger())

    def test_invalid_rules_are_rejected_at_resolution(self):
        pool = make_pool(rules=RuleConfig(number_sets=3))
        checkpoint = checkpoint_for_event(pool, _end(1, 7, 3))
        assert checkpoint is not None

        with pytest.raises(ConfigurationError, match="number_sets"):
            resolve_checkpoint(pool, checkpoint, PotLedger())

    def test_four_number_sets_use_period_set(self):
        home, away = IDENTITY_AXIS.home, IDENTITY_AXIS.away
        sets = tuple(AxisNumbers(home=home[n:] + home[:n], away=away[n:] + away[:n]) for n in range(4))
        pool = make_pool(rules=RuleConfig(number_sets=4), axis=sets[0], quarterly=sets)
        checkpoint = checkpoint_for_event(pool, _end(3, 7, 3))
        assert checkpoint is not None

        resolution = resolve_checkpoint(pool, checkpoint, PotLedger())

        assert (resolution.home_digit, resolution.away_digit) == (9, 5)
        assert resolution.square_index == 59


class TestResolveEvents:
    def test_default_game_has_at_most_four_winners(self):
        resolutions, ledger = resolve_events(make_pool(), FULL_GAME, PotLedger())

        assert [r.checkpoint.label for r in resolutions] == ["Q1", "HALF", "Q3", "FINAL"]
        assert sum(1 for r in resolutions if r.winner) == 4
        assert ledger.paid_total == Decimal(1000)

    def test_rollover_adds_to_next_checkpoint(self):
        # Q1 at 7-3 lands on square 6, halftime at 14-3 on square 1
        pool = make_pool(squares=owned_grid({6: None}), rules=RuleConfig(quarterly_rollover=True))

        resolutions, ledger = resolve_events(pool, FULL_GAME, PotLedger())

        q1, half = resolutions[0], resolutions[1]
        assert q1.winner is None
        assert q1.rolled_over == Decimal("247.50")
        assert half.winner is not None
        assert half.winner.square_index == 1
        assert half.winner.amount == Decimal("495.00")
        assert half.winner.is_rollover
        assert ledger.rollover_balance == Decimal(0)
        assert ledger.paid_total <= pool.total_pot

    def test_every_score_pays_each_event(self):
        pool = make_pool(rules=RuleConfig(every_score_pays=True), payouts=PayoutTable(score_event=Decimal(2)))

        resolutions, _ = resolve_events(pool, FULL_GAME, PotLedger())

        labels = [r.checkpoint.label for r in resolutions]
        assert labels == ["EVENT", "EVENT", "Q1", "EVENT", "HALF", "EVENT", "Q3", "EVENT", "FINAL"]
        event_winner = resolutions[0].winner
        assert event_winner is not None
        assert event_winner.amount == Decimal("20.00")
        assert event_winner.description == "Touchdown + Extra Point (Q1 8:12)"

    def test_every_score_no_repeat_rule(self):
        pool = make_pool(rules=RuleConfig(every_score_pays=True), payouts=PayoutTable(score_event=Decimal(2)))
        events = (_score(1, 7, 0), _score(1, 17, 0, "Score Change"), _end(1, 17, 0))

        resolutions, ledger = resolve_events(pool, events, PotLedger())

        assert [r.repeat for r in resolutions] == [False, True, False]
        assert resolutions[1].winner is None
        assert resolutions[2].winner is not None
        assert resolutions[2].winner.period == "Q1"
        assert ledger.paid_total == Decimal("270.00")

    def test_conservation_with_generous_event_payouts(self):
        pool = make_pool(rules=RuleConfig(every_score_pays=True), payouts=PayoutTable(score_event=Decimal(30)))
        events = tuple(_score(1, home, 0, "Score Change") for home in range(1, 10))

        resolutions, ledger = resolve_events(pool, events, PotLedger())

        total = sum((r.amount for r in resolutions), Decimal(0))
        assert total == pool.total_pot
        assert ledger.paid_total == pool.total_pot
        assert resolutions[-1].amount == Decimal(0)

    def test_skip_keys_are_not_resolved_again(self):
        resolutions, ledger = resolve_events(make_pool(), FULL_GAME, PotLedger(), skip_keys={("Q1", 7, 3)})

        assert [r.checkpoint.label for r in resolutions] == ["HALF", "Q3", "FINAL"]
        assert ledger.paid_total == Decimal(750)

    def test_overtime_counts_by_default(self):
        events = (_end(4, 20, 20), _score(5, 26, 20, "Touchdown"), _final(5, 26, 20))

        resolutions, _ = resolve_events(make_pool(), events, PotLedger())

        assert [r.checkpoint.label for r in resolutions] == ["FINAL"]
        assert (resolutions[0].checkpoint.home_score, resolutions[0].checkpoint.away_score) == (26, 20)
        assert resolutions[0].square_index == 22

    def test_final_uses_regulation_score_without_overtime(self):
        events = (_end(4, 20, 20), _score(5, 26, 20, "Touchdown"), _final(5, 26, 20))
        pool = make_pool(rules=RuleConfig(include_overtime=False))

        resolutions, _ = resolve_events(pool, events, PotLedger())

        assert [r.checkpoint.label for r in resolutions] == ["FINAL"]
        assert (resolutions[0].checkpoint.home_score, resolutions[0].checkpoint.away_score) == (20, 20)
        assert resolutions[0].square_index == 25

    def test_charity_comes_off_the_top(self):
        pool = make_pool(payouts=PayoutTable(charity_percentage=Decimal(10)))

        resolutions, ledger = resolve_events(pool, FULL_GAME, PotLedger())

        assert resolutions[0].winner is not None
        assert resolutions[0].winner.amount == Decimal("225.00")
        assert ledger.paid_total == Decimal(900)
        assert ledger.paid_total == pool.distributable_pot

    def test_fixed_event_amount_replaces_percentage(self):
        payouts = PayoutTable(
            q1=Decimal(20),
            half=Decimal(20),
            q3=Decimal(20),
            final=Decimal(20),
            score_event=Decimal(2),
            score_event_amount=Decimal(15),
        )
        pool = make_pool(rules=RuleConfig(every_score_pays=True), payouts=payouts)

        resolutions, _ = resolve_events(pool, FULL_GAME, PotLedger())

        events = [r for r in resolutions if r.checkpoint.label == "EVENT" and r.winner is not None]
        assert events
        assert {r.winner.amount for r in events} == {Decimal("15.00")}
        q1 = next(r for r in resolutions if r.checkpoint.label == "Q1")
        assert q1.amount == Decimal("200.00")


class TestFinalRollover:
    def test_final_rollover_goes_to_last_winner(self):
        # Q3 at 14-10 lands on square 21, the final at 17-10 on unowned square 26
        pool = make_pool(squares=owned_grid({26: None}), rules=RuleConfig(quarterly_rollover=True))

        resolutions, ledger = resolve_events(pool, FULL_GAME, PotLedger())

        assert [r.checkpoint.label for r in resolutions] == ["Q1", "HALF", "Q3", "FINAL", "BONUS"]
        final, bonus = resolutions[-2], resolutions[-1]
        assert final.rolled_over == Decimal("250.00")
        assert bonus.winner is not None
        assert bonus.winner.square_index == 21
        assert bonus.winner.owner == "player-21"
        assert bonus.winner.period == "BONUS"
        assert bonus.winner.amount == Decimal("250.00")
        assert bonus.winner.is_rollover
        assert (bonus.winner.home_digit, bonus.winner.away_digit) == (1, 2)
        assert ledger.rollover_balance == Decimal(0)
        assert ledger.paid_total == pool.total_pot

    def test_final_rollover_without_any_winner_stays_with_house(self):
        pool = make_pool(
            squares=owned_grid({6: None, 1: None, 21: None, 26: None}),
            rules=RuleConfig(quarterly_rollover=True),
        )

        resolutions, ledger = resolve_events(pool, FULL_GAME, PotLedger())

        bonus = resolutions[-1]
        assert bonus.checkpoint.label == "BONUS"
        assert bonus.winner is None
        assert bonus.house == Decimal(1000)
        assert ledger.paid_total == Decimal(0)
        assert ledger.rollover_balance == Decimal(0)

    def test_nothing_outstanding_means_no_bonus(self):
        pool = make_pool(rules=RuleConfig(quarterly_rollover=True))

        resolutions, _ = resolve_events(pool, FULL_GAME, PotLedger())

        assert resolutions[-1].checkpoint.label == "FINAL"
        assert resolve_final_rollover(pool, resolutions[-1]) is None

    def test_no_bonus_without_rollover_rule(self):
        pool = make_pool(squares=owned_grid({26: None}))

        resolutions, ledger = resolve_events(pool, FULL_GAME, PotLedger())

        assert resolutions[-1].checkpoint.label == "FINAL"
        assert resolutions[-1].house == Decimal(250)
        assert ledger.paid_total == Decimal(750)

    def test_settled_bonus_is_not_paid_twice(self):
        pool = make_pool(squares=owned_grid({26: None}), rules=RuleConfig(quarterly_rollover=True))

        resolutions, _ = resolve_events(pool, FULL_GAME, PotLedger(), skip_keys={("BONUS", 17, 10)})

        assert "BONUS" not in [r.checkpoint.label for r in resolutions]
