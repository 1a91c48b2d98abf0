"""
Axis number assignment.

Each axis is a uniformly random permutation of the digits 0-9, produced by a
Fisher-Yates shuffle driven by secrets.randbelow so draws are unpredictable
and unbiased. Every assignment is published with a SHA-256 commitment over
the canonical JSON of the digits, which lets participants verify after the
game that the numbers were not changed.
"""

import hashlib
import json
import secrets
from collections.abc import Callable

from settlement.logic.exceptions import ConfigurationError
from settlement.logic.rules import REGULATION_PERIODS
from shared.dal.models import DIGITS, AxisNumbers, Pool

_COMMIT_VERSION = "squares-digits-v1"


def shuffle_digits(randbelow: Callable[[int], int] = secrets.randbelow) -> tuple[int, ...]:
    """Fisher-Yates shuffle of 0-9. For i in 9..1: swap digits[i] with digits[randbelow(i + 1)]."""
    digits = list(DIGITS)
    for i in range(len(digits) - 1, 0, -1):
        j = randbelow(i + 1)
        digits[i], digits[j] = digits[j], digits[i]
    return tuple(digits)


def generate_axis_numbers(randbelow: Callable[[int], int] = secrets.randbelow) -> AxisNumbers:
    return AxisNumbers(home=shuffle_digits(randbelow), away=shuffle_digits(randbelow))


def generate_number_sets(
    number_sets: int,
    randbelow: Callable[[int], int] = secrets.randbelow,
) -> tuple[AxisNumbers, tuple[AxisNumbers, ...] | None]:
    """Return (axis_numbers, quarterly_numbers) for a pool.

    With four sets the first set doubles as the pool's headline axis.
    """
    if number_sets == 1:
        return generate_axis_numbers(randbelow), None
    if number_sets == REGULATION_PERIODS:
        sets = tuple(generate_axis_numbers(randbelow) for _ in range(number_sets))
        return sets[0], sets
    raise ConfigurationError(f"cannot generate {number_sets} number sets")


def commit_hash(axis_numbers: AxisNumbers, quarterly_numbers: tuple[AxisNumbers, ...] | None = None) -> str:
    """SHA-256 over the canonical JSON of the assigned digits."""
    payload: dict[str, object] = {
        "version": _COMMIT_VERSION,
        "home": list(axis_numbers.home),
        "away": list(axis_numbers.away),
    }
    if quarterly_numbers is not None:
        payload["sets"] = [{"home": list(s.home), "away": list(s.away)} for s in quarterly_numbers]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def axis_for_period(pool: Pool, period: int) -> AxisNumbers:
    """Axis numbers that apply to a checkpoint in the given period.

    With four number sets, set n covers period n; the final and every
    overtime period use the fourth set.
    """
    if pool.rules.number_sets == REGULATION_PERIODS:
        if pool.quarterly_numbers is None or len(pool.quarterly_numbers) != REGULATION_PERIODS:
            raise ConfigurationError(f"pool {pool.pool_id} uses 4 number sets but they are not assigned")
        index = min(max(period, 1), REGULATION_PERIODS) - 1
        return pool.quarterly_numbers[index]
    if pool.axis_numbers is None:
        raise ConfigurationError(f"pool {pool.pool_id} has no axis numbers")
    return pool.axis_numbers
