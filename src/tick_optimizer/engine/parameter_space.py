"""
Parameter space model — enumerate, count and validate parameter ranges.

Enumeration is a lazy Cartesian product: ranges vary in the order given
(the last range fastest) and each range's values ascend from min to max.
"""

import itertools
import math
from typing import Iterable, Iterator, Sequence

from tick_optimizer.engine.models import (
    MAX_COMBINATIONS_DEFAULT,
    Constraint,
    ParameterCombination,
    ParameterRange,
)
from tick_optimizer.exceptions import CombinationLimitError, RangeValidationError

__all__ = [
    "MAX_COMBINATIONS_DEFAULT",
    "enumerate_combinations",
    "count_combinations",
    "count_feasible",
    "validate_ranges",
    "ensure_valid",
    "check_combination_limit",
    "merge_params",
    "satisfies",
]


def merge_params(
    base: ParameterCombination | None,
    tuned: ParameterCombination,
) -> ParameterCombination:
    """Tuned values over base values; untuned parameters keep their base value."""
    merged = dict(base or {})
    merged.update(tuned)
    return merged


def satisfies(combo: ParameterCombination, constraints: Iterable[Constraint]) -> bool:
    return all(check(combo) for check in constraints)


def enumerate_combinations(
    ranges: Sequence[ParameterRange],
    base: ParameterCombination | None = None,
    constraints: Sequence[Constraint] = (),
) -> Iterator[ParameterCombination]:
    """Yield every combination, merged over ``base``.

    Restartable: each call builds a fresh generator from its arguments.
    An empty range list yields exactly one combination (the base itself).
    Combinations rejected by ``constraints`` are not yielded.
    """
    names = [r.name for r in ranges]
    value_lists = [r.values() for r in ranges]
    for values in itertools.product(*value_lists):
        combo = merge_params(base, dict(zip(names, values)))
        if constraints and not satisfies(combo, constraints):
            continue
        yield combo


def count_combinations(ranges: Sequence[ParameterRange]) -> int:
    """Exact length of ``enumerate_combinations(ranges)`` without constraints."""
    return math.prod(r.sample_count() for r in ranges)


def count_feasible(
    ranges: Sequence[ParameterRange],
    base: ParameterCombination | None = None,
    constraints: Sequence[Constraint] = (),
) -> int:
    """Number of combinations that pass ``constraints``."""
    if not constraints:
        return count_combinations(ranges)
    return sum(1 for _ in enumerate_combinations(ranges, base, constraints))


def validate_ranges(ranges: Sequence[ParameterRange]) -> list[str]:
    """Return human-readable problems; an empty list means usable."""
    errors: list[str] = []
    seen: set[str] = set()

    for i, r in enumerate(ranges):
        label = r.name or f"range #{i + 1}"
        if not r.name or not r.name.strip():
            errors.append(f"{label}: name must not be empty")
        elif r.name in seen:
            errors.append(f"{label}: duplicate parameter name")
        else:
            seen.add(r.name)

        if not all(math.isfinite(v) for v in (r.min, r.max, r.step)):
            errors.append(f"{label}: min, max and step must be finite numbers")
            continue
        if r.min > r.max:
            errors.append(f"{label}: min ({r.min}) is greater than max ({r.max})")
        if r.step <= 0:
            errors.append(f"{label}: step must be positive (got {r.step})")

    return errors


def ensure_valid(ranges: Sequence[ParameterRange], phase: int | None = None) -> None:
    """Raise RangeValidationError when ``validate_ranges`` reports problems."""
    errors = validate_ranges(ranges)
    if errors:
        raise RangeValidationError(errors, phase=phase)


def check_combination_limit(
    ranges: Sequence[ParameterRange],
    max_combinations: int = MAX_COMBINATIONS_DEFAULT,
    phase: int | None = None,
) -> int:
    """Return the combination count or raise CombinationLimitError over the cap."""
    total = count_combinations(ranges)
    if total > max_combinations:
        raise CombinationLimitError(total, max_combinations, phase=phase)
    return total
