import math
from enum import Enum

from .errors import ValidationError


class PointsDistribution(str, Enum):
    EXPONENTIAL = "exponential"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def distribute_exp(rank: int, tied_teams: int, total_teams: int, points: int, curve: float = 5) -> int:
    """
    Points awarded to each team of a group ranked at ``rank``.

    The curve spreads ``total_teams * points`` over all ranks, giving each
    rank r the slice ``total_teams * points * (e^((1 - r) / n * c) - e^(-r / n * c))``.
    Tied teams share the slices of every rank they occupy, so a group of k
    teams at rank r splits the slices of ranks r..r+k-1 evenly.
    """
    if tied_teams < 1:
        raise ValueError("tied_teams must be at least 1")
    if total_teams < 1:
        raise ValueError("total_teams must be at least 1")

    total = 0.0
    for r in range(rank, rank + tied_teams):
        total += total_teams * points * (
            math.exp((1 - r) / total_teams * curve) - math.exp(-r / total_teams * curve)
        )

    return round_half_up(total / tied_teams)


class ExponentialDistribution:
    """
    Exponential rank-to-points curve.
    With a curve of 5 the winner of a 2-team tournament takes over 90% of
    the pool; the curve flattens as the field grows.
    """

    def __init__(self, curve: float = 5):
        self.curve = curve

    def award(self, rank: int, tied_teams: int, total_teams: int, points: int) -> int:
        return distribute_exp(rank, tied_teams, total_teams, points, self.curve)


DISTRIBUTIONS = {
    PointsDistribution.EXPONENTIAL: ExponentialDistribution(),
}


def distribute(distribution, rank: int, tied_teams: int, total_teams: int, points: int) -> int:
    """Dispatch to the named distribution."""
    try:
        key = PointsDistribution(distribution)
    except ValueError:
        raise ValidationError(f"Unknown points distribution '{distribution}'")
    return DISTRIBUTIONS[key].award(rank, tied_teams, total_teams, points)
