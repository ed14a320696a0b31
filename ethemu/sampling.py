"""
Random selection helpers.

Each helper validates that a valid pick exists before drawing, so the
rejection loops inside always terminate.
"""
import random
import typing as t

from .errors import ConfigurationError

T = t.TypeVar("T")


def sample_without_replacement(rng: random.Random, population: t.Sequence[T], k: int) -> t.List[T]:
    """
    Draw k distinct elements by rejection into a set.

    Order of the result follows the draw order.
    """
    if k < 0 or k > len(population):
        raise ConfigurationError(f"Cannot pick {k} distinct items out of {len(population)}")
    chosen: t.Set[int] = set()
    picks: t.List[T] = []
    while len(picks) < k:
        idx = rng.randrange(len(population))
        if idx in chosen:
            continue
        chosen.add(idx)
        picks.append(population[idx])
    return picks


def sample_excluding(rng: random.Random, population: t.Sequence[T], exclude: T) -> T:
    """Draw one element different from `exclude`."""
    if not any(item != exclude for item in population):
        raise ConfigurationError(f"No candidate other than {exclude!r} to pick from")
    while True:
        pick = population[rng.randrange(len(population))]
        if pick != exclude:
            return pick


def sample_pair(rng: random.Random, population: t.Sequence[T]) -> t.Tuple[T, T]:
    """Draw an ordered (source, destination) pair of distinct elements."""
    if len(set(population)) < 2:
        raise ConfigurationError(f"Need at least two distinct candidates, have {len(set(population))}")
    source = population[rng.randrange(len(population))]
    return source, sample_excluding(rng, population, source)
