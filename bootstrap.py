from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from errors import check_positive_int


@dataclass(frozen=True)
class BootstrapSample:
    in_bag: np.ndarray
    out_of_bag: np.ndarray

    @property
    def n_unique_in_bag(self) -> int:
        return int(np.unique(self.in_bag).size)


def draw_bootstrap(n: int, rng: np.random.Generator | int | None = None) -> BootstrapSample:
    """Draw n row indices uniformly with replacement.

    `out_of_bag` holds the sorted indices never drawn. Passing the same
    integer seed (or an identically seeded generator) reproduces the sample.
    """
    check_positive_int("n", n)
    if not isinstance(rng, np.random.Generator):
        rng = np.random.default_rng(rng)

    in_bag = rng.integers(0, n, size=n, dtype=np.int64)
    drawn = np.zeros(n, dtype=bool)
    drawn[in_bag] = True
    out_of_bag = np.flatnonzero(~drawn).astype(np.int64)
    return BootstrapSample(in_bag=in_bag, out_of_bag=out_of_bag)
