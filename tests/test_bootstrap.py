import numpy as np
import pytest

from bootstrap import draw_bootstrap
from errors import InvalidInputError


def test_out_of_bag_is_disjoint_from_sample():
    for n in (1, 2, 17, 250):
        sample = draw_bootstrap(n, np.random.default_rng(n))

        assert sample.in_bag.shape == (n,)
        assert np.all((sample.in_bag >= 0) & (sample.in_bag < n))
        assert np.intersect1d(sample.in_bag, sample.out_of_bag).size == 0
        assert sample.n_unique_in_bag + sample.out_of_bag.size == n


def test_single_row_is_always_in_bag():
    sample = draw_bootstrap(1, 0)

    assert list(sample.in_bag) == [0]
    assert sample.out_of_bag.size == 0


def test_same_seed_reproduces_sample():
    first = draw_bootstrap(100, 42)
    second = draw_bootstrap(100, np.random.default_rng(42))
    other = draw_bootstrap(100, 43)

    np.testing.assert_array_equal(first.in_bag, second.in_bag)
    np.testing.assert_array_equal(first.out_of_bag, second.out_of_bag)
    assert not np.array_equal(first.in_bag, other.in_bag)


def test_out_of_bag_fraction_is_near_one_over_e():
    rng = np.random.default_rng(0)
    n = 2000
    fractions = [draw_bootstrap(n, rng).out_of_bag.size / n for _ in range(20)]

    assert np.mean(fractions) == pytest.approx((1.0 - 1.0 / n) ** n, abs=0.01)


def test_empty_dataset_is_rejected():
    with pytest.raises(InvalidInputError):
        draw_bootstrap(0)
