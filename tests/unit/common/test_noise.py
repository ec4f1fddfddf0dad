"""
Unit tests for NoiseInjector.
"""

import numpy as np
import pytest

from fedpool.common.noise import NoiseInjector
from fedpool.common.tensor import ParameterSet

from tests.fixtures.test_utils import random_parameter_set

SIGNATURES = [(4, 3), (3,), (2, 2, 2)]


@pytest.mark.parametrize("sigma", [0.0, 1e-6, 0.1, 5.0])
def test_shape_preserved_for_any_sigma(sigma):
    params = random_parameter_set(SIGNATURES, seed=1)
    noisy = NoiseInjector(sigma, seed=7).inject(params)

    assert noisy.signature == params.signature


def test_zero_sigma_reproduces_input_exactly():
    params = random_parameter_set(SIGNATURES, seed=2)
    noisy = NoiseInjector(0.0).inject(params)

    assert noisy == params
    assert noisy is not params
    for original, copied in zip(params, noisy):
        assert not np.shares_memory(original.data, copied.data)


def test_input_is_not_modified():
    params = random_parameter_set(SIGNATURES, seed=3)
    before = params.to_nested()

    NoiseInjector(0.5, seed=11).inject(params)

    assert params.to_nested() == before


def test_every_leaf_is_perturbed_independently():
    params = ParameterSet.zeros([(100, 100)])
    noisy = NoiseInjector(0.5, seed=5).inject(params)
    values = noisy[0].data

    assert np.count_nonzero(values) == values.size
    assert abs(values.mean()) < 0.05
    assert values.std() == pytest.approx(0.5, rel=0.05)


def test_seed_makes_draws_reproducible():
    params = random_parameter_set(SIGNATURES, seed=4)

    first = NoiseInjector(0.1, seed=42).inject(params)
    second = NoiseInjector(0.1, seed=42).inject(params)

    assert first == second


def test_successive_injections_draw_fresh_noise():
    params = random_parameter_set(SIGNATURES, seed=4)
    injector = NoiseInjector(0.1, seed=42)

    assert injector.inject(params) != injector.inject(params)


def test_negative_sigma_rejected():
    with pytest.raises(ValueError):
        NoiseInjector(-0.01)
