import numpy as np
import pytest

from cpkit import base, utils


class TestCheckRandomState:
    def test_integer_seeds_reproducibly(self):
        first = utils.check_random_state(3).standard_normal(5)
        second = utils.check_random_state(3).standard_normal(5)
        assert np.allclose(first, second)

    def test_generator_is_returned(self):
        rng = np.random.default_rng(0)
        assert utils.check_random_state(rng) is rng

    def test_none_gives_generator(self):
        assert isinstance(utils.check_random_state(None), np.random.Generator)

    def test_invalid_random_state_raises(self):
        with pytest.raises(ValueError):
            utils.check_random_state('seed')


def test_normalize_factor():
    factor = np.random.standard_normal((10, 3))
    normalized, norms = utils.normalize_factor(factor)

    assert np.allclose(np.linalg.norm(normalized, axis=0), 1)
    assert np.allclose(normalized*norms, factor)


def test_create_data_without_noise_is_low_rank():
    tensor, factors, norms, noise = utils.create_data((4, 5, 6), 2, random_state=0)

    assert tensor.shape == (4, 5, 6)
    assert np.allclose(tensor, base.ktensor(*factors))
    assert np.isclose(np.linalg.norm(noise), np.linalg.norm(tensor))


def test_permute_factors():
    factors = [np.random.standard_normal((4, 3)) for _ in range(3)]
    permuted = utils.permute_factors([2, 0, 1], factors)

    for factor, permuted_factor in zip(factors, permuted):
        assert np.allclose(permuted_factor[:, 0], factor[:, 2])
