import numpy as np

from cpkit import metrics, utils


class TestFactorMatchScore:
    def test_identical_factors(self):
        factors, _ = utils.create_random_factors((10, 11, 12), 3, random_state=0)
        fms, permutation = metrics.factor_match_score(factors, factors)

        assert abs(fms - 1) < 1e-10
        assert permutation == (0, 1, 2)

    def test_permuted_and_scaled_factors(self):
        factors, _ = utils.create_random_factors((10, 11, 12), 3, random_state=0)
        estimated = utils.permute_factors([1, 2, 0], factors)
        estimated = [2*estimated[0], -estimated[1], -0.5*estimated[2]]

        fms, permutation = metrics.factor_match_score(factors, estimated)
        assert abs(fms - 1) < 1e-10
        assert permutation == (2, 0, 1)

    def test_unrelated_factors_have_low_score(self):
        factors, _ = utils.create_random_factors((50, 50, 50), 2, random_state=0)
        other_factors, _ = utils.create_random_factors((50, 50, 50), 2, random_state=1)

        fms, _ = metrics.factor_match_score(factors, other_factors, weight_penalty=False)
        assert fms < 0.5
