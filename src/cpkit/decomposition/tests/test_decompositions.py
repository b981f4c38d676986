import tempfile

import h5py
import numpy as np
import pytest

from cpkit.decomposition import decompositions


class TestKruskalTensor:
    @pytest.fixture
    def random_3mode_ktensor(self):
        A = np.random.randn(30, 4)
        B = np.random.randn(40, 4)
        C = np.random.randn(50, 4)

        return decompositions.KruskalTensor([A, B, C])

    def test_load_tensor_loads_stored_tensor(self, random_3mode_ktensor):
        with tempfile.TemporaryDirectory() as tmpdir:
            filename = f'{tmpdir}/storedfactors.h5'
            random_3mode_ktensor.store(filename)

            loaded_tensor = decompositions.KruskalTensor.from_file(filename)

        assert np.allclose(loaded_tensor.weights, random_3mode_ktensor.weights)
        assert loaded_tensor.weights.shape == random_3mode_ktensor.weights.shape

        for fm, lfm in zip(random_3mode_ktensor.factor_matrices, loaded_tensor.factor_matrices):
            assert np.allclose(fm, lfm)

    def test_loading_wrong_type_warns(self, random_3mode_ktensor):
        with tempfile.TemporaryDirectory() as tmpdir:
            filename = f'{tmpdir}/storedfactors.h5'
            random_3mode_ktensor.store(filename)
            with h5py.File(filename, 'a') as h5:
                h5.attrs['type'] = 'TuckerTensor'

            with pytest.raises(Warning):
                decompositions.KruskalTensor.from_file(filename)

    def test_all_factor_matrices_must_have_same_size(self):
        A = np.random.randn(30, 5)
        B = np.random.randn(40, 5)
        C = np.random.randn(50, 6)

        with pytest.raises(ValueError):
            decompositions.KruskalTensor([A, B, C])

        A = np.random.randn(30, 6)
        B = np.random.randn(40, 5)
        with pytest.raises(ValueError):
            decompositions.KruskalTensor([A, B, C])

    def test_number_of_weights_must_match_rank(self):
        factor_matrices = [np.random.randn(length, 3) for length in (4, 5, 6)]
        with pytest.raises(ValueError):
            decompositions.KruskalTensor(factor_matrices, weights=np.ones(2))

    def test_correct_size_of_tensor(self, random_3mode_ktensor):
        assert random_3mode_ktensor.construct_tensor().shape == (30, 40, 50)

    def test_tensor_is_constructed_correctly(self):
        A, B, C = [np.random.randn(length, 2) for length in (3, 4, 5)]
        weights = np.array([0.5, 2])
        tensor = decompositions.KruskalTensor([A, B, C], weights).construct_tensor()

        for i, matrix in enumerate(tensor):
            for j, vector in enumerate(matrix):
                for k, element in enumerate(vector):
                    assert abs(element - np.sum(weights*A[i, :]*B[j, :]*C[k, :])) < 1e-8

    def test_normalize_ktensor_doesnt_change_constructed_tensor(self, random_3mode_ktensor):
        unnormalized_tensor = random_3mode_ktensor.construct_tensor().copy()
        random_3mode_ktensor.normalize_components()
        assert np.allclose(unnormalized_tensor, random_3mode_ktensor.construct_tensor())

    def test_normalize_ktensor_normalizes_ktensor(self, random_3mode_ktensor):
        random_3mode_ktensor.normalize_components()
        units = np.ones(random_3mode_ktensor.rank)

        for factor_matrix in random_3mode_ktensor.factor_matrices:
            assert np.allclose(np.linalg.norm(factor_matrix, axis=0), units)

    def test_norm_equals_norm_of_constructed_tensor(self, random_3mode_ktensor):
        assert np.isclose(
            random_3mode_ktensor.norm(), np.linalg.norm(random_3mode_ktensor.construct_tensor())
        )

    def test_copy_is_independent(self, random_3mode_ktensor):
        copy = random_3mode_ktensor.copy()
        copy.factor_matrices[0][...] = 0
        copy.weights[...] = 0

        assert not np.allclose(random_3mode_ktensor.factor_matrices[0], 0)
        assert np.allclose(random_3mode_ktensor.weights, 1)


class TestRandomInit:
    def test_uniform_init_has_unit_columns(self):
        ktensor = decompositions.KruskalTensor.random_init(
            (4, 5, 6), 3, random_method='uniform', random_state=0
        )
        assert ktensor.rank == 3
        assert ktensor.shape == [4, 5, 6]
        for factor_matrix in ktensor.factor_matrices:
            assert np.allclose(np.linalg.norm(factor_matrix, axis=0), 1)
        assert np.any(ktensor.factor_matrices[0] < 0)

    def test_same_seed_gives_same_tensor(self):
        first = decompositions.KruskalTensor.random_init((4, 5), 2, random_state=1)
        second = decompositions.KruskalTensor.random_init((4, 5), 2, random_state=1)
        for fm1, fm2 in zip(first, second):
            assert np.array_equal(fm1, fm2)

    def test_unknown_method_raises(self):
        with pytest.raises(ValueError):
            decompositions.KruskalTensor.random_init((4, 5), 2, random_method='beta')


class TestGrow:
    @pytest.fixture
    def ktensor(self):
        ktensor = decompositions.KruskalTensor.random_init((4, 5, 6), 2, random_state=0)
        ktensor.weights[...] = [3, 2]
        return ktensor

    def test_old_columns_are_kept(self, ktensor):
        old_factor_matrices = [fm.copy() for fm in ktensor.factor_matrices]
        ktensor.grow(5, random_state=1)

        assert ktensor.rank == 5
        for old, new in zip(old_factor_matrices, ktensor.factor_matrices):
            assert new.shape == (old.shape[0], 5)
            assert np.array_equal(new[:, :2], old)

    def test_new_columns_are_normalized(self, ktensor):
        ktensor.grow(5, random_state=1)
        for factor_matrix in ktensor.factor_matrices:
            assert np.allclose(np.linalg.norm(factor_matrix, axis=0), 1)

    def test_new_weights_are_one(self, ktensor):
        ktensor.grow(4, random_state=1)
        assert np.allclose(ktensor.weights, [3, 2, 1, 1])

    def test_cannot_shrink(self, ktensor):
        with pytest.raises(ValueError):
            ktensor.grow(1)


class TestComparison:
    @pytest.fixture
    def ktensor(self):
        ktensor = decompositions.KruskalTensor.random_init((10, 11, 12), 3, random_state=0)
        ktensor.weights[...] = [3, 2, 1]
        return ktensor

    def test_factor_match_score_of_permuted_copy(self, ktensor):
        permutation = [2, 0, 1]
        permuted = decompositions.KruskalTensor(
            [factor_matrix[:, permutation] for factor_matrix in ktensor], ktensor.weights[permutation]
        )
        fms, best_permutation = ktensor.factor_match_score(permuted)

        assert abs(fms - 1) < 1e-10
        assert best_permutation == (1, 2, 0)

    def test_weight_difference_lowers_score(self, ktensor):
        other = ktensor.copy()
        other.weights[0] = 6

        fms, _ = ktensor.factor_match_score(other)
        assert np.isclose(fms, 0.5)
        fms, _ = ktensor.factor_match_score(other, weight_penalty=False)
        assert np.isclose(fms, 1)

    def test_lower_rank_estimate_raises(self, ktensor):
        smaller = decompositions.KruskalTensor.random_init((10, 11, 12), 2, random_state=1)
        with pytest.raises(ValueError):
            ktensor.factor_match_score(smaller)

    def test_degeneracy_detects_cancelling_components(self):
        A, B, C = [np.random.randn(length, 2) for length in (4, 5, 6)]
        A[:, 1], B[:, 1], C[:, 1] = A[:, 0], B[:, 0], -C[:, 0]
        degeneracy = decompositions.KruskalTensor([A, B, C]).degeneracy()

        assert np.allclose(np.diag(degeneracy), 1)
        assert np.isclose(degeneracy[0, 1], -1)
