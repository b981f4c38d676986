import numpy as np
import pytest

from cpkit.convergence import FitCheck, NormCheck
from cpkit.decomposition import cp, cp_df, decompositions


@pytest.fixture(params=[((6, 3, 4), (6, 5)), ((4, 3), (4, 5, 2)), ((5, 3, 2, 2), (5, 4, 3))])
def left_and_right(request):
    left_shape, right_shape = request.param
    rng = np.random.default_rng(0)
    return rng.standard_normal(left_shape), rng.standard_normal(right_shape)


@pytest.fixture
def low_rank_left_and_right():
    """Tensors whose contraction has CP rank 3."""
    rng = np.random.default_rng(1)
    A, B, C = [rng.standard_normal((length, 3)) for length in (5, 6, 7)]
    left = np.einsum('ir,jr->rij', A, B)
    right = C.T.copy()
    return left, right


class TestCPDFALS:
    def test_shape_and_norm(self, left_and_right):
        left, right = left_and_right
        T = np.tensordot(left, right, axes=([0], [0]))
        cp_df_als = cp_df.CP_DF_ALS(left, right)

        assert cp_df_als.shape == T.shape
        assert np.isclose(cp_df_als.X_norm, np.linalg.norm(T))
        assert np.allclose(cp_df_als.X, T)

    def test_direct_rhs_equals_khatri_rao_rhs_of_contracted_tensor(self, left_and_right):
        left, right = left_and_right
        T = np.tensordot(left, right, axes=([0], [0]))

        cp_df_als = cp_df.CP_DF_ALS(left, right)
        cp_df_als.decomposition = decompositions.KruskalTensor.random_init(T.shape, 3, random_state=2)
        cp_df_als._init_sweep()

        for mode in range(T.ndim):
            expected = cp.base.matrix_khatri_rao_product(T, cp_df_als.factor_matrices, mode)
            assert np.allclose(cp_df_als._get_als_rhs(mode), expected)

    def test_sweep_equals_dense_sweep(self, left_and_right):
        left, right = left_and_right
        T = np.tensordot(left, right, axes=([0], [0]))
        initial = decompositions.KruskalTensor.random_init(T.shape, 3, random_state=2)

        cp_df_als = cp_df.CP_DF_ALS(left, right)
        cp_als = cp.CP_ALS(T)
        cp_df_als.decomposition = initial.copy()
        cp_als.decomposition = initial.copy()

        for _ in range(3):
            cp_df_als._update_als_factors()
            cp_als._update_als_factors()

            for df_factor, factor in zip(cp_df_als.factor_matrices, cp_als.factor_matrices):
                assert np.allclose(df_factor, factor)
            assert np.allclose(cp_df_als.weights, cp_als.weights)

    def test_khatri_rao_path_equals_direct_path(self, left_and_right):
        left, right = left_and_right
        shape = (*left.shape[1:], *right.shape[1:])
        initial = decompositions.KruskalTensor.random_init(shape, 2, random_state=2)

        direct_als = cp_df.CP_DF_ALS(left, right, direct=True)
        krp_als = cp_df.CP_DF_ALS(left, right, direct=False)
        direct_als.decomposition = initial.copy()
        krp_als.decomposition = initial.copy()

        direct_als._update_als_factors()
        krp_als._update_als_factors()
        for direct_factor, krp_factor in zip(direct_als.factor_matrices, krp_als.factor_matrices):
            assert np.allclose(direct_factor, krp_factor)

    def test_inputs_are_not_modified(self, left_and_right):
        left, right = left_and_right
        left_copy, right_copy = left.copy(), right.copy()

        cp_df_als = cp_df.CP_DF_ALS(left, right, max_its=5, random_state=0)
        cp_df_als.compute_rank(2, NormCheck())

        assert np.array_equal(left, left_copy)
        assert np.array_equal(right, right_copy)

    def test_rank3_decomposition(self, low_rank_left_and_right):
        left, right = low_rank_left_and_right
        cp_df_als = cp_df.CP_DF_ALS(left, right, random_state=0)
        error = cp_df_als.compute_rank(
            3, NormCheck(tol=1e-12), svd_initial_guess=True, svd_rank=3, calculate_error=True
        )

        assert error < 1e-8

    def test_fit_check(self, low_rank_left_and_right):
        left, right = low_rank_left_and_right
        cp_df_als = cp_df.CP_DF_ALS(left, right, random_state=0)
        error = cp_df_als.compute_rank(3, FitCheck(tol=1e-6), svd_initial_guess=True, svd_rank=3)

        assert error < 1e-4

    def test_symmetric_modes(self):
        rng = np.random.default_rng(3)
        A, C = rng.standard_normal((4, 2)), rng.standard_normal((5, 2))
        left = np.einsum('ir,jr->rij', A, A)
        right = C.T.copy()

        cp_df_als = cp_df.CP_DF_ALS(left, right, symmetries=[0, 0, 2], max_its=20, random_state=0)
        cp_df_als.compute_rank(2, NormCheck())
        assert np.array_equal(cp_df_als.factor_matrices[0], cp_df_als.factor_matrices[1])

    def test_compute_PALS(self, low_rank_left_and_right):
        left, right = low_rank_left_and_right
        cp_df_als = cp_df.CP_DF_ALS(left, right, random_state=0)
        cp_df_als.compute_PALS([NormCheck() for _ in range(3)], panels=3, max_its=5)

        assert [rank for rank, _ in cp_df_als.build_history] == [7, 10, 13]

    def test_invalid_symmetry_raises(self, left_and_right):
        left, right = left_and_right
        num_modes = left.ndim + right.ndim - 2
        with pytest.raises(ValueError):
            cp_df.CP_DF_ALS(left, right, symmetries=[1] + list(range(1, num_modes)))
        with pytest.raises(ValueError):
            cp_df.CP_DF_ALS(left, right, symmetries=list(range(num_modes + 1)))

    def test_symmetric_modes_of_different_length_raise(self):
        left = np.random.default_rng(0).standard_normal((4, 3, 3))
        right = np.random.default_rng(1).standard_normal((4, 5))
        with pytest.raises(ValueError):
            cp_df.CP_DF_ALS(left, right, symmetries=[0, 0, 0])
        cp_df.CP_DF_ALS(left, right, symmetries=[0, 0, 2])

    def test_mismatched_connecting_modes_raise(self):
        with pytest.raises(ValueError):
            cp_df.CP_DF_ALS(np.ones((3, 4)), np.ones((2, 4)))

    def test_tensors_without_free_modes_raise(self):
        with pytest.raises(ValueError):
            cp_df.CP_DF_ALS(np.ones(3), np.ones((3, 4)))
