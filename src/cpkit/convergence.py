"""
Convergence tests for the ALS iterations.

A convergence test is called with the current ``KruskalTensor`` once after
every ALS sweep and returns True when the sweeps should stop. Tests are
stateful, so every ALS run should own its test instance (or reuse one
instance for consecutive runs, since ``attach`` resets the per-run state).
"""
from abc import ABC, abstractmethod

import numpy as np

from . import base

__all__ = ['BaseConvergenceTest', 'NormCheck', 'FitCheck', 'StepSizeCheck', 'RALSHelper']


class BaseConvergenceTest(ABC):
    def attach(self, decomposer):
        """Prepare the test for a new ALS run of ``decomposer``.
        """
        pass

    def set_mtkrp(self, mode, mtkrp):
        """Store the matricised tensor times Khatri-Rao product of the latest update.
        """
        pass

    @property
    def fit(self):
        """The latest fit, or None if this test does not track the fit.
        """
        return None

    @abstractmethod
    def __call__(self, decomposition):
        pass


class NormCheck(BaseConvergenceTest):
    r"""Converged when the factor matrices stop changing.

    The change is measured as

    .. math::

        \sum_i \frac{\|A_i - A_i^{\text{prev}}\|_F}{\sqrt{I_i R}},

    where :math:`A_i^{\text{prev}}` is the i-th factor matrix at the
    previous call.
    """
    def __init__(self, tol=1e-3):
        self.tol = tol
        self.previous_factors = None
        self.difference = np.inf

    def _shapes_changed(self, factor_matrices):
        if self.previous_factors is None:
            return True
        return any(
            previous.shape != factor_matrix.shape
            for previous, factor_matrix in zip(self.previous_factors, factor_matrices)
        )

    def __call__(self, decomposition):
        factor_matrices = decomposition.factor_matrices
        if self._shapes_changed(factor_matrices):
            self.previous_factors = [np.zeros_like(fm) for fm in factor_matrices]

        difference = 0
        for i, factor_matrix in enumerate(factor_matrices):
            change = factor_matrix - self.previous_factors[i]
            difference += np.sqrt(np.sum(change**2)/factor_matrix.size)
            self.previous_factors[i] = factor_matrix.copy()

        self.difference = difference
        return difference < self.tol


class FitCheck(BaseConvergenceTest):
    r"""Converged when the fit changes less than ``tol`` in two consecutive sweeps.

    The fit is :math:`1 - \|\mathcal{T} - \hat{\mathcal{T}}\| / \|\mathcal{T}\|`.
    It is computed without reconstructing the tensor, from the matricised
    tensor times Khatri-Rao product (MtKRP) of the latest mode update:

    .. math::

        \|\mathcal{T} - \hat{\mathcal{T}}\|^2 = \|\mathcal{T}\|^2
            + \mathbf{w}^T (\circledast_k A_k^T A_k) \mathbf{w}
            - 2 \sum_r w_r (A_m \circledast M)_{:r} \mathbf{1},

    where :math:`M` is the MtKRP of mode :math:`m`.
    If the last mode of a sweep is a copy of an earlier mode (a symmetric
    mode), :math:`M` belongs to the last independent mode and was computed
    before the later updates of that sweep. The fit is then an
    approximation of the exact fit.

    Arguments:
    ----------
    tol: float
        Largest fit change that counts as converged.
    tensor_norm: float (optional)
        Frobenius norm of the decomposed tensor. If None, it is set
        by the decomposer at the start of the first ALS run.
    verbose: bool
        If True, the fit is printed after every sweep.
    """
    def __init__(self, tol=1e-4, tensor_norm=None, verbose=False):
        self.tol = tol
        self.tensor_norm = tensor_norm
        self.verbose = verbose
        self._fit = None
        self._reset()

    def _reset(self):
        self._previous_fit = None
        self._num_converged = 0
        self.iteration = 0

    def set_norm(self, tensor_norm):
        self.tensor_norm = tensor_norm

    def attach(self, decomposer):
        if self.tensor_norm is None:
            self.set_norm(decomposer.X_norm)
        self._reset()
        self._mtkrp = None
        self._mtkrp_mode = None

    def set_mtkrp(self, mode, mtkrp):
        self._mtkrp = mtkrp
        self._mtkrp_mode = mode

    @property
    def fit(self):
        return self._fit

    def compute_fit(self, decomposition):
        factor_matrices = decomposition.factor_matrices
        weights = decomposition.weights
        updated_factor = factor_matrices[self._mtkrp_mode]

        inner_product = np.sum(weights * np.sum(updated_factor * self._mtkrp, axis=0))
        decomposition_norm_sq = weights @ base.get_gram_hadamard(factor_matrices) @ weights
        residual_norm = np.sqrt(
            abs(self.tensor_norm**2 + decomposition_norm_sq - 2*inner_product)
        )
        return 1 - residual_norm/self.tensor_norm

    def __call__(self, decomposition):
        if self.tensor_norm is None:
            raise ValueError('The norm of the reference tensor must be set before the fit can be computed.')
        if self._mtkrp is None:
            raise ValueError('No MtKRP is stored, a mode must be updated before the fit can be computed.')

        fit = self.compute_fit(decomposition)
        if self._previous_fit is None:
            fit_change = np.inf
        else:
            fit_change = abs(self._previous_fit - fit)
        self._previous_fit = fit
        self._fit = fit

        if self.verbose:
            print(f'    {self.iteration}: The fit is {fit:4g}, change is {fit_change:4g}')
        self.iteration += 1

        if fit_change >= self.tol:
            self._num_converged = 0
            return False

        self._num_converged += 1
        if self._num_converged == 2:
            self._reset()
            return True
        return False


class RALSHelper:
    """Stores the previous iterate of each factor matrix.

    Calling the helper with a mode and the updated factor matrix of that
    mode returns the relative step size

    .. math::

        s = \\frac{\\|A_{\\text{new}} - A_{\\text{prev}}\\|_F}{\\|A_{\\text{new}}\\|_F}

    and stores the updated factor matrix as the previous iterate.
    Regularised ALS schemes use the step size to scale the regularisation.
    """
    def __init__(self, previous_factors):
        self.previous_factors = [np.array(factor, copy=True) for factor in previous_factors]

    def __call__(self, mode, factor_matrix):
        change = np.linalg.norm(factor_matrix - self.previous_factors[mode])
        step_size = change / np.linalg.norm(factor_matrix)
        self.previous_factors[mode] = np.array(factor_matrix, copy=True)
        return step_size


class StepSizeCheck(BaseConvergenceTest):
    """Converged when the largest relative step of a sweep is smaller than ``tol``.
    """
    def __init__(self, tol=1e-3):
        self.tol = tol
        self.helper = None
        self.step_sizes = []

    def attach(self, decomposer):
        self.helper = RALSHelper(decomposer.factor_matrices)
        self.step_sizes = []

    def __call__(self, decomposition):
        factor_matrices = decomposition.factor_matrices
        if self.helper is None:
            self.helper = RALSHelper(factor_matrices)
            return False

        self.step_sizes = [
            self.helper(mode, factor_matrix) for mode, factor_matrix in enumerate(factor_matrices)
        ]
        return max(self.step_sizes) < self.tol
