from abc import abstractmethod
from collections.abc import Mapping

import numpy as np

from .. import base, compression
from ..utils import check_random_state, normalize_factor
from . import decompositions
from .base_decomposer import BaseDecomposer

__all__ = ['BaseCP', 'CP_ALS']


class BaseCP(BaseDecomposer):
    r"""CP (CANDECOMP/PARAFAC) decomposition using Alternating Least Squares.

    The decomposer owns a ``KruskalTensor`` whose rank is grown by one of
    the ``compute_*`` strategies. At every rank the factor matrices are
    optimised with Gauss-Seidel ALS sweeps until the convergence test
    signals convergence or ``max_its`` sweeps are done. Every factor
    matrix update is followed by a column normalisation, and the column
    norms become the weights of the decomposition.

    Arguments:
    ----------
    symmetries: list(int) (optional, default=None)
        Entry ``i`` is the mode whose factor matrix mode ``i`` shares.
        It is either ``i`` or an earlier mode. If None, all modes are
        independent.
    max_its: int (optional, default=10000)
        Maximum number of ALS sweeps for each fixed rank.
    direct: bool (optional, default=True)
        If True, the matricised tensor times Khatri-Rao product is computed
        by successive contractions, without forming the Khatri-Rao product.
    pinv_method: str (optional, default='svd')
        How the normal equations are solved. ``'svd'`` uses the SVD based
        pseudoinverse, ``'cholesky'`` a Cholesky solve that raises
        ``np.linalg.LinAlgError`` if the Gram matrix product is not positive
        definite and ``'cholesky_svd_fallback'`` a Cholesky solve that falls
        back to the pseudoinverse if it fails.
    loggers: list(Logger) (optional, default=None)
        List of loggers, called once per ALS sweep.
    checkpoint_frequency: int (optional, default=None)
        How often (in sweeps) the decomposition and logs are stored.
    checkpoint_path: str or Path (optional, default=None)
        Where to store the checkpoint HDF5 file. If None, nothing is stored.
    print_frequency: int (optional, default=None)
        How often convergence information should be printed in the terminal.
        None and negative values leads to no printing.
    random_state: None, int or np.random.Generator (optional, default=None)
        Source of random numbers for initialisation and rank growth. Can be
        overridden by the ``random_state`` argument of the compute methods.
    """
    DecompositionType = decompositions.KruskalTensor
    pinv_methods = ('svd', 'cholesky', 'cholesky_svd_fallback')

    def __init__(
        self,
        symmetries=None,
        max_its=10000,
        direct=True,
        pinv_method='svd',
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
        random_state=None,
    ):
        self.symmetries = self._validate_symmetries(symmetries)
        if pinv_method not in self.pinv_methods:
            raise ValueError(f'`pinv_method` must be one of {self.pinv_methods}, not {pinv_method!r}.')

        super().__init__(
            max_its=max_its,
            loggers=loggers,
            checkpoint_frequency=checkpoint_frequency,
            checkpoint_path=checkpoint_path,
            print_frequency=print_frequency,
        )
        self.direct = direct
        self.pinv_method = pinv_method
        self.rng = check_random_state(random_state)

        self.decomposition = None
        self.build_history = []
        self._last_updated_mode = None
        self._matrix_khatri_rao_product_cache = None

    @staticmethod
    def _validate_symmetries(symmetries):
        if symmetries is None:
            return None

        symmetries = [int(symmetry) for symmetry in symmetries]
        for mode, symmetry in enumerate(symmetries):
            if symmetry > mode:
                raise ValueError(
                    f'Symmetries must refer to factor matrices at earlier positions, '
                    f'but mode {mode} refers to mode {symmetry}.'
                )
            if symmetry < 0:
                raise ValueError(f'Mode {mode} refers to the negative mode {symmetry}.')
        return symmetries

    def _init_symmetries(self, num_modes):
        if self.symmetries is None:
            self.symmetries = list(range(num_modes))
        elif len(self.symmetries) != num_modes:
            raise ValueError(
                f'There must be one symmetry entry per decomposed mode. '
                f'Got {len(self.symmetries)} entries for {num_modes} modes.'
            )
        for mode, symmetry in enumerate(self.symmetries):
            if self.shape[mode] != self.shape[symmetry]:
                raise ValueError(
                    f'Mode {mode} shares its factor matrix with mode {symmetry}, but their lengths '
                    f'differ ({self.shape[mode]} and {self.shape[symmetry]}).'
                )

    @property
    def num_modes(self):
        return len(self.shape)

    @abstractmethod
    def _get_als_rhs(self, mode):
        """Compute the matricised tensor times Khatri-Rao product for one mode."""
        pass

    @abstractmethod
    def _unfolded_gram(self, mode):
        """Compute the Gram matrix of the mode-``mode`` unfolding of the decomposed tensor."""
        pass

    def _init_als(self):
        pass

    def _init_sweep(self):
        pass

    # Properties
    @property
    def rank(self):
        if self.decomposition is None:
            return 0
        return self.decomposition.rank

    @property
    def factor_matrices(self):
        return self.decomposition.factor_matrices

    @property
    def weights(self):
        return self.decomposition.weights

    @property
    def reconstructed_X(self):
        return self.decomposition.construct_tensor()

    @property
    def SSE(self):
        """Sum Squared Error"""
        if self._last_updated_mode is not None:
            # ||X - Y||_F^2 = ||X||_F^2 + ||Y||_F^2 - 2<X, Y>_F
            sse = (
                self.X_norm**2
                + self.decomposition.norm()**2
                - 2*self._inner_prod_X_reconstructed_X
            )
            return max(sse, 0)

        return super().SSE

    @property
    def _inner_prod_X_reconstructed_X(self):
        M = self.factor_matrices[self._last_updated_mode]*self._matrix_khatri_rao_product_cache
        return np.sum(self.weights*M.sum(0), axis=0)

    @property
    def loss(self):
        return self.SSE

    @property
    def reconstruction_error(self):
        """Frobenius norm of the difference between the decomposed tensor and the decomposition."""
        return np.linalg.norm(self.reconstructed_X - self.X)

    def _check_valid_components(self, decomposition):
        """Check if provided factor matrices have correct shape.
        """
        if len(decomposition.factor_matrices) != self.num_modes:
            raise ValueError(
                f'The decomposition has {len(decomposition.factor_matrices)} factor matrices, '
                f'but the decomposed tensor has {self.num_modes} modes.'
            )
        for i, factor_matrix in enumerate(decomposition.factor_matrices):
            length = factor_matrix.shape[0]
            if length != self.shape[i]:
                raise ValueError(
                    f"The length of component {i} ({length}) is not the same as the length of X's dimension {i} ({self.shape[i]})."
                )

    def _invalidate_cache(self):
        self._last_updated_mode = None
        self._matrix_khatri_rao_product_cache = None

    def _get_rng(self, random_state):
        if random_state is None:
            return self.rng
        return check_random_state(random_state)

    # Initialisation and growth
    def _copy_symmetric_modes(self, factor_matrices):
        for mode, symmetry in enumerate(self.symmetries):
            if symmetry != mode:
                factor_matrices[mode] = factor_matrices[symmetry].copy()

    def _random_decomposition(self, rank, rng):
        decomposition = self.DecompositionType.random_init(
            self.shape, rank, random_method='uniform', random_state=rng
        )
        self._copy_symmetric_modes(decomposition.factor_matrices)
        return decomposition

    def _svd_decomposition(self, svd_rank, rng):
        """Initial guess from the leading eigenvectors of the Gram matrix of each unfolding.

        Modes that are shorter than ``svd_rank`` are padded with uniformly
        distributed random columns.
        """
        factor_matrices = [None]*self.num_modes
        for mode, length in enumerate(self.shape):
            if self.symmetries[mode] != mode:
                continue

            _, eigenvectors = base.eigh_descending(self._unfolded_gram(mode))
            num_eigenvectors = min(length, svd_rank)

            factor_matrix = np.empty((length, svd_rank))
            factor_matrix[:, :num_eigenvectors] = eigenvectors[:, :num_eigenvectors]
            if svd_rank > length:
                factor_matrix[:, length:] = rng.uniform(-1, 1, size=(length, svd_rank - length))
            factor_matrices[mode] = factor_matrix

        self._copy_symmetric_modes(factor_matrices)
        return self.DecompositionType(factor_matrices).normalize_components(update_weights=False)

    def _grow(self, new_rank, rng):
        self.decomposition.grow(new_rank, random_state=rng)
        self._copy_symmetric_modes(self.factor_matrices)
        self._invalidate_cache()

    # ALS
    def _get_als_lhs(self, mode):
        """Compute left hand side of least squares problem."""
        return base.get_gram_hadamard(self.factor_matrices, skip=mode)

    def _get_rightsolve(self):
        if self.pinv_method == 'cholesky':
            return base.cholesky_rightsolve
        elif self.pinv_method == 'cholesky_svd_fallback':
            return base.add_svd_fallback(base.cholesky_rightsolve)
        return base.rightsolve

    def _update_als_factor(self, mode, converge_test=None):
        """Solve least squares problem to get factor for one mode."""
        lhs = self._get_als_lhs(mode)
        rhs = self._get_als_rhs(mode)
        if converge_test is not None:
            converge_test.set_mtkrp(mode, rhs)

        self._last_updated_mode = mode
        self._matrix_khatri_rao_product_cache = rhs

        rightsolve = self._get_rightsolve()
        new_factor, norms = normalize_factor(rightsolve(lhs, rhs))
        self.factor_matrices[mode] = new_factor
        self.decomposition.weights = norms.ravel()

    def _update_als_factors(self, converge_test=None):
        """Updates factors with alternating least squares."""
        self._init_sweep()
        for mode, symmetry in enumerate(self.symmetries):
            if symmetry == mode:
                self._update_als_factor(mode, converge_test)
            else:
                self.factor_matrices[mode] = self.factor_matrices[symmetry].copy()
                self._invalidate_cache()

    def _als(self, converge_test, calculate_error=False):
        """Run ALS sweeps at the current rank until convergence or ``max_its`` sweeps.

        Returns one minus the fit if the convergence test tracks the fit,
        the reconstruction error if ``calculate_error`` is True and -1 otherwise.
        """
        self._init_als()
        converge_test.attach(self)

        converged = False
        num_its = 0
        while num_its < self.max_its and not converged:
            self._update_als_factors(converge_test)
            converged = converge_test(self.decomposition)
            num_its += 1

            if self.print_frequency > 0 and self.current_iteration % self.print_frequency == 0:
                relative_error = np.sqrt(self.SSE)/self.X_norm
                print(f'    {self.current_iteration}: Rank {self.rank}, the relative error is {relative_error:4g}')

            self._after_sweep()

        if self._checkpointing:
            self.store_checkpoint()

        if converge_test.fit is not None:
            error = 1 - converge_test.fit
        elif calculate_error:
            error = self.reconstruction_error
        else:
            error = -1.0

        self.build_history.append((self.rank, error))
        return error

    # Rank building
    def build(
        self, rank, converge_test, *, step=1, svd_initial_guess=False, svd_rank=None,
        calculate_error=False, random_state=None
    ):
        """Grow the decomposition to ``rank``, running ALS after every growth step.

        If there is no decomposition yet, it is initialised either with the
        leading eigenvectors of the unfoldings (at rank ``svd_rank``) or with
        uniformly distributed random numbers (at rank ``min(step, rank)``),
        and ALS is run once before the growth starts. The rank is then
        increased by ``step`` until it reaches ``rank``. Each growth step
        keeps the existing columns and appends random unit length columns.
        If ``svd_rank`` is larger than ``rank``, the decomposition keeps rank
        ``svd_rank`` and is not truncated.

        Returns the error of the last ALS run, see ``_als``.
        """
        if step <= 0:
            raise ValueError(f'The rank step must be positive, not {step}.')
        if svd_initial_guess and svd_rank is None:
            raise ValueError('The SVD initial guess requires `svd_rank`.')
        rng = self._get_rng(random_state)

        ran_als = False
        error = -1.0
        if self.decomposition is None:
            if svd_initial_guess:
                self.decomposition = self._svd_decomposition(svd_rank, rng)
            else:
                self.decomposition = self._random_decomposition(min(step, rank), rng)
            self._invalidate_cache()
            error = self._als(converge_test, calculate_error)
            ran_als = True

        while self.rank < rank:
            self._grow(min(self.rank + step, rank), rng)
            error = self._als(converge_test, calculate_error)
            ran_als = True

        if not ran_als:
            error = self._als(converge_test, calculate_error)
        return error

    def build_random(self, rank, converge_test, *, calculate_error=False, random_state=None):
        """Initialise all factor matrices at ``rank`` with uniform random numbers and run ALS once.
        """
        rng = self._get_rng(random_state)
        self.decomposition = self._random_decomposition(rank, rng)
        self._invalidate_cache()
        return self._als(converge_test, calculate_error)

    def compute_rank(
        self, rank, converge_test, *, step=1, svd_initial_guess=False, svd_rank=None,
        calculate_error=False, random_state=None
    ):
        """Compute a CP decomposition of the given rank by growing the current decomposition.

        See ``build``. With the SVD initial guess the final rank is
        ``max(rank, svd_rank)``.
        """
        if rank <= 0:
            raise ValueError(f'The rank must be positive, not {rank}.')
        return self.build(
            rank,
            converge_test,
            step=step,
            svd_initial_guess=svd_initial_guess,
            svd_rank=svd_rank,
            calculate_error=calculate_error,
            random_state=random_state
        )

    def compute_rank_random(self, rank, converge_test, *, calculate_error=False, random_state=None):
        """Compute a CP decomposition of the given rank from a random initialisation.
        """
        if rank <= 0:
            raise ValueError(f'The rank must be positive, not {rank}.')
        self.decomposition = None
        return self.build_random(
            rank, converge_test, calculate_error=calculate_error, random_state=random_state
        )

    def compute_error(
        self, converge_test, *, target_error=1e-2, step=1, max_rank=100000,
        svd_initial_guess=False, svd_rank=None, random_state=None
    ):
        """Increase the rank by ``step`` until the error is at most ``target_error``.

        The rank is never increased beyond ``max_rank``. Returns the error of
        the final decomposition.
        """
        if step <= 0:
            raise ValueError(f'The rank step must be positive, not {step}.')
        if svd_initial_guess and svd_rank is None:
            raise ValueError('The SVD initial guess requires `svd_rank`.')
        rng = self._get_rng(random_state)

        error = np.inf
        ran_als = False
        while error > target_error and self.rank < max_rank:
            error = self.build(
                min(self.rank + step, max_rank),
                converge_test,
                step=step,
                svd_initial_guess=svd_initial_guess,
                svd_rank=svd_rank,
                calculate_error=True,
                random_state=rng
            )
            ran_als = True

        if not ran_als:
            error = self._als(converge_test, calculate_error=True)
        return error

    def compute_geometric(
        self, rank, converge_test, *, geometric_step=2, svd_initial_guess=False, svd_rank=None,
        calculate_error=False, random_state=None
    ):
        """Grow the decomposition to ``rank`` through the ranks ``r0, r0*g, r0*g**2, ...``.

        ``g`` is ``geometric_step`` and ``r0`` is ``svd_rank`` if the SVD
        initial guess is used and 1 otherwise. ALS is run once at every rank.
        If ``svd_rank`` is larger than ``rank``, the decomposition stops at
        rank ``svd_rank``.
        """
        if geometric_step <= 1:
            raise ValueError(f'The geometric step must be larger than 1, not {geometric_step}.')
        if svd_initial_guess and svd_rank is None:
            raise ValueError('The SVD initial guess requires `svd_rank`.')
        rng = self._get_rng(random_state)

        current_rank = svd_rank if svd_initial_guess else 1
        while True:
            next_rank = min(current_rank, rank)
            error = self.build(
                next_rank,
                converge_test,
                step=max(1, next_rank - self.rank),
                svd_initial_guess=svd_initial_guess,
                svd_rank=svd_rank,
                calculate_error=calculate_error,
                random_state=rng
            )
            if self.rank >= rank:
                return error
            current_rank = int(np.ceil(current_rank*geometric_step))

    @staticmethod
    def _get_panel_tests(converge_list, panels):
        if isinstance(converge_list, Mapping):
            missing = [panel for panel in range(panels) if panel not in converge_list]
        else:
            converge_list = list(converge_list)
            missing = list(range(len(converge_list), panels))

        if missing:
            raise ValueError(
                f'There must be one convergence test per panel, the tests for panels {missing} are missing.'
            )
        return [converge_list[panel] for panel in range(panels)]

    def compute_PALS(
        self, converge_list, *, rank_step=0.5, panels=4, max_its=20,
        calculate_error=False, random_state=None
    ):
        """Compute a CP decomposition in panels of increasing rank.

        The first panel is initialised with the SVD initial guess at the
        rank ``max_extent``, the length of the longest mode. Every following
        panel adds ``max(1, int(rank_step*max_extent))`` random components
        and runs ALS with the convergence test of that panel.

        Arguments:
        ----------
        converge_list: list or dict
            The convergence test of every panel, either as a sequence or as
            a mapping from panel index to test.
        rank_step: float
            Rank increment of each panel, relative to the longest mode.
        panels: int
            Number of panels.
        max_its: int
            Maximum number of ALS sweeps per panel.
        """
        if rank_step <= 0:
            raise ValueError(f'The panel step must be positive, not {rank_step}.')
        converge_tests = self._get_panel_tests(converge_list, panels)
        rng = self._get_rng(random_state)

        max_extent = max(self.shape)
        rank_increment = max(1, int(rank_step*max_extent))

        default_max_its = self.max_its
        self.max_its = max_its
        try:
            error = -1.0
            for panel, converge_test in enumerate(converge_tests):
                if panel == 0:
                    self.decomposition = None
                    error = self.build(
                        max_extent,
                        converge_test,
                        svd_initial_guess=True,
                        svd_rank=max_extent,
                        calculate_error=calculate_error,
                        random_state=rng
                    )
                else:
                    self._grow(self.rank + rank_increment, rng)
                    error = self._als(converge_test, calculate_error)
        finally:
            self.max_its = default_max_its

        return error


class CP_ALS(BaseCP):
    r"""CP decomposition of a dense tensor using Alternating Least Squares.

    Arguments:
    ----------
    X: np.ndarray
        The tensor to decompose. It is never modified.
    symmetries: list(int) (optional, default=None)
        Entry ``i`` is the mode whose factor matrix mode ``i`` shares.
        For example, a fourth order tensor where the second and third
        mode are equal has the symmetries ``[0, 1, 1, 3]``.

    The remaining arguments are described in ``BaseCP``.
    """
    def __init__(
        self,
        X,
        symmetries=None,
        max_its=10000,
        direct=True,
        pinv_method='svd',
        loggers=None,
        checkpoint_frequency=None,
        checkpoint_path=None,
        print_frequency=None,
        random_state=None,
    ):
        super().__init__(
            symmetries=symmetries,
            max_its=max_its,
            direct=direct,
            pinv_method=pinv_method,
            loggers=loggers,
            checkpoint_frequency=checkpoint_frequency,
            checkpoint_path=checkpoint_path,
            print_frequency=print_frequency,
            random_state=random_state,
        )
        self.set_target(np.asarray(X, dtype=float))
        self._init_symmetries(self.X.ndim)

    @property
    def shape(self):
        return self.X.shape

    def _get_als_rhs(self, mode):
        if self.direct:
            return base.direct_matrix_khatri_rao_product(self.X, self.factor_matrices, mode)
        return base.matrix_khatri_rao_product(self.X, self.factor_matrices, mode)

    def _unfolded_gram(self, mode):
        unfolded = base.unfold(self.X, mode)
        return unfolded @ unfolded.T

    def _compute_compressed(self, core, transforms, converge_test, rank, target_error, calculate_error, rng):
        """Decompose the compressed core and map the factor matrices back with the transforms.
        """
        X = self.X
        self.decomposition = None
        self.set_target(core)
        try:
            if rank is not None:
                error = self.compute_rank_random(
                    rank, converge_test, calculate_error=calculate_error, random_state=rng
                )
            else:
                error = self.compute_error(converge_test, target_error=target_error, random_state=rng)
        finally:
            self.set_target(X)

        for mode, transform in enumerate(transforms):
            self.factor_matrices[mode] = transform @ self.factor_matrices[mode]
        self._copy_symmetric_modes(self.factor_matrices)
        self._invalidate_cache()
        return error

    def compress_compute_tucker(
        self, tcut_svd, converge_test, *, rank=None, target_error=1e-2,
        calculate_error=False, random_state=None
    ):
        """Compute the CP decomposition of a Tucker compressed version of X.

        X is compressed with a sequentially truncated higher order SVD (see
        ``cpkit.compression.tucker_compression``). The core is decomposed to
        ``rank`` from a random initialisation, or, if ``rank`` is None, until
        the error is at most ``target_error``. The factor matrices are then
        multiplied by the Tucker transforms. The returned error is the error
        of the core decomposition.
        """
        rng = self._get_rng(random_state)
        core, transforms = compression.tucker_compression(self.X, tcut_svd, symmetries=self.symmetries)
        return self._compute_compressed(
            core, transforms, converge_test, rank, target_error, calculate_error, rng
        )

    def compress_compute_rand(
        self, compression_rank, converge_test, *, oversample=10, power_iterations=2, rank=None,
        target_error=1e-2, calculate_error=False, random_state=None
    ):
        """Compute the CP decomposition of a randomized compression of X.

        Every mode of X is compressed to ``compression_rank`` with a randomized
        range finder (see ``cpkit.compression.randomized_compression``),
        otherwise this works like ``compress_compute_tucker``.
        """
        rng = self._get_rng(random_state)
        core, transforms = compression.randomized_compression(
            self.X,
            compression_rank,
            oversample=oversample,
            power_iterations=power_iterations,
            random_state=rng,
            symmetries=self.symmetries,
        )
        return self._compute_compressed(
            core, transforms, converge_test, rank, target_error, calculate_error, rng
        )
