import numpy as np

from .. import base
from .cp import BaseCP

__all__ = ['CP_DF_ALS']


class CP_DF_ALS(BaseCP):
    r"""CP decomposition of a tensor given as a contraction of two tensors.

    The decomposed tensor is

    .. math::

        \mathcal{T}_{i_1 \dots i_n i_{n+1} \dots i_N} =
            \sum_x \mathcal{B}_{x i_1 \dots i_n} \mathcal{Z}_{x i_{n+1} \dots i_N},

    where :math:`x` is the connecting mode. No factor matrix is computed for
    the connecting mode, and :math:`\mathcal{T}` is never formed when
    ``direct=True``. Instead, the side that does not contain the updated
    mode is contracted with its factor matrices down to a (connecting
    length x rank) matrix. This matrix is contracted with the other side,
    and the remaining modes are contracted as for a dense tensor. The
    contraction of the two sides is reused for consecutive updates of
    modes on the same side.

    Arguments:
    ----------
    left: np.ndarray
        The tensor :math:`\mathcal{B}`, with the connecting mode first.
    right: np.ndarray
        The tensor :math:`\mathcal{Z}`, with the connecting mode first.
    symmetries: list(int) (optional, default=None)
        One entry per non-connecting mode, see ``BaseCP``.

    The remaining arguments are described in ``BaseCP``.
    """
    def __init__(
        self,
        left,
        right,
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
        left = np.asarray(left, dtype=float)
        right = np.asarray(right, dtype=float)
        if left.ndim < 2 or right.ndim < 2:
            raise ValueError(
                'Both tensors need a connecting mode and at least one other mode, '
                f'got tensors with {left.ndim} and {right.ndim} modes.'
            )
        if left.shape[0] != right.shape[0]:
            raise ValueError(
                f'The connecting modes have different lengths ({left.shape[0]} and {right.shape[0]}).'
            )

        self.left = left
        self.right = right
        self.num_left_modes = left.ndim - 1
        self._init_symmetries(left.ndim + right.ndim - 2)

        # ||B^T Z||^2 = trace((B B^T)(Z Z^T)) with B and Z flattened to matrices
        left_matrix = left.reshape(left.shape[0], -1)
        right_matrix = right.reshape(right.shape[0], -1)
        self.X_norm = np.sqrt(abs(np.sum((left_matrix @ left_matrix.T) * (right_matrix @ right_matrix.T))))

        self._X = None
        self._cached_side = None
        self._side_contraction = None

    @property
    def shape(self):
        return (*self.left.shape[1:], *self.right.shape[1:])

    @property
    def X(self):
        """The contracted tensor. Formed on first access."""
        if self._X is None:
            self._X = np.tensordot(self.left, self.right, axes=([0], [0]))
        return self._X

    def _init_als(self):
        self._cached_side = None
        self._side_contraction = None

    def _init_sweep(self):
        self._cached_side = None
        self._side_contraction = None

    def _is_left_mode(self, mode):
        return mode < self.num_left_modes

    def _collapse_side(self, tensor, factor_matrices):
        """Contract every non-connecting mode of ``tensor`` with its factor matrix.

        Returns a (connecting length x rank) matrix.
        """
        intermediate = tensor.reshape(-1, tensor.shape[-1]) @ factor_matrices[-1]
        return base.contract_modes_except(
            intermediate, tensor.shape[:-1], [None, *factor_matrices[:-1]], target=0
        )

    def _contract_sides(self, use_left):
        left_factors = self.factor_matrices[:self.num_left_modes]
        right_factors = self.factor_matrices[self.num_left_modes:]

        if use_left:
            own_side = self.left
            collapsed = self._collapse_side(self.right, right_factors)
        else:
            own_side = self.right
            collapsed = self._collapse_side(self.left, left_factors)

        return own_side.reshape(own_side.shape[0], -1).T @ collapsed

    def _get_als_rhs(self, mode):
        if not self.direct:
            return base.matrix_khatri_rao_product(self.X, self.factor_matrices, mode)

        use_left = self._is_left_mode(mode)
        if self._cached_side != use_left:
            self._side_contraction = self._contract_sides(use_left)
            self._cached_side = use_left

        if use_left:
            extents = self.left.shape[1:]
            own_factors = self.factor_matrices[:self.num_left_modes]
            local_mode = mode
        else:
            extents = self.right.shape[1:]
            own_factors = self.factor_matrices[self.num_left_modes:]
            local_mode = mode - self.num_left_modes

        return base.contract_modes_except(self._side_contraction, extents, own_factors, local_mode)

    def _unfolded_gram(self, mode):
        unfolded = base.unfold(self.X, mode)
        return unfolded @ unfolded.T
