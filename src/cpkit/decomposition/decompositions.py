from abc import ABC, abstractmethod

import h5py
import numpy as np

from .. import base, metrics
from ..utils import check_random_state

__all__ = ['KruskalTensor']


class BaseDecomposedTensor(ABC):
    """Interface for decompositions that can be stored in and loaded from HDF5 files."""
    @abstractmethod
    def construct_tensor(self):
        pass

    @abstractmethod
    def store_in_hdf5_group(self, group):
        pass

    @classmethod
    @abstractmethod
    def load_from_hdf5_group(cls, group):
        pass

    def store(self, filename):
        with h5py.File(filename, 'w') as h5:
            self.store_in_hdf5_group(h5)

    @classmethod
    def from_file(cls, filename):
        with h5py.File(filename, 'r') as h5:
            return cls.load_from_hdf5_group(h5)

    def _prepare_hdf5_group(self, group):
        group.attrs['type'] = type(self).__name__

    @classmethod
    def _check_hdf5_group(cls, group):
        stored_type = group.attrs.get('type')
        if stored_type != cls.__name__:
            raise Warning(
                f'The HDF5 group stores a "{stored_type}", not a "{cls.__name__}". '
                'This might mean that you\'re loading the wrong file.'
            )


class KruskalTensor(BaseDecomposedTensor):
    r"""Factor matrices and weights of a CP decomposition.

    A Kruskal tensor describes a tensor :math:`\mathcal{X}` with :math:`N` modes
    as a weighted sum of :math:`R` rank one components

    .. math::

        \mathcal{X} = \sum_{r=1}^R w_r \mathbf{a}^{(0)}_r \circ \mathbf{a}^{(1)}_r
            \circ \cdots \circ \mathbf{a}^{(N-1)}_r,

    where :math:`\mathbf{a}^{(i)}_r` is the :math:`r`-th column of the
    :math:`i`-th factor matrix and :math:`w_r` is the :math:`r`-th weight.
    The ALS decomposers keep the columns at unit length and store their
    norms in the weights.

    Arguments:
    ----------
    factor_matrices: list(np.ndarray)
        One :math:`(I_i \times R)` matrix per mode, where :math:`I_i` is the
        length of mode :math:`i` and :math:`R` is the rank.
    weights: np.ndarray (optional, default=None)
        The :math:`R` component weights. If None, the weights are all 1.
    """
    def __init__(self, factor_matrices, weights=None):
        rank = factor_matrices[0].shape[1]
        num_columns = [factor_matrix.shape[1] for factor_matrix in factor_matrices]
        if any(columns != rank for columns in num_columns):
            raise ValueError(
                f'All factor matrices must have the same number of columns, got {num_columns}.'
            )
        if weights is None:
            weights = np.ones(rank)
        elif len(weights) != rank:
            raise ValueError(
                f'There must be one weight per component. '
                f'The factor matrices have {rank} columns, but there are {len(weights)} weights.'
            )

        self.rank = rank
        self.factor_matrices = list(factor_matrices)
        self.weights = np.asarray(weights, dtype=float)

    @property
    def shape(self):
        return [factor_matrix.shape[0] for factor_matrix in self.factor_matrices]

    def __getitem__(self, mode):
        return self.factor_matrices[mode]

    def __len__(self):
        return len(self.factor_matrices)

    def construct_tensor(self):
        return base.ktensor(*self.factor_matrices, weights=self.weights)

    def norm(self):
        """Frobenius norm of the described tensor, computed from the Gram matrices of the factors.
        """
        gram_hadamard = base.get_gram_hadamard(self.factor_matrices)
        return np.sqrt(abs(self.weights @ gram_hadamard @ self.weights))

    def copy(self):
        return type(self)(
            [factor_matrix.copy() for factor_matrix in self.factor_matrices],
            self.weights.copy()
        )

    def reset_weights(self):
        self.weights[...] = 1

    def normalize_components(self, update_weights=True, eps=1e-15):
        """Scale every column to unit length.

        If ``update_weights`` is True, the column norms are multiplied into
        the weights so the described tensor does not change.
        """
        for mode, factor_matrix in enumerate(self.factor_matrices):
            norms = np.linalg.norm(factor_matrix, axis=0)
            self.factor_matrices[mode] = factor_matrix/(norms + eps)
            if update_weights:
                self.weights = self.weights*norms
        return self

    def grow(self, new_rank, random_state=None):
        """Append random components until the decomposition has rank ``new_rank``.

        The existing columns are copied into the leading columns of the new
        factor matrices. The new columns are drawn uniformly from [-1, 1] and
        normalized, and the new weights are one.
        """
        if new_rank < self.rank:
            raise ValueError(f'Cannot grow a rank {self.rank} decomposition to rank {new_rank}.')
        rng = check_random_state(random_state)
        num_new = new_rank - self.rank

        for mode, factor_matrix in enumerate(self.factor_matrices):
            new_columns = rng.uniform(-1, 1, size=(factor_matrix.shape[0], num_new))
            new_columns /= np.linalg.norm(new_columns, axis=0)
            self.factor_matrices[mode] = np.concatenate([factor_matrix, new_columns], axis=1)

        self.weights = np.concatenate([self.weights, np.ones(num_new)])
        self.rank = new_rank
        return self

    @classmethod
    def random_init(cls, sizes, rank, random_method='normal', random_state=None):
        """Construct a Kruskal tensor with random unit length columns and unit weights.

        Arguments:
        ----------
        sizes : tuple[int]
            The length of each mode.
        rank : int
            Number of components.
        random_method : str
            ``'normal'`` for standard normal entries or ``'uniform'`` for
            entries drawn uniformly from [-1, 1), before the normalisation.
        random_state : None, int or np.random.Generator
            Source of the random numbers.
        """
        rng = check_random_state(random_state)
        random_method = random_method.lower()
        if random_method == 'normal':
            factor_matrices = [rng.standard_normal((size, rank)) for size in sizes]
        elif random_method == 'uniform':
            factor_matrices = [rng.uniform(-1, 1, size=(size, rank)) for size in sizes]
        else:
            raise ValueError(f"`random_method` must be either 'normal' or 'uniform', not {random_method!r}")

        return cls(factor_matrices).normalize_components(update_weights=False)

    def store_in_hdf5_group(self, group):
        self._prepare_hdf5_group(group)
        group.attrs['rank'] = self.rank
        group.attrs['num_modes'] = len(self)

        factor_group = group.create_group('factor_matrices')
        for mode, factor_matrix in enumerate(self.factor_matrices):
            factor_group[str(mode)] = factor_matrix
        group['weights'] = self.weights

    @classmethod
    def load_from_hdf5_group(cls, group):
        cls._check_hdf5_group(group)

        factor_group = group['factor_matrices']
        factor_matrices = [factor_group[str(mode)][...] for mode in range(group.attrs['num_modes'])]
        return cls(factor_matrices, group['weights'][...])

    def factor_match_score(self, decomposition, weight_penalty=True, fms_reduction='min'):
        """Factor match score between this and an estimated decomposition of at least the same rank.
        """
        if decomposition.rank < self.rank:
            raise ValueError(
                f'Cannot match {self.rank} components with a rank {decomposition.rank} decomposition.'
            )
        return metrics.factor_match_score(
            self.factor_matrices,
            decomposition.factor_matrices,
            weight_penalty=weight_penalty,
            fms_reduction=fms_reduction,
            true_weights=self.weights,
            estimated_weights=decomposition.weights,
        )

    def degeneracy(self):
        """Product over modes of the congruences between every pair of components.

        Entries close to -1 indicate two diverging components that cancel
        each other, a sign of a degenerate solution.
        """
        degeneracy_scores = np.ones((self.rank, self.rank))
        for factor_matrix in self.factor_matrices:
            degeneracy_scores *= metrics._tucker_congruence(factor_matrix, factor_matrix)
        return degeneracy_scores
