import functools
import warnings

import numpy as np
import scipy.linalg


PSEUDOINVERSE_THRESHOLD = 1e-13


def pseudoinverse(A, threshold=PSEUDOINVERSE_THRESHOLD):
    """Pseudoinverse of A computed from its singular value decomposition.

    Singular values larger than ``threshold`` are inverted. Singular values at or
    below the threshold are used as they are instead of being set to zero, so for
    (nearly) singular matrices the result only approximates the Moore-Penrose inverse.

    Parameters:
    -----------
    A: np.ndarray
        Matrix to invert.
    threshold: float
        Singular values above this value are inverted.

    Returns:
    --------
    np.ndarray:
        Matrix of shape ``A.T.shape``.
    """
    U, S, Vh = np.linalg.svd(A, full_matrices=False)
    S_inv = S.copy()
    is_large = S > threshold
    S_inv[is_large] = 1/S[is_large]

    return (Vh.T * S_inv) @ U.T


def rightsolve(A, B):
    """Solve the equation X*A = B wrt X using the SVD pseudoinverse of A.
    """
    return B @ pseudoinverse(A)


def cholesky_rightsolve(A, B):
    """Solve the equation X*A = B wrt X for a symmetric positive definite A.

    Raises ``np.linalg.LinAlgError`` if A is not positive definite.
    """
    cholesky_factor = scipy.linalg.cho_factor(A)
    return scipy.linalg.cho_solve(cholesky_factor, B.T).T


def add_svd_fallback(fast_rightsolve):
    """Wrap a rightsolve so that it uses the SVD pseudoinverse if it fails.
    """
    def fallback_rightsolve(A, B):
        try:
            return fast_rightsolve(A, B)
        except np.linalg.LinAlgError:
            warnings.warn(
                'Fast solve failed, the Gram matrix is not positive definite. '
                'Falling back to the SVD pseudoinverse.',
                RuntimeWarning
            )
            return rightsolve(A, B)
    return fallback_rightsolve


def eigh_descending(S):
    """Eigendecomposition of the symmetric matrix S, largest eigenvalue first.

    Returns:
    --------
    np.ndarray:
        The eigenvalues in descending order.
    np.ndarray:
        Matrix whose columns are the corresponding eigenvectors.
    """
    eigenvalues, eigenvectors = scipy.linalg.eigh(S)
    order = np.argsort(eigenvalues)[::-1]
    return eigenvalues[order], eigenvectors[:, order]


def lu_orthonormalize(Y):
    """Return the permuted L factor of the LU decomposition of Y.

    Used to keep the columns of power iterates well conditioned.
    """
    PL, _ = scipy.linalg.lu(Y, permute_l=True)
    return PL


def qr_orthonormalize(Y):
    """Return an orthonormal basis for the column space of Y.
    """
    Q, _ = scipy.linalg.qr(Y, mode='economic')
    return Q


def get_gram_hadamard(factor_matrices, skip=None):
    """Elementwise product of the Gram matrices of the factor matrices.

    This is the left hand side of the ALS normal equations for mode ``skip``.
    If ``skip`` is None, all factor matrices are included.
    """
    rank = factor_matrices[0].shape[1]
    V = np.ones((rank, rank))
    for i, factor_matrix in enumerate(factor_matrices):
        if i == skip:
            continue
        V *= factor_matrix.T @ factor_matrix
    return V


def khatri_rao_binary(A, B):
    """Column-wise Kronecker product of two matrices.

    A and B have to be matrices with the same number of columns. Row
    ``i*J + j`` of the product is the elementwise product of row ``i``
    of A and row ``j`` of B, where J is the number of rows in B.
    """
    if A.ndim != 2 or B.ndim != 2:
        raise ValueError(
            f'The Khatri-Rao product is only defined for matrices, got arrays with '
            f'{A.ndim} and {B.ndim} modes.'
        )
    I, K = A.shape
    J, L = B.shape
    if K != L:
        raise ValueError(
            f'The Khatri-Rao product requires the same number of columns, got {K} and {L}.'
        )

    return (A[:, np.newaxis, :]*B[np.newaxis, :, :]).reshape(I*J, K)


def khatri_rao(*factors, skip=None):
    """Column-wise Kronecker product of a sequence of matrices.

    Parameters:
    -----------
    *factors: np.ndarray
        Matrices with the same number of columns, R.
    skip: int or None (optional, default is None)
        Index of a matrix to leave out of the product.

    Returns:
    --------
    np.ndarray
        Matrix of shape (prod(I_i), R), where I_i are the row counts of the
        included matrices. The row index of the last matrix varies fastest.
    """
    if skip is not None:
        skip = skip % len(factors)
    factors = [factor for i, factor in enumerate(factors) if i != skip]
    return functools.reduce(khatri_rao_binary, factors)


def ktensor(*factors, weights=None):
    """Construct the dense tensor described by a set of CP factor matrices.
    """
    shape = [factor.shape[0] for factor in factors]
    first_factor = factors[0]
    if weights is not None:
        first_factor = first_factor * weights[np.newaxis]

    if len(factors) == 1:
        return first_factor.sum(axis=1)

    tensor = first_factor @ khatri_rao(*factors[1:]).T
    return fold(tensor, 0, shape=shape)


def matrix_khatri_rao_product(X, factors, mode):
    """Compute the matricised tensor times Khatri-Rao product along the given mode.

    The Khatri-Rao product of all factor matrices except the ``mode``-th
    is formed explicitly. X is never copied: the first and last modes use
    a reshaped view of X directly, and for a middle mode X is viewed as a
    stack of (I_mode x I_after) blocks, one per index of the leading modes,
    each multiplied with the matching rows of the Khatri-Rao product.

    Parameters
    ----------
    X : np.ndarray
        Tensor
    factors : List[np.ndarray]
        The i-th factor matrix has shape [X.shape[i], rank]
    mode : int
        Which mode to compute the product for.

    Returns
    -------
    np.ndarray
        Matrix of shape [X.shape[mode], rank], equal to
        ``unfold(X, mode) @ khatri_rao(*factors, skip=mode)``.
    """
    if X.ndim != len(factors):
        raise ValueError(f'Got {len(factors)} factor matrices for a tensor with {X.ndim} modes.')
    mode = mode % X.ndim
    length = X.shape[mode]
    krp = khatri_rao(*factors, skip=mode)

    if mode == 0:
        return X.reshape(length, -1) @ krp
    if mode == X.ndim - 1:
        return X.reshape(-1, length).T @ krp

    num_blocks = int(np.prod(X.shape[:mode]))
    block_width = krp.shape[0] // num_blocks
    blocks = X.reshape(num_blocks, length, block_width)
    return np.matmul(blocks, krp.reshape(num_blocks, block_width, -1)).sum(axis=0)


def hadamard_contract(intermediate, factor_matrix):
    """Contract the middle mode of a three-way intermediate with a factor matrix.

    ``intermediate`` has shape (left, extent, rank) and ``factor_matrix`` has
    shape (extent, rank). The extent mode is summed over and the rank mode is
    multiplied elementwise, which gives a matrix of shape (left, rank).
    """
    return np.einsum('ijr,jr->ir', intermediate, factor_matrix)


def contract_modes_except(intermediate, extents, factor_matrices, target):
    """Contract every mode of an intermediate except ``target`` with its factor matrix.

    The intermediate stores the modes listed in ``extents`` followed by a
    rank mode, flattened to a (prod(extents), rank) matrix. The modes are
    contracted one at a time from the last towards the first. Once the
    target mode is reached its extent is folded into the trailing mode,
    and the first mode is contracted out at the end so the target mode
    becomes the leading mode of the result. No Khatri-Rao product is formed.

    Parameters
    ----------
    intermediate : np.ndarray
        Matrix of shape (prod(extents), rank)
    extents : Sequence[int]
        Length of each mode in the intermediate
    factor_matrices : Sequence[np.ndarray]
        The factor matrix belonging to each mode. The entry for the target
        mode is never used.
    target : int
        The mode that is kept

    Returns
    -------
    np.ndarray
        Matrix of shape (extents[target], rank)
    """
    rank = intermediate.shape[-1]
    target_extent = extents[target]
    left_size = intermediate.size // rank
    pseudo_rank = rank

    for position in range(len(extents) - 1, 0, -1):
        extent = extents[position]
        left_size //= extent

        if position == target:
            pseudo_rank *= extent
            intermediate = intermediate.reshape(left_size, pseudo_rank)
        elif position > target:
            intermediate = intermediate.reshape(left_size, extent, rank)
            intermediate = hadamard_contract(intermediate, factor_matrices[position])
        else:
            intermediate = intermediate.reshape(left_size, extent, target_extent, rank)
            intermediate = np.einsum('ijkr,jr->ikr', intermediate, factor_matrices[position])
            intermediate = intermediate.reshape(left_size, pseudo_rank)

    if target != 0:
        intermediate = intermediate.reshape(extents[0], target_extent, rank)
        intermediate = np.einsum('ijr,ir->jr', intermediate, factor_matrices[0])

    return intermediate.reshape(target_extent, rank)


def direct_matrix_khatri_rao_product(X, factors, mode):
    """Compute the matricised tensor times Khatri Rao product without forming the Khatri-Rao product.

    First, one mode of X is contracted with its factor matrix by a matrix
    product: the first mode if ``mode`` is the last mode and the last mode
    otherwise. The remaining modes are then contracted with
    ``contract_modes_except``. The memory use is therefore bounded by the
    size of X, rather than by the size of the Khatri-Rao product.

    Parameters
    ----------
    X : np.ndarray
        Tensor
    factors : List[np.ndarray]
        List of factor matrices, the i-th factor matrix has shape [X.shape[i], rank]
    mode : int
        Which mode to compute the product for.

    Returns
    -------
    np.ndarray
        Matrix of shape [X.shape[mode], rank], equal to
        ``matrix_khatri_rao_product(X, factors, mode)``.
    """
    assert len(X.shape) == len(factors)
    num_modes = len(factors)
    mode = mode % num_modes

    if mode == num_modes - 1:
        intermediate = X.reshape(X.shape[0], -1).T @ factors[0]
        extents = X.shape[1:]
        remaining_factors = factors[1:]
        target = mode - 1
    else:
        intermediate = X.reshape(-1, X.shape[-1]) @ factors[-1]
        extents = X.shape[:-1]
        remaining_factors = factors[:-1]
        target = mode

    return contract_modes_except(intermediate, extents, remaining_factors, target)


def unfold(A, n):
    """Unfold tensor to matricizied form.

    Parameters:
    -----------
    A: np.ndarray
        Tensor to unfold.
    n: int
        Defines which mode to unfold along.

    Returns:
    --------
    M: np.ndarray
        The mode-n unfolding of `A`
    """

    M = np.moveaxis(A, n, 0).reshape(A.shape[n], -1)
    return M


def fold(M, n, shape):
    """Fold a matrix to a higher order tensor.

    The folding is structured to refold an mode-n unfolded
    tensor back to its original form.

    Parameters:
    -----------
    M: np.ndarray
        Matrix that corresponds to a mode-n unfolding of a
        higher order tensor
    n: int
        Mode of the unfolding
    shape: tuple or list
        Shape of the folded tensor

    Returns:
    --------
    np.ndarray
        Folded tensor of shape `shape`
    """
    newshape = list(shape)
    mode_dim = newshape.pop(n)
    newshape.insert(0, mode_dim)

    return np.moveaxis(np.reshape(M, newshape), 0, n)


def mode_dot(X, U, n):
    """Contract mode n of X with the rows of U.

    If X has shape (..., I_n, ...) and U has shape (I_n, K), then the
    result has shape (..., K, ...).
    """
    shape = list(X.shape)
    shape[n] = U.shape[1]
    return fold(U.T @ unfold(X, n), n, shape)
