"""
Dimensionality reduction of the reference tensor before a CP decomposition.

Both transforms return a compressed core tensor and one transform matrix
with orthonormal columns per mode, so that

    X ~ core x_0 U_0 x_1 U_1 ... x_{N-1} U_{N-1}.

A CP decomposition of the core is mapped back to the original tensor by
multiplying each factor matrix with the transform of its mode.
"""
import numpy as np

from . import base
from .utils import check_random_state

__all__ = ['tucker_compression', 'randomized_compression']


def tucker_compression(X, tcut_svd, symmetries=None):
    """Sequentially truncated higher order SVD of X.

    For each mode in turn, the eigenvectors of the Gram matrix of the current
    core's unfolding are computed. Eigenvectors with eigenvalues smaller than
    ``tcut_svd**2 * ||X||**2 / N`` are discarded and the core is contracted
    with the remaining ones before moving on to the next mode.

    Parameters
    ----------
    X : np.ndarray
        Tensor to compress
    tcut_svd : float
        Relative truncation threshold.
    symmetries : list(int) (optional)
        Entry ``i`` is the mode whose transform mode ``i`` reuses, so the
        core stays symmetric in modes that share a factor matrix.

    Returns
    -------
    core : np.ndarray
        The compressed tensor.
    transforms : list(np.ndarray)
        One matrix of shape (X.shape[i], core.shape[i]) per mode.
    """
    num_modes = X.ndim
    threshold = tcut_svd**2 * np.linalg.norm(X)**2 / num_modes

    core = X
    transforms = []
    for mode in range(num_modes):
        if _is_symmetric_copy(symmetries, mode):
            transform = transforms[symmetries[mode]]
        else:
            unfolded = base.unfold(core, mode)
            eigenvalues, eigenvectors = base.eigh_descending(unfolded @ unfolded.T)

            num_kept = max(1, int(np.sum(eigenvalues >= threshold)))
            transform = eigenvectors[:, :num_kept]

        core = base.mode_dot(core, transform, mode)
        transforms.append(transform)

    return core, transforms


def randomized_compression(
    X, compression_rank, oversample=10, power_iterations=2, random_state=None, symmetries=None
):
    """Compress every mode of X with a randomized range finder.

    For each mode, the unfolding of the current core is multiplied by a
    Gaussian matrix with ``compression_rank + oversample`` columns. The
    spectrum is sharpened with ``power_iterations`` power iterations, where
    the iterates are kept well conditioned with LU decompositions. An
    orthonormal basis of the sketch is found with a QR decomposition and
    truncated to the ``compression_rank`` leading left singular vectors of
    the projected unfolding. Modes that share a factor matrix according to
    ``symmetries`` reuse the transform of the mode they share it with.

    Returns
    -------
    core : np.ndarray
        The compressed tensor.
    transforms : list(np.ndarray)
        One matrix of shape (X.shape[i], core.shape[i]) per mode.
    """
    if compression_rank <= 0:
        raise ValueError(f'The compression rank must be positive, not {compression_rank}.')
    if oversample < 0:
        raise ValueError(f'The oversampling cannot be negative, not {oversample}.')

    rng = check_random_state(random_state)

    core = X
    transforms = []
    for mode in range(X.ndim):
        if _is_symmetric_copy(symmetries, mode):
            transform = transforms[symmetries[mode]]
        else:
            transform = _randomized_range(
                base.unfold(core, mode), compression_rank, oversample, power_iterations, rng
            )

        core = base.mode_dot(core, transform, mode)
        transforms.append(transform)

    return core, transforms


def _is_symmetric_copy(symmetries, mode):
    return symmetries is not None and symmetries[mode] != mode


def _randomized_range(unfolded, compression_rank, oversample, power_iterations, rng):
    """Orthonormal basis for the ``compression_rank`` dominant left singular vectors of ``unfolded``."""
    sketch = unfolded @ rng.standard_normal((unfolded.shape[1], compression_rank + oversample))

    for _ in range(power_iterations):
        sketch = base.lu_orthonormalize(sketch)
        sketch = base.lu_orthonormalize(unfolded.T @ sketch)
        sketch = unfolded @ sketch

    Q = base.qr_orthonormalize(sketch)
    U, _, _ = np.linalg.svd(Q.T @ unfolded, full_matrices=False)
    return Q @ U[:, :compression_rank]
