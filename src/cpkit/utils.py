import numbers

import numpy as np

from . import base


def check_random_state(random_state):
    """Turn ``random_state`` into a ``np.random.Generator``.

    None gives a freshly seeded generator, an integer seeds a new
    generator and an existing generator is returned as it is.
    """
    if random_state is None:
        return np.random.default_rng()
    if isinstance(random_state, np.random.Generator):
        return random_state
    if isinstance(random_state, numbers.Integral):
        return np.random.default_rng(random_state)
    raise ValueError(
        f'`random_state` must be None, an integer or a np.random.Generator, not {random_state!r}'
    )


def create_random_factors(sizes, rank, random_state=None):
    rng = check_random_state(random_state)
    factors = [rng.standard_normal((size, rank)) for size in sizes]
    factors, norms = normalize_factors(factors)
    return factors, norms


def create_data(sizes, rank, noise_factor=0, random_state=None):
    """Create a tensor that is a sum of ``rank`` random rank-one components.

    Returns:
    --------
    np.ndarray:
        The tensor, with noise added if ``noise_factor`` is not 0.
    list of np.ndarray:
        The (normalized) factor matrices used to create the tensor.
    list of np.ndarray:
        The column norms of the factor matrices before normalization.
    np.ndarray:
        The noise, scaled to the same norm as the noise-free tensor.
    """
    rng = check_random_state(random_state)
    factors, norms = create_random_factors(sizes=sizes, rank=rank, random_state=rng)
    tensor = base.ktensor(*tuple(factors))

    noise = rng.standard_normal(sizes)
    noise /= np.linalg.norm(noise)
    noise *= np.linalg.norm(tensor)

    tensor += noise_factor * noise
    return tensor, factors, norms, noise


def permute_factors(permutation, factors):
    return [factor[:, permutation] for factor in factors]


def normalize_factor(factor, eps=1e-15):
    """Normalizes the columns of a factor matrix.

    Parameters:
    -----------
    factor: np.ndarray
        Factor matrix to normalize.
    eps: float
        Epsilon used to prevent division by zero.

    Returns:
    --------
    np.ndarray:
        Matrix where the columns are normalized to length one.
    np.ndarray:
        Norms of the columns before normalization.
    """
    norms = np.linalg.norm(factor, axis=0, keepdims=True)
    return factor / (norms + eps), norms


def normalize_factors(factors):
    """Normalizes the columns of each element in list of factors

    Parameters:
    -----------
    factor: list of np.ndarray
        List containing factor matrices to normalize.

    Returns:
    --------
    list of np.ndarray:
        List containing matrices where the columns are normalized
        to length one.
    list of np.ndarray:
        List containing the norms of the columns from before
        normalization.
    """
    normalized_factors = []
    norms = []

    for factor in factors:
        normalized_factor, norm = normalize_factor(factor)
        normalized_factors.append(normalized_factor)
        norms.append(norm)

    return normalized_factors, norms


def iter_checkpoints(h5_checkpoint_file):
    for groupname in sorted(h5_checkpoint_file):
        if groupname.startswith('checkpoint'):
            yield h5_checkpoint_file[groupname]
