import itertools

import numpy as np

from . import utils


def _tucker_congruence(A1, A2):
    """Cosine of the angle between every column of A1 and every column of A2."""
    A1_normalised = A1/np.linalg.norm(A1, axis=0)
    A2_normalised = A2/np.linalg.norm(A2, axis=0)
    return A1_normalised.T@A2_normalised


def _component_weights(factors, weights):
    _, norms = utils.normalize_factors(factors)
    component_weights = np.prod(np.concatenate(norms), axis=0)
    if weights is not None:
        component_weights = component_weights*np.abs(weights)
    return component_weights


def _congruence_matrix(true_factors, estimated_factors, weight_penalty, true_weights, estimated_weights):
    """Score of every pair of a true and an estimated component.

    The score of a pair is the product of the absolute congruences over
    all modes, multiplied with one minus the relative difference of the
    component weights if ``weight_penalty`` is True.
    """
    scores = 1
    for true_factor, estimated_factor in zip(true_factors, estimated_factors):
        scores = scores*np.abs(_tucker_congruence(true_factor, estimated_factor))

    if weight_penalty:
        true_weights = _component_weights(true_factors, true_weights)[:, np.newaxis]
        estimated_weights = _component_weights(estimated_factors, estimated_weights)[np.newaxis]
        scores = scores*(1 - np.abs(true_weights - estimated_weights)/np.maximum(true_weights, estimated_weights))
    return scores


def factor_match_score(
    true_factors, estimated_factors, weight_penalty=True, fms_reduction="min",
    true_weights=None, estimated_weights=None
):
    """Factor match score between two sets of factor matrices.

    Every true component is matched with a distinct estimated component,
    and all such matchings are searched for the best one. The weight of a
    component is the product of its column norms, times the entry of
    ``true_weights`` or ``estimated_weights`` if given.

    Arguments
    ---------
    true_factors: list(np.ndarray)
        Factor matrices of the known decomposition.
    estimated_factors: list(np.ndarray)
        Factor matrices of the estimated decomposition, with at least as
        many columns as ``true_factors``.
    weight_penalty: bool
        Whether differences in component weights lower the score.
    fms_reduction: str
        ``"min"`` or ``"mean"``, how the scores of the matched components
        are combined.

    Returns
    -------
    float
        The best score.
    tuple(int)
        The estimated component matched with each true component.
    """
    if fms_reduction == "min":
        fms_reduction = np.min
    elif fms_reduction == "mean":
        fms_reduction = np.mean
    else:
        raise ValueError('`fms_reduction` must be either "min" or "mean".')

    true_factors = [np.atleast_2d(factor.T).T for factor in true_factors]
    estimated_factors = [np.atleast_2d(factor.T).T for factor in estimated_factors]
    rank = true_factors[0].shape[1]
    estimated_rank = estimated_factors[0].shape[1]

    scores = _congruence_matrix(
        true_factors, estimated_factors, weight_penalty, true_weights, estimated_weights
    )

    max_fms = -1
    best_permutation = None
    for permutation in itertools.permutations(range(estimated_rank), r=rank):
        fms = fms_reduction(scores[np.arange(rank), permutation])
        if fms > max_fms:
            max_fms = fms
            best_permutation = permutation
    return max_fms, best_permutation
