"""
Solution-path search over submodels.

Both searches return the order in which terms enter the submodel together
with the projection KL divergence after each addition.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
from sklearn.linear_model import lars_path

from .projection import RefDist, project_submodel

logger = logging.getLogger(__name__)

SEARCH_METHODS = ("forward", "l1")


def _check_nterms_max(nterms_max: Optional[int], n_terms: int) -> int:
    if nterms_max is None:
        return n_terms
    if nterms_max < 0:
        raise ValueError(f"nterms_max must be non-negative, got {nterms_max}")
    if nterms_max > n_terms:
        logger.warning(f"nterms_max={nterms_max} > number of terms {n_terms}; capping")
        return n_terms
    return nterms_max


def forward_search(
    refdist: RefDist,
    X: np.ndarray,
    nterms_max: Optional[int] = None,
    obs_weights: Optional[np.ndarray] = None,
    term_names: Optional[List[str]] = None,
    prescreen_k: Optional[int] = None
) -> Tuple[List[int], List[float], float]:
    """
    Greedy forward search minimising the projection KL divergence.

    With `prescreen_k`, each step only projects onto the `prescreen_k`
    remaining terms most correlated with the residual of the current
    submodel's fit to the reference linear predictor.

    Args:
        refdist: Representative reference draws
        X: Design matrix (N, D)
        nterms_max: Maximum number of terms to add
        obs_weights: Observation weights used in the projections
        term_names: Column names, used to log each step
        prescreen_k: Number of candidate terms evaluated per step (all if None)

    Returns:
        Tuple of (selected column indices in order, KL after each step,
        KL of the intercept-only submodel)
    """
    X = np.asarray(X, dtype=float)
    nterms_max = _check_nterms_max(nterms_max, X.shape[1])
    if prescreen_k is not None and prescreen_k < 1:
        raise ValueError(f"prescreen_k must be positive, got {prescreen_k}")
    o = np.ones(X.shape[0]) if obs_weights is None else np.asarray(obs_weights, dtype=float)

    current = project_submodel(refdist, X, [], obs_weights)
    kl_null = current['kl']

    selected: List[int] = []
    remaining = list(range(X.shape[1]))
    kl_path: List[float] = []

    for step in range(nterms_max):
        candidates = remaining
        if prescreen_k is not None and len(remaining) > prescreen_k:
            residual = o * (refdist.weights @ (current['mu'] - refdist.mu))
            scores = np.abs(X[:, remaining].T @ residual)
            top = np.argpartition(scores, -prescreen_k)[-prescreen_k:]
            candidates = [remaining[t] for t in sorted(top)]

        best = None
        best_j = None
        for j in candidates:
            proj = project_submodel(refdist, X, selected + [j], obs_weights)
            if best is None or proj['kl'] < best['kl']:
                best = proj
                best_j = j

        current = best
        selected.append(best_j)
        remaining.remove(best_j)
        kl_path.append(best['kl'])

        if term_names is not None:
            logger.debug(f"Step {step + 1}: added {term_names[best_j]} (KL={best['kl']:.5f})")

    return selected, kl_path, kl_null


def l1_search(
    refdist: RefDist,
    X: np.ndarray,
    nterms_max: Optional[int] = None,
    obs_weights: Optional[np.ndarray] = None
) -> Tuple[List[int], List[float], float]:
    """
    Order terms by their entry into the Lasso path of the reference fit.

    The Lasso is fitted to the weighted mean of the reference linear
    predictor. Terms that never enter are appended by decreasing absolute
    correlation with it.

    Args:
        refdist: Representative reference draws
        X: Design matrix (N, D)
        nterms_max: Maximum number of terms in the path
        obs_weights: Observation weights

    Returns:
        Same as forward_search
    """
    X = np.asarray(X, dtype=float)
    N, D = X.shape
    nterms_max = _check_nterms_max(nterms_max, D)
    o = np.ones(N) if obs_weights is None else np.asarray(obs_weights, dtype=float)

    target = refdist.weights @ refdist.mu
    sw = np.sqrt(o)
    x_mean = o @ X / o.sum()
    t_mean = o @ target / o.sum()
    Xc = (X - x_mean) * sw[:, None]
    tc = (target - t_mean) * sw

    order: List[int] = []
    if D > 0:
        _, _, coefs = lars_path(Xc, tc, method='lasso')
        nonzero = np.abs(coefs) > 0
        entry = np.where(nonzero.any(axis=1), nonzero.argmax(axis=1), np.inf)
        strength = np.abs(Xc.T @ tc)
        order = sorted(range(D), key=lambda j: (entry[j], -strength[j]))

    selected = order[:nterms_max]
    kl_null = project_submodel(refdist, X, [], obs_weights)['kl']
    kl_path = [
        project_submodel(refdist, X, selected[:k], obs_weights)['kl']
        for k in range(1, len(selected) + 1)
    ]
    return selected, kl_path, kl_null


def search_path(
    refdist: RefDist,
    X: np.ndarray,
    method: str = "forward",
    nterms_max: Optional[int] = None,
    obs_weights: Optional[np.ndarray] = None,
    term_names: Optional[List[str]] = None,
    prescreen_k: Optional[int] = None
) -> Tuple[List[int], List[float], float]:
    """Run the requested search method ('forward' or 'l1'); prescreen_k applies to forward."""
    if method == "forward":
        return forward_search(refdist, X, nterms_max, obs_weights, term_names, prescreen_k)
    elif method == "l1":
        return l1_search(refdist, X, nterms_max, obs_weights)
    else:
        raise ValueError(
            f"Unknown search method: {method!r}. Choose from: {', '.join(SEARCH_METHODS)}"
        )
