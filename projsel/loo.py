"""
PSIS leave-one-out cross-validation.

Pareto smoothing of the importance ratios is delegated to ArviZ; this
module only turns pointwise log-likelihoods into normalized leave-one-out
log weights and elpd estimates.
"""

import logging
from typing import Dict, Any, Optional, Tuple

import numpy as np
import arviz as az
from scipy.special import logsumexp

logger = logging.getLogger(__name__)

# Pareto k above this makes the importance-sampling estimate unreliable
K_THRESHOLD = 0.7


def relative_eff(log_lik: np.ndarray, n_chains: int = 1) -> float:
    """
    Relative MCMC efficiency of the likelihood draws, for PSIS.

    ESS of exp(log_lik) per observation over the chain-grouped draws,
    averaged over observations and divided by the number of draws.

    Args:
        log_lik: Pointwise log-likelihood, shape (S draws, N observations),
            chains stacked one after another
        n_chains: Number of chains the draws come from

    Returns:
        Relative efficiency
    """
    log_lik = np.asarray(log_lik, dtype=float)
    S, N = log_lik.shape
    if n_chains < 1 or S % n_chains:
        raise ValueError(f"{S} draws cannot be split into {n_chains} chains")

    lik = np.exp(log_lik).reshape(n_chains, S // n_chains, N)
    ess = az.ess({"lik": lik}, method="mean")["lik"].values
    return float(np.mean(ess) / S)


def thinned_reff(reff: float, ndraws: int, ndraws_thinned: int) -> float:
    """Relative efficiency after thinning `ndraws` draws to `ndraws_thinned`."""
    if ndraws_thinned >= ndraws:
        return reff
    return min(1.0, reff * ndraws / ndraws_thinned)


def psis_log_weights(log_lik: np.ndarray, reff: float = 1.0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pareto-smoothed leave-one-out log weights.

    Args:
        log_lik: Pointwise log-likelihood, shape (S draws, N observations)
        reff: Relative MCMC efficiency

    Returns:
        Tuple of (log weights (S, N), normalized over draws; Pareto k (N,))
    """
    log_lik = np.asarray(log_lik, dtype=float)
    if log_lik.ndim != 2:
        raise ValueError(f"log_lik must be 2-dimensional (draws, obs), got shape {log_lik.shape}")

    lw, pareto_k = az.psislw(-log_lik.T.copy(), reff=reff)
    return np.asarray(lw).T, np.asarray(pareto_k)


def elpd_loo_pointwise(log_lik: np.ndarray, lw: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Pointwise PSIS-LOO expected log predictive density, shape (N,).

    `lw` are normalized log weights from psis_log_weights; computed from
    `log_lik` when not given.
    """
    if lw is None:
        lw, _ = psis_log_weights(log_lik)
    return logsumexp(lw + log_lik, axis=0)


def loo_summary(log_lik: np.ndarray, reff: float = 1.0) -> Dict[str, Any]:
    """
    PSIS-LOO estimate for a fitted model.

    Args:
        log_lik: Pointwise log-likelihood, shape (S, N)
        reff: Relative MCMC efficiency

    Returns:
        Dictionary with elpd_loo, se, p_loo, lppd, pointwise values and
        Pareto k diagnostics
    """
    log_lik = np.asarray(log_lik, dtype=float)
    S, N = log_lik.shape

    lw, pareto_k = psis_log_weights(log_lik, reff=reff)
    pointwise = elpd_loo_pointwise(log_lik, lw)
    lppd = logsumexp(log_lik, axis=0) - np.log(S)

    n_high_k = int((pareto_k > K_THRESHOLD).sum())
    if n_high_k > 0:
        logger.warning(
            f"{n_high_k} of {N} observations have Pareto k > {K_THRESHOLD}; "
            f"PSIS-LOO estimates for them are unreliable"
        )

    return {
        'elpd_loo': float(pointwise.sum()),
        'se': float(np.sqrt(N * np.var(pointwise))),
        'p_loo': float(lppd.sum() - pointwise.sum()),
        'lppd': float(lppd.sum()),
        'pointwise': pointwise,
        'pareto_k': pareto_k,
        'n_high_k': n_high_k
    }
