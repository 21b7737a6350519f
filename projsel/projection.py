"""
Projection of the reference posterior onto submodels.

For a Gaussian model, minimising the KL divergence from the reference
predictive distribution to a submodel reduces to least squares on the
reference linear predictor, draw by draw (or cluster by cluster), with the
projected noise variance absorbing the lost fit.
"""

import logging
from typing import Dict, Any, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.cluster import KMeans

from .model import ReferencePosterior
from .posterior import posterior_summary

logger = logging.getLogger(__name__)


class RefDist:
    """
    Representative draws of the reference predictive distribution.

    mu: (C, N) linear predictors, var: (C,) noise variances, weights: (C,)
    summing to one.
    """

    def __init__(self, mu: np.ndarray, var: np.ndarray, weights: np.ndarray):
        self.mu = np.atleast_2d(mu)
        self.var = np.atleast_1d(var)
        self.weights = np.atleast_1d(weights)

    @property
    def ndraws(self) -> int:
        return self.mu.shape[0]


def _normalize(weights: np.ndarray) -> np.ndarray:
    total = weights.sum()
    if not np.isfinite(total) or total <= 0:
        raise ValueError("Draw weights must be non-negative with a positive sum")
    return weights / total


def _collapse(mu: np.ndarray, s2: np.ndarray, w: np.ndarray):
    # Weighted mean of the linear predictors; the spread around it is added
    # to the noise variance
    w = _normalize(w)
    mu_c = w @ mu
    dispersion = ((mu - mu_c) ** 2).mean(axis=1)
    return mu_c, float(w @ (s2 + dispersion))


def get_refdist(
    ref: ReferencePosterior,
    ndraws: Optional[int] = None,
    nclusters: Optional[int] = None,
    draw_weights: Optional[np.ndarray] = None,
    seed: int = 0
) -> RefDist:
    """
    Reduce the reference posterior to representative draws.

    Args:
        ref: Reference posterior
        ndraws: Number of evenly thinned draws (all draws if None)
        nclusters: Number of clusters; 1 collapses to the weighted mean
        draw_weights: Non-negative weights per draw (e.g. PSIS weights)
        seed: Random seed for clustering

    Returns:
        RefDist
    """
    if ndraws is not None and nclusters is not None:
        raise ValueError("Specify at most one of ndraws and nclusters")

    mu = ref.mu()
    s2 = ref.sigma ** 2
    S = ref.ndraws
    w = np.full(S, 1.0 / S) if draw_weights is None else _normalize(np.asarray(draw_weights, dtype=float))

    if nclusters is not None and nclusters < 1:
        raise ValueError(f"nclusters must be positive, got {nclusters}")

    if nclusters == 1:
        mu_c, var_c = _collapse(mu, s2, w)
        return RefDist(mu_c[None, :], np.array([var_c]), np.array([1.0]))

    if nclusters is not None and nclusters < S:
        km = KMeans(n_clusters=nclusters, n_init=10, random_state=seed)
        labels = km.fit_predict(mu, sample_weight=w)

        mus, variances, weights = [], [], []
        for c in range(nclusters):
            members = labels == c
            if not members.any() or w[members].sum() <= 0:
                continue
            mu_c, var_c = _collapse(mu[members], s2[members], w[members])
            mus.append(mu_c)
            variances.append(var_c)
            weights.append(w[members].sum())
        return RefDist(np.array(mus), np.array(variances), _normalize(np.array(weights)))

    if ndraws is not None and ndraws < S:
        idx = np.linspace(0, S - 1, ndraws).round().astype(int)
    else:
        idx = np.arange(S)
    return RefDist(mu[idx], s2[idx], _normalize(w[idx]))


def project_submodel(
    refdist: RefDist,
    X: np.ndarray,
    term_idx: Sequence[int],
    obs_weights: Optional[np.ndarray] = None
) -> Dict[str, Any]:
    """
    Project the representative draws onto the submodel using `term_idx`.

    Args:
        refdist: Representative reference draws
        X: Full design matrix (N, D), without intercept
        term_idx: Column indices of the submodel terms
        obs_weights: Observation weights (N,); zero drops an observation

    Returns:
        Dictionary with coef (C, k+1, intercept first), sigma (C,),
        mu (C, N), kl (weighted mean over draws), kl_draws (C,), weights
    """
    X = np.asarray(X, dtype=float)
    N = X.shape[0]
    term_idx = list(term_idx)
    o = np.ones(N) if obs_weights is None else np.asarray(obs_weights, dtype=float)

    Z = np.column_stack([np.ones(N), X[:, term_idx]])
    sw = np.sqrt(o)
    coef, *_ = np.linalg.lstsq(Z * sw[:, None], (refdist.mu * sw[None, :]).T, rcond=None)
    coef = coef.T
    mu_perp = coef @ Z.T

    lost_fit = ((refdist.mu - mu_perp) ** 2 * o).sum(axis=1) / o.sum()
    sigma2 = refdist.var + lost_fit
    kl_draws = 0.5 * np.log(sigma2 / refdist.var)

    return {
        'coef': coef,
        'sigma': np.sqrt(sigma2),
        'mu': mu_perp,
        'kl': float(refdist.weights @ kl_draws),
        'kl_draws': kl_draws,
        'weights': refdist.weights,
        'term_idx': term_idx
    }


class ProjectedPosterior:
    """
    Projected draws of a submodel: intercept, coefficients and sigma.
    """

    def __init__(
        self,
        term_names: List[str],
        term_idx: List[int],
        coef: np.ndarray,
        sigma: np.ndarray,
        weights: np.ndarray,
        kl: float
    ):
        self.term_names = list(term_names)
        self.term_idx = list(term_idx)
        self.coef = coef
        self.sigma = sigma
        self.weights = weights
        self.kl = kl

    @property
    def ndraws(self) -> int:
        return len(self.sigma)

    def draws(self) -> pd.DataFrame:
        """Draws as a DataFrame with columns Intercept, terms..., sigma."""
        df = pd.DataFrame(self.coef, columns=['Intercept'] + self.term_names)
        df['sigma'] = self.sigma
        return df

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Linear predictor per draw for the full design matrix X, shape (C, N)."""
        X = np.asarray(X, dtype=float)
        Z = np.column_stack([np.ones(X.shape[0]), X[:, self.term_idx]])
        return self.coef @ Z.T

    def log_predictive_density(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        """Pointwise log density of y per draw, shape (C, N)."""
        y = np.asarray(y, dtype=float).ravel()
        return stats.norm.logpdf(y[None, :], self.predict(X), self.sigma[:, None])

    def summary(self, prob: float = 0.9) -> pd.DataFrame:
        return posterior_summary(self.draws(), weights=self.weights, prob=prob)


def resolve_terms(
    ref: ReferencePosterior,
    terms: Optional[Sequence[str]] = None,
    nterms: Optional[int] = None,
    varsel_result=None
) -> List[str]:
    """Submodel terms from explicit names or from a selection result's path."""
    if terms is not None:
        unknown = [t for t in terms if t not in ref.term_names]
        if unknown:
            raise ValueError(f"Unknown terms {unknown}. Available terms: {ref.term_names}")
        return list(terms)

    if varsel_result is None:
        raise ValueError("Specify terms, or a selection result to take them from")

    if nterms is None:
        nterms = varsel_result.suggest_size()
        if nterms is None:
            raise ValueError("No suggested submodel size; pass nterms explicitly")

    path = varsel_result.solution_terms
    if not 0 <= nterms <= len(path):
        raise ValueError(
            f"nterms={nterms} is outside the searched sizes 0..{len(path)}"
        )
    return list(path[:nterms])


def project(
    ref: ReferencePosterior,
    terms: Optional[Sequence[str]] = None,
    nterms: Optional[int] = None,
    varsel_result=None,
    ndraws: Optional[int] = 400,
    nclusters: Optional[int] = None,
    seed: int = 0
) -> ProjectedPosterior:
    """
    Project the reference posterior onto a submodel.

    Args:
        ref: Reference posterior
        terms: Submodel term names (takes precedence)
        nterms: Submodel size along the selection path
        varsel_result: Selection result supplying the path and suggested size
        ndraws: Number of projected draws (ignored when nclusters is given)
        nclusters: Number of clusters to project instead of draws
        seed: Random seed for clustering

    Returns:
        ProjectedPosterior
    """
    names = resolve_terms(ref, terms, nterms, varsel_result)
    term_idx = [ref.term_names.index(name) for name in names]

    refdist = get_refdist(
        ref,
        ndraws=ndraws if nclusters is None else None,
        nclusters=nclusters,
        seed=seed
    )
    proj = project_submodel(refdist, ref.X, term_idx)

    logger.info(
        f"Projected {refdist.ndraws} draws onto {len(names)} terms "
        f"{names}: KL={proj['kl']:.5f}"
    )

    return ProjectedPosterior(
        term_names=names,
        term_idx=term_idx,
        coef=proj['coef'],
        sigma=proj['sigma'],
        weights=proj['weights'],
        kl=proj['kl']
    )
