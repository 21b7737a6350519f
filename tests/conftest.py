"""
Shared fixtures: a reference posterior built from least-squares draws on
data where only the first two of five predictors matter.
"""

import sys
from pathlib import Path

import numpy as np
import pytest
import matplotlib

matplotlib.use("Agg")

sys.path.insert(0, str(Path(__file__).parent.parent))

from projsel.model import ReferencePosterior


def make_reference(n_obs=80, beta=(2.0, -1.5, 0.0, 0.0, 0.0), sigma=1.0,
                   n_draws=200, seed=0):
    rng = np.random.default_rng(seed)
    beta = np.asarray(beta, dtype=float)
    X = rng.standard_normal((n_obs, len(beta)))
    y = 0.5 + X @ beta + sigma * rng.standard_normal(n_obs)

    Z = np.column_stack([np.ones(n_obs), X])
    coef_hat, *_ = np.linalg.lstsq(Z, y, rcond=None)
    resid = y - Z @ coef_hat
    s2 = resid @ resid / (n_obs - Z.shape[1])
    cov = s2 * np.linalg.inv(Z.T @ Z)

    draws = rng.multivariate_normal(coef_hat, cov, size=n_draws)
    sigma_draws = np.sqrt(s2) * np.exp(0.05 * rng.standard_normal(n_draws))

    return ReferencePosterior(
        X, y,
        alpha=draws[:, 0],
        beta=draws[:, 1:],
        sigma=sigma_draws,
        term_names=[f"x{j + 1}" for j in range(len(beta))]
    )


@pytest.fixture
def reference():
    return make_reference()
