"""
Model Training Module - Phase 3
================================

Fits the reference model: a Bayesian Gaussian linear regression sampled
with NumPyro's NUTS.

Features:
    - Regularized horseshoe or weakly informative normal coefficient prior
    - Multi-chain sampling, optionally in parallel across host devices
    - Posterior draws exposed as a ReferencePosterior for selection/projection
    - Convergence diagnostics through ArviZ
    - Model persistence (save/load)
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from datetime import datetime

import numpy as np
import pandas as pd
import joblib
import jax
import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS
import arviz as az
from scipy import stats

logger = logging.getLogger(__name__)

PRIORS = ("horseshoe", "normal")


def configure_cores(n_cores: int) -> None:
    """
    Expose `n_cores` host devices to JAX so that chains run in parallel.

    Must be called before JAX performs any computation.
    """
    numpyro.set_host_device_count(int(n_cores))
    logger.info(f"NumPyro host device count set to {n_cores}")


def horseshoe_global_scale(expected_relevant: float, n_terms: int, n_obs: int) -> float:
    """
    Prior guess for the horseshoe global scale (divided by sigma).

    tau0 = p0 / (D - p0) / sqrt(N), Piironen & Vehtari (2017).
    """
    if not 0 < expected_relevant < n_terms:
        raise ValueError(
            f"expected_relevant must be in (0, {n_terms}), got {expected_relevant}"
        )
    return expected_relevant / (n_terms - expected_relevant) / np.sqrt(n_obs)


def linear_regression(
    X=None,
    y=None,
    prior="horseshoe",
    loc_icept=0.0,
    scale_icept=1.0,
    scale_beta=1.0,
    tau0=1.0,
    slab_scale=2.0,
    slab_df=4.0,
    sigma_rate=1.0
):
    """NumPyro model for Gaussian linear regression.

    With ``prior="horseshoe"`` the coefficients get a regularized horseshoe
    prior whose global scale is ``tau0 * sigma``; large coefficients are
    softly bounded by a Student-t slab with scale ``slab_scale`` and
    ``slab_df`` degrees of freedom. With ``prior="normal"`` they get
    independent ``Normal(0, scale_beta)`` priors.
    """
    N, D = X.shape
    alpha = numpyro.sample("alpha", dist.Normal(loc_icept, scale_icept))
    sigma = numpyro.sample("sigma", dist.Exponential(sigma_rate))

    if D == 0:
        beta = jnp.zeros(0)
    elif prior == "horseshoe":
        tau = numpyro.sample("tau", dist.HalfCauchy(tau0 * sigma))
        caux = numpyro.sample("caux", dist.InverseGamma(0.5 * slab_df, 0.5 * slab_df))
        c2 = slab_scale ** 2 * caux
        with numpyro.plate("terms", D):
            lam = numpyro.sample("lambda", dist.HalfCauchy(1.0))
            z = numpyro.sample("z", dist.Normal(0.0, 1.0))
        lam_tilde = jnp.sqrt(c2 * lam ** 2 / (c2 + tau ** 2 * lam ** 2))
        beta = numpyro.deterministic("beta", z * lam_tilde * tau)
    else:
        with numpyro.plate("terms", D):
            beta = numpyro.sample("beta", dist.Normal(0.0, scale_beta))

    mu = alpha + X @ beta
    with numpyro.plate("obs", N):
        numpyro.sample("y", dist.Normal(mu, sigma), obs=y)


class ReferencePosterior:
    """
    Posterior draws of the reference model together with its data.

    Draw arrays: alpha (S,), beta (S, D), sigma (S,). Data: X (N, D), y (N,).
    With n_chains > 1 the draws are the chains stacked one after another.
    """

    def __init__(
        self,
        X: np.ndarray,
        y: np.ndarray,
        alpha: np.ndarray,
        beta: np.ndarray,
        sigma: np.ndarray,
        term_names: Optional[List[str]] = None,
        n_chains: int = 1
    ):
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        alpha = np.asarray(alpha, dtype=float).ravel()
        sigma = np.asarray(sigma, dtype=float).ravel()
        beta = np.asarray(beta, dtype=float).reshape(len(alpha), -1)

        if X.ndim != 2 or X.shape[0] != len(y):
            raise ValueError(f"X has shape {X.shape} but y has {len(y)} observations")
        if beta.shape[1] != X.shape[1]:
            raise ValueError(
                f"beta draws have {beta.shape[1]} coefficients but X has {X.shape[1]} columns"
            )
        if len(sigma) != len(alpha):
            raise ValueError(f"{len(alpha)} alpha draws but {len(sigma)} sigma draws")

        if term_names is None:
            term_names = [f"x{j + 1}" for j in range(X.shape[1])]
        if len(term_names) != X.shape[1]:
            raise ValueError(f"{len(term_names)} term names for {X.shape[1]} columns")
        if n_chains < 1 or len(alpha) % n_chains:
            raise ValueError(f"{len(alpha)} draws cannot be split into {n_chains} chains")

        self.X = X
        self.y = y
        self.alpha = alpha
        self.beta = beta
        self.sigma = sigma
        self.term_names = list(term_names)
        self.n_chains = n_chains

    @property
    def ndraws(self) -> int:
        return len(self.alpha)

    @property
    def nobs(self) -> int:
        return len(self.y)

    def mu(self, X: Optional[np.ndarray] = None) -> np.ndarray:
        """Linear predictor per draw, shape (S, N)."""
        X = self.X if X is None else np.asarray(X, dtype=float)
        return self.alpha[:, None] + self.beta @ X.T

    def log_lik(self) -> np.ndarray:
        """Pointwise log-likelihood per draw, shape (S, N)."""
        return stats.norm.logpdf(self.y[None, :], self.mu(), self.sigma[:, None])

    def thin(self, ndraws: Optional[int] = None, seed: Optional[int] = None) -> 'ReferencePosterior':
        """
        Keep `ndraws` draws: evenly spaced, or a random subset if `seed` is given.

        The thinned draws are treated as a single chain.
        """
        if ndraws is None or ndraws >= self.ndraws:
            return self
        if seed is None:
            idx = np.linspace(0, self.ndraws - 1, ndraws).round().astype(int)
        else:
            rng = np.random.default_rng(seed)
            idx = np.sort(rng.choice(self.ndraws, size=ndraws, replace=False))
        return ReferencePosterior(
            self.X, self.y, self.alpha[idx], self.beta[idx], self.sigma[idx], self.term_names
        )

    def subset(self, idx) -> 'ReferencePosterior':
        """Same draws restricted to the observations in `idx`."""
        idx = np.asarray(idx)
        return ReferencePosterior(
            self.X[idx], self.y[idx], self.alpha, self.beta, self.sigma, self.term_names,
            n_chains=self.n_chains
        )

    def draws(self) -> pd.DataFrame:
        """Draws as a DataFrame with columns Intercept, terms..., sigma."""
        df = pd.DataFrame(self.beta, columns=self.term_names)
        df.insert(0, 'Intercept', self.alpha)
        df['sigma'] = self.sigma
        return df


class BayesianLinearRegression:
    """
    Bayesian linear regression reference model sampled with NUTS.
    """

    def __init__(
        self,
        prior: str = "horseshoe",
        expected_relevant: float = 3,
        slab_scale: float = 2.0,
        slab_df: float = 4.0,
        num_warmup: int = 1000,
        num_samples: int = 1000,
        num_chains: int = 4,
        target_accept_prob: float = 0.95,
        max_tree_depth: int = 10,
        seed: int = 42,
        progress_bar: bool = False
    ):
        """
        Initialize the model with hyperparameters.

        Args:
            prior: 'horseshoe' or 'normal'
            expected_relevant: Prior guess p0 of the number of relevant terms
            slab_scale: Scale of the horseshoe slab
            slab_df: Degrees of freedom of the horseshoe slab
            num_warmup: Warmup iterations per chain
            num_samples: Posterior draws per chain
            num_chains: Number of chains
            target_accept_prob: NUTS target acceptance probability
            max_tree_depth: NUTS maximum tree depth
            seed: Random seed
            progress_bar: Whether to show NumPyro progress bars
        """
        if prior not in PRIORS:
            raise ValueError(f"Unknown prior: {prior!r}. Choose from: {', '.join(PRIORS)}")

        self.prior = prior
        self.expected_relevant = expected_relevant
        self.slab_scale = slab_scale
        self.slab_df = slab_df
        self.num_warmup = num_warmup
        self.num_samples = num_samples
        self.num_chains = num_chains
        self.target_accept_prob = target_accept_prob
        self.max_tree_depth = max_tree_depth
        self.seed = seed
        self.progress_bar = progress_bar

        self.mcmc: Optional[MCMC] = None
        self.samples_: Dict[str, np.ndarray] = {}
        self.X_: Optional[np.ndarray] = None
        self.y_: Optional[np.ndarray] = None
        self.term_names_: List[str] = []
        self.training_info: Dict[str, Any] = {}
        self._is_fitted = False

    def get_params(self) -> Dict[str, Any]:
        return {
            'prior': self.prior,
            'expected_relevant': self.expected_relevant,
            'slab_scale': self.slab_scale,
            'slab_df': self.slab_df,
            'num_warmup': self.num_warmup,
            'num_samples': self.num_samples,
            'num_chains': self.num_chains,
            'target_accept_prob': self.target_accept_prob,
            'max_tree_depth': self.max_tree_depth,
            'seed': self.seed,
            'progress_bar': self.progress_bar
        }

    def _model_kwargs(self, X: np.ndarray, y: np.ndarray) -> Dict[str, Any]:
        N, D = X.shape
        sd_y = float(np.std(y)) or 1.0
        kwargs = {
            'prior': self.prior,
            'loc_icept': float(np.mean(y)),
            'scale_icept': 2.5 * sd_y,
            'sigma_rate': 1.0 / sd_y,
        }
        if D > 0 and self.prior == "horseshoe":
            kwargs['tau0'] = horseshoe_global_scale(self.expected_relevant, D, N)
            kwargs['slab_scale'] = self.slab_scale
            kwargs['slab_df'] = self.slab_df
        elif D > 0:
            sd_x = X.std(axis=0)
            sd_x[sd_x == 0] = 1.0
            kwargs['scale_beta'] = jnp.asarray(2.5 * sd_y / sd_x)
        return kwargs

    def fit(
        self,
        X,
        y,
        term_names: Optional[List[str]] = None
    ) -> 'BayesianLinearRegression':
        """
        Sample the posterior given the data.

        Args:
            X: Design matrix (N, D), DataFrame or array, without intercept column
            y: Response (N,)
            term_names: Names of the design-matrix columns

        Returns:
            Self for method chaining
        """
        if term_names is None and isinstance(X, pd.DataFrame):
            term_names = list(X.columns)
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()

        for name, arr in [("X", X), ("y", y)]:
            if not np.all(np.isfinite(arr)):
                n_bad = int((~np.isfinite(arr)).sum())
                raise ValueError(
                    f"{name} contains {n_bad} non-finite values (NaN/Inf). "
                    f"Clean the data before fitting."
                )
        if X.shape[0] != len(y):
            raise ValueError(f"X has {X.shape[0]} rows but y has {len(y)} values")

        start_time = datetime.now()

        logger.info("=" * 60)
        logger.info("STARTING REFERENCE MODEL FIT (Phase 3)")
        logger.info("=" * 60)
        logger.info(f"Data shape: X={X.shape}, y={y.shape}")
        logger.info(f"Prior: {self.prior}")
        logger.info(f"Chains: {self.num_chains} × {self.num_samples} draws "
                    f"({self.num_warmup} warmup)")

        chain_method = "parallel" if jax.local_device_count() >= self.num_chains else "sequential"
        kernel = NUTS(
            linear_regression,
            target_accept_prob=self.target_accept_prob,
            max_tree_depth=self.max_tree_depth
        )
        self.mcmc = MCMC(
            kernel,
            num_warmup=self.num_warmup,
            num_samples=self.num_samples,
            num_chains=self.num_chains,
            chain_method=chain_method,
            progress_bar=self.progress_bar
        )
        self.mcmc.run(
            jax.random.PRNGKey(self.seed),
            X=jnp.asarray(X),
            y=jnp.asarray(y),
            **self._model_kwargs(X, y)
        )

        self.samples_ = {
            k: np.asarray(v) for k, v in self.mcmc.get_samples(group_by_chain=True).items()
        }
        if 'beta' not in self.samples_:
            self.samples_['beta'] = np.zeros(self.samples_['alpha'].shape + (0,))

        self.X_ = X
        self.y_ = y
        self.term_names_ = list(term_names) if term_names is not None else [
            f"x{j + 1}" for j in range(X.shape[1])
        ]

        n_divergent = int(np.asarray(self.mcmc.get_extra_fields()['diverging']).sum())
        end_time = datetime.now()
        duration = (end_time - start_time).total_seconds()

        self.training_info = {
            'training_duration_seconds': duration,
            'n_samples': X.shape[0],
            'n_terms': X.shape[1],
            'n_draws': self.num_chains * self.num_samples,
            'n_divergent': n_divergent,
            'chain_method': chain_method,
            'trained_at': end_time.isoformat()
        }
        if n_divergent > 0:
            logger.warning(f"{n_divergent} divergent transitions after warmup")

        self._is_fitted = True

        logger.info("=" * 60)
        logger.info(f"REFERENCE MODEL FIT COMPLETE in {duration:.2f} seconds")
        logger.info("=" * 60)

        return self

    def _check_fitted(self) -> None:
        if not self._is_fitted:
            raise ValueError("Model must be fitted first. Call fit() first.")

    def _flat(self, name: str) -> np.ndarray:
        arr = self.samples_[name]
        return arr.reshape((-1,) + arr.shape[2:])

    def posterior(self) -> ReferencePosterior:
        """Posterior draws (chains pooled) together with the training data."""
        self._check_fitted()
        return ReferencePosterior(
            self.X_, self.y_,
            alpha=self._flat('alpha'),
            beta=self._flat('beta'),
            sigma=self._flat('sigma'),
            term_names=self.term_names_,
            n_chains=self.samples_['alpha'].shape[0]
        )

    def predict(self, X) -> np.ndarray:
        """Posterior mean of the linear predictor for new data."""
        self._check_fitted()
        X = np.asarray(X, dtype=float)
        if X.shape[1] != len(self.term_names_):
            raise ValueError(
                f"Expected {len(self.term_names_)} features, but got {X.shape[1]}"
            )
        return self._flat('alpha').mean() + X @ self._flat('beta').mean(axis=0)

    def refit(self, X, y) -> 'BayesianLinearRegression':
        """Fit a fresh model with the same hyperparameters on other data."""
        self._check_fitted()
        return BayesianLinearRegression(**self.get_params()).fit(X, y, self.term_names_)

    def to_inference_data(self) -> az.InferenceData:
        """Posterior as ArviZ InferenceData with term coordinates."""
        self._check_fitted()
        coords, dims = {}, {}
        if self.term_names_:
            coords = {"term": self.term_names_}
            dims = {name: ["term"] for name in ("beta", "lambda", "z") if name in self.samples_}
        if self.mcmc is not None:
            return az.from_numpyro(self.mcmc, coords=coords, dims=dims)
        return az.from_dict(posterior=self.samples_, coords=coords, dims=dims)

    def summary(self) -> pd.DataFrame:
        """ArviZ summary (mean, sd, hdi, ess, r_hat) of the main parameters."""
        var_names = ["alpha", "beta", "sigma"]
        if "tau" in self.samples_:
            var_names.append("tau")
        if not self.term_names_:
            var_names.remove("beta")
        return az.summary(self.to_inference_data(), var_names=var_names)

    def save(self, filepath: str) -> None:
        """Save posterior draws, data and hyperparameters to disk."""
        self._check_fitted()
        state = {
            'hyperparameters': self.get_params(),
            'samples_': self.samples_,
            'X_': self.X_,
            'y_': self.y_,
            'term_names_': self.term_names_,
            'training_info': self.training_info,
            '_is_fitted': self._is_fitted
        }
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'BayesianLinearRegression':
        """Load a fitted model from disk."""
        state = joblib.load(filepath)

        model = cls(**state['hyperparameters'])
        model.samples_ = state['samples_']
        model.X_ = state['X_']
        model.y_ = state['y_']
        model.term_names_ = state['term_names_']
        model.training_info = state['training_info']
        model._is_fitted = state['_is_fitted']

        logger.info(f"Model loaded from {filepath}")
        return model


def train_model(
    X,
    y,
    term_names: Optional[List[str]],
    config: Dict[str, Any],
    save_path: Optional[str] = None
) -> BayesianLinearRegression:
    """
    Fit the reference model using configuration parameters.

    Args:
        X: Design matrix
        y: Response
        term_names: Names of the design-matrix columns
        config: Configuration dictionary
        save_path: Path to save the fitted model (optional)

    Returns:
        Fitted BayesianLinearRegression
    """
    model_config = config.get('model', {})

    model = BayesianLinearRegression(
        prior=model_config.get('prior', 'horseshoe'),
        expected_relevant=model_config.get('expected_relevant', 3),
        slab_scale=model_config.get('slab_scale', 2.0),
        slab_df=model_config.get('slab_df', 4.0),
        num_warmup=model_config.get('num_warmup', 1000),
        num_samples=model_config.get('num_samples', 1000),
        num_chains=model_config.get('num_chains', 4),
        target_accept_prob=model_config.get('target_accept_prob', 0.95),
        max_tree_depth=model_config.get('max_tree_depth', 10),
        seed=model_config.get('seed', 42),
        progress_bar=model_config.get('progress_bar', False)
    )

    model.fit(X, y, term_names)

    if save_path:
        model.save(save_path)

    return model


def print_model_summary(model: BayesianLinearRegression) -> None:
    """
    Print a summary of the fitted reference model.

    Args:
        model: Fitted model instance
    """
    print("\n" + "=" * 70)
    print("REFERENCE MODEL SUMMARY")
    print("=" * 70)
    print("Model Type: Gaussian linear regression (NumPyro NUTS)")
    print(f"Prior: {model.prior}")
    if model.prior == "horseshoe":
        print(f"  - expected relevant terms (p0): {model.expected_relevant}")
        print(f"  - slab scale / df: {model.slab_scale} / {model.slab_df}")
    print(f"Terms: {len(model.term_names_)}")

    if model.training_info:
        print("\nSampling Info:")
        print(f"  - Duration: {model.training_info.get('training_duration_seconds', 0.0):.2f}s")
        print(f"  - Draws: {model.training_info.get('n_draws', 'N/A')}")
        print(f"  - Divergences: {model.training_info.get('n_divergent', 'N/A')}")

    print("\nPosterior Summary:")
    print("-" * 70)
    summary = model.summary()
    print(summary.to_string())

    max_rhat = summary['r_hat'].max()
    if np.isfinite(max_rhat) and max_rhat > 1.01:
        print(f"\n  ⚠ max r_hat = {max_rhat:.3f} > 1.01, chains may not have converged")
    print("=" * 70 + "\n")
