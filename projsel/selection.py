"""
Variable Selection Module - Phase 4
====================================

Projection-predictive variable selection: a search for the solution path
followed by an estimate of the predictive performance of each submodel
size, either in-sample (varsel) or cross-validated (cv_varsel).

Cross-validation options:
    - loo: PSIS-LOO weights from the reference model; with validate_search
      the search is repeated for every left-out observation
    - kfold: the reference model is refitted and the search repeated in
      each fold
"""

import logging
from typing import Dict, Any, Callable, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import logsumexp

from .model import ReferencePosterior
from .loo import K_THRESHOLD, psis_log_weights, relative_eff, thinned_reff
from .projection import get_refdist, project_submodel
from .search import search_path
from .evaluation import calculate_stats, HIGHER_IS_BETTER

logger = logging.getLogger(__name__)

CV_METHODS = ("loo", "kfold")
DEFAULT_NTERMS_MAX = 20
INTERCEPT_LABEL = "(Intercept)"


def _pointwise(mu: np.ndarray, sigma: np.ndarray, y: np.ndarray, log_w: np.ndarray):
    """
    Pointwise log predictive density and mean prediction of weighted draws.

    mu: (C, N), sigma: (C,), log_w: (C,) or (C, N) normalized log weights.
    """
    if log_w.ndim == 1:
        log_w = log_w[:, None]
    ll = stats.norm.logpdf(y[None, :], mu, sigma[:, None])
    lpd = logsumexp(log_w + ll, axis=0)
    yhat = (np.exp(log_w) * mu).sum(axis=0)
    return lpd, yhat


class VarselResult:
    """
    Outcome of a variable selection run.

    lpd and yhat hold pointwise log predictive densities and predictions
    for submodel sizes 0..nterms_max (rows) and observations (columns).
    """

    def __init__(
        self,
        term_names: List[str],
        solution_idx: List[int],
        kl_path: List[float],
        kl_null: float,
        y: np.ndarray,
        lpd: np.ndarray,
        yhat: np.ndarray,
        ref_lpd: np.ndarray,
        ref_yhat: np.ndarray,
        method: str,
        cv_method: Optional[str] = None,
        validate_search: bool = False,
        fold_paths: Optional[List[List[str]]] = None,
        pareto_k: Optional[np.ndarray] = None
    ):
        self.term_names = list(term_names)
        self.solution_idx = list(solution_idx)
        self.solution_terms = [self.term_names[j] for j in self.solution_idx]
        self.kl_path = list(kl_path)
        self.kl_null = kl_null
        self.y = y
        self.lpd = lpd
        self.yhat = yhat
        self.ref_lpd = ref_lpd
        self.ref_yhat = ref_yhat
        self.method = method
        self.cv_method = cv_method
        self.validate_search = validate_search
        self.fold_paths = fold_paths or []
        self.pareto_k = pareto_k

    @property
    def nterms_max(self) -> int:
        return len(self.solution_idx)

    def stat_table(
        self,
        stat: str = "elpd",
        alpha: float = 0.32,
        n_boot: int = 2000,
        seed: int = 0
    ) -> List[Dict[str, float]]:
        """Statistic with its difference to the reference for every size."""
        return [
            calculate_stats(
                self.lpd[k], self.yhat[k], self.y, self.ref_lpd, self.ref_yhat,
                stats=(stat,), alpha=alpha, n_boot=n_boot, seed=seed
            )[stat]
            for k in range(self.nterms_max + 1)
        ]

    def reference_stats(self, stats: Sequence[str] = ("elpd", "rmse"),
                        n_boot: int = 2000, seed: int = 0) -> Dict[str, Dict[str, float]]:
        return calculate_stats(
            self.ref_lpd, self.ref_yhat, self.y, self.ref_lpd, self.ref_yhat,
            stats=stats, n_boot=n_boot, seed=seed
        )

    def summary(
        self,
        stats: Sequence[str] = ("elpd", "rmse"),
        alpha: float = 0.32,
        n_boot: int = 2000,
        seed: int = 0
    ) -> pd.DataFrame:
        """
        Performance table along the solution path.

        Args:
            stats: Statistics to include ('elpd', 'mlpd', 'rmse', 'r2')
            alpha: Bounds use the central 1 - alpha interval of the difference
            n_boot: Bootstrap replicates for rmse and r2 standard errors
            seed: Bootstrap seed

        Returns:
            DataFrame with one row per size
        """
        rows = []
        for k in range(self.nterms_max + 1):
            row = {
                'size': k,
                'solution_terms': self.solution_terms[k - 1] if k > 0 else INTERCEPT_LABEL,
                'kl': self.kl_null if k == 0 else self.kl_path[k - 1]
            }
            values = calculate_stats(
                self.lpd[k], self.yhat[k], self.y, self.ref_lpd, self.ref_yhat,
                stats=stats, alpha=alpha, n_boot=n_boot, seed=seed
            )
            for stat in stats:
                v = values[stat]
                row[stat] = v['value']
                row[f'{stat}.se'] = v['se']
                row[f'{stat}.diff'] = v['diff']
                row[f'{stat}.diff.se'] = v['diff_se']
                row[f'{stat}.lower'] = v['lower']
                row[f'{stat}.upper'] = v['upper']
            rows.append(row)
        return pd.DataFrame(rows)

    def suggest_size(
        self,
        stat: str = "elpd",
        alpha: float = 0.32,
        pct: float = 0.0,
        n_boot: int = 2000,
        seed: int = 0
    ) -> Optional[int]:
        """
        Smallest submodel size whose performance is close to the reference.

        A size qualifies when the bound of its difference to the reference
        (upper bound for elpd/mlpd/r2, lower bound for rmse) reaches
        pct times the difference of the intercept-only submodel.

        Returns:
            Suggested size, or None if no size qualifies
        """
        table = self.stat_table(stat, alpha=alpha, n_boot=n_boot, seed=seed)
        threshold = pct * table[0]['diff']

        for k, row in enumerate(table):
            if stat in HIGHER_IS_BETTER:
                if row['upper'] >= threshold:
                    return k
            elif row['lower'] <= threshold:
                return k

        logger.warning(
            f"No submodel up to size {self.nterms_max} is close enough to the "
            f"reference model on {stat}; no size suggested"
        )
        return None

    def cv_proportions(self, cumulate: bool = False) -> pd.DataFrame:
        """
        Fraction of cross-validation folds selecting each term at each size.

        Args:
            cumulate: Count a term at size k if it is among the first k terms
                of the fold's path, instead of exactly at position k

        Returns:
            DataFrame with sizes 1..nterms_max as rows, terms as columns
        """
        if not self.fold_paths:
            raise ValueError(
                "Selection proportions need cross-validation with validate_search"
            )

        columns = list(self.solution_terms)
        for path in self.fold_paths:
            for term in path:
                if term not in columns:
                    columns.append(term)

        n_folds = len(self.fold_paths)
        props = np.zeros((self.nterms_max, len(columns)))
        for path in self.fold_paths:
            for k in range(self.nterms_max):
                chosen = path[:k + 1] if cumulate else path[k:k + 1]
                for term in chosen:
                    props[k, columns.index(term)] += 1.0 / n_folds

        return pd.DataFrame(props, index=pd.Index(range(1, self.nterms_max + 1), name='size'),
                            columns=columns)


def _nterms_max(ref: ReferencePosterior, nterms_max: Optional[int]) -> int:
    n_terms = len(ref.term_names)
    if nterms_max is None:
        return min(n_terms, DEFAULT_NTERMS_MAX)
    if nterms_max < 0:
        raise ValueError(f"nterms_max must be non-negative, got {nterms_max}")
    return min(nterms_max, n_terms)


def _full_data_search(ref, method, nterms_max, nclusters, seed, prescreen_k=None):
    refdist = get_refdist(ref, nclusters=nclusters, seed=seed)
    path, kl_path, kl_null = search_path(refdist, ref.X, method, nterms_max,
                                         term_names=ref.term_names, prescreen_k=prescreen_k)
    logger.info(f"Full-data solution path: {[ref.term_names[j] for j in path]}")
    return path, kl_path, kl_null


def varsel(
    ref: ReferencePosterior,
    method: str = "forward",
    nterms_max: Optional[int] = None,
    nclusters: Optional[int] = 1,
    ndraws_pred: Optional[int] = 400,
    prescreen_k: Optional[int] = None,
    seed: int = 0
) -> VarselResult:
    """
    Variable selection with in-sample performance estimates.

    Args:
        ref: Reference posterior
        method: Search method ('forward' or 'l1')
        nterms_max: Largest submodel size to search
        nclusters: Clusters of reference draws used in the search
        ndraws_pred: Thinned draws used for performance evaluation
        prescreen_k: Candidate terms evaluated per forward search step
        seed: Random seed

    Returns:
        VarselResult
    """
    nterms_max = _nterms_max(ref, nterms_max)
    path, kl_path, kl_null = _full_data_search(ref, method, nterms_max, nclusters, seed,
                                               prescreen_k)

    ref_pred = ref.thin(ndraws_pred)
    C = ref_pred.ndraws
    log_w = np.full(C, -np.log(C))
    ref_lpd, ref_yhat = _pointwise(ref_pred.mu(), ref_pred.sigma, ref.y, log_w)

    refdist_pred = get_refdist(ref_pred)
    lpd = np.empty((nterms_max + 1, ref.nobs))
    yhat = np.empty_like(lpd)
    for k in range(nterms_max + 1):
        proj = project_submodel(refdist_pred, ref.X, path[:k])
        lpd[k], yhat[k] = _pointwise(proj['mu'], proj['sigma'], ref.y, log_w)

    return VarselResult(
        term_names=ref.term_names,
        solution_idx=path,
        kl_path=kl_path,
        kl_null=kl_null,
        y=ref.y,
        lpd=lpd,
        yhat=yhat,
        ref_lpd=ref_lpd,
        ref_yhat=ref_yhat,
        method=method
    )


def _loo_varsel(ref, method, nterms_max, validate_search, nloo, nclusters, ndraws_pred, seed,
                prescreen_k=None):
    N = ref.nobs
    path, kl_path, kl_null = _full_data_search(ref, method, nterms_max, nclusters, seed,
                                               prescreen_k)

    log_lik = ref.log_lik()
    reff = relative_eff(log_lik, ref.n_chains)
    logger.info(f"Relative efficiency of the reference draws: {reff:.3f}")

    ref_pred = ref.thin(ndraws_pred)
    mu_pred = ref_pred.mu()
    lw_pred, pareto_k = psis_log_weights(
        ref_pred.log_lik(), reff=thinned_reff(reff, ref.ndraws, ref_pred.ndraws)
    )
    n_high_k = int((pareto_k > K_THRESHOLD).sum())
    if n_high_k > 0:
        logger.warning(f"{n_high_k} observations have Pareto k > {K_THRESHOLD} in PSIS-LOO")

    ref_lpd, ref_yhat = _pointwise(mu_pred, ref_pred.sigma, ref.y, lw_pred)

    refdist_pred = get_refdist(ref_pred)
    lpd = np.empty((nterms_max + 1, N))
    yhat = np.empty_like(lpd)
    for k in range(nterms_max + 1):
        proj = project_submodel(refdist_pred, ref.X, path[:k])
        lpd[k], yhat[k] = _pointwise(proj['mu'], proj['sigma'], ref.y, lw_pred)

    fold_paths: List[List[str]] = []
    if validate_search:
        if nloo is None or nloo >= N:
            validate_idx = np.arange(N)
        else:
            if nloo < 1:
                raise ValueError(f"nloo must be positive, got {nloo}")
            rng = np.random.default_rng(seed)
            validate_idx = np.sort(rng.choice(N, size=nloo, replace=False))

        lw_search, _ = psis_log_weights(log_lik, reff=reff)
        logger.info(f"Validating the search for {len(validate_idx)} left-out observations...")

        for count, i in enumerate(validate_idx, start=1):
            o = np.ones(N)
            o[i] = 0.0
            refdist_i = get_refdist(
                ref, nclusters=nclusters, draw_weights=np.exp(lw_search[:, i]), seed=seed
            )
            path_i, _, _ = search_path(refdist_i, ref.X, method, nterms_max, o,
                                       prescreen_k=prescreen_k)
            fold_paths.append([ref.term_names[j] for j in path_i])

            for k in range(nterms_max + 1):
                proj = project_submodel(refdist_pred, ref.X, path_i[:k], o)
                lpd_i, yhat_i = _pointwise(
                    proj['mu'][:, [i]], proj['sigma'], ref.y[[i]], lw_pred[:, [i]]
                )
                lpd[k, i] = lpd_i[0]
                yhat[k, i] = yhat_i[0]

            if count % 50 == 0:
                logger.info(f"  validated {count}/{len(validate_idx)} observations")

    return VarselResult(
        term_names=ref.term_names,
        solution_idx=path,
        kl_path=kl_path,
        kl_null=kl_null,
        y=ref.y,
        lpd=lpd,
        yhat=yhat,
        ref_lpd=ref_lpd,
        ref_yhat=ref_yhat,
        method=method,
        cv_method="loo",
        validate_search=validate_search,
        fold_paths=fold_paths,
        pareto_k=pareto_k
    )


def _kfold_varsel(ref, method, nterms_max, validate_search, K, refit, nclusters, ndraws_pred, seed,
                  prescreen_k=None):
    N = ref.nobs
    if refit is None:
        raise ValueError("K-fold cross-validation needs a refit function")
    if not 2 <= K <= N:
        raise ValueError(f"K must be between 2 and the number of observations {N}, got {K}")

    path, kl_path, kl_null = _full_data_search(ref, method, nterms_max, nclusters, seed,
                                               prescreen_k)

    rng = np.random.default_rng(seed)
    folds = np.array_split(rng.permutation(N), K)

    lpd = np.empty((nterms_max + 1, N))
    yhat = np.empty_like(lpd)
    ref_lpd = np.empty(N)
    ref_yhat = np.empty(N)
    fold_paths: List[List[str]] = []

    for f, test_idx in enumerate(folds, start=1):
        train_idx = np.setdiff1d(np.arange(N), test_idx)
        logger.info(f"Fold {f}/{K}: refitting reference model on {len(train_idx)} observations")
        ref_f = refit(train_idx)

        if validate_search:
            refdist_s = get_refdist(ref_f, nclusters=nclusters, seed=seed)
            path_f, _, _ = search_path(refdist_s, ref_f.X, method, nterms_max,
                                       prescreen_k=prescreen_k)
        else:
            path_f = path
        fold_paths.append([ref.term_names[j] for j in path_f])

        X_test = ref.X[test_idx]
        y_test = ref.y[test_idx]
        ref_f_pred = ref_f.thin(ndraws_pred)
        C = ref_f_pred.ndraws
        log_w = np.full(C, -np.log(C))
        ref_lpd[test_idx], ref_yhat[test_idx] = _pointwise(
            ref_f_pred.mu(X_test), ref_f_pred.sigma, y_test, log_w
        )

        refdist_pred = get_refdist(ref_f_pred)
        for k in range(nterms_max + 1):
            proj = project_submodel(refdist_pred, ref_f.X, path_f[:k])
            Z_test = np.column_stack([np.ones(len(test_idx)), X_test[:, path_f[:k]]])
            mu_test = proj['coef'] @ Z_test.T
            lpd[k, test_idx], yhat[k, test_idx] = _pointwise(
                mu_test, proj['sigma'], y_test, np.log(proj['weights'])
            )

    return VarselResult(
        term_names=ref.term_names,
        solution_idx=path,
        kl_path=kl_path,
        kl_null=kl_null,
        y=ref.y,
        lpd=lpd,
        yhat=yhat,
        ref_lpd=ref_lpd,
        ref_yhat=ref_yhat,
        method=method,
        cv_method="kfold",
        validate_search=validate_search,
        fold_paths=fold_paths if validate_search else []
    )


def cv_varsel(
    ref: ReferencePosterior,
    method: str = "forward",
    cv_method: str = "loo",
    validate_search: bool = True,
    nloo: Optional[int] = None,
    K: int = 5,
    refit: Optional[Callable[[np.ndarray], ReferencePosterior]] = None,
    nterms_max: Optional[int] = None,
    nclusters: Optional[int] = 1,
    ndraws_pred: Optional[int] = 400,
    prescreen_k: Optional[int] = None,
    seed: int = 0
) -> VarselResult:
    """
    Variable selection with cross-validated performance estimates.

    Args:
        ref: Reference posterior
        method: Search method ('forward' or 'l1')
        cv_method: 'loo' or 'kfold'
        validate_search: Repeat the search inside cross-validation
        nloo: Number of observations for which the LOO search is validated
            (all if None); the rest use the full-data path
        K: Number of folds for kfold
        refit: Function mapping training indices to a ReferencePosterior
            fitted on those observations (kfold only)
        nterms_max: Largest submodel size to search
        nclusters: Clusters of reference draws used in the search
        ndraws_pred: Thinned draws used for performance evaluation
        prescreen_k: Candidate terms evaluated per forward search step
        seed: Random seed

    Returns:
        VarselResult
    """
    nterms_max = _nterms_max(ref, nterms_max)

    logger.info("=" * 60)
    logger.info("STARTING VARIABLE SELECTION (Phase 4)")
    logger.info("=" * 60)
    logger.info(f"Search: {method}, CV: {cv_method}, validate_search: {validate_search}")
    logger.info(f"Maximum submodel size: {nterms_max}")

    if cv_method == "loo":
        result = _loo_varsel(ref, method, nterms_max, validate_search, nloo,
                             nclusters, ndraws_pred, seed, prescreen_k)
    elif cv_method == "kfold":
        result = _kfold_varsel(ref, method, nterms_max, validate_search, K, refit,
                               nclusters, ndraws_pred, seed, prescreen_k)
    else:
        raise ValueError(
            f"Unknown cv_method: {cv_method!r}. Choose from: {', '.join(CV_METHODS)}"
        )

    logger.info("=" * 60)
    logger.info("VARIABLE SELECTION COMPLETE")
    logger.info(f"  Solution path: {result.solution_terms}")
    logger.info("=" * 60)

    return result


def run_selection(
    ref: ReferencePosterior,
    config: Dict[str, Any],
    refit: Optional[Callable[[np.ndarray], ReferencePosterior]] = None
) -> VarselResult:
    """
    Run variable selection with parameters from the configuration.

    Args:
        ref: Reference posterior
        config: Configuration dictionary
        refit: Refit function for kfold cross-validation

    Returns:
        VarselResult
    """
    sel_config = config.get('selection', {})
    cv_method = sel_config.get('cv_method', 'loo')

    common = {
        'method': sel_config.get('method', 'forward'),
        'nterms_max': sel_config.get('nterms_max'),
        'nclusters': sel_config.get('nclusters', 1),
        'ndraws_pred': sel_config.get('ndraws_pred', 400),
        'prescreen_k': sel_config.get('prescreen_k'),
        'seed': sel_config.get('seed', 0)
    }

    if cv_method in (None, 'none'):
        return varsel(ref, **common)

    return cv_varsel(
        ref,
        cv_method=cv_method,
        validate_search=sel_config.get('validate_search', True),
        nloo=sel_config.get('nloo'),
        K=sel_config.get('K', 5),
        refit=refit,
        **common
    )


def suggest_size_from_config(result: VarselResult, config: Dict[str, Any]) -> Optional[int]:
    """
    Suggested submodel size under the selection.stat, alpha and pct settings.

    The pipeline calls this once per run and passes the size on to the
    selection report, the plots and the projection.
    """
    sel_config = config.get('selection', {})
    return result.suggest_size(
        stat=sel_config.get('stat', 'elpd'),
        alpha=sel_config.get('alpha', 0.32),
        pct=sel_config.get('pct', 0.0)
    )
