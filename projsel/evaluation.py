"""
Selection Evaluation Module - Phase 4
======================================

Predictive performance statistics of submodels relative to the reference
model, and the figures that accompany a variable selection run.

Features:
    - elpd, mlpd, RMSE, R² with standard errors
    - Differences to the reference model with central bounds
    - Performance vs submodel size plot
    - Selection proportion tile heatmap
    - KL divergence along the solution path
    - Evaluation report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats as sp_stats
from sklearn.metrics import mean_squared_error, r2_score

from .loo import K_THRESHOLD

logger = logging.getLogger(__name__)

STATS = ("elpd", "mlpd", "rmse", "r2")
HIGHER_IS_BETTER = ("elpd", "mlpd", "r2")


def _bootstrap_indices(n: int, n_boot: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, n, size=(n_boot, n))


def _rmse_boot(y: np.ndarray, yhat: np.ndarray, idx: np.ndarray) -> np.ndarray:
    return np.sqrt(((y[idx] - yhat[idx]) ** 2).mean(axis=1))


def _r2_boot(y: np.ndarray, yhat: np.ndarray, idx: np.ndarray) -> np.ndarray:
    yb = y[idx]
    ss_res = ((yb - yhat[idx]) ** 2).sum(axis=1)
    ss_tot = ((yb - yb.mean(axis=1, keepdims=True)) ** 2).sum(axis=1)
    return 1.0 - ss_res / ss_tot


def calculate_stats(
    lpd: np.ndarray,
    yhat: np.ndarray,
    y: np.ndarray,
    ref_lpd: np.ndarray,
    ref_yhat: np.ndarray,
    stats: Sequence[str] = ("elpd", "rmse"),
    alpha: float = 0.32,
    n_boot: int = 2000,
    seed: int = 0
) -> Dict[str, Dict[str, float]]:
    """
    Predictive performance of a submodel and its difference to the reference.

    Args:
        lpd: Pointwise log predictive density of the submodel (N,)
        yhat: Pointwise predictions of the submodel (N,)
        y: Observed response (N,)
        ref_lpd: Pointwise log predictive density of the reference (N,)
        ref_yhat: Pointwise predictions of the reference (N,)
        stats: Statistics to compute
        alpha: Bounds cover the central 1 - alpha interval of the difference
        n_boot: Bootstrap replicates for rmse and r2
        seed: Bootstrap seed

    Returns:
        Dictionary stat -> {value, se, diff, diff_se, lower, upper}, where
        lower/upper bound the difference to the reference
    """
    unknown = [s for s in stats if s not in STATS]
    if unknown:
        raise ValueError(f"Unknown stats {unknown}. Choose from: {', '.join(STATS)}")
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")

    lpd = np.asarray(lpd, dtype=float)
    yhat = np.asarray(yhat, dtype=float)
    y = np.asarray(y, dtype=float)
    ref_lpd = np.asarray(ref_lpd, dtype=float)
    ref_yhat = np.asarray(ref_yhat, dtype=float)
    N = len(y)
    z = sp_stats.norm.ppf(1 - alpha / 2)

    idx = None
    results = {}
    for stat in stats:
        if stat in ("elpd", "mlpd"):
            diff_pw = lpd - ref_lpd
            if stat == "elpd":
                value, diff = lpd.sum(), diff_pw.sum()
                se = np.sqrt(N * np.var(lpd))
                diff_se = np.sqrt(N * np.var(diff_pw))
            else:
                value, diff = lpd.mean(), diff_pw.mean()
                se = np.sqrt(np.var(lpd) / N)
                diff_se = np.sqrt(np.var(diff_pw) / N)
        else:
            if idx is None:
                idx = _bootstrap_indices(N, n_boot, seed)
            if stat == "rmse":
                value = np.sqrt(mean_squared_error(y, yhat))
                ref_value = np.sqrt(mean_squared_error(y, ref_yhat))
                boot = _rmse_boot(y, yhat, idx)
                boot_ref = _rmse_boot(y, ref_yhat, idx)
            else:
                value = r2_score(y, yhat)
                ref_value = r2_score(y, ref_yhat)
                boot = _r2_boot(y, yhat, idx)
                boot_ref = _r2_boot(y, ref_yhat, idx)
            diff = value - ref_value
            se = np.std(boot, ddof=1)
            diff_se = np.std(boot - boot_ref, ddof=1)

        results[stat] = {
            'value': float(value),
            'se': float(se),
            'diff': float(diff),
            'diff_se': float(diff_se),
            'lower': float(diff - z * diff_se),
            'upper': float(diff + z * diff_se)
        }

    return results


def plot_varsel_stats(
    result,
    stats: Sequence[str] = ("elpd", "rmse"),
    alpha: float = 0.32,
    deltas: bool = False,
    suggested_size: Optional[int] = None,
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Plot performance statistics against submodel size.

    Error bars span value ± z·se (or diff ± z·diff_se with deltas=True);
    the dashed line marks the reference model. A dotted line marks
    `suggested_size` when one is given.

    Args:
        result: VarselResult
        stats: Statistics to show, one panel each
        alpha: Error bars cover the central 1 - alpha interval
        deltas: Plot differences to the reference instead of raw values
        suggested_size: Submodel size to mark
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    summary = result.summary(stats=stats, alpha=alpha)
    ref_stats = result.reference_stats(stats=stats)
    z = sp_stats.norm.ppf(1 - alpha / 2)

    if figsize is None:
        figsize = (7, 3.5 * len(stats))
    fig, axes = plt.subplots(len(stats), 1, figsize=figsize, sharex=True, squeeze=False)
    axes = axes[:, 0]

    for ax, stat in zip(axes, stats):
        if deltas:
            values = summary[f'{stat}.diff']
            errors = z * summary[f'{stat}.diff.se']
            ref_line = 0.0
        else:
            values = summary[stat]
            errors = z * summary[f'{stat}.se']
            ref_line = ref_stats[stat]['value']

        ax.errorbar(summary['size'], values, yerr=errors, fmt='o-', color='steelblue',
                    capsize=3, markersize=5, label='Submodel')
        ax.axhline(ref_line, color='red', linestyle='--', linewidth=1.5, label='Reference')
        if suggested_size is not None:
            ax.axvline(suggested_size, color='grey', linestyle=':', linewidth=1.5,
                       label=f'Suggested size: {suggested_size}')

        label = f'Δ{stat}' if deltas else stat
        ax.set_ylabel(label)
        ax.set_title(f'{label} vs submodel size', fontsize=10, fontweight='bold')
        ax.legend(loc='best', fontsize=8)

    axes[-1].set_xlabel('Submodel size')
    axes[-1].set_xticks(summary['size'])

    title = f'Predictive performance ({result.cv_method or "in-sample"}, {result.method} search)'
    plt.suptitle(title, fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Selection statistics plot saved to {save_path}")

    return fig


def plot_cv_proportions(
    result,
    cumulate: bool = False,
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Tile heatmap of cross-validation selection proportions.

    Args:
        result: VarselResult from cv_varsel with validate_search
        cumulate: Show cumulative proportions
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    props = result.cv_proportions(cumulate=cumulate)

    if figsize is None:
        figsize = (max(6, 0.7 * props.shape[1] + 2), max(4, 0.5 * props.shape[0] + 1.5))
    fig, ax = plt.subplots(figsize=figsize)

    sns.heatmap(
        props,
        annot=True,
        fmt='.2f',
        cmap='Blues',
        vmin=0,
        vmax=1,
        linewidths=0.5,
        cbar_kws={'shrink': 0.8, 'label': 'Proportion'},
        ax=ax
    )
    ax.set_xlabel('Term')
    ax.set_ylabel('Submodel size')
    kind = 'Cumulative selection' if cumulate else 'Selection'
    ax.set_title(f'{kind} proportions across CV folds', fontsize=12, fontweight='bold')
    plt.xticks(rotation=45, ha='right')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Selection proportions plot saved to {save_path}")

    return fig


def plot_kl_path(
    result,
    figsize: Tuple[int, int] = (7, 4),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    KL divergence from the reference along the solution path.

    Args:
        result: VarselResult
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    sizes = np.arange(result.nterms_max + 1)
    kl = [result.kl_null] + list(result.kl_path)

    fig, ax = plt.subplots(figsize=figsize)
    ax.plot(sizes, kl, 'o-', color='steelblue', markersize=5)
    # Labels alternate above and below the line
    for i, term in enumerate(result.solution_terms):
        xytext, va = ((6, 8), 'bottom') if i % 2 == 0 else ((6, -8), 'top')
        ax.annotate(term, (i + 1, kl[i + 1]), textcoords='offset points', xytext=xytext,
                    fontsize=8, va=va)
    ax.set_xlabel('Submodel size')
    ax.set_ylabel('KL divergence from reference model')
    ax.set_xticks(sizes)
    ax.set_xlim(-0.3, result.nterms_max + 0.3)
    ax.set_title('KL divergence along the solution path', fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"KL path plot saved to {save_path}")

    return fig


def evaluate_selection(
    result,
    output_dir: str = "reports/",
    stats: Sequence[str] = ("elpd", "rmse"),
    alpha: float = 0.32,
    suggested_size: Optional[int] = None,
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Run the complete selection evaluation and generate all reports.

    Args:
        result: VarselResult
        output_dir: Directory for output files
        stats: Statistics to report
        alpha: Bounds cover the central 1 - alpha interval
        suggested_size: Suggested submodel size to record and mark, as
            chosen by the caller (None if no size was suggested)
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary containing the summary table, suggested size and file paths
    """
    output_dir = Path(output_dir)
    figures_dir = output_dir / "figures"
    metrics_dir = output_dir / "metrics"

    figures_dir.mkdir(parents=True, exist_ok=True)
    metrics_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("STARTING SELECTION EVALUATION")
    logger.info("=" * 60)

    summary = result.summary(stats=stats, alpha=alpha)
    suggested = suggested_size

    summary_file = metrics_dir / "varsel_summary.csv"
    summary.to_csv(summary_file, index=False)
    logger.info(f"Selection summary saved to {summary_file}")

    metrics = {
        'method': result.method,
        'cv_method': result.cv_method,
        'validate_search': result.validate_search,
        'solution_terms': result.solution_terms,
        'suggested_size': suggested,
        'suggested_terms': result.solution_terms[:suggested] if suggested is not None else None,
        'reference': result.reference_stats(stats=stats),
        'path': summary.replace({np.nan: None}).to_dict(orient='records')
    }
    if result.pareto_k is not None:
        metrics['max_pareto_k'] = float(np.max(result.pareto_k))

    metrics_file = metrics_dir / "varsel_metrics.json"
    with open(metrics_file, 'w') as f:
        json.dump(metrics, f, indent=2)
    logger.info(f"Metrics saved to {metrics_file}")

    figures = []

    logger.info("Generating performance vs size plot...")
    plot_varsel_stats(result, stats=stats, alpha=alpha, suggested_size=suggested,
                      save_path=str(figures_dir / "varsel_stats.png"))
    figures.append("varsel_stats.png")

    logger.info("Generating KL path plot...")
    plot_kl_path(result, save_path=str(figures_dir / "varsel_kl_path.png"))
    figures.append("varsel_kl_path.png")

    if result.fold_paths:
        logger.info("Generating selection proportion plots...")
        plot_cv_proportions(result, cumulate=False,
                            save_path=str(figures_dir / "varsel_cv_proportions.png"))
        plot_cv_proportions(result, cumulate=True,
                            save_path=str(figures_dir / "varsel_cv_proportions_cumulative.png"))
        figures.extend(["varsel_cv_proportions.png", "varsel_cv_proportions_cumulative.png"])

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    logger.info("=" * 60)
    logger.info("SELECTION EVALUATION COMPLETE")
    logger.info(f"  Suggested size: {suggested}")
    logger.info("=" * 60)

    return {
        'summary': summary,
        'suggested_size': suggested,
        'metrics': metrics,
        'figures': figures,
        'metrics_file': str(metrics_file),
        'summary_file': str(summary_file)
    }


def print_varsel_report(
    result,
    stats: Sequence[str] = ("elpd", "rmse"),
    alpha: float = 0.32,
    suggested_size: Optional[int] = None
) -> None:
    """
    Print a formatted selection report to console.

    Args:
        result: VarselResult
        stats: Statistics to show
        alpha: Bounds cover the central 1 - alpha interval
        suggested_size: Suggested size to highlight (None if no size was suggested)
    """
    summary: pd.DataFrame = result.summary(stats=stats, alpha=alpha)

    print("\n" + "=" * 70)
    print("VARIABLE SELECTION REPORT")
    print("=" * 70)
    print(f"Search method: {result.method}")
    print(f"Cross-validation: {result.cv_method or 'none (in-sample)'}")
    print(f"Search validated: {result.validate_search}")

    print("\nSolution Path:")
    print("-" * 70)
    header = f"{'Size':<6} {'Term':<14}"
    for stat in stats:
        header += f" {stat:>10} {'se':>8} {'diff':>9} {'diff.se':>8}"
    print(header)
    print("-" * 70)

    for _, row in summary.iterrows():
        term = row['solution_terms']
        line = f"{int(row['size']):<6} {term:<14}"
        for stat in stats:
            line += (f" {row[stat]:>10.3f} {row[f'{stat}.se']:>8.3f}"
                     f" {row[f'{stat}.diff']:>9.3f} {row[f'{stat}.diff.se']:>8.3f}")
        if int(row['size']) == suggested_size:
            line += "  <- suggested"
        print(line)

    print("-" * 70)
    if suggested_size is None:
        print("  ⚠ No submodel size is close enough to the reference model")
    else:
        print(f"  ✓ Suggested size: {suggested_size} "
              f"{result.solution_terms[:suggested_size]}")

    if result.pareto_k is not None:
        n_high = int((result.pareto_k > K_THRESHOLD).sum())
        if n_high:
            print(f"  ⚠ {n_high} observations with Pareto k > {K_THRESHOLD}")

    print("=" * 70 + "\n")
