"""
Posterior Summaries and Plots
=============================

Summaries and figures for reference and projected posterior draws.

Functions:
    - posterior_summary: Mean, sd, median and central interval per parameter
    - plot_posterior_intervals: Interval plot comparing several posteriors
    - plot_coefficient_pairs: Joint posterior of two coefficients
    - plot_trace: MCMC trace plot of the reference model
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import arviz as az

logger = logging.getLogger(__name__)


def weighted_quantile(values: np.ndarray, quantiles: Sequence[float],
                      weights: Optional[np.ndarray] = None) -> np.ndarray:
    """Quantiles of weighted samples (plain quantiles when weights is None)."""
    values = np.asarray(values, dtype=float)
    if weights is None:
        return np.quantile(values, quantiles)

    weights = np.asarray(weights, dtype=float)
    order = np.argsort(values)
    v = values[order]
    w = weights[order]
    cdf = (np.cumsum(w) - 0.5 * w) / w.sum()
    return np.interp(quantiles, cdf, v)


def posterior_summary(
    draws: pd.DataFrame,
    weights: Optional[np.ndarray] = None,
    prob: float = 0.9
) -> pd.DataFrame:
    """
    Summarize posterior draws per column.

    Args:
        draws: DataFrame of draws, one column per parameter
        weights: Optional weights per draw (e.g. cluster sizes)
        prob: Probability mass of the central interval

    Returns:
        DataFrame indexed by parameter with mean, sd, median and interval bounds
    """
    if not 0 < prob < 1:
        raise ValueError(f"prob must be in (0, 1), got {prob}")

    lo_q, hi_q = (1 - prob) / 2, 1 - (1 - prob) / 2
    w = None if weights is None else np.asarray(weights, dtype=float) / np.sum(weights)

    rows = {}
    for col in draws.columns:
        x = draws[col].values
        if w is None:
            mean = x.mean()
            sd = x.std(ddof=1) if len(x) > 1 else 0.0
        else:
            mean = float(w @ x)
            sd = float(np.sqrt(w @ (x - mean) ** 2))
        q_lo, q_med, q_hi = weighted_quantile(x, [lo_q, 0.5, hi_q], w)
        rows[col] = {
            'mean': float(mean),
            'sd': float(sd),
            'median': float(q_med),
            f'q{lo_q * 100:g}': float(q_lo),
            f'q{hi_q * 100:g}': float(q_hi)
        }

    return pd.DataFrame.from_dict(rows, orient='index')


def plot_posterior_intervals(
    draws_by_model: Dict[str, pd.DataFrame],
    weights_by_model: Optional[Dict[str, np.ndarray]] = None,
    params: Optional[List[str]] = None,
    prob_inner: float = 0.5,
    prob_outer: float = 0.9,
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Interval plot of marginal posteriors, several models side by side.

    Thick segments show the inner interval, thin ones the outer interval,
    points the median. Parameters missing from a model are skipped for it.

    Args:
        draws_by_model: Mapping model label -> draws DataFrame
        weights_by_model: Mapping model label -> draw weights (optional)
        params: Parameters to show (default: all coefficients of all models)
        prob_inner: Inner interval probability
        prob_outer: Outer interval probability
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    weights_by_model = weights_by_model or {}
    if params is None:
        params = []
        for draws in draws_by_model.values():
            for col in draws.columns:
                if col not in params and col not in ('Intercept', 'sigma'):
                    params.append(col)

    n_models = len(draws_by_model)
    if figsize is None:
        figsize = (8, max(3, 0.5 * len(params) * max(n_models, 1) + 1))

    fig, ax = plt.subplots(figsize=figsize)
    palette = sns.color_palette("deep", n_models)
    offsets = np.linspace(-0.2, 0.2, n_models) if n_models > 1 else [0.0]

    for m, (label, draws) in enumerate(draws_by_model.items()):
        w = weights_by_model.get(label)
        labelled = False
        for i, param in enumerate(params):
            if param not in draws.columns:
                continue
            x = draws[param].values
            lo_out, lo_in, med, hi_in, hi_out = weighted_quantile(
                x,
                [(1 - prob_outer) / 2, (1 - prob_inner) / 2, 0.5,
                 1 - (1 - prob_inner) / 2, 1 - (1 - prob_outer) / 2],
                w
            )
            y_pos = i + offsets[m]
            ax.plot([lo_out, hi_out], [y_pos, y_pos], color=palette[m], linewidth=1)
            ax.plot([lo_in, hi_in], [y_pos, y_pos], color=palette[m], linewidth=4)
            ax.plot(med, y_pos, 'o', color=palette[m], markersize=5,
                    label=None if labelled else label)
            labelled = True

    ax.axvline(0, color='grey', linestyle='--', linewidth=0.8)
    ax.set_yticks(range(len(params)))
    ax.set_yticklabels(params)
    ax.invert_yaxis()
    ax.set_xlabel('Coefficient')
    ax.set_title(
        f'Posterior intervals ({prob_inner:.0%} thick, {prob_outer:.0%} thin)',
        fontsize=12, fontweight='bold'
    )
    handles, labels = ax.get_legend_handles_labels()
    if handles:
        unique = dict(zip(labels, handles))
        ax.legend(unique.values(), unique.keys(), loc='best', fontsize=8)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Posterior interval plot saved to {save_path}")

    return fig


def plot_coefficient_pairs(
    draws: pd.DataFrame,
    x: str,
    y: str,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Joint posterior of two coefficients with marginal histograms.

    With collinear predictors the marginals can both overlap zero while the
    joint posterior is far from the origin.

    Args:
        draws: Draws DataFrame containing columns x and y
        x: Column for the horizontal axis
        y: Column for the vertical axis
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    for col in (x, y):
        if col not in draws.columns:
            raise ValueError(f"Column '{col}' not in draws: {list(draws.columns)}")

    grid = sns.jointplot(data=draws, x=x, y=y, kind='scatter', height=6,
                         joint_kws={'alpha': 0.3, 's': 10},
                         marginal_kws={'bins': 40})
    grid.ax_joint.axvline(0, color='grey', linestyle='--', linewidth=0.8)
    grid.ax_joint.axhline(0, color='grey', linestyle='--', linewidth=0.8)
    grid.figure.suptitle(f'Joint posterior of {x} and {y}', fontsize=12, fontweight='bold')
    grid.figure.tight_layout()
    fig = grid.figure

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Coefficient pair plot saved to {save_path}")

    return fig


def plot_trace(model, var_names: Optional[List[str]] = None,
               save_path: Optional[str] = None) -> plt.Figure:
    """Trace and density per chain for the reference model parameters."""
    if var_names is None:
        var_names = ["alpha", "beta", "sigma"]
        if not model.term_names_:
            var_names.remove("beta")
    axes = az.plot_trace(model.to_inference_data(), var_names=var_names, compact=True)
    fig = axes.ravel()[0].get_figure()
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Trace plot saved to {save_path}")

    return fig
