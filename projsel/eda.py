"""
Exploratory Data Analysis (EDA) Module - Phase 1
=================================================

Looks at the predictors and the response before any model is fitted.
Strong correlation between predictors is what makes marginal posteriors
hard to read and projection useful, so correlations get the most space.

Functions:
    - plot_correlation_matrix: Correlation heatmap (lower triangle)
    - plot_distributions: Histograms with KDE for all columns
    - plot_response_correlations: Predictor-response correlations
    - generate_eda_report: Full EDA report with all visualizations
    - print_correlation_insights: Strongly correlated pairs on the console
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

logger = logging.getLogger(__name__)

# Set style for all plots
plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette("husl")


def plot_correlation_matrix(
    df: pd.DataFrame,
    method: str = 'pearson',
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None
) -> Tuple[plt.Figure, pd.DataFrame]:
    """
    Create a correlation heatmap for all numerical columns.

    Args:
        df: DataFrame with numerical data
        method: Correlation method ('pearson', 'spearman', 'kendall')
        figsize: Figure size (width, height), scaled to the column count if None
        save_path: Path to save the figure (optional)

    Returns:
        Tuple of (Figure, correlation matrix DataFrame)
    """
    corr_matrix = df.select_dtypes(include=[np.number]).corr(method=method)
    n = len(corr_matrix)

    if figsize is None:
        side = max(6, 0.7 * n + 2)
        figsize = (side, side * 0.85)
    fig, ax = plt.subplots(figsize=figsize)

    mask = np.triu(np.ones_like(corr_matrix, dtype=bool), k=1)
    sns.heatmap(
        corr_matrix,
        mask=mask,
        annot=True,
        fmt='.2f',
        annot_kws={"fontsize": 8 if n > 8 else 10},
        cmap='RdYlBu_r',
        center=0,
        square=True,
        linewidths=0.5,
        cbar_kws={"shrink": 0.8, "label": "Correlation"},
        ax=ax,
        vmin=-1,
        vmax=1
    )

    ax.set_title(f'Correlation Matrix ({method.capitalize()})',
                 fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Correlation matrix saved to {save_path}")

    return fig, corr_matrix


def plot_distributions(
    df: pd.DataFrame,
    n_panel_cols: int = 3,
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Create distribution plots (histogram + KDE) for all columns.

    Args:
        df: DataFrame with numerical data
        n_panel_cols: Panels per row
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    columns = df.select_dtypes(include=[np.number]).columns.tolist()
    n_cols = len(columns)
    n_rows = max(1, -(-n_cols // n_panel_cols))

    fig, axes = plt.subplots(n_rows, n_panel_cols,
                             figsize=(4.5 * n_panel_cols, 3.2 * n_rows), squeeze=False)
    axes = axes.flatten()

    for idx, col in enumerate(columns):
        ax = axes[idx]
        values = df[col].dropna()

        sns.histplot(values, kde=True, ax=ax, bins=30, alpha=0.7)

        mean_val = values.mean()
        median_val = values.median()
        ax.axvline(mean_val, color='red', linestyle='--', label=f'Mean: {mean_val:.2f}')
        ax.axvline(median_val, color='green', linestyle='--', label=f'Median: {median_val:.2f}')

        # normaltest needs at least 8 observations
        if len(values) >= 8:
            _, p_value = stats.normaltest(values)
            normality = "Normal" if p_value > 0.05 else "Non-Normal"
            ax.set_title(f'{col} ({normality}, p={p_value:.3f})', fontsize=10, fontweight='bold')
        else:
            ax.set_title(col, fontsize=10, fontweight='bold')
        ax.legend(fontsize=7)

    # Hide unused subplots
    for idx in range(n_cols, len(axes)):
        axes[idx].set_visible(False)

    plt.suptitle('Distribution Analysis', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Distribution plots saved to {save_path}")

    return fig


def plot_response_correlations(
    df: pd.DataFrame,
    response: str,
    method: str = 'pearson',
    figsize: Tuple[int, int] = (8, 5),
    save_path: Optional[str] = None
) -> Tuple[plt.Figure, pd.Series]:
    """
    Bar chart of each predictor's correlation with the response.

    Args:
        df: DataFrame with the response and predictors
        response: Response column name
        method: Correlation method
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Tuple of (Figure, correlations sorted by absolute value)
    """
    if response not in df.columns:
        raise ValueError(f"Response '{response}' not in data columns: {list(df.columns)}")

    numeric = df.select_dtypes(include=[np.number])
    corr = numeric.corr(method=method)[response].drop(response)
    corr = corr.reindex(corr.abs().sort_values(ascending=False).index)

    fig, ax = plt.subplots(figsize=figsize)
    colors = ['steelblue' if c > 0 else 'coral' for c in corr.values]
    ax.barh(corr.index, corr.values, color=colors, alpha=0.8)
    ax.axvline(0, color='grey', linewidth=0.8)
    ax.invert_yaxis()
    ax.set_xlim(-1, 1)
    ax.set_xlabel(f'Correlation with {response}')
    ax.set_title(f'Predictor correlations with {response} ({method.capitalize()})',
                 fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Response correlation plot saved to {save_path}")

    return fig, corr


def generate_eda_report(
    df: pd.DataFrame,
    response: Optional[str] = None,
    output_dir: str = "reports/figures/",
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Generate a complete EDA report with all visualizations.

    Args:
        df: DataFrame to analyze
        response: Response column (enables the response correlation plot)
        output_dir: Directory to save figures
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary containing EDA results and file paths
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    report = {
        "data_shape": df.shape,
        "columns": list(df.columns),
        "figures": [],
        "correlation_matrix": None,
        "response_correlations": None,
        "statistics": {}
    }

    logger.info("=" * 60)
    logger.info("STARTING EXPLORATORY DATA ANALYSIS (Phase 1)")
    logger.info("=" * 60)

    # 1. Correlation Matrix
    logger.info("Computing correlation matrix...")
    _, corr_matrix = plot_correlation_matrix(
        df,
        save_path=str(output_dir / "01_correlation_matrix.png")
    )
    report["figures"].append("01_correlation_matrix.png")
    report["correlation_matrix"] = corr_matrix.to_dict()

    # 2. Distributions
    logger.info("Plotting distributions...")
    plot_distributions(
        df,
        save_path=str(output_dir / "02_distributions.png")
    )
    report["figures"].append("02_distributions.png")

    # 3. Predictor-response correlations
    if response is not None:
        logger.info("Computing predictor-response correlations...")
        _, response_corr = plot_response_correlations(
            df, response,
            save_path=str(output_dir / "03_response_correlations.png")
        )
        report["figures"].append("03_response_correlations.png")
        report["response_correlations"] = response_corr.to_dict()

    for col in df.select_dtypes(include=[np.number]).columns:
        report["statistics"][col] = {
            "mean": float(df[col].mean()),
            "std": float(df[col].std()),
            "min": float(df[col].min()),
            "max": float(df[col].max()),
            "skew": float(df[col].skew()),
            "kurtosis": float(df[col].kurtosis())
        }

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    logger.info("=" * 60)
    logger.info("EDA COMPLETE - All figures saved to: %s", output_dir)
    logger.info("=" * 60)

    return report


def print_correlation_insights(corr_matrix: pd.DataFrame, threshold: float = 0.5) -> None:
    """
    Print insights about strongly correlated variables.

    Args:
        corr_matrix: Correlation matrix DataFrame
        threshold: Correlation threshold for "strong" correlation
    """
    print("\n" + "=" * 50)
    print("CORRELATION INSIGHTS")
    print("=" * 50)

    strong_corr = []
    for i in range(len(corr_matrix.columns)):
        for j in range(i + 1, len(corr_matrix.columns)):
            corr_val = corr_matrix.iloc[i, j]
            if abs(corr_val) >= threshold:
                strong_corr.append({
                    "col1": corr_matrix.columns[i],
                    "col2": corr_matrix.columns[j],
                    "correlation": corr_val
                })

    if strong_corr:
        print(f"\nStrong correlations (|r| >= {threshold}):")
        for item in sorted(strong_corr, key=lambda x: abs(x["correlation"]), reverse=True):
            direction = "positive" if item["correlation"] > 0 else "negative"
            print(f"  • {item['col1']} ↔ {item['col2']}: {item['correlation']:.3f} ({direction})")

        print("\nInterpretation:")
        print("  - Correlated predictors share information about the response")
        print("  - Their marginal posteriors can be wide even when jointly informative")
        print("  - Projection onto a submodel usually keeps only one of each group")
    else:
        print(f"\nNo strong correlations found (|r| >= {threshold})")
        print("  - Predictors appear relatively independent")

    print("=" * 50 + "\n")
