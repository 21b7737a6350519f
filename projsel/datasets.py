"""
Example Datasets
================

Generates the synthetic collinear-predictors dataset and writes datasets to
delimited text files.
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def simulate_collinear(
    n: int = 100,
    rho: float = 0.9,
    beta: float = 1.0,
    sigma: float = 1.0,
    n_irrelevant: int = 4,
    seed: int = 0
) -> pd.DataFrame:
    """
    Simulate a regression dataset with two strongly correlated predictors.

    x1 and x2 are drawn from a bivariate standard normal with correlation
    `rho` and both enter the response with the same coefficient. The
    remaining predictors are independent noise with no effect on y.

    Args:
        n: Number of observations
        rho: Correlation between x1 and x2
        beta: Coefficient of x1 and x2
        sigma: Residual standard deviation
        n_irrelevant: Number of irrelevant predictors (x3, x4, ...)
        seed: Random seed

    Returns:
        DataFrame with columns x1, x2, x3.. and y
    """
    if not -1.0 < rho < 1.0:
        raise ValueError(f"rho must be in (-1, 1), got {rho}")
    if n < 3:
        raise ValueError(f"Need at least 3 observations, got n={n}")
    if n_irrelevant < 0:
        raise ValueError(f"n_irrelevant must be non-negative, got {n_irrelevant}")

    rng = np.random.default_rng(seed)
    cov = np.array([[1.0, rho], [rho, 1.0]])
    x12 = rng.multivariate_normal(np.zeros(2), cov, size=n)

    data = {"x1": x12[:, 0], "x2": x12[:, 1]}
    for j in range(n_irrelevant):
        data[f"x{j + 3}"] = rng.standard_normal(n)

    y = beta * x12[:, 0] + beta * x12[:, 1] + sigma * rng.standard_normal(n)
    data["y"] = y

    df = pd.DataFrame(data)
    logger.info(
        f"Simulated collinear dataset: n={n}, rho={rho}, "
        f"sample corr(x1, x2)={df['x1'].corr(df['x2']):.3f}"
    )
    return df


def write_dataset(df: pd.DataFrame, path: str, sep: str = ",") -> str:
    """Write a dataset to a delimited text file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep=sep, index=False)
    logger.info(f"Dataset written to {path}")
    return str(path)
