"""
Test Suite for Datasets Module
================================

Tests for the synthetic collinear dataset.
"""

import pytest
import numpy as np

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from projsel.datasets import simulate_collinear, write_dataset
from projsel.data_loader import load_data


class TestSimulateCollinear:
    """Tests for simulate_collinear."""

    def test_columns(self):
        df = simulate_collinear(n=50, n_irrelevant=3)

        assert df.shape == (50, 6)
        assert list(df.columns) == ['x1', 'x2', 'x3', 'x4', 'x5', 'y']

    def test_correlation(self):
        df = simulate_collinear(n=5000, rho=0.9, seed=1)
        assert df['x1'].corr(df['x2']) == pytest.approx(0.9, abs=0.02)

    def test_response_model(self):
        df = simulate_collinear(n=5000, rho=0.5, beta=2.0, sigma=0.5, n_irrelevant=2, seed=3)

        X = np.column_stack([np.ones(len(df)), df[['x1', 'x2', 'x3', 'x4']].values])
        coef, *_ = np.linalg.lstsq(X, df['y'].values, rcond=None)

        np.testing.assert_allclose(coef, [0.0, 2.0, 2.0, 0.0, 0.0], atol=0.05)

    def test_reproducible(self):
        df1 = simulate_collinear(seed=7)
        df2 = simulate_collinear(seed=7)
        np.testing.assert_array_equal(df1.values, df2.values)

    @pytest.mark.parametrize("kwargs", [
        {'rho': 1.0},
        {'rho': -1.5},
        {'n': 2},
        {'n_irrelevant': -1},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            simulate_collinear(**kwargs)


class TestWriteDataset:
    """Tests for write_dataset."""

    def test_write_and_load(self, tmp_path):
        df = simulate_collinear(n=20)
        path = write_dataset(df, str(tmp_path / "data" / "collinear.txt"), sep=';')

        loaded = load_data(path, sep=';')

        assert list(loaded.columns) == list(df.columns)
        np.testing.assert_allclose(loaded.values, df.values)
