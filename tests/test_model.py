"""
Test Suite for Model Module
=============================

Tests for the reference posterior container and the NumPyro regression.
"""

import pytest
import numpy as np
import pandas as pd
from scipy import stats

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import numpyro
from numpyro import handlers

from projsel.model import (
    ReferencePosterior, BayesianLinearRegression, horseshoe_global_scale,
    linear_regression, train_model, print_model_summary, configure_cores
)
from projsel.posterior import plot_trace


class TestReferencePosterior:
    """Tests for ReferencePosterior."""

    def test_shapes(self, reference):
        assert reference.ndraws == 200
        assert reference.nobs == 80
        assert reference.mu().shape == (200, 80)
        assert reference.log_lik().shape == (200, 80)

    def test_log_lik(self, reference):
        expected = stats.norm.logpdf(reference.y[0], reference.mu()[:, 0], reference.sigma)
        np.testing.assert_allclose(reference.log_lik()[:, 0], expected)

    def test_mu_new_data(self, reference):
        X_new = np.ones((3, 5))
        mu = reference.mu(X_new)
        np.testing.assert_allclose(mu[:, 0], reference.alpha + reference.beta.sum(axis=1))

    def test_thin(self, reference):
        thinned = reference.thin(50)
        assert thinned.ndraws == 50
        np.testing.assert_array_equal(thinned.alpha[[0, -1]], reference.alpha[[0, -1]])

        random = reference.thin(50, seed=1)
        assert random.ndraws == 50
        assert reference.thin(None) is reference
        assert reference.thin(1000) is reference

    def test_subset(self, reference):
        sub = reference.subset(np.arange(10))
        assert sub.nobs == 10
        assert sub.ndraws == reference.ndraws

    def test_chains(self, reference):
        chained = ReferencePosterior(reference.X, reference.y, reference.alpha,
                                     reference.beta, reference.sigma, n_chains=4)
        assert chained.n_chains == 4
        assert chained.subset(np.arange(10)).n_chains == 4
        assert chained.thin(50).n_chains == 1

        with pytest.raises(ValueError, match="chains"):
            ReferencePosterior(reference.X, reference.y, reference.alpha,
                               reference.beta, reference.sigma, n_chains=3)

    def test_draws(self, reference):
        draws = reference.draws()
        assert list(draws.columns) == ['Intercept', 'x1', 'x2', 'x3', 'x4', 'x5', 'sigma']
        assert len(draws) == 200

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="coefficients"):
            ReferencePosterior(np.zeros((5, 2)), np.zeros(5), np.zeros(4),
                               np.zeros((4, 3)), np.ones(4))
        with pytest.raises(ValueError, match="observations"):
            ReferencePosterior(np.zeros((5, 2)), np.zeros(6), np.zeros(4),
                               np.zeros((4, 2)), np.ones(4))
        with pytest.raises(ValueError, match="term names"):
            ReferencePosterior(np.zeros((5, 2)), np.zeros(5), np.zeros(4),
                               np.zeros((4, 2)), np.ones(4), term_names=['a'])


class TestPriors:
    """Tests for the regression model and its priors."""

    def test_global_scale(self):
        assert horseshoe_global_scale(5, 13, 251) == pytest.approx(5 / 8 / np.sqrt(251))

    @pytest.mark.parametrize("p0", [0, 13, 20])
    def test_global_scale_invalid(self, p0):
        with pytest.raises(ValueError, match="expected_relevant"):
            horseshoe_global_scale(p0, 13, 251)

    def test_horseshoe_sites(self):
        X = np.random.default_rng(0).standard_normal((20, 4))
        trace = handlers.trace(handlers.seed(linear_regression, 0)).get_trace(
            X=X, y=None, prior="horseshoe", tau0=0.1
        )

        for site in ["alpha", "sigma", "tau", "caux", "lambda", "z", "beta", "y"]:
            assert site in trace
        assert trace["beta"]["value"].shape == (4,)

    def test_normal_sites(self):
        X = np.random.default_rng(0).standard_normal((20, 3))
        trace = handlers.trace(handlers.seed(linear_regression, 0)).get_trace(
            X=X, y=None, prior="normal", scale_beta=2.0
        )

        assert "tau" not in trace
        assert trace["beta"]["type"] == "sample"

    def test_no_terms(self):
        X = np.zeros((10, 0))
        trace = handlers.trace(handlers.seed(linear_regression, 0)).get_trace(X=X, y=None)
        assert "beta" not in trace
        assert trace["y"]["value"].shape == (10,)


class TestBayesianLinearRegression:
    """Tests for fitting the reference model."""

    @pytest.fixture(scope="class")
    def data(self):
        rng = np.random.default_rng(0)
        X = pd.DataFrame(rng.standard_normal((60, 3)), columns=['a', 'b', 'c'])
        y = 1.0 + 2.0 * X['a'] + 0.5 * rng.standard_normal(60)
        return X, y

    @pytest.fixture(scope="class")
    def model(self, data):
        X, y = data
        return BayesianLinearRegression(
            expected_relevant=1, num_warmup=300, num_samples=300, num_chains=1, seed=1
        ).fit(X, y)

    def test_invalid_prior(self):
        with pytest.raises(ValueError, match="Unknown prior"):
            BayesianLinearRegression(prior="laplace")

    def test_non_finite_input(self, data):
        X, y = data
        y = y.copy()
        y.iloc[0] = np.nan
        with pytest.raises(ValueError, match="non-finite"):
            BayesianLinearRegression(num_chains=1).fit(X, y)

    def test_posterior_before_fit(self):
        with pytest.raises(ValueError, match="fitted"):
            BayesianLinearRegression().posterior()

    def test_fit(self, model):
        assert model._is_fitted
        assert model.term_names_ == ['a', 'b', 'c']
        assert model.training_info['n_draws'] == 300

    def test_posterior(self, model):
        ref = model.posterior()

        assert ref.ndraws == 300
        assert ref.beta.shape == (300, 3)
        assert ref.beta[:, 0].mean() == pytest.approx(2.0, abs=0.3)
        assert abs(ref.beta[:, 1].mean()) < 0.3
        assert ref.sigma.mean() == pytest.approx(0.5, abs=0.15)
        assert ref.n_chains == 1

    def test_predict(self, model, data):
        X, y = data
        pred = model.predict(X)
        assert pred.shape == (60,)
        assert np.corrcoef(pred, y)[0, 1] > 0.9

    def test_summary(self, model):
        summary = model.summary()
        assert 'r_hat' in summary.columns
        assert 'ess_bulk' in summary.columns
        assert 'tau' in summary.index

    def test_print_summary(self, model, capsys):
        print_model_summary(model)
        captured = capsys.readouterr()
        assert "REFERENCE MODEL SUMMARY" in captured.out
        assert "horseshoe" in captured.out

    def test_save_load(self, model, tmp_path):
        path = tmp_path / "model.joblib"
        model.save(str(path))
        loaded = BayesianLinearRegression.load(str(path))

        np.testing.assert_array_equal(loaded.posterior().alpha, model.posterior().alpha)
        assert loaded.get_params() == model.get_params()
        assert 'beta[a]' in loaded.summary().index

    def test_train_model(self, data, tmp_path):
        X, y = data
        config = {'model': {'prior': 'normal', 'num_warmup': 100, 'num_samples': 100,
                            'num_chains': 1}}
        path = tmp_path / "ref.joblib"
        model = train_model(X, y, None, config, save_path=str(path))

        assert model.prior == 'normal'
        assert model.term_names_ == ['a', 'b', 'c']
        assert path.exists()

    def test_refit(self, model, data):
        X, y = data
        refitted = model.refit(X.iloc[:40], y.iloc[:40])

        assert refitted is not model
        assert refitted.get_params() == model.get_params()
        assert refitted.term_names_ == model.term_names_
        assert refitted.posterior().nobs == 40
        assert model.posterior().nobs == 60

    def test_plot_trace(self, model, tmp_path):
        path = tmp_path / "trace.png"
        fig = plot_trace(model, save_path=str(path))

        assert fig is not None
        assert path.exists()


def test_configure_cores(monkeypatch):
    calls = []
    monkeypatch.setattr(numpyro, "set_host_device_count", calls.append)
    configure_cores(4)
    assert calls == [4]
