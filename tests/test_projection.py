"""
Test Suite for Projection Module
==================================

Tests for reference draw reduction and Gaussian projection onto submodels.
"""

import pytest
import numpy as np

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from projsel.projection import (
    RefDist, get_refdist, project_submodel, project, resolve_terms, ProjectedPosterior
)


class TestGetRefdist:
    """Tests for get_refdist."""

    def test_all_draws(self, reference):
        refdist = get_refdist(reference)

        assert refdist.ndraws == reference.ndraws
        np.testing.assert_allclose(refdist.weights.sum(), 1.0)
        np.testing.assert_allclose(refdist.var, reference.sigma ** 2)

    def test_thinned(self, reference):
        refdist = get_refdist(reference, ndraws=50)
        assert refdist.ndraws == 50

    def test_single_cluster(self, reference):
        refdist = get_refdist(reference, nclusters=1)

        assert refdist.ndraws == 1
        np.testing.assert_allclose(refdist.mu[0], reference.mu().mean(axis=0))
        # Spread of the linear predictor is absorbed into the noise variance
        assert refdist.var[0] > np.mean(reference.sigma ** 2)

    def test_clusters(self, reference):
        refdist = get_refdist(reference, nclusters=5, seed=1)

        assert 1 <= refdist.ndraws <= 5
        np.testing.assert_allclose(refdist.weights.sum(), 1.0)

    def test_draw_weights(self, reference):
        w = np.zeros(reference.ndraws)
        w[3] = 1.0
        refdist = get_refdist(reference, nclusters=1, draw_weights=w)

        np.testing.assert_allclose(refdist.mu[0], reference.mu()[3])
        np.testing.assert_allclose(refdist.var[0], reference.sigma[3] ** 2)

    def test_ndraws_and_nclusters(self, reference):
        with pytest.raises(ValueError, match="at most one"):
            get_refdist(reference, ndraws=10, nclusters=2)

    def test_invalid_nclusters(self, reference):
        with pytest.raises(ValueError, match="nclusters"):
            get_refdist(reference, nclusters=0)

    def test_invalid_weights(self, reference):
        with pytest.raises(ValueError, match="positive sum"):
            get_refdist(reference, draw_weights=np.zeros(reference.ndraws))


class TestProjectSubmodel:
    """Tests for project_submodel."""

    def test_full_model_is_exact(self, reference):
        refdist = get_refdist(reference)
        proj = project_submodel(refdist, reference.X, range(reference.X.shape[1]))

        np.testing.assert_allclose(proj['coef'][:, 0], reference.alpha, atol=1e-8)
        np.testing.assert_allclose(proj['coef'][:, 1:], reference.beta, atol=1e-8)
        np.testing.assert_allclose(proj['sigma'], reference.sigma, rtol=1e-8)
        assert proj['kl'] == pytest.approx(0.0, abs=1e-10)

    def test_submodel_inflates_sigma(self, reference):
        refdist = get_refdist(reference)
        proj = project_submodel(refdist, reference.X, [0])

        assert np.all(proj['sigma'] >= reference.sigma)
        assert proj['kl'] > 0
        assert proj['coef'].shape == (reference.ndraws, 2)
        assert proj['mu'].shape == (reference.ndraws, reference.nobs)

    def test_kl_decreases_for_nested_submodels(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        kls = [project_submodel(refdist, reference.X, list(range(k)))['kl'] for k in range(6)]

        assert all(a >= b - 1e-12 for a, b in zip(kls, kls[1:]))

    def test_intercept_only(self, reference):
        refdist = get_refdist(reference)
        proj = project_submodel(refdist, reference.X, [])

        np.testing.assert_allclose(proj['coef'][:, 0], reference.mu().mean(axis=1))

    def test_zero_observation_weight_drops_observation(self, reference):
        refdist = get_refdist(reference, ndraws=20)
        o = np.ones(reference.nobs)
        o[5] = 0.0
        keep = o > 0

        proj = project_submodel(refdist, reference.X, [0, 1], obs_weights=o)
        subset = RefDist(refdist.mu[:, keep], refdist.var, refdist.weights)
        expected = project_submodel(subset, reference.X[keep], [0, 1])

        np.testing.assert_allclose(proj['coef'], expected['coef'])
        np.testing.assert_allclose(proj['sigma'], expected['sigma'])


class TestProject:
    """Tests for project and resolve_terms."""

    def test_project_terms(self, reference):
        proj = project(reference, terms=['x1', 'x2'], ndraws=100)

        assert isinstance(proj, ProjectedPosterior)
        assert proj.ndraws == 100
        assert list(proj.draws().columns) == ['Intercept', 'x1', 'x2', 'sigma']
        assert proj.draws()['x1'].mean() == pytest.approx(reference.beta[:, 0].mean(), abs=0.2)

    def test_project_clusters(self, reference):
        proj = project(reference, terms=['x1'], nclusters=4)
        assert proj.ndraws <= 4
        np.testing.assert_allclose(proj.weights.sum(), 1.0)

    def test_predict_and_density(self, reference):
        proj = project(reference, terms=['x2', 'x1'], ndraws=50)

        mu = proj.predict(reference.X)
        lpd = proj.log_predictive_density(reference.X, reference.y)

        assert mu.shape == (50, reference.nobs)
        assert lpd.shape == (50, reference.nobs)
        assert np.all(np.isfinite(lpd))

    def test_summary(self, reference):
        summary = project(reference, terms=['x1'], ndraws=100).summary(prob=0.9)

        assert list(summary.index) == ['Intercept', 'x1', 'sigma']
        assert {'mean', 'sd', 'median', 'q5', 'q95'} <= set(summary.columns)

    def test_unknown_term(self, reference):
        with pytest.raises(ValueError, match="Unknown terms"):
            project(reference, terms=['x1', 'abdomen'])

    def test_nothing_specified(self, reference):
        with pytest.raises(ValueError, match="Specify terms"):
            resolve_terms(reference)

    def test_terms_from_selection_result(self, reference):
        class Result:
            solution_terms = ['x2', 'x1', 'x4']

            def suggest_size(self):
                return 2

        assert resolve_terms(reference, varsel_result=Result()) == ['x2', 'x1']
        assert resolve_terms(reference, nterms=3, varsel_result=Result()) == ['x2', 'x1', 'x4']
        with pytest.raises(ValueError, match="outside the searched sizes"):
            resolve_terms(reference, nterms=4, varsel_result=Result())

    def test_no_suggested_size(self, reference):
        class Result:
            solution_terms = ['x1']

            def suggest_size(self):
                return None

        with pytest.raises(ValueError, match="No suggested submodel size"):
            resolve_terms(reference, varsel_result=Result())
