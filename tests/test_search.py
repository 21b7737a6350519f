"""
Test Suite for Search Module
==============================

Tests for forward and L1 solution path searches.
"""

import logging

import pytest
import numpy as np

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from projsel.projection import get_refdist
from projsel.search import forward_search, l1_search, search_path


class TestForwardSearch:
    """Tests for forward_search."""

    def test_relevant_terms_first(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, kl_path, kl_null = forward_search(refdist, reference.X)

        assert set(path[:2]) == {0, 1}
        assert sorted(path) == list(range(5))
        assert len(kl_path) == 5

    def test_kl_non_increasing(self, reference):
        refdist = get_refdist(reference, ndraws=50)
        _, kl_path, kl_null = forward_search(refdist, reference.X)

        kls = [kl_null] + kl_path
        assert all(a >= b - 1e-12 for a, b in zip(kls, kls[1:]))
        assert kl_path[-1] == pytest.approx(0.0, abs=1e-10)

    def test_nterms_max(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, kl_path, _ = forward_search(refdist, reference.X, nterms_max=2)

        assert len(path) == 2
        assert len(kl_path) == 2

    def test_nterms_max_capped(self, reference, caplog):
        refdist = get_refdist(reference, nclusters=1)
        with caplog.at_level(logging.WARNING):
            path, _, _ = forward_search(refdist, reference.X, nterms_max=10)

        assert len(path) == 5
        assert "capping" in caplog.text

    def test_negative_nterms_max(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        with pytest.raises(ValueError, match="non-negative"):
            forward_search(refdist, reference.X, nterms_max=-1)

    def test_observation_weights(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        o = np.ones(reference.nobs)
        o[:10] = 0.0
        path, _, _ = forward_search(refdist, reference.X, obs_weights=o)

        assert set(path[:2]) == {0, 1}

    def test_prescreen_keeps_relevant_terms(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, kl_path, kl_null = forward_search(refdist, reference.X, prescreen_k=2)

        assert set(path[:2]) == {0, 1}
        assert sorted(path) == list(range(5))
        kls = [kl_null] + kl_path
        assert all(a >= b - 1e-12 for a, b in zip(kls, kls[1:]))

    def test_prescreen_covering_all_terms(self, reference):
        refdist = get_refdist(reference, ndraws=50)
        full = forward_search(refdist, reference.X)
        screened = forward_search(refdist, reference.X, prescreen_k=5)

        assert screened[0] == full[0]
        np.testing.assert_allclose(screened[1], full[1])

    def test_invalid_prescreen(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        with pytest.raises(ValueError, match="prescreen_k"):
            forward_search(refdist, reference.X, prescreen_k=0)

    def test_steps_logged_with_term_names(self, reference, caplog):
        refdist = get_refdist(reference, nclusters=1)
        with caplog.at_level(logging.DEBUG, logger="projsel.search"):
            path, _, _ = forward_search(refdist, reference.X, nterms_max=2,
                                        term_names=reference.term_names)

        assert f"Step 1: added {reference.term_names[path[0]]}" in caplog.text
        assert "Step 2: added" in caplog.text


class TestL1Search:
    """Tests for l1_search."""

    def test_relevant_terms_first(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, kl_path, kl_null = l1_search(refdist, reference.X)

        assert set(path[:2]) == {0, 1}
        assert sorted(path) == list(range(5))
        assert kl_null > kl_path[0] > kl_path[1]

    def test_nterms_max(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, kl_path, _ = l1_search(refdist, reference.X, nterms_max=3)
        assert len(path) == 3
        assert len(kl_path) == 3


class TestSearchPath:
    """Tests for search_path dispatch."""

    def test_methods_agree_on_relevant_terms(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        forward, _, _ = search_path(refdist, reference.X, method="forward", nterms_max=2)
        l1, _, _ = search_path(refdist, reference.X, method="l1", nterms_max=2)

        assert set(forward) == set(l1) == {0, 1}

    def test_unknown_method(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        with pytest.raises(ValueError, match="Unknown search method"):
            search_path(refdist, reference.X, method="stepwise")

    def test_prescreen_passed_to_forward(self, reference):
        refdist = get_refdist(reference, nclusters=1)
        path, _, _ = search_path(refdist, reference.X, method="forward", nterms_max=2,
                                 term_names=reference.term_names, prescreen_k=3)
        assert set(path) == {0, 1}
