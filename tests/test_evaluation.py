"""
Test Suite for Evaluation Module
==================================

Tests for performance statistics and selection figures.
"""

import json

import pytest
import numpy as np

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from projsel.evaluation import (
    calculate_stats, plot_varsel_stats, plot_cv_proportions, plot_kl_path,
    evaluate_selection, print_varsel_report
)
from projsel.selection import varsel, cv_varsel


class TestCalculateStats:
    """Tests for calculate_stats."""

    @pytest.fixture
    def data(self):
        rng = np.random.default_rng(0)
        n = 100
        y = rng.standard_normal(n)
        ref_yhat = y + 0.3 * rng.standard_normal(n)
        yhat = y + 0.6 * rng.standard_normal(n)
        ref_lpd = rng.normal(-1.0, 0.2, n)
        lpd = ref_lpd - rng.uniform(0, 0.4, n)
        return lpd, yhat, y, ref_lpd, ref_yhat

    def test_elpd(self, data):
        lpd, yhat, y, ref_lpd, ref_yhat = data
        stats = calculate_stats(lpd, yhat, y, ref_lpd, ref_yhat, stats=('elpd',))['elpd']

        assert stats['value'] == pytest.approx(lpd.sum())
        assert stats['se'] == pytest.approx(np.sqrt(len(y) * np.var(lpd)))
        assert stats['diff'] == pytest.approx((lpd - ref_lpd).sum())
        assert stats['lower'] < stats['diff'] < stats['upper']

    def test_mlpd(self, data):
        lpd, yhat, y, ref_lpd, ref_yhat = data
        stats = calculate_stats(lpd, yhat, y, ref_lpd, ref_yhat, stats=('mlpd',))['mlpd']
        assert stats['value'] == pytest.approx(lpd.mean())

    def test_rmse_and_r2(self, data):
        lpd, yhat, y, ref_lpd, ref_yhat = data
        stats = calculate_stats(lpd, yhat, y, ref_lpd, ref_yhat, stats=('rmse', 'r2'), n_boot=500)

        assert stats['rmse']['value'] == pytest.approx(np.sqrt(np.mean((y - yhat) ** 2)))
        assert stats['rmse']['diff'] > 0
        assert stats['rmse']['se'] > 0
        assert stats['r2']['value'] < 1
        assert stats['r2']['diff'] < 0

    def test_identical_to_reference(self, data):
        lpd, yhat, y, ref_lpd, ref_yhat = data
        stats = calculate_stats(ref_lpd, ref_yhat, y, ref_lpd, ref_yhat, stats=('elpd', 'rmse'))

        for stat in ('elpd', 'rmse'):
            assert stats[stat]['diff'] == pytest.approx(0.0)
            assert stats[stat]['diff_se'] == pytest.approx(0.0)

    def test_wider_bounds_for_smaller_alpha(self, data):
        narrow = calculate_stats(*data, stats=('elpd',), alpha=0.32)['elpd']
        wide = calculate_stats(*data, stats=('elpd',), alpha=0.05)['elpd']
        assert wide['upper'] - wide['lower'] > narrow['upper'] - narrow['lower']

    def test_unknown_stat(self, data):
        with pytest.raises(ValueError, match="Unknown stats"):
            calculate_stats(*data, stats=('auc',))

    def test_invalid_alpha(self, data):
        with pytest.raises(ValueError, match="alpha"):
            calculate_stats(*data, alpha=1.5)


class TestSelectionPlots:
    """Tests for selection figures and the evaluation report."""

    @pytest.fixture
    def loo_result(self, reference):
        return cv_varsel(reference, nloo=5, ndraws_pred=50, nterms_max=4)

    def test_plot_varsel_stats(self, loo_result, tmp_path):
        path = tmp_path / "stats.png"
        fig = plot_varsel_stats(loo_result, stats=('elpd', 'rmse'), save_path=str(path))

        assert path.exists()
        assert len(fig.axes) == 2

    def test_plot_marks_given_size(self, loo_result):
        fig = plot_varsel_stats(loo_result, stats=('elpd', 'rmse'), suggested_size=3)

        for ax in fig.axes:
            labels = [t.get_text() for t in ax.get_legend().get_texts()]
            assert 'Suggested size: 3' in labels

    def test_plot_without_size(self, loo_result):
        fig = plot_varsel_stats(loo_result, stats=('elpd',))
        labels = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
        assert not any(label.startswith('Suggested') for label in labels)

    def test_plot_varsel_stats_deltas(self, loo_result, tmp_path):
        path = tmp_path / "deltas.png"
        plot_varsel_stats(loo_result, stats=('mlpd',), deltas=True, save_path=str(path))
        assert path.exists()

    def test_plot_cv_proportions(self, loo_result, tmp_path):
        path = tmp_path / "props.png"
        plot_cv_proportions(loo_result, cumulate=True, save_path=str(path))
        assert path.exists()

    def test_plot_kl_path(self, loo_result, tmp_path):
        path = tmp_path / "kl.png"
        plot_kl_path(loo_result, save_path=str(path))
        assert path.exists()

    def test_evaluate_selection(self, loo_result, tmp_path):
        result = evaluate_selection(loo_result, output_dir=str(tmp_path))

        assert (tmp_path / "metrics" / "varsel_summary.csv").exists()
        with open(result['metrics_file']) as f:
            metrics = json.load(f)
        assert metrics['cv_method'] == 'loo'
        assert metrics['solution_terms'] == loo_result.solution_terms
        assert len(metrics['path']) == 5
        assert "varsel_cv_proportions.png" in result['figures']
        for name in result['figures']:
            assert (tmp_path / "figures" / name).exists()

    def test_evaluate_records_given_size(self, loo_result, tmp_path):
        result = evaluate_selection(loo_result, output_dir=str(tmp_path), suggested_size=1)

        with open(result['metrics_file']) as f:
            metrics = json.load(f)
        assert result['suggested_size'] == 1
        assert metrics['suggested_size'] == 1
        assert metrics['suggested_terms'] == loo_result.solution_terms[:1]

    def test_evaluate_in_sample_has_no_proportions(self, reference, tmp_path):
        result = evaluate_selection(varsel(reference, ndraws_pred=50), output_dir=str(tmp_path))
        assert "varsel_cv_proportions.png" not in result['figures']

    def test_print_report(self, loo_result, capsys):
        print_varsel_report(loo_result)
        out = capsys.readouterr().out

        assert "VARIABLE SELECTION REPORT" in out
        assert "(Intercept)" in out
        assert "nan" not in out

    def test_print_report_marks_given_size(self, loo_result, capsys):
        print_varsel_report(loo_result, suggested_size=2)
        out = capsys.readouterr().out

        assert "<- suggested" in out
        assert f"Suggested size: 2 {loo_result.solution_terms[:2]}" in out
