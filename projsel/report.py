"""
Projection Report Module - Phase 5
===================================

Projects the reference posterior onto the selected submodel and exports
the results.

Features:
    - Projection onto the configured or suggested submodel size
    - Export of projected draws to CSV
    - Posterior summaries on the model and the original data scale
    - Reference vs projected interval plot, coefficient pair plots
    - JSON report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence
from datetime import datetime

import pandas as pd
import matplotlib.pyplot as plt

from .model import ReferencePosterior
from .preprocessing import RegressionPreprocessor
from .projection import ProjectedPosterior, project
from .posterior import posterior_summary, plot_posterior_intervals, plot_coefficient_pairs
from .selection import suggest_size_from_config

logger = logging.getLogger(__name__)


def export_draws(draws: pd.DataFrame, output_path: str) -> str:
    """
    Export posterior draws to a CSV file.

    Args:
        draws: Draws DataFrame, one column per parameter
        output_path: File path of the CSV

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    draws.to_csv(output_path, index_label='draw')

    logger.info(f"Draws exported to {output_path}")
    return str(output_path)


def generate_selection_report(
    varsel_result,
    projection: ProjectedPosterior,
    summary: pd.DataFrame,
    summary_original: Optional[pd.DataFrame] = None,
    suggested_size: Optional[int] = None,
    output_path: Optional[str] = None
) -> Dict[str, Any]:
    """
    Generate a report of the selection and the projected submodel.

    Args:
        varsel_result: VarselResult the submodel was taken from (optional)
        projection: Projected posterior of the submodel
        summary: Posterior summary of the projection on the model scale
        summary_original: Posterior summary on the original data scale
        suggested_size: Suggested submodel size
        output_path: Path to save the report (optional)

    Returns:
        Report dictionary
    """
    report = {
        'generated_at': datetime.now().isoformat(),
        'selection': {},
        'projection': {
            'terms': projection.term_names,
            'n_terms': len(projection.term_names),
            'n_draws': projection.ndraws,
            'kl': projection.kl,
            'coefficients': summary.to_dict(orient='index')
        }
    }

    if summary_original is not None:
        report['projection']['coefficients_original_scale'] = summary_original.to_dict(orient='index')

    if varsel_result is not None:
        report['selection'] = {
            'method': varsel_result.method,
            'cv_method': varsel_result.cv_method,
            'validate_search': varsel_result.validate_search,
            'solution_terms': varsel_result.solution_terms,
            'suggested_size': suggested_size
        }

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2)
        logger.info(f"Projection report saved to {output_path}")

    return report


def _resolve_pairs(pairs: Optional[Sequence[Sequence[str]]], terms: List[str]) -> List[List[str]]:
    if pairs is not None:
        return [list(pair) for pair in pairs]
    if len(terms) >= 2:
        return [terms[:2]]
    return []


def run_projection(
    ref: ReferencePosterior,
    varsel_result,
    preprocessor: Optional[RegressionPreprocessor],
    config: Dict[str, Any],
    output_dir: str = "reports/",
    suggested_size: Optional[int] = None
) -> Dict[str, Any]:
    """
    Execute the complete projection workflow.

    This function:
    1. Chooses the submodel (configured terms, configured size, or the
       suggested size)
    2. Projects the reference posterior onto it
    3. Summarizes and exports the projected draws
    4. Plots reference vs projected intervals and coefficient pairs
    5. Writes a JSON report

    Args:
        ref: Reference posterior
        varsel_result: VarselResult supplying the solution path (optional
            when terms are configured)
        preprocessor: Fitted preprocessor for the original-scale summary
        config: Configuration dictionary
        output_dir: Directory for output files
        suggested_size: Suggested size chosen during selection; derived
            from the selection settings when not given

    Returns:
        Dictionary containing the projection, summaries and file paths
    """
    proj_config = config.get('projection', {})

    logger.info("=" * 60)
    logger.info("STARTING PROJECTION (Phase 5)")
    logger.info("=" * 60)

    output_dir = Path(output_dir)
    figures_dir = output_dir / "figures"
    tables_dir = output_dir / "projection"
    figures_dir.mkdir(parents=True, exist_ok=True)
    tables_dir.mkdir(parents=True, exist_ok=True)

    terms = proj_config.get('terms')
    nterms = proj_config.get('nterms')
    suggested = suggested_size
    if varsel_result is not None:
        if suggested is None:
            suggested = suggest_size_from_config(varsel_result, config)
        if terms is None and nterms is None:
            if suggested is None:
                raise ValueError(
                    "No suggested submodel size; set projection.nterms or projection.terms"
                )
            nterms = suggested
            logger.info(f"Using suggested size {nterms}")

    projection = project(
        ref,
        terms=terms,
        nterms=nterms,
        varsel_result=varsel_result,
        ndraws=proj_config.get('ndraws', 400),
        nclusters=proj_config.get('nclusters'),
        seed=proj_config.get('seed', 0)
    )

    prob = proj_config.get('prob', 0.9)
    proj_draws = projection.draws()
    summary = projection.summary(prob=prob)

    draws_path = export_draws(proj_draws, str(tables_dir / "projected_draws.csv"))
    summary_path = tables_dir / "projected_summary.csv"
    summary.to_csv(summary_path, index_label='parameter')

    summary_original = None
    summary_original_path = None
    if preprocessor is not None:
        original = preprocessor.coefficients_to_original_scale(proj_draws)
        summary_original = posterior_summary(original, weights=projection.weights, prob=prob)
        summary_original_path = tables_dir / "projected_summary_original_scale.csv"
        summary_original.to_csv(summary_original_path, index_label='parameter')

    ref_draws = ref.thin(proj_config.get('ndraws', 400)).draws()
    proj_label = f"Projected ({len(projection.term_names)} terms)"

    figures = []
    logger.info("Generating posterior interval plot...")
    plot_posterior_intervals(
        {'Reference': ref_draws, proj_label: proj_draws},
        weights_by_model={proj_label: projection.weights},
        params=ref.term_names,
        save_path=str(figures_dir / "projection_intervals.png")
    )
    figures.append("projection_intervals.png")

    for x, y in _resolve_pairs(proj_config.get('pairs'), ref.term_names):
        logger.info(f"Generating joint posterior plot of {x} and {y}...")
        filename = f"reference_pairs_{x}_{y}.png"
        plot_coefficient_pairs(ref_draws, x, y, save_path=str(figures_dir / filename))
        figures.append(filename)

    plt.close('all')

    report_path = output_dir / "projection_report.json"
    report = generate_selection_report(
        varsel_result, projection, summary, summary_original,
        suggested_size=suggested,
        output_path=str(report_path)
    )

    result = {
        'projection': projection,
        'summary': summary,
        'summary_original': summary_original,
        'suggested_size': suggested,
        'draws_path': draws_path,
        'summary_path': str(summary_path),
        'summary_original_path': str(summary_original_path) if summary_original_path else None,
        'report_path': str(report_path),
        'figures': figures,
        'report': report
    }

    logger.info("=" * 60)
    logger.info("PROJECTION COMPLETE")
    logger.info(f"  Terms: {projection.term_names}")
    logger.info(f"  KL: {projection.kl:.5f}")
    logger.info(f"  Output: {draws_path}")
    logger.info("=" * 60)

    return result


def print_projection_results(result: Dict[str, Any]) -> None:
    """
    Print formatted projection results to console.

    Args:
        result: Result dictionary from run_projection
    """
    projection = result['projection']
    summary = result['summary']

    print("\n" + "=" * 70)
    print(f"PROJECTED SUBMODEL - {len(projection.term_names)} TERMS")
    print("=" * 70)
    print(f"Terms: {', '.join(projection.term_names) or '(intercept only)'}")
    print(f"KL divergence from reference: {projection.kl:.5f}")
    print(f"Projected draws: {projection.ndraws}")

    lo_col, hi_col = summary.columns[-2], summary.columns[-1]
    print(f"\n{'Parameter':<15} {'Mean':<12} {'SD':<12} {lo_col:<12} {hi_col:<12}")
    print("-" * 70)
    for name, row in summary.iterrows():
        print(f"{name:<15} {row['mean']:<12.4f} {row['sd']:<12.4f} "
              f"{row[lo_col]:<12.4f} {row[hi_col]:<12.4f}")
    print("-" * 70)

    if result.get('summary_original') is not None:
        print("\nOriginal data scale:")
        original = result['summary_original']
        for name, row in original.iterrows():
            print(f"  {name:<13} mean={row['mean']:.4f}  sd={row['sd']:.4f}")

    print(f"\nDraws exported to: {result['draws_path']}")
    print(f"Full report saved to: {result['report_path']}")
    print("=" * 70 + "\n")
