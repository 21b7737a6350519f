#!/usr/bin/env python3
"""
Projection-Predictive Variable Selection - Main Pipeline
=========================================================

Orchestrates a Bayesian variable selection analysis of one regression
dataset, described by a YAML configuration file.

Phases:
    0. Simulate - Write the synthetic collinear dataset (collinear example)
    1. EDA - Exploratory Data Analysis
    2. Preprocessing - Derived columns, standardization, formula
    3. Fit - Reference model with a regularized horseshoe prior (NumPyro)
    4. Select - Solution path search and cross-validated size selection
    5. Project - Projection onto the selected submodel

Usage:
    # Run the complete body-fat analysis
    python main.py --config config/bodyfat.yaml --data data/bodyfat.txt

    # Run the collinear example (simulates its own data)
    python main.py --config config/collinear.yaml

    # Run a specific phase
    python main.py --config config/bodyfat.yaml --phase eda
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

sys.path.insert(0, str(Path(__file__).parent))

from projsel.data_loader import load_config, load_data, validate_data, print_data_summary
from projsel.datasets import simulate_collinear, write_dataset
from projsel.eda import generate_eda_report, print_correlation_insights
from projsel.preprocessing import analysis_frame, preprocess_pipeline, print_preprocessing_summary
from projsel.model import (
    BayesianLinearRegression, configure_cores, train_model, print_model_summary
)
from projsel.posterior import plot_trace
from projsel.selection import run_selection, suggest_size_from_config
from projsel.evaluation import evaluate_selection, print_varsel_report
from projsel.report import run_projection, print_projection_results

PHASES = ['simulate', 'eda', 'preprocess', 'fit', 'select', 'project', 'all']


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging for the pipeline."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def _reports_dir(config: Dict[str, Any]) -> str:
    return config.get('output', {}).get('reports_path', 'reports/')


def run_simulation(config: Dict[str, Any]) -> pd.DataFrame:
    """
    Execute Phase 0: write the synthetic collinear dataset.

    Args:
        config: Configuration dictionary with a 'simulate' section

    Returns:
        Simulated DataFrame
    """
    print("\n" + "=" * 70)
    print("PHASE 0: SIMULATE DATA")
    print("=" * 70)

    sim_config = config.get('simulate', {})
    data_config = config.get('data', {})

    df = simulate_collinear(
        n=sim_config.get('n', 100),
        rho=sim_config.get('rho', 0.9),
        beta=sim_config.get('beta', 1.0),
        sigma=sim_config.get('sigma', 1.0),
        n_irrelevant=sim_config.get('n_irrelevant', 4),
        seed=sim_config.get('seed', 0)
    )
    path = write_dataset(df, data_config.get('path', 'data/collinear.csv'),
                         sep=data_config.get('sep', ','))

    print(f"\n✓ Simulated {len(df)} rows × {df.shape[1]} columns written to {path}")

    return df


def run_eda(df: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 1: Exploratory Data Analysis.

    Only the response and the configured predictors (derived ones
    included) are analysed.

    Args:
        df: Raw data
        config: Configuration dictionary

    Returns:
        EDA report dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 1: EXPLORATORY DATA ANALYSIS")
    print("=" * 70)

    output_dir = config.get('output', {}).get('figures_path', 'reports/figures/')
    response = config.get('data', {}).get('response')

    df = analysis_frame(df, config)
    report = generate_eda_report(df, response=response, output_dir=output_dir, show_plots=False)

    corr_df = pd.DataFrame(report["correlation_matrix"])
    print_correlation_insights(corr_df, threshold=config.get('eda', {}).get('corr_threshold', 0.5))

    print(f"\n✓ EDA complete. {len(report['figures'])} figures saved to {output_dir}")

    return report


def run_preprocessing(df: pd.DataFrame, config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 2: Data Preprocessing.

    Args:
        df: Raw data
        config: Configuration dictionary

    Returns:
        Preprocessing result dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 2: DATA PREPROCESSING")
    print("=" * 70)

    result = preprocess_pipeline(df, config)

    print_preprocessing_summary(result)

    return result


def run_fit(prep_result: Dict[str, Any], config: Dict[str, Any]) -> BayesianLinearRegression:
    """
    Execute Phase 3: Reference model fit.

    A previously saved model is reused when output.reuse_model is set and
    the model file exists.

    Args:
        prep_result: Preprocessing result dictionary
        config: Configuration dictionary

    Returns:
        Fitted reference model
    """
    print("\n" + "=" * 70)
    print("PHASE 3: REFERENCE MODEL FIT")
    print("=" * 70)

    output_config = config.get('output', {})
    model_path = output_config.get('model_path', 'models/reference.joblib')

    if output_config.get('reuse_model', False) and Path(model_path).exists():
        model = BayesianLinearRegression.load(model_path)
        if model.term_names_ != prep_result['term_names']:
            raise ValueError(
                f"Saved model terms {model.term_names_} do not match the design "
                f"{prep_result['term_names']}; remove {model_path} or disable reuse_model"
            )
    else:
        model = train_model(
            prep_result['X'],
            prep_result['y'],
            prep_result['term_names'],
            config,
            save_path=model_path
        )

    print_model_summary(model)

    figures_dir = Path(output_config.get('figures_path', 'reports/figures/'))
    figures_dir.mkdir(parents=True, exist_ok=True)
    plot_trace(model, save_path=str(figures_dir / "reference_trace.png"))
    plt.close('all')

    return model


def run_select(
    model: BayesianLinearRegression,
    prep_result: Dict[str, Any],
    config: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Execute Phase 4: Variable selection.

    The suggested size is chosen here, once, from selection.stat, alpha
    and pct, and shared by the report, the plots and the projection.

    Args:
        model: Fitted reference model
        prep_result: Preprocessing result dictionary
        config: Configuration dictionary

    Returns:
        Dictionary with the VarselResult (varsel), the suggested size and
        the evaluation output
    """
    print("\n" + "=" * 70)
    print("PHASE 4: VARIABLE SELECTION")
    print("=" * 70)

    sel_config = config.get('selection', {})
    X = np.asarray(prep_result['X'], dtype=float)
    y = np.asarray(prep_result['y'], dtype=float)

    def refit(train_idx):
        return model.refit(X[train_idx], y[train_idx]).posterior()

    result = run_selection(model.posterior(), config, refit=refit)

    suggested = suggest_size_from_config(result, config)

    stats = tuple(sel_config.get('stats', ['elpd', 'rmse']))
    alpha = sel_config.get('alpha', 0.32)
    evaluation = evaluate_selection(
        result,
        output_dir=_reports_dir(config),
        stats=stats,
        alpha=alpha,
        suggested_size=suggested
    )

    print_varsel_report(result, stats=stats, alpha=alpha, suggested_size=suggested)

    return {
        'varsel': result,
        'suggested_size': suggested,
        'evaluation': evaluation
    }


def run_project(
    model: BayesianLinearRegression,
    selection: Optional[Dict[str, Any]],
    prep_result: Dict[str, Any],
    config: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Execute Phase 5: Projection onto the selected submodel.

    Args:
        model: Fitted reference model
        selection: Result of run_select (None when terms are configured)
        prep_result: Preprocessing result dictionary
        config: Configuration dictionary

    Returns:
        Projection result dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 5: PROJECTION")
    print("=" * 70)

    result = run_projection(
        model.posterior(),
        selection['varsel'] if selection else None,
        prep_result['preprocessor'],
        config,
        output_dir=_reports_dir(config),
        suggested_size=selection['suggested_size'] if selection else None
    )

    print_projection_results(result)

    return result


def _load_dataset(config: Dict[str, Any]) -> pd.DataFrame:
    data_config = config.get('data', {})
    df = load_data(data_config['path'], sep=data_config.get('sep', ','))
    print_data_summary(df)

    is_valid, _ = validate_data(
        df,
        response=data_config.get('response'),
        predictors=data_config.get('predictors'),
        strict=False
    )
    if not is_valid:
        print("⚠️  Data validation warnings detected. Proceeding anyway...")

    return df


def run_full_pipeline(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute all phases.

    Args:
        config: Configuration dictionary

    Returns:
        Dictionary containing all phase results
    """
    print("\n" + "=" * 70)
    print(f"PROJECTION-PREDICTIVE VARIABLE SELECTION: {config.get('analysis', {}).get('name', '')}")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    results = {'config': config}

    if 'simulate' in config:
        run_simulation(config)

    print("\n📊 Loading data...")
    df = _load_dataset(config)
    results['data_shape'] = df.shape

    results['eda'] = run_eda(df, config)
    results['preprocessing'] = run_preprocessing(df, config)
    results['model'] = run_fit(results['preprocessing'], config)
    results['selection'] = run_select(results['model'], results['preprocessing'], config)
    results['projection'] = run_project(
        results['model'], results['selection'], results['preprocessing'], config
    )

    print("\n" + "=" * 70)
    print("PIPELINE COMPLETE")
    print("=" * 70)
    print(f"  • Input data: {df.shape[0]} rows × {df.shape[1]} columns")
    print(f"  • Solution path: {results['selection']['varsel'].solution_terms}")
    print(f"  • Projected terms: {results['projection']['projection'].term_names}")
    print(f"  • Report: {results['projection']['report_path']}")
    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70 + "\n")

    return results


def run_single_phase(phase: str, config: Dict[str, Any]) -> Any:
    """
    Execute a single phase of the pipeline, with the phases it depends on.

    Args:
        phase: Phase to run ('simulate', 'eda', 'preprocess', 'fit', 'select', 'project')
        config: Configuration dictionary

    Returns:
        Phase result
    """
    if phase == 'simulate':
        return run_simulation(config)

    if phase not in PHASES:
        raise ValueError(f"Unknown phase: {phase}. Choose from: {', '.join(PHASES)}")

    df = _load_dataset(config)

    if phase == 'eda':
        return run_eda(df, config)

    prep_result = run_preprocessing(df, config)
    if phase == 'preprocess':
        return prep_result

    model = run_fit(prep_result, config)
    if phase == 'fit':
        return model

    selection = run_select(model, prep_result, config)
    if phase == 'select':
        return selection

    return run_project(model, selection, prep_result, config)


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Bayesian projection-predictive variable selection pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --config config/bodyfat.yaml --data data/bodyfat.txt
  python main.py --config config/collinear.yaml
  python main.py --config config/bodyfat.yaml --phase eda
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/bodyfat.yaml',
        help='Path to configuration file (default: config/bodyfat.yaml)'
    )

    parser.add_argument(
        '--data', '-d',
        type=str,
        default=None,
        help='Path to the input data file (overrides data.path in the config)'
    )

    parser.add_argument(
        '--phase', '-p',
        type=str,
        choices=PHASES,
        default='all',
        help='Phase to run (default: all)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return 1

    config = load_config(args.config)
    if args.data:
        config.setdefault('data', {})['path'] = args.data

    log_config = config.get('logging', {})
    level = 'DEBUG' if args.verbose else log_config.get('level', 'INFO')
    log_file = log_config.get(
        'file', f'logs/pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log'
    )
    setup_logging(level, log_file)

    simulates = args.phase == 'simulate' or (args.phase == 'all' and 'simulate' in config)
    data_path = config.get('data', {}).get('path')
    if not simulates and (not data_path or not Path(data_path).exists()):
        print(f"Error: Data file not found: {data_path}")
        print("\nPass the data file with --data or set data.path in the config.")
        print(f"Expected format: delimited text with a header row, separator "
              f"'{config.get('data', {}).get('sep', ',')}'")
        return 1

    try:
        n_cores = config.get('model', {}).get('num_cores')
        if n_cores:
            configure_cores(n_cores)

        if args.phase == 'all':
            run_full_pipeline(config)
        else:
            run_single_phase(args.phase, config)

        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
