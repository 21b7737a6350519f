"""
Projection-Predictive Variable Selection
=========================================

A pipeline for Bayesian variable selection in Gaussian linear regression:
fit a reference model with a shrinkage prior, search for a solution path,
estimate submodel performance with cross-validation and project the
reference posterior onto the selected submodel.

Modules:
    - data_loader: Configuration and delimited-text ingestion
    - datasets: Synthetic collinear dataset
    - eda: Exploratory Data Analysis (Phase 1)
    - preprocessing: Derived columns, standardization, formula (Phase 2)
    - model: Reference model sampled with NumPyro (Phase 3)
    - loo: PSIS leave-one-out weights
    - projection: Projection of the reference posterior onto submodels
    - search: Forward and L1 solution path search
    - selection: Variable selection with size estimation (Phase 4)
    - evaluation: Performance statistics and selection plots (Phase 4)
    - posterior: Posterior summaries and plots
    - report: Projection workflow and export (Phase 5)
"""

__version__ = "1.0.0"
__author__ = "Projection Predictive Team"
