"""Pyro model definitions, fitting, prediction and comparison."""

from .comparison import ComparisonResult, compare, comparison_metrics, run_comparison
from .ct_model import CtRegressionModel, FittedModel, fit
from .diagnostics import FitDiagnostics, arviz_ess, diagnose, diagnose_mcmc, format_diagnostics
from .hierarchical import ct_regression_model, random_effect_sites
from .predict import PredictionSet, extend_random_effects, predict

__all__ = [
    "ComparisonResult",
    "CtRegressionModel",
    "FitDiagnostics",
    "FittedModel",
    "PredictionSet",
    "arviz_ess",
    "compare",
    "comparison_metrics",
    "ct_regression_model",
    "diagnose",
    "diagnose_mcmc",
    "extend_random_effects",
    "fit",
    "format_diagnostics",
    "predict",
    "random_effect_sites",
    "run_comparison",
]
