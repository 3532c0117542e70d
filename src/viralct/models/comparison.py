"""Side-by-side evaluation of prediction sets against ground truth."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import numpy as np
import pandas as pd
from scipy.stats import pearsonr
from sklearn.metrics import mean_absolute_error, mean_squared_error

from viralct.config import MCMCConfig, ModelConfig, PredictOptions
from viralct.errors import BackendFailure, InvalidParameter
from .ct_model import CtRegressionModel, FittedModel
from .predict import PredictionSet, predict

try:
    from tqdm.auto import tqdm
except Exception:  # pragma: no cover - fallback if tqdm is missing
    tqdm = None

KEYS = ["individual_id", "time"]
COMPARISON_COLUMNS = (
    "label",
    "individual_id",
    "time",
    "point_estimate",
    "lower_bound",
    "upper_bound",
    "ground_truth",
    "reliable",
)


def compare(
    prediction_sets: Mapping[str, PredictionSet],
    truth: pd.DataFrame,
    truth_column: str = "observed_value",
) -> pd.DataFrame:
    """
    Stack labelled prediction sets and join each to ground truth.

    Args:
        prediction_sets: Mapping of label to PredictionSet; any number of entries.
        truth: Frame with individual_id, time and ``truth_column``.
        truth_column: Column of ``truth`` reported as ground_truth (e.g. observed_value
            or true_value).

    Returns:
        DataFrame with COMPARISON_COLUMNS and one row per (label, query row).
        Query rows without a truth row keep a NaN ground_truth.
    """
    missing = [col for col in KEYS + [truth_column] if col not in truth.columns]
    if missing:
        raise InvalidParameter(f"truth is missing columns {missing}")
    truth_keys = truth[KEYS + [truth_column]].rename(columns={truth_column: "ground_truth"})
    if truth_keys.duplicated(subset=KEYS).any():
        raise InvalidParameter("truth has duplicate (individual_id, time) rows")
    truth_keys = truth_keys.astype({"individual_id": np.int64, "time": np.int64})

    frames = []
    for label, prediction_set in prediction_sets.items():
        frame = prediction_set.predictions.astype({"individual_id": np.int64, "time": np.int64}).merge(
            truth_keys, on=KEYS, how="left", validate="many_to_one"
        )
        frame.insert(0, "label", label)
        frame["reliable"] = bool(prediction_set.reliable)
        frames.append(frame)

    if not frames:
        return pd.DataFrame(columns=list(COMPARISON_COLUMNS))
    return pd.concat(frames, ignore_index=True)[list(COMPARISON_COLUMNS)]


def comparison_metrics(table: pd.DataFrame) -> pd.DataFrame:
    """
    Per-label accuracy and calibration of a comparison table.

    Rows with missing ground truth are excluded from the metrics but counted in n_rows.

    Returns:
        DataFrame indexed by label with n_rows, n_scored, rmse, mae, pearson_r,
        coverage (share of truths inside the interval), mean_width and reliable.
    """
    rows = []
    for label, group in table.groupby("label", sort=False):
        scored = group.dropna(subset=["ground_truth"])
        truth = scored["ground_truth"].to_numpy(dtype=float)
        estimate = scored["point_estimate"].to_numpy(dtype=float)
        metrics = {
            "label": label,
            "n_rows": len(group),
            "n_scored": len(scored),
            "rmse": np.nan,
            "mae": np.nan,
            "pearson_r": np.nan,
            "coverage": np.nan,
            "mean_width": float((group["upper_bound"] - group["lower_bound"]).mean()),
            "reliable": bool(group["reliable"].all()),
        }
        if len(scored):
            metrics["rmse"] = float(np.sqrt(mean_squared_error(truth, estimate)))
            metrics["mae"] = float(mean_absolute_error(truth, estimate))
            inside = (scored["lower_bound"] <= scored["ground_truth"]) & (scored["ground_truth"] <= scored["upper_bound"])
            metrics["coverage"] = float(inside.mean())
        if len(scored) > 1 and np.std(truth) > 0 and np.std(estimate) > 0:
            metrics["pearson_r"] = float(pearsonr(truth, estimate)[0])
        rows.append(metrics)
    return pd.DataFrame(rows).set_index("label")


@dataclass
class ComparisonResult:
    """Everything produced by run_comparison, keyed by model label."""

    fits: Dict[str, FittedModel] = field(default_factory=dict)
    prediction_sets: Dict[str, PredictionSet] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    table: Optional[pd.DataFrame] = None

    @property
    def unreliable(self) -> Dict[str, FittedModel]:
        return {label: model for label, model in self.fits.items() if not model.reliable}


def run_comparison(
    model_configs: Mapping[str, ModelConfig],
    train_table: pd.DataFrame,
    query_table: pd.DataFrame,
    mcmc_config: Optional[MCMCConfig] = None,
    options: Optional[PredictOptions] = None,
    truth: Optional[pd.DataFrame] = None,
    truth_column: str = "observed_value",
    progress: bool = True,
) -> ComparisonResult:
    """
    Fit every labelled configuration, predict the query table and compare.

    A BackendFailure in one fit or prediction is recorded under ``failures`` and the
    remaining labels still run. Configuration errors are raised before any fit starts.

    Args:
        model_configs: Mapping of label to ModelConfig.
        train_table: Observation table used for every fit.
        query_table: (individual_id, time) rows to predict.
        mcmc_config: Shared sampler settings.
        options: Shared PredictOptions.
        truth: Ground truth for compare; defaults to the query table itself.
        truth_column: Column of ``truth`` used as ground_truth.
        progress: Whether to show a tqdm progress bar when available.
    """
    mcmc_config = mcmc_config or MCMCConfig()
    options = options or PredictOptions()
    mcmc_config.validate()
    options.validate()
    models = {label: CtRegressionModel(cfg, mcmc_config, label=label) for label, cfg in model_configs.items()}

    result = ComparisonResult()
    labels = list(models)
    iterator = tqdm(labels, desc="models") if progress and tqdm is not None else labels
    for label in iterator:
        try:
            fitted = models[label].fit(train_table)
            result.fits[label] = fitted
            result.prediction_sets[label] = predict(fitted, query_table, options, label=label)
        except BackendFailure as exc:
            result.failures[label] = str(exc)

    truth = query_table if truth is None else truth
    if truth_column in truth.columns:
        result.table = compare(result.prediction_sets, truth, truth_column=truth_column)
    return result
