"""Posterior predictions for observed and unseen individuals."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
import pyro
import torch
from pyro.infer import Predictive

from viralct.config import PredictOptions
from viralct.errors import BackendFailure, InvalidParameter
from viralct.trajectory_data import CtBatch, check_table
from .ct_model import FittedModel
from .hierarchical import random_effect_sites

PREDICTION_COLUMNS = ("individual_id", "time", "point_estimate", "lower_bound", "upper_bound")


@dataclass(frozen=True)
class PredictionSet:
    """Predictive summaries for a query table, one row per query row."""

    label: Optional[str]
    predictions: pd.DataFrame  # PREDICTION_COLUMNS, in query order
    draws: np.ndarray  # (num_draws, num_rows)
    reliable: bool = True
    new_individual_ids: Tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.predictions)

    @property
    def interval_width(self) -> pd.Series:
        return self.predictions["upper_bound"] - self.predictions["lower_bound"]


def _thin(samples: Dict[str, torch.Tensor], num_samples: Optional[int]) -> Dict[str, torch.Tensor]:
    total = next(iter(samples.values())).shape[0]
    if num_samples is None or num_samples >= total:
        return samples
    idx = torch.linspace(0, total - 1, num_samples).round().long()
    return {name: value[idx] for name, value in samples.items()}


def extend_random_effects(
    samples: Dict[str, torch.Tensor],
    sites: Tuple[str, ...],
    n_new: int,
    sampling: str,
    generator: Optional[torch.Generator] = None,
) -> Dict[str, torch.Tensor]:
    """
    Append standard-normal random effects for unseen individuals to each z_* site.

    Args:
        samples: Posterior draws, site -> (S, ...); z_* sites are (S, N).
        sites: The z_* sites the model uses.
        n_new: Number of unseen individuals, appended after the training ones.
        sampling: "none" zeroes every individual's effect, "population_average"
            gives unseen individuals a zero effect, "population_gaussian_draw" gives
            them a fresh Normal(0, 1) draw per posterior sample.
        generator: Optional torch.Generator for the fresh draws.

    Returns:
        A new dict; the input tensors are not modified.
    """
    extended = dict(samples)
    for site in sites:
        z = samples[site]
        if sampling == "none":
            extended[site] = torch.zeros((z.shape[0], z.shape[1] + n_new), dtype=z.dtype, device=z.device)
            continue
        if n_new == 0:
            continue
        if sampling == "population_gaussian_draw":
            fresh = torch.randn((z.shape[0], n_new), generator=generator, dtype=z.dtype).to(z.device)
        else:
            fresh = torch.zeros((z.shape[0], n_new), dtype=z.dtype, device=z.device)
        extended[site] = torch.cat([z, fresh], dim=1)
    return extended


def _empty_prediction_set(model: FittedModel, label: Optional[str]) -> PredictionSet:
    frame = pd.DataFrame({col: pd.Series(dtype=float) for col in PREDICTION_COLUMNS})
    frame = frame.astype({"individual_id": np.int64, "time": np.int64})
    return PredictionSet(
        label=label,
        predictions=frame,
        draws=np.zeros((model.num_draws, 0)),
        reliable=model.reliable,
    )


def predict(
    model: FittedModel,
    query_table: pd.DataFrame,
    options: Optional[PredictOptions] = None,
    label: Optional[str] = None,
) -> PredictionSet:
    """
    Posterior predictive distribution at each (individual_id, time) of a query table.

    Args:
        model: FittedModel to predict from.
        query_table: Frame with individual_id and time columns; other columns are ignored.
        options: PredictOptions controlling unseen individuals, noise and interval mass.
        label: Name for the PredictionSet; defaults to the model label.

    Returns:
        A PredictionSet whose rows follow the query order. The point estimate is the
        predictive mean, the bounds are central quantiles at ``options.interval``.
    """
    options = options or PredictOptions()
    options.validate()
    label = label if label is not None else model.label

    check_table(query_table, require_values=False)
    query = query_table[["individual_id", "time"]].reset_index(drop=True)
    if len(query) == 0:
        return _empty_prediction_set(model, label)

    known = set(model.individual_ids)
    new_ids = tuple(sorted(set(int(i) for i in query["individual_id"]) - known))
    if new_ids and not options.allow_new_individuals:
        raise InvalidParameter(
            f"individuals {list(new_ids)} were not in the training data; "
            "set allow_new_individuals to predict for them"
        )

    generator = torch.Generator()
    generator.manual_seed(options.seed)
    samples = _thin(model.samples, options.num_samples)
    samples = extend_random_effects(
        samples,
        random_effect_sites(model.model_config),
        n_new=len(new_ids),
        sampling=options.new_individual_sampling,
        generator=generator,
    )
    batch = CtBatch.from_table(query, individual_ids=model.individual_ids + new_ids).without_ct()

    pyro.set_rng_seed(options.seed)
    predictive = Predictive(
        model.model_fn,
        posterior_samples=samples,
        return_sites=("ct", "mu"),
        parallel=False,
    )
    try:
        with torch.no_grad():
            draws = predictive(batch)
    except (RuntimeError, ValueError) as exc:
        raise BackendFailure(f"prediction failed for {label or 'model'}: {exc}") from exc

    site = "ct" if options.include_observation_noise else "mu"
    values = draws[site].reshape(-1, len(query)).cpu().numpy().astype(np.float64)

    tail = (1.0 - options.interval) / 2.0
    lower, upper = np.quantile(values, [tail, 1.0 - tail], axis=0)
    predictions = query.assign(
        point_estimate=values.mean(axis=0),
        lower_bound=lower,
        upper_bound=upper,
    )
    return PredictionSet(
        label=label,
        predictions=predictions[list(PREDICTION_COLUMNS)],
        draws=values,
        reliable=model.reliable,
        new_individual_ids=new_ids,
    )
