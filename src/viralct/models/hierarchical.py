from __future__ import annotations

from typing import Tuple

import torch
from pyro import deterministic, plate, sample
from pyro.distributions import HalfCauchy, HalfNormal, Normal

from viralct.config import ModelConfig
from viralct.trajectory_data import CtBatch

# Vague proper priors used when config.prior == "default".
DEFAULT_COEF_SCALE = 100.0
DEFAULT_HALF_CAUCHY_SCALE = 2.5

LATENT_SITES = ("intercept", "slope", "sigma", "sd_intercept", "z_intercept", "sd_slope", "z_slope")


def _coef_prior(loc: float, scale: float, config: ModelConfig, device: torch.device) -> Normal:
    if config.prior == "informative":
        return Normal(torch.tensor(loc, device=device), torch.tensor(scale, device=device))
    return Normal(torch.tensor(0.0, device=device), torch.tensor(DEFAULT_COEF_SCALE, device=device))


def _scale_prior(scale: float, config: ModelConfig, device: torch.device):
    if config.prior == "informative":
        return HalfNormal(torch.tensor(scale, device=device))
    return HalfCauchy(torch.tensor(DEFAULT_HALF_CAUCHY_SCALE, device=device))


def random_effect_sites(config: ModelConfig) -> Tuple[str, ...]:
    """Per-individual latent sites present in the model for this config."""
    sites = []
    if config.has_random_intercept:
        sites.append("z_intercept")
    if config.has_random_slope:
        sites.append("z_slope")
    return tuple(sites)


def ct_regression_model(batch: CtBatch, config: ModelConfig) -> None:
    """
    Linear Ct trajectory regression with optional per-individual effects.

    ct ~ Normal(mu, sigma)
    mu = intercept + slope * t + sd_intercept * z_intercept[i] + sd_slope * z_slope[i] * t

    Random effects are non-centred (z ~ Normal(0, 1) scaled by a population sd), so
    predictions for unseen individuals only need fresh z draws.
    """

    device = batch.time.device
    t = batch.time

    intercept = sample("intercept", _coef_prior(config.intercept_loc, config.intercept_scale, config, device))
    mu = intercept + torch.zeros_like(t)
    if config.fixed_effects == "intercept_and_slope":
        slope = sample("slope", _coef_prior(config.slope_loc, config.slope_scale, config, device))
        mu = mu + slope * t
    sigma = sample("sigma", _scale_prior(config.sigma_scale, config, device))

    # One individual-level plate shared by every z_* site.
    individuals = plate("individuals", batch.n_individuals)
    if config.has_random_intercept:
        sd_intercept = sample("sd_intercept", _scale_prior(config.sd_intercept_scale, config, device))
        with individuals:
            z_intercept = sample("z_intercept", Normal(torch.tensor(0.0, device=device), torch.tensor(1.0, device=device)))
        mu = mu + (sd_intercept * z_intercept)[batch.individual_idx]
    if config.has_random_slope:
        sd_slope = sample("sd_slope", _scale_prior(config.sd_slope_scale, config, device))
        with individuals:
            z_slope = sample("z_slope", Normal(torch.tensor(0.0, device=device), torch.tensor(1.0, device=device)))
        mu = mu + (sd_slope * z_slope)[batch.individual_idx] * t

    mu = deterministic("mu", mu)
    with plate("observations", batch.n_observations):
        sample("ct", Normal(mu, sigma), obs=batch.ct)
