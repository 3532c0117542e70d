"""Configuration dataclasses for simulation, model structure, sampling and prediction."""
from __future__ import annotations

import yaml
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from viralct.errors import InvalidParameter
from viralct.trajectory_data.types import SimConfig

FIXED_EFFECTS = ("intercept_only", "intercept_and_slope")
RANDOM_EFFECTS = ("none", "intercept_only", "intercept_and_slope")
PRIORS = ("default", "informative")
NEW_INDIVIDUAL_SAMPLING = ("none", "population_average", "population_gaussian_draw")


@dataclass
class ModelConfig:
    """Structure and priors of the Ct regression."""
    fixed_effects: str = "intercept_and_slope"  # "intercept_only" or "intercept_and_slope"
    random_effects: str = "intercept_and_slope"  # "none", "intercept_only" or "intercept_and_slope"
    prior: str = "default"  # "default" (vague) or "informative" (uses the values below)
    intercept_loc: float = 17.8  # prior mean for the population peak Ct
    intercept_scale: float = 2.0
    slope_loc: float = 1.7  # prior mean for the population down-slope
    slope_scale: float = 0.5
    sd_intercept_scale: float = 2.2  # HalfNormal scale for between-individual peak sd
    sd_slope_scale: float = 0.425  # HalfNormal scale for between-individual slope sd
    sigma_scale: float = 3.0  # HalfNormal scale for measurement noise

    def validate(self) -> None:
        if self.fixed_effects not in FIXED_EFFECTS:
            raise InvalidParameter(f"Unknown fixed_effects: {self.fixed_effects}")
        if self.random_effects not in RANDOM_EFFECTS:
            raise InvalidParameter(f"Unknown random_effects: {self.random_effects}")
        if self.prior not in PRIORS:
            raise InvalidParameter(f"Unknown prior: {self.prior}")
        if self.fixed_effects == "intercept_only" and self.random_effects == "intercept_and_slope":
            raise InvalidParameter("a random slope needs a fixed slope")
        scales = (
            self.intercept_scale,
            self.slope_scale,
            self.sd_intercept_scale,
            self.sd_slope_scale,
            self.sigma_scale,
        )
        if any(not s > 0 for s in scales):
            raise InvalidParameter("prior scales must be > 0")

    @property
    def has_random_intercept(self) -> bool:
        return self.random_effects != "none"

    @property
    def has_random_slope(self) -> bool:
        return self.random_effects == "intercept_and_slope"


@dataclass
class MCMCConfig:
    """Settings for the NUTS sampler."""
    num_samples: int = 1000  # post-warmup draws per chain
    warmup_steps: int = 1000
    num_chains: int = 4
    target_accept_prob: float = 0.8  # raise towards 0.99 if there are divergences
    max_tree_depth: int = 10
    seed: int = 0
    progress: bool = True
    max_r_hat: float = 1.01  # r_hat at or above this marks the fit unreliable
    min_ess: float = 600.0  # n_eff below this marks the fit unreliable

    def validate(self) -> None:
        if self.num_samples < 1 or self.warmup_steps < 0:
            raise InvalidParameter("num_samples must be >= 1 and warmup_steps >= 0")
        if self.num_chains < 1:
            raise InvalidParameter(f"num_chains must be >= 1, got {self.num_chains}")
        if not 0.0 < self.target_accept_prob < 1.0:
            raise InvalidParameter(f"target_accept_prob must be in (0, 1), got {self.target_accept_prob}")
        if self.max_tree_depth < 1:
            raise InvalidParameter(f"max_tree_depth must be >= 1, got {self.max_tree_depth}")


@dataclass
class PredictOptions:
    """How posterior predictions are drawn, including for individuals absent from training."""
    allow_new_individuals: bool = False
    new_individual_sampling: str = "population_gaussian_draw"  # "none", "population_average" or "population_gaussian_draw"
    include_observation_noise: bool = True  # False gives intervals for the expected Ct only
    interval: float = 0.95
    num_samples: Optional[int] = None  # thin the posterior to this many draws; None uses all
    seed: int = 0

    def validate(self) -> None:
        if self.new_individual_sampling not in NEW_INDIVIDUAL_SAMPLING:
            raise InvalidParameter(f"Unknown new_individual_sampling: {self.new_individual_sampling}")
        if not 0.0 < self.interval < 1.0:
            raise InvalidParameter(f"interval must be in (0, 1), got {self.interval}")
        if self.num_samples is not None and self.num_samples < 1:
            raise InvalidParameter(f"num_samples must be >= 1, got {self.num_samples}")


def _dict_to_config(
    obj: Dict[str, Any],
) -> Tuple[str, SimConfig, Dict[str, ModelConfig], MCMCConfig, PredictOptions]:
    run_name = obj["run_name"]
    sim_config = SimConfig(**obj.get("data", {}))
    mcmc_config = MCMCConfig(**obj.get("mcmc", {}))
    predict_options = PredictOptions(**obj.get("predict", {}))
    model_configs = {label: ModelConfig(**(entry or {})) for label, entry in obj.get("models", {}).items()}
    if not model_configs:
        raise InvalidParameter("config must define at least one entry under 'models'")

    sim_config.validate()
    mcmc_config.validate()
    predict_options.validate()
    for model_config in model_configs.values():
        model_config.validate()
    return run_name, sim_config, model_configs, mcmc_config, predict_options


def load_config(
    path: str | Path,
) -> Tuple[str, SimConfig, Dict[str, ModelConfig], MCMCConfig, PredictOptions]:
    """Load a YAML experiment config into the strongly-typed dataclasses."""

    with Path(path).open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    return _dict_to_config(raw)


def dump_config(
    path: str | Path,
    run_name: str,
    sim_config: SimConfig,
    model_configs: Dict[str, ModelConfig],
    mcmc_config: MCMCConfig,
    predict_options: PredictOptions,
) -> None:
    """Write the resolved experiment config next to its results."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(
            {
                "run_name": run_name,
                "data": asdict(sim_config),
                "mcmc": asdict(mcmc_config),
                "predict": asdict(predict_options),
                "models": {label: asdict(cfg) for label, cfg in model_configs.items()},
            },
            handle,
            sort_keys=False,
        )
