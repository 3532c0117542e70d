from __future__ import annotations

import functools
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd
import pyro
import torch
from pyro.infer import MCMC, NUTS
from pyro.infer.mcmc.util import summary

from viralct.config import MCMCConfig, ModelConfig
from viralct.errors import BackendFailure, FitDiagnosticWarning, InvalidParameter
from viralct.trajectory_data import CtBatch, check_table
from .diagnostics import FitDiagnostics, diagnose_mcmc
from .hierarchical import LATENT_SITES, ct_regression_model


@dataclass(frozen=True)
class FittedModel:
    """Posterior draws of one fit together with the settings that produced them."""

    model_config: ModelConfig
    mcmc_config: MCMCConfig
    chain_samples: Dict[str, torch.Tensor]  # site -> (num_chains, num_samples, ...)
    individual_ids: Tuple[int, ...]  # training ids, in z_* index order
    diagnostics: FitDiagnostics
    label: Optional[str] = None

    @property
    def reliable(self) -> bool:
        return self.diagnostics.reliable

    @property
    def samples(self) -> Dict[str, torch.Tensor]:
        """Draws with chains flattened: site -> (num_chains * num_samples, ...)."""
        return {name: value.reshape((-1,) + tuple(value.shape[2:])) for name, value in self.chain_samples.items()}

    @property
    def num_draws(self) -> int:
        first = next(iter(self.chain_samples.values()))
        return int(first.shape[0] * first.shape[1])

    @property
    def model_fn(self):
        return functools.partial(ct_regression_model, config=self.model_config)

    def summary(self, prob: float = 0.9) -> pd.DataFrame:
        """
        Posterior summary (mean, std, median, credible bounds, n_eff, r_hat) per parameter.

        Args:
            prob: Mass of the central credible interval reported.

        Returns:
            DataFrame indexed by parameter; vector sites get one row per element,
            named ``site[i]``.
        """
        rows = []
        for site, stats in summary(self.chain_samples, prob=prob, group_by_chain=True).items():
            values = {key: torch.as_tensor(value).reshape(-1) for key, value in stats.items()}
            size = values["mean"].numel()
            scalar = self.chain_samples[site].dim() == 2
            for i in range(size):
                name = site if scalar else f"{site}[{i}]"
                rows.append({"parameter": name, **{key: float(value[i]) for key, value in values.items()}})
        return pd.DataFrame(rows).set_index("parameter")

    def save(self, path: str | Path) -> None:
        """Persist the posterior draws and settings with torch.save."""

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(
            {
                "model_config": asdict(self.model_config),
                "mcmc_config": asdict(self.mcmc_config),
                "chain_samples": {name: value.cpu() for name, value in self.chain_samples.items()},
                "individual_ids": list(self.individual_ids),
                "diagnostics": self.diagnostics.to_dict(),
                "label": self.label,
            },
            str(path),
        )

    @classmethod
    def load(cls, path: str | Path, map_location: Optional[str] = None) -> "FittedModel":
        """
        Load a FittedModel written by save.

        Args:
            path: File produced by save.
            map_location: Optional device mapping for tensors (e.g., 'cpu').
        """
        state = torch.load(str(Path(path)), map_location=map_location, weights_only=False)
        return cls(
            model_config=ModelConfig(**state["model_config"]),
            mcmc_config=MCMCConfig(**state["mcmc_config"]),
            chain_samples=state["chain_samples"],
            individual_ids=tuple(int(i) for i in state["individual_ids"]),
            diagnostics=FitDiagnostics(**state["diagnostics"]),
            label=state["label"],
        )


class CtRegressionModel:
    """Wrapper that fits the Ct regression with NUTS."""

    def __init__(self, model_config: ModelConfig, mcmc_config: MCMCConfig, label: Optional[str] = None) -> None:
        """
        Initialize the CtRegressionModel.

        Args:
            model_config: Fixed/random effect structure and priors.
            mcmc_config: Sampler settings and diagnostic thresholds.
            label: Optional name carried onto the FittedModel.
        """
        model_config.validate()
        mcmc_config.validate()
        self.model_config = model_config
        self.mcmc_config = mcmc_config
        self.label = label
        self.model_fn = functools.partial(ct_regression_model, config=model_config)

    def fit(self, table: pd.DataFrame, device: torch.device | str = "cpu") -> FittedModel:
        """
        Run NUTS on an observation table.

        Args:
            table: Frame with individual_id, time and observed_value columns.
            device: Device for the model tensors.

        Returns:
            A new FittedModel. Poor convergence does not raise; it marks the model
            unreliable and emits a FitDiagnosticWarning.
        """
        check_table(table)
        if len(table) == 0:
            raise InvalidParameter("cannot fit an empty table")
        batch = CtBatch.from_table(table, device=device)

        cfg = self.mcmc_config
        pyro.clear_param_store()
        pyro.set_rng_seed(cfg.seed)

        kernel = NUTS(
            self.model_fn,
            target_accept_prob=cfg.target_accept_prob,
            max_tree_depth=cfg.max_tree_depth,
        )
        mcmc = MCMC(
            kernel,
            num_samples=cfg.num_samples,
            warmup_steps=cfg.warmup_steps,
            num_chains=cfg.num_chains,
            disable_progbar=not cfg.progress,
        )
        try:
            mcmc.run(batch)
        except (RuntimeError, ValueError) as exc:
            raise BackendFailure(f"NUTS failed for {self.label or 'model'}: {exc}") from exc

        # Deterministic sites such as mu are rebuilt at prediction time.
        chain_samples = {
            name: value.detach()
            for name, value in mcmc.get_samples(group_by_chain=True).items()
            if name in LATENT_SITES
        }
        diagnostics = diagnose_mcmc(mcmc, max_r_hat=cfg.max_r_hat, min_ess=cfg.min_ess, sites=LATENT_SITES)
        if not diagnostics.reliable:
            warnings.warn(
                f"fit {self.label or ''} is unreliable: " + "; ".join(diagnostics.problems),
                FitDiagnosticWarning,
                stacklevel=2,
            )

        return FittedModel(
            model_config=self.model_config,
            mcmc_config=cfg,
            chain_samples=chain_samples,
            individual_ids=batch.individual_ids,
            diagnostics=diagnostics,
            label=self.label,
        )


def fit(
    table: pd.DataFrame,
    model_config: ModelConfig,
    mcmc_config: Optional[MCMCConfig] = None,
    label: Optional[str] = None,
) -> FittedModel:
    """Fit one configuration; see CtRegressionModel.fit."""
    return CtRegressionModel(model_config, mcmc_config or MCMCConfig(), label=label).fit(table)
