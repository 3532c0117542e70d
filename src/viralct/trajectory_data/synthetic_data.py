from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from viralct.errors import InvalidParameter
from viralct.trajectory_data.dataset import to_table
from viralct.trajectory_data.types import (
    Individual,
    Observation,
    SimConfig,
    SimulatedData,
    Trajectory,
)
from viralct.trajectory_data.utils import floor_slopes, linear_ct, retained_length

POPULATION_KEYS = ("peak_mean", "peak_sd", "slope_mean", "slope_sd")


class SimulatedDataGenerator:
    """Data generator for censored Ct trajectories."""

    def __init__(self, sim_config: SimConfig) -> None:
        """
        Initialize the SimulatedDataGenerator.

        Args:
            sim_config: The SimConfig to use for the simulation.
        """
        self.sim_config = sim_config

    @classmethod
    def from_population(
        cls,
        n: int,
        max_time: int,
        population_params: Mapping[str, float],
        noise_sd: float,
        detection_limit: float = 40.0,
        seed: int | None = None,
        **kwargs,
    ) -> "SimulatedDataGenerator":
        """
        Create a generator from a population parameter mapping.

        Args:
            n: Number of individuals.
            max_time: Inclusive upper bound on the time index.
            population_params: Mapping with peak_mean, peak_sd, slope_mean and slope_sd.
            noise_sd: Measurement noise standard deviation.
            detection_limit: Ct value above which a test is negative.
            seed: Seed for the per-call random generator.
            **kwargs: Remaining SimConfig fields (slope_floor, id_offset).
        """
        missing = [key for key in POPULATION_KEYS if key not in population_params]
        if missing:
            raise InvalidParameter(f"population_params is missing {missing}")
        sim_config = SimConfig(
            n_individuals=n,
            max_time=max_time,
            noise_sd=noise_sd,
            detection_limit=detection_limit,
            seed=seed,
            **{key: float(population_params[key]) for key in POPULATION_KEYS},
            **kwargs,
        )
        return cls(sim_config)

    def generate(self) -> SimulatedData:
        """
        Simulate one cohort of linear Ct trajectories with detection-limit truncation.

        Returns:
            A SimulatedData object holding one Trajectory per individual, with the
            untruncated latent series stored in the "latents" dict.
        """

        cfg = self.sim_config
        cfg.validate()

        rng = np.random.default_rng(cfg.seed)
        N, T = int(cfg.n_individuals), int(cfg.max_time)

        # Population draws: peak Ct and down-slope per individual.
        peaks = rng.normal(loc=cfg.peak_mean, scale=cfg.peak_sd, size=N)
        raw_slopes = rng.normal(loc=cfg.slope_mean, scale=cfg.slope_sd, size=N)
        slopes = floor_slopes(raw_slopes, cfg.slope_floor)

        true_ct = linear_ct(peaks, slopes, T)  # (N, T + 1)
        observed_ct = true_ct + rng.normal(loc=0.0, scale=cfg.noise_sd, size=true_ct.shape)

        ids = np.arange(cfg.id_offset + 1, cfg.id_offset + N + 1)
        trajectories = []
        for i in range(N):
            individual = Individual(
                individual_id=int(ids[i]),
                peak=float(peaks[i]),
                down_slope=float(slopes[i]),
            )
            keep = retained_length(observed_ct[i], cfg.detection_limit)
            observations = tuple(
                Observation(
                    individual_id=individual.individual_id,
                    time=t,
                    true_value=float(true_ct[i, t]),
                    observed_value=float(observed_ct[i, t]),
                )
                for t in range(keep)
            )
            trajectories.append(
                Trajectory(
                    individual=individual,
                    observations=observations,
                    detection_limit=float(cfg.detection_limit),
                )
            )

        latents = {
            "peak": peaks,
            "raw_slope": raw_slopes,
            "down_slope": slopes,
            "true_ct": true_ct,
            "observed_ct": observed_ct,
        }
        return SimulatedData(config=cfg, trajectories=tuple(trajectories), latents=latents)

    def generate_table(
        self,
        include_truth: bool = False,
        return_simulation: bool = False,
        save: bool = False,
        out_dir: str | Path = "./data",
        name: str | None = None,
    ) -> pd.DataFrame | Tuple[pd.DataFrame, SimulatedData]:
        """
        Generate and immediately flatten to an observation table.

        Args:
            include_truth: Whether to add the noise-free true_value column.
            return_simulation: Whether to return the full SimulatedData object.
            save: If True, persist the simulation to disk as CSV and JSON.
            out_dir: Directory to place saved files (created if missing).
            name: Optional stem for saved files (defaults to "sim_data").

        Returns:
            A DataFrame. If return_simulation is True, returns a tuple of
            (DataFrame, SimulatedData).
        """

        sim_data = self.generate()
        if save:
            self.save(sim_data, out_dir=Path(out_dir), name=name)
        table = to_table(sim_data, include_truth=include_truth)
        if return_simulation:
            return table, sim_data
        return table

    @staticmethod
    def save(sim_data: SimulatedData, out_dir: str | Path, name: str | None = None) -> Path:
        """Persist observations, individuals and config to disk as CSV and JSON."""

        stem = name or "sim_data"
        directory = Path(out_dir) / stem
        directory.mkdir(parents=True, exist_ok=True)

        to_table(sim_data, include_truth=True).to_csv(directory / f"{stem}_observations.csv", index=False)
        pd.DataFrame([asdict(ind) for ind in sim_data.individuals]).to_csv(
            directory / f"{stem}_individuals.csv", index=False
        )
        cfg = asdict(sim_data.config)
        (directory / f"{stem}_config.json").write_text(json.dumps(cfg, indent=2))
        return directory

    @staticmethod
    def load(path_stem: str | Path) -> SimulatedData:
        """
        Rehydrate a SimulatedData object from saved CSV/JSON files.

        Args:
            path_stem: Directory written by save (e.g., './data/sim_data').
                       The loader looks for '<stem>_observations.csv',
                       '<stem>_individuals.csv' and '<stem>_config.json'.
        """

        stem = Path(path_stem)
        config_dict = json.loads((stem / f"{stem.name}_config.json").read_text())
        sim_config = SimConfig(**config_dict)

        observations = pd.read_csv(stem / f"{stem.name}_observations.csv", float_precision="round_trip")
        individuals = pd.read_csv(stem / f"{stem.name}_individuals.csv", float_precision="round_trip")

        trajectories = []
        for row in individuals.itertuples(index=False):
            individual = Individual(
                individual_id=int(row.individual_id),
                peak=float(row.peak),
                down_slope=float(row.down_slope),
            )
            rows = observations[observations["individual_id"] == individual.individual_id].sort_values("time")
            trajectories.append(
                Trajectory(
                    individual=individual,
                    observations=tuple(
                        Observation(
                            individual_id=individual.individual_id,
                            time=int(obs.time),
                            true_value=float(obs.true_value),
                            observed_value=float(obs.observed_value),
                        )
                        for obs in rows.itertuples(index=False)
                    ),
                    detection_limit=float(sim_config.detection_limit),
                )
            )
        return SimulatedData(config=sim_config, trajectories=tuple(trajectories))


def generate(
    n: int,
    max_time: int,
    population_params: Mapping[str, float],
    noise_sd: float,
    detection_limit: float = 40.0,
    seed: Optional[int] = None,
    **kwargs,
) -> SimulatedData:
    """Simulate a cohort in one call; see SimulatedDataGenerator.from_population."""
    return SimulatedDataGenerator.from_population(
        n=n,
        max_time=max_time,
        population_params=population_params,
        noise_sd=noise_sd,
        detection_limit=detection_limit,
        seed=seed,
        **kwargs,
    ).generate()
