from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import torch

from viralct.errors import InvalidParameter

TABLE_COLUMNS = ("individual_id", "time", "observed_value")


@dataclass(frozen=True)
class Individual:
    """Latent parameters of one simulated individual."""

    individual_id: int
    peak: float  # Ct at t = 0
    down_slope: float  # Ct increase per time step, floored at SimConfig.slope_floor


@dataclass(frozen=True)
class Observation:
    individual_id: int
    time: int
    true_value: float
    observed_value: float


@dataclass(frozen=True)
class Trajectory:
    """Observations of one individual, truncated at the first undetectable test."""

    individual: Individual
    observations: Tuple[Observation, ...]
    detection_limit: float = 40.0

    def __len__(self) -> int:
        return len(self.observations)

    @property
    def individual_id(self) -> int:
        return self.individual.individual_id

    @property
    def times(self) -> np.ndarray:
        return np.array([obs.time for obs in self.observations], dtype=np.int64)

    @property
    def observed_values(self) -> np.ndarray:
        return np.array([obs.observed_value for obs in self.observations], dtype=np.float64)

    @property
    def true_values(self) -> np.ndarray:
        return np.array([obs.true_value for obs in self.observations], dtype=np.float64)

    @property
    def censored(self) -> bool:
        """True if follow-up stopped because the last test exceeded the detection limit."""
        return bool(self.observations) and self.observations[-1].observed_value > self.detection_limit


@dataclass
class SimConfig:
    """Configuration for the synthetic Ct trajectory simulation."""
    n_individuals: int = 5
    max_time: int = 15  # inclusive upper bound on the time index
    peak_mean: float = 17.8
    peak_sd: float = 2.2
    slope_mean: float = 1.7
    slope_sd: float = 0.425
    noise_sd: float = 3.0  # measurement noise on each Ct value
    detection_limit: float = 40.0  # Ct above this is a negative test
    slope_floor: float = 0.01  # smallest allowed down-slope
    id_offset: int = 0  # ids run from id_offset + 1 to id_offset + n_individuals
    seed: Optional[int] = 58

    def validate(self) -> None:
        """Raise InvalidParameter if the configuration cannot be simulated."""

        for name in ("peak_mean", "peak_sd", "slope_mean", "slope_sd", "noise_sd", "detection_limit", "slope_floor"):
            if not math.isfinite(getattr(self, name)):
                raise InvalidParameter(f"{name} must be finite, got {getattr(self, name)}")
        if int(self.n_individuals) != self.n_individuals or self.n_individuals < 1:
            raise InvalidParameter(f"n_individuals must be an integer >= 1, got {self.n_individuals}")
        if int(self.max_time) != self.max_time or self.max_time < 0:
            raise InvalidParameter(f"max_time must be an integer >= 0, got {self.max_time}")
        if not self.noise_sd > 0:
            raise InvalidParameter(f"noise_sd must be > 0, got {self.noise_sd}")
        if self.peak_sd < 0 or self.slope_sd < 0:
            raise InvalidParameter("peak_sd and slope_sd must be non-negative")
        if not self.slope_floor > 0:
            raise InvalidParameter(f"slope_floor must be > 0, got {self.slope_floor}")
        if int(self.id_offset) != self.id_offset or self.id_offset < 0:
            raise InvalidParameter(f"id_offset must be a non-negative integer, got {self.id_offset}")


@dataclass
class SimulatedData:
    """Container for a simulated cohort plus utilities to feed the model."""

    config: SimConfig
    trajectories: Tuple[Trajectory, ...]
    latents: Dict[str, np.ndarray] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.trajectories)

    @property
    def individual_ids(self) -> Tuple[int, ...]:
        return tuple(traj.individual_id for traj in self.trajectories)

    @property
    def individuals(self) -> Tuple[Individual, ...]:
        return tuple(traj.individual for traj in self.trajectories)

    def to_table(self, include_truth: bool = False) -> pd.DataFrame:
        from viralct.trajectory_data.dataset import to_table

        return to_table(self, include_truth=include_truth)


@dataclass
class CtBatch:
    """Flat observation tensors consumed by the Pyro model."""

    individual_idx: torch.Tensor  # shape (M,), position in individual_ids
    time: torch.Tensor  # shape (M,)
    ct: Optional[torch.Tensor]  # shape (M,), None when predicting
    individual_ids: Tuple[int, ...]  # shape (N,), original ids in index order

    @property
    def n_individuals(self) -> int:
        return len(self.individual_ids)

    @property
    def n_observations(self) -> int:
        return int(self.time.shape[0])

    def without_ct(self) -> "CtBatch":
        return CtBatch(
            individual_idx=self.individual_idx,
            time=self.time,
            ct=None,
            individual_ids=self.individual_ids,
        )

    @classmethod
    def from_table(
        cls,
        table: pd.DataFrame,
        individual_ids: Optional[Sequence[int]] = None,
        device: torch.device | str = "cpu",
    ) -> "CtBatch":
        """
        Convert an observation table into tensors.

        Args:
            table: Frame with individual_id and time columns, plus observed_value if
                the batch is used for fitting.
            individual_ids: Optional id ordering to index against. Defaults to the
                sorted unique ids of the table. Every id in the table must be present.
            device: Device to place tensors on.

        Returns:
            A CtBatch. ``ct`` is None when the table has no observed_value column.
        """
        from viralct.trajectory_data.dataset import check_table

        check_table(table, require_values=False)
        device = torch.device(device)

        if individual_ids is None:
            individual_ids = sorted(int(i) for i in pd.unique(table["individual_id"]))
        individual_ids = tuple(int(i) for i in individual_ids)
        position = {ind_id: idx for idx, ind_id in enumerate(individual_ids)}
        missing = set(int(i) for i in table["individual_id"]) - set(position)
        if missing:
            raise InvalidParameter(f"individual ids not in the index: {sorted(missing)}")

        idx = np.array([position[int(i)] for i in table["individual_id"]], dtype=np.int64)
        ct = None
        if "observed_value" in table.columns:
            ct = torch.as_tensor(table["observed_value"].to_numpy(dtype=np.float64), dtype=torch.float32, device=device)
        return cls(
            individual_idx=torch.as_tensor(idx, dtype=torch.long, device=device),
            time=torch.as_tensor(table["time"].to_numpy(dtype=np.float64), dtype=torch.float32, device=device),
            ct=ct,
            individual_ids=individual_ids,
        )
