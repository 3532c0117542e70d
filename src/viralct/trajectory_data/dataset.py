from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from viralct.errors import InvalidParameter
from viralct.trajectory_data.types import TABLE_COLUMNS

if TYPE_CHECKING:
    from viralct.trajectory_data.types import SimulatedData


def to_table(dataset: "SimulatedData", include_truth: bool = False) -> pd.DataFrame:
    """
    Flatten a simulated cohort into one row per retained observation.

    Args:
        dataset: SimulatedData to flatten.
        include_truth: Whether to add the noise-free true_value column.

    Returns:
        DataFrame with columns individual_id, time, observed_value (and true_value),
        ordered by individual then ascending time. An empty cohort gives an empty
        frame with the same columns.
    """
    columns = list(TABLE_COLUMNS) + (["true_value"] if include_truth else [])
    records = []
    for traj in dataset.trajectories:
        for obs in sorted(traj.observations, key=lambda o: o.time):
            row = [obs.individual_id, obs.time, obs.observed_value]
            if include_truth:
                row.append(obs.true_value)
            records.append(row)

    table = pd.DataFrame.from_records(records, columns=columns)
    table = table.astype({"individual_id": np.int64, "time": np.int64, "observed_value": np.float64})
    if include_truth:
        table = table.astype({"true_value": np.float64})
    return table


def check_table(table: pd.DataFrame, require_values: bool = True) -> None:
    """Raise InvalidParameter for tables the model cannot consume."""

    required = list(TABLE_COLUMNS) if require_values else ["individual_id", "time"]
    missing = [col for col in required if col not in table.columns]
    if missing:
        raise InvalidParameter(f"table is missing columns {missing}")
    if len(table) and (table["time"] < 0).any():
        raise InvalidParameter("time indices must be non-negative")
    if table.duplicated(subset=["individual_id", "time"]).any():
        raise InvalidParameter("table has duplicate (individual_id, time) rows")
    if require_values and table["observed_value"].isna().any():
        raise InvalidParameter("observed_value contains missing values")


def table_to_series(table: pd.DataFrame) -> Dict[int, Tuple[np.ndarray, np.ndarray]]:
    """Rebuild per-individual (times, observed values) series from a table."""

    check_table(table)
    series: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
    for ind_id, rows in table.groupby("individual_id", sort=False):
        rows = rows.sort_values("time")
        series[int(ind_id)] = (
            rows["time"].to_numpy(dtype=np.int64),
            rows["observed_value"].to_numpy(dtype=np.float64),
        )
    return series


def split_individuals(
    table: pd.DataFrame,
    test_fraction: float = 0.25,
    seed: Optional[int] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split a table into train and held-out tables at the individual level.

    Args:
        table: Observation table.
        test_fraction: Fraction of individuals to allocate to the held-out set.
        seed: Optional seed for a deterministic split.

    Returns:
        Tuple of (train table, held-out table); both keep the original row order.
    """
    if not 0.0 < test_fraction < 1.0:
        raise InvalidParameter(f"test_fraction must be in (0, 1), got {test_fraction}")

    ids = pd.unique(table["individual_id"])
    if len(ids) < 2:
        raise InvalidParameter("need at least two individuals to split")

    # Get test and train count
    test_count = max(1, int(len(ids) * test_fraction))
    test_count = min(test_count, len(ids) - 1)

    rng = np.random.default_rng(seed)
    test_ids = set(rng.permutation(ids)[:test_count].tolist())
    held_out = table["individual_id"].isin(test_ids)
    return table[~held_out].reset_index(drop=True), table[held_out].reset_index(drop=True)


def query_grid(individual_ids, max_time: int) -> pd.DataFrame:
    """All (individual_id, time) pairs for 0..max_time, used as a prediction query."""

    if max_time < 0:
        raise InvalidParameter(f"max_time must be >= 0, got {max_time}")
    ids = [int(i) for i in individual_ids]
    return pd.DataFrame(
        {
            "individual_id": np.repeat(np.asarray(ids, dtype=np.int64), max_time + 1),
            "time": np.tile(np.arange(max_time + 1, dtype=np.int64), len(ids)),
        }
    )
