"""Simulation and tabular assembly of Ct trajectories."""

from .dataset import check_table, query_grid, split_individuals, table_to_series, to_table
from .synthetic_data import SimulatedDataGenerator, generate
from .types import CtBatch, Individual, Observation, SimConfig, SimulatedData, Trajectory

__all__ = [
    "CtBatch",
    "Individual",
    "Observation",
    "SimConfig",
    "SimulatedData",
    "SimulatedDataGenerator",
    "Trajectory",
    "check_table",
    "generate",
    "query_grid",
    "split_individuals",
    "table_to_series",
    "to_table",
]
