import warnings

import pytest

from viralct.config import MCMCConfig, ModelConfig
from viralct.errors import FitDiagnosticWarning
from viralct.models import CtRegressionModel
from viralct.trajectory_data import SimConfig, SimulatedDataGenerator


@pytest.fixture
def sim_config():
    return SimConfig(n_individuals=5, max_time=15, seed=58)


@pytest.fixture
def sim_data(sim_config):
    return SimulatedDataGenerator(sim_config).generate()


@pytest.fixture(scope="session")
def tiny_mcmc():
    """Sampler settings small enough for the test suite; diagnostics will usually fail."""
    return MCMCConfig(num_samples=150, warmup_steps=150, num_chains=1, seed=1, progress=False)


@pytest.fixture(scope="session")
def train_table():
    sim_config = SimConfig(n_individuals=8, max_time=10, noise_sd=1.0, seed=7)
    return SimulatedDataGenerator(sim_config).generate_table(include_truth=True)


@pytest.fixture(scope="session")
def fitted_hierarchical(train_table, tiny_mcmc):
    model_config = ModelConfig(random_effects="intercept_and_slope", prior="informative")
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", FitDiagnosticWarning)
        return CtRegressionModel(model_config, tiny_mcmc, label="hierarchical").fit(train_table)
