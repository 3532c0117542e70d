import pandas as pd
import pytest
from pyro import poutine

from viralct.config import ModelConfig
from viralct.models import ct_regression_model, random_effect_sites
from viralct.trajectory_data import CtBatch


@pytest.fixture
def batch():
    table = pd.DataFrame(
        {
            "individual_id": [1, 1, 1, 2, 2, 3],
            "time": [0, 1, 2, 0, 1, 0],
            "observed_value": [18.0, 20.1, 21.9, 16.5, 18.7, 19.2],
        }
    )
    return CtBatch.from_table(table)


@pytest.mark.parametrize(
    "random_effects, expected",
    [
        ("none", ()),
        ("intercept_only", ("z_intercept",)),
        ("intercept_and_slope", ("z_intercept", "z_slope")),
    ],
)
def test_model_traces_for_each_random_effect_structure(batch, random_effects, expected):
    config = ModelConfig(random_effects=random_effects)
    trace = poutine.trace(ct_regression_model).get_trace(batch, config=config)

    assert random_effect_sites(config) == expected
    for site in expected:
        assert trace.nodes[site]["value"].shape == (batch.n_individuals,)
    assert trace.nodes["ct"]["value"].shape == (batch.n_observations,)
    assert trace.nodes["mu"]["value"].shape == (batch.n_observations,)


def test_default_config_has_both_random_effects(batch):
    trace = poutine.trace(ct_regression_model).get_trace(batch, config=ModelConfig())
    assert {"z_intercept", "z_slope", "sd_intercept", "sd_slope"} <= set(trace.nodes)


def test_intercept_only_fixed_effects_have_no_slope(batch):
    config = ModelConfig(fixed_effects="intercept_only", random_effects="intercept_only")
    trace = poutine.trace(ct_regression_model).get_trace(batch, config=config)
    assert "slope" not in trace.nodes
