import warnings
from dataclasses import replace
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from viralct.config import ModelConfig, PredictOptions, load_config
from viralct.errors import FitDiagnosticWarning, InvalidParameter
from viralct.models import (
    CtRegressionModel,
    FittedModel,
    compare,
    extend_random_effects,
    predict,
    random_effect_sites,
)
from viralct.trajectory_data import query_grid

pytestmark = pytest.mark.slow


def test_fit_produces_samples_for_every_site(fitted_hierarchical, train_table, tiny_mcmc):
    samples = fitted_hierarchical.samples
    assert set(samples) >= {"intercept", "slope", "sigma", "sd_intercept", "sd_slope", "z_intercept", "z_slope"}
    assert samples["intercept"].shape == (tiny_mcmc.num_samples,)
    assert samples["z_slope"].shape == (tiny_mcmc.num_samples, train_table["individual_id"].nunique())
    assert fitted_hierarchical.individual_ids == tuple(sorted(train_table["individual_id"].unique()))
    assert set(fitted_hierarchical.diagnostics.r_hat) >= {"intercept", "slope", "sigma"}


def test_small_fit_is_flagged_not_raised(train_table, tiny_mcmc):
    with pytest.warns(FitDiagnosticWarning):
        fitted = CtRegressionModel(ModelConfig(random_effects="none"), tiny_mcmc).fit(train_table)
    # 150 draws can never reach the ESS threshold of 600
    assert not fitted.reliable
    assert "z_intercept" not in fitted.samples


def test_summary_lists_vector_elements(fitted_hierarchical, train_table):
    summary = fitted_hierarchical.summary()
    assert "intercept" in summary.index
    assert "z_intercept[0]" in summary.index
    assert {"mean", "std", "n_eff", "r_hat"} <= set(summary.columns)


def test_posterior_recovers_population_slope(fitted_hierarchical):
    slope = fitted_hierarchical.samples["slope"].mean().item()
    assert 1.0 < slope < 2.5


def test_prediction_rows_follow_query(fitted_hierarchical, train_table):
    query = train_table.sample(frac=1.0, random_state=0)
    prediction_set = predict(fitted_hierarchical, query, label="hier")

    assert prediction_set.label == "hier"
    assert len(prediction_set) == len(query)
    assert prediction_set.predictions["individual_id"].tolist() == query["individual_id"].tolist()
    assert prediction_set.predictions["time"].tolist() == query["time"].tolist()
    assert (prediction_set.predictions["lower_bound"] <= prediction_set.predictions["point_estimate"]).all()
    assert (prediction_set.predictions["point_estimate"] <= prediction_set.predictions["upper_bound"]).all()
    assert prediction_set.draws.shape == (fitted_hierarchical.num_draws, len(query))
    assert prediction_set.reliable == fitted_hierarchical.reliable


def test_prediction_is_reproducible(fitted_hierarchical, train_table):
    first = predict(fitted_hierarchical, train_table, PredictOptions(seed=3))
    second = predict(fitted_hierarchical, train_table, PredictOptions(seed=3))
    pd.testing.assert_frame_equal(first.predictions, second.predictions)


def test_unseen_individual_rejected_by_default(fitted_hierarchical):
    query = pd.DataFrame({"individual_id": [999], "time": [3]})
    with pytest.raises(InvalidParameter):
        predict(fitted_hierarchical, query)


def test_new_individual_interval_is_at_least_as_wide(fitted_hierarchical, train_table):
    trained_id = int(train_table["individual_id"].iloc[0])
    query = pd.DataFrame({"individual_id": [trained_id, 999], "time": [5, 5]})
    options = PredictOptions(allow_new_individuals=True, new_individual_sampling="population_gaussian_draw")

    prediction_set = predict(fitted_hierarchical, query, options)
    width = prediction_set.interval_width.to_numpy()

    assert prediction_set.new_individual_ids == (999,)
    assert np.isfinite(width).all()
    assert width[1] >= width[0]


def test_population_average_is_narrower_than_gaussian_draw(fitted_hierarchical):
    query = pd.DataFrame({"individual_id": [999], "time": [5]})
    base = dict(allow_new_individuals=True, include_observation_noise=False)
    average = predict(fitted_hierarchical, query, PredictOptions(new_individual_sampling="population_average", **base))
    drawn = predict(fitted_hierarchical, query, PredictOptions(new_individual_sampling="population_gaussian_draw", **base))
    assert drawn.interval_width.iloc[0] > average.interval_width.iloc[0]


def test_expected_value_interval_is_narrower_than_predictive(fitted_hierarchical, train_table):
    query = train_table.head(3)
    noisy = predict(fitted_hierarchical, query, PredictOptions(include_observation_noise=True))
    expected = predict(fitted_hierarchical, query, PredictOptions(include_observation_noise=False))
    assert (expected.interval_width < noisy.interval_width).all()


def test_thinning_limits_draws(fitted_hierarchical, train_table):
    prediction_set = predict(fitted_hierarchical, train_table.head(2), PredictOptions(num_samples=40))
    assert prediction_set.draws.shape == (40, 2)


def test_empty_query(fitted_hierarchical):
    prediction_set = predict(fitted_hierarchical, pd.DataFrame({"individual_id": [], "time": []}))
    assert len(prediction_set) == 0


def test_compare_on_held_out_grid(fitted_hierarchical, train_table):
    grid = query_grid(fitted_hierarchical.individual_ids[:2], max_time=4)
    options = PredictOptions(num_samples=50)
    sets = {
        "noisy": predict(fitted_hierarchical, grid, options),
        "expected": predict(fitted_hierarchical, grid, PredictOptions(num_samples=50, include_observation_noise=False)),
    }
    table = compare(sets, train_table, truth_column="true_value")
    assert len(table) == 2 * len(grid)
    assert table["ground_truth"].notna().any()


def test_save_and_load(fitted_hierarchical, tmp_path):
    path = tmp_path / "fits" / "hierarchical.pt"
    fitted_hierarchical.save(path)
    loaded = FittedModel.load(path)

    assert loaded.label == fitted_hierarchical.label
    assert loaded.model_config == fitted_hierarchical.model_config
    assert loaded.individual_ids == fitted_hierarchical.individual_ids
    assert loaded.diagnostics == fitted_hierarchical.diagnostics
    for name, value in fitted_hierarchical.chain_samples.items():
        assert np.array_equal(loaded.chain_samples[name].numpy(), value.numpy())


def test_extend_random_effects_leaves_input_untouched():
    import torch

    samples = {"z_intercept": torch.ones((4, 3)), "intercept": torch.zeros(4)}
    generator = torch.Generator().manual_seed(0)

    drawn = extend_random_effects(samples, ("z_intercept",), n_new=2, sampling="population_gaussian_draw", generator=generator)
    averaged = extend_random_effects(samples, ("z_intercept",), n_new=2, sampling="population_average")
    dropped = extend_random_effects(samples, ("z_intercept",), n_new=2, sampling="none")

    assert samples["z_intercept"].shape == (4, 3)
    assert drawn["z_intercept"].shape == (4, 5)
    assert torch.equal(drawn["z_intercept"][:, :3], samples["z_intercept"])
    assert torch.equal(averaged["z_intercept"][:, 3:], torch.zeros((4, 2)))
    assert torch.equal(dropped["z_intercept"], torch.zeros((4, 5)))


def test_model_without_random_effects_predicts_new_individuals(train_table, tiny_mcmc):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", FitDiagnosticWarning)
        fitted = CtRegressionModel(ModelConfig(random_effects="none"), tiny_mcmc).fit(train_table)
    query = pd.DataFrame({"individual_id": [1, 999], "time": [2, 2]})
    prediction_set = predict(fitted, query, PredictOptions(allow_new_individuals=True, seed=5))
    # with no individual effects both rows share one predictive distribution
    assert prediction_set.predictions["point_estimate"].iloc[0] == pytest.approx(
        prediction_set.predictions["point_estimate"].iloc[1], abs=1.5
    )


EXPERIMENT_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "experiment.yaml"
_, _, EXPERIMENT_MODELS, EXPERIMENT_MCMC, EXPERIMENT_PREDICT = load_config(EXPERIMENT_CONFIG)


@pytest.mark.parametrize("label", sorted(EXPERIMENT_MODELS))
def test_experiment_models_fit_with_several_chains(label, train_table):
    mcmc_config = replace(
        EXPERIMENT_MCMC, num_samples=60, warmup_steps=60, num_chains=2, max_tree_depth=6, progress=False
    )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", FitDiagnosticWarning)
        fitted = CtRegressionModel(EXPERIMENT_MODELS[label], mcmc_config, label=label).fit(train_table)

    assert fitted.num_draws == 2 * 60
    assert next(iter(fitted.chain_samples.values())).shape[0] == 2
    assert set(random_effect_sites(fitted.model_config)) <= set(fitted.samples)
    assert {"intercept", "sigma"} <= set(fitted.diagnostics.ess_tail)

    query = pd.DataFrame({"individual_id": [fitted.individual_ids[0], 999], "time": [4, 4]})
    prediction_set = predict(fitted, query, replace(EXPERIMENT_PREDICT, num_samples=40))
    assert prediction_set.label == label
    assert prediction_set.draws.shape == (40, 2)
    assert np.isfinite(prediction_set.predictions["point_estimate"]).all()
