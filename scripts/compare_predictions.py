"""Posterior predictive comparison of the fitted models on training and held-out individuals."""
# %% Import necessary libraries
import os
from dataclasses import replace

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from viralct.config import load_config
from viralct.errors import BackendFailure
from viralct.models import FittedModel, compare, comparison_metrics, predict
from viralct.trajectory_data import SimulatedDataGenerator, query_grid

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 150

# %% Load configuration, data and fits
config_path = "configs/experiment.yaml"
run_name, sim_config, model_configs, mcmc_config, predict_options = load_config(config_path)

train = SimulatedDataGenerator.load(f"./data/synthetic_data_{run_name}")
held_out = SimulatedDataGenerator.load(f"./data/held_out_{run_name}")
truth = pd.concat(
    [train.to_table(include_truth=True), held_out.to_table(include_truth=True)],
    ignore_index=True,
)

fits = {}
for label in model_configs:
    checkpoint_path = f"saved_models/{run_name}/{label}.pt"
    if not os.path.exists(checkpoint_path):
        print(f"No fit for {label}; run scripts/fit_models.py first")
        continue
    fits[label] = FittedModel.load(checkpoint_path)
    if not fits[label].reliable:
        print(f"WARNING: {label} did not pass convergence checks")

# %% Predict the full time grid for a few training and all held-out individuals
shown_ids = list(train.individual_ids[:3]) + list(held_out.individual_ids)
grid = query_grid(shown_ids, max_time=sim_config.max_time)

prediction_sets = {}
for label, fitted in fits.items():
    try:
        prediction_sets[label] = predict(fitted, grid, predict_options, label=label)
    except BackendFailure as exc:
        print(f"Prediction failed for {label}: {exc}")

# Population-level curve for reference: random effects dropped for every individual.
if "random_intercept_slope" in fits:
    prediction_sets["population_level"] = predict(
        fits["random_intercept_slope"],
        grid,
        replace(predict_options, new_individual_sampling="none"),
        label="population_level",
    )

# %% Compare against truth
table = compare(prediction_sets, truth, truth_column="true_value")
table["held_out"] = table["individual_id"].isin(held_out.individual_ids)
os.makedirs(f"results/{run_name}", exist_ok=True)
table.to_csv(f"results/{run_name}/comparison.csv", index=False)

print("\nAll individuals:")
print(comparison_metrics(table).round(3))
print("\nHeld-out individuals:")
print(comparison_metrics(table[table["held_out"]]).round(3))

# %% Plot posterior predictive fits per individual and model
observed = truth[truth["individual_id"].isin(shown_ids)]
g = sns.FacetGrid(table, row="label", col="individual_id", sharey=True, height=2.2, aspect=1.1)
g.map_dataframe(lambda data, **kws: plt.fill_between(data["time"], data["lower_bound"], data["upper_bound"], alpha=0.3))
g.map_dataframe(sns.lineplot, x="time", y="point_estimate")
g.map_dataframe(sns.lineplot, x="time", y="ground_truth", color="black", linestyle="--")
for (label, ind_id), ax in g.axes_dict.items():
    obs = observed[observed["individual_id"] == ind_id]
    ax.scatter(obs["time"], obs["observed_value"], s=8, color="black")
    ax.axhline(sim_config.detection_limit, color="red", linewidth=0.8)
g.axes.flat[0].invert_yaxis()  # y is shared, so once inverts every panel
g.set_axis_labels("Time", "Ct")
g.savefig(f"results/{run_name}/posterior_predictive.png")
print(f"Saved results/{run_name}/posterior_predictive.png")

# %% Interval width for training vs held-out individuals
widths = table.assign(width=table["upper_bound"] - table["lower_bound"])
fig, ax = plt.subplots(figsize=(8, 4))
sns.barplot(data=widths, x="label", y="width", hue="held_out", ax=ax)
ax.set_ylabel("Mean 95% interval width")
ax.set_title("Predictive uncertainty, training vs new individuals")
plt.xticks(rotation=30, ha="right")
plt.tight_layout()
plt.savefig(f"results/{run_name}/interval_widths.png")
print(f"Saved results/{run_name}/interval_widths.png")
