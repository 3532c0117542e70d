"""Simulate training and held-out Ct cohorts and plot the trajectories."""
# %% Import necessary libraries
import os
from dataclasses import replace

import matplotlib.pyplot as plt
import seaborn as sns

from viralct.config import load_config
from viralct.trajectory_data import SimulatedDataGenerator

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 150

# %% Load configuration with config path
config_path = "configs/experiment.yaml"
run_name, sim_config, model_configs, mcmc_config, predict_options = load_config(config_path)

data_path = f"./data/synthetic_data_{run_name}"
held_out_path = f"./data/held_out_{run_name}"

# %% Training cohort
if not os.path.exists(data_path):
    print(f"Generating data and saving to {data_path}")
    table, sim_data = SimulatedDataGenerator(sim_config).generate_table(
        include_truth=True,
        return_simulation=True,
        save=True,
        name=data_path.split("/")[-1],
    )
else:
    print(f"Loading data from {data_path}")
    sim_data = SimulatedDataGenerator.load(data_path)
    table = sim_data.to_table(include_truth=True)

# %% Held-out cohort: new individuals with ids after the training ones
held_out_config = replace(
    sim_config,
    n_individuals=max(1, sim_config.n_individuals // 4),
    id_offset=sim_config.id_offset + sim_config.n_individuals,
    seed=None if sim_config.seed is None else sim_config.seed + 1,
)
if not os.path.exists(held_out_path):
    print(f"Generating held-out data and saving to {held_out_path}")
    _, held_out = SimulatedDataGenerator(held_out_config).generate_table(
        return_simulation=True,
        save=True,
        name=held_out_path.split("/")[-1],
    )
else:
    held_out = SimulatedDataGenerator.load(held_out_path)

# %% Summary
lengths = [len(traj) for traj in sim_data.trajectories]
n_censored = sum(traj.censored for traj in sim_data.trajectories)
print(f"individuals: {len(sim_data)}, observations: {len(table)}")
print(f"observations per individual: min {min(lengths)}, max {max(lengths)}")
print(f"censored at the detection limit: {n_censored}/{len(sim_data)}")
print(f"held-out individuals: {held_out.individual_ids}")

# %% Plot observed and true trajectories
os.makedirs(f"results/{run_name}", exist_ok=True)
fig, ax = plt.subplots(figsize=(8, 5))
sns.lineplot(data=table, x="time", y="true_value", hue="individual_id", palette="viridis", legend=False, ax=ax, alpha=0.6)
sns.scatterplot(data=table, x="time", y="observed_value", hue="individual_id", palette="viridis", legend=False, ax=ax, s=20)
ax.axhline(sim_config.detection_limit, color="red", linestyle="--", linewidth=1, label="detection limit")
ax.invert_yaxis()  # low Ct = high viral load
ax.set_xlabel("Time")
ax.set_ylabel("Ct")
ax.set_title("Simulated Ct trajectories")
ax.legend()
plt.tight_layout()
plt.savefig(f"results/{run_name}/trajectories.png")
print(f"Saved results/{run_name}/trajectories.png")
