"""Fit every model configuration in the experiment file with NUTS."""
# %% Import necessary libraries
import os
import warnings

from viralct.config import dump_config, load_config
from viralct.errors import BackendFailure, FitDiagnosticWarning
from viralct.models import CtRegressionModel, FittedModel, format_diagnostics
from viralct.trajectory_data import SimulatedDataGenerator

# %% Load configuration and data
config_path = "configs/experiment.yaml"
run_name, sim_config, model_configs, mcmc_config, predict_options = load_config(config_path)

data_path = f"./data/synthetic_data_{run_name}"
print(f"Loading data from {data_path}")
table = SimulatedDataGenerator.load(data_path).to_table()

dump_config(
    f"results/{run_name}/config.yaml",
    run_name,
    sim_config,
    model_configs,
    mcmc_config,
    predict_options,
)

# %% Fit each configuration
for label, model_config in model_configs.items():
    checkpoint_path = f"saved_models/{run_name}/{label}.pt"
    if os.path.exists(checkpoint_path):
        print(f"Loading checkpoint from {checkpoint_path}")
        fitted = FittedModel.load(checkpoint_path)
    else:
        print(f"\nFitting {label} ({model_config.random_effects} random effects, {model_config.prior} priors)")
        try:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", FitDiagnosticWarning)
                fitted = CtRegressionModel(model_config, mcmc_config, label=label).fit(table)
        except BackendFailure as exc:
            print(f"  FAILED: {exc}")
            continue
        for warning in caught:
            print(f"  WARNING: {warning.message}")
        fitted.save(checkpoint_path)

    print(format_diagnostics(fitted.diagnostics))
    summary = fitted.summary()
    print(summary.loc[[p for p in summary.index if not p.startswith("z_")]].round(3))

    os.makedirs(f"results/{run_name}/{label}", exist_ok=True)
    summary.to_csv(f"results/{run_name}/{label}/posterior_summary.csv")
