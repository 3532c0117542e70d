import math

import torch

from viralct.models import FitDiagnostics, diagnose


def _site(r_hat, n_eff):
    return {"r_hat": torch.tensor(r_hat, dtype=torch.float64), "n_eff": torch.tensor(n_eff, dtype=torch.float64)}


def test_good_fit_is_reliable():
    diagnostics = diagnose(
        {
            "intercept": _site(1.001, 2500.0),
            "z_intercept": _site([1.0, 1.005, 1.002], [1800.0, 900.0, 3000.0]),
            "divergences": {"chain 0": [], "chain 1": []},
            "acceptance rate": {"chain 0": 0.91, "chain 1": 0.88},
        }
    )
    assert diagnostics.reliable
    assert diagnostics.problems == []
    assert diagnostics.r_hat["z_intercept"] == 1.005
    assert diagnostics.ess["z_intercept"] == 900.0
    assert diagnostics.acceptance_rate == {"chain 0": 0.91, "chain 1": 0.88}


def test_r_hat_at_threshold_is_unreliable():
    diagnostics = diagnose({"slope": _site(1.01, 5000.0)}, max_r_hat=1.01)
    assert not diagnostics.reliable
    assert "slope" in diagnostics.problems[0]


def test_low_ess_is_unreliable():
    diagnostics = diagnose({"sigma": _site(1.0, 599.0)}, min_ess=600)
    assert not diagnostics.reliable


def test_divergences_are_counted():
    diagnostics = diagnose(
        {"sigma": _site(1.0, 5000.0), "divergences": {"chain 0": [3, 17], "chain 1": [40]}}
    )
    assert diagnostics.num_divergences == 3
    assert not diagnostics.reliable


def test_nan_r_hat_is_unreliable():
    diagnostics = diagnose({"sd_slope": _site(float("nan"), 1000.0)})
    assert math.isnan(diagnostics.r_hat["sd_slope"])
    assert not diagnostics.reliable


def test_to_frame_has_one_row_per_site():
    diagnostics = diagnose({"intercept": _site(1.0, 1000.0), "slope": _site(1.0, 800.0)})
    frame = diagnostics.to_frame()
    assert list(frame.index) == ["intercept", "slope"]
    assert list(frame.columns) == ["r_hat", "ess", "ess_bulk", "ess_tail"]


def test_low_tail_ess_is_unreliable():
    diagnostics = diagnose(
        {"intercept": _site(1.0, 2000.0)},
        min_ess=600,
        ess_bulk={"intercept": 1500.0},
        ess_tail={"intercept": 410.0},
    )
    assert not diagnostics.reliable
    assert diagnostics.problems == ["intercept: ess_tail=410 < 600"]


def test_bulk_and_tail_ess_round_trip_through_dict():
    diagnostics = diagnose(
        {"sigma": _site(1.0, 900.0)},
        ess_bulk={"sigma": 850.0},
        ess_tail={"sigma": 700.0},
    )
    assert diagnostics.reliable
    assert FitDiagnostics(**diagnostics.to_dict()) == diagnostics
    assert diagnostics.to_frame().loc["sigma", "ess_tail"] == 700.0
