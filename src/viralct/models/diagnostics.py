"""Convergence checks on NUTS output."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import arviz as az
import pandas as pd
import torch
from pyro.infer import MCMC


@dataclass(frozen=True)
class FitDiagnostics:
    """Worst-case r_hat and effective sample sizes per sample site, plus divergences."""

    r_hat: Dict[str, float]  # max over the site's elements
    ess: Dict[str, float]  # Pyro n_eff, min over the site's elements
    num_divergences: int = 0
    max_r_hat: float = 1.01
    min_ess: float = 600.0
    acceptance_rate: Dict[str, float] = field(default_factory=dict)
    ess_bulk: Dict[str, float] = field(default_factory=dict)
    ess_tail: Dict[str, float] = field(default_factory=dict)

    @property
    def problems(self) -> List[str]:
        """Human-readable reasons the fit is unreliable; empty when it is fine."""
        issues = []
        for site, value in self.r_hat.items():
            # NaN r_hat counts as a failure.
            if not value < self.max_r_hat:
                issues.append(f"{site}: r_hat={value:.3f} >= {self.max_r_hat}")
        for kind, values in (("ess", self.ess), ("ess_bulk", self.ess_bulk), ("ess_tail", self.ess_tail)):
            for site, value in values.items():
                if not value >= self.min_ess:
                    issues.append(f"{site}: {kind}={value:.0f} < {self.min_ess:.0f}")
        if self.num_divergences > 0:
            issues.append(f"{self.num_divergences} divergent transitions")
        return issues

    @property
    def reliable(self) -> bool:
        return not self.problems

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "r_hat": pd.Series(self.r_hat, dtype=float),
                "ess": pd.Series(self.ess, dtype=float),
                "ess_bulk": pd.Series(self.ess_bulk, dtype=float),
                "ess_tail": pd.Series(self.ess_tail, dtype=float),
            }
        ).rename_axis("site")

    def to_dict(self) -> Dict[str, object]:
        return {
            "r_hat": dict(self.r_hat),
            "ess": dict(self.ess),
            "num_divergences": self.num_divergences,
            "max_r_hat": self.max_r_hat,
            "min_ess": self.min_ess,
            "acceptance_rate": dict(self.acceptance_rate),
            "ess_bulk": dict(self.ess_bulk),
            "ess_tail": dict(self.ess_tail),
        }


def _reduce(value, reducer) -> float:
    value = torch.as_tensor(value, dtype=torch.float64).reshape(-1)
    if value.numel() == 0:
        return float("nan")
    if torch.isnan(value).any():
        return float("nan")
    return float(reducer(value))


def diagnose(
    site_diagnostics: Mapping[str, Mapping[str, object]],
    max_r_hat: float = 1.01,
    min_ess: float = 600.0,
    ess_bulk: Optional[Mapping[str, float]] = None,
    ess_tail: Optional[Mapping[str, float]] = None,
) -> FitDiagnostics:
    """
    Reduce the output of ``MCMC.diagnostics()`` to a FitDiagnostics.

    Args:
        site_diagnostics: Mapping of site name to {"r_hat": ..., "n_eff": ...}, plus the
            optional "divergences" ({"chain i": [indices]}) and "acceptance rate"
            ({"chain i": float}) entries that Pyro adds.
        max_r_hat: r_hat at or above this value marks the fit unreliable.
        min_ess: Any effective sample size below this value marks the fit unreliable.
        ess_bulk: Optional bulk ESS per site, e.g. from arviz_ess.
        ess_tail: Optional tail ESS per site.
    """

    r_hat: Dict[str, float] = {}
    ess: Dict[str, float] = {}
    num_divergences = 0
    acceptance_rate: Dict[str, float] = {}

    for name, stats in site_diagnostics.items():
        if name == "divergences":
            num_divergences = sum(len(idx) for idx in stats.values())
            continue
        if name == "acceptance rate":
            acceptance_rate = {chain: float(rate) for chain, rate in stats.items()}
            continue
        if "r_hat" in stats:
            r_hat[name] = _reduce(stats["r_hat"], torch.max)
        if "n_eff" in stats:
            ess[name] = _reduce(stats["n_eff"], torch.min)

    return FitDiagnostics(
        r_hat=r_hat,
        ess=ess,
        num_divergences=int(num_divergences),
        max_r_hat=max_r_hat,
        min_ess=min_ess,
        acceptance_rate=acceptance_rate,
        ess_bulk=dict(ess_bulk or {}),
        ess_tail=dict(ess_tail or {}),
    )


def diagnose_mcmc(
    mcmc: MCMC,
    max_r_hat: float = 1.01,
    min_ess: float = 600.0,
    sites: Optional[Iterable[str]] = None,
) -> FitDiagnostics:
    """Diagnose a finished MCMC run, optionally restricted to the named sample sites."""
    site_diagnostics = mcmc.diagnostics()
    if sites is not None:
        keep = set(sites) | {"divergences", "acceptance rate"}
        site_diagnostics = {name: stats for name, stats in site_diagnostics.items() if name in keep}
    ess_bulk, ess_tail = arviz_ess(mcmc, sites=sites)
    return diagnose(
        site_diagnostics,
        max_r_hat=max_r_hat,
        min_ess=min_ess,
        ess_bulk=ess_bulk,
        ess_tail=ess_tail,
    )


def arviz_ess(mcmc: MCMC, sites: Optional[Iterable[str]] = None) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Bulk and tail ESS per sample site (min over the site's elements), computed by ArviZ."""
    idata = az.from_pyro(mcmc, log_likelihood=False)
    keep = None if sites is None else set(sites)
    var_names = [name for name in idata.posterior.data_vars if keep is None or name in keep]
    if not var_names:
        return {}, {}
    bulk = az.ess(idata, var_names=var_names, method="bulk")
    tail = az.ess(idata, var_names=var_names, method="tail")
    return (
        {name: _reduce(bulk[name].values, torch.min) for name in var_names},
        {name: _reduce(tail[name].values, torch.min) for name in var_names},
    )


def format_diagnostics(diagnostics: FitDiagnostics) -> str:
    """One line per site, used by the scripts."""
    lines = []
    for site in diagnostics.r_hat:
        r = diagnostics.r_hat[site]
        n = diagnostics.ess.get(site, math.nan)
        bulk = diagnostics.ess_bulk.get(site, math.nan)
        tail = diagnostics.ess_tail.get(site, math.nan)
        lines.append(f"  {site:<14s} r_hat={r:6.3f}  ess={n:8.1f}  bulk={bulk:8.1f}  tail={tail:8.1f}")
    lines.append(f"  divergences: {diagnostics.num_divergences}")
    lines.append(f"  reliable: {diagnostics.reliable}")
    return "\n".join(lines)
