"""Residual diagnostics.

Scaled residuals are built by simulation: for every observation, draw n_sim
responses from the fitted conditional distribution and record where the
observed value falls among them. Under a correctly specified model these
residuals are uniform on (0, 1) whatever the response family, so the same
checks (uniformity, dispersion, outliers, zero inflation) apply to the
gaussian mixed models, the Bernoulli crab census and the Poisson counts.

Simulation is conditional on the estimated random effects.
"""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import stats

from .models import ModelFit
from .plotting import plt, save_figure

logger = logging.getLogger(__name__)


# ----------------------------
# Simulation
# ----------------------------
def simulate_responses(fit: ModelFit, n_sim: int, rng: np.random.Generator) -> np.ndarray:
    """(n_obs, n_sim) responses drawn from the fitted model."""
    mu = fit.mu
    shape = (mu.size, n_sim)
    if fit.family == "gaussian":
        return mu[:, None] + rng.normal(0.0, fit.sigma, size=shape)
    if fit.family == "binomial":
        p = np.clip(mu, 0.0, 1.0)
        return rng.binomial(1, np.broadcast_to(p[:, None], shape)).astype(float)
    if fit.family == "poisson":
        lam = np.clip(mu, 0.0, None)
        return rng.poisson(np.broadcast_to(lam[:, None], shape)).astype(float)
    raise ValueError("No simulator for family '{}'".format(fit.family))


def scaled_residuals(observed, simulated: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """
    Randomized PIT residuals in (0, 1).

    r_i = (#sims < y_i + U * (#sims == y_i + 1)) / (n_sim + 1), U ~ U(0, 1),
    which spreads ties evenly for discrete responses.
    """
    y = np.asarray(observed, dtype=float)
    sim = np.asarray(simulated, dtype=float)
    if sim.ndim != 2 or sim.shape[0] != y.size:
        raise ValueError("simulated must have shape (n_obs, n_sim); got {} for {} observations".format(sim.shape, y.size))
    n_sim = sim.shape[1]
    n_less = (sim < y[:, None]).sum(axis=1)
    n_equal = (sim == y[:, None]).sum(axis=1)
    u = rng.uniform(size=y.size)
    return (n_less + u * (n_equal + 1)) / (n_sim + 1)


# ----------------------------
# Tests
# ----------------------------
def _two_sided_sim_p(observed_stat: float, simulated_stats: np.ndarray) -> float:
    upper = np.mean(simulated_stats >= observed_stat)
    lower = np.mean(simulated_stats <= observed_stat)
    return float(min(1.0, 2.0 * min(upper, lower)))


def uniformity_test(residuals) -> Dict[str, float]:
    res = stats.kstest(np.asarray(residuals, dtype=float), "uniform")
    return {"ks_stat": float(res.statistic), "ks_p": float(res.pvalue)}


def dispersion_test(observed, simulated: np.ndarray) -> Dict[str, float]:
    """Variance of observed deviations from the simulated mean vs the same for each simulated column."""
    y = np.asarray(observed, dtype=float)
    sim = np.asarray(simulated, dtype=float)
    centre = sim.mean(axis=1)
    obs_disp = np.var(y - centre)
    sim_disp = np.var(sim - centre[:, None], axis=0)
    mean_sim = float(np.mean(sim_disp))
    ratio = float(obs_disp / mean_sim) if mean_sim > 0 else float("nan")
    return {"dispersion_ratio": ratio, "dispersion_p": _two_sided_sim_p(obs_disp, sim_disp)}


def outlier_test(observed, simulated: np.ndarray) -> Dict[str, float]:
    """Observations outside the whole simulation envelope, tested against the rate 2 / (n_sim + 1)."""
    y = np.asarray(observed, dtype=float)
    sim = np.asarray(simulated, dtype=float)
    n_sim = sim.shape[1]
    n_less = (sim < y[:, None]).sum(axis=1)
    n_greater = (sim > y[:, None]).sum(axis=1)
    outside = (n_less == n_sim) | (n_greater == n_sim)
    k = int(outside.sum())
    p = stats.binomtest(k, y.size, p=2.0 / (n_sim + 1), alternative="greater").pvalue
    return {"outliers": k, "outlier_fraction": k / y.size, "outlier_p": float(p)}


def zero_inflation_test(observed, simulated: np.ndarray) -> Dict[str, float]:
    y = np.asarray(observed, dtype=float)
    sim = np.asarray(simulated, dtype=float)
    obs_zeros = float(np.sum(y == 0))
    sim_zeros = np.sum(sim == 0, axis=0).astype(float)
    mean_zeros = float(np.mean(sim_zeros))
    ratio = obs_zeros / mean_zeros if mean_zeros > 0 else float("nan")
    return {"zero_ratio": ratio, "zero_p": _two_sided_sim_p(obs_zeros, sim_zeros)}


def normality_and_variance(resid, groups=None) -> Dict[str, float]:
    """Shapiro-Wilk on residuals and, when groups are given, Levene (median-centred) across them."""
    r = np.asarray(resid, dtype=float)
    r = r[np.isfinite(r)]
    out = {"shapiro_W": np.nan, "shapiro_p": np.nan, "levene_W": np.nan, "levene_p": np.nan}
    if r.size >= 3:
        sw = stats.shapiro(r)
        out["shapiro_W"], out["shapiro_p"] = float(sw.statistic), float(sw.pvalue)
    if groups is not None:
        samples = [np.asarray(g, dtype=float) for g in groups]
        samples = [s[np.isfinite(s)] for s in samples]
        samples = [s for s in samples if s.size >= 2]
        if len(samples) >= 2:
            lv = stats.levene(*samples, center="median")
            out["levene_W"], out["levene_p"] = float(lv.statistic), float(lv.pvalue)
    return out


# ----------------------------
# One-call summary
# ----------------------------
@dataclass
class ResidualCheck:
    model: str
    family: str
    n: int
    n_sim: int
    ks_stat: float
    ks_p: float
    dispersion_ratio: float
    dispersion_p: float
    outliers: int
    outlier_fraction: float
    outlier_p: float
    zero_ratio: float = float("nan")
    zero_p: float = float("nan")
    shapiro_W: float = float("nan")
    shapiro_p: float = float("nan")
    residuals: np.ndarray = field(default=None, repr=False)
    predicted: np.ndarray = field(default=None, repr=False)

    def summary(self) -> Dict[str, float]:
        d = asdict(self)
        d.pop("residuals")
        d.pop("predicted")
        return d

    def flags(self, alpha: float = 0.05) -> List[str]:
        out = []
        if self.ks_p < alpha:
            out.append("non-uniform residuals")
        if self.dispersion_p < alpha:
            out.append("overdispersion" if self.dispersion_ratio > 1 else "underdispersion")
        if self.outlier_p < alpha:
            out.append("excess outliers")
        if np.isfinite(self.zero_p) and self.zero_p < alpha:
            out.append("zero inflation" if self.zero_ratio > 1 else "too few zeros")
        if np.isfinite(self.shapiro_p) and self.shapiro_p < alpha:
            out.append("non-normal residuals")
        return out


def run_diagnostics(fit: ModelFit, n_sim: int = 250, rng: Optional[np.random.Generator] = None) -> ResidualCheck:
    rng = rng if rng is not None else np.random.default_rng()
    y = fit.endog
    sim = simulate_responses(fit, n_sim, rng)
    resid = scaled_residuals(y, sim, rng)

    extra = {}
    if fit.family == "poisson":
        extra.update(zero_inflation_test(y, sim))
    if fit.family == "gaussian":
        sw = normality_and_variance(y - fit.mu)
        extra.update(shapiro_W=sw["shapiro_W"], shapiro_p=sw["shapiro_p"])

    check = ResidualCheck(
        model=fit.name, family=fit.family, n=fit.n, n_sim=n_sim,
        residuals=resid, predicted=fit.mu,
        **uniformity_test(resid), **dispersion_test(y, sim), **outlier_test(y, sim), **extra,
    )
    flags = check.flags()
    if flags:
        logger.warning("%s: residual checks flag %s", fit.name, ", ".join(flags))
    return check


def plot_diagnostics(check: ResidualCheck, outpath: Path, dpi: int = 200) -> Path:
    r = np.sort(check.residuals)
    n = r.size
    expected = (np.arange(1, n + 1) - 0.5) / n

    fig, axes = plt.subplots(1, 2, figsize=(11, 4.6))

    ax = axes[0]
    ax.scatter(expected, r, s=10, alpha=0.7)
    ax.plot([0, 1], [0, 1], color="red", linewidth=1)
    ax.set_xlabel("Expected")
    ax.set_ylabel("Observed scaled residual")
    ax.set_title("QQ plot (uniform)")
    ax.text(
        0.02, 0.98,
        "KS p = {:.3f}\nDispersion p = {:.3f}\nOutlier p = {:.3f}".format(check.ks_p, check.dispersion_p, check.outlier_p),
        transform=ax.transAxes, va="top", ha="left", fontsize=9,
        bbox=dict(boxstyle="round", facecolor="white", alpha=0.85, edgecolor="0.7"),
    )

    ax = axes[1]
    pred_rank = pd.Series(check.predicted).rank(pct=True).to_numpy()
    ax.scatter(pred_rank, check.residuals, s=10, alpha=0.6)
    for q in (0.25, 0.5, 0.75):
        ax.axhline(q, color="0.5", linestyle="--", linewidth=1)
    if n >= 20:
        bins = np.linspace(0, 1, 8)
        idx = np.clip(np.digitize(pred_rank, bins) - 1, 0, len(bins) - 2)
        centres = 0.5 * (bins[:-1] + bins[1:])
        for q in (0.25, 0.5, 0.75):
            qs = [np.quantile(check.residuals[idx == i], q) if np.any(idx == i) else np.nan for i in range(len(centres))]
            ax.plot(centres, qs, color="red", linewidth=1.2)
    ax.set_xlabel("Model prediction (rank transformed)")
    ax.set_ylabel("Scaled residual")
    ax.set_title("Residual vs predicted")
    ax.set_ylim(0, 1)

    fig.suptitle("Simulated residual diagnostics: {}".format(check.model))
    return save_figure(fig, outpath, dpi)
