"""Synthetic experiment with known treatment effects.

Layout: tanks come in blocks of two (one ambient, one enriched); every tank
holds the full wound x crab x algae design, repeated when corals_per_tank is
larger than eight. All datasets share coral ids with the metadata table.
"""

import itertools
import logging
from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd

from .config import DEFAULT_FILES

logger = logging.getLogger(__name__)

# effects on the model scale of each response
EFFECTS = {
    "growth": {"intercept": 0.50, "nutrient": -0.15, "crab": 0.12, "wound": -0.10, "algae": -0.10,
               "nutrient:crab": 0.10, "tank_sd": 0.04, "sd": 0.08},
    "crab_census": {"intercept": 2.5, "nutrient": -0.9, "wound": -0.6, "algae": -0.3, "day": -0.04,
                    "tank_sd": 0.3, "coral_sd": 0.4},
    "algae": {"intercept": -2.0, "nutrient": 0.8, "crab": -1.0, "wound": 0.3, "day": 0.03, "tank_sd": 0.2},
    "symbionts": {"intercept": 6.2, "nutrient": 0.25, "wound": -0.15, "crab": 0.05, "algae": -0.10,
                  "tank_sd": 0.05, "sd": 0.12},
    "chl_per_cell": {"intercept": 0.5, "nutrient": 0.12, "wound": -0.05, "sd": 0.08},
    "epibionts": {"intercept": 1.5, "nutrient": 0.4, "crab": -0.5, "wound": 0.2, "algae": 0.3, "tank_sd": 0.15},
    "wound_healing": {"base_rate": 0.08, "nutrient": -0.6, "crab": 0.6, "censor_day": 30},
    "mortality": {"base_rate": 0.004, "nutrient": 1.0, "crab": -0.8, "wound": 0.5, "algae": 0.6, "censor_day": 60},
    "crab_feeding": {"intercept": 4.0, "nutrient": 1.5, "sd_ambient": 1.0, "sd_enriched": 1.6},
    "tissue": {"cn_intercept": 6.5, "cn_nutrient": -0.6, "cn_crab": -0.3, "cn_sd": 0.3,
               "d15n_intercept": 4.0, "d15n_nutrient": 1.2, "d15n_crab": 0.4, "d15n_sd": 0.35},
}

GROWTH_DAYS = (0, 14, 28, 42)
CENSUS_DAYS = tuple(range(3, 31, 3))
ALGAE_DAYS = (14, 28, 42)
ALGAE_POINTS = 100
N_TAXA = 30
READ_DEPTH = 5000


def _logistic(x):
    return 1.0 / (1.0 + np.exp(-x))


def simulate_metadata(rng: np.random.Generator, n_tanks: int = 8, corals_per_tank: int = 8) -> pd.DataFrame:
    if n_tanks < 2 or n_tanks % 2:
        raise ValueError("n_tanks must be an even number >= 2, got {}".format(n_tanks))
    if corals_per_tank < 8:
        raise ValueError("corals_per_tank must be >= 8 to cover wound x crab x algae, got {}".format(corals_per_tank))

    cells = list(itertools.product(("intact", "wounded"), ("absent", "present"), ("absent", "present")))
    # which tank of each pair is enriched
    flips = rng.integers(0, 2, size=n_tanks // 2)
    rows = []
    k = 0
    for t in range(n_tanks):
        block = t // 2 + 1
        nutrient = ("ambient", "enriched")[(t % 2 + flips[t // 2]) % 2]
        combos = [cells[i % len(cells)] for i in range(corals_per_tank)]
        for wound, crab, algae in combos:
            k += 1
            rows.append({"coral_id": "C{:03d}".format(k), "tank": "T{}".format(t + 1), "block": "B{}".format(block),
                         "nutrient": nutrient, "wound": wound, "crab": crab, "algae": algae})
    return pd.DataFrame(rows)


def _indicators(meta: pd.DataFrame) -> pd.DataFrame:
    return pd.DataFrame({
        "coral_id": meta["coral_id"],
        "tank": meta["tank"],
        "n": (meta["nutrient"] == "enriched").astype(int).to_numpy(),
        "w": (meta["wound"] == "wounded").astype(int).to_numpy(),
        "c": (meta["crab"] == "present").astype(int).to_numpy(),
        "a": (meta["algae"] == "present").astype(int).to_numpy(),
    })


def _tank_effect(ind: pd.DataFrame, sd: float, rng: np.random.Generator) -> np.ndarray:
    tanks = ind["tank"].unique()
    re = dict(zip(tanks, rng.normal(0.0, sd, size=len(tanks))))
    return ind["tank"].map(re).to_numpy(float)


# ----------------------------
# One simulator per dataset
# ----------------------------
def _growth(ind, rng):
    e = EFFECTS["growth"]
    rate = (e["intercept"] + e["nutrient"] * ind["n"] + e["crab"] * ind["c"] + e["wound"] * ind["w"]
            + e["algae"] * ind["a"] + e["nutrient:crab"] * ind["n"] * ind["c"]
            + _tank_effect(ind, e["tank_sd"], rng) + rng.normal(0.0, e["sd"], len(ind)))
    w0 = rng.normal(20.0, 3.0, len(ind)).clip(8.0)
    rows = []
    for i, cid in enumerate(ind["coral_id"]):
        for day in GROWTH_DAYS:
            w = w0[i] * (1.0 + rate.iloc[i] / 100.0 * day) + (rng.normal(0.0, 0.02) if day else 0.0)
            rows.append({"coral_id": cid, "day": day, "buoyant_weight_g": round(float(w), 4)})
    return pd.DataFrame(rows)


def _crab_census(ind, rng):
    e = EFFECTS["crab_census"]
    sub = ind[ind["c"] == 1].reset_index(drop=True)
    tank_re = _tank_effect(sub, e["tank_sd"], rng)
    coral_re = rng.normal(0.0, e["coral_sd"], len(sub))
    rows = []
    for i, r in sub.iterrows():
        for day in CENSUS_DAYS:
            eta = (e["intercept"] + e["nutrient"] * r["n"] + e["wound"] * r["w"] + e["algae"] * r["a"]
                   + e["day"] * day + tank_re[i] + coral_re[i])
            rows.append({"coral_id": r["coral_id"], "day": day, "crab_observed": int(rng.random() < _logistic(eta))})
    return pd.DataFrame(rows)


def _algae(ind, rng):
    e = EFFECTS["algae"]
    sub = ind[ind["a"] == 1].reset_index(drop=True)
    tank_re = _tank_effect(sub, e["tank_sd"], rng)
    rows = []
    for i, r in sub.iterrows():
        for day in ALGAE_DAYS:
            eta = e["intercept"] + e["nutrient"] * r["n"] + e["crab"] * r["c"] + e["wound"] * r["w"] + e["day"] * day + tank_re[i]
            rows.append({"coral_id": r["coral_id"], "day": day,
                         "overgrowth_points": int(rng.binomial(ALGAE_POINTS, _logistic(eta))),
                         "total_points": ALGAE_POINTS})
    return pd.DataFrame(rows)


def _symbionts(ind, rng):
    e, ec = EFFECTS["symbionts"], EFFECTS["chl_per_cell"]
    log_cells = (e["intercept"] + e["nutrient"] * ind["n"] + e["wound"] * ind["w"] + e["crab"] * ind["c"]
                 + e["algae"] * ind["a"] + _tank_effect(ind, e["tank_sd"], rng) + rng.normal(0.0, e["sd"], len(ind)))
    # pg chlorophyll a per cell
    log_chl = ec["intercept"] + ec["nutrient"] * ind["n"] + ec["wound"] * ind["w"] + rng.normal(0.0, ec["sd"], len(ind))
    cells = 10 ** log_cells
    return pd.DataFrame({
        "coral_id": ind["coral_id"],
        "cells_per_cm2": np.round(cells, 0),
        "chl_a_ug_cm2": np.round(cells * 10 ** log_chl * 1e-6, 4),
    })


def _epibionts(ind, rng):
    e = EFFECTS["epibionts"]
    eta = (e["intercept"] + e["nutrient"] * ind["n"] + e["crab"] * ind["c"] + e["wound"] * ind["w"]
           + e["algae"] * ind["a"] + _tank_effect(ind, e["tank_sd"], rng))
    return pd.DataFrame({"coral_id": ind["coral_id"], "n_epibionts": rng.poisson(np.exp(eta))})


def _time_to_event(rate, censor, rng):
    t = rng.exponential(1.0 / rate)
    event = (t <= censor).astype(int)
    return np.round(np.minimum(t, censor), 1), event


def _wound_healing(ind, rng):
    e = EFFECTS["wound_healing"]
    sub = ind[ind["w"] == 1].reset_index(drop=True)
    rate = e["base_rate"] * np.exp(e["nutrient"] * sub["n"] + e["crab"] * sub["c"]).to_numpy(float)
    t, event = _time_to_event(rate, e["censor_day"], rng)
    return pd.DataFrame({"coral_id": sub["coral_id"], "days_to_closure": t, "closed": event})


def _mortality(ind, rng):
    e = EFFECTS["mortality"]
    lp = e["nutrient"] * ind["n"] + e["crab"] * ind["c"] + e["wound"] * ind["w"] + e["algae"] * ind["a"]
    rate = e["base_rate"] * np.exp(lp).to_numpy(float)
    t, event = _time_to_event(rate, e["censor_day"], rng)
    return pd.DataFrame({"coral_id": ind["coral_id"], "days_to_death": t, "died": event})


def _microbiome(ind, rng):
    base = np.sort(rng.gamma(0.8, 1.0, N_TAXA))[::-1] + 0.05
    nutrient_shift = np.zeros(N_TAXA)
    nutrient_shift[[1, 4, 7, 10]] = 1.2
    nutrient_shift[[0, 2]] = -0.6
    crab_shift = np.zeros(N_TAXA)
    crab_shift[[3, 5]] = 0.8
    rows = []
    for _, r in ind.iterrows():
        log_alpha = np.log(base) + nutrient_shift * r["n"] + crab_shift * r["c"]
        props = rng.dirichlet(20.0 * np.exp(log_alpha) / np.exp(log_alpha).sum())
        reads = rng.multinomial(READ_DEPTH, props)
        for j, count in enumerate(reads):
            if count:
                rows.append({"coral_id": r["coral_id"], "taxon": "ASV{:02d}".format(j + 1), "reads": int(count)})
    return pd.DataFrame(rows)


def _crab_feeding(ind, rng):
    e = EFFECTS["crab_feeding"]
    sub = ind[ind["c"] == 1].reset_index(drop=True)
    sd = np.where(sub["n"] == 1, e["sd_enriched"], e["sd_ambient"])
    bites = (e["intercept"] + e["nutrient"] * sub["n"] + rng.normal(0.0, 1.0, len(sub)) * sd).clip(0.0)
    return pd.DataFrame({"trial_id": ["F{:03d}".format(i + 1) for i in range(len(sub))],
                         "coral_id": sub["coral_id"], "bites_per_min": np.round(bites, 2)})


def _tissue(ind, rng):
    e = EFFECTS["tissue"]
    cn = e["cn_intercept"] + e["cn_nutrient"] * ind["n"] + e["cn_crab"] * ind["c"] + rng.normal(0.0, e["cn_sd"], len(ind))
    d15n = e["d15n_intercept"] + e["d15n_nutrient"] * ind["n"] + e["d15n_crab"] * ind["c"] + rng.normal(0.0, e["d15n_sd"], len(ind))
    return pd.DataFrame({"coral_id": ind["coral_id"], "c_to_n": np.round(cn, 3), "d15n_permil": np.round(d15n, 3)})


SIMULATORS = {
    "growth": _growth,
    "crab_census": _crab_census,
    "algae": _algae,
    "symbionts": _symbionts,
    "epibionts": _epibionts,
    "wound_healing": _wound_healing,
    "mortality": _mortality,
    "microbiome": _microbiome,
    "crab_feeding": _crab_feeding,
    "tissue": _tissue,
}


def simulate_experiment(seed: int = 42, n_tanks: int = 8, corals_per_tank: int = 8) -> Dict[str, pd.DataFrame]:
    """All datasets keyed as in the config [Files] section, metadata included."""
    rng = np.random.default_rng(seed)
    meta = simulate_metadata(rng, n_tanks, corals_per_tank)
    ind = _indicators(meta)
    out = {"metadata": meta}
    for key, fn in SIMULATORS.items():
        out[key] = fn(ind, rng)
    logger.debug("Simulated %d corals in %d tanks (seed %d)", len(meta), n_tanks, seed)
    return out


def write_experiment(outdir, seed: int = 42, n_tanks: int = 8, corals_per_tank: int = 8, files=None) -> Dict[str, Path]:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    files = files or DEFAULT_FILES
    paths = {}
    for key, df in simulate_experiment(seed, n_tanks, corals_per_tank).items():
        paths[key] = outdir / files[key]
        df.to_csv(paths[key], index=False)
    logger.info("Wrote %d simulated datasets to %s", len(paths), outdir)
    return paths
