"""Direct and indirect pathways from the treatments to coral growth.

Piecewise SEM on one row per coral, each component with a random tank
intercept:

    log_symbionts    ~ nutrient + wound + crab
    algal_overgrowth ~ algae + nutrient + crab
    growth_rate      ~ log_symbionts + algal_overgrowth + crab + wound

Global fit by Shipley's d-separation test (Fisher's C). Indirect effects of
each treatment on growth are bootstrapped by resampling whole tanks.
"""

import logging

import numpy as np
import pandas as pd

from .. import data, plotting
from ..reporting import print_table, write_json, write_table
from ..sem import PathModel, PiecewiseSEM
from . import base

logger = logging.getLogger(__name__)

NAME = "growth_pathways"
DESCRIPTION = "Piecewise SEM of treatment effects on growth via symbionts and algal overgrowth"

GROUPS = ["tank"]
COMPONENTS = [
    PathModel("log_symbionts", ["nutrient_enriched", "wounded", "crab_present"], groups=GROUPS),
    PathModel("algal_overgrowth", ["algae_present", "nutrient_enriched", "crab_present"], groups=GROUPS),
    PathModel("growth_rate", ["log_symbionts", "algal_overgrowth", "crab_present", "wounded"], groups=GROUPS),
]
EFFECT_PAIRS = [
    ("nutrient_enriched", "growth_rate"),
    ("crab_present", "growth_rate"),
    ("wounded", "growth_rate"),
    ("algae_present", "growth_rate"),
]
LAYOUT = {
    "nutrient_enriched": (0.0, 3.0),
    "wounded": (0.0, 2.0),
    "crab_present": (0.0, 1.0),
    "algae_present": (0.0, 0.0),
    "log_symbionts": (2.0, 2.5),
    "algal_overgrowth": (2.0, 0.5),
    "growth_rate": (4.0, 1.5),
}


def load(cfg, meta=None):
    meta = meta if meta is not None else data.load_metadata(cfg)
    growth = data.load_dataset(cfg, "growth", required=[data.ID_COL, "day", "buoyant_weight_g"])
    algae = data.load_dataset(cfg, "algae", required=[data.ID_COL, "day", "overgrowth_points", "total_points"])
    symbionts = data.load_dataset(cfg, "symbionts", required=[data.ID_COL, "cells_per_cm2"])
    for name, df in (("growth", growth), ("algae", algae), ("symbionts", symbionts)):
        unknown = sorted(set(df[data.ID_COL]) - set(meta[data.ID_COL]))
        if unknown:
            raise ValueError("{}: coral_id values not in metadata: {}".format(name, unknown[:20]))
    return data.coral_level_table(meta, growth, algae, symbionts)


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    df = load(cfg)
    write_table(df, outdir / "coral_level_table.csv")

    sem = PiecewiseSEM(COMPONENTS, df, name=NAME).fit()
    res = sem.summary()
    write_table(res["coefficients"], outdir / "path_coefficients.csv")
    write_table(res["dsep"], outdir / "dsep_tests.csv")
    write_table(res["r_squared"], outdir / "r_squared.csv")
    write_json(res["fit"], outdir / "global_fit.json")

    print_table(res["coefficients"], title="Path coefficients")
    print_table(res["dsep"][["claim", "estimate", "p_value"]], title="Independence claims")
    fit = res["fit"]
    print("Fisher's C = {:.2f}, df = {}, p = {:.3f}; AIC = {:.1f}".format(fit["fisher_C"], fit["df"], fit["p_value"], fit["AIC"]))
    if fit["p_value"] < cfg.alpha:
        logger.warning("%s: d-separation test rejects the path model (p = %.3f)", NAME, fit["p_value"])

    effects = sem.bootstrap_effects(EFFECT_PAIRS, n_boot=cfg.n_boot, rng=rng, cluster="tank")
    write_table(effects, outdir / "effects_bootstrap.csv")
    print_table(effects[["source", "direct", "indirect", "indirect_lower", "indirect_upper", "total"]],
                title="Standardized effects on growth ({} bootstrap draws)".format(cfg.n_boot))

    plotting.path_diagram(res["coefficients"], LAYOUT, outdir / "path_diagram.png", alpha=cfg.alpha,
                          title="Piecewise SEM: standardized paths", dpi=cfg.dpi)

    coefs = res["coefficients"]
    paths = pd.DataFrame({
        "term": coefs["predictor"] + " -> " + coefs["response"],
        "test": "wald",
        "statistic": coefs["estimate"] / coefs["std_err"],
        "df": 1.0,
        "p_value": coefs["p_value"],
    })
    global_fit = pd.DataFrame([{"term": "model", "test": "fisher_C", "statistic": fit["fisher_C"],
                                "df": float(fit["df"]), "p_value": fit["p_value"]}])
    parts = [base.summary_frame(NAME, "sem", paths), base.summary_frame(NAME, "sem", global_fit)]
    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
