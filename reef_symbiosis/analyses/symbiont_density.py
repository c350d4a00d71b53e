"""Symbiont density and chlorophyll a per symbiont cell.

Two linear mixed models with a random tank intercept:

    log10_cells       ~ nutrient * wound + crab + algae
    log10_chl_per_cell ~ nutrient * wound + crab + algae

Chlorophyll per cell is in pg (ug cm-2 / cells cm-2 * 1e6).
"""

import logging

import numpy as np

from .. import data, plotting
from ..models import build_formula, fit_model
from ..reporting import report_model, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "symbiont_density"
DESCRIPTION = "LMMs of log10 symbiont density and chl a per cell: nutrient x wound + crab + algae"

TERMS = ["nutrient_enriched", "wounded", "crab_present", "algae_present", "nutrient_enriched:wounded"]
RESPONSES = {
    "log10_cells": "log$_{10}$ cells cm$^{-2}$",
    "log10_chl_per_cell": "log$_{10}$ chl a (pg cell$^{-1}$)",
}


def load(cfg, meta=None):
    df = data.load_joined(cfg, "symbionts", required=[data.ID_COL, "cells_per_cm2", "chl_a_ug_cm2"], meta=meta)
    for c in ("cells_per_cm2", "chl_a_ug_cm2"):
        df[c] = df[c].astype(float)
        nonpos = df[c] <= 0
        if nonpos.any():
            logger.warning("symbionts: %d non-positive values in %s set to missing", int(nonpos.sum()), c)
            df.loc[nonpos, c] = np.nan
    df["log10_cells"] = np.log10(df["cells_per_cm2"])
    df["chl_per_cell_pg"] = df["chl_a_ug_cm2"] / df["cells_per_cm2"] * 1e6
    df["log10_chl_per_cell"] = np.log10(df["chl_per_cell_pg"])
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    df = load(cfg)
    write_table(df, outdir / "symbionts.csv")

    parts = []
    for response, label in RESPONSES.items():
        fit = fit_model(df, build_formula(response, TERMS), "gaussian", groups="tank", name=response)
        rep = report_model(fit, cfg, outdir, terms=TERMS, rng=rng)
        parts.append(base.summary_frame(NAME, fit.name, rep["term_tests"]))
        plotting.treatment_boxplot(df, x="wound", y=response, hue="nutrient",
                                   outpath=outdir / "{}_by_treatment.png".format(response),
                                   ylabel=label, dpi=cfg.dpi)

    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
