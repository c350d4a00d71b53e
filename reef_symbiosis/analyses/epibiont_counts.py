"""Counts of epibionts per colony.

Poisson GLMM with a log link and random tank intercept:

    n_epibionts ~ nutrient + crab + wound + algae + (1 | tank)

Estimates are reported as rate ratios; the simulated-residual checks cover
over-dispersion and zero inflation.
"""

import logging

import numpy as np

from .. import data, plotting
from ..models import build_formula, fit_model
from ..reporting import report_model
from . import base

logger = logging.getLogger(__name__)

NAME = "epibiont_counts"
DESCRIPTION = "Poisson GLMM of epibiont counts: nutrient + crab + wound + algae, random tank intercept"

RESPONSE = "n_epibionts"
TERMS = ["nutrient_enriched", "crab_present", "wounded", "algae_present"]


def load(cfg, meta=None):
    df = data.load_joined(cfg, "epibionts", required=[data.ID_COL, RESPONSE], meta=meta)
    y = df[RESPONSE]
    if (y.dropna() % 1 != 0).any():
        raise ValueError("epibionts: {} must hold whole counts".format(RESPONSE))
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    df = load(cfg)

    fit = fit_model(df, build_formula(RESPONSE, TERMS), "poisson", groups="tank", name="epibionts")
    rep = report_model(fit, cfg, outdir, terms=TERMS, rng=rng, exponentiate=True)

    plotting.treatment_boxplot(df, x="crab", y=RESPONSE, hue="nutrient", col="algae",
                               outpath=outdir / "epibionts_by_treatment.png",
                               ylabel="Epibionts per colony", dpi=cfg.dpi)

    return base.finish(NAME, [base.summary_frame(NAME, fit.name, rep["term_tests"])], outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
