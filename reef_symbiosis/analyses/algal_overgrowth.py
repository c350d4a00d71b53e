"""Algal overgrowth of colonies placed in contact with the algal competitor.

The last point-count survey per coral is converted to an empirical logit,
log((k + 0.5) / (n - k + 0.5)), and modelled with

    elogit_overgrowth ~ nutrient * crab + wound + (1 | tank)
"""

import logging

import numpy as np

from .. import data, plotting
from ..models import build_formula, fit_model
from ..reporting import report_model, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "algal_overgrowth"
DESCRIPTION = "LMM of empirical-logit algal overgrowth: nutrient x crab + wound, random tank intercept"

RESPONSE = "elogit_overgrowth"
TERMS = ["nutrient_enriched", "crab_present", "wounded", "nutrient_enriched:crab_present"]


def load(cfg, meta=None):
    df = data.load_joined(cfg, "algae", required=[data.ID_COL, "day", "overgrowth_points", "total_points"], meta=meta)
    bad = (df["total_points"] <= 0) | (df["overgrowth_points"] < 0) | (df["overgrowth_points"] > df["total_points"])
    if bad.any():
        raise ValueError("algae: {} rows with overgrowth_points outside [0, total_points]".format(int(bad.sum())))
    no_algae = df["algae_present"] == 0
    if no_algae.any():
        logger.info("algae: ignoring %d rows from corals without the algal competitor", int(no_algae.sum()))
        df = df[~no_algae].reset_index(drop=True)
    df["overgrowth"] = df["overgrowth_points"] / df["total_points"]
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    surveys = load(cfg)

    final = data.final_survey(surveys)
    final[RESPONSE] = data.empirical_logit(final["overgrowth_points"], final["total_points"])
    write_table(final, outdir / "final_overgrowth.csv")

    fit = fit_model(final, build_formula(RESPONSE, TERMS), "gaussian", groups="tank", name="algal_overgrowth")
    rep = report_model(fit, cfg, outdir, terms=TERMS, rng=rng)

    plotting.treatment_boxplot(final, x="crab", y="overgrowth", hue="nutrient", outpath=outdir / "overgrowth_final.png",
                               ylabel="Proportion of points overgrown", title="Algal overgrowth (final survey)", dpi=cfg.dpi)
    surveys["nutrient/crab"] = data.treatment_label(surveys, ["nutrient", "crab"])
    plotting.interaction_plot(surveys, x="day", y="overgrowth", trace="nutrient/crab",
                              outpath=outdir / "overgrowth_by_day.png",
                              ylabel="Proportion of points overgrown", dpi=cfg.dpi)

    return base.finish(NAME, [base.summary_frame(NAME, fit.name, rep["term_tests"])], outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
