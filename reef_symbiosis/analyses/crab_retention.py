"""Retention of guard crabs on their host colonies across repeated censuses.

Binomial GLMM on crab presence at each census of the crab-present corals:

    crab_observed ~ nutrient + wound + algae + day + (1 | tank) + (1 | coral)

Fitted by variational Bayes; terms are tested with Wald z statistics.
"""

import logging

import numpy as np

from .. import data, plotting
from ..models import build_formula, fit_model
from ..reporting import print_table, report_model, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "crab_retention"
DESCRIPTION = "Binomial GLMM of crab retention: nutrient + wound + algae + day, random tank and coral"

RESPONSE = "crab_observed"
TERMS = ["nutrient_enriched", "wounded", "algae_present", "day"]
GROUPS = ["tank", data.ID_COL]


def load(cfg, meta=None):
    df = data.load_joined(cfg, "crab_census", required=[data.ID_COL, "day", RESPONSE], meta=meta)
    absent = df["crab_present"] == 0
    if absent.any():
        logger.info("crab_census: ignoring %d rows from corals without a crab", int(absent.sum()))
        df = df[~absent].reset_index(drop=True)
    df["day"] = df["day"].astype(float)
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    df = load(cfg)

    fit = fit_model(df, build_formula(RESPONSE, TERMS), "binomial", groups=GROUPS, name="crab_retention")
    rep = report_model(fit, cfg, outdir, terms=TERMS, rng=rng, exponentiate=True)

    by_day = (df.groupby(["nutrient", "wound", "day"], observed=True)[RESPONSE]
              .agg(["count", "mean"]).reset_index().rename(columns={"count": "n_corals", "mean": "prop_retained"}))
    write_table(by_day, outdir / "retention_by_day.csv")
    print_table(by_day.groupby(["nutrient", "wound"], observed=True)["prop_retained"].mean().reset_index(),
                title="Mean proportion of censuses with crab present")

    plotting.interaction_plot(df, x="day", y=RESPONSE, trace="nutrient", outpath=outdir / "retention_by_day.png",
                              ylabel="Proportion of crabs retained", title="Crab retention", dpi=cfg.dpi)

    return base.finish(NAME, [base.summary_frame(NAME, fit.name, rep["term_tests"])], outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
