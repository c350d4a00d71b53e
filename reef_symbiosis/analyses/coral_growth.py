"""Coral growth (% change in buoyant weight per day) under nutrient, crab, wounding and algae.

Linear mixed model with a random intercept for tank:

    growth_rate ~ nutrient * crab * wound + algae + (1 | tank)

An additive model without interactions is fitted alongside and compared by AIC.
"""

import logging

import numpy as np

from .. import data, plotting
from ..comparisons import cell_means
from ..models import build_formula, compare_models, fit_model
from ..reporting import print_table, report_model, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "coral_growth"
DESCRIPTION = "LMM of coral growth rate: nutrient x crab x wound + algae, random tank intercept"

RESPONSE = "growth_rate"
MAIN_TERMS = ["nutrient_enriched", "crab_present", "wounded", "algae_present"]
TERMS = MAIN_TERMS + [
    "nutrient_enriched:crab_present",
    "nutrient_enriched:wounded",
    "crab_present:wounded",
    "nutrient_enriched:crab_present:wounded",
]


def load(cfg, meta=None):
    meta = meta if meta is not None else data.load_metadata(cfg)
    growth = data.load_dataset(cfg, "growth", required=[data.ID_COL, "day", "buoyant_weight_g"])
    rates = data.growth_rates(growth)
    return data.join_metadata(rates, meta, name="growth")


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    rng = np.random.default_rng(cfg.seed)
    df = load(cfg)
    write_table(df, outdir / "growth_rates.csv")

    full = fit_model(df, build_formula(RESPONSE, TERMS), "gaussian", groups="tank", name="growth_full")
    additive = fit_model(df, build_formula(RESPONSE, MAIN_TERMS), "gaussian", groups="tank", name="growth_additive")
    comparison = compare_models([full, additive])
    write_table(comparison, outdir / "growth_model_comparison.csv")
    print_table(comparison[["model", "k_params", "llf", "AIC", "deltaAIC", "AIC_weight"]], title="Growth model comparison (AIC)")

    rep = report_model(full, cfg, outdir, terms=TERMS, rng=rng)

    means = cell_means(df, RESPONSE, ["nutrient", "crab", "wound"])
    write_table(means, outdir / "growth_cell_means.csv")

    plotting.treatment_boxplot(df, x="crab", y=RESPONSE, hue="nutrient", col="wound",
                               outpath=outdir / "growth_by_treatment.png",
                               ylabel="Growth (% day$^{-1}$)", title="Coral growth", dpi=cfg.dpi)
    plotting.interaction_plot(df, x="crab", y=RESPONSE, trace="nutrient",
                              outpath=outdir / "growth_nutrient_x_crab.png",
                              ylabel="Growth (% day$^{-1}$)", dpi=cfg.dpi)

    return base.finish(NAME, [base.summary_frame(NAME, full.name, rep["term_tests"])], outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
