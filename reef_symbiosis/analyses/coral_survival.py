"""Colony survival over the experiment.

Kaplan-Meier curves for the nutrient x crab groups, log-rank tests for that
grouping and for each treatment on its own (stratified by block), and a Cox
model stratified by block:

    days_to_death ~ nutrient * crab + wound + algae
"""

import logging

import pandas as pd

from .. import data, plotting
from ..reporting import format_p, print_table, write_model_summary, write_table
from ..survival import fit_cox, kaplan_meier, logrank_test, median_survival, proportional_hazards_test
from . import base
from .wound_healing import cox_summary, logrank_summary

logger = logging.getLogger(__name__)

NAME = "coral_survival"
DESCRIPTION = "Kaplan-Meier / log-rank by treatment and Cox model of coral mortality"

TIME, EVENT = "days_to_death", "died"
GROUP = "nutrient/crab"
FORMULA = "days_to_death ~ nutrient_enriched * crab_present + wounded + algae_present"
FACTORS = ["nutrient", "crab", "wound", "algae"]


def load(cfg, meta=None):
    df = data.load_joined(cfg, "mortality", required=[data.ID_COL, TIME, EVENT], meta=meta)
    df[GROUP] = data.treatment_label(df, ["nutrient", "crab"])
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    df = load(cfg)
    print("Deaths: {} of {} corals".format(int(df[EVENT].sum()), len(df)))

    km = kaplan_meier(df, TIME, EVENT, group=GROUP)
    write_table(km, outdir / "kaplan_meier.csv")
    print_table(median_survival(km), title="Median survival (days)")

    lr = logrank_test(df, TIME, EVENT, GROUP)
    parts = [logrank_summary(NAME, lr, "logrank")]
    for factor in FACTORS:
        lr_f = logrank_test(df, TIME, EVENT, factor, strata="block")
        parts.append(logrank_summary(NAME, lr_f, "logrank_by_block"))
    print_table(pd.concat(parts, ignore_index=True), title="Log-rank tests")

    cox = fit_cox(df, FORMULA, EVENT, strata="block", name="mortality_cox")
    hr = cox.hazard_ratios()
    write_table(hr, outdir / "cox_hazard_ratios.csv")
    write_model_summary(cox, outdir / "cox_summary.txt")
    print_table(hr[["term", "hazard_ratio", "hr_lower", "hr_upper", "p_value"]], title="Cox model: {}".format(FORMULA))
    write_table(proportional_hazards_test(cox), outdir / "proportional_hazards.csv")
    parts.append(cox_summary(NAME, cox))

    plotting.km_plot(km, outdir / "survival_km.png", title="Coral survival",
                     annotation="log-rank p = {}".format(format_p(lr["p_value"])), dpi=cfg.dpi)
    plotting.coefficient_plot(hr, outdir / "cox_hazard_ratios.png", title="Mortality hazard ratios",
                              exponentiate=True, xlabel="Hazard ratio (95% CI)", dpi=cfg.dpi)

    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
