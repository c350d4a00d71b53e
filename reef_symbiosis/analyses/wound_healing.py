"""Time to wound closure on the wounded colonies.

Kaplan-Meier curves and a log-rank test for the four nutrient x crab
groups, then a Cox model stratified by block (tank pair):

    days_to_closure ~ nutrient * crab,  strata = block

Wounds still open at the last check are right-censored (closed = 0).
Nutrient is applied per tank, so a tank stratum would absorb it; block is
the finest stratum that keeps both nutrient levels.
"""

import logging

import pandas as pd

from .. import data, plotting
from ..reporting import format_p, print_table, write_model_summary, write_table
from ..survival import fit_cox, kaplan_meier, logrank_test, median_survival, proportional_hazards_test
from . import base

logger = logging.getLogger(__name__)

NAME = "wound_healing"
DESCRIPTION = "Kaplan-Meier / log-rank by nutrient x crab and block-stratified Cox model of wound closure"

TIME, EVENT = "days_to_closure", "closed"
GROUP = "nutrient/crab"
FORMULA = "days_to_closure ~ nutrient_enriched * crab_present"


def load(cfg, meta=None):
    df = data.load_joined(cfg, "wound_healing", required=[data.ID_COL, TIME, EVENT], meta=meta)
    intact = df["wounded"] == 0
    if intact.any():
        logger.warning("wound_healing: dropping %d rows from intact (unwounded) corals", int(intact.sum()))
        df = df[~intact].reset_index(drop=True)
    df[GROUP] = data.treatment_label(df, ["nutrient", "crab"])
    return df


def cox_summary(analysis: str, cox) -> pd.DataFrame:
    hr = cox.hazard_ratios()
    tests = pd.DataFrame({"term": hr["term"], "test": "wald_z", "statistic": hr["statistic"],
                          "df": 1.0, "p_value": hr["p_value"]})
    return base.summary_frame(analysis, cox.name, tests)


def logrank_summary(analysis: str, lr: dict, model: str) -> pd.DataFrame:
    tests = pd.DataFrame([{"term": lr["group"], "test": lr["test"], "statistic": lr["chisq"],
                           "df": float(lr["df"]), "p_value": lr["p_value"]}])
    return base.summary_frame(analysis, model, tests)


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    df = load(cfg)

    km = kaplan_meier(df, TIME, EVENT, group=GROUP)
    write_table(km, outdir / "kaplan_meier.csv")
    medians = median_survival(km)
    print_table(medians, title="Median days to wound closure")

    lr = logrank_test(df, TIME, EVENT, GROUP)
    print("Log-rank ({}): chisq = {:.2f}, df = {}, p = {}".format(GROUP, lr["chisq"], lr["df"], format_p(lr["p_value"])))

    cox = fit_cox(df, FORMULA, EVENT, strata="block", name="closure_cox")
    hr = cox.hazard_ratios()
    write_table(hr, outdir / "cox_hazard_ratios.csv")
    write_model_summary(cox, outdir / "cox_summary.txt")
    print_table(hr[["term", "hazard_ratio", "hr_lower", "hr_upper", "p_value"]], title="Cox model: {}".format(FORMULA))

    ph = proportional_hazards_test(cox)
    write_table(ph, outdir / "proportional_hazards.csv")
    if (ph["p_value"] < cfg.alpha).any():
        logger.warning("%s: proportional hazards questionable for %s", NAME,
                       ph.loc[ph["p_value"] < cfg.alpha, "term"].tolist())

    plotting.km_plot(km, outdir / "wound_closure_km.png", title="Wound closure",
                     ylabel="Proportion of wounds open",
                     annotation="log-rank p = {}".format(format_p(lr["p_value"])), dpi=cfg.dpi)
    plotting.coefficient_plot(hr, outdir / "cox_hazard_ratios.png", title="Wound closure hazard ratios",
                              exponentiate=True, xlabel="Hazard ratio (95% CI)", dpi=cfg.dpi)

    parts = [logrank_summary(NAME, lr, "logrank"), cox_summary(NAME, cox)]
    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
