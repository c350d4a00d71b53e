"""Crab feeding rate on enriched vs ambient hosts: Welch's t-test on bites per minute."""

import logging

import pandas as pd

from .. import data, plotting
from ..comparisons import group_checks, welch_ttest
from ..reporting import format_p, print_table, write_json, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "crab_feeding"
DESCRIPTION = "Welch t-test of crab bites per minute between nutrient treatments"

RESPONSE = "bites_per_min"


def load(cfg, meta=None):
    df = data.load_joined(cfg, "crab_feeding", required=["trial_id", data.ID_COL, RESPONSE], meta=meta)
    if (df[RESPONSE] < 0).any():
        raise ValueError("crab_feeding: negative {}".format(RESPONSE))
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    df = load(cfg)

    checks = group_checks(df, RESPONSE, "nutrient")
    write_table(checks, outdir / "group_checks.csv")
    print_table(checks, title="Bites per minute by nutrient")

    res = welch_ttest(df, RESPONSE, "nutrient", alpha=cfg.alpha)
    write_json(res, outdir / "welch_ttest.json")
    print("Welch t = {:.2f}, df = {:.1f}, p = {}; difference ({} - {}) = {:.2f} [{:.2f}, {:.2f}], Hedges' g = {:.2f}".format(
        res["t"], res["df"], format_p(res["p_value"]), res["level_2"], res["level_1"],
        res["difference"], res["ci_lower"], res["ci_upper"], res["hedges_g"]))
    print("Mann-Whitney U = {:.1f}, p = {}".format(res["mannwhitney_U"], format_p(res["mannwhitney_p"])))

    plotting.treatment_boxplot(df, x="nutrient", y=RESPONSE, outpath=outdir / "feeding_by_nutrient.png",
                               ylabel="Bites per minute", title="Crab feeding", dpi=cfg.dpi)

    tests = pd.DataFrame([
        {"term": "nutrient", "test": "welch_t", "statistic": res["t"], "df": res["df"], "p_value": res["p_value"]},
        {"term": "nutrient", "test": "mann_whitney_U", "statistic": res["mannwhitney_U"], "df": float("nan"),
         "p_value": res["mannwhitney_p"]},
    ])
    return base.finish(NAME, [base.summary_frame(NAME, "feeding", tests)], outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
