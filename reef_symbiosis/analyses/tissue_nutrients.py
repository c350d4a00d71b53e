"""Coral tissue C:N and d15N.

Two-way type II ANOVA (nutrient x crab) for each response, Shapiro / Levene
checks on the residuals, and Tukey HSD across the four nutrient/crab groups.
"""

import logging

import pandas as pd

from .. import data, plotting
from ..comparisons import anova, anova_residuals, cell_means, tukey_hsd
from ..diagnostics import normality_and_variance
from ..reporting import print_table, write_table
from . import base

logger = logging.getLogger(__name__)

NAME = "tissue_nutrients"
DESCRIPTION = "Two-way ANOVA (nutrient x crab) and Tukey HSD of tissue C:N and d15N"

RESPONSES = {"c_to_n": "C:N (molar)", "d15n_permil": "$\\delta^{15}$N (‰)"}
GROUP = "nutrient/crab"


def load(cfg, meta=None):
    df = data.load_joined(cfg, "tissue", required=[data.ID_COL] + list(RESPONSES), meta=meta)
    df[GROUP] = data.treatment_label(df, ["nutrient", "crab"])
    return df


def run(cfg):
    outdir = cfg.analysis_dir(NAME)
    df = load(cfg)

    parts = []
    for response, label in RESPONSES.items():
        formula = "{} ~ C(nutrient) * C(crab)".format(response)
        tab = anova(df, formula, typ=2)
        write_table(tab, outdir / "{}_anova.csv".format(response))
        print_table(tab, title="ANOVA: {}".format(formula))

        d = df.dropna(subset=[response])
        resid = anova_residuals(d, formula)
        checks = normality_and_variance(resid, groups=[g[response].to_numpy(float) for _, g in d.groupby(GROUP)])
        write_table(pd.DataFrame([checks]), outdir / "{}_assumptions.csv".format(response))
        if checks["shapiro_p"] < cfg.alpha or checks["levene_p"] < cfg.alpha:
            logger.warning("%s: ANOVA assumptions questionable (Shapiro p = %.3f, Levene p = %.3f)",
                           response, checks["shapiro_p"], checks["levene_p"])

        hsd = tukey_hsd(df, response, GROUP, alpha=cfg.alpha)
        write_table(hsd, outdir / "{}_tukey.csv".format(response))
        print_table(hsd, title="Tukey HSD: {}".format(response))
        write_table(cell_means(df, response, ["nutrient", "crab"]), outdir / "{}_cell_means.csv".format(response))

        plotting.interaction_plot(df, x="crab", y=response, trace="nutrient",
                                  outpath=outdir / "{}_interaction.png".format(response), ylabel=label, dpi=cfg.dpi)

        terms = tab[tab["term"] != "Residual"]
        parts.append(base.summary_frame(NAME, response, pd.DataFrame({
            "term": terms["term"], "test": "F", "statistic": terms["F"], "df": terms["df"], "p_value": terms["p_value"],
        })))

    return base.finish(NAME, parts, outdir)


def main(argv=None):
    return base.main_for(run, NAME, DESCRIPTION, argv)


if __name__ == "__main__":
    main()
