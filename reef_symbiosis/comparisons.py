"""Classical group comparisons: Welch t-test, factorial ANOVA and Tukey HSD."""

import itertools
import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.stats.multicomp import pairwise_tukeyhsd

from .diagnostics import normality_and_variance
from .models import complete_cases

logger = logging.getLogger(__name__)


def _two_groups(data: pd.DataFrame, response: str, group: str):
    for c in (response, group):
        if c not in data.columns:
            raise ValueError("Missing column '{}'".format(c))
    d = data.dropna(subset=[response, group])
    g = d[group]
    levels = list(g.cat.categories) if isinstance(g.dtype, pd.CategoricalDtype) else sorted(g.astype(str).unique())
    levels = [str(lv) for lv in levels if (g.astype(str) == str(lv)).any()]
    if len(levels) != 2:
        raise ValueError("Expected exactly two levels of '{}'; found {}".format(group, levels))
    a = d.loc[g.astype(str) == levels[0], response].to_numpy(float)
    b = d.loc[g.astype(str) == levels[1], response].to_numpy(float)
    if a.size < 2 or b.size < 2:
        raise ValueError("Each group needs at least two observations ({}={}, {}={})".format(levels[0], a.size, levels[1], b.size))
    return levels, a, b


def group_checks(data: pd.DataFrame, response: str, group: str) -> pd.DataFrame:
    """Shapiro-Wilk per group plus one Levene test across groups."""
    d = data.dropna(subset=[response, group])
    rows = []
    samples = []
    for lv, sub in d.groupby(d[group].astype(str), sort=True):
        y = sub[response].to_numpy(float)
        samples.append(y)
        sw = normality_and_variance(y)
        rows.append({"group": lv, "n": y.size, "mean": y.mean(), "sd": y.std(ddof=1) if y.size > 1 else np.nan,
                     "shapiro_W": sw["shapiro_W"], "shapiro_p": sw["shapiro_p"]})
    lev = normality_and_variance(np.concatenate(samples), groups=samples)
    out = pd.DataFrame(rows)
    out["levene_W"] = lev["levene_W"]
    out["levene_p"] = lev["levene_p"]
    return out


def welch_ttest(data: pd.DataFrame, response: str, group: str, alpha: float = 0.05) -> dict:
    """
    Welch's unequal-variance t-test of ``response`` between the two levels of ``group``.

    The difference is second level minus first (the reference level for
    categorical treatments). Also reports Hedges' g and a Mann-Whitney U
    test as a rank-based check.
    """
    levels, a, b = _two_groups(data, response, group)
    n1, n2 = a.size, b.size
    m1, m2 = a.mean(), b.mean()
    v1, v2 = a.var(ddof=1), b.var(ddof=1)
    diff = m2 - m1

    res = stats.ttest_ind(b, a, equal_var=False)
    ci = res.confidence_interval(1.0 - alpha)

    pooled = np.sqrt(((n1 - 1) * v1 + (n2 - 1) * v2) / (n1 + n2 - 2))
    d_cohen = diff / pooled if pooled > 0 else np.nan
    hedges_g = d_cohen * (1.0 - 3.0 / (4.0 * (n1 + n2) - 9.0))

    mw = stats.mannwhitneyu(b, a, alternative="two-sided")
    return {
        "response": response, "group": group,
        "level_1": levels[0], "level_2": levels[1],
        "n_1": n1, "n_2": n2, "mean_1": m1, "mean_2": m2, "sd_1": np.sqrt(v1), "sd_2": np.sqrt(v2),
        "difference": diff, "ci_lower": float(ci.low), "ci_upper": float(ci.high),
        "t": float(res.statistic), "df": float(res.df), "p_value": float(res.pvalue), "hedges_g": hedges_g,
        "mannwhitney_U": float(mw.statistic), "mannwhitney_p": float(mw.pvalue),
    }


def anova(data: pd.DataFrame, formula: str, typ: int = 2) -> pd.DataFrame:
    """ANOVA table from an OLS fit, with partial eta squared per term."""
    d = complete_cases(data, formula)
    fit = smf.ols(formula, d).fit()
    tab = sm.stats.anova_lm(fit, typ=typ)
    ss_res = float(tab.loc["Residual", "sum_sq"])
    tab["partial_eta_sq"] = tab["sum_sq"] / (tab["sum_sq"] + ss_res)
    tab.loc["Residual", "partial_eta_sq"] = np.nan
    tab = tab.rename(columns={"PR(>F)": "p_value"})
    tab.index.name = "term"
    logger.debug("ANOVA %s (n=%d, type %d)", formula, len(d), typ)
    return tab.reset_index()


def anova_residuals(data: pd.DataFrame, formula: str) -> np.ndarray:
    d = complete_cases(data, formula)
    return np.asarray(smf.ols(formula, d).fit().resid, dtype=float)


def tukey_hsd(data: pd.DataFrame, response: str, group: str, alpha: float = 0.05) -> pd.DataFrame:
    """All pairwise comparisons among levels of ``group`` with Tukey's HSD."""
    d = data.dropna(subset=[response, group])
    if d[group].astype(str).nunique() < 2:
        raise ValueError("Tukey HSD needs at least two levels of '{}'".format(group))
    res = pairwise_tukeyhsd(d[response].to_numpy(float), d[group].astype(str).to_numpy(), alpha=alpha)
    pairs = list(itertools.combinations(res.groupsunique, 2))
    confint = np.asarray(res.confint, dtype=float)
    return pd.DataFrame({
        "group1": [str(p[0]) for p in pairs],
        "group2": [str(p[1]) for p in pairs],
        "difference": np.asarray(res.meandiffs, dtype=float),
        "p_adj": np.asarray(res.pvalues, dtype=float),
        "ci_lower": confint[:, 0],
        "ci_upper": confint[:, 1],
        "reject": np.asarray(res.reject, dtype=bool),
    })


def cell_means(data: pd.DataFrame, response: str, factors) -> pd.DataFrame:
    d = data.dropna(subset=[response])
    out = d.groupby(list(factors), observed=True)[response].agg(["count", "mean", "std", "sem"]).reset_index()
    return out.rename(columns={"count": "n", "std": "sd", "sem": "se"})
