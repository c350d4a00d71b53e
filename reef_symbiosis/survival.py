"""Time-to-event analyses: Kaplan-Meier curves, log-rank tests and Cox models.

Thin layer over statsmodels.duration. Event columns are 0/1 (1 = event
observed, 0 = right-censored at the recorded time).
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.duration.survfunc import SurvfuncRight, survdiff

from .models import formula_response, formula_variables

logger = logging.getLogger(__name__)

Z95 = 1.959964


def check_survival_data(data: pd.DataFrame, time: str, event: str) -> pd.DataFrame:
    for c in (time, event):
        if c not in data.columns:
            raise ValueError("Missing survival column '{}'".format(c))
    d = data.copy()
    d[time] = pd.to_numeric(d[time], errors="coerce")
    d[event] = pd.to_numeric(d[event], errors="coerce")
    d = d.dropna(subset=[time, event])
    if d.empty:
        raise ValueError("No rows with both '{}' and '{}'".format(time, event))
    if (d[time] < 0).any():
        raise ValueError("Negative survival times in '{}'".format(time))
    bad = sorted(set(d[event].unique()) - {0, 1})
    if bad:
        raise ValueError("Event column '{}' must be 0/1; found {}".format(event, bad))
    if d[event].sum() == 0:
        raise ValueError("No events in '{}'; survival model is not estimable".format(event))
    d[event] = d[event].astype(int)
    return d.reset_index(drop=True)


# ----------------------------
# Kaplan-Meier / log-rank
# ----------------------------
def _km_one(times, status, label) -> pd.DataFrame:
    sf = SurvfuncRight(np.asarray(times, dtype=float), np.asarray(status, dtype=int), title=str(label))
    surv = np.asarray(sf.surv_prob, dtype=float)
    se = np.asarray(sf.surv_prob_se, dtype=float)

    # log(-log) transformed interval, falling back to the plain interval where S is 0 or 1
    with np.errstate(divide="ignore", invalid="ignore"):
        ll = np.log(-np.log(surv))
        ll_se = se / (surv * np.abs(np.log(surv)))
        lower = np.exp(-np.exp(ll + Z95 * ll_se))
        upper = np.exp(-np.exp(ll - Z95 * ll_se))
    plain = ~np.isfinite(lower) | ~np.isfinite(upper)
    lower[plain] = np.clip(surv[plain] - Z95 * np.nan_to_num(se[plain]), 0.0, 1.0)
    upper[plain] = np.clip(surv[plain] + Z95 * np.nan_to_num(se[plain]), 0.0, 1.0)

    try:
        median = float(sf.quantile(0.5))
    except (ValueError, IndexError):
        median = float("nan")

    return pd.DataFrame({
        "group": str(label),
        "time": np.asarray(sf.surv_times, dtype=float),
        "n_risk": np.asarray(sf.n_risk, dtype=float),
        "n_events": np.asarray(sf.n_events, dtype=float),
        "survival": surv,
        "std_err": se,
        "ci_lower": lower,
        "ci_upper": upper,
        "median_survival": median,
    })


def kaplan_meier(data: pd.DataFrame, time: str, event: str, group: Optional[str] = None) -> pd.DataFrame:
    """Kaplan-Meier table, one block of rows per group (or a single 'all' group)."""
    d = check_survival_data(data, time, event)
    if group is None:
        return _km_one(d[time], d[event], "all")
    blocks = []
    for g, sub in d.groupby(d[group].astype(str), sort=True):
        if sub[event].sum() == 0:
            # no events: survival stays at 1 through the last censoring time
            blocks.append(pd.DataFrame({
                "group": g, "time": [float(sub[time].max())], "n_risk": [float(len(sub))], "n_events": [0.0],
                "survival": [1.0], "std_err": [0.0], "ci_lower": [1.0], "ci_upper": [1.0], "median_survival": [np.nan],
            }))
            continue
        blocks.append(_km_one(sub[time], sub[event], g))
    return pd.concat(blocks, ignore_index=True)


def median_survival(km: pd.DataFrame) -> pd.DataFrame:
    return km.groupby("group", sort=False)["median_survival"].first().reset_index()


def logrank_test(data: pd.DataFrame, time: str, event: str, group: str, strata: Optional[str] = None) -> dict:
    d = check_survival_data(data, time, event)
    groups = d[group].astype(str).to_numpy()
    n_groups = len(np.unique(groups))
    if n_groups < 2:
        raise ValueError("Log-rank test needs at least two groups in '{}'".format(group))
    kwargs = {}
    if strata is not None:
        kwargs["strata"] = d[strata].astype(str).to_numpy()
    chisq, p = survdiff(d[time].to_numpy(float), d[event].to_numpy(int), groups, **kwargs)
    return {"test": "log-rank", "group": group, "n_groups": n_groups, "chisq": float(chisq),
            "df": n_groups - 1, "p_value": float(p)}


# ----------------------------
# Cox proportional hazards
# ----------------------------
@dataclass
class CoxFit:
    name: str
    formula: str
    event: str
    result: object
    data: pd.DataFrame
    strata: Optional[str] = None

    @property
    def terms(self):
        return list(self.result.model.exog_names)

    @property
    def n(self) -> int:
        return int(len(self.data))

    @property
    def n_events(self) -> int:
        return int(self.data[self.event].sum())

    @property
    def llf(self) -> float:
        return float(self.result.llf)

    @property
    def aic(self) -> float:
        return 2.0 * len(self.terms) - 2.0 * self.llf

    def hazard_ratios(self) -> pd.DataFrame:
        res = self.result
        params = np.asarray(res.params, dtype=float)
        bse = np.asarray(res.bse, dtype=float)
        ci = np.asarray(res.conf_int(), dtype=float)
        return pd.DataFrame({
            "term": self.terms,
            "estimate": params,
            "std_err": bse,
            "statistic": params / bse,
            "p_value": np.asarray(res.pvalues, dtype=float),
            "ci_lower": ci[:, 0],
            "ci_upper": ci[:, 1],
            "hazard_ratio": np.exp(params),
            "hr_lower": np.exp(ci[:, 0]),
            "hr_upper": np.exp(ci[:, 1]),
        })

    def summary_text(self) -> str:
        return str(self.result.summary())


def fit_cox(data: pd.DataFrame, formula: str, event: str, strata: Optional[str] = None,
            ties: str = "efron", name: Optional[str] = None) -> CoxFit:
    """
    Cox model, e.g. ``fit_cox(df, "days_to_closure ~ nutrient_enriched + crab_present", "closed")``.

    The formula response is the time column. With ``strata`` each stratum
    has its own baseline hazard.
    """
    time = formula_response(formula)
    cols = [c for c in formula_variables(formula, data.columns) if c != time]
    if strata:
        cols.append(strata)
    d = check_survival_data(data.dropna(subset=cols), time, event)

    kwargs = {"status": d[event].to_numpy(), "ties": ties}
    if strata:
        kwargs["strata"] = d[strata].astype(str).to_numpy()

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        res = smf.phreg(formula, d, **kwargs).fit()
    for w in caught:
        logger.warning("%s: %s", name or time, w.message)

    return CoxFit(name=name or time, formula=formula, event=event, result=res, data=d, strata=strata)


def proportional_hazards_test(cox: CoxFit) -> pd.DataFrame:
    """
    Schoenfeld-residual check of the proportional-hazards assumption.

    For each covariate, Pearson correlation between the Schoenfeld residuals
    and the rank of the event time; a small p-value suggests the log hazard
    ratio drifts with time.
    """
    resid = np.asarray(cox.result.schoenfeld_residuals, dtype=float)
    time = cox.data[formula_response(cox.formula)].to_numpy(float)
    is_event = cox.data[cox.event].to_numpy(int) == 1

    rows = []
    for j, term in enumerate(cox.terms):
        r = resid[:, j]
        ok = is_event & np.isfinite(r)
        if ok.sum() < 3:
            rows.append({"term": term, "rho": np.nan, "p_value": np.nan, "n_events": int(ok.sum())})
            continue
        rank_t = stats.rankdata(time[ok])
        rho, p = stats.pearsonr(rank_t, r[ok])
        rows.append({"term": term, "rho": float(rho), "p_value": float(p), "n_events": int(ok.sum())})
    return pd.DataFrame(rows)
