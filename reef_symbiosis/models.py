"""Model fitting and comparison.

All analyses go through :func:`fit_model`, which picks the statsmodels
estimator from the response family and whether grouping (random-effect)
columns are given:

    family     groups   estimator
    gaussian   none     OLS
    gaussian   yes      MixedLM (ML by default so AIC / LR tests are valid)
    binomial   none     GLM Binomial (logit)
    poisson    none     GLM Poisson (log)
    binomial   yes      BinomialBayesMixedGLM, variational Bayes
    poisson    yes      PoissonBayesMixedGLM, variational Bayes

The result is wrapped in a ModelFit so reporting, diagnostics and the SEM
layer do not need to know which estimator produced it.
"""

import logging
import re
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy.stats import chi2, norm
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM, PoissonBayesMixedGLM

logger = logging.getLogger(__name__)

FAMILIES = ("gaussian", "binomial", "poisson")

GLM_FAMILIES = {
    "gaussian": sm.families.Gaussian,
    "binomial": sm.families.Binomial,
    "poisson": sm.families.Poisson,
}

COEF_COLS = ["term", "estimate", "std_err", "statistic", "p_value", "ci_lower", "ci_upper"]


# ----------------------------
# Formula helpers
# ----------------------------
def build_formula(response: str, terms: Sequence[str]) -> str:
    rhs = " + ".join(terms) if terms else "1"
    return "{} ~ {}".format(response, rhs)


def formula_response(formula: str) -> str:
    lhs = formula.split("~", 1)[0].strip()
    if not lhs:
        raise ValueError("Formula has no response: '{}'".format(formula))
    return lhs


def formula_variables(formula: str, columns: Sequence[str]) -> List[str]:
    """Column names referenced anywhere in a formula, in order of appearance."""
    seen = []
    for tok in re.findall(r"[A-Za-z_][A-Za-z0-9_]*", formula):
        if tok in columns and tok not in seen:
            seen.append(tok)
    return seen


def term_factors(term: str) -> frozenset:
    return frozenset(p.strip() for p in term.split(":"))


def _as_list(groups) -> List[str]:
    if groups is None:
        return []
    if isinstance(groups, str):
        return [groups]
    return list(groups)


# ----------------------------
# Fit wrapper
# ----------------------------
@dataclass
class ModelFit:
    name: str
    formula: str
    family: str
    kind: str  # "ols" | "glm" | "lmm" | "bayes_glmm"
    result: object
    data: pd.DataFrame
    groups: tuple = ()

    @property
    def response(self) -> str:
        return formula_response(self.formula)

    @property
    def n(self) -> int:
        return int(len(self.data))

    @property
    def endog(self) -> np.ndarray:
        return self.data[self.response].to_numpy(dtype=float)

    @property
    def has_likelihood(self) -> bool:
        return self.kind != "bayes_glmm"

    # -- coefficients --
    def coef_table(self) -> pd.DataFrame:
        res = self.result
        if self.kind == "bayes_glmm":
            names = list(res.model.fep_names)
            est = np.asarray(res.fe_mean, dtype=float)
            se = np.asarray(res.fe_sd, dtype=float)
            stat = est / se
            p = 2.0 * norm.sf(np.abs(stat))
            lo = est - 1.959964 * se
            hi = est + 1.959964 * se
        else:
            if self.kind == "lmm":
                names = list(res.fe_params.index)
                est = res.fe_params.to_numpy(dtype=float)
                se = np.asarray(res.bse_fe, dtype=float)
            else:
                names = list(res.params.index)
                est = res.params.to_numpy(dtype=float)
                se = res.bse.loc[names].to_numpy(dtype=float)
            stat = res.tvalues.loc[names].to_numpy(dtype=float)
            p = res.pvalues.loc[names].to_numpy(dtype=float)
            ci = res.conf_int().loc[names]
            lo = ci.iloc[:, 0].to_numpy(dtype=float)
            hi = ci.iloc[:, 1].to_numpy(dtype=float)

        return pd.DataFrame({
            "term": names, "estimate": est, "std_err": se, "statistic": stat,
            "p_value": p, "ci_lower": lo, "ci_upper": hi,
        })[COEF_COLS]

    def coef(self, term: str) -> float:
        tab = self.coef_table().set_index("term")
        if term not in tab.index:
            raise KeyError("Term '{}' not in model {} (terms: {})".format(term, self.name, list(tab.index)))
        return float(tab.loc[term, "estimate"])

    # -- fitted values --
    @property
    def linear_predictor(self) -> np.ndarray:
        res = self.result
        if self.kind == "bayes_glmm":
            model = res.model
            eta = np.asarray(model.exog.dot(res.fe_mean), dtype=float).ravel()
            eta = eta + np.asarray(model.exog_vc.dot(res.vc_mean), dtype=float).ravel()
            return eta
        if self.kind == "glm":
            return np.asarray(res.model.family.link(np.asarray(res.fittedvalues)), dtype=float)
        return np.asarray(res.fittedvalues, dtype=float)

    @property
    def fixed_predictor(self) -> np.ndarray:
        """Linear predictor from fixed effects only."""
        res = self.result
        if self.kind == "bayes_glmm":
            return np.asarray(res.model.exog.dot(res.fe_mean), dtype=float).ravel()
        if self.kind == "lmm":
            return np.asarray(res.model.exog.dot(res.fe_params.to_numpy()), dtype=float)
        return self.linear_predictor

    @property
    def mu(self) -> np.ndarray:
        """Conditional mean on the response scale (random effects included)."""
        if self.kind == "bayes_glmm":
            return np.asarray(self.result.model.family.link.inverse(self.linear_predictor), dtype=float)
        return np.asarray(self.result.fittedvalues, dtype=float)

    @property
    def sigma(self) -> float:
        if self.family != "gaussian":
            return float("nan")
        return float(np.sqrt(self.result.scale))

    # -- likelihood summaries --
    @property
    def llf(self) -> float:
        return float(self.result.llf) if self.has_likelihood else float("nan")

    @property
    def k_params(self) -> int:
        res = self.result
        if self.kind == "ols":
            return int(len(res.params)) + 1  # + residual variance
        if self.kind == "glm":
            return int(len(res.params)) + (1 if self.family == "gaussian" else 0)
        if self.kind == "lmm":
            # fixed effects + random-effect covariances + variance components + residual
            return int(len(res.params)) + 1
        return int(res.model.k_fep) + int(res.model.k_vcp)

    @property
    def aic(self) -> float:
        if not self.has_likelihood:
            return float("nan")
        return 2.0 * self.k_params - 2.0 * self.llf

    @property
    def bic(self) -> float:
        if not self.has_likelihood:
            return float("nan")
        return bic_manual(self.llf, self.n, self.k_params)

    def summary_text(self) -> str:
        return str(self.result.summary())


def bic_manual(llf, n, k):
    return np.log(n) * k - 2.0 * llf


def complete_cases(data: pd.DataFrame, formula: str, groups=None) -> pd.DataFrame:
    cols = formula_variables(formula, data.columns)
    cols += [g for g in _as_list(groups) if g not in cols]
    d = data.dropna(subset=cols).copy()
    dropped = len(data) - len(d)
    if dropped:
        logger.debug("%s: dropped %d rows with missing values", formula, dropped)
    return d.reset_index(drop=True)


def fit_model(
    data: pd.DataFrame,
    formula: str,
    family: str = "gaussian",
    groups: Union[None, str, Sequence[str]] = None,
    name: Optional[str] = None,
    reml: bool = False,
    log_warnings: bool = True,
) -> ModelFit:
    """
    Fit one model and wrap it.

    ``groups`` names random-intercept columns. For gaussian responses the
    first is the MixedLM grouping factor and any others become variance
    components within it; for binomial/poisson every group is a variance
    component of the Bayes mixed GLM.
    """
    if family not in FAMILIES:
        raise ValueError("Unknown family '{}'; expected one of {}".format(family, FAMILIES))
    response = formula_response(formula)
    if response not in data.columns:
        raise ValueError("Response '{}' is not a column of the data".format(response))
    groups = _as_list(groups)
    missing = [g for g in groups if g not in data.columns]
    if missing:
        raise ValueError("Grouping columns not in data: {}".format(missing))

    d = complete_cases(data, formula, groups)
    if d.empty:
        raise ValueError("No complete rows for formula '{}'".format(formula))
    if family == "binomial":
        bad = ~d[response].isin([0, 1])
        if bad.any():
            raise ValueError("Binomial response '{}' must be 0/1; found {}".format(
                response, sorted(d.loc[bad, response].unique().tolist())[:10]))
    if family == "poisson" and (d[response] < 0).any():
        raise ValueError("Poisson response '{}' has negative values".format(response))

    name = name or response
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        if not groups:
            if family == "gaussian":
                res, kind = smf.ols(formula, d).fit(), "ols"
            else:
                res, kind = smf.glm(formula, d, family=GLM_FAMILIES[family]()).fit(), "glm"
        elif family == "gaussian":
            for g in groups:
                d[g] = d[g].astype(str)
            vc = {g: "0 + C({})".format(g) for g in groups[1:]} or None
            model = smf.mixedlm(formula, d, groups=groups[0], vc_formula=vc)
            res, kind = model.fit(reml=reml), "lmm"
        else:
            for g in groups:
                d[g] = d[g].astype(str)
            vc = {g: "0 + C({})".format(g) for g in groups}
            cls = BinomialBayesMixedGLM if family == "binomial" else PoissonBayesMixedGLM
            res, kind = cls.from_formula(formula, vc, d).fit_vb(), "bayes_glmm"

    for w in caught:
        logger.log(logging.WARNING if log_warnings else logging.DEBUG, "%s: %s", name, w.message)

    fit = ModelFit(name=name, formula=formula, family=family, kind=kind, result=res, data=d, groups=tuple(groups))
    logger.debug("Fitted %s (%s, n=%d): %s", name, kind, fit.n, formula)
    return fit


# ----------------------------
# Comparison
# ----------------------------
def lr_test(small: ModelFit, big: ModelFit):
    """Likelihood-ratio test of nested fits. Returns (statistic, p, df)."""
    if not (small.has_likelihood and big.has_likelihood):
        raise ValueError("LR test needs likelihood-based fits")
    if small.n != big.n:
        raise ValueError("LR test needs fits on the same rows ({} vs {})".format(small.n, big.n))
    lr_stat = 2.0 * (big.llf - small.llf)
    df_diff = int(big.k_params - small.k_params)
    p = chi2.sf(lr_stat, df_diff) if df_diff > 0 else np.nan
    return float(lr_stat), float(p), float(df_diff)


def compare_models(fits: Sequence[ModelFit]) -> pd.DataFrame:
    """AIC table with delta AIC, Akaike weights and evidence ratios vs the best fit."""
    rows = [{
        "model": f.name, "formula": f.formula, "n": f.n, "k_params": f.k_params,
        "llf": f.llf, "AIC": f.aic, "BIC": f.bic,
    } for f in fits]
    tab = pd.DataFrame(rows)
    if tab["AIC"].isna().any():
        raise ValueError("compare_models needs likelihood-based fits")
    if tab["n"].nunique() > 1:
        logger.warning("compare_models: fits use different numbers of rows %s", tab["n"].unique().tolist())
    tab["deltaAIC"] = tab["AIC"] - tab["AIC"].min()
    tab["AIC_weight"] = np.exp(-0.5 * tab["deltaAIC"])
    tab["AIC_weight"] = tab["AIC_weight"] / tab["AIC_weight"].sum()
    tab["evidence_ratio"] = tab["AIC_weight"].max() / tab["AIC_weight"]
    return tab.sort_values("AIC").reset_index(drop=True)


def type2_reduced_terms(terms: Sequence[str], term: str) -> List[str]:
    """Terms kept in the reduced model when testing ``term`` (drop it and all terms containing it)."""
    f = term_factors(term)
    return [t for t in terms if not f <= term_factors(t)]


def term_tests(data: pd.DataFrame, response: str, terms: Sequence[str], family: str = "gaussian",
               groups=None, name: Optional[str] = None) -> pd.DataFrame:
    """
    Type-II tests for each model term.

    Likelihood-based fits: LR test of (terms not containing t) + t against
    (terms not containing t). Mixed models are refitted by ML. Bayes mixed
    GLMs have no likelihood, so their terms get the Wald z test of the single
    coefficient from the full model instead.
    """
    full_formula = build_formula(response, terms)
    d = complete_cases(data, full_formula, groups)
    rows = []

    if family != "gaussian" and _as_list(groups):
        full = fit_model(d, full_formula, family, groups, name=name)
        tab = full.coef_table().set_index("term")
        for t in terms:
            hits = [k for k in tab.index if term_factors(k) == term_factors(t)]
            if len(hits) != 1:
                rows.append({"term": t, "test": "wald_z", "statistic": np.nan, "df": np.nan, "p_value": np.nan})
                continue
            z = float(tab.loc[hits[0], "statistic"])
            rows.append({"term": t, "test": "wald_z", "statistic": z ** 2, "df": 1.0,
                         "p_value": float(tab.loc[hits[0], "p_value"])})
        return pd.DataFrame(rows)

    for t in terms:
        reduced = type2_reduced_terms(terms, t)
        small = fit_model(d, build_formula(response, reduced), family, groups, name="{}-{}".format(name or response, t))
        big = fit_model(d, build_formula(response, reduced + [t]), family, groups, name="{}+{}".format(name or response, t))
        stat, p, df = lr_test(small, big)
        rows.append({"term": t, "test": "LR", "statistic": stat, "df": df, "p_value": p})
    return pd.DataFrame(rows)


# ----------------------------
# Explained variance
# ----------------------------
def r_squared(fit: ModelFit):
    """
    (marginal, conditional) R^2.

    OLS: ordinary R^2 for both. GLM: McFadden pseudo-R^2 for both.
    Mixed models: Nakagawa & Schielzeth, with distribution-specific residual
    variance pi^2/3 (logit) or log(1 + 1/mean(mu)) (log link).
    """
    res = fit.result
    if fit.kind == "ols":
        return float(res.rsquared), float(res.rsquared)
    if fit.kind == "glm":
        r2 = 1.0 - float(res.llf) / float(res.llnull)
        return r2, r2

    var_f = float(np.var(fit.fixed_predictor, ddof=1))
    if fit.kind == "lmm":
        var_re = float(np.trace(np.asarray(res.cov_re, dtype=float)))
        if res.k_vc:
            var_re += float(np.sum(res.vcomp))
        var_e = float(res.scale)
    else:
        var_re = float(np.sum(np.exp(2.0 * np.asarray(res.vcp_mean, dtype=float))))
        if fit.family == "binomial":
            var_e = np.pi ** 2 / 3.0
        else:
            var_e = float(np.log1p(1.0 / max(np.mean(fit.mu), 1e-12)))

    total = var_f + var_re + var_e
    return var_f / total, (var_f + var_re) / total
