"""Piecewise structural equation models.

A path model is a list of component regressions, one per endogenous
variable. Each component is fitted separately through models.fit_model, and
the pieces are tied together by:

  - Shipley's test of directed separation: every pair of variables with no
    arrow between them implies an independence claim, tested by regressing
    the later variable on the earlier one plus both variables' parents.
    The claim p-values are combined into Fisher's C = -2 sum(log p), which
    is chi-square with 2k degrees of freedom under the model.
  - Path coefficients, standardized by sd(x) / sd(y) (latent-theoretic
    sd(y) for binomial and Poisson responses), and direct / indirect / total effects
    from products of coefficients along directed paths.
  - A nonparametric bootstrap of the indirect effects.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import chi2

from .models import ModelFit, build_formula, fit_model, r_squared

logger = logging.getLogger(__name__)


@dataclass
class PathModel:
    response: str
    predictors: List[str]
    family: str = "gaussian"
    groups: Optional[Sequence[str]] = None

    @property
    def formula(self) -> str:
        return build_formula(self.response, self.predictors)


@dataclass
class Claim:
    response: str
    predictor: str
    conditioning: Tuple[str, ...] = field(default_factory=tuple)

    def __str__(self):
        given = " | {}".format(", ".join(self.conditioning)) if self.conditioning else ""
        return "{} _||_ {}{}".format(self.response, self.predictor, given)


class PiecewiseSEM:
    def __init__(self, components: Sequence[PathModel], data: pd.DataFrame, name: str = "sem"):
        if not components:
            raise ValueError("A piecewise SEM needs at least one component model")
        responses = [c.response for c in components]
        dupes = sorted({r for r in responses if responses.count(r) > 1})
        if dupes:
            raise ValueError("More than one component for: {}".format(dupes))

        self.name = name
        self.components = list(components)
        self.by_response = {c.response: c for c in self.components}
        self.parents = {c.response: list(c.predictors) for c in self.components}

        missing = [v for v in self.variables if v not in data.columns]
        if missing:
            raise ValueError("SEM variables not in data: {}".format(missing))
        non_numeric = [v for v in self.variables if not pd.api.types.is_numeric_dtype(data[v])]
        if non_numeric:
            raise ValueError("SEM variables must be numeric (use 0/1 indicators): {}".format(non_numeric))

        self.order = self._topological_order()
        extra = [g for c in self.components for g in (c.groups or []) if g not in self.variables]
        self.data = data.dropna(subset=self.variables + sorted(set(extra))).reset_index(drop=True)
        self.fits: Dict[str, ModelFit] = {}

    # ----------------------------
    # Graph
    # ----------------------------
    @property
    def variables(self) -> List[str]:
        out = []
        for c in self.components:
            for v in list(c.predictors) + [c.response]:
                if v not in out:
                    out.append(v)
        return out

    @property
    def exogenous(self) -> List[str]:
        return [v for v in self.variables if v not in self.parents]

    def edges(self) -> List[Tuple[str, str]]:
        return [(p, c.response) for c in self.components for p in c.predictors]

    def _topological_order(self) -> List[str]:
        """Variables ordered by depth (longest path from an exogenous variable), then name."""
        depth = {}
        visiting = set()

        def visit(v):
            if v in depth:
                return depth[v]
            if v in visiting:
                raise ValueError("Path model has a cycle through '{}'".format(v))
            visiting.add(v)
            depth[v] = 1 + max((visit(p) for p in self.parents.get(v, [])), default=-1)
            visiting.discard(v)
            return depth[v]

        for v in self.variables:
            visit(v)
        self.depth = depth
        return sorted(self.variables, key=lambda v: (depth[v], v))

    def adjacent(self, a: str, b: str) -> bool:
        return a in self.parents.get(b, []) or b in self.parents.get(a, [])

    def basis_set(self) -> List[Claim]:
        """Independence claims for every non-adjacent pair not made of two exogenous variables."""
        claims = []
        exo = set(self.exogenous)
        for i, a in enumerate(self.order):
            for b in self.order[i + 1:]:
                if self.adjacent(a, b) or (a in exo and b in exo):
                    continue
                # b comes later in the order, so it is the response
                cond = []
                for v in self.parents.get(b, []) + self.parents.get(a, []):
                    if v not in cond and v != a:
                        cond.append(v)
                claims.append(Claim(response=b, predictor=a, conditioning=tuple(cond)))
        return claims

    # ----------------------------
    # Fitting
    # ----------------------------
    def _fit_component(self, c: PathModel, data: pd.DataFrame, quiet: bool = False) -> ModelFit:
        return fit_model(data, c.formula, c.family, c.groups, name="{}:{}".format(self.name, c.response),
                         log_warnings=not quiet)

    def fit(self) -> "PiecewiseSEM":
        self.fits = {c.response: self._fit_component(c, self.data) for c in self.components}
        logger.info("%s: fitted %d component models on %d rows", self.name, len(self.fits), len(self.data))
        return self

    def _require_fit(self):
        if not self.fits:
            raise RuntimeError("Call fit() first")

    def _response_sd(self, fit: ModelFit, data: pd.DataFrame) -> float:
        if fit.family == "gaussian":
            return float(data[fit.response].std(ddof=1))
        var_eta = float(np.var(fit.linear_predictor, ddof=1))
        if fit.family == "binomial":
            return float(np.sqrt(var_eta + np.pi ** 2 / 3.0))
        if fit.family == "poisson":
            # lognormal approximation of the observation-level variance
            return float(np.sqrt(var_eta + np.log1p(1.0 / max(float(np.mean(fit.mu)), 1e-12))))
        logger.warning("%s: no latent scale for family '%s'; standardized estimates are NaN",
                       fit.response, fit.family)
        return float("nan")

    def coefficients(self, fits: Optional[Dict[str, ModelFit]] = None, data: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """One row per arrow: raw and standardized estimates."""
        fits = fits if fits is not None else self.fits
        data = data if data is not None else self.data
        if not fits:
            raise RuntimeError("Call fit() first")
        rows = []
        for c in self.components:
            fit = fits[c.response]
            tab = fit.coef_table().set_index("term")
            sd_y = self._response_sd(fit, data)
            for p in c.predictors:
                r = tab.loc[p]
                sd_x = float(data[p].std(ddof=1))
                rows.append({
                    "response": c.response, "predictor": p, "estimate": float(r["estimate"]),
                    "std_err": float(r["std_err"]), "p_value": float(r["p_value"]),
                    "std_estimate": float(r["estimate"]) * sd_x / sd_y if sd_y > 0 else float("nan"),
                })
        return pd.DataFrame(rows)

    def dsep_tests(self) -> pd.DataFrame:
        rows = []
        for claim in self.basis_set():
            c = self.by_response[claim.response]
            preds = list(claim.conditioning) + [claim.predictor]
            fit = fit_model(self.data, build_formula(claim.response, preds), c.family, c.groups,
                            name="{}:claim:{}".format(self.name, claim))
            r = fit.coef_table().set_index("term").loc[claim.predictor]
            rows.append({"claim": str(claim), "response": claim.response, "predictor": claim.predictor,
                         "estimate": float(r["estimate"]), "std_err": float(r["std_err"]),
                         "p_value": float(r["p_value"])})
        return pd.DataFrame(rows, columns=["claim", "response", "predictor", "estimate", "std_err", "p_value"])

    def fisher_c(self, dsep: Optional[pd.DataFrame] = None) -> dict:
        dsep = dsep if dsep is not None else self.dsep_tests()
        k = len(dsep)
        if k == 0:
            return {"fisher_C": 0.0, "df": 0, "p_value": 1.0, "n_claims": 0}
        p = np.clip(dsep["p_value"].to_numpy(float), 1e-300, 1.0)
        c_stat = float(-2.0 * np.sum(np.log(p)))
        return {"fisher_C": c_stat, "df": 2 * k, "p_value": float(chi2.sf(c_stat, 2 * k)), "n_claims": k}

    def information_criteria(self, fc: Optional[dict] = None) -> dict:
        self._require_fit()
        fc = fc if fc is not None else self.fisher_c()
        K = sum(f.k_params for f in self.fits.values())
        n = len(self.data)
        aic = fc["fisher_C"] + 2.0 * K
        aicc = fc["fisher_C"] + 2.0 * K * n / (n - K - 1) if n - K - 1 > 0 else float("nan")
        return {"K": K, "n": n, "AIC": aic, "AICc": aicc}

    def r_squared(self) -> pd.DataFrame:
        self._require_fit()
        rows = []
        for resp, fit in self.fits.items():
            marg, cond = r_squared(fit)
            rows.append({"response": resp, "family": fit.family, "marginal_R2": marg, "conditional_R2": cond})
        return pd.DataFrame(rows)

    # ----------------------------
    # Effects
    # ----------------------------
    def paths(self, source: str, target: str) -> List[List[str]]:
        children = {}
        for a, b in self.edges():
            children.setdefault(a, []).append(b)
        out = []

        def walk(node, trail):
            if node == target:
                out.append(trail)
                return
            for nxt in children.get(node, []):
                walk(nxt, trail + [nxt])

        walk(source, [source])
        return out

    def effects(self, source: str, target: str, coefs: Optional[pd.DataFrame] = None,
                column: str = "std_estimate") -> dict:
        """Direct, indirect (sum over paths of length >= 2) and total effect of source on target."""
        coefs = coefs if coefs is not None else self.coefficients()
        lookup = {(r.predictor, r.response): getattr(r, column) for r in coefs.itertuples()}
        direct = 0.0
        indirect = 0.0
        for path in self.paths(source, target):
            prod = float(np.prod([lookup[(a, b)] for a, b in zip(path[:-1], path[1:])]))
            if len(path) == 2:
                direct += prod
            else:
                indirect += prod
        return {"source": source, "target": target, "direct": direct, "indirect": indirect,
                "total": direct + indirect}

    def bootstrap_effects(self, pairs: Sequence[Tuple[str, str]], n_boot: int, rng: np.random.Generator,
                          cluster: Optional[str] = None, column: str = "std_estimate") -> pd.DataFrame:
        """
        Percentile bootstrap of direct / indirect / total effects.

        Rows are resampled with replacement, or whole clusters when
        ``cluster`` is given (cluster ids are made unique per draw so a
        cluster drawn twice becomes two groups). Resamples where any
        component fails to fit are skipped and counted.
        """
        self._require_fit()
        base = self.coefficients()
        point = [self.effects(s, t, base, column) for s, t in pairs]

        draws = {(s, t): [] for s, t in pairs}
        failed = 0
        for b in range(n_boot):
            sample = self._resample(rng, cluster)
            try:
                fits = {c.response: self._fit_component(c, sample, quiet=True) for c in self.components}
                coefs = self.coefficients(fits, sample)
            except (np.linalg.LinAlgError, ValueError, KeyError) as exc:
                failed += 1
                logger.debug("%s: bootstrap draw %d failed: %s", self.name, b, exc)
                continue
            for s, t in pairs:
                draws[(s, t)].append(self.effects(s, t, coefs, column))

        if failed:
            logger.warning("%s: %d of %d bootstrap draws failed and were skipped", self.name, failed, n_boot)

        rows = []
        for est in point:
            key = (est["source"], est["target"])
            boot = pd.DataFrame(draws[key])
            row = dict(est)
            for part in ("direct", "indirect", "total"):
                vals = boot[part].to_numpy(float) if not boot.empty else np.array([])
                row["{}_lower".format(part)] = float(np.quantile(vals, 0.025)) if vals.size else np.nan
                row["{}_upper".format(part)] = float(np.quantile(vals, 0.975)) if vals.size else np.nan
            row["n_boot"] = len(boot)
            row["n_failed"] = failed
            rows.append(row)
        return pd.DataFrame(rows)

    def _resample(self, rng: np.random.Generator, cluster: Optional[str]) -> pd.DataFrame:
        d = self.data
        if cluster is None:
            idx = rng.integers(0, len(d), size=len(d))
            return d.iloc[idx].reset_index(drop=True)
        ids = d[cluster].unique()
        picks = rng.choice(ids, size=len(ids), replace=True)
        parts = []
        for i, cid in enumerate(picks):
            part = d[d[cluster] == cid].copy()
            part[cluster] = "{}#{}".format(cid, i)
            parts.append(part)
        return pd.concat(parts, ignore_index=True)

    # ----------------------------
    # Summary
    # ----------------------------
    def summary(self) -> dict:
        self._require_fit()
        dsep = self.dsep_tests()
        fc = self.fisher_c(dsep)
        return {
            "coefficients": self.coefficients(),
            "dsep": dsep,
            "fit": {**fc, **self.information_criteria(fc)},
            "r_squared": self.r_squared(),
        }
