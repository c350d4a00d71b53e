"""Tests for reef_symbiosis.models: fitting, term tests, model comparison and R²."""

import numpy as np
import pandas as pd
import pytest

from reef_symbiosis.models import (
    build_formula,
    compare_models,
    fit_model,
    formula_variables,
    lr_test,
    r_squared,
    term_tests,
    type2_reduced_terms,
)


@pytest.fixture(scope="module")
def grouped():
    rng = np.random.default_rng(3)
    n_tanks, per_tank = 10, 12
    tank = np.repeat(["T{}".format(i) for i in range(n_tanks)], per_tank)
    x = rng.integers(0, 2, n_tanks * per_tank)
    z = rng.normal(size=n_tanks * per_tank)
    tank_re = np.repeat(rng.normal(0, 0.5, n_tanks), per_tank)
    y = 1.0 + 2.0 * x + 0.0 * z + tank_re + rng.normal(0, 0.5, len(x))
    eta = -0.5 + 1.2 * x + tank_re
    return pd.DataFrame({
        "tank": tank, "x": x, "z": z, "y": y,
        "b": (rng.random(len(x)) < 1 / (1 + np.exp(-eta))).astype(int),
        "k": rng.poisson(np.exp(0.3 + 0.6 * x)),
    })


# ----------------------------
# formula helpers
# ----------------------------

class TestFormulas:
    def test_build_formula(self):
        assert build_formula("y", ["a", "b", "a:b"]) == "y ~ a + b + a:b"
        assert build_formula("y", []) == "y ~ 1"

    def test_formula_variables(self):
        assert formula_variables("y ~ C(nutrient) * crab + np.log(z)", ["y", "nutrient", "crab", "z", "w"]) == \
            ["y", "nutrient", "crab", "z"]

    def test_type2_reduced_terms(self):
        terms = ["a", "b", "c", "a:b", "a:b:c"]
        assert type2_reduced_terms(terms, "a") == ["b", "c"]
        assert type2_reduced_terms(terms, "a:b") == ["a", "b", "c"]


# ----------------------------
# fitting
# ----------------------------

class TestFitModel:
    def test_estimator_choice(self, grouped):
        assert fit_model(grouped, "y ~ x").kind == "ols"
        assert fit_model(grouped, "b ~ x", "binomial").kind == "glm"
        assert fit_model(grouped, "y ~ x", groups="tank").kind == "lmm"
        assert fit_model(grouped, "k ~ x", "poisson", groups="tank").kind == "bayes_glmm"

    def test_lmm_recovers_effect(self, grouped):
        fit = fit_model(grouped, "y ~ x + z", groups="tank")
        tab = fit.coef_table()
        assert list(tab.columns) == ["term", "estimate", "std_err", "statistic", "p_value", "ci_lower", "ci_upper"]
        assert fit.coef("x") == pytest.approx(2.0, abs=0.3)
        assert fit.mu.shape == (len(grouped),)
        assert np.isfinite(fit.aic)

    def test_bayes_glmm_coefficients(self, grouped):
        fit = fit_model(grouped, "b ~ x", "binomial", groups="tank")
        assert fit.coef("x") > 0
        assert np.all((fit.mu > 0) & (fit.mu < 1))
        assert np.isnan(fit.aic)

    def test_unknown_family(self, grouped):
        with pytest.raises(ValueError, match="family"):
            fit_model(grouped, "y ~ x", "gamma")

    def test_binomial_needs_binary(self, grouped):
        with pytest.raises(ValueError, match="0/1"):
            fit_model(grouped, "k ~ x", "binomial")

    def test_missing_group_column(self, grouped):
        with pytest.raises(ValueError, match="Grouping"):
            fit_model(grouped, "y ~ x", groups="block")

    def test_missing_rows_dropped(self, grouped):
        d = grouped.copy()
        d.loc[:4, "y"] = np.nan
        assert fit_model(d, "y ~ x").n == len(d) - 5

    def test_unknown_term(self, grouped):
        with pytest.raises(KeyError):
            fit_model(grouped, "y ~ x").coef("w")


# ----------------------------
# comparison and tests
# ----------------------------

class TestComparison:
    def test_lr_test(self, grouped):
        small = fit_model(grouped, "y ~ z")
        big = fit_model(grouped, "y ~ z + x")
        stat, p, df = lr_test(small, big)
        assert df == 1
        assert stat > 0
        assert p < 1e-6

    def test_compare_models_weights(self, grouped):
        fits = [fit_model(grouped, "y ~ x", name="x"), fit_model(grouped, "y ~ z", name="z")]
        tab = compare_models(fits)
        assert tab.loc[0, "model"] == "x"
        assert tab["AIC_weight"].sum() == pytest.approx(1.0)
        assert tab.loc[0, "deltaAIC"] == 0

    def test_term_tests_lmm(self, grouped):
        tab = term_tests(grouped, "y", ["x", "z"], groups="tank")
        assert tab["test"].eq("LR").all()
        p = tab.set_index("term")["p_value"]
        assert p["x"] < 0.001
        assert p["z"] > 0.001

    def test_term_tests_bayes_are_wald(self, grouped):
        tab = term_tests(grouped, "b", ["x"], family="binomial", groups="tank")
        assert tab.loc[0, "test"] == "wald_z"


# ----------------------------
# R²
# ----------------------------

class TestRSquared:
    def test_ols(self, grouped):
        m, c = r_squared(fit_model(grouped, "y ~ x"))
        assert 0 < m == c < 1

    def test_mixed_conditional_exceeds_marginal(self, grouped):
        m, c = r_squared(fit_model(grouped, "y ~ x", groups="tank"))
        assert 0 < m < c < 1
