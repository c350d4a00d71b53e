"""Tests for reef_symbiosis.diagnostics: simulated scaled residuals and the checks built on them."""

import numpy as np
import pandas as pd
import pytest

from reef_symbiosis.diagnostics import (
    dispersion_test,
    normality_and_variance,
    outlier_test,
    plot_diagnostics,
    run_diagnostics,
    scaled_residuals,
    simulate_responses,
    uniformity_test,
    zero_inflation_test,
)
from reef_symbiosis.models import fit_model


def _poisson_frame(rng, n=300, overdispersed=False):
    x = rng.integers(0, 2, n)
    mu = np.exp(0.8 + 0.5 * x)
    if overdispersed:
        mu = mu * rng.gamma(0.5, 2.0, n)
    return pd.DataFrame({"x": x, "k": rng.poisson(mu)})


# ----------------------------
# scaled residuals
# ----------------------------

class TestScaledResiduals:
    def test_bounds(self, rng):
        y = np.array([0.0, 1.0, 5.0])
        sim = rng.poisson(2.0, size=(3, 200)).astype(float)
        r = scaled_residuals(y, sim, rng)
        assert np.all((r > 0) & (r < 1))

    def test_extremes(self, rng):
        sim = np.tile(np.arange(10.0), (2, 1))
        r = scaled_residuals(np.array([-5.0, 50.0]), sim, rng)
        assert r[0] < 0.1
        assert r[1] > 0.9

    def test_shape_mismatch(self, rng):
        with pytest.raises(ValueError, match="shape"):
            scaled_residuals(np.zeros(3), np.zeros((4, 10)), rng)

    def test_uniform_under_true_model(self, rng):
        y = rng.normal(size=500)
        sim = rng.normal(size=(500, 250))
        r = scaled_residuals(y, sim, rng)
        assert uniformity_test(r)["ks_p"] > 0.01


# ----------------------------
# individual tests
# ----------------------------

class TestChecks:
    def test_dispersion_detects_overdispersion(self, rng):
        y = rng.negative_binomial(1, 0.2, 400).astype(float)
        sim = rng.poisson(y.mean(), size=(400, 200)).astype(float)
        out = dispersion_test(y, sim)
        assert out["dispersion_ratio"] > 2
        assert out["dispersion_p"] < 0.05

    def test_zero_inflation(self, rng):
        y = np.where(rng.random(400) < 0.4, 0, rng.poisson(4.0, 400)).astype(float)
        sim = rng.poisson(y.mean(), size=(400, 200)).astype(float)
        out = zero_inflation_test(y, sim)
        assert out["zero_ratio"] > 1
        assert out["zero_p"] < 0.05

    def test_outliers_counted(self, rng):
        sim = rng.normal(size=(100, 99))
        y = np.zeros(100)
        y[:10] = 100.0
        out = outlier_test(y, sim)
        assert out["outliers"] == 10
        assert out["outlier_p"] < 0.001

    def test_normality_and_variance(self, rng):
        a, b = rng.normal(0, 1, 50), rng.normal(0, 5, 50)
        out = normality_and_variance(np.concatenate([a, b]), groups=[a, b])
        assert out["levene_p"] < 0.01
        assert np.isfinite(out["shapiro_W"])


# ----------------------------
# run_diagnostics
# ----------------------------

class TestRunDiagnostics:
    def test_simulation_shapes(self, rng):
        fit = fit_model(_poisson_frame(rng), "k ~ x", "poisson")
        sim = simulate_responses(fit, 30, rng)
        assert sim.shape == (fit.n, 30)
        assert (sim >= 0).all()

    def test_well_specified_poisson(self, rng):
        fit = fit_model(_poisson_frame(rng), "k ~ x", "poisson")
        check = run_diagnostics(fit, n_sim=200, rng=rng)
        assert check.dispersion_p > 0.01
        assert np.isfinite(check.zero_p)
        assert np.isnan(check.shapiro_p)

    def test_overdispersed_poisson_flagged(self, rng):
        fit = fit_model(_poisson_frame(rng, overdispersed=True), "k ~ x", "poisson")
        check = run_diagnostics(fit, n_sim=200, rng=rng)
        assert "overdispersion" in check.flags()

    def test_gaussian_gets_shapiro(self, rng):
        d = pd.DataFrame({"x": rng.normal(size=80)})
        d["y"] = 1 + d["x"] + rng.normal(size=80)
        check = run_diagnostics(fit_model(d, "y ~ x"), n_sim=50, rng=rng)
        assert np.isfinite(check.shapiro_p)
        assert "residuals" not in check.summary()

    def test_plot_written(self, rng, tmp_path):
        fit = fit_model(_poisson_frame(rng, n=60), "k ~ x", "poisson")
        check = run_diagnostics(fit, n_sim=30, rng=rng)
        out = plot_diagnostics(check, tmp_path / "diag.png", dpi=40)
        assert out.exists()
