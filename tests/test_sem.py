"""Tests for reef_symbiosis.sem: basis sets, d-separation, path coefficients and effects."""

import numpy as np
import pandas as pd
import pytest

from reef_symbiosis.sem import Claim, PathModel, PiecewiseSEM


@pytest.fixture(scope="module")
def chain():
    """x -> m -> y with no direct x -> y arrow, clustered in 12 groups."""
    rng = np.random.default_rng(9)
    n_groups, per = 12, 10
    g = np.repeat(["G{}".format(i) for i in range(n_groups)], per)
    x = rng.integers(0, 2, n_groups * per).astype(float)
    m = 0.8 * x + rng.normal(0, 0.5, len(x))
    y = 1.5 * m + rng.normal(0, 0.5, len(x))
    return pd.DataFrame({"g": g, "x": x, "m": m, "y": y})


def _chain_model(data, groups=None):
    return PiecewiseSEM([PathModel("m", ["x"], groups=groups), PathModel("y", ["m"], groups=groups)], data, name="chain")


class TestStructure:
    def test_basis_set(self, chain):
        claims = _chain_model(chain).basis_set()
        assert len(claims) == 1
        assert claims[0] == Claim(response="y", predictor="x", conditioning=("m",))
        assert str(claims[0]) == "y _||_ x | m"

    def test_exogenous_pairs_skipped(self, chain):
        d = chain.assign(w=np.arange(len(chain)) % 2)
        sem = PiecewiseSEM([PathModel("m", ["x", "w"]), PathModel("y", ["m"])], d)
        claims = {(c.response, c.predictor) for c in sem.basis_set()}
        assert ("w", "x") not in claims and ("x", "w") not in claims
        assert claims == {("y", "x"), ("y", "w")}

    def test_cycle_rejected(self, chain):
        with pytest.raises(ValueError, match="cycle"):
            PiecewiseSEM([PathModel("m", ["y"]), PathModel("y", ["m"])], chain)

    def test_duplicate_component(self, chain):
        with pytest.raises(ValueError, match="More than one"):
            PiecewiseSEM([PathModel("m", ["x"]), PathModel("m", ["y"])], chain)

    def test_non_numeric_variable(self, chain):
        with pytest.raises(ValueError, match="numeric"):
            PiecewiseSEM([PathModel("y", ["g"])], chain)

    def test_paths(self, chain):
        sem = PiecewiseSEM([PathModel("m", ["x"]), PathModel("y", ["m", "x"])], chain)
        assert sorted(sem.paths("x", "y")) == [["x", "m", "y"], ["x", "y"]]

    def test_requires_fit(self, chain):
        with pytest.raises(RuntimeError):
            _chain_model(chain).r_squared()


class TestFit:
    def test_correct_model_not_rejected(self, chain):
        res = _chain_model(chain, groups=["g"]).fit().summary()
        assert res["fit"]["n_claims"] == 1
        assert res["fit"]["df"] == 2
        assert res["fit"]["p_value"] > 0.01
        coefs = res["coefficients"].set_index(["predictor", "response"])
        assert coefs.loc[("x", "m"), "estimate"] == pytest.approx(0.8, abs=0.25)
        assert coefs.loc[("m", "y"), "estimate"] == pytest.approx(1.5, abs=0.2)

    def test_missing_link_detected(self, chain):
        d = chain.assign(y=chain["y"] + 2.0 * chain["x"])
        res = _chain_model(d).fit().summary()
        assert res["fit"]["p_value"] < 0.001

    def test_effects_multiply_along_path(self, chain):
        sem = _chain_model(chain).fit()
        coefs = sem.coefficients()
        eff = sem.effects("x", "y", coefs, column="estimate")
        a = coefs.set_index("response").loc["m", "estimate"]
        b = coefs.set_index("response").loc["y", "estimate"]
        assert eff["direct"] == 0.0
        assert eff["indirect"] == pytest.approx(a * b)
        assert eff["total"] == pytest.approx(a * b)

    def test_poisson_response_standardized(self, chain):
        rng = np.random.default_rng(3)
        d = chain.assign(k=rng.poisson(np.exp(0.5 + 0.7 * chain["x"])))
        sem = PiecewiseSEM([PathModel("k", ["x"], family="poisson")], d).fit()
        row = sem.coefficients().iloc[0]
        assert np.isfinite(row["std_estimate"])
        assert row["std_estimate"] > 0
        fit = sem.fits["k"]
        sd_y = np.sqrt(np.var(fit.linear_predictor, ddof=1) + np.log1p(1.0 / np.mean(fit.mu)))
        assert row["std_estimate"] == pytest.approx(row["estimate"] * d["x"].std(ddof=1) / sd_y)

    def test_information_criteria(self, chain):
        sem = _chain_model(chain).fit()
        ic = sem.information_criteria()
        assert ic["n"] == len(chain)
        assert ic["AIC"] > 0


class TestBootstrap:
    def test_cluster_bootstrap_interval(self, chain, rng):
        sem = _chain_model(chain).fit()
        boot = sem.bootstrap_effects([("x", "y")], n_boot=30, rng=rng, cluster="g", column="estimate")
        row = boot.iloc[0]
        assert row["n_boot"] + row["n_failed"] == 30
        assert row["indirect_lower"] <= row["indirect"] <= row["indirect_upper"]
        assert row["indirect_lower"] > 0

    def test_resample_relabels_clusters(self, chain, rng):
        sem = _chain_model(chain)
        sample = sem._resample(rng, "g")
        assert len(sample) == len(chain)
        assert sample["g"].nunique() == chain["g"].nunique()
