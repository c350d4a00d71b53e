"""Tests for reef_symbiosis.survival: Kaplan-Meier, log-rank and Cox models."""

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf

from reef_symbiosis.survival import (
    check_survival_data,
    fit_cox,
    kaplan_meier,
    logrank_test,
    median_survival,
    proportional_hazards_test,
)


@pytest.fixture(scope="module")
def lifetimes():
    rng = np.random.default_rng(5)
    n = 200
    x = rng.integers(0, 2, n)
    block = rng.choice(["B1", "B2", "B3"], n)
    t = rng.exponential(1.0 / (0.05 * np.exp(1.0 * x)))
    censor = 40.0
    return pd.DataFrame({"time": np.minimum(t, censor), "event": (t <= censor).astype(int),
                         "x": x, "grp": np.where(x == 1, "treated", "control"), "block": block})


class TestChecks:
    def test_negative_time(self):
        with pytest.raises(ValueError, match="Negative"):
            check_survival_data(pd.DataFrame({"t": [-1, 2], "e": [1, 0]}), "t", "e")

    def test_event_coding(self):
        with pytest.raises(ValueError, match="0/1"):
            check_survival_data(pd.DataFrame({"t": [1, 2], "e": [1, 2]}), "t", "e")

    def test_no_events(self):
        with pytest.raises(ValueError, match="No events"):
            check_survival_data(pd.DataFrame({"t": [1, 2], "e": [0, 0]}), "t", "e")


class TestKaplanMeier:
    def test_hand_computed(self):
        d = pd.DataFrame({"t": [1, 2, 2, 3, 4], "e": [1, 1, 0, 1, 0]})
        km = kaplan_meier(d, "t", "e")
        s = km.set_index("time")["survival"]
        assert s[1.0] == pytest.approx(0.8)
        assert s[2.0] == pytest.approx(0.6)
        assert s[3.0] == pytest.approx(0.3)

    def test_groups_and_bounds(self, lifetimes):
        km = kaplan_meier(lifetimes, "time", "event", group="grp")
        assert set(km["group"]) == {"control", "treated"}
        assert (km["ci_lower"] <= km["survival"] + 1e-12).all()
        assert (km["ci_upper"] >= km["survival"] - 1e-12).all()
        med = median_survival(km).set_index("group")["median_survival"]
        assert med["treated"] < med["control"]

    def test_group_without_events(self):
        d = pd.DataFrame({"t": [1, 2, 3, 5, 5], "e": [1, 1, 0, 0, 0], "g": ["a", "a", "a", "b", "b"]})
        km = kaplan_meier(d, "t", "e", group="g")
        b = km[km["group"] == "b"]
        assert len(b) == 1
        assert b["survival"].iloc[0] == 1.0


class TestLogRank:
    def test_detects_difference(self, lifetimes):
        out = logrank_test(lifetimes, "time", "event", "grp")
        assert out["df"] == 1
        assert out["p_value"] < 0.001

    def test_stratified(self, lifetimes):
        out = logrank_test(lifetimes, "time", "event", "grp", strata="block")
        assert out["p_value"] < 0.001

    def test_one_group(self, lifetimes):
        with pytest.raises(ValueError, match="two groups"):
            logrank_test(lifetimes.assign(g="one"), "time", "event", "g")


class TestCox:
    def test_matches_direct_phreg(self, lifetimes):
        cox = fit_cox(lifetimes, "time ~ x", "event")
        hr = cox.hazard_ratios().set_index("term")
        ref = smf.phreg("time ~ x", lifetimes, status=lifetimes["event"].to_numpy(), ties="efron").fit()
        assert "Intercept" not in hr.index
        assert np.log(hr.loc["x", "hazard_ratio"]) == pytest.approx(float(np.asarray(ref.params)[0]), rel=1e-6)
        assert hr.loc["x", "hazard_ratio"] > 1
        assert hr.loc["x", "hr_lower"] < hr.loc["x", "hazard_ratio"] < hr.loc["x", "hr_upper"]
        assert cox.n == len(lifetimes)
        assert cox.n_events == int(lifetimes["event"].sum())

    def test_stratified_fit(self, lifetimes):
        cox = fit_cox(lifetimes, "time ~ x", "event", strata="block")
        assert cox.strata == "block"
        assert cox.hazard_ratios().loc[0, "p_value"] < 0.001

    def test_ph_check(self, lifetimes):
        ph = proportional_hazards_test(fit_cox(lifetimes, "time ~ x", "event"))
        assert list(ph["term"]) == ["x"]
        assert ph.loc[0, "p_value"] > 0.001
