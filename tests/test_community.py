"""Tests for reef_symbiosis.community: matrices, Bray-Curtis, PERMANOVA, PERMDISP and PCoA."""

import numpy as np
import pandas as pd
import pytest

from reef_symbiosis.community import (
    bray_curtis,
    community_matrix,
    filter_rare,
    pcoa,
    permanova,
    permdisp,
    shannon_diversity,
    transform,
)


@pytest.fixture(scope="module")
def two_groups():
    """20 samples; group B has a shifted composition."""
    rng = np.random.default_rng(4)
    n_taxa = 12
    base = np.linspace(2.0, 0.2, n_taxa)
    shifted = base.copy()
    shifted[[0, 1]] = shifted[[1, 0]]
    shifted[5] *= 4
    rows, groups = [], []
    for i in range(20):
        g = "A" if i < 10 else "B"
        alpha = (base if g == "A" else shifted) * 10
        rows.append(rng.multinomial(2000, rng.dirichlet(alpha)))
        groups.append(g)
    ids = ["S{:02d}".format(i) for i in range(20)]
    mat = pd.DataFrame(rows, index=ids, columns=["t{}".format(j) for j in range(n_taxa)]).astype(float)
    meta = pd.DataFrame({"group": groups, "block": ["b{}".format(i % 5) for i in range(20)],
                         "noise": rng.choice(["u", "v"], 20)}, index=ids)
    return mat, meta


class TestMatrices:
    def test_community_matrix(self):
        long_df = pd.DataFrame({"s": ["a", "a", "b", "a"], "t": ["x", "y", "x", "x"], "n": [1, 2, 3, 4]})
        mat = community_matrix(long_df, "s", "t", "n")
        assert mat.loc["a", "x"] == 5
        assert mat.loc["b", "y"] == 0

    def test_negative_counts(self):
        with pytest.raises(ValueError, match="Negative"):
            community_matrix(pd.DataFrame({"s": ["a"], "t": ["x"], "n": [-1]}), "s", "t", "n")

    def test_filter_rare(self):
        mat = pd.DataFrame({"common": [1, 2, 3, 4], "rare": [0, 0, 0, 1]}, dtype=float)
        assert list(filter_rare(mat, 0.5).columns) == ["common"]

    def test_transforms(self):
        mat = pd.DataFrame({"x": [1.0, 0.0], "y": [3.0, 4.0]})
        assert transform(mat, "relative").sum(axis=1).tolist() == [1.0, 1.0]
        assert transform(mat, "sqrt").loc[0, "y"] == pytest.approx(np.sqrt(3.0))
        assert transform(mat, "hellinger").loc[0, "y"] == pytest.approx(np.sqrt(0.75))
        assert transform(mat, "log1p").loc[1, "y"] == pytest.approx(np.log(5.0))
        assert transform(mat, "none").equals(mat)

    def test_sqrt_and_hellinger_differ(self):
        mat = pd.DataFrame({"x": [1.0, 9.0], "y": [3.0, 16.0]})
        assert not np.allclose(transform(mat, "sqrt"), transform(mat, "hellinger"))
        assert transform(mat, "sqrt").loc[1, "x"] == pytest.approx(3.0)
        assert transform(mat, "hellinger").loc[1, "x"] == pytest.approx(0.6)

    def test_unknown_transform(self):
        mat = pd.DataFrame({"x": [1.0, 0.0], "y": [3.0, 4.0]})
        with pytest.raises(ValueError):
            transform(mat, "cube")

    def test_shannon(self):
        mat = pd.DataFrame({"x": [1.0, 5.0], "y": [1.0, 0.0]})
        h = shannon_diversity(mat)
        assert h.iloc[0] == pytest.approx(np.log(2))
        assert h.iloc[1] == pytest.approx(0.0)


class TestBrayCurtis:
    def test_values(self):
        mat = pd.DataFrame({"x": [1.0, 0.0, 2.0], "y": [0.0, 1.0, 2.0]}, index=list("abc"))
        d = bray_curtis(mat)
        assert d.loc["a", "b"] == pytest.approx(1.0)
        assert d.loc["a", "c"] == pytest.approx(1 - 2 * 1 / 5)
        assert np.allclose(np.diag(d), 0)

    def test_empty_sample(self):
        with pytest.raises(ValueError, match="empty"):
            bray_curtis(pd.DataFrame({"x": [1.0, 0.0]}))


class TestPermanova:
    def test_detects_group_shift(self, two_groups, rng):
        mat, meta = two_groups
        tab = permanova(bray_curtis(transform(mat, "sqrt")), meta, ["group"], n_perm=199, rng=rng)
        row = tab.set_index("term").loc["group"]
        assert row["df"] == 1
        assert row["p_value"] <= 0.01
        assert tab.set_index("term").loc["Total", "df"] == 19
        assert tab.loc[tab["term"] != "Total", "SS"].sum() == pytest.approx(tab.set_index("term").loc["Total", "SS"])

    def test_null_term_and_strata(self, two_groups, rng):
        mat, meta = two_groups
        tab = permanova(bray_curtis(mat), meta, ["noise", "group"], n_perm=99, rng=rng, strata="block")
        p = tab.set_index("term")["p_value"]
        assert p["noise"] > 0.01
        assert 1 / 100 <= p["group"] <= 0.05

    def test_interaction_dof(self, two_groups, rng):
        mat, meta = two_groups
        tab = permanova(bray_curtis(mat), meta, ["group", "noise", "group:noise"], n_perm=9, rng=rng)
        assert tab.set_index("term").loc["group:noise", "df"] == 1

    def test_aliased_term(self, two_groups, rng):
        mat, meta = two_groups
        with pytest.raises(ValueError, match="no degrees of freedom"):
            permanova(bray_curtis(mat), meta.assign(copy=meta["group"]), ["group", "copy"], n_perm=9, rng=rng)


class TestOrdination:
    def test_pcoa(self, two_groups):
        mat, _ = two_groups
        coords, explained = pcoa(bray_curtis(mat))
        assert coords.shape[0] == 20
        assert explained.iloc[0] >= explained.iloc[1]
        assert explained.sum() == pytest.approx(1.0)

    def test_permdisp_equal_spread(self, two_groups, rng):
        mat, meta = two_groups
        tab, z = permdisp(bray_curtis(mat), meta["group"], n_perm=99, rng=rng)
        assert set(tab["group"]) == {"A", "B", "overall"}
        assert len(z) == 20
        assert (z >= 0).all()

    def test_permdisp_one_group(self, two_groups, rng):
        mat, meta = two_groups
        with pytest.raises(ValueError, match="two groups"):
            permdisp(bray_curtis(mat), meta["group"].map(lambda _: "A"), n_perm=9, rng=rng)
