"""Tests for reef_symbiosis.data: cleaning, treatment coding, joins and derived tables."""

import numpy as np
import pandas as pd
import pytest

from reef_symbiosis.config import Config
from reef_symbiosis.data import (
    clean_column_names,
    code_treatments,
    coral_level_table,
    empirical_logit,
    final_survey,
    growth_rates,
    join_metadata,
    load_joined,
    load_metadata,
    normalise_levels,
    require_cols,
)


# ----------------------------
# column handling
# ----------------------------

class TestColumns:
    def test_clean_and_alias(self):
        df = pd.DataFrame(columns=["Colony ID", "Tank_ID", "Nutrient Treatment", "Buoyant Weight (g)"])
        out = clean_column_names(df)
        assert list(out.columns) == ["coral_id", "tank", "nutrient", "buoyant_weight_g"]

    def test_collision_after_cleaning(self):
        df = pd.DataFrame(columns=["coral", "Coral ID"])
        with pytest.raises(ValueError, match="collide"):
            clean_column_names(df)

    def test_require_cols(self):
        with pytest.raises(ValueError, match="missing required columns"):
            require_cols(pd.DataFrame({"a": [1]}), ["a", "b"], name="x")


# ----------------------------
# treatments
# ----------------------------

class TestTreatments:
    def test_spellings_normalised(self):
        s = pd.Series(["Control", " low", "Enriched", "HIGH"])
        assert normalise_levels(s, "nutrient").tolist() == ["ambient", "ambient", "enriched", "enriched"]

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="maybe"):
            normalise_levels(pd.Series(["yes", "maybe"]), "crab")

    def test_indicators_and_label(self):
        meta = pd.DataFrame({"nutrient": ["ambient", "enriched"], "wound": ["no", "yes"],
                             "crab": ["+", "-"], "algae": ["absent", "present"]})
        out = code_treatments(meta)
        assert out["nutrient_enriched"].tolist() == [0, 1]
        assert out["wounded"].tolist() == [0, 1]
        assert out["crab_present"].tolist() == [1, 0]
        assert out["algae_present"].tolist() == [0, 1]
        assert out.loc[1, "treatment"] == "enriched/wounded/absent/present"
        assert list(out["nutrient"].cat.categories) == ["ambient", "enriched"]


# ----------------------------
# loading and joining
# ----------------------------

class TestLoading:
    def test_metadata_layout(self, cfg):
        meta = load_metadata(cfg)
        assert len(meta) == 64
        assert meta["tank"].nunique() == 8
        # nutrient is applied per tank
        assert (meta.groupby("tank")["nutrient"].nunique() == 1).all()
        # each block holds one tank of each nutrient level
        assert (meta.groupby("block")["nutrient"].nunique() == 2).all()

    def test_load_joined(self, cfg):
        df = load_joined(cfg, "epibionts", required=["coral_id", "n_epibionts"])
        assert {"tank", "nutrient_enriched", "n_epibionts"} <= set(df.columns)

    def test_unknown_ids(self, meta):
        df = pd.DataFrame({"coral_id": ["C001", "X999"], "value": [1, 2]})
        with pytest.raises(ValueError, match="X999"):
            join_metadata(df, meta)

    def test_shadowing_columns_dropped(self, meta):
        df = pd.DataFrame({"coral_id": ["C001"], "tank": ["wrong"], "value": [1.0]})
        out = join_metadata(df, meta)
        assert out.loc[0, "tank"] == meta.set_index("coral_id").loc["C001", "tank"]

    def test_duplicate_metadata_ids(self, tmp_path, experiment):
        meta = experiment["metadata"]
        bad = pd.concat([meta, meta.iloc[[0]]])
        d = tmp_path / "dup"
        d.mkdir()
        bad.to_csv(d / "metadata.csv", index=False)
        with pytest.raises(ValueError, match="duplicated"):
            load_metadata(Config(data_dir=d))


# ----------------------------
# derived tables
# ----------------------------

class TestDerived:
    def test_growth_rate(self):
        g = pd.DataFrame({"coral_id": ["a", "a", "b"], "day": [0, 10, 0], "buoyant_weight_g": [10.0, 11.0, 5.0]})
        out = growth_rates(g)
        assert out["coral_id"].tolist() == ["a"]
        assert out.loc[0, "growth_rate"] == pytest.approx(1.0)

    def test_final_survey(self):
        df = pd.DataFrame({"coral_id": ["a", "a", "b"], "day": [14, 28, 14], "v": [1, 2, 3]})
        assert final_survey(df).set_index("coral_id")["v"].to_dict() == {"a": 2, "b": 3}

    def test_empirical_logit(self):
        assert empirical_logit([50], [100])[0] == pytest.approx(0.0)
        assert np.isfinite(empirical_logit([0, 100], [100, 100])).all()
        with pytest.raises(ValueError):
            empirical_logit([5], [4])

    def test_coral_level_table(self, experiment, meta):
        tab = coral_level_table(meta, experiment["growth"], experiment["algae"], experiment["symbionts"])
        assert len(tab) == 64
        assert (tab.loc[tab["algae_present"] == 0, "algal_overgrowth"] == 0).all()
        assert tab["log_symbionts"].between(4, 8).all()
