"""Loading, cleaning and joining the experiment CSVs.

Every dataset is keyed by coral_id and joined onto the colony metadata, which
carries the tank / block layout and the four treatments. Treatments are
normalised to fixed level names and also exposed as 0/1 indicator columns so
that model terms have stable names (e.g. ``nutrient_enriched:crab_present``).
"""

import logging
import re
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

ID_COL = "coral_id"

COLUMN_ALIASES = {
    "coral": "coral_id",
    "colony": "coral_id",
    "colony_id": "coral_id",
    "fragment_id": "coral_id",
    "tank_id": "tank",
    "mesocosm": "tank",
    "block_id": "block",
    "nutrients": "nutrient",
    "nutrient_treatment": "nutrient",
    "wounding": "wound",
    "wound_treatment": "wound",
    "crab_treatment": "crab",
    "algae_treatment": "algae",
    "algal_treatment": "algae",
}

# level -> accepted raw spellings (already lower-cased and stripped)
TREATMENT_LEVELS = {
    "nutrient": {
        "ambient": {"ambient", "control", "ctrl", "low", "a", "0"},
        "enriched": {"enriched", "enrichment", "nutrient", "high", "e", "n", "1"},
    },
    "wound": {
        "intact": {"intact", "unwounded", "control", "ctrl", "no", "n", "0"},
        "wounded": {"wounded", "wound", "yes", "y", "w", "1"},
    },
    "crab": {
        "absent": {"absent", "no", "none", "n", "-", "0", "removed"},
        "present": {"present", "yes", "y", "+", "1", "crab"},
    },
    "algae": {
        "absent": {"absent", "no", "none", "n", "-", "0"},
        "present": {"present", "yes", "y", "+", "1", "algae", "contact"},
    },
}

REFERENCE_LEVEL = {"nutrient": "ambient", "wound": "intact", "crab": "absent", "algae": "absent"}

INDICATORS = {
    "nutrient": ("nutrient_enriched", "enriched"),
    "wound": ("wounded", "wounded"),
    "crab": ("crab_present", "present"),
    "algae": ("algae_present", "present"),
}

METADATA_COLS = ["coral_id", "tank", "block", "nutrient", "wound", "crab", "algae"]


# ----------------------------
# Column handling
# ----------------------------
def clean_column_names(df: pd.DataFrame) -> pd.DataFrame:
    """Lower-case, snake_case and de-alias column names."""
    def norm(c):
        c = re.sub(r"[^0-9a-zA-Z]+", "_", str(c).strip().lower()).strip("_")
        return COLUMN_ALIASES.get(c, c)

    out = df.copy()
    out.columns = [norm(c) for c in df.columns]
    dupes = out.columns[out.columns.duplicated()].tolist()
    if dupes:
        raise ValueError("Column names collide after cleaning: {}".format(sorted(set(dupes))))
    return out


def require_cols(df: pd.DataFrame, cols: Iterable[str], name: str = "dataframe") -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError("{}: missing required columns: {}\nFound: {}".format(name, missing, list(df.columns)))


def normalise_ids(s: pd.Series) -> pd.Series:
    return s.astype(str).str.strip()


# ----------------------------
# Treatments
# ----------------------------
def normalise_levels(s: pd.Series, factor: str) -> pd.Series:
    lookup = {}
    for level, spellings in TREATMENT_LEVELS[factor].items():
        for sp in spellings:
            lookup[sp] = level

    raw = s.astype(str).str.strip().str.lower()
    out = raw.map(lookup)
    bad = sorted(raw[out.isna()].unique().tolist())
    if bad:
        raise ValueError("Unrecognised levels in '{}': {}".format(factor, bad))
    return out


def code_treatments(meta: pd.DataFrame) -> pd.DataFrame:
    """
    Normalise treatment levels and add indicator / label columns.

    Adds, for each treatment present: a categorical with the reference level
    first, a 0/1 indicator (nutrient_enriched, wounded, crab_present,
    algae_present), and a combined ``treatment`` label built from the
    treatments present.
    """
    df = meta.copy()
    present = [f for f in TREATMENT_LEVELS if f in df.columns]
    if not present:
        raise ValueError("No treatment columns found; expected some of {}".format(list(TREATMENT_LEVELS)))

    for factor in present:
        levels = normalise_levels(df[factor], factor)
        ref = REFERENCE_LEVEL[factor]
        order = [ref] + [lv for lv in TREATMENT_LEVELS[factor] if lv != ref]
        df[factor] = pd.Categorical(levels, categories=order)
        ind_col, level = INDICATORS[factor]
        df[ind_col] = (levels == level).astype(int)

    df["treatment"] = df[present].astype(str).agg("/".join, axis=1)
    return df


def treatment_label(df: pd.DataFrame, factors: List[str]) -> pd.Series:
    require_cols(df, factors, name="treatment_label")
    return df[factors].astype(str).agg("/".join, axis=1)


# ----------------------------
# Loading
# ----------------------------
def read_csv(path) -> pd.DataFrame:
    df = pd.read_csv(path)
    df.replace([np.inf, -np.inf], np.nan, inplace=True)
    return clean_column_names(df)


def load_metadata(cfg) -> pd.DataFrame:
    path = cfg.data_path("metadata")
    if not path.exists():
        raise FileNotFoundError("Metadata file not found: {}".format(path))
    meta = read_csv(path)
    require_cols(meta, METADATA_COLS, name="metadata")

    meta[ID_COL] = normalise_ids(meta[ID_COL])
    meta["tank"] = meta["tank"].astype(str).str.strip()
    meta["block"] = meta["block"].astype(str).str.strip()

    dupes = meta.loc[meta[ID_COL].duplicated(), ID_COL].tolist()
    if dupes:
        raise ValueError("metadata: duplicated coral_id values: {}".format(dupes[:20]))

    meta = code_treatments(meta)
    logger.debug("Loaded metadata for %d corals in %d tanks", len(meta), meta["tank"].nunique())
    return meta


def load_dataset(cfg, key: str, required: Optional[List[str]] = None) -> pd.DataFrame:
    path = cfg.data_path(key)
    if not path.exists():
        raise FileNotFoundError("Dataset '{}' not found: {}".format(key, path))
    df = read_csv(path)
    require_cols(df, required or [], name=key)
    if ID_COL in df.columns:
        df[ID_COL] = normalise_ids(df[ID_COL])
    logger.debug("Loaded %s: %d rows", key, len(df))
    return df


def join_metadata(df: pd.DataFrame, meta: pd.DataFrame, name: str = "dataset") -> pd.DataFrame:
    """Many-to-one join on coral_id; ids absent from the metadata are an error."""
    require_cols(df, [ID_COL], name=name)
    unknown = sorted(set(df[ID_COL]) - set(meta[ID_COL]))
    if unknown:
        raise ValueError("{}: coral_id values not in metadata: {}".format(name, unknown[:20]))

    # dataset columns that shadow metadata columns are dropped in favour of the metadata
    overlap = [c for c in meta.columns if c in df.columns and c != ID_COL]
    if overlap:
        logger.warning("%s: dropping columns also present in metadata: %s", name, overlap)
        df = df.drop(columns=overlap)

    return df.merge(meta, on=ID_COL, how="left", validate="many_to_one")


def load_joined(cfg, key: str, required: Optional[List[str]] = None, meta: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    if meta is None:
        meta = load_metadata(cfg)
    return join_metadata(load_dataset(cfg, key, required), meta, name=key)


# ----------------------------
# Derived tables
# ----------------------------
def growth_rates(growth: pd.DataFrame, day_col: str = "day", weight_col: str = "buoyant_weight_g") -> pd.DataFrame:
    """
    Percent change in buoyant weight per day between first and last survey.

    One row per coral with initial/final weight, elapsed days and growth_rate
    (% day^-1). Corals with fewer than two surveys are dropped.
    """
    require_cols(growth, [ID_COL, day_col, weight_col], name="growth")
    d = growth.copy()
    d[day_col] = pd.to_numeric(d[day_col], errors="coerce")
    d[weight_col] = pd.to_numeric(d[weight_col], errors="coerce")
    d = d.dropna(subset=[day_col, weight_col]).sort_values([ID_COL, day_col])

    first = d.groupby(ID_COL).first()
    last = d.groupby(ID_COL).last()
    out = pd.DataFrame({
        "initial_weight_g": first[weight_col],
        "final_weight_g": last[weight_col],
        "days": last[day_col] - first[day_col],
    })

    single = out.index[out["days"] <= 0].tolist()
    if single:
        logger.warning("growth: dropping %d corals with a single survey: %s", len(single), single[:10])
        out = out.drop(index=single)

    out["growth_rate"] = 100.0 * (out["final_weight_g"] - out["initial_weight_g"]) / out["initial_weight_g"] / out["days"]
    return out.reset_index()


def final_survey(df: pd.DataFrame, day_col: str = "day") -> pd.DataFrame:
    """Last survey per coral."""
    require_cols(df, [ID_COL, day_col], name="final_survey")
    d = df.sort_values([ID_COL, day_col])
    return d.groupby(ID_COL, as_index=False).tail(1).reset_index(drop=True)


def empirical_logit(successes, trials, eps: float = 0.5) -> np.ndarray:
    y = np.asarray(successes, dtype=float)
    n = np.asarray(trials, dtype=float)
    if np.any(y < 0) or np.any(y > n):
        raise ValueError("successes must lie in [0, trials]")
    return np.log((y + eps) / (n - y + eps))


def coral_level_table(meta: pd.DataFrame, growth: pd.DataFrame, algae: pd.DataFrame, symbionts: pd.DataFrame) -> pd.DataFrame:
    """
    One row per coral for the path analysis.

    Combines growth_rate, final algal overgrowth proportion (0 for corals with
    no algal competitor) and log10 symbiont density. Corals missing any of
    the three responses are dropped.
    """
    rates = growth_rates(growth)[[ID_COL, "growth_rate"]]

    alg = final_survey(algae)
    require_cols(alg, ["overgrowth_points", "total_points"], name="algae")
    alg = alg.assign(algal_overgrowth=alg["overgrowth_points"] / alg["total_points"])[[ID_COL, "algal_overgrowth"]]

    sym = symbionts[[ID_COL, "cells_per_cm2"]].copy()
    sym["log_symbionts"] = np.log10(pd.to_numeric(sym["cells_per_cm2"], errors="coerce"))
    sym = sym[[ID_COL, "log_symbionts"]]

    out = meta.merge(rates, on=ID_COL, how="left").merge(alg, on=ID_COL, how="left").merge(sym, on=ID_COL, how="left")
    no_algae = (out["algae_present"] == 0) & out["algal_overgrowth"].isna()
    out.loc[no_algae, "algal_overgrowth"] = 0.0

    n0 = len(out)
    out = out.dropna(subset=["growth_rate", "algal_overgrowth", "log_symbionts"]).reset_index(drop=True)
    if len(out) < n0:
        logger.info("coral_level_table: %d of %d corals have all responses", len(out), n0)
    return out
