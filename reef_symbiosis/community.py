"""Community composition: Bray-Curtis, PERMANOVA, PERMDISP and PCoA.

Distance matrices are square DataFrames indexed by sample id in both
directions; the metadata passed alongside must share that index.
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform

logger = logging.getLogger(__name__)


# ----------------------------
# Matrices and transforms
# ----------------------------
def community_matrix(long_df: pd.DataFrame, sample: str, taxon: str, count: str) -> pd.DataFrame:
    """Samples x taxa table of summed counts (absent taxa = 0)."""
    for c in (sample, taxon, count):
        if c not in long_df.columns:
            raise ValueError("community_matrix: missing column '{}'".format(c))
    d = long_df.copy()
    d[count] = pd.to_numeric(d[count], errors="coerce")
    if (d[count] < 0).any():
        raise ValueError("Negative counts in '{}'".format(count))
    mat = d.pivot_table(index=sample, columns=taxon, values=count, aggfunc="sum", fill_value=0)
    mat.columns.name = None
    return mat.astype(float)


def filter_rare(mat: pd.DataFrame, min_prevalence: float) -> pd.DataFrame:
    """Drop taxa present in fewer than ``min_prevalence`` of samples."""
    prevalence = (mat > 0).mean(axis=0)
    keep = prevalence >= min_prevalence
    dropped = int((~keep).sum())
    if dropped:
        logger.info("Dropped %d of %d taxa below prevalence %.2f", dropped, mat.shape[1], min_prevalence)
    return mat.loc[:, keep]


def transform(mat: pd.DataFrame, method: str = "sqrt") -> pd.DataFrame:
    """
    none: raw counts; relative: row proportions; sqrt: square root of the raw
    counts; hellinger: square root of row proportions; log1p: log(1 + count).
    """
    if method == "none":
        return mat.copy()
    if method == "log1p":
        return np.log1p(mat)
    if method == "sqrt":
        return np.sqrt(mat)
    totals = mat.sum(axis=1)
    if (totals == 0).any():
        raise ValueError("Samples with zero total count: {}".format(totals.index[totals == 0].tolist()))
    rel = mat.div(totals, axis=0)
    if method == "relative":
        return rel
    if method == "hellinger":
        return np.sqrt(rel)
    raise ValueError("Unknown transform '{}'".format(method))


def bray_curtis(mat: pd.DataFrame) -> pd.DataFrame:
    totals = mat.sum(axis=1)
    if (totals == 0).any():
        raise ValueError("Bray-Curtis is undefined for empty samples: {}".format(totals.index[totals == 0].tolist()))
    dist = squareform(pdist(mat.to_numpy(float), metric="braycurtis"))
    return pd.DataFrame(dist, index=mat.index, columns=mat.index)


def shannon_diversity(mat: pd.DataFrame) -> pd.Series:
    rel = mat.div(mat.sum(axis=1), axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        h = -(rel * np.log(rel)).where(rel > 0, 0.0).sum(axis=1)
    return h.rename("shannon")


def _check_dist(dist: pd.DataFrame) -> np.ndarray:
    d = np.asarray(dist, dtype=float)
    if d.ndim != 2 or d.shape[0] != d.shape[1]:
        raise ValueError("Distance matrix must be square")
    if not np.allclose(d, d.T):
        raise ValueError("Distance matrix must be symmetric")
    if not np.allclose(np.diag(d), 0.0):
        raise ValueError("Distance matrix must have a zero diagonal")
    return d


def gower_centered(d: np.ndarray) -> np.ndarray:
    n = d.shape[0]
    a = -0.5 * d ** 2
    j = np.eye(n) - np.ones((n, n)) / n
    return j @ a @ j


# ----------------------------
# PERMANOVA
# ----------------------------
def _term_block(data: pd.DataFrame, term: str) -> np.ndarray:
    cols = []
    for part in term.split(":"):
        part = part.strip()
        if part not in data.columns:
            raise ValueError("PERMANOVA term '{}' refers to missing column '{}'".format(term, part))
        s = data[part]
        if pd.api.types.is_numeric_dtype(s) and not isinstance(s.dtype, pd.CategoricalDtype):
            cols.append(s.to_numpy(float)[:, None])
        else:
            dummies = pd.get_dummies(s.astype(str), drop_first=True, dtype=float)
            cols.append(dummies.to_numpy(float))
    block = cols[0]
    for nxt in cols[1:]:
        block = np.einsum("ij,ik->ijk", block, nxt).reshape(block.shape[0], -1)
    return block


def _hat(x: np.ndarray) -> np.ndarray:
    return x @ np.linalg.pinv(x)


def _permutation(n: int, rng: np.random.Generator, strata: Optional[np.ndarray]) -> np.ndarray:
    if strata is None:
        return rng.permutation(n)
    perm = np.arange(n)
    for s in np.unique(strata):
        idx = np.flatnonzero(strata == s)
        perm[idx] = idx[rng.permutation(idx.size)]
    return perm


def permanova(dist: pd.DataFrame, data: pd.DataFrame, terms: Sequence[str], n_perm: int = 999,
              rng: Optional[np.random.Generator] = None, strata: Optional[str] = None) -> pd.DataFrame:
    """
    Sequential (type I) PERMANOVA.

    Terms are added in the order given; each gets SS, R^2, pseudo-F and a
    permutation p-value (p = (#F_perm >= F_obs + 1) / (n_perm + 1)).
    Permutations shuffle whole observations, within levels of ``strata``
    when given.
    """
    rng = rng if rng is not None else np.random.default_rng()
    d = _check_dist(dist)
    data = data.loc[dist.index]
    n = d.shape[0]
    g = gower_centered(d)
    ss_total = float(np.trace(g))

    designs = [np.ones((n, 1))]
    for t in terms:
        designs.append(np.hstack([designs[-1], _term_block(data, t)]))
    hats = [_hat(x) for x in designs]
    ranks = [np.linalg.matrix_rank(x) for x in designs]
    df_terms = [ranks[i + 1] - ranks[i] for i in range(len(terms))]
    df_res = n - ranks[-1]
    if df_res <= 0:
        raise ValueError("PERMANOVA has no residual degrees of freedom (n={}, rank={})".format(n, ranks[-1]))
    if any(k == 0 for k in df_terms):
        zero = [t for t, k in zip(terms, df_terms) if k == 0]
        raise ValueError("Terms add no degrees of freedom (aliased or constant): {}".format(zero))

    def ss_parts(gm):
        traces = [float(np.sum(h * gm)) for h in hats]
        ss = [traces[i + 1] - traces[i] for i in range(len(terms))]
        ss_res = float(np.trace(gm)) - traces[-1]
        return np.array(ss), ss_res

    ss, ss_res = ss_parts(g)
    f_obs = (ss / df_terms) / (ss_res / df_res)

    strata_arr = data[strata].astype(str).to_numpy() if strata else None
    exceed = np.zeros(len(terms))
    for _ in range(n_perm):
        p = _permutation(n, rng, strata_arr)
        ss_p, ss_res_p = ss_parts(g[np.ix_(p, p)])
        f_p = (ss_p / df_terms) / (ss_res_p / df_res)
        exceed += f_p >= f_obs - 1e-12
    pvals = (exceed + 1.0) / (n_perm + 1.0)

    rows = [{"term": t, "df": df_terms[i], "SS": ss[i], "R2": ss[i] / ss_total, "F": f_obs[i], "p_value": pvals[i]}
            for i, t in enumerate(terms)]
    rows.append({"term": "Residual", "df": df_res, "SS": ss_res, "R2": ss_res / ss_total, "F": np.nan, "p_value": np.nan})
    rows.append({"term": "Total", "df": n - 1, "SS": ss_total, "R2": 1.0, "F": np.nan, "p_value": np.nan})
    return pd.DataFrame(rows)


# ----------------------------
# PCoA / PERMDISP
# ----------------------------
def _eigen(d: np.ndarray):
    vals, vecs = np.linalg.eigh(gower_centered(d))
    order = np.argsort(vals)[::-1]
    return vals[order], vecs[:, order]


def pcoa(dist: pd.DataFrame, n_axes: Optional[int] = None):
    """Principal coordinates (positive eigenvalues only) and proportion of variation per axis."""
    d = _check_dist(dist)
    vals, vecs = _eigen(d)
    tol = 1e-10 * max(abs(vals).max(), 1.0)
    pos = vals > tol
    vals, vecs = vals[pos], vecs[:, pos]
    total = vals.sum()
    if n_axes is not None:
        vals, vecs = vals[:n_axes], vecs[:, :n_axes]
    coords = vecs * np.sqrt(vals)
    names = ["PCoA{}".format(i + 1) for i in range(coords.shape[1])]
    explained = pd.Series(vals / total, index=names, name="proportion_explained")
    return pd.DataFrame(coords, index=dist.index, columns=names), explained


def centroid_distances(dist: pd.DataFrame, groups: pd.Series) -> pd.Series:
    """
    Distance of each sample to its group centroid in PCoA space.

    Axes with negative eigenvalues (non-Euclidean distances) are kept and
    subtracted, as in Anderson (2006).
    """
    d = _check_dist(dist)
    vals, vecs = _eigen(d)
    tol = 1e-10 * max(abs(vals).max(), 1.0)
    pos, neg = vals > tol, vals < -tol
    x_pos = vecs[:, pos] * np.sqrt(vals[pos])
    x_neg = vecs[:, neg] * np.sqrt(-vals[neg])

    g = groups.loc[dist.index].astype(str).to_numpy()
    z = np.zeros(len(g))
    for lv in np.unique(g):
        m = g == lv
        dp = np.sum((x_pos[m] - x_pos[m].mean(axis=0)) ** 2, axis=1)
        dn = np.sum((x_neg[m] - x_neg[m].mean(axis=0)) ** 2, axis=1) if x_neg.shape[1] else 0.0
        z[m] = np.sqrt(np.abs(dp - dn))
    return pd.Series(z, index=dist.index, name="distance_to_centroid")


def _one_way_f(z: np.ndarray, g: np.ndarray) -> float:
    levels = np.unique(g)
    grand = z.mean()
    ss_between = sum(np.sum(g == lv) * (z[g == lv].mean() - grand) ** 2 for lv in levels)
    ss_within = sum(np.sum((z[g == lv] - z[g == lv].mean()) ** 2) for lv in levels)
    df_b, df_w = len(levels) - 1, len(z) - len(levels)
    return float((ss_between / df_b) / (ss_within / df_w)) if ss_within > 0 else float("inf")


def permdisp(dist: pd.DataFrame, groups: pd.Series, n_perm: int = 999,
             rng: Optional[np.random.Generator] = None):
    """
    Test for homogeneity of multivariate dispersion.

    Returns (table, distances): the table has the mean distance to centroid
    per group plus an overall row with F and the permutation p-value; the
    permutation shuffles residuals from the group means.
    """
    rng = rng if rng is not None else np.random.default_rng()
    z_series = centroid_distances(dist, groups)
    z = z_series.to_numpy()
    g = groups.loc[dist.index].astype(str).to_numpy()
    levels = np.unique(g)
    if len(levels) < 2:
        raise ValueError("PERMDISP needs at least two groups")

    f_obs = _one_way_f(z, g)
    fitted = np.array([z[g == lv].mean() for lv in g])
    resid = z - fitted
    exceed = 0
    for _ in range(n_perm):
        f_p = _one_way_f(fitted + rng.permutation(resid), g)
        exceed += f_p >= f_obs - 1e-12
    p = (exceed + 1.0) / (n_perm + 1.0)

    rows = [{"group": lv, "n": int(np.sum(g == lv)), "mean_distance": float(z[g == lv].mean()),
             "F": np.nan, "p_value": np.nan} for lv in levels]
    rows.append({"group": "overall", "n": len(z), "mean_distance": float(z.mean()), "F": f_obs, "p_value": p})
    return pd.DataFrame(rows), z_series
