"""Figure helpers shared by the analyses. Every saver writes a PNG and closes the figure."""

from pathlib import Path
from typing import Dict, Optional, Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import seaborn as sns  # noqa: E402
from matplotlib.lines import Line2D  # noqa: E402

PALETTE = {
    "ambient": "#4C72B0",
    "enriched": "#DD8452",
    "intact": "#55A868",
    "wounded": "#C44E52",
    "absent": "0.6",
    "present": "#8172B3",
}

SCATTER_ALPHA = 0.6


def set_style():
    sns.set_theme(style="whitegrid", context="notebook")


def _palette_for(levels):
    levels = [str(lv) for lv in levels]
    if all(lv in PALETTE for lv in levels):
        return {lv: PALETTE[lv] for lv in levels}
    cmap = plt.get_cmap("tab10")
    return dict((lv, cmap(i % 10)) for i, lv in enumerate(levels))


def save_figure(fig, outpath: Path, dpi: int) -> Path:
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(outpath, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return outpath


# ----------------------------
# Treatment plots
# ----------------------------
def treatment_boxplot(df: pd.DataFrame, x: str, y: str, outpath: Path, hue: Optional[str] = None,
                      col: Optional[str] = None, ylabel: Optional[str] = None, title: Optional[str] = None,
                      dpi: int = 200) -> Path:
    """Boxes per treatment level with the raw points on top; one panel per level of ``col``."""
    d = df.dropna(subset=[y]).copy()
    panels = [None] if col is None else list(pd.unique(d[col].astype(str)))
    fig, axes = plt.subplots(1, len(panels), figsize=(4.8 * len(panels), 4.6), sharey=True, squeeze=False)
    axes = axes.ravel()

    palette = _palette_for(pd.unique(d[hue].astype(str))) if hue else None
    for ax, panel in zip(axes, panels):
        sub = d if panel is None else d[d[col].astype(str) == panel]
        sub = sub.assign(**{x: sub[x].astype(str)})
        if hue:
            sub = sub.assign(**{hue: sub[hue].astype(str)})
        sns.boxplot(data=sub, x=x, y=y, hue=hue, palette=palette, ax=ax, showfliers=False)
        sns.stripplot(data=sub, x=x, y=y, hue=hue, palette=palette, dodge=bool(hue), ax=ax,
                      size=4, alpha=SCATTER_ALPHA, edgecolor="0.2", linewidth=0.4, legend=False)
        ax.set_xlabel(x)
        ax.set_ylabel(ylabel or y)
        if panel is not None:
            ax.set_title("{} = {}".format(col, panel))

    if title:
        fig.suptitle(title)
    return save_figure(fig, outpath, dpi)


def interaction_plot(df: pd.DataFrame, x: str, y: str, trace: str, outpath: Path,
                     ylabel: Optional[str] = None, title: Optional[str] = None, dpi: int = 200) -> Path:
    """Cell means +/- SE of ``y`` across ``x``, one line per level of ``trace``."""
    d = df.dropna(subset=[y]).copy()
    if not pd.api.types.is_numeric_dtype(d[x]):
        d[x] = d[x].astype(str)
    d[trace] = d[trace].astype(str)
    cells = d.groupby([trace, x], observed=True)[y].agg(["mean", "sem"]).reset_index()

    palette = _palette_for(pd.unique(cells[trace]))
    fig, ax = plt.subplots(figsize=(6.2, 4.6))
    for lv, sub in cells.groupby(trace):
        ax.errorbar(sub[x], sub["mean"], yerr=sub["sem"], marker="o", capsize=4, linewidth=2,
                    color=palette[lv], label=lv)
    ax.set_xlabel(x)
    ax.set_ylabel(ylabel or y)
    ax.legend(title=trace)
    if title:
        ax.set_title(title)
    return save_figure(fig, outpath, dpi)


# ----------------------------
# Model plots
# ----------------------------
def coefficient_plot(coefs: pd.DataFrame, outpath: Path, title: str = "", exponentiate: bool = False,
                     xlabel: str = "Estimate (95% CI)", dpi: int = 200) -> Path:
    """Forest plot of a coefficient table (term, estimate, ci_lower, ci_upper); the intercept is left out."""
    tab = coefs[~coefs["term"].isin(["Intercept", "const"])].iloc[::-1]
    est, lo, hi = tab["estimate"].to_numpy(float), tab["ci_lower"].to_numpy(float), tab["ci_upper"].to_numpy(float)
    ref = 0.0
    if exponentiate:
        est, lo, hi, ref = np.exp(est), np.exp(lo), np.exp(hi), 1.0

    fig, ax = plt.subplots(figsize=(7.2, 0.45 * len(tab) + 1.6))
    y = np.arange(len(tab))
    ax.errorbar(est, y, xerr=[est - lo, hi - est], fmt="o", color="black", capsize=3)
    ax.axvline(ref, color="0.5", linestyle="--", linewidth=1)
    ax.set_yticks(y)
    ax.set_yticklabels(tab["term"].tolist())
    if exponentiate:
        ax.set_xscale("log")
    ax.set_xlabel(xlabel)
    ax.set_title(title)
    return save_figure(fig, outpath, dpi)


def km_plot(km: pd.DataFrame, outpath: Path, title: str = "", xlabel: str = "Days",
            ylabel: str = "Survival probability", annotation: Optional[str] = None, dpi: int = 200) -> Path:
    """Step curves with confidence bands from a kaplan_meier() table."""
    groups = list(pd.unique(km["group"]))
    cmap = plt.get_cmap("tab10")
    fig, ax = plt.subplots(figsize=(7.2, 4.8))
    for i, g in enumerate(groups):
        sub = km[km["group"] == g].sort_values("time")
        t = np.concatenate([[0.0], sub["time"].to_numpy(float)])
        s = np.concatenate([[1.0], sub["survival"].to_numpy(float)])
        lo = np.concatenate([[1.0], sub["ci_lower"].to_numpy(float)])
        hi = np.concatenate([[1.0], sub["ci_upper"].to_numpy(float)])
        color = cmap(i % 10)
        ax.step(t, s, where="post", color=color, linewidth=2, label=str(g))
        ax.fill_between(t, lo, hi, step="post", color=color, alpha=0.15, linewidth=0)
    ax.set_ylim(-0.02, 1.02)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.legend(fontsize=9, loc="lower left")
    if annotation:
        ax.text(0.98, 0.98, annotation, transform=ax.transAxes, va="top", ha="right", fontsize=9,
                bbox=dict(boxstyle="round", facecolor="white", alpha=0.85, edgecolor="0.7"))
    return save_figure(fig, outpath, dpi)


def ordination_plot(coords: pd.DataFrame, explained: Sequence[float], meta: pd.DataFrame, color: str,
                    outpath: Path, marker: Optional[str] = None, title: str = "", dpi: int = 200) -> Path:
    """PCoA axes 1-2, coloured by ``color`` and optionally shaped by ``marker`` (columns of ``meta``, same index)."""
    d = coords.iloc[:, :2].join(meta[[c for c in (color, marker) if c]])
    ax1, ax2 = coords.columns[:2]
    colors = _palette_for(pd.unique(d[color].astype(str)))
    markers = ["o", "s", "^", "D", "v", "P"]
    marker_levels = list(pd.unique(d[marker].astype(str))) if marker else [None]

    fig, ax = plt.subplots(figsize=(6.6, 5.6))
    for lv, sub in d.groupby(d[color].astype(str)):
        for mi, mlv in enumerate(marker_levels):
            s = sub if mlv is None else sub[sub[marker].astype(str) == mlv]
            ax.scatter(s[ax1], s[ax2], color=colors[lv], marker=markers[mi % len(markers)],
                       s=40, alpha=0.8, edgecolor="0.2", linewidth=0.4)
        # group centroid
        ax.scatter(sub[ax1].mean(), sub[ax2].mean(), color=colors[lv], marker="X", s=140, edgecolor="black")

    handles = [Line2D([0], [0], marker="o", color="w", markerfacecolor=colors[lv], markersize=9, label=lv) for lv in colors]
    if marker:
        handles += [Line2D([0], [0], marker=markers[i % len(markers)], color="0.3", linestyle="", label=mlv)
                    for i, mlv in enumerate(marker_levels)]
    ax.legend(handles=handles, fontsize=9, loc="best")
    ax.set_xlabel("{} ({:.1f}%)".format(ax1, 100 * explained[0]))
    ax.set_ylabel("{} ({:.1f}%)".format(ax2, 100 * explained[1]))
    ax.set_title(title)
    return save_figure(fig, outpath, dpi)


def path_diagram(coefs: pd.DataFrame, layout: Dict[str, tuple], outpath: Path, alpha: float = 0.05,
                 title: str = "", dpi: int = 200) -> Path:
    """
    Boxes at ``layout`` positions with an arrow per path.

    Arrows are solid when p < alpha and dashed otherwise; width scales with
    |standardized estimate|; red = negative, black = positive.
    """
    fig, ax = plt.subplots(figsize=(9, 5.6))
    for node, (x, y) in layout.items():
        ax.text(x, y, node.replace("_", "\n"), ha="center", va="center", fontsize=10,
                bbox=dict(boxstyle="round,pad=0.5", facecolor="white", edgecolor="black"))

    for _, r in coefs.iterrows():
        if r["predictor"] not in layout or r["response"] not in layout:
            continue
        x0, y0 = layout[r["predictor"]]
        x1, y1 = layout[r["response"]]
        std = r.get("std_estimate", np.nan)
        width = 1.0 + 6.0 * min(abs(std), 1.0) if np.isfinite(std) else 1.5
        ax.annotate(
            "", xy=(x1, y1), xytext=(x0, y0),
            arrowprops=dict(arrowstyle="-|>", color="red" if r["estimate"] < 0 else "black", lw=width,
                            linestyle="-" if r["p_value"] < alpha else "--", shrinkA=28, shrinkB=28),
        )
        label = "{:.2f}".format(std) if np.isfinite(std) else "{:.2f}".format(r["estimate"])
        ax.text((x0 + x1) / 2, (y0 + y1) / 2, label, fontsize=9, ha="center", va="bottom",
                bbox=dict(boxstyle="round,pad=0.15", facecolor="white", edgecolor="none", alpha=0.8))

    xs = [p[0] for p in layout.values()]
    ys = [p[1] for p in layout.values()]
    ax.set_xlim(min(xs) - 0.6, max(xs) + 0.6)
    ax.set_ylim(min(ys) - 0.6, max(ys) + 0.6)
    ax.axis("off")
    ax.set_title(title)
    return save_figure(fig, outpath, dpi)
