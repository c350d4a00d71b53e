"""Writing result tables, model summaries and the per-model report bundle."""

import json
import logging
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from . import diagnostics, plotting
from .models import ModelFit, r_squared, term_tests

logger = logging.getLogger(__name__)


def format_p(p) -> str:
    if p is None or not np.isfinite(p):
        return "NA"
    if p < 0.001:
        return "<0.001"
    return "{:.3f}".format(p)


def write_table(df: pd.DataFrame, outpath: Path, index: bool = False) -> Path:
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(outpath, index=index)
    logger.debug("Wrote %s (%d rows)", outpath, len(df))
    return outpath


def print_table(df: pd.DataFrame, title: Optional[str] = None, digits: int = 4) -> None:
    if title:
        print("\n=== {} ===".format(title))
    with pd.option_context("display.width", 160, "display.max_columns", 30):
        print(df.to_string(index=False, float_format=lambda v: "{:.{}g}".format(v, digits)))


def write_model_summary(fit, outpath: Path) -> Path:
    """statsmodels summary text for a ModelFit or CoxFit."""
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    header = "model: {}\nformula: {}\nn: {}\n\n".format(fit.name, fit.formula, fit.n)
    outpath.write_text(header + fit.summary_text())
    return outpath


def _jsonable(v):
    if isinstance(v, (np.integer,)):
        return int(v)
    if isinstance(v, (np.floating,)):
        return None if not np.isfinite(v) else float(v)
    if isinstance(v, float) and not np.isfinite(v):
        return None
    if isinstance(v, np.ndarray):
        return [_jsonable(x) for x in v.tolist()]
    if isinstance(v, pd.DataFrame):
        return [{k: _jsonable(x) for k, x in r.items()} for r in v.to_dict(orient="records")]
    if isinstance(v, dict):
        return {str(k): _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    if isinstance(v, Path):
        return str(v)
    return v


def write_json(obj, outpath: Path) -> Path:
    outpath = Path(outpath)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    with open(outpath, "w") as f:
        json.dump(_jsonable(obj), f, indent=2)
    return outpath


def report_model(fit: ModelFit, cfg, outdir: Path, terms: Optional[Sequence[str]] = None,
                 rng: Optional[np.random.Generator] = None, exponentiate: bool = False) -> dict:
    """
    Everything reported for one fitted model.

    Writes <name>_coefficients.csv, <name>_terms.csv (when ``terms`` is
    given), <name>_summary.txt, <name>_diagnostics.png and a forest plot, and
    returns a dict with the tables, R^2 and the residual check.
    """
    outdir = Path(outdir)
    rng = rng if rng is not None else np.random.default_rng(cfg.seed)

    coefs = fit.coef_table()
    write_table(coefs, outdir / "{}_coefficients.csv".format(fit.name))
    write_model_summary(fit, outdir / "{}_summary.txt".format(fit.name))

    tests = None
    if terms:
        tests = term_tests(fit.data, fit.response, list(terms), fit.family, list(fit.groups) or None, name=fit.name)
        write_table(tests, outdir / "{}_terms.csv".format(fit.name))

    r2_marginal, r2_conditional = r_squared(fit)
    check = diagnostics.run_diagnostics(fit, n_sim=cfg.n_sim, rng=rng)
    diagnostics.plot_diagnostics(check, outdir / "{}_diagnostics.png".format(fit.name), dpi=cfg.dpi)
    plotting.coefficient_plot(coefs, outdir / "{}_coefficients.png".format(fit.name), title=fit.name,
                              exponentiate=exponentiate,
                              xlabel="Odds / rate ratio (95% CI)" if exponentiate else "Estimate (95% CI)",
                              dpi=cfg.dpi)

    print_table(coefs, title="{}: {}".format(fit.name, fit.formula))
    if tests is not None:
        print_table(tests, title="{}: term tests".format(fit.name))
    print("R2 marginal = {:.3f}, conditional = {:.3f}".format(r2_marginal, r2_conditional))
    flags = check.flags(cfg.alpha)
    print("Residual checks: {}".format(", ".join(flags) if flags else "no problems detected"))

    return {"fit": fit, "coefficients": coefs, "term_tests": tests, "r2_marginal": r2_marginal,
            "r2_conditional": r2_conditional, "diagnostics": check}
