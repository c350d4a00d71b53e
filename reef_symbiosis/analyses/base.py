"""Pieces shared by every analysis script: argument parsing, the entry point and the summary layout."""

import argparse
import logging
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd

from .. import plotting
from ..config import add_config_args, config_from_args, setup_logging
from ..reporting import write_table

logger = logging.getLogger(__name__)

SUMMARY_COLS = ["analysis", "model", "term", "test", "statistic", "df", "p_value"]


def parse_args(name: str, description: str, argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=name, description=description)
    add_config_args(parser)
    return parser.parse_args(argv)


def main_for(run: Callable, name: str, description: str, argv: Optional[Sequence[str]] = None) -> pd.DataFrame:
    args = parse_args(name, description, argv)
    setup_logging(args.verbose)
    cfg = config_from_args(args)
    plotting.set_style()
    logger.info("Running %s (data: %s, output: %s)", name, cfg.data_dir, cfg.output_dir)
    return run(cfg)


def summary_frame(analysis: str, model: str, tests: pd.DataFrame) -> pd.DataFrame:
    """Term-test rows (term, test, statistic, df, p_value) tagged with the analysis and model."""
    out = tests.copy()
    out["analysis"] = analysis
    out["model"] = model
    for c in SUMMARY_COLS:
        if c not in out.columns:
            out[c] = np.nan
    return out[SUMMARY_COLS]


def finish(analysis: str, parts, outdir) -> pd.DataFrame:
    summary = pd.concat(parts, ignore_index=True) if parts else pd.DataFrame(columns=SUMMARY_COLS)
    write_table(summary, outdir / "summary.csv")
    logger.info("%s: wrote results to %s", analysis, outdir)
    return summary
