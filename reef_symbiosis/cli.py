"""reef-analyses command line.

    reef-analyses list
    reef-analyses run coral_growth microbiome -d data -o results
    reef-analyses run-all
    reef-analyses simulate --out data --seed 7
"""

import argparse
import logging
import sys

import pandas as pd

from . import plotting
from .analyses import ANALYSES, get_analysis
from .config import add_config_args, config_from_args, setup_logging
from .reporting import print_table, write_table
from .simulate import write_experiment

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="reef-analyses", description="Coral / crab / algae experiment analyses")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List the available analyses")

    p = sub.add_parser("run", help="Run one or more analyses")
    p.add_argument("names", nargs="+", help="Analysis names (see 'list')")
    add_config_args(p)

    p = sub.add_parser("run-all", help="Run every analysis")
    p.add_argument("--keep-going", action="store_true", help="Continue after an analysis fails")
    add_config_args(p)

    p = sub.add_parser("simulate", help="Write a simulated data set")
    p.add_argument("--out", required=True, help="Output directory for the CSVs")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--tanks", type=int, default=8)
    p.add_argument("--corals-per-tank", type=int, default=8)
    p.add_argument("-v", "--verbose", action="store_true")

    return parser.parse_args(argv)


def run_analyses(cfg, names, keep_going=False) -> pd.DataFrame:
    modules = [get_analysis(n) for n in names]
    plotting.set_style()
    summaries, failed = [], []
    for mod in modules:
        logger.info("=== %s: %s", mod.NAME, mod.DESCRIPTION)
        try:
            summaries.append(mod.run(cfg))
        except (ValueError, KeyError, FileNotFoundError) as exc:
            if not keep_going:
                raise
            logger.error("%s failed: %s", mod.NAME, exc)
            failed.append(mod.NAME)
    if failed:
        logger.error("Failed analyses: %s", ", ".join(failed))
    return pd.concat(summaries, ignore_index=True) if summaries else pd.DataFrame()


def main(argv=None):
    args = parse_args(argv)
    setup_logging(getattr(args, "verbose", False))

    if args.command == "list":
        for name, mod in ANALYSES.items():
            print("{:<18} {}".format(name, mod.DESCRIPTION))
        return 0

    if args.command == "simulate":
        paths = write_experiment(args.out, seed=args.seed, n_tanks=args.tanks, corals_per_tank=args.corals_per_tank)
        for key, path in paths.items():
            print(" - {}: {}".format(key, path))
        return 0

    cfg = config_from_args(args)
    names = args.names if args.command == "run" else list(ANALYSES)
    summary = run_analyses(cfg, names, keep_going=getattr(args, "keep_going", False))
    if not summary.empty:
        write_table(summary, cfg.output_dir / "summary_all.csv")
        print_table(summary, title="Summary")
    return 0


if __name__ == "__main__":
    sys.exit(main())
