"""INI configuration for the analyses.

The file is read with configparser; every key has a fallback so an empty or
partial file still yields a usable Config. Command-line overrides are applied
on top with :func:`dataclasses.replace`.
"""

import argparse
import configparser
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "analyses.ini"

DEFAULT_FILES = {
    "metadata": "metadata.csv",
    "growth": "growth.csv",
    "crab_census": "crab_census.csv",
    "algae": "algae.csv",
    "symbionts": "symbionts.csv",
    "epibionts": "epibionts.csv",
    "wound_healing": "wound_healing.csv",
    "mortality": "mortality.csv",
    "microbiome": "microbiome.csv",
    "crab_feeding": "crab_feeding.csv",
    "tissue": "tissue_nutrients.csv",
}

TRANSFORMS = ("none", "relative", "sqrt", "hellinger", "log1p")


@dataclass(frozen=True)
class Config:
    data_dir: Path = Path("data")
    output_dir: Path = Path("results")
    files: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FILES))
    alpha: float = 0.05
    seed: int = 42
    n_sim: int = 250
    n_boot: int = 200
    n_perm: int = 999
    transform: str = "sqrt"
    min_prevalence: float = 0.05
    dpi: int = 200

    def data_path(self, key: str) -> Path:
        if key not in self.files:
            raise KeyError("Unknown dataset key '{}'. Known: {}".format(key, sorted(self.files)))
        return self.data_dir / self.files[key]

    def analysis_dir(self, name: str) -> Path:
        outdir = self.output_dir / name
        outdir.mkdir(parents=True, exist_ok=True)
        return outdir


def _from_parser(parser: configparser.ConfigParser, base_dir: Path) -> Config:
    files = dict(DEFAULT_FILES)
    if parser.has_section("Files"):
        for key, value in parser.items("Files"):
            files[key] = value.strip()

    def as_path(value: str) -> Path:
        p = Path(value)
        return p if p.is_absolute() else base_dir / p

    cfg = Config(
        data_dir=as_path(parser.get("Paths", "data_dir", fallback="data")),
        output_dir=as_path(parser.get("Paths", "output_dir", fallback="results")),
        files=files,
        alpha=parser.getfloat("Models", "alpha", fallback=0.05),
        seed=parser.getint("Models", "seed", fallback=42),
        n_sim=parser.getint("Models", "n_sim", fallback=250),
        n_boot=parser.getint("SEM", "n_boot", fallback=200),
        n_perm=parser.getint("Community", "n_perm", fallback=999),
        transform=parser.get("Community", "transform", fallback="sqrt").strip().lower(),
        min_prevalence=parser.getfloat("Community", "min_prevalence", fallback=0.05),
        dpi=parser.getint("Plotting", "dpi", fallback=200),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: Config) -> None:
    if not 0.0 < cfg.alpha < 1.0:
        raise ValueError("alpha must be in (0, 1), got {}".format(cfg.alpha))
    for name in ("n_sim", "n_boot", "n_perm"):
        if getattr(cfg, name) < 1:
            raise ValueError("{} must be >= 1, got {}".format(name, getattr(cfg, name)))
    if cfg.transform not in TRANSFORMS:
        raise ValueError("transform must be one of {}, got '{}'".format(TRANSFORMS, cfg.transform))
    if not 0.0 <= cfg.min_prevalence < 1.0:
        raise ValueError("min_prevalence must be in [0, 1), got {}".format(cfg.min_prevalence))


def load_config(path: Optional[str] = None, **overrides) -> Config:
    """
    Read an INI file into a Config.

    With no path, ./analyses.ini is used when present and built-in defaults
    otherwise. An explicit path that does not exist is an error. Relative
    paths inside the file are resolved against the file's directory.
    Keyword overrides (e.g. data_dir=..., seed=...) that are not None replace
    the file values.
    """
    parser = configparser.ConfigParser()

    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILE)
        if candidate.exists():
            parser.read(candidate)
            base_dir = candidate.resolve().parent
        else:
            logger.warning("No %s found; using built-in defaults", DEFAULT_CONFIG_FILE)
            base_dir = Path.cwd()
    else:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError("Config file not found: {}".format(p))
        parser.read(p)
        base_dir = p.resolve().parent

    cfg = _from_parser(parser, base_dir)

    changes = {k: v for k, v in overrides.items() if v is not None}
    for key in ("data_dir", "output_dir"):
        if key in changes:
            changes[key] = Path(changes[key])
    if changes:
        cfg = dataclasses.replace(cfg, **changes)
        validate_config(cfg)
    return cfg


def add_config_args(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
    p.add_argument("-c", "--config", type=str, default=None, help="INI config file (default: ./analyses.ini)")
    p.add_argument("-d", "--data-dir", type=Path, default=None, help="Directory holding the CSV datasets")
    p.add_argument("-o", "--output-dir", type=Path, default=None, help="Directory for tables and figures")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("-v", "--verbose", action="store_true")
    return p


def config_from_args(a: argparse.Namespace) -> Config:
    cfg = load_config(a.config, data_dir=a.data_dir, output_dir=a.output_dir, seed=a.seed)
    if not cfg.data_dir.exists() or not cfg.data_dir.is_dir():
        raise NotADirectoryError("Data directory not found or not a directory: {}".format(cfg.data_dir))
    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    return cfg


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
