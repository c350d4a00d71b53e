"""Tests for reef_symbiosis.config: INI loading, overrides and validation."""

import argparse
from pathlib import Path

import pytest

from reef_symbiosis.config import (
    DEFAULT_FILES,
    Config,
    add_config_args,
    config_from_args,
    load_config,
    validate_config,
)


def _write_ini(path: Path, body: str) -> Path:
    path.write_text(body)
    return path


# ----------------------------
# load_config
# ----------------------------

class TestLoadConfig:
    def test_reads_sections(self, tmp_path):
        ini = _write_ini(tmp_path / "a.ini", "[Paths]\ndata_dir = raw\n\n[Models]\nseed = 7\nn_sim = 99\n\n"
                                             "[Community]\ntransform = Hellinger\n")
        cfg = load_config(str(ini))
        assert cfg.seed == 7
        assert cfg.n_sim == 99
        assert cfg.transform == "hellinger"
        assert cfg.data_dir == tmp_path / "raw"

    def test_missing_keys_fall_back(self, tmp_path):
        cfg = load_config(str(_write_ini(tmp_path / "empty.ini", "")))
        assert cfg.alpha == 0.05
        assert cfg.n_perm == 999
        assert cfg.files == DEFAULT_FILES

    def test_files_section_overrides_one_name(self, tmp_path):
        cfg = load_config(str(_write_ini(tmp_path / "f.ini", "[Files]\ngrowth = weights_2024.csv\n")))
        assert cfg.files["growth"] == "weights_2024.csv"
        assert cfg.files["mortality"] == DEFAULT_FILES["mortality"]

    def test_explicit_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.ini"))

    def test_keyword_overrides(self, tmp_path):
        cfg = load_config(str(_write_ini(tmp_path / "o.ini", "")), seed=3, data_dir=str(tmp_path / "x"), n_boot=None)
        assert cfg.seed == 3
        assert cfg.data_dir == tmp_path / "x"
        assert cfg.n_boot == 200

    def test_invalid_alpha_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="alpha"):
            load_config(str(_write_ini(tmp_path / "bad.ini", "[Models]\nalpha = 1.5\n")))

    def test_invalid_transform_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="transform"):
            load_config(str(_write_ini(tmp_path / "bad.ini", "[Community]\ntransform = cube\n")))


# ----------------------------
# Config
# ----------------------------

class TestConfig:
    def test_data_path(self, tmp_path):
        cfg = Config(data_dir=tmp_path)
        assert cfg.data_path("tissue") == tmp_path / "tissue_nutrients.csv"

    def test_unknown_dataset_key(self):
        with pytest.raises(KeyError):
            Config().data_path("plankton")

    def test_analysis_dir_created(self, tmp_path):
        cfg = Config(output_dir=tmp_path / "out")
        d = cfg.analysis_dir("coral_growth")
        assert d.is_dir()

    def test_frozen(self):
        cfg = Config()
        with pytest.raises(Exception):
            cfg.seed = 1

    def test_validate_counts(self):
        with pytest.raises(ValueError, match="n_perm"):
            validate_config(Config(n_perm=0))


# ----------------------------
# command-line arguments
# ----------------------------

class TestArgs:
    def _parse(self, argv):
        return add_config_args(argparse.ArgumentParser()).parse_args(argv)

    def test_missing_data_dir(self, tmp_path):
        ini = _write_ini(tmp_path / "c.ini", "")
        args = self._parse(["-c", str(ini), "-d", str(tmp_path / "missing")])
        with pytest.raises(NotADirectoryError):
            config_from_args(args)

    def test_output_dir_created(self, tmp_path):
        ini = _write_ini(tmp_path / "c.ini", "")
        args = self._parse(["-c", str(ini), "-d", str(tmp_path), "-o", str(tmp_path / "res"), "--seed", "5"])
        cfg = config_from_args(args)
        assert cfg.seed == 5
        assert (tmp_path / "res").is_dir()
