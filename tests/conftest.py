"""Shared fixtures: a simulated experiment written to a temporary data directory."""

import matplotlib

matplotlib.use("Agg")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from reef_symbiosis.config import Config  # noqa: E402
from reef_symbiosis.data import code_treatments  # noqa: E402
from reef_symbiosis.simulate import simulate_experiment, write_experiment  # noqa: E402


@pytest.fixture(scope="session")
def experiment():
    return simulate_experiment(seed=11)


@pytest.fixture(scope="session")
def meta(experiment):
    return code_treatments(experiment["metadata"])


@pytest.fixture(scope="session")
def data_dir(tmp_path_factory, experiment):
    d = tmp_path_factory.mktemp("data")
    write_experiment(d, seed=11)
    return d


@pytest.fixture
def cfg(data_dir, tmp_path):
    return Config(data_dir=data_dir, output_dir=tmp_path / "results", n_sim=50, n_boot=10, n_perm=49, dpi=40)


@pytest.fixture
def rng():
    return np.random.default_rng(0)
