"""
Shared test fixtures for cytopln tests.
"""

import os

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


def pytest_configure(config):
    """Run JAX on CPU before any jax import happens."""
    os.environ.setdefault("JAX_PLATFORM_NAME", "cpu")


MARKERS = ["CD3", "CD4", "CD8"]
LEVELS = np.array(["1st trimester", "3rd trimester"], dtype=object)
DONORS = np.array(["D1", "D2"], dtype=object)


def _sample_table(n_cells, markers, rng):
    blocks = []
    for donor in DONORS:
        for level in LEVELS:
            block = pd.DataFrame(rng.poisson(1.0, size=(n_cells, len(markers))), columns=markers)
            block["donor"] = donor
            block["term"] = level
            block["celltype"] = "Granulocytes"
            blocks.append(block)
    return pd.concat(blocks, ignore_index=True)


def _random_cor(rng, shape, D):
    off = rng.uniform(-0.3, 0.3, size=shape + (D, D))
    cor = (off + np.swapaxes(off, -1, -2)) / 2
    idx = np.arange(D)
    cor[..., idx, idx] = 1.0
    return cor


def _make_fit(n_cells=100, markers=MARKERS, n_chains=1, n_draws=20, sd=0.1,
              random=False, seed=0):
    """FittedModel with hand-set posterior draws.

    Default: zero fixed effects, identity correlations and constant `sd` for
    every random effect. With random=True draws are jittered around that.
    """
    from cytopln.inference import FittedModel

    rng = np.random.default_rng(seed)
    markers = list(markers)
    D = len(markers)
    shape = (n_chains, n_draws)

    eye = np.broadcast_to(np.eye(D), shape + (D, D)).copy()
    samples = {
        "beta": np.zeros(shape + (D, 2)),
        "sigma": np.full(shape + (D,), sd),
        "sigma_term": np.full(shape + (D,), sd),
        "sigma_donor": np.full(shape + (D,), sd),
        "Cor": eye.copy(),
        "Cor_term": eye.copy(),
        "Cor_donor": eye.copy(),
        "b_donor": np.zeros(shape + (len(DONORS), D)),
    }
    if random:
        samples["beta"] = rng.normal(0.0, 0.1, size=shape + (D, 2))
        for name in ("sigma", "sigma_term", "sigma_donor"):
            samples[name] = sd * np.exp(rng.normal(0.0, 0.1, size=shape + (D,)))
        for name in ("Cor", "Cor_term", "Cor_donor"):
            samples[name] = _random_cor(rng, shape, D)

    return FittedModel(
        df=_sample_table(n_cells, markers, rng),
        markers=markers,
        condition="term",
        group="donor",
        levels=LEVELS.copy(),
        donors=DONORS.copy(),
        samples=samples,
        divergences=np.zeros(n_chains, dtype=int),
        num_warmup=10,
    )


@pytest.fixture
def make_fit():
    return _make_fit


@pytest.fixture
def trivial_fit():
    """100 cells per donor and condition, zero fixed effects, identity correlations."""
    return _make_fit()


@pytest.fixture
def random_fit():
    return _make_fit(n_chains=2, n_draws=50, random=True)


@pytest.fixture
def cells():
    """Cells of two types for three donors of different sizes."""
    rng = np.random.default_rng(42)
    sizes = {"D1": 50, "D2": 300, "D3": 120}
    blocks = []
    for donor, n in sizes.items():
        for celltype, n_type in [("Granulocytes", n), ("Monocytes", 20)]:
            block = pd.DataFrame(rng.poisson(3.0, size=(n_type, len(MARKERS))), columns=MARKERS)
            block["donor"] = donor
            block["term"] = rng.choice(LEVELS, size=n_type)
            block["celltype"] = celltype
            blocks.append(block)
    df = pd.concat(blocks, ignore_index=True)
    df.index = [f"cell{i}" for i in range(len(df))]
    return df
