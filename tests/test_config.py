"""Tests for AnalysisConfig validation and derived paths."""

from pathlib import Path

import pytest

from cytopln.config import AnalysisConfig, PlotConfig


def test_defaults():
    config = AnalysisConfig(celltype="Granulocytes")
    assert config.num_samples == 125
    assert config.data_path == Path("data") / "aghaeepour2017_cytof.h5ad"
    assert config.data_url is None


def test_fit_cache_path_is_keyed_by_cell_cap(tmp_path):
    a = AnalysisConfig(celltype="Granulocytes", data_dir=tmp_path, max_cells_per_donor=1000)
    b = AnalysisConfig(celltype="Granulocytes", data_dir=tmp_path, max_cells_per_donor=200)
    assert a.fit_cache_path.parent == tmp_path
    assert "max1000" in a.fit_cache_path.name
    assert a.fit_cache_path != b.fit_cache_path


def test_figure_path_uses_plot_format(tmp_path):
    config = AnalysisConfig(celltype="Granulocytes", output_dir=str(tmp_path),
                            plot=PlotConfig(fmt="png"))
    assert config.figure_path("correlations") == tmp_path / "correlations.png"


@pytest.mark.parametrize("kwargs", [
    {"max_cells_per_donor": 0},
    {"num_iter": 200, "num_warmup": 200},
    {"num_warmup": -1},
    {"num_chains": 0},
    {"cor_threshold": 0.4},
    {"cor_threshold": 1.0},
])
def test_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        AnalysisConfig(celltype="Granulocytes", **kwargs)
