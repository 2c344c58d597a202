"""Smoke tests for the figure functions: each one draws and saves a PDF."""

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pytest

from cytopln.analysis import correlation_change_graph, correlation_change_probability, fixed_effect_summary
from cytopln.config import PlotConfig, plot_theme
from cytopln.diagnostics import convergence_summary
from cytopln.gof import evaluate_statistic, stat_mean_sd
from cytopln.plotting import (
    plot_convergence,
    plot_correlation_graph,
    plot_correlations,
    plot_fixed_effects,
    plot_gof,
    plot_marker_densities,
    plot_sigma,
)
from cytopln.simulate import simulate_from_fit


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


def _saved(path):
    return path.exists() and path.stat().st_size > 0


def test_plot_theme_restores_rcparams():
    before = matplotlib.rcParams["axes.grid"]
    with plot_theme(PlotConfig(style="whitegrid")):
        assert matplotlib.rcParams["axes.grid"] is True
    assert matplotlib.rcParams["axes.grid"] == before


def test_plot_convergence(random_fit, tmp_path):
    path = tmp_path / "convergence.pdf"
    plot_convergence(convergence_summary(random_fit), save_path=path)
    assert _saved(path)


def test_plot_fixed_effects(random_fit, tmp_path):
    path = tmp_path / "fixed_effects.pdf"
    fig = plot_fixed_effects(fixed_effect_summary(random_fit), random_fit.levels, save_path=path)
    assert _saved(path)
    assert [t.get_text() for t in fig.axes[0].get_yticklabels()] == random_fit.markers


def test_plot_sigma(random_fit, tmp_path):
    path = tmp_path / "sigma.pdf"
    plot_sigma(random_fit, save_path=path)
    assert _saved(path)


def test_plot_correlations(random_fit, tmp_path):
    path = tmp_path / "correlations.pdf"
    fig = plot_correlations(random_fit, save_path=path)
    assert _saved(path)
    # three heatmaps and a shared colorbar
    assert len(fig.axes) == 4


def test_plot_correlation_graph(random_fit, tmp_path):
    prob = correlation_change_probability(random_fit)
    edges = correlation_change_graph(prob, random_fit.markers, threshold=0.5)
    path = tmp_path / "graph.pdf"
    plot_correlation_graph(edges, random_fit.markers, fdr=0.1, save_path=path)
    assert _saved(path)


def test_plot_correlation_graph_without_edges(trivial_fit, tmp_path):
    edges = correlation_change_graph(np.full((3, 3), 0.5), trivial_fit.markers, threshold=0.95)
    path = tmp_path / "graph.pdf"
    fig = plot_correlation_graph(edges, trivial_fit.markers, save_path=path)
    assert _saved(path)
    assert "0 edges" in fig.axes[0].get_title()


def test_plot_gof(random_fit, tmp_path):
    results = evaluate_statistic(random_fit, stat_mean_sd, n_draws=5, seed=0)
    path = tmp_path / "gof.pdf"
    fig = plot_gof(results, "mean_sd", save_path=path)
    assert _saved(path)
    assert len(fig.axes) == 2


def test_plot_marker_densities(trivial_fit, tmp_path):
    simulated = simulate_from_fit(trivial_fit, 0, seed=1)
    path = tmp_path / "densities.pdf"
    plot_marker_densities(trivial_fit.df, simulated, trivial_fit.markers, "term",
                          config=PlotConfig(fmt="pdf"), save_path=path)
    assert _saved(path)
