"""Tests for posterior summaries and the correlation change graph."""

import numpy as np
import pytest

from cytopln.analysis import (
    bayes_fdr,
    correlation_change_graph,
    correlation_change_probability,
    fixed_effect_summary,
    posterior_mean_correlations,
    sigma_change_probability,
    to_networkx,
)

MARKERS = ["CD3", "CD4", "CD8"]


def test_graph_contains_all_pairs_above_threshold():
    prob = np.full((3, 3), 0.9)
    edges = correlation_change_graph(prob, MARKERS, threshold=0.8)
    assert len(edges) == 3
    pairs = {frozenset(p) for p in zip(edges["marker_a"], edges["marker_b"])}
    assert pairs == {frozenset(("CD3", "CD4")), frozenset(("CD3", "CD8")),
                     frozenset(("CD4", "CD8"))}
    assert (edges["direction"] == "increase").all()


def test_graph_detects_decreases():
    prob = np.array([
        [0.5, 0.02, 0.5],
        [0.02, 0.5, 0.85],
        [0.5, 0.85, 0.5],
    ])
    edges = correlation_change_graph(prob, MARKERS, threshold=0.95).set_index(
        ["marker_a", "marker_b"])
    assert list(edges.index) == [("CD3", "CD4")]
    assert edges.loc[("CD3", "CD4"), "direction"] == "decrease"
    assert edges.loc[("CD3", "CD4"), "prob"] == pytest.approx(0.98)


def test_graph_empty_and_shape_check():
    edges = correlation_change_graph(np.full((3, 3), 0.5), MARKERS, threshold=0.8)
    assert len(edges) == 0
    assert list(edges.columns) == ["marker_a", "marker_b", "prob", "direction"]
    with pytest.raises(ValueError):
        correlation_change_graph(np.full((2, 2), 0.9), MARKERS)


def test_bayes_fdr():
    edges = correlation_change_graph(
        np.array([[0.5, 0.9, 0.95], [0.9, 0.5, 0.5], [0.95, 0.5, 0.5]]), MARKERS, threshold=0.8)
    assert bayes_fdr(edges) == pytest.approx(0.075)
    assert bayes_fdr(edges.iloc[:0]) == 0.0


def test_to_networkx():
    edges = correlation_change_graph(np.full((3, 3), 0.9), MARKERS, threshold=0.8)
    g = to_networkx(edges.iloc[:1], MARKERS)
    assert set(g.nodes) == set(MARKERS)
    assert g.number_of_edges() == 1
    assert g.edges["CD3", "CD4"]["direction"] == "increase"


def test_correlation_change_probability(make_fit):
    fit = make_fit(n_draws=40)
    cor_term = fit.samples["Cor_term"].copy()
    cor_term[..., 0, 1] = cor_term[..., 1, 0] = 0.4
    cor_term[:, :20, 0, 2] = cor_term[:, :20, 2, 0] = 0.2
    cor_term[:, 20:, 0, 2] = cor_term[:, 20:, 2, 0] = -0.2
    fit.samples["Cor_term"] = cor_term

    prob = correlation_change_probability(fit)
    assert prob.shape == (3, 3)
    assert prob[0, 1] == 1.0
    assert prob[0, 2] == pytest.approx(0.5)
    assert prob[1, 2] == 0.0


def test_fixed_effect_summary_orders_quantiles(random_fit):
    effects = fixed_effect_summary(random_fit)
    assert list(effects["marker"]) == random_fit.markers
    for prefix in list(random_fit.levels) + ["diff"]:
        assert (effects[f"{prefix}_low"] <= effects[f"{prefix}_median"]).all()
        assert (effects[f"{prefix}_median"] <= effects[f"{prefix}_high"]).all()
    assert effects["prob_increase"].between(0, 1).all()


def test_sigma_change_probability(make_fit):
    fit = make_fit()
    fit.samples["sigma_term"] = fit.samples["sigma_term"] * np.array([2.0, 0.5, 1.0])
    prob = sigma_change_probability(fit)
    assert prob.to_dict() == {"CD3": 1.0, "CD4": 0.0, "CD8": 0.0}


def test_posterior_mean_correlations(trivial_fit):
    means = posterior_mean_correlations(trivial_fit)
    assert set(means) == {"Cor", "Cor_term", "Cor_donor"}
    np.testing.assert_array_equal(means["Cor"], np.eye(3))
