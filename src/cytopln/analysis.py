import networkx as nx
import numpy as np
import pandas as pd

from .diagnostics import QUANTILES


def fixed_effect_summary(fit, probs=QUANTILES) -> pd.DataFrame:
    """Per-marker quantiles of beta for both levels and of their difference."""
    beta = fit.draws("beta")
    diff = beta[:, :, 1] - beta[:, :, 0]

    records = []
    for d, marker in enumerate(fit.markers):
        rec = {"marker": marker}
        for l, level in enumerate(fit.levels):
            q = np.quantile(beta[:, d, l], probs)
            rec.update({f"{level}_low": q[0], f"{level}_median": q[1], f"{level}_high": q[2]})
        q = np.quantile(diff[:, d], probs)
        rec.update({"diff_low": q[0], "diff_median": q[1], "diff_high": q[2],
                    "prob_increase": float(np.mean(diff[:, d] > 0))})
        records.append(rec)
    return pd.DataFrame(records)


def sigma_change_probability(fit) -> pd.Series:
    """P(sigma_term > sigma) per marker."""
    prob = np.mean(fit.draws("sigma_term") > fit.draws("sigma"), axis=0)
    return pd.Series(prob, index=fit.markers, name="prob_increase")


def correlation_change_probability(fit) -> np.ndarray:
    """Matrix of P(Cor_term[i, j] > Cor[i, j]) over posterior draws."""
    return np.mean(fit.draws("Cor_term") > fit.draws("Cor"), axis=0)


def correlation_change_graph(prob, markers, threshold=0.95) -> pd.DataFrame:
    """Undirected edges between markers whose correlation changed with high probability.

    A pair i < j is an edge when P(increase) > threshold or
    P(decrease) = 1 - P(increase) > threshold.
    """
    prob = np.asarray(prob, dtype=float)
    n = len(markers)
    if prob.shape != (n, n):
        raise ValueError(f"prob has shape {prob.shape}, expected {(n, n)}")

    records = []
    for i in range(n):
        for j in range(i + 1, n):
            p = prob[i, j]
            if p > threshold:
                records.append({"marker_a": markers[i], "marker_b": markers[j],
                                "prob": p, "direction": "increase"})
            elif 1 - p > threshold:
                records.append({"marker_a": markers[i], "marker_b": markers[j],
                                "prob": 1 - p, "direction": "decrease"})
    return pd.DataFrame(records, columns=["marker_a", "marker_b", "prob", "direction"])


def bayes_fdr(edges) -> float:
    """Expected proportion of false edges among the selected ones."""
    if len(edges) == 0:
        return 0.0
    return float(np.mean(1 - edges["prob"].to_numpy()))


def to_networkx(edges, markers) -> nx.Graph:
    g = nx.Graph()
    g.add_nodes_from(markers)
    for _, e in edges.iterrows():
        g.add_edge(e["marker_a"], e["marker_b"], prob=e["prob"], direction=e["direction"])
    return g


def posterior_mean_correlations(fit):
    return {name: fit.draws(name).mean(axis=0) for name in ("Cor", "Cor_term", "Cor_donor")}
