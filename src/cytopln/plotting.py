import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import seaborn as sns

from .analysis import posterior_mean_correlations, to_networkx
from .config import PlotConfig, plot_theme
from .diagnostics import QUANTILES
from .gof import asinh_transform


def _finish(fig, save_path, config):
    plt.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=config.dpi, bbox_inches="tight")
    return fig


def plot_convergence(summary, rhat_max=1.1, min_ess=100, config=None, save_path=None):
    """Histograms of split R-hat and effective sample size."""
    config = config or PlotConfig()
    with plot_theme(config):
        fig, axes = plt.subplots(1, 2, figsize=(10, 3.5))
        axes[0].hist(summary["r_hat"].dropna(), bins=40, color="#2c3e50", alpha=0.8)
        axes[0].axvline(rhat_max, color="#e74c3c", linestyle="--", label=f"{rhat_max}")
        axes[0].set_xlabel("Split R-hat")
        axes[0].set_ylabel("Parameters")
        axes[0].legend()
        axes[1].hist(summary["n_eff"].dropna(), bins=40, color="#2c3e50", alpha=0.8)
        axes[1].axvline(min_ess, color="#e74c3c", linestyle="--", label=f"{min_ess}")
        axes[1].set_xlabel("Effective sample size")
        axes[1].legend()
        fig.suptitle("MCMC convergence")
        return _finish(fig, save_path, config)


def plot_fixed_effects(effects, levels, config=None, save_path=None):
    """Posterior median and 95% interval of beta per marker and condition."""
    config = config or PlotConfig()
    markers = list(effects["marker"])
    y = np.arange(len(markers))
    with plot_theme(config):
        fig, ax = plt.subplots(figsize=(6, 0.35 * len(markers) + 1.5))
        for l, (level, color) in enumerate(zip(levels, config.level_colors)):
            med = effects[f"{level}_median"].to_numpy()
            err = [med - effects[f"{level}_low"].to_numpy(),
                   effects[f"{level}_high"].to_numpy() - med]
            ax.errorbar(med, y + (l - 0.5) * 0.3, xerr=err, fmt="o", color=color,
                        markersize=4, capsize=2, label=str(level))
        ax.set_yticks(y)
        ax.set_yticklabels(markers)
        ax.invert_yaxis()
        ax.set_xlabel("beta (log expected count)")
        ax.legend(fontsize=8)
        ax.set_title("Fixed effects")
        return _finish(fig, save_path, config)


def plot_sigma(fit, config=None, save_path=None):
    """Cell-level standard deviations per marker for both conditions."""
    config = config or PlotConfig()
    y = np.arange(len(fit.markers))
    with plot_theme(config):
        fig, ax = plt.subplots(figsize=(6, 0.35 * len(fit.markers) + 1.5))
        sites = [("sigma", fit.levels[0]), ("sigma_term", fit.levels[1]),
                 ("sigma_donor", fit.group)]
        colors = list(config.level_colors) + ["#7f8c8d"]
        for k, ((site, label), color) in enumerate(zip(sites, colors)):
            q = np.quantile(fit.draws(site), QUANTILES, axis=0)
            ax.errorbar(q[1], y + (k - 1) * 0.25, xerr=[q[1] - q[0], q[2] - q[1]],
                        fmt="o", color=color, markersize=4, capsize=2, label=str(label))
        ax.set_yticks(y)
        ax.set_yticklabels(fit.markers)
        ax.invert_yaxis()
        ax.set_xlabel("Standard deviation (log scale)")
        ax.legend(fontsize=8)
        ax.set_title("Random effect standard deviations")
        return _finish(fig, save_path, config)


def plot_correlations(fit, config=None, save_path=None):
    """Posterior mean correlation matrices for both conditions and donors."""
    config = config or PlotConfig()
    means = posterior_mean_correlations(fit)
    titles = {"Cor": f"Cells: {fit.levels[0]}", "Cor_term": f"Cells: {fit.levels[1]}",
              "Cor_donor": "Donors"}
    K = len(fit.markers)
    annotate = K <= 12
    with plot_theme(config):
        fig, axes = plt.subplots(1, 3, figsize=(5 * 3, 4.5))
        for ax, (name, cor) in zip(axes, means.items()):
            im = ax.imshow(cor, cmap="RdBu_r", vmin=-1, vmax=1)
            if annotate:
                for i in range(K):
                    for j in range(K):
                        color = "white" if abs(cor[i, j]) > 0.6 else "black"
                        ax.text(j, i, f"{cor[i, j]:.2f}", ha="center", va="center",
                                fontsize=6, color=color)
            ax.set_xticks(range(K))
            ax.set_xticklabels(fit.markers, rotation=90, fontsize=7)
            ax.set_yticks(range(K))
            ax.set_yticklabels(fit.markers, fontsize=7)
            ax.set_title(titles[name])
        plt.colorbar(im, ax=axes, shrink=0.8, label="Posterior mean correlation")
        if save_path:
            fig.savefig(save_path, dpi=config.dpi, bbox_inches="tight")
        return fig


def plot_correlation_graph(edges, markers, fdr=None, config=None, save_path=None):
    """Marker graph of correlation changes; red = increase, blue = decrease."""
    config = config or PlotConfig()
    g = to_networkx(edges, markers)
    pos = nx.circular_layout(g)
    with plot_theme(config):
        fig, ax = plt.subplots(figsize=(6, 6))
        nx.draw_networkx_nodes(g, pos, node_size=600, node_color="#ecf0f1",
                               edgecolors="#2c3e50", ax=ax)
        nx.draw_networkx_labels(g, pos, font_size=8, ax=ax)
        if g.number_of_edges():
            edge_list = list(g.edges(data=True))
            colors = ["#E63946" if d["direction"] == "increase" else "#457B9D"
                      for _, _, d in edge_list]
            widths = [1 + 4 * (d["prob"] - 0.5) for _, _, d in edge_list]
            nx.draw_networkx_edges(g, pos, edgelist=[(a, b) for a, b, _ in edge_list],
                                   edge_color=colors, width=widths, ax=ax)
        title = f"Correlation changes ({g.number_of_edges()} edges"
        title += f", Bayes FDR = {fdr:.3f})" if fdr is not None else ")"
        ax.set_title(title)
        ax.axis("off")
        return _finish(fig, save_path, config)


def plot_gof(results, statistic_name="", config=None, save_path=None):
    """Simulated statistic histogram with the observed value, one panel per condition."""
    config = config or PlotConfig()
    conditions = list(dict.fromkeys(results["condition"]))
    with plot_theme(config):
        fig, axes = plt.subplots(1, len(conditions), figsize=(5 * len(conditions), 3.5),
                                 squeeze=False)
        for ax, cond in zip(axes[0], conditions):
            grp = results[results["condition"] == cond]
            sim = grp.loc[grp["source"] == "simulated", "value"].dropna()
            obs = grp.loc[grp["source"] == "observed", "value"]
            ax.hist(sim, bins=30, color="#95a5a6", alpha=0.8, edgecolor="white")
            for v in obs:
                ax.axvline(v, color="#E63946", linewidth=2, label="observed")
            ax.set_title(str(cond))
            ax.set_xlabel(statistic_name or "statistic")
            ax.set_ylabel("Simulated draws")
        axes[0][0].legend(fontsize=8)
        fig.suptitle(f"Posterior predictive check: {statistic_name}")
        return _finish(fig, save_path, config)


def plot_marker_densities(observed, simulated, markers, condition, cofactor=5.0,
                          config=None, save_path=None):
    """Observed vs simulated asinh-transformed marker distributions."""
    config = config or PlotConfig()
    n_cols = min(len(markers), 4)
    n_rows = (len(markers) + n_cols - 1) // n_cols
    with plot_theme(config):
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(3.5 * n_cols, 2.8 * n_rows),
                                 squeeze=False)
        axes = axes.flatten()
        for ax, marker in zip(axes, markers):
            for frame, label, style in [(observed, "observed", "-"), (simulated, "simulated", "--")]:
                for level, color in zip(sorted(frame[condition].unique()), config.level_colors):
                    x = asinh_transform(frame.loc[frame[condition] == level, marker], cofactor)
                    sns.histplot(x, stat="density", element="step", fill=False, bins=30,
                                 color=color, linestyle=style, ax=ax,
                                 label=f"{label} {level}")
            ax.set_title(marker)
            ax.set_xlabel(f"asinh(x / {cofactor:g})")
        for ax in axes[len(markers):]:
            ax.axis("off")
        axes[0].legend(fontsize=6)
        return _finish(fig, save_path, config)
