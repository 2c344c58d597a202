"""
Poisson Log-Normal Reanalysis of a Mass Cytometry Cohort

Usage:
    python run_analysis.py --data-url URL --celltype "Granulocytes" --output results/
"""

import argparse
import json
import logging
import os

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpyro

from cytopln.config import AnalysisConfig
from cytopln.data import fetch_dataset, load_samples, require_cohort, select_cohort, summary
from cytopln.inference import load_or_fit
from cytopln.diagnostics import (
    convergence_summary,
    flag_convergence,
    posterior_quantiles,
    write_report,
)
from cytopln.analysis import (
    bayes_fdr,
    correlation_change_graph,
    correlation_change_probability,
    fixed_effect_summary,
    sigma_change_probability,
)
from cytopln.simulate import simulate_from_fit
from cytopln.gof import TEST_STATISTICS, evaluate_statistic, posterior_predictive_pvalue
from cytopln.plotting import (
    plot_convergence,
    plot_correlation_graph,
    plot_correlations,
    plot_fixed_effects,
    plot_gof,
    plot_marker_densities,
    plot_sigma,
)


def banner(title):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def run_pipeline(config: AnalysisConfig):
    """Run complete analysis pipeline."""

    os.makedirs(config.output_dir, exist_ok=True)

    # Load data
    banner("LOADING DATA")
    adata = fetch_dataset(config.data_url, config.data_path)
    df, markers = load_samples(adata, config.markers)
    print(f"  Loaded {len(df):,} cells from {config.data_path}")

    banner("COHORT SELECTION")
    cohort = select_cohort(df, config.celltype, config.max_cells_per_donor, seed=config.seed,
                           group=config.group, celltype_col=config.celltype_col)
    require_cohort(cohort, config.celltype)
    print(f"  Cell type: {config.celltype} (max {config.max_cells_per_donor} cells per donor)")
    summary(cohort, markers, config.condition, config.group)

    # Fit or reuse cache
    banner("MODEL FIT")
    fit = load_or_fit(
        config.fit_cache_path, cohort, markers,
        condition=config.condition,
        group=config.group,
        num_iter=config.num_iter,
        num_warmup=config.num_warmup,
        num_chains=config.num_chains,
        seed=config.seed,
    )

    banner("DIAGNOSTICS")
    conv = convergence_summary(fit)
    flagged = flag_convergence(conv)
    report_path = write_report(config.output_dir / "diagnostics.txt", fit, conv, flagged,
                               extra={"Cell type": config.celltype,
                                      "Max cells per donor": config.max_cells_per_donor})
    print(f"  Max R-hat: {conv['r_hat'].max():.3f}, min n_eff: {conv['n_eff'].min():.0f}")
    print(f"  Flagged parameters: {len(flagged)}")
    print(f"  Saved: {report_path.name}")
    conv.to_csv(config.output_dir / "convergence_summary.csv", index=False)

    banner("POSTERIOR SUMMARIES")
    effects = fixed_effect_summary(fit)
    effects.to_csv(config.output_dir / "fixed_effects.csv", index=False)
    quantiles = posterior_quantiles(fit, ["sigma", "sigma_term", "sigma_donor"])
    quantiles.to_csv(config.output_dir / "sigma_quantiles.csv", index=False)
    sigma_prob = sigma_change_probability(fit)

    print(f"\n  Fixed effect changes ({fit.levels[0]} -> {fit.levels[1]}):")
    for _, row in effects.sort_values("diff_median", key=abs, ascending=False).head(10).iterrows():
        print(f"    {row['marker']}: {row['diff_median']:+.2f} "
              f"({row['diff_low']:+.2f}, {row['diff_high']:+.2f}), "
              f"P(increase) = {row['prob_increase']:.2f}")

    cor_prob = correlation_change_probability(fit)
    edges = correlation_change_graph(cor_prob, fit.markers, threshold=config.cor_threshold)
    fdr = bayes_fdr(edges)
    edges.to_csv(config.output_dir / "correlation_changes.csv", index=False)
    print(f"\n  Correlation changes with P > {config.cor_threshold}: {len(edges)} "
          f"(Bayes FDR = {fdr:.3f})")

    banner("GOODNESS OF FIT")
    gof_results = {}
    for name, statistic in TEST_STATISTICS.items():
        res = evaluate_statistic(fit, statistic, n_draws=config.n_ppc_draws, seed=config.seed,
                                 n_jobs=config.n_jobs, cofactor=config.asinh_cofactor)
        gof_results[name] = res
        pvals = posterior_predictive_pvalue(res)
        for _, row in pvals.iterrows():
            print(f"  {name} [{row['condition']}]: observed = {row['observed']:.3f}, "
                  f"simulated mean = {row['simulated_mean']:.3f}, p = {row['p_value']:.2f}")

    # Generate figures
    banner("GENERATING FIGURES")
    figures = [
        ("convergence", lambda p: plot_convergence(conv, config=config.plot, save_path=p)),
        ("fixed_effects", lambda p: plot_fixed_effects(effects, fit.levels, config=config.plot,
                                                       save_path=p)),
        ("sigma", lambda p: plot_sigma(fit, config=config.plot, save_path=p)),
        ("correlations", lambda p: plot_correlations(fit, config=config.plot, save_path=p)),
        ("correlation_graph", lambda p: plot_correlation_graph(edges, fit.markers, fdr=fdr,
                                                               config=config.plot, save_path=p)),
        ("marker_densities", lambda p: plot_marker_densities(
            fit.df, simulate_from_fit(fit, fit.num_draws - 1, seed=config.seed), fit.markers,
            fit.condition, cofactor=config.asinh_cofactor, config=config.plot, save_path=p)),
    ]
    figures += [
        (f"gof_{name}", lambda p, name=name: plot_gof(gof_results[name], name,
                                                      config=config.plot, save_path=p))
        for name in gof_results
    ]
    for name, make in figures:
        path = config.figure_path(name)
        fig = make(path)
        plt.close(fig)
        print(f"  Saved: {path.name}")

    # Save results
    banner("SAVING RESULTS")
    results = {
        "celltype": config.celltype,
        "n_cells": len(fit.df),
        "levels": [str(lvl) for lvl in fit.levels],
        "max_r_hat": float(conv["r_hat"].max()),
        "min_n_eff": float(conv["n_eff"].min()),
        "n_flagged": int(len(flagged)),
        "sigma_prob_increase": {m: float(p) for m, p in sigma_prob.items()},
        "correlation_edges": edges.to_dict(orient="records"),
        "bayes_fdr": fdr,
        "gof_p_values": {
            name: posterior_predictive_pvalue(res).to_dict(orient="records")
            for name, res in gof_results.items()
        },
    }
    with open(config.output_dir / "results.json", "w") as f:
        json.dump(results, f, indent=2, default=str)
    print("  Saved: results.json")

    banner("ANALYSIS COMPLETE")
    return fit, results


def main():
    parser = argparse.ArgumentParser(description="Poisson log-normal reanalysis of mass cytometry data")
    parser.add_argument("--celltype", required=True, help="Cell type label to analyse")
    parser.add_argument("--data-url", default=None, help="URL of the preprocessed .h5ad dataset")
    parser.add_argument("--data-file", default="aghaeepour2017_cytof.h5ad",
                        help="Local file name of the cached dataset")
    parser.add_argument("--data-dir", default="data", help="Dataset and fit cache directory")
    parser.add_argument("--output", default="results/", help="Output directory")
    parser.add_argument("--markers", nargs="+", default=None, help="Subset of markers to model")
    parser.add_argument("--condition", default="term", help="Condition column (two levels)")
    parser.add_argument("--group", default="donor", help="Donor column")
    parser.add_argument("--celltype-col", default="celltype", help="Cell type column")
    parser.add_argument("--max-cells", type=int, default=1000, help="Maximum cells per donor")
    parser.add_argument("--num-iter", type=int, default=325, help="MCMC iterations incl. warm-up")
    parser.add_argument("--num-warmup", type=int, default=200, help="MCMC warm-up iterations")
    parser.add_argument("--num-chains", type=int, default=8, help="Number of MCMC chains")
    parser.add_argument("--n-ppc-draws", type=int, default=100,
                        help="Posterior draws used for goodness-of-fit")
    parser.add_argument("--n-jobs", type=int, default=1, help="Parallel workers for goodness-of-fit")
    parser.add_argument("--cor-threshold", type=float, default=0.95,
                        help="Posterior probability threshold for correlation changes")
    parser.add_argument("--seed", type=int, default=1, help="Random seed")

    args = parser.parse_args()

    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    # must happen before the first jax computation
    numpyro.set_host_device_count(args.num_chains)

    config = AnalysisConfig(
        celltype=args.celltype,
        data_url=args.data_url,
        data_file=args.data_file,
        data_dir=args.data_dir,
        output_dir=args.output,
        condition=args.condition,
        group=args.group,
        celltype_col=args.celltype_col,
        markers=args.markers,
        max_cells_per_donor=args.max_cells,
        num_iter=args.num_iter,
        num_warmup=args.num_warmup,
        num_chains=args.num_chains,
        seed=args.seed,
        n_ppc_draws=args.n_ppc_draws,
        n_jobs=args.n_jobs,
        cor_threshold=args.cor_threshold,
    )
    run_pipeline(config)


if __name__ == "__main__":
    main()
