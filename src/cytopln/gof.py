"""Posterior predictive goodness-of-fit checks.

A test statistic is any callable ``statistic(x, median) -> float`` where ``x``
is the asinh-transformed cells x markers array of one condition level and
``median`` is that array's per-marker median. Observed values are compared
against the distribution of the same statistic over tables simulated from
posterior draws.
"""
from typing import Callable, Dict, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .simulate import draw_parameters, sample_y_hat

Statistic = Callable[[np.ndarray, np.ndarray], float]


def asinh_transform(counts, cofactor=5.0):
    return np.arcsinh(np.asarray(counts, dtype=float) / cofactor)


def stat_all_above_median(x, median):
    """Fraction of cells above the median in every marker."""
    return float(np.mean(np.all(x > median, axis=1))) if len(x) else np.nan


def stat_all_below_median(x, median):
    """Fraction of cells below the median in every marker."""
    return float(np.mean(np.all(x < median, axis=1))) if len(x) else np.nan


def stat_mean_correlation(x, median):
    """Mean off-diagonal Pearson correlation between markers."""
    if len(x) < 2:
        return np.nan
    varying = x.std(axis=0) > 0
    if varying.sum() < 2:
        return 0.0
    cor = np.corrcoef(x[:, varying], rowvar=False)
    return float(cor[np.triu_indices_from(cor, k=1)].mean())


def stat_mean_sd(x, median):
    return float(x.std(axis=0).mean()) if len(x) else np.nan


TEST_STATISTICS: Dict[str, Statistic] = {
    "all_above_median": stat_all_above_median,
    "all_below_median": stat_all_below_median,
    "mean_correlation": stat_mean_correlation,
    "mean_sd": stat_mean_sd,
}


def _level_statistics(df, markers, condition, levels, statistic, cofactor):
    values = []
    for level in levels:
        x = asinh_transform(df.loc[df[condition] == level, markers].to_numpy(), cofactor)
        median = np.median(x, axis=0) if len(x) else np.full(len(markers), np.nan)
        values.append(float(statistic(x, median)))
    return values


def observed_statistic(df, markers, condition, statistic: Statistic, cofactor=5.0,
                       levels=None) -> pd.DataFrame:
    if levels is None:
        levels = sorted(df[condition].unique())
    values = _level_statistics(df, markers, condition, levels, statistic, cofactor)
    return pd.DataFrame({"condition": list(levels), "value": values, "source": "observed"})


def _simulated_statistic(params, cell_counts, markers, levels, condition, statistic,
                         cofactor, seed):
    rng = np.random.default_rng(seed)
    y_hat = sample_y_hat(params, cell_counts, markers, levels, rng, condition=condition)
    return _level_statistics(y_hat, markers, condition, levels, statistic, cofactor)


def select_draws(num_draws, n_draws=None) -> np.ndarray:
    """Evenly spaced draw indices; all draws when `n_draws` is None or too large."""
    if n_draws is None or n_draws >= num_draws:
        return np.arange(num_draws)
    if n_draws < 1:
        raise ValueError(f"n_draws must be >= 1, got {n_draws}")
    return np.unique(np.linspace(0, num_draws - 1, n_draws).round().astype(int))


def evaluate_statistic(fit, statistic: Statistic, n_draws: Optional[int] = 100, seed=0,
                       n_jobs=1, cofactor=5.0, verbose=False) -> pd.DataFrame:
    """Observed statistic per condition plus its posterior predictive reference.

    Each selected draw simulates one table with its own child seed, so the
    result does not depend on `n_jobs` or scheduling order.

    Returns a long frame with columns condition, value, source, draw where
    source is "observed" (draw = -1) or "simulated".
    """
    observed = observed_statistic(fit.df, fit.markers, fit.condition, statistic,
                                  cofactor=cofactor, levels=fit.levels)
    observed["draw"] = -1

    draws = select_draws(fit.num_draws, n_draws)
    seeds = np.random.SeedSequence(seed).spawn(len(draws))
    cell_counts = fit.cell_counts()

    rows = Parallel(n_jobs=n_jobs, verbose=10 if verbose else 0)(
        delayed(_simulated_statistic)(
            draw_parameters(fit, int(i)), cell_counts, fit.markers, fit.levels,
            fit.condition, statistic, cofactor, s)
        for i, s in zip(draws, seeds)
    )

    simulated = pd.DataFrame([
        {"condition": level, "value": value, "source": "simulated", "draw": int(i)}
        for i, values in zip(draws, rows)
        for level, value in zip(fit.levels, values)
    ], columns=["condition", "value", "source", "draw"])
    return pd.concat([observed, simulated], ignore_index=True)


def evaluate_all(fit, statistics: Optional[Dict[str, Statistic]] = None, **kwargs) -> pd.DataFrame:
    """Run `evaluate_statistic` for every named statistic; adds a statistic column."""
    if statistics is None:
        statistics = TEST_STATISTICS
    frames = []
    for name, statistic in statistics.items():
        res = evaluate_statistic(fit, statistic, **kwargs)
        res.insert(0, "statistic", name)
        frames.append(res)
    return pd.concat(frames, ignore_index=True)


def posterior_predictive_pvalue(results) -> pd.DataFrame:
    """Fraction of simulated values at or above the observed one, per condition."""
    keys = ["statistic", "condition"] if "statistic" in results.columns else ["condition"]
    records = []
    for key, grp in results.groupby(keys, sort=False):
        observed = grp.loc[grp["source"] == "observed", "value"]
        simulated = grp.loc[grp["source"] == "simulated", "value"].to_numpy()
        obs = float(observed.iloc[0]) if len(observed) else np.nan
        key = key if isinstance(key, tuple) else (key,)
        rec = dict(zip(keys, key))
        rec.update({
            "observed": obs,
            "simulated_mean": float(simulated.mean()) if len(simulated) else np.nan,
            "p_value": float(np.mean(simulated >= obs)) if len(simulated) else np.nan,
        })
        records.append(rec)
    return pd.DataFrame(records)
