import warnings
from pathlib import Path
from typing import Dict, Mapping, Sequence

import numpy as np
import pandas as pd
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin

SUMMARY_SITES = ("beta", "sigma", "sigma_term", "sigma_donor", "Cor", "Cor_term", "Cor_donor")
CORRELATION_SITES = ("Cor", "Cor_term", "Cor_donor")
QUANTILES = (0.025, 0.5, 0.975)
# split R-hat and ESS need at least this many draws per chain
MIN_DIAGNOSTIC_DRAWS = 4


def _axis_labels(name, shape, markers, levels=None, donors=None):
    if name == "beta":
        axes = [markers, levels]
    elif name == "b_donor":
        axes = [donors, markers]
    else:
        axes = [markers] * len(shape)
    labels = []
    for idx in np.ndindex(*shape):
        parts = []
        for axis, i in enumerate(idx):
            names = axes[axis] if axis < len(axes) else None
            parts.append(str(names[i]) if names is not None and len(names) == shape[axis] else str(i))
        labels.append(f"{name}[{','.join(parts)}]" if parts else name)
    return labels


def _keep_element(name, idx):
    # correlation matrices: off-diagonal upper triangle only
    if name in CORRELATION_SITES:
        return idx[0] < idx[1]
    return True


def convergence_summary(fit, params: Sequence[str] = SUMMARY_SITES) -> pd.DataFrame:
    """Posterior mean, sd, effective sample size and split R-hat per parameter element.

    With fewer than MIN_DIAGNOSTIC_DRAWS draws per chain n_eff and r_hat are
    NaN, which flag_convergence reports as failed.
    """
    records = []
    for name in params:
        value = np.asarray(fit.samples[name], dtype=float)
        shape = value.shape[2:]
        flat = value.reshape(value.shape[:2] + (-1,))
        labels = _axis_labels(name, shape, fit.markers, fit.levels, fit.donors)
        if flat.shape[1] >= MIN_DIAGNOSTIC_DRAWS:
            n_eff = np.atleast_1d(effective_sample_size(flat))
            r_hat = np.atleast_1d(split_gelman_rubin(flat))
        else:
            n_eff = r_hat = np.full(flat.shape[2], np.nan)

        for k, idx in enumerate(np.ndindex(*shape)):
            x = flat[:, :, k]
            if not _keep_element(name, idx) or np.ptp(x) == 0:
                continue
            records.append({
                "parameter": name,
                "element": labels[k],
                "mean": float(x.mean()),
                "sd": float(x.std()),
                "n_eff": float(n_eff[k]),
                "r_hat": float(r_hat[k]),
            })
    return pd.DataFrame(records, columns=["parameter", "element", "mean", "sd", "n_eff", "r_hat"])


def posterior_quantiles(draws, params: Sequence[str], probs=QUANTILES, markers=None,
                        levels=None) -> pd.DataFrame:
    """Posterior quantiles for each element of the requested parameters.

    `draws` is either a fitted model or a mapping from parameter name to an
    array of shape (draws, ...).
    """
    if not isinstance(draws, Mapping):
        fit = draws
        markers = fit.markers if markers is None else markers
        levels = fit.levels if levels is None else levels
        draws = {name: fit.draws(name) for name in params}

    qcols = [f"{100 * p:g}%" for p in probs]
    records = []
    for name in params:
        value = np.asarray(draws[name], dtype=float)
        shape = value.shape[1:]
        flat = value.reshape(value.shape[0], -1)
        labels = _axis_labels(name, shape, markers if markers is not None else [], levels)
        q = np.quantile(flat, probs, axis=0)
        for k in range(flat.shape[1]):
            rec = {"parameter": name, "element": labels[k]}
            rec.update(dict(zip(qcols, q[:, k])))
            records.append(rec)
    return pd.DataFrame(records, columns=["parameter", "element"] + qcols)


def flag_convergence(summary, rhat_max=1.1, min_ess=100) -> pd.DataFrame:
    """Rows whose R-hat or effective sample size fails the thresholds; warns, never raises."""
    bad = summary[(summary["r_hat"] > rhat_max) | (summary["n_eff"] < min_ess)
                  | summary["r_hat"].isna() | summary["n_eff"].isna()]
    if len(bad):
        warnings.warn(
            f"{len(bad)} parameter(s) with R-hat > {rhat_max}, n_eff < {min_ess} "
            "or no diagnostic; "
            f"worst R-hat {summary['r_hat'].max():.3f}")
    return bad


def write_report(path, fit, summary, flagged=None, extra: Dict[str, str] = None):
    """Write the plain-text diagnostics report."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if flagged is None:
        flagged = flag_convergence(summary)

    lines = [
        "Poisson log-normal fit diagnostics",
        "=" * 40,
        f"Cells: {len(fit.df)}",
        f"Markers ({len(fit.markers)}): {', '.join(fit.markers)}",
        f"Condition {fit.condition!r}: " + ", ".join(
            f"{lvl} ({n})" for lvl, n in zip(fit.levels, fit.cell_counts())),
        f"Donors ({len(fit.donors)}): {', '.join(map(str, fit.donors))}",
        f"Chains: {fit.num_chains}, warm-up: {fit.num_warmup}, "
        f"draws per chain: {fit.num_draws // fit.num_chains}",
    ]
    if fit.divergences is not None:
        lines.append(f"Divergent transitions: {int(np.sum(fit.divergences))} "
                     f"(per chain: {list(map(int, fit.divergences))})")
    for key, value in (extra or {}).items():
        lines.append(f"{key}: {value}")

    lines += [
        "",
        f"Max R-hat: {summary['r_hat'].max():.3f}",
        f"Min n_eff: {summary['n_eff'].min():.1f}",
        f"Flagged parameters: {len(flagged)}",
    ]
    if len(flagged):
        lines.append(flagged.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    lines += ["", "Per-parameter summary", "-" * 40,
              summary.to_string(index=False, float_format=lambda v: f"{v:.3f}")]

    path.write_text("\n".join(lines) + "\n")
    return path
