from typing import Dict, Sequence

import numpy as np
import pandas as pd

PARAMETER_SITES = ("beta", "sigma", "Cor", "sigma_term", "Cor_term", "sigma_donor", "Cor_donor")

# numpy's Poisson sampler rejects rates close to the int64 range
MAX_POISSON_RATE = 1e18


class NumericalInstabilityError(ArithmeticError):
    """A posterior draw produced a covariance or rate that cannot be sampled from."""


def covariance(sd, cor, tol=1e-8):
    """Return D R D for marker standard deviations `sd` and correlation `cor`.

    The result is symmetrized; eigenvalues that are negative only by
    round-off (within `tol` relative to the largest eigenvalue) are clipped
    to zero. Anything more negative raises NumericalInstabilityError.
    """
    sd = np.asarray(sd, dtype=float)
    cor = np.asarray(cor, dtype=float)
    if cor.shape != (sd.size, sd.size):
        raise ValueError(f"cor has shape {cor.shape}, expected {(sd.size, sd.size)}")
    if not (np.all(np.isfinite(sd)) and np.all(np.isfinite(cor))):
        raise NumericalInstabilityError("non-finite standard deviation or correlation")

    cov = sd[:, None] * cor * sd[None, :]
    cov = (cov + cov.T) / 2
    eigval, eigvec = np.linalg.eigh(cov)
    scale = max(1.0, float(np.abs(eigval).max()))
    if eigval.min() < -tol * scale:
        raise NumericalInstabilityError(
            f"covariance is not positive semi-definite (min eigenvalue {eigval.min():.3g})")
    if eigval.min() < 0:
        cov = (eigvec * np.clip(eigval, 0, None)) @ eigvec.T
        cov = (cov + cov.T) / 2
    return cov


def draw_parameters(fit, index) -> Dict[str, np.ndarray]:
    """Parameters of posterior draw `index` (chains flattened)."""
    if not 0 <= index < fit.num_draws:
        raise IndexError(f"draw {index} out of range for {fit.num_draws} draws")
    return {name: fit.draws(name)[index] for name in PARAMETER_SITES}


def sample_y_hat(params, cell_counts: Sequence[int], markers, levels, rng,
                 condition="term") -> pd.DataFrame:
    """Simulate one synthetic cell table from a single posterior draw.

    For level l with n_l cells the log rate of each cell is
    beta[:, l] + u + b with u ~ N(0, D_l R_l D_l) and b ~ N(0, D_g R_g D_g).
    Level 0 uses (sigma, Cor), level 1 uses (sigma_term, Cor_term).

    The donor effect b is drawn independently for every cell rather than
    once per donor. This is an approximation of the nested donor structure
    of the fitted model and widens the simulated spread accordingly.
    """
    if len(cell_counts) != 2 or len(levels) != 2:
        raise ValueError("sample_y_hat expects exactly two condition levels")

    n_markers = len(markers)
    zeros = np.zeros(n_markers)
    cell_cov = [
        covariance(params["sigma"], params["Cor"]),
        covariance(params["sigma_term"], params["Cor_term"]),
    ]
    donor_cov = covariance(params["sigma_donor"], params["Cor_donor"])
    beta = np.asarray(params["beta"], dtype=float)

    frames = []
    for l, (level, n_cells) in enumerate(zip(levels, cell_counts)):
        mu = np.tile(beta[:, l], (n_cells, 1))
        u = rng.multivariate_normal(zeros, cell_cov[l], size=n_cells, method="eigh")
        b = rng.multivariate_normal(zeros, donor_cov, size=n_cells, method="eigh")
        rate = np.exp(mu + u + b)
        if not np.all(np.isfinite(rate)) or (rate.size and rate.max() >= MAX_POISSON_RATE):
            raise NumericalInstabilityError(f"Poisson rate overflow for level {level!r}")

        frame = pd.DataFrame(rng.poisson(rate).astype(np.int64), columns=list(markers))
        frame[condition] = level
        frames.append(frame)

    return pd.concat(frames, ignore_index=True)


def simulate_from_fit(fit, index, seed=0) -> pd.DataFrame:
    """Simulate a table shaped like the fitted cohort from posterior draw `index`."""
    rng = np.random.default_rng(seed)
    return sample_y_hat(draw_parameters(fit, index), fit.cell_counts(), fit.markers,
                        fit.levels, rng, condition=fit.condition)
