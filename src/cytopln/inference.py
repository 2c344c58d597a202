import pickle
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import jax
import jax.numpy as jnp
import numpy as np
import pandas as pd
from numpyro.infer import MCMC, NUTS

from .data import prepare_arrays, require_cohort
from .models import poisson_lognormal

# per-cell latents scale with the cohort and are never read back
DROPPED_SITES = ("z",)


@dataclass
class FittedModel:
    df: pd.DataFrame
    markers: List[str]
    condition: str
    group: str
    levels: np.ndarray
    donors: np.ndarray
    samples: Dict[str, np.ndarray]
    divergences: Optional[np.ndarray] = None
    num_warmup: int = 0

    @property
    def num_chains(self) -> int:
        return next(iter(self.samples.values())).shape[0]

    @property
    def num_draws(self) -> int:
        first = next(iter(self.samples.values()))
        return first.shape[0] * first.shape[1]

    def draws(self, name: str) -> np.ndarray:
        """Posterior draws of one site with chains flattened: (draws, ...)."""
        arr = self.samples[name]
        return arr.reshape((-1,) + arr.shape[2:])

    def cell_counts(self) -> List[int]:
        return [int((self.df[self.condition] == lvl).sum()) for lvl in self.levels]


def fit_poisson_lognormal(df, markers, condition="term", group="donor",
                          num_iter=325, num_warmup=200, num_chains=8, seed=0,
                          progress_bar=True) -> FittedModel:
    """Fit the Poisson log-normal model with NUTS.

    `num_iter` counts warm-up iterations, so each chain keeps
    `num_iter - num_warmup` draws.
    """
    require_cohort(df)
    if len(markers) < 2:
        raise ValueError(f"Need at least 2 markers for a correlation model, got {markers}")
    num_samples = num_iter - num_warmup
    if num_samples < 1:
        raise ValueError(f"num_iter ({num_iter}) must exceed num_warmup ({num_warmup})")

    data = prepare_arrays(df, markers, condition, group)

    chain_method = "parallel"
    if num_chains > jax.local_device_count():
        chain_method = "sequential"
        if num_chains > 1:
            warnings.warn(
                f"{num_chains} chains requested but only {jax.local_device_count()} "
                "device(s) available; running chains sequentially")

    kernel = NUTS(poisson_lognormal)
    mcmc = MCMC(kernel, num_warmup=num_warmup, num_samples=num_samples,
                num_chains=num_chains, chain_method=chain_method,
                progress_bar=progress_bar)
    mcmc.run(
        jax.random.PRNGKey(seed),
        counts=jnp.asarray(data.counts),
        term=jnp.asarray(data.term),
        donor=jnp.asarray(data.donor),
        n_donors=len(data.donors),
        extra_fields=("diverging",),
    )

    samples = {k: np.asarray(v) for k, v in mcmc.get_samples(group_by_chain=True).items()
               if k not in DROPPED_SITES}
    diverging = np.asarray(mcmc.get_extra_fields(group_by_chain=True)["diverging"])
    divergences = diverging.reshape(num_chains, -1).sum(axis=1)
    if divergences.sum() > 0:
        warnings.warn(f"{int(divergences.sum())} divergent transitions after warm-up")

    return FittedModel(
        df=df.copy(),
        markers=list(markers),
        condition=condition,
        group=group,
        levels=data.levels,
        donors=data.donors,
        samples=samples,
        divergences=divergences,
        num_warmup=num_warmup,
    )


def save_fit(fit: FittedModel, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        pickle.dump(fit, f)


def load_fit(path) -> FittedModel:
    with open(path, "rb") as f:
        return pickle.load(f)


def load_or_fit(cache_path, df, markers, verbose=True, **fit_kwargs) -> FittedModel:
    """Reuse a cached fit when present, otherwise fit and cache it."""
    cache_path = Path(cache_path)
    if cache_path.exists():
        if verbose:
            print(f"  Loading cached fit: {cache_path}")
        return load_fit(cache_path)

    require_cohort(df)
    if verbose:
        print(f"  Fitting Poisson log-normal model ({len(df):,} cells, {len(markers)} markers)")
    fit = fit_poisson_lognormal(df, markers, **fit_kwargs)
    save_fit(fit, cache_path)
    if verbose:
        print(f"  Saved fit: {cache_path}")
    return fit
