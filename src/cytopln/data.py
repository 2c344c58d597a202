from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse


class DatasetFetchError(RuntimeError):
    """The dataset is not cached locally and could not be downloaded."""


class EmptyCohortError(ValueError):
    """No cells are left to fit after cohort selection."""


@dataclass
class ModelData:
    counts: np.ndarray
    term: np.ndarray
    donor: np.ndarray
    levels: np.ndarray
    donors: np.ndarray

    @property
    def n_cells(self) -> int:
        return self.counts.shape[0]

    @property
    def n_markers(self) -> int:
        return self.counts.shape[1]


def fetch_dataset(url: Optional[str], path) -> "sc.AnnData":
    """Read the cached dataset, downloading it once from `url` if absent."""
    path = Path(path)
    if path.exists():
        return sc.read_h5ad(path)
    if url is None:
        raise DatasetFetchError(f"{path} does not exist and no dataset URL was given")

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        return sc.read(path, backup_url=url)
    except Exception as err:
        raise DatasetFetchError(f"failed to fetch {url} into {path}: {err}") from err


def marker_index(markers: List[str]) -> Dict[str, int]:
    return {m: i for i, m in enumerate(markers)}


def load_samples(adata, markers: Optional[List[str]] = None):
    """Build the per-cell sample table: integer marker counts plus cell metadata."""
    var_idx = marker_index(list(adata.var_names))
    if markers is None:
        markers = list(adata.var_names)
    missing = [m for m in markers if m not in var_idx]
    if missing:
        raise ValueError(f"Markers not in dataset: {missing}")

    x = adata.X
    if sparse.issparse(x):
        x = x.toarray()
    x = np.asarray(x)[:, [var_idx[m] for m in markers]]
    # Poisson likelihood needs non-negative integer counts
    counts = np.clip(np.rint(x), 0, None).astype(np.int64)

    obs = adata.obs.copy()
    for col in obs.columns:
        if isinstance(obs[col].dtype, pd.CategoricalDtype):
            obs[col] = obs[col].astype(str)

    expr = pd.DataFrame(counts, columns=markers, index=adata.obs_names)
    df = pd.concat([expr, obs.drop(columns=markers, errors="ignore")], axis=1)
    return df, list(markers)


def select_cohort(df, celltype, max_cells_per_donor, seed=0,
                  group="donor", celltype_col="celltype"):
    """Keep one cell type and cap every donor at `max_cells_per_donor` cells.

    Donors above the cap are subsampled without replacement; donors at or
    below it are returned untouched. Row order is preserved and the draw is
    reproducible for a fixed seed. An absent cell type yields an empty frame;
    cells of the selected type without a donor id raise ValueError.
    """
    if max_cells_per_donor < 1:
        raise ValueError(f"max_cells_per_donor must be >= 1, got {max_cells_per_donor}")

    cohort = df[df[celltype_col] == celltype]
    if cohort[group].isna().any():
        raise ValueError(
            f"{int(cohort[group].isna().sum())} {celltype!r} cells have no {group!r} id")
    rng = np.random.default_rng(seed)

    keep = []
    for _, idx in sorted(cohort.groupby(group).indices.items(), key=lambda kv: kv[0]):
        if len(idx) > max_cells_per_donor:
            idx = np.sort(rng.choice(idx, size=max_cells_per_donor, replace=False))
        keep.append(idx)

    if not keep:
        return cohort.copy()
    return cohort.iloc[np.sort(np.concatenate(keep))].copy()


def require_cohort(df, celltype=None):
    if len(df) == 0:
        label = f" for cell type {celltype!r}" if celltype is not None else ""
        raise EmptyCohortError(f"Empty cohort{label}: no cells left to fit")
    return df


def prepare_arrays(df, markers, condition="term", group="donor") -> ModelData:
    """Convert the sample table into index-coded numpy arrays for the model."""
    require_cohort(df)
    term, levels = pd.factorize(df[condition].values, sort=True)
    if len(levels) != 2:
        raise ValueError(
            f"Condition column {condition!r} must have exactly 2 levels, got {list(levels)}")
    donor, donors = pd.factorize(df[group].values, sort=True)
    return ModelData(
        counts=df[markers].to_numpy(dtype=np.int64),
        term=term.astype(np.int32),
        donor=donor.astype(np.int32),
        levels=np.asarray(levels),
        donors=np.asarray(donors),
    )


def summary(df, markers, condition="term", group="donor"):
    """Print cells per donor and condition."""
    print(f"  Cells: {len(df):,}")
    print(f"  Markers ({len(markers)}): {markers}")
    print(f"  Donors: {df[group].nunique()}")
    if len(df) == 0:
        return
    table = df.groupby([group, condition]).size().unstack(fill_value=0)
    for donor, row in table.iterrows():
        cells = ", ".join(f"{lvl}: {n}" for lvl, n in row.items())
        print(f"    {donor}: {cells}")
