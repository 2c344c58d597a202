from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import matplotlib.pyplot as plt
import seaborn as sns


@dataclass
class PlotConfig:
    style: str = "ticks"
    context: str = "paper"
    palette: str = "colorblind"
    fmt: str = "pdf"
    dpi: int = 150
    level_colors: tuple = ("#457B9D", "#E63946")


@contextmanager
def plot_theme(config: PlotConfig):
    """Apply a plot config for the duration of a block, leaving global rcParams alone."""
    rc = {}
    rc.update(sns.axes_style(config.style))
    rc.update(sns.plotting_context(config.context))
    with plt.rc_context(rc):
        with sns.color_palette(config.palette):
            yield


@dataclass
class AnalysisConfig:
    celltype: str
    data_url: Optional[str] = None
    data_file: str = "aghaeepour2017_cytof.h5ad"
    data_dir: Path = Path("data")
    output_dir: Path = Path("results")

    condition: str = "term"
    group: str = "donor"
    celltype_col: str = "celltype"
    markers: Optional[List[str]] = None

    max_cells_per_donor: int = 1000
    num_iter: int = 325
    num_warmup: int = 200
    num_chains: int = 8
    seed: int = 1

    asinh_cofactor: float = 5.0
    n_ppc_draws: int = 100
    n_jobs: int = 1
    cor_threshold: float = 0.95

    plot: PlotConfig = field(default_factory=PlotConfig)

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.output_dir = Path(self.output_dir)
        if self.max_cells_per_donor < 1:
            raise ValueError(f"max_cells_per_donor must be >= 1, got {self.max_cells_per_donor}")
        if self.num_warmup < 0 or self.num_chains < 1:
            raise ValueError("num_warmup must be >= 0 and num_chains >= 1")
        if self.num_samples < 1:
            raise ValueError(
                f"num_iter ({self.num_iter}) must exceed num_warmup ({self.num_warmup})")
        if not 0.5 <= self.cor_threshold < 1.0:
            raise ValueError(f"cor_threshold must be in [0.5, 1), got {self.cor_threshold}")

    @property
    def num_samples(self) -> int:
        return self.num_iter - self.num_warmup

    @property
    def data_path(self) -> Path:
        return self.data_dir / self.data_file

    @property
    def fit_cache_path(self) -> Path:
        return self.data_dir / f"fit_poisson_lognormal_max{self.max_cells_per_donor}.pkl"

    def figure_path(self, name: str) -> Path:
        return self.output_dir / f"{name}.{self.plot.fmt}"
