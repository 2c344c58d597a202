"""
Poisson log-normal reanalysis of a mass cytometry cohort

A Bayesian multivariate mixed model for marker counts across two conditions,
with donor random effects, posterior summaries of correlation changes and
posterior predictive goodness-of-fit checks.
"""

from .config import AnalysisConfig, PlotConfig, plot_theme
from .data import (
    DatasetFetchError,
    EmptyCohortError,
    fetch_dataset,
    load_samples,
    marker_index,
    prepare_arrays,
    require_cohort,
    select_cohort,
)
from .models import poisson_lognormal
from .inference import FittedModel, fit_poisson_lognormal, load_fit, load_or_fit, save_fit
from .diagnostics import convergence_summary, flag_convergence, posterior_quantiles, write_report
from .analysis import (
    bayes_fdr,
    correlation_change_graph,
    correlation_change_probability,
    fixed_effect_summary,
    sigma_change_probability,
)
from .simulate import NumericalInstabilityError, covariance, sample_y_hat, simulate_from_fit
from .gof import (
    TEST_STATISTICS,
    asinh_transform,
    evaluate_all,
    evaluate_statistic,
    posterior_predictive_pvalue,
)
