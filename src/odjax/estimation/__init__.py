"""Batch and sequential estimation for orbit determination.

Provides linear covariance analysis, a sequential (Kalman / Schmidt-Kalman)
estimator, a batch weighted least squares estimator and the Monte Carlo
machinery that exercises them.  Dynamics and measurement models are in the
:mod:`odjax.models` module.

Available components:

- :class:`EstimatorOptions` -- Estimator configuration
- :class:`SolveForMap` -- Solve-for / consider partition of the state
- :class:`EstimationResult` -- Everything a run computes
- :class:`CovarianceAnalysis` -- True and formal covariance partitions
- :class:`RestartRecord` -- Snapshot for resuming a sequential run
- :func:`run_sequential` / :func:`restart_sequential` -- Sequential runs
- :func:`run_batch` -- Batch runs
- :func:`kalman_update` / :func:`measurement_update` -- Single-epoch updates
- :func:`sequential_filter` / :func:`batch_solve` -- Per-trial estimators
- :func:`run_trials`, :func:`sample_covariance` -- Monte Carlo support

Errors derive from :class:`ConfigurationError` (invalid inputs, fatal) or
:class:`EstimationError` (numerical failure of one trial).
"""

from odjax.estimation._errors import (
    ConfigurationError,
    EstimationError,
    InnovationCovarianceError,
    ObservabilityError,
)
from odjax.estimation._types import (
    EDIT_ACCEPTED,
    EDIT_FORCED,
    EDIT_REJECTED,
    CovarianceAnalysis,
    EstimationResult,
    EstimatorOptions,
    RestartRecord,
    TrialFailure,
    TrialResult,
    UpdateResult,
)
from odjax.estimation.batch import (
    BatchSolution,
    accumulate_information,
    batch_covariance_analysis,
    batch_gains,
    batch_solve,
    check_observability,
    default_tolerance,
    run_batch,
)
from odjax.estimation.covariance import (
    finite_part,
    is_symmetric,
    prior_information,
    propagate_covariance,
    symmetrize,
)
from odjax.estimation.monte_carlo import run_trials, sample_covariance, trial_keys
from odjax.estimation.partition import SolveForMap
from odjax.estimation.sequential import (
    CovarianceBudget,
    FilterTrack,
    refine_grid,
    restart_sequential,
    run_sequential,
    sequential_covariance_analysis,
    sequential_filter,
)
from odjax.estimation.update import joseph_update, kalman_update, measurement_update

__all__ = [
    "ConfigurationError",
    "EstimationError",
    "ObservabilityError",
    "InnovationCovarianceError",
    "EDIT_REJECTED",
    "EDIT_ACCEPTED",
    "EDIT_FORCED",
    "EstimatorOptions",
    "UpdateResult",
    "CovarianceAnalysis",
    "TrialResult",
    "TrialFailure",
    "EstimationResult",
    "RestartRecord",
    "SolveForMap",
    "symmetrize",
    "is_symmetric",
    "finite_part",
    "prior_information",
    "propagate_covariance",
    "joseph_update",
    "kalman_update",
    "measurement_update",
    "trial_keys",
    "sample_covariance",
    "run_trials",
    "CovarianceBudget",
    "FilterTrack",
    "refine_grid",
    "sequential_covariance_analysis",
    "sequential_filter",
    "run_sequential",
    "restart_sequential",
    "BatchSolution",
    "accumulate_information",
    "check_observability",
    "batch_gains",
    "default_tolerance",
    "batch_covariance_analysis",
    "batch_solve",
    "run_batch",
]
