"""Error types raised by the estimators.

- :class:`ConfigurationError` -- invalid inputs or options.  Raised before
  any trial starts and aborts the whole run.
- :class:`EstimationError` -- base class for numerical failures confined to
  one trial.  The ensemble driver records these per trial instead of
  aborting sibling trials.
- :class:`ObservabilityError` -- rank-deficient information matrix.
- :class:`InnovationCovarianceError` -- singular innovation covariance in a
  sequential update.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid estimator inputs or options."""


class EstimationError(RuntimeError):
    """Numerical failure of an estimator for a single trial."""


class ObservabilityError(EstimationError):
    """The information matrix is rank deficient.

    Attributes:
        rank: Numerical rank of the information matrix.
        dimension: Number of estimated states.
        time: Epoch of the failed solve, if known.
    """

    def __init__(self, rank: int, dimension: int, time: float | None = None):
        self.rank = rank
        self.dimension = dimension
        self.time = time
        where = "" if time is None else f" at t = {time}"
        super().__init__(
            f"System is not observable{where}. "
            f"Rank of normal matrix = {rank} (estimating {dimension} states)"
        )


class InnovationCovarianceError(EstimationError):
    """The innovation covariance of a sequential update is singular.

    Attributes:
        time: Epoch of the failed update.
        measurements: Indices of the measurements involved in the update.
    """

    def __init__(self, time: float, measurements: tuple[int, ...]):
        self.time = time
        self.measurements = measurements
        super().__init__(
            f"Innovation covariance is singular at t = {time} "
            f"for measurement indices {list(measurements)}"
        )
