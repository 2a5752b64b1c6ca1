"""Type definitions for the estimators.

Provides the configuration, result and restart types shared by the batch and
sequential estimators:

- :class:`EstimatorOptions`: Frozen estimator configuration.
- :class:`UpdateResult`: Output of a single sequential measurement update.
- :class:`CovarianceAnalysis`: Linear covariance analysis about the
  reference trajectory, split into a priori, measurement noise, process
  noise and external noise partitions.
- :class:`TrialResult` / :class:`TrialFailure`: Per Monte Carlo trial output.
- :class:`EstimationResult`: Everything an estimator run computes.
- :class:`RestartRecord`: Snapshot used to resume a sequential run.

Result types are :class:`~typing.NamedTuple` instances so that JAX treats
them as pytrees; per-trial records are kept in tuples because each trial
owns its own time grid.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, NamedTuple

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import ConfigurationError
from odjax.estimation.partition import SolveForMap
from odjax.models._types import Pair

EDIT_REJECTED = 0
EDIT_ACCEPTED = 1
EDIT_FORCED = 2


@dataclass(frozen=True)
class EstimatorOptions:
    """Configuration shared by the batch and sequential estimators.

    Options may be supplied as a :class:`~odjax.models.Pair`.  All settings
    are read from the *estimate* member except ``refine`` and
    ``integration_steps`` for the truth propagation, which are read from the
    *truth* member.

    Args:
        update_vectorized: Process all measurements of an epoch in one
            vector update (``True``) or one scalar at a time (``False``).
        monte_carlo_cases: Number of independent Monte Carlo trials.
        monte_carlo_seed: Base seed; trial *j* uses a key derived from
            ``(monte_carlo_seed, j)``.
        update_iterations: Sequential: re-linearisations per measurement
            epoch (default 1).  Batch: iteration cap (default 10).
        schmidt_kalman: Use the Schmidt-Kalman filter, which carries the
            consider partition in the estimator state but never corrects it.
        edit_ratio: Innovation-to-sigma threshold, scalar or one value per
            measurement.
        edit_flag: Per-measurement edit policy, scalar or one value per
            measurement: ``1`` tests against ``edit_ratio``, ``2`` accepts
            regardless.
        use_process_noise: Include the dynamics' process noise.
        refine: Intermediate output points inserted between consecutive
            measurement times (sequential estimator).
        integration_steps: RK4 steps per output interval.
        convergence_tolerance: Batch convergence threshold on ``|dx0|``.
            ``None`` uses ``0.1 * det(P0_true)^(1/(2n))``.
        resource_warning_mb: Size above which the process noise correlation
            structure triggers an advisory warning.

    Examples:
        ```python
        from odjax.estimation import EstimatorOptions
        opts = EstimatorOptions(monte_carlo_cases=20, schmidt_kalman=True)
        ```
    """

    update_vectorized: bool = True
    monte_carlo_cases: int = 1
    monte_carlo_seed: int = 0
    update_iterations: int | None = None
    schmidt_kalman: bool = False
    edit_ratio: float | tuple[float, ...] = 3.0
    edit_flag: int | tuple[int, ...] = 2
    use_process_noise: bool = True
    refine: int = 0
    integration_steps: int = 10
    convergence_tolerance: float | None = None
    resource_warning_mb: float = 10.0

    def __post_init__(self) -> None:
        if self.monte_carlo_cases < 1:
            raise ConfigurationError(
                f"monte_carlo_cases must be >= 1, got {self.monte_carlo_cases}"
            )
        if self.update_iterations is not None and self.update_iterations < 1:
            raise ConfigurationError(
                f"update_iterations must be >= 1, got {self.update_iterations}"
            )
        if self.refine < 0:
            raise ConfigurationError(f"refine must be >= 0, got {self.refine}")
        if self.integration_steps < 1:
            raise ConfigurationError(
                f"integration_steps must be >= 1, got {self.integration_steps}"
            )
        flags = self.edit_flag if isinstance(self.edit_flag, tuple) else (self.edit_flag,)
        if any(f not in (EDIT_ACCEPTED, EDIT_FORCED) for f in flags):
            raise ConfigurationError(f"edit_flag values must be 1 or 2, got {self.edit_flag}")
        ratios = self.edit_ratio if isinstance(self.edit_ratio, tuple) else (self.edit_ratio,)
        if any(r <= 0.0 for r in ratios):
            raise ConfigurationError(f"edit_ratio values must be positive, got {self.edit_ratio}")
        if self.convergence_tolerance is not None and self.convergence_tolerance <= 0.0:
            raise ConfigurationError(
                f"convergence_tolerance must be positive, got {self.convergence_tolerance}"
            )

    def iterations(self, default: int) -> int:
        """Return ``update_iterations`` or *default* when unset."""
        return default if self.update_iterations is None else self.update_iterations

    def edit_settings(self, m: int) -> tuple[Array, Array]:
        """Expand the edit settings to *m* measurements.

        Args:
            m: Number of measurements per epoch.

        Returns:
            tuple: ``(ratio, flag)`` arrays of shape ``(m,)``.

        Raises:
            ConfigurationError: If a per-measurement setting has the wrong
                length.
        """
        ratio = jnp.asarray(self.edit_ratio, dtype=get_dtype())
        flag = jnp.asarray(self.edit_flag, dtype=jnp.int32)
        if ratio.ndim == 0:
            ratio = jnp.full((m,), ratio)
        if flag.ndim == 0:
            flag = jnp.full((m,), flag)
        if ratio.shape != (m,) or flag.shape != (m,):
            raise ConfigurationError(
                f"edit_ratio and edit_flag must be scalars or have one entry per "
                f"measurement ({m}), got {self.edit_ratio} and {self.edit_flag}"
            )
        return ratio, flag


class UpdateResult(NamedTuple):
    """Result of a sequential measurement update.

    Attributes:
        x: Updated state estimate of shape ``(n,)``.
        P: Updated covariance of shape ``(n, n)``.
        innovation: Pre-update residual ``y - y_pred`` of shape ``(m,)``;
            NaN where no measurement exists.
        innovation_covariance: ``H P H' + R`` of shape ``(m, m)``.
        gain: Gain of shape ``(n, m)``; columns of rejected or missing
            measurements are zero.
        edit_flags: Shape ``(m,)``: ``0`` rejected, ``1`` accepted after
            test, ``2`` forced accept, NaN for missing measurements.
    """

    x: Array
    P: Array
    innovation: Array
    innovation_covariance: Array
    gain: Array
    edit_flags: Array


class CovarianceAnalysis(NamedTuple):
    """Linear covariance analysis about the reference trajectory.

    True partitions live in the full state space; formal partitions live in
    the estimator's state space (solve-for states, or the full state for
    the Schmidt-Kalman filter).

    Attributes:
        times: Time grid of shape ``(N,)``.
        Pa: True covariance due to *a priori* error, ``(N, n, n)``.
        Pv: True covariance due to measurement noise, ``(N, n, n)``.
        Pw: True covariance due to process noise, ``(N, n, n)``.
        Pm: True covariance due to external noise sources, ``(N, n, n)``.
        Phat_a: Formal *a priori* partition, ``(N, ne, ne)``.
        Phat_v: Formal measurement noise partition, ``(N, ne, ne)``.
        Phat_w: Formal process noise partition, ``(N, ne, ne)``; zero for
            the batch estimator.
        Phat_m: Formal external noise partition, ``(N, ne, ne)``.
        sensitivity: Solve-for sensitivity to *a priori* errors
            ``S Phi (I - sum S~ K H Phi) [S~0, C~0]``, ``(N, ns, n)``.
        innovation_covariance: True innovation covariance at the
            measurement epochs, ``(M, m, m)``.
        estimate_map: Matrix mapping the full state to the estimator's
            state, ``(ne, n)``.
    """

    times: Array
    Pa: Array
    Pv: Array
    Pw: Array
    Pm: Array
    Phat_a: Array
    Phat_v: Array
    Phat_w: Array
    Phat_m: Array
    sensitivity: Array
    innovation_covariance: Array
    estimate_map: Array

    @property
    def true_covariance(self) -> Array:
        """Total true covariance ``Pa + Pv + Pw + Pm``."""
        return self.Pa + self.Pv + self.Pw + self.Pm

    @property
    def formal_covariance(self) -> Array:
        """Total formal covariance ``Phat_a + Phat_v + Phat_w + Phat_m``."""
        return self.Phat_a + self.Phat_v + self.Phat_w + self.Phat_m

    def variance_deltas(self) -> tuple[Array, Array, Array, Array]:
        """Return the per-source differences between true and formal covariance.

        ``dPa = E Pa E' - Phat_a`` and likewise for the other partitions,
        with ``E`` the estimate map.  Positive deltas indicate sources the
        estimator under-predicts.

        Returns:
            tuple: ``(dPa, dPv, dPw, dPm)`` each ``(N, ne, ne)``.
        """
        E = self.estimate_map

        def delta(true, formal):
            return jnp.einsum("ij,tjk,lk->til", E, true, E) - formal

        return (
            delta(self.Pa, self.Phat_a),
            delta(self.Pv, self.Phat_v),
            delta(self.Pw, self.Phat_w),
            delta(self.Pm, self.Phat_m),
        )


class TrialResult(NamedTuple):
    """Output of one Monte Carlo trial.

    Attributes:
        index: Trial index.
        times: Time grid of shape ``(N,)``.
        truth: Simulated true states, ``(N, n)``.
        measurements: Simulated measurements at the measurement epochs,
            ``(M, m)``.
        estimate: Estimated states, ``(N, ne)``.
        covariance: Formal covariance of the estimate, ``(N, ne, ne)``.
        error: Estimation error ``estimate - E truth``, ``(N, ne)``.
        innovation: Measurement innovations, ``(M, m)``.
        innovation_covariance: Formal innovation covariance, ``(M, m, m)``.
        edit_flags: Edit outcomes, ``(M, m)``; see :class:`UpdateResult`.
        iterations: Batch iterations performed (1 for sequential runs).
        converged: Whether the batch iteration met its tolerance.
    """

    index: int
    times: Array
    truth: Array
    measurements: Array
    estimate: Array
    covariance: Array
    error: Array
    innovation: Array
    innovation_covariance: Array
    edit_flags: Array
    iterations: int = 1
    converged: bool = True


class TrialFailure(NamedTuple):
    """A trial that stopped on an :class:`~odjax.estimation.EstimationError`."""

    index: int
    error: Exception


@dataclass(frozen=True, eq=False)
class RestartRecord:
    """Snapshot sufficient to resume a sequential run at ``epoch``.

    Attributes:
        epoch: Final time of the run that produced the record.
        reference_state: Truth reference state at *epoch*.
        estimate_reference_state: Estimator reference state at *epoch*.
        trial_states: True state of each trial, ``(ncases, n)``.
        trial_estimates: Estimate of each trial, ``(ncases, ne)``.
        trial_covariances: Formal covariance of each trial,
            ``(ncases, ne, ne)``.
        Pa, Pv, Pw, Pm: Final true covariance partitions.
        Phat_a, Phat_v, Phat_w, Phat_m: Final formal covariance partitions.
        sensitivity: Full-state transfer of *a priori* errors from the anchor
            epoch to *epoch*, ``(n, n)``; the solve-for sensitivity is
            ``solve_for.sensitivity(sensitivity)``.
        solve_for: Solve-for / consider map.
        dynamics: Dynamics model pair.
        measurement: Measurement model pair.
        options: Options pair.
        segment: Number of restarts that preceded the run producing this
            record.  Restarted trials derive fresh random streams from it.
    """

    epoch: float
    reference_state: Array
    estimate_reference_state: Array
    trial_states: Array
    trial_estimates: Array
    trial_covariances: Array
    Pa: Array
    Pv: Array
    Pw: Array
    Pm: Array
    Phat_a: Array
    Phat_v: Array
    Phat_w: Array
    Phat_m: Array
    sensitivity: Array
    solve_for: SolveForMap
    dynamics: Pair
    measurement: Pair
    options: Pair
    segment: int = 0

    def with_external_noise(self, Pm: ArrayLike, Phat_m: ArrayLike | None = None) -> RestartRecord:
        """Add covariance from an external noise source before restarting.

        Models, for example, maneuver execution error applied at *epoch*.
        The true contribution is added to ``Pm``; the formal contribution is
        added to ``Phat_m`` and to every trial covariance so the filters
        account for it.

        Args:
            Pm: True external covariance in the full state, ``(n, n)``.
            Phat_m: Formal external covariance in the estimator state.
                Defaults to ``E Pm E'`` with ``E`` the estimate map.

        Returns:
            RestartRecord: Updated copy of the record.
        """
        Pm = jnp.asarray(Pm, dtype=self.Pm.dtype)
        if Phat_m is None:
            E = self.solve_for.estimate_map(self.options.estimate.schmidt_kalman)
            Phat_m = E @ Pm @ E.T
        Phat_m = jnp.asarray(Phat_m, dtype=self.Phat_m.dtype)
        return dataclasses.replace(
            self,
            Pm=self.Pm + Pm,
            Phat_m=self.Phat_m + Phat_m,
            trial_covariances=self.trial_covariances + Phat_m[None, :, :],
        )


class EstimationResult(NamedTuple):
    """Everything computed by an estimator run.

    Attributes:
        times: Output time grid of shape ``(N,)``.
        measurement_index: Indices into *times* of the measurement epochs.
        analysis: Linear covariance analysis.
        trials: Successful trials, ordered by index.
        failures: Trials that raised an estimation error.
        solve_for: Solve-for / consider map used by the run.
        restart: Restart record (sequential runs only).
        tolerance: Batch convergence tolerance (batch runs only).
    """

    times: Array
    measurement_index: Array
    analysis: CovarianceAnalysis
    trials: tuple[TrialResult, ...]
    failures: tuple[TrialFailure, ...]
    solve_for: SolveForMap
    restart: RestartRecord | None = None
    tolerance: float | None = None

    @property
    def errors(self) -> tuple[Array, ...]:
        """Estimation error series of each successful trial."""
        return tuple(trial.error for trial in self.trials)

    def info(self) -> dict[str, Any]:
        """Summarise the run for logging."""
        return {
            "epochs": int(self.times.shape[0]),
            "trials": len(self.trials),
            "failures": len(self.failures),
        }
