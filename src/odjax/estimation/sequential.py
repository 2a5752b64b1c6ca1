"""Sequential estimator: Kalman and Schmidt-Kalman filtering.

A sequential run has three parts:

1. **Covariance analysis** about the reference trajectories.  The true
   error of the estimator is tracked in the full state space with the true
   models, while the formal (filter) covariance is tracked in the
   estimator's state space with the estimate models; both use the gain the
   filter would compute.  Each is split into contributions from *a priori*
   error (``Pa``), measurement noise (``Pv``), process noise (``Pw``) and
   external sources (``Pm``).
2. **Monte Carlo trials**: simulated truth and measurements followed by an
   extended Kalman filter, one independent trial per random key.
3. A :class:`~odjax.estimation.RestartRecord` from which
   :func:`restart_sequential` continues the run without recomputing its
   history.

With a solve-for map ``S`` the estimator state is ``s = S x``; corrections
are lifted into the full state with ``S~``.  In Schmidt-Kalman mode the
estimator carries the full state and its gain is restricted to the
solve-for subspace.

The estimators run eagerly, one Python iteration per epoch: their control
flow depends on array values and they raise per-trial errors, so they are
not traceable by ``jax.jit``.  Only the model callables are differentiated
with ``jax.jacfwd``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import NamedTuple

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import ConfigurationError, EstimationError
from odjax.estimation._inputs import RunInputs, check_times, resolve_inputs
from odjax.estimation._types import (
    EDIT_FORCED,
    CovarianceAnalysis,
    EstimationResult,
    EstimatorOptions,
    RestartRecord,
    TrialResult,
)
from odjax.estimation.covariance import (
    finite_part,
    propagate_covariance,
    symmetrize,
)
from odjax.estimation.monte_carlo import Mapper, run_trials, sample_covariance, trial_keys
from odjax.estimation.partition import SolveForMap
from odjax.estimation.update import kalman_update, measurement_update
from odjax.integrators import Propagation, propagate
from odjax.models._types import DynamicsModel, MeasurementModel, Pair

logger = logging.getLogger(__name__)


class CovarianceBudget(NamedTuple):
    """Covariance partitions and sensitivity at one epoch.

    Attributes:
        Pa, Pv, Pw, Pm: True partitions in the full state space.
        Phat_a, Phat_v, Phat_w, Phat_m: Formal partitions in the
            estimator's state space.
        sigma: Full-state transfer of *a priori* errors at the anchor epoch,
            ``Phi(t, t0) (I - sum S~ K H Phi)``, ``(n, n)``.
    """

    Pa: Array
    Pv: Array
    Pw: Array
    Pm: Array
    Phat_a: Array
    Phat_v: Array
    Phat_w: Array
    Phat_m: Array
    sigma: Array

    @classmethod
    def initial(cls, P0: Pair, solve_for: SolveForMap) -> CovarianceBudget:
        """Budget of a fresh run: all uncertainty is *a priori*."""
        Pa = jnp.asarray(P0.truth)
        Phat_a = jnp.asarray(P0.estimate)
        zeros = jnp.zeros_like(Pa)
        zeros_hat = jnp.zeros_like(Phat_a)
        return cls(
            Pa=Pa,
            Pv=zeros,
            Pw=zeros,
            Pm=zeros,
            Phat_a=Phat_a,
            Phat_v=zeros_hat,
            Phat_w=zeros_hat,
            Phat_m=zeros_hat,
            sigma=jnp.eye(solve_for.n, dtype=Pa.dtype),
        )

    @classmethod
    def from_record(cls, record: RestartRecord) -> CovarianceBudget:
        """Budget stored in a restart record."""
        return cls(
            Pa=record.Pa,
            Pv=record.Pv,
            Pw=record.Pw,
            Pm=record.Pm,
            Phat_a=record.Phat_a,
            Phat_v=record.Phat_v,
            Phat_w=record.Phat_w,
            Phat_m=record.Phat_m,
            sigma=record.sensitivity,
        )

    @property
    def true_total(self) -> Array:
        return finite_part(self.Pa) + self.Pv + self.Pw + self.Pm

    @property
    def formal_total(self) -> Array:
        return self.Phat_a + self.Phat_v + self.Phat_w + self.Phat_m


class FilterTrack(NamedTuple):
    """Output of :func:`sequential_filter`.

    Attributes:
        estimate: Estimates on the time grid, ``(N, ne)``.
        covariance: Formal covariances, ``(N, ne, ne)``.
        innovation: Pre-update innovations, ``(M, m)``.
        innovation_covariance: Formal innovation covariances, ``(M, m, m)``.
        edit_flags: Edit outcomes, ``(M, m)``.
    """

    estimate: Array
    covariance: Array
    innovation: Array
    innovation_covariance: Array
    edit_flags: Array


def refine_grid(tspan: ArrayLike, refine: int = 0) -> tuple[Array, Array]:
    """Insert evenly spaced output points between measurement times.

    Args:
        tspan: Strictly increasing measurement times of shape ``(M,)``.
        refine: Number of points inserted in each interval.

    Returns:
        tuple: ``(times, index)`` where ``times[index] == tspan``.

    Examples:
        ```python
        from odjax.estimation import refine_grid
        times, index = refine_grid([0.0, 1.0, 2.0], refine=1)
        # times = [0.0, 0.5, 1.0, 1.5, 2.0], index = [0, 2, 4]
        ```
    """
    tspan = check_times(tspan)
    M = tspan.shape[0]
    if refine == 0 or M == 1:
        return tspan, jnp.arange(M)
    frac = jnp.arange(refine + 1, dtype=tspan.dtype) / (refine + 1)
    starts = tspan[:-1, None] + frac[None, :] * jnp.diff(tspan)[:, None]
    times = jnp.concatenate([starts.reshape(-1), tspan[-1:]])
    return times, jnp.arange(M) * (refine + 1)


def _time_update(
    budget: CovarianceBudget,
    phi: Array,
    qd: Array,
    phi_hat: Array,
    qd_hat: Array,
) -> CovarianceBudget:
    return CovarianceBudget(
        Pa=propagate_covariance(phi, budget.Pa),
        Pv=propagate_covariance(phi, budget.Pv),
        Pw=symmetrize(propagate_covariance(phi, budget.Pw) + qd),
        Pm=propagate_covariance(phi, budget.Pm),
        Phat_a=propagate_covariance(phi_hat, budget.Phat_a),
        Phat_v=propagate_covariance(phi_hat, budget.Phat_v),
        Phat_w=symmetrize(propagate_covariance(phi_hat, budget.Phat_w) + qd_hat),
        Phat_m=propagate_covariance(phi_hat, budget.Phat_m),
        sigma=phi @ budget.sigma,
    )


def _measurement_update(
    budget: CovarianceBudget,
    t: float,
    truth: tuple[Array, Array, Array],
    estimate: tuple[Array, Array, Array],
    lift: Callable[[Array], Array] | None,
    projector: Array | None,
) -> tuple[CovarianceBudget, Array]:
    y, H, R = truth
    y_hat, H_hat, R_hat = estimate
    valid = ~jnp.isnan(y) & ~jnp.isnan(y_hat)
    m = y_hat.shape[0]
    ne = H_hat.shape[1]

    Pdy_true = symmetrize(H @ budget.true_total @ H.T + R)

    # The filter's gain for a zero innovation; every available measurement
    # is used.
    result = kalman_update(
        jnp.zeros(ne, dtype=H_hat.dtype),
        budget.formal_total,
        jnp.where(valid, 0.0, jnp.nan),
        jnp.zeros(m, dtype=H_hat.dtype),
        H_hat,
        R_hat,
        edit_flag=jnp.full((m,), EDIT_FORCED),
        projector=projector,
        time=t,
    )
    K = result.gain
    LK = K if lift is None else lift(K)
    Hv = jnp.where(valid[:, None], H, 0.0)
    Rv = jnp.where(valid[:, None] & valid[None, :], R, 0.0)
    Rv_hat = jnp.where(valid[:, None] & valid[None, :], R_hat, 0.0)
    ImLKH = jnp.eye(H.shape[1], dtype=K.dtype) - LK @ Hv
    ImKH = jnp.eye(ne, dtype=K.dtype) - K @ jnp.where(valid[:, None], H_hat, 0.0)

    def true(P, noise=None):
        P = ImLKH @ finite_part(P) @ ImLKH.T
        return symmetrize(P if noise is None else P + LK @ noise @ LK.T)

    def formal(P, noise=None):
        P = ImKH @ finite_part(P) @ ImKH.T
        return symmetrize(P if noise is None else P + K @ noise @ K.T)

    updated = CovarianceBudget(
        Pa=true(budget.Pa),
        Pv=true(budget.Pv, Rv),
        Pw=true(budget.Pw),
        Pm=true(budget.Pm),
        Phat_a=formal(budget.Phat_a),
        Phat_v=formal(budget.Phat_v, Rv_hat),
        Phat_w=formal(budget.Phat_w),
        Phat_m=formal(budget.Phat_m),
        sigma=ImLKH @ budget.sigma,
    )
    return updated, Pdy_true


def sequential_covariance_analysis(
    inputs: RunInputs,
    times: Array,
    measurement_index: Array,
    budget: CovarianceBudget,
) -> tuple[CovarianceAnalysis, Pair, CovarianceBudget]:
    """Linear covariance analysis of the sequential estimator.

    Args:
        inputs: Validated run inputs; ``x0`` holds the reference states at
            ``times[0]``.
        times: Output time grid.
        measurement_index: Grid indices of the measurement updates.
        budget: Covariance partitions and sensitivity at ``times[0]``.

    Returns:
        tuple: ``(analysis, references, final)`` with the truth/estimate
            reference :class:`~odjax.integrators.Propagation` pair and the
            budget at the last epoch.

    Raises:
        ObservabilityError: If an *a priori* covariance with infinite
            variance is not resolved by the first update.
        InnovationCovarianceError: If the formal innovation covariance is
            singular along the reference.
    """
    opts = inputs.options.estimate
    sf = inputs.solve_for
    truth_ref = propagate(
        inputs.dynamics.truth,
        times,
        inputs.x0.truth,
        steps=inputs.options.truth.integration_steps,
        use_process_noise=opts.use_process_noise,
    )
    est_ref = propagate(
        inputs.dynamics.estimate,
        times,
        inputs.x0.estimate,
        steps=opts.integration_steps,
        use_process_noise=opts.use_process_noise,
    )

    if inputs.full_state:
        lift = None
        projector = sf.projector()
    else:
        lift = sf.lift
        projector = None

    updates = {int(k) for k in measurement_index}
    history = []
    innovation_covariance = []
    for k in range(times.shape[0]):
        if k > 0:
            budget = _time_update(
                budget,
                truth_ref.stm[k],
                truth_ref.process_noise[k],
                est_ref.stm[k],
                est_ref.process_noise[k],
            )
        if k in updates:
            t = float(times[k])
            budget, Pdy = _measurement_update(
                budget,
                t,
                inputs.measurement.truth.evaluate(t, truth_ref.states[k]),
                inputs.measurement.estimate.evaluate(t, est_ref.states[k]),
                lift,
                projector,
            )
            innovation_covariance.append(Pdy)
        history.append(budget)

    def stack(field):
        return jnp.stack([getattr(b, field) for b in history])

    analysis = CovarianceAnalysis(
        times=times,
        Pa=stack("Pa"),
        Pv=stack("Pv"),
        Pw=stack("Pw"),
        Pm=stack("Pm"),
        Phat_a=stack("Phat_a"),
        Phat_v=stack("Phat_v"),
        Phat_w=stack("Phat_w"),
        Phat_m=stack("Phat_m"),
        sensitivity=sf.sensitivity(stack("sigma")),
        innovation_covariance=jnp.stack(innovation_covariance),
        estimate_map=inputs.estimate_map,
    )
    return analysis, Pair(truth_ref, est_ref), budget


def simulate_truth(
    dynamics: DynamicsModel,
    measurement: MeasurementModel,
    times: Array,
    measurement_index: Array,
    x0: ArrayLike,
    key: Array,
    steps: int = 10,
    use_process_noise: bool = True,
) -> tuple[Array, Array]:
    """Simulate one true trajectory and its measurements.

    The state is integrated interval by interval; a process noise sample
    drawn from the interval's ``Qd`` is added at the end of each interval.
    Measurement noise is drawn from ``R`` at each measurement epoch.

    Args:
        dynamics: True dynamics model.
        measurement: True measurement model.
        times: Time grid of shape ``(N,)``.
        measurement_index: Grid indices of the measurement epochs.
        x0: True state at ``times[0]``.
        key: PRNG key of the trial.
        steps: RK4 steps per interval.
        use_process_noise: Whether to add process noise samples.

    Returns:
        tuple: ``(states, measurements)`` of shapes ``(N, n)`` and ``(M, m)``.
    """
    noise_key, meas_key = jax.random.split(key)
    x = jnp.asarray(x0, dtype=get_dtype())
    states = [x]
    for k in range(1, times.shape[0]):
        prop = propagate(dynamics, times[k - 1 : k + 1], x, steps, use_process_noise)
        x = prop.states[-1]
        if use_process_noise:
            x = x + sample_covariance(jax.random.fold_in(noise_key, k), prop.process_noise[-1])
        states.append(x)
    states = jnp.stack(states)

    measurements = []
    for i, k in enumerate(measurement_index):
        k = int(k)
        t = times[k]
        y = measurement.predict(t, states[k])
        R = measurement.covariance(t, states[k])
        measurements.append(y + sample_covariance(jax.random.fold_in(meas_key, i), R))
    return states, jnp.stack(measurements)


def sequential_filter(
    dynamics: DynamicsModel,
    measurement: MeasurementModel,
    times: ArrayLike,
    measurement_index: ArrayLike,
    measurements: ArrayLike,
    x0: ArrayLike,
    P0: ArrayLike,
    options: EstimatorOptions | None = None,
    projector: ArrayLike | None = None,
) -> FilterTrack:
    """Run an extended Kalman filter over given measurements.

    Alternates propagation with the estimate dynamics and measurement
    updates.  Values stored at measurement epochs are post-update.

    Args:
        dynamics: Estimate dynamics model.
        measurement: Estimate measurement model.
        times: Time grid of shape ``(N,)``; ``times[0]`` is the epoch of
            *x0*.
        measurement_index: Grid indices of the measurement epochs, ``(M,)``.
        measurements: Measurements of shape ``(M, m)``; NaN entries are gaps.
        x0: Initial estimate.
        P0: Initial covariance; infinite variances require an update at
            ``times[0]``.
        options: Estimate options.
        projector: Schmidt-Kalman projector ``S~ S``, if any.

    Returns:
        FilterTrack: Estimates, covariances and update diagnostics.

    Raises:
        InnovationCovarianceError: If an innovation covariance is singular.
        ObservabilityError: If an infinite-variance prior is not resolved.
    """
    options = EstimatorOptions() if options is None else options
    dtype = get_dtype()
    times = jnp.asarray(times, dtype=dtype)
    measurements = jnp.atleast_2d(jnp.asarray(measurements, dtype=dtype))
    x = jnp.asarray(x0, dtype=dtype)
    P = jnp.asarray(P0, dtype=dtype)
    slot = {int(k): i for i, k in enumerate(measurement_index)}

    estimates, covariances = [], []
    innovations, innovation_covariances, flags = [], [], []
    for k in range(times.shape[0]):
        if k > 0:
            prop = propagate(
                dynamics,
                times[k - 1 : k + 1],
                x,
                options.integration_steps,
                options.use_process_noise,
            )
            x = prop.states[-1]
            P = symmetrize(propagate_covariance(prop.stm[-1], P) + prop.process_noise[-1])
        if k in slot:
            result = measurement_update(
                measurement, float(times[k]), x, P, measurements[slot[k]], options, projector
            )
            x, P = result.x, result.P
            innovations.append(result.innovation)
            innovation_covariances.append(result.innovation_covariance)
            flags.append(result.edit_flags)
        estimates.append(x)
        covariances.append(P)

    return FilterTrack(
        estimate=jnp.stack(estimates),
        covariance=jnp.stack(covariances),
        innovation=jnp.stack(innovations),
        innovation_covariance=jnp.stack(innovation_covariances),
        edit_flags=jnp.stack(flags),
    )


def _run(
    inputs: RunInputs,
    times: Array,
    measurement_index: Array,
    budget: CovarianceBudget,
    initial: Callable[[int, Array], tuple[Array, Array, Array]],
    ncases: int,
    segment: int,
    mapper: Mapper,
    diagnostic: Callable[[EstimationResult], object] | None,
) -> EstimationResult:
    opts = inputs.options.estimate
    logger.info(
        "Sequential estimation: %d epochs, %d measurement epochs, %d trials",
        times.shape[0],
        measurement_index.shape[0],
        ncases,
    )

    analysis, references, final = sequential_covariance_analysis(
        inputs, times, measurement_index, budget
    )

    E = inputs.estimate_map
    projector = inputs.solve_for.projector() if inputs.full_state else None
    keys = trial_keys(opts.monte_carlo_seed, ncases)

    def trial(j: int) -> TrialResult:
        key = jax.random.fold_in(keys[j], segment)
        init_key, sim_key = jax.random.split(key)
        x_true, x_est, P_est = initial(j, init_key)
        truth, measurements = simulate_truth(
            inputs.dynamics.truth,
            inputs.measurement.truth,
            times,
            measurement_index,
            x_true,
            sim_key,
            steps=inputs.options.truth.integration_steps,
            use_process_noise=opts.use_process_noise,
        )
        track = sequential_filter(
            inputs.dynamics.estimate,
            inputs.measurement.estimate,
            times,
            measurement_index,
            measurements,
            x_est,
            P_est,
            opts,
            projector,
        )
        return TrialResult(
            index=j,
            times=times,
            truth=truth,
            measurements=measurements,
            estimate=track.estimate,
            covariance=track.covariance,
            error=track.estimate - truth @ E.T,
            innovation=track.innovation,
            innovation_covariance=track.innovation_covariance,
            edit_flags=track.edit_flags,
        )

    trials, failures = run_trials(trial, ncases, mapper)

    n = inputs.solve_for.n
    ne = E.shape[0]
    trial_states = jnp.full((ncases, n), jnp.nan, dtype=times.dtype)
    trial_estimates = jnp.full((ncases, ne), jnp.nan, dtype=times.dtype)
    trial_covariances = jnp.full((ncases, ne, ne), jnp.nan, dtype=times.dtype)
    for result in trials:
        trial_states = trial_states.at[result.index].set(result.truth[-1])
        trial_estimates = trial_estimates.at[result.index].set(result.estimate[-1])
        trial_covariances = trial_covariances.at[result.index].set(result.covariance[-1])

    restart = RestartRecord(
        epoch=float(times[-1]),
        reference_state=references.truth.states[-1],
        estimate_reference_state=references.estimate.states[-1],
        trial_states=trial_states,
        trial_estimates=trial_estimates,
        trial_covariances=trial_covariances,
        Pa=final.Pa,
        Pv=final.Pv,
        Pw=final.Pw,
        Pm=final.Pm,
        Phat_a=final.Phat_a,
        Phat_v=final.Phat_v,
        Phat_w=final.Phat_w,
        Phat_m=final.Phat_m,
        sensitivity=final.sigma,
        solve_for=inputs.solve_for,
        dynamics=inputs.dynamics,
        measurement=inputs.measurement,
        options=inputs.options,
        segment=segment,
    )

    result = EstimationResult(
        times=times,
        measurement_index=measurement_index,
        analysis=analysis,
        trials=trials,
        failures=failures,
        solve_for=inputs.solve_for,
        restart=restart,
    )
    logger.info("Sequential estimation finished: %s", result.info())
    if diagnostic is not None:
        diagnostic(result)
    return result


def run_sequential(
    dynamics: DynamicsModel | Pair,
    measurement: MeasurementModel | Pair,
    tspan: ArrayLike,
    x0: ArrayLike | Pair,
    P0: ArrayLike | Pair,
    options: EstimatorOptions | Pair | None = None,
    solve_for: SolveForMap | ArrayLike | None = None,
    consider: ArrayLike | None = None,
    mapper: Mapper = map,
    diagnostic: Callable[[EstimationResult], object] | None = None,
) -> EstimationResult:
    """Run the sequential estimator with Monte Carlo trials.

    Measurements are processed at every time in *tspan*, including the
    first.  Each trial starts from ``x0.truth`` plus a deviation drawn from
    ``P0.truth`` (infinite variances draw zero deviation); the filter
    always starts from ``x0.estimate`` and ``P0.estimate``.

    Args:
        dynamics: Dynamics model, or a truth/estimate pair.
        measurement: Measurement model, or a truth/estimate pair.
        tspan: Strictly increasing measurement times.
        x0: Initial reference state.  A single value is the full state; a
            pair gives the estimate member in the estimator's state space.
        P0: Initial covariance, or a truth/estimate pair.
        options: Estimator options, or a truth/estimate pair.
        solve_for: Solve-for map ``S`` (or a :class:`SolveForMap`).
            Defaults to estimating every state.
        consider: Consider map ``C``.
        mapper: ``map``-like callable used to run the trials.
        diagnostic: Optional callable invoked with the result.

    Returns:
        EstimationResult: Covariance analysis, trials, failures and restart
            record.

    Raises:
        ConfigurationError: On invalid inputs, before any trial runs.
        ObservabilityError: If the reference analysis is unobservable.

    Examples:
        ```python
        import jax.numpy as jnp
        from odjax.estimation import EstimatorOptions, run_sequential
        from odjax.models import constant_velocity, position_measurement
        result = run_sequential(
            constant_velocity(), position_measurement(), jnp.arange(11.0),
            jnp.array([0.0, 1.0]), jnp.diag(jnp.array([100.0, 1.0])),
            EstimatorOptions(monte_carlo_cases=10),
        )
        result.analysis.formal_covariance[-1]
        ```
    """
    inputs = resolve_inputs(dynamics, measurement, x0, P0, options, solve_for, consider)
    times, index = refine_grid(tspan, inputs.options.truth.refine)
    budget = CovarianceBudget.initial(inputs.P0, inputs.solve_for)

    def initial(j: int, key: Array) -> tuple[Array, Array, Array]:
        deviation = sample_covariance(key, inputs.P0.truth)
        return inputs.x0.truth + deviation, inputs.x0.estimate, inputs.P0.estimate

    return _run(
        inputs,
        times,
        index,
        budget,
        initial,
        inputs.options.estimate.monte_carlo_cases,
        0,
        mapper,
        diagnostic,
    )


def restart_sequential(
    record: RestartRecord,
    tspan: ArrayLike,
    mapper: Mapper = map,
    diagnostic: Callable[[EstimationResult], object] | None = None,
) -> EstimationResult:
    """Continue a sequential run from a restart record.

    The new grid starts at ``record.epoch`` (already updated by the
    previous run) and processes measurements at every time in *tspan*.
    Each trial continues from its own final truth state, estimate and
    covariance; trials that failed in the previous run fail again.

    Args:
        record: Record of the previous run, possibly with external noise
            added by :meth:`~odjax.estimation.RestartRecord.with_external_noise`.
        tspan: Strictly increasing measurement times after ``record.epoch``.
        mapper: ``map``-like callable used to run the trials.
        diagnostic: Optional callable invoked with the result.

    Returns:
        EstimationResult: Results of the continued run.

    Raises:
        ConfigurationError: If *tspan* does not start after the epoch.
    """
    tspan = check_times(tspan)
    if float(tspan[0]) <= record.epoch:
        raise ConfigurationError(
            f"Restart times must start after the record epoch {record.epoch}, got {float(tspan[0])}"
        )
    times, index = refine_grid(
        jnp.concatenate([jnp.asarray([record.epoch], dtype=tspan.dtype), tspan]),
        record.options.truth.refine,
    )
    budget = CovarianceBudget.from_record(record)
    inputs = RunInputs(
        dynamics=record.dynamics,
        measurement=record.measurement,
        x0=Pair(record.reference_state, record.estimate_reference_state),
        P0=Pair(budget.true_total, budget.formal_total),
        options=record.options,
        solve_for=record.solve_for,
        full_state=bool(record.options.estimate.schmidt_kalman),
    )

    def initial(j: int, key: Array) -> tuple[Array, Array, Array]:
        x_true = record.trial_states[j]
        if bool(jnp.any(jnp.isnan(x_true))):
            raise EstimationError(f"Trial {j} has no restart state")
        return x_true, record.trial_estimates[j], record.trial_covariances[j]

    return _run(
        inputs,
        times,
        index[1:],
        budget,
        initial,
        record.trial_states.shape[0],
        record.segment + 1,
        mapper,
        diagnostic,
    )
