"""Batch (weighted least squares) estimator.

Estimates the solve-for state at the anchor time ``t0 = tspan[0]`` from all
measurements in ``tspan`` at once.  With ``Phi_i = Phi_ss(t_i, t0)`` the
estimate-model transition matrices, ``H_i`` the estimate-model partials and
``W_i = R_i^{-1}`` restricted to the measurements that exist:

.. math::

    J &= \\bar{P}_0^{-1} + \\sum_i \\Phi_i^T H_i^T W_i H_i \\Phi_i \\\\
    K_i &= J^{-1} \\Phi_i^T H_i^T W_i \\\\
    \\Delta x_0 &= \\sum_i K_i (y_i - \\hat{y}_i)

The gains come from a least-squares solve against ``J``; it is never
inverted explicitly.  The batch estimator does not model process noise, so
its formal process noise covariance is zero, but the true covariance
includes the process noise actually present through the cross-time
correlation kernels of :func:`~odjax.estimation.covariance.process_noise_kernels`.

Like the sequential estimator, these functions run eagerly and are not
traceable by ``jax.jit``: the observability check and the iteration
stopping rule inspect array values.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from typing import NamedTuple

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import ObservabilityError
from odjax.estimation._inputs import check_times, resolve_inputs
from odjax.estimation._types import (
    EDIT_FORCED,
    CovarianceAnalysis,
    EstimationResult,
    EstimatorOptions,
    TrialResult,
)
from odjax.estimation.covariance import (
    block_matrix,
    check_process_noise_size,
    finite_part,
    masked_inverse,
    prior_information,
    process_noise_correlation,
    process_noise_kernels,
    propagate_series,
    symmetrize,
)
from odjax.estimation.monte_carlo import Mapper, run_trials, sample_covariance, trial_keys
from odjax.estimation.partition import SolveForMap
from odjax.integrators import accumulate, propagate
from odjax.models._types import DynamicsModel, MeasurementModel, Pair

logger = logging.getLogger(__name__)


class BatchSolution(NamedTuple):
    """Result of :func:`batch_solve` for one set of measurements.

    Attributes:
        x0: Estimate at the anchor time, ``(ne,)``.
        P0: Formal covariance at the anchor time, ``(ne, ne)``.
        iterations: Number of normal-equation solves performed.
        converged: Whether ``|dx0|`` fell below the tolerance.
    """

    x0: Array
    P0: Array
    iterations: int
    converged: bool


def linearize(
    model: MeasurementModel, times: Array, states: Array
) -> tuple[Array, Array, Array]:
    """Evaluate a measurement model along a trajectory.

    Returns:
        tuple: ``(y, H, R)`` of shapes ``(N, m)``, ``(N, m, n)`` and
            ``(N, m, m)``.
    """
    evaluated = [model.evaluate(times[i], states[i]) for i in range(times.shape[0])]
    return tuple(jnp.stack(items) for items in zip(*evaluated))


def accumulate_information(
    P0: ArrayLike,
    phi: ArrayLike,
    H: ArrayLike,
    R: ArrayLike,
    valid: ArrayLike,
) -> Array:
    """Accumulate the information matrix of the normal equations.

    Args:
        P0: *A priori* covariance at the anchor time; infinite variances
            contribute no information.
        phi: Transition matrices ``Phi(t_i, t0)``, ``(N, n, n)``.
        H: Measurement partials, ``(N, m, n)``.
        R: Measurement noise covariances, ``(N, m, m)``.
        valid: Mask of measurements that exist, ``(N, m)``.

    Returns:
        Array: Information matrix ``J`` of shape ``(n, n)``.
    """
    J = prior_information(P0)
    for i in range(phi.shape[0]):
        W = masked_inverse(R[i], valid[i])
        A = jnp.where(valid[i][:, None], H[i], 0.0) @ phi[i]
        J = J + A.T @ W @ A
    return symmetrize(J)


def check_observability(J: ArrayLike) -> int:
    """Raise :class:`ObservabilityError` if *J* is rank deficient.

    Returns:
        int: Rank of *J* (equal to its dimension).
    """
    J = jnp.asarray(J)
    rank = int(jnp.linalg.matrix_rank(J))
    if rank < J.shape[0]:
        raise ObservabilityError(rank, J.shape[0])
    return rank


def batch_gains(
    J: ArrayLike,
    phi: ArrayLike,
    H: ArrayLike,
    R: ArrayLike,
    valid: ArrayLike,
) -> Array:
    """Batch gains ``K_i = J^{-1} Phi_i' H_i' W_i`` by least-squares solves.

    Columns of missing measurements are zero.

    Returns:
        Array: Gains of shape ``(N, n, m)``.
    """
    J = jnp.asarray(J)
    gains = []
    for i in range(phi.shape[0]):
        W = masked_inverse(R[i], valid[i])
        A = jnp.where(valid[i][:, None], H[i], 0.0) @ phi[i]
        gains.append(jnp.linalg.lstsq(J, A.T @ W)[0])
    return jnp.stack(gains)


def default_tolerance(P: ArrayLike) -> float:
    """Convergence tolerance ``0.1 det(P)^(1/(2n))`` on ``|dx0|``.

    Returns zero (iterate to the cap) if *P* is not positive definite.
    """
    P = jnp.asarray(P)
    sign, logdet = jnp.linalg.slogdet(P)
    if float(sign) <= 0.0:
        return 0.0
    return 0.1 * math.exp(float(logdet) / (2 * P.shape[0]))


def batch_covariance_analysis(
    dynamics: Pair,
    measurement: Pair,
    times: Array,
    x0: Pair,
    P0: Pair,
    solve_for: SolveForMap,
    options: Pair,
) -> CovarianceAnalysis:
    """Linear covariance analysis of the batch estimator.

    True partitions at the anchor time:

    - ``Pa0 = (I - sum S~ K_i H_i Phi_i) P0 (...)'`` with the true partials,
    - ``Pv0 = sum S~ K_i R_i K_i' S~'``,
    - ``Pw0 = K~ Upsilon K~'`` over the block kernel ``Upsilon``,

    mapped to later times with the true ``Phi``; the process noise
    partition adds the cross terms ``Phi Nd + Nd' Phi'`` and ``Qd(t, t0)``.
    Formal partitions use the estimate models; ``Phat_w`` is zero.

    Args:
        dynamics: Dynamics model pair.
        measurement: Measurement model pair.
        times: Measurement times; ``times[0]`` is the anchor.
        x0: Reference states (truth full-state, estimate solve-for).
        P0: *A priori* covariances.
        solve_for: Solve-for / consider map.
        options: Options pair.

    Returns:
        CovarianceAnalysis: Analysis on *times*.

    Raises:
        ObservabilityError: If the reference information matrix is rank
            deficient.
    """
    opts = options.estimate
    sf = solve_for
    n = sf.n
    truth_ref = propagate(
        dynamics.truth,
        times,
        x0.truth,
        steps=options.truth.integration_steps,
        use_process_noise=opts.use_process_noise,
    )
    est_ref = propagate(
        dynamics.estimate, times, x0.estimate, steps=opts.integration_steps, use_process_noise=False
    )
    phi, qd = accumulate(truth_ref)
    phi_hat, _ = accumulate(est_ref)

    y, H, R = linearize(measurement.truth, times, truth_ref.states)
    y_hat, H_hat, R_hat = linearize(measurement.estimate, times, est_ref.states)
    valid = ~jnp.isnan(y) & ~jnp.isnan(y_hat)
    Hv = jnp.where(valid[:, :, None], H, 0.0)
    keep2 = valid[:, :, None] & valid[:, None, :]

    J = accumulate_information(P0.estimate, phi_hat, H_hat, R_hat, valid)
    check_observability(J)
    K = batch_gains(J, phi_hat, H_hat, R_hat, valid)
    Ktilde = sf.lift(K)

    ImSKH = jnp.eye(n, dtype=J.dtype) - jnp.einsum("iam,imb,ibc->ac", Ktilde, Hv, phi)
    ImKHs = jnp.eye(sf.ns, dtype=J.dtype) - jnp.einsum(
        "iam,imb,ibc->ac", K, jnp.where(valid[:, :, None], H_hat, 0.0), phi_hat
    )
    Pa0 = symmetrize(ImSKH @ finite_part(P0.truth) @ ImSKH.T)
    Pv0 = symmetrize(jnp.einsum("iam,imk,ibk->ab", Ktilde, jnp.where(keep2, R, 0.0), Ktilde))
    Phat_a0 = symmetrize(ImKHs @ finite_part(P0.estimate) @ ImKHs.T)
    Phat_v0 = symmetrize(jnp.einsum("iam,imk,ibk->ab", K, jnp.where(keep2, R_hat, 0.0), K))

    Pa = propagate_series(phi, Pa0)
    Pv = propagate_series(phi, Pv0)
    if bool(jnp.any(qd != 0.0)):
        check_process_noise_size(n, times.shape[0], opts.resource_warning_mb)
        Qtilde, Upsilon = process_noise_kernels(truth_ref, Hv)
        Pw0 = symmetrize(jnp.einsum("iam,ijmk,jbk->ab", Ktilde, Upsilon, Ktilde))
        gamma = jnp.einsum("iam,imb->iab", Ktilde, Hv)
        Nd = -jnp.einsum("iab,ikbc->kac", gamma, Qtilde)
        cross = jnp.einsum("kab,kbc->kac", phi, Nd)
        Pw = symmetrize(propagate_series(phi, Pw0) + cross + jnp.swapaxes(cross, -1, -2) + qd)
    else:
        Pw = jnp.zeros_like(Pa)

    Phat_a = propagate_series(phi_hat, Phat_a0)
    Phat_v = propagate_series(phi_hat, Phat_v0)
    sensitivity = sf.sensitivity(phi, ImSKH)
    P_true = Pa + Pv + Pw
    innovation_covariance = symmetrize(jnp.einsum("tma,tab,tkb->tmk", H, P_true, H) + R)

    return CovarianceAnalysis(
        times=times,
        Pa=Pa,
        Pv=Pv,
        Pw=Pw,
        Pm=jnp.zeros_like(Pa),
        Phat_a=Phat_a,
        Phat_v=Phat_v,
        Phat_w=jnp.zeros_like(Phat_a),
        Phat_m=jnp.zeros_like(Phat_a),
        sensitivity=sensitivity,
        innovation_covariance=innovation_covariance,
        estimate_map=sf.S,
    )


def batch_solve(
    dynamics: DynamicsModel,
    measurement: MeasurementModel,
    times: ArrayLike,
    measurements: ArrayLike,
    x0: ArrayLike,
    P0: ArrayLike,
    options: EstimatorOptions | None = None,
    tolerance: float = 0.0,
) -> BatchSolution:
    """Iterated batch solve for one set of measurements.

    Each iteration re-integrates the estimate trajectory from the current
    anchor estimate, re-linearises the measurements and solves the normal
    equations, including the *a priori* residual ``x0_bar - x0_hat`` so
    that the iteration converges to the maximum a posteriori estimate.
    Iteration stops when ``|dx0| <= tolerance`` or after
    ``options.update_iterations`` solves (default 10); reaching the cap
    logs a warning and returns the last estimate.

    Args:
        dynamics: Estimate dynamics model.
        measurement: Estimate measurement model.
        times: Measurement times; ``times[0]`` is the anchor.
        measurements: Measurements of shape ``(N, m)``; NaN entries are gaps.
        x0: *A priori* anchor estimate.
        P0: *A priori* covariance; infinite variances carry no information.
        options: Estimate options.
        tolerance: Convergence threshold on ``|dx0|``.

    Returns:
        BatchSolution: Anchor estimate, formal covariance and convergence
            information.

    Raises:
        ObservabilityError: If the information matrix is rank deficient.
    """
    options = EstimatorOptions() if options is None else options
    dtype = get_dtype()
    times = jnp.asarray(times, dtype=dtype)
    Y = jnp.atleast_2d(jnp.asarray(measurements, dtype=dtype))
    x_bar = jnp.asarray(x0, dtype=dtype)
    P0 = jnp.asarray(P0, dtype=dtype)
    J0 = prior_information(P0)
    Pf = finite_part(P0)
    cap = options.iterations(10)

    x_hat = x_bar
    converged = False
    for iteration in range(1, cap + 1):
        prop = propagate(dynamics, times, x_hat, options.integration_steps, use_process_noise=False)
        phi, _ = accumulate(prop)
        y_pred, H, R = linearize(measurement, times, prop.states)
        dy = Y - y_pred
        valid = ~jnp.isnan(dy)

        J = accumulate_information(P0, phi, H, R, valid)
        rank = int(jnp.linalg.matrix_rank(J))
        if rank < J.shape[0]:
            raise ObservabilityError(rank, J.shape[0], float(times[0]))
        K = batch_gains(J, phi, H, R, valid)

        dx = jnp.einsum("iam,im->a", K, jnp.where(valid, dy, 0.0))
        dx = dx + jnp.linalg.lstsq(J, J0 @ (x_bar - x_hat))[0]
        ImKH = jnp.eye(x_bar.shape[0], dtype=dtype) - jnp.einsum(
            "iam,imb,ibc->ac", K, jnp.where(valid[:, :, None], H, 0.0), phi
        )
        keep2 = valid[:, :, None] & valid[:, None, :]
        P_hat = symmetrize(
            ImKH @ Pf @ ImKH.T + jnp.einsum("iam,imk,ibk->ab", K, jnp.where(keep2, R, 0.0), K)
        )
        x_hat = x_hat + dx
        step = float(jnp.linalg.norm(dx))
        logger.debug("Batch iteration %d: |dx0| = %.3e", iteration, step)
        if step <= tolerance:
            converged = True
            break

    if not converged:
        logger.warning(
            "Maximum iterations (%d) reached in batch estimator; |dx0| = %.3e > %.3e",
            cap,
            step,
            tolerance,
        )
    return BatchSolution(x0=x_hat, P0=P_hat, iterations=iteration, converged=converged)


def simulate_batch_truth(
    dynamics: DynamicsModel,
    measurement: MeasurementModel,
    times: Array,
    x0: ArrayLike,
    key: Array,
    Qtilde: Array | None = None,
    steps: int = 10,
) -> tuple[Array, Array]:
    """Simulate one true trajectory and its measurements for the batch.

    The trajectory is integrated once from *x0*; process noise, if any, is
    added as one draw from the joint covariance of the accumulated noise at
    all times after the anchor, which carries their cross-time correlation.

    Returns:
        tuple: ``(states, measurements)`` of shapes ``(N, n)`` and ``(N, m)``.
    """
    noise_key, meas_key = jax.random.split(key)
    states = propagate(dynamics, times, x0, steps, use_process_noise=False).states
    N, n = states.shape
    if Qtilde is not None and N > 1:
        wd = sample_covariance(noise_key, block_matrix(Qtilde[1:, 1:])).reshape(N - 1, n)
        states = states.at[1:].add(wd)

    measurements = []
    for i in range(N):
        y = measurement.predict(times[i], states[i])
        R = measurement.covariance(times[i], states[i])
        measurements.append(y + sample_covariance(jax.random.fold_in(meas_key, i), R))
    return states, jnp.stack(measurements)


def run_batch(
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
    """Run the batch estimator with Monte Carlo trials.

    The first time in *tspan* is the anchor; measurements are taken at
    every time in *tspan*.  Each trial draws an *a priori* deviation from
    ``P0.truth`` and, when process noise is present, correlated process
    noise, simulates measurements and solves the iterated batch.

    Args:
        dynamics: Dynamics model, or a truth/estimate pair.
        measurement: Measurement model, or a truth/estimate pair.
        tspan: Strictly increasing measurement times.
        x0: Initial reference state, or a truth/estimate pair.
        P0: Initial covariance, or a truth/estimate pair.
        options: Estimator options, or a truth/estimate pair.
            ``schmidt_kalman`` does not apply and is ignored.
        solve_for: Solve-for map ``S`` (or a :class:`SolveForMap`).
        consider: Consider map ``C``.
        mapper: ``map``-like callable used to run the trials.
        diagnostic: Optional callable invoked with the result.

    Returns:
        EstimationResult: Covariance analysis, trials, failures and the
            convergence tolerance used.

    Raises:
        ConfigurationError: On invalid inputs, before any trial runs.
        ObservabilityError: If the reference information matrix is rank
            deficient.
    """
    inputs = resolve_inputs(
        dynamics, measurement, x0, P0, options, solve_for, consider, allow_full_state=False
    )
    opts = inputs.options.estimate
    if opts.schmidt_kalman:
        logger.warning("schmidt_kalman is ignored by the batch estimator")
    times = check_times(tspan)
    ncases = opts.monte_carlo_cases
    logger.info("Batch estimation: %d epochs, %d trials", times.shape[0], ncases)

    analysis = batch_covariance_analysis(
        inputs.dynamics,
        inputs.measurement,
        times,
        inputs.x0,
        inputs.P0,
        inputs.solve_for,
        inputs.options,
    )
    if opts.convergence_tolerance is not None:
        tolerance = opts.convergence_tolerance
    else:
        tolerance = default_tolerance(analysis.Pa[0] + analysis.Pv[0] + analysis.Pw[0])
    logger.debug("Batch convergence tolerance %.3e", tolerance)

    truth_model = inputs.dynamics.truth
    truth_steps = inputs.options.truth.integration_steps
    Qtilde = None
    if opts.use_process_noise:
        reference = propagate(truth_model, times, inputs.x0.truth, truth_steps)
        if bool(jnp.any(reference.process_noise != 0.0)):
            Qtilde = process_noise_correlation(reference)

    E = inputs.estimate_map
    keys = trial_keys(opts.monte_carlo_seed, ncases)

    def trial(j: int) -> TrialResult:
        init_key, sim_key = jax.random.split(keys[j])
        x_true0 = inputs.x0.truth + sample_covariance(init_key, inputs.P0.truth)
        truth, Y = simulate_batch_truth(
            truth_model, inputs.measurement.truth, times, x_true0, sim_key, Qtilde, truth_steps
        )
        solution = batch_solve(
            inputs.dynamics.estimate,
            inputs.measurement.estimate,
            times,
            Y,
            inputs.x0.estimate,
            inputs.P0.estimate,
            opts,
            tolerance,
        )
        prop = propagate(
            inputs.dynamics.estimate, times, solution.x0, opts.integration_steps, use_process_noise=False
        )
        phi, _ = accumulate(prop)
        covariance = propagate_series(phi, solution.P0)
        y_pred, H, R = linearize(inputs.measurement.estimate, times, prop.states)
        innovation = Y - y_pred
        return TrialResult(
            index=j,
            times=times,
            truth=truth,
            measurements=Y,
            estimate=prop.states,
            covariance=covariance,
            error=prop.states - truth @ E.T,
            innovation=innovation,
            innovation_covariance=symmetrize(jnp.einsum("tma,tab,tkb->tmk", H, covariance, H) + R),
            edit_flags=jnp.where(jnp.isnan(innovation), jnp.nan, float(EDIT_FORCED)),
            iterations=solution.iterations,
            converged=solution.converged,
        )

    trials, failures = run_trials(trial, ncases, mapper)
    result = EstimationResult(
        times=times,
        measurement_index=jnp.arange(times.shape[0]),
        analysis=analysis,
        trials=trials,
        failures=failures,
        solve_for=inputs.solve_for,
        tolerance=tolerance,
    )
    logger.info("Batch estimation finished: %s", result.info())
    if diagnostic is not None:
        diagnostic(result)
    return result
