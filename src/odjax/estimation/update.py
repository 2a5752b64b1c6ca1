"""Sequential (Kalman) measurement update.

Implements the measurement update of the sequential estimator:

.. math::

    K &= P H^T (H P H^T + R)^{-1} \\\\
    \\hat{x}^+ &= \\hat{x} + K (y - \\hat{y}) \\\\
    P^+ &= (I - K H) P (I - K H)^T + K R K^T

The covariance update uses the Joseph form, which stays symmetric positive
semi-definite for any gain.  That matters here because the gain is not
always the optimal one:

- **Schmidt-Kalman**: the gain is restricted to the solve-for subspace by
  the projector ``S~ S``; the consider partition keeps its mean but its
  correlations with the solve-for partition are still updated.
- **Editing**: a measurement whose innovation exceeds ``edit_ratio``
  standard deviations of the innovation covariance is rejected (its gain
  column is zero) unless its edit flag forces acceptance.
- **Gaps**: NaN measurements contribute nothing and are not counted as
  rejections.

An *a priori* covariance with infinite variances switches the update to
information form, ``J = J_0 + H' R^{-1} H``, ``K = J^{-1} H' R^{-1}``.  The
gain is obtained from the equivalent augmented system
``[[J_0, H'], [H, -R]]``, so noiseless measurements (``R = 0``) that
resolve every diffuse state are accepted.

These functions run eagerly: they branch on array values and raise
:class:`~odjax.estimation.EstimationError` subclasses, so they cannot be
traced by ``jax.jit`` or used as a ``jax.lax.scan`` body.
"""

from __future__ import annotations

import logging

import jax.numpy as jnp
from jax import Array
from jax.scipy.linalg import cho_solve
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import InnovationCovarianceError, ObservabilityError
from odjax.estimation._types import (
    EDIT_ACCEPTED,
    EDIT_FORCED,
    EDIT_REJECTED,
    EstimatorOptions,
    UpdateResult,
)
from odjax.estimation.covariance import (
    finite_part,
    has_infinite_variance,
    prior_information,
    symmetrize,
)
from odjax.models._types import MeasurementModel

logger = logging.getLogger(__name__)


def joseph_update(P: ArrayLike, K: ArrayLike, H: ArrayLike, R: ArrayLike) -> Array:
    """Joseph-form covariance update ``(I-KH) P (I-KH)' + K R K'``, symmetrised."""
    P = jnp.asarray(P)
    K = jnp.asarray(K)
    ImKH = jnp.eye(P.shape[0], dtype=P.dtype) - K @ jnp.asarray(H)
    return symmetrize(ImKH @ P @ ImKH.T + K @ jnp.asarray(R) @ K.T)


def _information_gain(J0: Array, H: Array, R: Array, accepted: Array, time: float) -> Array:
    # Gain of the augmented system [[J0, H'], [H, -R]] [dx; l] = [0; dy],
    # which stays regular for noiseless measurements.  Rows that are not
    # accepted get unit noise and zero partials.
    n = J0.shape[0]
    m = H.shape[0]
    eye = jnp.eye(m, dtype=J0.dtype)
    Rm = jnp.where(accepted[:, None] & accepted[None, :], finite_part(R), eye)
    A = jnp.block([[J0, H.T], [H, -Rm]])
    if int(jnp.linalg.matrix_rank(A)) < n + m:
        indices = tuple(int(i) for i in jnp.flatnonzero(accepted))
        raise InnovationCovarianceError(time, indices)
    rhs = jnp.concatenate([jnp.zeros((n, m), dtype=J0.dtype), eye], axis=0)
    return jnp.linalg.solve(A, rhs)[:n]


def kalman_update(
    x: ArrayLike,
    P: ArrayLike,
    y: ArrayLike,
    y_pred: ArrayLike,
    H: ArrayLike,
    R: ArrayLike,
    edit_ratio: ArrayLike | None = None,
    edit_flag: ArrayLike | None = None,
    projector: ArrayLike | None = None,
    time: float = 0.0,
) -> UpdateResult:
    """Apply one vector measurement update.

    Args:
        x: Prior state estimate of shape ``(n,)``.
        P: Prior covariance of shape ``(n, n)``.  Infinite diagonal entries
            denote states without *a priori* information.
        y: Measurements of shape ``(m,)``; NaN entries are gaps.
        y_pred: Predicted measurements of shape ``(m,)``.
        H: Measurement partials of shape ``(m, n)``.
        R: Measurement noise covariance of shape ``(m, m)``.
        edit_ratio: Innovation-to-sigma rejection thresholds, shape ``(m,)``.
            Defaults to no rejection.
        edit_flag: Per-measurement policy, shape ``(m,)``: ``1`` test,
            ``2`` force accept.  Defaults to ``1``.
        projector: Optional ``(n, n)`` projector ``S~ S`` restricting the
            correction to the solve-for subspace (Schmidt-Kalman).
        time: Epoch of the update, used in error messages.

    Returns:
        UpdateResult: Updated state and covariance with diagnostics.

    Raises:
        InnovationCovarianceError: If the innovation covariance of the
            accepted measurements is singular.
        ObservabilityError: If a prior with infinite variance is not made
            fully observable by the measurements.

    Examples:
        ```python
        import jax.numpy as jnp
        from odjax.estimation import kalman_update
        result = kalman_update(
            jnp.zeros(2), jnp.eye(2), jnp.array([1.0]), jnp.array([0.0]),
            jnp.array([[1.0, 0.0]]), jnp.array([[1.0]]),
        )
        result.x  # [0.5, 0.0]
        ```
    """
    dtype = get_dtype()
    x = jnp.asarray(x, dtype=dtype)
    P = jnp.asarray(P, dtype=dtype)
    y = jnp.atleast_1d(jnp.asarray(y, dtype=dtype))
    y_pred = jnp.atleast_1d(jnp.asarray(y_pred, dtype=dtype))
    H = jnp.atleast_2d(jnp.asarray(H, dtype=dtype))
    R = jnp.atleast_2d(jnp.asarray(R, dtype=dtype))
    n = x.shape[0]
    m = y.shape[0]

    ratio = jnp.full((m,), jnp.inf, dtype=dtype) if edit_ratio is None else jnp.asarray(edit_ratio, dtype=dtype)
    flag = jnp.full((m,), EDIT_ACCEPTED) if edit_flag is None else jnp.asarray(edit_flag)
    forced = flag == EDIT_FORCED

    innovation = y - y_pred
    valid = ~jnp.isnan(innovation)
    dy = jnp.where(valid, innovation, 0.0)
    Hv = jnp.where(valid[:, None], H, 0.0)

    if has_infinite_variance(P):
        # No innovation statistics exist along diffuse directions, so every
        # available measurement is used.
        Pf = finite_part(P)
        Pdy = symmetrize(H @ Pf @ H.T + R)
        accepted = valid
        flags = jnp.where(valid, jnp.where(forced, EDIT_FORCED, EDIT_ACCEPTED), jnp.nan)

        J0 = prior_information(P)
        rank = int(jnp.linalg.matrix_rank(jnp.concatenate([J0, Hv], axis=0)))
        if rank < n:
            raise ObservabilityError(rank, n, time)
        K = _information_gain(J0, Hv, R, accepted, time)
    else:
        Pf = P
        Pdy = symmetrize(H @ P @ H.T + R)
        sigma = jnp.sqrt(jnp.abs(jnp.diag(Pdy)))
        passed = jnp.isinf(ratio) | (jnp.abs(dy) <= ratio * sigma)
        accepted = valid & (forced | passed)
        flags = jnp.where(
            valid,
            jnp.where(forced, EDIT_FORCED, jnp.where(passed, EDIT_ACCEPTED, EDIT_REJECTED)),
            jnp.nan,
        )
        rejected = int(jnp.sum(valid & ~accepted))
        if rejected:
            logger.debug("Rejected %d measurement(s) at t = %s", rejected, time)

        if not bool(jnp.any(accepted)):
            K = jnp.zeros((n, m), dtype=dtype)
        else:
            keep2 = accepted[:, None] & accepted[None, :]
            S = jnp.where(keep2, Pdy, jnp.eye(m, dtype=dtype))
            L = jnp.linalg.cholesky(S)
            Sinv = cho_solve((L, True), jnp.eye(m, dtype=dtype))
            if not bool(jnp.all(jnp.isfinite(Sinv))):
                indices = tuple(int(i) for i in jnp.flatnonzero(accepted))
                raise InnovationCovarianceError(time, indices)
            Sinv = jnp.where(keep2, Sinv, 0.0)
            K = P @ Hv.T @ Sinv

    if projector is not None:
        K = jnp.asarray(projector, dtype=dtype) @ K
    K = jnp.where(accepted[None, :], K, 0.0)

    x_new = x + K @ dy
    P_new = joseph_update(Pf, K, Hv, jnp.where(accepted[:, None] & accepted[None, :], R, 0.0))

    return UpdateResult(
        x=x_new,
        P=P_new,
        innovation=innovation,
        innovation_covariance=Pdy,
        gain=K,
        edit_flags=flags,
    )


def _iterated_update(
    model: MeasurementModel,
    t: float,
    x: Array,
    P: Array,
    y: Array,
    ratio: Array,
    flag: Array,
    projector: Array | None,
    iterations: int,
) -> UpdateResult:
    y_pred, H, R = model.evaluate(t, x)
    result = kalman_update(x, P, y, y_pred, H, R, ratio, flag, projector, time=t)

    # Later iterations re-linearise about the updated estimate with the
    # measurement selection fixed by the first pass.
    accepted = (result.edit_flags == EDIT_ACCEPTED) | (result.edit_flags == EDIT_FORCED)
    y_sel = jnp.where(accepted, y, jnp.nan)
    forced = jnp.full(flag.shape, EDIT_FORCED)
    final = result
    for _ in range(1, iterations):
        xi = final.x
        yi, Hi, Ri = model.evaluate(t, xi)
        final = kalman_update(
            x, P, y_sel, yi + Hi @ (x - xi), Hi, Ri, None, forced, projector, time=t
        )

    return final._replace(
        innovation=result.innovation,
        innovation_covariance=result.innovation_covariance,
        edit_flags=result.edit_flags,
    )


def measurement_update(
    model: MeasurementModel,
    t: float,
    x: ArrayLike,
    P: ArrayLike,
    y: ArrayLike,
    options: EstimatorOptions,
    projector: ArrayLike | None = None,
) -> UpdateResult:
    """Update an estimate with the measurements of one epoch.

    Evaluates *model* at the estimate, then applies either one vector
    update (``options.update_vectorized``) or one scalar update per
    measurement, re-evaluating the model after each.  Each update is
    repeated ``options.update_iterations`` times, re-linearising about the
    latest estimate while keeping the prior fixed.

    Args:
        model: Estimator measurement model.
        t: Measurement epoch.
        x: Prior estimate.
        P: Prior covariance.
        y: Measurements of shape ``(m,)``.
        options: Estimate options.
        projector: Schmidt-Kalman projector, if any.

    Returns:
        UpdateResult: Updated estimate with the epoch's innovations, formal
            innovation covariance, gains and edit flags.
    """
    dtype = get_dtype()
    x = jnp.asarray(x, dtype=dtype)
    P = jnp.asarray(P, dtype=dtype)
    y = jnp.atleast_1d(jnp.asarray(y, dtype=dtype))
    m = y.shape[0]
    ratio, flag = options.edit_settings(m)
    iterations = options.iterations(1)
    if projector is not None:
        projector = jnp.asarray(projector, dtype=dtype)

    if options.update_vectorized:
        return _iterated_update(model, t, x, P, y, ratio, flag, projector, iterations)

    innovation = jnp.full((m,), jnp.nan, dtype=dtype)
    Pdy = jnp.full((m, m), jnp.nan, dtype=dtype)
    gain = jnp.zeros((x.shape[0], m), dtype=dtype)
    flags = jnp.full((m,), jnp.nan, dtype=dtype)
    for b in range(m):
        scalar = MeasurementModel(
            fn=lambda ti, xi, args, b=b: model.predict(ti, xi)[b : b + 1],
            noise=lambda ti, xi, args, b=b: model.covariance(ti, xi)[b : b + 1, b : b + 1],
            partials=lambda ti, xi, args, b=b: model.jacobian(ti, xi)[b : b + 1],
        )
        try:
            result = _iterated_update(
                scalar, t, x, P, y[b : b + 1], ratio[b : b + 1], flag[b : b + 1], projector, iterations
            )
        except InnovationCovarianceError as err:
            raise InnovationCovarianceError(err.time, (b,)) from err
        x, P = result.x, result.P
        innovation = innovation.at[b].set(result.innovation[0])
        Pdy = Pdy.at[b, b].set(result.innovation_covariance[0, 0])
        gain = gain.at[:, b].set(result.gain[:, 0])
        flags = flags.at[b].set(result.edit_flags[0])

    return UpdateResult(
        x=x, P=P, innovation=innovation, innovation_covariance=Pdy, gain=gain, edit_flags=flags
    )
