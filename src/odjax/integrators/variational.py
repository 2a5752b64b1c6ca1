"""Fixed-step RK4 propagation of the variational equations.

Integrates the state together with its state transition matrix and the
process noise covariance it accumulates:

.. math::

    \\dot{x} &= f(t, x) \\\\
    \\dot{\\Phi} &= A(t, x)\\,\\Phi, \\qquad \\Phi(t_{k-1}, t_{k-1}) = I \\\\
    \\dot{Q}_d &= A Q_d + Q_d A^T + Q(t, x), \\qquad Q_d(t_{k-1}, t_{k-1}) = 0

over each interval of a time grid, using the classic four-stage RK4
scheme applied leaf-wise to the ``(x, Phi, Qd)`` pytree.  ``A`` comes from
the model's partials or from ``jax.jacfwd``.
"""

from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.integrators._types import Propagation
from odjax.models._types import DynamicsModel

logger = logging.getLogger(__name__)


def _rk4_step(f, t, y, dt):
    def shifted(k, h):
        return jax.tree_util.tree_map(lambda yi, ki: yi + h * ki, y, k)

    k1 = f(t, y)
    k2 = f(t + 0.5 * dt, shifted(k1, 0.5 * dt))
    k3 = f(t + 0.5 * dt, shifted(k2, 0.5 * dt))
    k4 = f(t + dt, shifted(k3, dt))

    return jax.tree_util.tree_map(
        lambda yi, a, b, c, d: yi + (dt / 6.0) * (a + 2.0 * b + 2.0 * c + d),
        y, k1, k2, k3, k4,
    )


def propagate(
    model: DynamicsModel,
    times: ArrayLike,
    x0: ArrayLike,
    steps: int = 10,
    use_process_noise: bool = True,
) -> Propagation:
    """Propagate a state and its variational quantities over a time grid.

    Each interval ``[t_{k-1}, t_k]`` is split into *steps* equal RK4 steps.
    Zero-length intervals (repeated times) return the unchanged state with
    an identity transition and zero process noise.  Backward grids are
    supported.

    Args:
        model: Dynamics model to integrate.
        times: Monotonic time grid of shape ``(N,)``; ``times[0]`` is the
            epoch of *x0*.
        x0: Initial state of shape ``(n,)``.
        steps: RK4 steps per interval.
        use_process_noise: If ``False`` the process noise spectral density
            is ignored and ``process_noise`` is identically zero.

    Returns:
        Propagation: States, interval transition matrices and interval
            process noise covariances on *times*.

    Examples:
        ```python
        import jax.numpy as jnp
        from odjax.integrators import propagate
        from odjax.models import constant_velocity
        prop = propagate(constant_velocity(), jnp.arange(3.0), jnp.array([0.0, 1.0]))
        prop.states[-1]  # [2.0, 1.0]
        ```
    """
    dtype = get_dtype()
    times = jnp.atleast_1d(jnp.asarray(times, dtype=dtype))
    x = jnp.asarray(x0, dtype=dtype)
    n = x.shape[0]
    eye = jnp.eye(n, dtype=dtype)
    zero = jnp.zeros((n, n), dtype=dtype)

    def augmented(t, y):
        xi, phi, qd = y
        A = model.jacobian(t, xi)
        dqd = A @ qd + qd @ A.T
        if use_process_noise:
            dqd = dqd + model.spectral_density(t, xi)
        return (model.rate(t, xi), A @ phi, dqd)

    states = [x]
    stms = [eye]
    noises = [zero]
    for k in range(1, times.shape[0]):
        t0 = times[k - 1]
        span = times[k] - t0
        y = (x, eye, zero)
        if float(span) != 0.0:
            h = span / steps
            for i in range(steps):
                y = _rk4_step(augmented, t0 + i * h, y, h)
        x, phi, qd = y
        states.append(x)
        stms.append(phi)
        noises.append(0.5 * (qd + qd.T))

    logger.debug("Propagated %d-state model over %d epochs", n, times.shape[0])
    return Propagation(
        times=times,
        states=jnp.stack(states),
        stm=jnp.stack(stms),
        process_noise=jnp.stack(noises),
    )


def accumulate(propagation: Propagation) -> tuple[Array, Array]:
    """Chain interval quantities into quantities relative to the first epoch.

    Uses ``Phi(t_k, t_0) = Phi(t_k, t_{k-1}) Phi(t_{k-1}, t_0)`` and
    ``Qd(t_k, t_0) = Phi(t_k, t_{k-1}) Qd(t_{k-1}, t_0) Phi'(t_k, t_{k-1})
    + Qd(t_k, t_{k-1})``.

    Args:
        propagation: Output of :func:`propagate`.

    Returns:
        tuple: ``(phi, qd)`` each of shape ``(N, n, n)`` with ``phi[0] = I``
            and ``qd[0] = 0``.
    """
    phi = [propagation.stm[0]]
    qd = [propagation.process_noise[0]]
    for k in range(1, propagation.times.shape[0]):
        step = propagation.stm[k]
        phi.append(step @ phi[-1])
        q = step @ qd[-1] @ step.T + propagation.process_noise[k]
        qd.append(0.5 * (q + q.T))
    return jnp.stack(phi), jnp.stack(qd)


def transition(propagation: Propagation, i: int, j: int) -> Array:
    """Return ``Phi(t_i, t_j)`` for ``i >= j`` by chaining interval matrices."""
    phi = jnp.eye(propagation.states.shape[1], dtype=propagation.states.dtype)
    for k in range(j + 1, i + 1):
        phi = propagation.stm[k] @ phi
    return phi
