"""Linear kinematic models.

Constant-velocity (double integrator) dynamics in ``dim`` spatial axes with
state ordering ``[p_1 .. p_dim, v_1 .. v_dim]``, driven by optional white
acceleration noise, and a direct position measurement.  Both supply their
partials analytically.

For ``dim = 1`` the state transition over an interval ``dt`` is

.. math::

    \\Phi(dt) = \\begin{bmatrix} 1 & dt \\\\ 0 & 1 \\end{bmatrix}

and a white acceleration of spectral density *q* accumulates the process
noise covariance

.. math::

    Q_d(dt) = q \\begin{bmatrix} dt^3/3 & dt^2/2 \\\\ dt^2/2 & dt \\end{bmatrix}
"""

from __future__ import annotations

import jax.numpy as jnp
from jax import Array

from odjax.config import get_dtype
from odjax.models._types import DynamicsModel, MeasurementModel


def _cv_matrix(dim: int) -> Array:
    dtype = get_dtype()
    A = jnp.zeros((2 * dim, 2 * dim), dtype=dtype)
    return A.at[:dim, dim:].set(jnp.eye(dim, dtype=dtype))


def constant_velocity(dim: int = 1, accel_psd: float = 0.0) -> DynamicsModel:
    """Constant-velocity dynamics ``p' = v``, ``v' = w``.

    Args:
        dim: Number of spatial axes.
        accel_psd: Spectral density of the white acceleration noise *w*
            on each axis. Zero disables process noise.

    Returns:
        DynamicsModel: Model with analytic partials and, when
            ``accel_psd > 0``, a process noise spectral density.

    Examples:
        ```python
        from odjax.models import constant_velocity
        model = constant_velocity(dim=1)
        model.rate(0.0, [0.0, 2.0])  # [2.0, 0.0]
        ```
    """
    A = _cv_matrix(dim)

    def fn(t, x, args):
        return A @ x

    def partials(t, x, args):
        return A

    process_noise = None
    if accel_psd > 0.0:
        dtype = get_dtype()
        Q = jnp.zeros((2 * dim, 2 * dim), dtype=dtype)
        Q = Q.at[dim:, dim:].set(accel_psd * jnp.eye(dim, dtype=dtype))

        def process_noise(t, x, args):
            return Q

    return DynamicsModel(fn=fn, partials=partials, process_noise=process_noise)


def position_measurement(dim: int = 1, sigma: float = 1.0, n_states: int | None = None) -> MeasurementModel:
    """Direct measurement of the first ``dim`` state components.

    Args:
        dim: Number of measured position axes.
        sigma: 1-sigma measurement noise on each axis.
        n_states: Length of the state vector. Defaults to ``2 * dim``.

    Returns:
        MeasurementModel: ``y = [I 0] x + v`` with ``R = sigma^2 I``.
    """
    dtype = get_dtype()
    n = 2 * dim if n_states is None else n_states
    H = jnp.zeros((dim, n), dtype=dtype).at[:, :dim].set(jnp.eye(dim, dtype=dtype))
    R = sigma**2 * jnp.eye(dim, dtype=dtype)

    def fn(t, x, args):
        return H @ x

    def partials(t, x, args):
        return H

    return MeasurementModel(fn=fn, noise=R, partials=partials)
