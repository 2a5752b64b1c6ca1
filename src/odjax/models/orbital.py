"""Planar orbital models.

Point-mass two-body dynamics in the plane and a range measurement from a
fixed station.  The state vector is ``[x, y, vx, vy]`` in SI units.  Both
models rely on ``jax.jacfwd`` for their partials.

References:
    1. O. Montenbruck and E. Gill, *Satellite Orbits: Models, Methods
       and Applications*, 2012, p. 56-68.
    2. B. Tapley, B. Schutz and G. Born, *Statistical Orbit
       Determination*, 2004, ch. 4.
"""

from __future__ import annotations

import jax.numpy as jnp
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.constants import GM_EARTH
from odjax.models._types import DynamicsModel, MeasurementModel


def _two_body_rate(t, x, args):
    gm = args
    r = x[:2]
    a = -gm * r / jnp.linalg.norm(r) ** 3
    return jnp.concatenate([x[2:], a])


def planar_two_body(gm: float = GM_EARTH, accel_psd: float = 0.0) -> DynamicsModel:
    """Planar two-body dynamics ``r'' = -gm r / |r|^3``.

    Args:
        gm: Gravitational parameter of the central body [m^3/s^2].
        accel_psd: Spectral density of white acceleration noise on each
            axis [m^2/s^3]. Zero disables process noise.

    Returns:
        DynamicsModel: Planar two-body model with autodiff partials.

    Examples:
        ```python
        import jax.numpy as jnp
        from odjax.constants import R_EARTH, GM_EARTH
        from odjax.models import planar_two_body
        v = jnp.sqrt(GM_EARTH / R_EARTH)
        planar_two_body().rate(0.0, jnp.array([R_EARTH, 0.0, 0.0, v]))
        ```
    """
    process_noise = None
    if accel_psd > 0.0:
        Q = jnp.diag(jnp.array([0.0, 0.0, accel_psd, accel_psd], dtype=get_dtype()))

        def process_noise(t, x, args):
            return Q

    return DynamicsModel(fn=_two_body_rate, process_noise=process_noise, args=gm)


def range_2d(station: ArrayLike = (0.0, 0.0), sigma: float = 1.0) -> MeasurementModel:
    """Range from a fixed station in the orbital plane.

    Args:
        station: Station position ``[x, y]`` [m].
        sigma: 1-sigma range noise [m].

    Returns:
        MeasurementModel: ``y = |r - r_station| + v`` with ``R = sigma^2``.
    """
    station = jnp.asarray(station, dtype=get_dtype())

    def fn(t, x, args):
        return jnp.atleast_1d(jnp.linalg.norm(x[:2] - args))

    return MeasurementModel(
        fn=fn,
        noise=jnp.array([[sigma**2]], dtype=get_dtype()),
        args=station,
    )
