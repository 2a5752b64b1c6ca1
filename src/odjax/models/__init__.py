"""Dynamics and measurement model collaborators.

Provides the capability wrappers consumed by the integrators and the
estimators, plus a few ready-made models:

- :class:`DynamicsModel` -- ``f(t, x)`` with optional partials and process noise
- :class:`MeasurementModel` -- ``h(t, x)`` with optional partials and noise
- :class:`Pair` -- explicit truth / estimate pair
- :func:`constant_velocity`, :func:`position_measurement` -- linear kinematics
- :func:`planar_two_body`, :func:`range_2d` -- planar orbit determination
"""

from odjax.models._types import DynamicsModel, MeasurementModel, Pair, as_pair
from odjax.models.linear import constant_velocity, position_measurement
from odjax.models.orbital import planar_two_body, range_2d

__all__ = [
    "DynamicsModel",
    "MeasurementModel",
    "Pair",
    "as_pair",
    "constant_velocity",
    "position_measurement",
    "planar_two_body",
    "range_2d",
]
