"""Numerical propagation of states, transition matrices and process noise.

Implements the Integrator collaborator of the estimators:

- :func:`propagate` -- RK4 integration of the variational equations
- :func:`accumulate` -- chain interval quantities to the first epoch
- :func:`transition` -- ``Phi(t_i, t_j)`` from interval matrices
- :class:`Propagation` -- propagation result
"""

from odjax.integrators._types import Propagation
from odjax.integrators.variational import accumulate, propagate, transition

__all__ = [
    "Propagation",
    "propagate",
    "accumulate",
    "transition",
]
