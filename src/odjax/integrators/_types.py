"""Type definitions for the variational integrator.

Provides :class:`Propagation`, the output of
:func:`~odjax.integrators.propagate`: a state time series together with the
per-interval state transition matrices and process noise covariances needed
by the covariance analysis and the estimators.

It is a :class:`~typing.NamedTuple`, which JAX treats as a pytree.
"""

from __future__ import annotations

from typing import NamedTuple

from jax import Array


class Propagation(NamedTuple):
    """State, transition and process noise history over a time grid.

    Transition matrices and process noise covariances are stored per
    interval so that they can be chained without matrix inversion.  Use
    :func:`~odjax.integrators.accumulate` to obtain ``Phi(t_k, t_0)`` and
    ``Qd(t_k, t_0)``.

    Attributes:
        times: Time grid of shape ``(N,)``.
        states: States of shape ``(N, n)``; ``states[0]`` is the initial state.
        stm: Interval transition matrices ``Phi(t_k, t_{k-1})`` of shape
            ``(N, n, n)``; ``stm[0]`` is the identity.
        process_noise: Interval process noise covariances
            ``Qd(t_k, t_{k-1})`` of shape ``(N, n, n)``; ``process_noise[0]``
            is zero.
    """

    times: Array
    states: Array
    stm: Array
    process_noise: Array
