"""Input resolution shared by the batch and sequential estimators."""

from __future__ import annotations

from typing import Any, NamedTuple

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import ConfigurationError
from odjax.estimation._types import EstimatorOptions
from odjax.estimation.covariance import check_covariance, map_covariance
from odjax.estimation.partition import SolveForMap
from odjax.models._types import DynamicsModel, MeasurementModel, Pair, as_pair


class RunInputs(NamedTuple):
    """Validated estimator inputs.

    Attributes:
        dynamics: Dynamics model pair.
        measurement: Measurement model pair.
        x0: Initial states; the truth member is full-state, the estimate
            member lives in the estimator's state space.
        P0: Initial covariances matching *x0*.
        options: Options pair.
        solve_for: Solve-for / consider map.
        full_state: Whether the estimator carries the full state
            (Schmidt-Kalman).
    """

    dynamics: Pair
    measurement: Pair
    x0: Pair
    P0: Pair
    options: Pair
    solve_for: SolveForMap
    full_state: bool

    @property
    def estimate_map(self) -> Array:
        return self.solve_for.estimate_map(self.full_state)


def check_times(tspan: ArrayLike, name: str = "tspan") -> Array:
    """Validate a strictly increasing 1-D time grid."""
    times = jnp.atleast_1d(jnp.asarray(tspan, dtype=get_dtype()))
    if times.ndim != 1 or times.shape[0] < 1:
        raise ConfigurationError(f"{name} must be a non-empty 1-D array, got shape {times.shape}")
    if times.shape[0] > 1 and not bool(jnp.all(jnp.diff(times) > 0.0)):
        raise ConfigurationError(f"{name} must be strictly increasing")
    return times


def _check_pair(value: Pair, kind: type, name: str) -> Pair:
    for member in value:
        if not isinstance(member, kind):
            raise ConfigurationError(
                f"{name} must be a {kind.__name__} or a Pair of them, got {type(member).__name__}"
            )
    return value


def resolve_options(options: EstimatorOptions | Pair | None) -> Pair:
    """Return the options as a pair, defaulting to :class:`EstimatorOptions`."""
    if options is None:
        options = EstimatorOptions()
    return _check_pair(as_pair(options), EstimatorOptions, "options")


def resolve_inputs(
    dynamics: DynamicsModel | Pair,
    measurement: MeasurementModel | Pair,
    x0: ArrayLike | Pair,
    P0: ArrayLike | Pair,
    options: EstimatorOptions | Pair | None = None,
    solve_for: Any = None,
    consider: ArrayLike | None = None,
    allow_full_state: bool = True,
) -> RunInputs:
    """Validate the estimator inputs and build the solve-for map.

    Args:
        dynamics: Dynamics model, or a truth/estimate pair.
        measurement: Measurement model, or a truth/estimate pair.
        x0: Initial state, or a truth/estimate pair.
        P0: Initial covariance, or a truth/estimate pair.  Required.
        options: Estimator options, or a truth/estimate pair.
        solve_for: A :class:`SolveForMap` or the solve-for matrix ``S``.
        consider: Consider matrix ``C``; ignored when *solve_for* is a
            :class:`SolveForMap`.
        allow_full_state: Whether the estimator supports the Schmidt-Kalman
            full-state mode.

    Returns:
        RunInputs: Validated inputs.

    Raises:
        ConfigurationError: On missing or inconsistent inputs.
    """
    dynamics = _check_pair(as_pair(dynamics), DynamicsModel, "dynamics")
    measurement = _check_pair(as_pair(measurement), MeasurementModel, "measurement")
    options = resolve_options(options)
    if x0 is None:
        raise ConfigurationError("Initial state must be set")
    if P0 is None:
        raise ConfigurationError("Initial covariance must be set")

    dtype = get_dtype()
    x_true = jnp.atleast_1d(jnp.asarray(as_pair(x0).truth, dtype=dtype))
    n = x_true.shape[0]

    if isinstance(solve_for, SolveForMap):
        sf = solve_for
    else:
        sf = SolveForMap.from_maps(solve_for, consider, n=n)
    if sf.n != n:
        raise ConfigurationError(f"Solve-for map covers {sf.n} states but x0 has {n}")

    full_state = bool(options.estimate.schmidt_kalman) and allow_full_state
    ne = n if full_state else sf.ns
    E = sf.estimate_map(full_state)

    # A single (non-pair) value describes the full state; the estimator's
    # member is its image under the estimate map.
    if isinstance(x0, Pair):
        x_est = jnp.atleast_1d(jnp.asarray(x0.estimate, dtype=dtype))
    else:
        x_est = E @ x_true
    if x_est.shape != (ne,):
        raise ConfigurationError(f"Estimate initial state must have shape ({ne},), got {x_est.shape}")

    P_true = check_covariance(as_pair(P0).truth, n, "True initial covariance")
    if isinstance(P0, Pair):
        P_est = check_covariance(P0.estimate, ne, "Estimate initial covariance")
    else:
        P_est = map_covariance(E, P_true)

    return RunInputs(
        dynamics=dynamics,
        measurement=measurement,
        x0=Pair(x_true, x_est),
        P0=Pair(P_true, P_est),
        options=options,
        solve_for=sf,
        full_state=full_state,
    )
