"""Model capability types for the estimation core.

The estimators treat the dynamics and the measurement model as opaque
collaborators.  Each is wrapped in a small frozen dataclass that bundles the
user function with its optional partials and noise description:

- :class:`DynamicsModel`: ``f(t, x, args) -> dx/dt`` plus optional
  ``A(t, x, args) = df/dx`` and process noise spectral density
  ``Q(t, x, args)``.
- :class:`MeasurementModel`: ``h(t, x, args) -> y`` plus optional
  ``H(t, x, args) = dh/dx`` and measurement noise covariance
  ``R(t, x, args)`` (or a constant matrix).
- :class:`Pair`: an explicit *truth* / *estimate* pair.  The truth member
  generates the simulated world, the estimate member is what the estimator
  believes; they may differ to study mismodeling.

When partials are omitted they are obtained with ``jax.jacfwd``, so user
functions must be written with ``jax.numpy`` operations.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype


@dataclass(frozen=True, eq=False)
class DynamicsModel:
    """State dynamics ``x' = f(t, x) + w``.

    Args:
        fn: State derivative function ``fn(t, x, args) -> dx/dt``.
        partials: Optional Jacobian ``partials(t, x, args) -> A`` of shape
            ``(n, n)``.  Computed with ``jax.jacfwd`` when omitted.
        process_noise: Optional process noise spectral density
            ``process_noise(t, x, args) -> Q`` of shape ``(n, n)``, where
            ``E[w w'] = Q``.  Zero when omitted.
        args: Extra argument passed through to every callable.

    Examples:
        ```python
        import jax.numpy as jnp
        from odjax.models import DynamicsModel
        model = DynamicsModel(lambda t, x, args: jnp.array([x[1], 0.0]))
        model.jacobian(0.0, jnp.zeros(2))
        ```
    """

    fn: Callable[[ArrayLike, Array, Any], Array]
    partials: Callable[[ArrayLike, Array, Any], Array] | None = None
    process_noise: Callable[[ArrayLike, Array, Any], Array] | None = None
    args: Any = None

    def rate(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate the state derivative at ``(t, x)``."""
        return jnp.asarray(self.fn(t, x, self.args), dtype=get_dtype())

    def jacobian(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate ``A = df/dx`` at ``(t, x)``."""
        x = jnp.asarray(x, dtype=get_dtype())
        if self.partials is not None:
            return jnp.asarray(self.partials(t, x, self.args), dtype=get_dtype())
        return jax.jacfwd(lambda xi: self.fn(t, xi, self.args))(x)

    def spectral_density(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate the process noise spectral density at ``(t, x)``."""
        x = jnp.asarray(x, dtype=get_dtype())
        if self.process_noise is None:
            return jnp.zeros((x.shape[0], x.shape[0]), dtype=get_dtype())
        return jnp.asarray(self.process_noise(t, x, self.args), dtype=get_dtype())


@dataclass(frozen=True, eq=False)
class MeasurementModel:
    """Measurement model ``y = h(t, x) + v``.

    Args:
        fn: Predicted measurement ``fn(t, x, args) -> y`` of shape ``(m,)``.
            Entries may be NaN to signal that no measurement exists (for
            example, no visibility).
        noise: Measurement noise covariance ``R = E[v v']``, either a
            constant ``(m, m)`` array or a callable ``noise(t, x, args)``.
        partials: Optional Jacobian ``partials(t, x, args) -> H`` of shape
            ``(m, n)``.  Computed with ``jax.jacfwd`` when omitted.
        args: Extra argument passed through to every callable.
    """

    fn: Callable[[ArrayLike, Array, Any], Array]
    noise: Callable[[ArrayLike, Array, Any], Array] | ArrayLike
    partials: Callable[[ArrayLike, Array, Any], Array] | None = None
    args: Any = None

    def predict(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate the predicted measurement at ``(t, x)``."""
        y = jnp.asarray(self.fn(t, x, self.args), dtype=get_dtype())
        return jnp.atleast_1d(y)

    def jacobian(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate ``H = dh/dx`` at ``(t, x)``."""
        x = jnp.asarray(x, dtype=get_dtype())
        if self.partials is not None:
            H = jnp.asarray(self.partials(t, x, self.args), dtype=get_dtype())
        else:
            H = jax.jacfwd(lambda xi: jnp.atleast_1d(self.fn(t, xi, self.args)))(x)
        return jnp.atleast_2d(H)

    def covariance(self, t: ArrayLike, x: ArrayLike) -> Array:
        """Evaluate the measurement noise covariance at ``(t, x)``."""
        if callable(self.noise):
            R = self.noise(t, x, self.args)
        else:
            R = self.noise
        return jnp.atleast_2d(jnp.asarray(R, dtype=get_dtype()))

    def evaluate(self, t: ArrayLike, x: ArrayLike) -> tuple[Array, Array, Array]:
        """Return ``(y, H, R)`` at ``(t, x)``."""
        x = jnp.asarray(x, dtype=get_dtype())
        return self.predict(t, x), self.jacobian(t, x), self.covariance(t, x)


class Pair(NamedTuple):
    """Explicit truth / estimate pair.

    Used for dynamics and measurement models, initial states, initial
    covariances and estimator options.  The caller selects which member is
    which; nothing is inferred from the contents.

    Attributes:
        truth: Value used to simulate the real world.
        estimate: Value used by the estimator.
    """

    truth: Any
    estimate: Any

    @classmethod
    def same(cls, value: Any) -> Pair:
        """Build a pair whose truth and estimate members are identical."""
        return cls(truth=value, estimate=value)


def as_pair(value: Any) -> Pair:
    """Return *value* unchanged if it is a :class:`Pair`, else ``Pair.same(value)``."""
    if isinstance(value, Pair):
        return value
    return Pair.same(value)
