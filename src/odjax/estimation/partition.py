"""Solve-for / consider partitioning of the state space.

Linear maps ``S`` and ``C`` split the full state into a *solve-for*
partition ``s = S x``, which the estimator corrects, and a *consider*
partition ``c = C x``, whose uncertainty is accounted for but never
corrected:

.. math::

    M = \\begin{bmatrix} S \\\\ C \\end{bmatrix}, \\qquad
    M^{-1} = \\begin{bmatrix} \\tilde{S} & \\tilde{C} \\end{bmatrix}, \\qquad
    x = \\tilde{S} s + \\tilde{C} c

The maps are constant in time.  Time-varying maps (3-D arrays) are not
supported; their first slice is used and a warning is logged.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import ConfigurationError

logger = logging.getLogger(__name__)


def _constant_map(name: str, value: ArrayLike) -> Array:
    value = jnp.asarray(value, dtype=get_dtype())
    if value.ndim == 3:
        logger.warning(
            "Time-varying %s maps are not supported; using the first time slice", name
        )
        value = value[0]
    if value.ndim != 2:
        raise ConfigurationError(f"{name} must be a 2-D matrix, got shape {value.shape}")
    return value


class SolveForMap(NamedTuple):
    """Solve-for and consider maps with the inverse of their stack.

    Attributes:
        S: Solve-for map of shape ``(ns, n)``.
        C: Consider map of shape ``(nc, n)``; ``nc`` may be zero.
        S_tilde: First ``ns`` columns of ``[S; C]^{-1}``, shape ``(n, ns)``.
        C_tilde: Last ``nc`` columns of ``[S; C]^{-1}``, shape ``(n, nc)``.
    """

    S: Array
    C: Array
    S_tilde: Array
    C_tilde: Array

    @classmethod
    def from_maps(
        cls,
        S: ArrayLike | None = None,
        C: ArrayLike | None = None,
        n: int | None = None,
    ) -> SolveForMap:
        """Build the partition from ``S`` and ``C``.

        Args:
            S: Solve-for map ``(ns, n)``.  Defaults to the identity (solve
                for every state).
            C: Consider map ``(nc, n)``.  Defaults to an empty map.
            n: Full state dimension.  Required when *S* is omitted.

        Returns:
            SolveForMap: The maps and the partitioned inverse.

        Raises:
            ConfigurationError: If the maps have inconsistent shapes or
                ``[S; C]`` is not invertible.
        """
        dtype = get_dtype()
        if S is None:
            if n is None:
                raise ConfigurationError("State dimension n is required when S is omitted")
            S = jnp.eye(n, dtype=dtype)
        S = _constant_map("S", S)
        n = S.shape[1]
        C = jnp.zeros((0, n), dtype=dtype) if C is None else _constant_map("C", C)
        if C.shape[0] > 0 and C.shape[1] != n:
            raise ConfigurationError(f"S has {n} columns but C has {C.shape[1]}")

        M = jnp.concatenate([S, C.reshape(-1, n)], axis=0)
        if M.shape[0] != n:
            raise ConfigurationError(
                f"[S; C] must be square: {S.shape[0]} solve-for + {C.shape[0]} "
                f"consider rows for {n} states"
            )
        rank = int(jnp.linalg.matrix_rank(M))
        if rank < n:
            raise ConfigurationError(f"[S; C] is not invertible (rank {rank} < {n})")

        Minv = jnp.linalg.inv(M)
        ns = S.shape[0]
        return cls(S=S, C=C.reshape(-1, n), S_tilde=Minv[:, :ns], C_tilde=Minv[:, ns:])

    @property
    def ns(self) -> int:
        return self.S.shape[0]

    @property
    def nc(self) -> int:
        return self.C.shape[0]

    @property
    def n(self) -> int:
        return self.S.shape[1]

    def lift(self, ds: ArrayLike) -> Array:
        """Map a solve-for correction back into the full state, ``S~ ds``.

        *ds* may be a vector ``(ns,)``, a gain ``(ns, m)`` or a stack of
        gains ``(N, ns, m)``.
        """
        return self.S_tilde @ jnp.asarray(ds, dtype=self.S.dtype)

    def basis(self) -> Array:
        """``[S~, C~]``, the inverse of ``[S; C]``, shape ``(n, n)``."""
        return jnp.concatenate([self.S_tilde, self.C_tilde], axis=1)

    def projector(self) -> Array:
        """Full-state projector ``S~ S`` onto the solve-for subspace."""
        return self.S_tilde @ self.S

    def estimate_map(self, full_state: bool = False) -> Array:
        """Matrix mapping the full state to the estimator's state.

        Returns ``S`` for a solve-for estimator and the identity for a
        full-state (Schmidt-Kalman) estimator.
        """
        if full_state:
            return jnp.eye(self.n, dtype=self.S.dtype)
        return self.S

    def sensitivity(self, phi: ArrayLike, residual: ArrayLike | None = None) -> Array:
        """Solve-for sensitivity to *a priori* errors at anchor time.

        Computes ``S Phi(t, t0) (I - sum S~ K H Phi) [S~0, C~0]``, where
        *residual* is the bracketed ``(I - sum S~ K H Phi)`` term.

        Args:
            phi: ``Phi(t, t0)`` of shape ``(n, n)``, or a stack of them of
                shape ``(N, n, n)``.
            residual: Accumulated ``I - sum S~ K H Phi`` of shape ``(n, n)``.
                Omit it when *phi* already includes the updates, as for a
                sequential filter's running error transfer matrix.

        Returns:
            Array: Sensitivity matrix of shape ``(ns, n)``, or ``(N, ns, n)``
                for stacked *phi*.
        """
        transfer = jnp.asarray(phi)
        if residual is not None:
            transfer = transfer @ jnp.asarray(residual)
        return self.S @ transfer @ self.basis()
