"""Covariance propagation primitives.

Provides the linear-algebra building blocks of the linear covariance
analysis shared by the batch and sequential estimators:

- similarity-transform propagation ``Phi P Phi'`` with explicit
  symmetrisation after every step,
- handling of *a priori* covariances with infinite variance (no
  information), which are never inverted directly,
- inverses restricted to the measurements that actually exist at an
  epoch (measurement gaps are NaN),
- cross-time process noise correlation kernels

.. math::

    \\tilde{Q}(t_i, t_j) = \\Phi(t_i, t_j) Q_d(t_j, t_0), \\qquad
    \\Upsilon(t_i, t_j) = H(t_i) \\tilde{Q}(t_i, t_j) H'(t_j)

for ``i >= j``, with ``Upsilon(t_j, t_i) = Upsilon(t_i, t_j)'``.
"""

from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype, get_symmetry_tolerance
from odjax.estimation._errors import ConfigurationError
from odjax.integrators import Propagation, accumulate, transition

logger = logging.getLogger(__name__)


def symmetrize(P: ArrayLike) -> Array:
    """Return ``(P + P') / 2``; batched over leading axes."""
    P = jnp.asarray(P)
    return 0.5 * (P + jnp.swapaxes(P, -1, -2))


def asymmetry(P: ArrayLike) -> float:
    """Largest ``|P - P'|`` relative to the largest finite entry of *P*."""
    P = finite_part(P)
    scale = jnp.maximum(jnp.max(jnp.abs(P)), jnp.finfo(P.dtype).tiny)
    return float(jnp.max(jnp.abs(P - jnp.swapaxes(P, -1, -2))) / scale)


def is_symmetric(P: ArrayLike, tol: float | None = None) -> bool:
    """Check symmetry within *tol* (default: dtype-adaptive tolerance)."""
    tol = get_symmetry_tolerance() if tol is None else tol
    return asymmetry(P) <= tol


def check_covariance(P: ArrayLike, n: int, name: str = "covariance") -> Array:
    """Validate an input covariance.

    Args:
        P: Candidate covariance.
        n: Expected dimension.
        name: Name used in error messages.

    Returns:
        Array: *P* as an array of the configured dtype.

    Raises:
        ConfigurationError: If *P* is missing, has the wrong shape or is
            not symmetric.
    """
    if P is None:
        raise ConfigurationError(f"{name} must be set")
    P = jnp.asarray(P, dtype=get_dtype())
    if P.shape != (n, n):
        raise ConfigurationError(f"{name} must have shape ({n}, {n}), got {P.shape}")
    if not is_symmetric(P):
        raise ConfigurationError(f"{name} is not symmetric (asymmetry {asymmetry(P):.3e})")
    return P


def propagate_covariance(phi: ArrayLike, P: ArrayLike) -> Array:
    """Propagate a covariance by similarity transform, ``sym(Phi P Phi')``."""
    phi = jnp.asarray(phi)
    return symmetrize(phi @ jnp.asarray(P) @ phi.T)


def propagate_series(phi: ArrayLike, P: ArrayLike) -> Array:
    """Propagate one covariance through a series of transition matrices.

    Args:
        phi: Transition matrices ``Phi(t_k, t_0)`` of shape ``(N, n, n)``.
        P: Covariance at ``t_0`` of shape ``(n, n)``.

    Returns:
        Array: ``sym(Phi_k P Phi_k')`` of shape ``(N, n, n)``.
    """
    P = jnp.asarray(P)
    return jax.vmap(lambda f: propagate_covariance(f, P))(jnp.asarray(phi))


def has_infinite_variance(P: ArrayLike) -> bool:
    """``True`` if any diagonal entry of *P* is infinite."""
    return bool(jnp.any(jnp.isinf(jnp.diag(jnp.asarray(P)))))


def finite_part(P: ArrayLike) -> Array:
    """Replace infinite entries of *P* by zero."""
    P = jnp.asarray(P)
    return jnp.where(jnp.isinf(P), 0.0, P)


def map_covariance(E: ArrayLike, P: ArrayLike) -> Array:
    """Covariance of ``E x`` given the covariance *P* of ``x``.

    Outputs that depend on a state of infinite variance get infinite
    variance and zero correlations.
    """
    E = jnp.asarray(E, dtype=get_dtype())
    P = jnp.asarray(P, dtype=get_dtype())
    out = symmetrize(E @ finite_part(P) @ E.T)
    diffuse = jnp.any((E != 0.0) & jnp.isinf(jnp.diag(P))[None, :], axis=1)
    out = jnp.where(diffuse[:, None] | diffuse[None, :], 0.0, out)
    return jnp.where(jnp.diag(diffuse), jnp.inf, out)


def _restricted_inverse(A: Array, keep: Array) -> Array:
    # Rows/columns outside `keep` are replaced by identity rows so the kept
    # block is inverted on its own, then zeroed in the result.
    keep2 = keep[:, None] & keep[None, :]
    eye = jnp.eye(A.shape[0], dtype=A.dtype)
    A = jnp.where(keep2, A, eye)
    return jnp.where(keep2, jnp.linalg.inv(A), 0.0)


def prior_information(P: ArrayLike) -> Array:
    """Information matrix of an *a priori* covariance.

    States with infinite variance carry no information: their rows and
    columns of the information matrix are zero.  An all-infinite
    covariance therefore yields a zero matrix.

    Args:
        P: *A priori* covariance of shape ``(n, n)``.  Infinite entries are
            allowed on the diagonal (with zero correlations).

    Returns:
        Array: Information matrix of shape ``(n, n)``.
    """
    P = jnp.asarray(P, dtype=get_dtype())
    keep = ~jnp.isinf(jnp.diag(P))
    return symmetrize(_restricted_inverse(finite_part(P), keep))


def masked_inverse(R: ArrayLike, valid: ArrayLike) -> Array:
    """Inverse of *R* restricted to the *valid* measurements.

    Args:
        R: Measurement noise covariance of shape ``(m, m)``.
        valid: Boolean mask of shape ``(m,)``.

    Returns:
        Array: ``(m, m)`` matrix holding ``inv(R[valid][:, valid])`` in the
            valid block and zeros elsewhere.
    """
    R = jnp.asarray(R, dtype=get_dtype())
    return _restricted_inverse(finite_part(R), jnp.asarray(valid, dtype=bool))


def process_noise_size_mb(n: int, num_times: int) -> float:
    """Memory in MB needed for the full ``Q~`` correlation structure."""
    return (8.0 * n * num_times) ** 2 / 2**20


def check_process_noise_size(n: int, num_times: int, limit_mb: float) -> float:
    """Log an advisory warning when the ``Q~`` structure is large.

    Returns:
        float: Size of the structure in MB.
    """
    size = process_noise_size_mb(n, num_times)
    if size > limit_mb:
        logger.warning(
            "%.1f MBytes required for the process noise correlation structure; "
            "consider using fewer time samples",
            size,
        )
    return size


def process_noise_correlation(propagation: Propagation) -> Array:
    """Cross-time correlation of the accumulated process noise.

    Args:
        propagation: Reference propagation over the measurement times.

    Returns:
        Array: ``Qtilde`` of shape ``(N, N, n, n)`` with
            ``Qtilde[i, j] = E[w_i w_j']`` for ``w_i = w(t_i, t_0)``.
    """
    _, qd = accumulate(propagation)
    N = propagation.times.shape[0]
    rows = [[None] * N for _ in range(N)]
    for j in range(N):
        for i in range(j, N):
            block = transition(propagation, i, j) @ qd[j]
            rows[i][j] = block
            rows[j][i] = block.T
    return jnp.stack([jnp.stack(row) for row in rows])


def process_noise_kernels(propagation: Propagation, H: ArrayLike) -> tuple[Array, Array]:
    """Process noise correlations and their measurement kernels.

    Args:
        propagation: Reference propagation over the measurement times.
        H: Measurement partials of shape ``(N, m, n)``.  Rows of missing
            measurements should be zero.

    Returns:
        tuple: ``(Qtilde, Upsilon)`` of shapes ``(N, N, n, n)`` and
            ``(N, N, m, m)`` with ``Upsilon[i, j] = H_i Qtilde[i, j] H_j'``.
    """
    Qtilde = process_noise_correlation(propagation)
    Upsilon = jnp.einsum("iab,ijbc,jdc->ijad", jnp.asarray(H), Qtilde, jnp.asarray(H))
    return Qtilde, Upsilon


def block_matrix(blocks: ArrayLike) -> Array:
    """Assemble ``(N, N, a, b)`` blocks into an ``(N a, N b)`` matrix."""
    blocks = jnp.asarray(blocks)
    N, M, a, b = blocks.shape
    return blocks.transpose(0, 2, 1, 3).reshape(N * a, M * b)
