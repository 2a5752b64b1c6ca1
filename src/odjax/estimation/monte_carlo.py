"""Monte Carlo trial ensemble support.

Trials are statistically and computationally independent.  Each one draws
its random numbers from its own key, derived from the run seed and the
trial index with :func:`jax.random.fold_in`, so a trial is reproducible no
matter how many trials run or in which order a mapper executes them.

The caller chooses how trials are dispatched by passing any ``map``-like
callable, for example the builtin :func:`map` or
:meth:`concurrent.futures.ThreadPoolExecutor.map`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odjax.config import get_dtype
from odjax.estimation._errors import EstimationError
from odjax.estimation._types import TrialFailure
from odjax.estimation.covariance import finite_part, symmetrize

logger = logging.getLogger(__name__)

Mapper = Callable[[Callable[[int], Any], Iterable[int]], Iterable[Any]]


def trial_keys(seed: int, ncases: int) -> Array:
    """Per-trial PRNG keys.

    Args:
        seed: Run seed.
        ncases: Number of trials.

    Returns:
        Array: Keys of shape ``(ncases, 2)``; key ``j`` depends only on
            ``(seed, j)``.
    """
    base = jax.random.PRNGKey(seed)
    return jnp.stack([jax.random.fold_in(base, j) for j in range(ncases)])


def covariance_factor(P: ArrayLike) -> Array:
    """Square-root factor ``L`` with ``L L' = P``.

    Uses the Cholesky factor when it exists and falls back to an
    eigen-decomposition for positive semi-definite matrices (negative
    round-off eigenvalues are clipped to zero).  Infinite entries are
    treated as zero.

    Args:
        P: Covariance of shape ``(n, n)``.

    Returns:
        Array: Factor of shape ``(n, n)``.
    """
    P = symmetrize(finite_part(jnp.asarray(P, dtype=get_dtype())))
    L = jnp.linalg.cholesky(P)
    if bool(jnp.all(jnp.isfinite(L))):
        return L
    w, V = jnp.linalg.eigh(P)
    return V * jnp.sqrt(jnp.clip(w, 0.0, None))[None, :]


def sample_covariance(key: Array, P: ArrayLike) -> Array:
    """Draw one zero-mean Gaussian sample with covariance *P*.

    Args:
        key: PRNG key.
        P: Covariance of shape ``(n, n)``.

    Returns:
        Array: Sample of shape ``(n,)``.

    Examples:
        ```python
        import jax
        import jax.numpy as jnp
        from odjax.estimation import sample_covariance
        dx = sample_covariance(jax.random.PRNGKey(0), jnp.diag(jnp.array([4.0, 1.0])))
        ```
    """
    L = covariance_factor(P)
    z = jax.random.normal(key, (L.shape[0],), dtype=L.dtype)
    return L @ z


def run_trials(
    fn: Callable[[int], Any],
    ncases: int,
    mapper: Mapper = map,
) -> tuple[tuple[Any, ...], tuple[TrialFailure, ...]]:
    """Run *ncases* independent trials through *mapper*.

    A trial that raises :class:`~odjax.estimation.EstimationError` is
    recorded as a :class:`~odjax.estimation.TrialFailure`; sibling trials
    keep running.  Any other exception propagates.

    Args:
        fn: Trial function ``fn(index) -> result``; results must expose an
            ``index`` attribute.
        ncases: Number of trials.
        mapper: ``map``-like callable applied as ``mapper(run, range(ncases))``.

    Returns:
        tuple: ``(results, failures)``, each ordered by trial index.
    """

    def run(index: int) -> Any:
        try:
            return fn(index)
        except EstimationError as exc:
            logger.warning("Trial %d failed: %s", index, exc)
            return TrialFailure(index=index, error=exc)

    outcomes = sorted(mapper(run, range(ncases)), key=lambda item: item.index)
    results = tuple(item for item in outcomes if not isinstance(item, TrialFailure))
    failures = tuple(item for item in outcomes if isinstance(item, TrialFailure))
    if failures:
        logger.info("%d of %d trials failed", len(failures), ncases)
    return results, failures
