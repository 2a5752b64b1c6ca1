"""Tests for the odjax.estimation.monte_carlo module.

Tests cover:
- Per-trial keys are reproducible and independent of the trial count
- Gaussian samples follow the requested covariance
- Square-root factors for singular and infinite-variance covariances
- Failure capture, ordering and mapper independence of the trial driver
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import NamedTuple

import jax
import jax.numpy as jnp
import pytest

from odjax.estimation import (
    EstimationError,
    ObservabilityError,
    run_trials,
    sample_covariance,
    trial_keys,
)
from odjax.estimation.monte_carlo import covariance_factor


class _Outcome(NamedTuple):
    index: int
    value: float


# ──────────────────────────────────────────────
# Random streams
# ──────────────────────────────────────────────


class TestTrialKeys:
    def test_shape(self):
        assert trial_keys(0, 5).shape == (5, 2)

    def test_reproducible(self):
        assert jnp.array_equal(trial_keys(7, 3), trial_keys(7, 3))

    def test_independent_of_count(self):
        """Trial j draws the same key whatever the number of trials."""
        assert jnp.array_equal(trial_keys(7, 3), trial_keys(7, 10)[:3])

    def test_distinct_per_trial(self):
        keys = trial_keys(1, 4)
        draws = [float(jax.random.normal(k)) for k in keys]
        assert len(set(draws)) == 4

    def test_seed_changes_keys(self):
        assert not jnp.array_equal(trial_keys(0, 2), trial_keys(1, 2))


class TestSampling:
    def test_sample_statistics(self):
        """The sample covariance of many draws approaches P."""
        P = jnp.array([[4.0, 1.2], [1.2, 1.0]])
        samples = jnp.stack([sample_covariance(k, P) for k in trial_keys(3, 2000)])
        assert jnp.allclose(jnp.mean(samples, axis=0), 0.0, atol=0.2)
        assert jnp.allclose(jnp.cov(samples.T), P, atol=0.45)

    def test_factor_of_positive_definite(self):
        P = jnp.array([[4.0, 1.2], [1.2, 1.0]])
        L = covariance_factor(P)
        assert jnp.allclose(L @ L.T, P)

    def test_factor_of_singular(self):
        """A rank-deficient covariance falls back to eigen-decomposition."""
        v = jnp.array([1.0, 2.0])
        P = jnp.outer(v, v)
        L = covariance_factor(P)
        assert bool(jnp.all(jnp.isfinite(L)))
        assert jnp.allclose(L @ L.T, P, atol=1e-10)

    def test_infinite_variance_not_sampled(self):
        P = jnp.diag(jnp.array([jnp.inf, 1.0]))
        dx = sample_covariance(jax.random.PRNGKey(0), P)
        assert float(dx[0]) == 0.0
        assert bool(jnp.isfinite(dx[1]))

    def test_zero_covariance(self):
        dx = sample_covariance(jax.random.PRNGKey(0), jnp.zeros((3, 3)))
        assert jnp.all(dx == 0.0)


# ──────────────────────────────────────────────
# Trial driver
# ──────────────────────────────────────────────


def _trial(index):
    if index == 2:
        raise ObservabilityError(rank=1, dimension=2)
    return _Outcome(index, float(index) ** 2)


class TestRunTrials:
    def test_results_ordered(self):
        results, failures = run_trials(lambda j: _Outcome(j, float(j)), 4)
        assert [r.index for r in results] == [0, 1, 2, 3]
        assert failures == ()

    def test_failure_recorded_and_siblings_continue(self, caplog):
        with caplog.at_level(logging.WARNING, logger="odjax.estimation.monte_carlo"):
            results, failures = run_trials(_trial, 5)
        assert [r.index for r in results] == [0, 1, 3, 4]
        assert len(failures) == 1
        assert failures[0].index == 2
        assert isinstance(failures[0].error, EstimationError)
        assert "Trial 2 failed" in caplog.text

    def test_other_errors_propagate(self):
        def bad(index):
            raise KeyError(index)

        with pytest.raises(KeyError):
            run_trials(bad, 2)

    def test_thread_pool_mapper_matches_builtin(self):
        serial, _ = run_trials(_trial, 6)
        with ThreadPoolExecutor(max_workers=3) as pool:
            threaded, failures = run_trials(_trial, 6, mapper=pool.map)
        assert serial == threaded
        assert [f.index for f in failures] == [2]

    def test_reversed_mapper_still_ordered(self):
        """Results are ordered by index whatever order the mapper yields."""

        def reversed_map(fn, items):
            return [fn(i) for i in reversed(list(items))]

        results, _ = run_trials(_trial, 4, mapper=reversed_map)
        assert [r.index for r in results] == [0, 1, 3]
