"""Tests for the odjax.estimation.sequential module.

Tests cover:
- Output grid refinement
- Constant-velocity scenario: convergence, true vs formal covariance,
  sensitivity, Monte Carlo trial records
- Infinite a priori variance and unobservable priors
- Solve-for / consider partitions with and without the Schmidt-Kalman filter
- Truth / estimate mismodeling
- Restart equivalence, external noise and failed restart trials
- Input validation and the diagnostic hook
"""

import dataclasses

import jax.numpy as jnp
import pytest

from odjax.estimation import (
    ConfigurationError,
    EstimatorOptions,
    ObservabilityError,
    refine_grid,
    restart_sequential,
    run_sequential,
    sequential_filter,
)
from odjax.models import (
    DynamicsModel,
    MeasurementModel,
    Pair,
    constant_velocity,
    position_measurement,
)

X0 = jnp.array([0.0, 1.0])
P0 = jnp.diag(jnp.array([100.0, 1.0]))


def _full_state_measurement():
    return MeasurementModel(
        fn=lambda t, x, args: x,
        noise=jnp.eye(2),
        partials=lambda t, x, args: jnp.eye(2),
    )


def _biased_models():
    """Constant velocity with a constant measurement bias as third state."""
    A = jnp.array([[0.0, 1.0, 0.0], [0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
    dynamics = DynamicsModel(fn=lambda t, x, args: A @ x, partials=lambda t, x, args: A)
    measurement = MeasurementModel(
        fn=lambda t, x, args: x[:1] + x[2:],
        noise=jnp.array([[1.0]]),
        partials=lambda t, x, args: jnp.array([[1.0, 0.0, 1.0]]),
    )
    return dynamics, measurement


BIAS_S = jnp.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
BIAS_C = jnp.array([[0.0, 0.0, 1.0]])
BIAS_X0 = jnp.array([0.0, 1.0, 0.0])
BIAS_P0 = jnp.diag(jnp.array([100.0, 1.0, 0.25]))


# ──────────────────────────────────────────────
# Time grid
# ──────────────────────────────────────────────


class TestRefineGrid:
    def test_no_refinement(self):
        times, index = refine_grid([0.0, 1.0, 3.0])
        assert jnp.allclose(times, jnp.array([0.0, 1.0, 3.0]))
        assert jnp.array_equal(index, jnp.arange(3))

    def test_inserted_points(self):
        times, index = refine_grid([0.0, 1.0, 2.0], refine=1)
        assert jnp.allclose(times, jnp.array([0.0, 0.5, 1.0, 1.5, 2.0]))
        assert jnp.array_equal(index, jnp.array([0, 2, 4]))

    def test_uneven_intervals(self):
        times, index = refine_grid([0.0, 3.0, 4.0], refine=2)
        assert jnp.allclose(times, jnp.array([0.0, 1.0, 2.0, 3.0, 3.0 + 1 / 3, 3.0 + 2 / 3, 4.0]))
        assert jnp.allclose(times[index], jnp.array([0.0, 3.0, 4.0]))

    def test_not_increasing(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            refine_grid([0.0, 2.0, 1.0])


# ──────────────────────────────────────────────
# Constant-velocity scenario
# ──────────────────────────────────────────────


class TestConstantVelocity:
    @pytest.fixture(scope="class")
    def result(self):
        return run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.arange(10.0),
            X0,
            P0,
            EstimatorOptions(monte_carlo_cases=3),
        )

    def test_shapes(self, result):
        assert result.times.shape == (10,)
        assert result.analysis.Pa.shape == (10, 2, 2)
        assert result.analysis.Phat_a.shape == (10, 2, 2)
        assert result.analysis.sensitivity.shape == (10, 2, 2)
        assert result.analysis.innovation_covariance.shape == (10, 1, 1)

    def test_formal_covariance_converges(self, result):
        P = result.analysis.formal_covariance
        velocity_variance = P[:, 1, 1]
        assert bool(jnp.all(jnp.diff(velocity_variance) <= 1e-12))
        assert float(P[-1, 0, 0]) < 1.0
        assert float(jnp.trace(P[-1])) < float(jnp.trace(P[0]))

    def test_ten_step_trace_non_increasing(self):
        """Ten steps of dt = 1 from diag(100, 1): the trace never grows between updates."""
        result = run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.arange(11.0),
            X0,
            P0,
            EstimatorOptions(monte_carlo_cases=1),
        )
        P = result.analysis.formal_covariance
        trace = jnp.trace(P, axis1=1, axis2=2)
        assert trace.shape == (11,)
        assert bool(jnp.all(jnp.diff(trace) <= 1e-12))
        assert float(P[-1, 0, 0]) < 1.0

    def test_first_update_at_initial_epoch(self, result):
        """The measurement at tspan[0] is processed: 100 -> 100/101."""
        analysis = result.analysis
        assert float(analysis.formal_covariance[0, 0, 0]) == pytest.approx(100.0 / 101.0)
        assert float(analysis.Phat_a[0, 0, 0]) == pytest.approx(100.0 / 101.0**2)
        assert float(analysis.Phat_v[0, 0, 0]) == pytest.approx(100.0**2 / 101.0**2)

    def test_true_matches_formal_without_mismodeling(self, result):
        analysis = result.analysis
        assert jnp.allclose(analysis.true_covariance, analysis.formal_covariance, atol=1e-10)
        for delta in analysis.variance_deltas():
            assert jnp.allclose(delta, 0.0, atol=1e-10)

    def test_no_process_noise_partitions(self, result):
        assert jnp.all(result.analysis.Pw == 0.0)
        assert jnp.all(result.analysis.Pm == 0.0)

    def test_sensitivity_maps_prior(self, result):
        """Without process noise Pa = Sigma P0 Sigma'."""
        analysis = result.analysis
        for k in range(10):
            sens = analysis.sensitivity[k]
            assert jnp.allclose(analysis.Pa[k], sens @ P0 @ sens.T, atol=1e-10)

    def test_true_innovation_covariance(self, result):
        """At t0 the innovation covariance is H P0 H' + R."""
        assert float(result.analysis.innovation_covariance[0, 0, 0]) == pytest.approx(101.0)

    def test_trials(self, result):
        assert len(result.trials) == 3
        assert result.failures == ()
        for j, trial in enumerate(result.trials):
            assert trial.index == j
            assert trial.truth.shape == (10, 2)
            assert trial.measurements.shape == (10, 1)
            assert trial.edit_flags.shape == (10, 1)
            assert jnp.allclose(trial.error, trial.estimate - trial.truth)

    def test_trial_covariance_matches_analysis(self, result):
        """For linear models the filter covariance equals the formal analysis."""
        for trial in result.trials:
            assert jnp.allclose(trial.covariance, result.analysis.formal_covariance, atol=1e-10)

    def test_trials_differ(self, result):
        a, b = result.trials[0], result.trials[1]
        assert not jnp.allclose(a.truth[0], b.truth[0])

    def test_trials_reproducible(self, result):
        again = run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.arange(10.0),
            X0,
            P0,
            EstimatorOptions(monte_carlo_cases=1),
        )
        assert jnp.allclose(again.trials[0].truth, result.trials[0].truth)
        assert jnp.allclose(again.trials[0].estimate, result.trials[0].estimate)


class TestOptions:
    def test_refined_output_grid(self):
        result = run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.array([0.0, 2.0, 4.0]),
            X0,
            P0,
            EstimatorOptions(refine=1),
        )
        assert jnp.allclose(result.times, jnp.arange(5.0))
        assert jnp.array_equal(result.measurement_index, jnp.array([0, 2, 4]))
        assert result.trials[0].innovation.shape == (3, 1)
        P = result.analysis.formal_covariance
        assert float(P[1, 0, 0]) > float(P[0, 0, 0])

    def test_process_noise_partition(self):
        result = run_sequential(
            constant_velocity(accel_psd=0.1),
            position_measurement(),
            jnp.arange(6.0),
            X0,
            P0,
        )
        analysis = result.analysis
        assert jnp.all(analysis.Pw[0] == 0.0)
        assert float(analysis.Pw[-1, 1, 1]) > 0.0
        assert float(analysis.Phat_w[-1, 1, 1]) > 0.0

    def test_process_noise_disabled(self):
        result = run_sequential(
            constant_velocity(accel_psd=0.1),
            position_measurement(),
            jnp.arange(6.0),
            X0,
            P0,
            EstimatorOptions(use_process_noise=False),
        )
        assert jnp.all(result.analysis.Pw == 0.0)

    def test_scalar_updates_match_vector(self):
        kwargs = dict(tspan=jnp.arange(5.0), x0=X0, P0=P0)
        model = MeasurementModel(
            fn=lambda t, x, args: jnp.array([x[0], x[0] + x[1]]),
            noise=jnp.diag(jnp.array([1.0, 4.0])),
        )
        vector = run_sequential(constant_velocity(), model, **kwargs)
        scalar = run_sequential(
            constant_velocity(), model, options=EstimatorOptions(update_vectorized=False), **kwargs
        )
        assert jnp.allclose(
            vector.analysis.formal_covariance, scalar.analysis.formal_covariance, atol=1e-10
        )
        assert jnp.allclose(vector.trials[0].estimate, scalar.trials[0].estimate, atol=1e-8)


# ──────────────────────────────────────────────
# A priori information
# ──────────────────────────────────────────────


class TestInfiniteVariance:
    def test_diffuse_prior_resolved_by_first_update(self):
        P = jnp.diag(jnp.array([jnp.inf, jnp.inf]))
        result = run_sequential(constant_velocity(), _full_state_measurement(), jnp.arange(4.0), X0, P)
        P_formal = result.analysis.formal_covariance
        assert bool(jnp.all(jnp.isfinite(P_formal)))
        assert jnp.allclose(P_formal[0], jnp.eye(2))
        trial = result.trials[0]
        assert jnp.allclose(trial.truth[0], X0)
        assert bool(jnp.all(jnp.isfinite(trial.estimate)))

    def test_unobservable_diffuse_prior(self):
        P = jnp.diag(jnp.array([jnp.inf, jnp.inf]))
        with pytest.raises(ObservabilityError):
            run_sequential(constant_velocity(), position_measurement(), jnp.arange(4.0), X0, P)


# ──────────────────────────────────────────────
# Solve-for and consider states
# ──────────────────────────────────────────────


class TestConsider:
    def test_ignored_bias(self):
        """Without Schmidt the estimator state excludes the bias and underestimates error."""
        dynamics, measurement = _biased_models()
        result = run_sequential(
            Pair(dynamics, constant_velocity()),
            Pair(measurement, position_measurement()),
            jnp.arange(8.0),
            BIAS_X0,
            BIAS_P0,
            solve_for=BIAS_S,
            consider=BIAS_C,
        )
        analysis = result.analysis
        assert analysis.Pa.shape == (8, 3, 3)
        assert analysis.Phat_a.shape == (8, 2, 2)
        assert analysis.sensitivity.shape == (8, 2, 3)
        E = analysis.estimate_map
        true_position = (E @ analysis.true_covariance[-1] @ E.T)[0, 0]
        assert float(true_position) > float(analysis.formal_covariance[-1, 0, 0])
        dPa = analysis.variance_deltas()[0]
        assert float(dPa[-1, 0, 0]) > 0.0
        assert result.trials[0].error.shape == (8, 2)
        assert result.trials[0].truth.shape == (8, 3)

    def test_schmidt_kalman(self):
        """The Schmidt-Kalman filter carries the bias without correcting it."""
        dynamics, measurement = _biased_models()
        result = run_sequential(
            dynamics,
            measurement,
            jnp.arange(8.0),
            BIAS_X0,
            BIAS_P0,
            EstimatorOptions(schmidt_kalman=True, monte_carlo_cases=2),
            solve_for=BIAS_S,
            consider=BIAS_C,
        )
        analysis = result.analysis
        assert analysis.Phat_a.shape == (8, 3, 3)
        assert float(analysis.formal_covariance[-1, 2, 2]) == pytest.approx(0.25)
        assert jnp.allclose(analysis.true_covariance, analysis.formal_covariance, atol=1e-10)
        for trial in result.trials:
            assert jnp.allclose(trial.estimate[:, 2], 0.0)

    def test_sensitivity_to_consider_state(self):
        dynamics, measurement = _biased_models()
        result = run_sequential(
            dynamics,
            measurement,
            jnp.arange(5.0),
            BIAS_X0,
            BIAS_P0,
            EstimatorOptions(schmidt_kalman=True),
            solve_for=BIAS_S,
            consider=BIAS_C,
        )
        sens = result.analysis.sensitivity
        assert sens.shape == (5, 2, 3)
        assert float(sens[0, 0, 2]) != 0.0


class TestMismodeling:
    def test_optimistic_measurement_noise(self):
        """The estimator believes sigma = 1 while the truth has sigma = 2."""
        result = run_sequential(
            constant_velocity(),
            Pair(position_measurement(sigma=2.0), position_measurement(sigma=1.0)),
            jnp.arange(6.0),
            X0,
            P0,
        )
        dPv = result.analysis.variance_deltas()[1]
        assert float(dPv[-1, 0, 0]) > 0.0
        assert float(result.analysis.innovation_covariance[-1, 0, 0]) > float(
            result.trials[0].innovation_covariance[-1, 0, 0]
        )

    def test_estimate_initial_state_pair(self):
        result = run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.arange(3.0),
            Pair(X0, jnp.array([5.0, 0.0])),
            P0,
        )
        assert jnp.allclose(result.restart.reference_state, jnp.array([2.0, 1.0]))
        assert jnp.allclose(result.restart.estimate_reference_state, jnp.array([5.0, 0.0]))


# ──────────────────────────────────────────────
# Restart
# ──────────────────────────────────────────────


def _cv_run(tspan, cases=2):
    return run_sequential(
        constant_velocity(accel_psd=0.01),
        position_measurement(),
        tspan,
        X0,
        P0,
        EstimatorOptions(monte_carlo_cases=cases),
    )


class TestRestart:
    def test_equivalent_to_uninterrupted_run(self):
        full = _cv_run(jnp.arange(11.0))
        first = _cv_run(jnp.arange(6.0))
        second = restart_sequential(first.restart, jnp.arange(6.0, 11.0))

        assert jnp.allclose(second.times, jnp.arange(5.0, 11.0))
        assert jnp.array_equal(second.measurement_index, jnp.arange(1, 6))
        a, b = full.analysis, second.analysis
        assert jnp.allclose(a.formal_covariance[-1], b.formal_covariance[-1], atol=1e-10)
        assert jnp.allclose(a.true_covariance[-1], b.true_covariance[-1], atol=1e-10)
        assert jnp.allclose(a.Pw[-1], b.Pw[-1], atol=1e-10)
        assert jnp.allclose(a.sensitivity[-1], b.sensitivity[-1], atol=1e-10)
        for j in range(2):
            assert jnp.allclose(
                full.trials[j].covariance[-1], second.trials[j].covariance[-1], atol=1e-10
            )

    def test_restart_continues_trials(self):
        first = _cv_run(jnp.arange(4.0))
        second = restart_sequential(first.restart, jnp.array([4.0, 5.0]))
        for before, after in zip(first.trials, second.trials):
            assert jnp.allclose(after.truth[0], before.truth[-1])
            assert jnp.allclose(after.estimate[0], before.estimate[-1])
        assert second.restart.segment == 1
        assert first.restart.segment == 0

    def test_external_noise(self):
        first = _cv_run(jnp.arange(4.0))
        Pm = jnp.diag(jnp.array([0.0, 0.5]))
        record = first.restart.with_external_noise(Pm)
        assert jnp.allclose(record.Pm, Pm)
        assert jnp.allclose(record.Phat_m, Pm)
        assert jnp.allclose(
            record.trial_covariances, first.restart.trial_covariances + Pm[None, :, :]
        )
        second = restart_sequential(record, jnp.array([4.0, 5.0]))
        assert jnp.allclose(second.analysis.Pm[0], Pm)
        assert float(second.analysis.Pm[-1, 1, 1]) > 0.0

    def test_failed_trial_not_restarted(self):
        first = _cv_run(jnp.arange(3.0))
        states = first.restart.trial_states.at[1].set(jnp.nan)
        record = dataclasses.replace(first.restart, trial_states=states)
        second = restart_sequential(record, jnp.array([3.0]))
        assert [t.index for t in second.trials] == [0]
        assert [f.index for f in second.failures] == [1]
        assert bool(jnp.all(jnp.isnan(second.restart.trial_states[1])))

    def test_times_must_follow_epoch(self):
        first = _cv_run(jnp.arange(3.0))
        with pytest.raises(ConfigurationError, match="after the record epoch"):
            restart_sequential(first.restart, jnp.array([2.0, 3.0]))


# ──────────────────────────────────────────────
# Validation and hooks
# ──────────────────────────────────────────────


class TestValidation:
    def test_missing_covariance(self):
        with pytest.raises(ConfigurationError, match="Initial covariance"):
            run_sequential(constant_velocity(), position_measurement(), jnp.arange(3.0), X0, None)

    def test_bad_tspan(self):
        with pytest.raises(ConfigurationError):
            run_sequential(
                constant_velocity(), position_measurement(), jnp.array([0.0, 0.0]), X0, P0
            )

    def test_wrong_covariance_shape(self):
        with pytest.raises(ConfigurationError, match="shape"):
            run_sequential(
                constant_velocity(), position_measurement(), jnp.arange(3.0), X0, jnp.eye(3)
            )

    def test_wrong_model_type(self):
        with pytest.raises(ConfigurationError, match="DynamicsModel"):
            run_sequential(
                lambda t, x, args: x, position_measurement(), jnp.arange(3.0), X0, P0
            )

    def test_invalid_options(self):
        with pytest.raises(ConfigurationError, match="monte_carlo_cases"):
            EstimatorOptions(monte_carlo_cases=0)

    def test_diagnostic_called(self):
        seen = []
        result = run_sequential(
            constant_velocity(),
            position_measurement(),
            jnp.arange(3.0),
            X0,
            P0,
            diagnostic=seen.append,
        )
        assert len(seen) == 1
        assert seen[0] is result


class TestSequentialFilter:
    def test_gap_skips_update(self):
        track = sequential_filter(
            constant_velocity(),
            position_measurement(),
            jnp.arange(3.0),
            jnp.arange(3),
            jnp.array([[0.0], [jnp.nan], [2.0]]),
            X0,
            P0,
        )
        assert bool(jnp.isnan(track.edit_flags[1, 0]))
        assert float(track.covariance[1, 0, 0]) > float(track.covariance[0, 0, 0])
