"""Tests for the odjax.integrators module.

Tests cover:
- Exact propagation of constant-velocity state and transition matrix
- Closed-form process noise covariance for white acceleration
- Zero-length intervals and disabled process noise
- Chaining of interval quantities (accumulate, transition)
- Two-body transition matrix against finite differences
"""

import jax.numpy as jnp
import pytest

from odjax.constants import GM_EARTH, R_EARTH
from odjax.integrators import accumulate, propagate, transition
from odjax.models import constant_velocity, planar_two_body


class TestConstantVelocity:
    def test_state_and_stm_exact(self):
        """RK4 is exact for the double integrator."""
        prop = propagate(constant_velocity(), jnp.array([0.0, 1.0, 3.0]), jnp.array([1.0, 2.0]))
        assert jnp.allclose(prop.states[-1], jnp.array([7.0, 2.0]))
        assert jnp.allclose(prop.stm[0], jnp.eye(2))
        assert jnp.allclose(prop.stm[2], jnp.array([[1.0, 2.0], [0.0, 1.0]]))

    def test_process_noise_closed_form(self):
        """Qd over dt equals q [[dt^3/3, dt^2/2], [dt^2/2, dt]]."""
        q, dt = 0.3, 2.0
        prop = propagate(constant_velocity(accel_psd=q), jnp.array([0.0, dt]), jnp.zeros(2))
        expected = q * jnp.array([[dt**3 / 3, dt**2 / 2], [dt**2 / 2, dt]])
        assert jnp.allclose(prop.process_noise[1], expected, atol=1e-12)
        assert jnp.allclose(prop.process_noise[0], 0.0)

    def test_process_noise_disabled(self):
        prop = propagate(
            constant_velocity(accel_psd=1.0),
            jnp.array([0.0, 1.0]),
            jnp.zeros(2),
            use_process_noise=False,
        )
        assert jnp.all(prop.process_noise == 0.0)

    def test_zero_length_interval(self):
        """Repeated times give identity transition and zero noise."""
        prop = propagate(
            constant_velocity(accel_psd=1.0), jnp.array([0.0, 1.0, 1.0]), jnp.array([0.0, 1.0])
        )
        assert jnp.allclose(prop.states[2], prop.states[1])
        assert jnp.allclose(prop.stm[2], jnp.eye(2))
        assert jnp.allclose(prop.process_noise[2], 0.0)


class TestAccumulate:
    def test_chained_transition(self):
        prop = propagate(constant_velocity(), jnp.arange(4.0), jnp.zeros(2))
        phi, _ = accumulate(prop)
        assert jnp.allclose(phi[3], jnp.array([[1.0, 3.0], [0.0, 1.0]]))
        assert jnp.allclose(transition(prop, 3, 1), jnp.array([[1.0, 2.0], [0.0, 1.0]]))

    def test_accumulated_noise_matches_single_interval(self):
        """Qd(t2, t0) from two intervals equals one interval of the same span."""
        model = constant_velocity(accel_psd=0.7)
        _, qd = accumulate(propagate(model, jnp.array([0.0, 1.0, 2.0]), jnp.zeros(2)))
        direct = propagate(model, jnp.array([0.0, 2.0]), jnp.zeros(2)).process_noise[1]
        assert jnp.allclose(qd[2], direct, atol=1e-12)


class TestTwoBody:
    def test_stm_matches_finite_difference(self):
        """The variational STM agrees with a finite-difference STM."""
        sma = R_EARTH + 500e3
        x0 = jnp.array([sma, 0.0, 0.0, jnp.sqrt(GM_EARTH / sma)])
        times = jnp.array([0.0, 300.0])
        model = planar_two_body()
        prop = propagate(model, times, x0, steps=50)

        deltas = jnp.array([1.0, 1.0, 1e-3, 1e-3])
        columns = []
        for i in range(4):
            dx = jnp.zeros(4).at[i].set(deltas[i])
            plus = propagate(model, times, x0 + dx, steps=50).states[-1]
            minus = propagate(model, times, x0 - dx, steps=50).states[-1]
            columns.append((plus - minus) / (2 * deltas[i]))
        fd = jnp.stack(columns, axis=1)
        assert jnp.allclose(prop.stm[-1], fd, rtol=1e-5, atol=1e-8)

    def test_circular_radius_preserved(self):
        sma = R_EARTH + 500e3
        x0 = jnp.array([sma, 0.0, 0.0, jnp.sqrt(GM_EARTH / sma)])
        prop = propagate(planar_two_body(), jnp.linspace(0.0, 600.0, 5), x0, steps=30)
        radii = jnp.linalg.norm(prop.states[:, :2], axis=1)
        assert float(jnp.max(jnp.abs(radii - sma))) == pytest.approx(0.0, abs=1e-2)
