"""Tests for the odjax.estimation.partition module."""

import logging

import jax.numpy as jnp
import pytest

from odjax.estimation import ConfigurationError, SolveForMap


class TestFromMaps:
    def test_default_solves_for_everything(self):
        sf = SolveForMap.from_maps(n=3)
        assert sf.ns == 3
        assert sf.nc == 0
        assert jnp.allclose(sf.S_tilde, jnp.eye(3))
        assert sf.C_tilde.shape == (3, 0)

    def test_inverse_of_stacked_maps(self):
        """[S; C] [S~, C~] = I."""
        S = jnp.array([[1.0, 1.0, 0.0], [0.0, 1.0, 0.0]])
        C = jnp.array([[0.0, 2.0, 1.0]])
        sf = SolveForMap.from_maps(S, C)
        M = jnp.concatenate([S, C])
        Minv = jnp.concatenate([sf.S_tilde, sf.C_tilde], axis=1)
        assert jnp.allclose(M @ Minv, jnp.eye(3))
        assert jnp.allclose(Minv @ M, jnp.eye(3))

    def test_selection_maps(self):
        S = jnp.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        C = jnp.array([[0.0, 0.0, 1.0]])
        sf = SolveForMap.from_maps(S, C)
        assert jnp.allclose(sf.S_tilde, S.T)
        assert jnp.allclose(sf.C_tilde, C.T)

    def test_not_invertible(self):
        S = jnp.array([[1.0, 0.0], [2.0, 0.0]])
        with pytest.raises(ConfigurationError, match="not invertible"):
            SolveForMap.from_maps(S)

    def test_not_square(self):
        S = jnp.array([[1.0, 0.0, 0.0]])
        with pytest.raises(ConfigurationError, match="must be square"):
            SolveForMap.from_maps(S)

    def test_column_mismatch(self):
        with pytest.raises(ConfigurationError, match="columns"):
            SolveForMap.from_maps(jnp.array([[1.0, 0.0]]), jnp.array([[0.0, 1.0, 0.0]]))

    def test_missing_dimension(self):
        with pytest.raises(ConfigurationError, match="required"):
            SolveForMap.from_maps()

    def test_time_varying_map_uses_first_slice(self, caplog):
        S = jnp.stack([jnp.eye(2), 2.0 * jnp.eye(2)])
        with caplog.at_level(logging.WARNING, logger="odjax.estimation.partition"):
            sf = SolveForMap.from_maps(S)
        assert jnp.allclose(sf.S, jnp.eye(2))
        assert "Time-varying" in caplog.text


class TestOperations:
    @pytest.fixture
    def sf(self):
        S = jnp.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        C = jnp.array([[0.0, 0.0, 1.0]])
        return SolveForMap.from_maps(S, C)

    def test_lift(self, sf):
        assert jnp.allclose(sf.lift(jnp.array([1.0, 2.0])), jnp.array([1.0, 2.0, 0.0]))

    def test_projector(self, sf):
        assert jnp.allclose(sf.projector(), jnp.diag(jnp.array([1.0, 1.0, 0.0])))

    def test_estimate_map(self, sf):
        assert sf.estimate_map().shape == (2, 3)
        assert jnp.allclose(sf.estimate_map(full_state=True), jnp.eye(3))

    def test_sensitivity_without_measurements(self, sf):
        """With no updates the sensitivity is S Phi [S~, C~]."""
        phi = jnp.array([[1.0, 0.0, 1.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        sens = sf.sensitivity(phi, jnp.eye(3))
        assert jnp.allclose(sens, jnp.array([[1.0, 0.0, 1.0], [0.0, 1.0, 0.0]]))

    def test_sensitivity_of_stacked_transfer(self, sf):
        """A stack of transfer matrices gives one sensitivity per epoch."""
        phi = jnp.array([[1.0, 0.0, 1.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        residual = jnp.diag(jnp.array([0.5, 1.0, 1.0]))
        stacked = jnp.stack([jnp.eye(3), phi])
        sens = sf.sensitivity(stacked, residual)
        assert sens.shape == (2, 2, 3)
        assert jnp.allclose(sens[0], sf.sensitivity(jnp.eye(3), residual))
        assert jnp.allclose(sens[1], sf.sensitivity(phi @ residual))

    def test_basis_inverts_stacked_maps(self, sf):
        M = jnp.concatenate([sf.S, sf.C], axis=0)
        assert jnp.allclose(M @ sf.basis(), jnp.eye(3))

    def test_lift_of_stacked_gains(self, sf):
        K = jnp.ones((4, 2, 1))
        assert sf.lift(K).shape == (4, 3, 1)
