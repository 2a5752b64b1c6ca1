"""Tests for the odjax.config module."""

import jax.numpy as jnp
import pytest

from odjax.config import get_dtype, get_symmetry_tolerance, set_dtype


@pytest.fixture(autouse=True)
def reset_dtype():
    """Restore float64 after each test."""
    yield
    set_dtype(jnp.float64)


class TestGetSetDtype:
    def test_default_dtype(self):
        assert get_dtype() == jnp.float64

    def test_set_float32(self):
        set_dtype(jnp.float32)
        assert get_dtype() == jnp.float32

    def test_roundtrip(self):
        for dtype in (jnp.float32, jnp.float64):
            set_dtype(dtype)
            assert get_dtype() == dtype

    def test_invalid_dtype_raises(self):
        with pytest.raises(ValueError, match="Unsupported dtype"):
            set_dtype(jnp.int32)

    def test_float16_rejected(self):
        with pytest.raises(ValueError, match="Unsupported dtype"):
            set_dtype(jnp.float16)


class TestSymmetryTolerance:
    def test_float64(self):
        assert get_symmetry_tolerance() == pytest.approx(1e-10)

    def test_float32(self):
        set_dtype(jnp.float32)
        assert get_symmetry_tolerance() == pytest.approx(1e-4)

    def test_arrays_follow_dtype(self):
        """Covariance helpers produce arrays of the configured dtype."""
        from odjax.estimation import prior_information

        set_dtype(jnp.float32)
        assert prior_information(jnp.eye(2)).dtype == jnp.float32
