import jax.numpy as jnp
import pytest

from odjax.config import set_dtype


@pytest.fixture(autouse=True)
def _ensure_float64():
    """Set float64 precision before every test.

    A test that switches the dtype (e.g. test_config.py) must not leak
    single precision into the estimator tests that follow it.
    """
    set_dtype(jnp.float64)
