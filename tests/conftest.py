import pytest
import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)


@pytest.fixture
def key():
    return jax.random.key(42)


@pytest.fixture
def two_points():
    # d = 1, n = 2, columns are samples
    return jnp.array([[0.0, 1.0]])


@pytest.fixture
def grid_data():
    # d = 2, n = 5, well separated so the system is well conditioned
    return jnp.array(
        [
            [0.0, 1.0, 0.0, 1.0, 0.4],
            [0.0, 0.0, 1.0, 1.0, 0.6],
        ]
    )


@pytest.fixture
def test_points():
    return jnp.array(
        [
            [0.3, -0.5, 1.2],
            [0.7, 1.2, 0.1],
        ]
    )
