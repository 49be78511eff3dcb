import numpy as np
import jax, jax.numpy as jnp
from jax import Array
from typing import Sequence


def encode(a: int | Array, i: int | Array, dimension: int) -> int | Array:
    """
    Flat parameter index of the pair (sample ``a``, dimension ``i``).
    """
    return a * dimension + i


def decode(idx: int | Array, dimension: int) -> tuple[int | Array, int | Array]:
    """
    Inverse of :py:func:`encode`, returns ``(a, i)``. Works elementwise on arrays.
    """
    return idx // dimension, idx % dimension


def as_key(key: Array | int | None) -> Array:
    """
    Accepts a JAX random key or an integer seed. ``None`` falls back to seed ``0``.
    """
    if key is None:
        key = 0
    if isinstance(key, (int, np.integer)):
        return jax.random.key(int(key))
    return key


def random_basis(key: Array | int | None, num_data: int, dimension: int, m: int) -> Array:
    r"""
    Draws ``m`` parameter indices uniformly without replacement.

    A random permutation of :math:`\{0, \dots, nd - 1\}` is truncated to its first
    ``m`` entries, which are then sorted ascending so that system assembly reads the
    data sequentially.

    Args:
        key:
            JAX random key or integer seed.
        num_data:
            Number of samples ``n``.
        dimension:
            Dimensionality ``d``.
        m:
            Number of basis functions, ``0 < m <= n*d``.

    Returns:
        Array:
            Sorted shape ``(m,)`` integer array.
    """
    size = num_data * dimension
    if isinstance(m, bool) or not isinstance(m, (int, np.integer)):
        raise ValueError(f"Number of basis functions must be an integer, got {m!r}")
    if not 0 < m <= size:
        raise ValueError(f"Number of basis functions must be in (0, {size}], got {m}")

    permutation = jax.random.permutation(as_key(key), size)
    return jnp.sort(permutation[:m])


def check_basis(inds: Sequence[int] | Array, num_data: int, dimension: int) -> Array:
    """
    Validates an explicitly supplied basis and returns it as a JAX integer array.

    The basis must be one-dimensional, non-empty, no longer than ``n*d``, with unique
    entries in ``[0, n*d)`` sorted ascending.
    """
    size = num_data * dimension
    inds = np.asarray(inds)

    if inds.ndim != 1:
        raise ValueError(f"Basis must be one-dimensional, got shape {inds.shape}")
    if inds.size == 0 or inds.size > size:
        raise ValueError(
            f"Number of basis functions must be in (0, {size}], got {inds.size}"
        )
    if not np.issubdtype(inds.dtype, np.integer):
        raise ValueError(f"Basis indices must be integers, got dtype {inds.dtype}")
    if inds.min() < 0 or inds.max() >= size:
        raise ValueError(f"Basis indices must lie in [0, {size})")
    # signed copy, np.diff on unsigned dtypes wraps around instead of going negative
    inds = inds.astype(np.int64)
    if np.any(inds[1:] <= inds[:-1]):
        raise ValueError("Basis indices must be unique and sorted ascending")

    return jnp.asarray(inds)
