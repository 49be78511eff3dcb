import logging

import jax, jax.numpy as jnp
from jax import Array

logger = logging.getLogger(__name__)


def pinv(matrix: Array) -> Array:
    r"""
    Computes the Moore-Penrose pseudoinverse of a matrix through its SVD.

    Singular values at or below the tolerance

    .. math::

        \epsilon \cdot \max(m, n) \cdot s_{\max}

    are treated as zero, which is the rule used by NumPy and Octave. Rank deficiency
    is therefore absorbed silently: the truncated directions contribute nothing.

    Args:
        matrix:
            The matrix to invert. Shape: ``(m,n)``.

    Returns:
        Array:
            The pseudoinverse of the input matrix. Shape: ``(n,m)``.
    """
    matrix = jnp.asarray(matrix)
    U, s, Vh = jnp.linalg.svd(matrix, full_matrices=False)

    tol = jnp.finfo(matrix.dtype).eps * max(matrix.shape) * jnp.max(s)
    keep = s > tol
    s_inv = jnp.where(keep, 1.0 / jnp.where(keep, s, 1.0), 0.0)

    num_truncated = int(s.shape[0] - jnp.sum(keep))
    if num_truncated > 0:
        logger.debug(
            f"pinv truncated {num_truncated} of {s.shape[0]} singular values (tol={float(tol):.3e})"
        )

    return (Vh.T * s_inv) @ U.T


def solve_normal_equations(A_mn: Array, b: Array, ridge: float = 0.0) -> Array:
    r"""
    Least-squares solution of the rectangular system :math:`A_{mn}^\top x \approx b`.

    Forms the normal equations

    .. math::

        (A_{mn} A_{mn}^\top + \rho I)\, x = A_{mn} b

    and solves them with :py:func:`pinv`.

    Args:
        A_mn:
            Shape ``(m,n)`` system matrix, ``m <= n``.
        b:
            Shape ``(n,)`` right-hand side.
        ridge:
            Non-negative diagonal regulariser :math:`\rho`. Defaults to ``0``.

    Returns:
        Array:
            Shape ``(m,)`` solution.
    """
    if ridge < 0:
        raise ValueError(f"ridge must be non-negative, got {ridge}")

    A = A_mn @ A_mn.T
    if ridge > 0:
        A = A + ridge * jnp.eye(A.shape[0], dtype=A.dtype)
    b_m = A_mn @ b

    return pinv(A) @ b_m
