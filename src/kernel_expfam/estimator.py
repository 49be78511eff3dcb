import functools
import logging
from typing import Optional, Sequence

import numpy as np
import jax, jax.numpy as jnp
from jax import jit, vmap, Array

from kernel_expfam.kernel import GaussianKernel
from kernel_expfam.basis import decode, check_basis, random_basis
from kernel_expfam.linear import LinearOperator
from kernel_expfam.linalg import solve_normal_equations

logger = logging.getLogger(__name__)


class NotFittedError(RuntimeError):
    """Raised when coefficients are requested before :py:meth:`KernelExpFamily.fit`."""


@jit
def _lower_right_element(
    row: Array, col: Array, X: Array, sigma: float, lmbda: float
) -> Array:
    n, d = X.shape
    a, i = decode(row, d)
    b, j = decode(col, d)
    elem = functools.partial(GaussianKernel.hessian_x_elem, sigma=sigma)
    dims = jnp.arange(d)

    # G1[n, d] = H[(a,i),(n,d)], G2[n, d] = H[(n,d),(b,j)]
    G1 = vmap(lambda x_n: vmap(lambda e: elem(X[a], x_n, i, e))(dims))(X)
    G2 = vmap(lambda x_n: vmap(lambda e: elem(x_n, X[b], e, j))(dims))(X)
    G_sum = jnp.sum(G1 * G2)

    return G_sum / n + lmbda * elem(X[a], X[b], i, j)


@jit
def _log_pdf(x: Array, X: Array, basis: Array, alpha_beta: Array, sigma: float) -> Array:
    n, d = X.shape
    a, i = decode(basis, d)

    grads = vmap(lambda a_, i_: GaussianKernel.dx_single(x, X[a_], i_, sigma=sigma))(a, i)
    hess_diag = vmap(lambda a_, i_: GaussianKernel.dxdx_single(x, X[a_], i_, sigma=sigma))(
        a, i
    )

    xi = jnp.sum(hess_diag) / n
    beta_sum = jnp.dot(grads, alpha_beta[1:])
    return alpha_beta[0] * xi + beta_sum


class KernelExpFamily:
    r"""
    Base class for Gaussian kernel exponential family models fitted by score matching.

    The model's sufficient statistic is spanned by the kernel gradients
    :math:`\partial k(x_a, \cdot)/\partial x_i` for ``(a, i)`` in a set of basis
    parameter indices, plus one term built from the second derivatives averaged over
    the data. Subclasses decide which basis is used and how the linear system for the
    coefficients is assembled; fitting and evaluation are shared.

    Args:
        data:
            Shape ``(d, n)`` array, one sample per column.
        sigma:
            Kernel bandwidth :math:`\sigma > 0`.
        lmbda:
            Regularisation weight :math:`\lambda \geq 0`.
        ridge:
            Optional diagonal regulariser added to the normal equations. Defaults to ``0``.
    """

    name: str = "base_estimator"

    kernel = GaussianKernel()

    def __init__(self, data: Array, sigma: float, lmbda: float, ridge: float = 0.0):
        data = jnp.asarray(data, dtype=jnp.float64)

        if data.ndim != 2:
            raise ValueError(f"data must be a 2-D (d, n) array, got ndim={data.ndim}")
        if data.shape[0] == 0 or data.shape[1] == 0:
            raise ValueError(f"data must be non-empty, got shape {data.shape}")
        if not bool(jnp.all(jnp.isfinite(data))):
            raise ValueError("data must be finite")
        if not sigma > 0:
            raise ValueError(f"sigma must be positive, got {sigma}")
        if not lmbda >= 0:
            raise ValueError(f"lmbda must be non-negative, got {lmbda}")
        if not ridge >= 0:
            raise ValueError(f"ridge must be non-negative, got {ridge}")

        self.X = data.T  # (n, d), one sample per row
        self.sigma = float(sigma)
        self.lmbda = float(lmbda)
        self.ridge = float(ridge)

        self._alpha_beta: Optional[Array] = None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(n={self.get_num_data()}, d={self.get_dimension()}, "
            f"m={self.get_num_basis()}, sigma={self.sigma}, lmbda={self.lmbda})"
        )

    # ---------- accessors ------------------------------------------------

    def get_dimension(self) -> int:
        return self.X.shape[1]

    def get_num_data(self) -> int:
        return self.X.shape[0]

    def get_num_basis(self) -> int:
        return int(self.basis.shape[0])

    @property
    def basis(self) -> Array:
        raise NotImplementedError("Implemented in subclasses")

    @property
    def is_fitted(self) -> bool:
        return self._alpha_beta is not None

    @property
    def alpha_beta(self) -> Array:
        self._check_fitted()
        return self._alpha_beta

    # ---------- kernel derivatives at sample indices ----------------------

    def kernel_value(self, a: int, b: int) -> float:
        a, b = self._check_sample(a), self._check_sample(b)
        return float(self.kernel.kernel(self.X[a], self.X[b], sigma=self.sigma))

    def grad_x(self, a: int, b: int, i: int) -> float:
        a, b, i = self._check_sample(a), self._check_sample(b), self._check_dim(i)
        return float(self.kernel.grad_x(self.X[a], self.X[b], sigma=self.sigma)[i])

    def hessian_x(self, a: int, b: int) -> Array:
        a, b = self._check_sample(a), self._check_sample(b)
        return self.kernel.hessian_x(self.X[a], self.X[b], sigma=self.sigma)

    def hessian_x_elem(self, a: int, b: int, i: int, j: int) -> float:
        a, b = self._check_sample(a), self._check_sample(b)
        i, j = self._check_dim(i), self._check_dim(j)
        return float(
            self.kernel.hessian_x_elem(self.X[a], self.X[b], i, j, sigma=self.sigma)
        )

    def third_mixed(self, a: int, b: int) -> Array:
        a, b = self._check_sample(a), self._check_sample(b)
        return self.kernel.third_mixed(self.X[a], self.X[b], sigma=self.sigma)

    def fourth_mixed(self, a: int, b: int) -> Array:
        a, b = self._check_sample(a), self._check_sample(b)
        return self.kernel.fourth_mixed(self.X[a], self.X[b], sigma=self.sigma)

    def dx_single(self, x: Array, b: int, i: int) -> float:
        x = self._check_query(x)
        b, i = self._check_sample(b), self._check_dim(i)
        return float(self.kernel.dx_single(x, self.X[b], i, sigma=self.sigma))

    def dxdx_single(self, x: Array, b: int, i: int) -> float:
        x = self._check_query(x)
        b, i = self._check_sample(b), self._check_dim(i)
        return float(self.kernel.dxdx_single(x, self.X[b], i, sigma=self.sigma))

    # ---------- statistics shared by both system builders -----------------

    def compute_h(self) -> Array:
        """
        First order statistic ``h``, shape ``(n*d,)``: the column sums of
        ``third_mixed(a, b)`` accumulated over ``a`` into block ``b``, divided by ``n``.
        """
        sums = self.kernel.third_mixed_sum(self.X, sigma=self.sigma)
        return sums.reshape(-1) / self.get_num_data()

    def compute_xi_norm_2(self) -> Array:
        """
        Average over all sample pairs of the entry sum of ``fourth_mixed(a, b)``.
        """
        n = self.get_num_data()
        return self.kernel.fourth_mixed_sum(self.X, sigma=self.sigma) / n**2

    def hessian_operator(self) -> LinearOperator:
        """
        Matrix-free view of the stacked ``(n*d, n*d)`` Hessian matrix.
        """
        matvec = functools.partial(self.kernel.hessian_matvec, X=self.X, sigma=self.sigma)
        return LinearOperator.symmetric(matvec, self.get_num_data() * self.get_dimension())

    def _top_left(self, h: Array, xi_norm_2: Array) -> Array:
        return jnp.dot(h, h) / self.get_num_data() + self.lmbda * xi_norm_2

    def _rhs(self, h: Array, xi_norm_2: Array) -> Array:
        return -jnp.concatenate([jnp.atleast_1d(xi_norm_2), h])

    # ---------- fitting and evaluation -----------------------------------

    def build_system(self) -> tuple[Array, Array]:
        raise NotImplementedError("Implemented in subclasses")

    def fit(self) -> "KernelExpFamily":
        """
        Assembles the score matching system and solves its normal equations with a
        truncated pseudoinverse. Calling ``fit`` again recomputes from scratch.

        Returns:
            The fitted estimator.
        """
        logger.info(
            f"Fitting {self.name} estimator: n={self.get_num_data()}, "
            f"d={self.get_dimension()}, m={self.get_num_basis()}"
        )
        self._alpha_beta = None

        A_mn, b = self.build_system()
        logger.debug(f"System shapes: A {A_mn.shape}, b {b.shape}")

        alpha_beta = solve_normal_equations(A_mn, b, ridge=self.ridge)
        self._alpha_beta = alpha_beta
        logger.info(f"Finished fitting {self.name} estimator")
        return self

    def log_pdf(self, x: Array) -> float:
        r"""
        Evaluates the fitted statistic at a single point.

        .. math::

            \alpha\, \xi(x) + \sum_{(a,i)} \beta_{(a,i)} \frac{\partial k(x, x_a)}{\partial x_i},
            \qquad \xi(x) = \frac{1}{n} \sum_{(a,i)} \frac{\partial^2 k(x, x_a)}{\partial x_i^2},

        with both sums over the basis. No partition function is computed, so the value is
        an unnormalised log density.

        Args:
            x:
                Query point of shape ``(d,)``.

        Returns:
            float
        """
        self._check_fitted()
        x = self._check_query(x)
        return float(_log_pdf(x, self.X, self.basis, self._alpha_beta, self.sigma))

    def log_pdf_multiple(self, X_test: Array) -> np.ndarray:
        """
        :py:meth:`log_pdf` for each column of a shape ``(d, n_test)`` array.
        """
        self._check_fitted()
        X_test = jnp.asarray(X_test, dtype=jnp.float64)
        if X_test.ndim != 2 or X_test.shape[0] != self.get_dimension():
            raise ValueError(
                f"X_test must have shape ({self.get_dimension()}, n_test), got {X_test.shape}"
            )

        log_pdf = vmap(lambda x: _log_pdf(x, self.X, self.basis, self._alpha_beta, self.sigma))
        return np.asarray(log_pdf(X_test.T))

    def _check_fitted(self):
        if self._alpha_beta is None:
            raise NotFittedError(f"{type(self).__name__} must be fitted before use; call fit()")

    def _check_query(self, x: Array) -> Array:
        x = jnp.asarray(x, dtype=jnp.float64)
        if x.shape != (self.get_dimension(),):
            raise ValueError(
                f"Query point must have shape ({self.get_dimension()},), got {x.shape}"
            )
        return x

    def _check_index(self, idx: int, size: int, what: str) -> int:
        if isinstance(idx, bool) or not isinstance(idx, (int, np.integer)):
            raise ValueError(f"{what} index must be an integer, got {idx!r}")
        if not 0 <= idx < size:
            raise ValueError(f"{what} index must lie in [0, {size}), got {idx}")
        return int(idx)

    def _check_sample(self, a: int) -> int:
        return self._check_index(a, self.get_num_data(), "Sample")

    def _check_dim(self, i: int) -> int:
        return self._check_index(i, self.get_dimension(), "Dimension")

    def _check_param(self, idx: int) -> int:
        n, d = self.get_num_data(), self.get_dimension()
        return self._check_index(idx, n * d, "Parameter")


class KernelExpFamilyFull(KernelExpFamily):
    """
    Score matching estimator using every parameter index as a basis function.

    Assembles the dense ``(n*d+1, n*d+1)`` system from the stacked kernel Hessians.
    """

    name: str = "Full"

    @property
    def basis(self) -> Array:
        return jnp.arange(self.get_num_data() * self.get_dimension())

    def all_hessians(self) -> Array:
        return self.kernel.hessian_matrix(self.X, sigma=self.sigma)

    def build_system(self) -> tuple[Array, Array]:
        """
        Returns:
            tuple[Array, Array]:

                - ``A``: symmetric system matrix. Shape: ``(n*d+1, n*d+1)``.
                - ``b``: right-hand side. Shape: ``(n*d+1,)``.
        """
        n = self.get_num_data()
        nd = n * self.get_dimension()

        h = self.compute_h()
        H = self.all_hessians()
        xi_norm_2 = self.compute_xi_norm_2()

        first_row = H @ h / n + self.lmbda * h

        A = jnp.zeros((nd + 1, nd + 1), dtype=H.dtype)
        A = A.at[0, 0].set(self._top_left(h, xi_norm_2))
        A = A.at[1:, 1:].set(H @ H / n + self.lmbda * H)
        A = A.at[0, 1:].set(first_row)
        A = A.at[1:, 0].set(first_row)

        return A, self._rhs(h, xi_norm_2)


class KernelExpFamilyNystrom(KernelExpFamily):
    r"""
    Low-rank score matching estimator restricted to ``m`` basis parameter indices.

    Only the ``m`` basis rows of the system are assembled, giving a rectangular
    ``(m+1, n*d+1)`` matrix :math:`A_{mn}` at :math:`O(m\,(nd)^2)` cost without ever
    storing the ``(n*d, n*d)`` Hessian matrix. The coefficients solve the normal
    equations :math:`A_{mn} A_{mn}^\top x = A_{mn} b`.

    Exactly one of ``basis`` and ``num_basis`` must be given.

    Args:
        data:
            Shape ``(d, n)`` array, one sample per column.
        sigma:
            Kernel bandwidth :math:`\sigma > 0`.
        lmbda:
            Regularisation weight :math:`\lambda \geq 0`.
        basis:
            Explicit sorted, unique parameter indices in ``[0, n*d)``.
        num_basis:
            Number ``m`` of basis indices to draw uniformly at random.
        key:
            JAX random key or integer seed used when drawing the basis. Ignored if
            ``basis`` is provided.
        ridge:
            Optional diagonal regulariser added to the normal equations.
    """

    name: str = "Nystrom"

    def __init__(
        self,
        data: Array,
        sigma: float,
        lmbda: float,
        basis: Optional[Sequence[int] | Array] = None,
        num_basis: Optional[int] = None,
        key: Optional[Array | int] = None,
        ridge: float = 0.0,
    ):
        super().__init__(data, sigma, lmbda, ridge=ridge)

        if (basis is None) == (num_basis is None):
            raise ValueError("exactly one of `basis` and `num_basis` is required")

        n, d = self.get_num_data(), self.get_dimension()
        if basis is not None:
            self._basis = check_basis(basis, n, d)
        else:
            self._basis = random_basis(key, n, d, num_basis)

    @property
    def basis(self) -> Array:
        return self._basis

    def lower_right_element(self, row: int, col: int) -> float:
        """
        Entry ``(row, col)`` of the lower right block, computed from single Hessian
        entries only:
            sum_{n,d} H[row, (n,d)] H[(n,d), col] / n + lmbda * H[row, col]
        """
        row, col = self._check_param(row), self._check_param(col)
        return float(_lower_right_element(row, col, self.X, self.sigma, self.lmbda))

    def lower_right_block(self) -> Array:
        """
        Rows ``basis`` of ``H @ H / n + lmbda * H``, shape ``(m, n*d)``.
        """
        n = self.get_num_data()
        rows = vmap(
            lambda row: self.kernel.hessian_row(row, self.X, sigma=self.sigma)
        )(self.basis)  # (m, n*d)

        # H is symmetric, so row r of H @ H is H @ r
        G = self.hessian_operator() @ rows.T
        return G.T / n + self.lmbda * rows

    def first_row(self, h: Optional[Array] = None) -> Array:
        """
        ``H @ h / n + lmbda * h`` without storing ``H``, shape ``(n*d,)``.
        """
        if h is None:
            h = self.compute_h()
        return self.hessian_operator() @ h / self.get_num_data() + self.lmbda * h

    def build_system(self) -> tuple[Array, Array]:
        """
        Returns:
            tuple[Array, Array]:

                - ``A_mn``: rectangular system matrix. Shape: ``(m+1, n*d+1)``.
                - ``b``: right-hand side. Shape: ``(n*d+1,)``.
        """
        nd = self.get_num_data() * self.get_dimension()
        m = self.get_num_basis()

        h = self.compute_h()
        xi_norm_2 = self.compute_xi_norm_2()
        first_row = self.first_row(h)

        A_mn = jnp.zeros((m + 1, nd + 1), dtype=h.dtype)
        A_mn = A_mn.at[0, 0].set(self._top_left(h, xi_norm_2))
        A_mn = A_mn.at[0, 1:].set(first_row)
        A_mn = A_mn.at[1:, 0].set(first_row[self.basis])
        A_mn = A_mn.at[1:, 1:].set(self.lower_right_block())

        return A_mn, self._rhs(h, xi_norm_2)
