import functools
import jax, jax.numpy as jnp
from jax import jit, vmap, Array, lax

# every quantity below is assembled and solved in double precision
jax.config.update("jax_enable_x64", True)


class Kernel:
    name: str = "base_kernel"  # class attribute

    @staticmethod
    def _pair(x: Array, y: Array, **hyper: float) -> Array:
        raise NotImplementedError  # k(x, y), provided by subclass


class GaussianKernel(Kernel):
    r"""
    Isotropic Gaussian kernel

    .. math::

        k(x, y) = \exp\left(-\frac{\lVert x - y \rVert^2}{\sigma}\right),

    together with the closed-form derivatives up to fourth order required by the
    score matching estimators. Note that :math:`\sigma` divides the squared distance
    directly (it is not a squared lengthscale with a factor of two).
    """

    name: str = "Gaussian"

    @staticmethod
    def _pair(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        return jnp.exp(-jnp.sum((x - y) ** 2) / sigma)

    @staticmethod
    def kernel(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        r"""
        Evaluates :math:`k(x, y)` for a single pair of samples of shape ``(d,)``.

        The value always lies in :math:`(0, 1]` and equals one iff ``x == y``.
        """
        return GaussianKernel._pair(x, y, sigma=sigma)

    @staticmethod
    def grad_x(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        r"""
        Gradient of the kernel with respect to its first argument.

        .. math::

            \frac{\partial k}{\partial x_i} = \frac{2 k}{\sigma} (y_i - x_i).

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.
            sigma:
                Kernel bandwidth :math:`\sigma>0`.

        Returns:
            Array:
                Shape ``(d,)`` gradient.
        """
        k = GaussianKernel._pair(x, y, sigma=sigma)
        return 2.0 * k * (y - x) / sigma

    @staticmethod
    def hessian_x(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        r"""
        Second order kernel derivative used as the basic block of the score matching system.

        .. math::

            H = \frac{2k}{\sigma} I - \frac{4k}{\sigma^2} (x - y)(x - y)^\top.

        The block is symmetric and invariant to swapping ``x`` and ``y``.

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.
            sigma:
                Kernel bandwidth :math:`\sigma>0`.

        Returns:
            Array:
                Shape ``(d,d)`` matrix.
        """
        diff = x - y
        k = GaussianKernel._pair(x, y, sigma=sigma)
        eye = jnp.eye(x.shape[0], dtype=diff.dtype)
        return k * (2.0 * eye / sigma - 4.0 * jnp.outer(diff, diff) / sigma**2)

    @staticmethod
    def hessian_x_elem(
        x: Array, y: Array, i: int | Array, j: int | Array, *, sigma: float = 1.0
    ) -> Array:
        r"""
        Single entry :math:`H_{ij}` of :py:meth:`hessian_x` without forming the ``(d,d)`` block.

        .. math::

            H_{ij} = k \left(\frac{2}{\sigma}\delta_{ij} - \frac{4 (y_i - x_i)(y_j - x_j)}{\sigma^2}\right).
        """
        diff = y - x
        k = GaussianKernel._pair(x, y, sigma=sigma)
        ridge = jnp.where(i == j, 2.0 / sigma, 0.0)
        return k * (ridge - 4.0 * diff[i] * diff[j] / sigma**2)

    @staticmethod
    def third_mixed(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        r"""
        Third order derivative :math:`\partial^3 k / \partial x_i^2 \partial y_j`.

        With :math:`d = x - y` and :math:`c = 2/\sigma`,

        .. math::

            T_{ij} = c^3 k\, d_i^2 d_j - 2 c^2 k\, \delta_{ij} d_i - c^2 k\, d_j.

        Summing over ``i`` and averaging over the first sample gives the first order
        statistic ``h`` of the score matching objective.

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.
            sigma:
                Kernel bandwidth :math:`\sigma>0`.

        Returns:
            Array:
                Shape ``(d,d)`` matrix indexed ``[i, j]``.
        """
        diff = x - y
        diff2 = diff**2
        k = GaussianKernel._pair(x, y, sigma=sigma)
        c = 2.0 / sigma

        result = c**3 * k * jnp.outer(diff2, diff)
        result = result - 2.0 * c**2 * k * jnp.diag(diff)
        result = result - c**2 * k * diff[None, :]
        return result

    @staticmethod
    def fourth_mixed(x: Array, y: Array, *, sigma: float = 1.0) -> Array:
        r"""
        Fourth order derivative :math:`\partial^4 k / \partial x_i^2 \partial y_j^2`.

        With :math:`d = x - y` and :math:`c = 2/\sigma`,

        .. math::

            F_{ij} = c^4 k\, d_i^2 d_j^2 - 4 c^3 k\, \delta_{ij} d_i^2
            - c^3 k\, (d_i^2 + d_j^2) + 2 c^2 k\, \delta_{ij} + c^2 k.

        The average of the entry sums over all sample pairs is the normalisation
        constant ``xi_norm_2``.

        Args:
            x:
                A single sample of shape ``(d,)``.
            y:
                A single sample of shape ``(d,)``.
            sigma:
                Kernel bandwidth :math:`\sigma>0`.

        Returns:
            Array:
                Shape ``(d,d)`` matrix indexed ``[i, j]``.
        """
        diff2 = (x - y) ** 2
        k = GaussianKernel._pair(x, y, sigma=sigma)
        c = 2.0 / sigma
        eye = jnp.eye(x.shape[0], dtype=diff2.dtype)

        result = c**4 * k * jnp.outer(diff2, diff2)
        result = result - 4.0 * c**3 * k * jnp.diag(diff2)
        result = result - c**3 * k * (diff2[None, :] + diff2[:, None])
        result = result + c**2 * k * (1.0 + 2.0 * eye)
        return result

    @staticmethod
    def dx_single(query: Array, y: Array, i: int | Array, *, sigma: float = 1.0) -> Array:
        r"""
        :math:`\partial k(q, y) / \partial q_i = 2 k (y_i - q_i) / \sigma` for an external point ``q``.
        """
        diff = y - query
        k = GaussianKernel._pair(query, y, sigma=sigma)
        return 2.0 * k * diff[i] / sigma

    @staticmethod
    def dxdx_single(query: Array, y: Array, i: int | Array, *, sigma: float = 1.0) -> Array:
        r"""
        :math:`\partial^2 k(q, y) / \partial q_i^2 = k \left(4 (q_i - y_i)^2 / \sigma^2 - 2/\sigma\right)`.
        """
        diff2 = (query - y) ** 2
        k = GaussianKernel._pair(query, y, sigma=sigma)
        return k * (diff2[i] * (2.0 / sigma) ** 2 - 2.0 / sigma)

    @functools.partial(jit, static_argnums=(0,))  # self is arg 0 → static
    def hessian_matrix(self, X: Array, *, sigma: float = 1.0) -> Array:
        """
        Stacks :py:meth:`hessian_x` over all sample pairs into the symmetric
        ``(n*d, n*d)`` matrix whose ``(a, b)`` block is ``hessian_x(X[a], X[b])``.

        Only blocks with ``a <= b`` are evaluated, the lower triangle is mirrored.

        Args:
            X:
                A shape ``(n,d)`` array of samples.
            sigma:
                Kernel bandwidth.

        Returns:
            Array:
                A shape ``(n*d, n*d)`` symmetric matrix, rows and columns ordered by
                parameter index ``a*d + i``.
        """
        n, d = X.shape
        rows, cols = jnp.triu_indices(n)

        blocks = vmap(lambda a, b: self.hessian_x(X[a], X[b], sigma=sigma))(rows, cols)

        H = jnp.zeros((n, n, d, d), dtype=X.dtype)
        H = H.at[rows, cols].set(blocks)
        H = H.at[cols, rows].set(jnp.swapaxes(blocks, -1, -2))
        return H.transpose(0, 2, 1, 3).reshape(n * d, n * d)

    @functools.partial(jit, static_argnums=(0,))
    def hessian_matvec(self, v: Array, X: Array, *, sigma: float = 1.0) -> Array:
        """
        Matrix-free mat-vec with :py:meth:`hessian_matrix`:
            (H @ v)[a*d + i] = sum_b sum_j hessian_x(X[a], X[b])[i, j] * v[b*d + j]
        without ever forming the full H.
        """
        n, d = X.shape
        V = v.reshape(n, d)

        # for a fixed a, contract all (d,d) blocks of block-row a against v
        def row_block(x_a):
            blocks = vmap(lambda y: self.hessian_x(x_a, y, sigma=sigma))(X)  # (n,d,d)
            return jnp.einsum("bij,bj->i", blocks, V)

        return lax.map(row_block, X).reshape(-1)

    @functools.partial(jit, static_argnums=(0,))
    def hessian_row(self, row: int | Array, X: Array, *, sigma: float = 1.0) -> Array:
        """
        Row ``row = a*d + i`` of :py:meth:`hessian_matrix`, shape ``(n*d,)``.
        """
        n, d = X.shape
        a, i = row // d, row % d
        return vmap(lambda y: self.hessian_x(X[a], y, sigma=sigma)[i])(X).reshape(-1)

    @functools.partial(jit, static_argnums=(0,))
    def third_mixed_sum(self, X: Array, *, sigma: float = 1.0) -> Array:
        """
        Column sums of :py:meth:`third_mixed` accumulated over the first sample:
            out[b, j] = sum_a sum_i third_mixed(X[a], X[b])[i, j]

        Returns a shape ``(n, d)`` array.
        """

        def column(y):
            T = vmap(lambda x: self.third_mixed(x, y, sigma=sigma))(X)  # (n,d,d)
            return jnp.sum(T, axis=(0, 1))

        return lax.map(column, X)

    @functools.partial(jit, static_argnums=(0,))
    def fourth_mixed_sum(self, X: Array, *, sigma: float = 1.0) -> Array:
        """
        Sum of all entries of :py:meth:`fourth_mixed` over all ordered sample pairs.
        """

        # partial sums per first sample, reduced once at the end
        def partial_sum(x):
            F = vmap(lambda y: self.fourth_mixed(x, y, sigma=sigma))(X)
            return jnp.sum(F)

        return jnp.sum(lax.map(partial_sum, X))
