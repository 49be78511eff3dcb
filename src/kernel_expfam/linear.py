from dataclasses import dataclass
import jax, jax.numpy as jnp
from jax import Array
from typing import Tuple, Callable


@dataclass(frozen=True)
class LinearOperator:
    """
    Wraps any ``n→n`` operator so that
      - ``A @ v`` works for v. Shape = ``(n,)`` or ``(n, k)``,
      - ``.shape`` tells you ``(n, n)``.

    Used to apply the stacked kernel Hessian matrix without storing it.
    """
    matvec: Callable[[Array], Array]
    rmatvec: Callable[[Array], Array]
    n: int

    __array_priority__ = 10.0

    @classmethod
    def symmetric(cls, matvec: Callable[[Array], Array], n: int) -> "LinearOperator":
        return cls(matvec, matvec, n)

    def __matmul__(self, x: Array) -> Array:
        x = jnp.asarray(x)
        if x.shape[0] != self.n:
            raise ValueError(f"Operator of size {self.n} applied to shape {x.shape}")
        if x.ndim == 1:
            return self.matvec(x)
        elif x.ndim == 2:
            # columns are independent mat-vecs
            return jax.vmap(self.matvec, in_axes=1, out_axes=1)(x)
        else:
            raise ValueError(f"LinearOperator only supports 1D or 2D, got ndim={x.ndim}")

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.n, self.n)
