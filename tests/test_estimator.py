import math

import numpy as np
import pytest
import jax.numpy as jnp

from kernel_expfam.estimator import (
    KernelExpFamily,
    KernelExpFamilyFull,
    KernelExpFamilyNystrom,
    NotFittedError,
)

SIGMA = 1.0
LMBDA = 0.1


def approx(a, b, tol=1e-10):
    return np.allclose(a, b, atol=tol, rtol=tol)


class TestHandComputed:
    """
    d = 1, n = 2 with points {0, 1}, sigma = 1, lambda = 0.1.

    With u = x_a - x_b and k = exp(-u^2):
        third  = (8 u^3 - 12 u) k
        fourth = (16 u^4 - 48 u^2 + 12) k
        H      = (2 - 4 u^2) k
    """

    @classmethod
    def setup_class(cls):
        cls.est = KernelExpFamilyFull(jnp.array([[0.0, 1.0]]), SIGMA, LMBDA)
        e = math.exp(-1.0)
        cls.h = np.array([-2.0 * e, 2.0 * e])
        cls.xi_norm_2 = 6.0 - 10.0 * e
        cls.H = np.array([[2.0, -2.0 * e], [-2.0 * e, 2.0]])

    def test_h(self):
        assert approx(self.est.compute_h(), self.h)

    def test_xi_norm_2(self):
        assert approx(self.est.compute_xi_norm_2(), self.xi_norm_2)

    def test_all_hessians(self):
        assert approx(self.est.all_hessians(), self.H)

    def test_system(self):
        A, b = self.est.build_system()
        n = 2
        assert A.shape == (3, 3)
        assert approx(A[0, 0], self.h @ self.h / n + LMBDA * self.xi_norm_2)
        assert approx(A[1:, 1:], self.H @ self.H / n + LMBDA * self.H)
        assert approx(A[0, 1:], self.H @ self.h / n + LMBDA * self.h)
        assert approx(b, np.concatenate([[-self.xi_norm_2], -self.h]))


class TestFullSystem:
    @classmethod
    def setup_class(cls):
        data = jnp.array([[0.0, 1.0, 0.0, 1.0, 0.4], [0.0, 0.0, 1.0, 1.0, 0.6]])
        cls.est = KernelExpFamilyFull(data, SIGMA, LMBDA)
        cls.A, cls.b = cls.est.build_system()

    def test_shapes(self):
        assert self.A.shape == (11, 11)
        assert self.b.shape == (11,)

    def test_symmetric(self):
        assert np.array_equal(self.A[0, 1:], self.A[1:, 0])
        assert approx(self.A[1:, 1:], self.A[1:, 1:].T, tol=1e-12)
        H = self.est.all_hessians()
        assert np.array_equal(H, H.T)

    def test_index_accessors(self):
        assert self.est.kernel_value(2, 2) == 1.0
        assert self.est.grad_x(2, 2, 1) == 0.0
        assert approx(self.est.hessian_x(3, 3), 2.0 / SIGMA * np.eye(2))
        assert approx(self.est.hessian_x_elem(0, 4, 0, 1), self.est.hessian_x(0, 4)[0, 1])
        assert self.est.third_mixed(0, 1).shape == (2, 2)
        assert self.est.fourth_mixed(0, 1).shape == (2, 2)

    def test_basis_is_all_indices(self):
        assert np.array_equal(self.est.basis, np.arange(10))
        assert self.est.get_num_basis() == 10
        assert self.est.get_num_data() == 5
        assert self.est.get_dimension() == 2


class TestNystromConsistency:
    @classmethod
    def setup_class(cls):
        data = jnp.array([[0.0, 1.0, 0.0, 1.0, 0.4], [0.0, 0.0, 1.0, 1.0, 0.6]])
        cls.full = KernelExpFamilyFull(data, SIGMA, LMBDA)
        cls.nystrom = KernelExpFamilyNystrom(data, SIGMA, LMBDA, basis=np.arange(10))
        cls.A, cls.b = cls.full.build_system()
        cls.A_mn, cls.b_mn = cls.nystrom.build_system()

    def test_full_basis_reproduces_full_system(self):
        assert self.A_mn.shape == (11, 11)
        assert approx(self.A_mn, self.A)
        assert approx(self.b_mn, self.b)

    def test_first_row(self):
        assert approx(self.nystrom.first_row(), self.A[0, 1:])

    def test_lower_right_element(self):
        for row, col in [(0, 0), (3, 7), (9, 2), (5, 5)]:
            assert approx(self.nystrom.lower_right_element(row, col), self.A[1 + row, 1 + col])

    def test_subset_rows(self):
        data = self.full.X.T
        sub = KernelExpFamilyNystrom(data, SIGMA, LMBDA, basis=[1, 4, 8])
        A_mn, b = sub.build_system()
        assert A_mn.shape == (4, 11)
        assert b.shape == (11,)
        assert approx(A_mn[0], self.A[0])
        assert approx(A_mn[1:, 1:], self.A[jnp.array([2, 5, 9]), 1:])
        assert approx(A_mn[1:, 0], self.A[0, jnp.array([2, 5, 9])])


def test_full_and_nystrom_agree(grid_data, test_points):
    full = KernelExpFamilyFull(grid_data, SIGMA, LMBDA).fit()
    nystrom = KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=10, key=0).fit()

    assert full.alpha_beta.shape == (11,)
    assert nystrom.alpha_beta.shape == (11,)
    assert np.allclose(full.alpha_beta, nystrom.alpha_beta, rtol=1e-5, atol=1e-7)

    expected = full.log_pdf_multiple(test_points)
    for col in range(test_points.shape[1]):
        x = test_points[:, col]
        assert np.isclose(full.log_pdf(x), expected[col], rtol=1e-10)
        assert np.isclose(nystrom.log_pdf(x), full.log_pdf(x), rtol=1e-5, atol=1e-7)


def test_single_basis_function_is_finite(grid_data, key):
    est = KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=1, key=key).fit()
    assert est.get_num_basis() == 1
    assert est.alpha_beta.shape == (2,)
    assert np.isfinite(est.log_pdf(jnp.array([0.25, -0.75])))


def test_log_pdf_matches_explicit_sum(grid_data):
    est = KernelExpFamilyNystrom(grid_data, 0.7, LMBDA, basis=[0, 3, 6]).fit()
    x = jnp.array([0.2, 0.9])
    alpha_beta = np.asarray(est.alpha_beta)

    xi, beta_sum = 0.0, 0.0
    for pos, idx in enumerate([0, 3, 6]):
        a, i = divmod(idx, 2)
        xi += est.dxdx_single(x, a, i) / 5
        beta_sum += est.dx_single(x, a, i) * alpha_beta[1 + pos]

    assert np.isclose(est.log_pdf(x), alpha_beta[0] * xi + beta_sum, rtol=1e-10)


def test_refit_recomputes(grid_data):
    est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA)
    first = np.asarray(est.fit().alpha_beta)
    second = np.asarray(est.fit().alpha_beta)
    assert np.array_equal(first, second)


def test_ridge_shrinks_coefficients(grid_data):
    plain = KernelExpFamilyFull(grid_data, SIGMA, LMBDA).fit()
    ridged = KernelExpFamilyFull(grid_data, SIGMA, LMBDA, ridge=10.0).fit()
    assert np.linalg.norm(ridged.alpha_beta) < np.linalg.norm(plain.alpha_beta)


def test_random_basis_reproducible(grid_data):
    a = KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=4, key=3)
    b = KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=4, key=3)
    assert np.array_equal(a.basis, b.basis)
    assert np.all(np.diff(np.asarray(a.basis)) > 0)


class TestErrors:
    def test_unfitted(self, grid_data):
        est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA)
        assert not est.is_fitted
        with pytest.raises(NotFittedError):
            est.log_pdf(jnp.zeros(2))
        with pytest.raises(NotFittedError):
            est.alpha_beta

    def test_query_dimension(self, grid_data):
        est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA).fit()
        with pytest.raises(ValueError, match="shape"):
            est.log_pdf(jnp.zeros(3))
        with pytest.raises(ValueError, match="shape"):
            est.log_pdf_multiple(jnp.zeros((3, 4)))

    @pytest.mark.parametrize(
        "data",
        [jnp.zeros((2, 0)), jnp.zeros((0, 3)), jnp.zeros(4), jnp.array([[0.0, jnp.nan]])],
    )
    def test_bad_data(self, data):
        with pytest.raises(ValueError):
            KernelExpFamilyFull(data, SIGMA, LMBDA)

    @pytest.mark.parametrize("sigma, lmbda", [(0.0, 0.1), (-1.0, 0.1), (1.0, -0.1)])
    def test_bad_hyperparameters(self, grid_data, sigma, lmbda):
        with pytest.raises(ValueError):
            KernelExpFamilyFull(grid_data, sigma, lmbda)

    def test_nystrom_basis_arguments(self, grid_data):
        with pytest.raises(ValueError, match="exactly one"):
            KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA)
        with pytest.raises(ValueError, match="exactly one"):
            KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, basis=[0], num_basis=1)
        with pytest.raises(ValueError, match="basis functions"):
            KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=11)

    def test_nystrom_non_integer_num_basis(self, grid_data):
        with pytest.raises(ValueError, match="integer"):
            KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, num_basis=2.7)

    @pytest.mark.parametrize(
        "method, args",
        [
            ("kernel_value", (99, 4)),
            ("kernel_value", (0, 5)),
            ("kernel_value", (-1, 0)),
            ("grad_x", (0, 1, 7)),
            ("grad_x", (0, 1, -1)),
            ("hessian_x", (5, 0)),
            ("hessian_x_elem", (0, 1, 0, 2)),
            ("hessian_x_elem", (0, 1.0, 0, 1)),
            ("third_mixed", (0, 10)),
            ("fourth_mixed", (-6, 0)),
        ],
    )
    def test_index_out_of_range(self, grid_data, method, args):
        est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA)
        with pytest.raises(ValueError, match="index"):
            getattr(est, method)(*args)

    @pytest.mark.parametrize("b, i", [(5, 0), (0, 2), (-1, 0), (0, -1)])
    def test_query_derivative_index_out_of_range(self, grid_data, b, i):
        est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA)
        with pytest.raises(ValueError, match="index"):
            est.dx_single(jnp.zeros(2), b, i)
        with pytest.raises(ValueError, match="index"):
            est.dxdx_single(jnp.zeros(2), b, i)

    @pytest.mark.parametrize("row, col", [(50, 0), (0, 10), (-1, 3), (2, -11)])
    def test_lower_right_element_out_of_range(self, grid_data, row, col):
        est = KernelExpFamilyNystrom(grid_data, SIGMA, LMBDA, basis=[0, 3])
        with pytest.raises(ValueError, match="Parameter index"):
            est.lower_right_element(row, col)

    def test_index_accessors_accept_numpy_integers(self, grid_data):
        est = KernelExpFamilyFull(grid_data, SIGMA, LMBDA)
        assert est.kernel_value(np.int64(4), np.int32(4)) == 1.0

    def test_base_class_is_abstract(self, grid_data):
        est = KernelExpFamily(grid_data, SIGMA, LMBDA)
        with pytest.raises(NotImplementedError):
            est.build_system()
