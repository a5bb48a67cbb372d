"""有限ひずみテンソル演算（torch）のテスト.

テスト方針:
  1. sqrtm_spd / logm_spd が scipy.linalg の参照実装と一致
  2. 重根（等方・一軸）でも自動微分の勾配が有限
  3. 勾配の有限差分検証
  4. Voigt 変換・相当ひずみ
"""

from __future__ import annotations

import numpy as np
import pytest
import scipy.linalg
import torch

from vevpd.materials.tensor_ops import (
    as_tensor,
    dev,
    equivalent_strain,
    expm,
    green_lagrange,
    logm_spd,
    safe_norm,
    sqrtm_spd,
    stress_to_voigt,
)


def _random_spd(seed: int, spread: float = 1.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    Q, _ = np.linalg.qr(rng.standard_normal((3, 3)))
    w = np.exp(rng.uniform(-spread, spread, 3))
    return Q @ np.diag(w) @ Q.T


class TestMatrixFunctions:
    """行列平方根・対数の参照比較."""

    @pytest.mark.parametrize("seed", [0, 1, 2, 3])
    def test_sqrtm_matches_scipy(self, seed):
        A = _random_spd(seed)
        ref = np.real(scipy.linalg.sqrtm(A))
        np.testing.assert_allclose(sqrtm_spd(as_tensor(A)).numpy(), ref, atol=1e-12)

    @pytest.mark.parametrize("seed, spread", [(0, 0.1), (1, 1.0), (2, 2.0)])
    def test_logm_matches_scipy(self, seed, spread):
        A = _random_spd(seed, spread)
        ref = np.real(scipy.linalg.logm(A))
        np.testing.assert_allclose(logm_spd(as_tensor(A)).numpy(), ref, atol=1e-11)

    def test_exp_log_inverse(self):
        A = _random_spd(5)
        L = logm_spd(as_tensor(A))
        np.testing.assert_allclose(expm(L).numpy(), A, rtol=1e-11)

    def test_logm_identity(self):
        np.testing.assert_array_equal(logm_spd(torch.eye(3, dtype=torch.float64)).numpy(), 0.0)


class TestGradients:
    """自動微分の勾配."""

    @pytest.mark.parametrize(
        "diag",
        [(1.0, 1.0, 1.0), (1.2, 1.2, 1.2), (1.5, 0.9, 0.9)],
    )
    def test_logm_gradient_finite_at_repeated_eigenvalues(self, diag):
        """等方・一軸（重根）でも勾配が有限."""
        A = as_tensor(np.diag(diag)).requires_grad_(True)
        L = logm_spd(A)
        (grad,) = torch.autograd.grad(torch.sum(L * L), A)
        assert torch.all(torch.isfinite(grad))

    def test_logm_gradient_fd(self):
        """d tr(log A · W)/dA の中心差分検証."""
        A0 = _random_spd(7, 0.5)
        W = _random_spd(8)
        A = as_tensor(A0).requires_grad_(True)
        (grad,) = torch.autograd.grad(torch.sum(logm_spd(A) * as_tensor(W)), A)

        h = 1e-6
        g_fd = np.zeros((3, 3))
        for i in range(3):
            for j in range(3):
                Ap = A0.copy()
                Ap[i, j] += h
                Am = A0.copy()
                Am[i, j] -= h
                fp = np.sum(np.real(scipy.linalg.logm(Ap)) * W)
                fm = np.sum(np.real(scipy.linalg.logm(Am)) * W)
                g_fd[i, j] = (fp - fm) / (2.0 * h)
        np.testing.assert_allclose(grad.numpy(), g_fd, rtol=1e-6, atol=1e-7)

    def test_safe_norm_zero_gradient(self):
        A = torch.zeros((3, 3), dtype=torch.float64, requires_grad=True)
        (grad,) = torch.autograd.grad(safe_norm(A), A)
        assert torch.all(torch.isfinite(grad))


class TestStrainMeasures:
    """ひずみ尺度・Voigt 変換."""

    def test_green_lagrange_uniaxial(self):
        F = as_tensor(np.diag([1.1, 1.0, 1.0]))
        E = green_lagrange(F).numpy()
        assert E[0, 0] == pytest.approx(0.5 * (1.1**2 - 1.0))
        assert E[1, 1] == pytest.approx(0.0)

    def test_equivalent_strain_isotropic_zero(self):
        """等方膨張の相当ひずみはゼロ."""
        F = as_tensor(1.05 * np.eye(3))
        assert float(equivalent_strain(F)) == pytest.approx(0.0, abs=1e-12)

    def test_dev_traceless(self):
        A = as_tensor(_random_spd(3))
        assert float(torch.trace(dev(A))) == pytest.approx(0.0, abs=1e-14)

    def test_stress_to_voigt_order(self):
        s = np.array([[1.0, 6.0, 5.0], [6.0, 2.0, 4.0], [5.0, 4.0, 3.0]])
        np.testing.assert_array_equal(stress_to_voigt(s), [1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
