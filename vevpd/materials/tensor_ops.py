"""有限ひずみ構成則用のテンソル演算（torch, float64）.

全ての関数は autograd で微分可能。対称正定値行列の平方根・対数は
固有値分解を使わず行列積と逆行列のみで構成する（重根でも勾配が有限）。

  sqrtm_spd: Denman-Beavers 反復
  logm_spd:  逆スケーリング・二乗法（平方根で I 近傍へ縮約 → 級数展開）

Voigt 表記（3D）:
  応力 σ = [σxx, σyy, σzz, τyz, τxz, τxy]
"""

from __future__ import annotations

import math

import numpy as np
import torch

DTYPE = torch.float64

_VOIGT_IDX = ((0, 0), (1, 1), (2, 2), (1, 2), (0, 2), (0, 1))

# 平方根で縮約する際の ||A - I|| の上限
_LOG_SERIES_RADIUS = 0.25


def as_tensor(a: np.ndarray | torch.Tensor) -> torch.Tensor:
    """float64 の torch テンソルに変換する."""
    return torch.as_tensor(a, dtype=DTYPE)


def eye3() -> torch.Tensor:
    return torch.eye(3, dtype=DTYPE)


def dev(A: torch.Tensor) -> torch.Tensor:
    """偏差成分 dev(A) = A - tr(A)/3 I."""
    return A - torch.trace(A) / 3.0 * eye3()


def safe_norm(A: torch.Tensor, floor: float = 1e-300) -> torch.Tensor:
    """Frobenius ノルム（ゼロ近傍で勾配が NaN にならないよう下限付き）."""
    return torch.sqrt(torch.clamp(torch.sum(A * A), min=floor))


def sym(A: torch.Tensor) -> torch.Tensor:
    return 0.5 * (A + A.T)


def sqrtm_spd(A: torch.Tensor, *, tol: float = 1e-15, max_iter: int = 60) -> torch.Tensor:
    """対称正定値行列の平方根（Denman-Beavers 反復）.

    Y_{k+1} = (Y_k + Z_k^{-1}) / 2,  Z_{k+1} = (Z_k + Y_k^{-1}) / 2
    Y → A^{1/2}, Z → A^{-1/2}（二次収束）。
    """
    Y = A
    Z = eye3()
    for _ in range(max_iter):
        Y_next = 0.5 * (Y + torch.linalg.inv(Z))
        Z_next = 0.5 * (Z + torch.linalg.inv(Y))
        delta = float(torch.linalg.norm((Y_next - Y).detach()))
        Y, Z = Y_next, Z_next
        if delta <= tol * max(1.0, float(torch.linalg.norm(Y.detach()))):
            break
    return sym(Y)


def logm_spd(A: torch.Tensor, *, n_terms: int = 60) -> torch.Tensor:
    """対称正定値行列の対数（逆スケーリング・二乗法）.

    log A = 2^k log(A^{1/2^k}),  ||A^{1/2^k} - I|| <= 0.25
    log(I + X) = Σ (-1)^{j+1} X^j / j
    """
    I = eye3()
    n_sqrt = 0
    while float(torch.linalg.norm((A - I).detach())) > _LOG_SERIES_RADIUS and n_sqrt < 50:
        A = sqrtm_spd(A)
        n_sqrt += 1

    X = A - I
    L = X
    term = X
    for j in range(2, n_terms + 1):
        term = term @ X
        L = L + ((-1.0) ** (j + 1) / j) * term
        if float(torch.linalg.norm(term.detach())) < 1e-20:
            break
    return (2.0**n_sqrt) * sym(L)


def expm(A: torch.Tensor) -> torch.Tensor:
    return torch.linalg.matrix_exp(A)


def green_lagrange(F: torch.Tensor) -> torch.Tensor:
    """Green-Lagrange ひずみ E = (F^T F - I) / 2."""
    return 0.5 * (F.T @ F - eye3())


def equivalent_strain(F: torch.Tensor) -> torch.Tensor:
    """相当全ひずみ sqrt(2/3 dev(E):dev(E))（Green-Lagrange）."""
    return math.sqrt(2.0 / 3.0) * safe_norm(dev(green_lagrange(F)))


def stress_to_voigt(sigma: np.ndarray) -> np.ndarray:
    """対称 3x3 応力 → (6,) Voigt（numpy）."""
    return np.array([sigma[i, j] for i, j in _VOIGT_IDX], dtype=float)
