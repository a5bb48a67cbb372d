"""接線演算子 ∂σ/∂F の提供器（TangentProviderProtocol 適合）.

  AutogradTangent          — 物理分岐。収束解まわりの応力関数を torch で
                             自動微分する（consistent tangent）。
  FiniteDifferenceTangent  — ML 分岐。変形勾配の各成分を前進差分で摂動する。

接線の添字は C[i, j, k, l] = ∂σ_ij / ∂F_kl。
局所反復が失敗した結果にはゼロ接線を返す（全体側で増分縮小される）。
"""

from __future__ import annotations

import numpy as np
import torch
from torch.autograd.functional import jacobian

from vevpd.core.constitutive import MaterialEvaluatorProtocol
from vevpd.core.results import ConstitutiveResult, TrialState
from vevpd.materials.tensor_ops import as_tensor

# 前進差分の摂動幅（変形勾配成分、無次元）
FD_STEP = 1.0e-6


class AutogradTangent:
    """自動微分による consistent tangent.

    evaluator は linearized_stress(trial, result) を持つこと
    （PhysicsEvaluator）。
    """

    def compute(
        self,
        evaluator: MaterialEvaluatorProtocol,
        trial: TrialState,
        result: ConstitutiveResult,
    ) -> np.ndarray:
        if not result.converged:
            return np.zeros((3, 3, 3, 3), dtype=float)
        linearize = getattr(evaluator, "linearized_stress", None)
        if linearize is None:
            raise TypeError(f"{evaluator.name} は自動微分接線に未対応")

        stress_of = linearize(trial, result)
        C = jacobian(stress_of, as_tensor(trial.F))
        return C.detach().numpy().copy()


class FiniteDifferenceTangent:
    """前進差分による数値接線.

    C[:, :, k, l] = (σ(F + h e_k⊗e_l) - σ(F)) / h

    摂動評価はすべて同じ確定状態 trial.state_n から行う（ML 分岐では
    同じ hidden/cell 状態）。

    Args:
        step: 摂動幅 h
    """

    def __init__(self, step: float = FD_STEP) -> None:
        if step <= 0:
            raise ValueError(f"摂動幅 step は正値: {step}")
        self.step = step

    def compute(
        self,
        evaluator: MaterialEvaluatorProtocol,
        trial: TrialState,
        result: ConstitutiveResult,
    ) -> np.ndarray:
        C = np.zeros((3, 3, 3, 3), dtype=float)
        if not result.converged:
            return C

        F = np.asarray(trial.F, dtype=float)
        h = self.step
        for k in range(3):
            for l in range(3):
                F_pert = F.copy()
                F_pert[k, l] += h
                pert = evaluator.evaluate(trial._replace(F=F_pert))
                if not pert.converged:
                    return np.zeros((3, 3, 3, 3), dtype=float)
                C[:, :, k, l] = (pert.stress - result.stress) / h
        return C


def with_tangent(
    evaluator: MaterialEvaluatorProtocol,
    provider: AutogradTangent | FiniteDifferenceTangent,
    trial: TrialState,
) -> ConstitutiveResult:
    """評価と接線計算をまとめて行う."""
    result = evaluator.evaluate(trial)
    if not result.converged:
        return result
    return result._replace(tangent=provider.compute(evaluator, trial, result))
