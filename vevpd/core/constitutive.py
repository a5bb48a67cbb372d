"""構成則評価器・接線提供器の抽象インタフェース定義.

Protocol 定義:
  MaterialEvaluatorProtocol — 試行変形勾配 → 応力・状態候補（物理 / ML 共通）
  TangentProviderProtocol   — 評価結果 → 接線 ∂σ/∂F

適合クラス:
  PhysicsEvaluator    + AutogradTangent          （物理分岐）
  SurrogateEvaluator  + FiniteDifferenceTangent  （LSTM 分岐）

評価器の選択はモード切替コントローラがタイムステップ単位で一度だけ行う。
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from vevpd.core.results import ConstitutiveResult, TrialState


@runtime_checkable
class MaterialEvaluatorProtocol(Protocol):
    """局所構成則評価器のインタフェース.

    evaluate() は入力 state を変更しない。返された状態候補は、全体
    Newton 反復が収束したときにのみ MaterialStateStore へ確定される。
    """

    name: str

    def evaluate(self, trial: TrialState) -> ConstitutiveResult:
        """応力と状態候補を計算する（接線は含まない）.

        Args:
            trial: 試行入力（F, dt, 前ステップ状態, 材料パラメータ）

        Returns:
            ConstitutiveResult（tangent=None）
        """
        ...


@runtime_checkable
class TangentProviderProtocol(Protocol):
    """接線演算子のインタフェース."""

    def compute(
        self,
        evaluator: MaterialEvaluatorProtocol,
        trial: TrialState,
        result: ConstitutiveResult,
    ) -> np.ndarray:
        """全体剛性の組み立てに使う接線を返す.

        Returns:
            tangent: (3,3,3,3) ∂σ_ij/∂F_kl
        """
        ...
