"""構成則評価の入出力型定義.

NamedTuple で統一的に定義する（名前付きアクセス + タプルアンパック）。
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

if TYPE_CHECKING:
    from vevpd.core.state import PointState
    from vevpd.materials.parameters import MaterialParameters


class FlowRegime(Enum):
    """粘塑性流れの active set（積分点・ステップごと）."""

    ELASTIC = 0  # 相当応力 <= σ0 : 粘塑性流れなし
    PLASTIC = 1  # 相当応力 > σ0 : 粘塑性流れあり
    SURROGATE = 2  # ML 分岐（流れ則を解かない）


class ViscousRegime(Enum):
    """粘性ネットワークの流れ状態（積分点・ステップごと）."""

    INACTIVE = 0  # 偏差ひずみなし、または dt = 0 : Δγ_v = 0
    FLOWING = 1  # 0 < Δγ_v < 上限 : 流れ則を Newton で解く
    RELAXED = 2  # Δγ_v = 上限 : 粘性ネットワークが完全緩和


class TrialState(NamedTuple):
    """1回の Newton 反復における積分点の試行入力.

    Attributes:
        F: (3,3) 試行全変形勾配
        dt: 時間増分
        state_n: 前ステップの確定状態（変更されない）
        params: 材料パラメータ（全積分点で共有）
    """

    F: np.ndarray
    dt: float
    state_n: PointState
    params: MaterialParameters


class LocalSolveInfo(NamedTuple):
    """局所ソルバーの診断情報.

    Attributes:
        iterations: 内部 Newton 反復回数
        residual_norm: 最終残差ノルム（流れ則）
        regime: 粘塑性 active set
        amplification: 剛性増幅係数 X
        failure: 失敗理由（None = 成功, "max_iter", "domain"）
        viscous: 粘性ネットワークの流れ状態（ML 分岐では None）
        flow_increments: 収束解 (Δγ_v, Δγ_p)
    """

    iterations: int
    residual_norm: float
    regime: FlowRegime
    amplification: float
    failure: str | None = None
    viscous: ViscousRegime | None = None
    flow_increments: tuple[float, float] = (0.0, 0.0)


class ConstitutiveResult(NamedTuple):
    """局所構成則評価の結果.

    Attributes:
        stress: (3,3) Cauchy 応力
        tangent: (3,3,3,3) 接線 ∂σ_ij/∂F_kl（未計算なら None）
        state_new: 更新後状態の候補（失敗時は None）
        converged: 局所反復が収束したか
        info: 診断情報
    """

    stress: np.ndarray
    tangent: np.ndarray | None
    state_new: PointState | None
    converged: bool
    info: LocalSolveInfo


def failed_result(info: LocalSolveInfo) -> ConstitutiveResult:
    """局所反復失敗時の結果（応力・接線はゼロ、状態候補なし）."""
    return ConstitutiveResult(
        stress=np.zeros((3, 3), dtype=float),
        tangent=np.zeros((3, 3, 3, 3), dtype=float),
        state_new=None,
        converged=False,
        info=info,
    )
