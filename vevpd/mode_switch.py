"""物理 / ML 評価器の切替制御.

状態遷移:
  PHYSICS → ML  （タイムステップ番号 >= switch_timestep で一度だけ）
  ML → PHYSICS は行わない（ラッチ）
  reset() で PHYSICS に戻す（新しい解析の開始時のみ）

切替時に各積分点の確定 MaterialState を SurrogateState に変換する。
変換は積分点ごとに独立で、その積分点自身の状態と受理済み変形履歴のみを
参照する。全積分点の変換結果は MaterialStateStore.commit_many で一括
確定する。

引き継ぎ方式:
  "replay" — 受理済み変形履歴 (F_k, dt_k) を LSTM に通して (h, c) を得る
  "zero"   — (h, c) をゼロに初期化する
損傷は物理モデルの最終値をそのまま引き継ぐ。
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import Enum

import numpy as np

from vevpd.core.constitutive import MaterialEvaluatorProtocol
from vevpd.core.state import MaterialState, MaterialStateStore, PointState, SurrogateState
from vevpd.materials.parameters import MaterialParameters
from vevpd.materials.tangent import AutogradTangent, FiniteDifferenceTangent
from vevpd.surrogate.evaluator import SurrogateEvaluator, surrogate_features
from vevpd.surrogate.network import LSTMSurrogate

History = Sequence[tuple[np.ndarray, float]]

HandoffFn = Callable[[LSTMSurrogate, PointState, History, MaterialParameters], SurrogateState]


class Mode(Enum):
    """評価モード."""

    PHYSICS = "physics"
    ML = "ml"


def zero_handoff(
    model: LSTMSurrogate,
    state: PointState,
    history: History,
    params: MaterialParameters,
) -> SurrogateState:
    """ゼロ状態から ML 分岐を開始する."""
    return SurrogateState.zeros(model.hidden_size, model.n_layers, damage=state.damage)


def replay_handoff(
    model: LSTMSurrogate,
    state: PointState,
    history: History,
    params: MaterialParameters,
) -> SurrogateState:
    """受理済み変形履歴を LSTM に再生して (h, c) を構成する."""
    init = zero_handoff(model, state, history, params)
    if len(history) == 0:
        return init
    feats = np.stack([surrogate_features(F, dt, params) for F, dt in history])
    _, h, c = model.step(feats, init.h, init.c)
    return SurrogateState(h=h, c=c, damage=state.damage)


HANDOFFS: dict[str, HandoffFn] = {
    "replay": replay_handoff,
    "zero": zero_handoff,
}


class ModeSwitchController:
    """タイムステップ単位で評価器と接線提供器を選択する.

    Args:
        physics: 物理分岐の評価器
        params: 材料パラメータ（引き継ぎ時の特徴量に使用）
        surrogate: ML 分岐の評価器（None で ML 無効）
        switch_timestep: 切替タイムステップ番号（0 で初回から ML）
        handoff: 引き継ぎ方式
        fd_step: ML 分岐の差分接線の摂動幅
    """

    def __init__(
        self,
        physics: MaterialEvaluatorProtocol,
        params: MaterialParameters,
        surrogate: SurrogateEvaluator | None = None,
        *,
        switch_timestep: int = 0,
        handoff: str = "replay",
        fd_step: float = 1e-6,
    ) -> None:
        if switch_timestep < 0:
            raise ValueError(f"切替タイムステップは非負: {switch_timestep}")
        if handoff not in HANDOFFS:
            raise ValueError(f"未知の引き継ぎ方式: {handoff!r}")
        self.physics = physics
        self.params = params
        self.surrogate = surrogate
        self.switch_timestep = switch_timestep
        self.handoff = handoff
        self.physics_tangent = AutogradTangent()
        self.surrogate_tangent = FiniteDifferenceTangent(fd_step)
        self._mode = Mode.PHYSICS
        self.switched_at: int | None = None

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def ml_enabled(self) -> bool:
        return self.surrogate is not None

    def reset(self) -> None:
        """新しい解析の開始前に物理モードへ戻す（確定状態ストアは呼び出し側で再生成）."""
        self._mode = Mode.PHYSICS
        self.switched_at = None

    def select(
        self,
        timestep: int,
        store: MaterialStateStore,
        history: Sequence[History],
    ):
        """timestep で使う (評価器, 接線提供器) を返す.

        切替条件を満たした最初の呼び出しで状態を変換する。
        """
        if self._mode is Mode.PHYSICS and self.ml_enabled and timestep >= self.switch_timestep:
            self._transition(store, history)
            self.switched_at = timestep
        if self._mode is Mode.ML:
            return self.surrogate, self.surrogate_tangent
        return self.physics, self.physics_tangent

    def _transition(self, store: MaterialStateStore, history: Sequence[History]) -> None:
        convert = HANDOFFS[self.handoff]
        model = self.surrogate.model
        converted: dict[int, PointState] = {}
        for point_id, state in store.items():
            if isinstance(state, MaterialState):
                converted[point_id] = convert(model, state, history[point_id], self.params)
        store.commit_many(converted)
        self._mode = Mode.ML
