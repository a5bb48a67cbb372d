"""状態変数（履歴変数）の管理.

積分点ごとに独立した履歴を保持する。

  MaterialState      — 物理モデル（粘弾性-粘塑性-損傷）の内部変数
  SurrogateState     — LSTM サロゲートの hidden/cell 状態
  MaterialStateStore — 積分点番号でインデックスされた確定状態のアリーナ

変形勾配の分解規約:
  F = F_e · F_v^{-1} · F_vp^{-1}
  F_ve = F · F_vp      （平衡ネットワークの弾性変形）
  F_e  = F_ve · F_v    （粘性ネットワークの弾性変形）
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field

import numpy as np


def _eye3() -> np.ndarray:
    return np.eye(3, dtype=float)


def _zeros33() -> np.ndarray:
    return np.zeros((3, 3), dtype=float)


@dataclass
class MaterialState:
    """1積分点の物理モデル状態変数.

    Attributes:
        F_e: (3,3) 粘性ネットワークの弾性変形勾配
        F_v: (3,3) 粘性変形（逆写像として保持）
        F_vp: (3,3) 粘塑性変形（逆写像として保持）
        damage: 損傷変数 d ∈ [0, 1)
        backstress: (3,3) 背応力（偏差、Armstrong-Frederick）
        eps_p_acc: 累積粘塑性ひずみ
        strain_eq: 前ステップの相当全ひずみ（Green-Lagrange）
    """

    F_e: np.ndarray = field(default_factory=_eye3)
    F_v: np.ndarray = field(default_factory=_eye3)
    F_vp: np.ndarray = field(default_factory=_eye3)
    damage: float = 0.0
    backstress: np.ndarray = field(default_factory=_zeros33)
    eps_p_acc: float = 0.0
    strain_eq: float = 0.0

    def copy(self) -> MaterialState:
        """深いコピーを返す."""
        return MaterialState(
            F_e=self.F_e.copy(),
            F_v=self.F_v.copy(),
            F_vp=self.F_vp.copy(),
            damage=self.damage,
            backstress=self.backstress.copy(),
            eps_p_acc=self.eps_p_acc,
            strain_eq=self.strain_eq,
        )

    def total_deformation(self) -> np.ndarray:
        """分解から全変形勾配 F = F_e F_v^{-1} F_vp^{-1} を再構成する."""
        return self.F_e @ np.linalg.inv(self.F_v) @ np.linalg.inv(self.F_vp)


@dataclass
class SurrogateState:
    """1積分点の LSTM サロゲート状態.

    Attributes:
        h: (n_layers, hidden_size) hidden 状態
        c: (n_layers, hidden_size) cell 状態
        damage: 物理モデルから引き継いだ損傷（サロゲート区間では固定）
    """

    h: np.ndarray
    c: np.ndarray
    damage: float = 0.0

    @classmethod
    def zeros(cls, hidden_size: int, n_layers: int = 2, damage: float = 0.0) -> SurrogateState:
        """ゼロ初期化した状態を生成する."""
        return cls(
            h=np.zeros((n_layers, hidden_size), dtype=float),
            c=np.zeros((n_layers, hidden_size), dtype=float),
            damage=damage,
        )

    def copy(self) -> SurrogateState:
        """深いコピーを返す."""
        return SurrogateState(h=self.h.copy(), c=self.c.copy(), damage=self.damage)


PointState = MaterialState | SurrogateState


class MaterialStateStore:
    """積分点ごとの確定状態を保持するアリーナ.

    状態は積分点番号（0 始まり）でインデックスされる。commit は入力の
    深いコピーを格納し、get は格納済みオブジェクトをそのまま返す
    （正規化なし、ビット一致）。

    ロールバックは「commit しない」ことで実現する。

    Args:
        n_points: 積分点数
        factory: 初期状態の生成関数（None = MaterialState）
    """

    def __init__(
        self,
        n_points: int,
        factory: Callable[[], PointState] | None = None,
    ) -> None:
        if n_points <= 0:
            raise ValueError(f"積分点数は正値: {n_points}")
        make = factory if factory is not None else MaterialState
        self._states: list[PointState] = [make() for _ in range(n_points)]

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[int]:
        return iter(range(len(self._states)))

    def items(self) -> Iterator[tuple[int, PointState]]:
        return iter(enumerate(self._states))

    def get(self, point_id: int) -> PointState:
        """確定済み状態を返す（呼び出し側は変更しないこと）."""
        self._check_id(point_id)
        return self._states[point_id]

    def commit(self, point_id: int, state: PointState) -> None:
        """1積分点の状態を確定する（上書き、取り消し不可）."""
        self.commit_many({point_id: state})

    def commit_many(self, states: Mapping[int, PointState]) -> None:
        """複数積分点の状態を一括で確定する.

        全エントリを検証してから書き込む。1つでも不正なら何も書き込まない。
        """
        for point_id, state in states.items():
            self._check_id(point_id)
            self._check_damage(self._states[point_id], state, point_id)
        for point_id, state in states.items():
            self._states[point_id] = state.copy()

    def _check_id(self, point_id: int) -> None:
        if not (0 <= point_id < len(self._states)):
            raise IndexError(f"積分点番号が範囲外: {point_id} (n_points={len(self._states)})")

    @staticmethod
    def _check_damage(old: PointState, new: PointState, point_id: int) -> None:
        if not (0.0 <= new.damage < 1.0):
            raise ValueError(f"損傷変数は [0, 1): point={point_id}, d={new.damage}")
        if new.damage < old.damage:
            raise ValueError(
                f"損傷変数が減少しています: point={point_id}, "
                f"d_old={old.damage}, d_new={new.damage}"
            )
