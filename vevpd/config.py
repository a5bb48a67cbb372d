"""解析設定: ソルバー設定・ML 設定・全体設定のデータクラス.

設定の不正は解析開始前に ValueError / FileNotFoundError で報告する。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from vevpd.loading import LoadingPath
from vevpd.materials.parameters import MaterialParameters

HANDOFF_STRATEGIES = ("replay", "zero")

Handoff = Literal["replay", "zero"]


@dataclass
class SolverSettings:
    """局所・全体 Newton 反復の設定.

    Attributes:
        local_tol: 流れ則残差の収束判定値
        local_max_iter: 局所反復の上限
        global_tol: 全体残差の相対収束判定値（基準 max(1, |σ_11|)）
        global_max_iter: 全体 Newton 反復の上限
        max_cutbacks: 1ステップあたりの最大時間増分縮小回数
        min_time_step: 時間増分の下限 [s]
        fd_step: ML 分岐の差分接線の摂動幅
        n_jobs: 積分点評価の並列数（1 = 逐次）
    """

    local_tol: float = 1e-10
    local_max_iter: int = 50
    global_tol: float = 1e-8
    global_max_iter: int = 25
    max_cutbacks: int = 8
    min_time_step: float = 1e-8
    fd_step: float = 1e-6
    n_jobs: int = 1

    def __post_init__(self) -> None:
        if self.local_tol <= 0 or self.global_tol <= 0:
            raise ValueError(
                f"収束判定値は正値: local_tol={self.local_tol}, global_tol={self.global_tol}"
            )
        if self.local_max_iter < 1 or self.global_max_iter < 1:
            raise ValueError(
                f"最大反復回数は 1 以上: local={self.local_max_iter}, global={self.global_max_iter}"
            )
        if self.max_cutbacks < 0:
            raise ValueError(f"max_cutbacks は非負: {self.max_cutbacks}")
        if self.min_time_step <= 0:
            raise ValueError(f"min_time_step は正値: {self.min_time_step}")
        if self.fd_step <= 0:
            raise ValueError(f"fd_step は正値: {self.fd_step}")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs は 1 以上: {self.n_jobs}")


@dataclass
class MLSettings:
    """LSTM サロゲートの設定.

    Attributes:
        enabled: ML 分岐を使うか
        switch_timestep: 物理 → ML 切替のタイムステップ番号
        weights_file: 重みファイル
        hidden_size: LSTM の隠れ層幅
        handoff: 切替時の状態引き継ぎ方式（"replay" / "zero"）
    """

    enabled: bool = False
    switch_timestep: int = 0
    weights_file: str | None = None
    hidden_size: int = 32
    handoff: Handoff = "replay"


@dataclass
class SimulationConfig:
    """解析全体の設定（パラメータファイルの解決結果）."""

    loading: LoadingPath = field(default_factory=LoadingPath)
    material: MaterialParameters = field(default_factory=MaterialParameters)
    ml: MLSettings = field(default_factory=MLSettings)
    solver: SolverSettings = field(default_factory=SolverSettings)
    polynomial_order: int = 1
    quadrature_order: int = 2
    output_directory: str = "output"

    @property
    def n_quadrature_points(self) -> int:
        """1要素（六面体）あたりの積分点数."""
        return self.quadrature_order**3

    def validate(self) -> None:
        """起動時検査（解析ステップ実行前に呼ぶ）.

        Raises:
            ValueError: 不正な設定値
            FileNotFoundError: ML 有効時に重みファイルが存在しない
        """
        if self.polynomial_order < 1:
            raise ValueError(f"多項式次数は 1 以上: {self.polynomial_order}")
        if self.quadrature_order < 1:
            raise ValueError(f"積分次数は 1 以上: {self.quadrature_order}")
        if self.ml.handoff not in HANDOFF_STRATEGIES:
            raise ValueError(
                f"未知の引き継ぎ方式: {self.ml.handoff!r} (有効: {', '.join(HANDOFF_STRATEGIES)})"
            )
        if not self.ml.enabled:
            return
        if self.ml.switch_timestep <= 0:
            raise ValueError(f"ML 有効時の切替タイムステップは正値: {self.ml.switch_timestep}")
        if self.ml.hidden_size <= 0:
            raise ValueError(f"hidden_size は正値: {self.ml.hidden_size}")
        if not self.ml.weights_file:
            raise FileNotFoundError("ML 有効時は重みファイルの指定が必要です")
        if not Path(self.ml.weights_file).is_file():
            raise FileNotFoundError(f"重みファイルが見つかりません: {self.ml.weights_file}")
