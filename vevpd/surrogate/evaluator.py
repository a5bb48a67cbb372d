"""LSTM サロゲートによる局所構成則評価（ML 分岐）.

内部反復なし。確定済み (h, c) から1回の順伝播で応力と状態候補を得る。
サロゲートは有効応力 σ̃ を予測し、引き継いだ損傷 d で σ = (1 - d) σ̃ とする。
"""

from __future__ import annotations

import math
import threading

import numpy as np

from vevpd.core.results import (
    ConstitutiveResult,
    FlowRegime,
    LocalSolveInfo,
    TrialState,
    failed_result,
)
from vevpd.core.state import SurrogateState
from vevpd.materials.parameters import MaterialParameters
from vevpd.surrogate.network import LSTMSurrogate


def surrogate_features(F: np.ndarray, dt: float, params: MaterialParameters) -> np.ndarray:
    """1ステップ分の入力特徴量.

    [E_xx, E_yy, E_zz, 2E_yz, 2E_xz, 2E_xy, dt, φ_np, ζ, T]
    """
    F = np.asarray(F, dtype=float)
    E = 0.5 * (F.T @ F - np.eye(3))
    return np.array(
        [
            E[0, 0],
            E[1, 1],
            E[2, 2],
            2.0 * E[1, 2],
            2.0 * E[0, 2],
            2.0 * E[0, 1],
            dt,
            params.wnp,
            params.zita,
            params.temperature,
        ],
        dtype=float,
    )


def voigt_to_matrix(s: np.ndarray) -> np.ndarray:
    """(6,) Voigt 応力 → (3,3)."""
    return np.array(
        [
            [s[0], s[5], s[4]],
            [s[5], s[1], s[3]],
            [s[4], s[3], s[2]],
        ],
        dtype=float,
    )


class SurrogateEvaluator:
    """LSTM サロゲート評価器（MaterialEvaluatorProtocol 適合）.

    モデルは読み取り専用で全積分点に共有される。

    Args:
        model: 学習済み LSTMSurrogate（評価モード）
    """

    name = "ml"

    def __init__(self, model: LSTMSurrogate) -> None:
        self.model = model
        self.n_calls = 0
        self._calls_lock = threading.Lock()

    def evaluate(self, trial: TrialState) -> ConstitutiveResult:
        with self._calls_lock:
            self.n_calls += 1
        state_n = trial.state_n
        if not isinstance(state_n, SurrogateState):
            raise TypeError(f"ML 分岐には SurrogateState が必要: {type(state_n).__name__}")

        X = trial.params.amplification()
        F = np.asarray(trial.F, dtype=float)
        if not np.all(np.isfinite(F)) or np.linalg.det(F) <= 0.0:
            return failed_result(
                LocalSolveInfo(0, math.inf, FlowRegime.SURROGATE, X, failure="domain")
            )

        feats = surrogate_features(F, trial.dt, trial.params)
        stress_v, h, c = self.model.step(feats, state_n.h, state_n.c)
        if not (np.all(np.isfinite(stress_v)) and np.all(np.isfinite(h)) and np.all(np.isfinite(c))):
            return failed_result(
                LocalSolveInfo(0, math.inf, FlowRegime.SURROGATE, X, failure="domain")
            )

        stress = (1.0 - state_n.damage) * voigt_to_matrix(stress_v)
        return ConstitutiveResult(
            stress=stress,
            tangent=None,
            state_new=SurrogateState(h=h, c=c, damage=state_n.damage),
            converged=True,
            info=LocalSolveInfo(0, 0.0, FlowRegime.SURROGATE, X),
        )
