"""全体 Newton-Raphson ドライバーと積分点アダプター.

QuadraturePointAdapter は全体ソルバー（外部の FE ライブラリ、または本
モジュールの材料点ドライバー）に次の口だけを公開する:

  begin_timestep(index, dt)      — 評価器の選択（モード切替）と試行状態の初期化
  evaluate(point_id, F)          — (応力, 接線) を返す。状態候補は保留
  accept_step()                  — 全体収束後、保留中の全候補を一括確定
  reject_step()                  — 保留中の全候補を破棄（増分縮小して再試行）

run_uniaxial() は一様な単軸応力状態の材料点ドライバー:
  F = diag(λ₁, λ_l, λ_l),  λ₁ は載荷経路で与え、σ₂₂ = 0 となる λ_l を
  Newton 法で求める（接線 ∂σ₂₂/∂λ_l = C₂₂₂₂ + C₂₂₃₃）。
  局所・全体反復の失敗時は時間増分を半減して再試行し、max_cutbacks
  または min_time_step を超えたら converged=False で打ち切る。
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, NamedTuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from vevpd.config import SolverSettings
from vevpd.core.results import ConstitutiveResult, LocalSolveInfo, TrialState
from vevpd.core.state import MaterialStateStore
from vevpd.loading import LoadingPath
from vevpd.materials.parameters import MaterialParameters
from vevpd.materials.tangent import with_tangent
from vevpd.mode_switch import Mode, ModeSwitchController

# ---------------------------------------------------------------------------
# アダプター
# ---------------------------------------------------------------------------


class QuadraturePointAdapter:
    """積分点ごとの構成則評価と状態確定の窓口.

    Args:
        store: 確定状態のアリーナ
        controller: モード切替コントローラ
        params: 材料パラメータ
        n_jobs: evaluate_many の並列スレッド数

    Attributes:
        history: 積分点ごとの受理済み (F, dt)。ML 有効かつ物理モードの間だけ
            記録し、ML への引き継ぎ後に解放する（replay 引き継ぎ用）
    """

    def __init__(
        self,
        store: MaterialStateStore,
        controller: ModeSwitchController,
        params: MaterialParameters,
        *,
        n_jobs: int = 1,
    ) -> None:
        self.store = store
        self.controller = controller
        self.params = params
        self.n_jobs = n_jobs
        self.history: list[list[tuple[np.ndarray, float]]] = [[] for _ in range(len(store))]
        self._pending: dict[int, tuple[np.ndarray, ConstitutiveResult]] = {}
        self._accepted: set[int] = set()
        self._failures: dict[int, LocalSolveInfo] = {}
        self._evaluator = None
        self._tangent = None
        self._timestep = -1
        self._dt = 0.0

    @property
    def mode(self) -> Mode:
        return self.controller.mode

    @property
    def failures(self) -> dict[int, LocalSolveInfo]:
        """現在の試行で局所反復に失敗した積分点."""
        return dict(self._failures)

    def begin_timestep(self, timestep: int, dt: float) -> None:
        """タイムステップ（または縮小後の部分増分）の開始."""
        if dt <= 0:
            raise ValueError(f"時間増分 dt は正値: {dt}")
        self._pending.clear()
        self._accepted.clear()
        self._failures.clear()
        self._evaluator, self._tangent = self.controller.select(timestep, self.store, self.history)
        if self.controller.mode is Mode.ML:
            # 引き継ぎ後は不要
            for h in self.history:
                h.clear()
        self._timestep = timestep
        self._dt = dt

    def evaluate(self, point_id: int, F: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """試行変形勾配から (Cauchy 応力, 接線 ∂σ/∂F) を返す.

        局所反復の失敗は failures に記録され、応力・接線はゼロになる。
        """
        result = self.evaluate_point(point_id, F)
        return result.stress, result.tangent

    def evaluate_point(self, point_id: int, F: np.ndarray) -> ConstitutiveResult:
        result = self._compute(point_id, F)
        self._record(point_id, F, result)
        return result

    def evaluate_many(self, Fs: Sequence[np.ndarray]) -> list[ConstitutiveResult]:
        """全積分点（0..n-1）をまとめて評価する.

        n_jobs > 1 のときスレッドプールで並列評価する。各積分点は確定状態と
        読み取り専用のパラメータ・重みのみを参照する。
        """
        if len(Fs) != len(self.store):
            raise ValueError(f"変形勾配の数が積分点数と不一致: {len(Fs)} != {len(self.store)}")
        ids = range(len(Fs))
        if self.n_jobs > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                results = list(pool.map(self._compute, ids, Fs))
        else:
            results = [self._compute(p, F) for p, F in zip(ids, Fs)]
        for p, F, result in zip(ids, Fs, results):
            self._record(p, F, result)
        return results

    def accept_step(self, point_id: int | None = None) -> None:
        """保留中の状態候補を確定する.

        Args:
            point_id: 確定する積分点（None でこのステップ未確定の全積分点を一括確定）

        Raises:
            RuntimeError: 失敗した積分点、または未評価の積分点がある
        """
        if point_id is None:
            ids = [p for p in range(len(self.store)) if p not in self._accepted]
        else:
            ids = [point_id]
        missing = [p for p in ids if p not in self._pending]
        if self._failures or missing:
            raise RuntimeError(
                f"確定できません: 失敗={sorted(self._failures)}, 未評価={missing}"
            )
        self.store.commit_many({p: self._pending[p][1].state_new for p in ids})
        record = self.controller.ml_enabled and self.controller.mode is Mode.PHYSICS
        for p in ids:
            F, _ = self._pending.pop(p)
            self._accepted.add(p)
            if record:
                self.history[p].append((F, self._dt))

    def reject_step(self) -> None:
        """保留中の全状態候補を破棄する（確定済みの積分点は変更しない）."""
        self._pending.clear()
        self._failures.clear()

    def _compute(self, point_id: int, F: np.ndarray) -> ConstitutiveResult:
        if self._evaluator is None:
            raise RuntimeError("begin_timestep() の前に evaluate() が呼ばれました")
        trial = TrialState(
            F=np.array(F, dtype=float),
            dt=self._dt,
            state_n=self.store.get(point_id),
            params=self.params,
        )
        return with_tangent(self._evaluator, self._tangent, trial)

    def _record(self, point_id: int, F: np.ndarray, result: ConstitutiveResult) -> None:
        if result.converged:
            self._pending[point_id] = (np.array(F, dtype=float), result)
            self._failures.pop(point_id, None)
        else:
            self._failures[point_id] = result.info
            self._pending.pop(point_id, None)


# ---------------------------------------------------------------------------
# 単軸応力ドライバー
# ---------------------------------------------------------------------------


class _IncrementOutcome(NamedTuple):
    converged: bool
    iterations: int
    lateral: np.ndarray
    residual: float
    results: list[ConstitutiveResult]
    reason: str | None = None
    failing_point: int | None = None


@dataclass
class SimulationResult:
    """材料点解析の結果.

    履歴は確定した増分ごと（部分増分を含む）に記録する。先頭は初期状態。

    Attributes:
        converged: 全ステップが完了したか
        n_steps: 完了したタイムステップ数
        total_iterations: 全体 Newton 反復の合計
        n_cutbacks: 時間増分縮小の合計回数
        time: 時刻
        timestep: タイムステップ番号（初期状態は -1）
        axial_strain: 軸ひずみ（工学ひずみ）
        stress: (3,3) 積分点平均の Cauchy 応力
        damage: 積分点平均の損傷
        mode: 評価モード（"physics" / "ml"）
        iterations: 増分ごとの全体 Newton 反復回数
        deformation: 積分点 0 の変形勾配
        diagnostics: 打ち切り時の診断情報
    """

    converged: bool
    n_steps: int = 0
    total_iterations: int = 0
    n_cutbacks: int = 0
    time: list[float] = field(default_factory=list)
    timestep: list[int] = field(default_factory=list)
    axial_strain: list[float] = field(default_factory=list)
    stress: list[np.ndarray] = field(default_factory=list)
    damage: list[float] = field(default_factory=list)
    mode: list[str] = field(default_factory=list)
    iterations: list[int] = field(default_factory=list)
    deformation: list[np.ndarray] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)

    def _append(
        self,
        t: float,
        timestep: int,
        strain: float,
        stress: np.ndarray,
        damage: float,
        mode: str,
        iterations: int,
        F: np.ndarray,
    ) -> None:
        self.time.append(t)
        self.timestep.append(timestep)
        self.axial_strain.append(strain)
        self.stress.append(stress)
        self.damage.append(damage)
        self.mode.append(mode)
        self.iterations.append(iterations)
        self.deformation.append(F)


def _uniaxial_F(lam1: float, lam_l: float) -> np.ndarray:
    return np.diag([lam1, lam_l, lam_l])


def _solve_increment(
    adapter: QuadraturePointAdapter,
    timestep: int,
    dt: float,
    lam1: float,
    lateral: np.ndarray,
    settings: SolverSettings,
) -> _IncrementOutcome:
    """1増分の横ストレッチを Newton 法で求める（全積分点を連立）."""
    adapter.begin_timestep(timestep, dt)
    lam_l = lateral.copy()
    res_norm = math.inf
    results: list[ConstitutiveResult] = []

    for it in range(1, settings.global_max_iter + 1):
        results = adapter.evaluate_many([_uniaxial_F(lam1, l) for l in lam_l])
        failed = [p for p, r in enumerate(results) if not r.converged]
        if failed:
            return _IncrementOutcome(
                False, it, lam_l, math.inf, results,
                reason=results[failed[0]].info.failure, failing_point=failed[0],
            )

        residual = np.array([r.stress[1, 1] for r in results])
        scale = max(1.0, max(abs(r.stress[0, 0]) for r in results))
        res_norm = float(np.max(np.abs(residual)))
        if res_norm <= settings.global_tol * scale:
            return _IncrementOutcome(True, it, lam_l, res_norm, results)

        K = sp.diags([r.tangent[1, 1, 1, 1] + r.tangent[1, 1, 2, 2] for r in results]).tocsc()
        dl = spla.spsolve(K, -residual)
        dl = np.atleast_1d(dl)
        if not np.all(np.isfinite(dl)):
            return _IncrementOutcome(False, it, lam_l, res_norm, results, reason="singular")
        lam_l = lam_l + dl
        if np.any(lam_l <= 0.0):
            return _IncrementOutcome(False, it, lam_l, res_norm, results, reason="domain")

    return _IncrementOutcome(
        False, settings.global_max_iter, lam_l, res_norm, results, reason="max_iter"
    )


def run_uniaxial(
    params: MaterialParameters,
    loading: LoadingPath,
    controller: ModeSwitchController,
    *,
    n_points: int = 1,
    settings: SolverSettings | None = None,
    show_progress: bool = True,
) -> SimulationResult:
    """一様単軸応力の材料点解析.

    タイムステップ番号は 0 始まり（ステップ k は時刻 t_k → t_{k+1}）。
    部分増分は同じタイムステップ番号を共有する。
    controller は開始時に reset() する（同じコントローラで再実行できる）。

    Args:
        params: 材料パラメータ
        loading: 載荷経路
        controller: モード切替コントローラ
        n_points: 積分点数（全点に同じ一様変形を与える）
        settings: ソルバー設定
        show_progress: 進捗表示

    Returns:
        SimulationResult
    """
    if settings is None:
        settings = SolverSettings()
    times, strains = loading.discretize()
    n_steps = len(times) - 1

    controller.reset()
    store = MaterialStateStore(n_points)
    adapter = QuadraturePointAdapter(store, controller, params, n_jobs=settings.n_jobs)
    lateral = np.ones(n_points, dtype=float)

    result = SimulationResult(converged=True)
    result._append(0.0, -1, 0.0, np.zeros((3, 3)), 0.0, controller.mode.value, 0, np.eye(3))

    for step in range(n_steps):
        t_start, t_end = float(times[step]), float(times[step + 1])
        e_start, e_end = float(strains[step]), float(strains[step + 1])
        t_cur = t_start
        dt_try = t_end - t_start
        cutbacks = 0

        while t_end - t_cur > 1e-12 * max(1.0, t_end):
            dt = min(dt_try, t_end - t_cur)
            e_next = e_start + (e_end - e_start) * (t_cur + dt - t_start) / (t_end - t_start)
            outcome = _solve_increment(adapter, step, dt, 1.0 + e_next, lateral, settings)
            result.total_iterations += outcome.iterations

            if outcome.converged:
                adapter.accept_step()
                lateral = outcome.lateral
                t_cur += dt
                stresses = np.array([r.stress for r in outcome.results])
                damage = float(np.mean([store.get(p).damage for p in store]))
                result._append(
                    t_cur,
                    step,
                    e_next,
                    stresses.mean(axis=0),
                    damage,
                    adapter.mode.value,
                    outcome.iterations,
                    _uniaxial_F(1.0 + e_next, float(lateral[0])),
                )
                continue

            adapter.reject_step()
            cutbacks += 1
            result.n_cutbacks += 1
            dt_try = 0.5 * dt
            if show_progress:
                print(
                    f"  Step {step + 1}/{n_steps}: 収束せず ({outcome.reason})。"
                    f"dt を {dt_try:.4e} に縮小 (cutback {cutbacks})"
                )
            if cutbacks > settings.max_cutbacks or dt_try < settings.min_time_step:
                if show_progress:
                    print(f"  Step {step + 1}/{n_steps}: 最小増分に到達。解析を中断。")
                result.converged = False
                result.n_steps = step
                result.diagnostics = {
                    "step": step,
                    "time": t_cur,
                    "dt": dt,
                    "residual": outcome.residual,
                    "reason": outcome.reason,
                    "failing_point": outcome.failing_point,
                    "cutbacks": cutbacks,
                }
                return result

        result.n_steps = step + 1
        if show_progress:
            s11 = result.stress[-1][0, 0]
            print(
                f"  Step {step + 1}/{n_steps}, t = {t_end:.4e}, ε = {e_end:.4e}, "
                f"σ11 = {s11:.4e}, d = {result.damage[-1]:.4f}, mode = {adapter.mode.value}"
            )

    return result
