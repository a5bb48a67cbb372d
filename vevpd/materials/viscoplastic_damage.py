"""粘弾性-粘塑性-損傷構成則（物理分岐の局所ソルバー）.

変形勾配の乗算分解:
  F = F_e · F_v^{-1} · F_vp^{-1}
  F_ve = F · F_vp  （平衡ネットワーク）,  F_e = F_ve · F_v  （粘性ネットワーク）

平衡ネットワーク（neo-Hookean）:
  σ_eq = μ₁/J dev(b̄_ve) + K₁(J - 1) I,  b̄_ve = J^{-2/3} F_ve F_ve^T

粘性ネットワーク（Hencky, Bergström-Boyce 型）:
  ε_e = ½ ln(F_e F_e^T),  τ_v = 2μ₂ dev ε_e,  σ_v = τ_v / J
  γ̇_v = γ̇₀ exp[(ΔG/k_B T)((τ/τ̂)^m - 1)],  τ = ||τ_v|| / √2
  後退 Euler + radial return:  τ = τ_trial - μ₂ Δγ_v

粘塑性流れ（active set）:
  試行相当応力 q = sqrt(3/2) ||dev(σ̃_trial) - β|| > σ₀ のときのみ
  Δγ_p = a |ε - ε₀|^b |ε - ε_n|   （ε: 相当 Green-Lagrange ひずみ）
  F_ve ← exp(-sqrt(3/2) Δγ_p n_p) F F_vp,n   （n_p: 試行流れ方向）

移動硬化（Armstrong-Frederick）:
  β ← (β + sqrt(2/3) C Δγ_p n_p) / (1 + γ_kin Δγ_p)

損傷:
  d = max(d_n, d_max (1 - exp(-d_rate ε̄_p))),  σ = (1 - d)(σ_eq + σ_v)

内部反復は未知量 x = [Δγ_v, Δγ_p] に対する Newton 法。粘性流れ則の
残差は対数形 ln Δγ_v - ln(Δt γ̇_v(τ)) で評価する（指数則のオーバーフロー
回避）。Jacobian は torch.autograd で計算し、Δγ_v は括弧 [lo, hi] で
保護する（Newton 更新が括弧外なら幾何平均で二分）。

剛性定数 μ₁, K₁, μ₂ は環境増幅係数 X で事前にスケールする。

参考文献:
  - Bergström & Boyce (1998) JMPS 46, 931-954.
  - Simo (1992) CMAME 99, 61-112.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from typing import NamedTuple

import numpy as np
import torch
from torch.autograd.functional import jacobian

from vevpd.core.results import (
    ConstitutiveResult,
    FlowRegime,
    LocalSolveInfo,
    TrialState,
    ViscousRegime,
    failed_result,
)
from vevpd.core.state import MaterialState
from vevpd.materials.parameters import MaterialParameters
from vevpd.materials.tensor_ops import (
    as_tensor,
    dev,
    equivalent_strain,
    expm,
    eye3,
    logm_spd,
    safe_norm,
)

_SQRT2 = math.sqrt(2.0)
_SQRT23 = math.sqrt(2.0 / 3.0)
_SQRT32 = math.sqrt(1.5)

# これ未満の ||dev ε_trial|| では粘性流れを解かない
_DEV_FLOOR = 1e-14

# 括弧の下端が 0 のときの縮小率
_BRACKET_SHRINK = 1e-2


# ---------------------------------------------------------------------------
# 中間量
# ---------------------------------------------------------------------------


class _StepContext(NamedTuple):
    """1回の評価で固定される量（前ステップ状態と増幅済み定数）."""

    F_v_n: torch.Tensor
    F_vp_n: torch.Tensor
    beta_n: torch.Tensor
    eps_p_n: float
    damage_n: float
    strain_eq_n: float
    dt: float
    mu1: float
    K1: float
    mu2: float
    params: MaterialParameters


class _Predictor(NamedTuple):
    """粘塑性の試行量（x に依存しない）."""

    q_trial: torch.Tensor
    direction: torch.Tensor
    flow: torch.Tensor
    strain_eq: torch.Tensor


class _Update(NamedTuple):
    """x を与えたときの更新量."""

    stress: torch.Tensor
    F_e: torch.Tensor
    F_v: torch.Tensor
    F_vp: torch.Tensor
    backstress: torch.Tensor
    eps_p_acc: torch.Tensor
    damage: torch.Tensor
    tau: torch.Tensor
    upper: torch.Tensor


# ---------------------------------------------------------------------------
# ネットワーク応力
# ---------------------------------------------------------------------------


def _equilibrium_stress(F_ve: torch.Tensor, mu1: float, K1: float) -> torch.Tensor:
    """neo-Hookean 平衡ネットワークの Cauchy 応力."""
    J = torch.linalg.det(F_ve)
    b_bar = J ** (-2.0 / 3.0) * (F_ve @ F_ve.T)
    return mu1 / J * dev(b_bar) + K1 * (J - 1.0) * eye3()


def _viscous_trial(F_e_tr: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """試行 Hencky ひずみの偏差成分とそのノルム."""
    eps_tr = 0.5 * logm_spd(F_e_tr @ F_e_tr.T)
    d = dev(eps_tr)
    return d, safe_norm(d)


# ---------------------------------------------------------------------------
# 評価器
# ---------------------------------------------------------------------------


class PhysicsEvaluator:
    """粘弾性-粘塑性-損傷モデルの局所ソルバー（MaterialEvaluatorProtocol 適合）.

    Args:
        tol: 流れ則残差ノルムの収束判定値
        max_iter: 内部 Newton 反復の上限
    """

    name = "physics"

    def __init__(self, tol: float = 1e-10, max_iter: int = 50) -> None:
        if tol <= 0:
            raise ValueError(f"収束判定値 tol は正値: {tol}")
        if max_iter < 1:
            raise ValueError(f"最大反復回数 max_iter は 1 以上: {max_iter}")
        self.tol = tol
        self.max_iter = max_iter
        self.n_calls = 0
        self._calls_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 公開 API
    # ------------------------------------------------------------------

    def evaluate(self, trial: TrialState) -> ConstitutiveResult:
        """応力と状態候補を計算する.

        入力 state は変更しない。局所反復の失敗（"max_iter"）と数値領域
        外（"domain"：det F <= 0, オーバーフロー, NaN）は例外ではなく
        converged=False の結果として返す。
        """
        with self._calls_lock:
            self.n_calls += 1
        state_n = trial.state_n
        if not isinstance(state_n, MaterialState):
            raise TypeError(f"物理分岐には MaterialState が必要: {type(state_n).__name__}")
        if trial.dt < 0:
            raise ValueError(f"時間増分 dt は非負: {trial.dt}")

        params = trial.params
        X = params.amplification()
        F_np = np.asarray(trial.F, dtype=float)
        if not np.all(np.isfinite(F_np)) or np.linalg.det(F_np) <= 0.0:
            return failed_result(
                LocalSolveInfo(0, math.inf, FlowRegime.ELASTIC, X, failure="domain")
            )

        ctx = self._context(trial, X)
        F = as_tensor(F_np)

        # --- 粘塑性 active set（内部反復中は固定）---
        pred = self._predict(F, ctx)
        q_trial = float(pred.q_trial)
        if not math.isfinite(q_trial):
            return failed_result(
                LocalSolveInfo(0, math.inf, FlowRegime.ELASTIC, X, failure="domain")
            )
        regime = FlowRegime.PLASTIC if q_trial > params.sigma0 else FlowRegime.ELASTIC
        x_p = float(pred.flow) if regime is FlowRegime.PLASTIC else 0.0

        # --- 粘性ネットワークの状態判定 ---
        probe = self._update(F, _unknowns(0.0, x_p), ctx, regime, ViscousRegime.INACTIVE, pred)
        upper = float(probe.upper)
        log_rate_trial = float(self._log_rate(probe.tau, ctx))
        if not (math.isfinite(upper) and math.isfinite(x_p)) or math.isnan(log_rate_trial):
            return failed_result(LocalSolveInfo(0, math.inf, regime, X, failure="domain"))

        if ctx.dt == 0.0 or upper < _SQRT2 * _DEV_FLOOR:
            viscous = ViscousRegime.INACTIVE
            x_v = 0.0
        elif math.log(upper) <= float(self._log_rate(torch.zeros((), dtype=F.dtype), ctx)):
            viscous = ViscousRegime.RELAXED
            x_v = upper
        else:
            viscous = ViscousRegime.FLOWING
            # Δt γ̇(τ_trial) 以上の点では残差 >= 0（τ = 0 の端点は避ける）
            x_v = math.exp(min(math.log(upper) + math.log1p(-1e-6), log_rate_trial))

        x = _unknowns(x_v, x_p)
        iterations = 0
        if viscous is ViscousRegime.FLOWING:
            solved = self._solve_flow(F, x, ctx, regime, pred, upper)
            if isinstance(solved, str):
                return failed_result(
                    LocalSolveInfo(0, math.inf, regime, X, failure=solved, viscous=viscous)
                )
            x, iterations, res_norm = solved
            if res_norm > self.tol:
                return failed_result(
                    LocalSolveInfo(iterations, res_norm, regime, X, failure="max_iter", viscous=viscous)
                )
        else:
            res_norm = 0.0

        up = self._update(F, x, ctx, regime, viscous, pred)
        stress = up.stress.detach().numpy().copy()
        if not np.all(np.isfinite(stress)):
            return failed_result(
                LocalSolveInfo(iterations, res_norm, regime, X, failure="domain", viscous=viscous)
            )

        state_new = MaterialState(
            F_e=up.F_e.detach().numpy().copy(),
            F_v=up.F_v.detach().numpy().copy(),
            F_vp=up.F_vp.detach().numpy().copy(),
            damage=float(up.damage),
            backstress=up.backstress.detach().numpy().copy(),
            eps_p_acc=float(up.eps_p_acc),
            strain_eq=float(pred.strain_eq),
        )
        x_v_final = upper if viscous is ViscousRegime.RELAXED else float(x[0])
        info = LocalSolveInfo(
            iterations=iterations,
            residual_norm=res_norm,
            regime=regime,
            amplification=X,
            viscous=viscous,
            flow_increments=(x_v_final, float(x[1])),
        )
        return ConstitutiveResult(
            stress=stress, tangent=None, state_new=state_new, converged=True, info=info
        )

    def linearized_stress(
        self, trial: TrialState, result: ConstitutiveResult
    ) -> Callable[[torch.Tensor], torch.Tensor]:
        """収束解まわりで F について微分可能な応力関数を返す.

        内部変数は陰関数定理による1回の Newton 補正
          x̃(F) = x* - J*^{-1} R(x*, F)
        で F に接続する（J* は固定）。x̃(F*) = x* かつ dx̃/dF は後退 Euler
        更新の陰的微分に一致するため、σ(F, x̃(F)) の自動微分が
        consistent tangent となる。
        """
        info = result.info
        regime = info.regime
        viscous = info.viscous
        ctx = self._context(trial, info.amplification)
        x_star = _unknowns(*info.flow_increments)

        J_star = None
        if viscous is ViscousRegime.FLOWING:
            F_star = as_tensor(trial.F)
            pred_star = self._predict(F_star, ctx)
            J_star = jacobian(
                lambda y: self._residual(F_star, y, ctx, regime, pred_star), x_star
            )

        def stress_of(F: torch.Tensor) -> torch.Tensor:
            pred = self._predict(F, ctx)
            if J_star is not None:
                R = self._residual(F, x_star, ctx, regime, pred)
                x = x_star - torch.linalg.solve(J_star, R)
            elif regime is FlowRegime.PLASTIC:
                x = torch.stack([x_star[0], pred.flow])
            else:
                x = x_star
            return self._update(F, x, ctx, regime, viscous, pred).stress

        return stress_of

    # ------------------------------------------------------------------
    # 内部反復
    # ------------------------------------------------------------------

    def _solve_flow(
        self,
        F: torch.Tensor,
        x: torch.Tensor,
        ctx: _StepContext,
        regime: FlowRegime,
        pred: _Predictor,
        upper: float,
    ) -> tuple[torch.Tensor, int, float] | str:
        """流れ則の Newton 反復（括弧付き）.

        Returns:
            (x, 反復回数, 残差ノルム)。数値領域外なら "domain"。
        """
        R = self._residual(F, x, ctx, regime, pred)
        if not bool(torch.all(torch.isfinite(R))):
            return "domain"
        if float(R[0]) < 0.0:
            lo, hi = float(x[0]), upper
        else:
            lo, hi = 0.0, float(x[0])
        res_norm = float(torch.linalg.norm(R))

        iterations = 0
        while res_norm > self.tol and iterations < self.max_iter:
            iterations += 1
            J = jacobian(lambda y: self._residual(F, y, ctx, regime, pred), x)
            if not bool(torch.all(torch.isfinite(J))):
                return "domain"
            dx = torch.linalg.solve(J, -R)

            x_v = float(x[0] + dx[0])
            if not (lo < x_v < hi):
                x_v = math.sqrt(lo * hi) if lo > 0.0 else _BRACKET_SHRINK * hi
            x = _unknowns(x_v, float(x[1] + dx[1]))

            R = self._residual(F, x, ctx, regime, pred)
            if not bool(torch.all(torch.isfinite(R))):
                return "domain"
            if float(R[0]) < 0.0:
                lo = x_v
            else:
                hi = x_v
            res_norm = float(torch.linalg.norm(R))

        return x, iterations, res_norm

    def _residual(
        self,
        F: torch.Tensor,
        x: torch.Tensor,
        ctx: _StepContext,
        regime: FlowRegime,
        pred: _Predictor,
    ) -> torch.Tensor:
        """流れ則残差 R = [ln Δγ_v - ln(Δt γ̇_v(τ)), Δγ_p - Δγ_p^flow]."""
        up = self._update(F, x, ctx, regime, ViscousRegime.FLOWING, pred)
        r_v = torch.log(x[0]) - self._log_rate(up.tau, ctx)
        if regime is FlowRegime.PLASTIC:
            r_p = x[1] - pred.flow
        else:
            r_p = x[1]
        return torch.stack([r_v, r_p])

    @staticmethod
    def _log_rate(tau: torch.Tensor, ctx: _StepContext) -> torch.Tensor:
        """ln(Δt γ̇_v(τ))."""
        p = ctx.params
        ratio = torch.clamp(tau, min=0.0) / p.tau_hat
        return (
            math.log(max(ctx.dt, 1e-300))
            + math.log(p.gamma_dot0)
            + p.activation_ratio * (ratio**p.m_exp - 1.0)
        )

    # ------------------------------------------------------------------
    # 運動学・応力更新
    # ------------------------------------------------------------------

    @staticmethod
    def _context(trial: TrialState, X: float) -> _StepContext:
        state_n = trial.state_n
        p = trial.params
        return _StepContext(
            F_v_n=as_tensor(state_n.F_v),
            F_vp_n=as_tensor(state_n.F_vp),
            beta_n=as_tensor(state_n.backstress),
            eps_p_n=float(state_n.eps_p_acc),
            damage_n=float(state_n.damage),
            strain_eq_n=float(state_n.strain_eq),
            dt=float(trial.dt),
            mu1=X * p.mu1,
            K1=X * p.K1,
            mu2=X * p.mu2,
            params=p,
        )

    @staticmethod
    def _predict(F: torch.Tensor, ctx: _StepContext) -> _Predictor:
        """粘塑性の試行状態（Δγ_v = Δγ_p = 0 の応力）と流れ量."""
        p = ctx.params
        F_ve = F @ ctx.F_vp_n
        J = torch.linalg.det(F)
        d, _ = _viscous_trial(F_ve @ ctx.F_v_n)
        sigma = _equilibrium_stress(F_ve, ctx.mu1, ctx.K1) + 2.0 * ctx.mu2 * d / J

        xi = dev(sigma) - ctx.beta_n
        xi_norm = safe_norm(xi)
        eps = equivalent_strain(F)
        base = torch.clamp(torch.abs(eps - p.eps0), min=1e-300)
        flow = p.a_vp * base**p.b_vp * torch.abs(eps - ctx.strain_eq_n)
        return _Predictor(
            q_trial=_SQRT32 * xi_norm,
            direction=xi / xi_norm,
            flow=flow,
            strain_eq=eps,
        )

    @staticmethod
    def _update(
        F: torch.Tensor,
        x: torch.Tensor,
        ctx: _StepContext,
        regime: FlowRegime,
        viscous: ViscousRegime,
        pred: _Predictor,
    ) -> _Update:
        """x = [Δγ_v, Δγ_p] から状態と応力を構成する.

        RELAXED では Δγ_v を上限 sqrt(2)||dev ε_trial|| に置き換える。
        INACTIVE では Δγ_v を使わない。
        """
        p = ctx.params
        x_p = x[1]

        # --- 粘塑性（平衡ネットワーク）---
        if regime is FlowRegime.PLASTIC:
            n_p = pred.direction
            F_ve = expm(-_SQRT32 * x_p * n_p) @ F @ ctx.F_vp_n
            beta = (ctx.beta_n + _SQRT23 * p.C_kin * x_p * n_p) / (1.0 + p.gamma_kin * x_p)
        else:
            F_ve = F @ ctx.F_vp_n
            beta = ctx.beta_n
        F_vp = torch.linalg.solve(F, F_ve)
        J = torch.linalg.det(F)

        # --- 粘性ネットワーク（radial return）---
        F_e_tr = F_ve @ ctx.F_v_n
        d, nrm = _viscous_trial(F_e_tr)
        upper = _SQRT2 * nrm
        if viscous is ViscousRegime.INACTIVE:
            F_e = F_e_tr
            dev_e = d
            tau = ctx.mu2 * upper
        else:
            x_v = upper if viscous is ViscousRegime.RELAXED else x[0]
            n_hat = d / nrm
            a = x_v / _SQRT2
            F_e = expm(-a * n_hat) @ F_e_tr
            dev_e = d - a * n_hat
            tau = ctx.mu2 * (upper - x_v)
        F_v = torch.linalg.solve(F_ve, F_e)

        # --- 損傷 ---
        eps_p = ctx.eps_p_n + x_p
        damage = torch.clamp(p.d_max * (1.0 - torch.exp(-p.d_rate * eps_p)), min=ctx.damage_n)

        sigma = _equilibrium_stress(F_ve, ctx.mu1, ctx.K1) + 2.0 * ctx.mu2 * dev_e / J
        return _Update(
            stress=(1.0 - damage) * sigma,
            F_e=F_e,
            F_v=F_v,
            F_vp=F_vp,
            backstress=beta,
            eps_p_acc=eps_p,
            damage=damage,
            tau=tau,
            upper=upper,
        )


def _unknowns(x_v: float, x_p: float) -> torch.Tensor:
    return torch.tensor([x_v, x_p], dtype=torch.float64)
