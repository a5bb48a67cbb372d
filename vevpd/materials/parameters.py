"""材料パラメータと環境増幅係数.

エポキシ・ナノコンポジットの粘弾性-粘塑性-損傷モデルの定数表。
起動時に一度だけ構築し、全積分点で参照共有する（不変）。

環境増幅係数:
  X = (1 + 5 φ_np + 18 φ_np²) · α_Z(ζ) · α_T(T)
  φ_np: ナノ粒子体積分率 (wnp), ζ: 吸湿率 (zita), T: 温度 [K]

  α_Z, α_T はテーブル（線形補間）または閉形式:
    α_Z(ζ) = exp(-c_zita · ζ)
    α_T(T) = exp(-c_temp · (T - T_ref))
  いずれも基準状態（ζ=0, T=T_ref）で 1。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

import numpy as np

BOLTZMANN = 1.380649e-23  # [J/K]

Table = tuple[tuple[float, float], ...]


def _check_table(name: str, table: Table | None) -> None:
    if table is None:
        return
    if len(table) < 2:
        raise ValueError(f"{name} は2点以上のテーブル: {table}")
    xs = [row[0] for row in table]
    if any(b <= a for a, b in zip(xs, xs[1:])):
        raise ValueError(f"{name} の横軸は狭義単調増加: {xs}")
    if any(row[1] <= 0.0 for row in table):
        raise ValueError(f"{name} の係数は正値: {table}")


def _lookup(table: Table, x: float) -> float:
    xs = np.array([row[0] for row in table], dtype=float)
    ys = np.array([row[1] for row in table], dtype=float)
    return float(np.interp(x, xs, ys))


@dataclass(frozen=True)
class MaterialParameters:
    """粘弾性-粘塑性-損傷モデルの材料定数.

    Attributes:
        mu1: 平衡ネットワークのせん断弾性率 [MPa]
        nu1: 平衡ネットワークのポアソン比
        mu2: 粘性ネットワークのせん断弾性率 [MPa]
        gamma_dot0: 粘性流れの参照せん断ひずみ速度 γ̇₀ [1/s]
        delta_G: 活性化エネルギー ΔG [J]
        tau_hat: 参照せん断応力 τ̂ [MPa]
        m_exp: 応力指数 m
        sigma0: 粘塑性流れの閾値応力 σ₀ [MPa]
        a_vp: 粘塑性流れ係数 a
        b_vp: 粘塑性流れ指数 b
        eps0: 粘塑性流れの基準ひずみ ε₀
        C_kin: 移動硬化係数（Armstrong-Frederick）
        gamma_kin: 動的回復係数
        d_max: 損傷の飽和値（< 1）
        d_rate: 損傷発展率
        wnp: ナノ粒子体積分率 φ_np
        zita: 吸湿率 ζ
        temperature: 温度 T [K]
        T_ref: 基準温度 [K]
        c_zita: α_Z 閉形式の係数
        c_temp: α_T 閉形式の係数 [1/K]
        alpha_zita_table: α_Z テーブル ((ζ, α), ...)。None で閉形式
        alpha_temp_table: α_T テーブル ((T, α), ...)。None で閉形式
    """

    mu1: float = 760.0
    nu1: float = 0.23
    mu2: float = 790.0
    gamma_dot0: float = 1.0e-2
    delta_G: float = 1.0e-19
    tau_hat: float = 20.0
    m_exp: float = 1.5
    sigma0: float = 5.5
    a_vp: float = 2.0
    b_vp: float = 0.5
    eps0: float = 0.0
    C_kin: float = 0.0
    gamma_kin: float = 0.0
    d_max: float = 0.5
    d_rate: float = 5.0
    wnp: float = 0.0
    zita: float = 0.0
    temperature: float = 296.0
    T_ref: float = 296.0
    c_zita: float = 0.1
    c_temp: float = 0.005
    alpha_zita_table: Table | None = None
    alpha_temp_table: Table | None = None

    def __post_init__(self) -> None:
        if self.mu1 <= 0:
            raise ValueError(f"せん断弾性率 mu1 は正値: {self.mu1}")
        if self.mu2 < 0:
            raise ValueError(f"せん断弾性率 mu2 は非負: {self.mu2}")
        if not (-1.0 < self.nu1 < 0.5):
            raise ValueError(f"ポアソン比 nu1 は (-1, 0.5): {self.nu1}")
        if self.gamma_dot0 <= 0 or self.tau_hat <= 0 or self.m_exp <= 0:
            raise ValueError(
                f"粘性流れ定数は正値: gamma_dot0={self.gamma_dot0}, "
                f"tau_hat={self.tau_hat}, m_exp={self.m_exp}"
            )
        if self.delta_G < 0:
            raise ValueError(f"活性化エネルギー delta_G は非負: {self.delta_G}")
        if self.sigma0 <= 0:
            raise ValueError(f"閾値応力 sigma0 は正値: {self.sigma0}")
        if self.a_vp < 0 or self.b_vp < 0:
            raise ValueError(f"粘塑性流れ定数は非負: a={self.a_vp}, b={self.b_vp}")
        if not (0.0 <= self.d_max < 1.0):
            raise ValueError(f"損傷飽和値 d_max は [0, 1): {self.d_max}")
        if self.d_rate < 0:
            raise ValueError(f"損傷発展率 d_rate は非負: {self.d_rate}")
        if not (0.0 <= self.wnp < 1.0):
            raise ValueError(f"ナノ粒子体積分率 wnp は [0, 1): {self.wnp}")
        if self.zita < 0:
            raise ValueError(f"吸湿率 zita は非負: {self.zita}")
        if self.temperature <= 0 or self.T_ref <= 0:
            raise ValueError(f"温度は正値 [K]: T={self.temperature}, T_ref={self.T_ref}")
        _check_table("alpha_zita_table", self.alpha_zita_table)
        _check_table("alpha_temp_table", self.alpha_temp_table)

    # ------------------------------------------------------------------
    # 弾性定数
    # ------------------------------------------------------------------

    @property
    def K1(self) -> float:
        """平衡ネットワークの体積弾性率."""
        return 2.0 * self.mu1 * (1.0 + self.nu1) / (3.0 * (1.0 - 2.0 * self.nu1))

    @property
    def activation_ratio(self) -> float:
        """ΔG / (k_B T)."""
        return self.delta_G / (BOLTZMANN * self.temperature)

    # ------------------------------------------------------------------
    # 環境増幅係数
    # ------------------------------------------------------------------

    def alpha_zita(self, zita: float | None = None) -> float:
        """吸湿による係数 α_Z(ζ)."""
        z = self.zita if zita is None else zita
        if self.alpha_zita_table is not None:
            return _lookup(self.alpha_zita_table, z)
        return math.exp(-self.c_zita * z)

    def alpha_temp(self, temperature: float | None = None) -> float:
        """温度による係数 α_T(T)."""
        T = self.temperature if temperature is None else temperature
        if self.alpha_temp_table is not None:
            return _lookup(self.alpha_temp_table, T)
        return math.exp(-self.c_temp * (T - self.T_ref))

    def amplification(self) -> float:
        """剛性増幅係数 X = (1 + 5φ + 18φ²) α_Z α_T."""
        phi = self.wnp
        return (1.0 + 5.0 * phi + 18.0 * phi**2) * self.alpha_zita() * self.alpha_temp()

    def with_updates(self, **changes) -> MaterialParameters:
        """一部の定数を置き換えた新しいパラメータを返す."""
        return replace(self, **changes)
