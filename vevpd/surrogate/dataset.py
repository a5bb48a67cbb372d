"""LSTM サロゲート用データセット生成.

ランダムな載荷経路と環境条件で物理モデルの単軸応力解析を行い、
確定増分ごとの (特徴量, 有効応力) 系列に変換する。

問題設定:
- 載荷形式: monotonic / cyclic_to_zero / cyclic からランダム選択
- 変数: 振幅・サイクル数・ひずみ速度・φ_np・ζ・T
- 出力: 有効応力 σ̃ = σ / (1 - d) の Voigt 成分（損傷は引き継ぎ側で乗じる）
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from vevpd.config import SolverSettings
from vevpd.driver import SimulationResult, run_uniaxial
from vevpd.loading import LOADING_TYPES, LoadingPath
from vevpd.materials.parameters import MaterialParameters
from vevpd.materials.tensor_ops import stress_to_voigt
from vevpd.materials.viscoplastic_damage import PhysicsEvaluator
from vevpd.mode_switch import ModeSwitchController
from vevpd.surrogate.evaluator import surrogate_features


@dataclass
class SurrogateDatasetConfig:
    """学習系列の生成範囲."""

    amplitude_min: float = 0.005  # 振幅下限（工学ひずみ）
    amplitude_max: float = 0.05  # 振幅上限
    n_cycles_max: int = 3  # 振幅の個数の上限
    strain_rate_min: float = 1e-4  # [1/s]
    strain_rate_max: float = 1e-2  # [1/s]
    steps_per_segment: int = 10  # 最大振幅区間あたりのステップ数
    wnp_max: float = 0.05  # φ_np 上限
    zita_max: float = 2.0  # ζ 上限
    temperature_min: float = 276.0  # [K]
    temperature_max: float = 316.0  # [K]


def random_loading(config: SurrogateDatasetConfig, rng: np.random.Generator) -> LoadingPath:
    """ランダム載荷経路."""
    loading_type = LOADING_TYPES[int(rng.integers(len(LOADING_TYPES)))]
    n_amp = int(rng.integers(1, config.n_cycles_max + 1))
    amplitudes = np.sort(rng.uniform(config.amplitude_min, config.amplitude_max, n_amp))
    rate = float(
        np.exp(rng.uniform(np.log(config.strain_rate_min), np.log(config.strain_rate_max)))
    )
    time_step = float(amplitudes[-1]) / rate / config.steps_per_segment
    return LoadingPath(
        loading_type=loading_type,
        amplitudes=tuple(float(a) for a in amplitudes),
        strain_rate=rate,
        time_step=time_step,
    )


def random_environment(
    base: MaterialParameters,
    config: SurrogateDatasetConfig,
    rng: np.random.Generator,
) -> MaterialParameters:
    """φ_np, ζ, T をランダムに置き換えたパラメータ."""
    return base.with_updates(
        wnp=float(rng.uniform(0.0, config.wnp_max)),
        zita=float(rng.uniform(0.0, config.zita_max)),
        temperature=float(rng.uniform(config.temperature_min, config.temperature_max)),
    )


def result_to_sequence(sim: SimulationResult, params: MaterialParameters) -> dict:
    """解析結果を学習系列に変換する.

    Returns:
        {"x": (T, 10) 特徴量, "y": (T, 6) 有効応力}
    """
    x = []
    y = []
    for k in range(1, len(sim.time)):
        dt = sim.time[k] - sim.time[k - 1]
        x.append(surrogate_features(sim.deformation[k], dt, params))
        y.append(stress_to_voigt(sim.stress[k]) / (1.0 - sim.damage[k]))
    return {"x": np.array(x, dtype=float), "y": np.array(y, dtype=float)}


def generate_sample(
    base: MaterialParameters,
    config: SurrogateDatasetConfig,
    rng: np.random.Generator,
) -> dict | None:
    """1系列を生成する（解析が打ち切られた場合は None）."""
    params = random_environment(base, config, rng)
    loading = random_loading(config, rng)
    controller = ModeSwitchController(PhysicsEvaluator(), params)
    sim = run_uniaxial(
        params,
        loading,
        controller,
        settings=SolverSettings(),
        show_progress=False,
    )
    if not sim.converged:
        return None
    return result_to_sequence(sim, params)


def generate_dataset(
    base: MaterialParameters,
    config: SurrogateDatasetConfig,
    n_samples: int,
    seed: int = 42,
) -> list[dict]:
    """データセット生成.

    Args:
        base: 基準材料パラメータ（環境条件はランダムに置換）
        config: 生成範囲
        n_samples: 系列数
        seed: 乱数シード

    Returns:
        list of {"x": (T, 10), "y": (T, 6)}

    Raises:
        RuntimeError: 解析の打ち切りが続き n_samples 系列を得られない
    """
    rng = np.random.default_rng(seed)
    dataset = []
    attempts = 0
    while len(dataset) < n_samples:
        attempts += 1
        if attempts > 10 * n_samples:
            raise RuntimeError(
                f"有効な系列が不足: {len(dataset)}/{n_samples} ({attempts - 1} 回試行)"
            )
        sample = generate_sample(base, config, rng)
        if sample is not None:
            dataset.append(sample)
    return dataset
