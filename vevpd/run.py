"""パラメータファイルから材料点解析を実行するエントリポイント.

Usage:
    python -m vevpd.run params.prm

設定の不正（ValueError / FileNotFoundError）は解析開始前に報告する。
解析が最小増分で打ち切られた場合は終了コード 1 を返す。
"""

from __future__ import annotations

import sys

from vevpd.config import SimulationConfig
from vevpd.driver import SimulationResult, run_uniaxial
from vevpd.io.parameter_file import read_parameter_file
from vevpd.materials.viscoplastic_damage import PhysicsEvaluator
from vevpd.mode_switch import ModeSwitchController
from vevpd.output.export_csv import export_history_csv
from vevpd.surrogate.evaluator import SurrogateEvaluator
from vevpd.surrogate.network import load_surrogate


def build_controller(config: SimulationConfig) -> ModeSwitchController:
    """設定から評価器とモード切替コントローラを構築する（重みは一度だけ読む）."""
    physics = PhysicsEvaluator(
        tol=config.solver.local_tol,
        max_iter=config.solver.local_max_iter,
    )
    surrogate = None
    if config.ml.enabled:
        model = load_surrogate(config.ml.weights_file, hidden_size=config.ml.hidden_size)
        surrogate = SurrogateEvaluator(model)
    return ModeSwitchController(
        physics,
        config.material,
        surrogate,
        switch_timestep=config.ml.switch_timestep,
        handoff=config.ml.handoff,
        fd_step=config.solver.fd_step,
    )


def run_simulation(config: SimulationConfig, *, show_progress: bool = True) -> SimulationResult:
    """設定を検査して解析を実行し、時刻歴 CSV を書き出す."""
    config.validate()
    controller = build_controller(config)
    if show_progress:
        mat = config.material
        print("=" * 60)
        print("粘弾性-粘塑性-損傷 材料点解析（単軸応力）")
        print("=" * 60)
        print(f"  載荷: {config.loading.loading_type}, 振幅 {config.loading.amplitudes}")
        print(f"  材料: mu1={mat.mu1}, mu2={mat.mu2}, nu1={mat.nu1}, sigma0={mat.sigma0}")
        print(f"  環境: wnp={mat.wnp}, zita={mat.zita}, T={mat.temperature} K")
        print(f"  増幅係数 X = {mat.amplification():.6f}")
        print(f"  積分点数: {config.n_quadrature_points}")
        if config.ml.enabled:
            print(f"  ML: 切替ステップ {config.ml.switch_timestep}, 引き継ぎ {config.ml.handoff}")

    result = run_uniaxial(
        config.material,
        config.loading,
        controller,
        n_points=config.n_quadrature_points,
        settings=config.solver,
        show_progress=show_progress,
    )
    path = export_history_csv(result, config.output_directory)
    if show_progress:
        status = "完了" if result.converged else "中断"
        print(f"\n解析{status}: {result.n_steps} ステップ, Newton 反復 {result.total_iterations}")
        print(f"時刻歴: {path}")
    return result


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("Usage: python -m vevpd.run params.prm")
        return 2
    config = read_parameter_file(argv[0])
    result = run_simulation(config)
    if not result.converged:
        print(f"診断情報: {result.diagnostics}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
