"""CSV エクスポート.

材料点解析（SimulationResult）の時刻歴を CSV 形式で書き出す。
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import TYPE_CHECKING

from vevpd.materials.tensor_ops import stress_to_voigt

if TYPE_CHECKING:
    from vevpd.driver import SimulationResult

HISTORY_HEADER = [
    "time",
    "timestep",
    "axial_strain",
    "s11",
    "s22",
    "s33",
    "s23",
    "s13",
    "s12",
    "damage",
    "mode",
    "iterations",
]


def export_history_csv(
    result: SimulationResult,
    output_dir: str | Path,
    filename: str = "history.csv",
) -> Path:
    """確定増分ごとの時刻歴を CSV ファイルに書き出す.

    列: time, timestep, axial_strain, 応力 6 成分 (Voigt), damage, mode, iterations

    Args:
        result: 解析結果
        output_dir: 出力ディレクトリ
        filename: ファイル名

    Returns:
        生成されたファイルパス
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    filepath = out / filename

    with open(filepath, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(HISTORY_HEADER)
        for i in range(len(result.time)):
            s = stress_to_voigt(result.stress[i])
            writer.writerow(
                [
                    f"{result.time[i]:.10e}",
                    result.timestep[i],
                    f"{result.axial_strain[i]:.10e}",
                    *(f"{v:.10e}" for v in s),
                    f"{result.damage[i]:.10e}",
                    result.mode[i],
                    result.iterations[i],
                ]
            )

    return filepath
