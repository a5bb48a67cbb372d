"""ひずみ制御の載荷経路.

  monotonic      : 0 → a1 → a2 → ...            （単調載荷）
  cyclic_to_zero : 0 → a1 → 0 → a2 → 0 → ...     （除荷を伴う繰返し）
  cyclic         : 0 → a1 → -a1 → a2 → -a2 → 0   （両振り繰返し）

各区間は一定ひずみ速度で、時間増分 time_step 以下に等分割する。
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

LOADING_TYPES = ("monotonic", "cyclic_to_zero", "cyclic")


@dataclass
class LoadingPath:
    """軸ひずみの載荷経路.

    Attributes:
        loading_type: 載荷形式（LOADING_TYPES のいずれか）
        amplitudes: 振幅（工学ひずみ）の列
        strain_rate: ひずみ速度 [1/s]
        time_step: 最大時間増分 [s]
    """

    loading_type: str = "monotonic"
    amplitudes: tuple[float, ...] = (0.05,)
    strain_rate: float = 1.0e-3
    time_step: float = 1.0

    def __post_init__(self) -> None:
        if self.loading_type not in LOADING_TYPES:
            raise ValueError(
                f"未知の載荷形式: {self.loading_type!r} (有効: {', '.join(LOADING_TYPES)})"
            )
        self.amplitudes = tuple(float(a) for a in self.amplitudes)
        if len(self.amplitudes) == 0:
            raise ValueError("振幅が空です")
        if any(a <= -1.0 for a in self.amplitudes):
            raise ValueError(f"振幅は -1 より大きいこと: {self.amplitudes}")
        if self.strain_rate <= 0:
            raise ValueError(f"ひずみ速度は正値: {self.strain_rate}")
        if self.time_step <= 0:
            raise ValueError(f"時間増分は正値: {self.time_step}")

    def waypoints(self) -> np.ndarray:
        """折り返し点のひずみ列（先頭は 0）."""
        points = [0.0]
        if self.loading_type == "monotonic":
            points.extend(self.amplitudes)
        elif self.loading_type == "cyclic_to_zero":
            for a in self.amplitudes:
                points.extend([a, 0.0])
        else:
            for a in self.amplitudes:
                points.extend([a, -a])
            points.append(0.0)
        return np.array(points, dtype=float)

    def discretize(self) -> tuple[np.ndarray, np.ndarray]:
        """時刻とひずみの離散列.

        Returns:
            times: (n_steps+1,) 時刻（先頭 0）
            strains: (n_steps+1,) 軸ひずみ（先頭 0）
        """
        wp = self.waypoints()
        times = [0.0]
        strains = [0.0]
        for e0, e1 in zip(wp[:-1], wp[1:]):
            duration = abs(e1 - e0) / self.strain_rate
            if duration == 0.0:
                continue
            n_sub = max(1, math.ceil(duration / self.time_step - 1e-9))
            for k in range(1, n_sub + 1):
                times.append(times[-1] + duration / n_sub)
                strains.append(e0 + (e1 - e0) * k / n_sub)
        return np.array(times, dtype=float), np.array(strains, dtype=float)

    @property
    def n_steps(self) -> int:
        return len(self.discretize()[0]) - 1
