"""LSTM サロゲートモデル — 積分点ごとの応力履歴予測.

アーキテクチャ:
  入力: 特徴量 (Green-Lagrange ひずみ Voigt 6 + dt + φ_np + ζ + T)
  → min/range スケーリングで [-1, 1] に正規化
  → 2層 LSTM (hidden_size) → 線形ヘッド → Voigt 有効応力 (6)
  → 逆スケーリング

スケーリング係数はバッファとして state_dict に含める（重みファイルに保存）。
積分点の履歴は LSTM の (h, c) で表現し、1ステップ1回の順伝播で更新する。

重みファイル形式（torch.save）:
  {"n_features": int, "hidden_size": int, "n_layers": int, "state_dict": dict}
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import torch
import torch.nn as nn

N_FEATURES = 10
N_OUTPUTS = 6

_CHECKPOINT_KEYS = ("n_features", "hidden_size", "state_dict")


class LSTMSurrogate(nn.Module):
    """2層 LSTM サロゲート.

    Args:
        n_features: 入力特徴量の次元
        hidden_size: LSTM の隠れ状態の次元 H
        n_layers: LSTM の層数
    """

    def __init__(
        self,
        n_features: int = N_FEATURES,
        hidden_size: int = 32,
        n_layers: int = 2,
    ):
        super().__init__()
        if hidden_size <= 0:
            raise ValueError(f"hidden_size は正値: {hidden_size}")
        self.n_features = n_features
        self.hidden_size = hidden_size
        self.n_layers = n_layers
        self.lstm = nn.LSTM(n_features, hidden_size, num_layers=n_layers, batch_first=True)
        self.head = nn.Linear(hidden_size, N_OUTPUTS)

        self.register_buffer("x_offset", torch.zeros(n_features))
        self.register_buffer("x_scale", torch.ones(n_features))
        self.register_buffer("y_offset", torch.zeros(N_OUTPUTS))
        self.register_buffer("y_scale", torch.ones(N_OUTPUTS))
        self.double()

    # ------------------------------------------------------------------
    # スケーリング
    # ------------------------------------------------------------------

    def set_scaling(self, x: np.ndarray, y: np.ndarray) -> None:
        """学習データの min/range からスケーリング係数を設定する.

        Args:
            x: (..., n_features) 入力特徴量
            y: (..., 6) 出力応力
        """
        x = np.asarray(x, dtype=float).reshape(-1, self.n_features)
        y = np.asarray(y, dtype=float).reshape(-1, N_OUTPUTS)
        for name, data in (("x", x), ("y", y)):
            lo = data.min(axis=0)
            rng = data.max(axis=0) - lo
            rng[rng < 1e-12] = 1.0
            getattr(self, f"{name}_offset").copy_(torch.as_tensor(lo))
            getattr(self, f"{name}_scale").copy_(torch.as_tensor(rng))

    def normalize_input(self, x: torch.Tensor) -> torch.Tensor:
        return (x - self.x_offset) / self.x_scale * 2.0 - 1.0

    def normalize_output(self, y: torch.Tensor) -> torch.Tensor:
        return (y - self.y_offset) / self.y_scale * 2.0 - 1.0

    def denormalize_output(self, y: torch.Tensor) -> torch.Tensor:
        return (y + 1.0) / 2.0 * self.y_scale + self.y_offset

    # ------------------------------------------------------------------
    # 順伝播
    # ------------------------------------------------------------------

    def forward(
        self,
        x: torch.Tensor,
        state: tuple[torch.Tensor, torch.Tensor] | None = None,
    ) -> tuple[torch.Tensor, tuple[torch.Tensor, torch.Tensor]]:
        """正規化空間での順伝播.

        Args:
            x: (batch, seq, n_features) 正規化済み入力
            state: (h, c) 各 (n_layers, batch, H)。None でゼロ初期化

        Returns:
            (batch, seq, 6) 正規化済み出力, 更新後 (h, c)
        """
        out, (h, c) = self.lstm(x, state)
        return self.head(out), (h, c)

    def step(
        self,
        features: np.ndarray,
        h: np.ndarray,
        c: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """1積分点の特徴量系列を物理量のまま順伝播する.

        Args:
            features: (seq, n_features) または (n_features,)
            h, c: (n_layers, H) 確定済み hidden/cell 状態

        Returns:
            (6,) 最終ステップの Voigt 有効応力, 更新後 h, c
        """
        x = torch.as_tensor(np.atleast_2d(features), dtype=torch.float64).unsqueeze(0)
        h0 = torch.as_tensor(h, dtype=torch.float64).unsqueeze(1).contiguous()
        c0 = torch.as_tensor(c, dtype=torch.float64).unsqueeze(1).contiguous()
        with torch.no_grad():
            y, (h1, c1) = self(self.normalize_input(x), (h0, c0))
            stress = self.denormalize_output(y[0, -1])
        return (
            stress.numpy().copy(),
            h1[:, 0, :].numpy().copy(),
            c1[:, 0, :].numpy().copy(),
        )


def save_surrogate(model: LSTMSurrogate, path: str | Path) -> Path:
    """重みファイルを書き出す."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(
        {
            "n_features": model.n_features,
            "hidden_size": model.hidden_size,
            "n_layers": model.n_layers,
            "state_dict": model.state_dict(),
        },
        path,
    )
    return path


def load_surrogate(path: str | Path, hidden_size: int | None = None) -> LSTMSurrogate:
    """重みファイルを読み込み、評価モードのモデルを返す.

    Args:
        path: 重みファイル
        hidden_size: 期待する隠れ層幅（None で検査しない）

    Raises:
        FileNotFoundError: ファイルが存在しない
        ValueError: 形式不正、または hidden_size 不一致
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"重みファイルが見つかりません: {path}")
    checkpoint = torch.load(path, map_location="cpu", weights_only=True)
    if not isinstance(checkpoint, dict) or any(k not in checkpoint for k in _CHECKPOINT_KEYS):
        raise ValueError(f"重みファイルの形式が不正です: {path}")
    if hidden_size is not None and checkpoint["hidden_size"] != hidden_size:
        raise ValueError(
            f"hidden_size 不一致: 設定={hidden_size}, 重みファイル={checkpoint['hidden_size']}"
        )

    model = LSTMSurrogate(
        n_features=int(checkpoint["n_features"]),
        hidden_size=int(checkpoint["hidden_size"]),
        n_layers=int(checkpoint.get("n_layers", 2)),
    )
    model.load_state_dict(checkpoint["state_dict"])
    model.eval()
    return model
