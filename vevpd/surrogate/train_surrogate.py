"""LSTM サロゲートモデルの学習・評価.

使い方:
    python -m vevpd.surrogate.train_surrogate [重みファイル]

データセット: 物理モデルの単軸応力解析 200 系列 (train 160 / val 20 / test 20)
LSTM: hidden_size=32, 2層, 可変長系列をパディング + マスク付き MSE で学習
"""

from __future__ import annotations

import sys
import time

import numpy as np
import torch
import torch.nn as nn
from torch.nn.utils.rnn import pad_sequence

from vevpd.materials.parameters import MaterialParameters
from vevpd.surrogate.dataset import SurrogateDatasetConfig, generate_dataset
from vevpd.surrogate.network import LSTMSurrogate, save_surrogate


def _batch(model: LSTMSurrogate, samples: list[dict]) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """可変長系列をパディングして正規化済みバッチにする."""
    xs = [torch.as_tensor(s["x"], dtype=torch.float64) for s in samples]
    ys = [torch.as_tensor(s["y"], dtype=torch.float64) for s in samples]
    x = model.normalize_input(pad_sequence(xs, batch_first=True))
    y = model.normalize_output(pad_sequence(ys, batch_first=True))
    mask = pad_sequence(
        [torch.ones(len(s["x"]), dtype=torch.float64) for s in samples], batch_first=True
    ).unsqueeze(-1)
    return x, y, mask


def _masked_mse(pred: torch.Tensor, target: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
    return torch.sum(mask * (pred - target) ** 2) / (torch.sum(mask) * pred.shape[-1])


def train_model(
    model: LSTMSurrogate,
    train_data: list[dict],
    val_data: list[dict],
    *,
    epochs: int = 200,
    lr: float = 1e-3,
    weight_decay: float = 0.0,
    batch_size: int = 16,
    grad_clip: float = 1.0,
    seed: int = 0,
    verbose: bool = True,
) -> dict:
    """LSTM サロゲートの学習（パディング + マスク付き MSE）.

    スケーリング係数は学習データの min/range から設定する。

    Args:
        model: LSTMSurrogate モデル
        train_data: 学習系列リスト {"x": (T, 10), "y": (T, 6)}
        val_data: 検証系列リスト
        epochs: エポック数
        lr: 学習率
        weight_decay: L2正則化
        batch_size: ミニバッチサイズ
        grad_clip: 勾配クリッピングの閾値（0以下で無効）
        seed: シャッフル用乱数シード
        verbose: 進捗表示

    Returns:
        history: {"train_loss": [...], "val_loss": [...]}
    """
    model.set_scaling(
        np.concatenate([s["x"] for s in train_data]),
        np.concatenate([s["y"] for s in train_data]),
    )
    rng = np.random.default_rng(seed)
    optimizer = torch.optim.Adam(model.parameters(), lr=lr, weight_decay=weight_decay)
    scheduler = torch.optim.lr_scheduler.ReduceLROnPlateau(
        optimizer, patience=20, factor=0.5, min_lr=1e-6
    )

    history: dict[str, list] = {"train_loss": [], "val_loss": []}

    for epoch in range(epochs):
        # --- Train ---
        model.train()
        order = rng.permutation(len(train_data))
        total_loss = 0.0
        n_batches = 0
        for start in range(0, len(order), batch_size):
            x, y, mask = _batch(model, [train_data[i] for i in order[start : start + batch_size]])
            optimizer.zero_grad()
            pred, _ = model(x)
            loss = _masked_mse(pred, y, mask)
            loss.backward()
            if grad_clip > 0:
                nn.utils.clip_grad_norm_(model.parameters(), grad_clip)
            optimizer.step()
            total_loss += loss.item()
            n_batches += 1
        train_loss = total_loss / max(n_batches, 1)
        history["train_loss"].append(train_loss)

        # --- Validate ---
        model.eval()
        val_loss = 0.0
        if val_data:
            with torch.no_grad():
                x, y, mask = _batch(model, val_data)
                pred, _ = model(x)
                val_loss = _masked_mse(pred, y, mask).item()
        history["val_loss"].append(val_loss)

        scheduler.step(val_loss if val_data else train_loss)

        if verbose and (epoch + 1) % 20 == 0:
            current_lr = optimizer.param_groups[0]["lr"]
            print(
                f"Epoch {epoch + 1:4d} | "
                f"Train MSE: {train_loss:.6f} | "
                f"Val MSE: {val_loss:.6f} | "
                f"LR: {current_lr:.2e}"
            )

    model.eval()
    return history


def evaluate_model(model: LSTMSurrogate, test_data: list[dict]) -> dict:
    """モデルの評価指標を計算（物理量の有効応力で比較）.

    Returns:
        dict with keys:
            "mse": 平均二乗誤差 [MPa²]
            "mae": 平均絶対誤差 [MPa]
            "r2": 決定係数
            "max_error": 最大誤差 [MPa]
    """
    model.eval()
    all_pred = []
    all_true = []
    with torch.no_grad():
        for sample in test_data:
            x = model.normalize_input(torch.as_tensor(sample["x"], dtype=torch.float64).unsqueeze(0))
            pred, _ = model(x)
            all_pred.append(model.denormalize_output(pred[0]).numpy())
            all_true.append(sample["y"])

    pred = np.concatenate(all_pred)
    true = np.concatenate(all_true)

    mse = np.mean((pred - true) ** 2)
    mae = np.mean(np.abs(pred - true))
    ss_res = np.sum((pred - true) ** 2)
    ss_tot = np.sum((true - true.mean(axis=0)) ** 2)
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0
    max_err = np.max(np.abs(pred - true))

    return {
        "mse": float(mse),
        "mae": float(mae),
        "r2": float(r2),
        "max_error": float(max_err),
    }


def main(argv: list[str] | None = None):
    argv = sys.argv[1:] if argv is None else argv
    weights_path = argv[0] if argv else "surrogate_weights.pt"

    print("=" * 60)
    print("LSTM サロゲートモデル — 粘弾性-粘塑性-損傷 単軸応力")
    print("=" * 60)

    params = MaterialParameters()
    config = SurrogateDatasetConfig()

    # --- データセット生成 ---
    n_total = 200
    n_train = 160
    n_val = 20

    print(f"\nデータセット生成中 ({n_total} 系列)...")
    t0 = time.time()
    data = generate_dataset(params, config, n_samples=n_total, seed=42)
    print(f"  完了: {time.time() - t0:.1f} 秒")
    lengths = [len(s["x"]) for s in data]
    print(f"  系列長: {min(lengths)} - {max(lengths)} (平均 {np.mean(lengths):.1f})")

    train_data = data[:n_train]
    val_data = data[n_train : n_train + n_val]
    test_data = data[n_train + n_val :]
    print(f"  Train: {len(train_data)}, Val: {len(val_data)}, Test: {len(test_data)}")

    # --- モデル ---
    hidden_size = 32
    model = LSTMSurrogate(hidden_size=hidden_size)
    n_params = sum(p.numel() for p in model.parameters())
    print(f"\nモデル: LSTMSurrogate (hidden={hidden_size}, layers={model.n_layers})")
    print(f"  パラメータ数: {n_params:,}")

    # --- 学習 ---
    n_epochs = 300
    print(f"\n学習開始 (epochs={n_epochs}, batch_size=16)...")
    t0 = time.time()
    history = train_model(model, train_data, val_data, epochs=n_epochs, verbose=True)
    print(f"学習完了: {time.time() - t0:.1f} 秒")

    # --- 評価 ---
    print("\n" + "=" * 60)
    print("テストセット評価")
    print("=" * 60)
    metrics = evaluate_model(model, test_data)
    print(f"  MSE:      {metrics['mse']:.6f}")
    print(f"  MAE:      {metrics['mae']:.6f} MPa")
    print(f"  R2:       {metrics['r2']:.6f}")
    print(f"  最大誤差: {metrics['max_error']:.6f} MPa")

    path = save_surrogate(model, weights_path)
    print(f"\n重みファイル: {path}")
    return metrics, history


if __name__ == "__main__":
    main()
