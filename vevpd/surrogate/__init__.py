"""vevpd.surrogate - LSTM サロゲート（ML 分岐）のモデル・評価器・学習."""
