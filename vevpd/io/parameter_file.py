"""deal.II ParameterHandler 形式のパラメータファイル読み込み.

書式:
  # コメント
  subsection Loading
    set Loading type = cyclic_to_zero
    set Amplitudes   = 0.02, 0.04
  end

対応セクション:
  - Loading:          載荷形式・振幅・ひずみ速度・時間増分
  - Material:         材料定数（MaterialParameters のフィールド名）
  - Environment:      wnp, zita, temperature
  - Machine learning: ML 有効化・切替タイムステップ・重みファイル・隠れ層幅・引き継ぎ方式
  - Discretization:   多項式次数・積分次数
  - Solver:           局所・全体反復の設定
  - Output:           出力ディレクトリ

キーは大文字小文字・連続空白を区別しない。未知のセクション・キーは
ValueError とする（入力ミスの黙認を避ける）。

テーブル値（alpha zita table 等）は "x:y, x:y, ..." で与える。
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import fields
from pathlib import Path
from typing import Any

from vevpd.config import MLSettings, SimulationConfig, SolverSettings
from vevpd.loading import LoadingPath
from vevpd.materials.parameters import MaterialParameters

RawParameters = dict[str, dict[str, str]]


def _normalize(name: str) -> str:
    return " ".join(name.strip().lower().split())


# ---------------------------------------------------------------------------
# 値の変換
# ---------------------------------------------------------------------------


def _to_bool(text: str) -> bool:
    value = text.strip().lower()
    if value in ("true", "yes", "on", "1"):
        return True
    if value in ("false", "no", "off", "0"):
        return False
    raise ValueError(f"真偽値として解釈できません: {text!r}")


def _to_float_list(text: str) -> tuple[float, ...]:
    return tuple(float(v) for v in text.split(",") if v.strip())


def _to_table(text: str) -> tuple[tuple[float, float], ...] | None:
    if not text.strip() or text.strip().lower() == "none":
        return None
    rows = []
    for item in text.split(","):
        if ":" not in item:
            raise ValueError(f"テーブル要素は x:y 形式: {item.strip()!r}")
        x, y = item.split(":", 1)
        rows.append((float(x), float(y)))
    return tuple(rows)


def _to_str(text: str) -> str:
    return text.strip()


def _to_optional_str(text: str) -> str | None:
    return text.strip() or None


# セクション → {正規化キー: (属性名, 変換関数)}
_Converter = Callable[[str], Any]

_LOADING_KEYS: dict[str, tuple[str, _Converter]] = {
    "loading type": ("loading_type", _to_str),
    "amplitudes": ("amplitudes", _to_float_list),
    "strain rate": ("strain_rate", float),
    "time step": ("time_step", float),
}

_ENVIRONMENT_KEYS: dict[str, tuple[str, _Converter]] = {
    "wnp": ("wnp", float),
    "zita": ("zita", float),
    "temperature": ("temperature", float),
}

_ML_KEYS: dict[str, tuple[str, _Converter]] = {
    "enabled": ("enabled", _to_bool),
    "switch timestep": ("switch_timestep", int),
    "weights file": ("weights_file", _to_optional_str),
    "hidden size": ("hidden_size", int),
    "handoff": ("handoff", _to_str),
}

_DISCRETIZATION_KEYS: dict[str, tuple[str, _Converter]] = {
    "polynomial order": ("polynomial_order", int),
    "quadrature order": ("quadrature_order", int),
}

_SOLVER_KEYS: dict[str, tuple[str, _Converter]] = {
    "local tolerance": ("local_tol", float),
    "local max iterations": ("local_max_iter", int),
    "global tolerance": ("global_tol", float),
    "global max iterations": ("global_max_iter", int),
    "max cutbacks": ("max_cutbacks", int),
    "min time step": ("min_time_step", float),
    "finite difference step": ("fd_step", float),
    "jobs": ("n_jobs", int),
}

_OUTPUT_KEYS: dict[str, tuple[str, _Converter]] = {
    "directory": ("output_directory", _to_str),
}


def _material_keys() -> dict[str, tuple[str, _Converter]]:
    keys: dict[str, tuple[str, _Converter]] = {}
    for f in fields(MaterialParameters):
        if f.name in _ENVIRONMENT_KEYS:
            continue
        conv: _Converter = _to_table if f.name.endswith("_table") else float
        keys[_normalize(f.name.replace("_", " "))] = (f.name, conv)
        keys[_normalize(f.name)] = (f.name, conv)
    return keys


_SECTIONS = (
    "loading",
    "material",
    "environment",
    "machine learning",
    "discretization",
    "solver",
    "output",
)


# ---------------------------------------------------------------------------
# 読み込み
# ---------------------------------------------------------------------------


def parse_parameter_text(text: str) -> RawParameters:
    """パラメータ文字列を {セクション: {キー: 値文字列}} にパースする.

    Raises:
        ValueError: 書式不正（対応しない end, 閉じていない subsection,
            セクション外の set, 重複キー）
    """
    raw: RawParameters = {}
    stack: list[str] = []

    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        head = line.split(None, 1)
        keyword = head[0].lower()

        if keyword == "subsection":
            if len(head) < 2:
                raise ValueError(f"{lineno} 行目: subsection 名がありません")
            stack.append(_normalize(head[1]))
            raw.setdefault(" / ".join(stack), {})
        elif keyword == "end":
            if not stack:
                raise ValueError(f"{lineno} 行目: 対応する subsection のない end")
            stack.pop()
        elif keyword == "set":
            if len(head) < 2 or "=" not in head[1]:
                raise ValueError(f"{lineno} 行目: set 行は 'set キー = 値': {line!r}")
            if not stack:
                raise ValueError(f"{lineno} 行目: subsection の外の set: {line!r}")
            key, value = head[1].split("=", 1)
            section = raw[" / ".join(stack)]
            key = _normalize(key)
            if key in section:
                raise ValueError(f"{lineno} 行目: キーが重複しています: {key!r}")
            section[key] = value.strip()
        else:
            raise ValueError(f"{lineno} 行目: 解釈できない行: {line!r}")

    if stack:
        raise ValueError(f"subsection が閉じられていません: {stack[-1]!r}")
    return raw


def read_parameter_file(filepath: str | Path) -> SimulationConfig:
    """パラメータファイルを読み込み SimulationConfig を構築する.

    validate() は呼ばない（呼び出し側で起動時に実行する）。
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"ファイルが見つかりません: {filepath}")
    text = filepath.read_text(encoding="utf-8")
    return build_config(parse_parameter_text(text))


def _convert(
    section: str,
    values: dict[str, str],
    table: dict[str, tuple[str, _Converter]],
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, text in values.items():
        if key not in table:
            raise ValueError(f"未知のパラメータ: [{section}] {key!r}")
        attr, conv = table[key]
        try:
            out[attr] = conv(text)
        except ValueError as e:
            raise ValueError(f"[{section}] {key!r} の値が不正: {text!r} ({e})") from e
    return out


def build_config(raw: RawParameters) -> SimulationConfig:
    """パース結果から SimulationConfig を構築する.

    Raises:
        ValueError: 未知のセクション・キー、値の変換失敗、各データクラスの検査違反
    """
    for section in raw:
        if section not in _SECTIONS:
            raise ValueError(f"未知のセクション: {section!r}")

    loading = _convert("Loading", raw.get("loading", {}), _LOADING_KEYS)
    material = _convert("Material", raw.get("material", {}), _material_keys())
    material.update(_convert("Environment", raw.get("environment", {}), _ENVIRONMENT_KEYS))
    ml = _convert("Machine learning", raw.get("machine learning", {}), _ML_KEYS)
    discretization = _convert(
        "Discretization", raw.get("discretization", {}), _DISCRETIZATION_KEYS
    )
    solver = _convert("Solver", raw.get("solver", {}), _SOLVER_KEYS)
    output = _convert("Output", raw.get("output", {}), _OUTPUT_KEYS)

    return SimulationConfig(
        loading=LoadingPath(**loading),
        material=MaterialParameters(**material),
        ml=MLSettings(**ml),
        solver=SolverSettings(**solver),
        **discretization,
        **output,
    )
