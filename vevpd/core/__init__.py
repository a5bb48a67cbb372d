"""vevpd.core - 構成則評価の抽象インタフェース定義・状態・戻り値型.

Protocol:
  MaterialEvaluatorProtocol — 試行変形勾配 → 応力・状態候補
  TangentProviderProtocol   — 評価結果 → 接線 ∂σ/∂F
"""

from vevpd.core.constitutive import MaterialEvaluatorProtocol, TangentProviderProtocol
from vevpd.core.results import (
    ConstitutiveResult,
    FlowRegime,
    LocalSolveInfo,
    TrialState,
    ViscousRegime,
    failed_result,
)
from vevpd.core.state import MaterialState, MaterialStateStore, PointState, SurrogateState

__all__ = [
    "MaterialEvaluatorProtocol",
    "TangentProviderProtocol",
    "ConstitutiveResult",
    "FlowRegime",
    "ViscousRegime",
    "LocalSolveInfo",
    "TrialState",
    "failed_result",
    "MaterialState",
    "SurrogateState",
    "PointState",
    "MaterialStateStore",
]
