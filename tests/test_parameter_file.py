"""パラメータファイル読み込みと起動時検査のテスト.

テスト方針:
  1. subsection / set / end 形式のパース（コメント、大文字小文字）
  2. 各セクションから SimulationConfig への変換
  3. 書式不正・未知のキー・重複キーは ValueError
  4. ML 有効時の検査
     重みファイルなし → FileNotFoundError、切替ステップ <= 0 → ValueError
"""

from __future__ import annotations

import pytest

from vevpd.config import MLSettings, SimulationConfig, SolverSettings
from vevpd.io.parameter_file import build_config, parse_parameter_text, read_parameter_file
from vevpd.surrogate.network import LSTMSurrogate, save_surrogate

SAMPLE = """
# 材料点解析
subsection Loading
  set Loading type = cyclic_to_zero
  set Amplitudes   = 0.02, 0.04
  set Strain rate  = 1e-3
  set Time step    = 2.0
end

subsection Material
  set mu1    = 800     # MPa
  set sigma0 = 6.0
  set Alpha zita table = 0:1.0, 2:0.8
end

subsection Environment
  set wnp         = 0.05
  set Temperature = 300
end

subsection Machine learning
  set Enabled         = false
  set Switch timestep = 10
  set Handoff         = zero
end

subsection Discretization
  set Polynomial order = 2
  set Quadrature order = 3
end

subsection Solver
  set Local tolerance = 1e-11
  set Max cutbacks    = 4
  set Jobs            = 2
end

subsection Output
  set Directory = results
end
"""


class TestParse:
    """書式のパース."""

    def test_sections_and_keys(self):
        raw = parse_parameter_text(SAMPLE)
        assert raw["loading"]["loading type"] == "cyclic_to_zero"
        assert raw["material"]["mu1"] == "800"
        assert raw["machine learning"]["switch timestep"] == "10"

    def test_keys_case_and_space_insensitive(self):
        raw = parse_parameter_text("subsection  LOADING\n set   Strain    Rate = 1\nend\n")
        assert raw == {"loading": {"strain rate": "1"}}

    @pytest.mark.parametrize(
        "text",
        [
            "set mu1 = 1\n",  # セクション外
            "subsection Material\n set mu1 1\nend\n",  # '=' なし
            "subsection Material\n set mu1 = 1\n",  # 閉じていない
            "end\n",  # 対応なし
            "subsection Material\n set mu1 = 1\n set MU1 = 2\nend\n",  # 重複
            "subsection Material\n mu1 = 1\nend\n",  # 不明な行
        ],
    )
    def test_syntax_errors(self, text):
        with pytest.raises(ValueError):
            parse_parameter_text(text)


class TestBuildConfig:
    """SimulationConfig への変換."""

    def test_full_sample(self):
        config = build_config(parse_parameter_text(SAMPLE))
        assert isinstance(config, SimulationConfig)
        assert config.loading.loading_type == "cyclic_to_zero"
        assert config.loading.amplitudes == (0.02, 0.04)
        assert config.loading.time_step == 2.0
        assert config.material.mu1 == 800.0
        assert config.material.sigma0 == 6.0
        assert config.material.alpha_zita_table == ((0.0, 1.0), (2.0, 0.8))
        assert config.material.wnp == 0.05
        assert config.material.temperature == 300.0
        assert config.ml.enabled is False
        assert config.ml.switch_timestep == 10
        assert config.ml.handoff == "zero"
        assert config.polynomial_order == 2
        assert config.n_quadrature_points == 27
        assert config.solver.local_tol == 1e-11
        assert config.solver.max_cutbacks == 4
        assert config.solver.n_jobs == 2
        assert config.output_directory == "results"

    def test_defaults_when_empty(self):
        config = build_config({})
        assert config.loading.loading_type == "monotonic"
        assert config.ml.enabled is False
        assert config.solver == SolverSettings()

    def test_material_key_with_underscores(self):
        raw = parse_parameter_text("subsection Material\n set gamma_dot0 = 0.1\nend")
        config = build_config(raw)
        assert config.material.gamma_dot0 == 0.1

    @pytest.mark.parametrize(
        "text",
        [
            "subsection Material\n set youngs modulus = 1\nend\n",
            "subsection Material\n set wnp = 0.1\nend\n",  # 環境変数は Environment に書く
            "subsection Mesh\n set size = 1\nend\n",
            "subsection Loading\n set Amplitudes = a, b\nend\n",
            "subsection Machine learning\n set Enabled = maybe\nend\n",
            "subsection Material\n set alpha temp table = 300\nend\n",
            "subsection Material\n set mu1 = -1\nend\n",
        ],
    )
    def test_invalid_values(self, text):
        with pytest.raises(ValueError):
            build_config(parse_parameter_text(text))

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_parameter_file(tmp_path / "none.prm")

    def test_read_file(self, tmp_path):
        path = tmp_path / "params.prm"
        path.write_text(SAMPLE, encoding="utf-8")
        config = read_parameter_file(path)
        assert config.loading.amplitudes == (0.02, 0.04)


class TestValidate:
    """起動時検査."""

    def test_default_config_valid(self):
        SimulationConfig().validate()

    def test_ml_missing_weights(self, tmp_path):
        config = SimulationConfig(
            ml=MLSettings(enabled=True, switch_timestep=5, weights_file=str(tmp_path / "w.pt"))
        )
        with pytest.raises(FileNotFoundError):
            config.validate()

    def test_ml_weights_unset(self):
        config = SimulationConfig(ml=MLSettings(enabled=True, switch_timestep=5))
        with pytest.raises(FileNotFoundError):
            config.validate()

    @pytest.mark.parametrize("switch", [0, -3])
    def test_ml_switch_not_positive(self, tmp_path, switch):
        path = save_surrogate(LSTMSurrogate(hidden_size=4), tmp_path / "w.pt")
        ml = MLSettings(
            enabled=True, switch_timestep=switch, weights_file=str(path), hidden_size=4
        )
        config = SimulationConfig(ml=ml)
        with pytest.raises(ValueError):
            config.validate()

    def test_ml_valid(self, tmp_path):
        path = save_surrogate(LSTMSurrogate(hidden_size=4), tmp_path / "w.pt")
        config = SimulationConfig(
            ml=MLSettings(enabled=True, switch_timestep=3, weights_file=str(path), hidden_size=4)
        )
        config.validate()

    def test_unknown_handoff(self):
        config = SimulationConfig(ml=MLSettings(handoff="warm"))
        with pytest.raises(ValueError):
            config.validate()

    def test_invalid_orders(self):
        with pytest.raises(ValueError):
            SimulationConfig(polynomial_order=0).validate()
        with pytest.raises(ValueError):
            SimulationConfig(quadrature_order=0).validate()

    @pytest.mark.parametrize(
        "kwargs",
        [{"local_tol": 0.0}, {"global_max_iter": 0}, {"max_cutbacks": -1}, {"n_jobs": 0}],
    )
    def test_invalid_solver_settings(self, kwargs):
        with pytest.raises(ValueError):
            SolverSettings(**kwargs)
