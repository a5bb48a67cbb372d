"""時刻歴 CSV 出力と実行エントリポイントのテスト."""

from __future__ import annotations

import csv

import numpy as np
import pytest

from vevpd.driver import SimulationResult
from vevpd.output.export_csv import HISTORY_HEADER, export_history_csv
from vevpd.run import main


def _result() -> SimulationResult:
    result = SimulationResult(converged=True, n_steps=2)
    for k in range(3):
        stress = np.zeros((3, 3))
        stress[0, 0] = 10.0 * k
        stress[0, 1] = stress[1, 0] = 1.0 * k
        result._append(float(k), k - 1, 0.01 * k, stress, 0.1 * k, "physics", k, np.eye(3))
    return result


class TestExportHistoryCsv:
    """CSV 書き出し."""

    def test_header_and_rows(self, tmp_path):
        path = export_history_csv(_result(), tmp_path / "out")
        assert path.exists()
        with open(path, encoding="utf-8") as fh:
            rows = list(csv.reader(fh))
        assert rows[0] == HISTORY_HEADER
        assert len(rows) == 1 + 3
        last = dict(zip(HISTORY_HEADER, rows[-1]))
        assert float(last["time"]) == 2.0
        assert int(last["timestep"]) == 1
        assert float(last["s11"]) == 20.0
        assert float(last["s12"]) == 2.0
        assert float(last["s22"]) == 0.0
        assert float(last["damage"]) == pytest.approx(0.2)
        assert last["mode"] == "physics"
        assert int(last["iterations"]) == 2

    def test_custom_filename(self, tmp_path):
        path = export_history_csv(_result(), tmp_path, filename="run1.csv")
        assert path.name == "run1.csv"


PRM = """
subsection Loading
  set Loading type = monotonic
  set Amplitudes   = 0.005
  set Strain rate  = 1e-3
  set Time step    = 2.5
end
subsection Discretization
  set Quadrature order = 1
end
subsection Output
  set Directory = {out}
end
"""


class TestMain:
    """python -m vevpd.run の終了コード."""

    def test_usage(self, capsys):
        assert main([]) == 2
        assert "Usage" in capsys.readouterr().out

    def test_run_writes_history(self, tmp_path):
        prm = tmp_path / "params.prm"
        out = tmp_path / "out"
        prm.write_text(PRM.format(out=out), encoding="utf-8")
        assert main([str(prm)]) == 0
        with open(out / "history.csv", encoding="utf-8") as fh:
            rows = list(csv.reader(fh))
        assert len(rows) == 1 + 1 + 2

    def test_missing_weights_rejected_before_run(self, tmp_path):
        prm = tmp_path / "params.prm"
        text = PRM.format(out=tmp_path / "out") + (
            "subsection Machine learning\n"
            "  set Enabled = true\n"
            "  set Switch timestep = 1\n"
            f"  set Weights file = {tmp_path / 'none.pt'}\n"
            "end\n"
        )
        prm.write_text(text, encoding="utf-8")
        with pytest.raises(FileNotFoundError):
            main([str(prm)])
        assert not (tmp_path / "out").exists()

    def test_aborted_run_returns_one(self, tmp_path):
        prm = tmp_path / "params.prm"
        text = PRM.format(out=tmp_path / "out") + (
            "subsection Solver\n"
            "  set Local max iterations = 1\n"
            "  set Max cutbacks = 1\n"
            "end\n"
        )
        prm.write_text(text, encoding="utf-8")
        assert main([str(prm)]) == 1
        assert (tmp_path / "out" / "history.csv").exists()
