"""積分点アダプターと単軸応力ドライバーのテスト.

テスト方針:
  アダプター:
    1. accept_step で保留候補を一括確定、reject_step で破棄（確定状態は不変）
    2. 局所反復の失敗は failures に記録（例外なし）、確定は拒否
    3. 並列評価（n_jobs > 1）が逐次評価と一致、評価回数も一致
    4. 個別確定と一括確定の併用
    5. 変形履歴は ML 有効かつ物理モードの間だけ保持
  ドライバー:
    6. 単軸応力: 横応力 σ₂₂ ≈ 0、軸応力が単調増加
    7. 増分縮小の上限で converged=False と診断情報
    8. 同じコントローラでの再実行は物理モードから始まる
"""

from __future__ import annotations

import numpy as np
import pytest
import torch

from vevpd.config import SolverSettings
from vevpd.core.results import TrialState
from vevpd.core.state import MaterialState, MaterialStateStore
from vevpd.driver import QuadraturePointAdapter, SimulationResult, run_uniaxial
from vevpd.loading import LoadingPath
from vevpd.materials.parameters import MaterialParameters
from vevpd.materials.viscoplastic_damage import PhysicsEvaluator
from vevpd.mode_switch import Mode, ModeSwitchController
from vevpd.surrogate.evaluator import SurrogateEvaluator
from vevpd.surrogate.network import LSTMSurrogate

PARAMS = MaterialParameters()


def _ml_controller(
    switch: int, handoff: str = "replay", max_iter: int = 50
) -> ModeSwitchController:
    torch.manual_seed(0)
    model = LSTMSurrogate(hidden_size=8)
    model.eval()
    return ModeSwitchController(
        PhysicsEvaluator(max_iter=max_iter),
        PARAMS,
        SurrogateEvaluator(model),
        switch_timestep=switch,
        handoff=handoff,
    )


def _adapter(
    n_points: int = 2,
    max_iter: int = 50,
    n_jobs: int = 1,
    switch: int | None = None,
) -> QuadraturePointAdapter:
    """switch を与えると ML 有効のコントローラを使う."""
    if switch is None:
        ctrl = ModeSwitchController(PhysicsEvaluator(max_iter=max_iter), PARAMS)
    else:
        ctrl = _ml_controller(switch, max_iter=max_iter)
    return QuadraturePointAdapter(MaterialStateStore(n_points), ctrl, PARAMS, n_jobs=n_jobs)


def _shear(gamma: float) -> np.ndarray:
    F = np.eye(3)
    F[0, 1] = gamma
    return F


def _assert_initial(state: MaterialState) -> None:
    ref = MaterialState()
    np.testing.assert_array_equal(state.F_e, ref.F_e)
    np.testing.assert_array_equal(state.F_v, ref.F_v)
    np.testing.assert_array_equal(state.F_vp, ref.F_vp)
    assert state.damage == 0.0
    assert state.eps_p_acc == 0.0


# ================================================================
# アダプター
# ================================================================


class TestAdapterCommit:
    """状態確定とロールバック."""

    def test_accept_commits_pending(self):
        adapter = _adapter(switch=100)
        adapter.begin_timestep(0, 1.0)
        results = adapter.evaluate_many([_shear(0.05), _shear(0.01)])
        adapter.accept_step()
        for p, r in enumerate(results):
            np.testing.assert_array_equal(adapter.store.get(p).F_vp, r.state_new.F_vp)
            assert adapter.store.get(p).damage == r.state_new.damage
        assert len(adapter.history[0]) == 1
        F, dt = adapter.history[0][0]
        np.testing.assert_array_equal(F, _shear(0.05))
        assert dt == 1.0

    def test_reject_leaves_store_unchanged(self):
        adapter = _adapter()
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate_many([_shear(0.05), _shear(0.05)])
        adapter.reject_step()
        for p in adapter.store:
            _assert_initial(adapter.store.get(p))
        assert adapter.history == [[], []]
        with pytest.raises(RuntimeError):
            adapter.accept_step()

    def test_last_evaluation_wins(self):
        """全体 Newton 反復内の再評価は保留候補を置き換える."""
        adapter = _adapter(1, switch=100)
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate(0, _shear(0.1))
        stress, _ = adapter.evaluate(0, _shear(0.02))
        adapter.accept_step()
        np.testing.assert_array_equal(adapter.history[0][0][0], _shear(0.02))
        trial = TrialState(_shear(0.02), 1.0, MaterialState(), PARAMS)
        ref = PhysicsEvaluator().evaluate(trial)
        np.testing.assert_allclose(stress, ref.stress, rtol=1e-12, atol=1e-12)

    def test_accept_single_point(self):
        adapter = _adapter()
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate_many([_shear(0.05), _shear(0.05)])
        adapter.accept_step(1)
        _assert_initial(adapter.store.get(0))
        assert adapter.store.get(1).damage > 0.0
        adapter.accept_step(0)
        assert adapter.store.get(0).damage > 0.0

    def test_accept_remaining_after_single_point(self):
        """一部の積分点を個別に確定した後、引数なしで残りを確定できる."""
        adapter = _adapter(3)
        adapter.begin_timestep(0, 1.0)
        results = adapter.evaluate_many([_shear(0.05), _shear(0.02), _shear(0.01)])
        adapter.accept_step(1)
        adapter.accept_step()
        for p, r in enumerate(results):
            assert adapter.store.get(p).damage == r.state_new.damage
        with pytest.raises(RuntimeError):
            adapter.accept_step(1)

    def test_accepted_points_reset_per_timestep(self):
        adapter = _adapter(2)
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate_many([_shear(0.01), _shear(0.01)])
        adapter.accept_step(0)
        adapter.accept_step()
        adapter.begin_timestep(1, 1.0)
        adapter.evaluate(0, _shear(0.02))
        with pytest.raises(RuntimeError, match=r"未評価=\[1\]"):
            adapter.accept_step()

    def test_evaluate_before_begin(self):
        adapter = _adapter()
        with pytest.raises(RuntimeError):
            adapter.evaluate(0, np.eye(3))

    def test_invalid_dt(self):
        adapter = _adapter()
        with pytest.raises(ValueError):
            adapter.begin_timestep(0, 0.0)

    def test_evaluate_many_size_mismatch(self):
        adapter = _adapter(3)
        adapter.begin_timestep(0, 1.0)
        with pytest.raises(ValueError):
            adapter.evaluate_many([np.eye(3)])


class TestAdapterFailure:
    """局所反復の失敗."""

    def test_failure_recorded(self):
        adapter = _adapter(2, max_iter=1)
        adapter.begin_timestep(0, 1.0)
        stress, tangent = adapter.evaluate(0, _shear(0.05))
        np.testing.assert_array_equal(stress, 0.0)
        np.testing.assert_array_equal(tangent, 0.0)
        assert adapter.failures[0].failure == "max_iter"

    def test_accept_refused_on_failure(self):
        adapter = _adapter(2, max_iter=1)
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate_many([_shear(0.05), np.eye(3)])
        with pytest.raises(RuntimeError):
            adapter.accept_step()
        adapter.reject_step()
        assert adapter.failures == {}
        for p in adapter.store:
            _assert_initial(adapter.store.get(p))

    def test_successful_retry_clears_failure(self):
        adapter = _adapter(1, max_iter=1)
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate(0, _shear(0.05))
        assert 0 in adapter.failures
        adapter.evaluate(0, np.eye(3))
        assert adapter.failures == {}
        adapter.accept_step()


class TestAdapterParallel:
    """スレッド並列評価."""

    def test_parallel_matches_serial(self):
        Fs = [_shear(g) for g in (0.01, 0.03, 0.05, 0.08)]
        serial = _adapter(4, n_jobs=1)
        parallel = _adapter(4, n_jobs=4)
        serial.begin_timestep(0, 1.0)
        parallel.begin_timestep(0, 1.0)
        r_s = serial.evaluate_many(Fs)
        r_p = parallel.evaluate_many(Fs)
        for a, b in zip(r_s, r_p):
            np.testing.assert_array_equal(a.stress, b.stress)
            np.testing.assert_array_equal(a.tangent, b.tangent)
            np.testing.assert_array_equal(a.state_new.F_v, b.state_new.F_v)

    def test_parallel_call_count(self):
        """スレッド並列でも評価回数を取りこぼさない."""
        adapter = _adapter(16, n_jobs=8)
        adapter.begin_timestep(0, 1.0)
        adapter.evaluate_many([_shear(0.001 * (p + 1)) for p in range(16)])
        assert adapter.controller.physics.n_calls == 16


class TestAdapterHistory:
    """引き継ぎ用の受理済み変形履歴."""

    def test_not_recorded_when_ml_disabled(self):
        adapter = _adapter(2)
        for step in range(20):
            adapter.begin_timestep(step, 1.0)
            adapter.evaluate_many([_shear(1e-4 * step), _shear(2e-4 * step)])
            adapter.accept_step()
        assert [len(h) for h in adapter.history] == [0, 0]

    def test_released_after_switch(self):
        adapter = _adapter(2, switch=2)
        for step in range(2):
            adapter.begin_timestep(step, 1.0)
            adapter.evaluate_many([_shear(0.01 * (step + 1)), _shear(0.005)])
            adapter.accept_step()
        assert [len(h) for h in adapter.history] == [2, 2]

        adapter.begin_timestep(2, 1.0)
        assert adapter.mode is Mode.ML
        assert adapter.history == [[], []]
        results = adapter.evaluate_many([_shear(0.03), _shear(0.005)])
        assert all(r.converged for r in results)
        adapter.accept_step()
        assert adapter.history == [[], []]


# ================================================================
# 単軸応力ドライバー
# ================================================================


def _loading(amplitude: float = 0.02, time_step: float = 5.0) -> LoadingPath:
    return LoadingPath("monotonic", (amplitude,), strain_rate=1e-3, time_step=time_step)


class TestRunUniaxial:
    """材料点の単軸応力解析."""

    def test_rerun_with_same_controller(self):
        """同じコントローラで再実行しても物理モードから始まり、結果が一致する."""
        loading = _loading(0.01)
        ctrl = _ml_controller(1, handoff="zero")
        first = run_uniaxial(PARAMS, loading, ctrl, show_progress=False)
        assert ctrl.switched_at == 1
        second = run_uniaxial(PARAMS, loading, ctrl, show_progress=False)

        assert first.mode[:2] == ["physics", "physics"]
        assert second.mode == first.mode
        assert second.converged == first.converged
        assert len(second.stress) == len(first.stress)
        for a, b in zip(first.stress, second.stress):
            np.testing.assert_array_equal(a, b)
        assert ctrl.switched_at == 1

    def test_monotonic_tension(self):
        loading = _loading()
        ctrl = ModeSwitchController(PhysicsEvaluator(), PARAMS)
        settings = SolverSettings()
        result = run_uniaxial(PARAMS, loading, ctrl, settings=settings, show_progress=False)

        assert isinstance(result, SimulationResult)
        assert result.converged
        assert result.n_steps == loading.n_steps
        assert result.n_cutbacks == 0
        assert result.timestep == [-1] + list(range(loading.n_steps))
        np.testing.assert_allclose(result.time[-1], 20.0)
        np.testing.assert_allclose(result.axial_strain[-1], 0.02)

        s11 = [s[0, 0] for s in result.stress]
        assert all(b > a for a, b in zip(s11, s11[1:]))
        for s in result.stress[1:]:
            assert abs(s[1, 1]) <= settings.global_tol * max(1.0, abs(s[0, 0]))
            assert abs(s[2, 2]) <= settings.global_tol * max(1.0, abs(s[0, 0]))
        # 横方向は収縮
        assert result.deformation[-1][1, 1] < 1.0
        assert result.total_iterations >= result.n_steps
        assert result.damage[-1] > 0.0

    def test_cyclic_to_zero_unloads(self):
        loading = LoadingPath("cyclic_to_zero", (0.02,), strain_rate=1e-3, time_step=5.0)
        ctrl = ModeSwitchController(PhysicsEvaluator(), PARAMS)
        result = run_uniaxial(PARAMS, loading, ctrl, show_progress=False)
        assert result.converged
        assert result.axial_strain[-1] == pytest.approx(0.0, abs=1e-14)
        damage = result.damage
        assert all(b >= a for a, b in zip(damage, damage[1:]))

    def test_multiple_points_parallel(self):
        """一様変形では積分点数・並列数によらず同じ応答."""
        loading = _loading(0.01)
        results = []
        for n_points, n_jobs in ((1, 1), (3, 3)):
            ctrl = ModeSwitchController(PhysicsEvaluator(), PARAMS)
            results.append(
                run_uniaxial(
                    PARAMS,
                    loading,
                    ctrl,
                    n_points=n_points,
                    settings=SolverSettings(n_jobs=n_jobs),
                    show_progress=False,
                )
            )
        for a, b in zip(results[0].stress, results[1].stress):
            np.testing.assert_allclose(a, b, rtol=1e-10, atol=1e-12)

    def test_local_failure_aborts_after_cutbacks(self):
        """局所反復が常に失敗すると max_cutbacks 超過で打ち切り."""
        ctrl = ModeSwitchController(PhysicsEvaluator(max_iter=1), PARAMS)
        settings = SolverSettings(max_cutbacks=2)
        result = run_uniaxial(PARAMS, _loading(), ctrl, settings=settings, show_progress=False)

        assert not result.converged
        assert result.n_steps == 0
        assert result.n_cutbacks == 3
        assert len(result.time) == 1
        diag = result.diagnostics
        assert diag["reason"] == "max_iter"
        assert diag["failing_point"] == 0
        assert diag["step"] == 0
        assert diag["cutbacks"] == 3
        assert diag["dt"] == pytest.approx(5.0 / 4.0)

    def test_global_failure_aborts(self):
        """全体 Newton の反復上限では failing_point なし."""
        ctrl = ModeSwitchController(PhysicsEvaluator(), PARAMS)
        settings = SolverSettings(global_max_iter=1, max_cutbacks=1)
        result = run_uniaxial(PARAMS, _loading(), ctrl, settings=settings, show_progress=False)
        assert not result.converged
        assert result.diagnostics["reason"] == "max_iter"
        assert result.diagnostics["failing_point"] is None
        assert result.diagnostics["residual"] > 0.0

    def test_min_time_step_aborts(self):
        ctrl = ModeSwitchController(PhysicsEvaluator(max_iter=1), PARAMS)
        settings = SolverSettings(max_cutbacks=100, min_time_step=1.0)
        result = run_uniaxial(PARAMS, _loading(), ctrl, settings=settings, show_progress=False)
        assert not result.converged
        assert result.n_cutbacks == 3  # 5 → 2.5 → 1.25 → 0.625 < 1.0

    def test_progress_output(self, capsys):
        ctrl = ModeSwitchController(PhysicsEvaluator(), PARAMS)
        run_uniaxial(PARAMS, _loading(0.005), ctrl, show_progress=True)
        out = capsys.readouterr().out
        assert "Step 1/1" in out
