#!/usr/bin/env python3
"""
Tests for the anisotropic smoothing orchestrator.

Verifies:
  1. Global selection of (aniso_param, λ) from per-iteration GCV minima.
  2. Periodicity correction at θ = π and θ = 0 (one retry, one warning).
  3. Clamping of out-of-range estimates.
  4. Warm starts, DOF-flag restoration and the regression-data hooks.
  5. Dispatch on the regression-data variant and the unsupported fallback.
  6. A real end-to-end run, identical for both strategies.
"""

from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest

from anisosmooth import (
    AnisotropicSmoothing,
    Diagnostics,
    EllipticAnisotropicSmoothing,
    LbfgsbSolver,
    RegressionDataElliptic,
    SmoothingResult,
    anisotropic_smoothing,
    build_kappa,
    compute_mesh_loc,
    lambda_cross_val_grid,
    register_smoother,
)
from anisosmooth.anisotropy import LOWER_BOUND, UPPER_BOUND


# ═══════════════════════════════════════════════════════════════════════════
# Stubs
# ═══════════════════════════════════════════════════════════════════════════

class FlatProblem:
    """Energy with zero gradient: the solver stays at its start."""

    def __init__(self, mesh, mesh_loc, data):
        self.lambdas = tuple(data.lambdas)

    def objective_and_gradient(self, x):
        return 0.0, np.zeros(2)

    def is_valid(self, x):
        return bool(np.all(x >= LOWER_BOUND) and np.all(x <= UPPER_BOUND))


class RecordingSolver:
    """Returns a fixed answer and records every starting point."""

    def __init__(self, answer):
        self.answer = np.asarray(answer, dtype=float)
        self.starts = []

    def minimize(self, problem, x0, lower, upper):
        self.starts.append(np.array(x0, dtype=float))
        return self.answer.copy()


class ScaledGCV:
    """GCV = scale · λ_fine, with the scale taken from a per-call list."""

    def __init__(self, scales):
        self.scales = list(scales)
        self.calls = []

    def __call__(self, mesh, mesh_loc, data):
        self.calls.append(
            dict(n_lambdas=len(data.lambdas), compute_dof=data.compute_dof,
                 kappa=np.array(data.kappa))
        )
        scale = self.scales[len(self.calls) - 1]
        lambdas = np.asarray(data.lambdas)

        class _Evaluator:
            def scores(self_inner):
                return scale * lambdas

        return _Evaluator()


def _quiet():
    return Diagnostics(emit_warnings=False)


# ═══════════════════════════════════════════════════════════════════════════
# Selection logic
# ═══════════════════════════════════════════════════════════════════════════

def test_selection_with_stubbed_energy_and_gcv(mesh, elliptic_data):
    gcv = ScaledGCV([1.0, 2.0])
    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=LbfgsbSolver(),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=gcv,
    )
    result = smoother.smooth()

    fine = lambda_cross_val_grid(elliptic_data.n_observations, mesh.area())
    assert result.best_index == 0
    assert result.best.cross_val_index == 0
    npt.assert_allclose(result.aniso_param, [np.pi / 2, 5.0])
    npt.assert_allclose(result.lambda_opt, fine[0])
    assert [it.gcv for it in result.iterations] == pytest.approx([fine[0], 2 * fine[0]])
    assert len(result.solution) == 1
    assert result.solution[0].shape == (mesh.n_nodes,)

    # GCV always scored on the fine grid with DOF switched on
    assert all(c["n_lambdas"] == 70 and c["compute_dof"] for c in gcv.calls)
    npt.assert_allclose(gcv.calls[0]["kappa"], build_kappa([np.pi / 2, 5.0]))

    solution, aniso = result
    assert solution is result.solution
    npt.assert_allclose(aniso, result.aniso_param)


def test_later_iteration_can_win(mesh, elliptic_data):
    solver = RecordingSolver([1.0, 20.0])
    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([3.0, 0.5]),
    )
    result = smoother.smooth()
    assert result.best_index == 1
    npt.assert_allclose(result.aniso_param, [1.0, 20.0])
    npt.assert_allclose(result.kappa, build_kappa([1.0, 20.0]))


def test_nan_gcv_never_selected(mesh, elliptic_data):
    class NaNThenScaled(ScaledGCV):
        def __call__(self, mesh, mesh_loc, data):
            ev = super().__call__(mesh, mesh_loc, data)
            if len(self.calls) == 1:
                ev.scores = lambda: np.full(len(data.lambdas), np.nan)
            return ev

    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=NaNThenScaled([1.0, 1.0]),
    )
    assert smoother.smooth().best_index == 1


def test_gcv_ties_pick_first_occurrence(mesh, elliptic_data):
    class Plateau:
        def __init__(self, mesh, mesh_loc, data):
            self.n = len(data.lambdas)

        def scores(self):
            return np.array([5.0, 1.0, 1.0] + [3.0] * (self.n - 3))

    result = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=Plateau,
    ).smooth()
    # equal minima inside an iteration and across iterations: earliest wins
    assert [it.cross_val_index for it in result.iterations] == [1, 1]
    assert result.best_index == 0
    assert result.best.cross_val_index == 1
    npt.assert_allclose(result.lambda_opt, result.lambda_cross_val[1])


def test_warm_start_and_default_start(mesh, elliptic_data):
    solver = RecordingSolver([2.0, 30.0])
    EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 1.0]),
    ).smooth()
    assert len(solver.starts) == 2
    npt.assert_allclose(solver.starts[0], [np.pi / 2, 5.0])
    npt.assert_allclose(solver.starts[1], [2.0, 30.0])


def test_custom_initial_param(mesh, elliptic_data):
    solver = RecordingSolver([2.0, 30.0])
    EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=_quiet(),
        initial_param=(0.5, 50.0),
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 1.0]),
    ).smooth()
    npt.assert_allclose(solver.starts[0], [0.5, 50.0])


# ═══════════════════════════════════════════════════════════════════════════
# Boundary corrections
# ═══════════════════════════════════════════════════════════════════════════

def test_angle_at_pi_is_reoptimised_once(mesh, elliptic_data):
    solver = RecordingSolver([np.pi, 3.0])
    diag = Diagnostics()
    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=diag,
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    )
    with pytest.warns(RuntimeWarning, match="Angle equal to pi"):
        result = smoother.smooth()

    # two solver calls per outer iteration, the retry seeded at θ = 0
    assert len(solver.starts) == 4
    npt.assert_allclose(solver.starts[1], [0.0, 3.0])
    npt.assert_allclose(solver.starts[3], [0.0, 3.0])
    for i in range(2):
        msgs = diag.messages("warning", iteration=i)
        assert msgs == [f"Angle equal to pi at iteration = {i:3d}"]
    assert all(it.n_corrections == 1 for it in result.iterations)
    npt.assert_allclose(result.aniso_param, [np.pi, 3.0])


def test_angle_at_zero_is_reoptimised_from_pi(mesh, elliptic_data):
    solver = RecordingSolver([0.0, 3.0])
    diag = _quiet()
    EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=diag,
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    ).smooth()
    npt.assert_allclose(solver.starts[1], [np.pi, 3.0])
    assert diag.messages("warning", iteration=0) == ["Angle equal to 0 at iteration =   0"]


def test_single_retry_keeps_result_at_seed(mesh, elliptic_data):
    class StayOnRetry(RecordingSolver):
        def minimize(self, problem, x0, lower, upper):
            first = len(self.starts) % 2 == 0
            super().minimize(problem, x0, lower, upper)
            return self.answer.copy() if first else np.array(x0, dtype=float)

    solver = StayOnRetry([np.pi, 3.0])
    diag = _quiet()
    result = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=diag,
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    ).smooth()
    # exactly one corrective run per iteration, its answer kept as is
    assert len(solver.starts) == 4
    npt.assert_allclose(result.iterations[0].aniso_param, [0.0, 3.0])
    assert [it.n_corrections for it in result.iterations] == [1, 1]
    assert diag.messages("warning", iteration=0) == ["Angle equal to pi at iteration =   0"]


def test_out_of_range_estimate_is_clamped(mesh, elliptic_data):
    solver = RecordingSolver([1.0, 2000.0])
    diag = _quiet()
    result = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=solver,
        diagnostics=diag,
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    ).smooth()
    assert len(solver.starts) == 2
    assert diag.messages("warning", iteration=0) == [
        "Optimization failed (value is out of range): (1.000000, 2000.000000)"
    ]
    npt.assert_allclose(result.aniso_param, [1.0, 1000.0])
    assert all(it.clamped for it in result.iterations)
    # the clamped value is the next warm start
    npt.assert_allclose(solver.starts[1], [1.0, 1000.0])


# ═══════════════════════════════════════════════════════════════════════════
# Shared-data handling and hooks
# ═══════════════════════════════════════════════════════════════════════════

def test_dof_flag_restored(mesh, elliptic_data):
    assert elliptic_data.compute_dof is False
    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    )
    smoother.smooth()
    assert elliptic_data.compute_dof is False
    assert smoother.dof is False


def test_dof_flag_restored_when_gcv_fails(mesh, elliptic_data):
    def failing(mesh, mesh_loc, data):
        raise RuntimeError("boom")

    smoother = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=failing,
    )
    with pytest.raises(RuntimeError):
        smoother.smooth()
    assert elliptic_data.compute_dof is False


def test_hooks_produce_independent_copies(mesh, elliptic_data):
    smoother = EllipticAnisotropicSmoothing(elliptic_data, mesh, diagnostics=_quiet())
    param = np.array([0.4, 9.0])

    d = smoother.create_regression_data(lambda_=0.5)
    assert d.lambdas == (0.5,)
    npt.assert_allclose(d.kappa, np.eye(2))

    d = smoother.create_regression_data(aniso_param=param)
    assert len(d.lambdas) == 70 and d.compute_dof
    npt.assert_allclose(d.kappa, build_kappa(param))

    d = smoother.create_regression_data(lambda_=0.5, aniso_param=param)
    assert d.lambdas == (0.5,) and not d.compute_dof
    npt.assert_allclose(d.kappa, build_kappa(param))

    with pytest.raises(ValueError):
        smoother.create_regression_data()

    assert elliptic_data.lambdas == (1e-2, 1e-1)
    npt.assert_allclose(elliptic_data.kappa, np.eye(2))


def test_base_hooks_report_missing_support(mesh, laplace_data):
    diag = _quiet()
    smoother = AnisotropicSmoothing(laplace_data, mesh, diagnostics=diag)
    assert smoother.create_regression_data(lambda_=0.5) is None
    assert smoother.create_regression_data(aniso_param=np.array([1.0, 2.0])) is None
    assert diag.messages() == [
        "createRegressionData not implemented for such an input handler"
    ] * 2


def test_snapshot_strategy_leaves_data_untouched(mesh, elliptic_data):
    gcv = ScaledGCV([1.0, 2.0])
    result = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        strategy="snapshot",
        problem_factory=FlatProblem,
        gcv_factory=gcv,
    ).smooth()
    assert elliptic_data.lambdas == (1e-2, 1e-1)
    npt.assert_allclose(elliptic_data.kappa, np.eye(2))
    assert all(c["n_lambdas"] == 70 and c["compute_dof"] for c in gcv.calls)
    npt.assert_allclose(result.aniso_param, [1.0, 2.0])


def test_unknown_strategy(mesh, elliptic_data):
    with pytest.raises(ValueError, match="Unknown strategy"):
        EllipticAnisotropicSmoothing(elliptic_data, mesh, strategy="parallel")


# ═══════════════════════════════════════════════════════════════════════════
# Location resolution
# ═══════════════════════════════════════════════════════════════════════════

def test_compute_mesh_loc_nodes_in_order(mesh):
    idx = [3, 0, 7]
    data = RegressionDataElliptic(
        observations=[1.0, 2.0, 3.0], lambdas=[0.1], observation_indices=idx
    )
    loc = compute_mesh_loc(data, mesh)
    assert len(loc) == 3
    npt.assert_allclose(np.array(loc), mesh.nodes[idx])


def test_compute_mesh_loc_raw_locations(mesh, scattered_data):
    assert compute_mesh_loc(scattered_data, mesh) == []


def test_compute_mesh_loc_bad_index_raises(mesh):
    data = RegressionDataElliptic(
        observations=[1.0, 2.0], lambdas=[0.1], observation_indices=[0, mesh.n_nodes]
    )
    with pytest.raises(IndexError):
        compute_mesh_loc(data, mesh)
    with pytest.raises(IndexError):
        EllipticAnisotropicSmoothing(data, mesh)


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch
# ═══════════════════════════════════════════════════════════════════════════

def test_dispatch_elliptic(mesh, elliptic_data):
    assert type(anisotropic_smoothing(elliptic_data, mesh)) is EllipticAnisotropicSmoothing


def test_unsupported_variant_returns_empty(mesh, laplace_data):
    diag = _quiet()
    smoother = anisotropic_smoothing(laplace_data, mesh, diagnostics=diag)
    assert type(smoother) is AnisotropicSmoothing
    result = smoother.smooth()
    assert isinstance(result, SmoothingResult)
    assert result.is_empty and result.aniso_param is None
    assert result.summary() == "Anisotropic smoothing: no result"
    assert diag.messages() == [
        "Anisotropic smoothing not implemented for such an input handler"
    ]


def test_register_smoother(mesh, elliptic_data):
    class TaggedData(RegressionDataElliptic):
        pass

    class TaggedSmoothing(EllipticAnisotropicSmoothing):
        pass

    data = TaggedData(
        observations=elliptic_data.observations,
        lambdas=[0.1],
        observation_indices=np.arange(mesh.n_nodes),
    )
    # exact-type lookup: subclasses are not picked up implicitly
    assert type(anisotropic_smoothing(data, mesh)) is AnisotropicSmoothing
    register_smoother(TaggedData, TaggedSmoothing)
    assert type(anisotropic_smoothing(data, mesh)) is TaggedSmoothing


# ═══════════════════════════════════════════════════════════════════════════
# Real run
# ═══════════════════════════════════════════════════════════════════════════

def _real(data, mesh, strategy, verbose=False):
    return EllipticAnisotropicSmoothing(
        data, mesh,
        solver=LbfgsbSolver({"maxiter": 30}),
        diagnostics=Diagnostics(verbose=verbose, emit_warnings=False),
        strategy=strategy,
    )


def test_end_to_end_strategies_agree(mesh, elliptic_data):
    snapshot = _real(elliptic_data, mesh, "snapshot").smooth()
    assert elliptic_data.lambdas == (1e-2, 1e-1)

    in_place = _real(elliptic_data, mesh, "in_place").smooth()

    assert in_place.best_index == snapshot.best_index
    npt.assert_allclose(in_place.aniso_param, snapshot.aniso_param)
    npt.assert_allclose(in_place.solution[0], snapshot.solution[0])
    npt.assert_allclose(in_place.lambda_opt, snapshot.lambda_opt)

    assert np.all(in_place.aniso_param >= LOWER_BOUND)
    assert np.all(in_place.aniso_param <= UPPER_BOUND)
    assert in_place.lambda_opt in in_place.lambda_cross_val
    assert elliptic_data.compute_dof is False

    table = in_place.table()
    assert [row["iteration"] for row in table] == [0, 1]
    assert "★" in in_place.summary()


def test_end_to_end_idempotent(mesh, scattered_data, capsys):
    scattered_data.set_lambda([1e-2, 1e-1])
    smoother = _real(scattered_data, mesh, "in_place", verbose=True)
    first = smoother.smooth()
    out = capsys.readouterr().out
    assert "lambda[ 0] = 0.010000" in out
    assert "Total time:" in out

    second = smoother.smooth()
    npt.assert_allclose(second.aniso_param, first.aniso_param)
    npt.assert_allclose(second.solution[0], first.solution[0])
    assert smoother.mesh_loc == []


def test_to_frame(mesh, elliptic_data):
    result = EllipticAnisotropicSmoothing(
        elliptic_data, mesh,
        solver=RecordingSolver([1.0, 2.0]),
        diagnostics=_quiet(),
        problem_factory=FlatProblem,
        gcv_factory=ScaledGCV([1.0, 2.0]),
    ).smooth()
    df = result.to_frame()
    assert isinstance(df, pd.DataFrame)
    assert list(df["iteration"]) == [0, 1]
    assert list(df["angle"]) == [1.0, 1.0]
