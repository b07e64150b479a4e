"""
Anisotropic smoothing with data-driven estimation of the diffusion tensor.

For every value λ_i of the (coarse) regularisation sequence carried by the
regression data:

1. Minimise the anisotropy energy over ``(θ, k) ∈ [0, π] × [1, 1000]``
   with L-BFGS-B, warm-started from the previous iteration's estimate
   (``(π/2, 5)`` for the first one).
2. Undo boundary artefacts of the periodic angle: an optimum exactly at
   θ = π (resp. 0) is re-optimised once from θ = 0 (resp. π).
3. Clamp estimates the energy reports as invalid back into the box.
4. Freeze ``K(θ, k)`` and score the fine λ grid by GCV; keep the best
   index and score.

The pair with the overall lowest GCV gives the final λ and K, with which
one last regression is fitted.

Two strategies are available.  ``"in_place"`` re-targets the shared
regression data between steps and restores its DOF flag afterwards;
``"snapshot"`` works on independent copies produced by
:meth:`AnisotropicSmoothingBase.create_regression_data` and never touches
the shared data.  Both give the same result.
"""

from __future__ import annotations

import functools
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type

import numpy as np
from numpy.typing import NDArray
from tqdm import tqdm

from .anisotropy import (
    DEFAULT_ANISO_PARAM,
    LOWER_BOUND,
    UPPER_BOUND,
    AnisotropyProblem,
    build_kappa,
    clamp_aniso_param,
)
from .config import resolve_config
from .diagnostics import Diagnostics
from .gcv import GCVEvaluator
from .grid import lambda_cross_val_grid
from .mesh import TriangularMesh
from .optimizer import LbfgsbSolver
from .regression import MixedFERegression
from .regression_data import RegressionData, RegressionDataElliptic

STRATEGIES = ("in_place", "snapshot")


# ═══════════════════════════════════════════════════════════════════
#  Result containers
# ═══════════════════════════════════════════════════════════════════

@dataclass
class IterationResult:
    """Outcome of one outer iteration (one coarse λ)."""

    index: int
    lambda_: float
    aniso_param: NDArray[np.floating]
    cross_val_index: int
    gcv: float
    gcv_seq: NDArray[np.floating]
    n_corrections: int = 0
    clamped: bool = False
    optimize_s: float = 0.0
    gcv_s: float = 0.0

    def row_dict(self) -> Dict[str, Any]:
        """Flat dict for tabular display / DataFrame conversion."""
        return {
            "iteration": self.index,
            "lambda": self.lambda_,
            "angle": float(self.aniso_param[0]),
            "intensity": float(self.aniso_param[1]),
            "cross_val_index": self.cross_val_index,
            "gcv": self.gcv,
            "n_corrections": self.n_corrections,
            "clamped": self.clamped,
            "optimize_s": self.optimize_s,
            "gcv_s": self.gcv_s,
        }


@dataclass
class SmoothingResult:
    """Output of :meth:`AnisotropicSmoothingBase.smooth`.

    Unpacks as ``solution, aniso_param = result``.
    """

    solution: List[NDArray[np.floating]]
    aniso_param: Optional[NDArray[np.floating]]
    iterations: List[IterationResult] = field(default_factory=list)
    best_index: Optional[int] = None
    lambda_cross_val: Optional[NDArray[np.floating]] = None

    def __iter__(self) -> Iterator[Any]:
        yield self.solution
        yield self.aniso_param

    # ── convenience ──────────────────────────────────────────────────
    @property
    def is_empty(self) -> bool:
        return len(self.solution) == 0

    @property
    def best(self) -> Optional[IterationResult]:
        if self.best_index is None:
            return None
        return self.iterations[self.best_index]

    @property
    def lambda_opt(self) -> Optional[float]:
        best = self.best
        if best is None or self.lambda_cross_val is None:
            return None
        return float(self.lambda_cross_val[best.cross_val_index])

    @property
    def kappa(self) -> Optional[NDArray[np.floating]]:
        if self.aniso_param is None:
            return None
        return build_kappa(self.aniso_param)

    def table(self) -> List[Dict[str, Any]]:
        """List-of-dicts for all outer iterations."""
        return [it.row_dict() for it in self.iterations]

    def to_frame(self):
        """Per-iteration table as a :class:`pandas.DataFrame`."""
        import pandas as pd

        return pd.DataFrame(self.table())

    def summary(self) -> str:
        """Human-readable report."""
        if self.is_empty:
            return "Anisotropic smoothing: no result"
        lines = [
            f"Anisotropic smoothing: {len(self.iterations)} outer iterations",
            "",
        ]
        for it in self.iterations:
            tag = " ★" if it.index == self.best_index else ""
            lines.append(
                f"  [{it.index:2d}]  λ={it.lambda_:.3e}  "
                f"θ={it.aniso_param[0]:.4f}  k={it.aniso_param[1]:.3f}  "
                f"GCV={it.gcv:.4e}{tag}"
            )
        lines.append("")
        lines.append(
            f"  Best: θ={self.aniso_param[0]:.4f}  k={self.aniso_param[1]:.3f}"
            f"  λ*={self.lambda_opt:.4e}"
        )
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════

def compute_mesh_loc(
    regression_data: RegressionData,
    mesh: TriangularMesh,
) -> List[NDArray[np.floating]]:
    """Coordinates of the observation nodes, or ``[]`` for raw locations."""
    if not regression_data.locations_by_nodes:
        return []
    return [mesh.point_at(i) for i in regression_data.observation_indices]


def _argmin_first(values: NDArray[np.floating]) -> int:
    """Index of the first minimum, NaN counting as +inf."""
    v = np.asarray(values, dtype=np.float64)
    return int(np.argmin(np.where(np.isnan(v), np.inf, v)))


# ═══════════════════════════════════════════════════════════════════
#  Orchestrator
# ═══════════════════════════════════════════════════════════════════

class AnisotropicSmoothingBase:
    """Joint selection of anisotropy and regularisation.

    Parameters
    ----------
    regression_data : RegressionData
        Shared configuration.  Its λ sequence is the coarse grid.
    mesh : TriangularMesh
    solver : object, optional
        ``minimize(problem, x0, lower, upper) -> x``.  Defaults to
        :class:`LbfgsbSolver`.
    diagnostics : Diagnostics, optional
    initial_param : array-like, optional
        Starting point of the first outer iteration, ``(π/2, 5)`` by default.
    strategy : {"in_place", "snapshot"}
    progress : bool
        Show a progress bar over the outer iterations.
    problem_factory, gcv_factory, regression_factory : callable, optional
        Builders of the anisotropy energy ``(mesh, mesh_loc, data)``, the
        GCV evaluator ``(mesh, mesh_loc, data)`` and the final regression
        ``(mesh, data)``.
    """

    problem_factory: Any = AnisotropyProblem
    gcv_factory: Any = GCVEvaluator
    regression_factory: Any = MixedFERegression

    def __init__(
        self,
        regression_data: RegressionData,
        mesh: TriangularMesh,
        *,
        solver=None,
        diagnostics: Optional[Diagnostics] = None,
        initial_param: Optional[Sequence[float]] = None,
        strategy: str = "in_place",
        progress: bool = False,
        problem_factory=None,
        gcv_factory=None,
        regression_factory=None,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(
                f"Unknown strategy '{strategy}'. Available: {STRATEGIES}"
            )
        self.regression_data = regression_data
        self.mesh = mesh
        self.solver = solver if solver is not None else LbfgsbSolver()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.initial_param = np.array(
            DEFAULT_ANISO_PARAM if initial_param is None else initial_param,
            dtype=np.float64,
        )
        self.strategy = strategy
        self.progress = progress
        if problem_factory is not None:
            self.problem_factory = problem_factory
        if gcv_factory is not None:
            self.gcv_factory = gcv_factory
        if regression_factory is not None:
            self.regression_factory = regression_factory

        self.mesh_loc = compute_mesh_loc(regression_data, mesh)
        self.lambdas: Tuple[float, ...] = tuple(regression_data.lambdas)
        self.lambda_cross_val = lambda_cross_val_grid(
            regression_data.n_observations, mesh.area()
        )
        self.dof = regression_data.compute_dof

    def _kappa(self, aniso_param: NDArray[np.floating]) -> NDArray[np.floating]:
        """Diffusion tensor through the energy's parameter mapping."""
        mapping = getattr(self.problem_factory, "build_kappa", build_kappa)
        return mapping(aniso_param)

    # ── regression-data factory hooks ────────────────────────────────

    def create_regression_data(
        self,
        lambda_: Optional[float] = None,
        aniso_param: Optional[NDArray[np.floating]] = None,
    ) -> Optional[RegressionData]:
        """Independent copy of the regression data with overrides.

        * ``lambda_`` only: single regularisation value.
        * ``aniso_param`` only: ``K(aniso_param)``, the fine λ grid and
          DOF computation switched on.
        * both: single λ and ``K(aniso_param)``.
        """
        if lambda_ is not None and aniso_param is not None:
            return self._create_with_lambda_and_aniso(lambda_, aniso_param)
        if aniso_param is not None:
            return self._create_with_aniso(aniso_param)
        if lambda_ is not None:
            return self._create_with_lambda(lambda_)
        raise ValueError("Give lambda_, aniso_param or both.")

    def _not_implemented(self) -> None:
        self.diagnostics.warning(
            "createRegressionData not implemented for such an input handler"
        )

    def _create_with_lambda(self, lambda_: float) -> Optional[RegressionData]:
        self._not_implemented()
        return None

    def _create_with_aniso(self, aniso_param) -> Optional[RegressionData]:
        self._not_implemented()
        return None

    def _create_with_lambda_and_aniso(
        self, lambda_: float, aniso_param
    ) -> Optional[RegressionData]:
        self._not_implemented()
        return None

    # ── per-step configuration ───────────────────────────────────────

    def _data_for_lambda(self, lambda_: float) -> RegressionData:
        if self.strategy == "snapshot":
            return self.create_regression_data(lambda_=lambda_)
        self.regression_data.set_lambda([lambda_])
        return self.regression_data

    def _gcv_for(self, aniso_param: NDArray[np.floating]):
        if self.strategy == "snapshot":
            data = self.create_regression_data(aniso_param=aniso_param)
            return self.gcv_factory(self.mesh, self.mesh_loc, data)

        data = self.regression_data
        data.set_kappa(self._kappa(aniso_param))
        data.set_lambda(self.lambda_cross_val)
        data.set_compute_dof(True)
        try:
            evaluator = self.gcv_factory(self.mesh, self.mesh_loc, data)
        finally:
            data.set_compute_dof(self.dof)
        return evaluator

    def _data_for_final(
        self, lambda_: float, aniso_param: NDArray[np.floating]
    ) -> RegressionData:
        if self.strategy == "snapshot":
            return self.create_regression_data(
                lambda_=lambda_, aniso_param=aniso_param
            )
        data = self.regression_data
        data.set_lambda([lambda_])
        data.set_kappa(self._kappa(aniso_param))
        return data

    # ── algorithm ────────────────────────────────────────────────────

    def _optimize(
        self,
        i: int,
        problem,
        warm_start: NDArray[np.floating],
    ) -> Tuple[NDArray[np.floating], int, bool]:
        """Bounded minimisation with periodicity retry and validity fallback.

        An optimum exactly at θ = π (or θ = 0) is re-optimised once from
        the opposite boundary.  The retry result is kept whatever it is:
        a solver that stays at its seed leaves θ on that opposite
        boundary, and no second correction is attempted.  Chaining the
        two boundary checks would allow a second retry in that case, at
        the price of up to three solver runs per outer iteration.

        Returns
        -------
        param : ndarray, shape ``(2,)``
        n_corrections : int
            0 or 1.
        clamped : bool
            Whether the estimate was projected back into the box.
        """
        param = self.solver.minimize(problem, warm_start.copy(), LOWER_BOUND, UPPER_BOUND)
        param = np.asarray(param, dtype=np.float64)
        n_corrections = 0

        if param[0] == UPPER_BOUND[0]:
            seed = param.copy()
            seed[0] = LOWER_BOUND[0]
            param = np.asarray(
                self.solver.minimize(problem, seed, LOWER_BOUND, UPPER_BOUND),
                dtype=np.float64,
            )
            n_corrections = 1
            self.diagnostics.warning(
                f"Angle equal to pi at iteration = {i:3d}", iteration=i
            )
        elif param[0] == LOWER_BOUND[0]:
            seed = param.copy()
            seed[0] = UPPER_BOUND[0]
            param = np.asarray(
                self.solver.minimize(problem, seed, LOWER_BOUND, UPPER_BOUND),
                dtype=np.float64,
            )
            n_corrections = 1
            self.diagnostics.warning(
                f"Angle equal to 0 at iteration = {i:3d}", iteration=i
            )

        clamped = False
        if not problem.is_valid(param):
            self.diagnostics.warning(
                "Optimization failed (value is out of range): "
                f"({param[0]:f}, {param[1]:f})",
                iteration=i,
            )
            param = clamp_aniso_param(param)
            clamped = True
        return param, n_corrections, clamped

    def smooth(self) -> SmoothingResult:
        """Run the joint anisotropy / λ selection and the final fit."""
        diag = self.diagnostics
        iterations: List[IterationResult] = []
        warm_start = self.initial_param.copy()
        t_total = time.perf_counter()

        for i, lam in enumerate(
            tqdm(self.lambdas, desc="Anisotropy", disable=not self.progress)
        ):
            # ── 1. anisotropy for fixed λ ─────────────────────────
            data = self._data_for_lambda(lam)
            diag.info(f"lambda[{i:2d}] = {lam:f}", iteration=i)
            problem = self.problem_factory(self.mesh, self.mesh_loc, data)

            t0 = time.perf_counter()
            param, n_corr, clamped = self._optimize(i, problem, warm_start)
            optimize_s = time.perf_counter() - t0
            diag.info(
                f"Final anisoParam [{i:2d}]: ({param[0]:f}, {param[1]:f})",
                iteration=i,
            )
            diag.info(f"Time to optimize [{i:2d}]: {optimize_s:f}", iteration=i)

            # ── 2. GCV over the fine grid for frozen K ────────────
            t0 = time.perf_counter()
            gcv_seq = np.asarray(self._gcv_for(param).scores(), dtype=np.float64)
            cv_index = _argmin_first(gcv_seq)
            gcv_s = time.perf_counter() - t0
            diag.info(f"Time to compute GCV [{i:2d}]: {gcv_s:f}", iteration=i)

            iterations.append(
                IterationResult(
                    index=i,
                    lambda_=float(lam),
                    aniso_param=param.copy(),
                    cross_val_index=cv_index,
                    gcv=float(gcv_seq[cv_index]),
                    gcv_seq=gcv_seq,
                    n_corrections=n_corr,
                    clamped=clamped,
                    optimize_s=optimize_s,
                    gcv_s=gcv_s,
                )
            )
            warm_start = param

        # ── 3. global choice and final regression ─────────────────
        t0 = time.perf_counter()
        best_index = _argmin_first(np.array([it.gcv for it in iterations]))
        best = iterations[best_index]
        lambda_opt = float(self.lambda_cross_val[best.cross_val_index])

        data = self._data_for_final(lambda_opt, best.aniso_param)
        regression = self.regression_factory(self.mesh, data)
        solution = list(regression.fit())

        diag.info(f"Time to compute final regression: {time.perf_counter() - t0:f}")
        diag.info(f"Total time: {time.perf_counter() - t_total:f}")

        return SmoothingResult(
            solution=solution,
            aniso_param=best.aniso_param.copy(),
            iterations=iterations,
            best_index=best_index,
            lambda_cross_val=self.lambda_cross_val.copy(),
        )


class AnisotropicSmoothing(AnisotropicSmoothingBase):
    """Fallback for regression-data variants without anisotropy support."""

    def smooth(self) -> SmoothingResult:
        self.diagnostics.warning(
            "Anisotropic smoothing not implemented for such an input handler"
        )
        return SmoothingResult(solution=[], aniso_param=None)


class EllipticAnisotropicSmoothing(AnisotropicSmoothingBase):
    """Anisotropic smoothing for :class:`RegressionDataElliptic`."""

    def _create_with_lambda(self, lambda_: float) -> RegressionDataElliptic:
        return self.regression_data.copy(lambdas=(lambda_,))

    def _create_with_aniso(self, aniso_param) -> RegressionDataElliptic:
        return self.regression_data.copy(
            lambdas=tuple(self.lambda_cross_val),
            kappa=self._kappa(aniso_param),
            compute_dof=True,
        )

    def _create_with_lambda_and_aniso(
        self, lambda_: float, aniso_param
    ) -> RegressionDataElliptic:
        return self.regression_data.copy(
            lambdas=(lambda_,),
            kappa=self._kappa(aniso_param),
        )


# ═══════════════════════════════════════════════════════════════════
#  Dispatch on the regression-data variant
# ═══════════════════════════════════════════════════════════════════

_SMOOTHERS: Dict[type, Type[AnisotropicSmoothingBase]] = {
    RegressionDataElliptic: EllipticAnisotropicSmoothing,
}


def register_smoother(
    data_cls: type,
    smoother_cls: Type[AnisotropicSmoothingBase],
) -> None:
    """Associate a regression-data class with its smoother."""
    _SMOOTHERS[data_cls] = smoother_cls


def anisotropic_smoothing(
    regression_data: RegressionData,
    mesh: TriangularMesh,
    **kwargs,
) -> AnisotropicSmoothingBase:
    """Smoother for the exact type of *regression_data*.

    Variants without a registered smoother get :class:`AnisotropicSmoothing`,
    whose :meth:`~AnisotropicSmoothing.smooth` reports the missing support
    and returns an empty result.
    """
    smoother_cls = _SMOOTHERS.get(type(regression_data), AnisotropicSmoothing)
    return smoother_cls(regression_data, mesh, **kwargs)


def smoother_from_config(
    regression_data: RegressionData,
    mesh: TriangularMesh,
    config: Optional[Dict[str, Any]] = None,
) -> AnisotropicSmoothingBase:
    """Smoother wired from a configuration mapping.

    *config* is merged with :data:`~anisosmooth.config.DEFAULT_CONFIG`
    and validated first, so a partial mapping (or ``None``) is enough.
    """
    cfg = resolve_config(config)
    smoothing_cfg = cfg["smoothing"]
    optimizer_cfg = dict(cfg["optimizer"])
    diagnostics_cfg = cfg["diagnostics"]

    fd_step = float(optimizer_cfg.pop("fd_step"))
    problem_factory = functools.partial(AnisotropyProblem, fd_step=fd_step)
    # keeps the parameter mapping visible through the partial
    problem_factory.build_kappa = AnisotropyProblem.build_kappa

    return anisotropic_smoothing(
        regression_data,
        mesh,
        solver=LbfgsbSolver(optimizer_cfg),
        diagnostics=Diagnostics(
            verbose=bool(diagnostics_cfg["verbose"]),
            emit_warnings=bool(diagnostics_cfg["emit_warnings"]),
        ),
        initial_param=(
            float(smoothing_cfg["initial_angle"]),
            float(smoothing_cfg["initial_intensity"]),
        ),
        strategy=smoothing_cfg["strategy"],
        progress=bool(smoothing_cfg["progress"]),
        problem_factory=problem_factory,
    )
