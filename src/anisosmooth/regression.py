"""
Mixed finite-element penalised regression.

For a regularisation value λ the field coefficients ``f`` solve the
mixed system

.. math::

    \\begin{bmatrix} Ψ^T Q Ψ & λ R_1^T \\\\ λ R_1 & -λ R_0 \\end{bmatrix}
    \\begin{bmatrix} f \\\\ g \\end{bmatrix}
    =
    \\begin{bmatrix} Ψ^T Q z \\\\ 0 \\end{bmatrix}

where ``R0`` is the mass matrix, ``R1 = stiffness(K) + advection(b) +
c·R0`` discretises the penalty operator, ``Ψ`` evaluates the field at
the observation locations and ``Q = I − W(WᵀW)⁻¹Wᵀ`` projects out the
covariates (``Q = I`` without covariates).  Dirichlet nodes have their
rows replaced by identity rows.

Degrees of freedom and GCV
--------------------------
The smoother ``S`` maps the data to the fitted values;
``DOF = tr(S) = tr(Ψ (ΨᵀQΨ + λP)⁻¹ ΨᵀQ) + q``.  It is computed either
exactly (one solve per observation, sharing a single LU factorisation)
or stochastically with Rademacher probes.  The score is

    GCV(λ) = n · ‖z − ẑ‖² / (n − DOF)² .
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.sparse.linalg import splu

from .fem import (
    advection_matrix,
    mass_matrix,
    projector_matrix,
    selection_matrix,
    stiffness_matrix,
)
from .mesh import TriangularMesh
from .regression_data import RegressionData


@dataclass
class RegressionFit:
    """Result of a single-λ solve."""

    lambda_: float
    coefficients: NDArray[np.floating]
    fitted: NDArray[np.floating]
    beta: Optional[NDArray[np.floating]]
    sse: float
    dof: float
    gcv: float


def observation_matrix(
    mesh: TriangularMesh,
    regression_data: RegressionData,
    mesh_loc: Sequence[NDArray[np.floating]] = (),
) -> sparse.csr_matrix:
    """Ψ for *regression_data* on *mesh*.

    Pre-resolved node coordinates (*mesh_loc*) take precedence, then
    node indices, then raw coordinates.
    """
    if len(mesh_loc) > 0:
        return projector_matrix(mesh, np.asarray(mesh_loc, dtype=np.float64))
    if regression_data.locations_by_nodes:
        return selection_matrix(mesh.n_nodes, regression_data.observation_indices)
    return projector_matrix(mesh, regression_data.locations)


class MixedFERegression:
    """Penalised regression over a triangular mesh.

    Matrices that do not depend on λ or K (mass, observation operator,
    transport and reaction terms) are assembled once at construction;
    every :meth:`solve` only rebuilds the stiffness part.

    Parameters
    ----------
    mesh : TriangularMesh
    regression_data : RegressionData
    mesh_loc : sequence of points, optional
        Observation coordinates already resolved from mesh nodes.
    """

    def __init__(
        self,
        mesh: TriangularMesh,
        regression_data: RegressionData,
        mesh_loc: Sequence[NDArray[np.floating]] = (),
    ) -> None:
        self.mesh = mesh
        self.regression_data = regression_data

        self._psi = observation_matrix(mesh, regression_data, mesh_loc)
        self._z = regression_data.observations.copy()
        self._W = regression_data.covariates
        if self._W is not None:
            self._WtW_inv = np.linalg.inv(self._W.T @ self._W)

        K, b, c = regression_data.pde_coefficients()
        self._kappa = K
        self._R0 = mass_matrix(mesh)
        self._R1_fixed = c * self._R0
        if np.any(b != 0.0):
            self._R1_fixed = self._R1_fixed + advection_matrix(mesh, b)

        psi_dense = self._psi.toarray()
        self._psi_t_q = self._apply_q(psi_dense).T
        self._psi_t_q_psi = sparse.csr_matrix(self._psi_t_q @ psi_dense)

        if regression_data.dirichlet_indices is not None:
            self._bc_idx = regression_data.dirichlet_indices
            self._bc_val = regression_data.dirichlet_values
        else:
            self._bc_idx = np.empty(0, dtype=np.int64)
            self._bc_val = np.empty(0)

        self.solution: List[NDArray[np.floating]] = []
        self.fits: List[RegressionFit] = []

    # ── helpers ──────────────────────────────────────────────────────

    def _apply_q(self, v: NDArray[np.floating]) -> NDArray[np.floating]:
        """Q v, with Q the projector onto the complement of the covariates."""
        if self._W is None:
            return v
        return v - self._W @ (self._WtW_inv @ (self._W.T @ v))

    def _system(self, lambda_: float, kappa: NDArray[np.floating]):
        R1 = stiffness_matrix(self.mesh, kappa) + self._R1_fixed
        A = sparse.bmat(
            [
                [self._psi_t_q_psi, lambda_ * R1.T],
                [lambda_ * R1, -lambda_ * self._R0],
            ],
            format="lil",
        )
        N = self.mesh.n_nodes
        for i in self._bc_idx:
            A.rows[i] = [int(i)]
            A.data[i] = [1.0]
            A.rows[N + i] = [int(N + i)]
            A.data[N + i] = [1.0]
        return A.tocsc()

    def _dof(self, lu, lambda_: float) -> float:
        rd = self.regression_data
        N = self.mesh.n_nodes
        n = rd.n_observations
        if rd.gcv_method == "exact":
            rhs = np.zeros((2 * N, n))
            rhs[:N] = self._psi_t_q
            rhs[self._bc_idx] = 0.0
            X = lu.solve(rhs)
            trace = float(np.trace(self._psi @ X[:N]))
        else:
            rng = np.random.default_rng(rd.seed)
            U = rng.choice([-1.0, 1.0], size=(n, rd.n_realizations))
            rhs = np.zeros((2 * N, rd.n_realizations))
            rhs[:N] = self._psi_t_q @ U
            rhs[self._bc_idx] = 0.0
            X = lu.solve(rhs)
            trace = float(np.mean(np.sum(U * (self._psi @ X[:N]), axis=0)))
        return trace + rd.n_covariates

    # ── public API ───────────────────────────────────────────────────

    def solve(
        self,
        lambda_: float,
        kappa: Optional[NDArray[np.floating]] = None,
        compute_dof: bool = False,
    ) -> RegressionFit:
        """Fit the field for one λ.

        Parameters
        ----------
        lambda_ : float
        kappa : ndarray, shape ``(2, 2)``, optional
            Diffusion tensor overriding the one carried by the data.
        compute_dof : bool
            Also compute degrees of freedom and the GCV score.
        """
        K = self._kappa if kappa is None else np.asarray(kappa, dtype=np.float64)
        N = self.mesh.n_nodes
        n = self.regression_data.n_observations

        lu = splu(self._system(lambda_, K))
        rhs = np.zeros(2 * N)
        rhs[:N] = self._psi_t_q @ self._z
        rhs[self._bc_idx] = self._bc_val
        rhs[N + self._bc_idx] = 0.0
        f = lu.solve(rhs)[:N]

        psi_f = self._psi @ f
        beta = None
        fitted = psi_f
        if self._W is not None:
            beta = self._WtW_inv @ (self._W.T @ (self._z - psi_f))
            fitted = psi_f + self._W @ beta
        sse = float(np.sum((self._z - fitted) ** 2))

        dof = gcv = float("nan")
        if compute_dof:
            dof = self._dof(lu, lambda_)
            # a smoother with n degrees of freedom interpolates: no score
            gcv = n * sse / (n - dof) ** 2 if dof < n else float("inf")

        return RegressionFit(
            lambda_=float(lambda_),
            coefficients=f,
            fitted=fitted,
            beta=beta,
            sse=sse,
            dof=dof,
            gcv=gcv,
        )

    def apply(self) -> None:
        """Solve for every λ of the data's current sequence."""
        rd = self.regression_data
        self.fits = [
            self.solve(lam, compute_dof=rd.compute_dof) for lam in rd.lambdas
        ]
        self.solution = [fit.coefficients for fit in self.fits]

    def fit(self) -> List[NDArray[np.floating]]:
        """Run :meth:`apply` and return the coefficient vectors."""
        self.apply()
        return self.solution

    @property
    def dof(self) -> NDArray[np.floating]:
        return np.array([fit.dof for fit in self.fits])

    @property
    def gcv(self) -> NDArray[np.floating]:
        return np.array([fit.gcv for fit in self.fits])
