"""
Regression data containers.

A regression-data object gathers everything the penalised finite-element
regression needs besides the mesh: observations and where they were
taken, the regularisation values to fit, optional covariates and
Dirichlet boundary data, and the cross-validation settings.

Two variants exist:

* :class:`RegressionData` — Laplacian penalty (K = I, no transport,
  no reaction).
* :class:`RegressionDataElliptic` — general constant-coefficient elliptic
  penalty ``-div(K ∇f) + b·∇f + c f`` whose diffusion tensor K is what
  anisotropic smoothing estimates.

The containers are deliberately mutable: the anisotropic smoothing
orchestrator re-targets λ, K and the DOF flag in place between steps.
:meth:`RegressionData.copy` produces independent snapshots instead.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

GCV_METHODS = ("exact", "stochastic")


def _optional_array(value, dtype, ndim: int) -> Optional[NDArray]:
    if value is None:
        return None
    arr = np.array(value, dtype=dtype)
    if arr.size == 0:
        return None
    if ndim == 2 and arr.ndim == 1:
        arr = arr[:, np.newaxis]
    return arr


@dataclass
class RegressionData:
    """Observations and fitting options for a Laplacian-penalised regression.

    Parameters
    ----------
    observations : ndarray, shape ``(n,)``
    lambdas : sequence of float
        Regularisation values to fit (non-empty, positive).
    locations : ndarray, shape ``(n, 2)``, optional
        Observation coordinates.  Leave empty when observations sit on
        mesh nodes and give *observation_indices* instead.
    observation_indices : ndarray, shape ``(n,)``, optional
        Mesh node of each observation (locations by nodes).
    order : int
        Finite-element order; only linear elements (1) are supported.
    covariates : ndarray, shape ``(n, q)``, optional
    dirichlet_indices, dirichlet_values : ndarray, optional
        Nodes with prescribed values and the values themselves.
    compute_dof : bool
        Whether the regression computes degrees of freedom (and GCV).
    gcv_method : {"exact", "stochastic"}
    n_realizations : int
        Number of random probes for the stochastic DOF estimate.
    seed : int
        Seed of the stochastic DOF probes.
    """

    observations: NDArray[np.floating]
    lambdas: Sequence[float]
    locations: Optional[NDArray[np.floating]] = None
    observation_indices: Optional[NDArray[np.integer]] = None
    order: int = 1
    covariates: Optional[NDArray[np.floating]] = None
    dirichlet_indices: Optional[NDArray[np.integer]] = None
    dirichlet_values: Optional[NDArray[np.floating]] = None
    compute_dof: bool = False
    gcv_method: str = "exact"
    n_realizations: int = 100
    seed: int = 0

    def __post_init__(self) -> None:
        self.observations = np.array(self.observations, dtype=np.float64).ravel()
        n = self.observations.shape[0]
        if n == 0:
            raise ValueError("No observations given.")

        self.set_lambda(self.lambdas)

        self.locations = _optional_array(self.locations, np.float64, 2)
        self.observation_indices = _optional_array(
            self.observation_indices, np.int64, 1
        )
        if self.observation_indices is not None:
            self.observation_indices = self.observation_indices.ravel()

        if self.locations is None and self.observation_indices is None:
            raise ValueError(
                "Either locations or observation_indices must be provided."
            )
        if self.locations is not None:
            if self.locations.shape != (n, 2):
                raise ValueError(
                    f"locations must have shape ({n}, 2), "
                    f"got {self.locations.shape}"
                )
        elif self.observation_indices.shape[0] != n:
            raise ValueError(
                f"observation_indices has {self.observation_indices.shape[0]} "
                f"entries, observations has {n}."
            )

        if self.order != 1:
            raise ValueError(
                f"Only linear elements (order=1) are supported, got {self.order}."
            )

        self.covariates = _optional_array(self.covariates, np.float64, 2)
        if self.covariates is not None:
            if self.covariates.shape[0] != n:
                raise ValueError(
                    f"covariates has {self.covariates.shape[0]} rows, "
                    f"observations has {n}."
                )
            if np.linalg.matrix_rank(self.covariates) < self.covariates.shape[1]:
                raise ValueError("covariates matrix is rank deficient.")

        self.dirichlet_indices = _optional_array(
            self.dirichlet_indices, np.int64, 1
        )
        self.dirichlet_values = _optional_array(
            self.dirichlet_values, np.float64, 1
        )
        n_bc = 0 if self.dirichlet_indices is None else self.dirichlet_indices.size
        n_bv = 0 if self.dirichlet_values is None else self.dirichlet_values.size
        if n_bc != n_bv:
            raise ValueError(
                f"{n_bc} Dirichlet indices but {n_bv} Dirichlet values."
            )

        if self.gcv_method not in GCV_METHODS:
            raise ValueError(
                f"Unknown gcv_method '{self.gcv_method}'. "
                f"Available: {GCV_METHODS}"
            )
        if self.n_realizations <= 0:
            raise ValueError("n_realizations must be positive.")
        self.compute_dof = bool(self.compute_dof)

    # ── accessors ────────────────────────────────────────────────────

    @property
    def n_observations(self) -> int:
        return int(self.observations.shape[0])

    @property
    def n_covariates(self) -> int:
        return 0 if self.covariates is None else int(self.covariates.shape[1])

    @property
    def locations_by_nodes(self) -> bool:
        """True when observations are identified by mesh-node indices."""
        return self.locations is None and self.observation_indices is not None

    def pde_coefficients(
        self,
    ) -> Tuple[NDArray[np.floating], NDArray[np.floating], float]:
        """(K, b, c) of the penalty operator."""
        return np.eye(2), np.zeros(2), 0.0

    # ── mutators ─────────────────────────────────────────────────────

    def set_lambda(self, lambdas: Sequence[float]) -> None:
        values = tuple(float(v) for v in np.atleast_1d(lambdas))
        if not values:
            raise ValueError("The lambda sequence must not be empty.")
        if any(not np.isfinite(v) or v <= 0 for v in values):
            raise ValueError("All lambda values must be finite and positive.")
        self.lambdas = values

    def set_compute_dof(self, compute_dof: bool) -> None:
        self.compute_dof = bool(compute_dof)

    def copy(self, **changes) -> "RegressionData":
        """Independent snapshot, optionally with some fields replaced."""
        return dataclasses.replace(self, **changes)


@dataclass
class RegressionDataElliptic(RegressionData):
    """Regression data with a constant-coefficient elliptic penalty.

    Additional parameters
    ---------------------
    kappa : ndarray, shape ``(2, 2)``
        Diffusion tensor K (symmetric positive definite).
    beta : ndarray, shape ``(2,)``
        Advection field b.
    c : float
        Reaction coefficient.
    """

    kappa: NDArray[np.floating] = field(default_factory=lambda: np.eye(2))
    beta: NDArray[np.floating] = field(default_factory=lambda: np.zeros(2))
    c: float = 0.0

    def __post_init__(self) -> None:
        super().__post_init__()
        self.set_kappa(self.kappa)
        self.beta = np.array(self.beta, dtype=np.float64).ravel()
        if self.beta.shape != (2,):
            raise ValueError(f"beta must have 2 components, got {self.beta.shape}")
        self.c = float(self.c)

    def set_kappa(self, kappa: NDArray[np.floating]) -> None:
        K = np.array(kappa, dtype=np.float64)
        if K.shape != (2, 2):
            raise ValueError(f"kappa must be 2x2, got shape {K.shape}")
        if not np.allclose(K, K.T):
            raise ValueError("kappa must be symmetric.")
        self.kappa = K

    def pde_coefficients(
        self,
    ) -> Tuple[NDArray[np.floating], NDArray[np.floating], float]:
        return self.kappa.copy(), self.beta.copy(), self.c
