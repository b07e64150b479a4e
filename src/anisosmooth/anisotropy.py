"""
Anisotropy parametrisation and the energy minimised over it.

The diffusion tensor of the elliptic penalty is described by two numbers:
the orientation angle θ ∈ [0, π] of the preferred direction and the
intensity k ∈ [1, 1000].  The tensor is

.. math::

    K(θ, k) = R(θ)\\,\\mathrm{diag}(1/\\sqrt{k},\\ \\sqrt{k})\\,R(θ)^T

which is symmetric positive definite with unit determinant.  Since
``R(θ + π) = −R(θ)`` the tensors at θ = 0 and θ = π coincide: the angle
is periodic and both ends of the box describe the same model.

For a fixed λ, :class:`AnisotropyProblem` exposes the residual sum of
squares of the regression fitted with ``K(θ, k)`` as a function of
``(θ, k)``, together with its gradient, for a bounded quasi-Newton
solver.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .mesh import TriangularMesh
from .regression import MixedFERegression
from .regression_data import RegressionData

ANGLE_BOUNDS: Tuple[float, float] = (0.0, np.pi)
INTENSITY_BOUNDS: Tuple[float, float] = (1.0, 1000.0)

LOWER_BOUND = np.array([ANGLE_BOUNDS[0], INTENSITY_BOUNDS[0]])
UPPER_BOUND = np.array([ANGLE_BOUNDS[1], INTENSITY_BOUNDS[1]])

#: Starting point of the first outer iteration.
DEFAULT_ANISO_PARAM = np.array([np.pi / 2, 5.0])


def build_kappa(aniso_param: NDArray[np.floating]) -> NDArray[np.floating]:
    """Diffusion tensor ``K(θ, k)`` for ``aniso_param = (θ, k)``."""
    angle, intensity = float(aniso_param[0]), float(aniso_param[1])
    Q = np.array(
        [[np.cos(angle), -np.sin(angle)],
         [np.sin(angle), np.cos(angle)]]
    )
    sigma = np.diag([1.0 / np.sqrt(intensity), np.sqrt(intensity)])
    K = Q @ sigma @ Q.T
    return 0.5 * (K + K.T)


def clamp_aniso_param(aniso_param: NDArray[np.floating]) -> NDArray[np.floating]:
    """Component-wise projection onto ``[0, π] × [1, 1000]``."""
    return np.minimum(np.maximum(aniso_param, LOWER_BOUND), UPPER_BOUND)


class AnisotropyProblem:
    """Anisotropy energy for a fixed regularisation value.

    Parameters
    ----------
    mesh : TriangularMesh
    mesh_loc : sequence of points
        Observation coordinates resolved from mesh nodes (may be empty).
    regression_data : RegressionData
        Must carry exactly one λ.
    fd_step : float
        Relative step of the central finite-difference gradient.
    """

    build_kappa = staticmethod(build_kappa)

    def __init__(
        self,
        mesh: TriangularMesh,
        mesh_loc: Sequence[NDArray[np.floating]],
        regression_data: RegressionData,
        fd_step: float = 1e-6,
    ) -> None:
        if len(regression_data.lambdas) != 1:
            raise ValueError(
                "AnisotropyProblem needs a single lambda, got "
                f"{len(regression_data.lambdas)}."
            )
        self.lambda_ = regression_data.lambdas[0]
        self.fd_step = fd_step
        self._regression = MixedFERegression(mesh, regression_data, mesh_loc)
        self.n_evaluations = 0

    def value(self, aniso_param: NDArray[np.floating]) -> float:
        """Residual sum of squares of the fit with ``K(aniso_param)``."""
        self.n_evaluations += 1
        fit = self._regression.solve(self.lambda_, kappa=build_kappa(aniso_param))
        return fit.sse

    def gradient(self, aniso_param: NDArray[np.floating]) -> NDArray[np.floating]:
        x = np.asarray(aniso_param, dtype=np.float64)
        grad = np.empty_like(x)
        for i in range(x.shape[0]):
            h = self.fd_step * max(1.0, abs(x[i]))
            xp, xm = x.copy(), x.copy()
            xp[i] += h
            xm[i] -= h
            grad[i] = (self.value(xp) - self.value(xm)) / (2.0 * h)
        return grad

    def objective_and_gradient(
        self,
        aniso_param: NDArray[np.floating],
    ) -> Tuple[float, NDArray[np.floating]]:
        return self.value(aniso_param), self.gradient(aniso_param)

    def is_valid(self, aniso_param: NDArray[np.floating]) -> bool:
        """True when the parameter is finite and inside the admissible box."""
        x = np.asarray(aniso_param, dtype=np.float64)
        return bool(
            np.all(np.isfinite(x))
            and np.all(x >= LOWER_BOUND)
            and np.all(x <= UPPER_BOUND)
        )
