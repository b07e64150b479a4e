"""
Generalised cross-validation over a batch of regularisation values.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from .mesh import TriangularMesh
from .regression import MixedFERegression
from .regression_data import RegressionData


class GCVEvaluator:
    """GCV score for every λ in the data's current sequence.

    The regressions are solved at construction with the diffusion tensor,
    λ sequence and DOF flag the data carries *at that moment*, so the
    caller may restore or change the data right afterwards.
    """

    def __init__(
        self,
        mesh: TriangularMesh,
        mesh_loc: Sequence[NDArray[np.floating]],
        regression_data: RegressionData,
    ) -> None:
        self.lambdas = np.asarray(regression_data.lambdas, dtype=np.float64)
        regression = MixedFERegression(mesh, regression_data, mesh_loc)
        regression.apply()
        self._gcv = regression.gcv
        self._dof = regression.dof

    def scores(self) -> NDArray[np.floating]:
        """One GCV value per λ (NaN where DOF were not computed)."""
        return self._gcv.copy()

    @property
    def dof(self) -> NDArray[np.floating]:
        return self._dof.copy()
