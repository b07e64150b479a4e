"""
Bounded quasi-Newton solver (L-BFGS-B) for the anisotropy energy.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import OptimizeResult, minimize

#: SciPy ``L-BFGS-B`` options used unless overridden.
DEFAULT_OPTIONS: Dict[str, Any] = {
    "maxcor": 10,
    "ftol": 1e-10,
    "gtol": 1e-6,
    "maxiter": 1000,
    "maxfun": 15000,
    "maxls": 20,
}


class LbfgsbSolver:
    """Box-constrained minimiser.

    The problem must provide ``objective_and_gradient(x) -> (f, g)``.
    Non-convergence is not reported as an error: the last iterate is
    returned and the full :class:`scipy.optimize.OptimizeResult` is kept
    in :attr:`last_result`.
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None) -> None:
        self.options = dict(DEFAULT_OPTIONS)
        if options:
            self.options.update(options)
        self.last_result: Optional[OptimizeResult] = None

    def minimize(
        self,
        problem,
        x0: NDArray[np.floating],
        lower: NDArray[np.floating],
        upper: NDArray[np.floating],
    ) -> NDArray[np.floating]:
        """Minimise *problem* over ``[lower, upper]`` starting from *x0*.

        Returns a new array; *x0* is left untouched.
        """
        x0 = np.clip(np.asarray(x0, dtype=np.float64), lower, upper)
        result = minimize(
            problem.objective_and_gradient,
            x0,
            jac=True,
            method="L-BFGS-B",
            bounds=list(zip(lower, upper)),
            options=self.options,
        )
        self.last_result = result
        return np.asarray(result.x, dtype=np.float64).copy()
