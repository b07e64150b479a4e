"""
Regularisation grids for anisotropic smoothing.

The fine grid scored by generalised cross-validation is fixed: 70
log-spaced base values (ten per decade, from 1e-7 up to just below 1)
rescaled by the sample size and the domain area,

    λ_j  =  v_j / (1 − v_j) · n_obs / area .

Because ``v ↦ v/(1−v)`` is increasing on (0, 1) the grid is strictly
increasing, and it scales linearly with ``n_obs``.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
from numpy.typing import NDArray


#: Base values, ``10**(j/10)`` for ``j = -70 … -1`` to 7 significant digits.
BASE_SEQUENCE: Tuple[float, ...] = (
    1.000000e-07, 1.258925e-07, 1.584893e-07, 1.995262e-07, 2.511886e-07,
    3.162278e-07, 3.981072e-07, 5.011872e-07, 6.309573e-07, 7.943282e-07,
    1.000000e-06, 1.258925e-06, 1.584893e-06, 1.995262e-06, 2.511886e-06,
    3.162278e-06, 3.981072e-06, 5.011872e-06, 6.309573e-06, 7.943282e-06,
    1.000000e-05, 1.258925e-05, 1.584893e-05, 1.995262e-05, 2.511886e-05,
    3.162278e-05, 3.981072e-05, 5.011872e-05, 6.309573e-05, 7.943282e-05,
    1.000000e-04, 1.258925e-04, 1.584893e-04, 1.995262e-04, 2.511886e-04,
    3.162278e-04, 3.981072e-04, 5.011872e-04, 6.309573e-04, 7.943282e-04,
    1.000000e-03, 1.258925e-03, 1.584893e-03, 1.995262e-03, 2.511886e-03,
    3.162278e-03, 3.981072e-03, 5.011872e-03, 6.309573e-03, 7.943282e-03,
    1.000000e-02, 1.258925e-02, 1.584893e-02, 1.995262e-02, 2.511886e-02,
    3.162278e-02, 3.981072e-02, 5.011872e-02, 6.309573e-02, 7.943282e-02,
    1.000000e-01, 1.258925e-01, 1.584893e-01, 1.995262e-01, 2.511886e-01,
    3.162278e-01, 3.981072e-01, 5.011872e-01, 6.309573e-01, 7.943282e-01,
)


def lambda_cross_val_grid(n_obs: int, area: float) -> NDArray[np.floating]:
    """Fine λ grid for GCV scoring.

    Parameters
    ----------
    n_obs : int
        Number of observations (> 0).
    area : float
        Domain area (> 0).  Positivity is the caller's responsibility.

    Returns
    -------
    lambdas : ndarray, shape ``(70,)``
        Strictly increasing positive regularisation values.
    """
    v = np.asarray(BASE_SEQUENCE, dtype=np.float64)
    return v / (1.0 - v) * (n_obs / area)
