"""
anisosmooth — anisotropic spatial smoothing over triangular meshes.

Penalised finite-element regression whose elliptic penalty has a
diffusion tensor estimated from the data.

Meshes and finite elements: linear triangles, mass / stiffness /
advection matrices, observation operators.
Regression: mixed FE system, degrees of freedom and GCV.
Anisotropy: parametrisation K(θ, k) and the energy minimised over it.
Smoothing: joint selection of anisotropy and λ by GCV, with YAML
config integration.
"""

from .mesh import TriangularMesh
from .fem import (
    advection_matrix,
    locate_points,
    mass_matrix,
    projector_matrix,
    selection_matrix,
    stiffness_matrix,
)
from .regression_data import RegressionData, RegressionDataElliptic
from .regression import MixedFERegression, RegressionFit, observation_matrix
from .grid import BASE_SEQUENCE, lambda_cross_val_grid
from .anisotropy import (
    DEFAULT_ANISO_PARAM,
    LOWER_BOUND,
    UPPER_BOUND,
    AnisotropyProblem,
    build_kappa,
    clamp_aniso_param,
)
from .gcv import GCVEvaluator
from .optimizer import DEFAULT_OPTIONS, LbfgsbSolver
from .diagnostics import DiagnosticEvent, Diagnostics
from .config import DEFAULT_CONFIG, ConfigError, load_config, resolve_config
from .smoothing import (
    AnisotropicSmoothing,
    AnisotropicSmoothingBase,
    EllipticAnisotropicSmoothing,
    IterationResult,
    SmoothingResult,
    anisotropic_smoothing,
    compute_mesh_loc,
    register_smoother,
    smoother_from_config,
)

__all__ = [
    # mesh / FE
    "TriangularMesh",
    "mass_matrix",
    "stiffness_matrix",
    "advection_matrix",
    "locate_points",
    "projector_matrix",
    "selection_matrix",
    # regression
    "RegressionData",
    "RegressionDataElliptic",
    "MixedFERegression",
    "RegressionFit",
    "observation_matrix",
    "GCVEvaluator",
    # grids
    "BASE_SEQUENCE",
    "lambda_cross_val_grid",
    # anisotropy
    "AnisotropyProblem",
    "build_kappa",
    "clamp_aniso_param",
    "DEFAULT_ANISO_PARAM",
    "LOWER_BOUND",
    "UPPER_BOUND",
    "LbfgsbSolver",
    "DEFAULT_OPTIONS",
    # smoothing
    "AnisotropicSmoothingBase",
    "AnisotropicSmoothing",
    "EllipticAnisotropicSmoothing",
    "IterationResult",
    "SmoothingResult",
    "anisotropic_smoothing",
    "register_smoother",
    "compute_mesh_loc",
    "smoother_from_config",
    # config / diagnostics
    "DEFAULT_CONFIG",
    "ConfigError",
    "load_config",
    "resolve_config",
    "Diagnostics",
    "DiagnosticEvent",
]
