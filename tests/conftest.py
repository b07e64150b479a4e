"""Shared fixtures: structured meshes of the unit square and regression data on them."""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from anisosmooth import RegressionData, RegressionDataElliptic, TriangularMesh


def square_mesh(n: int = 6, length: float = 1.0) -> TriangularMesh:
    """``n × n`` cells on ``[0, length]²``, each split along its diagonal."""
    xs = np.linspace(0.0, length, n + 1)
    X, Y = np.meshgrid(xs, xs, indexing="xy")
    nodes = np.column_stack([X.ravel(), Y.ravel()])

    triangles = []
    for j in range(n):
        for i in range(n):
            a = j * (n + 1) + i
            b, c, d = a + 1, a + n + 1, a + n + 2
            triangles.append((a, b, d))
            triangles.append((a, d, c))
    return TriangularMesh(nodes, np.array(triangles))


def anisotropic_field(points: np.ndarray) -> np.ndarray:
    """Smooth test field varying much faster along x than along y."""
    return np.sin(2.0 * np.pi * points[:, 0]) + 0.2 * points[:, 1]


@pytest.fixture
def mesh() -> TriangularMesh:
    return square_mesh(6)


@pytest.fixture
def node_observations(mesh):
    rng = np.random.default_rng(0)
    return anisotropic_field(mesh.nodes) + 0.05 * rng.standard_normal(mesh.n_nodes)


@pytest.fixture
def elliptic_data(mesh, node_observations) -> RegressionDataElliptic:
    """Observations on every mesh node, two coarse λ values."""
    return RegressionDataElliptic(
        observations=node_observations,
        lambdas=[1e-2, 1e-1],
        observation_indices=np.arange(mesh.n_nodes),
    )


@pytest.fixture
def laplace_data(mesh, node_observations) -> RegressionData:
    return RegressionData(
        observations=node_observations,
        lambdas=[1e-2, 1e-1],
        observation_indices=np.arange(mesh.n_nodes),
    )


@pytest.fixture
def scattered_data(mesh) -> RegressionDataElliptic:
    """Observations at random interior points of the square."""
    rng = np.random.default_rng(1)
    locations = rng.uniform(0.05, 0.95, size=(40, 2))
    z = anisotropic_field(locations) + 0.05 * rng.standard_normal(40)
    return RegressionDataElliptic(
        observations=z,
        lambdas=[1e-2],
        locations=locations,
    )
