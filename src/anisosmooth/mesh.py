"""
Linear triangular mesh.

Stores node coordinates and triangle connectivity and answers the
geometric queries needed by the finite-element assembly: node lookup,
element areas and the (constant) gradients of the P1 basis functions.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class TriangularMesh:
    """2-D mesh of linear triangles.

    Parameters
    ----------
    nodes : ndarray, shape ``(N, 2)``
        Node coordinates.
    triangles : ndarray, shape ``(T, 3)``
        Node indices of each triangle.
    """

    nodes: NDArray[np.floating]
    triangles: NDArray[np.integer]
    _areas: NDArray[np.floating] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        nodes = np.array(self.nodes, dtype=np.float64)
        triangles = np.array(self.triangles, dtype=np.int64)
        if nodes.ndim != 2 or nodes.shape[1] != 2:
            raise ValueError(f"nodes must have shape (N, 2), got {nodes.shape}")
        if triangles.ndim != 2 or triangles.shape[1] != 3:
            raise ValueError(
                f"triangles must have shape (T, 3), got {triangles.shape}"
            )
        if triangles.size == 0:
            raise ValueError("Mesh has no triangles.")
        if triangles.min() < 0 or triangles.max() >= nodes.shape[0]:
            raise ValueError("Triangle connectivity references unknown nodes.")

        areas = _triangle_areas(nodes[triangles])
        if np.any(areas <= 1e-14):
            raise ValueError(
                f"Found {int(np.sum(areas <= 1e-14))} degenerate triangles."
            )

        # frozen dataclass: bypass __setattr__ for the normalised arrays
        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(self, "triangles", triangles)
        object.__setattr__(self, "_areas", areas)

    # ── sizes ────────────────────────────────────────────────────────

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def n_triangles(self) -> int:
        return int(self.triangles.shape[0])

    # ── geometric queries ────────────────────────────────────────────

    def point_at(self, node_id: int) -> NDArray[np.floating]:
        """Coordinates of node *node_id*.

        Raises
        ------
        IndexError
            If *node_id* is not a valid node index.
        """
        idx = int(node_id)
        if idx < 0 or idx >= self.n_nodes:
            raise IndexError(
                f"Node id {node_id} out of range for mesh with "
                f"{self.n_nodes} nodes."
            )
        return self.nodes[idx].copy()

    def area(self) -> float:
        """Total area of the domain."""
        return float(np.sum(self._areas))

    def triangle_areas(self) -> NDArray[np.floating]:
        return self._areas.copy()

    def triangle_coords(self) -> NDArray[np.floating]:
        """Vertex coordinates of every triangle, shape ``(T, 3, 2)``."""
        return self.nodes[self.triangles]

    def centroids(self) -> NDArray[np.floating]:
        return self.triangle_coords().mean(axis=1)

    def basis_gradients(self) -> NDArray[np.floating]:
        """Gradients of the three P1 basis functions on each triangle.

        Returns
        -------
        grads : ndarray, shape ``(T, 3, 2)``
            ``grads[t, i]`` is ∇φ of local vertex *i* on triangle *t*.
        """
        tri = self.triangle_coords()
        v1, v2, v3 = tri[:, 0], tri[:, 1], tri[:, 2]

        # B = [v2 - v1, v3 - v1] maps the reference triangle onto each element
        B = np.stack([v2 - v1, v3 - v1], axis=2)
        det_B = B[:, 0, 0] * B[:, 1, 1] - B[:, 0, 1] * B[:, 1, 0]

        B_inv = np.empty_like(B)
        B_inv[:, 0, 0] = B[:, 1, 1] / det_B
        B_inv[:, 0, 1] = -B[:, 0, 1] / det_B
        B_inv[:, 1, 0] = -B[:, 1, 0] / det_B
        B_inv[:, 1, 1] = B[:, 0, 0] / det_B

        grads = np.empty((tri.shape[0], 3, 2))
        grads[:, 0, :] = -(B_inv[:, 0, :] + B_inv[:, 1, :])
        grads[:, 1, :] = B_inv[:, 0, :]
        grads[:, 2, :] = B_inv[:, 1, :]
        return grads

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"TriangularMesh(n_nodes={self.n_nodes}, "
            f"n_triangles={self.n_triangles}, area={self.area():.4g})"
        )


def _triangle_areas(tri_coords: NDArray[np.floating]) -> NDArray[np.floating]:
    v1, v2, v3 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]
    return 0.5 * np.abs(
        (v2[:, 0] - v1[:, 0]) * (v3[:, 1] - v1[:, 1])
        - (v3[:, 0] - v1[:, 0]) * (v2[:, 1] - v1[:, 1])
    )
