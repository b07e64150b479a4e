"""
Finite-element matrices on a linear triangular mesh.

All matrices are assembled element-by-element in vectorised form: for
each pair of local vertices ``(i, j)`` the contributions of every
triangle are written at once, then duplicates are summed by the
COO → CSR conversion.

* **Mass**        R0[i, j] = ∫ φ_i φ_j
* **Stiffness**   R1[i, j] = ∫ (K ∇φ_j) · ∇φ_i
* **Advection**   A[i, j]  = ∫ φ_i (b · ∇φ_j)
* **Projector**   Ψ[k, j]  = φ_j(p_k)
"""

from __future__ import annotations

import warnings
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.spatial import KDTree

from .mesh import TriangularMesh


def _assemble(
    mesh: TriangularMesh,
    local: NDArray[np.floating],
) -> sparse.csr_matrix:
    """Scatter per-element ``(T, 3, 3)`` local matrices into a global CSR."""
    tri = mesh.triangles
    n = mesh.n_nodes
    rows = np.repeat(tri[:, :, np.newaxis], 3, axis=2).ravel()
    cols = np.repeat(tri[:, np.newaxis, :], 3, axis=1).ravel()
    M = sparse.coo_matrix((local.ravel(), (rows, cols)), shape=(n, n))
    M = M.tocsr()
    M.eliminate_zeros()
    return M


def mass_matrix(mesh: TriangularMesh) -> sparse.csr_matrix:
    """P1 mass matrix: area/6 on the diagonal, area/12 off it."""
    areas = mesh.triangle_areas()
    local = np.empty((mesh.n_triangles, 3, 3))
    local[:] = (areas / 12.0)[:, np.newaxis, np.newaxis]
    idx = np.arange(3)
    local[:, idx, idx] = (areas / 6.0)[:, np.newaxis]
    return _assemble(mesh, local)


def stiffness_matrix(
    mesh: TriangularMesh,
    kappa: Optional[NDArray[np.floating]] = None,
) -> sparse.csr_matrix:
    """Anisotropic stiffness matrix for a constant diffusion tensor.

    Parameters
    ----------
    mesh : TriangularMesh
    kappa : ndarray, shape ``(2, 2)``, optional
        Diffusion tensor K.  Identity (Laplacian) when omitted.
    """
    K = np.eye(2) if kappa is None else np.asarray(kappa, dtype=np.float64)
    if K.shape != (2, 2):
        raise ValueError(f"kappa must be 2x2, got shape {K.shape}")
    grads = mesh.basis_gradients()
    areas = mesh.triangle_areas()
    # local[t, i, j] = area_t * grad_i · K grad_j
    K_grads = np.einsum("ab,tjb->tja", K, grads)
    local = np.einsum("tia,tja->tij", grads, K_grads) * areas[:, None, None]
    return _assemble(mesh, local)


def advection_matrix(
    mesh: TriangularMesh,
    beta: NDArray[np.floating],
) -> sparse.csr_matrix:
    """Transport term for a constant advection field *beta*."""
    b = np.asarray(beta, dtype=np.float64).ravel()
    if b.shape != (2,):
        raise ValueError(f"beta must have 2 components, got shape {b.shape}")
    grads = mesh.basis_gradients()
    areas = mesh.triangle_areas()
    # ∫ φ_i = area / 3 on a linear triangle, b·∇φ_j is constant per element
    b_dot = grads @ b
    local = (areas / 3.0)[:, None, None] * np.repeat(
        b_dot[:, np.newaxis, :], 3, axis=1
    )
    return _assemble(mesh, local)


# ═══════════════════════════════════════════════════════════════════
#  Observation operators
# ═══════════════════════════════════════════════════════════════════

def _barycentric(
    points: NDArray[np.floating],
    tri_verts: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Barycentric coordinates of ``points[k]`` w.r.t. ``tri_verts[k]``."""
    v1, v2, v3 = tri_verts[..., 0, :], tri_verts[..., 1, :], tri_verts[..., 2, :]

    def signed_area(p1, p2, p3):
        return 0.5 * (
            (p2[..., 0] - p1[..., 0]) * (p3[..., 1] - p1[..., 1])
            - (p3[..., 0] - p1[..., 0]) * (p2[..., 1] - p1[..., 1])
        )

    total = signed_area(v1, v2, v3)
    return np.stack(
        [
            signed_area(points, v2, v3) / total,
            signed_area(v1, points, v3) / total,
            signed_area(v1, v2, points) / total,
        ],
        axis=-1,
    )


def locate_points(
    mesh: TriangularMesh,
    points: NDArray[np.floating],
    tol: float = 1e-10,
) -> NDArray[np.integer]:
    """Index of the triangle containing each point.

    Points outside every triangle are assigned the triangle with the
    nearest centroid.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    tri = mesh.triangle_coords()
    found = np.full(pts.shape[0], -1, dtype=np.int64)

    for k, p in enumerate(pts):
        bary = _barycentric(np.broadcast_to(p, (tri.shape[0], 2)), tri)
        inside = np.flatnonzero(np.all(bary >= -tol, axis=1))
        if inside.size:
            found[k] = inside[0]

    outside = found < 0
    n_outside = int(np.sum(outside))
    if n_outside:
        if n_outside > 0.1 * pts.shape[0]:
            warnings.warn(
                f"{n_outside} observation points outside mesh",
                RuntimeWarning,
                stacklevel=2,
            )
        tree = KDTree(mesh.centroids())
        _, nearest = tree.query(pts[outside])
        found[outside] = nearest
    return found


def projector_matrix(
    mesh: TriangularMesh,
    points: NDArray[np.floating],
) -> sparse.csr_matrix:
    """Ψ with ``Ψ[k, j] = φ_j(points[k])``, shape ``(n_points, N)``."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    simplex = locate_points(mesh, pts)
    bary = _barycentric(pts, mesh.nodes[mesh.triangles[simplex]])
    bary = bary / bary.sum(axis=1, keepdims=True)

    rows = np.repeat(np.arange(pts.shape[0]), 3)
    cols = mesh.triangles[simplex].ravel()
    vals = bary.ravel()
    keep = np.abs(vals) > 1e-12
    return sparse.csr_matrix(
        (vals[keep], (rows[keep], cols[keep])),
        shape=(pts.shape[0], mesh.n_nodes),
    )


def selection_matrix(
    n_nodes: int,
    indices: Sequence[int],
) -> sparse.csr_matrix:
    """Ψ for observations located exactly at mesh nodes."""
    idx = np.asarray(indices, dtype=np.int64).ravel()
    if idx.size and (idx.min() < 0 or idx.max() >= n_nodes):
        raise IndexError("Observation index out of range for the mesh.")
    return sparse.csr_matrix(
        (np.ones(idx.size), (np.arange(idx.size), idx)),
        shape=(idx.size, n_nodes),
    )
