"""
Sliding semilandmarks along curves and surfaces.

Semilandmarks carry no homologous position along their curve or surface,
so during GPA they are slid along their tangent directions until they
minimise either the squared Procrustes distance or the thin-plate spline
bending energy relative to the current consensus.

Based on Bookstein (1997) and Gunz, Mitteroecker & Bookstein (2005).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sp
from scipy.spatial import cKDTree
from scipy.spatial.distance import cdist

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

SLIDING_CRITERIA = ("procrustes", "bending_energy")

# Neighbours used to estimate the tangent plane of a surface semilandmark
SURFACE_NEIGHBORS = 5

# Largest slide of a curve semilandmark per step, as a fraction of the
# distance to each neighbour along its tangent
MAX_CURVE_STEP = 0.4


def validate_curves(
    curves: ArrayLike | None,
    n_landmarks: int,
) -> NDArray[np.intp] | None:
    """Check and normalise a curve-slider definition.

    Args:
        curves: Rows of (before, slider, after) landmark indices, 0-based
        n_landmarks: Number of landmarks in the configuration

    Returns:
        Integer array of shape (m, 3), or None when no curves are given

    Raises:
        ValueError: If the array is not (m, 3) or an index is out of range
    """
    if curves is None:
        return None
    curves = np.asarray(curves, dtype=np.intp)
    if curves.ndim == 1 and curves.size == 3:
        curves = curves.reshape(1, 3)
    if curves.ndim != 2 or curves.shape[1] != 3:
        raise ValueError(
            "Curves must be an (m, 3) array of (before, slider, after) indices, "
            f"got shape {curves.shape}"
        )
    if curves.size and (curves.min() < 0 or curves.max() >= n_landmarks):
        raise ValueError(
            f"Curve indices must lie in [0, {n_landmarks - 1}], "
            f"got range [{curves.min()}, {curves.max()}]"
        )
    return curves


def validate_surfaces(
    surfaces: ArrayLike | None,
    n_landmarks: int,
    n_dims: int,
) -> NDArray[np.intp] | None:
    """Check and normalise the indices of surface semilandmarks.

    Raises:
        ValueError: For 2D data, or when an index is out of range
    """
    if surfaces is None:
        return None
    surfaces = np.unique(np.asarray(surfaces, dtype=np.intp).ravel())
    if surfaces.size == 0:
        return surfaces
    if n_dims != 3:
        raise ValueError("Surface semilandmarks require 3D landmarks")
    if n_landmarks < 3:
        raise ValueError("Surface sliding needs at least 3 landmarks")
    if surfaces.min() < 0 or surfaces.max() >= n_landmarks:
        raise ValueError(
            f"Surface indices must lie in [0, {n_landmarks - 1}], "
            f"got range [{surfaces.min()}, {surfaces.max()}]"
        )
    return surfaces


def curve_tangents(
    shape: NDArray[np.floating],
    curves: NDArray[np.intp],
) -> NDArray[np.floating]:
    """Unit tangent of each curve semilandmark.

    The tangent is the direction from the preceding to the following point.
    Degenerate tangents (coincident neighbours) are returned as zero vectors.

    Returns:
        Tangent vectors, shape (m, n_dims)
    """
    tangents = shape[curves[:, 2]] - shape[curves[:, 0]]
    norms = np.linalg.norm(tangents, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return tangents / norms


def surface_tangents(
    shape: NDArray[np.floating],
    surfaces: NDArray[np.intp],
    n_neighbors: int = SURFACE_NEIGHBORS,
) -> NDArray[np.floating]:
    """Orthonormal tangent-plane basis of each surface semilandmark.

    The plane is spanned by the two leading principal directions of the
    point and its nearest neighbours.

    Returns:
        Tangent bases, shape (m, 2, 3)
    """
    tree = cKDTree(shape)
    n_query = min(n_neighbors + 1, shape.shape[0])
    _, neighbors = tree.query(shape[surfaces], k=n_query)

    planes = np.zeros((len(surfaces), 2, 3))
    for j, idx in enumerate(neighbors):
        patch = shape[idx] - shape[idx].mean(axis=0)
        _, _, vt = sp.svd(patch)
        planes[j] = vt[:2]
    return planes


def bending_energy_matrix(reference: NDArray[np.floating]) -> NDArray[np.floating]:
    """Thin-plate spline bending energy matrix of a reference configuration.

    Uses the kernel U(r) = r^2 log r^2 in 2D and U(r) = r in 3D.

    Args:
        reference: Landmark coordinates, shape (n_landmarks, n_dims)

    Returns:
        Bending energy matrix, shape (n_landmarks, n_landmarks)
    """
    n_landmarks, n_dims = reference.shape
    r = cdist(reference, reference)
    if n_dims == 2:
        with np.errstate(divide="ignore", invalid="ignore"):
            kernel = np.where(r > 0, r**2 * np.log(r**2), 0.0)
    else:
        kernel = r

    affine = np.hstack([np.ones((n_landmarks, 1)), reference])
    size = n_landmarks + n_dims + 1
    system = np.zeros((size, size))
    system[:n_landmarks, :n_landmarks] = kernel
    system[:n_landmarks, n_landmarks:] = affine
    system[n_landmarks:, :n_landmarks] = affine.T
    return sp.pinv(system)[:n_landmarks, :n_landmarks]


def slide_semilandmarks(
    shape: NDArray[np.floating],
    reference: NDArray[np.floating],
    curves: NDArray[np.intp] | None = None,
    surfaces: NDArray[np.intp] | None = None,
    criterion: str = "procrustes",
) -> NDArray[np.floating]:
    """Slide semilandmarks of one specimen toward a reference shape.

    Each semilandmark may only move within its tangent line (curves) or
    tangent plane (surfaces); fixed landmarks do not move. A curve
    semilandmark moves at most ``MAX_CURVE_STEP`` of the way toward either
    neighbour, so sliders keep their order along the curve.

    Args:
        shape: Specimen coordinates, shape (n_landmarks, n_dims)
        reference: Reference (consensus) shape, same shape as ``shape``
        curves: Curve sliders as returned by ``validate_curves``
        surfaces: Surface sliders as returned by ``validate_surfaces``
        criterion: "procrustes" to minimise squared Procrustes distance,
            "bending_energy" to minimise thin-plate spline bending energy

    Returns:
        Specimen with slid semilandmarks
    """
    if criterion not in SLIDING_CRITERIA:
        raise ValueError(
            f"Unknown sliding criterion: {criterion!r}. "
            f"Expected one of {SLIDING_CRITERIA}"
        )

    n_landmarks, n_dims = shape.shape
    directions = []
    n_curves = 0
    if curves is not None and len(curves):
        tangents = curve_tangents(shape, curves)
        directions.extend(zip(curves[:, 1], tangents))
        n_curves = len(curves)
    if surfaces is not None and len(surfaces):
        for index, plane in zip(surfaces, surface_tangents(shape, surfaces)):
            directions.extend((index, vector) for vector in plane)
    if not directions:
        return shape.copy()

    # Coordinates are flattened landmark by landmark: (x1, y1, [z1,] x2, ...)
    basis = np.zeros((n_landmarks * n_dims, len(directions)))
    for col, (index, vector) in enumerate(directions):
        basis[index * n_dims : (index + 1) * n_dims, col] = vector

    residual = (shape - reference).reshape(-1)
    if criterion == "bending_energy":
        weight = np.kron(bending_energy_matrix(reference), np.eye(n_dims))
        lhs = basis.T @ weight @ basis
        rhs = basis.T @ weight @ residual
    else:
        lhs = basis.T @ basis
        rhs = basis.T @ residual

    steps = sp.lstsq(lhs, rhs)[0]
    if n_curves:
        steps[:n_curves] = _limit_curve_steps(
            shape, curves, tangents, steps[:n_curves]
        )
    return shape - (basis @ steps).reshape(n_landmarks, n_dims)


def _limit_curve_steps(
    shape: NDArray[np.floating],
    curves: NDArray[np.intp],
    tangents: NDArray[np.floating],
    steps: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Clip curve steps so each slider stays between its neighbours."""
    slider = shape[curves[:, 1]]
    before = np.einsum("ij,ij->i", shape[curves[:, 0]] - slider, tangents)
    after = np.einsum("ij,ij->i", shape[curves[:, 2]] - slider, tangents)
    low = MAX_CURVE_STEP * np.minimum(np.minimum(before, after), 0.0)
    high = MAX_CURVE_STEP * np.maximum(np.maximum(before, after), 0.0)
    # A slider is displaced by -step along its tangent
    return -np.clip(-steps, low, high)
