"""
Generalized Procrustes Analysis (GPA) functions.

This module provides functions for performing Generalized Procrustes Analysis
on 2D or 3D landmark data, including centering, scaling, rotation, sliding of
semilandmarks, principal-axes orientation and tangent-space projection.

Based on Dryden and Mardia (2016) "Statistical Shape Analysis" and
Rohlf and Slice (1990).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import scipy.linalg as sp

from morphosets.errors import StructuralMismatch
from morphosets.sliding import (
    SLIDING_CRITERIA,
    slide_semilandmarks,
    validate_curves,
    validate_surfaces,
)

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GPAResult:
    """Result of Generalized Procrustes Analysis.

    Attributes:
        aligned: Aligned landmark coordinates, shape (n_landmarks, n_dims, n_specimens)
        mean_shape: Mean shape after alignment, shape (n_landmarks, n_dims)
        centroid_sizes: Centroid size of each specimen before alignment
        iterations: Number of refinement iterations performed
    """

    aligned: NDArray[np.floating]
    mean_shape: NDArray[np.floating]
    centroid_sizes: NDArray[np.floating]
    iterations: int = 0


@dataclass(frozen=True)
class GPAOptions:
    """Settings for one GPA run.

    Attributes:
        scale: Scale specimens to unit centroid size (shape coordinates).
            If False, size-and-shape coordinates are returned.
        curves: Curve semilandmarks as rows of (before, slider, after)
            landmark indices, 0-based
        surfaces: Indices of semilandmarks that slide on surfaces (3D only)
        principal_axes: Rotate the result to the principal axes of the consensus
        max_iterations: Maximum number of refinement iterations
        tolerance: Convergence threshold for the change in consensus
        sliding_criterion: "procrustes" or "bending_energy"
        projection: Project aligned coordinates onto the tangent space of
            the consensus (scaled analyses only)
    """

    scale: bool = True
    curves: Any = None
    surfaces: Any = None
    principal_axes: bool = True
    max_iterations: int = 10
    tolerance: float = 0.0001
    sliding_criterion: str = "procrustes"
    projection: bool = True

    def __post_init__(self) -> None:
        if self.sliding_criterion not in SLIDING_CRITERIA:
            raise ValueError(
                f"Unknown sliding criterion: {self.sliding_criterion!r}. "
                f"Expected one of {SLIDING_CRITERIA}"
            )
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")

    def run(self, landmarks: ArrayLike) -> GPAResult:
        """Run GPA on ``landmarks`` with these settings."""
        return generalized_procrustes(
            landmarks,
            scale=self.scale,
            max_iterations=self.max_iterations,
            tolerance=self.tolerance,
            curves=self.curves,
            surfaces=self.surfaces,
            sliding_criterion=self.sliding_criterion,
            principal_axes=self.principal_axes,
            projection=self.projection,
        )


def as_landmark_array(
    landmarks: ArrayLike,
    name: str | None = None,
) -> NDArray[np.floating]:
    """Convert input to a float (n_landmarks, n_dims, n_specimens) array.

    Args:
        landmarks: Array-like landmark coordinates
        name: Subset name, used in error messages

    Raises:
        StructuralMismatch: If the array is not 3-dimensional or n_dims is
            not 2 or 3
    """
    subsets = (name,) if name is not None else ()
    array = np.asarray(landmarks, dtype=float)
    if array.ndim != 3:
        raise StructuralMismatch(
            "Coordinates must be a (n_landmarks, n_dims, n_specimens) array, "
            f"got {array.ndim} dimension(s)",
            subsets,
        )
    if array.shape[1] not in (2, 3):
        raise StructuralMismatch(
            f"Landmarks must have 2 or 3 coordinates, got {array.shape[1]}",
            subsets,
        )
    return array


def center(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Center a shape by subtracting the centroid.

    Args:
        shape: Landmark coordinates, shape (n_landmarks, n_dims)

    Returns:
        Centered shape with centroid at origin
    """
    return shape - shape.mean(axis=0)


def scale(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Scale a shape to unit centroid size (Frobenius norm).

    Args:
        shape: Landmark coordinates, shape (n_landmarks, n_dims)

    Returns:
        Scaled shape with unit centroid size
    """
    norm = np.linalg.norm(shape)
    if norm == 0:
        return shape
    return shape / norm


def centroid_size(shape: NDArray[np.floating]) -> float:
    """Compute the centroid size of a shape.

    Centroid size is the square root of the sum of squared distances
    from each landmark to the centroid.

    Args:
        shape: Landmark coordinates, shape (n_landmarks, n_dims)

    Returns:
        Centroid size (scalar)
    """
    return float(np.linalg.norm(center(shape)))


def align(
    shape: NDArray[np.floating],
    reference: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Rotate a shape onto a reference shape.

    The rotation minimising the Procrustes distance is found by Singular
    Value Decomposition; reflections are excluded.

    Args:
        shape: Shape to align, shape (n_landmarks, n_dims)
        reference: Reference shape to align to, shape (n_landmarks, n_dims)

    Returns:
        Rotated shape aligned to reference
    """
    u, _, vt = sp.svd(np.dot(reference.T, shape))
    rotation = np.dot(vt.T, u.T)
    if np.linalg.det(rotation) < 0:
        vt[-1] *= -1
        rotation = np.dot(vt.T, u.T)
    return np.dot(shape, rotation)


def mean_shape(landmarks: NDArray[np.floating]) -> NDArray[np.floating]:
    """Compute the mean shape from multiple specimens.

    Args:
        landmarks: Landmark coordinates, shape (n_landmarks, n_dims, n_specimens)

    Returns:
        Mean shape, shape (n_landmarks, n_dims)
    """
    return landmarks.mean(axis=2)


def procrustes_distance(
    landmarks: NDArray[np.floating],
    reference: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Compute Procrustes distances from each specimen to a reference shape.

    Args:
        landmarks: Aligned coordinates, shape (n_landmarks, n_dims, n_specimens)
        reference: Reference shape (e.g. mean), shape (n_landmarks, n_dims)

    Returns:
        Array of Procrustes distances, shape (n_specimens,)
    """
    diff = landmarks - reference[:, :, np.newaxis]
    return np.linalg.norm(diff, axis=(0, 1))


def principal_axes_rotation(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Rotation matrix taking a shape onto its principal axes.

    Right-multiplying the centered shape by the result puts its direction of
    greatest variation on the first coordinate axis.

    Args:
        shape: Landmark coordinates, shape (n_landmarks, n_dims)

    Returns:
        Proper rotation matrix, shape (n_dims, n_dims)
    """
    _, _, vt = sp.svd(center(shape))
    rotation = vt.T.copy()
    if np.linalg.det(rotation) < 0:
        rotation[:, -1] *= -1
    return rotation


def project_to_tangent_space(
    landmarks: NDArray[np.floating],
    reference: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Orthogonally project aligned specimens onto the tangent space.

    The tangent space is the hyperplane touching the shape space at the
    reference (normally the consensus) shape.

    Args:
        landmarks: Aligned coordinates, shape (n_landmarks, n_dims, n_specimens)
        reference: Reference shape, shape (n_landmarks, n_dims)

    Returns:
        Projected coordinates, same shape as ``landmarks``
    """
    n_landmarks, n_dims, n_specimens = landmarks.shape
    ref = _scale_shape(reference).reshape(-1)
    flat = landmarks.transpose(2, 0, 1).reshape(n_specimens, -1)
    projected = flat - np.outer(flat @ ref, ref) + ref
    return projected.reshape(n_specimens, n_landmarks, n_dims).transpose(1, 2, 0)


def generalized_procrustes(
    landmarks: ArrayLike,
    scale: bool = True,
    max_iterations: int = 10,
    tolerance: float = 0.0001,
    curves: ArrayLike | None = None,
    surfaces: ArrayLike | None = None,
    sliding_criterion: str = "procrustes",
    principal_axes: bool = True,
    projection: bool = True,
) -> GPAResult:
    """Perform Generalized Procrustes Analysis on a set of landmark configurations.

    This function aligns multiple specimen landmark configurations to minimize
    the total Procrustes distance. The algorithm iteratively:
    1. Slides semilandmarks against the current mean shape (if any are given),
       starting from each specimen's unslid configuration so that slides do
       not accumulate across iterations
    2. Centers (and optionally scales) each specimen
    3. Aligns all specimens to the current mean shape
    4. Recomputes the mean shape
    5. Repeats until convergence

    Args:
        landmarks: Landmark coordinates, shape (n_landmarks, n_dims, n_specimens).
            Will be copied, not modified in place.
        scale: If True (default), scale specimens to unit centroid size.
            If False, perform Boas coordinates (no scaling).
        max_iterations: Maximum number of alignment iterations
        tolerance: Convergence threshold for mean shape change
        curves: Optional (m, 3) array of (before, slider, after) indices
            for curve semilandmarks
        surfaces: Optional indices of surface semilandmarks (3D only)
        sliding_criterion: "procrustes" or "bending_energy"
        principal_axes: Rotate the result to the principal axes of the mean
        projection: Project onto the tangent space of the mean (only when
            ``scale`` is True)

    Returns:
        GPAResult containing aligned coordinates, mean shape, and centroid sizes

    Raises:
        StructuralMismatch: If ``landmarks`` is not a well-formed landmark array
        ValueError: If the sliding definition is invalid
    """
    aligned = as_landmark_array(landmarks).copy()
    n_landmarks, n_dims, n_specimens = aligned.shape

    if sliding_criterion not in SLIDING_CRITERIA:
        raise ValueError(
            f"Unknown sliding criterion: {sliding_criterion!r}. "
            f"Expected one of {SLIDING_CRITERIA}"
        )
    curves = validate_curves(curves, n_landmarks)
    surfaces = validate_surfaces(surfaces, n_landmarks, n_dims)
    sliding = (curves is not None and len(curves) > 0) or (
        surfaces is not None and len(surfaces) > 0
    )

    # Compute centroid sizes before any transformations
    centroid_sizes = np.linalg.norm(
        aligned - aligned.mean(axis=0, keepdims=True), axis=(0, 1)
    )

    # Center (and optionally scale) each specimen
    for i in range(n_specimens):
        aligned[:, :, i] = _normalize(aligned[:, :, i], scale)

    # Semilandmarks slide from these positions every round
    outlines = aligned.copy()

    # Initial alignment to first specimen
    aligned = _procrustes_align_all(aligned[:, :, 0], aligned, scale=scale)
    current_mean = _normalize(mean_shape(aligned), scale)

    iterations = 0
    for iterations in range(1, max_iterations + 1):
        if sliding:
            for i in range(n_specimens):
                slid = slide_semilandmarks(
                    align(outlines[:, :, i], current_mean),
                    current_mean,
                    curves=curves,
                    surfaces=surfaces,
                    criterion=sliding_criterion,
                )
                aligned[:, :, i] = _normalize(slid, scale)

        aligned = _procrustes_align_all(current_mean, aligned, scale=scale)
        new_mean = _normalize(mean_shape(aligned), scale)

        diff = np.linalg.norm(current_mean - new_mean)
        current_mean = new_mean

        if diff < tolerance:
            logger.debug("GPA converged after %d iteration(s)", iterations)
            break
    else:
        if max_iterations:
            logger.debug(
                "GPA stopped at max_iterations=%d (last change %.3g)",
                max_iterations,
                diff,
            )

    # Final re-centering for no-scale case
    if not scale:
        for i in range(n_specimens):
            aligned[:, :, i] = center(aligned[:, :, i])

    if principal_axes:
        rotation = principal_axes_rotation(current_mean)
        aligned = np.einsum("pkn,kj->pjn", aligned, rotation)
        current_mean = np.dot(current_mean, rotation)

    if projection and scale:
        aligned = project_to_tangent_space(aligned, current_mean)
        current_mean = mean_shape(aligned)

    return GPAResult(
        aligned=aligned,
        mean_shape=current_mean,
        centroid_sizes=centroid_sizes,
        iterations=iterations,
    )


def _scale_shape(shape: NDArray[np.floating]) -> NDArray[np.floating]:
    """Internal scale function (avoids name collision with scale parameter)."""
    norm = np.linalg.norm(shape)
    if norm == 0:
        return shape
    return shape / norm


def _normalize(shape: NDArray[np.floating], scale: bool) -> NDArray[np.floating]:
    centered = center(shape)
    if scale:
        return _scale_shape(centered)
    return centered


def _procrustes_align_all(
    reference: NDArray[np.floating],
    landmarks: NDArray[np.floating],
    scale: bool = True,
) -> NDArray[np.floating]:
    """Align all specimens to a reference shape."""
    n_specimens = landmarks.shape[2]
    ref = _normalize(reference, scale)

    for i in range(n_specimens):
        aligned = align(landmarks[:, :, i], ref)
        if not scale:
            aligned = center(aligned)
        landmarks[:, :, i] = aligned

    return landmarks
