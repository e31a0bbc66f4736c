"""
morphosets - combine landmark subsets after Generalized Procrustes Analysis.

A Python library for geometric morphometrics on 2D and 3D landmark data:
Generalized Procrustes Analysis (with sliding semilandmarks) and the
combination of landmark subsets digitized separately on the same specimens
into one configuration, scaled by relative centroid size.

Example usage:
    >>> import morphosets as ms
    >>>
    >>> # Align each subset (curve sliders differ per subset)
    >>> head = ms.generalized_procrustes(head_coords, curves=head_sliders)
    >>> tail = ms.generalized_procrustes(tail_coords, curves=tail_sliders)
    >>>
    >>> # Combine them at their actual relative sizes
    >>> combined = ms.combine_subsets({"head": head, "tail": tail})
    >>> combined.coordinates.shape
    (90, 2, 40)
    >>> combined.summary()
"""

import logging

from morphosets.combine import CombinedSet, combine_subsets
from morphosets.errors import (
    CentroidSizeCardinalityMismatch,
    CentroidSizeError,
    InsufficientSubsets,
    MorphosetsError,
    StructuralMismatch,
)
from morphosets.gpa import (
    GPAOptions,
    GPAResult,
    align,
    as_landmark_array,
    center,
    centroid_size,
    generalized_procrustes,
    mean_shape,
    principal_axes_rotation,
    procrustes_distance,
    project_to_tangent_space,
    scale,
)
from morphosets.io import (
    get_filenames,
    load_dataset,
    load_subsets,
    read_landmarks,
    write_combined,
    write_landmarks,
)
from morphosets.sliding import bending_energy_matrix, slide_semilandmarks

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Version
    "__version__",
    # Combination
    "CombinedSet",
    "combine_subsets",
    # Errors
    "MorphosetsError",
    "InsufficientSubsets",
    "StructuralMismatch",
    "CentroidSizeError",
    "CentroidSizeCardinalityMismatch",
    # GPA functions
    "GPAOptions",
    "GPAResult",
    "generalized_procrustes",
    "as_landmark_array",
    "center",
    "scale",
    "align",
    "mean_shape",
    "centroid_size",
    "procrustes_distance",
    "principal_axes_rotation",
    "project_to_tangent_space",
    # Sliding semilandmarks
    "slide_semilandmarks",
    "bending_energy_matrix",
    # I/O functions
    "read_landmarks",
    "write_landmarks",
    "load_dataset",
    "load_subsets",
    "write_combined",
    "get_filenames",
]
