"""
Combine separate landmark configurations (subsets) into one landmark set.

Landmarks digitized separately on the same specimens (for example heads and
tails photographed apart) are merged into a single configuration. Before
concatenation each subset is scaled by its share of the specimen's total
centroid size, CS_i / (CS_i + CS_j + ...), so that the combined configuration
keeps the subsets at their actual relative sizes (Davis et al. 2016). This is
analogous to the "separate subsets" method of Adams (1999) for articulated
structures.

Relative scaling needs centroid sizes: either GPA is performed on the subsets
(``gpa=True``) or sizes are supplied through ``centroid_sizes``. Without
either, all sizes are 1.0 and the subsets are simply weighted equally.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Sequence, Union

import numpy as np
import pandas as pd

from morphosets.errors import (
    CentroidSizeCardinalityMismatch,
    CentroidSizeError,
    InsufficientSubsets,
    StructuralMismatch,
)
from morphosets.gpa import GPAOptions, GPAResult, as_landmark_array

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

DIMENSION_NAMES = {2: ("X", "Y"), 3: ("X", "Y", "Z")}

SubsetInput = Union["ArrayLike", GPAResult]


@dataclass(frozen=True, eq=False)
class CombinedSet:
    """Scaled, concatenated landmark configuration built from several subsets.

    Attributes:
        coordinates: Combined coordinates, shape (n_landmarks, n_dims, n_specimens),
            subsets stacked along the landmark axis in input order
        size_matrix: Centroid size of each subset (columns) for each specimen
            (rows), either from GPA or as supplied
        relative_size_matrix: ``size_matrix`` divided by its row sums; the
            factor each subset was scaled by
        alignment_results: GPA result of each subset, or None without GPA
        per_subset_aligned_coordinates: Coordinates of each subset before
            relative scaling
        per_subset_scaled_coordinates: Coordinates of each subset after
            relative scaling
        landmark_counts_per_subset: Number of landmarks in each subset
        landmark_names: "{subset}.{i}" for every combined landmark, i from 1
        dimension_names: ("X", "Y") or ("X", "Y", "Z")
        specimen_names: Label of each specimen
    """

    coordinates: NDArray[np.floating]
    size_matrix: NDArray[np.floating]
    relative_size_matrix: NDArray[np.floating]
    alignment_results: Mapping[str, GPAResult] | None
    per_subset_aligned_coordinates: Mapping[str, NDArray[np.floating]]
    per_subset_scaled_coordinates: Mapping[str, NDArray[np.floating]]
    landmark_counts_per_subset: Mapping[str, int]
    landmark_names: tuple[str, ...]
    dimension_names: tuple[str, ...]
    specimen_names: tuple[str, ...]

    def __post_init__(self) -> None:
        arrays = [self.coordinates, self.size_matrix, self.relative_size_matrix]
        arrays.extend(self.per_subset_aligned_coordinates.values())
        arrays.extend(self.per_subset_scaled_coordinates.values())
        for result in (self.alignment_results or {}).values():
            arrays.extend([result.aligned, result.mean_shape, result.centroid_sizes])
        for array in arrays:
            array.flags.writeable = False

    @property
    def subset_names(self) -> tuple[str, ...]:
        return tuple(self.landmark_counts_per_subset)

    @property
    def n_specimens(self) -> int:
        return self.coordinates.shape[2]

    @property
    def centroid_sizes(self) -> pd.DataFrame:
        """Centroid sizes as a specimen x subset table (a new copy on each access)."""
        return self._size_table(self.size_matrix)

    @property
    def relative_centroid_sizes(self) -> pd.DataFrame:
        """Relative centroid sizes as a specimen x subset table; rows sum to 1."""
        return self._size_table(self.relative_size_matrix)

    def _size_table(self, matrix: NDArray[np.floating]) -> pd.DataFrame:
        return pd.DataFrame(
            matrix.copy(),
            index=pd.Index(self.specimen_names, name="specimen"),
            columns=pd.Index(self.subset_names, name="subset"),
        )

    def subset_coordinates(self, name: str) -> NDArray[np.floating]:
        """Block of ``coordinates`` contributed by one subset.

        Raises:
            KeyError: If ``name`` is not a subset of this set
        """
        if name not in self.landmark_counts_per_subset:
            raise KeyError(name)
        start = 0
        for subset, count in self.landmark_counts_per_subset.items():
            if subset == name:
                return self.coordinates[start : start + count]
            start += count
        raise KeyError(name)

    def summary(self) -> pd.DataFrame:
        """Per-subset landmark counts and mean (relative) centroid sizes."""
        table = pd.DataFrame(
            {
                "landmarks": pd.Series(dict(self.landmark_counts_per_subset)),
                "mean_centroid_size": self.centroid_sizes.mean(axis=0),
                "mean_relative_size": self.relative_centroid_sizes.mean(axis=0),
            }
        )
        table.index.name = "subset"
        return table


def combine_subsets(
    subsets: Mapping[str, SubsetInput],
    gpa: bool = True,
    centroid_sizes: Any = None,
    options: GPAOptions | Mapping[str, GPAOptions] | None = None,
    specimen_names: Sequence[str] | None = None,
) -> CombinedSet:
    """Combine landmark subsets into one configuration scaled by relative size.

    Args:
        subsets: Ordered mapping from subset name to either raw landmarks,
            shape (n_landmarks, n_dims, n_specimens), or a ``GPAResult``.
            Every subset must have the same specimens in the same order.
        gpa: If True, raw subsets are aligned with GPA first and their
            centroid sizes are used for scaling; ``GPAResult`` inputs are copied
            without re-alignment and options given for them are ignored.
            If False, coordinates are combined unchanged and scaled by
            ``centroid_sizes``.
        centroid_sizes: Centroid sizes used when ``gpa`` is False. One of:
            a mapping (or pandas Series) from subset name to a vector of
            sizes; a sequence of vectors in subset order; a 2D array or
            DataFrame with rows = specimens and columns = subsets; or a 3D
            array with subsets on the last axis. If None, all sizes are 1.0
            (no relative scaling).
        options: GPA settings for every raw subset, or a mapping from subset
            name to settings. Subsets absent from the mapping use defaults.
        specimen_names: Optional specimen labels, defaults to "1".."n"

    Returns:
        CombinedSet with the combined coordinates and per-subset details

    Raises:
        InsufficientSubsets: If fewer than two subsets are supplied
        StructuralMismatch: If a subset is malformed or subsets disagree in
            specimen count or number of dimensions
        CentroidSizeError: If ``centroid_sizes`` cannot be interpreted or
            contains invalid values
    """
    if not isinstance(subsets, Mapping):
        raise TypeError(
            "Subsets must be a mapping from subset name to landmarks, "
            f"got {type(subsets).__name__}"
        )
    names = list(subsets)
    if len(names) < 2:
        raise InsufficientSubsets(len(names))

    inputs = {name: _check_subset(name, subsets[name], gpa) for name in names}
    n_dims, n_specimens = _check_structure(inputs)
    specimen_labels = _specimen_labels(specimen_names, n_specimens)

    if gpa:
        option_for = _option_lookup(options, names)
        _warn_ignored_options(options, inputs)
        if centroid_sizes is not None:
            logger.warning(
                "Centroid sizes are ignored when gpa=True; sizes from GPA are used"
            )
        results = {}
        for name, value in inputs.items():
            if isinstance(value, GPAResult):
                results[name] = _copy_result(value)
            else:
                logger.info("Performing GPA on subset %r", name)
                results[name] = option_for(name).run(value)
        coords = {
            name: np.array(result.aligned, dtype=float)
            for name, result in results.items()
        }
        sizes = {
            name: np.asarray(result.centroid_sizes, dtype=float).ravel()
            for name, result in results.items()
        }
    else:
        results = None
        if options is not None:
            logger.warning("GPA options are ignored when gpa=False")
        coords = {name: np.array(value, dtype=float) for name, value in inputs.items()}
        sizes = _resolve_centroid_sizes(centroid_sizes, names, n_specimens)

    size_matrix = np.column_stack([sizes[name] for name in names])
    relative = _relative_sizes(size_matrix)

    # (p, k, n) * (n,) broadcasts over the specimen axis
    scaled = {name: coords[name] * relative[:, j] for j, name in enumerate(names)}
    combined = np.concatenate([scaled[name] for name in names], axis=0)

    counts = {name: coords[name].shape[0] for name in names}
    landmark_names = tuple(
        f"{name}.{i}" for name in names for i in range(1, counts[name] + 1)
    )

    logger.debug(
        "Combined %d subsets into %d landmarks for %d specimens",
        len(names),
        combined.shape[0],
        n_specimens,
    )

    return CombinedSet(
        coordinates=combined,
        size_matrix=size_matrix,
        relative_size_matrix=relative,
        alignment_results=MappingProxyType(results) if results is not None else None,
        per_subset_aligned_coordinates=MappingProxyType(coords),
        per_subset_scaled_coordinates=MappingProxyType(scaled),
        landmark_counts_per_subset=MappingProxyType(counts),
        landmark_names=landmark_names,
        dimension_names=DIMENSION_NAMES[n_dims],
        specimen_names=specimen_labels,
    )


def _copy_result(result: GPAResult) -> GPAResult:
    return GPAResult(
        aligned=np.array(result.aligned, dtype=float),
        mean_shape=np.array(result.mean_shape, dtype=float),
        centroid_sizes=np.array(result.centroid_sizes, dtype=float).ravel(),
        iterations=result.iterations,
    )


def _check_subset(name: str, value: SubsetInput, gpa: bool) -> SubsetInput:
    if isinstance(value, GPAResult):
        if not gpa:
            raise StructuralMismatch(
                "GPA results cannot be combined with gpa=False; "
                "pass their aligned coordinates instead",
                (name,),
            )
        aligned = as_landmark_array(value.aligned, name)
        n_sizes = np.size(value.centroid_sizes)
        if n_sizes != aligned.shape[2]:
            raise StructuralMismatch(
                f"GPA result has {n_sizes} centroid sizes "
                f"for {aligned.shape[2]} specimens",
                (name,),
            )
        return value
    return as_landmark_array(value, name)


def _check_structure(inputs: Mapping[str, SubsetInput]) -> tuple[int, int]:
    """Return the shared (n_dims, n_specimens) of all subsets."""
    shapes = {
        name: np.shape(value.aligned if isinstance(value, GPAResult) else value)
        for name, value in inputs.items()
    }
    _require_equal({name: shape[2] for name, shape in shapes.items()}, "specimens")
    _require_equal({name: shape[1] for name, shape in shapes.items()}, "dimensions")
    first = next(iter(shapes.values()))
    return first[1], first[2]


def _require_equal(values: Mapping[str, int], what: str) -> None:
    expected = next(iter(values.values()))
    offending = [name for name, value in values.items() if value != expected]
    if offending:
        detail = ", ".join(f"{name}={value}" for name, value in values.items())
        raise StructuralMismatch(
            f"Sets have different numbers of {what}: {detail}", offending
        )


def _specimen_labels(
    specimen_names: Sequence[str] | None,
    n_specimens: int,
) -> tuple[str, ...]:
    if specimen_names is None:
        return tuple(str(i) for i in range(1, n_specimens + 1))
    labels = tuple(str(name) for name in specimen_names)
    if len(labels) != n_specimens:
        raise StructuralMismatch(
            f"Got {len(labels)} specimen names for {n_specimens} specimens"
        )
    return labels


def _option_lookup(
    options: GPAOptions | Mapping[str, GPAOptions] | None,
    names: Sequence[str],
):
    if options is None or isinstance(options, GPAOptions):
        shared = options or GPAOptions()
        return lambda name: shared
    unknown = [name for name in options if name not in names]
    if unknown:
        raise ValueError(
            f"GPA options given for unknown subsets: {', '.join(map(str, unknown))}"
        )
    defaults = GPAOptions()
    return lambda name: options.get(name, defaults)


def _warn_ignored_options(
    options: GPAOptions | Mapping[str, GPAOptions] | None,
    inputs: Mapping[str, SubsetInput],
) -> None:
    if options is None:
        return
    ignored = [
        name
        for name, value in inputs.items()
        if isinstance(value, GPAResult)
        and (isinstance(options, GPAOptions) or name in options)
    ]
    if ignored:
        logger.warning(
            "GPA options are ignored for subsets given as GPA results: %s",
            ", ".join(map(str, ignored)),
        )


def _resolve_centroid_sizes(
    centroid_sizes: Any,
    names: Sequence[str],
    n_specimens: int,
) -> dict[str, NDArray[np.floating]]:
    """Normalise external centroid sizes to one vector per subset."""
    unit = {name: np.ones(n_specimens) for name in names}
    if centroid_sizes is None:
        logger.info("No centroid sizes supplied; configurations will not be scaled")
        return unit

    sets = _split_centroid_sizes(centroid_sizes, names, n_specimens)
    if len(sets) != len(names):
        warnings.warn(
            f"There is a mismatch between the number of coordinate sets "
            f"({len(names)}) and centroid-size sets ({len(sets)}); "
            "configurations will not be scaled",
            CentroidSizeCardinalityMismatch,
            stacklevel=3,
        )
        return unit

    sizes = {}
    for name, values in zip(names, sets):
        try:
            vector = np.asarray(values, dtype=float).ravel()
        except (TypeError, ValueError) as e:
            raise CentroidSizeError(
                f"Centroid sizes for subset {name!r} are not numeric"
            ) from e
        if vector.size != n_specimens:
            raise StructuralMismatch(
                f"Got {vector.size} centroid sizes for {n_specimens} specimens",
                (name,),
            )
        sizes[name] = vector
    return sizes


def _split_centroid_sizes(
    centroid_sizes: Any,
    names: Sequence[str],
    n_specimens: int,
) -> list[Any]:
    """Split a centroid-size collection into per-subset vectors, in order."""
    if isinstance(centroid_sizes, pd.DataFrame):
        frame = centroid_sizes
        if set(frame.columns) == set(names):
            frame = frame[list(names)]
        return [frame.iloc[:, j].to_numpy(dtype=float) for j in range(frame.shape[1])]

    if isinstance(centroid_sizes, pd.Series):
        centroid_sizes = centroid_sizes.to_dict()

    if isinstance(centroid_sizes, Mapping):
        if len(centroid_sizes) != len(names):
            return list(centroid_sizes.values())
        missing = [name for name in names if name not in centroid_sizes]
        if missing:
            raise CentroidSizeError(
                f"No centroid sizes for subsets: {', '.join(map(str, missing))}"
            )
        return [centroid_sizes[name] for name in names]

    if isinstance(centroid_sizes, (list, tuple)):
        return list(centroid_sizes)

    if isinstance(centroid_sizes, np.ndarray):
        array = np.asarray(centroid_sizes, dtype=float)
        if array.ndim == 3:
            # Subsets on the last axis, one (n_specimens, 1) slice each
            return [array[:, :, j].ravel() for j in range(array.shape[2])]
        if array.ndim == 2:
            n_rows, n_cols = array.shape
            if n_rows != n_specimens and (n_rows, n_cols) == (len(names), n_specimens):
                raise CentroidSizeError(
                    "Centroid-size matrix must have rows = specimens and "
                    f"columns = subsets, i.e. shape ({n_specimens}, {len(names)}); "
                    f"got {array.shape}, which looks transposed"
                )
            return [array[:, j] for j in range(n_cols)]
        raise CentroidSizeError(
            f"Unsupported centroid-size array with {array.ndim} dimension(s); "
            "expected a (n_specimens, n_subsets) matrix or a 3D array with "
            "subsets on the last axis"
        )

    raise CentroidSizeError(
        f"Unsupported centroid-size input of type {type(centroid_sizes).__name__}"
    )


def _relative_sizes(size_matrix: NDArray[np.floating]) -> NDArray[np.floating]:
    if not np.all(np.isfinite(size_matrix)) or np.any(size_matrix < 0):
        raise CentroidSizeError("Centroid sizes must be finite and non-negative")
    totals = size_matrix.sum(axis=1, keepdims=True)
    empty = np.flatnonzero(totals[:, 0] == 0)
    if empty.size:
        raise CentroidSizeError(
            "Centroid sizes sum to zero for specimen(s) at position(s) "
            f"{empty.tolist()}"
        )
    return size_matrix / totals
