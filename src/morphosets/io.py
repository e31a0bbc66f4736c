"""
I/O functions for reading and writing landmark files.

Supports:
- FCSV format (.fcsv) - 3D Slicer fiducial CSV format
- Markup JSON format (.mrk.json) - 3D Slicer 5.x markup format

Besides single files, subsets of specimens can be loaded side by side
(one directory or glob per subset) and a combined configuration can be
written back out with one file per specimen.
"""

from __future__ import annotations

import glob as glob_module
import json
from pathlib import Path
from typing import TYPE_CHECKING, Mapping, Sequence, Union

import numpy as np
import pandas as pd

from morphosets.errors import StructuralMismatch

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from morphosets.combine import CombinedSet

Source = Union[str, Path, Sequence[Union[str, Path]]]

FCSV_HEADER = (
    "# Markups fiducial file version = 4.11\n"
    "# CoordinateSystem = LPS\n"
    "# columns = id,x,y,z,ow,ox,oy,oz,vis,sel,lock,label,desc,associatedNodeID\n"
)
MARKUP_SCHEMA = (
    "https://raw.githubusercontent.com/slicer/slicer/master/Modules/Loadable/"
    "Markups/Resources/Schema/markups-schema-v1.0.3.json#"
)


def read_landmarks(filepath: str | Path) -> NDArray[np.floating]:
    """Read landmarks from a file.

    Automatically detects the file format based on extension.

    Args:
        filepath: Path to landmark file (.fcsv or .mrk.json)

    Returns:
        Landmark coordinates, shape (n_landmarks, 3)

    Raises:
        ValueError: If file format is not supported
        FileNotFoundError: If file does not exist
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"File not found: {filepath}")

    if _file_format(filepath) == "fcsv":
        return _read_fcsv(filepath)
    return _read_markup_json(filepath)


def write_landmarks(
    landmarks: NDArray[np.floating],
    filepath: str | Path,
    labels: Sequence[str] | None = None,
) -> None:
    """Write landmarks to a file.

    Args:
        landmarks: Landmark coordinates, shape (n_landmarks, 3)
        filepath: Output file path (.fcsv or .mrk.json)
        labels: Optional labels for each landmark, defaults to F-1, F-2, ...

    Raises:
        ValueError: If file format is not supported, the landmarks are not
            3D, or the number of labels does not match
    """
    filepath = Path(filepath)
    file_format = _file_format(filepath)

    landmarks = np.asarray(landmarks, dtype=float)
    if landmarks.ndim != 2 or landmarks.shape[1] != 3:
        raise ValueError(
            f"Slicer landmark files hold 3D points, got array of shape {landmarks.shape}"
        )
    n_landmarks = landmarks.shape[0]
    if labels is None:
        labels = [f"F-{i + 1}" for i in range(n_landmarks)]
    elif len(labels) != n_landmarks:
        raise ValueError(f"Got {len(labels)} labels for {n_landmarks} landmarks")

    if file_format == "fcsv":
        _write_fcsv(landmarks, filepath, list(labels))
    else:
        _write_markup_json(landmarks, filepath, list(labels))


def find_landmark_files(source: Source) -> list[Path]:
    """Resolve a source to a sorted list of landmark files.

    Args:
        source: Either:
            - A glob pattern (e.g., "data/*.fcsv")
            - A directory path (all .fcsv and .mrk.json files in it)
            - A list of file paths
    """
    if isinstance(source, (str, Path)):
        source_path = Path(source)
        if source_path.is_dir():
            files = list(source_path.glob("*.fcsv")) + list(
                source_path.glob("*.mrk.json")
            )
        else:
            files = [Path(f) for f in glob_module.glob(str(source))]
    else:
        files = [Path(f) for f in source]

    # Sort for reproducibility
    return sorted(files)


def load_dataset(source: Source) -> NDArray[np.floating]:
    """Load multiple landmark files into a single dataset array.

    Args:
        source: Glob pattern, directory, or list of files (see
            ``find_landmark_files``)

    Returns:
        Landmark coordinates, shape (n_landmarks, 3, n_specimens)

    Raises:
        ValueError: If no files found or landmarks have inconsistent shapes
    """
    files = find_landmark_files(source)
    if not files:
        raise ValueError(f"No landmark files found: {source}")

    specimens = [read_landmarks(files[0])]
    for filepath in files[1:]:
        lm = read_landmarks(filepath)
        if lm.shape != specimens[0].shape:
            raise ValueError(
                f"Inconsistent landmark shape in {filepath}: "
                f"expected {specimens[0].shape}, got {lm.shape}"
            )
        specimens.append(lm)

    return np.stack(specimens, axis=2)


def get_filenames(source: Source) -> list[str]:
    """Get list of filenames from a source (for labeling specimens).

    Args:
        source: Same as load_dataset

    Returns:
        List of filenames (without directory path)
    """
    return [f.name for f in find_landmark_files(source)]


def specimen_id(filepath: str | Path) -> str:
    """Specimen identifier of a landmark file: its name without the suffix."""
    name = Path(filepath).name
    for suffix in (".mrk.json", ".fcsv", ".json"):
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


def load_subsets(
    sources: Mapping[str, Source],
) -> tuple[dict[str, NDArray[np.floating]], list[str]]:
    """Load landmark subsets digitized separately on the same specimens.

    Each subset is read with ``load_dataset``. Specimens are matched by
    file name without suffix, so ``head/sp01.fcsv`` and ``tail/sp01.fcsv``
    belong to the same specimen.

    Args:
        sources: Mapping from subset name to a glob, directory or file list

    Returns:
        Tuple of (mapping from subset name to landmark array, specimen ids),
        ready for ``combine_subsets(subsets, specimen_names=ids)``

    Raises:
        StructuralMismatch: If the subsets do not cover the same specimens
    """
    datasets = {}
    specimen_ids: dict[str, list[str]] = {}
    for name, source in sources.items():
        datasets[name] = load_dataset(source)
        specimen_ids[name] = [specimen_id(f) for f in find_landmark_files(source)]

    reference_name = next(iter(specimen_ids), None)
    if reference_name is None:
        return datasets, []
    reference = specimen_ids[reference_name]
    offending = [name for name, ids in specimen_ids.items() if ids != reference]
    if offending:
        raise StructuralMismatch(
            f"Subsets do not cover the same specimens as {reference_name!r}",
            offending,
        )
    return datasets, reference


def write_combined(
    combined: CombinedSet,
    directory: str | Path,
    suffix: str = ".fcsv",
) -> list[Path]:
    """Write a combined configuration with one landmark file per specimen.

    Landmarks are labelled with the combined landmark names
    ("head.1", "head.2", ..., "tail.1", ...).

    Args:
        combined: Result of ``combine_subsets`` on 3D landmarks
        directory: Output directory, created if missing
        suffix: ".fcsv" or ".mrk.json"

    Returns:
        Paths of the written files, in specimen order

    Raises:
        ValueError: If the configuration is not 3D
    """
    if len(combined.dimension_names) != 3:
        raise ValueError("Only 3D configurations can be written to Slicer files")

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    written = []
    for i, specimen in enumerate(combined.specimen_names):
        filepath = directory / f"{specimen}{suffix}"
        write_landmarks(
            combined.coordinates[:, :, i], filepath, labels=combined.landmark_names
        )
        written.append(filepath)
    return written


def _file_format(filepath: Path) -> str:
    name = filepath.name.lower()
    if name.endswith(".fcsv"):
        return "fcsv"
    if name.endswith(".json"):
        return "json"
    raise ValueError(
        f"Unsupported file format: {filepath.suffix.lower()}. "
        "Supported formats: .fcsv, .mrk.json"
    )


def _read_fcsv(filepath: Path) -> NDArray[np.floating]:
    """Read landmarks from FCSV format.

    FCSV is a CSV format where:
    - Lines starting with # are headers/comments
    - Data columns: id, x, y, z, ...
    """
    try:
        frame = pd.read_csv(filepath, comment="#", header=None, usecols=[1, 2, 3])
    except (pd.errors.EmptyDataError, ValueError) as e:
        raise ValueError(f"No valid landmarks found in {filepath}") from e

    coords = frame.apply(pd.to_numeric, errors="coerce").dropna()
    if coords.empty:
        raise ValueError(f"No valid landmarks found in {filepath}")
    return coords.to_numpy(dtype=float)


def _read_markup_json(filepath: Path) -> NDArray[np.floating]:
    """Read landmarks from 3D Slicer markup JSON format."""
    with open(filepath) as f:
        content = json.load(f)

    try:
        control_points = content["markups"][0]["controlPoints"]
    except (KeyError, IndexError) as e:
        raise ValueError(f"Invalid markup JSON format in {filepath}") from e

    frame = pd.DataFrame.from_records(control_points)
    if frame.empty or "position" not in frame:
        raise ValueError(f"No valid landmarks found in {filepath}")
    return np.array(frame["position"].tolist(), dtype=float)


def _write_fcsv(
    landmarks: NDArray[np.floating],
    filepath: Path,
    labels: list[str],
) -> None:
    """Write landmarks to FCSV format."""
    n_landmarks = landmarks.shape[0]
    frame = pd.DataFrame(
        {
            "id": [f"vtkMRMLMarkupsFiducialNode_{i}" for i in range(n_landmarks)],
            "x": landmarks[:, 0],
            "y": landmarks[:, 1],
            "z": landmarks[:, 2],
            "ow": 0,
            "ox": 0,
            "oy": 0,
            "oz": 1,
            "vis": 1,
            "sel": 1,
            "lock": 0,
            "label": labels,
            "desc": "",
            "associatedNodeID": "",
        }
    )
    with open(filepath, "w", newline="") as f:
        f.write(FCSV_HEADER)
        frame.to_csv(f, header=False, index=False)


def _write_markup_json(
    landmarks: NDArray[np.floating],
    filepath: Path,
    labels: list[str],
) -> None:
    """Write landmarks to 3D Slicer markup JSON format."""
    control_points = [
        {
            "id": str(i + 1),
            "label": label,
            "description": "",
            "associatedNodeID": "",
            "position": [float(v) for v in point],
            "orientation": [-1.0, -0.0, -0.0, -0.0, -1.0, -0.0, 0.0, 0.0, 1.0],
            "selected": True,
            "locked": False,
            "visibility": True,
            "positionStatus": "defined",
        }
        for i, (point, label) in enumerate(zip(landmarks, labels))
    ]

    markup = {
        "@schema": MARKUP_SCHEMA,
        "markups": [
            {
                "type": "Fiducial",
                "coordinateSystem": "LPS",
                "coordinateUnits": "mm",
                "locked": False,
                "fixedNumberOfControlPoints": False,
                "labelFormat": "%N-%d",
                "lastUsedControlPointNumber": len(control_points),
                "controlPoints": control_points,
            }
        ],
    }

    with open(filepath, "w") as f:
        json.dump(markup, f, indent=2)
