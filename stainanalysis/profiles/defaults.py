"""
Built-in stain profiles and the semicolon-separated stain file.

The stain file holds one stain matrix per line, tagged with a marker::

    HematoxylinPEosin;0.644211;0.716556;0.266844;0.092789;0.954111;0.283111;0;0;0;
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from .stain_profile import StainProfile

logger = logging.getLogger(__name__)

__all__ = [
    "HEMATOXYLIN",
    "HEMATOXYLIN_GL",
    "EOSIN",
    "EOSIN_GL",
    "DAB",
    "DEFAULT_STAIN_PROFILES",
    "STAIN_FILE_MARKERS",
    "get_default_profile",
    "get_default_stain_matrix",
    "save_stains_csv",
    "load_stains_csv",
]

# Ruifrok & Johnston reference vectors
HEMATOXYLIN = (0.650, 0.704, 0.286)
EOSIN = (0.072, 0.990, 0.105)
DAB = (0.268, 0.570, 0.776)

# Gill hematoxylin / eosin
HEMATOXYLIN_GL = (0.644211, 0.716556, 0.266844)
EOSIN_GL = (0.092789, 0.954111, 0.283111)

DEFAULT_STAIN_PROFILES: Dict[str, Dict] = {
    "HematoxylinPEosin": {
        "name": "Hematoxylin + Eosin",
        "stains": [("Hematoxylin", HEMATOXYLIN_GL), ("Eosin", EOSIN_GL)],
    },
    "HematoxylinPDAB": {
        "name": "Hematoxylin + DAB",
        "stains": [("Hematoxylin", HEMATOXYLIN), ("DAB", DAB)],
    },
    "HematoxylinPEosinPDAB": {
        "name": "Hematoxylin + Eosin + DAB",
        "stains": [("Hematoxylin", HEMATOXYLIN), ("Eosin", EOSIN), ("DAB", DAB)],
    },
}

STAIN_FILE_MARKERS = ("RegionOfInterest",) + tuple(DEFAULT_STAIN_PROFILES)

_ALIASES = {
    "he": "HematoxylinPEosin",
    "h&e": "HematoxylinPEosin",
    "hdab": "HematoxylinPDAB",
    "h-dab": "HematoxylinPDAB",
    "hedab": "HematoxylinPEosinPDAB",
    "he-dab": "HematoxylinPEosinPDAB",
}


def _resolve(name: str) -> str:
    if name in DEFAULT_STAIN_PROFILES:
        return name
    key = _ALIASES.get(name.lower())
    if key is None:
        raise ValueError(
            f"Unknown stain profile: {name}. Available: {list(DEFAULT_STAIN_PROFILES)}"
        )
    return key


def get_default_stain_matrix(name: str) -> np.ndarray:
    """(3, 3) matrix of a built-in profile, zero rows past its stain count."""
    entry = DEFAULT_STAIN_PROFILES[_resolve(name)]
    matrix = np.zeros((3, 3), dtype=np.float64)
    for row, (_, rgb) in enumerate(entry["stains"]):
        matrix[row] = rgb
    return matrix


def get_default_profile(name: str) -> StainProfile:
    """
    Build a :class:`StainProfile` for a built-in stain combination.

    Args:
        name: ``"HematoxylinPEosin"``, ``"HematoxylinPDAB"``,
            ``"HematoxylinPEosinPDAB"`` or a short alias (``"he"``,
            ``"h-dab"``, ``"he-dab"``).

    Raises:
        ValueError: If the name is not a built-in profile.
    """
    entry = DEFAULT_STAIN_PROFILES[_resolve(name)]
    profile = StainProfile(entry["name"])
    profile.set_number_of_stains(len(entry["stains"]))
    profile.set_analysis_model("Ruifrok+Johnston Deconvolution")
    profile.set_separation_algorithm("Ruifrok+Johnston Deconvolution")
    for index, (stain_name, rgb) in enumerate(entry["stains"], start=1):
        profile.set_stain_name(index, stain_name)
        profile.set_stain_rgb(index, rgb)
    return profile


def save_stains_csv(
    path: Union[str, Path],
    matrix,
    marker: str = "RegionOfInterest",
) -> bool:
    """
    Write a stain matrix as one marker-tagged line.

    Args:
        path: Output file, overwritten.
        matrix: 3x3 stain matrix (or 9 values, row-major).
        marker: Line tag, normally one of :data:`STAIN_FILE_MARKERS`.

    Returns:
        False if the file could not be written.
    """
    values = np.asarray(matrix, dtype=np.float64).reshape(-1)
    if values.size != 9:
        raise ValueError(f"stain matrix must have 9 elements, got {values.size}")
    line = marker + ";" + "".join(f"{v:g};" for v in values)
    try:
        with open(path, "w") as f:
            f.write(line + "\n")
    except OSError as e:
        logger.warning("Could not write stain file %s: %s", path, e)
        return False
    return True


def load_stains_csv(path: Union[str, Path], marker: str) -> Optional[np.ndarray]:
    """
    Read the stain vectors tagged *marker* from a stain file.

    Every line whose first cell equals *marker* and whose remaining cells
    come in groups of three contributes its triples as consecutive rows;
    at most three rows are kept.

    Returns:
        (3, 3) matrix with unfilled rows zero, or None when the file cannot
        be read or no line carries the marker.
    """
    try:
        with open(path) as f:
            lines = f.read().splitlines()
    except OSError as e:
        logger.warning("Could not read stain file %s: %s", path, e)
        return None

    matrix = np.zeros((3, 3), dtype=np.float64)
    row = 0
    found = False
    for line in lines:
        cells = line.strip().split(";")
        if cells and cells[-1] == "":
            cells = cells[:-1]
        if not cells or cells[0] != marker or (len(cells) - 1) % 3 != 0:
            continue
        found = True
        for j in range(1, len(cells), 3):
            if row >= 3:
                break
            try:
                matrix[row] = [float(c) for c in cells[j:j + 3]]
            except ValueError:
                logger.warning("Malformed stain values on line: %s", line)
                return None
            row += 1

    if not found:
        logger.warning("No '%s' entry in stain file %s", marker, path)
        return None
    return matrix
