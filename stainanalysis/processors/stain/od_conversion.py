"""
Optical Density Conversion

Conversion between 8-bit RGB intensities and optical density (OD), plus a
256-entry lookup table used on the hot sampling and ROI paths.

OD is computed as ``-log10(I / 255)``. Zero intensities are replaced by
``ODMIN`` before taking the log, and the result is floored at ``ODMIN`` so a
fully transmitting (white) channel never yields an OD of exactly zero.
"""

from typing import Union

import numpy as np

__all__ = [
    "ODMIN",
    "RGB_SCALE_MAX",
    "rgb_to_od",
    "od_to_rgb",
    "ODConversion",
]

# Value used to represent near-zero throughout the stain code
ODMIN = 1e-6
RGB_SCALE_MAX = 255.0

ArrayLike = Union[float, int, np.ndarray]


def rgb_to_od(rgb: ArrayLike) -> ArrayLike:
    """Convert 0-255 color values to optical density.

    Args:
        rgb: Scalar or array of color values in [0, 255].

    Returns:
        OD values with the same shape as the input, never below ``ODMIN``.
        Scalars in, float out.
    """
    values = np.asarray(rgb, dtype=np.float64)
    values = np.where(values <= 0.0, ODMIN, values)
    od = -np.log10(values / RGB_SCALE_MAX)
    od = np.where(od < ODMIN, ODMIN, od)
    if od.ndim == 0:
        return float(od)
    return od


def od_to_rgb(od: ArrayLike) -> ArrayLike:
    """Convert optical density back to 0-255 color values.

    Rounds half away from zero and clamps to [0, 255]. OD values below
    ``ODMIN`` are treated as ``ODMIN``.

    Args:
        od: Scalar or array of optical densities.

    Returns:
        Integer color values (``int`` for scalar input, ``np.int64`` array
        otherwise).
    """
    values = np.asarray(od, dtype=np.float64)
    values = np.where(values < ODMIN, ODMIN, values)
    color = np.floor(RGB_SCALE_MAX * np.power(10.0, -values) + 0.5)
    color = np.clip(color, 0.0, RGB_SCALE_MAX).astype(np.int64)
    if color.ndim == 0:
        return int(color)
    return color


class ODConversion:
    """
    Lookup-table optical density converter.

    The table holds ``rgb_to_od(c)`` for every integer level ``c`` in
    [0, 255] and is built once per instance.

    Example:
        >>> converter = ODConversion()
        >>> converter.lookup_rgb_to_od(255) == ODMIN
        True
    """

    NUM_LEVELS = 256

    def __init__(self):
        self._table = rgb_to_od(np.arange(self.NUM_LEVELS, dtype=np.float64))
        self._table.setflags(write=False)

    @property
    def table(self) -> np.ndarray:
        """Read-only view of the 256-entry OD table."""
        return self._table

    def lookup_rgb_to_od(self, rgb: ArrayLike) -> ArrayLike:
        """
        Look up the OD of integer color values.

        Args:
            rgb: Integer or integer array; values are clipped into [0, 255].

        Returns:
            OD value(s), identical to :func:`rgb_to_od` for the same input.
        """
        index = np.clip(np.asarray(rgb, dtype=np.int64), 0, self.NUM_LEVELS - 1)
        od = self._table[index]
        if np.ndim(od) == 0:
            return float(od)
        return od

    def lookup_od_to_rgb(self, od: float) -> int:
        """
        Approximate inverse of the table, by reverse linear scan.

        Walks from level 255 down to 0 and returns the first level whose OD
        reaches ``od``. This is not an exact inverse of :func:`od_to_rgb`
        (it never rounds to the nearest level), so use it carefully.

        Args:
            od: Optical density to invert.

        Returns:
            Color level in [0, 255].
        """
        target = max(float(od), ODMIN)
        for level in range(self.NUM_LEVELS - 1, -1, -1):
            if self._table[level] >= target:
                return level
        return 0
