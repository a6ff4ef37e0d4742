"""
Color deconvolution (Ruifrok & Johnston, 2001).

Each RGB pixel is converted to optical density and expressed as a
non-negative combination of the stain vectors. Every stain then gets its
own RGBA image: the pixel's OD contribution from that stain alone,
re-encoded to RGB. With thresholding on, pixels whose stain OD sum does not
exceed the threshold are painted black.
"""

import logging
from enum import Enum
from typing import List, Optional, Union

import cv2
import numpy as np

from .od_conversion import ODConversion, od_to_rgb
from .stain_vector_math import as_stain_matrix, compute_3x3_inverse, convert_zero_rows_to_unitary

logger = logging.getLogger(__name__)

__all__ = ["DisplayOption", "ColorDeconvolution", "separate_stains"]


class DisplayOption(Enum):
    """Which stain image :meth:`ColorDeconvolution.process` returns."""

    STAIN1 = 0
    STAIN2 = 1
    STAIN3 = 2


class ColorDeconvolution:
    """
    Separate an RGB image into per-stain images.

    Args:
        stain_matrix: 3x3 stain matrix, one stain per row (or 9 values).
            Zero rows mark unused stain slots.
        display_option: Stain image returned by :meth:`process`.
        apply_threshold: Black out pixels whose stain OD sum is at or below
            *threshold*.
        threshold: OD sum threshold.
        num_stains: Number of stains in use. Defaults to the number of
            non-zero rows of *stain_matrix*. With a single stain the image
            is only thresholded, not deconvolved.

    Example:
        >>> deconv = ColorDeconvolution(he_matrix, DisplayOption.STAIN1)
        >>> hematoxylin = deconv.process(tile)
    """

    def __init__(
        self,
        stain_matrix,
        display_option: Union[DisplayOption, int] = DisplayOption.STAIN1,
        apply_threshold: bool = False,
        threshold: float = 1.0,
        num_stains: Optional[int] = None,
    ):
        self.stain_matrix = as_stain_matrix(stain_matrix)
        self.display_option = display_option
        self.apply_threshold = apply_threshold
        self.threshold = float(threshold)
        if num_stains is None:
            num_stains = int(np.count_nonzero(np.linalg.norm(self.stain_matrix, axis=1)))
        if not 0 <= num_stains <= 3:
            raise ValueError(f"num_stains must be between 0 and 3, got {num_stains}")
        self.num_stains = num_stains
        self.converter = ODConversion()

        # Unused slots get a unit row so the matrix stays invertible
        self._inverse = compute_3x3_inverse(convert_zero_rows_to_unitary(self.stain_matrix))

    @staticmethod
    def _rgb(image: np.ndarray) -> Optional[np.ndarray]:
        arr = np.asarray(image)
        if arr.ndim != 3 or arr.shape[2] < 3:
            logger.warning("Expected an (H, W, C>=3) image, got shape %s", arr.shape)
            return None
        return arr[:, :, :3]

    def saturations(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        Per-pixel stain concentrations.

        Returns:
            ``(H, W, 3)`` float64 array, negative values clamped to 0, or
            None for an invalid image.
        """
        rgb = self._rgb(image)
        if rgb is None:
            return None
        od = self.converter.lookup_rgb_to_od(rgb)
        # Per pixel: inverse @ od, written for row-vector pixels
        sat = od @ self._inverse.T
        return np.maximum(sat, 0.0)

    def separate_stains(self, image: np.ndarray) -> List[np.ndarray]:
        """
        Build one RGBA image per stain slot.

        Returns:
            Three ``(H, W, 4)`` uint8 images with opaque alpha, or an empty
            list for an invalid image.
        """
        sat = self.saturations(image)
        if sat is None:
            return []

        outputs = []
        for i in range(3):
            stain_od = sat[:, :, i:i + 1] * self.stain_matrix[i]
            rgb = od_to_rgb(stain_od).astype(np.uint8)
            if self.apply_threshold:
                rgb[stain_od.sum(axis=2) <= self.threshold] = 0
            outputs.append(cv2.cvtColor(rgb, cv2.COLOR_RGB2RGBA))
        return outputs

    def threshold_only(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        Keep pixels whose OD sum exceeds the threshold, blacken the rest.

        Used for single-stain profiles, where there is nothing to separate.

        Returns:
            ``(H, W, 4)`` uint8 RGBA image, or None for an invalid image.
        """
        rgb = self._rgb(image)
        if rgb is None:
            return None
        od_sum = self.converter.lookup_rgb_to_od(rgb).sum(axis=2)
        out = np.ascontiguousarray(rgb, dtype=np.uint8).copy()
        out[od_sum <= self.threshold] = 0
        return cv2.cvtColor(out, cv2.COLOR_RGB2RGBA)

    def process(self, image: np.ndarray) -> Optional[np.ndarray]:
        """
        Produce the image selected by ``display_option``.

        An unrecognised display option returns the source image unchanged.
        """
        if self.num_stains == 1:
            return self.threshold_only(image)

        try:
            option = DisplayOption(
                self.display_option.value
                if isinstance(self.display_option, DisplayOption)
                else self.display_option
            )
        except ValueError:
            logger.warning("Invalid display option %s; returning source image", self.display_option)
            return image

        stains = self.separate_stains(image)
        if not stains:
            return None
        return stains[option.value]


def separate_stains(
    image: np.ndarray,
    stain_matrix,
    apply_threshold: bool = False,
    threshold: float = 1.0,
) -> List[np.ndarray]:
    """Deconvolve *image* with *stain_matrix* and return the three RGBA stain images."""
    deconv = ColorDeconvolution(
        stain_matrix, apply_threshold=apply_threshold, threshold=threshold
    )
    return deconv.separate_stains(image)
