"""
Foreground coverage and stain coefficient reports.

The coverage of a thresholded stain image is the fraction of pixels whose
first channel is non-zero, scaled from the displayed image to the
full-resolution image it was rendered from.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple

import cv2
import numpy as np

from .stain_vector_math import as_stain_matrix

logger = logging.getLogger(__name__)

__all__ = [
    "count_nonzero_pixels",
    "pixel_fraction",
    "generate_coverage_report",
    "generate_stain_report",
]


def count_nonzero_pixels(
    image: np.ndarray,
    channel: int = 0,
    max_workers: Optional[int] = None,
) -> int:
    """
    Count pixels whose *channel* value is non-zero.

    Rows are split into blocks counted in a thread pool; each worker writes
    only its own slot of the result array.

    Args:
        image: ``(H, W)`` or ``(H, W, C)`` image.
        channel: Channel to test for multi-channel images.
        max_workers: Thread count, ``None`` for the executor default.

    Returns:
        Number of non-zero pixels, 0 when *channel* is not in the image.
    """
    arr = np.asarray(image)
    if arr.ndim == 3 and not 0 <= channel < arr.shape[2]:
        logger.warning("Channel %d out of range for a %d-channel image", channel, arr.shape[2])
        return 0
    plane = arr[:, :, channel] if arr.ndim == 3 else arr
    if plane.size == 0:
        return 0

    blocks = np.array_split(np.arange(plane.shape[0]), min(plane.shape[0], 8))
    counts = np.zeros(len(blocks), dtype=np.int64)

    def count_block(i: int) -> None:
        rows = blocks[i]
        block = plane[rows[0]:rows[-1] + 1]
        counts[i] = cv2.countNonZero(np.ascontiguousarray(block != 0, dtype=np.uint8))

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        list(executor.map(count_block, range(len(blocks))))
    return int(counts.sum())


def pixel_fraction(
    output_image: np.ndarray,
    full_size: Tuple[int, int],
    channel: int = 0,
    max_workers: Optional[int] = None,
) -> float:
    """
    Fraction of full-resolution pixels that are foreground.

    Each displayed pixel stands for ``(W / w) * (H / h)`` full-resolution
    pixels when the display is downsampled, and for the inverse share when
    it is upsampled.

    Args:
        output_image: Displayed (thresholded) stain image.
        full_size: ``(width, height)`` of the full-resolution image.
        channel: Channel tested for foreground.
        max_workers: Passed to :func:`count_nonzero_pixels`.

    Returns:
        Foreground fraction in [0, 1]; 0.0 for empty inputs.
    """
    arr = np.asarray(output_image)
    out_h, out_w = arr.shape[:2]
    full_w, full_h = full_size
    if out_w == 0 or out_h == 0 or full_w <= 0 or full_h <= 0:
        logger.warning("Empty image or full size %s; coverage is 0", full_size)
        return 0.0

    count = count_nonzero_pixels(arr, channel=channel, max_workers=max_workers)
    total = float(full_w) * float(full_h)
    if full_w > out_w:
        scale_w = full_w / out_w
        scale_h = full_h / out_h
        return count * scale_w * scale_h / total
    scale_w = out_w / full_w
    scale_h = out_h / full_h
    return count / (scale_w * scale_h) / total


def generate_coverage_report(fraction: float) -> str:
    """Format a foreground fraction as a percentage line."""
    return f"{'Pixels belong to FG:':<20}{fraction * 100:.3f} %\n\n"


def generate_stain_report(matrix) -> str:
    """
    Format a stain matrix as a coefficient table.

    Example:
        >>> print(generate_stain_report(he_matrix))
        Color deconvolution - Stains Coefficients
        <BLANKLINE>
        Stain-1
        R1:0.65      G1:0.704     B1:0.286
        ...
    """
    m = as_stain_matrix(matrix)
    lines = ["Color deconvolution - Stains Coefficients ", ""]
    for i in range(3):
        n = i + 1
        lines.append(f"Stain-{n}")
        lines.append(
            f"R{n}:{m[i, 0]:<10.5g}G{n}:{m[i, 1]:<10.5g}B{n}:{m[i, 2]:<10.5g}"
        )
    return "\n".join(lines) + "\n"
