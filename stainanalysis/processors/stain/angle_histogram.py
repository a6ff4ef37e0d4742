"""
Angle histograms over projected optical density points.

Points in the PCA plane are reduced to their polar angle and histogrammed
over a circular range. Two consumers build on this:

* :class:`MacenkoHistogram` finds the angles at a low and a high percentile
  of the angle distribution, with linear interpolation inside the bin where
  the cumulative fraction crosses each target. The two angles, turned back
  into unit vectors, point at the extreme stain directions.
* :class:`NiethammerHistogram` splits points into two clusters with a single
  fixed angular threshold in a plane spanned by mixed stain priors.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    "UNDEFINED_ANGLE",
    "DEFAULT_HISTOGRAM_RANGE",
    "AngleHistogram",
    "MacenkoHistogram",
    "NiethammerHistogram",
]

# Marker for the angle of a zero vector; lies outside any histogram range
UNDEFINED_ANGLE = float(np.finfo(np.float32).max)
DEFAULT_HISTOGRAM_RANGE = (-np.pi, np.pi)


class AngleHistogram:
    """
    Histogram of polar angles of 2-D points.

    Args:
        nbins: Number of uniform bins.
        hist_range: ``(low, high)`` angular range, high end exclusive.
    """

    #: Components below this (in both x and y) make the angle undefined
    zero_tolerance = 1e-6

    def __init__(self, nbins: int = 128, hist_range: Tuple[float, float] = DEFAULT_HISTOGRAM_RANGE):
        self.nbins = nbins
        self.hist_range = (float(hist_range[0]), float(hist_range[1]))

    def set_num_histogram_bins(self, nbins: int) -> None:
        self.nbins = nbins

    def get_num_histogram_bins(self) -> int:
        return self.nbins

    def set_histogram_range(self, hist_range: Tuple[float, float]) -> None:
        self.hist_range = (float(hist_range[0]), float(hist_range[1]))

    def get_histogram_range(self) -> Tuple[float, float]:
        return self.hist_range

    def vectors_to_angles(self, vectors: np.ndarray) -> np.ndarray:
        """
        Convert 2-D points to polar angles with ``atan2(y, x)``.

        Rows whose x and y are both within :attr:`zero_tolerance` of zero get
        :data:`UNDEFINED_ANGLE`, so the histogram ignores them instead of
        counting them at angle zero. An angle of exactly ``+pi`` is reported
        as ``-pi``, the same direction, so it stays inside a ``[-pi, pi)``
        range.

        Args:
            vectors: ``(N, 2+)`` array; only the first two columns are used.

        Returns:
            ``(N,)`` float32 array of angles, empty for invalid input.
        """
        points = np.asarray(vectors, dtype=np.float64)
        if points.ndim != 2 or points.shape[0] == 0 or points.shape[1] < 2:
            return np.empty(0, dtype=np.float32)

        x = points[:, 0]
        y = points[:, 1]
        angles = np.arctan2(y, x)
        undefined = (np.abs(x) < self.zero_tolerance) & (np.abs(y) < self.zero_tolerance)

        out = angles.astype(np.float32)
        out[out >= np.float32(np.pi)] = np.float32(-np.pi)
        out[undefined] = UNDEFINED_ANGLE
        return out

    @staticmethod
    def angles_to_vectors(angles: Sequence[float]) -> Optional[np.ndarray]:
        """
        Convert two angles to unit vectors ``(cos, sin)``, one per row.

        Returns:
            ``(2, 2)`` array, or None when fewer than two angles are given
            or both angles are exactly zero (the error value upstream).
        """
        values = np.asarray(angles, dtype=np.float64).ravel()
        if values.size < 2:
            return None
        first, second = values[0], values[1]
        if first == 0.0 and second == 0.0:
            return None
        return np.array(
            [[np.cos(first), np.sin(first)],
             [np.cos(second), np.sin(second)]],
            dtype=np.float64,
        )

    def fill_histogram(
        self,
        angles: np.ndarray,
        nbins: Optional[int] = None,
        hist_range: Optional[Tuple[float, float]] = None,
    ) -> Optional[np.ndarray]:
        """
        Histogram angle values with uniform bins.

        Args:
            angles: Angle values; anything outside the range (including
                :data:`UNDEFINED_ANGLE`) is not counted.
            nbins: Bin count, defaults to the instance setting.
            hist_range: ``(low, high)``, defaults to the instance setting.

        Returns:
            ``(nbins,)`` float array of counts, or None for empty input, a
            non-positive bin count, or an empty range.
        """
        nbins = self.nbins if nbins is None else nbins
        low, high = self.hist_range if hist_range is None else hist_range
        values = np.asarray(angles, dtype=np.float32).reshape(-1, 1)
        if values.size == 0 or high <= low or nbins <= 0:
            return None

        hist = cv2.calcHist([values], [0], None, [int(nbins)], [float(low), float(high)])
        return hist.ravel().astype(np.float64)

    def bin_to_angle(self, bin_position: float, nbins: Optional[int] = None) -> float:
        """Map a (fractional) bin position to an angle."""
        nbins = self.nbins if nbins is None else nbins
        low, high = self.hist_range
        return low + bin_position * (high - low) / float(nbins)


class MacenkoHistogram(AngleHistogram):
    """
    Percentile thresholds of the angle distribution.

    Args:
        percentile: Percentile ``p``; thresholds are taken at ``p`` and
            ``100 - p``. Clamped into [0, 100] and folded into [0, 50].
        nbins: Number of histogram bins.
        interpolate_from_previous_bin: Start the linear interpolation at
            the index of the bin before the crossing bin (default). When
            False the crossing bin's own index is used.

    Example:
        >>> hist = MacenkoHistogram(percentile=1.0)
        >>> vectors = hist.percentile_threshold_vectors(projected_points)
    """

    def __init__(
        self,
        percentile: float = 1.0,
        nbins: int = 1024,
        interpolate_from_previous_bin: bool = True,
    ):
        super().__init__(nbins=nbins)
        self.interpolate_from_previous_bin = interpolate_from_previous_bin
        self.percentile = 1.0
        self.set_percentile_threshold(percentile)

    def set_percentile_threshold(self, percentile: float) -> None:
        p = min(max(float(percentile), 0.0), 100.0)
        self.percentile = p if p <= 50.0 else 100.0 - p

    def get_percentile_threshold(self) -> float:
        return self.percentile

    def find_percentile_threshold_values(self, angles: np.ndarray) -> Optional[Tuple[float, float]]:
        """
        Find the lower and upper percentile angles of a set of angles.

        Returns:
            ``(lower, upper)`` angles, or None if no angle falls in range
            or the histogram settings are invalid.
        """
        hist = self.fill_histogram(angles)
        if hist is None:
            return None
        total = float(hist.sum())
        if total <= 0.0:
            logger.warning("No angles inside the histogram range")
            return None

        lower_fraction = self.percentile / 100.0
        upper_fraction = (100.0 - self.percentile) / 100.0
        offset = -1 if self.interpolate_from_previous_bin else 0

        lower_bin = upper_bin = None
        cumulative = 0.0
        for bin_index, count in enumerate(hist):
            prev_fraction = cumulative / total
            cumulative += count
            current_fraction = cumulative / total
            if lower_bin is None and current_fraction >= lower_fraction:
                lower_bin = (bin_index + offset) + (
                    (lower_fraction - prev_fraction) / (current_fraction - prev_fraction)
                )
            if upper_bin is None and current_fraction >= upper_fraction:
                upper_bin = (bin_index + offset) + (
                    (upper_fraction - prev_fraction) / (current_fraction - prev_fraction)
                )
            if lower_bin is not None and upper_bin is not None:
                break

        if lower_bin is None or upper_bin is None:
            return None
        return self.bin_to_angle(lower_bin), self.bin_to_angle(upper_bin)

    def percentile_threshold_angles(self, projected: np.ndarray) -> Optional[Tuple[float, float]]:
        if self.percentile <= 0.0 or self.percentile >= 100.0:
            logger.warning("Percentile threshold %s is out of range", self.percentile)
            return None
        angles = self.vectors_to_angles(projected)
        if angles.size == 0:
            return None
        return self.find_percentile_threshold_values(angles)

    def percentile_threshold_vectors(
        self,
        projected: np.ndarray,
        percentile: Optional[float] = None,
    ) -> Optional[np.ndarray]:
        """
        Unit vectors at the lower and upper percentile angles.

        Args:
            projected: ``(N, 2)`` points in the projection plane.
            percentile: If given, replaces the stored percentile first.

        Returns:
            ``(2, 2)`` array with one unit vector per row (lower first),
            or None on failure.
        """
        if percentile is not None:
            self.set_percentile_threshold(percentile)
        angles = self.percentile_threshold_angles(projected)
        if angles is None:
            return None
        logger.debug("Percentile angles: lower=%.5f upper=%.5f", angles[0], angles[1])
        return self.angles_to_vectors(angles)


class NiethammerHistogram(AngleHistogram):
    """
    Two-cluster assignment of projected points around a fixed angle.

    Only the single fixed-threshold pass is performed; the threshold is not
    re-estimated from the cluster assignments.

    Args:
        alpha: Mixing ratio between the two stain priors.
        nbins: Number of histogram bins.
    """

    #: Position of the threshold as a fraction of the histogram range
    threshold_fraction = 0.75

    def __init__(self, alpha: float = 0.15, nbins: int = 128):
        super().__init__(nbins=nbins)
        self.alpha_mix_ratio = alpha
        self.last_histogram: Optional[np.ndarray] = None

    @property
    def alpha_mix_ratio(self) -> float:
        return self._alpha

    @alpha_mix_ratio.setter
    def alpha_mix_ratio(self, alpha: float) -> None:
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {alpha}")
        self._alpha = float(alpha)

    def mix_priors(self, priors: np.ndarray) -> Optional[np.ndarray]:
        """
        Mix two stain priors into the adjusted priors ``q1`` and ``q2``.

        ``q1 = (1 - alpha) * p1 + alpha * p2`` and symmetrically for
        ``q2``; both are normalised to unit length.

        Args:
            priors: ``(2+, 3)`` array of stain priors, one per row.

        Returns:
            ``(2, 3)`` array of mixed priors, or None for invalid priors.
        """
        p = np.asarray(priors, dtype=np.float64)
        if p.ndim != 2 or p.shape[0] < 2:
            return None
        p1, p2 = p[0], p[1]
        a = self._alpha
        q = np.vstack([(1.0 - a) * p1 + a * p2, (1.0 - a) * p2 + a * p1])
        norms = np.linalg.norm(q, axis=1)
        if np.any(norms == 0.0):
            return None
        return q / norms[:, np.newaxis]

    @staticmethod
    def prior_basis(q_priors: np.ndarray) -> Optional[np.ndarray]:
        """
        Orthonormal plane basis in which the two priors sit symmetrically
        about +90 degrees.

        The first axis is ``q1 - q2`` and the second ``q1 + q2``. For unit
        priors these are orthogonal, ``q1`` lands below +90 degrees and
        ``q2`` above it.
        """
        q = np.asarray(q_priors, dtype=np.float64)
        if q.ndim != 2 or q.shape[0] < 2:
            return None
        axes = np.vstack([q[0] - q[1], q[0] + q[1]])
        norms = np.linalg.norm(axes, axis=1)
        if np.any(norms < 1e-12):
            return None
        return axes / norms[:, np.newaxis]

    def threshold_angle(self) -> float:
        """Threshold three quarters of the way around the range (+pi/2 by default)."""
        low, high = self.hist_range
        return low + self.threshold_fraction * (high - low)

    def assign_clusters(
        self,
        projected: np.ndarray,
        threshold: Optional[float] = None,
    ) -> Optional[np.ndarray]:
        """
        Assign each projected point to cluster 0 or 1.

        Points with an angle below the threshold go to cluster 0, the rest
        to cluster 1. Points with an undefined angle get -1.

        Returns:
            ``(N,)`` int array of labels, or None if no angle is defined.
        """
        angles = self.vectors_to_angles(projected)
        if angles.size == 0:
            return None
        # Histogram kept for inspection of the angle distribution
        self.last_histogram = self.fill_histogram(angles)
        if self.last_histogram is None or self.last_histogram.sum() == 0:
            return None

        theta = self.threshold_angle() if threshold is None else float(threshold)
        labels = np.where(angles.astype(np.float64) < theta, 0, 1)
        labels[angles == np.float32(UNDEFINED_ANGLE)] = -1
        return labels
