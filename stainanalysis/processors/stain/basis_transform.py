"""
PCA basis transform for optical density point clouds.

Fits a principal-component basis to a set of OD points and projects points
into (and back out of) the plane spanned by the two leading components.
Stain estimation histograms angles in that plane, so exactly two basis
vectors are kept regardless of the point dimensionality.

The orientation of the points (one point per row, or one per column) is
always passed explicitly through :class:`VectorDirection`; the mean vector
must have the matching shape, ``(1, C)`` for row points and ``(C, 1)`` for
column points.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

__all__ = ["VectorDirection", "BasisTransform", "REQUIRED_BASIS_VECTORS"]

# Two components: the angle histogram needs a plane
REQUIRED_BASIS_VECTORS = 2


class VectorDirection(Enum):
    """Whether vectors are stored as the rows or the columns of a matrix."""

    ROWVECTORS = "rows"
    COLUMNVECTORS = "columns"


class BasisTransform:
    """
    Principal-component basis with projection and back-projection.

    State (mean, eigenvalues, eigenvectors, basis vectors) is set by
    :meth:`fit_pca` and consumed by :meth:`project_points` and
    :meth:`back_project_points`. Instances are meant for a single owner.

    Args:
        num_testing_pixels: Subsample size for basis sign optimisation.
        rng: Random generator for subsampling. Defaults to a fresh
            ``np.random.default_rng()``.

    Example:
        >>> transform = BasisTransform()
        >>> projected = transform.pca_point_transform(od_samples)
        >>> restored = transform.back_project_points(projected, add_mean=False)
    """

    def __init__(self, num_testing_pixels: int = 10, rng: Optional[np.random.Generator] = None):
        self.num_testing_pixels = num_testing_pixels
        self.rng = rng if rng is not None else np.random.default_rng()
        self.clear()

    def clear(self) -> None:
        """Forget any fitted state."""
        self._mean: Optional[np.ndarray] = None
        self._eigenvalues: Optional[np.ndarray] = None
        self._eigenvectors: Optional[np.ndarray] = None
        self._basis_vectors: Optional[np.ndarray] = None
        self._direction = VectorDirection.ROWVECTORS

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def fit_pca(
        self,
        points: np.ndarray,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
        mean: Optional[np.ndarray] = None,
    ) -> bool:
        """
        Fit the PCA basis to a point cloud.

        The covariance is scaled by ``1/N`` and decomposed with a symmetric
        eigen-solver; eigenvalues and eigenvectors are kept in descending
        eigenvalue order, eigenvectors stored as rows with the sign that
        makes their component sum non-negative.

        Args:
            points: Point matrix, oriented according to *direction*.
            direction: Whether each point is a row or a column of *points*.
            mean: Optional precomputed mean to use instead of the sample mean.

        Returns:
            True on success; False for empty input, an under-determined
            cloud (points <= channels), or a mean of the wrong size.
        """
        data = np.asarray(points, dtype=np.float64)
        if data.size == 0 or data.ndim != 2:
            logger.warning("fit_pca: empty or non-2D point matrix")
            return False

        rows_data = data if direction is VectorDirection.ROWVECTORS else data.T
        num_points, num_elements = rows_data.shape
        if num_points <= num_elements:
            logger.warning(
                "fit_pca: need more points than channels, got %d points for %d channels",
                num_points, num_elements,
            )
            return False

        if mean is None:
            row_mean = rows_data.mean(axis=0)
        else:
            row_mean = np.asarray(mean, dtype=np.float64)
            if row_mean.size != num_elements:
                logger.warning("fit_pca: mean has %d elements, expected %d", row_mean.size, num_elements)
                return False
            row_mean = row_mean.reshape(num_elements)

        centered = rows_data - row_mean
        covariance = centered.T @ centered / float(num_points)

        eigenvalues, eigenvectors = np.linalg.eigh(covariance)
        order = np.argsort(eigenvalues)[::-1]
        eigenvectors = eigenvectors[:, order].T.copy()
        # Eigenvector signs are arbitrary; fix them to a non-negative component sum
        eigenvectors[eigenvectors.sum(axis=1) < 0.0] *= -1.0

        self._eigenvalues = eigenvalues[order].reshape(-1, 1)
        self._eigenvectors = eigenvectors
        self._direction = direction
        if direction is VectorDirection.ROWVECTORS:
            self._mean = row_mean.reshape(1, num_elements)
        else:
            self._mean = row_mean.reshape(num_elements, 1)

        self._basis_vectors = self.get_eigenvectors(REQUIRED_BASIS_VECTORS)
        logger.debug(
            "fit_pca: %d points, eigenvalues %s", num_points, self._eigenvalues.ravel()
        )
        return True

    def pca_point_transform(
        self,
        points: np.ndarray,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
        mean: Optional[np.ndarray] = None,
    ) -> Optional[np.ndarray]:
        """
        Fit the basis, then project the same points onto it.

        The projection does *not* subtract the mean: points keep their
        position relative to the OD origin, which is what the angle
        histogram needs.

        Returns:
            Projected points, or None if fitting failed.
        """
        if not self.fit_pca(points, direction=direction, mean=mean):
            return None
        return self.project_points(points, subtract_mean=False)

    # ------------------------------------------------------------------
    # Projection using fitted state
    # ------------------------------------------------------------------

    def project_points(self, points: np.ndarray, subtract_mean: bool = True) -> Optional[np.ndarray]:
        if self._basis_vectors is None or self._mean is None:
            return None
        return self.project(
            points, self._basis_vectors, self._mean,
            subtract_mean=subtract_mean, direction=self._direction,
        )

    def back_project_points(self, projected: np.ndarray, add_mean: bool = True) -> Optional[np.ndarray]:
        if self._basis_vectors is None or self._mean is None:
            return None
        return self.back_project(
            projected, self._basis_vectors, self._mean,
            add_mean=add_mean, direction=self._direction,
        )

    # ------------------------------------------------------------------
    # Projection with explicit basis
    # ------------------------------------------------------------------

    @staticmethod
    def project(
        points: np.ndarray,
        basis: np.ndarray,
        mean: np.ndarray,
        subtract_mean: bool = True,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
    ) -> Optional[np.ndarray]:
        """
        Project points onto basis vectors.

        Row points: ``(X - m) @ B.T`` giving ``(N, k)``.
        Column points: ``B @ (X - m)`` giving ``(k, N)``.

        Args:
            points: ``(N, C)`` row points or ``(C, N)`` column points.
            basis: ``(k, C)`` basis vectors, one per row.
            mean: ``(1, C)`` for row points, ``(C, 1)`` for column points.
                Required even when *subtract_mean* is False.
            subtract_mean: Center the points first; otherwise use zero offset.
            direction: Orientation of *points* and *mean*.

        Returns:
            Projected points, or None for an empty or all-zero basis, a
            missing mean, or incompatible sizes.
        """
        src = np.asarray(points, dtype=np.float64)
        basis_mat = BasisTransform._checked_basis(basis)
        mean_mat = BasisTransform._oriented_mean(mean, direction)
        if src.size == 0 or src.ndim != 2 or basis_mat is None or mean_mat is None:
            return None

        if direction is VectorDirection.ROWVECTORS:
            valid = mean_mat.shape[1] == src.shape[1] and basis_mat.shape[1] == src.shape[1]
        else:
            valid = mean_mat.shape[0] == src.shape[0] and basis_mat.shape[1] == src.shape[0]
        if not valid:
            logger.warning(
                "project: incompatible sizes points=%s basis=%s mean=%s",
                src.shape, basis_mat.shape, mean_mat.shape,
            )
            return None

        offset = mean_mat if subtract_mean else np.zeros_like(mean_mat)
        centered = src - offset
        if direction is VectorDirection.ROWVECTORS:
            return centered @ basis_mat.T
        return basis_mat @ centered

    @staticmethod
    def back_project(
        projected: np.ndarray,
        basis: np.ndarray,
        mean: np.ndarray,
        add_mean: bool = True,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
    ) -> Optional[np.ndarray]:
        """
        Map projected coordinates back into the original space.

        Row points: ``P @ B + m``. Column points: ``B.T @ P + m``.
        With *add_mean* False the mean is replaced by zeros.

        Returns:
            Back-projected points, or None on the same failures as
            :meth:`project`.
        """
        proj = np.asarray(projected, dtype=np.float64)
        basis_mat = BasisTransform._checked_basis(basis)
        mean_mat = BasisTransform._oriented_mean(mean, direction)
        if proj.size == 0 or proj.ndim != 2 or basis_mat is None or mean_mat is None:
            return None

        if direction is VectorDirection.ROWVECTORS:
            valid = basis_mat.shape[0] == proj.shape[1] and mean_mat.shape[1] == basis_mat.shape[1]
        else:
            valid = basis_mat.shape[0] == proj.shape[0] and mean_mat.shape[0] == basis_mat.shape[1]
        if not valid:
            logger.warning(
                "back_project: incompatible sizes projected=%s basis=%s mean=%s",
                proj.shape, basis_mat.shape, mean_mat.shape,
            )
            return None

        offset = mean_mat if add_mean else np.zeros_like(mean_mat)
        if direction is VectorDirection.ROWVECTORS:
            return proj @ basis_mat + offset
        return basis_mat.T @ proj + offset

    @staticmethod
    def _checked_basis(basis) -> Optional[np.ndarray]:
        if basis is None:
            return None
        basis_mat = np.atleast_2d(np.asarray(basis, dtype=np.float64))
        if basis_mat.size == 0 or not np.any(basis_mat):
            logger.warning("basis vectors are empty or all zero")
            return None
        return basis_mat

    @staticmethod
    def _oriented_mean(mean, direction: VectorDirection) -> Optional[np.ndarray]:
        if mean is None:
            return None
        mean_mat = np.asarray(mean, dtype=np.float64)
        if mean_mat.size == 0:
            return None
        if mean_mat.ndim == 1:
            if direction is VectorDirection.ROWVECTORS:
                return mean_mat.reshape(1, -1)
            return mean_mat.reshape(-1, 1)
        if mean_mat.ndim != 2:
            return None
        # A 2-D mean must already agree with the declared direction
        if direction is VectorDirection.ROWVECTORS and mean_mat.shape[0] != 1:
            logger.warning("mean of shape %s is not a row vector", mean_mat.shape)
            return None
        if direction is VectorDirection.COLUMNVECTORS and mean_mat.shape[1] != 1:
            logger.warning("mean of shape %s is not a column vector", mean_mat.shape)
            return None
        return mean_mat

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_mean(self) -> Optional[np.ndarray]:
        return None if self._mean is None else self._mean.copy()

    def get_eigenvalues(self, n: int = -1) -> Optional[np.ndarray]:
        """Return the first *n* eigenvalues (all of them when n < 0)."""
        if self._eigenvalues is None:
            return None
        if n < 0:
            return self._eigenvalues.copy()
        return self._eigenvalues[:n].copy()

    def get_eigenvectors(
        self,
        n: int = -1,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
    ) -> Optional[np.ndarray]:
        """Return the first *n* eigenvectors as rows, or as columns."""
        if self._eigenvectors is None:
            return None
        vectors = self._eigenvectors if n < 0 else self._eigenvectors[:n]
        if direction is VectorDirection.COLUMNVECTORS:
            return vectors.T.copy()
        return vectors.copy()

    def get_basis_vectors(self) -> Optional[np.ndarray]:
        return None if self._basis_vectors is None else self._basis_vectors.copy()

    def set_basis_vectors(
        self,
        basis: np.ndarray,
        direction: VectorDirection = VectorDirection.ROWVECTORS,
    ) -> None:
        """Install an external basis; column-stored vectors are transposed to rows."""
        basis_mat = np.atleast_2d(np.asarray(basis, dtype=np.float64))
        if direction is VectorDirection.COLUMNVECTORS:
            basis_mat = basis_mat.T
        self._basis_vectors = basis_mat.copy()

    def set_mean(self, mean: np.ndarray, direction: VectorDirection = VectorDirection.ROWVECTORS) -> None:
        self._mean = self._oriented_mean(np.asarray(mean, dtype=np.float64).ravel(), direction)
        self._direction = direction

    def get_vector_direction(self) -> VectorDirection:
        return self._direction

    # ------------------------------------------------------------------
    # Basis sign handling
    # ------------------------------------------------------------------

    def optimize_basis_vector_signs(
        self,
        points: np.ndarray,
        basis: np.ndarray,
        direction: VectorDirection = VectorDirection.COLUMNVECTORS,
    ) -> np.ndarray:
        """
        Choose signs for the basis vectors.

        Sign selection is switched off: the basis is returned as a copy,
        in the orientation it was given.
        """
        logger.debug("optimize_basis_vector_signs: sign optimisation disabled, basis unchanged")
        return np.array(basis, dtype=np.float64, copy=True)

    def create_pixel_subsample(self, points: np.ndarray, n: int) -> np.ndarray:
        """
        Pick *n* distinct random rows of *points*.

        Each slot retries at most ``2 * n`` times on duplicates and gives up
        silently after that, so the result can hold fewer than *n* rows.
        Asking for at least as many rows as exist returns all of them.
        """
        src = np.asarray(points, dtype=np.float64)
        if n < 1 or src.ndim != 2 or src.shape[0] == 0:
            return np.empty((0, src.shape[1] if src.ndim == 2 else 0), dtype=np.float64)
        if n >= src.shape[0]:
            return src.copy()

        chosen = []
        seen = set()
        attempt_limit = 2 * n
        for _ in range(n):
            for _attempt in range(attempt_limit):
                index = int(self.rng.integers(0, src.shape[0]))
                if index not in seen:
                    seen.add(index)
                    chosen.append(index)
                    break
        return src[chosen].copy()
