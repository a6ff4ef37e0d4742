"""
Small linear-algebra kernels for 3x3 stain-vector matrices.

Stain matrices are stored with one stain per row and the R, G, B optical
density components in the columns. Unused stain slots are zero rows.
"""

from typing import Optional, Sequence

import numpy as np

from .od_conversion import ODMIN

__all__ = [
    "norm",
    "normalize_array",
    "compute_3x3_inverse",
    "make_3x3_unitary",
    "convert_zero_rows_to_unitary",
    "row_sum_zero_check",
    "multiply_3x3_matrix_and_vector",
    "sort_stain_vectors",
    "as_stain_matrix",
]

# Rows whose norm falls below this are treated as empty stain slots
ZERO_ROW_NORM = 10.0 * ODMIN


def as_stain_matrix(values) -> np.ndarray:
    """Coerce 9 values, or a 3x3 nested sequence, into a float64 (3, 3) array."""
    matrix = np.asarray(values, dtype=np.float64)
    if matrix.size != 9:
        raise ValueError(f"stain matrix must have 9 elements, got {matrix.size}")
    return matrix.reshape(3, 3).copy()


def norm(values: Sequence[float]) -> float:
    """Euclidean norm of a vector."""
    return float(np.sqrt(np.sum(np.square(np.asarray(values, dtype=np.float64)))))


def normalize_array(values: Sequence[float]) -> np.ndarray:
    """Scale a vector to unit length; a zero vector is returned unchanged."""
    arr = np.asarray(values, dtype=np.float64)
    length = norm(arr)
    if length == 0.0:
        return arr.copy()
    return arr / length


def compute_3x3_inverse(matrix) -> np.ndarray:
    """
    Invert a stain matrix for color deconvolution.

    The result is the *transposed* inverse, so that multiplying it by a
    pixel's OD column vector gives the saturation of each row-stored stain.

    Args:
        matrix: 3x3 stain matrix (or 9 values, row-major).

    Returns:
        (3, 3) array; all zeros if ``|det| < ODMIN``.
    """
    m = as_stain_matrix(matrix)
    if abs(np.linalg.det(m)) < ODMIN:
        return np.zeros((3, 3), dtype=np.float64)
    return np.linalg.inv(m).T


def make_3x3_unitary(matrix) -> np.ndarray:
    """Normalize each row to unit length, leaving near-zero rows as they are."""
    m = as_stain_matrix(matrix)
    norms = np.linalg.norm(m, axis=1)
    for i, length in enumerate(norms):
        if length >= ZERO_ROW_NORM:
            m[i] = m[i] / length
    return m


def convert_zero_rows_to_unitary(matrix, replacement: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Replace near-zero rows with a normalized replacement vector.

    Args:
        matrix: 3x3 stain matrix.
        replacement: Vector to substitute, normalized before use.
            Defaults to ``(1, 1, 1)``.

    Returns:
        Copy of the matrix with empty rows substituted; other rows untouched.
    """
    m = as_stain_matrix(matrix)
    if replacement is None:
        replacement = (1.0, 1.0, 1.0)
    unit_row = normalize_array(replacement)
    norms = np.linalg.norm(m, axis=1)
    m[norms < ZERO_ROW_NORM] = unit_row
    return m


def row_sum_zero_check(matrix) -> np.ndarray:
    """Flag rows whose components sum to zero although the row is non-zero."""
    m = as_stain_matrix(matrix)
    sums = m.sum(axis=1)
    norms = np.linalg.norm(m, axis=1)
    return (np.abs(sums) < ODMIN) & (norms > 0.0)


def multiply_3x3_matrix_and_vector(matrix, vector: Sequence[float]) -> np.ndarray:
    m = as_stain_matrix(matrix)
    v = np.asarray(vector, dtype=np.float64).reshape(3)
    return m @ v


def sort_stain_vectors(matrix, num_stains: int = 2) -> np.ndarray:
    """
    Order the first *num_stains* rows by descending red OD component.

    Hematoxylin absorbs more red than eosin or DAB, so this puts the
    hematoxylin-like vector first. Rows past *num_stains* keep their place.
    """
    m = as_stain_matrix(matrix)
    num_stains = int(np.clip(num_stains, 0, 3))
    order = np.argsort(-m[:num_stains, 0], kind="stable")
    m[:num_stains] = m[:num_stains][order]
    return m
