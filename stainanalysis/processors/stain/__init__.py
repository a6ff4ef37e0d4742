"""
Stain Analysis Module

Stain vector estimation and color deconvolution for brightfield pathology images.

Components:
- Optical density conversion with a lookup table
- Random pixel sampling over tiled images
- PCA basis transform and angle histograms (Macenko, Niethammer)
- Stain vector estimators (Macenko, SVD, NMF, ICA, Niethammer, pixel ROI)
- Color deconvolution and coverage reports
"""

from .od_conversion import ODMIN, ODConversion, od_to_rgb, rgb_to_od
from .stain_vector_math import (
    compute_3x3_inverse,
    convert_zero_rows_to_unitary,
    make_3x3_unitary,
    multiply_3x3_matrix_and_vector,
    norm,
    normalize_array,
    row_sum_zero_check,
    sort_stain_vectors,
)
from .basis_transform import BasisTransform, VectorDirection
from .angle_histogram import AngleHistogram, MacenkoHistogram, NiethammerHistogram
from .random_sampler import RandomWSISampler
from .stain_vectors import (
    DEFAULT_OD_THRESHOLD,
    DEFAULT_PERCENTILE,
    DEFAULT_SAMPLE_SIZE,
    ICAParameters,
    MacenkoParameters,
    NiethammerParameters,
    NMFParameters,
    PixelROIParameters,
    StainVectorAlgorithm,
    StainVectorConfig,
    StainVectorEstimator,
    SVDParameters,
    estimate_stain_vectors,
)
from .color_deconvolution import ColorDeconvolution, DisplayOption, separate_stains
from .coverage import (
    count_nonzero_pixels,
    generate_coverage_report,
    generate_stain_report,
    pixel_fraction,
)

__all__ = [
    # Optical density
    "ODMIN",
    "ODConversion",
    "rgb_to_od",
    "od_to_rgb",
    # Matrix helpers
    "compute_3x3_inverse",
    "convert_zero_rows_to_unitary",
    "make_3x3_unitary",
    "multiply_3x3_matrix_and_vector",
    "norm",
    "normalize_array",
    "row_sum_zero_check",
    "sort_stain_vectors",
    # Projection and histograms
    "BasisTransform",
    "VectorDirection",
    "AngleHistogram",
    "MacenkoHistogram",
    "NiethammerHistogram",
    # Sampling and estimation
    "RandomWSISampler",
    "DEFAULT_OD_THRESHOLD",
    "DEFAULT_PERCENTILE",
    "DEFAULT_SAMPLE_SIZE",
    "ICAParameters",
    "MacenkoParameters",
    "NiethammerParameters",
    "NMFParameters",
    "PixelROIParameters",
    "StainVectorAlgorithm",
    "StainVectorConfig",
    "StainVectorEstimator",
    "SVDParameters",
    "estimate_stain_vectors",
    # Deconvolution and reports
    "ColorDeconvolution",
    "DisplayOption",
    "separate_stains",
    "count_nonzero_pixels",
    "generate_coverage_report",
    "generate_stain_report",
    "pixel_fraction",
]
