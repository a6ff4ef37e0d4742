"""Stain profiles: XML persistence, built-in profiles and CSV stain files."""

from .stain_profile import (
    ANALYSIS_MODEL_OPTIONS,
    SEPARATION_ALGORITHM_OPTIONS,
    StainProfile,
)
from .defaults import (
    DAB,
    DEFAULT_STAIN_PROFILES,
    EOSIN,
    EOSIN_GL,
    HEMATOXYLIN,
    HEMATOXYLIN_GL,
    STAIN_FILE_MARKERS,
    get_default_profile,
    get_default_stain_matrix,
    load_stains_csv,
    save_stains_csv,
)

__all__ = [
    "ANALYSIS_MODEL_OPTIONS",
    "SEPARATION_ALGORITHM_OPTIONS",
    "StainProfile",
    "DAB",
    "DEFAULT_STAIN_PROFILES",
    "EOSIN",
    "EOSIN_GL",
    "HEMATOXYLIN",
    "HEMATOXYLIN_GL",
    "STAIN_FILE_MARKERS",
    "get_default_profile",
    "get_default_stain_matrix",
    "load_stains_csv",
    "save_stains_csv",
]
