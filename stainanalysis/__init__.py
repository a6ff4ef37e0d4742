"""
StainAnalysis: stain vector estimation and color deconvolution

Main module exposing the unified :class:`StainAnalysis` interface and the
most used building blocks.
"""

from .loaders import ArrayTileSource, RegionReaderTileSource, TiledImageSource, get_tile_source
from .processors import StainAnalysis
from .processors.stain import (
    ColorDeconvolution,
    DisplayOption,
    StainVectorAlgorithm,
    StainVectorConfig,
    StainVectorEstimator,
    estimate_stain_vectors,
    separate_stains,
)
from .profiles import StainProfile, get_default_profile

__version__ = "0.1.0"

__all__ = [
    "StainAnalysis",
    "ArrayTileSource",
    "RegionReaderTileSource",
    "TiledImageSource",
    "get_tile_source",
    "ColorDeconvolution",
    "DisplayOption",
    "StainVectorAlgorithm",
    "StainVectorConfig",
    "StainVectorEstimator",
    "estimate_stain_vectors",
    "separate_stains",
    "StainProfile",
    "get_default_profile",
]
