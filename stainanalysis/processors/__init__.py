"""
StainAnalysis Processors Module

Provides the unified stain analysis interface and the stain processing components.
"""

from .stain_processor import StainAnalysis

__all__ = [
    "StainAnalysis",
]
