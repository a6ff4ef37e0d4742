"""
StainAnalysis - Unified interface for stain vector analysis

This module provides a high-level API that ties together stain vector
estimation, stain profiles, color deconvolution and coverage reporting.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from ..loaders.Tiles import TiledImageSource, get_tile_source
from .stain import (
    ColorDeconvolution,
    DisplayOption,
    StainVectorConfig,
    StainVectorEstimator,
    generate_coverage_report,
    generate_stain_report,
    pixel_fraction,
)


class StainAnalysis:
    """
    Unified processor for stain analysis of pathology images.

    This class provides a complete pipeline:
    - Stain vector estimation (Macenko, SVD, NMF, ICA, Niethammer, pixel ROI)
    - Stain profiles (built-in H&E / H-DAB / HE-DAB, XML files, CSV stain files)
    - Color deconvolution into per-stain images
    - Foreground coverage and stain coefficient reports

    Args:
        config: Optional configuration with the sections ``"estimator"``
            (keys of :meth:`StainVectorConfig.from_dict`) and
            ``"deconvolution"`` (``display``, ``apply_threshold``,
            ``threshold``).
        rng: Random generator for pixel sampling.

    Example:
        >>> analysis = StainAnalysis({"estimator": {"algorithm": "macenko"}})
        >>> matrix = analysis.estimate_stain_vectors(slide_array)
        >>> hematoxylin = analysis.deconvolve(slide_array, matrix, display=0)
        >>> print(analysis.report(hematoxylin, full_size=(40000, 30000)))
    """

    _DECONVOLUTION_KEYS = {"display", "apply_threshold", "threshold"}

    def __init__(self, config: Optional[Dict[str, Any]] = None, rng: Optional[np.random.Generator] = None):
        self.config = dict(config or {})
        self.logger = logging.getLogger(__name__)
        self.rng = rng if rng is not None else np.random.default_rng()

        unknown = sorted(set(self.config) - {"estimator", "deconvolution"})
        if unknown:
            raise ValueError(f"Unknown config sections: {unknown}")

        self.estimator_config = StainVectorConfig.from_dict(self.config.get("estimator", {}))

        deconvolution = dict(self.config.get("deconvolution", {}))
        bad_keys = sorted(set(deconvolution) - self._DECONVOLUTION_KEYS)
        if bad_keys:
            raise ValueError(f"Unknown deconvolution options: {bad_keys}")
        self.display = deconvolution.get("display", DisplayOption.STAIN1)
        self.apply_threshold = bool(deconvolution.get("apply_threshold", False))
        self.threshold = float(deconvolution.get("threshold", 1.0))

        self.stain_matrix: Optional[np.ndarray] = None

    def estimate_stain_vectors(
        self,
        source: Union[TiledImageSource, np.ndarray, str, Path, Any],
        algorithm: Optional[str] = None,
        **params,
    ) -> np.ndarray:
        """
        Estimate stain vectors from an image.

        Args:
            source: Tiled source, RGB array, slide handle or slide path.
            algorithm: Algorithm name; defaults to the configured one.
            **params: Parameter overrides for the algorithm.

        Returns:
            (3, 3) stain matrix; all zeros when estimation failed.
        """
        if algorithm is None and not params:
            config = self.estimator_config
        else:
            base = {} if algorithm is not None else dict(self.config.get("estimator", {}))
            base.update(params)
            base["algorithm"] = algorithm or self.estimator_config.algorithm
            config = StainVectorConfig.from_dict(base)

        tiles = get_tile_source(source)
        self.logger.info("Estimating stain vectors with %s on %r", config.algorithm.value, tiles)
        matrix = StainVectorEstimator(tiles, rng=self.rng).compute_stain_vectors(config)
        if np.any(matrix):
            self.stain_matrix = matrix
        else:
            self.logger.warning("Stain vector estimation returned no vectors")
        return matrix

    def load_profile(self, path_or_name: Union[str, Path], marker: str = "RegionOfInterest") -> Optional[np.ndarray]:
        """
        Load stain vectors from a built-in profile, an XML profile or a CSV stain file.

        Args:
            path_or_name: Built-in profile name (``"he"``, ``"HematoxylinPDAB"``,
                ...), or a path ending in ``.xml`` or ``.csv``.
            marker: Line marker to read from a CSV stain file.

        Returns:
            (3, 3) stain matrix, or None if the profile could not be read.
        """
        from ..profiles import StainProfile, get_default_profile, load_stains_csv

        path = Path(path_or_name)
        suffix = path.suffix.lower()
        if suffix == ".csv":
            matrix = load_stains_csv(path, marker)
        elif suffix == ".xml":
            profile = StainProfile()
            if not profile.read_stain_profile(path):
                return None
            matrix = profile.get_profiles_as_array(normalize=False)
        else:
            matrix = get_default_profile(str(path_or_name)).get_profiles_as_array(normalize=False)

        if matrix is None:
            self.logger.warning("No stain vectors in %s", path_or_name)
            return None
        self.stain_matrix = matrix
        return matrix

    def deconvolve(
        self,
        image: np.ndarray,
        stain_matrix: Optional[np.ndarray] = None,
        display: Optional[Union[DisplayOption, int]] = None,
        all_stains: bool = False,
    ) -> Union[np.ndarray, List[np.ndarray], None]:
        """
        Color-deconvolve an RGB image.

        Args:
            image: ``(H, W, C>=3)`` uint8 image.
            stain_matrix: Stain matrix; defaults to the last estimated or
                loaded one.
            display: Stain image to return; defaults to the configured one.
            all_stains: Return all three stain images instead of one.

        Returns:
            RGBA stain image, or a list of three when *all_stains* is set.

        Raises:
            ValueError: If no stain matrix is available.
        """
        matrix = stain_matrix if stain_matrix is not None else self.stain_matrix
        if matrix is None:
            raise ValueError("No stain matrix: estimate or load one first, or pass stain_matrix")

        deconv = ColorDeconvolution(
            matrix,
            display_option=self.display if display is None else display,
            apply_threshold=self.apply_threshold,
            threshold=self.threshold,
        )
        if all_stains:
            return deconv.separate_stains(image)
        return deconv.process(image)

    def report(
        self,
        output_image: np.ndarray,
        full_size: Tuple[int, int],
        stain_matrix: Optional[np.ndarray] = None,
    ) -> str:
        """
        Text report of foreground coverage plus the stain coefficients.

        Args:
            output_image: Thresholded stain image as returned by :meth:`deconvolve`.
            full_size: ``(width, height)`` of the full-resolution image.
            stain_matrix: Matrix to list; defaults to the current one.
        """
        fraction = pixel_fraction(output_image, full_size)
        text = generate_coverage_report(fraction)
        matrix = stain_matrix if stain_matrix is not None else self.stain_matrix
        if matrix is not None:
            text += generate_stain_report(matrix)
        return text
