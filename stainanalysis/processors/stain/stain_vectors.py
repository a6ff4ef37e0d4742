"""
Stain vector estimation.

One estimator object serves every algorithm; the algorithm and its
parameters travel together in a :class:`StainVectorConfig`:

* ``MACENKO`` - PCA plane of sampled OD pixels, percentile angles of the
  projected point cloud (Macenko et al., 2009).
* ``SVD`` - Macenko variant with sign-fixed basis and mean-shifted
  back-projection.
* ``NMF`` / ``ICA`` - matrix factorisations of the sampled OD pixels
  (scikit-learn).
* ``NIETHAMMER`` - prior-guided two-cluster split of the projected cloud
  (Niethammer et al., 2010), single fixed-threshold pass.
* ``PIXEL_ROI`` - mean OD of up to three user-drawn regions.

All estimators return a (3, 3) matrix with one stain per row; unused rows
are zero, and an all-zero matrix means the estimation failed.
"""

import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from skimage.draw import polygon2mask
from sklearn.decomposition import NMF, FastICA

from ...loaders.Tiles import TiledImageSource, get_tile_source
from .angle_histogram import MacenkoHistogram, NiethammerHistogram
from .basis_transform import BasisTransform, VectorDirection
from .random_sampler import RandomWSISampler
from .stain_vector_math import make_3x3_unitary, normalize_array, sort_stain_vectors

logger = logging.getLogger(__name__)

__all__ = [
    "StainVectorAlgorithm",
    "MacenkoParameters",
    "SVDParameters",
    "NMFParameters",
    "ICAParameters",
    "NiethammerParameters",
    "PixelROIParameters",
    "StainVectorConfig",
    "StainVectorEstimator",
    "estimate_stain_vectors",
    "DEFAULT_SAMPLE_SIZE",
    "DEFAULT_OD_THRESHOLD",
    "DEFAULT_PERCENTILE",
    "NMF_PURE_FRACTION",
]

DEFAULT_SAMPLE_SIZE = 10000
DEFAULT_OD_THRESHOLD = 0.15
DEFAULT_PERCENTILE = 1.0

# Share of sampled pixels averaged per NMF component
NMF_PURE_FRACTION = 0.01

# Gill hematoxylin and eosin; duplicated from the profile defaults so the
# processors do not import the profiles package
_PRIOR_HEMATOXYLIN = (0.644211, 0.716556, 0.266844)
_PRIOR_EOSIN = (0.092789, 0.954111, 0.283111)


class StainVectorAlgorithm(Enum):
    MACENKO = "macenko"
    NMF = "nmf"
    ICA = "ica"
    NIETHAMMER = "niethammer"
    PIXEL_ROI = "pixel_roi"
    SVD = "svd"

    @classmethod
    def from_name(cls, name: Union[str, "StainVectorAlgorithm"]) -> "StainVectorAlgorithm":
        if isinstance(name, cls):
            return name
        key = str(name).strip().lower().replace("-", "_").replace(" ", "_")
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(
            f"Unknown stain vector algorithm: {name}. "
            f"Available: {[m.value for m in cls]}"
        )


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


@dataclass
class _SampledParameters:
    sample_size: int = DEFAULT_SAMPLE_SIZE
    od_threshold: float = DEFAULT_OD_THRESHOLD
    level: int = 0
    focus_plane: int = -1
    band: int = -1

    def __post_init__(self):
        if self.od_threshold < 0:
            raise ValueError(f"od_threshold must be non-negative, got {self.od_threshold}")


@dataclass
class MacenkoParameters(_SampledParameters):
    percentile: float = DEFAULT_PERCENTILE
    nbins: int = 1024

    def __post_init__(self):
        super().__post_init__()
        if self.nbins <= 0:
            raise ValueError(f"nbins must be positive, got {self.nbins}")


@dataclass
class SVDParameters(MacenkoParameters):
    pass


@dataclass
class NMFParameters(_SampledParameters):
    num_stains: int = 2
    max_iter: int = 500

    def __post_init__(self):
        super().__post_init__()
        if self.num_stains not in (2, 3):
            raise ValueError(f"num_stains must be 2 or 3, got {self.num_stains}")
        if self.max_iter <= 0:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")


@dataclass
class ICAParameters(NMFParameters):
    pass


@dataclass
class NiethammerParameters(_SampledParameters):
    alpha: float = 0.15
    nbins: int = 128
    priors: Tuple[Tuple[float, float, float], ...] = (_PRIOR_HEMATOXYLIN, _PRIOR_EOSIN)

    def __post_init__(self):
        super().__post_init__()
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {self.alpha}")
        if self.nbins <= 0:
            raise ValueError(f"nbins must be positive, got {self.nbins}")
        priors = np.asarray(self.priors, dtype=np.float64)
        if priors.shape != (2, 3):
            raise ValueError(f"priors must be two RGB triples, got shape {priors.shape}")


@dataclass
class PixelROIParameters:
    """
    Regions of interest for direct stain measurement.

    Each region is either an ``(x, y, w, h)`` rectangle or an ``(N, 2)``
    array of ``(x, y)`` polygon vertices, in level-0 pixel coordinates.
    Region *i* gives stain *i*.
    """

    regions: Sequence[Any] = field(default_factory=list)
    level: int = 0

    def __post_init__(self):
        if len(self.regions) > 3:
            raise ValueError(f"At most 3 regions are supported, got {len(self.regions)}")


_PARAMETER_TYPES = {
    StainVectorAlgorithm.MACENKO: MacenkoParameters,
    StainVectorAlgorithm.SVD: SVDParameters,
    StainVectorAlgorithm.NMF: NMFParameters,
    StainVectorAlgorithm.ICA: ICAParameters,
    StainVectorAlgorithm.NIETHAMMER: NiethammerParameters,
    StainVectorAlgorithm.PIXEL_ROI: PixelROIParameters,
}


@dataclass
class StainVectorConfig:
    """
    Algorithm choice plus its parameters.

    Example:
        >>> config = StainVectorConfig.from_dict({"algorithm": "macenko", "percentile": 0.5})
        >>> config.parameters.percentile
        0.5
    """

    algorithm: StainVectorAlgorithm = StainVectorAlgorithm.MACENKO
    parameters: Optional[Any] = None

    def __post_init__(self):
        self.algorithm = StainVectorAlgorithm.from_name(self.algorithm)
        expected = _PARAMETER_TYPES[self.algorithm]
        if self.parameters is None:
            self.parameters = expected()
        elif type(self.parameters) is not expected:
            raise ValueError(
                f"{self.algorithm.value} expects {expected.__name__}, "
                f"got {type(self.parameters).__name__}"
            )

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "StainVectorConfig":
        """Build a config from ``{"algorithm": name, **parameter_fields}``."""
        values = dict(config)
        algorithm = StainVectorAlgorithm.from_name(values.pop("algorithm", "macenko"))
        param_type = _PARAMETER_TYPES[algorithm]
        known = {f.name for f in fields(param_type)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown {algorithm.value} parameters: {unknown}")
        return cls(algorithm=algorithm, parameters=param_type(**values))


# ---------------------------------------------------------------------------
# Estimator
# ---------------------------------------------------------------------------


class StainVectorEstimator:
    """
    Estimate stain vectors from a tiled image.

    Args:
        source: Tiled image; pixel sampling and region reads go through it.
        rng: Random generator shared by the sampler, the basis transform and
            the scikit-learn seeds. Defaults to ``np.random.default_rng()``.

    Example:
        >>> estimator = StainVectorEstimator(source, rng=np.random.default_rng(0))
        >>> matrix = estimator.compute_stain_vectors(StainVectorConfig())
    """

    def __init__(self, source: Optional[TiledImageSource], rng: Optional[np.random.Generator] = None):
        self.source = source
        self.rng = rng if rng is not None else np.random.default_rng()
        self.sampler = RandomWSISampler(source, rng=self.rng)
        self.converter = self.sampler.converter
        self.last_sample: Optional[np.ndarray] = None

        self._algorithms: Dict[StainVectorAlgorithm, Callable[[Any], Optional[np.ndarray]]] = {
            StainVectorAlgorithm.MACENKO: self._macenko,
            StainVectorAlgorithm.SVD: self._svd,
            StainVectorAlgorithm.NMF: self._nmf,
            StainVectorAlgorithm.ICA: self._ica,
            StainVectorAlgorithm.NIETHAMMER: self._niethammer,
            StainVectorAlgorithm.PIXEL_ROI: self._pixel_roi,
        }

    def compute_stain_vectors(self, config: Optional[StainVectorConfig] = None) -> np.ndarray:
        """
        Run the configured algorithm.

        Returns:
            (3, 3) stain matrix, one stain per row. All zeros on failure.
        """
        config = config if config is not None else StainVectorConfig()
        if self.source is None:
            logger.warning("No image source; stain vectors not computed")
            return np.zeros((3, 3), dtype=np.float64)

        result = self._algorithms[config.algorithm](config.parameters)
        if result is None:
            logger.warning("%s stain vector estimation failed", config.algorithm.value)
            return np.zeros((3, 3), dtype=np.float64)
        logger.info("%s stain vectors:\n%s", config.algorithm.value, result)
        return result

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _sample(self, params: _SampledParameters, min_rows: int = 4) -> Optional[np.ndarray]:
        if params.sample_size <= 0:
            logger.warning("Sample size must be positive, got %d", params.sample_size)
            return None
        sample = self.sampler.choose_random_pixels(
            params.sample_size,
            params.od_threshold,
            level=params.level,
            focus_plane=params.focus_plane,
            band=params.band,
        )
        self.last_sample = sample
        if sample is None:
            return None
        if sample.shape[0] < min_rows:
            logger.warning(
                "Only %d pixels above OD threshold %.3f; need at least %d",
                sample.shape[0], params.od_threshold, min_rows,
            )
            return None
        return sample

    # ------------------------------------------------------------------
    # Algorithms
    # ------------------------------------------------------------------

    def _macenko(self, params: MacenkoParameters) -> Optional[np.ndarray]:
        sample = self._sample(params)
        if sample is None:
            return None

        transform = BasisTransform(rng=self.rng)
        projected = transform.pca_point_transform(sample, VectorDirection.ROWVECTORS)
        if projected is None:
            return None

        histogram = MacenkoHistogram(percentile=params.percentile, nbins=params.nbins)
        plane_vectors = histogram.percentile_threshold_vectors(projected)
        if plane_vectors is None:
            return None

        stains = transform.back_project_points(plane_vectors, add_mean=False)
        return self._finish(stains, num_stains=2)

    def _svd(self, params: SVDParameters) -> Optional[np.ndarray]:
        sample = self._sample(params)
        if sample is None:
            return None

        transform = BasisTransform(rng=self.rng)
        if not transform.fit_pca(sample, VectorDirection.ROWVECTORS):
            return None
        basis = transform.get_basis_vectors()
        # First OD component positive for both axes
        basis[basis[:, 0] < 0.0] *= -1.0
        transform.set_basis_vectors(basis, VectorDirection.ROWVECTORS)

        projected = transform.project_points(sample, subtract_mean=False)
        if projected is None:
            return None
        histogram = MacenkoHistogram(
            percentile=params.percentile,
            nbins=params.nbins,
            interpolate_from_previous_bin=False,
        )
        plane_vectors = histogram.percentile_threshold_vectors(projected)
        if plane_vectors is None:
            return None

        stains = transform.back_project_points(plane_vectors, add_mean=True)
        return self._finish(stains, num_stains=2)

    def _nmf(self, params: NMFParameters) -> Optional[np.ndarray]:
        sample = self._sample(params)
        if sample is None:
            return None

        # nndsvd is deterministic; the estimate depends only on the sample
        model = NMF(
            n_components=params.num_stains,
            init="nndsvd",
            max_iter=params.max_iter,
            tol=1e-6,
        )
        coefficients = model.fit_transform(sample)
        stains = _purest_pixel_stains(sample, coefficients, NMF_PURE_FRACTION)
        return self._finish(stains, num_stains=params.num_stains)

    def _ica(self, params: ICAParameters) -> Optional[np.ndarray]:
        sample = self._sample(params)
        if sample is None:
            return None

        model = FastICA(
            n_components=params.num_stains,
            whiten="unit-variance",
            max_iter=params.max_iter,
            random_state=int(self.rng.integers(0, 2**31 - 1)),
        )
        model.fit(sample)
        stains = model.mixing_.T.copy()
        # Independent components carry no sign; stains absorb, so flip to positive
        stains[stains.sum(axis=1) < 0.0] *= -1.0
        return self._finish(stains, num_stains=params.num_stains)

    def _niethammer(self, params: NiethammerParameters) -> Optional[np.ndarray]:
        sample = self._sample(params)
        if sample is None:
            return None

        histogram = NiethammerHistogram(alpha=params.alpha, nbins=params.nbins)
        q_priors = histogram.mix_priors(np.asarray(params.priors, dtype=np.float64))
        if q_priors is None:
            return None
        plane_basis = histogram.prior_basis(q_priors)
        if plane_basis is None:
            return None

        projected = BasisTransform.project(
            sample, plane_basis, np.zeros((1, 3)),
            subtract_mean=False, direction=VectorDirection.ROWVECTORS,
        )
        if projected is None:
            return None
        labels = histogram.assign_clusters(projected)
        if labels is None:
            return None

        stains = np.zeros((2, 3), dtype=np.float64)
        for cluster in range(2):
            members = sample[labels == cluster]
            if members.shape[0] == 0:
                logger.debug("Niethammer cluster %d is empty; using its prior", cluster)
                stains[cluster] = q_priors[cluster]
            else:
                stains[cluster] = normalize_array(members.mean(axis=0))
        logger.debug(
            "Niethammer cluster sizes: %d / %d",
            int(np.sum(labels == 0)), int(np.sum(labels == 1)),
        )

        matrix = np.zeros((3, 3), dtype=np.float64)
        matrix[:2] = stains
        return matrix

    def _pixel_roi(self, params: PixelROIParameters) -> Optional[np.ndarray]:
        if len(params.regions) == 0:
            logger.warning("No regions of interest given")
            return None
        if params.level < 0 or params.level >= self.source.get_level_count():
            logger.warning("Level %d out of range", params.level)
            return None

        matrix = np.zeros((3, 3), dtype=np.float64)
        for i, region in enumerate(params.regions):
            od = self._region_od(region, params.level)
            if od is None:
                return None
            matrix[i] = od.mean(axis=0)
        return matrix

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _region_od(self, region, level: int) -> Optional[np.ndarray]:
        """OD values of the pixels inside one region, as an ``(M, 3)`` array."""
        downsample = self.source.get_level_downsample(level)
        shape = np.asarray(region, dtype=np.float64)

        if shape.ndim == 1 and shape.size == 4:
            x, y, w, h = shape
            size = (max(int(round(w / downsample)), 1), max(int(round(h / downsample)), 1))
            pixels = self.source.read_region((int(x), int(y)), level, size)
            rgb = np.asarray(pixels)[:, :, :3].reshape(-1, 3)
        elif shape.ndim == 2 and shape.shape[1] == 2 and shape.shape[0] >= 3:
            x0, y0 = shape.min(axis=0)
            x1, y1 = shape.max(axis=0)
            size = (
                max(int(np.ceil((x1 - x0) / downsample)) + 1, 1),
                max(int(np.ceil((y1 - y0) / downsample)) + 1, 1),
            )
            pixels = np.asarray(self.source.read_region((int(x0), int(y0)), level, size))
            # polygon2mask takes (row, col) vertices
            vertices = (shape - [x0, y0]) / downsample
            mask = polygon2mask(pixels.shape[:2], vertices[:, ::-1])
            rgb = pixels[:, :, :3][mask]
        else:
            logger.warning("Region must be (x, y, w, h) or an (N, 2) polygon, got shape %s", shape.shape)
            return None

        if rgb.shape[0] == 0:
            logger.warning("Region %s contains no pixels", region)
            return None
        return self.converter.lookup_rgb_to_od(rgb)

    @staticmethod
    def _finish(stains: Optional[np.ndarray], num_stains: int) -> Optional[np.ndarray]:
        """Place estimated rows in a 3x3 matrix, normalise, put hematoxylin first."""
        if stains is None:
            return None
        rows = np.asarray(stains, dtype=np.float64)
        if rows.shape[0] < num_stains or not np.all(np.isfinite(rows)):
            return None
        matrix = np.zeros((3, 3), dtype=np.float64)
        matrix[:num_stains] = rows[:num_stains]
        matrix = make_3x3_unitary(matrix)
        return sort_stain_vectors(matrix, num_stains)


def _purest_pixel_stains(sample: np.ndarray, coefficients: np.ndarray, fraction: float) -> Optional[np.ndarray]:
    """
    Read one stain per NMF component from the pixels it explains best.

    NMF only fixes the cone spanned by its components up to widening: any
    wider nonnegative cone fits the same pixels equally well.
    Each component's coefficient share ``W[:, k] / W.sum(axis=1)`` peaks at
    the pixels nearest the matching edge of the data cone. The stain is the
    mean OD of the top ``fraction`` of pixels by that share.

    Returns None when some component explains no pixel at all.
    """
    totals = coefficients.sum(axis=1)
    if not np.all(coefficients.max(axis=0) > 0.0):
        logger.warning("NMF left a component unused; no stain vectors estimated")
        return None

    share = np.divide(
        coefficients, totals[:, None], out=np.zeros_like(coefficients), where=totals[:, None] > 0.0
    )
    count = max(1, int(np.ceil(fraction * sample.shape[0])))
    stains = np.empty((coefficients.shape[1], sample.shape[1]), dtype=np.float64)
    for k in range(coefficients.shape[1]):
        purest = np.argsort(-share[:, k], kind="stable")[:count]
        stains[k] = normalize_array(sample[purest].mean(axis=0))
    return stains


def estimate_stain_vectors(
    image,
    algorithm: Union[str, StainVectorAlgorithm] = StainVectorAlgorithm.MACENKO,
    rng: Optional[np.random.Generator] = None,
    **params,
) -> np.ndarray:
    """
    Estimate stain vectors in one call.

    Args:
        image: Anything :func:`get_tile_source` accepts (array, slide handle,
            slide path or tiled source).
        algorithm: Algorithm name or enum member.
        rng: Random generator.
        **params: Fields of the algorithm's parameter dataclass.

    Returns:
        (3, 3) stain matrix; all zeros on failure.
    """
    config = StainVectorConfig.from_dict({"algorithm": algorithm, **params})
    return StainVectorEstimator(get_tile_source(image), rng=rng).compute_stain_vectors(config)
