"""
Unit tests for stain vector estimation.

Tests cover:
- Algorithm names and parameter validation
- Config construction from dicts
- Each estimator on a synthetic H&E slide
- Failure signalling (all-zero matrix)
"""

import numpy as np
import pytest

from stainanalysis.loaders.Tiles import ArrayTileSource
from stainanalysis.processors.stain import (
    MacenkoParameters,
    NiethammerParameters,
    NMFParameters,
    PixelROIParameters,
    StainVectorAlgorithm,
    StainVectorConfig,
    StainVectorEstimator,
    estimate_stain_vectors,
)
from stainanalysis.processors.stain.stain_vectors import _purest_pixel_stains

# ============================================================================
# Helper fixtures
# ============================================================================


@pytest.fixture
def estimator(he_source):
    """Estimator over the synthetic H&E source with a fixed seed"""
    return StainVectorEstimator(he_source, rng=np.random.default_rng(0))


@pytest.fixture
def two_block_image(he_vectors):
    """64x64 image: left half pure hematoxylin, right half pure eosin"""
    image = np.zeros((64, 64, 3), dtype=np.uint8)
    for i, x0 in enumerate((0, 32)):
        rgb = np.floor(255.0 * np.power(10.0, -0.8 * he_vectors[i]) + 0.5).astype(np.uint8)
        image[:, x0:x0 + 32] = rgb
    return image


def assert_matches(estimated, expected, min_cos):
    """Each estimated row has cosine similarity above min_cos with its expected row"""
    for row, ref in zip(estimated, expected):
        cos = float(row @ ref) / (np.linalg.norm(row) * np.linalg.norm(ref))
        assert cos > min_cos, f"cosine {cos:.4f} for {row} vs {ref}"


def assert_well_formed(matrix, num_stains):
    assert matrix.shape == (3, 3)
    np.testing.assert_allclose(np.linalg.norm(matrix[:num_stains], axis=1), 1.0, atol=1e-9)
    if num_stains < 3:
        np.testing.assert_array_equal(matrix[num_stains:], 0.0)


# ============================================================================
# Algorithm and Config Tests
# ============================================================================


class TestStainVectorConfig:
    """Test algorithm names and configuration"""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("macenko", StainVectorAlgorithm.MACENKO),
            ("NMF", StainVectorAlgorithm.NMF),
            ("pixel-roi", StainVectorAlgorithm.PIXEL_ROI),
            ("Pixel ROI", StainVectorAlgorithm.PIXEL_ROI),
            (StainVectorAlgorithm.SVD, StainVectorAlgorithm.SVD),
        ],
    )
    def test_from_name(self, name, expected):
        """Test lenient algorithm name parsing"""
        assert StainVectorAlgorithm.from_name(name) is expected

    def test_unknown_algorithm(self):
        """Test that unknown names raise"""
        with pytest.raises(ValueError, match="Unknown stain vector algorithm"):
            StainVectorAlgorithm.from_name("vahadane")

    def test_default_parameters(self):
        """Test that the default config is Macenko with default parameters"""
        config = StainVectorConfig()
        assert config.algorithm is StainVectorAlgorithm.MACENKO
        assert config.parameters.sample_size == 10000
        assert config.parameters.od_threshold == pytest.approx(0.15)
        assert config.parameters.percentile == pytest.approx(1.0)

    def test_parameters_follow_algorithm(self):
        """Test that each algorithm gets its own parameter type"""
        assert isinstance(StainVectorConfig("niethammer").parameters, NiethammerParameters)
        assert isinstance(StainVectorConfig("pixel_roi").parameters, PixelROIParameters)

    def test_mismatched_parameters(self):
        """Test that parameters of another algorithm are rejected"""
        with pytest.raises(ValueError, match="expects"):
            StainVectorConfig(StainVectorAlgorithm.NMF, MacenkoParameters())

    def test_from_dict(self):
        """Test building a config from a dict"""
        config = StainVectorConfig.from_dict({"algorithm": "nmf", "num_stains": 3, "sample_size": 500})
        assert config.algorithm is StainVectorAlgorithm.NMF
        assert config.parameters.num_stains == 3
        assert config.parameters.sample_size == 500

    def test_from_dict_unknown_key(self):
        """Test that unknown parameter names raise"""
        with pytest.raises(ValueError, match="Unknown macenko parameters"):
            StainVectorConfig.from_dict({"algorithm": "macenko", "alpha": 0.2})

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: MacenkoParameters(od_threshold=-0.1),
            lambda: MacenkoParameters(nbins=0),
            lambda: NMFParameters(num_stains=4),
            lambda: NiethammerParameters(alpha=2.0),
            lambda: NiethammerParameters(priors=((1.0, 0.0, 0.0),)),
            lambda: PixelROIParameters(regions=[(0, 0, 1, 1)] * 4),
        ],
    )
    def test_invalid_parameters(self, factory):
        """Test parameter validation"""
        with pytest.raises(ValueError):
            factory()


# ============================================================================
# Estimator Tests
# ============================================================================


class TestMacenko:
    """Test the Macenko estimator"""

    def test_recovers_he(self, estimator, he_vectors):
        """Test that H&E vectors are recovered, hematoxylin first"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig("macenko"))
        assert_well_formed(matrix, 2)
        assert_matches(matrix[:2], he_vectors, 0.95)

    def test_sample_recorded(self, estimator):
        """Test that the OD sample is kept for inspection"""
        estimator.compute_stain_vectors(StainVectorConfig.from_dict({"sample_size": 2000}))
        assert estimator.last_sample is not None
        assert estimator.last_sample.shape[1] == 3
        assert np.all(estimator.last_sample.sum(axis=1) > 0.15)

    def test_reproducible(self, he_source):
        """Test that equal seeds give equal matrices"""
        a = StainVectorEstimator(he_source, rng=np.random.default_rng(5)).compute_stain_vectors()
        b = StainVectorEstimator(he_source, rng=np.random.default_rng(5)).compute_stain_vectors()
        np.testing.assert_array_equal(a, b)


class TestSVD:
    """Test the SVD variant"""

    def test_well_formed(self, estimator):
        """Test that two unit stain vectors come back"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig("svd"))
        assert_well_formed(matrix, 2)
        # Hematoxylin-like row first
        assert matrix[0, 0] >= matrix[1, 0]


class TestNMF:
    """Test the NMF estimator"""

    def test_recovers_he(self, estimator, he_vectors):
        """Test that NMF finds both stains"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig.from_dict({"algorithm": "nmf"}))
        assert_well_formed(matrix, 2)
        assert np.all(matrix >= 0.0)
        assert_matches(matrix[:2], he_vectors, 0.98)

    def test_stable_across_seeds(self, he_source):
        """Test that different samples of one slide give the same stains"""
        config = StainVectorConfig.from_dict({"algorithm": "nmf"})
        first = StainVectorEstimator(he_source, rng=np.random.default_rng(1)).compute_stain_vectors(config)
        second = StainVectorEstimator(he_source, rng=np.random.default_rng(2)).compute_stain_vectors(config)
        np.testing.assert_allclose(first, second, atol=0.03)

    def test_three_stains(self, stained_image_factory, he_vectors):
        """Test that three components fill all rows"""
        image = stained_image_factory([he_vectors[0], he_vectors[1], (0.268, 0.570, 0.776)], seed=3)
        estimator = StainVectorEstimator(ArrayTileSource(image, tile_size=(32, 32)), rng=np.random.default_rng(0))
        matrix = estimator.compute_stain_vectors(
            StainVectorConfig.from_dict({"algorithm": "nmf", "num_stains": 3})
        )
        assert_well_formed(matrix, 3)


class TestPurestPixelStains:
    """Test reading stains from NMF coefficient shares"""

    @pytest.fixture
    def mixed_sample(self, rng, he_vectors):
        """OD rows mixing H and E, with one pure pixel of each"""
        conc = rng.uniform(0.1, 1.0, size=(200, 2))
        conc[0] = (1.0, 0.0)
        conc[1] = (0.0, 1.0)
        return conc, conc @ he_vectors

    def test_wide_cone_components(self, mixed_sample, he_vectors):
        """Test that coefficients of a wider cone still lead to the pure pixels"""
        conc, sample = mixed_sample
        # Coefficients against the cone spanned by 1.5H - 0.5E and 1.5E - 0.5H
        coefficients = conc @ np.array([[0.75, 0.25], [0.25, 0.75]])
        stains = _purest_pixel_stains(sample, coefficients, 0.001)
        np.testing.assert_allclose(stains, he_vectors, atol=1e-12)

    def test_unused_component(self, mixed_sample):
        """Test that an all-zero coefficient column gives None"""
        conc, sample = mixed_sample
        coefficients = np.column_stack([conc.sum(axis=1), np.zeros(len(conc))])
        assert _purest_pixel_stains(sample, coefficients, 0.01) is None


class TestICA:
    """Test the ICA estimator"""

    def test_well_formed(self, estimator):
        """Test that ICA gives unit, positively oriented rows"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig("ica"))
        assert_well_formed(matrix, 2)
        assert np.all(matrix[:2].sum(axis=1) > 0.0)


class TestNiethammer:
    """Test the prior-guided estimator"""

    def test_recovers_he(self, estimator, he_vectors):
        """Test that cluster means match H&E"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig("niethammer"))
        assert_well_formed(matrix, 2)
        assert_matches(matrix[:2], he_vectors, 0.98)

    def test_single_stain_image_falls_back_to_prior(self, stained_image_factory, he_vectors):
        """Test that an empty cluster is filled with its prior"""
        image = stained_image_factory([he_vectors[0]], seed=2)
        estimator = StainVectorEstimator(ArrayTileSource(image, tile_size=(32, 32)), rng=np.random.default_rng(0))
        matrix = estimator.compute_stain_vectors(
            StainVectorConfig("niethammer", NiethammerParameters(alpha=0.0))
        )
        assert_matches(matrix[:1], he_vectors[:1], 0.99)
        np.testing.assert_allclose(matrix[1], he_vectors[1], atol=1e-6)


class TestPixelROI:
    """Test direct measurement from regions"""

    def test_rectangles(self, two_block_image, he_vectors):
        """Test that rectangle means give the stain directions"""
        source = ArrayTileSource(two_block_image, tile_size=(32, 32))
        params = PixelROIParameters(regions=[(4, 4, 20, 20), (40, 4, 20, 20)])
        matrix = StainVectorEstimator(source).compute_stain_vectors(StainVectorConfig("pixel_roi", params))
        assert_matches(matrix[:2], he_vectors, 0.999)
        # Means are not normalized
        assert np.linalg.norm(matrix[0]) == pytest.approx(0.8, abs=0.02)
        np.testing.assert_array_equal(matrix[2], 0.0)

    def test_polygon(self, two_block_image, he_vectors):
        """Test a triangular region"""
        source = ArrayTileSource(two_block_image)
        triangle = np.array([[40.0, 10.0], [60.0, 10.0], [50.0, 40.0]])
        params = PixelROIParameters(regions=[triangle])
        matrix = StainVectorEstimator(source).compute_stain_vectors(StainVectorConfig("pixel_roi", params))
        assert_matches(matrix[:1], he_vectors[1:], 0.999)

    def test_no_regions(self, he_source):
        """Test that an empty region list fails"""
        matrix = StainVectorEstimator(he_source).compute_stain_vectors(StainVectorConfig("pixel_roi"))
        np.testing.assert_array_equal(matrix, 0.0)

    def test_bad_region_shape(self, he_source):
        """Test that a malformed region fails"""
        params = PixelROIParameters(regions=[(1, 2, 3)])
        matrix = StainVectorEstimator(he_source).compute_stain_vectors(StainVectorConfig("pixel_roi", params))
        np.testing.assert_array_equal(matrix, 0.0)


# ============================================================================
# Failure Tests
# ============================================================================


class TestFailures:
    """Test that failures give the all-zero matrix"""

    @pytest.mark.parametrize("algorithm", ["macenko", "svd", "nmf", "ica", "niethammer"])
    def test_white_image(self, white_image, algorithm):
        """Test that a blank image has no stain vectors"""
        source = ArrayTileSource(white_image, tile_size=(16, 16))
        matrix = StainVectorEstimator(source, rng=np.random.default_rng(0)).compute_stain_vectors(
            StainVectorConfig(algorithm)
        )
        np.testing.assert_array_equal(matrix, np.zeros((3, 3)))

    def test_zero_sample_size(self, estimator):
        """Test that a non-positive sample size fails"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig.from_dict({"sample_size": 0}))
        np.testing.assert_array_equal(matrix, 0.0)

    def test_level_out_of_range(self, estimator):
        """Test that a missing level fails"""
        matrix = estimator.compute_stain_vectors(StainVectorConfig.from_dict({"level": 3}))
        np.testing.assert_array_equal(matrix, 0.0)

    def test_no_source(self):
        """Test that a missing source fails"""
        np.testing.assert_array_equal(StainVectorEstimator(None).compute_stain_vectors(), 0.0)


class TestEstimateStainVectors:
    """Test the one-call helper"""

    def test_from_array(self, he_image, he_vectors):
        """Test estimation straight from an RGB array"""
        matrix = estimate_stain_vectors(he_image, "macenko", rng=np.random.default_rng(1), sample_size=5000)
        assert_matches(matrix[:2], he_vectors, 0.95)

    def test_unknown_parameter(self, he_image):
        """Test that unknown keyword parameters raise"""
        with pytest.raises(ValueError):
            estimate_stain_vectors(he_image, "nmf", percentile=2.0)
