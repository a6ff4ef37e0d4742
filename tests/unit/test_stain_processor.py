"""
Unit tests for the StainAnalysis API

Tests the high-level interface that ties estimation, profiles,
deconvolution and reporting together.
"""

import numpy as np
import pytest

from stainanalysis import StainAnalysis, __version__
from stainanalysis.processors.stain import DisplayOption, StainVectorAlgorithm
from stainanalysis.profiles import get_default_profile, save_stains_csv


class TestStainAnalysisInitialization:
    """Test StainAnalysis initialization"""

    def test_default_initialization(self):
        """Test initialization with default parameters"""
        analysis = StainAnalysis()
        assert analysis.estimator_config.algorithm is StainVectorAlgorithm.MACENKO
        assert analysis.display is DisplayOption.STAIN1
        assert analysis.apply_threshold is False
        assert analysis.threshold == 1.0
        assert analysis.stain_matrix is None

    def test_initialization_with_config(self):
        """Test initialization with custom config"""
        config = {
            "estimator": {"algorithm": "niethammer", "alpha": 0.2},
            "deconvolution": {"display": 1, "apply_threshold": True, "threshold": 0.4},
        }
        analysis = StainAnalysis(config=config)
        assert analysis.estimator_config.algorithm is StainVectorAlgorithm.NIETHAMMER
        assert analysis.estimator_config.parameters.alpha == 0.2
        assert analysis.display == 1
        assert analysis.apply_threshold is True
        assert analysis.threshold == pytest.approx(0.4)

    def test_unknown_section(self):
        """Test that unknown config sections raise"""
        with pytest.raises(ValueError, match="Unknown config sections"):
            StainAnalysis({"clinical": {}})

    def test_unknown_deconvolution_key(self):
        """Test that unknown deconvolution options raise"""
        with pytest.raises(ValueError, match="Unknown deconvolution options"):
            StainAnalysis({"deconvolution": {"colour": "red"}})

    def test_version(self):
        """Test package version is exposed"""
        assert __version__ == "0.1.0"


class TestEstimation:
    """Test stain vector estimation through the API"""

    def test_estimate_from_array(self, he_image, he_vectors):
        """Test that estimation stores the matrix"""
        analysis = StainAnalysis(rng=np.random.default_rng(0))
        matrix = analysis.estimate_stain_vectors(he_image)
        assert matrix.shape == (3, 3)
        assert analysis.stain_matrix is matrix
        assert float(matrix[0] @ he_vectors[0]) > 0.95

    def test_algorithm_override(self, he_source, he_vectors):
        """Test choosing another algorithm per call"""
        analysis = StainAnalysis(rng=np.random.default_rng(0))
        matrix = analysis.estimate_stain_vectors(he_source, algorithm="niethammer", sample_size=3000)
        assert float(matrix[1] @ he_vectors[1]) > 0.98

    def test_parameter_override_keeps_configured_algorithm(self, he_source):
        """Test that parameters alone keep the configured algorithm"""
        analysis = StainAnalysis({"estimator": {"algorithm": "nmf"}}, rng=np.random.default_rng(0))
        matrix = analysis.estimate_stain_vectors(he_source, sample_size=2000)
        assert np.all(matrix >= 0.0)
        assert np.any(matrix)

    def test_failure_keeps_previous_matrix(self, white_image, he_matrix):
        """Test that a failed estimation does not overwrite the matrix"""
        analysis = StainAnalysis()
        analysis.stain_matrix = he_matrix
        matrix = analysis.estimate_stain_vectors(white_image)
        np.testing.assert_array_equal(matrix, 0.0)
        assert analysis.stain_matrix is he_matrix


class TestProfiles:
    """Test loading stain vectors"""

    def test_builtin(self):
        """Test loading a built-in profile by alias"""
        analysis = StainAnalysis()
        matrix = analysis.load_profile("he-dab")
        assert np.count_nonzero(np.linalg.norm(matrix, axis=1)) == 3
        assert analysis.stain_matrix is matrix

    def test_unknown_builtin(self):
        """Test that unknown names raise"""
        with pytest.raises(ValueError, match="Unknown stain profile"):
            StainAnalysis().load_profile("trichrome")

    def test_xml(self, temp_dir):
        """Test loading an XML profile"""
        path = temp_dir / "hdab.xml"
        get_default_profile("HematoxylinPDAB").write_stain_profile(path)
        matrix = StainAnalysis().load_profile(path)
        np.testing.assert_allclose(np.linalg.norm(matrix[:2], axis=1), [1.0, 1.0])
        np.testing.assert_array_equal(matrix[2], 0.0)

    def test_missing_xml(self, temp_dir):
        """Test that a missing XML file gives None"""
        assert StainAnalysis().load_profile(temp_dir / "none.xml") is None

    def test_csv(self, temp_dir, hdab_matrix):
        """Test loading a CSV stain file with a marker"""
        path = temp_dir / "stains.csv"
        save_stains_csv(path, hdab_matrix, marker="HematoxylinPDAB")
        analysis = StainAnalysis()
        np.testing.assert_allclose(analysis.load_profile(path, marker="HematoxylinPDAB"), hdab_matrix)
        assert analysis.load_profile(path) is None


class TestDeconvolution:
    """Test deconvolution and reports"""

    def test_requires_matrix(self, he_image):
        """Test that deconvolving without a matrix raises"""
        with pytest.raises(ValueError, match="No stain matrix"):
            StainAnalysis().deconvolve(he_image)

    def test_single_and_all(self, he_image, he_matrix):
        """Test one selected stain image against all three"""
        analysis = StainAnalysis()
        all_stains = analysis.deconvolve(he_image, he_matrix, all_stains=True)
        assert len(all_stains) == 3
        second = analysis.deconvolve(he_image, he_matrix, display=DisplayOption.STAIN2)
        np.testing.assert_array_equal(second, all_stains[1])

    def test_uses_stored_matrix(self, he_image):
        """Test that a loaded profile is used by default"""
        analysis = StainAnalysis()
        analysis.load_profile("he")
        out = analysis.deconvolve(he_image)
        assert out.shape == (128, 128, 4)

    def test_report(self, he_image, he_matrix):
        """Test the combined text report"""
        analysis = StainAnalysis({"deconvolution": {"apply_threshold": True, "threshold": 0.3}})
        out = analysis.deconvolve(he_image, he_matrix)
        text = analysis.report(out, full_size=(256, 256), stain_matrix=he_matrix)
        assert text.startswith("Pixels belong to FG:")
        assert "Color deconvolution - Stains Coefficients" in text
        assert "Stain-3" in text

    def test_report_without_matrix(self):
        """Test that the coverage line is reported alone without a matrix"""
        image = np.zeros((10, 10, 4), dtype=np.uint8)
        image[:5, :, 0] = 1
        assert StainAnalysis().report(image, full_size=(10, 10)) == "Pixels belong to FG:50.000 %\n\n"
