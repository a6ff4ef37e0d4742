"""
Unit tests for foreground coverage and text reports.
"""

import numpy as np
import pytest

from stainanalysis.processors.stain import (
    count_nonzero_pixels,
    generate_coverage_report,
    generate_stain_report,
    pixel_fraction,
)


@pytest.fixture
def quarter_image():
    """100x100 RGBA image whose top-left quarter is foreground"""
    image = np.zeros((100, 100, 4), dtype=np.uint8)
    image[..., 3] = 255
    image[:50, :50, 0] = 120
    return image


class TestCountNonzeroPixels:
    """Test parallel pixel counting"""

    def test_count(self, quarter_image):
        """Test counting on the first channel"""
        assert count_nonzero_pixels(quarter_image) == 2500

    def test_other_channel(self, quarter_image):
        """Test counting on the alpha channel"""
        assert count_nonzero_pixels(quarter_image, channel=3) == 10000

    def test_grayscale(self):
        """Test counting a single-channel image"""
        image = np.zeros((13, 7), dtype=np.uint8)
        image[::2, 3] = 1
        assert count_nonzero_pixels(image) == 7

    def test_worker_count_does_not_matter(self, rng):
        """Test that the result is independent of the thread count"""
        image = (rng.random((257, 33, 3)) > 0.6).astype(np.uint8) * 200
        expected = int(np.count_nonzero(image[..., 0]))
        assert count_nonzero_pixels(image, max_workers=1) == expected
        assert count_nonzero_pixels(image, max_workers=4) == expected

    def test_channel_out_of_range(self, quarter_image, caplog):
        """Test that a missing channel counts zero and warns"""
        with caplog.at_level("WARNING"):
            assert count_nonzero_pixels(quarter_image, channel=4) == 0
            assert count_nonzero_pixels(quarter_image, channel=-1) == 0
        assert "out of range" in caplog.text

    def test_empty(self):
        """Test that an empty image counts zero"""
        assert count_nonzero_pixels(np.zeros((0, 5, 3), dtype=np.uint8)) == 0


class TestPixelFraction:
    """Test the scaled foreground fraction"""

    def test_same_size(self, quarter_image):
        """Test a display at full resolution"""
        assert pixel_fraction(quarter_image, (100, 100)) == pytest.approx(0.25)

    def test_downsampled_display(self, quarter_image):
        """Test a display smaller than the full image"""
        assert pixel_fraction(quarter_image, (400, 400)) == pytest.approx(0.25)

    def test_upsampled_display(self, quarter_image):
        """Test a display larger than the full image"""
        assert pixel_fraction(quarter_image, (50, 50)) == pytest.approx(0.25)

    def test_all_background(self):
        """Test an image with no foreground"""
        assert pixel_fraction(np.zeros((10, 10, 4), dtype=np.uint8), (100, 100)) == 0.0

    def test_channel_out_of_range(self, quarter_image):
        """Test that a missing channel gives zero coverage"""
        assert pixel_fraction(quarter_image, (100, 100), channel=7) == 0.0

    def test_empty_inputs(self, quarter_image):
        """Test that empty images or sizes give zero"""
        assert pixel_fraction(np.zeros((0, 0, 4), dtype=np.uint8), (10, 10)) == 0.0
        assert pixel_fraction(quarter_image, (0, 10)) == 0.0


class TestReports:
    """Test report formatting"""

    def test_coverage_report(self):
        """Test the coverage line"""
        assert generate_coverage_report(0.12345) == "Pixels belong to FG:12.345 %\n\n"

    def test_coverage_report_zero(self):
        """Test a zero fraction"""
        assert generate_coverage_report(0.0).startswith("Pixels belong to FG:0.000 %")

    def test_stain_report(self, hdab_matrix):
        """Test the coefficient table"""
        lines = generate_stain_report(hdab_matrix).splitlines()
        assert lines[0].startswith("Color deconvolution - Stains Coefficients")
        assert lines[2] == "Stain-1"
        assert lines[3] == "R1:0.65      G1:0.704     B1:0.286     "
        assert lines[5].startswith("R2:0.268")
        assert lines[7] == "R3:0         G3:0         B3:0         "

    def test_stain_report_flat_input(self, hdab_matrix):
        """Test that nine flat values are accepted"""
        assert generate_stain_report(hdab_matrix.ravel()) == generate_stain_report(hdab_matrix)
