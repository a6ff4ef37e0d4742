"""
Shared pytest fixtures and configuration for StainAnalysis tests

This module provides synthetic stained images, tiled sources, mock slide
handles and stain matrices that can be used across all test modules.
"""

import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

# Add StainAnalysis to path
stainanalysis_path = Path(__file__).parent.parent
sys.path.insert(0, str(stainanalysis_path))

from stainanalysis.loaders.Tiles import ArrayTileSource  # noqa: E402

HEMATOXYLIN = np.array([0.644211, 0.716556, 0.266844])
EOSIN = np.array([0.092789, 0.954111, 0.283111])
DAB = np.array([0.268, 0.570, 0.776])


def unit(v):
    v = np.asarray(v, dtype=np.float64)
    return v / np.linalg.norm(v)


def make_stained_image(stains, height=128, width=128, seed=0, background_fraction=0.2, max_conc=1.2):
    """
    Render a synthetic brightfield image from stain vectors (Beer-Lambert).

    Each foreground pixel holds one dominant stain at a random
    concentration plus a small amount of the others; a band of rows at the
    top is white background.
    """
    rng = np.random.default_rng(seed)
    stains = np.atleast_2d(np.asarray([unit(s) for s in stains]))
    k = stains.shape[0]

    dominant = rng.integers(0, k, size=(height, width))
    conc = rng.uniform(0.0, 0.1, size=(height, width, k))
    main = rng.uniform(0.3, max_conc, size=(height, width))
    for i in range(k):
        conc[..., i] = np.where(dominant == i, main, conc[..., i])

    od = conc @ stains
    rgb = np.clip(np.floor(255.0 * np.power(10.0, -od) + 0.5), 0, 255).astype(np.uint8)

    background_rows = int(round(height * background_fraction))
    rgb[:background_rows] = 255
    return rgb


# ============================================================================
# Random Generator Fixtures
# ============================================================================


@pytest.fixture
def rng():
    """Seeded random generator"""
    return np.random.default_rng(12345)


# ============================================================================
# Stain Matrix Fixtures
# ============================================================================


@pytest.fixture
def he_vectors():
    """Unit hematoxylin and eosin vectors, one per row"""
    return np.vstack([unit(HEMATOXYLIN), unit(EOSIN)])


@pytest.fixture
def he_matrix(he_vectors):
    """3x3 H&E stain matrix with an empty third row"""
    matrix = np.zeros((3, 3))
    matrix[:2] = he_vectors
    return matrix


@pytest.fixture
def hdab_matrix():
    """3x3 H-DAB stain matrix as given (not normalized)"""
    return np.array([[0.650, 0.704, 0.286], [0.268, 0.570, 0.776], [0.0, 0.0, 0.0]])


# ============================================================================
# Sample Image Fixtures
# ============================================================================


@pytest.fixture
def stained_image_factory():
    """The synthetic image renderer, for tests that need custom stains"""
    return make_stained_image


@pytest.fixture
def he_image(he_vectors):
    """Synthetic 128x128 H&E image with a white background band"""
    return make_stained_image(he_vectors, height=128, width=128, seed=1)


@pytest.fixture
def white_image():
    """Fully white 32x32 image"""
    return np.full((32, 32, 3), 255, dtype=np.uint8)


@pytest.fixture
def he_source(he_image):
    """In-memory tiled source over the H&E image, 32x32 tiles"""
    return ArrayTileSource(he_image, tile_size=(32, 32))


@pytest.fixture
def pyramid_source(he_image):
    """Two-level in-memory pyramid (full and half resolution)"""
    half = he_image[::2, ::2].copy()
    return ArrayTileSource([he_image, half], tile_size=(32, 32))


# ============================================================================
# Mock Slide Fixtures
# ============================================================================


@pytest.fixture
def mock_slide(he_image):
    """Mock slide handle with the OpenSlide region-reader API"""
    slide = MagicMock()
    slide.level_count = 1
    slide.level_dimensions = [(he_image.shape[1], he_image.shape[0])]
    slide.level_downsamples = [1.0]

    def read_region(location, level, size):
        x, y = location
        w, h = size
        region = np.full((h, w, 4), 255, dtype=np.uint8)
        src = he_image[y:y + h, x:x + w]
        region[:src.shape[0], :src.shape[1], :3] = src
        return region

    slide.read_region.side_effect = read_region
    return slide


# ============================================================================
# Temporary File Fixtures
# ============================================================================


@pytest.fixture
def temp_dir():
    """Temporary directory for test outputs"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Pytest configuration hook"""
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --runslow is passed"""
    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords and not config.getoption("--runslow", default=False):
            item.add_marker(skip_slow)


def pytest_addoption(parser):
    """Add custom command line options"""
    parser.addoption("--runslow", action="store_true", default=False, help="run slow tests")
