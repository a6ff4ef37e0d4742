"""
Random pixel sampling over a tiled whole-slide image.

Draws a requested number of pixels spread across the tiles of one pyramid
level, converts them to optical density and keeps those whose OD sum is
above a threshold (background pixels are near-zero OD).

Tiles are chosen with replacement, one uniform draw per requested pixel;
pixels within a tile are chosen without replacement.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np

from ...loaders.Tiles import PixelOrder, TiledImageSource
from .od_conversion import ODConversion

logger = logging.getLogger(__name__)

__all__ = ["RandomWSISampler", "choose_tile_pixel_indices"]


def choose_tile_pixel_indices(
    num_draws: int,
    num_tile_pixels: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Choose distinct pixel indices within one tile by rejection sampling.

    Each draw retries at most ``2 * num_tile_pixels`` times on duplicates.
    When the retry budget runs out the draw is dropped silently, so asking
    for more draws than the tile has pixels yields at most one index per
    pixel. Drawing stops once every pixel is taken.

    Args:
        num_draws: Number of pixels wanted from the tile.
        num_tile_pixels: Number of pixels in the tile.
        rng: Random generator.

    Returns:
        Sorted array of distinct flat pixel indices.
    """
    if num_draws <= 0 or num_tile_pixels <= 0:
        return np.empty(0, dtype=np.int64)

    taken = np.zeros(num_tile_pixels, dtype=bool)
    count_limit = 2 * num_tile_pixels
    for _ in range(num_draws):
        if taken.all():
            break
        attempts = 0
        while attempts < count_limit:
            index = int(rng.integers(0, num_tile_pixels))
            if not taken[index]:
                taken[index] = True
                break
            attempts += 1
    return np.flatnonzero(taken)


class RandomWSISampler:
    """
    Random, duplicate-free pixel sampler over a :class:`TiledImageSource`.

    Each sampler owns its random generator; give concurrent samplers their
    own generators (or seeds) for reproducible, independent draws.

    Args:
        source: Tiled image to sample from.
        rng: Random generator. Defaults to ``np.random.default_rng()``,
            seeded from system entropy.

    Example:
        >>> sampler = RandomWSISampler(source, rng=np.random.default_rng(7))
        >>> od = sampler.choose_random_pixels(2000, od_threshold=0.15)
        >>> od.shape[1]
        3
    """

    def __init__(self, source: Optional[TiledImageSource], rng: Optional[np.random.Generator] = None):
        self.source = source
        self.rng = rng if rng is not None else np.random.default_rng()
        self.converter = ODConversion()
        # tile index -> flat pixel indices drawn on the last call
        self.last_sampled_indices: Dict[int, np.ndarray] = {}

    def choose_random_pixels(
        self,
        count: int,
        od_threshold: float,
        level: int = 0,
        focus_plane: int = -1,
        band: int = -1,
    ) -> Optional[np.ndarray]:
        """
        Sample pixels and return their optical densities.

        Args:
            count: Number of pixels to draw.
            od_threshold: Keep only pixels whose R+G+B OD sum is strictly
                greater than this.
            level: Pyramid level to sample (0 = full resolution).
            focus_plane: Focal plane, negative for the source default.
            band: Band, negative for the source default.

        Returns:
            ``(M, 3)`` float64 array with ``M <= count``, or None when the
            source is missing or level / focus plane / band is out of range.
            Size downstream work by ``M``, not by *count*.
        """
        self.last_sampled_indices = {}
        source = self.source
        if source is None:
            logger.warning("No image source to sample from")
            return None

        if level < 0 or level >= source.get_level_count():
            logger.warning("Level %d out of range (%d levels)", level, source.get_level_count())
            return None
        if focus_plane >= source.get_num_focus_planes():
            logger.warning("Focus plane %d out of range", focus_plane)
            return None
        if band >= source.get_num_bands():
            logger.warning("Band %d out of range", band)
            return None
        chosen_plane = source.get_default_focus_plane() if focus_plane < 0 else focus_plane
        chosen_band = source.get_default_band() if band < 0 else band

        num_tiles = source.get_tile_count(level)
        if count <= 0 or num_tiles <= 0:
            return np.empty((0, 3), dtype=np.float64)

        tile_draws = np.bincount(self.rng.integers(0, num_tiles, size=count), minlength=num_tiles)

        rows = []
        for tile_index in np.flatnonzero(tile_draws):
            tile = np.asarray(source.get_tile(level, int(tile_index), chosen_plane, chosen_band))
            rgb = self._tile_rgb(tile, source.pixel_order)
            if rgb is None:
                continue

            indices = choose_tile_pixel_indices(int(tile_draws[tile_index]), rgb.shape[0], self.rng)
            self.last_sampled_indices[int(tile_index)] = indices

            od = self.converter.lookup_rgb_to_od(rgb[indices])
            keep = od.sum(axis=1) > od_threshold
            if np.any(keep):
                rows.append(od[keep])

        if not rows:
            return np.empty((0, 3), dtype=np.float64)
        samples = np.vstack(rows)
        logger.debug(
            "Sampled %d of %d requested pixels above OD threshold %.3f",
            samples.shape[0], count, od_threshold,
        )
        return samples

    @staticmethod
    def _tile_rgb(tile: np.ndarray, pixel_order: PixelOrder) -> Optional[np.ndarray]:
        """Return the tile's first three channels as an ``(N, 3)`` array."""
        if tile.ndim != 3:
            return None
        if pixel_order is PixelOrder.PLANAR:
            channels = tile.shape[0]
            if channels < 3:
                return None
            return tile.reshape(channels, -1)[:3].T
        channels = tile.shape[2]
        if channels < 3:
            return None
        return tile.reshape(-1, channels)[:, :3]
