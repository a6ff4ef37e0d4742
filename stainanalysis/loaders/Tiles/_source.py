"""
Tiled Image Source Abstraction

A tiled image source exposes a multi-resolution image as a grid of tiles per
pyramid level. Stain-vector sampling only ever needs a handful of calls:
level count, tile count per level, tile size, raw tile buffers, the channel
layout of those buffers, and the focus-plane / band enumeration.

Usage:
    >>> from stainanalysis.loaders.Tiles import get_tile_source
    >>> source = get_tile_source(rgb_array, tile_size=(256, 256))
    >>> source.get_tile_count(0)
    16
    >>> tile = source.get_tile(level=0, index=3)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, List, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    "PixelOrder",
    "TiledImageSource",
    "ArrayTileSource",
    "RegionReaderTileSource",
    "get_tile_source",
]


class PixelOrder(Enum):
    """Memory layout of the channels in a tile buffer."""

    INTERLEAVED = "interleaved"  # (H, W, C), RGBRGB...
    PLANAR = "planar"  # (C, H, W), RR..GG..BB..


class TiledImageSource(ABC):
    """Abstract interface for tiled, multi-resolution RGB images.

    Tiles on a level are numbered row-major: ``index = row * tiles_x + col``.
    Tiles on the right and bottom edges may be smaller than
    :meth:`get_tile_size`.
    """

    # Human-readable name for logging / repr
    name: str = "base"

    #: Channel layout of the buffers returned by :meth:`get_tile`
    pixel_order: PixelOrder = PixelOrder.INTERLEAVED

    @abstractmethod
    def get_level_count(self) -> int:
        """Return the number of pyramid levels (>= 1)."""

    @abstractmethod
    def get_level_dimensions(self, level: int) -> Tuple[int, int]:
        """Return ``(width, height)`` of a pyramid level.

        Args:
            level: Pyramid level, 0 being full resolution.

        Returns:
            Level size in pixels.
        """

    @abstractmethod
    def get_tile_size(self) -> Tuple[int, int]:
        """Return the nominal ``(width, height)`` of a tile."""

    @abstractmethod
    def get_tile(
        self,
        level: int,
        index: int,
        focus_plane: int = 0,
        band: int = 0,
    ) -> np.ndarray:
        """Read one tile.

        Args:
            level: Pyramid level.
            index: Row-major tile index on that level.
            focus_plane: Focal plane to read.
            band: Spectral band to read.

        Returns:
            ``uint8`` buffer laid out according to :attr:`pixel_order`:
            ``(H, W, C)`` when interleaved, ``(C, H, W)`` when planar.
        """

    @abstractmethod
    def read_region(
        self,
        location: Tuple[int, int],
        level: int,
        size: Tuple[int, int],
    ) -> np.ndarray:
        """Read a rectangular RGB region.

        Args:
            location: ``(x, y)`` of the top-left corner at **level 0**.
            level: Pyramid level to read from.
            size: ``(width, height)`` at the requested level.

        Returns:
            RGB ``uint8`` array of shape ``(height, width, 3)``.
        """

    def get_num_focus_planes(self) -> int:
        return 1

    def get_default_focus_plane(self) -> int:
        return 0

    def get_num_bands(self) -> int:
        return 1

    def get_default_band(self) -> int:
        return 0

    def get_tile_grid(self, level: int) -> Tuple[int, int]:
        """Return ``(tiles_x, tiles_y)`` for a level."""
        width, height = self.get_level_dimensions(level)
        tile_w, tile_h = self.get_tile_size()
        return -(-width // tile_w), -(-height // tile_h)

    def get_tile_count(self, level: int) -> int:
        """Return the number of tiles on a level."""
        tiles_x, tiles_y = self.get_tile_grid(level)
        return tiles_x * tiles_y

    def get_tile_bounds(self, level: int, index: int) -> Tuple[int, int, int, int]:
        """Return ``(x, y, width, height)`` of a tile in level coordinates."""
        width, height = self.get_level_dimensions(level)
        tile_w, tile_h = self.get_tile_size()
        tiles_x, _ = self.get_tile_grid(level)
        row, col = divmod(index, tiles_x)
        x, y = col * tile_w, row * tile_h
        return x, y, min(tile_w, width - x), min(tile_h, height - y)

    def get_level_downsample(self, level: int) -> float:
        """Return the downsample factor of a level relative to level 0."""
        full_w, _ = self.get_level_dimensions(0)
        level_w, _ = self.get_level_dimensions(level)
        return float(full_w) / float(level_w)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, "
            f"levels={self.get_level_count()}, tile_size={self.get_tile_size()})"
        )


# ---------------------------------------------------------------------------
# In-memory source
# ---------------------------------------------------------------------------


class ArrayTileSource(TiledImageSource):
    """Tiled view over RGB arrays held in memory.

    Args:
        levels: A single image or a list of images, one per pyramid level.
            Each image is ``(H, W, C)`` or ``(Z, H, W, C)`` where ``Z`` is
            the number of focus planes and ``C >= 3`` (extra channels such as
            alpha are carried through).
        tile_size: Nominal ``(width, height)`` of a tile.
        pixel_order: Layout of the buffers returned by :meth:`get_tile`.
        default_focus_plane: Plane used when callers ask for the default.
    """

    name = "array"

    def __init__(
        self,
        levels: Union[np.ndarray, Sequence[np.ndarray]],
        tile_size: Tuple[int, int] = (256, 256),
        pixel_order: PixelOrder = PixelOrder.INTERLEAVED,
        default_focus_plane: int = 0,
    ) -> None:
        if isinstance(levels, np.ndarray):
            levels = [levels]
        if len(levels) == 0:
            raise ValueError("levels must contain at least one image")
        if tile_size[0] <= 0 or tile_size[1] <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")

        stacks: List[np.ndarray] = []
        for i, level in enumerate(levels):
            arr = np.asarray(level)
            if arr.ndim == 3:
                arr = arr[np.newaxis]
            if arr.ndim != 4 or arr.shape[-1] < 3:
                raise ValueError(
                    f"level {i} must have shape (H, W, C) or (Z, H, W, C) with C >= 3, "
                    f"got {np.asarray(level).shape}"
                )
            stacks.append(arr.astype(np.uint8, copy=False))

        num_planes = stacks[0].shape[0]
        if any(s.shape[0] != num_planes for s in stacks):
            raise ValueError("all levels must have the same number of focus planes")
        if not 0 <= default_focus_plane < num_planes:
            raise ValueError(
                f"default_focus_plane must be in [0, {num_planes}), got {default_focus_plane}"
            )

        self._levels = stacks
        self._tile_size = (int(tile_size[0]), int(tile_size[1]))
        self.pixel_order = pixel_order
        self._default_focus_plane = default_focus_plane

    def get_level_count(self) -> int:
        return len(self._levels)

    def get_level_dimensions(self, level: int) -> Tuple[int, int]:
        _, height, width, _ = self._levels[level].shape
        return width, height

    def get_tile_size(self) -> Tuple[int, int]:
        return self._tile_size

    def get_num_focus_planes(self) -> int:
        return self._levels[0].shape[0]

    def get_default_focus_plane(self) -> int:
        return self._default_focus_plane

    def get_tile(
        self,
        level: int,
        index: int,
        focus_plane: int = 0,
        band: int = 0,
    ) -> np.ndarray:
        x, y, w, h = self.get_tile_bounds(level, index)
        tile = self._levels[level][focus_plane, y:y + h, x:x + w, :]
        if self.pixel_order is PixelOrder.PLANAR:
            return np.ascontiguousarray(np.moveaxis(tile, -1, 0))
        return np.ascontiguousarray(tile)

    def read_region(
        self,
        location: Tuple[int, int],
        level: int,
        size: Tuple[int, int],
    ) -> np.ndarray:
        downsample = self.get_level_downsample(level)
        x0 = int(location[0] / downsample)
        y0 = int(location[1] / downsample)
        w, h = size
        image = self._levels[level][self._default_focus_plane]
        # Pixels outside the image read back as white, like an empty slide area
        region = np.full((h, w, 3), 255, dtype=np.uint8)
        src = image[max(y0, 0):y0 + h, max(x0, 0):x0 + w, :3]
        dy, dx = max(-y0, 0), max(-x0, 0)
        region[dy:dy + src.shape[0], dx:dx + src.shape[1]] = src
        return region


# ---------------------------------------------------------------------------
# Region-reader source (OpenSlide API)
# ---------------------------------------------------------------------------


class RegionReaderTileSource(TiledImageSource):
    """Tiled view over an object with the :class:`openslide.OpenSlide` API.

    The handle must expose ``level_count``, ``level_dimensions`` and
    ``read_region(location, level, size)``. RGBA results are reduced to RGB.

    Args:
        handle: Opened slide handle.
        tile_size: Nominal ``(width, height)`` of a tile.
    """

    name = "region-reader"

    def __init__(self, handle: Any, tile_size: Tuple[int, int] = (256, 256)) -> None:
        if handle is None:
            raise ValueError("handle must not be None")
        if tile_size[0] <= 0 or tile_size[1] <= 0:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        self.handle = handle
        self._tile_size = (int(tile_size[0]), int(tile_size[1]))

    def get_level_count(self) -> int:
        return int(self.handle.level_count)

    def get_level_dimensions(self, level: int) -> Tuple[int, int]:
        w, h = self.handle.level_dimensions[level]
        return int(w), int(h)

    def get_tile_size(self) -> Tuple[int, int]:
        return self._tile_size

    def get_level_downsample(self, level: int) -> float:
        downsamples = getattr(self.handle, "level_downsamples", None)
        if downsamples is not None:
            return float(downsamples[level])
        return super().get_level_downsample(level)

    def get_tile(
        self,
        level: int,
        index: int,
        focus_plane: int = 0,
        band: int = 0,
    ) -> np.ndarray:
        x, y, w, h = self.get_tile_bounds(level, index)
        downsample = self.get_level_downsample(level)
        location = (int(round(x * downsample)), int(round(y * downsample)))
        return self.read_region(location, level, (w, h))

    def read_region(
        self,
        location: Tuple[int, int],
        level: int,
        size: Tuple[int, int],
    ) -> np.ndarray:
        region = np.asarray(self.handle.read_region(location, level, size), dtype=np.uint8)
        # OpenSlide hands back RGBA
        if region.ndim == 3 and region.shape[2] == 4:
            region = region[:, :, :3]
        return np.ascontiguousarray(region)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_tile_source(
    image: Any,
    tile_size: Tuple[int, int] = (256, 256),
) -> TiledImageSource:
    """Wrap an image, a slide handle, or a slide path as a tiled source.

    Args:
        image: An existing :class:`TiledImageSource` (returned unchanged), an
            RGB ``np.ndarray`` or list of per-level arrays, an object with the
            OpenSlide region-reader API, or a path to a slide file.
        tile_size: Nominal tile size for the new source.

    Returns:
        A :class:`TiledImageSource`.

    Raises:
        ValueError: If *image* is of an unsupported type.
        ImportError: If a path is given and ``openslide`` is not installed.
    """
    if isinstance(image, TiledImageSource):
        return image
    if isinstance(image, np.ndarray) or (
        isinstance(image, (list, tuple)) and image and isinstance(image[0], np.ndarray)
    ):
        return ArrayTileSource(image, tile_size=tile_size)
    if isinstance(image, (str, Path)):
        try:
            import openslide
        except ImportError as e:
            raise ImportError(
                "Reading slide files needs openslide. Install it with:\n"
                "  pip install openslide-python"
            ) from e
        logger.info("Opening slide %s with openslide", image)
        return RegionReaderTileSource(openslide.OpenSlide(str(image)), tile_size=tile_size)
    if hasattr(image, "read_region") and hasattr(image, "level_dimensions"):
        return RegionReaderTileSource(image, tile_size=tile_size)
    raise ValueError(f"Unsupported image type for a tiled source: {type(image).__name__}")
