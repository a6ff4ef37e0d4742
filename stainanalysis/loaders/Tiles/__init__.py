from ._source import (
    ArrayTileSource,
    PixelOrder,
    RegionReaderTileSource,
    TiledImageSource,
    get_tile_source,
)

__all__ = [
    "ArrayTileSource",
    "PixelOrder",
    "RegionReaderTileSource",
    "TiledImageSource",
    "get_tile_source",
]
