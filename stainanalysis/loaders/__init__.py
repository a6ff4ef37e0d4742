from .Tiles import (
    ArrayTileSource,
    PixelOrder,
    RegionReaderTileSource,
    TiledImageSource,
    get_tile_source,
)
