# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

__all__ = ['Tile', 'TileSplitter']

import math
from typing import List, NamedTuple, Optional

from rasterserve.data.regions import Region
from rasterserve.exceptions import ConfigurationError


class Tile(NamedTuple):
    index: int
    region: Region


class TileSplitter:
    """Splits the output region into square tiles whose side is a multiple
    of ``alignment``. Tiles at the right and bottom border are cropped."""

    def __init__(self, alignment: int):
        if alignment < 1:
            raise ConfigurationError(f'Tile alignment must be >= 1, got {alignment}.')
        self.alignment = int(alignment)

    def required_tile_count(self, full_region: Region) -> int:
        return math.ceil(full_region.num_pixels / self.alignment ** 2)

    def tile_side(self, full_region: Region, requested_tiles: Optional[int] = None) -> int:
        if requested_tiles is None:
            requested_tiles = self.required_tile_count(full_region)
        if requested_tiles < 1:
            raise ConfigurationError(f'Number of tiles must be >= 1, got {requested_tiles}.')
        a = self.alignment
        side = math.sqrt(full_region.num_pixels / requested_tiles)
        return a * max(1, math.ceil(side / a))

    def split(self, full_region: Region, requested_tiles: Optional[int] = None) -> List[Tile]:
        """Row-major list of tiles that partition ``full_region``."""
        if full_region.is_empty():
            return []
        side = self.tile_side(full_region, requested_tiles)
        tiles = []
        for y in range(full_region.y, full_region.y1, side):
            for x in range(full_region.x, full_region.x1, side):
                region = Region.from_corners(
                    x, y, min(x + side, full_region.x1), min(y + side, full_region.y1)
                )
                tiles.append(Tile(len(tiles), region))
        return tiles
