# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Integer pixel regions."""

__all__ = ['Region']

from typing import NamedTuple, Optional, Tuple


class Region(NamedTuple):
    """Axis-aligned rectangle of pixels.

    ``x``/``y`` is the index of the top-left pixel (column/row),
    ``width``/``height`` the number of pixels along each axis."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_corners(cls, x0: int, y0: int, x1: int, y1: int) -> 'Region':
        return cls(x0, y0, x1 - x0, y1 - y0)

    @property
    def x1(self) -> int:
        return self.x + self.width

    @property
    def y1(self) -> int:
        return self.y + self.height

    @property
    def shape(self) -> Tuple[int, int]:
        """(height, width), the NumPy order."""
        return self.height, self.width

    @property
    def num_pixels(self) -> int:
        return self.width * self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def slices(self) -> Tuple[slice, slice]:
        """Spatial (row, column) slices for indexing arrays of shape (..., H, W)."""
        return slice(self.y, self.y1), slice(self.x, self.x1)

    def translate(self, dx: int, dy: int) -> 'Region':
        return Region(self.x + dx, self.y + dy, self.width, self.height)

    def relative_to(self, other: 'Region') -> 'Region':
        """Express this region in the coordinate system of ``other``'s top-left pixel."""
        return self.translate(-other.x, -other.y)

    def intersection(self, other: 'Region') -> Optional['Region']:
        x0 = max(self.x, other.x)
        y0 = max(self.y, other.y)
        x1 = min(self.x1, other.x1)
        y1 = min(self.y1, other.y1)
        if x1 <= x0 or y1 <= y0:
            return None
        return Region.from_corners(x0, y0, x1, y1)

    def contains(self, other: 'Region') -> bool:
        return (
            self.x <= other.x and self.y <= other.y
            and other.x1 <= self.x1 and other.y1 <= self.y1
        )

    def __str__(self) -> str:
        return f'[x={self.x}, y={self.y}, {self.width}x{self.height}]'
