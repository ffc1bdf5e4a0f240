"""Raster data sources (NumPy arrays, HDF5 datasets, GeoTIFF files etc.)"""

# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

__all__ = [
    'RasterSource', 'ArraySource', 'HDF5RasterSource', 'GeoTIFFSource',
    'StackedSource', 'open_source',
]

import logging
import os
from typing import Any, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
import rasterio
from rasterio.windows import Window

from rasterserve.data.regions import Region
from rasterserve.exceptions import ConfigurationError, ReadBoundsError

logger = logging.getLogger('rasterservelog')


class RasterSource:
    """Base class of multi-band rasters that can be read region by region.

    Subclasses implement ``shape`` (always (C, H, W)) and ``_read()``.
    ``origin`` is the position of the top-left corner of pixel (0, 0) and
    ``spacing`` the (signed) pixel size, both in a coordinate system that
    is shared by all co-registered sources."""

    name: str = '<raster>'
    origin: Tuple[float, float] = (0., 0.)
    spacing: Tuple[float, float] = (1., 1.)
    crs: Any = None

    @property
    def shape(self) -> Tuple[int, int, int]:
        raise NotImplementedError

    @property
    def num_bands(self) -> int:
        return self.shape[0]

    @property
    def height(self) -> int:
        return self.shape[1]

    @property
    def width(self) -> int:
        return self.shape[2]

    @property
    def extent(self) -> Region:
        return Region(0, 0, self.width, self.height)

    def read(self, region: Region) -> np.ndarray:
        """Read all bands inside ``region``. Returns an array of shape (C, h, w).

        Regions that are not entirely inside the raster are refused instead
        of being silently clipped."""
        if region.is_empty() or not self.extent.contains(region):
            raise ReadBoundsError(
                f'Region {region} exceeds the extent {self.width}x{self.height} of {self.name}'
            )
        return self._read(region)

    def _read(self, region: Region) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.name}, shape={self.shape})'


def _as_chw(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 2:
        return arr[None]
    if arr.ndim != 3:
        raise ConfigurationError(f'Expected raster data of shape (H, W) or (C, H, W), got {arr.shape}.')
    return arr


class ArraySource(RasterSource):
    """Raster that is held in memory as a NumPy array of shape (C, H, W) or (H, W)."""

    def __init__(
            self,
            data: np.ndarray,
            origin: Tuple[float, float] = (0., 0.),
            spacing: Tuple[float, float] = (1., 1.),
            name: str = '<array>',
            crs: Any = None
    ):
        self.data = _as_chw(np.asarray(data))
        self.origin = tuple(float(o) for o in origin)
        self.spacing = tuple(float(s) for s in spacing)
        self.name = name
        self.crs = crs

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(self.data.shape)

    def _read(self, region: Region) -> np.ndarray:
        return self.data[(slice(None), *region.slices())]


class HDF5RasterSource(RasterSource):
    """An h5py.Dataset wrapper that opens the file and the dataset on each
    read and then immediately closes it, so no file handle stays open for
    the duration of a (potentially very long) streaming pass.

    Georeferencing is taken from the ``origin`` and ``spacing`` attributes
    of the dataset if they exist."""

    def __init__(self, fname: str, key: str, in_memory: bool = False):
        self.fname = os.path.expanduser(fname)
        self.key = key
        self.in_memory = in_memory
        self.name = f'{self.fname}[{key}]'
        with h5py.File(self.fname, 'r') as f:
            h5data = f[self.key]
            if h5data.ndim not in (2, 3):
                raise ConfigurationError(
                    f'Expected dataset {self.name} to have 2 or 3 dims, got {h5data.ndim}.'
                )
            self._shape = (1, *h5data.shape) if h5data.ndim == 2 else tuple(h5data.shape)
            self.origin = tuple(float(o) for o in h5data.attrs.get('origin', (0., 0.)))
            self.spacing = tuple(float(s) for s in h5data.attrs.get('spacing', (1., 1.)))
            self._data: Optional[np.ndarray] = _as_chw(h5data[()]) if in_memory else None

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self._shape

    def _read(self, region: Region) -> np.ndarray:
        if self._data is not None:
            return self._data[(slice(None), *region.slices())]
        with h5py.File(self.fname, 'r') as f:
            h5data = f[self.key]
            if h5data.ndim == 2:
                return h5data[region.slices()][None]
            return h5data[(slice(None), *region.slices())]


class GeoTIFFSource(RasterSource):
    """Raster file readable by rasterio (GeoTIFF and any other GDAL format).

    Reads are windowed, so only the requested region is loaded."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(str(path))
        self.name = self.path
        with rasterio.open(self.path) as src:
            transform = src.transform
            if transform.b != 0 or transform.d != 0:
                raise ConfigurationError(f'Rotated rasters are not supported ({self.path}).')
            self._shape = (src.count, src.height, src.width)
            self.origin = (transform.c, transform.f)
            self.spacing = (transform.a, transform.e)
            self.crs = src.crs
            self.dtype = src.dtypes[0]

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self._shape

    def _read(self, region: Region) -> np.ndarray:
        window = Window(region.x, region.y, region.width, region.height)
        with rasterio.open(self.path) as src:
            return src.read(window=window)


class StackedSource(RasterSource):
    """Band-wise stack of co-registered rasters, read as one multi-band raster."""

    def __init__(self, sources: Sequence[RasterSource]):
        if len(sources) == 0:
            raise ConfigurationError('Can\'t stack an empty list of rasters.')
        first = sources[0]
        for src in sources[1:]:
            if src.shape[1:] != first.shape[1:]:
                raise ConfigurationError(
                    f'Can\'t stack {src.name} with shape {src.shape[1:]} onto '
                    f'{first.name} with shape {first.shape[1:]}.'
                )
            if not (np.allclose(src.origin, first.origin) and np.allclose(src.spacing, first.spacing)):
                raise ConfigurationError(
                    f'{src.name} is not co-registered with {first.name} '
                    f'(origin {src.origin} vs. {first.origin}, spacing {src.spacing} vs. {first.spacing}).'
                )
        self.sources = list(sources)
        self.origin = first.origin
        self.spacing = first.spacing
        self.crs = first.crs
        self.name = ' + '.join(src.name for src in self.sources)

    @property
    def shape(self) -> Tuple[int, int, int]:
        num_bands = sum(src.num_bands for src in self.sources)
        return (num_bands, *self.sources[0].shape[1:])

    def _read(self, region: Region) -> np.ndarray:
        return np.concatenate([src.read(region) for src in self.sources], axis=0)


def _open_single(src: Union[str, np.ndarray, RasterSource]) -> RasterSource:
    if isinstance(src, RasterSource):
        return src
    if isinstance(src, np.ndarray):
        return ArraySource(src)
    path = os.fspath(src)
    fname, sep, key = path.rpartition(':')
    if sep and os.path.splitext(fname)[1].lower() in ('.h5', '.hdf5', '.hdf'):
        return HDF5RasterSource(fname, key)
    if os.path.splitext(path)[1].lower() in ('.h5', '.hdf5', '.hdf'):
        raise ConfigurationError(f'HDF5 input {path} needs a dataset key, e.g. "{path}:raw".')
    return GeoTIFFSource(path)


def open_source(
        src: Union[str, np.ndarray, RasterSource, Sequence[Union[str, np.ndarray, RasterSource]]]
) -> RasterSource:
    """Open one raster, or a list of co-registered rasters as one stacked raster.

    Strings of the form ``"file.h5:key"`` are opened as HDF5 datasets,
    other paths are opened with rasterio."""
    if isinstance(src, (str, os.PathLike, np.ndarray, RasterSource)):
        return _open_single(src)
    sources = [_open_single(s) for s in src]
    if len(sources) == 1:
        return sources[0]
    logger.debug(f'Stacking {len(sources)} rasters: {[s.name for s in sources]}')
    return StackedSource(sources)
