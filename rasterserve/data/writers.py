"""Output raster writers that accept the result tile by tile."""

# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

__all__ = ['RasterWriter', 'ArrayWriter', 'HDF5Writer', 'GeoTIFFWriter', 'open_writer']

import logging
import os
from typing import Any, Optional, Tuple, Union

import h5py
import numpy as np
import rasterio
from rasterio.transform import Affine
from rasterio.windows import Window

from rasterserve.data.regions import Region
from rasterserve.exceptions import AssemblyError

logger = logging.getLogger('rasterservelog')


class RasterWriter:
    """Base class of output rasters of shape (bands, height, width).

    Writers are context managers: the output is created in ``__enter__``
    and flushed/closed in ``__exit__``, also if streaming fails (tiles that
    were already written are kept)."""

    def __init__(
            self,
            shape: Tuple[int, int, int],
            dtype: Union[str, np.dtype] = np.float32,
            origin: Tuple[float, float] = (0., 0.),
            spacing: Tuple[float, float] = (1., 1.),
            crs: Any = None
    ):
        self.shape = tuple(int(s) for s in shape)
        self.dtype = np.dtype(dtype)
        self.origin = tuple(origin)
        self.spacing = tuple(spacing)
        self.crs = crs

    @property
    def extent(self) -> Region:
        return Region(0, 0, self.shape[2], self.shape[1])

    def __enter__(self) -> 'RasterWriter':
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def write(self, region: Region, data: np.ndarray) -> None:
        """Write ``data`` of shape (bands, region.height, region.width) at ``region``."""
        if data.shape != (self.shape[0], *region.shape):
            raise AssemblyError(
                f'Tile data of shape {data.shape} does not fit region {region} '
                f'of an output with {self.shape[0]} bands.'
            )
        if not self.extent.contains(region):
            raise AssemblyError(f'Region {region} is outside of the output extent {self.extent}.')
        self._write(region, np.ascontiguousarray(data, dtype=self.dtype))

    def _write(self, region: Region, data: np.ndarray) -> None:
        raise NotImplementedError


class ArrayWriter(RasterWriter):
    """Collects the output in memory. The result is available as ``.data``."""

    def open(self) -> None:
        self.data = np.zeros(self.shape, dtype=self.dtype)

    def _write(self, region: Region, data: np.ndarray) -> None:
        self.data[(slice(None), *region.slices())] = data


class HDF5Writer(RasterWriter):
    """Writes the output into a pre-allocated HDF5 dataset.

    Origin and spacing are stored as attributes of the dataset, so the
    output can be read again with
    :py:class:`rasterserve.data.sources.HDF5RasterSource`."""

    def __init__(self, fname: str, key: str = 'out', **kwargs):
        super().__init__(**kwargs)
        self.fname = os.path.expanduser(fname)
        self.key = key
        self._file: Optional[h5py.File] = None

    def open(self) -> None:
        self._file = h5py.File(self.fname, 'w')
        dset = self._file.create_dataset(self.key, shape=self.shape, dtype=self.dtype)
        dset.attrs['origin'] = np.array(self.origin, dtype=np.float64)
        dset.attrs['spacing'] = np.array(self.spacing, dtype=np.float64)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _write(self, region: Region, data: np.ndarray) -> None:
        self._file[self.key][(slice(None), *region.slices())] = data


class GeoTIFFWriter(RasterWriter):
    """Writes a tiled GeoTIFF with rasterio, one window per output tile."""

    def __init__(self, path: str, compress: Optional[str] = 'lzw', **kwargs):
        super().__init__(**kwargs)
        self.path = os.path.expanduser(str(path))
        self.compress = compress
        self._dst = None

    @property
    def transform(self) -> Affine:
        return Affine(self.spacing[0], 0., self.origin[0], 0., self.spacing[1], self.origin[1])

    def open(self) -> None:
        profile = {
            'driver': 'GTiff',
            'dtype': self.dtype.name,
            'count': self.shape[0],
            'height': self.shape[1],
            'width': self.shape[2],
            'crs': self.crs,
            'transform': self.transform,
        }
        if self.compress:
            profile['compress'] = self.compress
        # GeoTIFF block sizes have to be multiples of 16
        if self.shape[1] >= 256 and self.shape[2] >= 256:
            profile.update(tiled=True, blockxsize=256, blockysize=256)
        self._dst = rasterio.open(self.path, 'w', **profile)

    def close(self) -> None:
        if self._dst is not None:
            self._dst.close()
            self._dst = None

    def _write(self, region: Region, data: np.ndarray) -> None:
        window = Window(region.x, region.y, region.width, region.height)
        self._dst.write(data, window=window)


def open_writer(path: Optional[str], **kwargs) -> RasterWriter:
    """Create a writer for ``path``, chosen by its suffix.

    ``None`` gives an in-memory :py:class:`ArrayWriter`, ``"file.h5"`` or
    ``"file.h5:key"`` an :py:class:`HDF5Writer` and everything else a
    :py:class:`GeoTIFFWriter`."""
    if path is None:
        return ArrayWriter(**kwargs)
    path = os.fspath(path)
    fname, sep, key = path.rpartition(':')
    if sep and os.path.splitext(fname)[1].lower() in ('.h5', '.hdf5', '.hdf'):
        return HDF5Writer(fname, key=key, **kwargs)
    if os.path.splitext(path)[1].lower() in ('.h5', '.hdf5', '.hdf'):
        return HDF5Writer(path, **kwargs)
    return GeoTIFFWriter(path, **kwargs)
