# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

__all__ = ['PatchBatch', 'PatchExtractor', 'count_patches']

import logging
from typing import NamedTuple, Optional, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from rasterserve import floatX
from rasterserve.data.regions import Region
from rasterserve.data.sources import RasterSource
from rasterserve.exceptions import PatchCountMismatch, ReadBoundsError

logger = logging.getLogger('rasterservelog')


class PatchBatch(NamedTuple):
    """Patches of one source, stacked along the batch axis: (N, C, ph, pw)."""
    data: np.ndarray
    source_index: int
    region: Region  # Input region the patches were extracted from

    @property
    def num_patches(self) -> int:
        return self.data.shape[0]


def count_patches(region: Region, patch_size: Tuple[int, int], step: Tuple[int, int]) -> Tuple[int, int]:
    """Number of patch positions (nx, ny) inside ``region``."""
    (pw, ph), (sx, sy) = patch_size, step
    nx = (region.width - pw) // sx + 1 if region.width >= pw else 0
    ny = (region.height - ph) // sy + 1 if region.height >= ph else 0
    return nx, ny


class PatchExtractor:
    """Cuts the patches that are fed to the graph out of an input region."""

    def extract(
            self,
            source_index: int,
            source: RasterSource,
            region: Region,
            patch_size: Tuple[int, int],
            step: Tuple[int, int],
            expected_count: int,
            positions: Optional[Tuple[Sequence[int], Sequence[int]]] = None
    ) -> PatchBatch:
        """Read ``region`` once and slice it into row-major patches.

        Patches are ``step`` pixels apart, starting at the top-left corner
        of ``region``. If ``positions`` (columns, rows) are given instead,
        one patch is cut at every combination of them. Repeated positions
        repeat the patch.

        Raises:
            PatchCountMismatch: if the region does not contain exactly
                ``expected_count`` patches.
            ReadBoundsError: if the region is not inside ``source``.
        """
        pw, ph = patch_size
        if positions is None:
            nx, ny = count_patches(region, patch_size, step)
        else:
            xs = np.asarray(positions[0], dtype=np.intp) - region.x
            ys = np.asarray(positions[1], dtype=np.intp) - region.y
            nx, ny = len(xs), len(ys)
        if nx * ny != expected_count:
            raise PatchCountMismatch(
                f'Region {region} holds {nx}x{ny} patches of size {patch_size} at step {step}, '
                f'but {expected_count} output positions have to be computed.',
                source=source_index
            )
        if positions is not None and nx * ny > 0 and (
                xs.min() < 0 or ys.min() < 0
                or xs.max() + pw > region.width or ys.max() + ph > region.height):
            raise PatchCountMismatch(
                f'Patches of size {patch_size} at columns {list(positions[0])} and rows '
                f'{list(positions[1])} are not inside region {region}.',
                source=source_index
            )
        try:
            arr = source.read(region)
        except ReadBoundsError as e:
            raise e.add_context(source=source_index)
        arr = np.asarray(arr, dtype=floatX)
        if nx * ny == 1 and (pw, ph) == (region.width, region.height):
            patches = arr[None]
        else:
            # View of shape (C, H - ph + 1, W - pw + 1, ph, pw), no data is copied here
            windows = sliding_window_view(arr, (ph, pw), axis=(1, 2))
            if positions is None:
                sx, sy = step
                windows = windows[:, :ny * sy:sy, :nx * sx:sx]
            else:
                windows = windows[:, ys][:, :, xs]
            # -> (ny, nx, C, ph, pw) -> (N, C, ph, pw)
            patches = windows.transpose(1, 2, 0, 3, 4).reshape(nx * ny, arr.shape[0], ph, pw)
        patches = np.ascontiguousarray(patches)
        logger.debug(f'Extracted {patches.shape[0]} patches {patches.shape[1:]} from source {source_index} at {region}')
        return PatchBatch(patches, source_index, region)
