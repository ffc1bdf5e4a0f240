# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

__all__ = ['OutputAssembler', 'channel_count']

from typing import Mapping, Sequence, Tuple

import numpy as np

from rasterserve.data.regions import Region
from rasterserve.exceptions import AssemblyError
from rasterserve.inference.bundles import InferenceMode


def channel_count(shape: Sequence[int], mode: InferenceMode) -> int:
    """Number of output bands of a tensor with batch-first ``shape``."""
    if mode is InferenceMode.PATCH and len(shape) == 1:
        return 1
    if mode is InferenceMode.PATCH and len(shape) == 2:
        return shape[1]
    if mode is InferenceMode.FULLY_CONVOLUTIONAL and len(shape) == 3:
        return 1
    if len(shape) == 4:
        return shape[1]
    raise AssemblyError(f'Unsupported output tensor shape {tuple(shape)} for {mode.value} mode.')


class OutputAssembler:
    """Places inference results of one tile into an output image.

    In patch mode, the N results of a tile are laid out on its grid of FOE
    blocks in row-major order. A result may be a scalar per block (shape
    (N,) or (N, C)), which fills the whole block, or a complete block of
    shape (N, C, foe_y, foe_x).
    In fully convolutional mode, the single result already covers the
    whole aligned region.

    Args:
        mode: Inference mode.
        foe: Field of expression (x, y) in output pixels.
    """
    def __init__(self, mode: InferenceMode, foe: Tuple[int, int]):
        self.mode = mode
        self.foe = tuple(foe)

    def _patch_image(self, name: str, t: np.ndarray, nbx: int, nby: int) -> np.ndarray:
        fx, fy = self.foe
        if t.shape[0] != nbx * nby:
            raise AssemblyError(
                f'Output "{name}" has {t.shape[0]} results, but the tile has {nbx}x{nby} FOE blocks.'
            )
        if t.ndim == 1:
            t = t[:, None]
        if t.ndim == 2:
            t = np.broadcast_to(t[:, :, None, None], (*t.shape, fy, fx))
        elif t.ndim != 4 or t.shape[2:] != (fy, fx):
            raise AssemblyError(
                f'Output "{name}" of shape {t.shape} is neither one value nor one '
                f'{fx}x{fy} FOE block per patch.'
            )
        c = t.shape[1]
        # (nby, nbx, C, fy, fx) -> (C, nby, fy, nbx, fx)
        t = t.reshape(nby, nbx, c, fy, fx).transpose(2, 0, 3, 1, 4)
        return t.reshape(c, nby * fy, nbx * fx)

    def _fullyconv_image(self, name: str, t: np.ndarray, aligned: Region) -> np.ndarray:
        if t.ndim == 3:
            t = t[:, None]
        if t.ndim != 4 or t.shape[0] != 1 or t.shape[2:] != aligned.shape:
            raise AssemblyError(
                f'Output "{name}" has shape {t.shape}, expected (1, C, {aligned.height}, {aligned.width}).'
            )
        return t[0]

    def assemble(
            self,
            aligned_region: Region,
            tile_region: Region,
            tensors: Mapping[str, np.ndarray],
            output_names: Sequence[str]
    ) -> np.ndarray:
        """Stack all outputs band-wise (in ``output_names`` order) and crop
        them from ``aligned_region`` to ``tile_region``."""
        fx, fy = self.foe
        nbx, nby = aligned_region.width // fx, aligned_region.height // fy
        bands = []
        for name in output_names:
            t = np.asarray(tensors[name])
            if self.mode is InferenceMode.PATCH:
                bands.append(self._patch_image(name, t, nbx, nby))
            else:
                bands.append(self._fullyconv_image(name, t, aligned_region))
        image = np.concatenate(bands, axis=0)
        crop = tile_region.relative_to(aligned_region)
        return image[(slice(None), *crop.slices())]
