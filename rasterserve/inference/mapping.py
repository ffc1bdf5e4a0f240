# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Mapping between output pixel regions and the input regions of each source.

All computations happen in the pixel frame of the *reference source*
(source 0). An output pixel measures ``spacing_scale`` reference pixels,
so one FOE block (the output that is produced from one patch) measures
``foe * spacing_scale`` reference pixels, which corresponds to a **step**
of ``foe * spacing_scale / ratio`` pixels in a source whose pixels are
``ratio`` times as large as the reference pixels.

Sources are read without resampling, so a step is either a positive
integer or, for sources that are coarser than one FOE block, the
reciprocal ``1 / k`` of an integer. In the latter case ``k`` neighboring
blocks share a patch (patch mode only).
Every patch is centered on the FOE block it produces. Rounding policy:
the column (row) of the patch of block ``b`` is the floored continuous
coordinate of the block center minus ``patch // 2``. With integer steps
all patches follow the first one at exactly one step.

Note: To get a feeling for the arithmetic, it helps to draw the 1D case on
paper: the output line is divided into blocks of ``foe`` pixels and each
block is the center of a patch of ``patch`` input pixels. Neighboring
patches overlap by ``patch - step`` pixels, so ``n`` blocks need
``(n - 1) * step + patch`` input pixels (field of view minus field of
expression on top of ``n`` steps).
"""

__all__ = ['SourceGeometry', 'OutputGeometry', 'compute_output_geometry', 'RegionMapper']

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

from rasterserve.data.regions import Region
from rasterserve.exceptions import AlignmentError, OutOfBoundsError
from rasterserve.inference.bundles import InferenceMode, OutputSpec, SourceBundle

logger = logging.getLogger('rasterservelog')

# Tolerance for float comparisons of pixel coordinates
_EPS = 1e-6


@dataclass(frozen=True)
class SourceGeometry:
    """Per-source constants of the output-to-input mapping, as (x, y) pairs."""
    offset: Tuple[float, float]  # Origin of the source in reference pixels
    ratio: Tuple[float, float]  # Source pixel size / reference pixel size
    step: Tuple[float, float]  # Distance between block centers in source pixels
    center: Tuple[float, float]  # Center of the first block in source pixels
    patch_size: Tuple[int, int]
    extent: Region  # Valid pixels of the source raster

    @property
    def start(self) -> Tuple[int, int]:
        """Column and row of the first patch."""
        return self.origin(0, 0), self.origin(0, 1)

    @property
    def is_regular(self) -> bool:
        """``True`` if consecutive patches are exactly one integer step apart."""
        return all(isinstance(s, int) for s in self.step)

    def origin(self, block: int, axis: int) -> int:
        """Column (``axis=0``) or row (``axis=1``) of the patch of a block."""
        return math.floor(self.center[axis] + block * self.step[axis] + _EPS) - self.patch_size[axis] // 2

    def first_block_at(self, pos: int, axis: int) -> int:
        """Index of the first block whose patch starts at or after ``pos``.

        Patch origins never decrease with the block index, so this is also
        the number of blocks whose patches start before ``pos``."""
        step = self.step[axis]
        b = max(0, math.floor((pos + self.patch_size[axis] // 2 - self.center[axis]) / step))
        while b > 0 and self.origin(b - 1, axis) >= pos:
            b -= 1
        while self.origin(b, axis) < pos:
            b += 1
        return b


@dataclass(frozen=True)
class OutputGeometry:
    """Grid of the full output raster and how each source maps onto it."""
    size: Tuple[int, int]  # (width, height) in output pixels, multiples of foe
    foe: Tuple[int, int]
    spacing_scale: float
    origin: Tuple[float, float]  # Top-left corner of the output in reference pixels
    sources: Tuple[SourceGeometry, ...]
    reference_origin: Tuple[float, float] = (0., 0.)
    reference_spacing: Tuple[float, float] = (1., 1.)

    @property
    def region(self) -> Region:
        return Region(0, 0, self.size[0], self.size[1])

    @property
    def output_origin(self) -> Tuple[float, float]:
        """Position of the output's top-left corner in the sources' coordinate system."""
        return tuple(
            o + u * s for o, u, s in zip(self.reference_origin, self.origin, self.reference_spacing)
        )

    @property
    def output_spacing(self) -> Tuple[float, float]:
        return tuple(s * self.spacing_scale for s in self.reference_spacing)


def _axis_step(
        foe: int, scale: float, ratio: float, axis: str, index: int, mode: InferenceMode
) -> Union[int, float]:
    step_f = foe * scale / ratio
    step = int(round(step_f))
    if step >= 1 and abs(step_f - step) <= _EPS:
        return step
    # Coarse source: k blocks per source pixel
    k = int(round(1 / step_f))
    if mode is InferenceMode.PATCH and k > 1 and abs(1 / step_f - k) <= _EPS * k:
        return 1 / k
    if mode is InferenceMode.PATCH:
        allowed = 'positive integer steps or their reciprocals (1/2, 1/3, ...)'
    else:
        allowed = 'positive integer steps (in fully convolutional mode)'
    raise AlignmentError(
        f'An output FOE of {foe} px at spacing scale {scale} corresponds to '
        f'{step_f:g} source pixels along {axis}, but only {allowed} can be '
        f'sampled without resampling. Adjust foe or spacing scale.',
        source=index
    )


def compute_output_geometry(
        bundles: Sequence[SourceBundle],
        output_spec: OutputSpec
) -> OutputGeometry:
    """Compute the largest FOE-aligned output grid for which every patch of
    every source lies inside its raster.

    Raises:
        AlignmentError: if a source can't be sampled at integer steps (or
            at reciprocal integer steps in patch mode) or if (in patch
            mode) its patches are smaller than one step.
        OutOfBoundsError: if the sources don't overlap enough to produce a
            single output block.
    """
    if len(bundles) == 0:
        raise AlignmentError('At least one source is required.')
    ref = bundles[0].image
    scale = output_spec.spacing_scale
    mode = output_spec.mode
    origin = []
    offsets, ratios, steps, centers = [[], []], [[], []], [[], []], [[], []]
    for a, axis in enumerate(('x', 'y')):
        block = output_spec.foe[a] * scale  # FOE block size in reference pixels
        for i, bundle in enumerate(bundles):
            src = bundle.image
            ratio = src.spacing[a] / ref.spacing[a]
            if ratio <= 0:
                raise AlignmentError(
                    f'Spacing {src.spacing} of {src.name} is not oriented like the '
                    f'reference spacing {ref.spacing}.', source=i
                )
            offset = (src.origin[a] - ref.origin[a]) / ref.spacing[a]
            step = _axis_step(output_spec.foe[a], scale, ratio, axis, i, mode)
            patch = bundle.patch_size[a]
            if mode is InferenceMode.PATCH and patch < step:
                raise AlignmentError(
                    f'Patch size {patch} along {axis} is smaller than the {step} source '
                    f'pixels covered by one output FOE block ({output_spec.foe[a]} px).',
                    source=i
                )
            offsets[a].append(offset)
            ratios[a].append(ratio)
            steps[a].append(step)

        # Lowest reference coordinate at which a block's patches fit into every source
        u0 = max(
            off + (bundle.patch_size[a] * r - block) / 2
            for off, r, bundle in zip(offsets[a], ratios[a], bundles)
        )
        for i in range(len(bundles)):
            centers[a].append((u0 + block / 2 - offsets[a][i]) / ratios[a][i])
        origin.append(u0)

    sources = tuple(
        SourceGeometry(
            offset=(offsets[0][i], offsets[1][i]),
            ratio=(ratios[0][i], ratios[1][i]),
            step=(steps[0][i], steps[1][i]),
            center=(centers[0][i], centers[1][i]),
            patch_size=bundle.patch_size,
            extent=bundle.image.extent,
        )
        for i, bundle in enumerate(bundles)
    )
    size = []
    for a, axis in enumerate(('x', 'y')):
        # Blocks whose patches end inside the raster, i.e. start before length - patch + 1
        num_blocks = min(
            src.first_block_at((src.extent.x1 if a == 0 else src.extent.y1) - src.patch_size[a] + 1, a)
            for src in sources
        )
        if num_blocks < 1:
            raise OutOfBoundsError(
                f'The sources don\'t overlap enough along {axis} to produce any output pixel '
                f'(patch sizes {[b.patch_size for b in bundles]}).'
            )
        size.append(num_blocks * output_spec.foe[a])
    return OutputGeometry(
        size=tuple(size),
        foe=output_spec.foe,
        spacing_scale=scale,
        origin=tuple(origin),
        sources=sources,
        reference_origin=tuple(ref.origin),
        reference_spacing=tuple(ref.spacing),
    )


def _patch_input_region(src: SourceGeometry, bx: int, by: int, nbx: int, nby: int) -> Region:
    # From the patch of the first block to the end of the patch of the last block
    x0, y0 = src.origin(bx, 0), src.origin(by, 1)
    return Region(
        x0,
        y0,
        src.origin(bx + nbx - 1, 0) + src.patch_size[0] - x0,
        src.origin(by + nby - 1, 1) + src.patch_size[1] - y0,
    )


def _fullyconv_input_region(src: SourceGeometry, bx: int, by: int, nbx: int, nby: int) -> Region:
    # The output region scaled to source pixels, plus the receptive field margin
    #  (patch - step) that a fully convolutional graph consumes around it
    return Region(
        src.origin(bx, 0),
        src.origin(by, 1),
        nbx * src.step[0] + (src.patch_size[0] - src.step[0]),
        nby * src.step[1] + (src.patch_size[1] - src.step[1]),
    )


_INPUT_REGION_STRATEGIES = {
    InferenceMode.PATCH: _patch_input_region,
    InferenceMode.FULLY_CONVOLUTIONAL: _fullyconv_input_region,
}


class RegionMapper:
    """Maps output regions to the input regions that are needed to compute them.

    Args:
        geometry: Output geometry from :py:func:`compute_output_geometry`.
        mode: Patch-based or fully convolutional inference.
    """
    def __init__(self, geometry: OutputGeometry, mode: InferenceMode):
        self.geometry = geometry
        self.mode = mode
        self._input_region = _INPUT_REGION_STRATEGIES[mode]

    def align(self, output_region: Region) -> Region:
        """Enlarge ``output_region`` to whole FOE blocks."""
        fx, fy = self.geometry.foe
        x0 = (output_region.x // fx) * fx
        y0 = (output_region.y // fy) * fy
        x1 = -(-output_region.x1 // fx) * fx
        y1 = -(-output_region.y1 // fy) * fy
        return Region.from_corners(x0, y0, x1, y1)

    def block_grid(self, output_region: Region) -> Tuple[int, int, int, int]:
        """Index of the first FOE block and number of blocks (bx, by, nbx, nby)
        that cover ``output_region``."""
        aligned = self.align(output_region)
        fx, fy = self.geometry.foe
        return aligned.x // fx, aligned.y // fy, aligned.width // fx, aligned.height // fy

    def expected_patch_count(self, output_region: Region) -> int:
        if self.mode is InferenceMode.FULLY_CONVOLUTIONAL:
            return 1
        _, _, nbx, nby = self.block_grid(output_region)
        return nbx * nby

    def map(self, output_region: Region) -> List[Region]:
        """Input region of every source (in source order) for ``output_region``.

        Regions are clipped to the extent of each source raster.

        Raises:
            OutOfBoundsError: if ``output_region`` is not inside the output
                or a mapped region lies completely outside of its source.
        """
        if output_region.is_empty() or not self.geometry.region.contains(output_region):
            raise OutOfBoundsError(
                f'Output region {output_region} is not inside the output extent {self.geometry.region}.'
            )
        bx, by, nbx, nby = self.block_grid(output_region)
        regions = []
        for i, src in enumerate(self.geometry.sources):
            requested = self._input_region(src, bx, by, nbx, nby)
            clipped = requested.intersection(src.extent)
            if clipped is None:
                raise OutOfBoundsError(
                    f'Input region {requested} for output region {output_region} is '
                    f'outside of the source extent {src.extent}.', source=i
                )
            regions.append(clipped)
        return regions

    def patch_positions(self, source_index: int, output_region: Region) -> Tuple[List[int], List[int]]:
        """Columns and rows of the patches of one source for the FOE blocks of
        ``output_region``. Blocks that share a patch repeat its position."""
        src = self.geometry.sources[source_index]
        bx, by, nbx, nby = self.block_grid(output_region)
        xs = [src.origin(b, 0) for b in range(bx, bx + nbx)]
        ys = [src.origin(b, 1) for b in range(by, by + nby)]
        return xs, ys

    def unmap(self, source_index: int, input_region: Region) -> Region:
        """Inverse of :py:meth:`map` for one source: the largest FOE-aligned
        output region whose patches lie inside ``input_region``.

        With integer steps this is exactly the region that ``input_region``
        was mapped from. Coarse sources can extend it by the blocks that
        share the first patch."""
        src = self.geometry.sources[source_index]
        fx, fy = self.geometry.foe
        bx = src.first_block_at(input_region.x, 0)
        by = src.first_block_at(input_region.y, 1)
        nbx = src.first_block_at(input_region.x1 - src.patch_size[0] + 1, 0) - bx
        nby = src.first_block_at(input_region.y1 - src.patch_size[1] + 1, 1) - by
        return Region(bx * fx, by * fy, nbx * fx, nby * fy)
