# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""Tile-by-tile execution of a serving pass."""

__all__ = ['StreamState', 'StreamingController', 'ModelServe']

import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from tqdm import tqdm

from rasterserve.data.regions import Region
from rasterserve.data.writers import ArrayWriter, RasterWriter, open_writer
from rasterserve.exceptions import (
    ExecutionError, RasterServeError, ResourceError, StreamingCancelled, UnknownTensorError
)
from rasterserve.inference.assembly import OutputAssembler, channel_count
from rasterserve.inference.bundles import (
    ConstantPlaceholder, InferenceMode, OutputSpec, SourceBundle, check_unique_placeholders
)
from rasterserve.inference.mapping import OutputGeometry, RegionMapper, compute_output_geometry
from rasterserve.inference.patches import PatchBatch, PatchExtractor
from rasterserve.inference.session import GraphSession, InferenceRunner
from rasterserve.inference.tiling import Tile, TileSplitter

logger = logging.getLogger('rasterservelog')


class StreamState(Enum):
    IDLE = 'idle'
    STREAMING = 'streaming'
    DONE = 'done'
    FAILED = 'failed'


class StreamingController:
    """Computes the output tile by tile and hands every tile to a writer.

    Each tile step maps the tile to input regions, extracts the patches of
    every source, runs the graph once and assembles the results. The first
    error aborts the pass: it is annotated with the stage and tile in which
    it happened and re-raised. Tiles that were written before stay written.

    Args:
        bundles: Input sources.
        output_spec: Output names, FOE, spacing scale and mode.
        geometry: Output geometry computed from ``bundles`` and ``output_spec``.
        runner: Runner that executes the graph.
        constants: User placeholders that are fed with every tile.
        tiles: Tiles to process. Defaults to a single tile that covers the
            whole output (tiling disabled).
        verbose: Show a progress bar and report the throughput.
        cancel_event: If set while streaming, the pass stops before the
            next tile with :py:class:`StreamingCancelled`.
    """
    def __init__(
            self,
            bundles: Sequence[SourceBundle],
            output_spec: OutputSpec,
            geometry: OutputGeometry,
            runner: InferenceRunner,
            constants: Sequence[ConstantPlaceholder] = (),
            tiles: Optional[Sequence[Tile]] = None,
            verbose: bool = False,
            cancel_event: Optional[threading.Event] = None
    ):
        self.bundles = list(bundles)
        self.output_spec = output_spec
        self.geometry = geometry
        self.runner = runner
        self.constants = list(constants)
        if tiles is None:
            tiles = [Tile(0, geometry.region)]
        self.tiles = list(tiles)
        self.verbose = verbose
        self.cancel_event = cancel_event
        self.mode = output_spec.mode
        self.mapper = RegionMapper(geometry, self.mode)
        self.extractor = PatchExtractor()
        self.assembler = OutputAssembler(self.mode, output_spec.foe)
        self.state = StreamState.IDLE
        self.stage: Optional[str] = None
        self.tiles_written = 0

    def _extract(self, output_region: Region, regions: List[Region], expected: int) -> Dict[str, PatchBatch]:
        batches = {}
        for i, (bundle, region) in enumerate(zip(self.bundles, regions)):
            src = self.geometry.sources[i]
            positions = None
            if self.mode is InferenceMode.PATCH:
                patch_size = bundle.patch_size
                if not src.is_regular:
                    positions = self.mapper.patch_positions(i, output_region)
            else:
                patch_size = (region.width, region.height)
            batches[bundle.placeholder] = self.extractor.extract(
                i, bundle.image, region, patch_size, src.step, expected, positions=positions
            )
        return batches

    def process_tile(self, tile: Tile) -> np.ndarray:
        """Compute the output of one tile, shape (bands, height, width)."""
        self.stage = 'mapping'
        aligned = self.mapper.align(tile.region)
        regions = self.mapper.map(tile.region)
        expected = self.mapper.expected_patch_count(tile.region)
        logger.debug(f'Tile {tile.index}: output {tile.region} (aligned {aligned}), inputs {[str(r) for r in regions]}')

        self.stage = 'extraction'
        batches = self._extract(tile.region, regions, expected)

        self.stage = 'inference'
        tensors = self.runner.run(batches, self.constants, self.output_spec.names)

        self.stage = 'assembly'
        return self.assembler.assemble(aligned, tile.region, tensors, self.output_spec.names)

    def run(self, writer: RasterWriter) -> RasterWriter:
        if self.state is not StreamState.IDLE:
            raise ExecutionError(f'Streaming can only run once, current state: {self.state.value}')
        self.state = StreamState.STREAMING
        start = time.time()
        tile = None
        pbar = tqdm(self.tiles, 'Predicting', disable=not self.verbose, dynamic_ncols=True)
        try:
            for tile in pbar:
                self.stage = None
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise StreamingCancelled(
                        f'Streaming was cancelled after {self.tiles_written} of {len(self.tiles)} tiles.'
                    )
                data = self.process_tile(tile)
                self.stage = 'writing'
                writer.write(tile.region, data)
                self.tiles_written += 1
        except RasterServeError as e:
            self.state = StreamState.FAILED
            e.add_context(stage=self.stage, tile=None if tile is None else tile.index)
            logger.debug(f'Streaming failed: {e}')
            raise
        except Exception as e:
            self.state = StreamState.FAILED
            raise ExecutionError(
                f'{type(e).__name__}: {e}', stage=self.stage, tile=None if tile is None else tile.index
            ) from e
        except BaseException:
            # KeyboardInterrupt, SystemExit: no context, just the state
            self.state = StreamState.FAILED
            raise
        finally:
            pbar.close()
        self.state = StreamState.DONE
        dtime = time.time() - start
        speed = self.geometry.region.num_pixels / 1e6 / dtime if dtime > 0 else float('inf')
        msg = f'Streamed {len(self.tiles)} tiles in {dtime:.2f} s ({speed:.2f} MPx/s)'
        if self.verbose:
            logger.info(msg)
        else:
            logger.debug(msg)
        return writer


class ModelServe:
    """Serves a model on one or more co-registered rasters.

    Usage::

        with load_model('model.pts') as session:
            serve = ModelServe(
                [SourceBundle(open_source('s2.tif'), (16, 16), 'x1')],
                OutputSpec(['prediction'], spacing_scale=1.0),
                session
            )
            serve.run('prediction.tif')

    :py:meth:`setup` validates the whole configuration (placeholders,
    geometry and graph inputs/outputs) before any output is created.

    Args:
        bundles: Input sources, source 0 is the reference.
        output_spec: Output names, FOE, spacing scale and mode.
        session: Graph session. It is used but not closed.
        constants: User placeholders.
        tiling: If ``False``, the whole output is computed in one step.
        tile_size: Side length of the square output tiles.
        verbose: Show a progress bar and log the configuration.
    """
    def __init__(
            self,
            bundles: Sequence[SourceBundle],
            output_spec: OutputSpec,
            session: GraphSession,
            constants: Sequence[ConstantPlaceholder] = (),
            tiling: bool = True,
            tile_size: int = 16,
            verbose: bool = False
    ):
        self.bundles = list(bundles)
        self.output_spec = output_spec
        self.session = session
        self.constants = list(constants)
        self.tiling = tiling
        self.tile_size = tile_size
        self.verbose = verbose
        self.geometry: Optional[OutputGeometry] = None
        self.tiles: List[Tile] = []
        self.output_shapes: Dict[str, Tuple[int, ...]] = {}
        self.num_bands = 0
        self.controller: Optional[StreamingController] = None

    def _log_config(self) -> None:
        for i, bundle in enumerate(self.bundles):
            src = bundle.image
            logger.info(
                f'Source #{i}: {src.name} ({src.num_bands} bands, {src.width}x{src.height} px), '
                f'field of view {bundle.patch_size[0]}x{bundle.patch_size[1]}, '
                f'placeholder "{bundle.placeholder}"'
            )
        for const in self.constants:
            logger.info(f'User placeholder "{const.name}" = {const.value!r} ({const.dtype.__name__})')
        spec = self.output_spec
        logger.info(f'Output spacing ratio: {spec.spacing_scale}')
        logger.info(f'Output field of expression: {spec.foe[0]}x{spec.foe[1]}')
        logger.info(f'Inference mode: {spec.mode.value}')

    def _probe(self, mapper: RegionMapper) -> Dict[str, Tuple[int, ...]]:
        """Run the graph once on zeros to check tensor names and learn the output shapes."""
        names = [b.placeholder for b in self.bundles] + [c.name for c in self.constants]
        self.session.check_inputs(names)
        mode = self.output_spec.mode
        if mode is InferenceMode.PATCH:
            # A single patch per source
            region = Region(0, 0, *self.output_spec.foe)
        else:
            full = self.geometry.region
            region = mapper.align(Region(0, 0, min(self.tile_size, full.width), min(self.tile_size, full.height)))
        feeds: Dict[str, Any] = {c.name: c.value for c in self.constants}
        for bundle, reg in zip(self.bundles, mapper.map(region)):
            pw, ph = bundle.patch_size if mode is InferenceMode.PATCH else (reg.width, reg.height)
            feeds[bundle.placeholder] = torch.zeros(1, bundle.image.num_bands, ph, pw, dtype=torch.float32)
        shapes = self.session.probe(feeds)
        missing = [n for n in self.output_spec.names if n not in shapes]
        if missing:
            raise UnknownTensorError(
                f'The graph has no outputs named {missing}. Available outputs: {list(shapes)}'
            )
        logger.debug(f'Output shapes for one {mode.value} step: {shapes}')
        return shapes

    def setup(self) -> OutputGeometry:
        """Validate the configuration and compute the output geometry.

        Raises:
            ConfigurationError: for invalid placeholders, geometry or
                tensor names.
            GraphExecutionError: if the graph fails on zero-valued inputs.
        """
        check_unique_placeholders(self.bundles, self.constants)
        if self.verbose:
            self._log_config()
        self.geometry = compute_output_geometry(self.bundles, self.output_spec)
        mapper = RegionMapper(self.geometry, self.output_spec.mode)
        full = self.geometry.region
        if self.tiling:
            splitter = TileSplitter(self.tile_size)
            self.tiles = splitter.split(full, splitter.required_tile_count(full))
            logger.info(f'Force tiling with squared tiles of {self.tile_size} px ({len(self.tiles)} tiles)')
        else:
            self.tiles = [Tile(0, full)]
            logger.info('Tiling disabled')
        self.output_shapes = self._probe(mapper)
        self.num_bands = sum(
            channel_count(self.output_shapes[n], self.output_spec.mode) for n in self.output_spec.names
        )
        logger.info(
            f'Output size: {full.width}x{full.height} px, {self.num_bands} bands, '
            f'spacing {self.geometry.output_spacing}, origin {self.geometry.output_origin}'
        )
        return self.geometry

    def run(
            self,
            out: Optional[str] = None,
            dtype: Union[str, np.dtype] = np.float32,
            cancel_event: Optional[threading.Event] = None,
            **writer_kwargs
    ) -> Optional[np.ndarray]:
        """Stream the output into ``out`` (see
        :py:func:`rasterserve.data.writers.open_writer`).

        Returns the output array of shape (bands, height, width) if ``out``
        is ``None``, else ``None``."""
        if self.geometry is None:
            self.setup()
        geometry = self.geometry
        self.controller = StreamingController(
            self.bundles, self.output_spec, geometry, InferenceRunner(self.session),
            constants=self.constants, tiles=self.tiles, verbose=self.verbose,
            cancel_event=cancel_event
        )
        writer = open_writer(
            out,
            shape=(self.num_bands, geometry.size[1], geometry.size[0]),
            dtype=dtype,
            origin=geometry.output_origin,
            spacing=geometry.output_spacing,
            crs=self.bundles[0].image.crs,
            **writer_kwargs
        )
        try:
            writer.open()
        except OSError as e:
            # rasterio's RasterioIOError is an OSError as well
            writer.close()
            raise ResourceError(f'Can\'t create output {out}: {e}', stage='writing') from e
        try:
            self.controller.run(writer)
        finally:
            writer.close()
        if isinstance(writer, ArrayWriter):
            return writer.data
        return None
