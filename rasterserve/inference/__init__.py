"""Tiled, patch-based inference on one or more co-registered rasters.

For each output tile, the input regions of all sources are computed
(:py:mod:`.mapping`), cut into patches (:py:mod:`.patches`), fed to the
graph in a single forward pass (:py:mod:`.session`) and the results are
laid out on the output grid (:py:mod:`.assembly`).

Sources may have different resolutions, as long as one output FOE block
corresponds to an integer number of pixels in every source. Nothing is
resampled.
"""

from .bundles import (
    InferenceMode, SourceBundle, ConstantPlaceholder, OutputSpec, parse_placeholder
)
from .mapping import OutputGeometry, RegionMapper, compute_output_geometry
from .patches import PatchBatch, PatchExtractor
from .session import GraphSession, InferenceRunner, load_model
from .assembly import OutputAssembler
from .tiling import Tile, TileSplitter
from .streaming import StreamState, StreamingController, ModelServe
