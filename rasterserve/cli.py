#!/usr/bin/env python3

# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

"""
Command line interface for serving a model on rasters.

Example (two sources, a 16x16 patch of a 10 m image and an 8x8 patch of a
20 m image, one output value per patch at the 10 m resolution; two
neighboring output pixels share each 20 m patch)::

    rasterserve --model model.pts \\
        --source x1 16 16 s2_10m.tif \\
        --source x2 8 8 s2_20m_b5.tif s2_20m_b6.tif \\
        --output-names prediction --out prediction.tif

Images that are given after the same ``--source`` are stacked band-wise.
HDF5 inputs are given as ``file.h5:dataset``.
"""

import argparse
import logging
import sys
from typing import List, Optional, Sequence

import numpy as np

import rasterserve
from rasterserve.data.sources import open_source
from rasterserve.exceptions import ConfigurationError, RasterServeError
from rasterserve.inference import (
    ModelServe, OutputSpec, SourceBundle, load_model, parse_placeholder
)

logger = logging.getLogger('rasterservelog')


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='rasterserve',
        description='Multisource deep learning classifier using PyTorch models.'
    )
    parser.add_argument(
        '--source', action='append', nargs='+', required=True,
        metavar=('PLACEHOLDER', 'FOVX FOVY IMAGE'),
        help='Input source: placeholder name, patch size (x, y) and one or '
             'more co-registered images. Repeat for every source.'
    )
    parser.add_argument('--model', required=True, help='TorchScript (.pts) or pickled (.pt) model, or a directory.')
    parser.add_argument(
        '--userplaceholders', nargs='*', default=[], metavar='NAME=VALUE',
        help='Additional constant graph inputs, e.g. is_training=false dropout=0.0'
    )
    parser.add_argument(
        '--fullyconv', action='store_true',
        help='The model is fully convolutional: feed whole regions instead of patches.'
    )
    parser.add_argument(
        '--output-names', nargs='+', default=['output'],
        help='Names of the graph outputs, in output band order.'
    )
    parser.add_argument(
        '--spcscale', type=float, default=1.0,
        help='Output spacing scale w.r.t. source 0. One output FOE block has to cover a whole number '
             'of pixels of every source, or a whole number of FOE blocks one pixel of a coarser source.'
    )
    parser.add_argument('--foex', type=int, default=1, help='Output field of expression (x).')
    parser.add_argument('--foey', type=int, default=1, help='Output field of expression (y).')
    parser.add_argument('--disabletiling', action='store_true', help='Compute the whole output in one step.')
    parser.add_argument('--tilesize', type=int, default=16, help='Side length of the square output tiles.')
    parser.add_argument('--device', default=None, help='torch device, e.g. "cpu" or "cuda:0".')
    parser.add_argument('--out', required=True, help='Output raster (.tif or file.h5[:key]).')
    parser.add_argument('--out-dtype', default='float32', help='Output pixel type.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show progress and configuration.')
    return parser


def parse_sources(specs: Sequence[Sequence[str]]) -> List[SourceBundle]:
    """Turn ``--source`` arguments into source bundles."""
    bundles = []
    for i, spec in enumerate(specs):
        if len(spec) < 4:
            raise ConfigurationError(
                f'--source expects PLACEHOLDER FOVX FOVY IMAGE [IMAGE ...], got {" ".join(spec)}', source=i
            )
        placeholder, fovx, fovy, *images = spec
        try:
            patch_size = (int(fovx), int(fovy))
        except ValueError as e:
            raise ConfigurationError(f'Invalid patch size {fovx} {fovy}.', source=i) from e
        bundles.append(SourceBundle(open_source(images), patch_size, placeholder))
    return bundles


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = get_parser().parse_args(argv)
    if args.verbose:
        logger.info(f'rasterserve {rasterserve.__version__}')
    try:
        bundles = parse_sources(args.source)
        constants = [parse_placeholder(expr) for expr in args.userplaceholders]
        output_spec = OutputSpec(
            names=args.output_names,
            spacing_scale=args.spcscale,
            foe=(args.foex, args.foey),
            fully_convolutional=args.fullyconv
        )
        with load_model(args.model, device=args.device) as session:
            serve = ModelServe(
                bundles, output_spec, session,
                constants=constants,
                tiling=not args.disabletiling,
                tile_size=args.tilesize,
                verbose=args.verbose
            )
            serve.run(args.out, dtype=np.dtype(args.out_dtype))
    except RasterServeError as e:
        logger.error(f'{type(e).__name__}: {e}')
        return 1
    logger.info(f'Output written to {args.out}')
    return 0


if __name__ == '__main__':
    sys.exit(main())
