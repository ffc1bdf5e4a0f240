import os

# No log files for test runs. Has to be set before rasterserve is imported.
os.environ.setdefault('RASTERSERVE_LOGFILE', '0')

import numpy as np
import pytest
import torch
from torch import nn


class CenterPixel(nn.Module):
    """Returns the center pixel of every patch of ``x1``, shape (N, C)."""

    def forward(self, x1):
        _, _, h, w = x1.shape
        return x1[:, :, h // 2, w // 2]


class MaxFilter(nn.Module):
    """3x3 max filter without padding, usable in both modes."""

    def forward(self, x1):
        return torch.nn.functional.max_pool2d(x1, 3, stride=1)


@pytest.fixture
def column_raster():
    """Single-band 31x31 raster whose values are the column indices."""
    return np.tile(np.arange(31, dtype=np.float32), (31, 1))[None]


@pytest.fixture
def random_raster():
    rng = np.random.RandomState(0)
    # Integer values, so any max filter result is exact
    return rng.randint(0, 1000, size=(2, 37, 40)).astype(np.float32)
