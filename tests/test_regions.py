"""Tests for pixel regions and the exception context."""

import numpy as np

from rasterserve.data.regions import Region
from rasterserve.exceptions import (
    AlignmentError, ConfigurationError, ExecutionError, GraphExecutionError,
    ModelLoadError, RasterServeError
)


class TestRegion:
    def test_corners_and_shape(self):
        r = Region(2, 3, 10, 5)
        assert (r.x1, r.y1) == (12, 8)
        assert r.shape == (5, 10)
        assert r.num_pixels == 50
        assert Region.from_corners(2, 3, 12, 8) == r

    def test_slices_index_numpy_arrays(self):
        arr = np.arange(100).reshape(10, 10)
        r = Region(1, 2, 3, 4)
        assert arr[r.slices()].shape == (4, 3)
        assert arr[r.slices()][0, 0] == arr[2, 1]

    def test_intersection(self):
        a = Region(0, 0, 10, 10)
        assert a.intersection(Region(5, 5, 10, 10)) == Region(5, 5, 5, 5)
        assert a.intersection(Region(10, 0, 5, 5)) is None
        assert a.intersection(Region(-5, -5, 100, 100)) == a

    def test_contains(self):
        a = Region(0, 0, 10, 10)
        assert a.contains(Region(0, 0, 10, 10))
        assert a.contains(Region(3, 3, 2, 2))
        assert not a.contains(Region(5, 5, 6, 1))
        assert not a.contains(Region(-1, 0, 2, 2))

    def test_relative_to(self):
        assert Region(12, 7, 3, 3).relative_to(Region(10, 5, 8, 8)) == Region(2, 2, 3, 3)

    def test_empty(self):
        assert Region(0, 0, 0, 5).is_empty()
        assert not Region(0, 0, 1, 1).is_empty()


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(AlignmentError, ConfigurationError)
        assert issubclass(AlignmentError, ValueError)
        assert issubclass(GraphExecutionError, ExecutionError)
        assert issubclass(GraphExecutionError, RuntimeError)
        assert issubclass(ModelLoadError, OSError)
        assert issubclass(ModelLoadError, RasterServeError)

    def test_context_is_rendered(self):
        e = GraphExecutionError('boom', stage='inference', tile=3)
        assert str(e) == '[stage=inference, tile=3] boom'
        assert str(GraphExecutionError('boom')) == 'boom'

    def test_add_context_keeps_existing_fields(self):
        e = AlignmentError('bad step', source=1)
        e.add_context(stage='mapping', tile=0, source=5)
        assert (e.stage, e.tile, e.source) == ('mapping', 0, 1)
