"""End-to-end tests of tiled serving passes."""

import threading

import h5py
import numpy as np
import pytest
import rasterio
import torch
from rasterio.transform import from_origin
from torch import nn

from conftest import CenterPixel, MaxFilter
from rasterserve.data import ArraySource, ArrayWriter, HDF5RasterSource, open_source
from rasterserve.exceptions import (
    DuplicatePlaceholderError, GraphExecutionError, ResourceError, StreamingCancelled, UnknownTensorError
)
from rasterserve.inference import (
    ConstantPlaceholder, GraphSession, InferenceRunner, ModelServe, OutputSpec,
    SourceBundle, StreamingController, StreamState
)


class CentersOfTwoSources(nn.Module):
    def forward(self, x1, x2):
        return {
            'pred': x1[:, :1, 8, 8],
            'check': x2[:, :1, 4, 4],
        }


class TwoOutputs(nn.Module):
    def forward(self, x1):
        c = x1[:, :, 0, 0]
        return {'A': torch.cat([c, c + 100], dim=1), 'B': -c}


class FailsOnLargeValues(nn.Module):
    def forward(self, x1):
        if x1.max() > 20:
            raise RuntimeError('value too large')
        return x1[:, :, 0, 0]


class CancelsOnSecondTile(nn.Module):
    """Sets ``event`` on its second call, i.e. while the first tile is computed
    (the first call is the setup probe)."""

    def __init__(self, event):
        super().__init__()
        self.event = event
        self.calls = 0

    def forward(self, x1):
        self.calls += 1
        if self.calls == 2:
            self.event.set()
        return x1[:, :, 0, 0]


class CentersOfTwoResolutions(nn.Module):
    def forward(self, x1, x2):
        return torch.cat([x1[:, :, 1, 1], x2[:, :, 0, 0]], dim=1)


class InterruptedOnSecondCall(nn.Module):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def forward(self, x1):
        self.calls += 1
        if self.calls == 2:
            raise KeyboardInterrupt
        return x1[:, :, 0, 0]


class WithDropout(nn.Module):
    def forward(self, x1, keep: float):
        return x1[:, :, 0, 0] * keep


def session(model):
    return GraphSession(model, device='cpu')


def row_raster(height=40, width=40):
    """Values are row indices + 1."""
    return np.tile(np.arange(1, height + 1, dtype=np.float32)[:, None], (1, width))[None]


class TestScenario:
    def test_two_sources_quarter_spacing(self, column_raster):
        bundles = [
            SourceBundle(ArraySource(np.concatenate([column_raster] * 3)), (16, 16), 'x1'),
            SourceBundle(ArraySource(np.concatenate([column_raster] * 2)), (8, 8), 'x2'),
        ]
        spec = OutputSpec(['pred', 'check'], spacing_scale=0.25, foe=(4, 4))
        serve = ModelServe(bundles, spec, session(CentersOfTwoSources()), tile_size=32)
        out = serve.run()
        assert len(serve.tiles) == 4
        assert out.shape == (2, 64, 64)
        # Block b is centered on input column b + 8 in both sources
        expected = np.arange(64) // 4 + 8
        np.testing.assert_array_equal(out[0], np.tile(expected, (64, 1)))
        np.testing.assert_array_equal(out[1], out[0])
        assert serve.controller.state is StreamState.DONE

    def test_single_output_band(self, column_raster):
        bundles = [
            SourceBundle(ArraySource(column_raster), (16, 16), 'x1'),
            SourceBundle(ArraySource(column_raster), (8, 8), 'x2'),
        ]
        spec = OutputSpec(['pred'], spacing_scale=0.25, foe=(4, 4))
        out = ModelServe(bundles, spec, session(CentersOfTwoSources()), tile_size=32).run()
        assert out.shape == (1, 64, 64)

    def test_coarser_second_source(self):
        fine = np.tile(np.arange(12, dtype=np.float32), (12, 1))[None]
        coarse = np.tile(np.arange(6, dtype=np.float32) * 10, (6, 1))[None]
        outputs = []
        for tiling in (True, False):
            bundles = [
                SourceBundle(ArraySource(fine), (3, 3), 'x1'),
                SourceBundle(ArraySource(coarse, spacing=(2., 2.)), (2, 2), 'x2'),
            ]
            serve = ModelServe(
                bundles, OutputSpec(['output']), session(CentersOfTwoResolutions()),
                tiling=tiling, tile_size=4
            )
            outputs.append(serve.run())
        tiled, untiled = outputs
        assert tiled.shape == (2, 9, 9)
        assert tiled.tobytes() == untiled.tobytes()
        assert serve.geometry.output_origin == (1.5, 1.5)
        np.testing.assert_array_equal(tiled[0], np.tile(np.arange(9) + 2, (9, 1)))
        # Two neighboring output pixels share each coarse pixel
        np.testing.assert_array_equal(tiled[1], np.tile(np.arange(9) // 2 * 10, (9, 1)))


class TestTiling:
    def test_tiling_does_not_change_fully_convolutional_output(self, random_raster):
        spec = OutputSpec(['output'], fully_convolutional=True)
        outputs = []
        for tiling in (True, False):
            bundles = [SourceBundle(ArraySource(random_raster), (3, 3), 'x1')]
            serve = ModelServe(bundles, spec, session(MaxFilter()), tiling=tiling, tile_size=16)
            outputs.append(serve.run())
        tiled, untiled = outputs
        assert tiled.shape == (2, 35, 38)
        assert tiled.tobytes() == untiled.tobytes()
        expected = torch.nn.functional.max_pool2d(torch.from_numpy(random_raster)[None], 3, stride=1)[0]
        np.testing.assert_array_equal(tiled, expected.numpy())

    def test_tiling_does_not_change_patch_output(self, random_raster):
        spec = OutputSpec(['output'])
        outputs = []
        for tiling in (True, False):
            bundles = [SourceBundle(ArraySource(random_raster), (3, 3), 'x1')]
            outputs.append(ModelServe(bundles, spec, session(MaxFilter()), tiling=tiling, tile_size=8).run())
        assert outputs[0].tobytes() == outputs[1].tobytes()

    def test_patch_and_fully_convolutional_agree(self, random_raster):
        bundles = [SourceBundle(ArraySource(random_raster), (3, 3), 'x1')]
        patch = ModelServe(bundles, OutputSpec(['output']), session(MaxFilter())).run()
        fullyconv = ModelServe(
            bundles, OutputSpec(['output'], fully_convolutional=True), session(MaxFilter())
        ).run()
        np.testing.assert_array_equal(patch, fullyconv)


class TestOutputs:
    def test_band_order(self):
        bundles = [SourceBundle(ArraySource(row_raster(8, 8)), (1, 1), 'x1')]
        out = ModelServe(bundles, OutputSpec(['A', 'B']), session(TwoOutputs())).run()
        assert out.shape == (3, 8, 8)
        np.testing.assert_array_equal(out[1], out[0] + 100)
        np.testing.assert_array_equal(out[2], -out[0])

    def test_constants_are_fed(self):
        bundles = [SourceBundle(ArraySource(row_raster(8, 8)), (1, 1), 'x1')]
        out = ModelServe(
            bundles, OutputSpec(['output']), session(WithDropout()),
            constants=[ConstantPlaceholder('keep', 0.5)]
        ).run()
        np.testing.assert_array_equal(out[0], row_raster(8, 8)[0] * 0.5)

    def test_hdf5_output(self, tmp_path):
        src = ArraySource(row_raster(), origin=(0., 0.), spacing=(10., 10.))
        spec = OutputSpec(['output'], spacing_scale=2.)
        bundles = [SourceBundle(src, (2, 2), 'x1')]
        fname = str(tmp_path / 'out.h5')
        assert ModelServe(bundles, spec, session(CenterPixel())).run(f'{fname}:pred') is None
        result = HDF5RasterSource(fname, 'pred')
        assert result.shape == (1, 20, 20)
        assert result.spacing == (20., 20.)
        assert result.origin == (0., 0.)

    def test_geotiff_output(self, tmp_path):
        path = str(tmp_path / 'in.tif')
        data = np.random.rand(2, 20, 20).astype(np.float32)
        with rasterio.open(
                path, 'w', driver='GTiff', dtype='float32', count=2, height=20, width=20,
                transform=from_origin(100., 200., 10., 10.), crs='EPSG:32632'
        ) as dst:
            dst.write(data)
        bundles = [SourceBundle(open_source(path), (4, 4), 'x1')]
        spec = OutputSpec(['output'], spacing_scale=2.)
        out_path = str(tmp_path / 'out.tif')
        ModelServe(bundles, spec, session(CenterPixel()), tile_size=4).run(out_path, dtype='float32')
        with rasterio.open(out_path) as result:
            assert result.count == 2
            assert (result.width, result.height) == (9, 9)
            assert result.transform.a == 20.
            assert result.transform.e == -20.
            assert (result.transform.c, result.transform.f) == (110., 190.)
            assert result.crs.to_epsg() == 32632
            # Patch k starts at pixel 2k, its center pixel is 2k + 2
            np.testing.assert_array_equal(result.read(), data[:, 2:20:2, 2:20:2])


class TestFailures:
    def test_unknown_output_fails_before_output_is_created(self, tmp_path):
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'x1')]
        serve = ModelServe(bundles, OutputSpec(['missing']), session(CenterPixel()))
        out_path = tmp_path / 'out.tif'
        with pytest.raises(UnknownTensorError):
            serve.run(str(out_path))
        assert not out_path.exists()
        assert serve.controller is None

    def test_unknown_input_fails_at_setup(self):
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'image')]
        with pytest.raises(UnknownTensorError):
            ModelServe(bundles, OutputSpec(['output']), session(CenterPixel())).setup()

    def test_duplicate_placeholders(self):
        src = ArraySource(row_raster())
        bundles = [SourceBundle(src, (1, 1), 'x1'), SourceBundle(src, (1, 1), 'x1')]
        with pytest.raises(DuplicatePlaceholderError):
            ModelServe(bundles, OutputSpec(['output']), session(CenterPixel())).setup()

    def test_graph_failure_mid_stream(self, tmp_path):
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'x1')]
        serve = ModelServe(bundles, OutputSpec(['output']), session(FailsOnLargeValues()), tile_size=16)
        fname = str(tmp_path / 'out.h5')
        with pytest.raises(GraphExecutionError) as excinfo:
            serve.run(fname)
        err = excinfo.value
        # Tiles 0 - 2 cover rows 0 - 15 (values <= 16), tile 3 is the first one below
        assert err.stage == 'inference'
        assert err.tile == 3
        assert 'stage=inference' in str(err)
        assert serve.controller.state is StreamState.FAILED
        assert serve.controller.tiles_written == 3
        with h5py.File(fname, 'r') as f:
            written = f['out'][()]
        np.testing.assert_array_equal(written[:, :16], row_raster()[:, :16])
        assert not written[:, 16:].any()

    def test_cancel(self):
        event = threading.Event()
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'x1')]
        serve = ModelServe(bundles, OutputSpec(['output']), session(CancelsOnSecondTile(event)), tile_size=16)
        with pytest.raises(StreamingCancelled) as excinfo:
            serve.run(cancel_event=event)
        assert excinfo.value.tile == 1
        assert serve.controller.tiles_written == 1
        assert serve.controller.state is StreamState.FAILED

    def test_interrupt_marks_pass_as_failed(self):
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'x1')]
        serve = ModelServe(bundles, OutputSpec(['output']), session(InterruptedOnSecondCall()), tile_size=16)
        with pytest.raises(KeyboardInterrupt):
            serve.run()
        assert serve.controller.state is StreamState.FAILED
        assert serve.controller.tiles_written == 0

    def test_output_can_not_be_created(self, tmp_path):
        bundles = [SourceBundle(ArraySource(row_raster()), (1, 1), 'x1')]
        serve = ModelServe(bundles, OutputSpec(['output']), session(CenterPixel()))
        with pytest.raises(ResourceError) as excinfo:
            serve.run(str(tmp_path / 'missing' / 'out.h5'))
        assert excinfo.value.stage == 'writing'
        assert isinstance(excinfo.value.__cause__, OSError)
        assert serve.controller.state is StreamState.IDLE


class TestStreamingController:
    def test_runs_only_once(self):
        bundles = [SourceBundle(ArraySource(row_raster(8, 8)), (1, 1), 'x1')]
        spec = OutputSpec(['output'])
        serve = ModelServe(bundles, spec, session(CenterPixel()))
        geometry = serve.setup()
        controller = StreamingController(
            bundles, spec, geometry, InferenceRunner(serve.session), tiles=serve.tiles
        )
        assert controller.state is StreamState.IDLE
        with ArrayWriter(shape=(1, 8, 8)) as writer:
            controller.run(writer)
            assert controller.state is StreamState.DONE
            np.testing.assert_array_equal(writer.data, row_raster(8, 8))
            with pytest.raises(RuntimeError):
                controller.run(writer)
