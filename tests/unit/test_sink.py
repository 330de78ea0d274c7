# tests/unit/test_sink.py

import math

import pytest
import numpy as np
import rasterio
import xarray as xr

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.engine import evaluate
from rastercube.cube.sink import ArraySink, CubeMetadata, GeoTiffSink, NetCDFSink
from rastercube.exceptions import BandMismatchError, ChunkEvaluationError, CubeError
from helpers import ArrayNode, FailingNode, ramp

@pytest.fixture
def view(view_factory):
    return view_factory()

@pytest.fixture
def source(view):
    return ArrayNode(view, ramp(view, n_bands=2), ["LST_DAY", "LST_NIGHT"])

def _metadata(view, names=("v",)):
    return CubeMetadata(view=view, bands=tuple(BandInfo(n) for n in names))

def test_array_sink_accepts_any_order(view):
    sink = ArraySink()
    sink.open(_metadata(view))
    expected = ramp(view)
    for coord in reversed(list(view.chunk_coords())):
        t0, y0, x0 = view.chunk_offset(coord)
        nt, ny, nx = view.chunk_size_of(coord)
        block = expected[:, t0:t0 + nt, y0:y0 + ny, x0:x0 + nx]
        sink.write(ChunkBuffer(block.copy(), ["v"], coord=coord))
    ds = sink.close()
    np.testing.assert_array_equal(ds["v"].values, expected[0])

def test_array_sink_converts_nodata_to_nan(view):
    sink = ArraySink()
    sink.open(_metadata(view))
    block = np.full((1, 2, 4, 4), 5.0)
    block[0, 0, 0, 0] = -9999.0
    sink.write(ChunkBuffer(block, ["v"], nodata=-9999.0, coord=(0, 0, 0)))
    ds = sink.close()
    values = ds["v"].values
    assert math.isnan(values[0, 0, 0])
    assert values[0, 0, 1] == 5.0
    # chunks never written stay missing
    assert np.isnan(values[2:, :, :]).all()

def test_array_sink_rejects_invalid_writes(view):
    sink = ArraySink()
    with pytest.raises(CubeError):
        sink.write(ChunkBuffer.empty(["v"], (2, 4, 4), coord=(0, 0, 0)))

    sink.open(_metadata(view))
    sink.write(ChunkBuffer.empty(["v"], (2, 4, 4), coord=(0, 0, 0)))
    with pytest.raises(CubeError, match="twice"):
        sink.write(ChunkBuffer.empty(["v"], (2, 4, 4), coord=(0, 0, 0)))
    with pytest.raises(BandMismatchError):
        sink.write(ChunkBuffer.empty(["v", "w"], (2, 4, 4), coord=(0, 0, 1)))
    with pytest.raises(CubeError):
        sink.open(_metadata(view))

def test_dataset_coordinates_and_attributes(source, view):
    ds = evaluate(source).result
    assert isinstance(ds, xr.Dataset)
    assert list(ds.data_vars) == ["LST_DAY", "LST_NIGHT"]
    assert ds["LST_DAY"].dims == ("time", "y", "x")
    assert dict(ds.sizes) == {"time": 4, "y": 8, "x": 8}
    assert str(ds.time.values[1])[:10] == "2020-01-02"
    np.testing.assert_allclose(ds.y.values[[0, -1]], [7.5, 0.5])
    assert ds.attrs["dt"] == "P1D"
    assert ds.attrs["aggregation"] == view.aggregation
    assert "missing_chunks" not in ds.attrs

def test_netcdf_sink_writes_file(tmp_path, source):
    path = tmp_path / "out" / "lst.nc"
    report = evaluate(source, NetCDFSink(path))
    assert report.result == path
    assert path.exists()
    assert not path.with_name("lst.nc.part").exists()

    with xr.open_dataset(path) as ds:
        np.testing.assert_array_equal(ds["LST_NIGHT"].values, ramp(source.view, n_bands=2)[1])
        assert ds.attrs["resampling"] == source.view.resampling

def test_netcdf_sink_writes_nothing_on_failure(tmp_path, source):
    path = tmp_path / "broken.nc"
    failing = FailingNode(source, bad_coords=[(1, 1, 1)])
    with pytest.raises(ChunkEvaluationError):
        evaluate(failing, NetCDFSink(path))
    assert not path.exists()
    assert not path.with_name("broken.nc.part").exists()

def test_geotiff_sink_one_file_per_slice(tmp_path, source):
    report = evaluate(source, GeoTiffSink(tmp_path / "tif", prefix="lst", nodata=-9999.0))
    files = report.result
    assert [f.name for f in files] == [
        "lst_20200101T000000.tif",
        "lst_20200102T000000.tif",
        "lst_20200103T000000.tif",
        "lst_20200104T000000.tif"
    ]
    with rasterio.open(files[2]) as src:
        assert src.count == 2
        assert src.descriptions == ("LST_DAY", "LST_NIGHT")
        assert src.nodata == -9999.0
        assert src.tags()["TIME_START"] == "2020-01-03T00:00:00"
        np.testing.assert_array_equal(src.read(2), ramp(source.view, n_bands=2)[1, 2])

def test_geotiff_sink_single_slice_name(tmp_path, view_factory):
    view = view_factory(t1="2020-01-01", chunk_size=(1, 4, 4))
    node = ArrayNode(view, ramp(view), ["v"])
    files = evaluate(node, GeoTiffSink(tmp_path, prefix="composite")).result
    assert [f.name for f in files] == ["composite.tif"]
