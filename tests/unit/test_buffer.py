# tests/unit/test_buffer.py

import math

import pytest
import numpy as np

from rastercube.cube.buffer import BandInfo, ChunkBuffer, nodata_mask
from rastercube.exceptions import BandMismatchError

def test_empty_buffer_is_all_nodata():
    buf = ChunkBuffer.empty(["a", "b"], (2, 3, 4), coord=(0, 1, 2))
    assert buf.shape == (2, 2, 3, 4)
    assert buf.size == (2, 3, 4)
    assert buf.count == 2
    assert buf.coord == (0, 1, 2)
    assert buf.is_empty()
    assert math.isnan(buf.nodata)

def test_nodata_mask_treats_nan_as_missing():
    data = np.array([1.0, -9999.0, np.nan, 3.0])
    np.testing.assert_array_equal(nodata_mask(data, -9999.0), [False, True, True, False])
    np.testing.assert_array_equal(nodata_mask(data, None), [False, False, True, False])

def test_select_preserves_requested_order():
    data = np.stack([np.full((1, 2, 2), v) for v in (1.0, 2.0, 3.0)])
    buf = ChunkBuffer(data, ["a", "b", "c"])
    sub = buf.select(["c", "a"])
    assert sub.bands == ["c", "a"]
    assert sub.band("c")[0, 0, 0] == 3.0
    assert sub.band("a")[0, 0, 0] == 1.0

    with pytest.raises(BandMismatchError):
        buf.select(["d"])

def test_with_nodata_re_encodes_missing_samples():
    data = np.array([[[[1.0, np.nan]]]])
    buf = ChunkBuffer(data, ["a"]).with_nodata(-1.0)
    assert buf.nodata == -1.0
    np.testing.assert_array_equal(buf.data.ravel(), [1.0, -1.0])

def test_rejects_inconsistent_shapes():
    with pytest.raises(BandMismatchError):
        ChunkBuffer(np.zeros((2, 2, 2)), ["a", "b"])
    with pytest.raises(BandMismatchError):
        ChunkBuffer(np.zeros((2, 1, 2, 2)), ["a"])

def test_band_info_renamed():
    info = BandInfo("LST_DAY", type="uint16", nodata=0, scale=0.02, unit="K")
    renamed = info.renamed("modis.LST_DAY")
    assert renamed.name == "modis.LST_DAY"
    assert renamed.scale == 0.02
    assert info.name == "LST_DAY"
