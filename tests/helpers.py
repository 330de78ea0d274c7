# tests/helpers.py

import math

import numpy as np

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.nodes.base import CubeNode

NODATA = -9999.0

class ArrayNode(CubeNode):
    """In-memory source node serving chunks cut from a full (band, t, y, x) array."""

    kind = "array"

    def __init__(self, view, data, names, nodata=math.nan):
        data = np.asarray(data, dtype=np.float64)
        assert data.shape[1:] == view.shape, f"{data.shape[1:]} != {view.shape}"
        super().__init__(view, [BandInfo(name=n, nodata=nodata) for n in names])
        self.data = data
        self.nodata = nodata
        self.reads = 0

    def _read(self, coord):
        self.reads += 1
        t0, y0, x0 = self.view.chunk_offset(coord)
        nt, ny, nx = self.view.chunk_size_of(coord)
        block = self.data[:, t0:t0 + nt, y0:y0 + ny, x0:x0 + nx].copy()
        return ChunkBuffer(block, self.band_names, nodata=self.nodata, coord=coord)

class FailingNode(CubeNode):
    """Node raising the given error for selected chunk coordinates."""

    kind = "failing"

    def __init__(self, input, bad_coords, error=RuntimeError("boom")):
        super().__init__(input.view, input.bands, inputs=[input])
        self.bad_coords = {tuple(c) for c in bad_coords}
        self.error = error

    def _read(self, coord):
        if tuple(coord) in self.bad_coords:
            raise self.error
        return self.inputs[0].read(coord)

def ramp(view, n_bands=1, offset=0.0):
    """Array of shape (n_bands,) + view.shape with distinct values everywhere."""
    size = int(np.prod(view.shape))
    bands = [np.arange(size, dtype=np.float64).reshape(view.shape) + offset + 1000.0 * b for b in range(n_bands)]
    return np.stack(bands)

def lst_values(day: int):
    """Deterministic LST_DAY / LST_NIGHT rasters for the given day offset."""
    rows, cols = np.mgrid[0:8, 0:8]
    lst_day = 300.0 + day + rows * 0.5 + cols * 0.25
    lst_night = 290.0 + day - rows * 0.25
    return lst_day, lst_night

def assert_same_bytes(a: np.ndarray, b: np.ndarray):
    """Strict equality, including NaN positions."""
    assert a.shape == b.shape, f"Shape mismatch: {a.shape} != {b.shape}"
    assert a.dtype == b.dtype, f"Dtype mismatch: {a.dtype} != {b.dtype}"
    assert a.tobytes() == b.tobytes(), "Arrays differ"
