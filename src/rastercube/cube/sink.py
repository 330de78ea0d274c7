# src/rastercube/cube/sink.py

"""
This module assembles computed chunks into final outputs.

Sinks receive chunks tagged with their coordinate, in any order, always from
the thread that drives the evaluation. A sink only becomes visible (returned
or written to its final path) when the evaluation closes it successfully.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import numpy as np
import xarray as xr

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.view import ChunkCoord, CubeView
from rastercube.exceptions import BandMismatchError, CubeError
from rastercube.raster.io import save_geotiff

log = logging.getLogger(__name__)

__all__ = [
    "CubeMetadata",
    "ChunkSink",
    "ArraySink",
    "NetCDFSink",
    "GeoTiffSink"
]

@dataclass(frozen=True)
class CubeMetadata:
    """
    Global grid metadata handed to a sink before the first chunk.

    Args:
        view: Grid of the evaluated cube.
        bands: Bands of the evaluated node, in band-axis order.
        graph: JSON-serializable description of the evaluated graph.
    """
    view: CubeView
    bands: Tuple[BandInfo, ...]
    graph: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_node(cls, node) -> "CubeMetadata":
        return cls(view=node.view, bands=tuple(node.bands), graph=node.describe())

    @property
    def band_names(self) -> List[str]:
        return [b.name for b in self.bands]

class ChunkSink:
    """
    Base class of chunk consumers.

    Lifecycle: `open(metadata)`, then any number of `write(buffer)` and
    `mark_missing(coord, error)` calls, then exactly one `close(success)`.
    """

    def __init__(self):
        self.metadata: Optional[CubeMetadata] = None
        self.written: Set[ChunkCoord] = set()
        self.missing: Dict[ChunkCoord, str] = {}
        self.closed = False

    def open(self, metadata: CubeMetadata):
        if self.metadata is not None:
            raise CubeError(f"{type(self).__name__} has already been opened")
        self.metadata = metadata
        self._open()

    def write(self, buffer: ChunkBuffer):
        if self.metadata is None or self.closed:
            raise CubeError(f"{type(self).__name__} is not open")
        if buffer.coord is None:
            raise CubeError("Cannot write a chunk without coordinate")
        coord = ChunkCoord(*buffer.coord)
        if coord in self.written:
            raise CubeError(f"Chunk {tuple(coord)} written twice")
        if buffer.count != len(self.metadata.bands):
            raise BandMismatchError(
                f"Chunk {tuple(coord)} has {buffer.count} bands, "
                f"output declares {len(self.metadata.bands)} ({self.metadata.band_names})"
            )
        self._write(coord, buffer)
        self.written.add(coord)

    def mark_missing(self, coord: Tuple[int, int, int], error: BaseException):
        """Record a chunk that could not be computed; its samples stay no-data."""
        self.missing[ChunkCoord(*coord)] = f"{type(error).__name__}: {error}"

    def close(self, success: bool = True) -> Any:
        if self.closed:
            return None
        self.closed = True
        if self.metadata is None:
            return None
        return self._close(success)

    def _open(self):
        pass

    def _write(self, coord: ChunkCoord, buffer: ChunkBuffer):
        raise NotImplementedError

    def _close(self, success: bool) -> Any:
        return None

class ArraySink(ChunkSink):
    """
    Assembles the cube in memory and exposes it as an xarray.Dataset.

    Every band becomes one (time, y, x) float64 variable. Missing samples are NaN.
    """

    def __init__(self):
        super().__init__()
        self.data: Optional[np.ndarray] = None
        self.result: Optional[xr.Dataset] = None

    def _open(self):
        view = self.metadata.view
        self.data = np.full((len(self.metadata.bands),) + view.shape, np.nan, dtype=np.float64)
        log.debug(f"Allocated output array {self.data.shape} ({self.data.nbytes / 1e6:.1f} MB)")

    def _write(self, coord: ChunkCoord, buffer: ChunkBuffer):
        view = self.metadata.view
        t0, y0, x0 = view.chunk_offset(coord)
        nt, ny, nx = buffer.size
        data = buffer.data
        if not math.isnan(buffer.nodata):
            data = np.where(buffer.nodata_mask(), np.nan, data)
        self.data[:, t0:t0 + nt, y0:y0 + ny, x0:x0 + nx] = data

    def _close(self, success: bool) -> Optional[xr.Dataset]:
        if not success:
            self.data = None
            return None
        self.result = self.to_dataset()
        return self.result

    def to_dataset(self) -> xr.Dataset:
        if self.data is None:
            raise CubeError("No data assembled")
        view = self.metadata.view
        coords = {
            "time": np.array(view.time_axis(), dtype="datetime64[ns]"),
            "y": view.y_coords(),
            "x": view.x_coords()
        }
        variables = {}
        for i, band in enumerate(self.metadata.bands):
            attrs = {"units": band.unit} if band.unit else {}
            variables[band.name] = xr.DataArray(self.data[i], dims=("time", "y", "x"), coords=coords, attrs=attrs)

        ds = xr.Dataset(variables)
        ds.attrs["crs"] = view.crs.to_wkt()
        ds.attrs["transform"] = list(view.transform)[:6]
        if view.dt is not None:
            ds.attrs["dt"] = str(view.dt)
        ds.attrs["aggregation"] = view.aggregation
        ds.attrs["resampling"] = view.resampling
        if self.missing:
            ds.attrs["missing_chunks"] = ";".join(",".join(str(c) for c in coord) for coord in sorted(self.missing))
        return ds

class NetCDFSink(ArraySink):
    """
    Writes the assembled cube to a netCDF file.

    The file is written to '<path>.part' and moved into place only after a
    successful evaluation, so a failed run never leaves a partial output.
    """

    def __init__(self, path: Union[str, Path], compression_level: Optional[int] = 4):
        super().__init__()
        self.path = Path(path)
        self.compression_level = compression_level

    def _close(self, success: bool) -> Optional[Path]:
        ds = super()._close(success)
        if ds is None:
            return None

        self.path.parent.mkdir(parents=True, exist_ok=True)
        partial = self.path.with_name(self.path.name + ".part")
        encoding = {}
        if self.compression_level:
            ct, cy, cx = self.metadata.view.chunk_size
            for name in ds.data_vars:
                shape = ds[name].shape
                encoding[name] = {
                    "zlib": True,
                    "complevel": self.compression_level,
                    "chunksizes": (min(ct, shape[0]), min(cy, shape[1]), min(cx, shape[2]))
                }
        try:
            ds.to_netcdf(partial, engine="netcdf4", encoding=encoding)
            os.replace(partial, self.path)
        except Exception:
            if partial.exists():
                partial.unlink()
            raise
        log.info(f"Wrote {len(ds.data_vars)} variable(s) to {self.path}")
        return self.path

class GeoTiffSink(ArraySink):
    """
    Writes one multi-band GeoTIFF per time slice.

    Files are named '<prefix>_<slice start>.tif' inside `directory`; a cube
    with a single slice is written as '<prefix>.tif'.
    """

    def __init__(self, directory: Union[str, Path], prefix: str = "cube", nodata: float = math.nan):
        super().__init__()
        self.directory = Path(directory)
        self.prefix = prefix
        self.nodata = nodata

    def _close(self, success: bool) -> Optional[List[Path]]:
        ds = super()._close(success)
        if ds is None:
            return None

        view = self.metadata.view
        names = self.metadata.band_names
        written = []
        for t, start in enumerate(view.time_axis()):
            array = self.data[:, t]
            if not math.isnan(self.nodata):
                array = np.where(np.isnan(array), self.nodata, array)
            if view.nt == 1:
                filename = f"{self.prefix}.tif"
            else:
                filename = f"{self.prefix}_{start.strftime('%Y%m%dT%H%M%S')}.tif"
            written.append(save_geotiff(
                array,
                self.directory / filename,
                transform=view.transform,
                crs=view.srs,
                nodata=self.nodata,
                band_names=names,
                tags={"TIME_START": start.isoformat()}
            ))
        log.info(f"Wrote {len(written)} GeoTIFF file(s) to {self.directory}")
        return written
