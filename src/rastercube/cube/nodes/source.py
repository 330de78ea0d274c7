# src/rastercube/cube/nodes/source.py

"""
This module implements the Source node: the leaf of every cube graph.

For a chunk, the node queries the catalog for images intersecting the chunk's
bounds and time range, warps every contributing band into the chunk grid and
assigns it to the time slice containing its acquisition time. Images falling
into the same slice are combined with the view's aggregation method.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from rasterio.errors import RasterioError

from rastercube.cube.buffer import ChunkBuffer
from rastercube.cube.view import ChunkCoord, CubeView
from rastercube.exceptions import BandMismatchError, SourceReadError
from rastercube.raster.io import warp_band
from rastercube.raster.resources import DEFAULT_MAX_OPEN, HandlePool
from ._aggregate import REDUCERS
from .base import CubeNode

log = logging.getLogger(__name__)

__all__ = [
    "SourceNode"
]

_AGGREGATORS = {
    "first": REDUCERS["first"],
    "last": REDUCERS["last"],
    "min": REDUCERS["min"],
    "max": REDUCERS["max"],
    "mean": REDUCERS["mean"],
    "median": REDUCERS["median"]
}

class SourceNode(CubeNode):
    """
    Reads chunks from the images of a catalog.

    Args:
        index: Catalog exposing `bands()` and `query(bbox, time_range, bands, srs)`.
        view: Target grid.
        bands: Band names to expose, in order; all catalog bands if None.
        max_open: Maximum number of open raster handles per worker thread.
    """

    kind = "source"

    def __init__(self, index: Any, view: CubeView, bands: Optional[Sequence[str]] = None, max_open: int = DEFAULT_MAX_OPEN):
        available = index.bands()
        if bands is None:
            selected = available
        else:
            by_name = {b.name: b for b in available}
            missing = [b for b in bands if b not in by_name]
            if missing:
                raise BandMismatchError(
                    f"Band(s) {missing} not found in catalog; available: {list(by_name)}"
                )
            selected = [by_name[b] for b in bands]

        super().__init__(view, selected)
        self.index = index
        self.pool = HandlePool(max_open=max_open)
        self._band_info = {b.name: b for b in selected}

    def params(self) -> Dict[str, Any]:
        return {"view": self.view.to_dict()}

    def _warp(self, ref, coord: ChunkCoord, shape: Tuple[int, int]) -> np.ndarray:
        info = self._band_info[ref.band]
        with self.pool.checkout(ref.descriptor) as src:
            return warp_band(
                src,
                ref.band_num,
                dst_crs=self.view.srs,
                dst_transform=self.view.chunk_transform(coord),
                shape=shape,
                resampling=self.view.resampling,
                src_nodata=info.nodata,
                scale=info.scale,
                offset=info.offset
            )

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        nt, ny, nx = self.view.chunk_size_of(coord)
        t_offset = self.view.chunk_offset(coord)[0]
        out = ChunkBuffer.empty(self.band_names, (nt, ny, nx), coord=coord)

        refs = self.index.query(
            self.view.chunk_bounds(coord),
            self.view.chunk_time_range(coord),
            bands=self.band_names,
            srs=self.view.srs
        )

        # (band index, slice index) -> (image id, warped layer), in catalog order
        layers: "OrderedDict[Tuple[int, int], List[Tuple[int, np.ndarray]]]" = OrderedDict()
        contributors: Set[int] = set()
        failed: Dict[int, Tuple[str, BaseException]] = {}
        band_pos = {name: i for i, name in enumerate(self.band_names)}

        for ref in refs:
            t_index = self.view.time_index(ref.datetime)
            if t_index is None or not 0 <= t_index - t_offset < nt:
                continue
            contributors.add(ref.image_id)
            if ref.image_id in failed:
                continue
            try:
                array = self._warp(ref, coord, (ny, nx))
            except (RasterioError, OSError, IndexError, ValueError) as e:
                log.warning(
                    f"Chunk {tuple(coord)}: cannot read band {ref.band} of image {ref.image} "
                    f"from {ref.descriptor}: {e}"
                )
                failed[ref.image_id] = (ref.descriptor, e)
                continue
            layers.setdefault((band_pos[ref.band], t_index - t_offset), []).append((ref.image_id, array))

        if contributors and len(failed) == len(contributors):
            path, error = next(iter(failed.values()))
            raise SourceReadError(
                f"All {len(contributors)} image(s) contributing to chunk {tuple(coord)} failed to read; "
                f"first failure on {path}: {error}",
                path=path
            ) from error

        aggregate = _AGGREGATORS[self.view.aggregation]
        for (b, t), entries in layers.items():
            # An image that failed on any band contributes nothing to the chunk.
            arrays = [array for image_id, array in entries if image_id not in failed]
            if not arrays:
                continue
            out.data[b, t] = arrays[0] if len(arrays) == 1 else aggregate(np.stack(arrays))

        return out

    def _acquire(self):
        self.pool.retain()

    def _release(self):
        self.pool.release()
