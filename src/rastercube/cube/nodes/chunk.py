# src/rastercube/cube/nodes/chunk.py

"""
This module implements ApplyChunk: running a user program on whole chunks.

The input chunk is streamed to a worker subprocess and replaced by whatever
chunk the worker sends back, as long as its (t, y, x) size matches. Workers
can read chunk context from RASTERCUBE_* environment variables.
"""

import logging
import math
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from rastercube.bridge.process import ExternalProcess
from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.view import ChunkCoord
from .base import CubeNode

log = logging.getLogger(__name__)

__all__ = [
    "ApplyChunkNode"
]

class ApplyChunkNode(CubeNode):
    """
    Transforms chunks with an external worker program.

    Args:
        input: Upstream node.
        command: Worker command (argument list or shell-like string).
        bands: Declared output band names; defaults to the input bands. If the
               worker returns a different band count, generic names
               ('band1', 'band2', ...) are used for that chunk.
        env: Extra environment variables for the worker.
        timeout: Seconds after which a worker is killed; None waits forever.
        cwd: Working directory of the worker.
    """

    kind = "apply_chunk"
    strict_bands = False

    def __init__(
        self,
        input: CubeNode,
        command: Union[str, Sequence[str]],
        bands: Optional[Sequence[str]] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        cwd: Optional[Union[str, Path]] = None
    ):
        self.process = ExternalProcess(command, timeout=timeout, env=env, cwd=cwd)
        if bands is None:
            out_bands = input.bands
        else:
            if isinstance(bands, str):
                bands = [bands]
            out_bands = [BandInfo(name=n, type="float64", nodata=math.nan) for n in bands]
        super().__init__(input.view, out_bands, inputs=[input])

    def params(self) -> Dict[str, Any]:
        return {"command": list(self.process.command), "timeout": self.process.timeout}

    def context(self, coord: ChunkCoord, buffer: ChunkBuffer) -> Dict[str, str]:
        """Environment variables describing the chunk handed to the worker."""
        bounds = self.view.chunk_bounds(coord)
        start, end = self.view.chunk_time_range(coord)
        return {
            "RASTERCUBE_CHUNK_ID": str(self.view.chunk_index(coord)),
            "RASTERCUBE_CHUNK_COORD": ",".join(str(c) for c in coord),
            "RASTERCUBE_BANDS": ",".join(buffer.bands),
            "RASTERCUBE_CHUNK_BOUNDS": ",".join(repr(v) for v in (bounds.left, bounds.right, bounds.bottom, bounds.top)),
            "RASTERCUBE_SRS": str(self.view.srs),
            "RASTERCUBE_TIME_RANGE": f"{start.isoformat()}/{end.isoformat()}"
        }

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        buffer = self.inputs[0].read(coord)
        data, nodata = self.process.run(
            buffer.data,
            buffer.nodata,
            expected_shape=(None,) + tuple(buffer.size),
            context=self.context(coord, buffer)
        )

        if data.shape[0] == len(self.band_names):
            names = self.band_names
        else:
            log.debug(
                f"Worker returned {data.shape[0]} bands at {tuple(coord)}, "
                f"{len(self.band_names)} declared; using generic band names"
            )
            names = [f"band{i + 1}" for i in range(data.shape[0])]
        return ChunkBuffer(data, names, nodata=nodata, coord=coord)
