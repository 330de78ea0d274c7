# src/rastercube/cube/nodes/bands.py

"""
This module implements the band-axis operations: selecting and joining bands.
"""

import logging
import math
from typing import Any, Dict, Optional, Sequence

import numpy as np

from rastercube.cube.buffer import ChunkBuffer
from rastercube.cube.view import ChunkCoord
from rastercube.exceptions import BandMismatchError, ConfigurationError
from .base import CubeNode, check_same_view

log = logging.getLogger(__name__)

__all__ = [
    "SelectBandsNode",
    "JoinBandsNode"
]

class SelectBandsNode(CubeNode):
    """
    Restricts a cube to a subset of its bands, in the requested order.

    Args:
        input: Upstream node.
        names: Band names to keep. Unknown names raise BandMismatchError here,
               before any chunk is computed.
    """

    kind = "select_bands"

    def __init__(self, input: CubeNode, names: Sequence[str]):
        if isinstance(names, str):
            names = [names]
        names = list(names)
        by_name = {b.name: b for b in input.bands}
        missing = [n for n in names if n not in by_name]
        if missing:
            raise BandMismatchError(
                f"Cannot select band(s) {missing}; input has bands {input.band_names}"
            )
        super().__init__(input.view, [by_name[n] for n in names], inputs=[input])
        self.names = names

    def params(self) -> Dict[str, Any]:
        return {"names": list(self.names)}

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        return self.inputs[0].read(coord).select(self.names)

class JoinBandsNode(CubeNode):
    """
    Concatenates the bands of two or more cubes sharing one view.

    Args:
        inputs: Upstream nodes; their band lists are concatenated in input order.
        prefixes: Optional per-input prefixes ('<prefix>.<band>') used to
                  disambiguate band names that occur in more than one input.
    """

    kind = "join_bands"

    def __init__(self, inputs: Sequence[CubeNode], prefixes: Optional[Sequence[str]] = None):
        inputs = list(inputs)
        if len(inputs) < 2:
            raise ConfigurationError(f"join_bands needs at least two inputs, got {len(inputs)}")
        view = check_same_view(inputs, "join_bands")

        if prefixes is not None and len(prefixes) != len(inputs):
            raise ConfigurationError(f"Got {len(prefixes)} prefixes for {len(inputs)} inputs")

        bands = []
        for i, node in enumerate(inputs):
            for band in node.bands:
                if prefixes is not None and prefixes[i]:
                    band = band.renamed(f"{prefixes[i]}.{band.name}")
                bands.append(band)

        super().__init__(view, bands, inputs=inputs)
        self.prefixes = list(prefixes) if prefixes is not None else None

    def params(self) -> Dict[str, Any]:
        return {"prefixes": self.prefixes}

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        buffers = [node.read(coord) for node in self.inputs]

        first = buffers[0]
        for i, buf in enumerate(buffers[1:], start=1):
            if tuple(buf.size) != tuple(first.size):
                raise BandMismatchError(
                    f"join_bands input {i} returned chunk size {tuple(buf.size)} at {tuple(coord)}, "
                    f"input 0 returned {tuple(first.size)}"
                )

        nodata = first.nodata
        arrays = []
        for buf in buffers:
            same = (math.isnan(buf.nodata) and math.isnan(nodata)) or buf.nodata == nodata
            arrays.append(buf.data if same else buf.with_nodata(nodata).data)

        return ChunkBuffer(np.concatenate(arrays, axis=0), self.band_names, nodata=nodata, coord=coord)
