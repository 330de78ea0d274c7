# src/rastercube/cube/nodes/reduce.py

"""
This module implements reduction over the time axis.
"""

import logging
import math
import re
from typing import Any, Dict, List, Sequence, Tuple, Union

import numpy as np

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.view import ChunkCoord
from rastercube.exceptions import BandMismatchError, ConfigurationError
from ._aggregate import REDUCERS
from .base import CubeNode

log = logging.getLogger(__name__)

__all__ = [
    "ReduceNode",
    "REDUCERS"
]

_CALL = re.compile(r"^\s*([A-Za-z_]+)\s*\(\s*([^()]+?)\s*\)\s*$")

def _check_reducer(name: str) -> str:
    if name not in REDUCERS:
        raise ConfigurationError(
            f"Unknown reducer '{name}'. Supported reducers: {sorted(REDUCERS)}"
        )
    return name

class ReduceNode(CubeNode):
    """
    Reduces every band over time, ignoring no-data samples.

    Args:
        input: Upstream node.
        reducer: Either one reducer name applied to every band (outputs are
                 named '<band>_<reducer>'), or a list of 'reducer(band)' terms
                 such as ["mean(NDVI)", "max(NDVI)"].

    The output view has a single time slice covering the input's full temporal
    extent. A pixel where all samples are no-data reduces to no-data (NaN).
    """

    kind = "reduce"

    def __init__(self, input: CubeNode, reducer: Union[str, Sequence[str]]):
        in_bands = {b.name: b for b in input.bands}
        terms: List[Tuple[str, str]] = []

        if isinstance(reducer, str) and _CALL.match(reducer) is None:
            method = _check_reducer(reducer.strip())
            terms = [(method, name) for name in input.band_names]
        else:
            specs = [reducer] if isinstance(reducer, str) else list(reducer)
            if not specs:
                raise ConfigurationError("reduce needs at least one reducer")
            for spec in specs:
                m = _CALL.match(spec)
                if m is None:
                    raise ConfigurationError(
                        f"Cannot parse reducer term '{spec}'; expected 'reducer(band)'"
                    )
                method, band = _check_reducer(m.group(1)), m.group(2)
                if band not in in_bands:
                    raise BandMismatchError(
                        f"Cannot reduce unknown band '{band}'; input has bands {input.band_names}"
                    )
                terms.append((method, band))

        bands = [
            BandInfo(
                name=f"{band}_{method}",
                type="float64",
                nodata=math.nan,
                unit=in_bands[band].unit if method not in ("count", "var") else ""
            )
            for method, band in terms
        ]
        super().__init__(input.view.collapse_time(), bands, inputs=[input])
        self.terms = terms

    def params(self) -> Dict[str, Any]:
        return {"reducers": [f"{m}({b})" for m, b in self.terms]}

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        source = self.inputs[0]
        in_view = source.view
        n_time_chunks = in_view.chunk_counts[0]

        # Gather the full time series of this spatial tile.
        parts = [source.read((t, coord.y, coord.x)) for t in range(n_time_chunks)]
        names = parts[0].bands
        absent = [band for band in dict.fromkeys(b for _, b in self.terms) if band not in names]
        if absent:
            raise BandMismatchError(f"Input of reduce produced bands {names} at {tuple(coord)}, missing {absent}")
        if any(p.bands != names for p in parts):
            raise BandMismatchError(f"Input of reduce produced different bands across time at {tuple(coord)}")
        series = np.concatenate([p.data for p in parts], axis=1)
        missing = np.concatenate([p.nodata_mask() for p in parts], axis=1)
        series = np.where(missing, np.nan, series)

        _, ny, nx = self.view.chunk_size_of(coord)
        data = np.empty((len(self.terms), 1, ny, nx), dtype=np.float64)
        for i, (method, band) in enumerate(self.terms):
            data[i, 0] = REDUCERS[method](series[names.index(band)])

        return ChunkBuffer(data, self.band_names, nodata=math.nan, coord=coord)
