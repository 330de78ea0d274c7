# src/rastercube/cube/nodes/pixel.py

"""
This module implements per-pixel operations driven by the expression language.

ApplyPixel computes new bands from arithmetic expressions; FilterPixel masks
pixels where a boolean predicate does not hold. In both, a pixel where any
referenced operand is no-data yields no-data instead of being evaluated.
"""

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.expression import BOOL, NUM, Expression, parse
from rastercube.cube.view import ChunkCoord
from rastercube.exceptions import ExpressionError
from .base import CubeNode, check_same_view

log = logging.getLogger(__name__)

__all__ = [
    "ApplyPixelNode",
    "FilterPixelNode"
]

def _operands(buffers: Sequence[ChunkBuffer], names: Sequence[str]) -> Tuple[Dict[str, np.ndarray], np.ndarray]:
    """
    Resolve band names across input buffers (first input wins) and return the
    operand arrays together with the union of their no-data masks.
    """
    env = {}
    invalid = np.zeros(buffers[0].size, dtype=bool)
    for name in names:
        for buf in buffers:
            if name in buf.bands:
                array = buf.band(name)
                mask = buf.nodata_mask()[buf.band_index(name)]
                invalid |= mask
                # Masked samples are replaced so they cannot raise floating point noise.
                env[name] = np.where(mask, 1.0, array)
                break
    return env, invalid

class ApplyPixelNode(CubeNode):
    """
    Derives bands from per-pixel arithmetic expressions.

    Args:
        inputs: One node or several nodes sharing a view. Band names are
                resolved in input order.
        expressions: A single expression, a list of expressions, or a mapping
                     of output band name -> expression.
        names: Output band names for list input (default 'band1', 'band2', ...).
        nodata: No-data value of the produced bands.
        keep_bands: Append the bands of the first input after the new bands.
    """

    kind = "apply_pixel"

    def __init__(
        self,
        inputs: Union[CubeNode, Sequence[CubeNode]],
        expressions: Union[str, Sequence[str], Mapping[str, str]],
        names: Optional[Sequence[str]] = None,
        nodata: float = math.nan,
        keep_bands: bool = False
    ):
        inputs = [inputs] if isinstance(inputs, CubeNode) else list(inputs)
        if not inputs:
            raise ExpressionError("apply_pixel needs at least one input")
        view = check_same_view(inputs, "apply_pixel")

        if isinstance(expressions, Mapping):
            if names is not None:
                raise ExpressionError("Output names are given twice (mapping keys and 'names')")
            names = list(expressions.keys())
            expressions = list(expressions.values())
        elif isinstance(expressions, str):
            expressions = [expressions]
        expressions = list(expressions)
        if not expressions:
            raise ExpressionError("apply_pixel needs at least one expression")

        if names is None:
            names = [f"band{i + 1}" for i in range(len(expressions))]
        elif isinstance(names, str):
            names = [names]
        names = list(names)
        if len(names) != len(expressions):
            raise ExpressionError(f"Got {len(names)} output names for {len(expressions)} expressions")

        available = []
        for node in inputs:
            available.extend(n for n in node.band_names if n not in available)

        self.expressions: List[Expression] = [parse(e).bind(available).require(NUM) for e in expressions]
        self.nodata = float(nodata)
        self.keep_bands = keep_bands

        bands = [BandInfo(name=n, type="float64", nodata=self.nodata) for n in names]
        if keep_bands:
            bands.extend(inputs[0].bands)
        super().__init__(view, bands, inputs=inputs)

    def params(self) -> Dict[str, Any]:
        return {
            "expressions": [e.text for e in self.expressions],
            "nodata": None if math.isnan(self.nodata) else self.nodata,
            "keep_bands": self.keep_bands
        }

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        buffers = [node.read(coord) for node in self.inputs]
        size = buffers[0].size
        n_new = len(self.expressions)
        data = np.empty((len(self.band_names),) + tuple(size), dtype=np.float64)

        for i, expr in enumerate(self.expressions):
            env, invalid = _operands(buffers, expr.variables)
            result = expr.evaluate(env, shape=size)
            data[i] = np.where(invalid, self.nodata, result)

        if self.keep_bands:
            kept = buffers[0]
            if (math.isnan(kept.nodata) and math.isnan(self.nodata)) or kept.nodata == self.nodata:
                data[n_new:] = kept.data
            else:
                data[n_new:] = kept.with_nodata(self.nodata).data

        return ChunkBuffer(data, self.band_names, nodata=self.nodata, coord=coord)

class FilterPixelNode(CubeNode):
    """
    Sets all bands of a pixel to no-data where a boolean predicate is false.

    Args:
        input: Upstream node.
        predicate: Boolean expression over the input bands, e.g. "NDVI > 0.5".
    """

    kind = "filter_pixel"

    def __init__(self, input: CubeNode, predicate: str):
        self.predicate = parse(predicate).bind(input.band_names).require(BOOL)
        super().__init__(input.view, input.bands, inputs=[input])

    def params(self) -> Dict[str, Any]:
        return {"predicate": self.predicate.text}

    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        buf = self.inputs[0].read(coord)
        env, invalid = _operands([buf], self.predicate.variables)
        keep = self.predicate.evaluate(env, shape=buf.size) & ~invalid
        data = np.where(keep[np.newaxis], buf.data, buf.nodata)
        return ChunkBuffer(data, buf.bands, nodata=buf.nodata, coord=coord)
