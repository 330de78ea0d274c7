# src/rastercube/api.py

"""
This module provides the user-facing construction API.

A DataCube wraps an immutable cube graph node. Every operation returns a new
DataCube; nothing is read until `evaluate()` (or `read_chunk()`) is called.

Example:
    cube = create_cube("catalog.db", view)
    ndvi = apply_pixel(cube, {"NDVI": "(B08 - B04) / (B08 + B04)"})
    result = evaluate(reduce(ndvi, "median"), config=ExecutionConfig(threads=4))
    ds = result.result
"""

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.engine import EvaluationReport, ExecutionConfig, evaluate as _evaluate
from rastercube.cube.nodes import (
    ApplyChunkNode,
    ApplyPixelNode,
    CubeNode,
    FilterPixelNode,
    JoinBandsNode,
    ReduceNode,
    SelectBandsNode,
    SourceNode
)
from rastercube.cube.sink import ChunkSink
from rastercube.cube.view import CubeView
from rastercube.db.client import CatalogIndex
from rastercube.raster.resources import DEFAULT_MAX_OPEN

log = logging.getLogger(__name__)

__all__ = [
    "DataCube",
    "create_cube",
    "select_bands",
    "apply_pixel",
    "filter_pixel",
    "reduce",
    "apply_chunk",
    "join_bands",
    "evaluate"
]

class DataCube:
    """
    Lazy data cube backed by a graph node.

    Attributes:
        node (CubeNode): Root of the graph this cube evaluates.
    """

    def __init__(self, node: CubeNode):
        if not isinstance(node, CubeNode):
            raise TypeError(f"DataCube expects a CubeNode, got {type(node)}")
        self.node = node

    @property
    def view(self) -> CubeView:
        return self.node.view

    @property
    def bands(self) -> List[BandInfo]:
        return self.node.bands

    @property
    def band_names(self) -> List[str]:
        return self.node.band_names

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        """(bands, t, y, x) shape of the full cube."""
        return (len(self.node.band_names),) + self.view.shape

    def read_chunk(self, coord: Tuple[int, int, int]) -> ChunkBuffer:
        """Compute a single chunk on the calling thread."""
        return self.node.read(coord)

    def describe(self) -> Dict[str, Any]:
        return self.node.describe()

    # Chainable operations

    def select_bands(self, names: Sequence[str]) -> "DataCube":
        return select_bands(self, names)

    def apply_pixel(self, expressions, names: Optional[Sequence[str]] = None, **kwargs) -> "DataCube":
        return apply_pixel(self, expressions, names, **kwargs)

    def filter_pixel(self, predicate: str) -> "DataCube":
        return filter_pixel(self, predicate)

    def reduce(self, method: Union[str, Sequence[str]]) -> "DataCube":
        return reduce(self, method)

    def apply_chunk(self, command: Union[str, Sequence[str]], **kwargs) -> "DataCube":
        return apply_chunk(self, command, **kwargs)

    def join_bands(self, *others: "DataCube", prefixes: Optional[Sequence[str]] = None) -> "DataCube":
        return join_bands(self, *others, prefixes=prefixes)

    def evaluate(self, sink: Optional[ChunkSink] = None, config: Optional[ExecutionConfig] = None) -> EvaluationReport:
        return evaluate(self, sink, config)

    def __repr__(self) -> str:
        nb, nt, ny, nx = self.shape
        return f"DataCube({self.node.kind}, bands={self.band_names}, t={nt}, y={ny}, x={nx})"

def _node(cube: Union[DataCube, CubeNode]) -> CubeNode:
    return cube.node if isinstance(cube, DataCube) else cube

def create_cube(
    catalog: Union[CatalogIndex, str, Path],
    view: Optional[CubeView] = None,
    chunk_size: Optional[Tuple[int, int, int]] = None,
    bands: Optional[Sequence[str]] = None,
    max_open: int = DEFAULT_MAX_OPEN
) -> DataCube:
    """
    Create a cube reading from a catalog.

    Args:
        catalog: CatalogIndex, or path/URL of a catalog database.
        view: Target grid. Defaults to a view covering the whole catalog.
        chunk_size: Overrides the (t, y, x) chunk shape of the view.
        bands: Restrict the cube to these bands.
        max_open: Maximum number of open raster handles per worker thread.
    """
    index = catalog if isinstance(catalog, CatalogIndex) else CatalogIndex(catalog)
    if view is None:
        view = CubeView.from_catalog(index)
        log.info(f"Using default view derived from catalog: {view.to_dict()}")
    if chunk_size is not None:
        view = view.with_chunk_size(chunk_size)
    return DataCube(SourceNode(index, view, bands=bands, max_open=max_open))

def select_bands(cube: DataCube, names: Sequence[str]) -> DataCube:
    return DataCube(SelectBandsNode(_node(cube), names))

def apply_pixel(
    cube: Union[DataCube, Sequence[DataCube]],
    expressions: Union[str, Sequence[str], Mapping[str, str]],
    names: Optional[Sequence[str]] = None,
    nodata: float = math.nan,
    keep_bands: bool = False
) -> DataCube:
    """
    Derive bands with per-pixel expressions.

    `cube` may be a list of cubes sharing one view; band names are resolved in
    list order.
    """
    if isinstance(cube, (DataCube, CubeNode)):
        inputs = [_node(cube)]
    else:
        inputs = [_node(c) for c in cube]
    return DataCube(ApplyPixelNode(inputs, expressions, names=names, nodata=nodata, keep_bands=keep_bands))

def filter_pixel(cube: DataCube, predicate: str) -> DataCube:
    return DataCube(FilterPixelNode(_node(cube), predicate))

def reduce(cube: DataCube, method: Union[str, Sequence[str]]) -> DataCube:
    """Reduce over time, e.g. reduce(cube, "median") or reduce(cube, ["mean(NDVI)", "sd(NDVI)"])."""
    return DataCube(ReduceNode(_node(cube), method))

def apply_chunk(
    cube: DataCube,
    command: Union[str, Sequence[str]],
    bands: Optional[Sequence[str]] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    cwd: Optional[Union[str, Path]] = None
) -> DataCube:
    """Transform whole chunks with an external worker program."""
    return DataCube(ApplyChunkNode(_node(cube), command, bands=bands, env=env, timeout=timeout, cwd=cwd))

def join_bands(*cubes: DataCube, prefixes: Optional[Sequence[str]] = None) -> DataCube:
    if len(cubes) == 1 and isinstance(cubes[0], (list, tuple)):
        cubes = tuple(cubes[0])
    return DataCube(JoinBandsNode([_node(c) for c in cubes], prefixes=prefixes))

def evaluate(
    cube: DataCube,
    sink: Optional[ChunkSink] = None,
    config: Optional[ExecutionConfig] = None
) -> EvaluationReport:
    """
    Materialize a cube. Without sink, the result is an xarray.Dataset
    available as `report.result`.
    """
    return _evaluate(_node(cube), sink, config)
