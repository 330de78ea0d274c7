# src/rastercube/cube/nodes/base.py

"""
This module defines the contract shared by all cube graph nodes.

A node exposes an ordered band list and a view, and answers `read(coord)` with a
freshly computed ChunkBuffer, pulling chunks from its inputs as needed. Nodes
are immutable once built; composing operations creates new nodes, so graphs are
acyclic by construction.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from rastercube.cube.buffer import BandInfo, ChunkBuffer
from rastercube.cube.view import ChunkCoord, CubeView
from rastercube.exceptions import BandMismatchError, ConfigurationError

log = logging.getLogger(__name__)

__all__ = [
    "CubeNode",
    "check_same_view"
]

def check_same_view(nodes: Sequence["CubeNode"], operation: str) -> CubeView:
    """Ensure all nodes share one grid; returns the view of the first node."""
    view = nodes[0].view
    for i, node in enumerate(nodes[1:], start=1):
        if not view.same_grid(node.view):
            raise ConfigurationError(
                f"{operation} requires all inputs to share one cube view; "
                f"input {i} ({node.kind}) differs from input 0 ({nodes[0].kind})"
            )
    return view

def _annotate(error: BaseException, kind: str):
    # Keep the innermost node: it is the stage that actually failed.
    if getattr(error, "node_kind", None) is None:
        try:
            error.node_kind = kind
        except AttributeError:
            pass

class CubeNode(ABC):
    """
    Base class of all lazy cube operations.

    Attributes:
        kind (str): Short operation name used in diagnostics.
        view (CubeView): Grid the node produces chunks for.
        bands (List[BandInfo]): Output bands in band-axis order.
        inputs (Tuple[CubeNode, ...]): Upstream nodes.
    """

    kind = "node"
    strict_bands = True

    def __init__(self, view: CubeView, bands: Sequence[BandInfo], inputs: Sequence["CubeNode"] = ()):
        names = [b.name for b in bands]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise BandMismatchError(f"{self.kind} would produce duplicate band names {duplicates}")
        if not names:
            raise BandMismatchError(f"{self.kind} must produce at least one band")
        self._view = view
        self._bands = tuple(bands)
        self._inputs = tuple(inputs)

    @property
    def view(self) -> CubeView:
        return self._view

    @property
    def bands(self) -> List[BandInfo]:
        return list(self._bands)

    @property
    def band_names(self) -> List[str]:
        return [b.name for b in self._bands]

    @property
    def inputs(self) -> Tuple["CubeNode", ...]:
        return self._inputs

    def read(self, coord: Tuple[int, int, int]) -> ChunkBuffer:
        """
        Compute the chunk at `coord`.

        Errors are tagged with the kind of the node that raised them so the
        scheduler can report which graph stage failed.
        """
        coord = self._view.validate_coord(coord)
        try:
            buffer = self._read(coord)
            self._check_result(coord, buffer)
        except Exception as e:
            _annotate(e, self.kind)
            raise
        return buffer

    @abstractmethod
    def _read(self, coord: ChunkCoord) -> ChunkBuffer:
        """Produce the chunk at a validated coordinate."""

    def _check_result(self, coord: ChunkCoord, buffer: ChunkBuffer):
        expected = self._view.chunk_size_of(coord)
        if tuple(buffer.size) != tuple(expected):
            raise BandMismatchError(
                f"{self.kind} produced chunk of size {tuple(buffer.size)} at {tuple(coord)}, expected {expected}"
            )
        if self.strict_bands and buffer.bands != self.band_names:
            raise BandMismatchError(
                f"{self.kind} produced bands {buffer.bands} at {tuple(coord)}, expected {self.band_names}"
            )
        buffer.coord = tuple(coord)

    def params(self) -> Dict[str, Any]:
        """Operation-specific parameters for `describe()`."""
        return {}

    def describe(self) -> Dict[str, Any]:
        """JSON-serializable description of the graph rooted at this node."""
        return {
            "kind": self.kind,
            "bands": self.band_names,
            **self.params(),
            "inputs": [node.describe() for node in self._inputs]
        }

    def walk(self) -> Iterator["CubeNode"]:
        """Yield every distinct node of the graph, depth-first, this node first."""
        seen = set()
        stack = [self]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            yield node
            stack.extend(reversed(node.inputs))

    def node_count(self) -> int:
        return sum(1 for _ in self.walk())

    def acquire(self):
        """Register one evaluation as a user of the graph's resources."""
        for node in self.walk():
            node._acquire()

    def release(self):
        """
        Drop one user of the graph's resources (e.g. open raster handles).

        Resources are freed once no evaluation is using them anymore.
        """
        for node in self.walk():
            node._release()

    def _acquire(self):
        pass

    def _release(self):
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(bands={self.band_names})"
