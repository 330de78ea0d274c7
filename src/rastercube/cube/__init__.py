# src/rastercube/cube/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The cube subpackage defines the cube grid, chunk buffers, the lazy graph
nodes and the scheduler that materializes them into sinks.
"""
# Grid
from .view import (
    ChunkCoord,
    Duration,
    SpatialExtent,
    TemporalExtent,
    CubeView
)

# Chunk data
from .buffer import (
    BandInfo,
    ChunkBuffer
)

# Expressions
from .expression import (
    Expression,
    parse
)

# Graph nodes
from .nodes import (
    CubeNode,
    SourceNode,
    SelectBandsNode,
    JoinBandsNode,
    ApplyPixelNode,
    FilterPixelNode,
    ReduceNode,
    ApplyChunkNode
)

# Sinks
from .sink import (
    CubeMetadata,
    ChunkSink,
    ArraySink,
    NetCDFSink,
    GeoTiffSink
)

# Scheduler
from .engine import (
    ErrorPolicy,
    ExecutionConfig,
    EvaluationReport,
    evaluate,
    iter_chunks
)

__all__ = [
    # View
    "ChunkCoord",
    "Duration",
    "SpatialExtent",
    "TemporalExtent",
    "CubeView",

    # Buffer
    "BandInfo",
    "ChunkBuffer",

    # Expression
    "Expression",
    "parse",

    # Nodes
    "CubeNode",
    "SourceNode",
    "SelectBandsNode",
    "JoinBandsNode",
    "ApplyPixelNode",
    "FilterPixelNode",
    "ReduceNode",
    "ApplyChunkNode",

    # Sinks
    "CubeMetadata",
    "ChunkSink",
    "ArraySink",
    "NetCDFSink",
    "GeoTiffSink",

    # Engine
    "ErrorPolicy",
    "ExecutionConfig",
    "EvaluationReport",
    "evaluate",
    "iter_chunks"
]
