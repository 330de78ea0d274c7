# src/rastercube/cube/nodes/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

from .base import CubeNode, check_same_view
from .source import SourceNode
from .bands import SelectBandsNode, JoinBandsNode
from .pixel import ApplyPixelNode, FilterPixelNode
from .reduce import ReduceNode, REDUCERS
from .chunk import ApplyChunkNode

__all__ = [
    "CubeNode",
    "check_same_view",
    "SourceNode",
    "SelectBandsNode",
    "JoinBandsNode",
    "ApplyPixelNode",
    "FilterPixelNode",
    "ReduceNode",
    "REDUCERS",
    "ApplyChunkNode"
]
