# src/rastercube/raster/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The raster subpackage provides disk access for source images and outputs,
including warping into chunk grids, per-thread handle pooling and memory
estimation.
"""
# I/O operations
from .io import (
    resampling_method,
    warp_band,
    save_geotiff,
    read_info
)

# Resource management
from .resources import (
    HandlePool,
    MemoryEstimate,
    estimate_chunk_memory
)

__all__ = [
    # I/O
    "resampling_method",
    "warp_band",
    "save_geotiff",
    "read_info",

    # Resources
    "HandlePool",
    "MemoryEstimate",
    "estimate_chunk_memory"
]
