# src/rastercube/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
rastercube builds lazy, chunk-wise raster data cubes from catalogs of
georeferenced images and evaluates them over a thread pool.
"""

__version__ = "0.1.0"

from .exceptions import (
    CubeError,
    ConfigurationError,
    SourceReadError,
    BandMismatchError,
    ExpressionError,
    ExternalProcessError,
    FramingError,
    ChunkEvaluationError
)

from .cube import (
    CubeView,
    ChunkBuffer,
    ArraySink,
    NetCDFSink,
    GeoTiffSink,
    ErrorPolicy,
    ExecutionConfig
)

from .db import (
    CatalogIndex,
    CatalogWriter
)

from .api import (
    DataCube,
    create_cube,
    select_bands,
    apply_pixel,
    filter_pixel,
    reduce,
    apply_chunk,
    join_bands,
    evaluate
)

__all__ = [
    "__version__",

    # Errors
    "CubeError",
    "ConfigurationError",
    "SourceReadError",
    "BandMismatchError",
    "ExpressionError",
    "ExternalProcessError",
    "FramingError",
    "ChunkEvaluationError",

    # Core types
    "CubeView",
    "ChunkBuffer",
    "ArraySink",
    "NetCDFSink",
    "GeoTiffSink",
    "ErrorPolicy",
    "ExecutionConfig",

    # Catalog
    "CatalogIndex",
    "CatalogWriter",

    # Construction API
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
