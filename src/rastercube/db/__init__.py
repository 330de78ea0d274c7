# src/rastercube/db/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The db subpackage holds the persisted image catalog: its relational schema,
the read-only query layer used during evaluation and the registration API.
"""
from .models import (
    Base,
    CollectionMetadata,
    Band,
    Image,
    GdalRef
)

from .client import (
    ImageRef,
    CatalogExtent,
    CatalogIndex,
    CatalogWriter
)

__all__ = [
    # Schema
    "Base",
    "CollectionMetadata",
    "Band",
    "Image",
    "GdalRef",

    # Client
    "ImageRef",
    "CatalogExtent",
    "CatalogIndex",
    "CatalogWriter"
]
