# src/rastercube/bridge/__init__.py
#
# Copyright (c) The rastercube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The bridge subpackage exchanges chunks with external worker processes over a
length-prefixed binary frame on standard input and output.
"""
# Wire format
from .protocol import (
    FrameHeader,
    encode_frame,
    decode_frame,
    read_frame,
    write_frame,
    read_chunk,
    write_chunk
)

# Worker execution
from .process import (
    ExternalProcess
)

__all__ = [
    # Protocol
    "FrameHeader",
    "encode_frame",
    "decode_frame",
    "read_frame",
    "write_frame",
    "read_chunk",
    "write_chunk",

    # Process
    "ExternalProcess"
]
