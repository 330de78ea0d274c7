# src/rastercube/bridge/protocol.py

"""
This module defines the binary frame exchanged with external chunk workers.

A frame is a fixed 40-byte header followed by the raw array payload:

    offset  size  field
    0       4     magic b"RCUB"
    4       1     protocol version (1)
    5       1     element type tag (see DTYPE_TAGS)
    6       2     reserved, zero
    8       4     band count
    12      4     time count
    16      4     y size
    20      4     x size
    24      8     no-data value (float64)
    32      8     payload length in bytes

All integers and the payload use the native byte order of the machine running
both host and worker. The payload is laid out band-major, then time, then y,
then x (C order of a (band, t, y, x) array).

Workers written in Python can use `read_chunk()` and `write_chunk()`; workers in
any other language only need to implement the layout above.
"""

import logging
import os
import struct
import sys
from typing import BinaryIO, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np

from rastercube.exceptions import FramingError

log = logging.getLogger(__name__)

__all__ = [
    "MAGIC",
    "VERSION",
    "HEADER",
    "DTYPE_TAGS",
    "FrameHeader",
    "encode_frame",
    "decode_frame",
    "write_frame",
    "read_frame",
    "read_chunk",
    "write_chunk"
]

MAGIC = b"RCUB"
VERSION = 1
HEADER = struct.Struct("=4sBBHIIIIdQ")

DTYPE_TAGS = {
    1: np.dtype(np.uint8),
    2: np.dtype(np.int16),
    3: np.dtype(np.uint16),
    4: np.dtype(np.int32),
    5: np.dtype(np.uint32),
    6: np.dtype(np.float32),
    7: np.dtype(np.float64)
}
_TAG_OF = {dtype: tag for tag, dtype in DTYPE_TAGS.items()}

class FrameHeader(NamedTuple):
    dtype: np.dtype
    shape: Tuple[int, int, int, int]
    nodata: float
    payload_length: int

def _native(data: np.ndarray) -> np.ndarray:
    if data.ndim != 4:
        raise FramingError(f"Frames carry (band, t, y, x) arrays, got shape {data.shape}")
    if not data.dtype.isnative:
        data = data.astype(data.dtype.newbyteorder("="))
    dtype = np.dtype(data.dtype.name)
    if dtype not in _TAG_OF:
        raise FramingError(f"Unsupported element type {data.dtype} for framing")
    return np.ascontiguousarray(data, dtype=dtype)

def _header_bytes(data: np.ndarray, nodata: float) -> bytes:
    return HEADER.pack(
        MAGIC, VERSION, _TAG_OF[data.dtype], 0,
        *data.shape,
        float(nodata),
        data.nbytes
    )

def encode_frame(data: np.ndarray, nodata: float = float("nan")) -> bytes:
    """Serialize a (band, t, y, x) array into one frame."""
    data = _native(data)
    return _header_bytes(data, nodata) + data.tobytes(order="C")

def _parse_header(raw: bytes, expected_shape: Optional[Sequence[Optional[int]]] = None) -> FrameHeader:
    if len(raw) < HEADER.size:
        raise FramingError(f"Truncated frame header: got {len(raw)} of {HEADER.size} bytes")

    magic, version, tag, _, nb, nt, ny, nx, nodata, payload_length = HEADER.unpack(raw[:HEADER.size])
    if magic != MAGIC:
        raise FramingError(f"Bad frame magic {magic!r}, expected {MAGIC!r}")
    if version != VERSION:
        raise FramingError(f"Unsupported frame version {version}, expected {VERSION}")
    if tag not in DTYPE_TAGS:
        raise FramingError(f"Unknown element type tag {tag}")

    dtype = DTYPE_TAGS[tag]
    shape = (nb, nt, ny, nx)
    expected_length = nb * nt * ny * nx * dtype.itemsize
    if payload_length != expected_length:
        raise FramingError(
            f"Frame declares {payload_length} payload bytes but header dimensions {shape} "
            f"of {dtype} require {expected_length}"
        )

    if expected_shape is not None:
        for axis, got, want in zip("btyx", shape, expected_shape):
            if want is not None and got != want:
                raise FramingError(
                    f"Frame shape {shape} deviates from expected {tuple(expected_shape)} on axis '{axis}'"
                )

    return FrameHeader(dtype, shape, nodata, payload_length)

def decode_frame(
    raw: bytes,
    expected_shape: Optional[Sequence[Optional[int]]] = None
) -> Tuple[np.ndarray, float]:
    """
    Parse exactly one frame from a byte string.

    Args:
        raw: Complete output of a worker.
        expected_shape: Optional (band, t, y, x); None entries are not checked.

    Returns:
        Tuple[np.ndarray, float]: The array and its no-data value.

    Raises:
        FramingError: If the bytes are not exactly one well-formed frame.
    """
    header = _parse_header(raw, expected_shape)
    end = HEADER.size + header.payload_length
    if len(raw) < end:
        raise FramingError(f"Truncated frame payload: got {len(raw) - HEADER.size} of {header.payload_length} bytes")
    if len(raw) > end:
        raise FramingError(f"{len(raw) - end} unexpected trailing byte(s) after frame")
    data = np.frombuffer(raw, dtype=header.dtype, count=int(np.prod(header.shape)), offset=HEADER.size)
    return data.reshape(header.shape).copy(), header.nodata

def _read_exact(stream: BinaryIO, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        block = stream.read(remaining)
        if not block:
            break
        chunks.append(block)
        remaining -= len(block)
    return b"".join(chunks)

def read_frame(
    stream: BinaryIO,
    expected_shape: Optional[Sequence[Optional[int]]] = None
) -> Tuple[np.ndarray, float]:
    """Read one frame from a binary stream."""
    header = _parse_header(_read_exact(stream, HEADER.size), expected_shape)
    payload = _read_exact(stream, header.payload_length)
    if len(payload) != header.payload_length:
        raise FramingError(f"Truncated frame payload: got {len(payload)} of {header.payload_length} bytes")
    data = np.frombuffer(payload, dtype=header.dtype).reshape(header.shape).copy()
    return data, header.nodata

def write_frame(stream: BinaryIO, data: np.ndarray, nodata: float = float("nan")) -> None:
    """Write one frame to a binary stream without concatenating header and payload."""
    data = _native(data)
    stream.write(_header_bytes(data, nodata))
    stream.write(memoryview(data).cast("B"))
    stream.flush()

# Worker-side helpers

def read_chunk(stream: Optional[BinaryIO] = None):
    """
    Read the chunk sent by the host (worker side).

    Band names are taken from the RASTERCUBE_BANDS environment variable.

    Returns:
        ChunkBuffer: The chunk to transform.
    """
    from rastercube.cube.buffer import ChunkBuffer

    stream = stream or sys.stdin.buffer
    data, nodata = read_frame(stream)
    names = [b for b in os.environ.get("RASTERCUBE_BANDS", "").split(",") if b]
    if len(names) != data.shape[0]:
        names = [f"band{i + 1}" for i in range(data.shape[0])]
    coord = os.environ.get("RASTERCUBE_CHUNK_COORD")
    coord = tuple(int(c) for c in coord.split(",")) if coord else None
    return ChunkBuffer(data, names, nodata=nodata, coord=coord)

def write_chunk(chunk: Union[np.ndarray, "ChunkBuffer"], nodata: Optional[float] = None, stream: Optional[BinaryIO] = None) -> None:
    """Send a transformed chunk back to the host (worker side)."""
    stream = stream or sys.stdout.buffer
    if isinstance(chunk, np.ndarray):
        write_frame(stream, chunk, float("nan") if nodata is None else nodata)
    else:
        write_frame(stream, chunk.data, chunk.nodata if nodata is None else nodata)
