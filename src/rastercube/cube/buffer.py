# src/rastercube/cube/buffer.py

"""
This module defines the in-memory containers exchanged between cube nodes.

A ChunkBuffer is the unit of data pulled through a cube graph: a dense
(band, time, y, x) array covering exactly one chunk of the view, plus the
no-data value that marks absent samples.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from rastercube.exceptions import BandMismatchError

log = logging.getLogger(__name__)

__all__ = [
    "BandInfo",
    "ChunkBuffer",
    "nodata_mask"
]

DEFAULT_DTYPE = np.float64

@dataclass(frozen=True)
class BandInfo:
    """
    Metadata of one band exposed by a cube node.

    Args:
        name: Band name, unique within a node.
        type: Storage data type of the source band (numpy dtype name).
        nodata: Declared no-data value of the band. None if undeclared.
        offset: Additive term applied to raw source values.
        scale: Multiplicative term applied to raw source values.
        unit: Free-form unit label.
    """
    name: str
    type: str = "float64"
    nodata: Optional[float] = None
    offset: float = 0.0
    scale: float = 1.0
    unit: str = ""

    def renamed(self, name: str) -> "BandInfo":
        return replace(self, name=name)

def nodata_mask(data: np.ndarray, nodata: Optional[float]) -> np.ndarray:
    """
    Boolean mask of samples equal to `nodata`.

    NaN samples are always treated as missing, regardless of the declared value.
    """
    mask = np.isnan(data) if np.issubdtype(data.dtype, np.floating) else np.zeros(data.shape, dtype=bool)
    if nodata is not None and not math.isnan(nodata):
        mask |= data == nodata
    return mask

class ChunkBuffer:
    """
    Dense array holding all bands of one chunk.

    Attributes:
        data (np.ndarray): Array of shape (bands, t, y, x).
        nodata (float): Value marking absent samples. NaN by default.
        bands (List[str]): Band names in band-axis order.
        coord (Tuple[int, int, int] | None): Chunk coordinate the buffer belongs to.
    """

    def __init__(
        self,
        data: np.ndarray,
        bands: Sequence[str],
        nodata: float = math.nan,
        coord: Optional[Tuple[int, int, int]] = None
    ):
        if not isinstance(data, np.ndarray):
            raise TypeError(f"Data must be numpy.ndarray, got {type(data)}")
        if data.ndim != 4:
            raise BandMismatchError(f"Chunk data must be 4D (band, t, y, x), got shape {data.shape}")
        if data.shape[0] != len(bands):
            raise BandMismatchError(
                f"Chunk has {data.shape[0]} bands but {len(bands)} band names were given: {list(bands)}"
            )
        self.data = data
        self.bands = list(bands)
        self.nodata = float(nodata) if nodata is not None else math.nan
        self.coord = tuple(coord) if coord is not None else None

    @classmethod
    def empty(
        cls,
        bands: Sequence[str],
        size: Tuple[int, int, int],
        nodata: float = math.nan,
        coord: Optional[Tuple[int, int, int]] = None,
        dtype: Union[str, np.dtype] = DEFAULT_DTYPE
    ) -> "ChunkBuffer":
        """Create a buffer of the given (t, y, x) size filled with no-data."""
        data = np.full((len(bands),) + tuple(size), nodata, dtype=dtype)
        return cls(data, bands, nodata=nodata, coord=coord)

    @property
    def shape(self) -> Tuple[int, int, int, int]:
        return self.data.shape

    @property
    def size(self) -> Tuple[int, int, int]:
        """(t, y, x) size of the chunk."""
        return self.data.shape[1:]

    @property
    def count(self) -> int:
        return self.data.shape[0]

    def nodata_mask(self) -> np.ndarray:
        return nodata_mask(self.data, self.nodata)

    def is_empty(self) -> bool:
        """True if every sample is no-data."""
        return bool(self.nodata_mask().all())

    def band_index(self, name: str) -> int:
        try:
            return self.bands.index(name)
        except ValueError:
            raise BandMismatchError(f"Band '{name}' not in chunk bands {self.bands}") from None

    def band(self, name: str) -> np.ndarray:
        """(t, y, x) view of a single band."""
        return self.data[self.band_index(name)]

    def select(self, names: Sequence[str]) -> "ChunkBuffer":
        """New buffer with the requested bands, in the requested order."""
        indices = [self.band_index(n) for n in names]
        return ChunkBuffer(self.data[indices], list(names), nodata=self.nodata, coord=self.coord)

    def with_nodata(self, nodata: float) -> "ChunkBuffer":
        """Copy of this buffer where missing samples are re-encoded with `nodata`."""
        data = self.data.copy()
        data[self.nodata_mask()] = nodata
        return ChunkBuffer(data, self.bands, nodata=nodata, coord=self.coord)

    def __repr__(self) -> str:
        return (
            f"ChunkBuffer(coord={self.coord}, bands={self.bands}, "
            f"shape={self.shape}, dtype={self.data.dtype}, nodata={self.nodata})"
        )
