# src/rastercube/cube/view.py

"""
This module defines the Cube View: the global spatiotemporal grid shared by a cube graph.

A view translates a spatial extent, a pixel size (or count), a temporal extent
and a temporal step into an exact integer pixel grid, and partitions that grid
into chunks addressed by (t, y, x) coordinates. Every node relies on the
coordinate -> bounds / time range mapping implemented here.
"""

import calendar
import datetime
import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Iterator, List, NamedTuple, Optional, Tuple, Union

import numpy as np
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.transform import Affine, from_origin
from rasterio.warp import transform_bounds

from rastercube.exceptions import ConfigurationError

log = logging.getLogger(__name__)

__all__ = [
    "AGGREGATIONS",
    "RESAMPLINGS",
    "ChunkCoord",
    "Duration",
    "SpatialExtent",
    "TemporalExtent",
    "CubeView",
    "parse_datetime"
]

AGGREGATIONS = ("first", "last", "min", "max", "mean", "median")

RESAMPLINGS = (
    "near", "bilinear", "cubic", "cubicspline", "lanczos",
    "average", "mode", "min", "max", "med", "q1", "q3"
)

DateLike = Union[str, datetime.date, datetime.datetime]

DEFAULT_PIXELS = 256

class ChunkCoord(NamedTuple):
    """Integer (time-tile, y-tile, x-tile) index of a chunk."""
    t: int
    y: int
    x: int

def parse_datetime(value: DateLike) -> datetime.datetime:
    """
    Normalize strings, dates and datetimes to naive datetimes.

    Timezone-aware values are converted to UTC before the tzinfo is dropped so
    that catalog timestamps and view boundaries compare consistently.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, datetime.date):
        dt = datetime.datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.datetime.fromisoformat(text)
        except ValueError as e:
            raise ConfigurationError(f"Invalid datetime '{value}': {e}") from e
    else:
        raise ConfigurationError(f"Cannot interpret {value!r} as a datetime")

    if dt.tzinfo is not None:
        dt = dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return dt

_DURATION_PATTERN = re.compile(r"^P(?:(?P<dvalue>\d+)(?P<dunit>[YMWD])|T(?P<tvalue>\d+)(?P<tunit>[HMS]))$")

@dataclass(frozen=True)
class Duration:
    """
    Single-unit ISO-8601 duration used as the temporal step of a view.

    Args:
        value: Positive number of units.
        unit: One of 'Y', 'M', 'W', 'D' (date units) or 'h', 'm', 's' (time units).
    """
    value: int
    unit: str

    _TIME_UNITS = {"h": "hours", "m": "minutes", "s": "seconds"}
    _DATE_UNITS = {"W": "weeks", "D": "days"}

    def __post_init__(self):
        if self.value <= 0:
            raise ConfigurationError(f"Duration must be positive, got {self.value}")
        if self.unit not in ("Y", "M", "W", "D", "h", "m", "s"):
            raise ConfigurationError(f"Unknown duration unit '{self.unit}'")

    @classmethod
    def parse(cls, text: Union[str, "Duration"]) -> "Duration":
        """Parse strings such as 'P1M', 'P16D' or 'PT6H'."""
        if isinstance(text, Duration):
            return text
        match = _DURATION_PATTERN.match(str(text).strip().upper())
        if not match:
            raise ConfigurationError(
                f"Invalid duration '{text}'. Expected a single-unit ISO-8601 duration like 'P1D' or 'PT6H'."
            )
        if match.group("dvalue") is not None:
            return cls(int(match.group("dvalue")), match.group("dunit"))
        return cls(int(match.group("tvalue")), match.group("tunit").lower())

    @property
    def is_calendar(self) -> bool:
        return self.unit in ("Y", "M")

    def _months(self) -> int:
        return self.value * 12 if self.unit == "Y" else self.value

    def _delta(self) -> datetime.timedelta:
        if self.unit in self._TIME_UNITS:
            return datetime.timedelta(**{self._TIME_UNITS[self.unit]: self.value})
        return datetime.timedelta(**{self._DATE_UNITS[self.unit]: self.value})

    def advance(self, start: datetime.datetime, n: int = 1) -> datetime.datetime:
        """Return start + n * duration."""
        if not self.is_calendar:
            return start + self._delta() * n
        months = start.month - 1 + self._months() * n
        year, month = start.year + months // 12, months % 12 + 1
        day = min(start.day, calendar.monthrange(year, month)[1])
        return start.replace(year=year, month=month, day=day)

    def index_of(self, start: datetime.datetime, when: datetime.datetime) -> int:
        """Return i such that start + i*d <= when < start + (i+1)*d (may be negative)."""
        if not self.is_calendar:
            return (when - start) // self._delta()
        diff = (when.year - start.year) * 12 + (when.month - start.month)
        i = diff // self._months()
        while self.advance(start, i) > when:
            i -= 1
        while self.advance(start, i + 1) <= when:
            i += 1
        return i

    def __str__(self) -> str:
        if self.unit in self._TIME_UNITS:
            return f"PT{self.value}{self.unit.upper()}"
        return f"P{self.value}{self.unit}"

@dataclass(frozen=True)
class SpatialExtent:
    left: float
    right: float
    bottom: float
    top: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.top - self.bottom

    def as_bounds(self) -> Tuple[float, float, float, float]:
        """Return (left, bottom, right, top) in rasterio bounds order."""
        return (self.left, self.bottom, self.right, self.top)

@dataclass(frozen=True)
class TemporalExtent:
    start: datetime.datetime
    end: datetime.datetime

@dataclass(frozen=True)
class CubeView:
    """
    Immutable description of a target data cube grid.

    Prefer the `CubeView.create()` factory, which accepts either pixel counts or
    pixel sizes and normalizes datetimes and durations.

    Attributes:
        srs: Spatial reference of the grid (anything rasterio's CRS accepts).
        extent: Spatial extent in `srs` units.
        t_extent: Temporal extent; both ends are inclusive.
        dt: Temporal step. None means a single slice covering the full extent.
        nx, ny: Pixel counts of the grid.
        chunk_size: (t, y, x) size of a chunk in slices and pixels.
        aggregation: How images falling in the same time slice are combined.
        resampling: Resampling method used when warping source images.
    """
    srs: str
    extent: SpatialExtent
    t_extent: TemporalExtent
    dt: Optional[Duration]
    nx: int
    ny: int
    chunk_size: Tuple[int, int, int] = (16, 256, 256)
    aggregation: str = "first"
    resampling: str = "near"
    _nt: int = field(default=0, init=False, repr=False, compare=False)

    def __post_init__(self):
        ext = self.extent
        if not (np.isfinite([ext.left, ext.right, ext.bottom, ext.top]).all()):
            raise ConfigurationError(f"Spatial extent must be finite, got {ext}")
        if ext.right <= ext.left or ext.top <= ext.bottom:
            raise ConfigurationError(f"Spatial extent is empty: {ext}")
        if self.nx <= 0 or self.ny <= 0:
            raise ConfigurationError(f"Pixel counts must be positive, got nx={self.nx}, ny={self.ny}")
        if self.t_extent.end < self.t_extent.start:
            raise ConfigurationError(
                f"Temporal extent is empty: {self.t_extent.start} > {self.t_extent.end}"
            )
        if len(self.chunk_size) != 3 or any(int(c) <= 0 for c in self.chunk_size):
            raise ConfigurationError(f"Chunk size must be three positive integers, got {self.chunk_size}")
        if self.aggregation not in AGGREGATIONS:
            raise ConfigurationError(f"Unknown aggregation '{self.aggregation}'. Valid: {AGGREGATIONS}")
        if self.resampling not in RESAMPLINGS:
            raise ConfigurationError(f"Unknown resampling '{self.resampling}'. Valid: {RESAMPLINGS}")
        try:
            CRS.from_user_input(self.srs)
        except CRSError as e:
            raise ConfigurationError(f"Invalid spatial reference '{self.srs}': {e}") from e

        object.__setattr__(self, "chunk_size", tuple(int(c) for c in self.chunk_size))

        if self.dt is None:
            nt = 1
        else:
            nt = self.dt.index_of(self.t_extent.start, self.t_extent.end) + 1
        object.__setattr__(self, "_nt", nt)

    @classmethod
    def create(
        cls,
        srs: str,
        extent: Union[SpatialExtent, Tuple[float, float, float, float]],
        t0: DateLike,
        t1: DateLike,
        dt: Union[str, Duration, None] = "P1D",
        nx: Optional[int] = None,
        ny: Optional[int] = None,
        dx: Optional[float] = None,
        dy: Optional[float] = None,
        chunk_size: Tuple[int, int, int] = (16, 256, 256),
        aggregation: str = "first",
        resampling: str = "near"
    ) -> "CubeView":
        """
        Build a view from user parameters.

        Args:
            srs: Target spatial reference (e.g. 'EPSG:32632').
            extent: SpatialExtent or (left, right, bottom, top) tuple.
            t0, t1: Inclusive temporal extent.
            dt: Temporal step as ISO-8601 duration; None for a single slice.
            nx, ny: Pixel counts. Take precedence over dx, dy.
            dx, dy: Pixel sizes. The extent is widened symmetrically so that
                    it holds an integer number of pixels.
            chunk_size: (t, y, x) chunk shape.
            aggregation: Temporal aggregation of images within a slice.
            resampling: Spatial resampling method.

        Returns:
            CubeView: Validated view.
        """
        if not isinstance(extent, SpatialExtent):
            extent = SpatialExtent(*[float(v) for v in extent])
        if extent.right <= extent.left or extent.top <= extent.bottom:
            raise ConfigurationError(f"Spatial extent is empty: {extent}")

        left, right, bottom, top = extent.left, extent.right, extent.bottom, extent.top

        if nx is None:
            if dx is None or dx <= 0:
                raise ConfigurationError("Either a positive nx or a positive dx is required")
            nx = max(1, math.ceil(round(extent.width / dx, 9)))
            pad = (nx * dx - extent.width) / 2.0
            left, right = left - pad, right + pad
        if ny is None:
            if dy is None or dy <= 0:
                raise ConfigurationError("Either a positive ny or a positive dy is required")
            ny = max(1, math.ceil(round(extent.height / dy, 9)))
            pad = (ny * dy - extent.height) / 2.0
            bottom, top = bottom - pad, top + pad

        return cls(
            srs=srs,
            extent=SpatialExtent(left, right, bottom, top),
            t_extent=TemporalExtent(parse_datetime(t0), parse_datetime(t1)),
            dt=Duration.parse(dt) if dt is not None else None,
            nx=int(nx),
            ny=int(ny),
            chunk_size=tuple(chunk_size),
            aggregation=aggregation,
            resampling=resampling
        )

    @classmethod
    def from_catalog(
        cls,
        index,
        srs: str = "EPSG:4326",
        dt: Union[str, Duration, None] = "P1D",
        nx: Optional[int] = None,
        ny: Optional[int] = None,
        dx: Optional[float] = None,
        dy: Optional[float] = None,
        chunk_size: Tuple[int, int, int] = (16, 256, 256),
        aggregation: str = "first",
        resampling: str = "near"
    ) -> "CubeView":
        """
        Derive a view covering every image of a catalog.

        The catalog's WGS84 extent is reprojected to `srs`. Without explicit
        sizes, the longer side of the extent gets DEFAULT_PIXELS pixels and
        pixels are square.
        """
        ext = index.extent()
        left, bottom, right, top = ext.left, ext.bottom, ext.right, ext.top
        if CRS.from_user_input(srs) != CRS.from_user_input("EPSG:4326"):
            left, bottom, right, top = transform_bounds("EPSG:4326", srs, left, bottom, right, top, densify_pts=21)
        if right <= left or top <= bottom:
            raise ConfigurationError(f"Catalog extent is degenerate: {(left, bottom, right, top)}")

        if nx is None and ny is None and dx is None and dy is None:
            size = max(right - left, top - bottom) / DEFAULT_PIXELS
            dx = dy = size

        return cls.create(
            srs=srs,
            extent=(left, right, bottom, top),
            t0=ext.t0,
            t1=ext.t1,
            dt=dt,
            nx=nx, ny=ny, dx=dx, dy=dy,
            chunk_size=chunk_size,
            aggregation=aggregation,
            resampling=resampling
        )

    # Grid geometry

    @property
    def nt(self) -> int:
        return self._nt

    @property
    def dx(self) -> float:
        return self.extent.width / self.nx

    @property
    def dy(self) -> float:
        return self.extent.height / self.ny

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Full (t, y, x) pixel shape of the cube."""
        return (self.nt, self.ny, self.nx)

    @property
    def crs(self) -> CRS:
        return CRS.from_user_input(self.srs)

    @property
    def transform(self) -> Affine:
        return from_origin(self.extent.left, self.extent.top, self.dx, self.dy)

    def slice_time(self, t_index: int) -> Tuple[datetime.datetime, datetime.datetime]:
        """Return the [start, end) interval covered by one time slice."""
        if not 0 <= t_index < self.nt:
            raise IndexError(f"Time index {t_index} out of range [0, {self.nt})")
        start = self.t_extent.start
        if self.dt is None:
            return start, self.t_extent.end + datetime.timedelta(microseconds=1)
        return self.dt.advance(start, t_index), self.dt.advance(start, t_index + 1)

    def time_index(self, when: DateLike) -> Optional[int]:
        """Return the index of the slice containing `when`, or None if outside the cube."""
        when = parse_datetime(when)
        if when < self.t_extent.start:
            return None
        if self.dt is None:
            return 0 if when <= self.t_extent.end else None
        i = self.dt.index_of(self.t_extent.start, when)
        return i if i < self.nt else None

    def time_axis(self) -> List[datetime.datetime]:
        """Start datetime of every slice."""
        return [self.slice_time(i)[0] for i in range(self.nt)]

    def x_coords(self) -> np.ndarray:
        """Pixel-center x coordinates."""
        return self.extent.left + (np.arange(self.nx) + 0.5) * self.dx

    def y_coords(self) -> np.ndarray:
        """Pixel-center y coordinates, top to bottom."""
        return self.extent.top - (np.arange(self.ny) + 0.5) * self.dy

    # Chunk geometry

    @property
    def chunk_counts(self) -> Tuple[int, int, int]:
        ct, cy, cx = self.chunk_size
        return (math.ceil(self.nt / ct), math.ceil(self.ny / cy), math.ceil(self.nx / cx))

    @property
    def n_chunks(self) -> int:
        nct, ncy, ncx = self.chunk_counts
        return nct * ncy * ncx

    def chunk_coords(self) -> Iterator[ChunkCoord]:
        """Iterate over every chunk coordinate in row-major (t, y, x) order."""
        nct, ncy, ncx = self.chunk_counts
        for t in range(nct):
            for y in range(ncy):
                for x in range(ncx):
                    yield ChunkCoord(t, y, x)

    def chunk_index(self, coord: Tuple[int, int, int]) -> int:
        coord = self.validate_coord(coord)
        _, ncy, ncx = self.chunk_counts
        return (coord.t * ncy + coord.y) * ncx + coord.x

    def chunk_coord(self, index: int) -> ChunkCoord:
        nct, ncy, ncx = self.chunk_counts
        if not 0 <= index < self.n_chunks:
            raise IndexError(f"Chunk index {index} out of range [0, {self.n_chunks})")
        t, rest = divmod(index, ncy * ncx)
        y, x = divmod(rest, ncx)
        return ChunkCoord(t, y, x)

    def validate_coord(self, coord: Tuple[int, int, int]) -> ChunkCoord:
        coord = ChunkCoord(*coord)
        for value, limit, axis in zip(coord, self.chunk_counts, "tyx"):
            if not 0 <= value < limit:
                raise IndexError(f"Chunk coordinate {tuple(coord)} out of range on {axis} axis (0..{limit - 1})")
        return coord

    def chunk_offset(self, coord: Tuple[int, int, int]) -> Tuple[int, int, int]:
        """First (t, y, x) pixel index of a chunk in the full grid."""
        coord = self.validate_coord(coord)
        ct, cy, cx = self.chunk_size
        return (coord.t * ct, coord.y * cy, coord.x * cx)

    def chunk_size_of(self, coord: Tuple[int, int, int]) -> Tuple[int, int, int]:
        """Actual (t, y, x) size of a chunk; chunks at the upper grid edges are clipped."""
        t0, y0, x0 = self.chunk_offset(coord)
        ct, cy, cx = self.chunk_size
        return (min(ct, self.nt - t0), min(cy, self.ny - y0), min(cx, self.nx - x0))

    def chunk_bounds(self, coord: Tuple[int, int, int]) -> SpatialExtent:
        """Exact spatial bounding box of a chunk in view coordinates."""
        _, y0, x0 = self.chunk_offset(coord)
        _, h, w = self.chunk_size_of(coord)
        left = self.extent.left + x0 * self.dx
        top = self.extent.top - y0 * self.dy
        return SpatialExtent(left=left, right=left + w * self.dx, bottom=top - h * self.dy, top=top)

    def chunk_transform(self, coord: Tuple[int, int, int]) -> Affine:
        bounds = self.chunk_bounds(coord)
        return from_origin(bounds.left, bounds.top, self.dx, self.dy)

    def chunk_time_range(self, coord: Tuple[int, int, int]) -> Tuple[datetime.datetime, datetime.datetime]:
        """[start, end) interval covered by a chunk."""
        t0, _, _ = self.chunk_offset(coord)
        nt, _, _ = self.chunk_size_of(coord)
        return self.slice_time(t0)[0], self.slice_time(t0 + nt - 1)[1]

    # Derived views

    def collapse_time(self) -> "CubeView":
        """View with the same spatial grid and a single slice spanning the full time range."""
        end = self.slice_time(self.nt - 1)[1] - datetime.timedelta(microseconds=1)
        return replace(
            self,
            t_extent=TemporalExtent(self.t_extent.start, end),
            dt=None,
            chunk_size=(1, self.chunk_size[1], self.chunk_size[2])
        )

    def with_chunk_size(self, chunk_size: Tuple[int, int, int]) -> "CubeView":
        return replace(self, chunk_size=tuple(chunk_size))

    def same_grid(self, other: "CubeView") -> bool:
        """True if both views describe the same pixel grid and chunking."""
        return (
            self.extent == other.extent
            and self.nx == other.nx and self.ny == other.ny
            and self.nt == other.nt
            and self.t_extent.start == other.t_extent.start
            and self.dt == other.dt
            and self.chunk_size == other.chunk_size
            and CRS.from_user_input(self.srs) == CRS.from_user_input(other.srs)
        )

    def to_dict(self) -> dict:
        return {
            "srs": self.srs,
            "extent": {
                "left": self.extent.left, "right": self.extent.right,
                "bottom": self.extent.bottom, "top": self.extent.top,
                "t0": self.t_extent.start.isoformat(), "t1": self.t_extent.end.isoformat()
            },
            "size": {"nx": self.nx, "ny": self.ny, "nt": self.nt},
            "dt": str(self.dt) if self.dt is not None else None,
            "chunk_size": list(self.chunk_size),
            "aggregation": self.aggregation,
            "resampling": self.resampling
        }
