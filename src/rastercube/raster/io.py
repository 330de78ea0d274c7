# src/rastercube/raster/io.py

"""
This module handles all disk-based operations for raster data.

Reading is always expressed relative to a chunk of a cube view: a source band
is warped directly into the chunk's pixel grid and projection. Writing covers
single time slices of an assembled cube (GeoTIFF) and the metadata probing
used when registering files in a catalog.
"""

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.transform import Affine
from rasterio.warp import reproject as rio_reproject, transform_bounds

log = logging.getLogger(__name__)

__all__ = [
    "resampling_method",
    "warp_band",
    "save_geotiff",
    "read_info"
]

_RESAMPLING_ALIASES = {
    "near": Resampling.nearest,
    "nearest": Resampling.nearest
}

def resampling_method(name: str) -> Resampling:
    """Map a view resampling name to a rasterio Resampling member."""
    if name in _RESAMPLING_ALIASES:
        return _RESAMPLING_ALIASES[name]
    try:
        return Resampling[name]
    except KeyError:
        raise ValueError(f"Unsupported resampling method '{name}'") from None

def warp_band(
    src: rasterio.DatasetReader,
    band_num: int,
    dst_crs: Union[str, CRS],
    dst_transform: Affine,
    shape: Tuple[int, int],
    resampling: Union[str, Resampling] = Resampling.nearest,
    src_nodata: Optional[float] = None,
    scale: float = 1.0,
    offset: float = 0.0
) -> np.ndarray:
    """
    Warp one band of an open dataset into a target pixel grid.

    Args:
        src: Open dataset (exclusively owned by the calling thread).
        band_num: 1-based band number in `src`.
        dst_crs: Target spatial reference.
        dst_transform: Affine transform of the target grid.
        shape: (height, width) of the target grid.
        resampling: Resampling method (name or Resampling member).
        src_nodata: No-data value of the source band. Falls back to the
                    dataset's own no-data value when None.
        scale, offset: Applied to valid samples after warping.

    Returns:
        np.ndarray: float64 array of `shape`, NaN where no valid source data falls.
    """
    if not 1 <= band_num <= src.count:
        raise IndexError(f"Band {band_num} out of range for {src.name} ({src.count} bands)")

    if isinstance(resampling, str):
        resampling = resampling_method(resampling)
    if src_nodata is None:
        src_nodata = src.nodatavals[band_num - 1]

    destination = np.full(shape, np.nan, dtype=np.float64)

    rio_reproject(
        source=rasterio.band(src, band_num),
        destination=destination,
        src_nodata=src_nodata,
        dst_transform=dst_transform,
        dst_crs=CRS.from_user_input(dst_crs),
        dst_nodata=np.nan,
        resampling=resampling
    )

    if src_nodata is not None and not math.isnan(src_nodata):
        destination[destination == src_nodata] = np.nan
    if scale != 1.0 or offset != 0.0:
        destination = destination * scale + offset

    return destination

def save_geotiff(
    data: np.ndarray,
    path: Union[str, Path],
    transform: Affine,
    crs: Union[str, CRS],
    nodata: Optional[float] = None,
    band_names: Optional[Sequence[str]] = None,
    tags: Optional[Dict[str, str]] = None,
    **profile_kwargs
) -> Path:
    """
    Write a (bands, y, x) array to a tiled GeoTIFF.

    Args:
        data: Array to write; 2D arrays are written as a single band.
        path: Output file path.
        transform: Affine transform of the array.
        crs: Spatial reference of the array.
        nodata: No-data value stored in the file.
        band_names: Optional band descriptions.
        tags: Optional dataset-level metadata tags.
        **profile_kwargs: Override default rasterio profile settings.

    Returns:
        Path: The written file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if data.ndim == 2:
        data = data[np.newaxis, :, :]

    count, height, width = data.shape
    profile = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": count,
        "dtype": data.dtype.name,
        "crs": CRS.from_user_input(crs),
        "transform": transform,
        "nodata": nodata
    }
    if width >= 16 and height >= 16 and width % 16 == 0 and height % 16 == 0:
        profile.update(tiled=True, blockxsize=min(256, width), blockysize=min(256, height))
    profile.update(profile_kwargs)

    log.debug(f"Saving array {data.shape} → {path}")

    try:
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(data)
            if band_names:
                for idx, name in enumerate(band_names, start=1):
                    if idx <= count:
                        dst.set_band_description(idx, name)
            if tags:
                dst.update_tags(**tags)
    except Exception as e:
        raise IOError(f"Failed to save raster to {path}: {e}") from e

    return path

def read_info(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Inspect a raster file and return the metadata needed to catalog it.

    The returned 'bounds_wgs84' is the (left, bottom, right, top) extent
    of the file reprojected to EPSG:4326.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    try:
        with rasterio.open(path) as src:
            if src.crs is None:
                raise ValueError(f"Raster {path} has no spatial reference")
            bounds_wgs84 = transform_bounds(src.crs, "EPSG:4326", *src.bounds, densify_pts=21)
            descriptions: List[str] = [
                desc or f"band{i}" for i, desc in enumerate(src.descriptions, start=1)
            ]
            return {
                "crs": src.crs,
                "proj": src.crs.to_wkt(),
                "bounds": src.bounds,
                "bounds_wgs84": bounds_wgs84,
                "count": src.count,
                "dtypes": list(src.dtypes),
                "nodata": src.nodata,
                "descriptions": descriptions
            }
    except rasterio.RasterioIOError as e:
        raise IOError(f"Failed to read metadata from {path}: {e}") from e
