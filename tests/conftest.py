# tests/conftest.py

import sys
import textwrap

import pytest
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.transform import from_origin

from rastercube.cube.view import CubeView
from rastercube.db import CatalogIndex, CatalogWriter
from helpers import NODATA, lst_values

@pytest.fixture
def raster_factory(tmp_path):
    """
    Fixture: writes synthetic single- or multi-band GeoTIFFs into tmp_path.

    The default grid is 8x8 pixels of 1 degree covering (0, 8) x (0, 8) in EPSG:4326,
    which lines up exactly with the `view_factory` default grid.
    """
    def _make(
        name: str,
        data: np.ndarray,
        left: float = 0.0,
        top: float = 8.0,
        res: float = 1.0,
        crs: str = "EPSG:4326",
        nodata: float = NODATA,
        descriptions=None
    ):
        data = np.asarray(data, dtype="float32")
        if data.ndim == 2:
            data = data[np.newaxis]
        count, height, width = data.shape
        path = tmp_path / name
        profile = {
            "driver": "GTiff",
            "height": height,
            "width": width,
            "count": count,
            "dtype": "float32",
            "crs": CRS.from_user_input(crs),
            "transform": from_origin(left, top, res, res),
            "nodata": nodata
        }
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(data)
            if descriptions:
                for i, desc in enumerate(descriptions, start=1):
                    dst.set_band_description(i, desc)
        return path

    return _make

@pytest.fixture
def view_factory():
    """Fixture: 8x8 pixel EPSG:4326 view over (0, 8) x (0, 8) with daily slices."""
    def _make(t0="2020-01-01", t1="2020-01-04", dt="P1D", chunk_size=(2, 4, 4), **kwargs):
        return CubeView.create(
            "EPSG:4326", (0.0, 8.0, 0.0, 8.0), t0, t1, dt=dt,
            nx=8, ny=8, chunk_size=chunk_size, **kwargs
        )
    return _make

@pytest.fixture
def lst_catalog(tmp_path, raster_factory):
    """
    Fixture: SQLite catalog with three daily two-band images (LST_DAY, LST_NIGHT)
    acquired on 2020-01-01, 2020-01-02 and 2020-01-03.
    """
    db_path = tmp_path / "lst.db"
    writer = CatalogWriter(db_path)
    writer.initialize_database(format_id="synthetic_lst")
    for day in range(3):
        lst_day, lst_night = lst_values(day)
        path = raster_factory(f"lst_{day}.tif", np.stack([lst_day, lst_night]))
        writer.register_file(path, f"2020-01-0{day + 1}T10:00:00", band_names=["LST_DAY", "LST_NIGHT"])
    writer.dispose()
    return db_path

@pytest.fixture
def lst_index(lst_catalog):
    index = CatalogIndex(lst_catalog)
    yield index
    index.dispose()

@pytest.fixture
def worker_factory(tmp_path):
    """
    Fixture: writes a Python worker script and returns the command running it
    with the current interpreter.
    """
    def _make(name: str, source: str):
        path = tmp_path / name
        path.write_text(textwrap.dedent(source))
        return [sys.executable, str(path)]
    return _make
