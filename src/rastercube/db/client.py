import datetime
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from shapely.geometry import box
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from rasterio.crs import CRS
from rasterio.warp import transform_bounds

from rastercube.cube.buffer import BandInfo
from rastercube.cube.view import SpatialExtent, parse_datetime
from rastercube.exceptions import ConfigurationError
from rastercube.raster.io import read_info
from .models import Base, Band, CollectionMetadata, GdalRef, Image

log = logging.getLogger(__name__)

WGS84 = "EPSG:4326"

@dataclass(frozen=True)
class ImageRef:
    """
    One (image, band) pair returned by a catalog query.

    Attributes:
        image_id: Primary key of the image, used to break timestamp ties.
        image: Unique image name.
        datetime: Acquisition timestamp.
        band: Band name.
        descriptor: File path or GDAL subdataset string holding the band.
        band_num: 1-based band number inside `descriptor`.
    """
    image_id: int
    image: str
    datetime: datetime.datetime
    band: str
    descriptor: str
    band_num: int

@dataclass(frozen=True)
class CatalogExtent:
    """WGS84 bounding box and time range of all images in a catalog."""
    left: float
    right: float
    bottom: float
    top: float
    t0: datetime.datetime
    t1: datetime.datetime

def _to_url(target: Union[str, Path]) -> str:
    target = str(target)
    if "://" in target:
        return target
    return f"sqlite:///{target}"

class _CatalogConnection:
    """
    Shared engine and session setup for the catalog reader and writer.
    """

    def __init__(self, connection: Union[str, Path]):
        """
        Args:
            connection (Union[str, Path]): SQLAlchemy URL or path to a SQLite catalog file.
        """
        self.url = _to_url(connection)
        self._memory = self.url in ("sqlite://", "sqlite:///:memory:")
        if self._memory:
            self.engine = create_engine(
                self.url, echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool
            )
        else:
            self.engine = create_engine(self.url, echo=False)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        # A single shared in-memory connection must not be used by two threads at once.
        self._lock = threading.Lock() if self._memory else None

    def _session(self):
        return self.SessionLocal()

    def dispose(self):
        self.engine.dispose()

class CatalogIndex(_CatalogConnection):
    """
    Read-only query layer over a persisted image catalog.

    Every call opens its own session, so one index can be queried concurrently
    from the scheduler's worker threads.
    """

    def __init__(self, connection: Union[str, Path]):
        super().__init__(connection)
        if not self._memory and self.url.startswith("sqlite:///"):
            path = Path(self.url[len("sqlite:///"):])
            if not path.exists():
                raise ConfigurationError(f"Catalog file not found: {path}")
        self._bands: Optional[List[BandInfo]] = None

    def _run(self, statement):
        if self._lock is None:
            with self._session() as session:
                return session.execute(statement).all()
        with self._lock:
            with self._session() as session:
                return session.execute(statement).all()

    def bands(self) -> List[BandInfo]:
        """
        All bands of the collection, in registration order.

        Returns:
            List[BandInfo]: Band metadata.
        """
        if self._bands is None:
            try:
                rows = self._run(select(Band).order_by(Band.id))
            except SQLAlchemyError as e:
                raise ConfigurationError(f"Cannot read bands from catalog {self.url}: {e}") from e
            self._bands = [
                BandInfo(
                    name=b.name, type=b.type, nodata=b.nodata,
                    offset=b.offset or 0.0,
                    scale=b.scale if b.scale is not None else 1.0,
                    unit=b.unit or ""
                ) for (b,) in rows
            ]
        return list(self._bands)

    def band(self, name: str) -> BandInfo:
        for info in self.bands():
            if info.name == name:
                return info
        raise ConfigurationError(f"Band '{name}' is not part of the catalog {self.url}")

    def collection_metadata(self) -> Dict[str, str]:
        rows = self._run(select(CollectionMetadata))
        return {row.key: row.value for (row,) in rows}

    def count_images(self) -> int:
        rows = self._run(select(func.count(Image.id)))
        return int(rows[0][0])

    def extent(self) -> CatalogExtent:
        """
        Computes the WGS84 bounding box and time range covered by all images.

        Raises:
            ConfigurationError: If the catalog holds no image.
        """
        rows = self._run(select(
            func.min(Image.left), func.max(Image.right),
            func.min(Image.bottom), func.max(Image.top),
            func.min(Image.datetime), func.max(Image.datetime)
        ))
        left, right, bottom, top, t0, t1 = rows[0]
        if left is None:
            raise ConfigurationError(f"Catalog {self.url} contains no images")
        return CatalogExtent(left, right, bottom, top, t0, t1)

    def query(
        self,
        bbox: Union[SpatialExtent, Tuple[float, float, float, float]],
        time_range: Tuple[datetime.datetime, datetime.datetime],
        bands: Optional[Sequence[str]] = None,
        srs: str = WGS84
    ) -> List[ImageRef]:
        """
        Finds all (image, band) references intersecting a bounding box and time range.

        Args:
            bbox: SpatialExtent or (left, bottom, right, top) tuple, in `srs` units.
            time_range: Half-open [start, end) interval.
            bands: Restrict results to these band names (all bands if None).
            srs: Spatial reference of `bbox`.

        Returns:
            List[ImageRef]: Sorted by acquisition time, then image insertion order,
                then band registration order.
        """
        if isinstance(bbox, SpatialExtent):
            bbox = bbox.as_bounds()
        left, bottom, right, top = bbox
        if CRS.from_user_input(srs) != CRS.from_user_input(WGS84):
            left, bottom, right, top = transform_bounds(srs, WGS84, left, bottom, right, top, densify_pts=21)

        start, end = parse_datetime(time_range[0]), parse_datetime(time_range[1])

        stmt = (
            select(Image.id, Image.name, Image.datetime, Image.footprint, Band.name, GdalRef.descriptor, GdalRef.band_num)
            .join(GdalRef, GdalRef.image_id == Image.id)
            .join(Band, Band.id == GdalRef.band_id)
            .where(
                Image.left <= right, Image.right >= left,
                Image.bottom <= top, Image.top >= bottom,
                Image.datetime >= start, Image.datetime < end
            )
            .order_by(Image.datetime, Image.id, Band.id)
        )
        if bands is not None:
            stmt = stmt.where(Band.name.in_(list(bands)))

        try:
            rows = self._run(stmt)
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Catalog query failed on {self.url}: {e}") from e

        query_box = box(left, bottom, right, top)
        results = []
        for image_id, name, when, footprint, band, descriptor, band_num in rows:
            if footprint is not None and not footprint.intersects(query_box):
                continue
            results.append(ImageRef(image_id, name, when, band, descriptor, band_num))

        log.debug(f"Catalog query returned {len(results)} reference(s) for bbox {bbox}, {start} - {end}")
        return results

class CatalogWriter(_CatalogConnection):
    """
    Registers bands and already-resolved images into a catalog.

    Matching filenames to timestamps and bands is left to the caller.
    """

    def initialize_database(self, format_id: Optional[str] = None) -> None:
        """
        Deploys the catalog schema to the connected database target.

        Args:
            format_id (Optional[str]): Identifier of the collection format, stored as metadata.
        """
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Failed to initialize catalog schema: {e}") from e
        if format_id is not None:
            self.set_metadata("format", format_id)
        log.info(f"Catalog schema successfully deployed to {self.engine.name}.")

    def set_metadata(self, key: str, value: str) -> None:
        with self._session() as session:
            try:
                session.merge(CollectionMetadata(key=key, value=str(value)))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise ConfigurationError(f"Cannot store collection metadata '{key}': {e}") from e

    def add_band(
        self,
        name: str,
        type: str = "float64",
        nodata: Optional[float] = None,
        offset: float = 0.0,
        scale: float = 1.0,
        unit: str = ""
    ) -> int:
        """
        Persists a new band definition.

        Returns:
            int: The primary key ID of the band.

        Raises:
            ConfigurationError: If a band of that name already exists.
        """
        with self._session() as session:
            band = Band(name=name, type=type, nodata=nodata, offset=offset, scale=scale, unit=unit)
            try:
                session.add(band)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise ConfigurationError(f"Cannot register band '{name}': {e}") from e
            return band.id

    def _band_ids(self, session) -> Dict[str, int]:
        return {name: id_ for id_, name in session.execute(select(Band.id, Band.name)).all()}

    def add_image(
        self,
        name: str,
        when: Union[str, datetime.datetime],
        bounds_wgs84: Tuple[float, float, float, float],
        refs: Mapping[str, Tuple[str, int]],
        proj: Optional[str] = None,
        footprint: Any = None
    ) -> int:
        """
        Persists a new image with its band references.

        Args:
            name (str): Unique image name.
            when (Union[str, datetime.datetime]): Acquisition timestamp.
            bounds_wgs84 (Tuple[float, float, float, float]): (left, bottom, right, top) in EPSG:4326.
            refs (Mapping[str, Tuple[str, int]]): band name -> (descriptor, 1-based band number).
            proj (Optional[str]): Native projection of the image.
            footprint (Any): Optional shapely polygon (EPSG:4326); defaults to the bounding box.

        Returns:
            int: The primary key ID of the image.
        """
        left, bottom, right, top = bounds_wgs84
        with self._session() as session:
            band_ids = self._band_ids(session)
            unknown = [b for b in refs if b not in band_ids]
            if unknown:
                raise ConfigurationError(f"Image '{name}' references unregistered band(s) {unknown}")

            image = Image(
                name=name,
                datetime=parse_datetime(when),
                left=left, right=right, bottom=bottom, top=top,
                footprint=footprint if footprint is not None else box(left, bottom, right, top),
                proj=proj
            )
            try:
                session.add(image)
                session.flush()
                session.add_all([
                    GdalRef(image_id=image.id, band_id=band_ids[band], descriptor=str(descriptor), band_num=int(band_num))
                    for band, (descriptor, band_num) in refs.items()
                ])
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise ConfigurationError(f"Cannot register image '{name}': {e}") from e
            return image.id

    def register_file(
        self,
        path: Union[str, Path],
        when: Union[str, datetime.datetime],
        band_names: Optional[Sequence[str]] = None,
        name: Optional[str] = None
    ) -> int:
        """
        Registers a raster file, probing its extent and projection with rasterio.

        Bands that are not yet part of the catalog are created from the file's
        data type and no-data value.

        Args:
            path: Raster file.
            when: Acquisition timestamp.
            band_names: Names of the file's bands in order; defaults to the band descriptions.
            name: Unique image name; defaults to the file stem.

        Returns:
            int: The primary key ID of the image.
        """
        path = Path(path)
        info = read_info(path)
        names = list(band_names) if band_names is not None else info["descriptions"]
        if len(names) > info["count"]:
            raise ConfigurationError(f"{path} has {info['count']} band(s), got {len(names)} band names")

        with self._session() as session:
            existing = self._band_ids(session)
        for i, band in enumerate(names):
            if band not in existing:
                self.add_band(band, type=info["dtypes"][i], nodata=info["nodata"])

        refs = {band: (str(path), i + 1) for i, band in enumerate(names)}
        return self.add_image(
            name=name or path.stem,
            when=when,
            bounds_wgs84=info["bounds_wgs84"],
            refs=refs,
            proj=info["proj"]
        )
