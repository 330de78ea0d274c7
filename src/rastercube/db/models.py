from typing import Any, Optional

from shapely import wkt
from shapely.geometry.base import BaseGeometry
from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

class WKTGeometry(TypeDecorator):
    """
    Stores shapely geometries as WKT text so the catalog works on any SQL dialect
    without a spatial extension.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[BaseGeometry], dialect: Any) -> Optional[str]:
        """
        Serializes a shapely geometry into WKT during database insertion.

        Args:
            value (Optional[BaseGeometry]): The geometry to store.
            dialect (Any): The active SQLAlchemy execution dialect.

        Returns:
            Optional[str]: The WKT representation.
        """
        if value is None:
            return None
        if isinstance(value, str):
            return value
        return value.wkt

    def process_result_value(self, value: Optional[str], dialect: Any) -> Optional[BaseGeometry]:
        """
        Deserializes WKT text back into a shapely geometry during retrieval.

        Args:
            value (Optional[str]): The raw WKT retrieved from the database.
            dialect (Any): The active SQLAlchemy execution dialect.

        Returns:
            Optional[BaseGeometry]: The parsed geometry.
        """
        if value is None:
            return None
        return wkt.loads(value)

class CollectionMetadata(Base):
    """
    Key/value metadata describing the image collection (e.g. its format identifier).
    """
    __tablename__ = 'collection_md'

    key = Column(String(255), primary_key=True)
    value = Column(Text)

class Band(Base):
    """
    Defines a band available in the collection, with its storage type and no-data value.
    """
    __tablename__ = 'bands'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    type = Column(String(50), nullable=False, default="float64")
    offset = Column(Float, nullable=False, default=0.0)
    scale = Column(Float, nullable=False, default=1.0)
    unit = Column(String(255), default="")
    nodata = Column(Float)

    refs = relationship("GdalRef", back_populates="band", cascade="all, delete-orphan")

class Image(Base):
    """
    Registers one acquisition: its timestamp, WGS84 bounding box, footprint and native projection.
    """
    __tablename__ = 'images'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    datetime = Column(DateTime, nullable=False)
    left = Column(Float, nullable=False)
    right = Column(Float, nullable=False)
    bottom = Column(Float, nullable=False)
    top = Column(Float, nullable=False)
    footprint = Column(WKTGeometry)
    proj = Column(Text)

    refs = relationship("GdalRef", back_populates="image", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_images_datetime', 'datetime'),
        Index('ix_images_bbox', 'left', 'right', 'bottom', 'top'),
    )

class GdalRef(Base):
    """
    Locates the file (or subdataset) and 1-based band number holding one band of one image.
    """
    __tablename__ = 'gdalrefs'

    image_id = Column(Integer, ForeignKey('images.id', ondelete='CASCADE'), primary_key=True)
    band_id = Column(Integer, ForeignKey('bands.id', ondelete='CASCADE'), primary_key=True)
    descriptor = Column(Text, nullable=False)
    band_num = Column(Integer, nullable=False, default=1)

    image = relationship("Image", back_populates="refs")
    band = relationship("Band", back_populates="refs")
