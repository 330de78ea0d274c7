import argparse
import sys
import logging
import os
from pathlib import Path

def setup_logging(level: int = logging.INFO) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def _resolve_target(path: str) -> str:
    """
    Returns the catalog connection target, preferring RASTERCUBE_CATALOG_URL from the environment.
    """
    from dotenv import load_dotenv, find_dotenv

    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path)
    return path or os.getenv("RASTERCUBE_CATALOG_URL", "rastercube_catalog.db")

def initialize_database(path: str, reset: bool = False, format_id: str = None) -> None:
    """
    Provisions the catalog schema at the given location.

    Args:
        path (str): SQLite file path or SQLAlchemy URL of the catalog.
        reset (bool): Deletes an existing local catalog file before initialization.
        format_id (str): Collection format identifier stored as collection metadata.
    """
    from rastercube.db import CatalogWriter
    from rastercube.exceptions import CubeError

    target = _resolve_target(path)
    if "://" not in target and reset and Path(target).exists():
        logging.warning(f"Reset flag detected. Removing existing catalog at {target}.")
        os.remove(target)

    try:
        writer = CatalogWriter(target)
        writer.initialize_database(format_id=format_id)
        writer.dispose()
    except CubeError as e:
        logging.error(f"Failed to deploy catalog schema: {e}")
        sys.exit(1)

    logging.info(f"Catalog initialized at {target}.")

def add_image(db: str, path: str, when: str, bands: str = None, name: str = None) -> None:
    """
    Registers one raster file as an image of the catalog.

    Args:
        db (str): Catalog location.
        path (str): Raster file to register.
        when (str): ISO-8601 acquisition timestamp.
        bands (str): Comma separated band names in file order; defaults to band descriptions.
        name (str): Unique image name; defaults to the file stem.
    """
    from rastercube.db import CatalogWriter
    from rastercube.exceptions import CubeError

    band_names = [b.strip() for b in bands.split(",") if b.strip()] if bands else None
    try:
        writer = CatalogWriter(_resolve_target(db))
        image_id = writer.register_file(path, when, band_names=band_names, name=name)
        writer.dispose()
    except (CubeError, IOError, ValueError) as e:
        logging.error(f"Failed to register {path}: {e}")
        sys.exit(1)

    logging.info(f"Registered {path} as image {image_id}.")

def show_info(db: str) -> None:
    """
    Prints the bands, extent and image count of a catalog.

    Args:
        db (str): Catalog location.
    """
    from rastercube.db import CatalogIndex
    from rastercube.exceptions import CubeError

    try:
        index = CatalogIndex(_resolve_target(db))
        metadata = index.collection_metadata()
        bands = index.bands()
        count = index.count_images()
        extent = index.extent() if count else None
        index.dispose()
    except CubeError as e:
        logging.error(f"Failed to read catalog: {e}")
        sys.exit(1)

    print(f"Format: {metadata.get('format', 'unknown')}")
    print(f"Images: {count}")
    if extent is not None:
        print(f"Extent (EPSG:4326): left={extent.left} right={extent.right} bottom={extent.bottom} top={extent.top}")
        print(f"Time range: {extent.t0.isoformat()} - {extent.t1.isoformat()}")
    print("Bands:")
    for band in bands:
        print(f"  {band.name} type={band.type} nodata={band.nodata} scale={band.scale} offset={band.offset} unit={band.unit}")

def main(argv=None) -> None:
    """
    Parses command-line arguments and routes execution to the appropriate catalog subroutines.
    """
    parser = argparse.ArgumentParser(
        prog="rastercube",
        description="rastercube catalog administration CLI"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enables debug logging."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser(
        "init-db",
        help="Creates the catalog schema."
    )
    init_parser.add_argument(
        "--path",
        type=str,
        default=None,
        help="The catalog SQLite file or SQLAlchemy URL. Defaults to RASTERCUBE_CATALOG_URL or rastercube_catalog.db."
    )
    init_parser.add_argument(
        "--format",
        type=str,
        default=None,
        help="Collection format identifier stored in the catalog metadata."
    )
    init_parser.add_argument(
        "--reset",
        action="store_true",
        help="Forcefully deletes the existing local catalog file before recreation."
    )

    add_parser = subparsers.add_parser(
        "add-image",
        help="Registers a raster file as an image of the catalog."
    )
    add_parser.add_argument("--db", type=str, default=None, help="The catalog location.")
    add_parser.add_argument("--path", type=str, required=True, help="The raster file to register.")
    add_parser.add_argument("--datetime", type=str, required=True, help="ISO-8601 acquisition timestamp.")
    add_parser.add_argument("--bands", type=str, default=None, help="Comma separated band names in file order.")
    add_parser.add_argument("--name", type=str, default=None, help="Unique image name.")

    info_parser = subparsers.add_parser(
        "info",
        help="Prints a summary of the catalog."
    )
    info_parser.add_argument("--db", type=str, default=None, help="The catalog location.")

    args = parser.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.command == "init-db":
        initialize_database(path=args.path, reset=args.reset, format_id=args.format)
    elif args.command == "add-image":
        add_image(db=args.db, path=args.path, when=args.datetime, bands=args.bands, name=args.name)
    elif args.command == "info":
        show_info(db=args.db)

if __name__ == "__main__":
    main()
