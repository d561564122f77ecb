"""Vector file imports: every parser returns GeoJSON features in EPSG:4326."""

from __future__ import annotations

import io
import itertools
import os
import time
import zipfile
from collections import defaultdict
from typing import Any, Callable, Dict, List

from ..engine import MapEngine
from ..errors import ParseError
from ..geometry import features_to_planar
from ..layers import Layer
from ..models import LayerOrigin
from ..settings import slugify
from ..style.colors import DEFAULT_UPLOAD_STYLE
from ..utils.logging import get_logger
from .geojson import parse_geojson
from .kml import parse_kml, parse_kmz
from .shp import parse_shapefile

logger = get_logger(__name__)

SUPPORTED_EXTENSIONS = (".geojson", ".json", ".kml", ".kmz", ".zip")

_upload_sequence = itertools.count(1)


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def parse_archive(content: bytes) -> List[Dict[str, Any]]:
    """Read every shapefile, KML and GeoJSON member of a zip archive."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise ParseError(f"Unable to open archive: {exc}") from exc

    features: List[Dict[str, Any]] = []
    shapefile_parts: Dict[str, Dict[str, bytes]] = defaultdict(dict)
    with archive:
        for name in archive.namelist():
            if name.endswith("/") or os.path.basename(name).startswith("."):
                continue
            stem, ext = os.path.splitext(name)
            ext = ext.lower()
            if ext in (".shp", ".shx", ".dbf", ".prj"):
                shapefile_parts[stem][ext] = archive.read(name)
            elif ext in (".geojson", ".json"):
                features.extend(parse_geojson(archive.read(name)))
            elif ext == ".kml":
                features.extend(parse_kml(archive.read(name)))

    for stem, parts in shapefile_parts.items():
        missing = [ext for ext in (".shp", ".shx", ".dbf") if ext not in parts]
        if missing:
            raise ParseError(f"Shapefile '{stem}' is missing {', '.join(missing)}")
        features.extend(parse_shapefile(parts[".shp"], parts[".shx"], parts[".dbf"], parts.get(".prj")))
    return features


def parse_upload(filename: str, content: bytes) -> List[Dict[str, Any]]:
    if not content:
        raise ParseError(f"{filename or 'Uploaded file'} is empty")

    extension = _extension(filename)
    if extension in (".geojson", ".json"):
        features = parse_geojson(content)
    elif extension == ".kml":
        features = parse_kml(content)
    elif extension == ".kmz":
        features = parse_kmz(content)
    elif extension == ".zip":
        features = parse_archive(content)
    elif extension == ".shp":
        raise ParseError("Upload shapefiles as a ZIP containing .shp, .shx, and .dbf files")
    else:
        raise ParseError(
            f"Unsupported file type: {extension or 'unknown'}. "
            "Please upload GeoJSON, KML, KMZ or a zipped shapefile."
        )

    if not features:
        raise ParseError(f"No features found in {filename} or file is empty.")
    logger.info("Parsed upload", extra={"upload": filename, "features": len(features)})
    return features


def build_upload_layer(
    filename: str,
    features: List[Dict[str, Any]],
    engine: MapEngine,
    clock: Callable[[], float] = time.time,
) -> Layer:
    name = os.path.basename(filename) or "Uploaded layer"
    handle = engine.create_vector_layer(features_to_planar(features), DEFAULT_UPLOAD_STYLE, name)
    layer_id = f"upload-{slugify(name)}-{int(clock() * 1000)}-{next(_upload_sequence)}"
    return Layer(id=layer_id, name=name, handle=handle, visible=True, origin=LayerOrigin.UPLOAD)
