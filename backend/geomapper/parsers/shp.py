from __future__ import annotations

import io
from typing import Any, Dict, List, Optional

import shapefile  # type: ignore[import-untyped]
from pyproj import CRS, Transformer
from shapely.geometry import mapping, shape

from ..errors import ParseError
from ..geometry import shapely_transform
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _transformer_from_prj(prj: Optional[bytes]) -> Optional[Transformer]:
    if not prj:
        return None
    try:
        source = CRS.from_wkt(prj.decode("utf-8", errors="ignore"))
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Ignoring unreadable .prj, assuming WGS84: {exc}")
        return None
    if source.equals(CRS.from_epsg(4326), ignore_axis_order=True):
        return None
    return Transformer.from_crs(source, 4326, always_xy=True)


def parse_shapefile(
    shp: bytes,
    shx: bytes,
    dbf: bytes,
    prj: Optional[bytes] = None,
) -> List[Dict[str, Any]]:
    """Read one shapefile triple into GeoJSON features in EPSG:4326."""
    try:
        reader = shapefile.Reader(shp=io.BytesIO(shp), shx=io.BytesIO(shx), dbf=io.BytesIO(dbf))
    except Exception as exc:  # noqa: BLE001
        raise ParseError(f"Unable to read shapefile: {exc}") from exc

    transformer = _transformer_from_prj(prj)
    features: List[Dict[str, Any]] = []
    for shape_record in reader.shapeRecords():
        if shape_record.shape.shapeType == shapefile.NULL:
            continue
        try:
            geom = shape(shape_record.shape.__geo_interface__)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Skipping unreadable shapefile record: {exc}")
            continue
        if geom.is_empty:
            continue
        if transformer is not None:
            geom = shapely_transform(geom, transformer)
        features.append({
            "type": "Feature",
            "geometry": mapping(geom),
            "properties": shape_record.record.as_dict(),
        })
    return features
