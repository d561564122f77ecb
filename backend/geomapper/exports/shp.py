import io
import os
import tempfile
import zipfile
from typing import Any, Dict, List, Sequence, Tuple

import orjson
import shapefile
from shapely.geometry import LineString, MultiLineString, MultiPoint, MultiPolygon, Point, Polygon, shape
from shapely.geometry.polygon import orient

from ..models import ExportLayer
from ..settings import slugify
from ..utils.logging import get_logger

logger = get_logger(__name__)

WGS84_PRJ = (
    'GEOGCS["WGS 84",DATUM["WGS_1984",SPHEROID["WGS 84",6378137,298.257223563]],'
    'PRIMEM["Greenwich",0],UNIT["degree",0.0174532925199433]]'
)
_SHAPEFILE_PARTS = (".shp", ".shx", ".dbf", ".prj")
_DBF_TEXT_SIZE = 254

Record = Tuple[str, str, str, str]


def _polygon_parts(geom) -> List[List[Tuple[float, float]]]:
    """Shapefile rings: clockwise exteriors, counter-clockwise holes."""
    if isinstance(geom, Polygon):
        oriented = orient(geom, sign=-1.0)
        parts = [list(oriented.exterior.coords)]
        for interior in oriented.interiors:
            parts.append(list(interior.coords))
        return parts
    if isinstance(geom, MultiPolygon):
        parts: List[List[Tuple[float, float]]] = []
        for poly in geom.geoms:
            parts.extend(_polygon_parts(poly))
        return parts
    raise ValueError("Expected polygon geometry")


def _line_parts(geom) -> List[List[Tuple[float, float]]]:
    if isinstance(geom, LineString):
        return [list(geom.coords)]
    if isinstance(geom, MultiLineString):
        return [list(line.coords) for line in geom.geoms]
    raise ValueError("Expected line geometry")


def _points(geom) -> List[Tuple[float, float]]:
    if isinstance(geom, Point):
        return [(geom.x, geom.y)]
    if isinstance(geom, MultiPoint):
        return [(point.x, point.y) for point in geom.geoms]
    raise ValueError("Expected point geometry")


def _record(layer: ExportLayer, feature: Dict[str, Any]) -> Record:
    properties = feature.get("properties") or {}
    name = properties.get("name") or properties.get("ref") or ""
    attributes = orjson.dumps(properties, default=str).decode("utf-8")
    return (
        layer.name[:_DBF_TEXT_SIZE],
        str(name)[:_DBF_TEXT_SIZE],
        str(feature.get("id") or "")[:_DBF_TEXT_SIZE],
        attributes[:_DBF_TEXT_SIZE],
    )


def _group_by_family(layers: Sequence[ExportLayer]) -> Dict[str, List[Tuple[Any, Record]]]:
    families: Dict[str, List[Tuple[Any, Record]]] = {"points": [], "lines": [], "polygons": []}
    for layer in layers:
        for feature in layer.features:
            geometry = feature.get("geometry")
            if not geometry:
                continue
            try:
                geom = shape(geometry)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Skipping unreadable geometry in shapefile export: {exc}")
                continue
            if geom.is_empty:
                continue
            record = _record(layer, feature)
            if isinstance(geom, (Polygon, MultiPolygon)):
                families["polygons"].append((geom, record))
            elif isinstance(geom, (LineString, MultiLineString)):
                families["lines"].append((geom, record))
            elif isinstance(geom, (Point, MultiPoint)):
                families["points"].append((geom, record))
    return families


def _write_family(path: str, family: str, items: List[Tuple[Any, Record]]) -> None:
    shape_type = {
        "points": shapefile.POINT,
        "lines": shapefile.POLYLINE,
        "polygons": shapefile.POLYGON,
    }[family]
    writer = shapefile.Writer(path, shapeType=shape_type)
    writer.field("LAYER", "C", size=_DBF_TEXT_SIZE)
    writer.field("NAME", "C", size=_DBF_TEXT_SIZE)
    writer.field("FEAT_ID", "C", size=_DBF_TEXT_SIZE)
    writer.field("ATTRS", "C", size=_DBF_TEXT_SIZE)

    for geom, record in items:
        if family == "polygons":
            writer.poly(_polygon_parts(geom))
            writer.record(*record)
        elif family == "lines":
            writer.line(_line_parts(geom))
            writer.record(*record)
        else:
            for x, y in _points(geom):
                writer.point(x, y)
                writer.record(*record)
    writer.close()

    with open(f"{path}.prj", "w", encoding="utf-8") as prj_file:
        prj_file.write(WGS84_PRJ)


def export_shapefile_zip(layers: Sequence[ExportLayer], base_name: str = "export") -> bytes:
    """Zip one WGS84 shapefile per geometry family present in ``layers``."""
    families = _group_by_family(layers)
    if not any(families.values()):
        raise ValueError("No features to export")

    base_slug = slugify(base_name, fallback="export")
    output = io.BytesIO()
    with tempfile.TemporaryDirectory() as tmpdir:
        with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as archive:
            for family, items in families.items():
                if not items:
                    continue
                stem = f"{base_slug}_{family}"
                path = os.path.join(tmpdir, stem)
                _write_family(path, family, items)
                for ext in _SHAPEFILE_PARTS:
                    archive.write(f"{path}{ext}", arcname=f"{stem}{ext}")
                logger.info(
                    "Wrote shapefile",
                    extra={"family": family, "records": len(items)},
                )
    return output.getvalue()
