from typing import Any, Dict, List, Optional, Sequence

import simplekml

from ..models import ExportLayer, StyleDescriptor
from ..style.colors import hex_to_kml_color
from ..utils.logging import get_logger

logger = get_logger(__name__)

_NAME_KEYS = ("name", "ref", "osm_id", "id")


def _build_style(descriptor: StyleDescriptor) -> simplekml.Style:
    style = simplekml.Style()
    style.polystyle.fill = 1
    style.polystyle.outline = 1
    style.polystyle.altitudemode = simplekml.AltitudeMode.clamptoground
    style.polystyle.color = hex_to_kml_color(descriptor.effective_fill, descriptor.fillOpacity)
    style.linestyle.color = hex_to_kml_color(descriptor.strokeColor, 1.0)
    style.linestyle.width = descriptor.strokeWidth
    style.iconstyle.color = hex_to_kml_color(descriptor.strokeColor, 1.0)
    style.iconstyle.scale = max(0.5, descriptor.pointRadius / 5.0)
    return style


def _display_name(properties: Dict[str, Any], fallback: str) -> str:
    for key in _NAME_KEYS:
        value = properties.get(key)
        if value not in (None, ""):
            return str(value)
    return fallback


def _clean_text(value: Optional[Any]) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _apply_metadata(placemark, properties: Dict[str, Any], name: str, style: simplekml.Style) -> None:
    placemark.name = name
    placemark.style = style
    for key, value in properties.items():
        text = _clean_text(value)
        if text and key != "geometry":
            placemark.extendeddata.newdata(name=str(key), value=text)


def _coords(points: Sequence[Sequence[float]]) -> List[tuple]:
    return [(float(pt[0]), float(pt[1])) for pt in points]


def _add_polygon(container, rings, properties, name, style) -> None:
    if not rings or not rings[0]:
        return
    polygon = container.newpolygon()
    _apply_metadata(polygon, properties, name, style)
    polygon.outerboundaryis = _coords(rings[0])
    inner = [_coords(ring) for ring in rings[1:] if ring]
    if inner:
        polygon.innerboundaryis = inner


def _add_line(container, points, properties, name, style) -> None:
    if not points:
        return
    line = container.newlinestring()
    _apply_metadata(line, properties, name, style)
    line.coords = _coords(points)
    line.tessellate = 1


def _add_point(container, point, properties, name, style) -> None:
    if not point:
        return
    placemark = container.newpoint()
    _apply_metadata(placemark, properties, name, style)
    placemark.coords = [(float(point[0]), float(point[1]))]


def _part_name(name: str, index: int, total: int) -> str:
    return f"{name} (Part {index})" if total > 1 else name


def _add_feature(container, feature: Dict[str, Any], style: simplekml.Style, fallback: str) -> int:
    """Write one feature; multi-part geometries become one placemark per part."""
    geometry = feature.get("geometry") or {}
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")
    properties = dict(feature.get("properties") or {})
    name = _display_name(properties, fallback)

    if geom_type == "Polygon":
        _add_polygon(container, coords, properties, name, style)
        return 1
    if geom_type == "LineString":
        _add_line(container, coords, properties, name, style)
        return 1
    if geom_type == "Point":
        _add_point(container, coords, properties, name, style)
        return 1

    parts = coords or []
    writer = {
        "MultiPolygon": _add_polygon,
        "MultiLineString": _add_line,
        "MultiPoint": _add_point,
    }.get(geom_type)
    if writer is None:
        logger.debug(f"Skipping unsupported geometry type in KML export: {geom_type}")
        return 0
    for index, part in enumerate(parts, start=1):
        writer(container, part, properties, _part_name(name, index, len(parts)), style)
    return len(parts)


def export_kml(layers: Sequence[ExportLayer], document_name: str = "Geo Mapper Export") -> str:
    """Export layers to KML, one folder per layer styled like the map."""
    if not any(layer.features for layer in layers):
        raise ValueError("No features to export")

    kml = simplekml.Kml()
    kml.document.name = document_name

    placemarks = 0
    for layer in layers:
        if not layer.features:
            continue
        folder = kml.newfolder(name=layer.name)
        style = _build_style(layer.style)
        for position, feature in enumerate(layer.features, start=1):
            placemarks += _add_feature(folder, feature, style, f"{layer.name} #{position}")

    logger.info(
        "Exporting layers to KML",
        extra={"layers": len(layers), "placemarks": placemarks},
    )
    return kml.kml()
