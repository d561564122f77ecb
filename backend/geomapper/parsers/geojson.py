from __future__ import annotations

from typing import Any, Dict, List

import orjson
from shapely.geometry import mapping, shape

from ..errors import ParseError
from ..utils.logging import get_logger

logger = get_logger(__name__)

_GEOMETRY_TYPES = {
    "Point", "MultiPoint", "LineString", "MultiLineString",
    "Polygon", "MultiPolygon", "GeometryCollection",
}


def _as_features(document: Any) -> List[Dict[str, Any]]:
    if not isinstance(document, dict):
        raise ParseError("GeoJSON document must be a JSON object")
    doc_type = document.get("type")
    if doc_type == "FeatureCollection":
        features = document.get("features")
        if not isinstance(features, list):
            raise ParseError("FeatureCollection has no feature list")
        return [f for f in features if isinstance(f, dict)]
    if doc_type == "Feature":
        return [document]
    if doc_type in _GEOMETRY_TYPES:
        return [{"type": "Feature", "geometry": document, "properties": {}}]
    raise ParseError(f"Unsupported GeoJSON type '{doc_type}'")


def parse_geojson(content: bytes) -> List[Dict[str, Any]]:
    try:
        document = orjson.loads(content)
    except orjson.JSONDecodeError as exc:
        raise ParseError(f"Invalid GeoJSON: {exc}") from exc

    features: List[Dict[str, Any]] = []
    for index, feature in enumerate(_as_features(document)):
        geometry = feature.get("geometry")
        if not geometry:
            continue
        try:
            geom = shape(geometry)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Skipping unreadable GeoJSON geometry #{index}: {exc}")
            continue
        if geom.is_empty:
            continue
        features.append({
            "type": "Feature",
            "geometry": mapping(geom),
            "properties": dict(feature.get("properties") or {}),
        })
    return features
