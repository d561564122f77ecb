"""Turn raw Overpass JSON into GeoJSON features and per-category layer candidates."""

from __future__ import annotations

import itertools
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from shapely.geometry import LineString, mapping
from shapely.ops import linemerge, polygonize, unary_union

from .categories import Category
from .engine import MapEngine, VectorLayerHandle
from .errors import ParseError
from .geometry import features_to_planar
from .layers import Layer
from .models import LayerOrigin
from .utils.logging import get_logger

logger = get_logger(__name__)

_AREA_KEYS = frozenset({
    "building", "landuse", "leisure", "amenity", "water", "place",
    "tourism", "shop", "boundary", "building:part",
})
_LINEAR_NATURAL = frozenset({"coastline", "tree_row", "cliff", "ridge", "arete"})
_AREA_WATERWAYS = frozenset({"riverbank", "dock", "boatyard"})
_POLYGON_RELATIONS = frozenset({"multipolygon", "boundary"})

_layer_sequence = itertools.count(1)

Coordinate = Tuple[float, float]


def _is_area(tags: Dict[str, Any]) -> bool:
    area = tags.get("area")
    if area == "no":
        return False
    if area == "yes":
        return True
    if any(key in tags for key in _AREA_KEYS):
        return True
    natural = tags.get("natural")
    if natural and natural not in _LINEAR_NATURAL:
        return True
    return tags.get("waterway") in _AREA_WATERWAYS


def _way_coordinates(way: Dict[str, Any], nodes: Dict[int, Coordinate]) -> Optional[List[Coordinate]]:
    inline = way.get("geometry")
    if isinstance(inline, list) and inline:
        try:
            return [(float(point["lon"]), float(point["lat"])) for point in inline]
        except (KeyError, TypeError, ValueError):
            return None
    refs = way.get("nodes") or []
    coords: List[Coordinate] = []
    for ref in refs:
        coordinate = nodes.get(ref)
        if coordinate is None:
            return None
        coords.append(coordinate)
    return coords or None


def _way_geometry(way: Dict[str, Any], nodes: Dict[int, Coordinate]) -> Optional[Dict[str, Any]]:
    coords = _way_coordinates(way, nodes)
    if not coords or len(coords) < 2:
        return None
    closed = len(coords) >= 4 and coords[0] == coords[-1]
    if closed and _is_area(way.get("tags") or {}):
        return {"type": "Polygon", "coordinates": [[list(c) for c in coords]]}
    return {"type": "LineString", "coordinates": [list(c) for c in coords]}


def _relation_geometry(
    relation: Dict[str, Any],
    ways: Dict[int, Dict[str, Any]],
    nodes: Dict[int, Coordinate],
) -> Optional[Dict[str, Any]]:
    outer_lines: List[LineString] = []
    inner_lines: List[LineString] = []
    for member in relation.get("members") or []:
        if member.get("type") != "way":
            continue
        way = ways.get(member.get("ref"))
        coords = _way_coordinates(member, nodes) if member.get("geometry") else None
        if coords is None and way is not None:
            coords = _way_coordinates(way, nodes)
        if not coords or len(coords) < 2:
            continue
        target = inner_lines if member.get("role") == "inner" else outer_lines
        target.append(LineString(coords))

    if not outer_lines:
        return None

    outers = list(polygonize(linemerge(outer_lines)))
    if not outers:
        return None
    shape_ = unary_union(outers)
    if inner_lines:
        inners = list(polygonize(linemerge(inner_lines)))
        if inners:
            shape_ = shape_.difference(unary_union(inners))
    if shape_.is_empty:
        return None
    return mapping(shape_)


def _feature(element: Dict[str, Any], geometry: Dict[str, Any]) -> Dict[str, Any]:
    tags = dict(element.get("tags") or {})
    return {
        "type": "Feature",
        "id": f"{element['type']}/{element['id']}",
        "geometry": geometry,
        "properties": {**tags, "osm_id": element["id"], "osm_type": element["type"]},
    }


def overpass_to_features(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Normalise an Overpass JSON payload into GeoJSON features (EPSG:4326).

    Only tagged elements become features; untagged nodes and ways are
    geometry building blocks. ``out body; >; out skel qt;`` repeats elements
    without tags, so the tagged copy always wins.
    """
    if not isinstance(payload, dict):
        raise ParseError("Query response is not a JSON object")
    elements = payload.get("elements")
    if not isinstance(elements, list):
        raise ParseError("Query response does not contain an element list")

    nodes: Dict[int, Coordinate] = {}
    ways: Dict[int, Dict[str, Any]] = {}
    tagged: "OrderedDict[Tuple[str, int], Dict[str, Any]]" = OrderedDict()

    for element in elements:
        if not isinstance(element, dict) or "id" not in element:
            continue
        element_type = element.get("type")
        if element_type == "node":
            try:
                nodes[element["id"]] = (float(element["lon"]), float(element["lat"]))
            except (KeyError, TypeError, ValueError):
                continue
        elif element_type == "way":
            existing = ways.get(element["id"])
            if existing is None or not existing.get("tags"):
                ways[element["id"]] = element
        elif element_type != "relation":
            continue
        if element.get("tags"):
            tagged[(element_type, element["id"])] = element

    features: List[Dict[str, Any]] = []
    dropped = 0
    for (element_type, element_id), element in tagged.items():
        geometry: Optional[Dict[str, Any]] = None
        if element_type == "node":
            coordinate = nodes.get(element_id)
            if coordinate is not None:
                geometry = {"type": "Point", "coordinates": list(coordinate)}
        elif element_type == "way":
            geometry = _way_geometry(element, nodes)
        elif (element.get("tags") or {}).get("type") in _POLYGON_RELATIONS:
            try:
                geometry = _relation_geometry(element, ways, nodes)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Failed to assemble relation {element_id}: {exc}")
        if geometry is None:
            dropped += 1
            continue
        features.append(_feature(element, geometry))

    if dropped:
        logger.debug("Dropped OSM elements without usable geometry", extra={"dropped": dropped})
    return features


@dataclass
class LayerCandidate:
    id: str
    name: str
    handle: VectorLayerHandle
    category_id: str
    feature_count: int

    def to_layer(self) -> Layer:
        return Layer(
            id=self.id,
            name=self.name,
            handle=self.handle,
            visible=True,
            origin=LayerOrigin.OSM,
            category_id=self.category_id,
        )


@dataclass
class ClassificationResult:
    candidates: List[LayerCandidate] = field(default_factory=list)
    total_features: int = 0


def make_layer_id(category_id: str, timestamp_ms: int) -> str:
    return f"osm-{category_id}-{timestamp_ms}-{next(_layer_sequence)}"


def split_by_category(
    features: Iterable[Dict[str, Any]], categories: Sequence[Category]
) -> "OrderedDict[str, List[Dict[str, Any]]]":
    """Bucket features under the first selected category that claims them.

    Features no predicate accepts are dropped, even if the combined query
    fetched them.
    """
    buckets: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict(
        (category.id, []) for category in categories
    )
    for feature in features:
        properties = feature.get("properties") or {}
        for category in categories:
            if category.matches(properties):
                buckets[category.id].append(feature)
                break
    return buckets


def classify(
    payload: Dict[str, Any],
    categories: Sequence[Category],
    engine: MapEngine,
    clock: Callable[[], float] = time.time,
) -> ClassificationResult:
    # A category listed twice still yields one layer.
    categories = list(OrderedDict((category.id, category) for category in categories).values())
    features = overpass_to_features(payload)
    buckets = split_by_category(features, categories)
    timestamp_ms = int(clock() * 1000)

    result = ClassificationResult()
    for category in categories:
        matched = buckets[category.id]
        if not matched:
            continue
        name = f"{category.label} ({len(matched)})"
        handle = engine.create_vector_layer(features_to_planar(matched), category.style, name)
        result.candidates.append(
            LayerCandidate(
                id=make_layer_id(category.id, timestamp_ms),
                name=name,
                handle=handle,
                category_id=category.id,
                feature_count=len(matched),
            )
        )
        result.total_features += len(matched)

    logger.info(
        "Classified query response",
        extra={
            "normalized_features": len(features),
            "matched_features": result.total_features,
            "layers": len(result.candidates),
        },
    )
    return result
