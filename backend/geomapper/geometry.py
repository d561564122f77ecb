"""Extent validation and reprojection between the planar map system and degrees."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pyproj import Transformer
from shapely import get_coordinates
from shapely.geometry import mapping, shape
from shapely.ops import transform as shp_transform

from .errors import ExtentError
from .models import GeometryKind

PLANAR_CRS = 3857
GEOGRAPHIC_CRS = 4326
BBOX_PRECISION = 6

# Half the circumference covered by EPSG:3857 along the x axis.
WORLD_HALF_WIDTH = 20037508.342789244

_TO_GEOGRAPHIC = Transformer.from_crs(PLANAR_CRS, GEOGRAPHIC_CRS, always_xy=True)
_TO_PLANAR = Transformer.from_crs(GEOGRAPHIC_CRS, PLANAR_CRS, always_xy=True)

Extent = Tuple[float, float, float, float]


@dataclass(frozen=True)
class BoundingBox:
    """Geographic rectangle in degrees, ordered the way Overpass expects it."""

    south: float
    west: float
    north: float
    east: float

    def __post_init__(self) -> None:
        values = (self.south, self.west, self.north, self.east)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise ExtentError("Bounding box contains non-finite coordinates", values)
        if self.north < self.south:
            raise ExtentError("Bounding box north edge lies below its south edge", values)

    @property
    def crosses_antimeridian(self) -> bool:
        return self.east < self.west

    def as_list(self) -> List[float]:
        return [self.south, self.west, self.north, self.east]

    def to_query_string(self) -> str:
        p = BBOX_PRECISION
        return f"{self.south:.{p}f},{self.west:.{p}f},{self.north:.{p}f},{self.east:.{p}f}"

    def split(self) -> Tuple["BoundingBox", ...]:
        """Return the box itself, or its two halves either side of ±180°."""
        if not self.crosses_antimeridian:
            return (self,)
        return (
            BoundingBox(self.south, self.west, self.north, 180.0),
            BoundingBox(self.south, -180.0, self.north, self.east),
        )


def _coerce_extent(extent: Any) -> Extent:
    if not isinstance(extent, (list, tuple)):
        raise ExtentError("Extent must be a sequence of four numbers", [extent])
    try:
        values = [float(v) for v in extent]
    except (TypeError, ValueError):
        raise ExtentError("Extent must contain four numeric values", list(extent)) from None
    if len(values) != 4:
        raise ExtentError("Extent must contain exactly four values", values)
    return values[0], values[1], values[2], values[3]


def _wrap_longitude(lon: float) -> float:
    if -180.0 <= lon <= 180.0:
        return lon
    return ((lon + 180.0) % 360.0) - 180.0


def to_geographic_bbox(extent: Sequence[float], *, allow_antimeridian: bool = False) -> BoundingBox:
    """Validate a planar extent and convert it to a rounded geographic bounding box.

    Raises ``ExtentError`` carrying the offending values whenever the input or
    any transformed corner is unusable; nothing partially valid is returned.
    """
    min_x, min_y, max_x, max_y = _coerce_extent(extent)
    raw = [min_x, min_y, max_x, max_y]

    if not all(math.isfinite(v) for v in raw):
        raise ExtentError("Extent contains non-finite coordinates", raw)
    if max_x <= min_x or max_y <= min_y:
        raise ExtentError("Extent has zero width or height", raw)
    if max_x - min_x >= 2 * WORLD_HALF_WIDTH:
        raise ExtentError("Extent is wider than the whole world", raw)

    corners = [(min_x, min_y), (min_x, max_y), (max_x, min_y), (max_x, max_y)]
    transformed = [_TO_GEOGRAPHIC.transform(x, y) for x, y in corners]
    flat = [value for corner in transformed for value in corner]
    if not all(math.isfinite(v) for v in flat):
        raise ExtentError("Extent could not be transformed to geographic coordinates", flat)

    (lon_ll, lat_ll), (lon_ul, lat_ul), (lon_lr, lat_lr), (lon_ur, lat_ur) = transformed

    south = round(min(lat_ll, lat_lr), BBOX_PRECISION)
    north = round(max(lat_ul, lat_ur), BBOX_PRECISION)
    west = round(_wrap_longitude(min(lon_ll, lon_ul)), BBOX_PRECISION)
    east = round(_wrap_longitude(max(lon_lr, lon_ur)), BBOX_PRECISION)

    if north < south:
        raise ExtentError("Transformed extent has north below south", [south, west, north, east])
    if east < west and not allow_antimeridian:
        raise ExtentError(
            "Transformed extent crosses the antimeridian (east below west)",
            [south, west, north, east],
        )

    return BoundingBox(south=south, west=west, north=north, east=east)


def shapely_transform(geom, transformer: Transformer):
    return shp_transform(lambda x, y, z=None: transformer.transform(x, y), geom)


def _reproject(features: Iterable[Dict[str, Any]], transformer: Transformer) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for feature in features:
        geometry = feature.get("geometry")
        projected = dict(feature)
        if geometry:
            projected["geometry"] = mapping(shapely_transform(shape(geometry), transformer))
        projected["properties"] = dict(feature.get("properties") or {})
        out.append(projected)
    return out


def features_to_planar(features: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return _reproject(features, _TO_PLANAR)


def features_to_geographic(features: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return _reproject(features, _TO_GEOGRAPHIC)


def geometry_kind(geometry: Dict[str, Any]) -> GeometryKind:
    geom_type = (geometry or {}).get("type", "")
    if geom_type in ("Point", "MultiPoint"):
        return GeometryKind.POINT
    if geom_type in ("LineString", "MultiLineString"):
        return GeometryKind.LINE
    if geom_type in ("Polygon", "MultiPolygon"):
        return GeometryKind.POLYGON
    raise ExtentError(f"Unsupported geometry type '{geom_type}'", [geom_type])


def extent_of_geometry(geometry: Dict[str, Any]) -> Extent:
    try:
        geom = shape(geometry)
    except Exception as exc:
        raise ExtentError(f"Geometry could not be read: {exc}", [geometry]) from exc
    if geom.is_empty:
        raise ExtentError("Geometry is empty", [])
    # GEOS bounds skip NaN vertices, so check every coordinate.
    coords = get_coordinates(geom).ravel().tolist()
    if not all(math.isfinite(v) for v in coords):
        raise ExtentError("Geometry contains non-finite coordinates", coords)
    return tuple(float(v) for v in geom.bounds)  # type: ignore[return-value]


def features_extent(features: Iterable[Dict[str, Any]]) -> Optional[Extent]:
    """Union of feature extents, or None when no feature has a usable geometry."""
    bounds = []
    for feature in features:
        geometry = feature.get("geometry")
        if not geometry:
            continue
        try:
            bounds.append(extent_of_geometry(geometry))
        except ExtentError:
            continue
    if not bounds:
        return None
    return (
        min(b[0] for b in bounds),
        min(b[1] for b in bounds),
        max(b[2] for b in bounds),
        max(b[3] for b in bounds),
    )


def is_fittable_extent(extent: Optional[Sequence[float]]) -> bool:
    if not extent or len(extent) != 4:
        return False
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in extent):
        return False
    return extent[2] - extent[0] > 0 and extent[3] - extent[1] > 0


def lonlat_to_planar(lon: float, lat: float) -> Tuple[float, float]:
    return _TO_PLANAR.transform(lon, lat)
