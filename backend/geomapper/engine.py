"""Rendering-engine boundary.

The pipeline and the synchronisation logic only talk to a ``MapEngine``. The
server side keeps a ``HeadlessMapEngine``: an in-memory layer stack, view
state and scratch drawing source that a browser client mirrors.
"""

from __future__ import annotations

import math
import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from shapely.geometry import Point, shape

from .errors import DrawnFeatureNotFound, ExtentError
from .geometry import Extent, extent_of_geometry, geometry_kind, is_fittable_extent, lonlat_to_planar
from .models import EngineLayerInfo, GeometryKind, StyleDescriptor
from .utils.logging import get_logger

logger = get_logger(__name__)

BASE_ROLE = "base"
DRAWING_ROLE = "drawing"

# Web Mercator resolution (m/px) at zoom 0 for 256px tiles.
ZOOM0_RESOLUTION = 156543.03392804097
DEFAULT_CENTER = lonlat_to_planar(-60.0, -36.5)
DEFAULT_ZOOM = 7
DEFAULT_VIEWPORT = (1024, 768)


class LayerHandle:
    """Engine-native layer. Handles are compared by identity, never by value."""

    kind = "layer"

    def __init__(
        self,
        name: str,
        *,
        reserved: bool = False,
        role: Optional[str] = None,
        visible: bool = True,
        z_index: int = 0,
    ):
        self.key = uuid.uuid4().hex[:12]
        self.name = name
        self.reserved = reserved
        self.role = role
        self.visible = visible
        self.z_index = z_index

    def feature_count(self) -> Optional[int]:
        return None

    def info(self) -> EngineLayerInfo:
        return EngineLayerInfo(
            key=self.key,
            name=self.name,
            kind=self.kind,
            reserved=self.reserved,
            role=self.role,
            visible=self.visible,
            zIndex=self.z_index,
            featureCount=self.feature_count(),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} key={self.key} z={self.z_index}>"


class TileLayerHandle(LayerHandle):
    kind = "tile"

    def __init__(self, name: str, source: str = "osm", **kwargs: Any):
        super().__init__(name, **kwargs)
        self.source = source


class VectorLayerHandle(LayerHandle):
    """Vector source plus style. Features are stored in planar coordinates."""

    kind = "vector"

    def __init__(
        self,
        name: str,
        features: Iterable[Dict[str, Any]],
        style: StyleDescriptor,
        **kwargs: Any,
    ):
        super().__init__(name, **kwargs)
        self.features: Tuple[Dict[str, Any], ...] = tuple(features)
        self.style = style

    def feature_count(self) -> int:
        return len(self.features)


class DrawingSource:
    """Scratch source for transient drawn features, separate from the registry."""

    def __init__(self) -> None:
        self._features: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def add(self, geometry: Dict[str, Any], properties: Optional[Dict[str, Any]] = None) -> str:
        feature_id = f"draw-{uuid.uuid4().hex[:8]}"
        self._features[feature_id] = {
            "type": "Feature",
            "id": feature_id,
            "geometry": geometry,
            "properties": dict(properties or {}),
        }
        return feature_id

    def get(self, feature_id: str) -> Dict[str, Any]:
        try:
            return self._features[feature_id]
        except KeyError:
            raise DrawnFeatureNotFound(feature_id) from None

    def remove(self, feature_id: str) -> bool:
        return self._features.pop(feature_id, None) is not None

    def clear(self) -> None:
        self._features.clear()

    def features(self) -> List[Dict[str, Any]]:
        return list(self._features.values())

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def __len__(self) -> int:
        return len(self._features)


class MapEngine(Protocol):
    drawing_source: DrawingSource

    def create_vector_layer(
        self, features: Iterable[Dict[str, Any]], style: StyleDescriptor, name: str
    ) -> VectorLayerHandle: ...

    def layers(self) -> Tuple[LayerHandle, ...]: ...

    def add_layer(self, handle: LayerHandle) -> None: ...

    def remove_layer(self, handle: LayerHandle) -> None: ...

    def set_visible(self, handle: LayerHandle, visible: bool) -> None: ...

    def set_z_index(self, handle: LayerHandle, z_index: int) -> None: ...

    @property
    def view_extent(self) -> Extent: ...

    def set_view_extent(self, extent: Sequence[float]) -> None: ...

    def fit_extent(
        self, extent: Sequence[float], padding: Sequence[int] = ..., max_zoom: int = ...
    ) -> Extent: ...

    def hit_test(
        self, coordinate: Sequence[float], tolerance: float = ...
    ) -> Optional[Tuple[LayerHandle, Dict[str, Any]]]: ...

    def begin_draw(self, kind: GeometryKind) -> None: ...

    def end_draw(self) -> None: ...


class HeadlessMapEngine:
    """In-memory ``MapEngine`` with a reserved OSM base layer and drawing layer."""

    def __init__(
        self,
        center: Tuple[float, float] = DEFAULT_CENTER,
        zoom: float = DEFAULT_ZOOM,
        viewport: Tuple[int, int] = DEFAULT_VIEWPORT,
    ):
        self.base_layer = TileLayerHandle("OpenStreetMap", reserved=True, role=BASE_ROLE, z_index=0)
        self.drawing_layer = VectorLayerHandle(
            "Drawing",
            (),
            StyleDescriptor(strokeColor="#FFCC33", strokeWidth=2.0, fillColor="#FFFFFF", fillOpacity=0.2),
            reserved=True,
            role=DRAWING_ROLE,
            z_index=1,
        )
        self.drawing_source = DrawingSource()
        self._stack: List[LayerHandle] = [self.base_layer, self.drawing_layer]
        self.center = center
        self.zoom = float(zoom)
        self.viewport = viewport
        self.draw_mode: Optional[GeometryKind] = None

    # -- layer stack -----------------------------------------------------

    def create_vector_layer(
        self, features: Iterable[Dict[str, Any]], style: StyleDescriptor, name: str
    ) -> VectorLayerHandle:
        return VectorLayerHandle(name, features, style)

    def layers(self) -> Tuple[LayerHandle, ...]:
        """Current stack in render order (z-index, then insertion order)."""
        order = {id(handle): position for position, handle in enumerate(self._stack)}
        return tuple(sorted(self._stack, key=lambda h: (h.z_index, order[id(h)])))

    def _contains(self, handle: LayerHandle) -> bool:
        return any(existing is handle for existing in self._stack)

    def add_layer(self, handle: LayerHandle) -> None:
        if self._contains(handle):
            raise ValueError(f"Layer {handle.key} is already on the map")
        self._stack.append(handle)

    def remove_layer(self, handle: LayerHandle) -> None:
        if handle.reserved:
            raise ValueError(f"Reserved layer '{handle.name}' cannot be removed")
        for position, existing in enumerate(self._stack):
            if existing is handle:
                del self._stack[position]
                return
        raise ValueError(f"Layer {handle.key} is not on the map")

    def set_visible(self, handle: LayerHandle, visible: bool) -> None:
        handle.visible = bool(visible)

    def set_z_index(self, handle: LayerHandle, z_index: int) -> None:
        handle.z_index = int(z_index)

    # -- view ------------------------------------------------------------

    @property
    def resolution(self) -> float:
        return ZOOM0_RESOLUTION / (2 ** self.zoom)

    @property
    def view_extent(self) -> Extent:
        half_w = self.viewport[0] * self.resolution / 2
        half_h = self.viewport[1] * self.resolution / 2
        cx, cy = self.center
        return (cx - half_w, cy - half_h, cx + half_w, cy + half_h)

    def set_view_extent(self, extent: Sequence[float]) -> None:
        self.fit_extent(extent, padding=(0, 0, 0, 0), max_zoom=28)

    def fit_extent(
        self,
        extent: Sequence[float],
        padding: Sequence[int] = (50, 50, 50, 50),
        max_zoom: int = 18,
    ) -> Extent:
        """Centre on ``extent`` at the deepest whole zoom level that still shows it."""
        if not is_fittable_extent(extent):
            raise ExtentError("Extent cannot be fitted into the view", list(extent or []))
        top, right, bottom, left = padding
        usable_w = max(1, self.viewport[0] - left - right)
        usable_h = max(1, self.viewport[1] - top - bottom)
        width = extent[2] - extent[0]
        height = extent[3] - extent[1]
        resolution = max(width / usable_w, height / usable_h)
        zoom = math.floor(math.log2(ZOOM0_RESOLUTION / resolution))
        self.zoom = float(max(0, min(zoom, max_zoom)))
        self.center = ((extent[0] + extent[2]) / 2, (extent[1] + extent[3]) / 2)
        return self.view_extent

    # -- interaction -----------------------------------------------------

    def hit_test(
        self, coordinate: Sequence[float], tolerance: float = 0.0
    ) -> Optional[Tuple[LayerHandle, Dict[str, Any]]]:
        """Topmost visible managed feature at a map coordinate."""
        point = Point(coordinate[0], coordinate[1])
        for handle in reversed(self.layers()):
            if handle.reserved or not handle.visible or not isinstance(handle, VectorLayerHandle):
                continue
            for feature in handle.features:
                geometry = feature.get("geometry")
                if not geometry:
                    continue
                try:
                    if shape(geometry).distance(point) <= tolerance:
                        return handle, feature
                except Exception as exc:  # noqa: BLE001
                    logger.debug(f"Skipping unreadable geometry during hit test: {exc}")
        return None

    def begin_draw(self, kind: GeometryKind) -> None:
        self.draw_mode = GeometryKind(kind)

    def end_draw(self) -> None:
        self.draw_mode = None

    def commit_drawing(self, geometry: Dict[str, Any], properties: Optional[Dict[str, Any]] = None) -> str:
        """Store a finished sketch in the drawing source and return its id."""
        kind = geometry_kind(geometry)
        if self.draw_mode is not None and kind != self.draw_mode:
            raise ExtentError(
                f"Drawn {kind.value} does not match the active {self.draw_mode.value} tool",
                [geometry.get("type")],
            )
        extent_of_geometry(geometry)
        return self.drawing_source.add(geometry, properties)
