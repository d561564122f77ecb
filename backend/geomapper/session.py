from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from .engine import MapEngine, VectorLayerHandle
from .errors import ExtentError
from .geometry import Extent, features_extent, features_to_geographic, is_fittable_extent
from .layers import Layer, LayerRegistry
from .models import ExportLayer
from .sync import Command, reconcile
from .utils.logging import get_logger

logger = get_logger(__name__)

FIT_PADDING = (50, 50, 50, 50)
FIT_MAX_ZOOM = 18


class MapSession:
    """Registry plus engine. Every registry mutation is followed by one reconcile.

    Callers never see a registry state the engine has not been brought in line
    with, and batch additions reconcile once after the whole batch.
    """

    def __init__(self, engine: MapEngine, registry: Optional[LayerRegistry] = None):
        self.engine = engine
        self.registry = registry or LayerRegistry()
        self.last_commands: List[Command] = []

    def _sync(self) -> List[Command]:
        self.last_commands = reconcile(self.registry.list(), self.engine)
        return self.last_commands

    def add_layer(self, layer: Layer) -> Layer:
        return self.add_layers([layer])[0]

    def add_layers(self, layers: Sequence[Layer]) -> List[Layer]:
        added = self.registry.add_all(layers)
        if added:
            self._sync()
        return added

    def remove_layer(self, layer_id: str) -> Layer:
        layer = self.registry.remove(layer_id)
        self._sync()
        return layer

    def set_visible(self, layer_id: str, visible: bool) -> Layer:
        layer = self.registry.set_visible(layer_id, visible)
        self._sync()
        return layer

    def toggle_visible(self, layer_id: str) -> Layer:
        layer = self.registry.toggle_visible(layer_id)
        self._sync()
        return layer

    def move_layer(self, layer_id: str, index: int) -> Layer:
        layer = self.registry.move(layer_id, index)
        self._sync()
        return layer

    def layers(self) -> Tuple[Layer, ...]:
        return self.registry.list()

    def layer_extent(self, layer_id: str) -> Optional[Extent]:
        layer = self.registry.get(layer_id)
        handle = layer.handle
        if not isinstance(handle, VectorLayerHandle):
            return None
        return features_extent(handle.features)

    def zoom_to_layer(self, layer_id: str) -> Extent:
        layer = self.registry.get(layer_id)
        extent = self.layer_extent(layer_id)
        if not is_fittable_extent(extent):
            raise ExtentError(
                f"Layer '{layer.name}' may be empty or has no valid extent",
                list(extent or []),
            )
        view = self.engine.fit_extent(extent, padding=FIT_PADDING, max_zoom=FIT_MAX_ZOOM)
        logger.info("Zoomed to layer", extra={"layer_id": layer_id})
        return view

    def inspect(self, coordinate: Sequence[float], tolerance: float = 0.0) -> Optional[Dict[str, Any]]:
        """Attributes of the topmost feature at ``coordinate``, geometry excluded."""
        hit = self.engine.hit_test(coordinate, tolerance)
        if hit is None:
            return None
        _, feature = hit
        return {
            key: value
            for key, value in (feature.get("properties") or {}).items()
            if key != "geometry"
        }

    def export_features(self, visible_only: bool = True) -> List[ExportLayer]:
        """Layers with features, in registry order, reprojected to EPSG:4326."""
        exported: List[ExportLayer] = []
        for layer in self.registry.list():
            if visible_only and not layer.visible:
                continue
            handle = layer.handle
            if not isinstance(handle, VectorLayerHandle) or not handle.features:
                continue
            exported.append(
                ExportLayer(
                    id=layer.id,
                    name=layer.name,
                    style=handle.style,
                    features=features_to_geographic(handle.features),
                )
            )
        return exported
