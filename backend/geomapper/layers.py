from __future__ import annotations

import dataclasses
import datetime as dt
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .engine import LayerHandle
from .errors import LayerNotFound
from .models import LayerInfo, LayerOrigin
from .utils.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class Layer:
    """Application-level layer: registry metadata around one engine handle.

    Only ``visible`` ever changes after creation, and it changes by replacing
    the entry, so a snapshot taken before a toggle is never mutated under a
    reader.
    """

    id: str
    name: str
    handle: LayerHandle
    visible: bool = True
    origin: LayerOrigin = LayerOrigin.UPLOAD
    category_id: Optional[str] = None
    created_at: dt.datetime = field(default_factory=_utcnow)

    def feature_count(self) -> int:
        return self.handle.feature_count() or 0

    def info(self) -> LayerInfo:
        return LayerInfo(
            id=self.id,
            name=self.name,
            visible=self.visible,
            origin=self.origin,
            categoryId=self.category_id,
            featureCount=self.feature_count(),
            createdAt=self.created_at.isoformat(),
        )


class LayerRegistry:
    """Ordered, id-unique collection of layers; the authoritative map state."""

    def __init__(self) -> None:
        self._layers: "OrderedDict[str, Layer]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._layers)

    def __contains__(self, layer_id: object) -> bool:
        return layer_id in self._layers

    def add(self, layer: Layer) -> Layer:
        if layer.id in self._layers:
            raise ValueError(f"Layer id '{layer.id}' is already registered")
        if any(existing.handle is layer.handle for existing in self._layers.values()):
            raise ValueError(f"Renderable for layer '{layer.id}' is already owned by another layer")
        self._layers[layer.id] = layer
        logger.info("Layer registered", extra={"layer_id": layer.id, "layer_name": layer.name})
        return layer

    def add_all(self, layers: Sequence[Layer]) -> List[Layer]:
        """Register a batch; nothing is added unless every layer is acceptable."""
        ids = set(self._layers)
        handles = [existing.handle for existing in self._layers.values()]
        for layer in layers:
            if layer.id in ids:
                raise ValueError(f"Layer id '{layer.id}' is already registered")
            if any(handle is layer.handle for handle in handles):
                raise ValueError(f"Renderable for layer '{layer.id}' is already owned by another layer")
            ids.add(layer.id)
            handles.append(layer.handle)
        return [self.add(layer) for layer in layers]

    def get(self, layer_id: str) -> Layer:
        try:
            return self._layers[layer_id]
        except KeyError:
            raise LayerNotFound(layer_id) from None

    def remove(self, layer_id: str) -> Layer:
        layer = self.get(layer_id)
        del self._layers[layer_id]
        logger.info("Layer removed", extra={"layer_id": layer_id})
        return layer

    def set_visible(self, layer_id: str, visible: bool) -> Layer:
        layer = self.get(layer_id)
        if layer.visible == visible:
            return layer
        updated = dataclasses.replace(layer, visible=visible)
        self._layers[layer_id] = updated
        return updated

    def toggle_visible(self, layer_id: str) -> Layer:
        return self.set_visible(layer_id, not self.get(layer_id).visible)

    def move(self, layer_id: str, index: int) -> Layer:
        """Re-order a layer; ``index`` is clamped to the registry bounds."""
        layer = self.get(layer_id)
        ordered = [entry for entry in self._layers.values() if entry.id != layer_id]
        index = max(0, min(index, len(ordered)))
        ordered.insert(index, layer)
        self._layers = OrderedDict((entry.id, entry) for entry in ordered)
        return layer

    def list(self) -> Tuple[Layer, ...]:
        return tuple(self._layers.values())

    def by_id(self) -> Dict[str, Layer]:
        return dict(self._layers)
