from typing import Any, Dict, List, Sequence

import orjson

from ..models import ExportLayer
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _export_feature(layer: ExportLayer, feature: Dict[str, Any]) -> Dict[str, Any]:
    properties = dict(feature.get("properties") or {})
    properties.setdefault("layer_id", layer.id)
    properties.setdefault("layer_name", layer.name)
    exported: Dict[str, Any] = {
        "type": "Feature",
        "geometry": feature.get("geometry"),
        "properties": properties,
    }
    if feature.get("id") is not None:
        exported["id"] = feature["id"]
    return exported


def build_feature_collection(layers: Sequence[ExportLayer]) -> Dict[str, Any]:
    features: List[Dict[str, Any]] = [
        _export_feature(layer, feature)
        for layer in layers
        for feature in layer.features
        if feature.get("geometry")
    ]
    if not features:
        raise ValueError("No features to export")
    return {"type": "FeatureCollection", "features": features}


def export_geojson(layers: Sequence[ExportLayer]) -> bytes:
    """Flatten every layer into one FeatureCollection tagged with its source layer."""
    collection = build_feature_collection(layers)
    logger.info(f"Exporting {len(collection['features'])} features to GeoJSON")
    return orjson.dumps(collection)
