from __future__ import annotations

import io
import zipfile
from typing import Any, Dict, Iterable, List

from fastkml import KML
from shapely.geometry import mapping, shape

from ..errors import ParseError
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _children(container: Any) -> List[Any]:
    children = getattr(container, "features", None)
    if callable(children):
        children = children()
    return list(children or [])


def _extended_data(placemark: Any) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    extended = getattr(placemark, "extended_data", None)
    for element in getattr(extended, "elements", None) or []:
        name = getattr(element, "name", None)
        if name:
            values[name] = getattr(element, "value", None)
        for simple in getattr(element, "data", None) or []:
            simple_name = getattr(simple, "name", None)
            if simple_name:
                values[simple_name] = getattr(simple, "value", None)
    return values


def _walk(container: Any) -> Iterable[Any]:
    for child in _children(container):
        if getattr(child, "geometry", None) is not None:
            yield child
        yield from _walk(child)


def parse_kml(content: bytes) -> List[Dict[str, Any]]:
    try:
        document = KML.from_string(content, strict=False)
    except Exception as exc:  # noqa: BLE001
        raise ParseError(f"Unable to parse KML: {exc}") from exc

    features: List[Dict[str, Any]] = []
    for placemark in _walk(document):
        try:
            geom = shape(placemark.geometry)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Skipping KML placemark with unreadable geometry: {exc}")
            continue
        if geom.is_empty:
            continue
        properties = _extended_data(placemark)
        for attribute in ("name", "description"):
            value = getattr(placemark, attribute, None)
            if value:
                properties.setdefault(attribute, value)
        features.append({"type": "Feature", "geometry": mapping(geom), "properties": properties})
    return features


def parse_kmz(content: bytes) -> List[Dict[str, Any]]:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            kml_names = [name for name in archive.namelist() if name.lower().endswith(".kml")]
            if not kml_names:
                raise ParseError("KMZ did not contain a KML file")
            return parse_kml(archive.read(kml_names[0]))
    except zipfile.BadZipFile as exc:
        raise ParseError(f"Unable to open KMZ: {exc}") from exc
