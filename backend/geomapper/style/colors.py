from __future__ import annotations

from typing import Optional

from ..models import StyleDescriptor

# Matches the stock OpenLayers vector style uploads were drawn with.
DEFAULT_UPLOAD_STYLE = StyleDescriptor(
    strokeColor="#3399CC",
    strokeWidth=1.25,
    fillColor="#FFFFFF",
    fillOpacity=0.4,
    pointRadius=5.0,
)


def _opacity_to_alpha(opacity: Optional[float]) -> int:
    if opacity is None:
        opacity = 1.0
    return max(0, min(255, int(round(opacity * 255))))


def hex_to_kml_color(hex_color: str, opacity: Optional[float] = 1.0) -> str:
    """``#RRGGBB`` plus opacity to KML's ``aabbggrr``."""
    color = hex_color.lstrip("#")
    if len(color) != 6:
        return f"{_opacity_to_alpha(opacity):02x}0000ff"
    red, green, blue = color[0:2], color[2:4], color[4:6]
    return f"{_opacity_to_alpha(opacity):02x}{blue.lower()}{green.lower()}{red.lower()}"
