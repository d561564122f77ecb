from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GeometryKind(str, Enum):
    POINT = "point"
    LINE = "line"
    POLYGON = "polygon"


class LayerOrigin(str, Enum):
    UPLOAD = "upload"
    OSM = "osm"


class QueryState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


class StyleDescriptor(BaseModel):
    """Fixed visual style attached to a renderable vector layer."""

    model_config = ConfigDict(frozen=True)

    strokeColor: str = "#3388FF"
    strokeWidth: float = 2.0
    fillColor: Optional[str] = None
    fillOpacity: float = 0.3
    pointRadius: float = 5.0

    @field_validator("strokeColor", "fillColor")
    @classmethod
    def validate_hex_color(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        hex_value = value.strip()
        if not hex_value.startswith("#") or len(hex_value) != 7:
            raise ValueError("Color values must be provided in #RRGGBB format")
        try:
            int(hex_value[1:], 16)
        except ValueError:
            raise ValueError("Color values must be valid hexadecimal digits") from None
        return hex_value.upper()

    @field_validator("fillOpacity")
    @classmethod
    def validate_fill_opacity(cls, value: float) -> float:
        if not (0.0 <= value <= 1.0):
            raise ValueError("fillOpacity must be between 0.0 and 1.0")
        return value

    @field_validator("strokeWidth", "pointRadius")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("stroke widths and radii must be non-negative")
        return value

    @property
    def effective_fill(self) -> str:
        return self.fillColor or self.strokeColor


class CategoryInfo(BaseModel):
    id: str
    label: str
    style: StyleDescriptor


class LayerInfo(BaseModel):
    id: str
    name: str
    visible: bool
    origin: LayerOrigin
    categoryId: Optional[str] = None
    featureCount: int
    createdAt: str


class EngineLayerInfo(BaseModel):
    key: str
    name: str
    kind: str
    reserved: bool
    role: Optional[str] = None
    visible: bool
    zIndex: int
    featureCount: Optional[int] = None


class VisibilityRequest(BaseModel):
    visible: bool


class MoveRequest(BaseModel):
    index: int = Field(..., ge=0)


class DrawRequest(BaseModel):
    """A feature finished by the interactive draw tool, in planar coordinates."""

    geometry: Dict[str, Any]
    properties: Dict[str, Any] = Field(default_factory=dict)


class DrawResponse(BaseModel):
    id: str
    kind: GeometryKind
    extent: List[float]


class QueryRequest(BaseModel):
    drawnFeatureId: str = Field(..., min_length=1)
    categories: List[str] = Field(default_factory=list)
    allowAntimeridian: Optional[bool] = None


class QueryRunOutcome(BaseModel):
    status: str  # success | no_data | error
    message: str
    featureCount: int = 0
    layers: List[LayerInfo] = Field(default_factory=list)
    bbox: Optional[List[float]] = None  # [south, west, north, east]
    error: Optional[Dict[str, Any]] = None


class QueryStateResponse(BaseModel):
    state: QueryState


class InspectRequest(BaseModel):
    x: float
    y: float
    tolerance: float = Field(0.0, ge=0.0)


class InspectResponse(BaseModel):
    attributes: Optional[Dict[str, Any]] = None


class ViewResponse(BaseModel):
    extent: List[float]
    zoom: Optional[float] = None


class ExportRequest(BaseModel):
    format: str = Field("geojson", pattern="^(geojson|kml|kmz|shp|zip)$")
    fileName: Optional[str] = None
    visibleOnly: bool = True


class ExportLayer(BaseModel):
    """One registry layer prepared for export, features in EPSG:4326."""

    id: str
    name: str
    style: StyleDescriptor = Field(default_factory=StyleDescriptor)
    features: List[Dict[str, Any]] = Field(default_factory=list)


class DrawModeRequest(BaseModel):
    kind: Optional[GeometryKind] = None


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[Any] = None
    request_id: Optional[str] = None


class StatsResponse(BaseModel):
    cache: Dict[str, Any]
    rateLimit: Dict[str, Any]


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: Optional[str] = None
