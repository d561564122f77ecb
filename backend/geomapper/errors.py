"""Failure taxonomy shared by the acquisition pipeline, registry and imports."""

from typing import Any, Dict, Optional, Sequence


class GeoMapperError(Exception):
    """Base class for every recoverable, user-reportable failure."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ExtentError(GeoMapperError):
    """Invalid, non-finite or degenerate geometry, or an inverted bounding box."""

    kind = "extent_error"

    def __init__(self, reason: str, values: Optional[Sequence[Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.values = list(values) if values is not None else []

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "values": [repr(v) for v in self.values]}


class NoCategorySelected(GeoMapperError):
    kind = "no_category_selected"

    def __init__(self, message: str = "Select at least one category before querying"):
        super().__init__(message)


class UnknownCategory(GeoMapperError):
    kind = "unknown_category"

    def __init__(self, category_id: str):
        super().__init__(f"Unknown category '{category_id}'")
        self.category_id = category_id


class ServiceError(GeoMapperError):
    """The remote query service answered with a non-success result."""

    kind = "service_error"

    def __init__(self, status_code: Optional[int], status_text: str):
        label = f"HTTP {status_code}" if status_code is not None else "transport failure"
        super().__init__(f"Query service error ({label}): {status_text}")
        self.status_code = status_code
        self.status_text = status_text

    def to_dict(self) -> Dict[str, Any]:
        return {**super().to_dict(), "status_code": self.status_code}


class ParseError(GeoMapperError):
    """Malformed service payload or unreadable/unsupported import file."""

    kind = "parse_error"


class LayerNotFound(GeoMapperError):
    kind = "not_found"

    def __init__(self, layer_id: str):
        super().__init__(f"Layer '{layer_id}' not found")
        self.layer_id = layer_id


class DrawnFeatureNotFound(GeoMapperError):
    kind = "not_found"

    def __init__(self, feature_id: str):
        super().__init__(f"Drawn feature '{feature_id}' not found")
        self.feature_id = feature_id


class QueryInProgress(GeoMapperError):
    kind = "query_in_progress"

    def __init__(self) -> None:
        super().__init__("A query is already running; wait for it to finish")
