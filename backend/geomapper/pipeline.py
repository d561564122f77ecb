"""Area-of-interest acquisition: drawn polygon -> bbox -> Overpass -> layers."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Sequence

from .categories import resolve_categories
from .classify import classify
from .errors import ExtentError, GeoMapperError, NoCategorySelected, QueryInProgress
from .geometry import BoundingBox, extent_of_geometry, geometry_kind, to_geographic_bbox
from .models import GeometryKind, QueryRunOutcome, QueryState
from .overpass import OverpassClient
from .session import MapSession
from .settings import ALLOW_ANTIMERIDIAN
from .utils.logging import get_logger

logger = get_logger(__name__)


def area_bbox(feature: Dict[str, Any], *, allow_antimeridian: bool = False) -> BoundingBox:
    """Geographic bbox of a drawn feature. Only polygons define a query area."""
    geometry = feature.get("geometry") or {}
    kind = geometry_kind(geometry)
    if kind is not GeometryKind.POLYGON:
        raise ExtentError(
            f"Draw a polygon to query an area; got a {kind.value}",
            [geometry.get("type")],
        )
    return to_geographic_bbox(extent_of_geometry(geometry), allow_antimeridian=allow_antimeridian)


def failure_outcome(error: GeoMapperError, bbox: Optional[BoundingBox] = None) -> QueryRunOutcome:
    return QueryRunOutcome(
        status="error",
        message=error.message,
        bbox=bbox.as_list() if bbox else None,
        error=error.to_dict(),
    )


class AreaQueryPipeline:
    """Runs one area query at a time and reports the outcome.

    A second ``run`` while one is in flight is rejected with
    ``QueryInProgress``. Selection problems (no or unknown categories) are
    reported before a run starts, so the drawn feature stays available for a
    retry. Once a run has started its drawn feature is always discarded,
    whatever the outcome.
    """

    def __init__(
        self,
        session: MapSession,
        client_factory: Callable[[], OverpassClient] = OverpassClient,
        allow_antimeridian: bool = ALLOW_ANTIMERIDIAN,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.client_factory = client_factory
        self.allow_antimeridian = allow_antimeridian
        self.clock = clock
        self.state = QueryState.IDLE

    async def run(
        self,
        drawn_feature_id: str,
        category_ids: Sequence[str],
        allow_antimeridian: Optional[bool] = None,
    ) -> QueryRunOutcome:
        if self.state is QueryState.RUNNING:
            raise QueryInProgress()

        try:
            if not category_ids:
                raise NoCategorySelected()
            categories = resolve_categories(category_ids)
        except GeoMapperError as exc:
            logger.info("Area query not started", extra={"reason": exc.kind})
            return failure_outcome(exc)

        allow = self.allow_antimeridian if allow_antimeridian is None else allow_antimeridian
        drawing_source = self.session.engine.drawing_source
        bbox: Optional[BoundingBox] = None

        self.state = QueryState.RUNNING
        started = time.perf_counter()
        try:
            bbox = area_bbox(drawing_source.get(drawn_feature_id), allow_antimeridian=allow)
            async with self.client_factory() as client:
                payload = await client.run_query([category.id for category in categories], bbox)

            result = classify(payload, categories, self.session.engine, self.clock)
            if not result.candidates:
                return QueryRunOutcome(
                    status="no_data",
                    message="No data found for the selected categories in this area",
                    bbox=bbox.as_list(),
                )

            added = self.session.add_layers([candidate.to_layer() for candidate in result.candidates])
            return QueryRunOutcome(
                status="success",
                message=f"{result.total_features} features added",
                featureCount=result.total_features,
                layers=[layer.info() for layer in added],
                bbox=bbox.as_list(),
            )
        except GeoMapperError as exc:
            logger.warning(
                "Area query failed",
                extra={"reason": exc.kind, "detail": exc.message},
            )
            return failure_outcome(exc, bbox)
        finally:
            drawing_source.remove(drawn_feature_id)
            self.state = QueryState.DONE
            logger.info(
                "Area query finished",
                extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
            )
