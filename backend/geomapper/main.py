import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

import uvicorn
from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .categories import list_categories
from .engine import HeadlessMapEngine
from .errors import (
    DrawnFeatureNotFound,
    ExtentError,
    GeoMapperError,
    LayerNotFound,
    NoCategorySelected,
    ParseError,
    QueryInProgress,
    ServiceError,
    UnknownCategory,
)
from .exports.archive import export_archive
from .exports.geojson import export_geojson
from .exports.kml import export_kml
from .exports.kmz import export_kmz
from .exports.shp import export_shapefile_zip
from .geometry import extent_of_geometry, geometry_kind
from .models import (
    CategoryInfo,
    DrawModeRequest,
    DrawRequest,
    DrawResponse,
    EngineLayerInfo,
    ErrorResponse,
    ExportRequest,
    HealthResponse,
    InspectRequest,
    InspectResponse,
    LayerInfo,
    MoveRequest,
    QueryRequest,
    QueryRunOutcome,
    QueryStateResponse,
    StatsResponse,
    ViewResponse,
    VisibilityRequest,
)
from .parsers import build_upload_layer, parse_upload
from .pipeline import AreaQueryPipeline
from .session import MapSession
from .settings import (
    FRONTEND_ORIGIN,
    LOG_LEVEL,
    MAX_UPLOAD_BYTES,
    build_content_disposition,
    cache,
    rate_limiter,
    sanitize_export_filename,
)
from .utils.logging import get_logger, setup_logging

VERSION = "1.0.0"

# Setup logging
setup_logging(LOG_LEVEL)
logger = get_logger(__name__)

ERROR_STATUS: Dict[str, int] = {
    ExtentError.kind: 422,
    NoCategorySelected.kind: 400,
    UnknownCategory.kind: 400,
    ServiceError.kind: 502,
    ParseError.kind: 422,
    LayerNotFound.kind: 404,
    DrawnFeatureNotFound.kind: 404,
    QueryInProgress.kind: 409,
}

app = FastAPI(
    title="Geo Mapper API",
    description="Map layer registry, OpenStreetMap area queries and file import/export",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS configuration
origins = [origin.strip() for origin in FRONTEND_ORIGIN.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def reset_map_state(target: FastAPI) -> MapSession:
    """Give ``target`` a fresh map session and query pipeline."""
    session = MapSession(HeadlessMapEngine())
    target.state.session = session
    target.state.pipeline = AreaQueryPipeline(session)
    return session


reset_map_state(app)


def get_session(request: Request) -> MapSession:
    return request.app.state.session


def get_pipeline(request: Request) -> AreaQueryPipeline:
    return request.app.state.pipeline


def _enforce_rate_limit(req: Request) -> None:
    client_ip = req.client.host if req.client else "unknown"
    if not rate_limiter.is_allowed(client_ip):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log requests with timing and add request ID."""
    request_id = str(uuid.uuid4())[:8]
    start_time = datetime.now(timezone.utc)
    request.state.request_id = request_id

    logger.info(
        "Request started",
        extra={
            "request_id": request_id,
            "method": request.method,
            "url": str(request.url),
            "client_ip": request.client.host if request.client else None,
        },
    )

    try:
        response = await call_next(request)
    except Exception as e:
        duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        logger.error(
            "Request failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "url": str(request.url),
                "duration_ms": round(duration, 2),
                "error": str(e),
            },
            exc_info=True,
        )
        raise

    duration = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    logger.info(
        "Request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "url": str(request.url),
            "status_code": response.status_code,
            "duration_ms": round(duration, 2),
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


def _error_response(request: Request, status_code: int, error: Any, detail: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            detail=detail,
            request_id=getattr(request.state, "request_id", "unknown"),
        ).model_dump(),
    )


@app.exception_handler(GeoMapperError)
async def domain_exception_handler(request: Request, exc: GeoMapperError):
    """Map domain failures onto their HTTP status with the structured error body."""
    status_code = ERROR_STATUS.get(exc.kind, 400)
    logger.info("Request rejected", extra={"reason": exc.kind, "status_code": status_code})
    return _error_response(request, status_code, exc.message, exc.to_dict())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with structured error response."""
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions with structured error response."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(
        request,
        500,
        "Internal server error",
        str(exc) if LOG_LEVEL == "DEBUG" else None,
    )


@app.get("/healthz", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
    )


@app.get("/api/stats", response_model=StatsResponse)
async def stats_endpoint(request: Request):
    """Payload cache counters and the calling client's rate limit window."""
    client_ip = request.client.host if request.client else "unknown"
    return StatsResponse(cache=cache.get_stats(), rateLimit=rate_limiter.get_stats(client_ip))


@app.get("/api/categories", response_model=List[CategoryInfo])
async def categories_endpoint() -> List[CategoryInfo]:
    return list_categories()


# -- layers ---------------------------------------------------------------


@app.get("/api/layers", response_model=List[LayerInfo])
async def list_layers(session: MapSession = Depends(get_session)):
    return [layer.info() for layer in session.layers()]


@app.get("/api/engine/layers", response_model=List[EngineLayerInfo])
async def list_engine_layers(session: MapSession = Depends(get_session)):
    """Rendered stack, reserved layers included, in z order."""
    return [handle.info() for handle in session.engine.layers()]


@app.post("/api/layers/import", response_model=LayerInfo)
async def import_layer(
    req: Request,
    file: UploadFile = File(...),
    session: MapSession = Depends(get_session),
):
    """Parse an uploaded GeoJSON, KML, KMZ or zipped shapefile into a new layer."""
    _enforce_rate_limit(req)

    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")

    filename = file.filename or "upload"
    try:
        features = parse_upload(filename, content)
    except ParseError as exc:
        logger.warning(f"Import failed for {filename}: {exc.message}")
        raise HTTPException(status_code=400, detail=exc.message) from exc

    layer = session.add_layer(build_upload_layer(filename, features, session.engine))
    return layer.info()


@app.delete("/api/layers/{layer_id}", response_model=LayerInfo)
async def remove_layer(layer_id: str, session: MapSession = Depends(get_session)):
    return session.remove_layer(layer_id).info()


@app.put("/api/layers/{layer_id}/visibility", response_model=LayerInfo)
async def set_layer_visibility(
    layer_id: str,
    request: VisibilityRequest,
    session: MapSession = Depends(get_session),
):
    return session.set_visible(layer_id, request.visible).info()


@app.post("/api/layers/{layer_id}/toggle", response_model=LayerInfo)
async def toggle_layer(layer_id: str, session: MapSession = Depends(get_session)):
    return session.toggle_visible(layer_id).info()


@app.post("/api/layers/{layer_id}/move", response_model=List[LayerInfo])
async def move_layer(
    layer_id: str,
    request: MoveRequest,
    session: MapSession = Depends(get_session),
):
    session.move_layer(layer_id, request.index)
    return [layer.info() for layer in session.layers()]


@app.post("/api/layers/{layer_id}/zoom", response_model=ViewResponse)
async def zoom_to_layer(layer_id: str, session: MapSession = Depends(get_session)):
    extent = session.zoom_to_layer(layer_id)
    return ViewResponse(extent=list(extent), zoom=getattr(session.engine, "zoom", None))


# -- drawing and area queries --------------------------------------------


@app.put("/api/draw/mode")
async def set_draw_mode(request: DrawModeRequest, session: MapSession = Depends(get_session)):
    if request.kind is None:
        session.engine.end_draw()
    else:
        session.engine.begin_draw(request.kind)
    return {"mode": request.kind}


@app.post("/api/draw", response_model=DrawResponse)
async def add_drawn_feature(request: DrawRequest, session: MapSession = Depends(get_session)):
    """Store a sketch (map coordinates) in the scratch drawing source."""
    extent = extent_of_geometry(request.geometry)
    feature_id = session.engine.commit_drawing(request.geometry, request.properties)
    return DrawResponse(id=feature_id, kind=geometry_kind(request.geometry), extent=list(extent))


@app.delete("/api/draw/{feature_id}")
async def discard_drawn_feature(feature_id: str, session: MapSession = Depends(get_session)):
    if not session.engine.drawing_source.remove(feature_id):
        raise DrawnFeatureNotFound(feature_id)
    return {"removed": feature_id}


@app.post("/api/query", response_model=QueryRunOutcome)
async def run_area_query(
    request: QueryRequest,
    req: Request,
    pipeline: AreaQueryPipeline = Depends(get_pipeline),
):
    """Query OpenStreetMap inside a drawn polygon and add one layer per category."""
    _enforce_rate_limit(req)

    outcome = await pipeline.run(
        request.drawnFeatureId,
        request.categories,
        allow_antimeridian=request.allowAntimeridian,
    )
    if outcome.status == "error":
        kind = (outcome.error or {}).get("kind", "")
        return JSONResponse(
            status_code=ERROR_STATUS.get(kind, 400),
            content=outcome.model_dump(mode="json"),
        )
    return outcome


@app.get("/api/query/state", response_model=QueryStateResponse)
async def query_state(pipeline: AreaQueryPipeline = Depends(get_pipeline)):
    return QueryStateResponse(state=pipeline.state)


@app.post("/api/inspect", response_model=InspectResponse)
async def inspect_feature(request: InspectRequest, session: MapSession = Depends(get_session)):
    return InspectResponse(attributes=session.inspect((request.x, request.y), request.tolerance))


# -- export ---------------------------------------------------------------

ExportWriter = Tuple[str, str, Callable[..., Any]]

EXPORT_FORMATS: Dict[str, ExportWriter] = {
    "geojson": (".geojson", "application/geo+json", lambda layers, name: export_geojson(layers)),
    "kml": (".kml", "application/vnd.google-earth.kml+xml", export_kml),
    "kmz": (".kmz", "application/vnd.google-earth.kmz", export_kmz),
    "shp": (".zip", "application/zip", export_shapefile_zip),
    "zip": (".zip", "application/zip", export_archive),
}


def _default_export_name(fmt: str, extension: str) -> str:
    suffix = "-shp" if fmt == "shp" else ""
    return f"geo-mapper-{datetime.now().strftime('%Y%m%d')}{suffix}{extension}"


@app.post("/api/export")
async def export_layers(
    request: ExportRequest,
    req: Request,
    session: MapSession = Depends(get_session),
):
    """Export registry layers as GeoJSON, KML, KMZ, zipped shapefile or a bundle of all."""
    _enforce_rate_limit(req)

    layers = session.export_features(visible_only=request.visibleOnly)
    if not layers:
        raise HTTPException(status_code=400, detail="No features to export")

    extension, media_type, writer = EXPORT_FORMATS[request.format]
    filename = sanitize_export_filename(request.fileName, extension)
    if not filename:
        filename = _default_export_name(request.format, extension)
    base_name = filename[: -len(extension)]

    try:
        content = writer(layers, base_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.error(f"{request.format.upper()} export failed: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e

    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": build_content_disposition(filename)},
    )


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
