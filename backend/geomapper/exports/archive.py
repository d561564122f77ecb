import io
import zipfile
from typing import Sequence

from ..models import ExportLayer
from ..settings import slugify
from ..utils.logging import get_logger
from .geojson import export_geojson
from .kml import export_kml
from .shp import export_shapefile_zip

logger = get_logger(__name__)


def export_archive(layers: Sequence[ExportLayer], base_name: str = "export") -> bytes:
    """Bundle the GeoJSON, KML and shapefile renditions of ``layers`` in one zip."""
    base_slug = slugify(base_name, fallback="export")
    geojson_bytes = export_geojson(layers)
    kml_text = export_kml(layers, base_name)
    shp_bytes = export_shapefile_zip(layers, base_slug)

    output = io.BytesIO()
    with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(f"{base_slug}.geojson", geojson_bytes)
        archive.writestr(f"{base_slug}.kml", kml_text.encode("utf-8"))
        archive.writestr(f"{base_slug}_shp.zip", shp_bytes)

    logger.info("Archive export completed", extra={"layers": len(layers)})
    return output.getvalue()
