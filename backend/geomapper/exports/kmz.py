import io
import zipfile
from typing import Sequence

from ..models import ExportLayer
from ..utils.logging import get_logger
from .kml import export_kml

logger = get_logger(__name__)


def export_kmz(layers: Sequence[ExportLayer], document_name: str = "Geo Mapper Export") -> bytes:
    """Export layers to KMZ (zipped ``doc.kml``)."""
    kml_content = export_kml(layers, document_name)

    kmz_buffer = io.BytesIO()
    with zipfile.ZipFile(kmz_buffer, "w", zipfile.ZIP_DEFLATED) as kmz:
        kmz.writestr("doc.kml", kml_content.encode("utf-8"))

    logger.info("KMZ export completed")
    return kmz_buffer.getvalue()
