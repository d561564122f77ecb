import os
import re
from typing import Optional
from urllib.parse import quote

from .utils.cache import get_cache
from .utils.rate_limit import get_rate_limiter

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
CACHE_TTL = int(os.getenv("CACHE_TTL", "900"))
OVERPASS_URL = os.getenv("OVERPASS_URL", "https://overpass-api.de/api/interpreter")
OVERPASS_QUERY_TIMEOUT = int(os.getenv("OVERPASS_QUERY_TIMEOUT", "90"))
OVERPASS_HTTP_TIMEOUT = int(os.getenv("OVERPASS_HTTP_TIMEOUT_S", "120"))
OVERPASS_USER_AGENT = os.getenv("OVERPASS_USER_AGENT", "geo-mapper/1.0")
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))
ALLOW_ANTIMERIDIAN = os.getenv("ALLOW_ANTIMERIDIAN", "false").strip().lower() in ("1", "true", "yes")

cache = get_cache(ttl=CACHE_TTL)
rate_limiter = get_rate_limiter(
    max_requests=RATE_LIMIT_MAX_REQUESTS,
    window_seconds=RATE_LIMIT_WINDOW_SECONDS,
)

_FILENAME_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


def slugify(value: Optional[str], fallback: str = "layer") -> str:
    """Reduce free text to a filename/id safe token."""
    if not value:
        return fallback
    cleaned = _FILENAME_SANITIZE_PATTERN.sub("-", value.strip())
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-_.")
    return cleaned[:100] or fallback


def sanitize_export_filename(value: Optional[str], extension: str) -> Optional[str]:
    if not value or not value.strip():
        return None

    trimmed = value.strip()
    if trimmed.lower().endswith(extension.lower()):
        trimmed = trimmed[: -len(extension)]

    cleaned = slugify(trimmed, fallback="")
    if not cleaned:
        return None
    return f"{cleaned}{extension}"


def build_content_disposition(filename: str) -> str:
    safe = filename.replace('"', "")
    return f"attachment; filename=\"{safe}\"; filename*=UTF-8''{quote(safe)}"
