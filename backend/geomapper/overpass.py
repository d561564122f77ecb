from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import httpx

from .categories import Category, query_fragment, resolve_categories
from .errors import NoCategorySelected, ParseError, ServiceError
from .geometry import BoundingBox
from .settings import (
    OVERPASS_HTTP_TIMEOUT,
    OVERPASS_QUERY_TIMEOUT,
    OVERPASS_URL,
    OVERPASS_USER_AGENT,
    cache,
)
from .utils.cache import PayloadCache
from .utils.logging import get_logger

logger = get_logger(__name__)


class RunStatus(str, enum.Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueryRun:
    """One combined request: which categories, where, and how it went."""

    category_ids: Tuple[str, ...]
    bbox: BoundingBox
    query: str
    status: RunStatus = RunStatus.IN_FLIGHT


def build_query(
    categories: Sequence[Category],
    bbox: BoundingBox,
    timeout: int = OVERPASS_QUERY_TIMEOUT,
) -> str:
    """Concatenate every category fragment into a single Overpass QL union."""
    statements = [
        query_fragment(category, part.to_query_string())
        for category in categories
        for part in bbox.split()
    ]
    body = "\n".join(statements)
    return f"[out:json][timeout:{int(timeout)}];\n(\n{body}\n);\nout body;\n>;\nout skel qt;"


def _runtime_remark(payload: Dict[str, Any]) -> Optional[str]:
    remark = payload.get("remark")
    if isinstance(remark, str) and "error" in remark.lower():
        return remark.strip()
    return None


class OverpassClient:
    def __init__(
        self,
        url: str = OVERPASS_URL,
        timeout: float = OVERPASS_HTTP_TIMEOUT,
        query_timeout: int = OVERPASS_QUERY_TIMEOUT,
        user_agent: str = OVERPASS_USER_AGENT,
        payload_cache: Optional[PayloadCache] = cache,
    ):
        self.url = url
        self.timeout = timeout
        self.query_timeout = query_timeout
        self.user_agent = user_agent
        self.payload_cache = payload_cache

    async def __aenter__(self):
        self.session = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.session.aclose()

    def prepare(self, category_ids: Sequence[str], bbox: BoundingBox) -> QueryRun:
        if not category_ids:
            raise NoCategorySelected()
        categories = resolve_categories(category_ids)
        return QueryRun(
            category_ids=tuple(category.id for category in categories),
            bbox=bbox,
            query=build_query(categories, bbox, self.query_timeout),
        )

    async def run_query(self, category_ids: Sequence[str], bbox: BoundingBox) -> Dict[str, Any]:
        """Fetch the raw payload for the selected categories inside ``bbox``.

        Validation happens before any I/O: no categories, or an unknown one,
        fails without touching the network. Exactly one POST is issued per
        call and failures are never retried here.
        """
        run = self.prepare(category_ids, bbox)
        return await self.fetch(run)

    async def fetch(self, run: QueryRun) -> Dict[str, Any]:
        if self.payload_cache is not None:
            cached = self.payload_cache.get(run.query)
            if cached is not None:
                run.status = RunStatus.COMPLETED
                logger.info("Serving Overpass payload from cache", extra={"categories": list(run.category_ids)})
                return cached

        logger.info(
            "Querying Overpass",
            extra={"categories": list(run.category_ids), "bbox": run.bbox.to_query_string()},
        )

        try:
            response = await self.session.post(self.url, data={"data": run.query})
        except httpx.HTTPError as exc:
            run.status = RunStatus.FAILED
            logger.error(f"Overpass transport failure: {exc}")
            raise ServiceError(None, str(exc) or type(exc).__name__) from exc

        if not 200 <= response.status_code < 300:
            run.status = RunStatus.FAILED
            status_text = getattr(response, "reason_phrase", "") or response.text[:200]
            logger.error(
                "Overpass returned a non-success status",
                extra={"status_code": response.status_code},
            )
            raise ServiceError(response.status_code, status_text)

        try:
            payload = response.json()
        except ValueError as exc:
            run.status = RunStatus.FAILED
            raise ParseError(f"Query service returned invalid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            run.status = RunStatus.FAILED
            raise ParseError("Query service returned an unexpected payload")

        remark = _runtime_remark(payload)
        if remark and not payload.get("elements"):
            run.status = RunStatus.FAILED
            raise ServiceError(response.status_code, remark)

        run.status = RunStatus.COMPLETED
        if self.payload_cache is not None:
            self.payload_cache.set(run.query, payload)
        logger.info(
            "Overpass query completed",
            extra={"elements": len(payload.get("elements") or [])},
        )
        return payload
