"""Static table of OSM feature categories that an area query can request.

Each category pairs the Overpass statements that fetch its features with the
predicate that recognises them in a response. Both are generated from the same
tag rules so the two cannot drift apart; edit the rules, not the output.
"""

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .errors import UnknownCategory
from .models import CategoryInfo, StyleDescriptor


@dataclass(frozen=True)
class TagRule:
    key: str
    values: Optional[FrozenSet[str]] = None  # None accepts any value
    exclude: FrozenSet[str] = frozenset({"no"})

    def matches(self, tags: Mapping[str, Any]) -> bool:
        value = tags.get(self.key)
        if value is None:
            return False
        value = str(value).strip()
        if value in self.exclude:
            return False
        if self.values is None:
            return True
        return value in self.values

    def selector(self) -> str:
        if self.values is not None:
            alternatives = "|".join(sorted(self.values))
            return f'["{self.key}"~"^({alternatives})$"]'
        clause = f'["{self.key}"]'
        for excluded in sorted(self.exclude):
            clause += f'["{self.key}"!="{excluded}"]'
        return clause


@dataclass(frozen=True)
class Category:
    """Configuration describing one class of OSM features."""

    id: str
    label: str
    rules: Tuple[TagRule, ...]
    style: StyleDescriptor
    elements: Tuple[str, ...] = ("way",)
    description: Optional[str] = None

    def fragment(self, bbox: str) -> str:
        statements = [
            f"{element}{rule.selector()}({bbox});"
            for rule in self.rules
            for element in self.elements
        ]
        return "\n".join(statements)

    def matches(self, properties: Mapping[str, Any]) -> bool:
        return any(rule.matches(properties or {}) for rule in self.rules)

    def metadata(self) -> CategoryInfo:
        return CategoryInfo(id=self.id, label=self.label, style=self.style)


_ROAD_CLASSES = frozenset({
    "motorway", "motorway_link", "trunk", "trunk_link", "primary", "primary_link",
    "secondary", "secondary_link", "tertiary", "tertiary_link", "unclassified",
    "residential", "living_street", "service", "road", "track", "pedestrian",
    "path", "footway", "cycleway", "bridleway", "steps",
})

# Order here is the order clients list categories in.
CATEGORIES: Tuple[Category, ...] = (
    Category(
        id="watercourses",
        label="OSM Watercourses",
        description="Rivers, streams, canals and drains",
        rules=(TagRule("waterway", frozenset({"river", "stream", "canal", "drain", "ditch", "brook"})),),
        style=StyleDescriptor(strokeColor="#0EA5E9", strokeWidth=2.0),
    ),
    Category(
        id="water_bodies",
        label="OSM Water Bodies",
        description="Lakes, ponds, reservoirs and river areas",
        rules=(
            TagRule("natural", frozenset({"water"})),
            TagRule("landuse", frozenset({"reservoir", "basin"})),
            TagRule("waterway", frozenset({"riverbank"})),
        ),
        elements=("way", "relation"),
        style=StyleDescriptor(strokeColor="#1D4ED8", strokeWidth=1.5, fillColor="#3B82F6", fillOpacity=0.4),
    ),
    Category(
        id="roads_paths",
        label="OSM Roads & Paths",
        description="Road network, tracks and footpaths",
        rules=(TagRule("highway", _ROAD_CLASSES),),
        style=StyleDescriptor(strokeColor="#F97316", strokeWidth=2.5),
    ),
    Category(
        id="railways",
        label="OSM Railways",
        rules=(TagRule("railway", frozenset({"rail", "light_rail", "narrow_gauge", "subway", "tram"})),),
        style=StyleDescriptor(strokeColor="#52525B", strokeWidth=2.0),
    ),
    Category(
        id="buildings",
        label="OSM Buildings",
        rules=(TagRule("building"),),
        elements=("way", "relation"),
        style=StyleDescriptor(strokeColor="#B91C1C", strokeWidth=1.0, fillColor="#EF4444", fillOpacity=0.5),
    ),
    Category(
        id="protected_areas",
        label="OSM Parks & Protected Areas",
        rules=(
            TagRule("leisure", frozenset({"park", "nature_reserve"})),
            TagRule("boundary", frozenset({"protected_area", "national_park"})),
        ),
        elements=("way", "relation"),
        style=StyleDescriptor(strokeColor="#15803D", strokeWidth=1.5, fillColor="#22C55E", fillOpacity=0.25),
    ),
)

CATEGORY_MAP: Dict[str, Category] = {category.id: category for category in CATEGORIES}


def get_category(category_id: str) -> Category:
    try:
        return CATEGORY_MAP[category_id]
    except KeyError:
        raise UnknownCategory(category_id) from None


def resolve_categories(category_ids: Sequence[str]) -> List[Category]:
    """Look up ids in selection order, dropping duplicates."""
    resolved: List[Category] = []
    seen = set()
    for category_id in category_ids:
        if category_id in seen:
            continue
        seen.add(category_id)
        resolved.append(get_category(category_id))
    return resolved


def query_fragment(category: Category, bbox: str) -> str:
    return category.fragment(bbox)


def matches(category: Category, properties: Mapping[str, Any]) -> bool:
    return category.matches(properties)


def style(category: Category) -> StyleDescriptor:
    return category.style


def list_categories() -> List[CategoryInfo]:
    return [category.metadata() for category in CATEGORIES]
