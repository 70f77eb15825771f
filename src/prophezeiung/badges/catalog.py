"""Badge rule catalog: static definitions loaded once from badge_definitions.json.

Every badge is a row of the same shape (category, rarity, optional threshold
on a named metric), so evaluation is one generic comparison rather than a
branch per category.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from prophezeiung.badges.exceptions import CatalogLoadError
from prophezeiung.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).with_name("badge_definitions.json")

Scope = Literal["user", "round"]


class BadgeCategory(str, Enum):
    """Badge categories. Declaration order is the canonical sort order."""

    CREATOR = "CREATOR"
    ACCURACY = "ACCURACY"
    RATER = "RATER"
    RATER_ACC = "RATER_ACC"
    ROUNDS = "ROUNDS"
    LEADERBOARD = "LEADERBOARD"
    SPECIAL = "SPECIAL"
    SOCIAL = "SOCIAL"
    HIDDEN = "HIDDEN"
    TIME = "TIME"


class BadgeRarity(str, Enum):
    """Rarity tiers, rarest first."""

    LEGENDARY = "LEGENDARY"
    GOLD = "GOLD"
    SILVER = "SILVER"
    BRONZE = "BRONZE"


_CATEGORY_ORDER = {c: i for i, c in enumerate(BadgeCategory)}
_RARITY_ORDER = {r: i for i, r in enumerate(BadgeRarity)}

# Metrics carried by UserActivitySnapshot.
USER_METRICS: frozenset[str] = frozenset({
    "prophecies_created",
    "prophecies_fulfilled",
    "ratings_given",
    "ratings_on_resolved",
    "rater_accuracy",
    "rounds_participated",
    "max_ratings_given",
    "min_ratings_given",
    "passkeys_registered",
    "average_rating_given",
})

# Metrics computed per creator when a round's results are published.
ROUND_METRICS: frozenset[str] = frozenset({
    "round_accuracy_rate",
    "round_accepted_prophecies",
    "leaderboard_wins",
})

_REQUIRED_FIELDS = ("key", "name", "description", "requirement", "category", "rarity")


@dataclass(frozen=True)
class BadgeDefinition:
    """One immutable catalog entry."""

    key: str
    name: str
    description: str
    requirement: str
    category: BadgeCategory
    rarity: BadgeRarity
    threshold: int | None = None
    metric: str | None = None
    requires: tuple[tuple[str, int], ...] = ()

    @property
    def scope(self) -> Scope | None:
        """Which activity source the threshold is compared against, if any."""
        if self.metric is None:
            return None
        return "user" if self.metric in USER_METRICS else "round"

    def sort_key(self) -> tuple[int, int, bool, int, str]:
        return (
            _CATEGORY_ORDER[self.category],
            _RARITY_ORDER[self.rarity],
            self.threshold is None,
            self.threshold or 0,
            self.key,
        )


class BadgeCatalog:
    """Read-only, canonically ordered view over all badge definitions."""

    def __init__(self, definitions: Iterable[BadgeDefinition]) -> None:
        ordered = sorted(definitions, key=BadgeDefinition.sort_key)
        by_key: dict[str, BadgeDefinition] = {}
        for definition in ordered:
            if definition.key in by_key:
                msg = f"Duplicate badge key: {definition.key}"
                raise CatalogLoadError(msg)
            by_key[definition.key] = definition
        self._definitions: tuple[BadgeDefinition, ...] = tuple(ordered)
        self._by_key = by_key

    @property
    def definitions(self) -> tuple[BadgeDefinition, ...]:
        return self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def get(self, key: str) -> BadgeDefinition | None:
        return self._by_key.get(key)

    def keys(self) -> list[str]:
        return [d.key for d in self._definitions]

    def by_category(self, category: BadgeCategory | str) -> list[BadgeDefinition]:
        category = BadgeCategory(category)
        return [d for d in self._definitions if d.category is category]

    def threshold_rules(self, scope: Scope) -> list[BadgeDefinition]:
        """Threshold-bearing definitions evaluated against the given metric scope."""
        return [d for d in self._definitions if d.threshold is not None and d.scope == scope]


def _parse_definition(raw: Any, position: str) -> BadgeDefinition:
    if not isinstance(raw, Mapping):
        msg = f"Badge entry {position} is not an object"
        raise CatalogLoadError(msg)

    missing = [f for f in _REQUIRED_FIELDS if not isinstance(raw.get(f), str) or not raw.get(f)]
    if missing:
        msg = f"Badge entry {position} is missing required fields: {', '.join(missing)}"
        raise CatalogLoadError(msg)

    key = raw["key"]
    try:
        category = BadgeCategory(raw["category"])
        rarity = BadgeRarity(raw["rarity"])
    except ValueError as exc:
        msg = f"Badge {key}: {exc}"
        raise CatalogLoadError(msg) from exc

    threshold = raw.get("threshold")
    metric = raw.get("metric")
    if threshold is not None and (isinstance(threshold, bool) or not isinstance(threshold, int)):
        msg = f"Badge {key}: threshold must be an integer"
        raise CatalogLoadError(msg)
    if (threshold is None) != (metric is None):
        msg = f"Badge {key}: threshold and metric must be given together"
        raise CatalogLoadError(msg)

    requires_raw = raw.get("requires") or {}
    if not isinstance(requires_raw, Mapping):
        msg = f"Badge {key}: requires must be an object"
        raise CatalogLoadError(msg)

    if any(isinstance(v, bool) or not isinstance(v, int) for v in requires_raw.values()):
        msg = f"Badge {key}: requires minimums must be integers"
        raise CatalogLoadError(msg)

    known = USER_METRICS | ROUND_METRICS
    for name in [metric, *requires_raw.keys()]:
        if name is not None and name not in known:
            msg = f"Badge {key}: unknown metric {name!r}"
            raise CatalogLoadError(msg)

    if metric is not None and requires_raw:
        scopes = {"user" if m in USER_METRICS else "round" for m in [metric, *requires_raw]}
        if len(scopes) > 1:
            msg = f"Badge {key}: requires must use metrics of the same scope as {metric}"
            raise CatalogLoadError(msg)

    return BadgeDefinition(
        key=key,
        name=raw["name"],
        description=raw["description"],
        requirement=raw["requirement"],
        category=category,
        rarity=rarity,
        threshold=threshold,
        metric=metric,
        requires=tuple(sorted((str(k), int(v)) for k, v in requires_raw.items())),
    )


def load_catalog_data(data: Any) -> BadgeCatalog:
    """Build a catalog from parsed JSON: either {group: [entries]} or a flat list."""
    if isinstance(data, Mapping):
        entries = [
            (f"{group}[{i}]", raw)
            for group, items in data.items()
            for i, raw in enumerate(items if isinstance(items, list) else [items])
        ]
    elif isinstance(data, list):
        entries = [(f"[{i}]", raw) for i, raw in enumerate(data)]
    else:
        msg = "Badge catalog must be an object or a list"
        raise CatalogLoadError(msg)

    return BadgeCatalog(_parse_definition(raw, position) for position, raw in entries)


def load_catalog(path: str | Path | None = None) -> BadgeCatalog:
    """Load and validate the catalog file. Raises CatalogLoadError."""
    catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
    try:
        data = json.loads(catalog_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Cannot read badge catalog {catalog_path}: {exc}"
        raise CatalogLoadError(msg) from exc

    catalog = load_catalog_data(data)
    logger.info("Loaded %d badge definitions from %s", len(catalog), catalog_path)
    return catalog


@lru_cache
def get_catalog() -> BadgeCatalog:
    """Get the process-wide catalog."""
    return load_catalog(get_settings().badge_catalog_path or None)
