"""Predicate badges over a user snapshot that are not a single threshold."""

from __future__ import annotations

from collections.abc import Callable, Collection

from prophezeiung.badges.aggregator import UserActivitySnapshot
from prophezeiung.badges.catalog import BadgeCatalog, BadgeDefinition

# Rating scale: -10 = "will certainly happen" (optimist), +10 = "impossible" (skeptic).
SOCIAL_RULES: dict[str, Callable[[UserActivitySnapshot], bool]] = {
    "social_friendly": lambda s: s.ratings_given >= 20 and s.average_rating_given < -5,
    "social_skeptic": lambda s: s.ratings_given >= 20 and s.average_rating_given > 2,
    "social_neutral": lambda s: s.ratings_given >= 30 and -1 <= s.average_rating_given <= 1,
}


def evaluate_social(
    snapshot: UserActivitySnapshot,
    held_keys: Collection[str],
    catalog: BadgeCatalog,
) -> list[BadgeDefinition]:
    """Social badges the snapshot qualifies for, in canonical order."""
    return [
        d
        for d in catalog.definitions
        if d.key in SOCIAL_RULES and d.key not in held_keys and SOCIAL_RULES[d.key](snapshot)
    ]
