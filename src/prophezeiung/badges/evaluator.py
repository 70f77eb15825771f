"""Threshold evaluation: which catalog entries does a set of metrics qualify for?

Pure functions only. No I/O, no clock, so the same inputs always yield the
same list in the same order.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping

from prophezeiung.badges.aggregator import UserActivitySnapshot
from prophezeiung.badges.catalog import BadgeCatalog, BadgeDefinition


def meets_threshold(definition: BadgeDefinition, metrics: Mapping[str, float]) -> bool:
    """True if the metric reaches the threshold and every requires gate holds."""
    if definition.threshold is None or definition.metric is None:
        return False
    if metrics.get(definition.metric, 0) < definition.threshold:
        return False
    return all(metrics.get(name, 0) >= minimum for name, minimum in definition.requires)


def qualifying_definitions(
    metrics: Mapping[str, float],
    held: Collection[str],
    rules: Iterable[BadgeDefinition],
) -> list[BadgeDefinition]:
    """Every rule met by ``metrics`` whose key is not already held.

    All qualifying tiers are returned, not just the highest, in the order
    ``rules`` is given (the catalog's canonical order).
    """
    return [d for d in rules if d.key not in held and meets_threshold(d, metrics)]


def evaluate(
    snapshot: UserActivitySnapshot,
    held_keys: Collection[str],
    catalog: BadgeCatalog,
) -> list[BadgeDefinition]:
    """User-scope threshold badges the snapshot qualifies for but are not yet held."""
    return qualifying_definitions(snapshot.metrics(), held_keys, catalog.threshold_rules("user"))
