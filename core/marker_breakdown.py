"""
Per-section marker breakdown statistics.

A breakdown maps a packed (intro count, credits count) key to the number of
episodes or movies with exactly that many markers of each type. Keys are
packed as ``intros | (credits << 16)``.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from core.plex_types import MarkerType

logger = logging.getLogger(__name__)

CREDITS_SHIFT = 16
INTRO_MASK = (1 << CREDITS_SHIFT) - 1


def delta_from_type(delta: int, marker_type: str) -> int:
    """Key delta for adding (or removing, with a negative delta) one marker of the given type."""
    if marker_type == MarkerType.CREDITS.value:
        return delta << CREDITS_SHIFT
    if marker_type != MarkerType.INTRO.value:
        logger.error(f"Invalid marker type '{marker_type}', treating it as an intro")
    return delta


def counts_from_key(key: int) -> Tuple[int, int]:
    """Split a packed key into (intros, credits)."""
    return key & INTRO_MASK, key >> CREDITS_SHIFT


def key_from_markers(markers: Iterable[Any]) -> int:
    """Packed key for a single item's markers. Anything with a marker_type attribute works."""
    key = 0
    for marker in markers:
        key += delta_from_type(1, marker.marker_type)
    return key


class MarkerBreakdown:
    """Bucket map for a single library section."""

    def __init__(self, counts: Optional[Dict[int, int]] = None):
        self._counts: Dict[int, int] = dict(counts) if counts else {}

    def add(self, key: int, count: int = 1) -> None:
        self._counts[key] = self._counts.get(key, 0) + count

    def delta(self, old_key: int, change: int) -> bool:
        """Move one item from the old_key bucket to the old_key + change bucket.

        Returns False, changing nothing, if no item is in the old_key bucket.
        Empty buckets are left in place and pruned when the breakdown is read.
        """
        if self._counts.get(old_key, 0) <= 0:
            return False

        self._counts[old_key] -= 1
        new_key = old_key + change
        self._counts[new_key] = self._counts.get(new_key, 0) + 1
        return True

    def _minify(self) -> None:
        for key in [k for k, v in self._counts.items() if v == 0]:
            del self._counts[key]

    def buckets(self) -> Dict[int, int]:
        self._minify()
        return dict(self._counts)

    def item_count(self) -> int:
        return sum(self._counts.values())

    def marker_count(self) -> int:
        total = 0
        for key, value in self._counts.items():
            intros, credits = counts_from_key(key)
            total += (intros + credits) * value
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "buckets": {str(k): v for k, v in self.buckets().items()},
            "items": self.item_count(),
            "markers": self.marker_count(),
        }


class LegacyMarkerBreakdown:
    """Breakdown cache for every section, kept in step with marker changes.

    Every mutation path must call update() exactly once per marker change with
    the key of the affected item *before* the change. There is no self-repair
    besides rebuilding a section from the Plex database.
    """

    def __init__(self):
        self._sections: Dict[int, MarkerBreakdown] = {}

    def clear(self) -> None:
        self._sections = {}

    def get(self, section_id: int) -> Optional[MarkerBreakdown]:
        return self._sections.get(section_id)

    def update(self, marker: Any, old_key: int, delta: int) -> None:
        """Apply a single marker add (delta=1) or removal (delta=-1).

        Sections that haven't been built yet are skipped. A section that has
        drifted from the database is dropped so the next read rebuilds it.
        """
        breakdown = self._sections.get(marker.section_id)
        if breakdown is None:
            return
        if not breakdown.delta(old_key, delta_from_type(delta, marker.marker_type)):
            logger.warning(f"No bucket for breakdown key {old_key} in section {marker.section_id}, "
                           "discarding the section's breakdown")
            del self._sections[marker.section_id]

    async def rebuild(self, section_id: int, plex_queries) -> MarkerBreakdown:
        """Throw away the cached breakdown for a section and rebuild it from Plex."""
        rows = await plex_queries.marker_stats_for_section(section_id)
        breakdown = MarkerBreakdown()
        current_id = None
        current_key = 0
        for row in rows:
            if row["parent_id"] != current_id:
                if current_id is not None:
                    breakdown.add(current_key)
                current_id = row["parent_id"]
                current_key = 0
            if row["marker_type"] is not None:
                current_key += delta_from_type(1, row["marker_type"])

        if current_id is not None:
            breakdown.add(current_key)

        self._sections[section_id] = breakdown
        logger.info(f"Built marker breakdown for section {section_id}: {breakdown.item_count()} items")
        return breakdown
