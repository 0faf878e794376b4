"""
Restoring purged markers.

Purged markers are grouped by the episode/movie they belong to and every item
is resolved in its own transaction: a failure on one item is reported in the
result's errors and doesn't stop the rest of the batch from committing.

Within an item, candidates are applied in ascending start order against a
working copy of the item's live markers, so overlapping candidates compose
the same way every time:

* A candidate whose start/end exactly match a live marker is already present.
  It's linked to that marker in the action log and reported as existing.
* OVERWRITE deletes every overlapping live marker, then inserts the
  candidate. An earlier candidate from the same batch that the candidate
  overlaps is superseded: it's reported as such and stays purged.
* MERGE replaces the candidate and every overlapping marker with one marker
  spanning all of them. A candidate entirely inside a single live marker
  leaves that marker untouched.
* IGNORE inserts candidates that don't overlap anything and marks the rest
  as ignored.

Every candidate ends up in exactly one of the result's lists.

The same planner backs bulk add, where MERGE extends the earliest
overlapping live marker in place instead of inserting a new one.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from core.errors import ServerError
from core.marker_breakdown import delta_from_type, key_from_markers
from core.plex_types import MarkerAction, MarkerConflictResolution, MarkerData

logger = logging.getLogger(__name__)


@dataclass
class RestoreResult:
    restored_markers: List[MarkerData] = field(default_factory=list)
    existing_markers: List[MarkerData] = field(default_factory=list)
    deleted_markers: List[MarkerData] = field(default_factory=list)
    ignored_marker_ids: List[int] = field(default_factory=list)
    # Candidates folded into another restored marker from the same batch
    merged_marker_ids: List[int] = field(default_factory=list)
    # Candidates overwritten by a later overlapping candidate; still purged
    superseded_marker_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restored_markers": [m.to_dict() for m in self.restored_markers],
            "existing_markers": [m.to_dict() for m in self.existing_markers],
            "deleted_markers": [m.to_dict() for m in self.deleted_markers],
            "ignored_marker_ids": self.ignored_marker_ids,
            "merged_marker_ids": self.merged_marker_ids,
            "superseded_marker_ids": self.superseded_marker_ids,
            "errors": self.errors,
        }


class NewMarker(NamedTuple):
    """A marker bulk add wants on every episode. Not backed by an action log row."""
    start: int
    end: int
    marker_type: str
    final: bool
    user_created: bool = True
    marker_id: Optional[int] = None


class _Entry:
    """A marker in the working copy of one item's markers.

    Either a live marker (marker is set) or a pending insert built from a
    candidate (a purged MarkerAction or a NewMarker).
    """

    def __init__(self, start: int, end: int, marker_type: str, final: bool, index: int,
                 marker: Optional[MarkerData] = None, candidate=None):
        self.start = start
        self.end = end
        self.marker_type = marker_type
        self.final = final
        self.index = index
        self.marker = marker
        self.candidate = candidate
        # Other candidates folded into this entry
        self.linked: list = []
        self.deleted = False
        self.edited = False

    @property
    def is_new(self) -> bool:
        return self.marker is None

    def overlaps(self, start: int, end: int) -> bool:
        return self.end >= start and self.start <= end


class ItemPlan:
    """Everything decided for a single episode/movie before it's written."""

    def __init__(self, parent_id: int, live_markers: List[MarkerData], edit_in_place: bool = False):
        self.parent_id = parent_id
        self.live_markers = live_markers
        self.edit_in_place = edit_in_place
        self.entries = [
            _Entry(m.start, m.end, m.marker_type, m.is_final, m.index, marker=m) for m in live_markers
        ]
        self.identical: List[Tuple[Any, MarkerData]] = []
        self.ignored: list = []
        self.superseded: list = []

    def alive(self) -> List[_Entry]:
        return [e for e in self.entries if not e.deleted]

    def ordered(self) -> List[_Entry]:
        return sorted(self.alive(), key=lambda e: (e.start, e.index))

    def new_entries(self) -> List[_Entry]:
        return [e for e in self.entries if e.is_new and not e.deleted]

    def edited_entries(self) -> List[_Entry]:
        return [e for e in self.entries if e.edited and not e.deleted]

    def deleted_markers(self) -> List[MarkerData]:
        return [e.marker for e in self.entries if e.deleted and not e.is_new]

    def has_changes(self) -> bool:
        return bool(self.new_entries() or self.edited_entries() or self.deleted_markers())


def apply_candidate(plan: ItemPlan, candidate, mode: MarkerConflictResolution) -> None:
    """Fold one candidate into the plan's working copy according to mode."""
    alive = plan.alive()
    for entry in alive:
        if entry.start == candidate.start and entry.end == candidate.end:
            if entry.is_new:
                entry.linked.append(candidate)
            else:
                plan.identical.append((candidate, entry.marker))
            return

    overlapping = [e for e in alive if e.overlaps(candidate.start, candidate.end)]
    new_entry = _Entry(candidate.start, candidate.end, candidate.marker_type, candidate.final, len(plan.entries),
                       candidate=candidate)
    if not overlapping:
        plan.entries.append(new_entry)
        return

    if mode == MarkerConflictResolution.IGNORE:
        plan.ignored.append(candidate)
        return

    if mode == MarkerConflictResolution.MERGE:
        if len(overlapping) == 1:
            container = overlapping[0]
            if container.start <= candidate.start and container.end >= candidate.end:
                if container.is_new:
                    container.linked.append(candidate)
                else:
                    plan.identical.append((candidate, container.marker))
                return

        start = min([candidate.start] + [e.start for e in overlapping])
        end = max([candidate.end] + [e.end for e in overlapping])
        live = [e for e in overlapping if not e.is_new]
        if plan.edit_in_place and live:
            survivor = min(live, key=lambda e: (e.start, e.index))
            survivor.start, survivor.end, survivor.edited = start, end, True
            for entry in overlapping:
                if entry is not survivor:
                    entry.deleted = True
            return

        new_entry.start, new_entry.end = start, end
        for entry in overlapping:
            entry.deleted = True
            if entry.is_new:
                new_entry.linked.append(entry.candidate)
                new_entry.linked.extend(entry.linked)
        plan.entries.append(new_entry)
        return

    for entry in overlapping:
        entry.deleted = True
        if entry.is_new:
            plan.superseded.append(entry.candidate)
            plan.superseded.extend(entry.linked)
    plan.entries.append(new_entry)


def write_plan(plex_queries, plan: ItemPlan, transaction=None):
    """Add the statements for a single item to transaction (a new one if None)."""
    if transaction is None:
        transaction = plex_queries.new_transaction()
    for marker in plan.deleted_markers():
        plex_queries.delete_marker_statement(transaction, marker.id)

    for new_index, entry in enumerate(plan.ordered()):
        if entry.is_new:
            plex_queries.add_marker_statement(
                transaction, plan.parent_id, new_index, entry.start, entry.end, entry.marker_type, entry.final,
                user_created=entry.candidate.user_created)
        elif entry.edited:
            plex_queries.edit_marker_statement(
                transaction, entry.marker.id, new_index, entry.start, entry.end, entry.marker_type, entry.final,
                entry.marker.created_by_user)
        elif entry.marker.index != new_index:
            plex_queries.index_statement(transaction, entry.marker.id, new_index)
    return transaction


def markers_by_item(markers: List[MarkerData]) -> Dict[int, List[MarkerData]]:
    by_item: Dict[int, List[MarkerData]] = {}
    for marker in markers:
        by_item.setdefault(marker.parent_id, []).append(marker)
    return by_item


class ResolutionEngine:
    """Applies a resolution mode to a batch of purged markers."""

    def __init__(self, plex_queries, backup, purge_cache, breakdown):
        self._plex = plex_queries
        self._backup = backup
        self._purge_cache = purge_cache
        self._breakdown = breakdown

    async def restore(self, actions: List[MarkerAction], section_id: int,
                      mode: MarkerConflictResolution) -> RestoreResult:
        result = RestoreResult()
        if not actions:
            return result

        base_type = await self._plex.base_type_for_section(section_id)
        await self._backup.readded_strategy.apply(actions, self._plex, base_type)

        by_item: Dict[int, List[MarkerAction]] = {}
        for action in actions:
            target = action.readded_id if action.readded else action.parent_id
            by_item.setdefault(target, []).append(action)

        # Read everything up front, before any writes
        existing_items = await self._plex.existing_item_ids(by_item.keys())
        live_by_item = markers_by_item(await self._plex.get_markers_for_items(existing_items, base_type))

        committed: List[ItemPlan] = []
        for parent_id, item_actions in by_item.items():
            if parent_id not in existing_items:
                result.errors.append(self._error(parent_id, item_actions, "Item no longer exists in the Plex database"))
                continue

            plan = ItemPlan(parent_id, live_by_item.get(parent_id, []))
            for action in sorted(item_actions, key=lambda a: (a.start, a.end)):
                apply_candidate(plan, action, mode)

            transaction = write_plan(self._plex, plan)
            try:
                await transaction.exec()
            except (sqlite3.Error, ServerError) as e:
                logger.error(f"Failed to restore markers for item {parent_id}: {e}")
                result.errors.append(self._error(parent_id, item_actions, str(e)))
                continue
            committed.append(plan)

        if committed:
            await self._finish(committed, section_id, base_type, result)

        logger.info(
            f"Restore ({mode.name.lower()}) in section {section_id}: {len(result.restored_markers)} restored, "
            f"{len(result.existing_markers)} already present, {len(result.merged_marker_ids)} merged, "
            f"{len(result.superseded_marker_ids)} superseded, {len(result.deleted_markers)} overwritten, "
            f"{len(result.ignored_marker_ids)} ignored, {len(result.errors)} failed")
        return result

    @staticmethod
    def _error(parent_id: int, actions: List[MarkerAction], message: str) -> Dict[str, Any]:
        return {"parent_id": parent_id, "marker_ids": [a.marker_id for a in actions], "message": message}

    async def _finish(self, plans: List[ItemPlan], section_id: int, base_type, result: RestoreResult) -> None:
        """Read back the new markers and update the action log and caches."""
        after_by_item = markers_by_item(
            await self._plex.get_markers_for_items([p.parent_id for p in plans], base_type))

        restores: List[Tuple[MarkerAction, MarkerData]] = []
        links: List[Tuple[MarkerAction, MarkerData]] = []
        ignored: List[MarkerAction] = []
        deleted: List[MarkerData] = []
        resolved: List[MarkerAction] = []

        for plan in plans:
            old_ids = {m.id for m in plan.live_markers}
            fresh = {(m.start, m.end): m for m in after_by_item.get(plan.parent_id, []) if m.id not in old_ids}
            key = key_from_markers(plan.live_markers)

            for marker in plan.deleted_markers():
                self._breakdown.update(marker, key, -1)
                key += delta_from_type(-1, marker.marker_type)
                deleted.append(marker)

            for entry in plan.new_entries():
                new_marker = fresh.get((entry.start, entry.end))
                if new_marker is None:
                    logger.warning(f"Could not find restored marker {entry.start}-{entry.end} on item {plan.parent_id}")
                    result.errors.append(self._error(
                        plan.parent_id, [entry.candidate] + entry.linked, "Unable to find the restored marker"))
                    continue
                self._breakdown.update(new_marker, key, 1)
                key += delta_from_type(1, new_marker.marker_type)
                result.restored_markers.append(new_marker)
                result.merged_marker_ids.extend(a.marker_id for a in entry.linked)
                restores.append((entry.candidate, new_marker))
                links.extend((action, new_marker) for action in entry.linked)
                resolved.append(entry.candidate)
                resolved.extend(entry.linked)

            for action, marker in plan.identical:
                result.existing_markers.append(marker)
                links.append((action, marker))
                resolved.append(action)

            result.superseded_marker_ids.extend(a.marker_id for a in plan.superseded)
            ignored.extend(plan.ignored)

        result.deleted_markers.extend(deleted)

        # Action log writes are best effort. The Plex changes above are already committed.
        await self._backup.record_deletes(deleted)
        await self._backup.record_restores(restores, section_id)
        await self._backup.link_existing(links, section_id)
        if ignored:
            try:
                await self._backup.ignore_purged_markers([a.marker_id for a in ignored], section_id)
                result.ignored_marker_ids.extend(a.marker_id for a in ignored)
                resolved.extend(ignored)
            except ServerError as e:
                logger.error(f"Unable to ignore overlapping purged markers: {e.message}")
                for action in ignored:
                    result.errors.append(self._error(action.parent_id, [action], e.message))

        for action in resolved:
            self._purge_cache.remove(action)
