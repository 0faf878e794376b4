"""
Marker add/edit/delete and bulk add/delete commands.

Each command updates the Plex database, then keeps the breakdown cache and the
action log in step with the change. Action log failures are logged by the
backup manager and never undo the marker change itself.
"""

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.errors import ServerError
from core.marker_breakdown import LegacyMarkerBreakdown, delta_from_type, key_from_markers
from core.plex_types import MarkerConflictResolution, MarkerData, MarkerType, MetadataType
from core.resolution import ItemPlan, NewMarker, apply_candidate, markers_by_item, write_plan

logger = logging.getLogger(__name__)


def _check_marker_bounds(start: int, end: int, marker_type: str) -> None:
    if start < 0 or start >= end:
        raise ServerError(f"Start time ({start}) must be non-negative and less than end time ({end}).", 400)
    if not MarkerType.is_valid(marker_type):
        raise ServerError(f"Unknown marker type '{marker_type}'.", 400)


def _final_for_type(marker_type: str, final: bool) -> bool:
    if final and marker_type != MarkerType.CREDITS.value:
        logger.warning(f"Got a request for a 'final' {marker_type} marker, only credits can be final")
        return False
    return final


class CoreCommands:
    """Marker commands that every mutation path funnels through."""

    def __init__(self, plex_queries, breakdown: LegacyMarkerBreakdown, backup=None):
        self._plex = plex_queries
        self._breakdown = breakdown
        self._backup = backup

    async def get_markers(self, metadata_id: int) -> List[MarkerData]:
        _, markers = await self._plex.get_markers_auto(metadata_id)
        return markers

    async def add_marker(self, marker_type: str, metadata_id: int, start: int, end: int,
                         final: bool = False) -> MarkerData:
        _check_marker_bounds(start, end, marker_type)
        final = _final_for_type(marker_type, final)

        all_markers, new_marker = await self._plex.add_marker(metadata_id, start, end, marker_type, final)
        self._breakdown.update(new_marker, key_from_markers(all_markers), 1)
        if self._backup is not None:
            await self._backup.record_adds([new_marker])
        logger.info(f"Added {marker_type} marker to item {metadata_id} [{start}-{end}]")
        return new_marker

    async def edit_marker(self, marker_type: str, marker_id: int, start: int, end: int,
                          user_created: bool, final: bool = False) -> MarkerData:
        _check_marker_bounds(start, end, marker_type)
        final = _final_for_type(marker_type, final)

        current = await self._plex.get_single_marker(marker_id)
        if current is None:
            raise ServerError("Marker not found", 400)

        all_markers = await self._plex.get_base_markers(current.parent_id)
        for marker in all_markers:
            if marker.id != marker_id and marker.overlaps(start, end):
                raise ServerError(
                    f"Marker edit ({start}-{end}) overlaps with existing marker {marker.start}-{marker.end}. "
                    "The existing marker should be expanded to include this range instead.", 400)

        others = sorted((m for m in all_markers if m.id != marker_id), key=lambda m: (m.start, m.index))
        new_index = sum(1 for m in others if m.start < start)

        await self._plex.edit_marker(marker_id, new_index, start, end, user_created, marker_type, final)
        await self._plex.reindex(current.parent_id)

        edited = await self._plex.get_single_marker(marker_id)
        if edited is None:
            raise ServerError("Unable to retrieve edited marker", 500)

        if current.marker_type != edited.marker_type:
            old_key = key_from_markers(all_markers)
            self._breakdown.update(current, old_key, -1)
            self._breakdown.update(edited, old_key + delta_from_type(-1, current.marker_type), 1)

        if self._backup is not None:
            await self._backup.record_edits([edited], {edited.id: (current.start, current.end)})
        logger.info(f"Edited marker {marker_id} on item {current.parent_id}, "
                    f"was [{current.start}-{current.end}], now [{start}-{end}]")
        return edited

    async def delete_marker(self, marker_id: int) -> MarkerData:
        to_delete = await self._plex.get_single_marker(marker_id)
        if to_delete is None:
            raise ServerError("Could not find marker", 400)

        all_markers = await self._plex.get_base_markers(to_delete.parent_id)
        await self._plex.delete_marker(marker_id)
        await self._plex.reindex(to_delete.parent_id)

        self._breakdown.update(to_delete, key_from_markers(all_markers), -1)
        if self._backup is not None:
            await self._backup.record_deletes([to_delete])
        logger.info(f"Deleted marker from item {to_delete.parent_id} [{to_delete.start}-{to_delete.end}]")
        return to_delete

    async def bulk_delete(self, metadata_id: int, dry_run: bool = False,
                          ignored_marker_ids: Optional[Iterable[int]] = None) -> Dict[str, Any]:
        """Delete every marker under a show, season or episode, except the ignored ones."""
        type_info, markers = await self._plex.get_markers_auto(metadata_id)
        if type_info["metadata_type"] == MetadataType.MOVIE:
            raise ServerError("Bulk delete doesn't support movies.", 400)

        keep = set(ignored_marker_ids or [])
        to_delete = [m for m in markers if m.id not in keep]
        if dry_run or not to_delete:
            return {"markers": markers, "deleted_markers": []}

        await self._plex.bulk_delete(to_delete)
        await self._plex.reindex(metadata_id)

        by_item: Dict[int, List[MarkerData]] = {}
        for marker in markers:
            by_item.setdefault(marker.parent_id, []).append(marker)
        for marker in to_delete:
            siblings = by_item[marker.parent_id]
            self._breakdown.update(marker, key_from_markers(siblings), -1)
            siblings.remove(marker)

        if self._backup is not None:
            await self._backup.record_deletes(to_delete)

        _, remaining = await self._plex.get_markers_auto(metadata_id)
        logger.info(f"Bulk deleted {len(to_delete)} marker(s) under item {metadata_id}")
        return {"markers": remaining, "deleted_markers": to_delete}

    async def bulk_add(self, marker_type: str, metadata_id: int, start: int, end: int, final: bool = False,
                       resolve_type: int = MarkerConflictResolution.MERGE,
                       ignored: Optional[Iterable[int]] = None) -> Dict[str, Any]:
        """Add the same marker to every episode under a show, season or episode.

        resolve_type decides what happens on episodes where the new marker
        overlaps existing ones: OVERWRITE deletes them, MERGE stretches the
        earliest of them to cover everything it overlaps, IGNORE skips the
        episode. Episode ids in ignored are left alone. Every episode is
        written in one transaction.
        """
        _check_marker_bounds(start, end, marker_type)
        final = _final_for_type(marker_type, final)
        try:
            mode = MarkerConflictResolution(resolve_type)
        except ValueError:
            raise ServerError(f"Unexpected resolve type {resolve_type}", 400)

        type_info, markers = await self._plex.get_markers_auto(metadata_id)
        if type_info["metadata_type"] == MetadataType.MOVIE:
            raise ServerError("Bulk add doesn't support movies.", 400)

        skip = set(ignored or [])
        episode_ids = await self._plex.episode_ids_under(metadata_id, type_info["metadata_type"])
        live_by_item = markers_by_item(markers)
        candidate = NewMarker(start, end, marker_type, final)

        transaction = self._plex.new_transaction()
        plans: List[ItemPlan] = []
        conflicts: List[int] = []
        for episode_id in episode_ids:
            if episode_id in skip:
                continue
            plan = ItemPlan(episode_id, live_by_item.get(episode_id, []), edit_in_place=True)
            apply_candidate(plan, candidate, mode)
            if plan.ignored:
                conflicts.append(episode_id)
            if not plan.has_changes():
                continue
            for entry in plan.new_entries():
                # Only the last marker of an episode can be final
                if entry.final and plan.ordered()[-1] is not entry:
                    entry.final = False
            write_plan(self._plex, plan, transaction)
            plans.append(plan)

        if transaction.empty():
            logger.info(f"Bulk add to item {metadata_id} didn't change any markers")
            return {"markers": markers, "added_markers": [], "edited_markers": [], "deleted_markers": [],
                    "ignored_episode_ids": conflicts}

        try:
            await transaction.exec()
        except sqlite3.Error as e:
            raise ServerError.from_db_error(e)

        _, after = await self._plex.get_markers_auto(metadata_id)
        after_by_id = {m.id: m for m in after}
        added: List[MarkerData] = []
        edited: List[MarkerData] = []
        deleted: List[MarkerData] = []
        old_values: Dict[int, Tuple[int, int]] = {}
        for plan in plans:
            key = key_from_markers(plan.live_markers)
            for marker in plan.deleted_markers():
                self._breakdown.update(marker, key, -1)
                key += delta_from_type(-1, marker.marker_type)
                deleted.append(marker)

            old_ids = {m.id for m in plan.live_markers}
            fresh = {(m.start, m.end): m for m in after if m.parent_id == plan.parent_id and m.id not in old_ids}
            for entry in plan.new_entries():
                new_marker = fresh.get((entry.start, entry.end))
                if new_marker is None:
                    logger.warning(f"Could not find bulk added marker {entry.start}-{entry.end} on item {plan.parent_id}")
                    continue
                self._breakdown.update(new_marker, key, 1)
                key += delta_from_type(1, new_marker.marker_type)
                added.append(new_marker)

            for entry in plan.edited_entries():
                edited.append(after_by_id.get(entry.marker.id, entry.marker))
                old_values[entry.marker.id] = (entry.marker.start, entry.marker.end)

        if self._backup is not None:
            await self._backup.record_adds(added)
            await self._backup.record_edits(edited, old_values)
            await self._backup.record_deletes(deleted)

        logger.info(f"Bulk added {marker_type} marker [{start}-{end}] under item {metadata_id}: {len(added)} added, "
                    f"{len(edited)} extended, {len(deleted)} deleted, {len(conflicts)} episode(s) skipped")
        return {"markers": after, "added_markers": added, "edited_markers": edited, "deleted_markers": deleted,
                "ignored_episode_ids": conflicts}
