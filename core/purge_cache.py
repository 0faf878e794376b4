"""
In-memory tree of purged markers.

Every node is a PurgedGroup tagged with a PurgeNodeKind. The tree is shaped
server -> section -> show -> season -> episode for TV libraries and
server -> section -> movie for movie libraries. Episode and movie nodes are
leaves whose children are the purged MarkerActions keyed by marker id.

Per-kind behavior (which kind of child to build, whether a node may be pruned
when empty) lives in the _KIND_BEHAVIOR table rather than in subclasses.
"""

import logging
from dataclasses import replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Union

from core.plex_types import MarkerAction, SectionType

logger = logging.getLogger(__name__)


class PurgeNodeKind(str, Enum):
    SERVER = "server"
    SECTION = "section"
    SHOW = "show"
    SEASON = "season"
    EPISODE = "episode"
    MOVIE = "movie"


class PurgeCacheStatus(IntEnum):
    """How much of a node's subtree has been loaded."""
    UNINITIALIZED = 0
    PARTIALLY_INITIALIZED = 1
    COMPLETE = 2


class _KindBehavior(NamedTuple):
    # Kind of child this node constructs, or None for leaves
    child_kind: Optional[Callable[["PurgedGroup"], PurgeNodeKind]]
    # Whether the node is detached from its parent when its count drops to zero
    prune_when_empty: bool


_KIND_BEHAVIOR: Dict[PurgeNodeKind, _KindBehavior] = {
    PurgeNodeKind.SERVER: _KindBehavior(lambda node: PurgeNodeKind.SECTION, False),
    PurgeNodeKind.SECTION: _KindBehavior(
        lambda node: PurgeNodeKind.MOVIE if node.section_type == SectionType.MOVIE else PurgeNodeKind.SHOW,
        False),
    PurgeNodeKind.SHOW: _KindBehavior(lambda node: PurgeNodeKind.SEASON, True),
    PurgeNodeKind.SEASON: _KindBehavior(lambda node: PurgeNodeKind.EPISODE, True),
    PurgeNodeKind.EPISODE: _KindBehavior(None, True),
    PurgeNodeKind.MOVIE: _KindBehavior(None, True),
}


Child = Union["PurgedGroup", MarkerAction]


class PurgedGroup:
    """A single node in the purge tree."""

    def __init__(self, kind: PurgeNodeKind, key: int, parent: Optional["PurgedGroup"] = None,
                 section_type: Optional[SectionType] = None):
        self.kind = kind
        self.key = key
        self.parent = parent
        self.count = 0
        self.status = PurgeCacheStatus.UNINITIALIZED
        self.section_type = section_type
        self.children: Dict[int, Child] = {}

    def __repr__(self):
        return f"PurgedGroup({self.kind.value}, {self.key}, count={self.count})"

    @property
    def behavior(self) -> _KindBehavior:
        return _KIND_BEHAVIOR[self.kind]

    @property
    def is_leaf(self) -> bool:
        return self.behavior.child_kind is None

    def get(self, key: int) -> Optional[Child]:
        return self.children.get(key)

    def get_or_add(self, key: int) -> "PurgedGroup":
        """Return the child group for key, creating it if needed.

        Leaves hold marker actions, not groups, so calling this on one is a bug.
        """
        assert not self.is_leaf, f"Cannot add a subgroup to {self.kind.value} node {self.key}"
        child = self.children.get(key)
        if child is None:
            child_kind = self.behavior.child_kind(self)
            child = PurgedGroup(child_kind, key, parent=self)
            child.status = PurgeCacheStatus.PARTIALLY_INITIALIZED
            self.children[key] = child
        return child

    def add_section(self, section_id: int, section_type: SectionType) -> "PurgedGroup":
        assert self.kind == PurgeNodeKind.SERVER, "Sections can only be added to the server node"
        section = self.get_or_add(section_id)
        section.section_type = section_type
        return section

    def add_action(self, action: MarkerAction) -> bool:
        """Add a purged marker to this leaf. Returns False if it was already present."""
        assert self.is_leaf, f"Cannot add marker actions to {self.kind.value} node {self.key}"
        if action.marker_id in self.children:
            self.children[action.marker_id] = action
            return False
        self.children[action.marker_id] = action
        self.update_count(1)
        return True

    def remove_action(self, marker_id: int) -> Optional[MarkerAction]:
        """Remove a purged marker from this leaf, pruning empty ancestors."""
        assert self.is_leaf, f"Cannot remove marker actions from {self.kind.value} node {self.key}"
        action = self.children.get(marker_id)
        if action is None:
            return None
        # Adjust counts before dropping the child so a failed update leaves the tree untouched
        self.update_count(-1)
        del self.children[marker_id]
        return action

    def _chain(self) -> List["PurgedGroup"]:
        chain = []
        node = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return chain

    def update_count(self, delta: int) -> None:
        """Apply delta to this node and every ancestor.

        The whole chain is checked before anything is changed, so either every
        node is updated or none are. Non-section nodes that reach zero are
        detached from their parent afterwards.

        Raises:
            ValueError: If any node in the chain would go negative.
        """
        chain = self._chain()
        for node in chain:
            if node.count + delta < 0:
                raise ValueError(
                    f"Purge count for {node.kind.value} {node.key} would drop below zero ({node.count} + {delta})")

        for node in chain:
            node.count += delta

        for node in chain:
            if node.count != 0 or not node.behavior.prune_when_empty or node.parent is None:
                break
            node.parent.children.pop(node.key, None)
            node.parent = None

    def detach(self) -> None:
        """Remove this node and its subtree, adjusting ancestor counts."""
        parent = self.parent
        if parent is None:
            return
        if self.count:
            parent.update_count(-self.count)
        parent.children.pop(self.key, None)
        self.parent = None

    def deep_clone(self, parent: Optional["PurgedGroup"] = None) -> "PurgedGroup":
        """Copy this subtree. Parent links in the copy point within the copy."""
        clone = PurgedGroup(self.kind, self.key, parent=parent, section_type=self.section_type)
        clone.count = self.count
        clone.status = self.status
        for key, child in self.children.items():
            if isinstance(child, PurgedGroup):
                clone.children[key] = child.deep_clone(clone)
            else:
                clone.children[key] = replace(child)
        return clone

    def find(self, key: int) -> Optional["PurgedGroup"]:
        """Depth-first search for a descendant group (or self) with the given key."""
        if self.key == key:
            return self
        if self.is_leaf:
            return None
        for child in self.children.values():
            found = child.find(key)
            if found is not None:
                return found
        return None

    def actions(self) -> Iterator[MarkerAction]:
        """Every purged MarkerAction in this subtree."""
        if self.is_leaf:
            yield from self.children.values()
            return
        for child in self.children.values():
            yield from child.actions()

    def validate(self) -> bool:
        """Check that every node's count equals the sum of its children's counts."""
        if self.is_leaf:
            return self.count == len(self.children)
        return (self.count == sum(child.count for child in self.children.values())
                and all(child.validate() for child in self.children.values()))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "id": self.key,
            "count": self.count,
            "status": self.status.name.lower(),
            "children": {str(k): v.to_dict() for k, v in self.children.items()},
        }
        if self.kind == PurgeNodeKind.SECTION and self.section_type is not None:
            data["section_type"] = int(self.section_type)
        return data


class PurgeCache:
    """Server-wide purge tree, owned by the application context."""

    def __init__(self):
        self.server = PurgedGroup(PurgeNodeKind.SERVER, -1)

    def clear(self) -> None:
        self.server = PurgedGroup(PurgeNodeKind.SERVER, -1)

    @property
    def count(self) -> int:
        return self.server.count

    def section(self, section_id: int) -> Optional[PurgedGroup]:
        return self.server.get(section_id)

    def add_section(self, section_id: int, section_type: SectionType) -> PurgedGroup:
        return self.server.add_section(section_id, section_type)

    def reset_section(self, section_id: int, section_type: SectionType) -> PurgedGroup:
        """Drop everything cached for a section and return a fresh, empty section node."""
        existing = self.server.get(section_id)
        if existing is not None:
            existing.detach()
        return self.add_section(section_id, section_type)

    def _leaf_for(self, action: MarkerAction, create: bool) -> Optional[PurgedGroup]:
        section = self.server.get(action.section_id)
        if section is None:
            if not create:
                return None
            section = self.add_section(
                action.section_id, SectionType.MOVIE if action.is_movie else SectionType.TV)

        if section.section_type == SectionType.MOVIE:
            path = [action.parent_id]
        else:
            path = [action.show_id, action.season_id, action.parent_id]

        node = section
        for key in path:
            if create:
                node = node.get_or_add(key)
            else:
                node = node.get(key)
                if node is None:
                    return None
        return node

    def add(self, action: MarkerAction) -> bool:
        return self._leaf_for(action, create=True).add_action(action)

    def remove(self, action: MarkerAction) -> bool:
        leaf = self._leaf_for(action, create=False)
        if leaf is None:
            return False
        return leaf.remove_action(action.marker_id) is not None

    def evict(self, section_id: int, metadata_id: int) -> Optional[PurgedGroup]:
        """Discard the cached subtree for a show/season/episode/movie.

        The owning section drops back to partially initialized.
        """
        section = self.server.get(section_id)
        if section is None:
            return None
        # Section ids and metadata ids can collide, so only search below the section
        node = None
        for child in section.children.values():
            node = child.find(metadata_id)
            if node is not None:
                break
        if node is None:
            return None
        node.detach()
        if section.status == PurgeCacheStatus.COMPLETE:
            section.status = PurgeCacheStatus.PARTIALLY_INITIALIZED
        logger.debug(f"Evicted purge cache for {node.kind.value} {metadata_id}")
        return node
