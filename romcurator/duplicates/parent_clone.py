"""Parent/clone grouping over a catalog snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..core.catalog_models import CatalogSnapshot, GameRecord


@dataclass(frozen=True)
class CloneGroup:
    """A parent with its clones.

    ``key`` is the parent's name. For orphan clones it is the name of the
    parent the catalog does not contain, so all orphans of one missing
    parent share a group.
    """

    key: str
    parent_id: Optional[int]
    game_ids: Tuple[int, ...]

    @property
    def is_orphan_group(self) -> bool:
        return self.parent_id is None


def group_key(game: GameRecord) -> str:
    return game.parent_name or game.name


def build_clone_groups(snapshot: CatalogSnapshot) -> List[CloneGroup]:
    """One group per parent (or missing parent), sorted by key."""
    members: Dict[str, List[int]] = {}
    for game in snapshot.games:
        members.setdefault(group_key(game), []).append(game.id)

    groups = []
    for key in sorted(members):
        parent = snapshot.games_by_name.get(key)
        if parent is not None and parent.parent_name is not None:
            # Name collides with a clone; treat the group as parentless.
            parent = None
        groups.append(CloneGroup(
            key=key,
            parent_id=parent.id if parent is not None else None,
            game_ids=tuple(sorted(members[key])),
        ))
    return groups
