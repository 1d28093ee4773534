"""Parent/clone grouping and one-game-one-rom selection."""

from .parent_clone import CloneGroup, build_clone_groups
from .preferred_variants import compare_variants, rank_variants, select_one_game_one_rom

__all__ = [
    "CloneGroup",
    "build_clone_groups",
    "compare_variants",
    "rank_variants",
    "select_one_game_one_rom",
]
