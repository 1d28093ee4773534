"""One-game-one-rom selection: pick the preferred verified release per clone group."""

from __future__ import annotations

import logging
from functools import cmp_to_key
from typing import Iterable, List, Optional, Sequence, Set

from ..config import PreferenceConfig
from ..core.catalog_models import CatalogSnapshot, GameRecord
from ..core.name_parsing import revision_key
from ..app.models import MatchResult, MatchStatus, Selection, SelectionReport
from .parent_clone import build_clone_groups

logger = logging.getLogger(__name__)


def region_rank(regions: Sequence[str], region_priority: Sequence[str]) -> int:
    """Index of the best-ranked region; releases with no preferred region sort last."""
    priority_index = {name.upper(): i for i, name in enumerate(region_priority)}
    best = len(region_priority)
    for region in regions:
        best = min(best, priority_index.get(str(region).upper(), len(region_priority)))
    return best


def best_language_rank(languages: Sequence[str], language_priority: Sequence[str]) -> int:
    lang_index = {name.lower(): i for i, name in enumerate(language_priority)}
    best = len(language_priority)
    for lang in languages:
        best = min(best, lang_index.get(str(lang).lower(), len(language_priority)))
    return best


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_variants(a: GameRecord, b: GameRecord, preferences: PreferenceConfig) -> int:
    """Negative when ``a`` is preferred over ``b``.

    Region, then language, then release-flag demotion, then revision
    (higher wins), then the lexicographically smallest name. Names are
    unique within a system, so the order is total.
    """
    for key in (
        lambda g: region_rank(g.release.regions, preferences.regions),
        lambda g: best_language_rank(g.release.effective_languages, preferences.languages),
        lambda g: g.release.demotion_key,
    ):
        result = _cmp(key(a), key(b))
        if result:
            return result
    result = _cmp(revision_key(b.release.revision), revision_key(a.release.revision))
    if result:
        return result
    return _cmp(a.name, b.name)


def rank_variants(games: Iterable[GameRecord], preferences: PreferenceConfig) -> List[GameRecord]:
    return sorted(games, key=cmp_to_key(lambda a, b: compare_variants(a, b, preferences)))


def covered_rom_ids(results: Iterable[MatchResult]) -> Set[int]:
    return {r.rom_id for r in results if r.status is MatchStatus.EXACT and r.rom_id is not None}


def _is_candidate(snapshot: CatalogSnapshot, game: GameRecord, covered: Set[int], require_complete: bool) -> bool:
    roms = snapshot.roms_by_game.get(game.id, ())
    if not roms:
        return False
    if require_complete:
        required = snapshot.required_roms(game.id)
        return bool(required) and all(r.id in covered for r in required)
    return any(r.id in covered for r in roms)


def select_one_game_one_rom(
    snapshot: CatalogSnapshot,
    results: Iterable[MatchResult],
    preferences: Optional[PreferenceConfig] = None,
) -> SelectionReport:
    """Choose one verified game per clone group.

    Pure function of its inputs: the order of ``results`` does not matter.
    Groups without any verified candidate are listed in ``unselected``.
    """
    prefs = preferences or PreferenceConfig()
    covered = covered_rom_ids(results)
    selections: List[Selection] = []
    unselected: List[str] = []

    for group in build_clone_groups(snapshot):
        games = [snapshot.games_by_id[i] for i in group.game_ids]
        candidates = [g for g in games if _is_candidate(snapshot, g, covered, prefs.require_complete)]
        if not candidates:
            unselected.append(group.key)
            continue
        ranked = rank_variants(candidates, prefs)
        winner = ranked[0]
        selections.append(Selection(
            group=group.key,
            game_id=winner.id,
            game_name=winner.name,
            ranked=tuple(g.name for g in ranked),
        ))

    logger.info(
        "1G1R %s: %d selected, %d group(s) without a verified release",
        snapshot.system.name,
        len(selections),
        len(unselected),
    )
    return SelectionReport(system=snapshot.system.name, selections=tuple(selections), unselected=tuple(unselected))

