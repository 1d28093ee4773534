"""Catalog import: merge a parsed DAT document into the catalog store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from ..config import CuratorConfig
from ..core.catalog_models import GameRecord, RomStatus
from ..core.catalog_store import CatalogStore
from ..core.dat_parser import DatDocument, DatGame, DatParseIssue, parse_dat, parse_header_detector
from ..core.name_parsing import parse_release_info
from ..exceptions import CatalogParseError, StructuralError
from ..hash_utils import HeaderSpec
from ..logging_config import LoggingTimer
from .models import ImportReport

logger = logging.getLogger(__name__)


def flatten_clone_graph(games: List[DatGame]) -> Tuple[Dict[str, Optional[str]], List[StructuralError]]:
    """Map each game name to its root parent name (``None`` for parents).

    Clone-of-clone chains collapse onto the root. Games on a cycle (including
    self references) are left out of the mapping and reported; a game whose
    chain runs into a cycle keeps the first cycle member as its parent name
    and ends up an orphan clone.
    """
    cloneof: Dict[str, Optional[str]] = {}
    for game in games:
        cloneof.setdefault(game.name, game.cloneof)

    parents: Dict[str, Optional[str]] = {}
    excluded: Set[str] = set()
    errors: List[StructuralError] = []

    for name in cloneof:
        if name in excluded:
            continue
        chain = [name]
        current = cloneof[name]
        while current is not None and cloneof.get(current) is not None:
            if current in chain:
                break
            chain.append(current)
            current = cloneof[current]

        if current is not None and current in chain:
            cycle = chain[chain.index(current):]
            if name not in cycle:
                parents[name] = current
                continue
            if len(cycle) == 1:
                message = f"Game {name!r} is its own parent"
            else:
                message = "Clone cycle: " + " -> ".join(cycle + [cycle[0]])
            for member in cycle:
                excluded.add(member)
                errors.append(StructuralError(message, game=member))
            continue

        parents[name] = current

    for member in excluded:
        parents.pop(member, None)
    return parents, errors


def import_document(
    store: CatalogStore,
    document: DatDocument,
    *,
    header: Optional[HeaderSpec] = None,
    prune: bool = False,
    system_name: Optional[str] = None,
) -> ImportReport:
    """Merge ``document`` into ``store`` in a single transaction.

    Records are keyed by (system, game name, rom name). Unchanged roms are
    left alone, roms whose size or digests differ are replaced in place, and
    stored roms missing from the document are kept unless ``prune``.
    """
    name = (system_name or document.header.name or "").strip()
    if not name:
        raise CatalogParseError("Catalog does not name its system", source=document.source)

    issues: List[DatParseIssue] = list(document.issues)
    games: List[DatGame] = []
    seen_games: Set[str] = set()
    for game in document.games:
        if game.name in seen_games:
            issues.append(DatParseIssue(game.name, "duplicate game name"))
            continue
        seen_games.add(game.name)
        games.append(game)

    parents, structural = flatten_clone_graph(games)
    for error in structural:
        logger.warning("Excluding %s: %s", error.details.get("game"), error)
    games = [g for g in games if g.name in parents]

    counts = {
        "games_added": 0,
        "games_updated": 0,
        "games_removed": 0,
        "added": 0,
        "replaced": 0,
        "unchanged": 0,
        "retained": 0,
        "pruned": 0,
    }

    with store.write_lock(), store.transaction("import"):
        system, created = store.upsert_system(
            name,
            description=document.header.description,
            version=document.header.version,
            header=header,
        )
        skip = system.header.skip_bytes if system.header is not None else 0
        stored_games: Dict[str, GameRecord] = store.load_games(system.id)
        stored_roms = store.load_roms(system.id)
        wanted_roms: Set[Tuple[str, str]] = set()

        for game in games:
            release = parse_release_info(game.name, game.regions, game.languages)
            parent_name = parents[game.name]
            row = stored_games.get(game.name)
            if row is None:
                game_id = store.insert_game(system.id, game.name, game.description, parent_name, release)
                counts["games_added"] += 1
            else:
                game_id = row.id
                if (row.description, row.parent_name, row.release) != (game.description, parent_name, release):
                    store.update_game(game_id, game.description, parent_name, release)
                    counts["games_updated"] += 1

            for rom in game.roms:
                key = (game.name, rom.name)
                wanted_roms.add(key)
                status = RomStatus.parse(rom.status)
                existing = stored_roms.get(key)
                if existing is None:
                    store.insert_rom(game_id, rom.name, rom.size, rom.digests, game.romof, skip, status)
                    counts["added"] += 1
                elif existing.size != rom.size or existing.digests != rom.digests:
                    store.update_rom(existing.id, rom.size, rom.digests, game.romof, skip, status)
                    counts["replaced"] += 1
                else:
                    if (existing.rom_of, existing.header_skip, existing.status) != (game.romof, skip, status):
                        store.update_rom_metadata(existing.id, game.romof, skip, status)
                    counts["unchanged"] += 1

        absent = [rom for key, rom in stored_roms.items() if key not in wanted_roms]
        if prune:
            counts["pruned"] = store.delete_roms(r.id for r in absent)
            wanted_games = {g.name for g in games}
            counts["games_removed"] = store.delete_games(
                g.id for n, g in stored_games.items() if n not in wanted_games
            )
        else:
            counts["retained"] = len(absent)
        orphans = store.resolve_parents(system.id)

    report = ImportReport(
        system=name,
        source=document.source,
        system_created=created,
        orphans=orphans,
        issues=tuple(issues),
        structural_errors=tuple(str(e) for e in structural),
        **counts,
    )
    logger.info(
        "Imported %s: +%d roms, %d replaced, %d unchanged, %d pruned, %d issue(s)",
        name,
        report.added,
        report.replaced,
        report.unchanged,
        report.pruned,
        len(report.issues) + len(report.structural_errors),
    )
    return report


def import_catalog(
    store: CatalogStore,
    dat_path: Union[str, Path],
    *,
    config: Optional[CuratorConfig] = None,
    header_path: Optional[Union[str, Path]] = None,
    prune: Optional[bool] = None,
    system_name: Optional[str] = None,
) -> ImportReport:
    """Parse a DAT file (plus an optional header detector) and merge it into ``store``."""
    cfg = config or CuratorConfig()
    with LoggingTimer(f"import {Path(dat_path).name}"):
        document = parse_dat(dat_path)
        header = parse_header_detector(header_path) if header_path else None
        return import_document(
            store,
            document,
            header=header,
            prune=cfg.catalog.prune_on_import if prune is None else bool(prune),
            system_name=system_name,
        )
