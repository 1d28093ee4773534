"""Library housekeeping: rename matched files after their roms, move rejects to the trash folder.

Moves are planned first and applied afterwards; nothing is overwritten.
Two moves aiming at the same target both fail. Stored bindings follow the
files that moved, in one transaction per run.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Set, Union

from ..config import CuratorConfig
from ..containers import ContainerKind
from ..core.catalog_models import RomBinding
from ..core.catalog_store import CatalogStore
from ..exceptions import BaseError
from ..security.security_utils import sanitize_filename, validate_file_operation
from .models import (
    CheckReport,
    CheckStatus,
    FileMove,
    MatchResult,
    MatchStatus,
    MoveKind,
    MoveStatus,
    OrganizeReport,
    ReconcileReport,
)

logger = logging.getLogger(__name__)

MOVE_ERRORS = (OSError, BaseError)

_REJECTED = (MatchStatus.MISMATCH, MatchStatus.UNRECOGNIZED)


def _free_target(directory: Path, name: str, taken: Set[Path]) -> Path:
    """``directory/name``, or ``name (n)`` when that is on disk or already planned."""
    candidate = directory / name
    stem, suffix = Path(name).stem, Path(name).suffix
    counter = 1
    while candidate in taken or candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    taken.add(candidate)
    return candidate


def _same_file(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def plan_moves(report: ReconcileReport, *, trash_dir: str = "Trash", trash_unmatched: bool = False) -> List[FileMove]:
    """Moves that would tidy ``report.root``.

    A flat file holding one EXACT, non-redundant rom moves to the root under
    the rom's name. With ``trash_unmatched``, files whose every entry is
    MISMATCH or UNRECOGNIZED move to the trash folder. Files that could not
    be read, redundant copies and archives stay where they are.
    """
    root = Path(report.root)
    trash_root = root / trash_dir
    unreadable = {issue.path.split("#", 1)[0] for issue in report.errors}

    per_file: Dict[str, List[MatchResult]] = {}
    for result in report.results:
        if result.path is not None:
            per_file.setdefault(result.path, []).append(result)

    moves: List[FileMove] = []
    taken: Set[Path] = set()
    for path, results in sorted(per_file.items()):
        source = Path(path)
        if path in unreadable:
            continue
        if all(r.status in _REJECTED for r in results):
            if trash_unmatched:
                target = _free_target(trash_root, source.name, taken)
                moves.append(FileMove(source=path, target=str(target), kind=MoveKind.TRASH))
            continue
        if len(results) != 1 or results[0].container is not ContainerKind.FLAT:
            continue
        result = results[0]
        if result.status is not MatchStatus.EXACT or result.redundant or not result.rom_name:
            continue
        target = root / sanitize_filename(Path(result.rom_name).name)
        if target == source:
            continue
        moves.append(FileMove(
            source=path,
            target=str(target),
            kind=MoveKind.RENAME,
            rom_id=result.rom_id,
            entry_name=target.name,
        ))

    by_target: Dict[str, int] = {}
    for move in moves:
        by_target[move.target] = by_target.get(move.target, 0) + 1
    return [
        m.advance(MoveStatus.FAILED, error="target collides with another file") if by_target[m.target] > 1 else m
        for m in moves
    ]


def _apply(move: FileMove, base_dir: Path) -> FileMove:
    if move.status is not MoveStatus.PLANNED:
        return move
    try:
        source = validate_file_operation(move.source, base_dir=base_dir)
        target = validate_file_operation(move.target, base_dir=base_dir)
        if target.exists() and not _same_file(source, target):
            return move.advance(MoveStatus.FAILED, error="target already exists")
        target.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source, target)
    except MOVE_ERRORS as exc:
        logger.error("Cannot move %s: %s", move.source, exc)
        return move.advance(MoveStatus.FAILED, error=str(exc))
    logger.info("%s %s -> %s", "Trashed" if move.kind is MoveKind.TRASH else "Renamed", source.name, target)
    return move.advance(MoveStatus.MOVED)


def _record_moves(store: CatalogStore, moves: List[FileMove]) -> None:
    moved = [m for m in moves if m.status is MoveStatus.MOVED]
    if not moved:
        return
    with store.write_lock(), store.transaction("record moves"):
        for move in moved:
            store.delete_bindings_for_path(move.source)
            if move.kind is MoveKind.RENAME and move.rom_id is not None and move.entry_name:
                store.upsert_binding(RomBinding(
                    rom_id=move.rom_id,
                    path=move.target,
                    entry_name=move.entry_name,
                    container=ContainerKind.FLAT.value,
                ))


def organize_library(
    store: CatalogStore,
    report: ReconcileReport,
    *,
    config: Optional[CuratorConfig] = None,
    trash_unmatched: Optional[bool] = None,
    dry_run: bool = False,
) -> OrganizeReport:
    """Apply :func:`plan_moves` to a reconciled tree and update stored bindings.

    ``trash_unmatched`` defaults to ``organize.trash_unmatched``. A cancelled
    reconcile is not organized.
    """
    cfg = config or CuratorConfig()
    if report.cancelled:
        logger.warning("Reconcile of %s was cancelled, nothing organized", report.system)
        return OrganizeReport(system=report.system, moves=(), dry_run=dry_run)

    trash = cfg.organize.trash_unmatched if trash_unmatched is None else trash_unmatched
    moves = plan_moves(report, trash_dir=cfg.organize.trash_dir, trash_unmatched=trash)
    if not dry_run:
        moves = [_apply(m, Path(report.root)) for m in moves]
        _record_moves(store, moves)

    result = OrganizeReport(system=report.system, moves=tuple(moves), dry_run=dry_run)
    logger.info("Organize %s: %s", report.system, result.counts)
    return result


def trash_check_failures(
    store: CatalogStore,
    report: CheckReport,
    root: Union[str, Path],
    *,
    config: Optional[CuratorConfig] = None,
    dry_run: bool = False,
) -> OrganizeReport:
    """Move files whose bound entries no longer verify (CHANGED) into the trash folder.

    Their bindings are dropped. Files outside ``root`` are refused.
    """
    cfg = config or CuratorConfig()
    base_dir = Path(root).resolve()
    trash_root = base_dir / cfg.organize.trash_dir

    taken: Set[Path] = set()
    moves: List[FileMove] = []
    for path in sorted({item.path for item in report.items if item.status is CheckStatus.CHANGED}):
        target = _free_target(trash_root, Path(path).name, taken)
        moves.append(FileMove(source=path, target=str(target), kind=MoveKind.TRASH))

    if not dry_run:
        moves = [_apply(m, base_dir) for m in moves]
        _record_moves(store, moves)

    result = OrganizeReport(system=report.system, moves=tuple(moves), dry_run=dry_run)
    logger.info("Trash after check %s: %s", report.system, result.counts)
    return result
