"""Reconcile a directory tree against one system of the catalog.

Two phases:
  - probe (parallel): detect each file's container, list its entries, size
    prefilter against the catalog, quick-reject by stored CRC and
    fingerprint whatever is left
  - classify (sequential, sorted path order): bind entries to roms, mark
    everything else MISMATCH / UNRECOGNIZED and left-over roms MISSING
    (``nodump`` roms have nothing to find and are never reported MISSING)

Classification never depends on worker scheduling, so repeated runs over
the same tree produce identical reports.
"""

from __future__ import annotations

import logging
import os
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from ..config import CuratorConfig
from ..containers import CodecRegistry, ContainerKind, EntryInfo
from ..core.catalog_models import CatalogSnapshot, RomBinding, RomRecord, RomStatus
from ..core.catalog_store import CatalogStore
from ..exceptions import BaseError, SizeMismatchError, UnsupportedContainerError
from ..hash_utils import ALL_DIGEST_KINDS, Digests, Fingerprint, compute_fingerprint, fingerprint_file
from ..logging_config import LoggingTimer
from ..utils.fuzzy_matching import nearest_name
from ..utils.thread_pool import BoundedWorkerPool
from .models import CancelToken, FileIssue, MatchResult, MatchStatus, ProgressCallback, ReconcileReport

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"

# Read failures that fail one file without stopping the batch.
READ_ERRORS = (OSError, BaseError, zipfile.BadZipFile, zlib.error, EOFError)


@dataclass(frozen=True)
class EntryProbe:
    name: str
    size: Optional[int]
    crc32: Optional[str] = None
    candidate_ids: Tuple[int, ...] = ()
    fingerprint: Optional[Fingerprint] = None
    crc_rejected: bool = False
    size_mismatch: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FileProbe:
    path: str
    kind: Optional[ContainerKind] = None
    entries: Tuple[EntryProbe, ...] = ()
    unsupported: Optional[str] = None
    error: Optional[str] = None


def iter_library_files(
    root: Union[str, Path],
    include_hidden: bool = False,
    skip_dirs: Iterable[Union[str, Path]] = (),
) -> Iterator[Path]:
    """Yield regular files under ``root`` in sorted order, leaving out ``skip_dirs``."""
    skipped = {Path(d) for d in skip_dirs}
    for dirpath, dirnames, filenames in os.walk(root):
        if not include_hidden:
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        if skipped:
            dirnames[:] = [d for d in dirnames if Path(dirpath) / d not in skipped]
        dirnames.sort()
        for filename in sorted(filenames):
            if not include_hidden and filename.startswith("."):
                continue
            if filename.endswith(PARTIAL_SUFFIX):
                continue
            path = Path(dirpath) / filename
            if path.is_file() and not path.is_symlink():
                yield path


def _digest_kinds(config: CuratorConfig, candidates: Tuple[RomRecord, ...]) -> Tuple[str, ...]:
    wanted = {"crc32", config.matching.hash_algorithm}
    for rom in candidates:
        wanted.update(rom.digests.kinds())
    return tuple(k for k in ALL_DIGEST_KINDS if k in wanted)


class _Prober:
    def __init__(self, snapshot: CatalogSnapshot, registry: CodecRegistry, pool: BoundedWorkerPool,
                 config: CuratorConfig) -> None:
        self.snapshot = snapshot
        self.registry = registry
        self.pool = pool
        self.config = config

    def __call__(self, path: Path) -> FileProbe:
        try:
            kind = self.registry.detect_kind(path)
        except UnsupportedContainerError as exc:
            return FileProbe(path=str(path), unsupported=str(exc))
        except OSError as exc:
            return FileProbe(path=str(path), error=str(exc))

        codec = self.registry.codec(kind)
        try:
            with self.pool.io_slot():
                entries = codec.list_entries(path)
        except READ_ERRORS as exc:
            return FileProbe(path=str(path), kind=kind, error=str(exc))

        probes = tuple(self._probe_entry(path, kind, entry) for entry in sorted(entries, key=lambda e: e.name))
        return FileProbe(path=str(path), kind=kind, entries=probes)

    def _probe_entry(self, path: Path, kind: ContainerKind, entry: EntryInfo) -> EntryProbe:
        snapshot = self.snapshot
        if entry.size is not None:
            candidates = snapshot.candidates_for_size(entry.size)
            if not candidates:
                return EntryProbe(name=entry.name, size=entry.size, crc32=entry.crc32)
            if entry.crc32 and snapshot.header is None and self._crc_rejects(entry.crc32, candidates):
                return EntryProbe(
                    name=entry.name,
                    size=entry.size,
                    crc32=entry.crc32,
                    candidate_ids=tuple(r.id for r in candidates),
                    crc_rejected=True,
                )
            kinds = _digest_kinds(self.config, candidates)
        else:
            # Length only known after decoding (CD/GD CHD tracks).
            candidates = ()
            kinds = ALL_DIGEST_KINDS

        try:
            fingerprint = self._fingerprint(path, kind, entry.name, kinds)
        except SizeMismatchError as exc:
            return EntryProbe(
                name=entry.name,
                size=entry.size,
                candidate_ids=tuple(r.id for r in candidates),
                size_mismatch=str(exc),
            )
        except READ_ERRORS as exc:
            return EntryProbe(name=entry.name, size=entry.size, error=str(exc))

        if entry.size is None:
            candidates = snapshot.candidates_for_size(fingerprint.size)
        return EntryProbe(
            name=entry.name,
            size=fingerprint.size,
            crc32=entry.crc32,
            candidate_ids=tuple(r.id for r in candidates),
            fingerprint=fingerprint,
        )

    @staticmethod
    def _crc_rejects(crc32: str, candidates: Tuple[RomRecord, ...]) -> bool:
        """True when every candidate carries a CRC and none equals the stored one."""
        if any(r.digests.crc32 is None for r in candidates):
            return False
        return all(r.digests.crc32 != crc32 for r in candidates)

    def _fingerprint(self, path: Path, kind: ContainerKind, name: str, kinds: Tuple[str, ...]) -> Fingerprint:
        chunk_size = self.config.matching.chunk_size
        header = self.snapshot.header
        if kind is ContainerKind.FLAT:
            return fingerprint_file(path, kinds, header=header, chunk_size=chunk_size)
        codec = self.registry.codec(kind)
        with self.pool.io_slot(), codec.open_entry(path, name) as stream:
            return compute_fingerprint(stream, kinds, header=header, chunk_size=chunk_size)


def _nearest(snapshot: CatalogSnapshot, entry_name: str, candidates: List[RomRecord]) -> Optional[RomRecord]:
    if not candidates:
        return None
    by_name: Dict[str, RomRecord] = {}
    for rom in candidates:
        by_name.setdefault(rom.name, rom)
    found = nearest_name(entry_name, sorted(by_name))
    return by_name[found[0]] if found else None


def classify(
    snapshot: CatalogSnapshot,
    probes: List[FileProbe],
    *,
    allow_weak: bool = True,
    cancelled: bool = False,
    root: str = "",
) -> ReconcileReport:
    """Bind probed entries to roms; pure and order-independent given sorted ``probes``."""
    results: List[MatchResult] = []
    unsupported: List[FileIssue] = []
    errors: List[FileIssue] = []
    bound: Set[int] = set()

    for probe in sorted(probes, key=lambda p: p.path):
        if probe.unsupported:
            unsupported.append(FileIssue(probe.path, probe.unsupported))
            continue
        if probe.error:
            errors.append(FileIssue(probe.path, probe.error))
            continue

        for entry in probe.entries:
            if entry.error:
                errors.append(FileIssue(f"{probe.path}#{entry.name}", entry.error))
                continue
            base = dict(path=probe.path, entry_name=entry.name, container=probe.kind, size=entry.size)
            candidates = [snapshot.roms_by_id[i] for i in entry.candidate_ids]

            if entry.size_mismatch:
                nearest = _nearest(snapshot, entry.name, candidates)
                results.append(MatchResult(
                    status=MatchStatus.MISMATCH,
                    nearest=nearest.name if nearest else None,
                    expected=nearest.digests if nearest else None,
                    reason="declared size mismatch",
                    **base,
                ))
                continue

            if not candidates:
                actual = entry.fingerprint.digests if entry.fingerprint else (Digests(crc32=entry.crc32) if entry.crc32 else None)
                results.append(MatchResult(status=MatchStatus.UNRECOGNIZED, actual=actual, reason="no rom of this size", **base))
                continue

            if entry.crc_rejected or entry.fingerprint is None:
                nearest = _nearest(snapshot, entry.name, candidates)
                results.append(MatchResult(
                    status=MatchStatus.MISMATCH,
                    actual=Digests(crc32=entry.crc32),
                    expected=nearest.digests if nearest else None,
                    nearest=nearest.name if nearest else None,
                    reason="stored crc32 matches no candidate",
                    **base,
                ))
                continue

            fp = entry.fingerprint
            matches = [
                rom for rom in candidates
                if rom.size == fp.content_size and rom.digests.matches(fp.digests, allow_weak=allow_weak)
            ]
            if not matches:
                nearest = _nearest(snapshot, entry.name, candidates)
                results.append(MatchResult(
                    status=MatchStatus.MISMATCH,
                    actual=fp.digests,
                    expected=nearest.digests if nearest else None,
                    nearest=nearest.name if nearest else None,
                    reason="digest differs from every size-matching rom",
                    **base,
                ))
                continue

            matches.sort(key=lambda r: r.id)
            rom = matches[0]
            redundant = rom.id in bound
            bound.add(rom.id)
            results.append(MatchResult(
                status=MatchStatus.EXACT,
                rom_id=rom.id,
                game_name=snapshot.game_of(rom).name,
                rom_name=rom.name,
                expected=rom.digests,
                actual=fp.digests,
                duplicate_rom_ids=tuple(r.id for r in matches[1:]),
                redundant=redundant,
                renamed=Path(entry.name).name != rom.name,
                **base,
            ))

    if not cancelled:
        for rom in snapshot.roms:
            if rom.id not in bound and rom.status is not RomStatus.NODUMP:
                results.append(MatchResult(
                    status=MatchStatus.MISSING,
                    rom_id=rom.id,
                    game_name=snapshot.game_of(rom).name,
                    rom_name=rom.name,
                    expected=rom.digests,
                    size=rom.size,
                ))

    complete = []
    for game in snapshot.games:
        required = snapshot.required_roms(game.id)
        if required and all(r.id in bound for r in required):
            complete.append(game.name)

    return ReconcileReport(
        system=snapshot.system.name,
        root=root,
        results=tuple(results),
        unsupported=tuple(unsupported),
        errors=tuple(errors),
        complete_games=tuple(sorted(complete)),
        cancelled=cancelled,
        header=snapshot.header,
    )


def reconcile_snapshot(
    snapshot: CatalogSnapshot,
    root: Union[str, Path],
    *,
    config: Optional[CuratorConfig] = None,
    registry: Optional[CodecRegistry] = None,
    cancel_token: Optional[CancelToken] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> ReconcileReport:
    cfg = config or CuratorConfig()
    registry = registry or CodecRegistry(cfg.conversion)
    root_path = Path(root).resolve()
    if not root_path.is_dir():
        raise FileNotFoundError(f"Library root does not exist: {root_path}")

    files = list(iter_library_files(
        root_path,
        include_hidden=cfg.matching.include_hidden,
        skip_dirs=(root_path / cfg.organize.trash_dir,),
    ))
    pool = BoundedWorkerPool(
        workers=cfg.performance.workers,
        io_limit=cfg.performance.io_limit,
        cancel_token=cancel_token,
        name_prefix="reconcile",
    )
    prober = _Prober(snapshot, registry, pool, cfg)
    logger.info("Reconciling %d file(s) under %s against %s", len(files), root_path, snapshot.system.name)

    with LoggingTimer(f"reconcile {snapshot.system.name}"):
        run = pool.run(prober, files, progress_cb)

    probes: List[FileProbe] = []
    for outcome in run.outcomes:
        if not outcome.started:
            continue
        if outcome.error is not None:
            logger.error("Probe of %s failed: %s", outcome.item, outcome.error)
            probes.append(FileProbe(path=str(outcome.item), error=str(outcome.error)))
        else:
            probes.append(outcome.result)

    report = classify(
        snapshot,
        probes,
        allow_weak=cfg.matching.allow_weak_match,
        cancelled=run.cancelled,
        root=str(root_path),
    )
    logger.info("Reconcile %s: %s", snapshot.system.name, report.counts)
    return report


def reconcile(
    store: CatalogStore,
    system: str,
    root: Union[str, Path],
    *,
    config: Optional[CuratorConfig] = None,
    cancel_token: Optional[CancelToken] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> ReconcileReport:
    snapshot = store.load_snapshot(system)
    return reconcile_snapshot(snapshot, root, config=config, cancel_token=cancel_token, progress_cb=progress_cb)


def record_bindings(store: CatalogStore, report: ReconcileReport) -> int:
    """Replace the stored bindings of ``report.system`` with its EXACT, non-redundant results."""
    system = store.get_system(report.system)
    if system is None:
        return 0
    bindings = [
        RomBinding(rom_id=r.rom_id, path=r.path, entry_name=r.entry_name, container=r.container.value)
        for r in report.results
        if r.status is MatchStatus.EXACT and not r.redundant and r.rom_id is not None
        and r.path is not None and r.entry_name is not None and r.container is not None
    ]
    with store.write_lock(), store.transaction("record bindings"):
        if not report.cancelled:
            store.clear_bindings(system.id)
        for binding in bindings:
            store.upsert_binding(binding)
    logger.info("Recorded %d binding(s) for %s", len(bindings), report.system)
    return len(bindings)
