"""Container conversion with digest verification.

Each job writes its target next to the source as ``<target>.part``, reopens
the finished output and re-fingerprints every entry. Only when every digest
equals the pre-conversion digest is the part file renamed into place; the
source is deleted after that, never before. Any failure removes the part
file and leaves the source untouched.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..config import CuratorConfig
from ..containers import CodecRegistry, ContainerCodec, ContainerKind, EntryInfo
from ..core.catalog_store import CatalogStore
from ..exceptions import ContainerError, FileOperationError
from ..hash_utils import ALL_DIGEST_KINDS, Digests, compute_fingerprint
from ..logging_config import LoggingTimer
from ..security.security_utils import sanitize_filename, validate_file_operation
from ..utils.thread_pool import BoundedWorkerPool
from .models import (
    CancelToken,
    ConversionJob,
    ConversionReport,
    JobStatus,
    MatchStatus,
    ProgressCallback,
    ReconcileReport,
    SelectionReport,
)
from .reconcile_controller import PARTIAL_SUFFIX, READ_ERRORS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedJob:
    job: ConversionJob
    source_kind: ContainerKind
    entries: Tuple[EntryInfo, ...]
    target_path: Path


def _digests_equal(expected: Digests, actual: Digests) -> bool:
    kinds = expected.kinds()
    return bool(kinds) and all(expected.get(k) == actual.get(k) for k in kinds)


def target_file_name(source: Path, entries: Tuple[EntryInfo, ...], codec: ContainerCodec) -> str:
    """Single-entry outputs are named after the entry, multi-entry archives after the source."""
    if len(entries) == 1:
        entry_file = Path(entries[0].name).name
        if codec.kind is ContainerKind.FLAT:
            return sanitize_filename(codec.target_name(entry_file))
        return sanitize_filename(codec.target_name(Path(entry_file).stem))
    return sanitize_filename(codec.target_name(source.stem))


class ConversionRunner:
    """Runs conversion jobs; one instance per batch."""

    def __init__(self, config: CuratorConfig, registry: Optional[CodecRegistry] = None) -> None:
        self.config = config
        self.registry = registry or CodecRegistry(config.conversion)
        self.library_root = config.library_root

    def _check_path(self, path: Path) -> Path:
        return validate_file_operation(path, base_dir=self.library_root)

    def prepare(self, job: ConversionJob) -> PreparedJob:
        source = self._check_path(Path(job.source_path))
        if not source.is_file():
            raise FileOperationError("Source file does not exist", file_path=str(source), operation="convert")
        source_kind = self.registry.detect_kind(source)
        entries = tuple(sorted(self.registry.codec(source_kind).list_entries(source), key=lambda e: e.name))
        if not entries:
            raise ContainerError("Source holds no entries", file_path=str(source))

        target_codec = self.registry.codec(job.target_kind)
        if target_codec.max_entries is not None and len(entries) > target_codec.max_entries:
            raise ContainerError(
                f"{job.target_kind.value} holds {target_codec.max_entries} entry, source has {len(entries)}",
                file_path=str(source),
            )
        target = self._check_path(source.parent / target_file_name(source, entries, target_codec))
        return PreparedJob(job=job, source_kind=source_kind, entries=entries, target_path=target)

    def _source_digests(self, prepared: PreparedJob) -> Dict[str, Digests]:
        """Digests of every source entry, reusing the ones the job already carries.

        Entries are hashed with the job's header rule, the same way the
        reconciler hashed them.
        """
        codec = self.registry.codec(prepared.source_kind)
        chunk_size = self.config.matching.chunk_size
        expected: Dict[str, Digests] = {}
        for entry in prepared.entries:
            known = prepared.job.expected.get(entry.name)
            if known is not None and not known.is_empty():
                expected[entry.name] = known
                continue
            with codec.open_entry(prepared.job.source_path, entry.name) as stream:
                expected[entry.name] = compute_fingerprint(
                    stream, ALL_DIGEST_KINDS, header=prepared.job.header, chunk_size=chunk_size
                ).digests
        return expected

    def _write(self, prepared: PreparedJob, part: Path) -> None:
        source_codec = self.registry.codec(prepared.source_kind)
        target_codec = self.registry.codec(prepared.job.target_kind)
        with target_codec.create_writer(part) as writer:
            for entry in prepared.entries:
                name = Path(entry.name).name if target_codec.max_entries == 1 else entry.name
                with source_codec.open_entry(prepared.job.source_path, entry.name) as stream:
                    writer.write_entry(name, stream, entry.size)
            writer.finalize()

    def _verify(self, prepared: PreparedJob, output: Path, expected: Dict[str, Digests]) -> Dict[str, str]:
        """Re-fingerprint ``output``; returns the source-to-target entry name map.

        Raises ContainerError on any difference.
        """
        codec = self.registry.codec(prepared.job.target_kind)
        written = sorted(codec.list_entries(output), key=lambda e: e.name)
        if len(written) != len(prepared.entries):
            raise ContainerError(
                f"Output holds {len(written)} entries, expected {len(prepared.entries)}", file_path=str(output)
            )
        if codec.max_entries == 1:
            pairs = [(prepared.entries[0].name, written[0])]
        else:
            by_name = {e.name: e for e in written}
            missing = [e.name for e in prepared.entries if e.name not in by_name]
            if missing:
                raise ContainerError(f"Output lacks entries {missing}", file_path=str(output))
            pairs = [(e.name, by_name[e.name]) for e in prepared.entries]

        chunk_size = self.config.matching.chunk_size
        names: Dict[str, str] = {}
        for source_name, target_entry in pairs:
            want = expected[source_name]
            with codec.open_entry(output, target_entry.name) as stream:
                got = compute_fingerprint(stream, want.kinds(), header=prepared.job.header, chunk_size=chunk_size).digests
            if not _digests_equal(want, got):
                raise ContainerError(
                    f"Verification failed for {source_name!r}",
                    file_path=str(output),
                    details={"expected": want.as_dict(), "actual": got.as_dict()},
                )
            names[source_name] = target_entry.name
        return names

    def _final_entry_names(self, prepared: PreparedJob, target: Path, names: Dict[str, str]) -> Dict[str, str]:
        codec = self.registry.codec(prepared.job.target_kind)
        if codec.max_entries != 1:
            return names
        # Single-entry formats name their entry after the file.
        final = codec.list_entries(target)
        return {prepared.entries[0].name: final[0].name}

    def run_job(self, prepared: PreparedJob) -> ConversionJob:
        job = prepared.job.advance(JobStatus.IN_PROGRESS, target_path=str(prepared.target_path))
        source = Path(job.source_path)
        target = prepared.target_path
        part = target.with_name(target.name + PARTIAL_SUFFIX)

        try:
            expected = self._source_digests(prepared)
            job = job.advance(JobStatus.IN_PROGRESS, expected=expected)
            if target.exists():
                # Left over from an earlier run with keep_source; accept it only if it verifies.
                names = self._verify(prepared, target, expected)
                logger.info("Target %s already present and verified", target)
            else:
                part.unlink(missing_ok=True)
                self._write(prepared, part)
                names = self._verify(prepared, part, expected)
                os.replace(part, target)
                names = self._final_entry_names(prepared, target, names)
        except READ_ERRORS as exc:
            part.unlink(missing_ok=True)
            logger.error("Conversion of %s failed: %s", source, exc)
            return job.advance(JobStatus.FAILED, error=str(exc))
        except BaseException:
            part.unlink(missing_ok=True)
            raise

        removed = False
        if not self.config.conversion.keep_source and source.resolve() != target.resolve():
            self._check_path(source)
            source.unlink()
            removed = True
        logger.info("Converted %s -> %s%s", source.name, target.name, " (source removed)" if removed else "")
        return job.advance(JobStatus.VERIFIED, entry_names=names, source_removed=removed)


def convert(
    jobs: Iterable[ConversionJob],
    *,
    config: Optional[CuratorConfig] = None,
    registry: Optional[CodecRegistry] = None,
    cancel_token: Optional[CancelToken] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> ConversionReport:
    """Run conversion jobs on the worker pool.

    Jobs whose source already has the target kind are SKIPPED. Two jobs that
    would produce the same target both fail. After cancellation no new job
    starts; jobs not started stay PENDING.
    """
    cfg = config or CuratorConfig()
    runner = ConversionRunner(cfg, registry)
    job_list = sorted(jobs, key=lambda j: j.source_path)
    final: Dict[int, ConversionJob] = {}
    prepared: List[Tuple[int, PreparedJob]] = []

    for idx, job in enumerate(job_list):
        try:
            item = runner.prepare(job)
        except READ_ERRORS as exc:
            logger.error("Cannot convert %s: %s", job.source_path, exc)
            final[idx] = job.advance(JobStatus.FAILED, error=str(exc))
            continue
        if item.source_kind is job.target_kind:
            final[idx] = job.advance(JobStatus.SKIPPED, target_path=job.source_path)
            continue
        prepared.append((idx, item))

    targets: Dict[Path, List[int]] = {}
    for idx, item in prepared:
        targets.setdefault(item.target_path, []).append(idx)
    runnable: List[Tuple[int, PreparedJob]] = []
    for idx, item in prepared:
        if len(targets[item.target_path]) > 1:
            final[idx] = item.job.advance(
                JobStatus.FAILED, target_path=str(item.target_path), error="target collides with another job"
            )
        else:
            runnable.append((idx, item))

    pool = BoundedWorkerPool(
        workers=cfg.performance.workers,
        io_limit=cfg.performance.io_limit,
        cancel_token=cancel_token,
        name_prefix="convert",
    )
    with LoggingTimer(f"convert {len(runnable)} job(s)"):
        run = pool.run(lambda pair: runner.run_job(pair[1]), runnable, progress_cb)

    for outcome in run.outcomes:
        idx, item = outcome.item
        if not outcome.started:
            final[idx] = item.job
        elif outcome.error is not None:
            logger.error("Conversion of %s raised: %s", item.job.source_path, outcome.error)
            final[idx] = item.job.advance(JobStatus.FAILED, error=str(outcome.error))
        else:
            final[idx] = outcome.result

    report = ConversionReport(jobs=tuple(final[i] for i in range(len(job_list))), cancelled=run.cancelled)
    logger.info("Conversion finished: %s", report.counts)
    return report


def plan_conversions(
    selection: SelectionReport,
    reconcile_report: ReconcileReport,
    target_kind: ContainerKind,
) -> List[ConversionJob]:
    """One job per file holding an EXACT entry of a selected game, carrying the verified digests.

    Redundant copies are left alone; the job carries the system header rule
    so that verification hashes entries the way the reconciler did.
    """
    selected = {s.game_name for s in selection.selections}
    per_file: Dict[str, Dict[str, Digests]] = {}
    for result in reconcile_report.results:
        if result.status is not MatchStatus.EXACT or result.redundant or result.game_name not in selected:
            continue
        if result.path is None or result.entry_name is None or result.actual is None:
            continue
        per_file.setdefault(result.path, {})[result.entry_name] = result.actual
    kind = ContainerKind.parse(target_kind)
    return [
        ConversionJob(source_path=path, target_kind=kind, expected=dict(digests), header=reconcile_report.header)
        for path, digests in sorted(per_file.items())
    ]


def record_conversions(store: CatalogStore, report: ConversionReport) -> int:
    """Point stored bindings of converted sources at their targets, in one transaction."""
    verified = [j for j in report.jobs if j.status is JobStatus.VERIFIED and j.target_path]
    if not verified:
        return 0
    updated = 0
    with store.write_lock(), store.transaction("record conversions"):
        for job in verified:
            updated += store.rebind_path(
                str(Path(job.source_path)), str(Path(job.target_path)), job.target_kind.value, job.entry_names
            )
    logger.info("Updated %d binding(s) after conversion", updated)
    return updated
